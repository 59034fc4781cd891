"""
Key-value backends for student state: in-memory and SQLite (WAL mode).
"""

import asyncio
import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional, Protocol

from recommender.models.domain import StudentState
from recommender.shared.logging import get_logger

logger = get_logger(__name__)


class StateBackend(Protocol):
    """Blocking or non-blocking key-value storage keyed by student_id."""

    async def load(self, student_id: str) -> Optional[StudentState]:
        ...

    async def save(self, state: StudentState) -> None:
        ...


class InMemoryStateBackend:
    """Process-local dict backend."""

    def __init__(self):
        self._states: Dict[str, StudentState] = {}

    async def load(self, student_id: str) -> Optional[StudentState]:
        return self._states.get(student_id)

    async def save(self, state: StudentState) -> None:
        self._states[state.student_id] = state

    def __len__(self) -> int:
        return len(self._states)


class SQLiteStateBackend:
    """SQLite backend with WAL mode; blocking calls run in worker threads."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS student_state (
                    student_id TEXT PRIMARY KEY,
                    state_json TEXT NOT NULL,
                    interaction_count INTEGER NOT NULL,
                    updated_at TEXT
                )
            """)
        logger.info(f"Student state database ready at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper error handling."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _load_sync(self, student_id: str) -> Optional[StudentState]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT state_json FROM student_state WHERE student_id = ?",
                (student_id,)
            ).fetchone()
        if row is None:
            return None
        return StudentState.from_dict(json.loads(row["state_json"]))

    def _save_sync(self, state: StudentState) -> None:
        data = state.to_dict()
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO student_state (student_id, state_json, interaction_count, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(student_id) DO UPDATE SET
                       state_json = excluded.state_json,
                       interaction_count = excluded.interaction_count,
                       updated_at = excluded.updated_at""",
                (state.student_id, json.dumps(data), state.interaction_count, data["last_updated"])
            )

    async def load(self, student_id: str) -> Optional[StudentState]:
        return await asyncio.to_thread(self._load_sync, student_id)

    async def save(self, state: StudentState) -> None:
        await asyncio.to_thread(self._save_sync, state)
