"""
InteractionEventLog: SQLite (WAL mode) append log of interaction events.
"""

import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from recommender.models.domain import InteractionEvent
from recommender.shared.config import settings
from recommender.shared.logging import get_logger

logger = get_logger(__name__)


class InteractionEventLog:
    """Durable, append-only record of recommendations and interactions."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or settings.events.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS interaction_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    student_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    content_id TEXT NOT NULL,
                    tier TEXT,
                    score REAL,
                    interaction_count INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE INDEX IF NOT EXISTS idx_events_student ON interaction_events(student_id);
            """)
        logger.info(f"Interaction event log ready at {self.db_path}")

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

    def append_many(self, events: Sequence[InteractionEvent]) -> int:
        """Write a batch of events in one transaction."""
        if not events:
            return 0
        rows = [asdict(e) for e in events]
        with self._get_connection() as conn:
            conn.executemany(
                """INSERT INTO interaction_events
                   (student_id, kind, content_id, tier, score, interaction_count, timestamp)
                   VALUES (:student_id, :kind, :content_id, :tier, :score, :interaction_count, :timestamp)""",
                rows
            )
        return len(rows)

    def recent(self, student_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent events for a student, newest first."""
        with self._get_connection() as conn:
            result = conn.execute(
                """SELECT student_id, kind, content_id, tier, score, interaction_count, timestamp
                   FROM interaction_events
                   WHERE student_id = ?
                   ORDER BY id DESC
                   LIMIT ?""",
                (student_id, limit)
            )
            return [dict(row) for row in result.fetchall()]

    def count(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM interaction_events").fetchone()[0]
