"""
Adaptation state store: per-student read-modify-write serialized per key.
"""

import asyncio
import sqlite3
from typing import Callable, Dict, Optional

from recommender.models.domain import ConceptCatalog, StudentState
from recommender.state.backends import InMemoryStateBackend, SQLiteStateBackend, StateBackend
from recommender.shared.config import StateConfig, settings
from recommender.shared.exceptions import ConfigurationError, PersistenceError, StateInvariantError
from recommender.shared.logging import get_logger

logger = get_logger(__name__)

Mutator = Callable[[StudentState], StudentState]


class StudentStateStore:
    """Holds per-student state with atomic updates.

    Updates for one student_id never interleave; updates for different
    students only share the event loop.
    """

    def __init__(
        self,
        backend: StateBackend,
        concepts: ConceptCatalog,
        timeout_ms: Optional[float] = None,
    ):
        self.backend = backend
        self.concepts = concepts
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.state.timeout_ms
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_refs: Dict[str, int] = {}

    @classmethod
    def from_config(cls, config: Optional[StateConfig] = None) -> "StudentStateStore":
        """Build a store from the state section of the settings."""
        config = config or settings.state
        if not config.concept_ids:
            raise ConfigurationError("state.concept_ids must list the concept catalog")
        if config.backend == "sqlite":
            backend = SQLiteStateBackend(config.db_path)
        else:
            backend = InMemoryStateBackend()
        return cls(backend, ConceptCatalog(config.concept_ids), config.timeout_ms)

    async def get(self, student_id: str, timeout_ms: Optional[float] = None) -> StudentState:
        """Current state, or a fresh zero-mastery state for an unknown student."""
        state = await self._load(student_id, timeout_ms)
        return state or StudentState.default(student_id, len(self.concepts))

    async def update(self, student_id: str, mutator: Mutator) -> StudentState:
        """
        Apply mutator to the current state and persist the result atomically.

        If the mutator raises, the state is left unchanged and the error
        propagates.

        Raises:
            PersistenceError if the backend fails or times out
            StateInvariantError if the mutator result breaks an invariant
        """
        lock = self._acquire_ref(student_id)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._timeout_seconds())
            except asyncio.TimeoutError as e:
                raise PersistenceError(f"Timed out waiting for state lock of {student_id}") from e

            try:
                current = await self._load(student_id)
                current = current or StudentState.default(student_id, len(self.concepts))
                proposed = mutator(current)
                self._check_invariants(current, proposed)
                await self._save(proposed)
                logger.debug(
                    f"State updated for {student_id} (interactions={proposed.interaction_count})"
                )
                return proposed
            finally:
                lock.release()
        finally:
            self._release_ref(student_id)

    def _check_invariants(self, current: StudentState, proposed: StudentState):
        size = len(self.concepts)
        if proposed.student_id != current.student_id:
            raise StateInvariantError(
                f"Mutator changed student_id {current.student_id} -> {proposed.student_id}"
            )
        if len(proposed.knowledge_vector) != size or len(proposed.learning_velocity) != size:
            raise StateInvariantError(
                f"State vectors must have length {size} for {current.student_id}"
            )
        if any(not 0.0 <= m <= 1.0 for m in proposed.knowledge_vector):
            raise StateInvariantError(f"Mastery out of [0, 1] for {current.student_id}")
        if proposed.interaction_count < current.interaction_count:
            raise StateInvariantError(
                f"interaction_count would decrease for {current.student_id}"
            )

    async def _load(self, student_id: str, timeout_ms: Optional[float] = None) -> Optional[StudentState]:
        try:
            return await asyncio.wait_for(
                self.backend.load(student_id), timeout=self._timeout_seconds(timeout_ms)
            )
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"Timed out loading state for {student_id}") from e
        except (OSError, sqlite3.Error, ValueError, KeyError) as e:
            raise PersistenceError(f"Failed to load state for {student_id}: {e}") from e

    async def _save(self, state: StudentState) -> None:
        try:
            await asyncio.wait_for(self.backend.save(state), timeout=self._timeout_seconds())
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"Timed out saving state for {state.student_id}") from e
        except (OSError, sqlite3.Error, ValueError) as e:
            raise PersistenceError(f"Failed to save state for {state.student_id}: {e}") from e

    def _timeout_seconds(self, timeout_ms: Optional[float] = None) -> float:
        if timeout_ms is None:
            timeout_ms = self.timeout_ms
        return max(0.0, min(timeout_ms, self.timeout_ms)) / 1000.0

    def _acquire_ref(self, student_id: str) -> asyncio.Lock:
        lock = self._locks.get(student_id)
        if lock is None:
            lock = self._locks[student_id] = asyncio.Lock()
        self._lock_refs[student_id] = self._lock_refs.get(student_id, 0) + 1
        return lock

    def _release_ref(self, student_id: str):
        refs = self._lock_refs[student_id] - 1
        if refs:
            self._lock_refs[student_id] = refs
        else:
            del self._lock_refs[student_id]
            del self._locks[student_id]
