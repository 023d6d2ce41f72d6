"""Storage for Decision Memo intake sessions.

Each intake is one document row. Writes are compare-and-set on ``version`` so
a stale writer (another worker, a lost race) gets ``Conflict`` instead of
overwriting newer state. Within one process, writers for the same intake are
additionally serialized through ``SessionLocks``.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from app.core.errors import Conflict
from app.core.logging import get_logger
from app.core.schemas_intake import IntakeSession

logger = get_logger(__name__)


class SessionLocks:
    """One ``asyncio.Lock`` per intake id (single writer per session).

    Entries live only while some coroutine holds or waits on them.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, intake_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(intake_id, asyncio.Lock())
        self._holders[intake_id] = self._holders.get(intake_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[intake_id] -= 1
            if self._holders[intake_id] == 0:
                del self._holders[intake_id]
                del self._locks[intake_id]


def _order_ids(session: IntakeSession) -> list[str]:
    ids = [o.order_id for o in session.payment_history]
    if session.payment is not None:
        ids.append(session.payment.order_id)
    return ids


class IntakeSessionStore(ABC):
    """Persistence interface for intake sessions."""

    def __init__(self):
        self.locks = SessionLocks()

    def lock(self, intake_id: str):
        """Async context manager holding the intake's writer lock."""
        return self.locks.hold(intake_id)

    @abstractmethod
    async def create(self, session: IntakeSession) -> IntakeSession:
        """Insert a new session (version 0)."""

    @abstractmethod
    async def get(self, intake_id: str) -> IntakeSession | None:
        """Load a session by id."""

    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> IntakeSession | None:
        """Find the session owning a payment order (current or superseded)."""

    @abstractmethod
    async def save(self, session: IntakeSession) -> IntakeSession:
        """
        Persist ``session`` if the stored version still equals ``session.version``.

        Returns the stored copy with its version incremented.

        Raises:
            Conflict: if the stored version moved on
        """


class InMemoryIntakeSessionStore(IntakeSessionStore):
    """Process-local store for development and tests."""

    def __init__(self):
        super().__init__()
        self._rows: dict[str, IntakeSession] = {}

    async def create(self, session: IntakeSession) -> IntakeSession:
        if session.id in self._rows:
            raise Conflict(f"Intake {session.id} already exists")
        stored = session.model_copy(deep=True)
        stored.version = 0
        self._rows[session.id] = stored
        return stored.model_copy(deep=True)

    async def get(self, intake_id: str) -> IntakeSession | None:
        row = self._rows.get(intake_id)
        return row.model_copy(deep=True) if row else None

    async def get_by_order_id(self, order_id: str) -> IntakeSession | None:
        for row in self._rows.values():
            if order_id in _order_ids(row):
                return row.model_copy(deep=True)
        return None

    async def save(self, session: IntakeSession) -> IntakeSession:
        current = self._rows.get(session.id)
        if current is None:
            raise Conflict(f"Intake {session.id} does not exist")
        if current.version != session.version:
            raise Conflict(
                f"Intake {session.id} changed concurrently "
                f"(stored v{current.version}, write based on v{session.version})"
            )
        stored = session.model_copy(deep=True)
        stored.version = session.version + 1
        self._rows[session.id] = stored
        return stored.model_copy(deep=True)


class SupabaseIntakeSessionStore(IntakeSessionStore):
    """Supabase-backed store.

    Expected table (``INTAKE_TABLE``)::

        id text primary key, user_id text, status text, version int,
        order_ids text[] default '{}', document jsonb,
        created_at timestamptz, updated_at timestamptz
    """

    def __init__(self, table: str = "decision_memo_intakes"):
        super().__init__()
        self.table = table

    def _row(self, session: IntakeSession, version: int) -> dict[str, Any]:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "status": session.status.value,
            "version": version,
            "order_ids": _order_ids(session),
            "document": session.model_dump(mode="json"),
            "updated_at": session.last_transition_at.isoformat(),
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> IntakeSession:
        session = IntakeSession.model_validate(row["document"])
        session.version = row["version"]
        return session

    async def create(self, session: IntakeSession) -> IntakeSession:
        from app.db.supabase_client import get_supabase

        supabase = get_supabase()
        data = self._row(session, 0)
        data["created_at"] = session.created_at.isoformat()
        response = supabase.table(self.table).insert(data).execute()
        if not response.data:
            raise ValueError("Failed to create intake session")
        logger.info(f"Created intake {session.id} for user {session.user_id}")
        return self._from_row(response.data[0])

    async def get(self, intake_id: str) -> IntakeSession | None:
        from app.db.supabase_client import get_supabase

        supabase = get_supabase()
        response = (
            supabase.table(self.table)
            .select("*")
            .eq("id", intake_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return self._from_row(response.data[0])

    async def get_by_order_id(self, order_id: str) -> IntakeSession | None:
        from app.db.supabase_client import get_supabase

        supabase = get_supabase()
        response = (
            supabase.table(self.table)
            .select("*")
            .contains("order_ids", [order_id])
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return self._from_row(response.data[0])

    async def save(self, session: IntakeSession) -> IntakeSession:
        from app.db.supabase_client import get_supabase

        supabase = get_supabase()
        new_version = session.version + 1
        response = (
            supabase.table(self.table)
            .update(self._row(session, new_version))
            .eq("id", session.id)
            .eq("version", session.version)
            .execute()
        )
        if not response.data:
            raise Conflict(f"Intake {session.id} changed concurrently")
        return self._from_row(response.data[0])


def build_store(backend: str, table: str = "decision_memo_intakes") -> IntakeSessionStore:
    """Instantiate the configured store backend."""
    if backend == "memory":
        return InMemoryIntakeSessionStore()
    if backend == "supabase":
        return SupabaseIntakeSessionStore(table=table)
    raise ValueError(f"Unknown session backend: {backend}")
