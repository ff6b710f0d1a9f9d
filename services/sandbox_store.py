"""
Sandbox record store.

Persists the session -> sandbox mapping so handles can be recovered after a
process restart. Uses asyncpg against PostgreSQL when DATABASE_URL is set,
otherwise a process-local dictionary with the same interface.

The remote sandbox service stays the authority on what is alive; records
here are a cache that `SandboxManager.reconcile()` trims on startup.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

import asyncpg

from config import settings
from models.sandbox import SandboxRecord, utcnow

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sandboxes (
    sandbox_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL UNIQUE,
    expired_at TIMESTAMPTZ NOT NULL
)
"""


def _expiry(timeout_ms: int, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(milliseconds=timeout_ms)


def _row_to_record(row) -> SandboxRecord:
    return SandboxRecord(
        sandbox_id=row["sandbox_id"],
        session_id=row["session_id"],
        expired_at=row["expired_at"],
    )


class SandboxRecordStore:
    """Async PostgreSQL store for sandbox records."""

    def __init__(self, database_url: str | None = None):
        self.database_url = database_url or settings.database_url
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create connection pool and make sure the table exists."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=1,
                max_size=5,
                command_timeout=30,
            )
            logger.info("[SandboxStore] Connected to PostgreSQL")
            await self.ensure_schema()

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("[SandboxStore] Disconnected from PostgreSQL")

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            await self.connect()
        return self._pool  # type: ignore

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def create_record(
        self,
        sandbox_id: str,
        session_id: str,
        timeout_ms: int,
    ) -> SandboxRecord:
        """Insert a record, replacing any stale record held by the session."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO sandboxes (sandbox_id, session_id, expired_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (session_id) DO UPDATE SET
                    sandbox_id = EXCLUDED.sandbox_id,
                    expired_at = EXCLUDED.expired_at
                RETURNING sandbox_id, session_id, expired_at
                """,
                sandbox_id,
                session_id,
                _expiry(timeout_ms),
            )
            return _row_to_record(row)

    async def set_timeout(self, session_id: str, timeout_ms: int) -> Optional[SandboxRecord]:
        """Replace the deadline with now + timeout."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE sandboxes SET expired_at = $2
                WHERE session_id = $1
                RETURNING sandbox_id, session_id, expired_at
                """,
                session_id,
                _expiry(timeout_ms),
            )
            return _row_to_record(row) if row else None

    async def find_by_sandbox_id(self, sandbox_id: str) -> Optional[SandboxRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT sandbox_id, session_id, expired_at FROM sandboxes WHERE sandbox_id = $1",
                sandbox_id,
            )
            return _row_to_record(row) if row else None

    async def find_by_session_id(self, session_id: str) -> Optional[SandboxRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT sandbox_id, session_id, expired_at FROM sandboxes WHERE session_id = $1",
                session_id,
            )
            return _row_to_record(row) if row else None

    async def delete_by_sandbox_id(self, sandbox_id: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM sandboxes WHERE sandbox_id = $1",
                sandbox_id,
            )
            return result == "DELETE 1"

    async def delete_by_session_id(self, session_id: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM sandboxes WHERE session_id = $1",
                session_id,
            )
            return result == "DELETE 1"

    async def list_records(self) -> list[SandboxRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT sandbox_id, session_id, expired_at FROM sandboxes ORDER BY expired_at ASC"
            )
            return [_row_to_record(row) for row in rows]


class InMemorySandboxRecordStore:
    """Process-local record store for single-instance deployments and tests."""

    def __init__(self):
        self._records: dict[str, SandboxRecord] = {}  # session_id -> record

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def create_record(
        self,
        sandbox_id: str,
        session_id: str,
        timeout_ms: int,
    ) -> SandboxRecord:
        for existing in list(self._records.values()):
            if existing.sandbox_id == sandbox_id:
                del self._records[existing.session_id]
        record = SandboxRecord(
            sandbox_id=sandbox_id,
            session_id=session_id,
            expired_at=_expiry(timeout_ms),
        )
        self._records[session_id] = record
        return record

    async def set_timeout(self, session_id: str, timeout_ms: int) -> Optional[SandboxRecord]:
        record = self._records.get(session_id)
        if record is None:
            return None
        updated = SandboxRecord(
            sandbox_id=record.sandbox_id,
            session_id=session_id,
            expired_at=_expiry(timeout_ms),
        )
        self._records[session_id] = updated
        return updated

    async def find_by_sandbox_id(self, sandbox_id: str) -> Optional[SandboxRecord]:
        for record in self._records.values():
            if record.sandbox_id == sandbox_id:
                return record
        return None

    async def find_by_session_id(self, session_id: str) -> Optional[SandboxRecord]:
        return self._records.get(session_id)

    async def delete_by_sandbox_id(self, sandbox_id: str) -> bool:
        record = await self.find_by_sandbox_id(sandbox_id)
        if record is None:
            return False
        del self._records[record.session_id]
        return True

    async def delete_by_session_id(self, session_id: str) -> bool:
        return self._records.pop(session_id, None) is not None

    async def list_records(self) -> list[SandboxRecord]:
        return sorted(self._records.values(), key=lambda r: r.expired_at)


def get_record_store(database_url: str | None = None):
    """Build the record store configured for this process."""
    url = database_url or settings.database_url
    if url:
        return SandboxRecordStore(url)
    logger.info("[SandboxStore] DATABASE_URL not set, using in-memory record store")
    return InMemorySandboxRecordStore()
