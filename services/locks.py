"""
Distributed session lock backed by Redis.

Local per-session locks only order requests inside one process. When several
instances share a record store, sandbox creation for a session is also
guarded by a Redis lock at `lock:sandbox:{session_id}`. Redis problems degrade
to local-only locking instead of failing the request.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)


def lock_key(session_id: str) -> str:
    return f"lock:sandbox:{session_id}"


class DistributedSessionLock:
    """Optional cross-process lock for session lifecycle changes."""

    def __init__(
        self,
        redis_url: str | None = None,
        enabled: bool | None = None,
        timeout: int | None = None,
        wait_timeout: int | None = None,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.enabled = settings.enable_distributed_lock if enabled is None else enabled
        self.timeout = timeout or settings.distributed_lock_timeout_seconds
        self.wait_timeout = wait_timeout or settings.distributed_lock_wait_seconds
        self._client = client

    async def _get_client(self) -> Optional[Any]:
        if not self.enabled:
            return None
        if self._client is None:
            try:
                self._client = redis.from_url(self.redis_url)
                await self._client.ping()
                logger.info("[SessionLock] Redis connected for distributed locking")
            except Exception as e:
                logger.warning(f"[SessionLock] Failed to connect to Redis: {e}")
                self._client = None
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[bool]:
        """
        Hold the Redis lock for a session.

        Yields True when the lock is held, False when running without it
        (disabled, Redis unavailable, or wait timed out).
        """
        client = await self._get_client()
        if client is None:
            yield False
            return

        lock = None
        acquired = False
        try:
            lock = client.lock(
                lock_key(session_id),
                timeout=self.timeout,
                blocking_timeout=self.wait_timeout,
            )
            acquired = bool(await lock.acquire())
            if acquired:
                logger.debug(f"[SessionLock] Acquired {lock_key(session_id)}")
            else:
                logger.warning(
                    f"[SessionLock] Timed out after {self.wait_timeout}s waiting for "
                    f"{lock_key(session_id)}, proceeding with local lock only"
                )
        except Exception as e:
            logger.warning(f"[SessionLock] Redis error acquiring lock: {e}, proceeding without lock")

        try:
            yield acquired
        finally:
            if acquired and lock is not None:
                try:
                    await lock.release()
                except Exception as e:
                    logger.warning(f"[SessionLock] Failed to release lock: {e}")
