"""
Idle reaper.

Periodically kills and stops tracking sandboxes that have not been used for
longer than SANDBOX_IDLE_TIMEOUT_SECONDS. The remote TTL is what actually
destroys sandboxes; this only keeps the local registry from holding handles
to sandboxes nobody uses. Persisted records are left alone.
"""

import asyncio
import logging
from typing import Optional

from services.errors import SandboxError
from services.sandbox_manager import SandboxManager

logger = logging.getLogger(__name__)


class IdleReaper:
    def __init__(
        self,
        manager: SandboxManager,
        idle_timeout: float | None = None,
        interval: float | None = None,
    ):
        self.manager = manager
        self.idle_timeout = idle_timeout or manager.settings.sandbox_idle_timeout_seconds
        self.interval = interval or manager.settings.reaper_interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"[IdleReaper] Started (interval: {self.interval}s, idle timeout: {self.idle_timeout}s)"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[IdleReaper] Stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[IdleReaper] Sweep failed: {e}", exc_info=True)

    async def sweep(self) -> list[str]:
        """One pass over the registry. Returns the evicted session ids."""
        evicted = []
        for handle in self.manager.registry.handles():
            session_id = handle.session_id
            async with self.manager.registry.lock(session_id):
                # Re-read under the lock: a request may have touched or killed it meanwhile
                current = self.manager.registry.get(session_id)
                if current is None:
                    continue
                if current.idle_seconds() > self.idle_timeout:
                    logger.info(
                        f"[IdleReaper] Session {session_id} idle for "
                        f"{int(current.idle_seconds())}s, killing {current.sandbox_id}"
                    )
                    await self.manager.evict_locked(session_id, kill_remote=True)
                    evicted.append(session_id)
                    continue

            # Remote listing runs without the session lock
            if self.manager.registry.get(session_id) is not current:
                continue
            try:
                await self.manager.executor.prune_finished_commands(current)
            except SandboxError as e:
                logger.warning(f"[IdleReaper] Could not check commands for session {session_id}: {e}")

        if evicted:
            logger.info(f"[IdleReaper] Evicted {len(evicted)} idle session(s)")
        return evicted
