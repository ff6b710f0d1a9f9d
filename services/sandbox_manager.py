"""
Sandbox lifecycle controller.

Maps caller session ids to live E2B sandboxes.

Flow:
1. create: under the session lock, check the registry, create the remote
   sandbox, persist the record (best-effort), track the handle
2. get_session: registry hit, or reconnect from the persisted record with
   retry (cold sandboxes can take a few seconds to answer)
3. kill: tolerant delete, local state is always cleared
4. reconcile: on startup, drop records the remote service no longer knows

The remote service is the authority on what is alive. Records are a cache.
"""

import asyncio
import logging
from contextlib import nullcontext
from datetime import timedelta
from typing import Any, Optional

from e2b_code_interpreter import AsyncSandbox

from config import Settings, settings as default_settings
from models.sandbox import SandboxRecord, SessionHandle, utcnow
from services.command_executor import CommandExecutor, remote_errors
from services.errors import (
    MissingCredentialError,
    SandboxNotFoundError,
    SessionAlreadyExistsError,
)
from services.locks import DistributedSessionLock
from services.sandbox_store import get_record_store
from services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


RECONNECT_TIMEOUT_S = 10  # per attempt


def normalize_sandbox_id(sandbox_id: str) -> str:
    """Reported ids may carry a `-<suffix>`; the prefix is the stable id."""
    return sandbox_id.split("-", 1)[0]


class SandboxManager:
    """Owns the session registry, the record store and the remote sandbox calls."""

    def __init__(
        self,
        api_key: str | None = None,
        store: Any = None,
        registry: SessionRegistry | None = None,
        session_lock: DistributedSessionLock | None = None,
        executor: CommandExecutor | None = None,
        sandbox_cls: Any = AsyncSandbox,
        settings: Settings | None = None,
    ):
        self.settings = settings or default_settings
        self.api_key = api_key or self.settings.e2b_api_key
        if not self.api_key:
            raise MissingCredentialError("Missing E2B_API_KEY environment variable.")

        self.store = store if store is not None else get_record_store(self.settings.database_url)
        self.registry = registry or SessionRegistry()
        self.session_lock = session_lock or DistributedSessionLock(
            redis_url=self.settings.redis_url,
            enabled=self.settings.enable_distributed_lock,
        )
        self.executor = executor or CommandExecutor(
            hidden_env_prefix=self.settings.hidden_env_prefix,
            command_timeout=self.settings.command_timeout_seconds,
            install_timeout=self.settings.install_timeout_seconds,
            max_output_size=self.settings.max_output_size,
        )
        self.sandbox_cls = sandbox_cls

    def _auth(self) -> dict[str, Any]:
        auth: dict[str, Any] = {"api_key": self.api_key}
        if self.settings.e2b_domain:
            auth["domain"] = self.settings.e2b_domain
        return auth

    # =========================================================================
    # Record Store (best-effort)
    # =========================================================================

    async def _find_record(self, session_id: str) -> Optional[SandboxRecord]:
        try:
            return await self.store.find_by_session_id(session_id)
        except Exception as e:
            logger.error(f"[SandboxManager] Failed to read record for session {session_id}: {e}")
            return None

    async def _save_record(self, sandbox_id: str, session_id: str, timeout_ms: int) -> None:
        try:
            await self.store.create_record(sandbox_id, session_id, timeout_ms)
            logger.debug(f"[SandboxManager] Saved record {sandbox_id} for session {session_id}")
        except Exception as e:
            logger.error(f"[SandboxManager] Failed to save record for session {session_id}: {e}")

    async def _delete_record(self, sandbox_id: str) -> None:
        try:
            await self.store.delete_by_sandbox_id(sandbox_id)
        except Exception as e:
            logger.error(f"[SandboxManager] Failed to delete record {sandbox_id}: {e}")

    # =========================================================================
    # Reconnection
    # =========================================================================

    async def _reconnect(self, sandbox_id: str) -> Optional[Any]:
        """
        Reconnect to an existing sandbox with retry logic.

        Timeouts are retried with exponential backoff. Any other failure
        means the sandbox is gone (killed, expired, unknown id).
        """
        max_retries = self.settings.reconnect_max_retries
        for attempt in range(max_retries + 1):
            try:
                logger.info(
                    f"[SandboxManager] Reconnect attempt {attempt + 1}/{max_retries + 1} to {sandbox_id}..."
                )
                sandbox = await asyncio.wait_for(
                    self.sandbox_cls.connect(sandbox_id, **self._auth()),
                    timeout=RECONNECT_TIMEOUT_S,
                )
                if attempt > 0:
                    logger.info(f"[SandboxManager] Reconnect succeeded on attempt {attempt + 1}")
                return sandbox
            except asyncio.TimeoutError:
                logger.warning(f"[SandboxManager] Reconnect attempt {attempt + 1} timed out")
                if attempt < max_retries:
                    delay = self.settings.reconnect_retry_delay_seconds * (2 ** attempt)
                    logger.info(f"[SandboxManager] Waiting {delay}s before retry...")
                    await asyncio.sleep(delay)
            except Exception as e:
                logger.warning(f"[SandboxManager] Sandbox {sandbox_id} is inaccessible: {e}")
                return None

        logger.warning(f"[SandboxManager] All {max_retries + 1} reconnect attempts failed")
        return None

    async def _restore_locked(self, session_id: str) -> Optional[SessionHandle]:
        """Rebuild a handle from the persisted record. Caller holds the session lock."""
        record = await self._find_record(session_id)
        if record is None:
            return None
        if record.is_expired():
            logger.info(f"[SandboxManager] Record for session {session_id} expired, removing")
            await self._delete_record(record.sandbox_id)
            return None

        sandbox = await self._reconnect(record.sandbox_id)
        if sandbox is None:
            await self._delete_record(record.sandbox_id)
            return None

        handle = SessionHandle(
            session_id=session_id,
            sandbox=sandbox,
            sandbox_id=record.sandbox_id,
            expires_at=record.expired_at,
        )
        self.registry.insert_if_absent(handle)
        logger.info(f"[SandboxManager] Restored session {session_id} -> {record.sandbox_id}")
        return handle

    async def _live_handle_locked(self, session_id: str) -> Optional[SessionHandle]:
        """
        Tracked handle for a session, unless its deadline has passed.

        An expired handle is dropped along with its record; the remote TTL
        has already destroyed the sandbox. Caller holds the session lock.
        """
        handle = self.registry.get(session_id)
        if handle is None or not handle.is_expired():
            return handle
        logger.info(f"[SandboxManager] Sandbox {handle.sandbox_id} for session {session_id} expired, evicting")
        await self.evict_locked(session_id, kill_remote=False)
        await self._delete_record(handle.sandbox_id)
        return None

    async def _resolve_locked(self, session_id: str) -> SessionHandle:
        handle = await self._live_handle_locked(session_id) or await self._restore_locked(session_id)
        if handle is None:
            raise SandboxNotFoundError(
                f"No sandbox found for sessionId {session_id}. "
                "Please create one using the 'create' action."
            )
        handle.touch()
        return handle

    async def get_session(self, session_id: str) -> SessionHandle:
        """Live handle for a session, reconnecting after a restart if needed."""
        handle = self.registry.get(session_id)
        if handle is not None and not handle.is_expired():
            handle.touch()
            return handle
        async with self.registry.lock(session_id):
            return await self._resolve_locked(session_id)

    # =========================================================================
    # Lifecycle Actions
    # =========================================================================

    async def create(
        self,
        session_id: str,
        timeout_minutes: int | None = None,
        envs: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        timeout_minutes = timeout_minutes or self.settings.sandbox_default_timeout_minutes
        timeout_ms = timeout_minutes * 60_000
        exists = SessionAlreadyExistsError(f"Sandbox with sessionId {session_id} already exists.")

        async with self.registry.lock(session_id):
            if await self._live_handle_locked(session_id) or await self._restore_locked(session_id):
                raise exists

            async with self.session_lock.hold(session_id):
                # Another instance may have created it while we waited for the Redis lock
                if await self._restore_locked(session_id):
                    raise exists

                kwargs: dict[str, Any] = {
                    "timeout": timeout_minutes * 60,
                    "metadata": {"sessionId": session_id},
                    **self._auth(),
                }
                merged = self.executor.build_envs(envs)
                if merged:
                    kwargs["envs"] = merged
                if self.settings.e2b_template:
                    kwargs["template"] = self.settings.e2b_template

                async with remote_errors("create"):
                    sandbox = await self.sandbox_cls.create(**kwargs)

                sandbox_id = normalize_sandbox_id(sandbox.sandbox_id)
                handle = SessionHandle(
                    session_id=session_id,
                    sandbox=sandbox,
                    sandbox_id=sandbox_id,
                    expires_at=utcnow() + timedelta(milliseconds=timeout_ms),
                )
                await self._save_record(sandbox_id, session_id, timeout_ms)
                self.registry.insert_if_absent(handle)

        logger.info(
            f"[SandboxManager] Created sandbox {sandbox_id} for session {session_id} "
            f"({timeout_minutes} min)"
        )
        probe = await self.executor.probe(handle)
        return {
            "sandboxId": sandbox_id,
            "timeout": timeout_minutes,
            **probe,
        }

    async def kill(
        self,
        session_id: str | None = None,
        sandbox_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Kill a sandbox. Never raises for a target that is already gone.

        Precedence: explicit sandbox_id, then the tracked handle for the
        session, then the persisted record for the session.
        """
        target_id = normalize_sandbox_id(sandbox_id) if sandbox_id else None
        if target_id is None and session_id:
            handle = self.registry.get(session_id)
            if handle is not None:
                target_id = handle.sandbox_id
            else:
                record = await self._find_record(session_id)
                target_id = record.sandbox_id if record else None

        if target_id is None:
            return {
                "success": False,
                "message": f"No sandbox found for sessionId {session_id}; nothing to kill.",
            }

        owner = self.registry.find_by_sandbox_id(target_id)
        lock_session = owner.session_id if owner else session_id
        guard = self.registry.lock(lock_session) if lock_session else nullcontext()

        async with guard:
            owner = self.registry.find_by_sandbox_id(target_id)
            killed = False
            reason = None
            try:
                if owner is not None:
                    killed = await owner.sandbox.kill() is not False
                else:
                    killed = bool(await self.sandbox_cls.kill(target_id, **self._auth()))
                if not killed:
                    reason = "sandbox was not running"
            except Exception as e:
                reason = str(e)
                logger.warning(f"[SandboxManager] Kill of {target_id} failed: {e}")

            if owner is not None:
                self.registry.pop(owner.session_id)
            await self._delete_record(target_id)

        if killed:
            logger.info(f"[SandboxManager] Killed sandbox {target_id}")
            return {"sandboxId": target_id, "success": True, "message": f"Sandbox {target_id} has been killed."}

        logger.info(f"[SandboxManager] Sandbox {target_id} already gone ({reason}), local state cleared")
        return {
            "sandboxId": target_id,
            "success": False,
            "message": f"Sandbox {target_id} could not be killed ({reason}); local state cleared.",
        }

    async def set_timeout(self, session_id: str, timeout_minutes: int) -> dict[str, Any]:
        """Replace the sandbox deadline with now + timeout_minutes."""
        timeout_ms = timeout_minutes * 60_000
        async with self.registry.lock(session_id):
            handle = await self._resolve_locked(session_id)
            async with remote_errors("set_timeout"):
                await handle.sandbox.set_timeout(timeout_minutes * 60)
            handle.expires_at = utcnow() + timedelta(milliseconds=timeout_ms)

            try:
                record = await self.store.set_timeout(session_id, timeout_ms)
                if record is None:
                    await self.store.create_record(handle.sandbox_id, session_id, timeout_ms)
            except Exception as e:
                logger.error(f"[SandboxManager] Failed to update record for session {session_id}: {e}")

        return {
            "sandboxId": handle.sandbox_id,
            "timeout": timeout_minutes,
            "expiresAt": handle.expires_at.isoformat(),
        }

    async def list_sandboxes(self) -> list[dict[str, Any]]:
        """Sandboxes the remote service reports as alive, not just local ones."""
        async with remote_errors("list_sandboxes"):
            listed = await self.sandbox_cls.list(**self._auth())

        sandboxes = []
        for item in listed:
            sandbox_id = normalize_sandbox_id(item.sandbox_id)
            started_at = getattr(item, "started_at", None)
            state = getattr(item, "state", None)
            sandboxes.append({
                "sandboxId": sandbox_id,
                "templateId": getattr(item, "template_id", None),
                "startedAt": started_at.isoformat() if started_at else None,
                "status": getattr(state, "value", state) or "running",
                "tracked": self.registry.find_by_sandbox_id(sandbox_id) is not None,
            })
        return sandboxes

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def reconcile(self) -> int:
        """Drop persisted records that are expired or unknown to the remote service."""
        try:
            records = await self.store.list_records()
            listed = await self.sandbox_cls.list(**self._auth())
        except Exception as e:
            logger.warning(f"[SandboxManager] Reconcile skipped: {e}")
            return 0

        alive = {normalize_sandbox_id(item.sandbox_id) for item in listed}
        removed = 0
        for record in records:
            if record.is_expired() or record.sandbox_id not in alive:
                await self._delete_record(record.sandbox_id)
                removed += 1
        logger.info(f"[SandboxManager] Reconciled records: {removed} removed, {len(records) - removed} kept")
        return removed

    async def evict_locked(self, session_id: str, kill_remote: bool = True) -> bool:
        """Stop tracking a session. Caller holds the session lock."""
        handle = self.registry.pop(session_id)
        if handle is None:
            return False
        handle.commands.clear()
        if kill_remote:
            try:
                await handle.sandbox.kill()
            except Exception as e:
                logger.warning(f"[SandboxManager] Kill of {handle.sandbox_id} during eviction failed: {e}")
        logger.info(f"[SandboxManager] Evicted session {session_id} ({handle.sandbox_id})")
        return True

    async def evict(self, session_id: str, kill_remote: bool = True) -> bool:
        async with self.registry.lock(session_id):
            return await self.evict_locked(session_id, kill_remote)

    async def shutdown(self) -> None:
        """Release local handles. Remote sandboxes keep running until their deadline."""
        for session_id in self.registry.session_ids():
            await self.evict(session_id, kill_remote=False)
        await self.session_lock.close()
        await self.store.disconnect()
