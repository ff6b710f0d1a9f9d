"""Tests for the sandbox lifecycle controller."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from config import Settings
from models import utcnow
from services import (
    DistributedSessionLock,
    MissingCredentialError,
    SandboxManager,
    SandboxNotFoundError,
    SessionAlreadyExistsError,
    normalize_sandbox_id,
)


def restarted(manager: SandboxManager, fake_service) -> SandboxManager:
    """Same record store and remote service, empty registry."""
    return SandboxManager(
        store=manager.store,
        sandbox_cls=fake_service,
        settings=manager.settings,
    )


class TestConstruction:
    def test_missing_api_key_raises(self):
        settings = Settings(_env_file=None, e2b_api_key=None)
        with pytest.raises(MissingCredentialError):
            SandboxManager(settings=settings)

    def test_normalize_sandbox_id(self):
        assert normalize_sandbox_id("abc123-xyz") == "abc123"
        assert normalize_sandbox_id("abc123") == "abc123"


class TestCreate:
    """Test cases for SandboxManager.create."""

    @pytest.mark.asyncio
    async def test_create_returns_sandbox_details(self, manager, fake_service, record_store):
        result = await manager.create("s1", timeout_minutes=5)

        assert result["sandboxId"] == "ib1v2xb0f36jzttf1zyif1"
        assert result["currentDirectory"] == "/home/user"
        assert result["currentUser"] == "user"
        assert fake_service.create_calls[0]["timeout"] == 300
        assert fake_service.create_calls[0]["metadata"] == {"sessionId": "s1"}

        record = await record_store.find_by_session_id("s1")
        assert record.sandbox_id == "ib1v2xb0f36jzttf1zyif1"
        assert manager.registry.get("s1").sandbox_id == "ib1v2xb0f36jzttf1zyif1"

    @pytest.mark.asyncio
    async def test_create_default_timeout(self, manager, fake_service):
        await manager.create("s1")
        assert fake_service.create_calls[0]["timeout"] == 60 * 60

    @pytest.mark.asyncio
    async def test_create_twice_already_exists(self, manager, fake_service):
        await manager.create("s1")

        with pytest.raises(SessionAlreadyExistsError):
            await manager.create("s1")

        assert len(fake_service.create_calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_make_one_sandbox(self, manager, fake_service):
        results = await asyncio.gather(
            manager.create("s1"),
            manager.create("s1"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], SessionAlreadyExistsError)
        assert len(fake_service.create_calls) == 1

    @pytest.mark.asyncio
    async def test_create_after_restart_with_live_sandbox(self, manager, fake_service):
        """A session whose sandbox survived a restart is still taken."""
        await manager.create("s1")
        fresh = restarted(manager, fake_service)

        with pytest.raises(SessionAlreadyExistsError):
            await fresh.create("s1")

        assert "s1" in fresh.registry

    @pytest.mark.asyncio
    async def test_caller_envs_win_over_hidden(self, manager, fake_service, monkeypatch):
        monkeypatch.setenv("E2B_CODE_EV_API_TOKEN", "secret")
        monkeypatch.setenv("E2B_CODE_EV_SHARED", "operator")

        await manager.create("s1", envs={"SHARED": "caller"})

        assert fake_service.create_calls[0]["envs"] == {"API_TOKEN": "secret", "SHARED": "caller"}

    @pytest.mark.asyncio
    async def test_record_failure_is_not_fatal(self, manager, record_store):
        record_store.create_record = AsyncMock(side_effect=RuntimeError("db down"))

        result = await manager.create("s1")

        assert result["sandboxId"]
        assert "s1" in manager.registry

    @pytest.mark.asyncio
    async def test_create_after_deadline_replaces_expired_handle(self, manager, fake_service, record_store):
        """A handle past its deadline no longer blocks a new sandbox for the session."""
        first = await manager.create("s1")
        manager.registry.get("s1").expires_at = utcnow() - timedelta(minutes=1)
        fake_service.get(first["sandboxId"]).alive = False

        second = await manager.create("s1")

        assert second["sandboxId"] != first["sandboxId"]
        assert len(fake_service.create_calls) == 2
        assert manager.registry.get("s1").sandbox_id == second["sandboxId"]
        record = await record_store.find_by_session_id("s1")
        assert record.sandbox_id == second["sandboxId"]

    @pytest.mark.asyncio
    async def test_create_rechecks_records_under_distributed_lock(self, fake_service, record_store, test_settings):
        """A sandbox created by another instance while we waited for Redis is not duplicated."""
        other_ids = []

        async def acquire_after_other_instance_creates():
            other = await fake_service.create(timeout=3600)
            other_id = normalize_sandbox_id(other.sandbox_id)
            other_ids.append(other_id)
            await record_store.create_record(other_id, "s1", 60_000)
            return True

        redis_lock = MagicMock()
        redis_lock.acquire = AsyncMock(side_effect=acquire_after_other_instance_creates)
        redis_lock.release = AsyncMock()
        client = MagicMock()
        client.lock.return_value = redis_lock
        manager = SandboxManager(
            store=record_store,
            session_lock=DistributedSessionLock(enabled=True, client=client),
            sandbox_cls=fake_service,
            settings=test_settings,
        )

        with pytest.raises(SessionAlreadyExistsError):
            await manager.create("s1")

        assert len(fake_service.create_calls) == 1
        assert (await record_store.find_by_session_id("s1")).sandbox_id == other_ids[0]
        assert manager.registry.get("s1").sandbox_id == other_ids[0]
        redis_lock.release.assert_awaited_once()


class TestKill:
    """Test cases for the tolerant kill."""

    @pytest.mark.asyncio
    async def test_kill_by_session(self, manager, fake_service, record_store):
        created = await manager.create("s1")

        result = await manager.kill(session_id="s1")

        assert result["success"] is True
        assert result["sandboxId"] == created["sandboxId"]
        assert "s1" not in manager.registry
        assert await record_store.find_by_session_id("s1") is None
        assert fake_service.get(created["sandboxId"]).alive is False

    @pytest.mark.asyncio
    async def test_kill_twice_never_raises(self, manager):
        created = await manager.create("s1")
        sandbox_id = created["sandboxId"]

        first = await manager.kill(sandbox_id=sandbox_id)
        second = await manager.kill(sandbox_id=sandbox_id)

        assert first["success"] is True
        assert second["success"] is False
        assert "message" in second

    @pytest.mark.asyncio
    async def test_kill_dead_sandbox_twice(self, manager, fake_service):
        created = await manager.create("s1")
        fake_service.get(created["sandboxId"]).alive = False

        first = await manager.kill(sandbox_id=created["sandboxId"])
        second = await manager.kill(sandbox_id=created["sandboxId"])

        assert first["success"] is False
        assert second["success"] is False
        assert "s1" not in manager.registry

    @pytest.mark.asyncio
    async def test_explicit_sandbox_id_wins(self, manager, fake_service):
        await manager.create("s1")
        other = await manager.create("s2")

        result = await manager.kill(session_id="s1", sandbox_id=other["sandboxId"])

        assert result["sandboxId"] == other["sandboxId"]
        assert "s1" in manager.registry
        assert "s2" not in manager.registry

    @pytest.mark.asyncio
    async def test_kill_accepts_suffixed_id(self, manager, fake_service):
        created = await manager.create("s1")

        result = await manager.kill(sandbox_id=f"{created['sandboxId']}-4b1cc5d5")

        assert result["sandboxId"] == created["sandboxId"]
        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_kill_from_persisted_record(self, manager, fake_service):
        created = await manager.create("s1")
        fresh = restarted(manager, fake_service)

        result = await fresh.kill(session_id="s1")

        assert result["success"] is True
        assert fake_service.get(created["sandboxId"]).alive is False

    @pytest.mark.asyncio
    async def test_kill_unknown_session(self, manager):
        result = await manager.kill(session_id="never-created")

        assert result["success"] is False
        assert "never-created" in result["message"]

    @pytest.mark.asyncio
    async def test_kill_remote_error_clears_local_state(self, manager):
        await manager.create("s1")
        manager.registry.get("s1").sandbox.kill = AsyncMock(side_effect=RuntimeError("unreachable"))

        result = await manager.kill(session_id="s1")

        assert result["success"] is False
        assert "unreachable" in result["message"]
        assert "s1" not in manager.registry


class TestSetTimeout:
    @pytest.mark.asyncio
    async def test_set_timeout_replaces_deadline(self, manager, fake_service, record_store):
        created = await manager.create("s1")

        await manager.set_timeout("s1", 30)
        await manager.set_timeout("s1", 10)

        sandbox = fake_service.get(created["sandboxId"])
        assert sandbox.timeout_calls == [1800, 600]

        expected = utcnow() + timedelta(minutes=10)
        handle = manager.registry.get("s1")
        assert abs((handle.expires_at - expected).total_seconds()) < 5
        record = await record_store.find_by_session_id("s1")
        assert abs((record.expired_at - expected).total_seconds()) < 5

    @pytest.mark.asyncio
    async def test_set_timeout_unknown_session(self, manager):
        with pytest.raises(SandboxNotFoundError):
            await manager.set_timeout("missing", 10)


class TestListSandboxes:
    @pytest.mark.asyncio
    async def test_list_normalizes_ids(self, manager, fake_service):
        created = await manager.create("s1")
        await fake_service.create()  # started by someone else

        sandboxes = await manager.list_sandboxes()

        assert all("-" not in s["sandboxId"] for s in sandboxes)
        by_id = {s["sandboxId"]: s for s in sandboxes}
        assert by_id[created["sandboxId"]]["tracked"] is True
        assert by_id["ib1v2xb0f36jzttf1zyif2"]["tracked"] is False
        assert by_id[created["sandboxId"]]["status"] == "running"
        assert by_id[created["sandboxId"]]["templateId"] == "code-interpreter-v1"


class TestGetSession:
    """Test cases for handle lookup and reconnection."""

    @pytest.mark.asyncio
    async def test_registry_hit_touches(self, manager):
        await manager.create("s1")
        handle = manager.registry.get("s1")
        handle.last_accessed_at = utcnow() - timedelta(hours=1)

        assert await manager.get_session("s1") is handle
        assert handle.idle_seconds() < 5

    @pytest.mark.asyncio
    async def test_reconnects_after_restart(self, manager, fake_service):
        created = await manager.create("s1")
        fresh = restarted(manager, fake_service)

        handle = await fresh.get_session("s1")

        assert handle.sandbox_id == created["sandboxId"]
        assert fake_service.connect_calls == [created["sandboxId"]]
        assert "s1" in fresh.registry

    @pytest.mark.asyncio
    async def test_dead_sandbox_removes_record(self, manager, fake_service, record_store):
        created = await manager.create("s1")
        fake_service.get(created["sandboxId"]).alive = False
        fresh = restarted(manager, fake_service)

        with pytest.raises(SandboxNotFoundError):
            await fresh.get_session("s1")

        assert await record_store.find_by_session_id("s1") is None

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, manager, fake_service, monkeypatch):
        monkeypatch.setattr("services.sandbox_manager.RECONNECT_TIMEOUT_S", 0.05)
        created = await manager.create("s1")
        fresh = restarted(manager, fake_service)
        fake_service.connect_hangs = 1

        handle = await fresh.get_session("s1")

        assert handle.sandbox_id == created["sandboxId"]
        assert len(fake_service.connect_calls) == 2

    @pytest.mark.asyncio
    async def test_expired_record_not_reconnected(self, manager, fake_service, record_store):
        await record_store.create_record("oldsandbox", "s1", -1000)

        with pytest.raises(SandboxNotFoundError):
            await manager.get_session("s1")

        assert fake_service.connect_calls == []
        assert await record_store.find_by_session_id("s1") is None

    @pytest.mark.asyncio
    async def test_unknown_session(self, manager):
        with pytest.raises(SandboxNotFoundError):
            await manager.get_session("never-created")

    @pytest.mark.asyncio
    async def test_expired_handle_is_not_found(self, manager, fake_service, record_store):
        created = await manager.create("s1")
        manager.registry.get("s1").expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(SandboxNotFoundError):
            await manager.get_session("s1")

        assert "s1" not in manager.registry
        assert await record_store.find_by_session_id("s1") is None
        assert fake_service.connect_calls == []
        assert fake_service.get(created["sandboxId"]).alive is True


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_reconcile_drops_stale_records(self, manager, fake_service, record_store):
        live = await manager.create("live")
        dead = await manager.create("dead")
        fake_service.get(dead["sandboxId"]).alive = False
        await record_store.create_record("expiredsbx", "expired", -1000)

        removed = await manager.reconcile()

        assert removed == 2
        records = await record_store.list_records()
        assert [r.sandbox_id for r in records] == [live["sandboxId"]]

    @pytest.mark.asyncio
    async def test_reconcile_skipped_when_remote_unavailable(self, manager, fake_service, record_store):
        await manager.create("s1")
        fake_service.list = AsyncMock(side_effect=RuntimeError("api down"))

        assert await manager.reconcile() == 0
        assert len(await record_store.list_records()) == 1

    @pytest.mark.asyncio
    async def test_evict_kills_remote(self, manager, fake_service):
        created = await manager.create("s1")

        assert await manager.evict("s1") is True
        assert await manager.evict("s1") is False
        assert fake_service.get(created["sandboxId"]).alive is False

    @pytest.mark.asyncio
    async def test_shutdown_keeps_remote_alive(self, manager, fake_service):
        created = await manager.create("s1")

        await manager.shutdown()

        assert len(manager.registry) == 0
        assert fake_service.get(created["sandboxId"]).alive is True
