"""
Pytest configuration and fixtures for the sandbox session service tests.

`FakeSandboxService` stands in for the E2B API: it exposes the same
`create`/`connect`/`list`/`kill` coroutines as `AsyncSandbox` and hands out
`FakeSandbox` instances that keep processes and files in memory.
"""

import asyncio
import os
import sys
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Optional

import pytest

# Add the parent directory to the path so we can import the packages
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from e2b import CommandExitException, NotFoundException  # noqa: E402

from config import Settings  # noqa: E402
from services import InMemorySandboxRecordStore, SandboxManager  # noqa: E402
from tools import SandboxTool  # noqa: E402


def command_exit_exception(stdout: str, stderr: str, exit_code: int) -> CommandExitException:
    """Build the SDK's non-zero-exit exception without depending on its constructor."""
    exc = CommandExitException.__new__(CommandExitException)
    exc.stdout = stdout
    exc.stderr = stderr
    exc.exit_code = exit_code
    exc.error = stderr
    return exc


class FakeCommandHandle:
    def __init__(self, sandbox: "FakeSandbox", pid: int):
        self.sandbox = sandbox
        self.pid = pid

    async def kill(self) -> bool:
        return self.sandbox.processes.pop(self.pid, None) is not None


class FakeCommands:
    def __init__(self, sandbox: "FakeSandbox"):
        self.sandbox = sandbox

    async def run(
        self,
        cmd: str,
        background: bool = False,
        envs: Optional[dict] = None,
        user: Optional[str] = None,
        cwd: Optional[str] = None,
        timeout: Optional[float] = 60,
        **kwargs: Any,
    ):
        sandbox = self.sandbox
        sandbox.runs.append({
            "cmd": cmd,
            "background": background,
            "envs": envs,
            "user": user,
            "cwd": cwd,
            "timeout": timeout,
        })

        if background:
            sandbox.next_pid += 1
            pid = sandbox.next_pid
            sandbox.processes[pid] = SimpleNamespace(
                pid=pid,
                tag=None,
                cmd="/bin/bash",
                args=["-l", "-c", cmd],
                envs=dict(envs or {}),
                cwd=cwd,
            )
            return FakeCommandHandle(sandbox, pid)

        response = sandbox.responses.get(cmd)
        if isinstance(response, Exception):
            raise response
        if response is None:
            if cmd == "whoami":
                response = (f"{user or 'user'}\n", "", 0)
            elif cmd == "pwd":
                response = (f"{cwd or '/home/user'}\n", "", 0)
            else:
                response = ("", "", 0)

        stdout, stderr, exit_code = response
        if exit_code != 0:
            raise command_exit_exception(stdout, stderr, exit_code)
        return SimpleNamespace(stdout=stdout, stderr=stderr, exit_code=exit_code, error=None)

    async def list(self):
        return list(self.sandbox.processes.values())

    async def kill(self, pid: int) -> bool:
        return self.sandbox.processes.pop(pid, None) is not None


class FakeFiles:
    def __init__(self):
        self.contents: dict[str, str] = {}

    async def write(self, path: str, data: str):
        self.contents[path] = data
        return SimpleNamespace(name=os.path.basename(path), path=path, type="file")

    async def read(self, path: str) -> str:
        if path not in self.contents:
            raise NotFoundException(f"Path '{path}' does not exist")
        return self.contents[path]


class FakeSandbox:
    def __init__(self, sandbox_id: str, envs: Optional[dict] = None, timeout: Optional[int] = None):
        self.sandbox_id = sandbox_id
        self.envs = dict(envs or {})
        self.timeout = timeout
        self.alive = True
        self.started_at = datetime.now(timezone.utc)
        self.next_pid = 100
        self.processes: dict[int, SimpleNamespace] = {}
        self.runs: list[dict] = []
        self.responses: dict[str, Any] = {}
        self.code_outputs: dict[str, str] = {}
        self.timeout_calls: list[int] = []
        self.commands = FakeCommands(self)
        self.files = FakeFiles()

    def finish(self, pid: int) -> None:
        """Simulate a background process exiting on its own."""
        self.processes.pop(pid, None)

    async def set_timeout(self, timeout: int) -> None:
        self.timeout_calls.append(timeout)
        self.timeout = timeout

    async def kill(self) -> bool:
        was_alive = self.alive
        self.alive = False
        return was_alive

    def get_host(self, port: int) -> str:
        return f"{port}-{self.sandbox_id}.e2b.app"

    def download_url(self, path: str) -> str:
        return f"https://49983-{self.sandbox_id}.e2b.app/files?path={path}"

    async def run_code(self, code: str, language: Optional[str] = None, envs: Optional[dict] = None, **kwargs):
        self.runs.append({"code": code, "language": language, "envs": envs})
        if code.startswith("raise"):
            return SimpleNamespace(
                text=None,
                logs=SimpleNamespace(stdout=[], stderr=[]),
                error=SimpleNamespace(
                    name="ValueError",
                    value="boom",
                    traceback="Traceback (most recent call last):\nValueError: boom",
                ),
            )
        return SimpleNamespace(
            text=self.code_outputs.get(code, ""),
            logs=SimpleNamespace(stdout=[f"ran {language}\n"], stderr=[]),
            error=None,
        )


class FakeSandboxService:
    """In-memory replacement for the `AsyncSandbox` class methods."""

    def __init__(self):
        self.sandboxes: dict[str, FakeSandbox] = {}
        self.create_calls: list[dict] = []
        self.connect_calls: list[str] = []
        self.connect_hangs = 0
        self.counter = 0

    def get(self, sandbox_id: str) -> Optional[FakeSandbox]:
        return self.sandboxes.get(sandbox_id.split("-", 1)[0])

    async def create(self, timeout: Optional[int] = None, envs: Optional[dict] = None, **kwargs):
        self.create_calls.append({"timeout": timeout, "envs": envs, **kwargs})
        self.counter += 1
        prefix = f"ib1v2xb0f36jzttf1zyif{self.counter}"
        sandbox = FakeSandbox(f"{prefix}-4b1cc5d5", envs=envs, timeout=timeout)
        self.sandboxes[prefix] = sandbox
        return sandbox

    async def connect(self, sandbox_id: str, **kwargs):
        self.connect_calls.append(sandbox_id)
        if self.connect_hangs > 0:
            self.connect_hangs -= 1
            await asyncio.sleep(5)
        sandbox = self.get(sandbox_id)
        if sandbox is None or not sandbox.alive:
            raise NotFoundException(f"Sandbox {sandbox_id} not found")
        return sandbox

    async def list(self, **kwargs):
        return [
            SimpleNamespace(
                sandbox_id=sandbox.sandbox_id,
                template_id="code-interpreter-v1",
                started_at=sandbox.started_at,
                metadata={},
            )
            for sandbox in self.sandboxes.values()
            if sandbox.alive
        ]

    async def kill(self, sandbox_id: str, **kwargs) -> bool:
        sandbox = self.get(sandbox_id)
        if sandbox is None or not sandbox.alive:
            return False
        sandbox.alive = False
        return True


@pytest.fixture(autouse=True)
def set_test_env(monkeypatch):
    """Set environment variables for testing."""
    monkeypatch.setenv("E2B_API_KEY", "e2b_test_key")
    for key in list(os.environ):
        if key.startswith("E2B_CODE_EV_"):
            monkeypatch.delenv(key)
    yield


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        e2b_api_key="e2b_test_key",
        database_url=None,
        enable_distributed_lock=False,
        reconnect_retry_delay_seconds=0,
    )


@pytest.fixture
def fake_service():
    return FakeSandboxService()


@pytest.fixture
def record_store():
    return InMemorySandboxRecordStore()


@pytest.fixture
def manager(fake_service, record_store, test_settings):
    return SandboxManager(
        store=record_store,
        sandbox_cls=fake_service,
        settings=test_settings,
    )


@pytest.fixture
def tool(manager):
    return SandboxTool(manager)
