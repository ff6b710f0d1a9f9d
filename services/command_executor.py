"""
Command executor for live E2B sandboxes.

Runs foreground and background processes, tracks background command handles
on the session, and wraps the sandbox file, host and code-interpreter APIs.

Background commands must use the service's native background mode. A shell
`&` does not survive the RPC boundary: the process is reaped when the
foreground call returns.
"""

import inspect
import logging
import os
import shlex
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping, Optional

from e2b import CommandExitException, NotFoundException, TimeoutException

from config import settings
from models.sandbox import CommandOutcome, SessionHandle
from services.errors import (
    CommandNotFoundError,
    CommandTimeoutError,
    RemoteUnavailableError,
    SandboxError,
    SandboxNotFoundError,
    UnsupportedEcosystemError,
)

logger = logging.getLogger(__name__)


# Package managers per ecosystem. `system` backs the `system_install` action.
INSTALL_COMMANDS = {
    "python": "pip install",
    "javascript": "npm install",
    "typescript": "npm install",
    "system": "sudo apt-get install -y",
}

# Code interpreter kernel names
KERNEL_LANGUAGES = {
    "python": "python",
    "javascript": "js",
    "typescript": "ts",
    "shell": "bash",
}


# =============================================================================
# Environment Variables
# =============================================================================

def get_hidden_env_vars(
    prefix: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Operator variables (`E2B_CODE_EV_FOO=bar` -> `FOO=bar`), never shown to callers."""
    prefix = prefix or settings.hidden_env_prefix
    source = os.environ if environ is None else environ
    return {
        key[len(prefix):]: value
        for key, value in source.items()
        if key.startswith(prefix) and len(key) > len(prefix)
    }


def merge_envs(
    hidden: Mapping[str, str],
    envs: Optional[Mapping[str, str]],
) -> Optional[dict[str, str]]:
    """Caller-supplied values win over hidden ones. None when both are empty."""
    if not hidden and not envs:
        return None
    return {**hidden, **(envs or {})}


def sanitize_output(text: Optional[str], max_size: int | None = None) -> str:
    """Truncate output if too large."""
    text = text or ""
    max_size = max_size or settings.max_output_size
    if len(text) > max_size:
        return text[:max_size] + f"\n\n... (truncated, {len(text) - max_size} bytes remaining)"
    return text


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@asynccontextmanager
async def remote_errors(operation: str) -> AsyncIterator[None]:
    """Translate sandbox SDK failures into the service error taxonomy."""
    try:
        yield
    except SandboxError:
        raise
    except TimeoutException as e:
        raise CommandTimeoutError(f"{operation} timed out: {e}") from e
    except NotFoundException as e:
        raise SandboxNotFoundError(f"{operation} failed, sandbox resource not found: {e}") from e
    except Exception as e:
        logger.warning(f"[CommandExecutor] {operation} failed: {e}")
        raise RemoteUnavailableError(f"{operation} failed: {e}") from e


class CommandExecutor:
    """Runs processes inside an already-live sandbox."""

    def __init__(
        self,
        hidden_env_prefix: str | None = None,
        command_timeout: int | None = None,
        install_timeout: int | None = None,
        max_output_size: int | None = None,
    ):
        self.hidden_env_prefix = hidden_env_prefix or settings.hidden_env_prefix
        self.command_timeout = command_timeout or settings.command_timeout_seconds
        self.install_timeout = install_timeout or settings.install_timeout_seconds
        self.max_output_size = max_output_size or settings.max_output_size

    def build_envs(self, envs: Optional[Mapping[str, str]]) -> Optional[dict[str, str]]:
        return merge_envs(get_hidden_env_vars(self.hidden_env_prefix), envs)

    def _run_kwargs(
        self,
        envs: Optional[Mapping[str, str]],
        cwd: Optional[str],
        user: Optional[str],
        timeout: Optional[float],
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"timeout": timeout}
        merged = self.build_envs(envs)
        if merged:
            kwargs["envs"] = merged
        if cwd:
            kwargs["cwd"] = cwd
        if user:
            kwargs["user"] = user
        return kwargs

    # =========================================================================
    # Process Execution
    # =========================================================================

    async def run_foreground(
        self,
        handle: SessionHandle,
        command: str,
        envs: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        user: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> CommandOutcome:
        """Run a command and wait for it to exit."""
        timeout = timeout_ms / 1000 if timeout_ms else self.command_timeout
        kwargs = self._run_kwargs(envs, cwd, user, timeout)
        logger.debug(f"[CommandExecutor] Running in {handle.sandbox_id}: {command[:100]}")

        async with remote_errors("command_run"):
            try:
                result = await handle.sandbox.commands.run(command, **kwargs)
            except CommandExitException as e:
                # Non-zero exit is a normal outcome, not a failure of the call
                result = e

        handle.touch()
        return CommandOutcome(
            stdout=sanitize_output(result.stdout, self.max_output_size),
            stderr=sanitize_output(result.stderr, self.max_output_size),
            exit_code=result.exit_code,
        )

    async def run_background(
        self,
        handle: SessionHandle,
        command: str,
        envs: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        user: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> str:
        """Start a command without waiting; returns the command id."""
        # 0 keeps the command connection open for the sandbox lifetime
        timeout = timeout_ms / 1000 if timeout_ms else 0
        kwargs = self._run_kwargs(envs, cwd, user, timeout)

        async with remote_errors("command_run"):
            command_handle = await handle.sandbox.commands.run(command, background=True, **kwargs)

        command_id = str(command_handle.pid)
        handle.commands[command_id] = command_handle
        handle.touch()
        logger.info(
            f"[CommandExecutor] Background command {command_id} started in "
            f"{handle.sandbox_id} for session {handle.session_id}"
        )
        return command_id

    async def kill_command(
        self,
        handle: SessionHandle,
        command_id: Optional[str] = None,
        pid: Optional[int] = None,
    ) -> str:
        """
        Terminate a background command by tracked command id, or any process by pid.

        Returns the id that was killed.
        """
        if command_id is None and pid is not None and str(pid) in handle.commands:
            command_id = str(pid)

        if command_id is not None:
            command_handle = handle.commands.get(command_id)
            if command_handle is None:
                raise CommandNotFoundError(f"No background command found with ID {command_id}.")
            async with remote_errors("kill_command"):
                killed = await command_handle.kill()
            handle.commands.pop(command_id, None)
            handle.touch()
            if killed is False:
                logger.info(f"[CommandExecutor] Command {command_id} had already exited")
            return command_id

        async with remote_errors("kill_command"):
            killed = await handle.sandbox.commands.kill(pid)
        if not killed:
            raise CommandNotFoundError(f"No running process found with pid {pid}.")
        handle.touch()
        return str(pid)

    async def start_server(
        self,
        handle: SessionHandle,
        command: str,
        port: int,
        log_file: str,
        envs: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        user: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> dict[str, Any]:
        """Start a server in the background with output redirected to a log file."""
        server_command = f"{command} > {shlex.quote(log_file)} 2>&1"
        command_id = await self.run_background(
            handle, server_command, envs=envs, cwd=cwd, user=user, timeout_ms=timeout_ms
        )
        host = await self.get_host(handle, port)
        return {
            "commandId": command_id,
            "host": host,
            "port": port,
            "logFile": log_file,
        }

    # =========================================================================
    # Introspection
    # =========================================================================

    async def _list_processes(self, handle: SessionHandle) -> list[Any]:
        async with remote_errors("command_list"):
            return list(await handle.sandbox.commands.list())

    def _drop_finished(self, handle: SessionHandle, tracked: set[str], running_pids: set[str]) -> list[str]:
        # Only ids tracked before the listing; anything started since is not in it
        finished = [cid for cid in tracked if cid not in running_pids]
        for command_id in finished:
            handle.commands.pop(command_id, None)
        if finished:
            logger.debug(
                f"[CommandExecutor] Dropped finished commands {finished} for session {handle.session_id}"
            )
        return finished

    async def list_commands(self, handle: SessionHandle) -> list[dict[str, Any]]:
        """List running processes; tracked ids whose process is gone are dropped."""
        tracked = set(handle.commands)
        processes = await self._list_processes(handle)
        running = {str(p.pid) for p in processes}
        self._drop_finished(handle, tracked, running)
        handle.touch()
        return [
            {
                "commandId": str(p.pid),
                "pid": p.pid,
                "cmd": p.cmd,
                "args": list(p.args or []),
                "cwd": p.cwd,
                "tag": p.tag,
                "tracked": str(p.pid) in handle.commands,
            }
            for p in processes
        ]

    async def prune_finished_commands(self, handle: SessionHandle) -> list[str]:
        """Drop tracked commands that have exited. Does not count as access."""
        tracked = set(handle.commands)
        if not tracked:
            return []
        processes = await self._list_processes(handle)
        return self._drop_finished(handle, tracked, {str(p.pid) for p in processes})

    async def process_info(self, handle: SessionHandle, pid: int) -> dict[str, Any]:
        processes = await self._list_processes(handle)
        handle.touch()
        for p in processes:
            if p.pid == pid:
                # envs are left out: they carry the hidden operator variables
                return {
                    "pid": p.pid,
                    "cmd": p.cmd,
                    "args": list(p.args or []),
                    "cwd": p.cwd,
                    "tag": p.tag,
                    "tracked": str(p.pid) in handle.commands,
                }
        raise CommandNotFoundError(f"No running process found with pid {pid}.")

    # =========================================================================
    # Packages and Code
    # =========================================================================

    async def install_packages(
        self,
        handle: SessionHandle,
        packages: list[str],
        ecosystem: str,
        envs: Optional[Mapping[str, str]] = None,
    ) -> CommandOutcome:
        installer = INSTALL_COMMANDS.get(ecosystem)
        if installer is None:
            raise UnsupportedEcosystemError(
                f"Unsupported language for package installation: {ecosystem}"
            )
        command = f"{installer} {' '.join(shlex.quote(p) for p in packages)}"
        logger.info(f"[CommandExecutor] Installing {packages} with {installer} in {handle.sandbox_id}")
        return await self.run_foreground(
            handle, command, envs=envs, timeout_ms=self.install_timeout * 1000
        )

    async def execute_code(
        self,
        handle: SessionHandle,
        code: str,
        language: str = "python",
        envs: Optional[Mapping[str, str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> dict[str, Any]:
        """Run code in the sandbox's code-interpreter kernel."""
        kwargs: dict[str, Any] = {"language": KERNEL_LANGUAGES.get(language, language)}
        merged = self.build_envs(envs)
        if merged:
            kwargs["envs"] = merged
        if timeout_ms:
            kwargs["timeout"] = timeout_ms / 1000

        async with remote_errors("execute"):
            execution = await handle.sandbox.run_code(code, **kwargs)

        handle.touch()
        error = None
        if execution.error is not None:
            error = {
                "name": execution.error.name,
                "value": execution.error.value,
                "traceback": sanitize_output(execution.error.traceback, self.max_output_size),
            }
        return {
            "output": sanitize_output(execution.text, self.max_output_size),
            "logs": {
                "stdout": list(execution.logs.stdout),
                "stderr": list(execution.logs.stderr),
            },
            "executionError": error,
        }

    # =========================================================================
    # Files and Network
    # =========================================================================

    async def write_file(self, handle: SessionHandle, path: str, content: str) -> None:
        async with remote_errors("write_file"):
            await handle.sandbox.files.write(path, content)
        handle.touch()

    async def read_file(self, handle: SessionHandle, path: str) -> str:
        async with remote_errors("read_file"):
            content = await handle.sandbox.files.read(path)
        handle.touch()
        return content if isinstance(content, str) else bytes(content).decode(errors="replace")

    async def download_url(self, handle: SessionHandle, path: str) -> str:
        async with remote_errors("get_file_downloadurl"):
            url = await _maybe_await(handle.sandbox.download_url(path))
        handle.touch()
        return url

    async def get_host(self, handle: SessionHandle, port: int) -> str:
        async with remote_errors("get_host"):
            host = await _maybe_await(handle.sandbox.get_host(port))
        handle.touch()
        return host

    async def probe(self, handle: SessionHandle) -> dict[str, Optional[str]]:
        """Identity and working directory of a fresh sandbox."""
        probe: dict[str, Optional[str]] = {"currentUser": None, "currentDirectory": None}
        for key, command in (("currentUser", "whoami"), ("currentDirectory", "pwd")):
            try:
                outcome = await self.run_foreground(handle, command)
                if outcome.success:
                    probe[key] = outcome.stdout.strip()
            except SandboxError as e:
                logger.warning(f"[CommandExecutor] Probe `{command}` failed in {handle.sandbox_id}: {e}")
        return probe
