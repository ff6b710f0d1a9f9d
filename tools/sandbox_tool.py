"""
E2BCode tool: single entry point for every sandbox action.

Each action maps to an ActionSpec in ACTIONS (handler + required parameters).
`SandboxTool.arun` validates the payload, checks the action's parameters,
runs the handler and always returns a JSON string:

    {"sessionId": ..., "success": true, ...}
    {"sessionId": ..., "success": false, "error": ..., "errorType": ...}

Nothing raises past `arun`.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from langchain_core.tools import StructuredTool
from pydantic import ValidationError

from models.actions import ACTION_NAMES, SandboxActionInput
from services.errors import MissingParameterError, SandboxError, SandboxNotFoundError
from services.sandbox_manager import SandboxManager
from tools.help_text import ACTION_HELP, TOOL_DESCRIPTION

logger = logging.getLogger(__name__)


Handler = Callable[["SandboxTool", SandboxActionInput], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ActionSpec:
    """Handler for one action plus the parameters it needs."""

    handler: Handler
    required: tuple[str, ...] = ()
    # Groups where any one member is enough, e.g. ("commandId", "pid")
    one_of: tuple[tuple[str, ...], ...] = ()

    def validate(self, action: str, request: SandboxActionInput) -> None:
        missing = [name for name in self.required if getattr(request, name) is None]
        if missing:
            raise MissingParameterError(action, missing)
        for group in self.one_of:
            if all(getattr(request, name) is None for name in group):
                raise MissingParameterError(action, list(group), any_of=True)


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"]) or "input"
        parts.append(f"{location}: {err['msg']}")
    return "Invalid input: " + "; ".join(parts)


def _outcome_result(outcome) -> dict[str, Any]:
    result = {
        "output": outcome.stdout,
        "stderr": outcome.stderr,
        "exitCode": outcome.exit_code,
        "success": outcome.success,
    }
    if not outcome.success:
        result["error"] = f"Command exited with code {outcome.exit_code}"
    return result


# =============================================================================
# Lifecycle Handlers
# =============================================================================

async def _help(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    if request.command_name:
        action_spec = ACTIONS.get(request.command_name)
        if action_spec is None:
            return {
                "success": False,
                "error": (
                    f"Unknown action `{request.command_name}`. "
                    f"Available actions: {', '.join(ACTION_NAMES)}"
                ),
            }
        description, optional = ACTION_HELP[request.command_name]
        return {
            "action": request.command_name,
            "description": description,
            "required": list(action_spec.required) + [" or ".join(group) for group in action_spec.one_of],
            "optional": optional,
        }
    return {
        "message": TOOL_DESCRIPTION,
        "actions": {name: ACTION_HELP[name][0] for name in ACTION_NAMES},
    }


async def _create(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    result = await tool.manager.create(request.sessionId, request.timeout, request.envs)
    result["message"] = f"Sandbox created with sessionId {request.sessionId}"
    return result


async def _list_sandboxes(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    return {"sandboxes": await tool.manager.list_sandboxes()}


async def _kill(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    return await tool.manager.kill(session_id=request.sessionId, sandbox_id=request.sandboxId)


async def _set_timeout(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    result = await tool.manager.set_timeout(request.sessionId, request.timeout)
    result["message"] = f"Timeout set to {request.timeout} minutes"
    return result


# =============================================================================
# Operational Handlers
# =============================================================================

async def _execute(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    result = await tool.executor.execute_code(
        handle, request.code, request.language, envs=request.envs, timeout_ms=request.timeoutMs
    )
    error = result["executionError"]
    if error is not None:
        result["success"] = False
        result["error"] = f"{error['name']}: {error['value']}"
    return result


async def _run_command(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    command = request.cmd or request.command
    options = {
        "envs": request.envs,
        "cwd": request.cwd,
        "user": request.user,
        "timeout_ms": request.timeoutMs,
    }
    if request.background:
        command_id = await tool.executor.run_background(handle, command, **options)
        return {
            "commandId": command_id,
            "message": "Background command started",
        }
    outcome = await tool.executor.run_foreground(handle, command, **options)
    return _outcome_result(outcome)


async def _kill_command(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    async with tool.manager.registry.lock(request.sessionId):
        if tool.manager.registry.get(request.sessionId) is not handle:
            raise SandboxNotFoundError(f"Sandbox for sessionId {request.sessionId} is no longer tracked.")
        killed = await tool.executor.kill_command(handle, command_id=request.commandId, pid=request.pid)
    return {
        "commandId": killed,
        "message": f"Command {killed} killed",
    }


async def _write_file(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    await tool.executor.write_file(handle, request.filePath, request.fileContent)
    return {"filePath": request.filePath, "message": f"File written to {request.filePath}"}


async def _read_file(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    content = await tool.executor.read_file(handle, request.filePath)
    return {"filePath": request.filePath, "content": content}


async def _install(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    packages = request.packages or request.code.split()
    if not packages:
        raise MissingParameterError("install", ["packages"])
    outcome = await tool.executor.install_packages(handle, packages, request.language, envs=request.envs)
    return {"packages": packages, **_outcome_result(outcome)}


async def _system_install(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    outcome = await tool.executor.install_packages(handle, request.packages, "system", envs=request.envs)
    return {"packages": request.packages, **_outcome_result(outcome)}


async def _download_url(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    url = await tool.executor.download_url(handle, request.filePath)
    return {"filePath": request.filePath, "downloadUrl": url}


async def _get_host(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    host = await tool.executor.get_host(handle, request.port)
    return {"host": host, "port": request.port}


async def _start_server(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    result = await tool.executor.start_server(
        handle,
        request.cmd,
        request.port,
        request.logFile,
        envs=request.envs,
        cwd=request.cwd,
        user=request.user,
        timeout_ms=request.timeoutMs,
    )
    result["message"] = f"Server started in background, logs in {request.logFile}"
    return result


async def _command_list(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    return {"commands": await tool.executor.list_commands(handle)}


async def _processinfo(tool: "SandboxTool", request: SandboxActionInput) -> dict[str, Any]:
    handle = await tool.manager.get_session(request.sessionId)
    return {"process": await tool.executor.process_info(handle, request.pid)}


_SESSION = ("sessionId",)

ACTIONS: dict[str, ActionSpec] = {
    "help": ActionSpec(_help),
    "create": ActionSpec(_create, _SESSION),
    "list_sandboxes": ActionSpec(_list_sandboxes),
    "kill": ActionSpec(_kill, one_of=(("sessionId", "sandboxId"),)),
    "set_timeout": ActionSpec(_set_timeout, _SESSION + ("timeout",)),
    "execute": ActionSpec(_execute, _SESSION + ("code",)),
    "shell": ActionSpec(_run_command, _SESSION, one_of=(("cmd", "command"),)),
    "command_run": ActionSpec(_run_command, _SESSION, one_of=(("cmd", "command"),)),
    "kill_command": ActionSpec(_kill_command, _SESSION, one_of=(("commandId", "pid"),)),
    "command_kill": ActionSpec(_kill_command, _SESSION, one_of=(("commandId", "pid"),)),
    "write_file": ActionSpec(_write_file, _SESSION + ("filePath", "fileContent")),
    "read_file": ActionSpec(_read_file, _SESSION + ("filePath",)),
    "install": ActionSpec(_install, _SESSION, one_of=(("packages", "code"),)),
    "system_install": ActionSpec(_system_install, _SESSION + ("packages",)),
    "get_file_downloadurl": ActionSpec(_download_url, _SESSION + ("filePath",)),
    "get_host": ActionSpec(_get_host, _SESSION + ("port",)),
    "start_server": ActionSpec(_start_server, _SESSION + ("cmd", "port", "logFile")),
    "command_list": ActionSpec(_command_list, _SESSION),
    "processinfo": ActionSpec(_processinfo, _SESSION + ("pid",)),
}

_unhandled = (set(ACTION_NAMES) ^ set(ACTIONS)) | (set(ACTION_NAMES) ^ set(ACTION_HELP))
if _unhandled:
    raise RuntimeError(f"Actions without handler or help entry: {sorted(_unhandled)}")


class SandboxTool:
    """Dispatches E2BCode tool calls to the sandbox manager and executor."""

    name = "E2BCode"
    description = TOOL_DESCRIPTION

    def __init__(self, manager: Optional[SandboxManager] = None):
        # Raises MissingCredentialError when no API key is configured
        self.manager = manager or SandboxManager()

    @property
    def executor(self):
        return self.manager.executor

    async def dispatch(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Run one action and return the response envelope as a dict."""
        session_id = payload.get("sessionId") if isinstance(payload, dict) else None
        try:
            request = SandboxActionInput.model_validate(payload)
        except ValidationError as e:
            return {
                "sessionId": session_id,
                "success": False,
                "error": _format_validation_error(e),
                "errorType": "ValidationError",
            }

        action_spec = ACTIONS[request.action]
        try:
            action_spec.validate(request.action, request)
            result = await action_spec.handler(self, request)
        except SandboxError as e:
            logger.info(f"[E2BCode] {request.action} failed for session {request.sessionId}: {e}")
            return {
                "sessionId": request.sessionId,
                "success": False,
                "error": str(e),
                "errorType": e.error_type,
            }
        except Exception as e:
            logger.error(f"[E2BCode] Unexpected error in {request.action}: {e}", exc_info=True)
            return {
                "sessionId": request.sessionId,
                "success": False,
                "error": str(e) or type(e).__name__,
                "errorType": type(e).__name__,
            }

        response = {"sessionId": request.sessionId, "success": True, **result}
        if not response["success"] and "error" not in response:
            response["error"] = response.get("message") or f"{request.action} failed"
        return response

    async def arun(self, payload: dict[str, Any]) -> str:
        return json.dumps(await self.dispatch(payload), default=str)

    def as_langchain_tool(self) -> StructuredTool:
        """Expose the dispatcher as a LangChain tool for agent frameworks."""

        async def e2b_code(**kwargs: Any) -> str:
            return await self.arun(kwargs)

        return StructuredTool.from_function(
            coroutine=e2b_code,
            name=self.name,
            description=self.description,
            args_schema=SandboxActionInput,
        )
