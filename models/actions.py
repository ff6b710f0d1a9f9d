"""
Caller-facing action schema for the sandbox tool.

Field names follow the wire format used by calling agents (camelCase), the
same way response models elsewhere expose `overallScore` or `maxScore`.
"""

from typing import Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field


ActionName = Literal[
    "help",
    "create",
    "list_sandboxes",
    "kill",
    "set_timeout",
    "execute",
    "shell",
    "command_run",
    "kill_command",
    "command_kill",
    "write_file",
    "read_file",
    "install",
    "system_install",
    "get_file_downloadurl",
    "get_host",
    "start_server",
    "command_list",
    "processinfo",
]

ACTION_NAMES: tuple[str, ...] = get_args(ActionName)

Language = Literal["python", "javascript", "typescript", "shell"]


class SandboxActionInput(BaseModel):
    """A single sandbox tool call, discriminated by `action`."""

    model_config = ConfigDict(extra="forbid")

    sessionId: Optional[str] = Field(
        default=None,
        min_length=1,
        description=(
            "A unique identifier for the session. Use the same `sessionId` "
            "to maintain state across multiple calls."
        ),
    )
    sandboxId: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Sandbox identifier (optional, used with `kill`).",
    )
    action: ActionName = Field(..., description="The action to perform.")
    command_name: Optional[str] = Field(
        default=None,
        description="Action to describe in detail (optional, used with `help`).",
    )
    code: Optional[str] = Field(
        default=None,
        description="The code to execute (required for `execute`).",
    )
    language: Language = Field(
        default="python",
        description=(
            "Programming language for `execute`, or the package ecosystem for "
            "`install`. Defaults to `python`."
        ),
    )
    cmd: Optional[str] = Field(
        default=None,
        description="Command to execute (required for `shell`, `command_run` and `start_server`).",
    )
    command: Optional[str] = Field(
        default=None,
        description="Alias of `cmd` accepted by `shell`.",
    )
    background: bool = Field(
        default=False,
        description="Run the command in the background and return a `commandId`.",
    )
    cwd: Optional[str] = Field(default=None, description="Working directory for the command.")
    timeoutMs: Optional[int] = Field(
        default=None,
        ge=1,
        description="Timeout in milliseconds for the command.",
    )
    user: Optional[str] = Field(default=None, description="User to run the command as.")
    commandId: Optional[str] = Field(
        default=None,
        min_length=1,
        description="ID of a background command (used with `kill_command`).",
    )
    pid: Optional[int] = Field(
        default=None,
        ge=1,
        description="Process id (used with `kill_command` and `processinfo`).",
    )
    filePath: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Path for `write_file`, `read_file` and `get_file_downloadurl`.",
    )
    fileContent: Optional[str] = Field(
        default=None,
        description="Content to write to file (required for `write_file`).",
    )
    port: Optional[int] = Field(
        default=None,
        ge=1,
        le=65535,
        description="Port number (required for `get_host` and `start_server`).",
    )
    logFile: Optional[str] = Field(
        default=None,
        min_length=1,
        description="File receiving stdout and stderr (required for `start_server`).",
    )
    timeout: Optional[int] = Field(
        default=None,
        ge=1,
        description="Sandbox timeout in minutes. Defaults to 60 minutes on `create`.",
    )
    envs: Optional[dict[str, str]] = Field(
        default=None,
        description="Environment variables for `create` and for command execution.",
    )
    packages: Optional[list[str]] = Field(
        default=None,
        min_length=1,
        description="Packages to install (required for `install` and `system_install`).",
    )
