"""Help content for the E2BCode tool."""

TOOL_DESCRIPTION = """
Use E2B to execute code, run shell commands, manage files, install packages, and manage sandbox environments in an isolated sandbox environment.

Sessions: You must provide a unique `sessionId` string to maintain session state between calls. Use the same `sessionId` for related actions.

Use the help action before executing anything else to understand the available actions and parameters.

NOTE: When running servers such as nginx or flask you MUST start them in the background with `background: true` or the `start_server` action. Appending `&` to a shell command does not work. Redirect stdout and stderr to a file to debug any issues.

To copy files from one sandbox to another, gzip them, use the `get_file_downloadurl` action to get a link, and then use wget in the new sandbox to download.
""".strip()


# action -> (description, {optional parameter: description})
ACTION_HELP: dict[str, tuple[str, dict[str, str]]] = {
    "help": (
        "Show the available actions, or the parameters of one action.",
        {"command_name": "Action to describe in detail."},
    ),
    "create": (
        "Create a new E2B sandbox environment for the session. Returns the sandbox id, "
        "the current user and the working directory.",
        {
            "timeout": "Timeout in minutes for the sandbox environment. Defaults to 60 minutes.",
            "envs": "Key-value object of environment variables to set when creating the sandbox.",
        },
    ),
    "list_sandboxes": (
        "List the sandboxes the E2B service reports as running, with id, start time and status.",
        {},
    ),
    "kill": (
        "Terminate a sandbox. An explicit `sandboxId` wins over the sandbox of `sessionId`. "
        "Killing an already-dead sandbox reports `success: false` without failing.",
        {"sandboxId": "Sandbox to terminate instead of the session's own sandbox."},
    ),
    "set_timeout": (
        "Keep the sandbox alive for `timeout` minutes from now. Replaces the previous deadline.",
        {},
    ),
    "execute": (
        "Execute code with the sandbox code interpreter.",
        {
            "language": "`python`, `javascript`, `typescript` or `shell`. Defaults to `python`.",
            "envs": "Environment variables to set for this execution.",
            "timeoutMs": "Timeout in milliseconds.",
        },
    ),
    "shell": (
        "Run a shell command inside the sandbox. `command` is accepted in place of `cmd`.",
        {
            "background": "Run in the background and return a `commandId`. Defaults to `false`.",
            "cwd": "Working directory for the command.",
            "user": "User to run the command as.",
            "timeoutMs": "Timeout in milliseconds for the command.",
            "envs": "Environment variables to set for this execution.",
        },
    ),
    "command_run": (
        "Run a command inside the sandbox. Same as `shell`.",
        {
            "background": "Run in the background and return a `commandId`. Defaults to `false`.",
            "cwd": "Working directory for the command.",
            "user": "User to run the command as.",
            "timeoutMs": "Timeout in milliseconds for the command.",
            "envs": "Environment variables to set for this execution.",
        },
    ),
    "kill_command": (
        "Terminate a background command by `commandId`, or any process by `pid`.",
        {},
    ),
    "command_kill": (
        "Same as `kill_command`.",
        {},
    ),
    "write_file": (
        "Write content to a file in the sandbox.",
        {},
    ),
    "read_file": (
        "Read the content of a file from the sandbox.",
        {},
    ),
    "install": (
        "Install packages. `python` uses pip, `javascript` and `typescript` use npm.",
        {
            "language": "Package ecosystem. Defaults to `python`.",
            "envs": "Environment variables to set for this installation.",
        },
    ),
    "system_install": (
        "Install system packages with apt-get.",
        {"envs": "Environment variables to set for this installation."},
    ),
    "get_file_downloadurl": (
        "Get a download URL for a file in the sandbox.",
        {},
    ),
    "get_host": (
        "Get the public host for a port inside the sandbox.",
        {},
    ),
    "start_server": (
        "Start a server in the background with stdout and stderr redirected to `logFile`, "
        "and return its `commandId` and public host.",
        {
            "cwd": "Working directory for the command.",
            "user": "User to run the command as.",
            "timeoutMs": "Timeout in milliseconds for the command.",
            "envs": "Environment variables to set for this execution.",
        },
    ),
    "command_list": (
        "List the processes running in the sandbox. Finished background commands are dropped "
        "from tracking.",
        {},
    ),
    "processinfo": (
        "Show the command, arguments and working directory of a running process.",
        {},
    ),
}
