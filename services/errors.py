"""
Error taxonomy for sandbox operations.

Services raise these; the tool dispatcher converts them into the JSON error
envelope. `error_type` is what callers branch on.
"""


class SandboxError(Exception):
    """Base class for all sandbox service errors."""

    error_type = "SandboxError"


class MissingCredentialError(SandboxError):
    """Required API key absent at construction time."""

    error_type = "MissingCredential"


class SessionAlreadyExistsError(SandboxError):
    error_type = "AlreadyExists"


class SandboxNotFoundError(SandboxError):
    """Session, sandbox or persisted record is not tracked."""

    error_type = "NotFound"


class CommandNotFoundError(SandboxError):
    """Command id or pid is not tracked or no longer running."""

    error_type = "NotFound"


class RemoteUnavailableError(SandboxError):
    """The sandbox service call itself failed."""

    error_type = "RemoteUnavailable"


class CommandTimeoutError(SandboxError):
    error_type = "Timeout"


class UnsupportedEcosystemError(SandboxError):
    error_type = "UnsupportedEcosystem"


class MissingParameterError(SandboxError):
    error_type = "MissingParameter"

    def __init__(self, action: str, params: list[str], any_of: bool = False):
        self.action = action
        self.params = params
        names = (" or " if any_of else " and ").join(f"`{p}`" for p in params)
        super().__init__(f"{names} required for `{action}` action.")
