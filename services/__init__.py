"""
Services for sandbox session management.
"""

from .command_executor import CommandExecutor, get_hidden_env_vars, merge_envs, sanitize_output
from .errors import (
    CommandNotFoundError,
    CommandTimeoutError,
    MissingCredentialError,
    MissingParameterError,
    RemoteUnavailableError,
    SandboxError,
    SandboxNotFoundError,
    SessionAlreadyExistsError,
    UnsupportedEcosystemError,
)
from .locks import DistributedSessionLock
from .reaper import IdleReaper
from .sandbox_manager import SandboxManager, normalize_sandbox_id
from .sandbox_store import InMemorySandboxRecordStore, SandboxRecordStore, get_record_store
from .session_registry import SessionRegistry

__all__ = [
    "CommandExecutor",
    "CommandNotFoundError",
    "CommandTimeoutError",
    "DistributedSessionLock",
    "IdleReaper",
    "InMemorySandboxRecordStore",
    "MissingCredentialError",
    "MissingParameterError",
    "RemoteUnavailableError",
    "SandboxError",
    "SandboxManager",
    "SandboxNotFoundError",
    "SandboxRecordStore",
    "SessionAlreadyExistsError",
    "SessionRegistry",
    "UnsupportedEcosystemError",
    "get_hidden_env_vars",
    "get_record_store",
    "merge_envs",
    "normalize_sandbox_id",
    "sanitize_output",
]
