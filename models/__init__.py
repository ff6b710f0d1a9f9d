"""Shared data models for the sandbox session service."""

from .actions import ACTION_NAMES, ActionName, SandboxActionInput
from .sandbox import CommandOutcome, SandboxRecord, SessionHandle, utcnow

__all__ = [
    "ACTION_NAMES",
    "ActionName",
    "CommandOutcome",
    "SandboxActionInput",
    "SandboxRecord",
    "SessionHandle",
    "utcnow",
]
