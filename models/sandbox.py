"""Data models for sandbox sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SandboxRecord:
    """Persisted mapping from a session to its remote sandbox."""

    sandbox_id: str
    session_id: str
    expired_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expired_at

    def to_dict(self) -> dict:
        return {
            "sandboxId": self.sandbox_id,
            "sessionId": self.session_id,
            "expiredAt": self.expired_at.isoformat(),
        }


@dataclass
class SessionHandle:
    """
    Process-local handle to a live sandbox.

    `commands` maps a command id to the background command handle returned
    by the sandbox service. Entries are removed on explicit kill, on eviction,
    or when the process is no longer reported by the sandbox.
    """

    session_id: str
    sandbox: Any
    sandbox_id: str
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    commands: dict[str, Any] = field(default_factory=dict)

    def touch(self) -> None:
        """Update last accessed time to prevent idle eviction."""
        self.last_accessed_at = utcnow()

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.last_accessed_at).total_seconds()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utcnow()) >= self.expires_at


@dataclass(frozen=True)
class CommandOutcome:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0
