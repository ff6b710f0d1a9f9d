"""Configuration package for the sandbox session service."""

from .settings import Settings, settings

__all__ = [
    "settings",
    "Settings",
]
