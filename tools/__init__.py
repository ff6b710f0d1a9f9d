"""
Tools exposed to calling agents.
"""

from .sandbox_tool import ACTIONS, ActionSpec, SandboxTool

__all__ = [
    "ACTIONS",
    "ActionSpec",
    "SandboxTool",
]
