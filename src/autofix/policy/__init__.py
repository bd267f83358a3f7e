"""Approval policy for autonomous actions."""

from .safety import classify_command, is_safe, requires_approval

__all__ = ["classify_command", "is_safe", "requires_approval"]
