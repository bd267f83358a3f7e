"""Small shared helpers."""

from .cancellation import CancellationToken, is_cancelled

__all__ = ["CancellationToken", "is_cancelled"]
