"""
guard.py - Reentrancy Guard

Every protocol operation that calls out to an asset holds the guard for its
whole duration. An asset implementation that calls back into any guarded
operation mid-transfer gets ReentrancyDetected, which unwinds through the
outer operation and aborts it as well.
"""

from __future__ import annotations
from typing import Optional

from .core import ReentrancyDetected


class ReentrancyGuard:
    """
    Single-holder lock; hold() returns the context manager.

    Example:
        guard = ReentrancyGuard()
        with guard.hold("deposit"):
            token.transfer_from(...)   # a callback into guard.hold() raises
    """

    def __init__(self):
        self._holder: Optional[str] = None

    @property
    def locked(self) -> bool:
        return self._holder is not None

    @property
    def holder(self) -> Optional[str]:
        """Name of the operation currently holding the guard."""
        return self._holder

    def hold(self, operation: str) -> "_Held":
        return _Held(self, operation)

    def _acquire(self, operation: str) -> None:
        if self._holder is not None:
            raise ReentrancyDetected(
                f"{operation} entered while {self._holder} is still running"
            )
        self._holder = operation


class _Held:
    """Context returned by ReentrancyGuard.hold(); released on every exit path."""

    def __init__(self, guard: ReentrancyGuard, operation: str):
        self._guard = guard
        self._operation = operation

    def __enter__(self) -> ReentrancyGuard:
        self._guard._acquire(self._operation)
        return self._guard

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._guard._holder = None
        return False

