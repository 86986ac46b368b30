"""
guards.py - Single-writer guards for mutating operation groups

Ledger mutations and position mutations each serialize through their own
guard. A mutating operation that is re-entered (for example from inside an
oracle or yield-adapter callback) is rejected instead of interleaving with
the half-finished outer call.
"""

from __future__ import annotations
from typing import Optional

from .core import ReentrancyError


class NonReentrant:
    """
    Context manager that rejects nested entry.

    Example:
        self._guard = NonReentrant("ledger")
        with self._guard("deposit"):
            ...
    """

    def __init__(self, group: str):
        self.group = group
        self._active: Optional[str] = None
        self._pending: Optional[str] = None

    @property
    def locked(self) -> bool:
        return self._active is not None

    def __call__(self, operation: str) -> NonReentrant:
        self._pending = operation
        return self

    def __enter__(self) -> NonReentrant:
        operation = self._pending or "operation"
        self._pending = None
        if self._active is not None:
            raise ReentrancyError(
                f"{self.group}: {operation} re-entered while {self._active} is in progress"
            )
        self._active = operation
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._active = None
        return False
