"""
Exceptions for the reconciliation pipeline.

- ValidationError: malformed or missing input on a single deal; turned into a
  review entry by the resolver that raised it.
- ConflictError: a uniqueness violation that re-querying could not explain;
  a record-level failure.
- PhaseError: anything that aborts a phase; the phase is rolled back and the
  run stops, earlier phases stay committed.
"""

from typing import Any, Optional


class ReconcileError(Exception):
    """Base exception for all reconciliation errors."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


class ValidationError(ReconcileError):
    """Email or name on a deal cannot be used for resolution."""

    def __init__(self, reason: str, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, context)
        self.reason = reason


class ConflictError(ReconcileError):
    """Insert hit a unique constraint and the conflicting row could not be found."""

    pass


class PhaseError(ReconcileError):
    """A phase failed; its writes were rolled back and the run was aborted."""

    def __init__(
        self,
        phase: str,
        operation: str,
        cause: BaseException,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            f"Phase '{phase}' failed during '{operation}': {cause}",
            {"phase": phase, "operation": operation, **(context or {})},
        )
        self.phase = phase
        self.operation = operation
        self.cause = cause
