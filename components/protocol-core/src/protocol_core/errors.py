"""Error taxonomy for protocol definitions, assignments and the store.

All errors derive from :class:`ProtocolError` so the API layer can translate
them with a single handler. ``code`` is a stable machine-readable label and
``retryable`` tells callers whether repeating the request may succeed.
"""

from __future__ import annotations

from typing import Sequence


class ProtocolError(Exception):
    """Base exception for all protocol core errors."""

    code = "protocol_error"
    retryable = False

    def __init__(self, message: str) -> None:
        """Initialize the error.

        Args:
            message: Human-readable description of the violated rule.
        """
        self.message = message
        super().__init__(message)


class ValidationError(ProtocolError):
    """Definition, step or event payload is malformed or incomplete.

    Args:
        violations: Every rule that failed, in definition order.

    Examples:
        >>> err = ValidationError(["name is required"])
        >>> err.violations
        ['name is required']
    """

    code = "validation_error"

    def __init__(self, violations: Sequence[str], message: str | None = None) -> None:
        """Initialize with the list of violations."""
        self.violations = list(violations)
        summary = message or "; ".join(self.violations) or "validation failed"
        super().__init__(summary)


class InvalidStateError(ProtocolError):
    """Transition attempted from a state that does not permit it."""

    code = "invalid_state"


class ConcurrencyConflictError(InvalidStateError):
    """Lost an optimistic-lock race; refetch and retry."""

    code = "concurrency_conflict"


class InvalidTriggerError(ProtocolError):
    """Trigger value cannot be parsed for its trigger type."""

    code = "invalid_trigger"


class NotFoundError(ProtocolError):
    """Referenced definition, step, patient or assignment does not exist."""

    code = "not_found"


class StoreUnavailableError(ProtocolError):
    """Transient persistence failure; safe to retry with backoff."""

    code = "store_unavailable"
    retryable = True
