"""
Error Taxonomy
==============

Typed errors raised by the trust engine, the change-request lifecycle
and the store. Callers render them; nothing here is retried internally.

- ValidationError: malformed or missing input, surfaced to the caller
- NotFoundError: unknown user or request id
- ConflictError: duplicate pending request, device already registered,
  or a transition attempted on a request that is no longer pending
- PersistenceError: store unavailable (retryable by the caller)
- PolicyViolation: attempted bypass of the single-device invariant
"""

from __future__ import annotations

from typing import ClassVar


class TrustGateError(Exception):
    """Base class for all TrustGate errors."""

    retryable: ClassVar[bool] = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TrustGateError, ValueError):
    """Raised when signal or request input fails validation."""
    pass


class NotFoundError(TrustGateError):
    """Raised when a user or change request does not exist."""
    pass


class ConflictError(TrustGateError):
    """Raised when an operation conflicts with current state."""
    pass


class PersistenceError(TrustGateError):
    """
    Raised when the store cannot complete an operation.

    The operation had no effect; the caller may retry it.
    """
    retryable: ClassVar[bool] = True


class PolicyViolation(TrustGateError):
    """Raised on an attempt to bind a second device outside review."""
    pass
