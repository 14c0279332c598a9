"""
Core module - Configuration, logging, errors and the trust engine.
"""

from trustgate.core.config import TrustGateConfig
from trustgate.core.errors import (
    TrustGateError,
    ValidationError,
    NotFoundError,
    ConflictError,
    PersistenceError,
    PolicyViolation,
)
from trustgate.core.logging import get_secure_logger, SecureLogFilter

__all__ = [
    "TrustGateConfig",
    "TrustGateError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "PersistenceError",
    "PolicyViolation",
    "get_secure_logger",
    "SecureLogFilter",
]
