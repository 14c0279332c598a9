"""
Utils module - Utility functions and helpers.

This module contains utility functions used throughout TrustGate.
"""

from trustgate.utils.validators import (
    validate_string_safe,
    validate_optional_text,
    validate_identifier,
    validate_pagination,
)

__all__ = [
    "validate_string_safe",
    "validate_optional_text",
    "validate_identifier",
    "validate_pagination",
]
