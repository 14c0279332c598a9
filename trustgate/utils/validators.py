"""
Validation Utilities
====================

Input validation functions with security focus.
"""

from __future__ import annotations

from typing import Optional

from trustgate.core.errors import ValidationError
from trustgate.security.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE


def validate_string_safe(
    value: str,
    min_length: int = 0,
    max_length: int = 1000,
    allow_empty: bool = False,
    field_name: str = "value",
) -> str:
    """
    Validate a string value for safety.

    Args:
        value: The string to validate
        min_length: Minimum allowed length
        max_length: Maximum allowed length
        allow_empty: If False, empty strings are rejected
        field_name: Name of the field for error messages

    Returns:
        Validated string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")

    if not allow_empty and not value:
        raise ValidationError(f"{field_name} cannot be empty")

    if len(value) < min_length:
        raise ValidationError(
            f"{field_name} must be at least {min_length} characters"
        )

    if len(value) > max_length:
        raise ValidationError(
            f"{field_name} must be at most {max_length} characters"
        )

    # Check for null bytes (security risk)
    if "\x00" in value:
        raise ValidationError(f"{field_name} contains invalid characters")

    return value


def validate_optional_text(
    value: Optional[str],
    max_length: int,
    field_name: str,
) -> Optional[str]:
    """
    Validate an optional free-text field such as a reason or admin note.

    None and blank strings normalize to None.
    """
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return validate_string_safe(
        value,
        max_length=max_length,
        field_name=field_name,
    ).strip()


def validate_identifier(value: str, field_name: str = "id") -> str:
    """Validate a user, device or request identifier."""
    return validate_string_safe(value, min_length=1, max_length=128, field_name=field_name)


def validate_pagination(page: object, limit: object) -> tuple[int, int]:
    """
    Parse and bound pagination parameters.

    Returns:
        Tuple of (page, limit) with page >= 1 and 1 <= limit <= MAX_PAGE_SIZE
    """
    try:
        page_num = int(page) if page is not None else 1
        limit_num = int(limit) if limit is not None else DEFAULT_PAGE_SIZE
    except (TypeError, ValueError) as e:
        raise ValidationError("page and limit must be integers") from e

    if page_num < 1:
        raise ValidationError("page must be at least 1")
    if limit_num < 1 or limit_num > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

    return page_num, limit_num
