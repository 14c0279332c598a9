"""
Security Constants
==================

Defines trust-policy constants used throughout the application.
These values are part of the device-binding policy and must not be
modified without a security review.
"""

from typing import Final

# Similarity classification
SIMILARITY_THRESHOLD_PERCENT: Final[float] = 80.0

# Change request field limits
MAX_REASON_LENGTH: Final[int] = 500
MAX_ADMIN_NOTES_LENGTH: Final[int] = 1000
MAX_SIGNAL_LENGTH: Final[int] = 1024

# Change request defaults
DEFAULT_USER_REASON: Final[str] = "User requested device change"
DEFAULT_LOGIN_REASON: Final[str] = "Login attempt from new device"

# Sentinel for a user without a current device
NO_CURRENT_DEVICE: Final[str] = "none"

# Listing
DEFAULT_PAGE_SIZE: Final[int] = 10
MAX_PAGE_SIZE: Final[int] = 100
DASHBOARD_RECENT_REQUESTS: Final[int] = 5
HISTORY_PAGE_SIZE: Final[int] = 20
USER_RECENT_REQUESTS: Final[int] = 10
