"""
Security module - Trust policy constants and the audit trail.

Security Considerations:
- Policy constants are fixed; changing them changes who gets in
- Audit entries are append-only and hash-chained
- No raw fingerprints or credentials are written to the audit trail
"""

from trustgate.security.constants import (
    SIMILARITY_THRESHOLD_PERCENT,
    MAX_REASON_LENGTH,
    MAX_ADMIN_NOTES_LENGTH,
)
from trustgate.security.audit import (
    TamperAwareAuditLog,
    AuditEvent,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Constants
    "SIMILARITY_THRESHOLD_PERCENT",
    "MAX_REASON_LENGTH",
    "MAX_ADMIN_NOTES_LENGTH",
    # Audit
    "TamperAwareAuditLog",
    "AuditEvent",
    "AuditEventType",
    "AuditSeverity",
]
