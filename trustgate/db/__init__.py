"""
Database module - Persistence of accounts, device registries and
change requests.

Security Considerations:
- Parameterized queries only
- Terminal request transitions are conditional writes
- Every write runs inside a single transaction
"""

from trustgate.db.store import SQLiteTrustStore, TrustSession

__all__ = ["SQLiteTrustStore", "TrustSession"]
