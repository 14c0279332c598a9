"""
Device change request workflow.

Components:
- change_request.py: Request record and its pending -> terminal transitions
- lifecycle.py: Create / approve / reject against a trust store
"""

from trustgate.core.requests.change_request import ChangeRequest, RequestStatus
from trustgate.core.requests.lifecycle import ChangeRequestLifecycle, RequestPage

__all__ = [
    "ChangeRequest",
    "RequestStatus",
    "ChangeRequestLifecycle",
    "RequestPage",
]
