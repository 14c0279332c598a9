"""
Change-Request Lifecycle
========================

Creates device change requests and resolves them on an administrator's
decision.

Atomicity:
- At most one pending request per (account, device); the store's
  partial unique index is the authority, the read check only gives a
  friendlier error
- approve/reject compare-and-swap the status from pending, so only the
  first concurrent reviewer wins
- Approval writes the terminal status and the registry swap in one
  store transaction; a failure in either rolls back both

The lifecycle never logs. It raises typed errors for the caller.

Usage:
    lifecycle = ChangeRequestLifecycle(store)
    request = lifecycle.create(user_id, fingerprint, "New laptop")
    lifecycle.approve(request.id, admin_id, "Verified by phone")
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

from trustgate.core.device.fingerprint import DeviceFingerprint
from trustgate.core.device.registry import DeviceInfo
from trustgate.core.errors import ConflictError, NotFoundError, PolicyViolation, ValidationError
from trustgate.core.requests.change_request import ChangeRequest, RequestStatus
from trustgate.security.constants import (
    DEFAULT_USER_REASON,
    MAX_ADMIN_NOTES_LENGTH,
    MAX_REASON_LENGTH,
)
from trustgate.utils.validators import (
    validate_identifier,
    validate_optional_text,
    validate_pagination,
)

if TYPE_CHECKING:
    from trustgate.db.store import SQLiteTrustStore


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class RequestPage:
    """One page of change requests, newest first."""
    items: List[ChangeRequest]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    def to_dict(self) -> dict:
        return {
            "requests": [r.to_dict() for r in self.items],
            "pagination": {
                "current": self.page,
                "pages": self.pages,
                "total": self.total,
            },
        }


def _parse_status_filter(status: Optional[str]) -> Optional[RequestStatus]:
    if status is None or status == "all":
        return None
    if isinstance(status, RequestStatus):
        return status
    try:
        return RequestStatus.parse(status)
    except ValueError:
        raise ValidationError(f"Unknown request status: {status!r}") from None


class ChangeRequestLifecycle:
    """
    Device change request state machine bound to a trust store.

    The store must provide `transaction()` and `read()` context managers
    yielding a session (see trustgate.db.store.TrustSession).
    """

    __slots__ = ("_store", "_clock")

    def __init__(
        self,
        store: "SQLiteTrustStore",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._clock = clock

    def create(
        self,
        user_id: str,
        fingerprint: DeviceFingerprint,
        reason: Optional[str] = None,
        new_device_info: Optional[DeviceInfo] = None,
        default_reason: str = DEFAULT_USER_REASON,
    ) -> ChangeRequest:
        """
        Open a pending change request for a new device.

        Args:
            user_id: Account requesting the change
            fingerprint: Fingerprint of the candidate device
            reason: Free-text justification (<= 500 chars)
            new_device_info: Descriptor override; derived from the
                fingerprint when omitted
            default_reason: Reason stored when none is given

        Returns:
            The persisted pending request

        Raises:
            NotFoundError: If the account does not exist or is inactive
            ConflictError: If the device is already registered or a pending
                request for it exists
            ValidationError: If the reason is too long
        """
        validate_identifier(user_id, "user_id")
        reason = validate_optional_text(reason, MAX_REASON_LENGTH, "reason") or default_reason

        with self._store.transaction() as session:
            user = session.load_user(user_id)
            if not user.is_active:
                raise NotFoundError("User not found.")

            if user.is_device_registered(fingerprint.device_id):
                raise ConflictError("This device is already registered.")

            if session.find_pending_request(user_id, fingerprint.device_id) is not None:
                raise ConflictError("Device change request already exists for this device.")

            request = ChangeRequest.open(
                user,
                fingerprint,
                reason,
                self._clock(),
                new_device_info=new_device_info,
            )
            session.insert_request(request)

        return request

    def approve(
        self,
        request_id: str,
        reviewer_id: str,
        admin_notes: Optional[str] = None,
    ) -> ChangeRequest:
        """
        Approve a pending request and swap the account's trusted device.

        The previously current device is removed from the registry, the
        requested device is registered and becomes current.

        Raises:
            NotFoundError: If the request or its account does not exist
            ConflictError: If the request is not pending
            PolicyViolation: If the account has been deactivated
        """
        validate_identifier(request_id, "request_id")
        validate_identifier(reviewer_id, "reviewer_id")
        notes = validate_optional_text(admin_notes, MAX_ADMIN_NOTES_LENGTH, "adminNotes")

        with self._store.transaction() as session:
            request = self._get_for_update(session, request_id)
            now = self._clock()
            approved = request.resolved(RequestStatus.APPROVED, reviewer_id, now, notes)

            user = session.load_user(request.user_id)
            if not user.is_active:
                raise PolicyViolation("Account is deactivated; the device change cannot be approved.")

            session.resolve_request(approved)
            user.registry.swap_current(approved.new_device_record(now))
            session.save_registry(user)

        return approved

    def reject(
        self,
        request_id: str,
        reviewer_id: str,
        admin_notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ChangeRequest:
        """
        Reject a pending request. The registry is not touched.

        Raises:
            NotFoundError: If the request does not exist
            ConflictError: If the request is not pending
        """
        validate_identifier(request_id, "request_id")
        validate_identifier(reviewer_id, "reviewer_id")
        notes = validate_optional_text(admin_notes, MAX_ADMIN_NOTES_LENGTH, "adminNotes")
        reason = validate_optional_text(reason, MAX_REASON_LENGTH, "reason")

        with self._store.transaction() as session:
            request = self._get_for_update(session, request_id)
            rejected = request.resolved(
                RequestStatus.REJECTED, reviewer_id, self._clock(), notes, reason=reason
            )
            session.resolve_request(rejected)

        return rejected

    @staticmethod
    def _get_for_update(session, request_id: str) -> ChangeRequest:
        request = session.get_request(request_id)
        if request is None:
            raise NotFoundError("Device change request not found.")
        return request

    # Read side

    def get(self, request_id: str) -> ChangeRequest:
        """Fetch a request by id."""
        with self._store.read() as session:
            request = session.get_request(request_id)
        if request is None:
            raise NotFoundError("Device change request not found.")
        return request

    def list(
        self,
        status: Optional[str] = RequestStatus.PENDING.value,
        user_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> RequestPage:
        """
        List requests newest first.

        Args:
            status: Status filter; None or "all" for every status
            user_id: Restrict to one account
            page: 1-based page number
            limit: Page size
        """
        status_filter = _parse_status_filter(status)
        page, limit = validate_pagination(page, limit)

        with self._store.read() as session:
            total = session.count_requests(status_filter, user_id)
            items = session.list_requests(
                status_filter, user_id, limit=limit, offset=(page - 1) * limit
            )
        return RequestPage(items=items, total=total, page=page, limit=limit)

    def for_user(self, user_id: str) -> List[ChangeRequest]:
        """Every request an account has made, newest first."""
        with self._store.read() as session:
            return session.list_requests(None, user_id)

    def stats(self) -> Dict[str, int]:
        """Request counts per status."""
        with self._store.read() as session:
            return {
                status.value: session.count_requests(status)
                for status in RequestStatus
            }


__all__ = ["ChangeRequestLifecycle", "RequestPage", "utc_now"]
