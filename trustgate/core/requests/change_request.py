"""
Device Change Requests
======================

An audited proposal to rebind an account to a new device.

State machine:
    pending -> approved   (terminal)
    pending -> rejected   (terminal)

Requests are never deleted; once terminal they are immutable.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from trustgate.core.device.fingerprint import DeviceFingerprint, FingerprintVector
from trustgate.core.device.registry import DeviceInfo, DeviceRecord, UserTrustState
from trustgate.core.errors import ConflictError


class RequestStatus(Enum):
    """Change request states."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING

    @classmethod
    def parse(cls, value: str) -> "RequestStatus":
        return cls(value.lower())


@dataclass(frozen=True, slots=True)
class ChangeRequest:
    """
    A device change request.

    Transitions return new instances; a stored request is only replaced
    through a compare-and-swap on its status.
    """
    id: str
    user_id: str
    username: str
    current_device_id: str
    new_device_id: str
    new_device_info: DeviceInfo
    new_device_attributes: FingerprintVector
    requested_at: datetime
    reason: str
    email: Optional[str] = None
    current_device_info: Optional[DeviceInfo] = None
    status: RequestStatus = RequestStatus.PENDING
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    admin_notes: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"ChangeRequest(id={self.id!r}, user_id={self.user_id!r}, "
            f"status={self.status.value})"
        )

    @classmethod
    def open(
        cls,
        user: UserTrustState,
        fingerprint: DeviceFingerprint,
        reason: str,
        now: datetime,
        new_device_info: Optional[DeviceInfo] = None,
    ) -> "ChangeRequest":
        """Create a pending request for `fingerprint` on behalf of `user`."""
        return cls(
            id=str(uuid.uuid4()),
            user_id=user.user_id,
            username=user.username,
            email=user.email,
            current_device_id=user.current_device_label(),
            new_device_id=fingerprint.device_id,
            new_device_info=new_device_info or DeviceInfo.from_fingerprint(fingerprint),
            new_device_attributes=fingerprint.attributes,
            current_device_info=user.current_device_info(),
            requested_at=now,
            reason=reason,
        )

    def is_pending(self) -> bool:
        return self.status is RequestStatus.PENDING

    def resolved(
        self,
        status: RequestStatus,
        reviewer_id: str,
        now: datetime,
        admin_notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> "ChangeRequest":
        """
        Return the terminal version of this request.

        Raises:
            ConflictError: If the request is no longer pending
            ValueError: If `status` is not terminal
        """
        if not status.is_terminal:
            raise ValueError("A request can only be resolved to a terminal status")
        if not self.is_pending():
            raise ConflictError("Request has already been processed.")
        return replace(
            self,
            status=status,
            reviewed_at=now,
            reviewed_by=reviewer_id,
            admin_notes=admin_notes,
            reason=reason or self.reason,
        )

    def new_device_record(self, now: datetime) -> DeviceRecord:
        """Device record registered when this request is approved."""
        return DeviceRecord(
            device_id=self.new_device_id,
            device_info=DeviceInfo(
                user_agent=self.new_device_info.user_agent,
                ip_address=self.new_device_info.ip_address,
                platform=self.new_device_info.platform,
            ),
            attributes=self.new_device_attributes,
            registered_at=now,
            last_used=now,
        )

    def to_dict(self) -> dict[str, Any]:
        """Audit shape exposed for listing and detail views."""
        return {
            "id": self.id,
            "user": self.user_id,
            "username": self.username,
            "email": self.email,
            "currentDeviceId": self.current_device_id,
            "newDeviceId": self.new_device_id,
            "newDeviceInfo": self.new_device_info.to_dict(),
            "currentDeviceInfo": (
                self.current_device_info.to_dict() if self.current_device_info else {}
            ),
            "status": self.status.value,
            "requestedAt": self.requested_at.isoformat(),
            "reviewedAt": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "reviewedBy": self.reviewed_by,
            "reason": self.reason,
            "adminNotes": self.admin_notes,
        }


__all__ = ["RequestStatus", "ChangeRequest"]
