"""
Device Registry
===============

The set of devices an account trusts, plus the single "current" device.

Security Properties:
- Records are keyed by device id (no duplicates within an account)
- Iteration follows registration order
- The current-device pointer can only reference a registered record and
  is cleared automatically when that record is removed
- Non-admin accounts can only gain a device through bootstrap (empty
  registry) or an approved change request
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Dict, Iterator, List, Mapping, Optional

from trustgate.core.device.fingerprint import DeviceFingerprint, FingerprintVector
from trustgate.core.errors import ConflictError, NotFoundError, PolicyViolation, ValidationError
from trustgate.security.constants import NO_CURRENT_DEVICE


class Role(Enum):
    """Account roles. Admins bypass every device check."""
    USER = auto()
    ADMIN = auto()

    @classmethod
    def from_string(cls, value: str) -> "Role":
        """Convert string to Role."""
        try:
            return cls[value.upper()]
        except (KeyError, AttributeError):
            raise ValidationError(f"Unknown role: {value!r}") from None

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    """Human-facing descriptor of a device, shown to reviewers."""
    user_agent: str = ""
    ip_address: Optional[str] = None
    platform: str = "Unknown"
    location: Optional[str] = None

    @classmethod
    def from_fingerprint(cls, fp: DeviceFingerprint) -> "DeviceInfo":
        return cls(
            user_agent=fp.attributes.user_agent,
            ip_address=fp.ip,
            platform=fp.attributes.platform,
        )

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "DeviceInfo":
        data = data or {}
        return cls(
            user_agent=str(data.get("userAgent") or ""),
            ip_address=data.get("ipAddress"),
            platform=str(data.get("platform") or "Unknown"),
            location=data.get("location"),
        )

    def with_ip(self, ip_address: Optional[str]) -> "DeviceInfo":
        return DeviceInfo(self.user_agent, ip_address, self.platform, self.location)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "userAgent": self.user_agent,
            "ipAddress": self.ip_address,
            "platform": self.platform,
        }
        if self.location is not None:
            data["location"] = self.location
        return data


@dataclass
class DeviceRecord:
    """
    A device registered to an account.

    `attributes` holds the stable vector captured at registration and
    is what IP-change detection compares against.
    """
    device_id: str
    device_info: DeviceInfo
    attributes: FingerprintVector
    registered_at: datetime
    last_used: datetime

    def __repr__(self) -> str:
        """Safe representation."""
        return (
            f"DeviceRecord(device_id={self.device_id[:8]}..., "
            f"platform={self.device_info.platform!r})"
        )

    @classmethod
    def from_fingerprint(cls, fp: DeviceFingerprint, now: datetime) -> "DeviceRecord":
        return cls(
            device_id=fp.device_id,
            device_info=DeviceInfo.from_fingerprint(fp),
            attributes=fp.attributes,
            registered_at=now,
            last_used=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceInfo": self.device_info.to_dict(),
            "registeredAt": self.registered_at.isoformat(),
            "lastUsed": self.last_used.isoformat(),
        }


class DeviceRegistry:
    """
    Arena of DeviceRecords keyed by device id.

    Usage:
        registry = DeviceRegistry()
        registry.add(record, make_current=True)
        registry.touch(record.device_id, now)
        registry.swap_current(new_record)   # evicts the current device
    """

    __slots__ = ("_records", "_current")

    def __init__(
        self,
        records: Optional[List[DeviceRecord]] = None,
        current_device_id: Optional[str] = None,
    ) -> None:
        self._records: Dict[str, DeviceRecord] = {}
        self._current: Optional[str] = None
        for record in records or []:
            self.add(record)
        # A pointer to a record that no longer exists is dropped on load
        if current_device_id in self._records:
            self._current = current_device_id

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[DeviceRecord]:
        return iter(list(self._records.values()))

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._records

    def is_empty(self) -> bool:
        return not self._records

    @property
    def current_device_id(self) -> Optional[str]:
        return self._current

    @property
    def current_record(self) -> Optional[DeviceRecord]:
        if self._current is None:
            return None
        return self._records[self._current]

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        return self._records.get(device_id)

    def records(self) -> List[DeviceRecord]:
        """Records in registration order."""
        return list(self._records.values())

    def add(self, record: DeviceRecord, make_current: bool = False) -> DeviceRecord:
        """
        Append a record.

        Raises:
            ConflictError: If the device id is already registered
        """
        if record.device_id in self._records:
            raise ConflictError("This device is already registered.")
        self._records[record.device_id] = record
        if make_current:
            self._current = record.device_id
        return record

    def remove(self, device_id: str) -> DeviceRecord:
        """
        Remove a record, clearing the current pointer if it referenced it.

        Raises:
            NotFoundError: If the device is not registered
        """
        try:
            record = self._records.pop(device_id)
        except KeyError:
            raise NotFoundError("Device is not registered.") from None
        if self._current == device_id:
            self._current = None
        return record

    def touch(self, device_id: str, now: datetime) -> DeviceRecord:
        """Refresh last_used for a registered device."""
        record = self._records.get(device_id)
        if record is None:
            raise NotFoundError("Device is not registered.")
        record.last_used = now
        return record

    def rebind_ip(self, device_id: str, ip_address: Optional[str], now: datetime) -> DeviceRecord:
        """Record a new network address for a device and make it current."""
        record = self.touch(device_id, now)
        record.device_info = record.device_info.with_ip(ip_address)
        self._current = device_id
        return record

    def swap_current(self, new_record: DeviceRecord) -> Optional[DeviceRecord]:
        """
        Replace the current device with a new one.

        The previously current record is removed, not demoted. If the new
        device is somehow already registered it is reused rather than
        duplicated.

        Returns:
            The evicted record, if any
        """
        evicted = None
        if self._current is not None and self._current != new_record.device_id:
            evicted = self.remove(self._current)
        if new_record.device_id not in self._records:
            self._records[new_record.device_id] = new_record
        self._current = new_record.device_id
        return evicted


@dataclass
class UserTrustState:
    """
    Trust-relevant view of an account.

    Note: credentials are never part of this object.
    """
    user_id: str
    username: str
    role: Role = Role.USER
    registry: DeviceRegistry = field(default_factory=DeviceRegistry)
    email: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return (
            f"UserTrustState(user_id={self.user_id!r}, role={self.role.name}, "
            f"devices={len(self.registry)})"
        )

    def is_admin(self) -> bool:
        """Check if user has admin role."""
        return self.role == Role.ADMIN

    def is_device_registered(self, device_id: str) -> bool:
        return device_id in self.registry

    @property
    def current_device_id(self) -> Optional[str]:
        return self.registry.current_device_id

    def current_device_label(self) -> str:
        """Current device id, or the "none" sentinel."""
        return self.registry.current_device_id or NO_CURRENT_DEVICE

    def current_device_info(self) -> Optional[DeviceInfo]:
        record = self.registry.current_record
        return record.device_info if record else None

    def register_device(self, record: DeviceRecord) -> DeviceRecord:
        """
        Register a device outside the change-request flow.

        Allowed for admins and for accounts with no device yet.

        Raises:
            PolicyViolation: If a non-admin account already has a device
            ConflictError: If the device is already registered
        """
        if not self.is_admin() and not self.registry.is_empty():
            raise PolicyViolation(
                "Account already has a trusted device; a change request is required."
            )
        return self.registry.add(record, make_current=True)

    def to_dict(self, include_devices: bool = False) -> dict[str, Any]:
        data = {
            "id": self.user_id,
            "username": self.username,
            "email": self.email,
            "role": self.role.label,
            "isActive": self.is_active,
            "registeredDevices": len(self.registry),
            "currentDeviceId": self.registry.current_device_id,
            "createdAt": self.created_at.isoformat(),
        }
        if include_devices:
            data["devices"] = [record.to_dict() for record in self.registry]
        return data


__all__ = [
    "Role",
    "DeviceInfo",
    "DeviceRecord",
    "DeviceRegistry",
    "UserTrustState",
]
