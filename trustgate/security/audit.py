"""
Tamper-Aware Audit System
=========================

Append-only audit trail of trust decisions and change-request
transitions, with integrity verification.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Final, List, Optional

from trustgate.core.logging import short_id

logger = logging.getLogger(__name__)

GENESIS_HASH: Final[str] = "genesis"


class AuditSeverity(Enum):
    """Audit event severity levels."""
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AuditEventType(Enum):
    """Types of auditable events."""
    # Accounts
    USER_CREATED = "USER_CREATED"
    USER_ACTIVATED = "USER_ACTIVATED"
    USER_DEACTIVATED = "USER_DEACTIVATED"

    # Trust decisions
    DEVICE_VERIFIED = "DEVICE_VERIFIED"
    ADMIN_BYPASS = "ADMIN_BYPASS"
    DEVICE_REGISTERED = "DEVICE_REGISTERED"
    DEVICE_IP_REBOUND = "DEVICE_IP_REBOUND"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"

    # Change requests
    CHANGE_REQUESTED = "CHANGE_REQUESTED"
    CHANGE_APPROVED = "CHANGE_APPROVED"
    CHANGE_REJECTED = "CHANGE_REJECTED"


@dataclass
class AuditEvent:
    """An auditable trust event."""
    event_type: AuditEventType
    severity: AuditSeverity
    timestamp: datetime
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    description: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    # Computed fields
    event_id: str = field(default="")
    previous_hash: str = field(default="")
    event_hash: str = field(default="")

    def __post_init__(self):
        if not self.event_id:
            self.event_id = hashlib.sha256(
                f"{self.timestamp.isoformat()}{self.event_type.value}{os.urandom(8).hex()}".encode()
            ).hexdigest()[:16]

    def to_dict(self) -> Dict[str, Any]:
        """Stored form. Device ids are truncated; no raw fingerprints."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "device_id": short_id(self.device_id) if self.device_id else None,
            "description": self.description,
            "details": self.details,
            "previous_hash": self.previous_hash,
            "event_hash": self.event_hash,
        }

    def compute_hash(self, previous_hash: str) -> str:
        """Compute event hash for chain integrity."""
        self.previous_hash = previous_hash
        self.event_hash = hash_entry(self.to_dict())
        return self.event_hash


def hash_entry(entry: Dict[str, Any]) -> str:
    """Hash of a stored entry, over every field except its own hash."""
    data = {k: v for k, v in entry.items() if k != "event_hash"}
    return hashlib.sha256(
        json.dumps(data, sort_keys=True).encode()
    ).hexdigest()


class TamperAwareAuditLog:
    """
    Append-only audit log with tamper detection.

    Features:
    - Chained hashes for integrity
    - Append-only (no deletion)
    - JSON Lines format
    - No raw fingerprints or credentials
    """

    def __init__(self, log_path: Path | str):
        self._log_path = Path(log_path)
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH
        self._event_count = 0

        # Ensure log directory exists
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

        # Resume an existing chain
        self._load_chain()

    @property
    def path(self) -> Path:
        return self._log_path

    @property
    def event_count(self) -> int:
        return self._event_count

    def _load_chain(self) -> None:
        """Pick up the last hash of an existing log."""
        if not self._log_path.exists():
            return

        with open(self._log_path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(
                        "Audit log %s is corrupt at line %d; chain continues from the last valid entry",
                        self._log_path, lineno,
                    )
                    break
                self._last_hash = event.get("event_hash", self._last_hash)
                self._event_count += 1

    def log(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity,
        description: str,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log an audit event.

        Returns:
            Event ID
        """
        event = AuditEvent(
            event_type=event_type,
            severity=severity,
            timestamp=datetime.now(timezone.utc),
            user_id=user_id,
            device_id=device_id,
            description=description,
            details=details or {},
        )

        with self._lock:
            event.compute_hash(self._last_hash)

            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())

            self._last_hash = event.event_hash
            self._event_count += 1

        return event.event_id

    def verify_integrity(self) -> tuple[bool, int]:
        """
        Verify log chain integrity.

        Every entry must link to its predecessor and hash to its stored
        event_hash.

        Returns:
            Tuple of (is_valid, number of valid events before any break)
        """
        if not self._log_path.exists():
            return True, 0

        previous_hash = GENESIS_HASH
        count = 0

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    return False, count

                if event.get("previous_hash") != previous_hash:
                    return False, count
                if hash_entry(event) != event.get("event_hash"):
                    return False, count

                previous_hash = event["event_hash"]
                count += 1

        return True, count

    def get_events(
        self,
        since: Optional[datetime] = None,
        event_type: Optional[AuditEventType] = None,
        severity: Optional[AuditSeverity] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Get filtered events, oldest first (read-only)."""
        events: List[Dict[str, Any]] = []

        if not self._log_path.exists():
            return events

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue

                event = json.loads(line)

                if since:
                    event_time = datetime.fromisoformat(event["timestamp"])
                    if event_time < since:
                        continue

                if event_type and event["event_type"] != event_type.value:
                    continue

                if severity and event["severity"] != severity.value:
                    continue

                if user_id and event["user_id"] != user_id:
                    continue

                events.append(event)

                if len(events) >= limit:
                    break

        return events


__all__ = [
    "AuditSeverity",
    "AuditEventType",
    "AuditEvent",
    "TamperAwareAuditLog",
    "hash_entry",
]
