"""
Request Fingerprinting
======================

Derives a stable device identity from per-request signals.

Security Properties:
- Only stable attributes contribute to the device id
- Network attributes (IP, forwarded-for, real-ip) are carried for
  monitoring but never hashed, so a device survives network changes
- Canonical serialization: fixed key order, JSON escaping
- Pure function of (owner id, signals); no side effects

Fingerprint Attributes (canonical order):
- userAgent, platform, language, languages
- screenRes, colorDepth, pixelRatio
- hardwareConcurrency, maxTouchPoints, timezone

WARNING:
- Browser upgrades change the user agent and therefore the device id
- Stable attributes are client-supplied; they identify, they do not attest
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Final, Mapping, Optional

from trustgate.core.errors import ValidationError
from trustgate.security.constants import MAX_SIGNAL_LENGTH


# (field name, canonical key, default). Order is part of the hash contract.
_STABLE_ATTRIBUTES: Final[tuple[tuple[str, str, Optional[str]], ...]] = (
    ("user_agent", "userAgent", ""),
    ("platform", "platform", "Unknown"),
    ("language", "language", "en-US"),
    ("languages", "languages", None),  # defaults to language
    ("screen_resolution", "screenRes", "unknown"),
    ("color_depth", "colorDepth", "unknown"),
    ("pixel_ratio", "pixelRatio", "1"),
    ("hardware_concurrency", "hardwareConcurrency", "unknown"),
    ("max_touch_points", "maxTouchPoints", "0"),
    ("timezone", "timezone", "UTC"),
)

STABLE_KEYS: Final[tuple[str, ...]] = tuple(k for _, k, _ in _STABLE_ATTRIBUTES)

_FIELD_BY_KEY: Final[dict[str, str]] = {k: f for f, k, _ in _STABLE_ATTRIBUTES}

NETWORK_SIGNALS: Final[tuple[str, ...]] = ("ip", "forwarded_for", "real_ip")


def _clean(value: Any) -> Optional[str]:
    """Normalize a raw signal to a string, treating empty values as missing."""
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    text = text.strip()
    if not text:
        return None
    if len(text) > MAX_SIGNAL_LENGTH:
        raise ValidationError(f"Signal value exceeds {MAX_SIGNAL_LENGTH} characters")
    if "\x00" in text:
        raise ValidationError("Signal value contains invalid characters")
    return text


@dataclass(frozen=True, slots=True)
class FingerprintVector:
    """
    Immutable stable-attribute vector of a device.

    Field order matches the canonical serialization order.
    """
    user_agent: str = ""
    platform: str = "Unknown"
    language: str = "en-US"
    languages: str = "en-US"
    screen_resolution: str = "unknown"
    color_depth: str = "unknown"
    pixel_ratio: str = "1"
    hardware_concurrency: str = "unknown"
    max_touch_points: str = "0"
    timezone: str = "UTC"

    @classmethod
    def from_signals(cls, signals: Mapping[str, Any]) -> "FingerprintVector":
        """
        Build a vector from named signals, applying defaults.

        Signals may be keyed by field name (``screen_resolution``) or by
        canonical key (``screenRes``).
        """
        values: dict[str, str] = {}
        for field_name, key, default in _STABLE_ATTRIBUTES:
            raw = signals.get(field_name)
            if raw is None:
                raw = signals.get(key)
            value = _clean(raw)
            if value is None:
                value = values["language"] if default is None else default
            values[field_name] = value
        return cls(**values)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "FingerprintVector":
        """Rebuild a vector from its canonical dictionary."""
        return cls.from_signals(data or {})

    def to_dict(self) -> dict[str, str]:
        """Canonical ordered mapping (canonical keys)."""
        return {key: getattr(self, field_name) for field_name, key, _ in _STABLE_ATTRIBUTES}

    def get(self, key: str) -> str:
        """Look up an attribute by canonical key or field name."""
        return getattr(self, _FIELD_BY_KEY.get(key, key))

    def canonical_json(self) -> str:
        """
        Canonical serialization used for hashing.

        Keys in canonical order, compact separators, non-ASCII kept
        verbatim.
        """
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True, slots=True)
class DeviceFingerprint:
    """
    Immutable per-request device fingerprint.

    Attributes:
        device_id: SHA-256 hex digest of owner id and stable attributes
        attributes: Stable attribute vector
        ip: Transport-layer peer address
        forwarded_for: X-Forwarded-For value, if any
        real_ip: X-Real-IP value, if any
    """
    device_id: str
    attributes: FingerprintVector
    ip: Optional[str] = None
    forwarded_for: Optional[str] = None
    real_ip: Optional[str] = None

    def __repr__(self) -> str:
        """Safe representation without the full device id."""
        return (
            f"DeviceFingerprint(device_id={self.device_id[:8]}..., "
            f"platform={self.attributes.platform!r})"
        )

    def matches(self, device_id: str) -> bool:
        """
        Check whether this fingerprint identifies the given device.

        Uses constant-time comparison.
        """
        return hmac.compare_digest(self.device_id.encode(), device_id.encode())

    def to_dict(self) -> dict[str, Any]:
        """Full fingerprint including network attributes."""
        data: dict[str, Any] = self.attributes.to_dict()
        data["ip"] = self.ip
        data["forwardedFor"] = self.forwarded_for
        data["realIp"] = self.real_ip
        return data


def compute_device_id(owner_id: str, attributes: FingerprintVector) -> str:
    """
    Compute the device id for an owner and attribute vector.

    Combine: OWNER_ID || "-" || CANONICAL_JSON, hashed with SHA-256.
    """
    payload = f"{owner_id}-{attributes.canonical_json()}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class FingerprintExtractor:
    """
    Derives device fingerprints from request signals.

    Usage:
        extractor = FingerprintExtractor()
        fp = extractor.extract(user_id, {"user_agent": ua, "ip": peer})

        # Same owner, same stable attributes, any IP
        assert extractor.extract(user_id, {"user_agent": ua}).device_id == fp.device_id
    """

    __slots__ = ()

    def extract(self, owner_id: str, signals: Optional[Mapping[str, Any]] = None) -> DeviceFingerprint:
        """
        Extract a fingerprint for a request.

        Args:
            owner_id: The account the device would belong to
            signals: Named request signals; every key is optional

        Returns:
            DeviceFingerprint

        Raises:
            ValidationError: If owner_id is missing or a signal is malformed
        """
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise ValidationError("owner_id is required for fingerprinting")

        signals = signals or {}
        attributes = FingerprintVector.from_signals(signals)

        network = {name: _clean(signals.get(name)) for name in NETWORK_SIGNALS}

        return DeviceFingerprint(
            device_id=compute_device_id(owner_id, attributes),
            attributes=attributes,
            **network,
        )


def extract(owner_id: str, signals: Optional[Mapping[str, Any]] = None) -> DeviceFingerprint:
    """Convenience function for simple usage."""
    return FingerprintExtractor().extract(owner_id, signals)


# HTTP header names per signal, first present wins
_HEADER_SOURCES: Final[dict[str, tuple[str, ...]]] = {
    "user_agent": ("User-Agent",),
    "platform": ("Sec-CH-UA-Platform", "X-Platform"),
    "language": ("Accept-Language", "X-Language"),
    "languages": ("X-Languages", "Accept-Language"),
    "screen_resolution": ("X-Screen-Resolution",),
    "color_depth": ("X-Color-Depth",),
    "pixel_ratio": ("X-Pixel-Ratio",),
    "hardware_concurrency": ("X-Hardware-Concurrency",),
    "max_touch_points": ("X-Max-Touch-Points",),
    "timezone": ("X-Timezone",),
    "forwarded_for": ("X-Forwarded-For",),
    "real_ip": ("X-Real-IP",),
}


def signals_from_headers(
    headers: Mapping[str, str],
    remote_addr: Optional[str] = None,
) -> dict[str, str]:
    """
    Map HTTP request headers to fingerprint signals.

    Args:
        headers: Case-insensitive header mapping (e.g. werkzeug Headers)
        remote_addr: Transport-layer peer address

    Returns:
        Signals dictionary suitable for FingerprintExtractor.extract
    """
    signals: dict[str, str] = {}
    for signal, names in _HEADER_SOURCES.items():
        for name in names:
            value = headers.get(name)
            if value:
                signals[signal] = value
                break

    # Client hints quote their values: "Windows"
    platform = signals.get("platform")
    if platform and len(platform) >= 2 and platform[0] == platform[-1] == '"':
        signals["platform"] = platform[1:-1]

    if remote_addr:
        signals["ip"] = remote_addr

    return signals


__all__ = [
    "STABLE_KEYS",
    "NETWORK_SIGNALS",
    "FingerprintVector",
    "DeviceFingerprint",
    "FingerprintExtractor",
    "compute_device_id",
    "extract",
    "signals_from_headers",
]
