"""
TrustGate Device Binding Module
===============================

Fingerprinting, similarity scoring, the per-account device registry
and the trust evaluator.

Security Features:
- Device ids are hashes of stable attributes only
- Exactly one current device per account
- Admins are never blocked; everyone else needs review for a new device

Components:
- fingerprint.py: Derive device ids from request signals
- similarity.py: Detect the same device on a different network
- registry.py: Registered devices and the current-device pointer
- evaluator.py: Decide LOGIN_OK / ADMIN_BYPASS / AUTO_REGISTER /
  IP_REBIND / NEEDS_REVIEW
"""

from trustgate.core.device.fingerprint import (
    FingerprintVector,
    DeviceFingerprint,
    FingerprintExtractor,
    signals_from_headers,
)
from trustgate.core.device.similarity import (
    AttributeDifference,
    SimilarityResult,
    compare,
)
from trustgate.core.device.registry import (
    Role,
    DeviceInfo,
    DeviceRecord,
    DeviceRegistry,
    UserTrustState,
)
from trustgate.core.device.evaluator import (
    DecisionKind,
    Decision,
    TrustEvaluator,
    evaluate,
    apply_decision,
)

__all__ = [
    "FingerprintVector",
    "DeviceFingerprint",
    "FingerprintExtractor",
    "signals_from_headers",
    "AttributeDifference",
    "SimilarityResult",
    "compare",
    "Role",
    "DeviceInfo",
    "DeviceRecord",
    "DeviceRegistry",
    "UserTrustState",
    "DecisionKind",
    "Decision",
    "TrustEvaluator",
    "evaluate",
    "apply_decision",
]
