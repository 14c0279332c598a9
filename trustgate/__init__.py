"""
TrustGate - Single-Device Trust Enforcement
===========================================

Binds every account to one trusted device and routes new devices
through an administrator-reviewed change request.

Security Notice:
- Raw device identifiers are never logged
- Fail-closed design pattern
- Every registry change is audited
"""

from trustgate.core.config import TrustGateConfig
from trustgate.core.logging import get_secure_logger

__version__ = "0.1.0"
__author__ = "TrustGate Team"

__all__ = ["TrustGateConfig", "get_secure_logger", "__version__"]
