"""
Trust Evaluator
===============

Decides what a login from a given fingerprint means for an account.

Evaluation order (first match wins):
1. Device registered             -> LOGIN_OK
2. Account is admin              -> ADMIN_BYPASS
3. Registry empty                -> AUTO_REGISTER
4. A record >= 80% similar       -> IP_REBIND (first in registration order)
5. Otherwise                     -> NEEDS_REVIEW

`evaluate` is a pure decision function. Registry side effects are
applied separately by `apply_decision`, and persisting them or opening a
change request is the caller's responsibility.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from trustgate.core.device.fingerprint import DeviceFingerprint
from trustgate.core.device.registry import DeviceInfo, DeviceRecord, UserTrustState
from trustgate.core.device.similarity import compare
from trustgate.core.errors import PolicyViolation


class DecisionKind(Enum):
    """Outcome of a trust evaluation."""
    LOGIN_OK = "LOGIN_OK"
    ADMIN_BYPASS = "ADMIN_BYPASS"
    AUTO_REGISTER = "AUTO_REGISTER"
    IP_REBIND = "IP_REBIND"
    NEEDS_REVIEW = "NEEDS_REVIEW"


_LOGIN_ALLOWED = frozenset({
    DecisionKind.LOGIN_OK,
    DecisionKind.ADMIN_BYPASS,
    DecisionKind.AUTO_REGISTER,
    DecisionKind.IP_REBIND,
})


@dataclass(frozen=True, slots=True)
class Decision:
    """
    Tagged evaluation result.

    Attributes:
        kind: Decision kind
        device_id: Device the decision concerns. For IP_REBIND this is the
            matched registered device, otherwise the fingerprint's device
        similarity: Similarity percent (IP_REBIND only)
        change_request_id: Pending request for this device, when the
            caller found one (NEEDS_REVIEW only)
        new_fingerprint: The evaluated fingerprint (NEEDS_REVIEW only)
        current_device_info: Info of the account's current device
            (NEEDS_REVIEW only)
    """
    kind: DecisionKind
    device_id: str
    similarity: Optional[float] = None
    change_request_id: Optional[str] = None
    new_fingerprint: Optional[DeviceFingerprint] = None
    current_device_info: Optional[DeviceInfo] = None

    @property
    def allows_login(self) -> bool:
        return self.kind in _LOGIN_ALLOWED

    def with_change_request(self, request_id: Optional[str]) -> "Decision":
        return replace(self, change_request_id=request_id)

    def to_dict(self) -> dict[str, Any]:
        """Tagged result rendered for the caller."""
        data: dict[str, Any] = {
            "decision": self.kind.value,
            "deviceId": self.device_id,
            "allowsLogin": self.allows_login,
        }
        if self.similarity is not None:
            data["similarity"] = self.similarity
        if self.change_request_id is not None:
            data["changeRequestId"] = self.change_request_id
        if self.kind is DecisionKind.NEEDS_REVIEW:
            fp = self.new_fingerprint
            data["newDeviceInfo"] = {
                "userAgent": fp.attributes.user_agent,
                "ipAddress": fp.ip,
                "platform": fp.attributes.platform,
                "screenRes": fp.attributes.screen_resolution,
                "timezone": fp.attributes.timezone,
            } if fp else {}
            data["currentDeviceInfo"] = (
                self.current_device_info.to_dict() if self.current_device_info else {}
            )
        return data


class TrustEvaluator:
    """
    Stateless trust decision engine.

    Usage:
        evaluator = TrustEvaluator()
        decision = evaluator.evaluate(user, fingerprint)
        if decision.allows_login:
            evaluator.apply(user, decision, fingerprint, now)
    """

    __slots__ = ()

    def evaluate(self, user: UserTrustState, fp: DeviceFingerprint) -> Decision:
        """
        Decide how to treat a login from `fp`.

        Args:
            user: Account trust state (not modified)
            fp: Fingerprint of the current request

        Returns:
            Decision
        """
        registry = user.registry

        if fp.device_id in registry:
            return Decision(DecisionKind.LOGIN_OK, fp.device_id)

        if user.is_admin():
            return Decision(DecisionKind.ADMIN_BYPASS, fp.device_id)

        if registry.is_empty():
            return Decision(DecisionKind.AUTO_REGISTER, fp.device_id)

        for record in registry:
            result = compare(fp.attributes, record.attributes)
            if result.is_similar:
                return Decision(
                    DecisionKind.IP_REBIND,
                    record.device_id,
                    similarity=result.similarity_percent,
                )

        return Decision(
            DecisionKind.NEEDS_REVIEW,
            fp.device_id,
            new_fingerprint=fp,
            current_device_info=user.current_device_info(),
        )

    def apply(
        self,
        user: UserTrustState,
        decision: Decision,
        fp: DeviceFingerprint,
        now: datetime,
    ) -> None:
        """
        Apply the registry side effects of a decision in memory.

        - LOGIN_OK: refresh last_used; the current pointer is unchanged
        - ADMIN_BYPASS / AUTO_REGISTER: register the device as current
        - IP_REBIND: update the matched record's IP, refresh, make current
        - NEEDS_REVIEW: nothing

        Raises:
            PolicyViolation: If the decision no longer fits the state
                (e.g. AUTO_REGISTER against a non-empty registry)
        """
        kind = decision.kind
        if kind is DecisionKind.LOGIN_OK:
            user.registry.touch(decision.device_id, now)
        elif kind is DecisionKind.ADMIN_BYPASS:
            if not user.is_admin():
                raise PolicyViolation("Admin bypass applied to a non-admin account.")
            user.register_device(DeviceRecord.from_fingerprint(fp, now))
        elif kind is DecisionKind.AUTO_REGISTER:
            user.register_device(DeviceRecord.from_fingerprint(fp, now))
        elif kind is DecisionKind.IP_REBIND:
            user.registry.rebind_ip(decision.device_id, fp.ip, now)


_default_evaluator = TrustEvaluator()


def evaluate(user: UserTrustState, fp: DeviceFingerprint) -> Decision:
    """Evaluate with the default evaluator."""
    return _default_evaluator.evaluate(user, fp)


def apply_decision(
    user: UserTrustState,
    decision: Decision,
    fp: DeviceFingerprint,
    now: datetime,
) -> None:
    """Apply a decision with the default evaluator."""
    _default_evaluator.apply(user, decision, fp, now)


__all__ = [
    "DecisionKind",
    "Decision",
    "TrustEvaluator",
    "evaluate",
    "apply_decision",
]
