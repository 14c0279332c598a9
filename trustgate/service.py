"""
Device Trust Service
====================

Orchestrates the trust engine against the trust store: loads an
account, evaluates a login fingerprint, applies and persists the
decision, and drives the change-request workflow.

This is the only layer (besides the web app) that logs, and the only
one that writes audit events.

Usage:
    service = DeviceTrustService.from_config(TrustGateConfig.get_instance())
    decision = service.check_login(user_id, signals)
    if not decision.allows_login:
        service.request_device_change(user_id, signals, "New laptop")
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from trustgate.core.config import TrustGateConfig
from trustgate.core.device.evaluator import Decision, DecisionKind, TrustEvaluator
from trustgate.core.device.fingerprint import DeviceFingerprint, FingerprintExtractor
from trustgate.core.device.registry import Role, UserTrustState
from trustgate.core.errors import NotFoundError, PolicyViolation, ValidationError
from trustgate.core.logging import get_configured_logger, get_secure_logger, short_id
from trustgate.core.requests.change_request import ChangeRequest
from trustgate.core.requests.lifecycle import ChangeRequestLifecycle, RequestPage, utc_now
from trustgate.db.store import SQLiteTrustStore
from trustgate.security.audit import AuditEventType, AuditSeverity, TamperAwareAuditLog
from trustgate.security.constants import (
    DASHBOARD_RECENT_REQUESTS,
    DEFAULT_LOGIN_REASON,
    DEFAULT_USER_REASON,
    HISTORY_PAGE_SIZE,
    USER_RECENT_REQUESTS,
)
from trustgate.utils.validators import (
    validate_identifier,
    validate_pagination,
    validate_string_safe,
)


# Audit mapping per decision kind
_DECISION_AUDIT: Dict[DecisionKind, tuple[AuditEventType, AuditSeverity, str]] = {
    DecisionKind.LOGIN_OK: (
        AuditEventType.DEVICE_VERIFIED, AuditSeverity.INFO,
        "Login from registered device",
    ),
    DecisionKind.ADMIN_BYPASS: (
        AuditEventType.ADMIN_BYPASS, AuditSeverity.WARNING,
        "Admin login from new device; device registered",
    ),
    DecisionKind.AUTO_REGISTER: (
        AuditEventType.DEVICE_REGISTERED, AuditSeverity.INFO,
        "First device registered automatically",
    ),
    DecisionKind.IP_REBIND: (
        AuditEventType.DEVICE_IP_REBOUND, AuditSeverity.INFO,
        "Registered device seen from a new network address",
    ),
    DecisionKind.NEEDS_REVIEW: (
        AuditEventType.DEVICE_MISMATCH, AuditSeverity.WARNING,
        "Login from unrecognized device blocked",
    ),
}


class DeviceTrustService:
    """
    Single-trusted-device policy enforcement for an application.

    All state changes go through one store transaction each, so the
    service can be shared between request threads.
    """

    def __init__(
        self,
        store: SQLiteTrustStore,
        lifecycle: Optional[ChangeRequestLifecycle] = None,
        extractor: Optional[FingerprintExtractor] = None,
        evaluator: Optional[TrustEvaluator] = None,
        audit: Optional[TamperAwareAuditLog] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._clock = clock
        self._lifecycle = lifecycle or ChangeRequestLifecycle(store, clock=clock)
        self._extractor = extractor or FingerprintExtractor()
        self._evaluator = evaluator or TrustEvaluator()
        self._audit = audit
        self._logger = logger or get_secure_logger(__name__, enable_file=False)

    @classmethod
    def from_config(cls, config: TrustGateConfig) -> "DeviceTrustService":
        """Build a service with the store, audit log and logger from configuration."""
        config.ensure_directories()

        store = SQLiteTrustStore(
            config.database_path,
            busy_timeout=config.store.busy_timeout_seconds,
        )
        store.initialize_db()

        audit = TamperAwareAuditLog(config.audit_log_path) if config.store.audit_enabled else None

        return cls(
            store,
            audit=audit,
            logger=get_configured_logger(__name__, config),
        )

    @property
    def store(self) -> SQLiteTrustStore:
        return self._store

    @property
    def lifecycle(self) -> ChangeRequestLifecycle:
        return self._lifecycle

    def _record(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity,
        description: str,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log(
            event_type,
            severity,
            description,
            user_id=user_id,
            device_id=device_id,
            details=details,
        )

    # Accounts

    def register_user(
        self,
        user_id: str,
        username: str,
        role: Role | str = Role.USER,
        email: Optional[str] = None,
    ) -> UserTrustState:
        """
        Create an account with no trusted device.

        Raises:
            ValidationError: If the id, username or role is malformed
            ConflictError: If the id or username is taken
        """
        validate_identifier(user_id, "user_id")
        validate_string_safe(username, min_length=1, max_length=64, field_name="username")
        if isinstance(role, str):
            role = Role.from_string(role)

        user = self._store.add_user(user_id, username.strip(), role=role, email=email)

        self._logger.info("Account created: %s (%s)", user.username, role.label)
        self._record(
            AuditEventType.USER_CREATED, AuditSeverity.INFO,
            "Account created", user_id=user_id, details={"role": role.label},
        )
        return user

    def get_user(self, user_id: str) -> UserTrustState:
        return self._store.get_user(user_id)

    def authenticate(self, user_id: str) -> UserTrustState:
        """
        Resolve an authenticated caller to an active account.

        Raises:
            NotFoundError: If the account does not exist or is inactive
        """
        user = self._store.get_user(user_id)
        if not user.is_active:
            raise NotFoundError("User not found.")
        return user

    def list_users(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """Accounts newest first, without device details."""
        page, limit = validate_pagination(page, limit)
        with self._store.read() as session:
            total = session.count_users()
            users = session.list_users(limit, offset=(page - 1) * limit)
        return {
            "users": [u.to_dict() for u in users],
            "pagination": {
                "current": page,
                "pages": math.ceil(total / limit) if total else 0,
                "total": total,
            },
        }

    def user_details(self, user_id: str) -> Dict[str, Any]:
        """An account with its devices and its most recent requests."""
        with self._store.read() as session:
            user = session.load_user(user_id)
            recent = session.list_requests(user_id=user_id, limit=USER_RECENT_REQUESTS)
        return {
            "user": user.to_dict(include_devices=True),
            "recentRequests": [r.to_dict() for r in recent],
        }

    def set_user_status(self, user_id: str, is_active: bool, reviewer_id: str) -> UserTrustState:
        """
        Activate or deactivate an account.

        A deactivated account cannot log in, open change requests or have
        one approved.

        Raises:
            PolicyViolation: If the reviewer is not an active admin
            NotFoundError: If the account does not exist
            ValidationError: If `is_active` is not a boolean
        """
        if not isinstance(is_active, bool):
            raise ValidationError("isActive must be a boolean")
        reviewer = self._require_admin(reviewer_id)
        user = self._store.set_user_active(user_id, is_active)

        if is_active:
            event_type, severity, verb = AuditEventType.USER_ACTIVATED, AuditSeverity.INFO, "activated"
        else:
            event_type, severity, verb = AuditEventType.USER_DEACTIVATED, AuditSeverity.WARNING, "deactivated"

        self._logger.info("Account %s %s by %s", user.username, verb, reviewer.username)
        self._record(
            event_type, severity, f"Account {verb}",
            user_id=user_id, details={"reviewed_by": reviewer_id},
        )
        return user

    # Login

    def fingerprint(self, user_id: str, signals: Optional[Mapping[str, Any]]) -> DeviceFingerprint:
        return self._extractor.extract(user_id, signals)

    def check_login(self, user_id: str, signals: Optional[Mapping[str, Any]]) -> Decision:
        """
        Evaluate a login attempt and apply its registry side effects.

        Load, evaluate, apply and save run in one store transaction, so
        two concurrent first logins cannot both bootstrap a device.
        On NEEDS_REVIEW the pending request for the device, if one
        exists, is attached to the decision.

        Raises:
            NotFoundError: If the account does not exist or is inactive
            ValidationError: If a signal is malformed
        """
        fp = self.fingerprint(user_id, signals)

        with self._store.transaction() as session:
            user = session.load_user(user_id)
            if not user.is_active:
                raise NotFoundError("User not found.")

            decision = self._evaluator.evaluate(user, fp)

            if decision.kind is DecisionKind.NEEDS_REVIEW:
                pending = session.find_pending_request(user_id, fp.device_id)
                if pending is not None:
                    decision = decision.with_change_request(pending.id)
            else:
                self._evaluator.apply(user, decision, fp, self._clock())
                session.save_registry(user)

        self._log_decision(user, decision, fp)
        return decision

    def _log_decision(self, user: UserTrustState, decision: Decision, fp: DeviceFingerprint) -> None:
        event_type, severity, description = _DECISION_AUDIT[decision.kind]

        details: Dict[str, Any] = {"decision": decision.kind.value, "ip": fp.ip}
        if decision.similarity is not None:
            details["similarity"] = decision.similarity
        if decision.change_request_id is not None:
            details["change_request_id"] = decision.change_request_id

        if decision.allows_login:
            self._logger.info(
                "%s for %s on device %s", decision.kind.value, user.username,
                short_id(decision.device_id),
            )
        else:
            self._logger.warning(
                "Login blocked for %s: unrecognized device %s", user.username,
                short_id(decision.device_id),
            )

        self._record(
            event_type, severity, description,
            user_id=user.user_id, device_id=decision.device_id, details=details,
        )

    # Change requests

    def request_device_change(
        self,
        user_id: str,
        signals: Optional[Mapping[str, Any]],
        reason: Optional[str] = None,
        at_login: bool = False,
    ) -> ChangeRequest:
        """
        Ask an administrator to make the requesting device the trusted one.

        `at_login` marks a request made from a blocked login, before the
        caller holds a session; only the default reason differs.

        Raises:
            NotFoundError: If the account does not exist or is inactive
            ConflictError: If the device is registered or already pending
            ValidationError: If the reason or a signal is malformed
        """
        fp = self.fingerprint(user_id, signals)
        request = self._lifecycle.create(
            user_id, fp, reason,
            default_reason=DEFAULT_LOGIN_REASON if at_login else DEFAULT_USER_REASON,
        )

        self._logger.info(
            "Device change requested by %s: %s -> %s", request.username,
            short_id(request.current_device_id), short_id(request.new_device_id),
        )
        self._record(
            AuditEventType.CHANGE_REQUESTED, AuditSeverity.INFO,
            "Device change requested",
            user_id=user_id, device_id=request.new_device_id,
            details={"request_id": request.id, "reason": request.reason, "at_login": at_login},
        )
        return request

    def _require_admin(self, reviewer_id: str) -> UserTrustState:
        try:
            reviewer = self._store.get_user(reviewer_id)
        except NotFoundError:
            raise PolicyViolation("Access denied. Admin privileges required.") from None
        if not reviewer.is_admin() or not reviewer.is_active:
            raise PolicyViolation("Access denied. Admin privileges required.")
        return reviewer

    def approve_request(
        self,
        request_id: str,
        reviewer_id: str,
        admin_notes: Optional[str] = None,
    ) -> ChangeRequest:
        """
        Approve a pending request; the account's trusted device is swapped.

        Raises:
            PolicyViolation: If the reviewer is not an active admin, or the
                requesting account has been deactivated
            NotFoundError: If the request does not exist
            ConflictError: If the request was already processed
        """
        reviewer = self._require_admin(reviewer_id)
        request = self._lifecycle.approve(request_id, reviewer_id, admin_notes)

        self._logger.info(
            "Device change %s approved by %s for %s", short_id(request.id),
            reviewer.username, request.username,
        )
        self._record(
            AuditEventType.CHANGE_APPROVED, AuditSeverity.WARNING,
            "Device change approved; trusted device replaced",
            user_id=request.user_id, device_id=request.new_device_id,
            details={
                "request_id": request.id,
                "reviewed_by": reviewer_id,
                "previous_device": short_id(request.current_device_id),
            },
        )
        return request

    def reject_request(
        self,
        request_id: str,
        reviewer_id: str,
        admin_notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ChangeRequest:
        """
        Reject a pending request. The account's registry is unchanged.

        Raises:
            PolicyViolation: If the reviewer is not an active admin
            NotFoundError: If the request does not exist
            ConflictError: If the request was already processed
        """
        reviewer = self._require_admin(reviewer_id)
        request = self._lifecycle.reject(request_id, reviewer_id, admin_notes, reason)

        self._logger.info(
            "Device change %s rejected by %s for %s", short_id(request.id),
            reviewer.username, request.username,
        )
        self._record(
            AuditEventType.CHANGE_REJECTED, AuditSeverity.INFO,
            "Device change rejected",
            user_id=request.user_id, device_id=request.new_device_id,
            details={"request_id": request.id, "reviewed_by": reviewer_id},
        )
        return request

    # Read side

    def get_request(self, request_id: str) -> ChangeRequest:
        return self._lifecycle.get(request_id)

    def list_requests(
        self,
        status: Optional[str] = "pending",
        page: int = 1,
        limit: int = 10,
        user_id: Optional[str] = None,
    ) -> RequestPage:
        return self._lifecycle.list(status=status, user_id=user_id, page=page, limit=limit)

    def request_history(
        self,
        page: int = 1,
        limit: int = HISTORY_PAGE_SIZE,
        user_id: Optional[str] = None,
    ) -> RequestPage:
        """Requests of every status, optionally for one account."""
        return self._lifecycle.list(status=None, user_id=user_id, page=page, limit=limit)

    def user_requests(self, user_id: str) -> List[ChangeRequest]:
        """Every request the account made, newest first."""
        return self._lifecycle.for_user(user_id)

    def dashboard(self) -> Dict[str, Any]:
        """Account and request counts plus the most recent requests."""
        with self._store.read() as session:
            total_users = session.count_users()
            active_users = session.count_users(active_only=True)
            recent = session.list_requests(limit=DASHBOARD_RECENT_REQUESTS)

        counts = self._lifecycle.stats()
        return {
            "stats": {
                "totalUsers": total_users,
                "activeUsers": active_users,
                "pendingRequests": counts["pending"],
                "approvedRequests": counts["approved"],
                "rejectedRequests": counts["rejected"],
            },
            "recentRequests": [r.to_dict() for r in recent],
        }


__all__ = ["DeviceTrustService"]
