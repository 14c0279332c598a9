"""
TrustGate Web API
=================
Flask JSON API over the device trust service.

Caller identity is resolved by an injected `resolve_identity(request)`
callable returning the authenticated user id (or None); token
verification lives outside this package. Likewise `resolve_login(request)`
checks the credentials of a blocked login that asks for a device change.
"""

from __future__ import annotations

from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Optional

from flask import Flask, Request, g, jsonify, request
from werkzeug.exceptions import HTTPException

from trustgate.core.config import TrustGateConfig
from trustgate.core.device.evaluator import DecisionKind
from trustgate.core.device.fingerprint import signals_from_headers
from trustgate.core.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    PolicyViolation,
    TrustGateError,
    ValidationError,
)
from trustgate.core.logging import get_configured_logger
from trustgate.security.constants import HISTORY_PAGE_SIZE
from trustgate.service import DeviceTrustService

IdentityResolver = Callable[[Request], Optional[str]]

_ERROR_STATUS: tuple[tuple[type[TrustGateError], int], ...] = (
    (ValidationError, 400),
    (PolicyViolation, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (PersistenceError, 503),
)

_DECISION_MESSAGES = {
    DecisionKind.LOGIN_OK: "Login successful.",
    DecisionKind.ADMIN_BYPASS: "Admin login successful. Device registered automatically.",
    DecisionKind.AUTO_REGISTER: "Login successful. Device registered automatically.",
    DecisionKind.IP_REBIND: "Login successful. Device recognized (IP change detected).",
    DecisionKind.NEEDS_REVIEW: "Device not registered. Please choose an action.",
}


def _anonymous(_request: Request) -> Optional[str]:
    return None


def envelope(data: Any = None, message: Optional[str] = None, success: bool = True):
    body: dict[str, Any] = {"success": success}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return jsonify(body)


def error_status(error: TrustGateError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(
    service: Optional[DeviceTrustService] = None,
    resolve_identity: IdentityResolver = _anonymous,
    config: Optional[TrustGateConfig] = None,
    resolve_login: IdentityResolver = _anonymous,
) -> Flask:
    """
    Build the Flask application.

    Args:
        service: Device trust service; built from `config` when omitted
        resolve_identity: Returns the authenticated user id for a request
        config: Application configuration (defaults to the global instance)
        resolve_login: Returns the user id for valid login credentials in
            a request body, or None
    """
    config = config or TrustGateConfig.get_instance()
    service = service or DeviceTrustService.from_config(config)
    logger = get_configured_logger("trustgate.web", config)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = config.web.max_content_length
    app.config["TRUSTGATE_SERVICE"] = service

    def client_address() -> Optional[str]:
        if config.web.trust_forwarded_for:
            forwarded = request.headers.get("X-Forwarded-For", "")
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        return request.remote_addr

    def request_signals() -> dict[str, str]:
        return signals_from_headers(request.headers, client_address())

    def json_body() -> dict[str, Any]:
        data = request.get_json(silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    def require_auth(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            user_id = resolve_identity(request)
            if not user_id:
                return envelope(message="Access denied. No token provided.", success=False), 401
            try:
                g.user = service.authenticate(user_id)
            except NotFoundError:
                return envelope(
                    message="Invalid token or user not found.", success=False
                ), 401
            g.user_id = user_id
            return f(*args, **kwargs)
        return wrapper

    def require_admin(f):
        @wraps(f)
        @require_auth
        def wrapper(*args, **kwargs):
            if not g.user.is_admin():
                return envelope(
                    message="Access denied. Admin privileges required.", success=False
                ), 403
            return f(*args, **kwargs)
        return wrapper

    @app.after_request
    def add_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.errorhandler(TrustGateError)
    def handle_trust_error(error: TrustGateError):
        status = error_status(error)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, error.message)
        else:
            logger.info("%s %s rejected (%d): %s", request.method, request.path, status, error.message)
        return envelope(message=error.message, success=False), status

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return envelope(message=error.description, success=False), error.code

    # ============================================================
    # HEALTH CHECK
    # ============================================================

    @app.route("/api/health")
    def health():
        return jsonify({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    # ============================================================
    # USER ROUTES
    # ============================================================

    @app.route("/api/auth/device-check", methods=["POST"])
    @require_auth
    def device_check():
        decision = service.check_login(g.user_id, request_signals())
        message = _DECISION_MESSAGES[decision.kind]
        data = decision.to_dict()

        if not decision.allows_login:
            data["requiresDeviceAction"] = True
            return envelope(data, message, success=False), 403

        if decision.kind is DecisionKind.IP_REBIND:
            data["ipChangeDetected"] = True
        if decision.kind is DecisionKind.ADMIN_BYPASS:
            data["adminBypass"] = True
        return envelope(data, message)

    @app.route("/api/auth/request-device-change", methods=["POST"])
    @require_auth
    def request_device_change():
        body = json_body()
        change = service.request_device_change(g.user_id, request_signals(), body.get("reason"))
        return envelope(
            {"requestId": change.id, "status": change.status.value},
            "Device change request created successfully.",
        ), 201

    @app.route("/api/auth/request-device-change-unauth", methods=["POST"])
    def request_device_change_at_login():
        body = json_body()
        user_id = resolve_login(request)
        if not user_id:
            return envelope(message="Invalid credentials.", success=False), 401
        try:
            change = service.request_device_change(
                user_id, request_signals(), body.get("reason"), at_login=True
            )
        except NotFoundError:
            return envelope(message="Invalid credentials.", success=False), 401
        return envelope(
            {"requestId": change.id, "status": change.status.value},
            "Device change request created successfully.",
        ), 201

    @app.route("/api/auth/me", methods=["GET"])
    @require_auth
    def me():
        return envelope({"user": g.user.to_dict()})

    @app.route("/api/auth/my-requests", methods=["GET"])
    @require_auth
    def my_requests():
        requests = service.user_requests(g.user_id)
        return envelope({"requests": [r.to_dict() for r in requests]})

    # ============================================================
    # ADMIN ROUTES
    # ============================================================

    @app.route("/api/admin/requests", methods=["GET"])
    @require_admin
    def list_requests():
        page = service.list_requests(
            status=request.args.get("status", "pending"),
            page=request.args.get("page", 1),
            limit=request.args.get("limit", 10),
        )
        return envelope(page.to_dict())

    @app.route("/api/admin/requests/history", methods=["GET"])
    @require_admin
    def request_history():
        page = service.request_history(
            page=request.args.get("page", 1),
            limit=request.args.get("limit", HISTORY_PAGE_SIZE),
            user_id=request.args.get("userId") or None,
        )
        return envelope(page.to_dict())

    @app.route("/api/admin/requests/<request_id>", methods=["GET"])
    @require_admin
    def get_request(request_id: str):
        change = service.get_request(request_id)
        return envelope({"request": change.to_dict()})

    @app.route("/api/admin/requests/<request_id>/approve", methods=["POST"])
    @require_admin
    def approve_request(request_id: str):
        body = json_body()
        change = service.approve_request(request_id, g.user_id, body.get("adminNotes"))
        return envelope(
            {"request": change.to_dict()},
            "Device change request approved successfully.",
        )

    @app.route("/api/admin/requests/<request_id>/reject", methods=["POST"])
    @require_admin
    def reject_request(request_id: str):
        body = json_body()
        change = service.reject_request(
            request_id, g.user_id, body.get("adminNotes"), body.get("reason")
        )
        return envelope(
            {"request": change.to_dict()},
            "Device change request rejected successfully.",
        )

    @app.route("/api/admin/users", methods=["GET"])
    @require_admin
    def list_users():
        return envelope(service.list_users(
            page=request.args.get("page", 1),
            limit=request.args.get("limit", 10),
        ))

    @app.route("/api/admin/users/<user_id>", methods=["GET"])
    @require_admin
    def user_details(user_id: str):
        return envelope(service.user_details(user_id))

    @app.route("/api/admin/users/<user_id>/toggle-status", methods=["POST"])
    @require_admin
    def toggle_user_status(user_id: str):
        body = json_body()
        user = service.set_user_status(user_id, body.get("isActive"), g.user_id)
        verb = "activated" if user.is_active else "deactivated"
        return envelope(
            {"user": {"id": user.user_id, "username": user.username, "isActive": user.is_active}},
            f"User {verb} successfully.",
        )

    @app.route("/api/admin/dashboard", methods=["GET"])
    @require_admin
    def dashboard():
        return envelope(service.dashboard())

    return app


__all__ = ["create_app", "envelope", "error_status", "IdentityResolver"]
