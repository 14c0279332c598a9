import logging
from datetime import datetime, timedelta, timezone

import pytest

from trustgate.core.config import LoggingConfig, PathConfig, TrustGateConfig
from trustgate.core.device.fingerprint import FingerprintExtractor
from trustgate.core.device.registry import Role
from trustgate.core.requests.lifecycle import ChangeRequestLifecycle
from trustgate.db.store import SQLiteTrustStore
from trustgate.security.audit import TamperAwareAuditLog
from trustgate.service import DeviceTrustService
from trustgate.web.app import create_app


# ==================== Pytest Markers ====================
def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (database, API)")


LAPTOP = {
    "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0",
    "platform": "Windows",
    "language": "en-US",
    "languages": "en-US,en",
    "screen_resolution": "1920x1080",
    "color_depth": "24",
    "pixel_ratio": "1",
    "hardware_concurrency": "8",
    "max_touch_points": "0",
    "timezone": "Europe/Berlin",
    "ip": "203.0.113.10",
}

PHONE = {
    "user_agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Safari/604.1",
    "platform": "iOS",
    "language": "de-DE",
    "languages": "de-DE,de",
    "screen_resolution": "390x844",
    "color_depth": "32",
    "pixel_ratio": "3",
    "hardware_concurrency": "6",
    "max_touch_points": "5",
    "timezone": "Europe/Berlin",
    "ip": "198.51.100.7",
}


class FixedClock:
    """Deterministic clock; advance() moves it forward."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def signals():
    """Factory for signal dicts based on the laptop profile."""
    def _make(base=None, **overrides):
        data = dict(base or LAPTOP)
        data.update(overrides)
        return data
    return _make


@pytest.fixture()
def phone_signals():
    return dict(PHONE)


@pytest.fixture()
def extractor():
    return FingerprintExtractor()


@pytest.fixture()
def clock():
    return FixedClock()


@pytest.fixture()
def store(tmp_path):
    store = SQLiteTrustStore(tmp_path / "trust.db")
    store.initialize_db()
    return store


@pytest.fixture()
def lifecycle(store, clock):
    return ChangeRequestLifecycle(store, clock=clock)


@pytest.fixture()
def audit(tmp_path):
    return TamperAwareAuditLog(tmp_path / "logs" / "audit.log")


@pytest.fixture()
def service(store, audit, clock):
    return DeviceTrustService(
        store,
        audit=audit,
        logger=logging.getLogger("trustgate.tests"),
        clock=clock,
    )


@pytest.fixture()
def alice(service):
    return service.register_user("u-alice", "alice", email="alice@example.com")


@pytest.fixture()
def admin(service):
    return service.register_user("u-admin", "root", role=Role.ADMIN)


@pytest.fixture()
def config(tmp_path):
    return TrustGateConfig(
        paths=PathConfig(data_dir=tmp_path / "data", log_dir=tmp_path / "logs"),
        logging=LoggingConfig(enable_console=False),
    )


@pytest.fixture()
def app(service, config):
    app = create_app(
        service,
        resolve_identity=lambda req: req.headers.get("X-Test-User"),
        config=config,
        resolve_login=lambda req: req.headers.get("X-Test-Login"),
    )
    app.config.update(TESTING=True)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()
