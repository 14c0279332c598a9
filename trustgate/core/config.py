"""
Secure Configuration Module
===========================

Provides immutable, environment-aware configuration with security-first defaults.

Security Features:
- Immutable configuration after initialization
- Environment variable override support
- No secrets in default values
- Type-safe configuration access
- OS-aware path handling
"""

from __future__ import annotations

import hashlib
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Any, Optional


# Security Constants
_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "secret", "key", "token", "api_key",
    "private", "credential", "auth", "salt"
})


def _is_sensitive_key(key: str) -> bool:
    """Check if a configuration key might contain sensitive data."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_default_data_dir() -> Path:
    """Get OS-appropriate default data directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif system == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:  # Linux and others
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    return base / "TrustGate"


def _get_default_log_dir() -> Path:
    """Get OS-appropriate default log directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
        return base / "TrustGate" / "Logs"
    elif system == "darwin":
        return Path.home() / "Library" / "Logs" / "TrustGate"
    else:  # Linux and others
        return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state")) / "TrustGate" / "logs"


@dataclass(frozen=True, slots=True)
class PathConfig:
    """Immutable path configuration with OS-aware defaults."""

    data_dir: Path = field(default_factory=_get_default_data_dir)
    log_dir: Path = field(default_factory=_get_default_log_dir)

    def __post_init__(self) -> None:
        """Validate paths after initialization."""
        for field_name in ["data_dir", "log_dir"]:
            path = getattr(self, field_name)
            if not path.is_absolute():
                raise ValueError(f"{field_name} must be an absolute path: {path}")


@dataclass(frozen=True, slots=True)
class StoreConfig:
    """Immutable persistence configuration."""

    database_name: str = "trustgate.db"
    audit_log_name: str = "audit.log"
    busy_timeout_seconds: float = 5.0
    audit_enabled: bool = True

    def __post_init__(self) -> None:
        """Validate store settings."""
        for name in (self.database_name, self.audit_log_name):
            if not name or "/" in name or "\\" in name or ".." in name:
                raise ValueError(f"Store file names must be plain file names: {name!r}")
        if self.busy_timeout_seconds <= 0:
            raise ValueError("busy_timeout_seconds must be positive")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Immutable logging configuration."""

    level: str = "INFO"
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10 MB
    backup_count: int = 5
    enable_console: bool = True
    enable_file: bool = False
    enable_json: bool = False

    def __post_init__(self) -> None:
        """Validate logging settings."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {self.level}")


@dataclass(frozen=True, slots=True)
class WebConfig:
    """Immutable web API configuration."""

    max_content_length: int = 64 * 1024
    trust_forwarded_for: bool = False

    def __post_init__(self) -> None:
        if self.max_content_length < 1024:
            raise ValueError("max_content_length must be at least 1024 bytes")


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Immutable application configuration."""

    app_name: str = "TrustGate"
    version: str = "0.1.0"
    debug_mode: bool = False  # Always False in production

    def __post_init__(self) -> None:
        """Validate and enforce security rules."""
        if self.debug_mode:
            import warnings
            warnings.warn(
                "Debug mode is enabled. This should NEVER be used in production.",
                SecurityWarning,
                stacklevel=2
            )


class TrustGateConfig:
    """
    Centralized, immutable configuration loader with environment override support.

    Provides:
    - Immutable configuration after initialization
    - Environment variable overrides (prefixed with TRUSTGATE_)
    - Type-safe access to configuration values
    - OS-aware path defaults

    Usage:
        config = TrustGateConfig.load()
        db_path = config.database_path
        level = config.logging.level
    """

    __slots__ = ("_paths", "_store", "_logging", "_web", "_app", "_frozen", "_config_hash")

    _instance: Optional[TrustGateConfig] = None

    def __init__(
        self,
        paths: Optional[PathConfig] = None,
        store: Optional[StoreConfig] = None,
        logging: Optional[LoggingConfig] = None,
        web: Optional[WebConfig] = None,
        app: Optional[AppConfig] = None,
    ) -> None:
        """Initialize configuration. Use TrustGateConfig.load() for standard initialization."""
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_paths", paths or PathConfig())
        object.__setattr__(self, "_store", store or StoreConfig())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_web", web or WebConfig())
        object.__setattr__(self, "_app", app or AppConfig())
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

    def _compute_hash(self) -> str:
        """Compute a hash of the configuration for integrity checking."""
        config_str = f"{self._paths}|{self._store}|{self._logging}|{self._web}|{self._app}"
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def paths(self) -> PathConfig:
        """Get path configuration."""
        return self._paths

    @property
    def store(self) -> StoreConfig:
        """Get store configuration."""
        return self._store

    @property
    def logging(self) -> LoggingConfig:
        """Get logging configuration."""
        return self._logging

    @property
    def web(self) -> WebConfig:
        """Get web API configuration."""
        return self._web

    @property
    def app(self) -> AppConfig:
        """Get application configuration."""
        return self._app

    @property
    def config_hash(self) -> str:
        """Get configuration integrity hash."""
        return self._config_hash

    @property
    def database_path(self) -> Path:
        """Path of the SQLite trust store."""
        return self._paths.data_dir / self._store.database_name

    @property
    def audit_log_path(self) -> Path:
        """Path of the audit log file."""
        return self._paths.log_dir / self._store.audit_log_name

    @classmethod
    def load(cls, env_prefix: str = "TRUSTGATE") -> TrustGateConfig:
        """
        Load configuration with environment variable overrides.

        Environment variables should be prefixed with TRUSTGATE_ and use
        double underscores for nested values.

        Examples:
            TRUSTGATE_LOGGING__LEVEL=DEBUG
            TRUSTGATE_PATHS__DATA_DIR=/var/lib/trustgate
            TRUSTGATE_STORE__AUDIT_ENABLED=false

        Args:
            env_prefix: Prefix for environment variables (default: TRUSTGATE)

        Returns:
            Configured TrustGateConfig instance
        """
        env_overrides = cls._parse_env_overrides(env_prefix)

        paths_kwargs: dict[str, Any] = {}
        if "paths.data_dir" in env_overrides:
            paths_kwargs["data_dir"] = Path(env_overrides["paths.data_dir"])
        if "paths.log_dir" in env_overrides:
            paths_kwargs["log_dir"] = Path(env_overrides["paths.log_dir"])

        store_kwargs: dict[str, Any] = {}
        if "store.database_name" in env_overrides:
            store_kwargs["database_name"] = env_overrides["store.database_name"]
        if "store.audit_log_name" in env_overrides:
            store_kwargs["audit_log_name"] = env_overrides["store.audit_log_name"]
        if "store.busy_timeout_seconds" in env_overrides:
            store_kwargs["busy_timeout_seconds"] = float(
                env_overrides["store.busy_timeout_seconds"]
            )
        if "store.audit_enabled" in env_overrides:
            store_kwargs["audit_enabled"] = _parse_bool(env_overrides["store.audit_enabled"])

        logging_kwargs: dict[str, Any] = {}
        if "logging.level" in env_overrides:
            logging_kwargs["level"] = env_overrides["logging.level"]
        if "logging.enable_console" in env_overrides:
            logging_kwargs["enable_console"] = _parse_bool(env_overrides["logging.enable_console"])
        if "logging.enable_file" in env_overrides:
            logging_kwargs["enable_file"] = _parse_bool(env_overrides["logging.enable_file"])
        if "logging.enable_json" in env_overrides:
            logging_kwargs["enable_json"] = _parse_bool(env_overrides["logging.enable_json"])

        web_kwargs: dict[str, Any] = {}
        if "web.max_content_length" in env_overrides:
            web_kwargs["max_content_length"] = int(env_overrides["web.max_content_length"])
        if "web.trust_forwarded_for" in env_overrides:
            web_kwargs["trust_forwarded_for"] = _parse_bool(env_overrides["web.trust_forwarded_for"])

        # debug_mode cannot be overridden via env for security
        return cls(
            paths=PathConfig(**paths_kwargs) if paths_kwargs else None,
            store=StoreConfig(**store_kwargs) if store_kwargs else None,
            logging=LoggingConfig(**logging_kwargs) if logging_kwargs else None,
            web=WebConfig(**web_kwargs) if web_kwargs else None,
        )

    @staticmethod
    def _parse_env_overrides(prefix: str) -> dict[str, str]:
        """Parse environment variables with the given prefix."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in os.environ.items():
            if key.startswith(prefix_upper):
                # Convert TRUSTGATE_SECTION__KEY to section.key
                config_key = key[len(prefix_upper):].lower().replace("__", ".")

                # SECURITY: Skip sensitive keys from environment
                if _is_sensitive_key(config_key):
                    continue

                overrides[config_key] = value

        return overrides

    @classmethod
    def get_instance(cls) -> TrustGateConfig:
        """
        Get or create the singleton configuration instance.

        Returns:
            The global TrustGateConfig instance
        """
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance. Use only for testing."""
        cls._instance = None

    def ensure_directories(self) -> None:
        """Create all required directories with secure permissions."""
        import stat

        for directory in (self._paths.data_dir, self._paths.log_dir):
            directory.mkdir(parents=True, exist_ok=True)

            # Set restrictive permissions on Unix-like systems
            if platform.system().lower() != "windows":
                directory.chmod(stat.S_IRWXU)  # 700 - owner only

    def __repr__(self) -> str:
        """Safe string representation without sensitive data."""
        return f"TrustGateConfig(hash={self._config_hash}, app={self._app.app_name})"

    def __setattr__(self, name: str, value: Any) -> None:
        """Prevent modification after initialization."""
        if hasattr(self, "_frozen") and self._frozen:
            raise AttributeError("TrustGateConfig is immutable after initialization")
        super().__setattr__(name, value)


class SecurityWarning(UserWarning):
    """Warning for security-related configuration issues."""
    pass
