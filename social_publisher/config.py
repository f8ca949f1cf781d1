"""
Centralized configuration loader for the publishing engine.

Loads settings from a YAML file and environment variables, providing
sensible defaults when the configuration file is absent.

Provides:
    - QueueConfig: Job queue backend, retry policy, concurrency, timeouts
    - SweeperConfig: Reconciliation sweep intervals and stale-lock threshold
    - TokenRefreshConfig: Lookahead window, intervals, alert threshold
    - OAuthClientConfig: Per-platform OAuth client credentials
    - Settings: Global application settings loaded from YAML + env vars
    - get_settings(): Singleton accessor for Settings
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from social_publisher.exceptions import ConfigurationError
from social_publisher.models import Platform

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of social_publisher/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)

DEVELOPMENT = "development"
PRODUCTION = "production"


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env(
    target: Any,
    overrides: Dict[str, Tuple[str, Callable[[str], Any]]],
) -> None:
    """Override dataclass attributes from environment variables.

    Raises:
        ConfigurationError: If a variable is set but cannot be cast.
    """
    for env_key, (attr_name, cast_fn) in overrides.items():
        env_val = os.environ.get(env_key)
        if env_val is None or env_val == "":
            continue
        try:
            setattr(target, attr_name, cast_fn(env_val))
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(
                f"Invalid value for env var {env_key}='{env_val}': {exc}"
            ) from exc


def _from_section(cls: Any, data: Dict[str, Any]) -> Any:
    """Build a config dataclass from a YAML section, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**{k: v for k, v in data.items() if k in known})


# ===========================================================================
# QUEUE CONFIGURATION
# ===========================================================================


@dataclass
class QueueConfig:
    """Job queue settings.

    ``backend`` is ``"redis"`` (durable, multi-process) or ``"memory"``
    (single process, development and tests).
    """

    backend: str = "redis"
    name: str = "social-posts"
    redis_url: str = "redis://localhost:6379/0"
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    concurrency: int = 5
    poll_interval_seconds: float = 1.0
    job_timeout_seconds: float = 120.0
    operation_timeout_seconds: float = 5.0
    stalled_after_seconds: float = 300.0
    clean_grace_hours: int = 24

    def __post_init__(self) -> None:
        if self.backend not in {"redis", "memory"}:
            raise ConfigurationError(
                f"Unknown queue backend '{self.backend}'. Valid: ['redis', 'memory']"
            )
        if self.max_attempts < 1:
            raise ConfigurationError("queue max_attempts must be >= 1")
        if self.concurrency < 1:
            raise ConfigurationError("queue concurrency must be >= 1")
        # A job still inside its timeout must never count as stalled
        if self.stalled_after_seconds <= self.job_timeout_seconds:
            raise ConfigurationError(
                f"queue stalled_after_seconds ({self.stalled_after_seconds}) must exceed "
                f"job_timeout_seconds ({self.job_timeout_seconds})"
            )


# ===========================================================================
# SWEEPER CONFIGURATION
# ===========================================================================


@dataclass
class SweeperConfig:
    """Reconciliation sweep settings."""

    development_interval_seconds: int = 5 * 60
    production_interval_seconds: int = 10 * 60
    # A post left in PUBLISHING longer than this is treated as a crashed worker
    stale_lock_minutes: int = 10
    run_on_start: bool = True


# ===========================================================================
# TOKEN REFRESH CONFIGURATION
# ===========================================================================


@dataclass
class TokenRefreshConfig:
    """OAuth token maintenance settings."""

    development_interval_seconds: int = 60 * 60
    production_interval_seconds: int = 24 * 60 * 60
    lookahead_days: int = 5
    # Worker refreshes before publishing when expiry is this close
    pre_publish_refresh_hours: int = 24
    # Expired longer than this: fail the post without trying to refresh
    credential_hard_fail_hours: int = 6
    failure_ratio_alert: float = 0.5
    delay_between_refreshes_seconds: float = 1.0
    request_timeout_seconds: float = 15.0


# ===========================================================================
# OAUTH CLIENT CONFIGURATION
# ===========================================================================


@dataclass
class OAuthClientConfig:
    """OAuth client credentials for one platform."""

    client_id: str = ""
    client_secret: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


# Environment variable names per platform: (client id, client secret)
OAUTH_ENV_VARS: Dict[Platform, Tuple[str, str]] = {
    Platform.FACEBOOK: ("FACEBOOK_APP_ID", "FACEBOOK_APP_SECRET"),
    # Instagram Graph API uses the Facebook app
    Platform.INSTAGRAM: ("FACEBOOK_APP_ID", "FACEBOOK_APP_SECRET"),
    Platform.TIKTOK: ("TIKTOK_CLIENT_KEY", "TIKTOK_CLIENT_SECRET"),
    Platform.TWITTER: ("TWITTER_CLIENT_ID", "TWITTER_CLIENT_SECRET"),
    Platform.YOUTUBE: ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET"),
}


def load_oauth_clients() -> Dict[Platform, OAuthClientConfig]:
    """Read every platform's OAuth client credentials from the environment."""
    return {
        platform: OAuthClientConfig(
            client_id=os.environ.get(id_var, ""),
            client_secret=os.environ.get(secret_var, ""),
        )
        for platform, (id_var, secret_var) in OAUTH_ENV_VARS.items()
    }


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """
    Global application settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    sensible defaults. Environment variables override YAML values for
    secrets and deployment-specific configuration.
    """

    environment: str = PRODUCTION
    log_level: str = "INFO"

    # Platform publish call timeout (seconds)
    publish_timeout_seconds: float = 60.0

    # OAuth handshake state lifetime (seconds)
    handshake_ttl_seconds: int = 10 * 60

    queue: QueueConfig = field(default_factory=QueueConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    tokens: TokenRefreshConfig = field(default_factory=TokenRefreshConfig)
    oauth_clients: Dict[Platform, OAuthClientConfig] = field(default_factory=dict)

    @property
    def is_development(self) -> bool:
        return self.environment == DEVELOPMENT

    @property
    def sync_interval_seconds(self) -> int:
        if self.is_development:
            return self.sweeper.development_interval_seconds
        return self.sweeper.production_interval_seconds

    @property
    def token_refresh_interval_seconds(self) -> int:
        if self.is_development:
            return self.tokens.development_interval_seconds
        return self.tokens.production_interval_seconds

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed,
                or an environment override has an invalid value.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        # -----------------------------------------------------------------
        # Nested sections
        # -----------------------------------------------------------------
        queue = _from_section(QueueConfig, data.get("queue", {}))
        _apply_env(queue, {
            "QUEUE_BACKEND": ("backend", str),
            "QUEUE_NAME": ("name", str),
            "REDIS_URL": ("redis_url", str),
            "QUEUE_MAX_ATTEMPTS": ("max_attempts", int),
            "QUEUE_BACKOFF_SECONDS": ("backoff_base_seconds", float),
            "QUEUE_CONCURRENCY": ("concurrency", int),
            "QUEUE_JOB_TIMEOUT_SECONDS": ("job_timeout_seconds", float),
        })
        # Re-run validation after env overrides
        queue.__post_init__()

        sweeper = _from_section(SweeperConfig, data.get("sweeper", {}))
        _apply_env(sweeper, {
            "SYNC_INTERVAL_DEV_SECONDS": ("development_interval_seconds", int),
            "SYNC_INTERVAL_PROD_SECONDS": ("production_interval_seconds", int),
            "STALE_LOCK_MINUTES": ("stale_lock_minutes", int),
            "SYNC_ON_START": ("run_on_start", _as_bool),
        })

        tokens = _from_section(TokenRefreshConfig, data.get("tokens", {}))
        _apply_env(tokens, {
            "TOKEN_REFRESH_LOOKAHEAD_DAYS": ("lookahead_days", int),
            "TOKEN_REFRESH_INTERVAL_DEV_SECONDS": ("development_interval_seconds", int),
            "TOKEN_REFRESH_INTERVAL_PROD_SECONDS": ("production_interval_seconds", int),
            "TOKEN_HARD_FAIL_HOURS": ("credential_hard_fail_hours", int),
            "TOKEN_FAILURE_RATIO_ALERT": ("failure_ratio_alert", float),
        })

        settings = cls(
            environment=data.get("environment", PRODUCTION),
            log_level=data.get("log_level", "INFO"),
            publish_timeout_seconds=data.get("publish_timeout_seconds", 60.0),
            handshake_ttl_seconds=data.get("handshake_ttl_seconds", 10 * 60),
            queue=queue,
            sweeper=sweeper,
            tokens=tokens,
            oauth_clients=load_oauth_clients(),
        )
        _apply_env(settings, {
            "APP_ENV": ("environment", str),
            "LOG_LEVEL": ("log_level", str),
            "PUBLISH_TIMEOUT_SECONDS": ("publish_timeout_seconds", float),
        })

        if settings.environment not in {DEVELOPMENT, PRODUCTION}:
            raise ConfigurationError(
                f"Unknown environment '{settings.environment}'. "
                f"Valid: ['{DEVELOPMENT}', '{PRODUCTION}']"
            )
        return settings


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global Settings singleton.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """Reset the cached Settings singleton (tests, config reloads)."""
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

# Required environment variables for the system to function
REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
]

# Optional but recommended environment variables
OPTIONAL_ENV_VARS: List[str] = sorted({
    "REDIS_URL",
    *(var for pair in OAUTH_ENV_VARS.values() for var in pair),
})


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. If ``False``, return the status dict
            without raising.

    Returns:
        Dict mapping variable name to presence status (``True`` if set).

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
        present = bool(os.environ.get(var))
        status[var] = present
        if not present:
            missing.append(var)

    for var in OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var))

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            f"Copy .env.example to .env and fill in the values."
        )

    return status


__all__ = [
    "DEVELOPMENT",
    "PRODUCTION",
    "QueueConfig",
    "SweeperConfig",
    "TokenRefreshConfig",
    "OAuthClientConfig",
    "OAUTH_ENV_VARS",
    "load_oauth_clients",
    "Settings",
    "get_settings",
    "reset_settings",
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
]
