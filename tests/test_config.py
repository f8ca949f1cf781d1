"""
Tests for social_publisher.config module.

Covers:
    - QueueConfig defaults and validation
    - Settings defaults, from_yaml, environment overrides
    - Interval selection per environment
    - OAuth client loading from the environment
    - Singleton get_settings / reset_settings behaviour
    - validate_env
"""

import pytest

from social_publisher.config import (
    OAUTH_ENV_VARS,
    OAuthClientConfig,
    QueueConfig,
    Settings,
    SweeperConfig,
    TokenRefreshConfig,
    get_settings,
    load_oauth_clients,
    reset_settings,
    validate_env,
)
from social_publisher.exceptions import ConfigurationError
from social_publisher.models import Platform


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_singleton():
    """Ensure the Settings singleton is cleared before and after each test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def write_yaml(tmp_path):
    def _write(text: str):
        path = tmp_path / "settings.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    return _write


# ===========================================================================
# 1. Section dataclasses
# ===========================================================================


class TestQueueConfig:
    """Defaults and validation of the queue section."""

    def test_defaults(self):
        cfg = QueueConfig()
        assert cfg.backend == "redis"
        assert cfg.max_attempts == 3
        assert cfg.backoff_base_seconds == 2.0
        assert cfg.concurrency == 5

    def test_rejects_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="Unknown queue backend"):
            QueueConfig(backend="kafka")

    @pytest.mark.parametrize("field_name", ["max_attempts", "concurrency"])
    def test_rejects_non_positive_counts(self, field_name):
        with pytest.raises(ConfigurationError):
            QueueConfig(**{field_name: 0})

    @pytest.mark.parametrize("stalled", [120.0, 60.0])
    def test_stall_threshold_must_exceed_job_timeout(self, stalled):
        with pytest.raises(ConfigurationError, match="must exceed job_timeout_seconds"):
            QueueConfig(job_timeout_seconds=120.0, stalled_after_seconds=stalled)

    def test_job_timeout_env_override_checked_against_stall_threshold(
        self, tmp_path, monkeypatch
    ):
        monkeypatch.setenv("QUEUE_JOB_TIMEOUT_SECONDS", "600")
        with pytest.raises(ConfigurationError, match="stalled_after_seconds"):
            Settings.from_yaml(tmp_path / "absent.yaml")


class TestSectionDefaults:
    def test_sweeper_defaults(self):
        cfg = SweeperConfig()
        assert cfg.development_interval_seconds == 300
        assert cfg.production_interval_seconds == 600
        assert cfg.stale_lock_minutes == 10

    def test_token_defaults(self):
        cfg = TokenRefreshConfig()
        assert cfg.lookahead_days == 5
        assert cfg.failure_ratio_alert == 0.5

    def test_oauth_client_is_configured(self):
        assert OAuthClientConfig("id", "secret").is_configured is True
        assert OAuthClientConfig("id", "").is_configured is False


# ===========================================================================
# 2. Settings
# ===========================================================================


class TestSettings:
    """Settings.from_yaml and derived properties."""

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = Settings.from_yaml(tmp_path / "absent.yaml")
        assert settings.environment == "production"
        assert settings.queue.backend == "redis"
        assert settings.handshake_ttl_seconds == 600

    def test_yaml_sections_are_loaded(self, write_yaml):
        path = write_yaml(
            "environment: development\n"
            "queue:\n  backend: memory\n  max_attempts: 5\n"
            "sweeper:\n  stale_lock_minutes: 20\n"
            "tokens:\n  lookahead_days: 7\n"
        )
        settings = Settings.from_yaml(path)
        assert settings.environment == "development"
        assert settings.queue.backend == "memory"
        assert settings.queue.max_attempts == 5
        assert settings.sweeper.stale_lock_minutes == 20
        assert settings.tokens.lookahead_days == 7

    def test_unknown_keys_are_ignored(self, write_yaml):
        settings = Settings.from_yaml(write_yaml("queue:\n  flavour: strawberry\n"))
        assert not hasattr(settings.queue, "flavour")

    def test_invalid_yaml_raises(self, write_yaml):
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            Settings.from_yaml(write_yaml("queue: [unclosed\n"))

    def test_env_overrides_yaml(self, write_yaml, monkeypatch):
        monkeypatch.setenv("QUEUE_BACKEND", "memory")
        monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("STALE_LOCK_MINUTES", "15")
        monkeypatch.setenv("SYNC_ON_START", "false")
        monkeypatch.setenv("APP_ENV", "development")

        settings = Settings.from_yaml(write_yaml("queue:\n  backend: redis\n"))

        assert settings.queue.backend == "memory"
        assert settings.queue.max_attempts == 7
        assert settings.sweeper.stale_lock_minutes == 15
        assert settings.sweeper.run_on_start is False
        assert settings.environment == "development"

    def test_invalid_env_cast_raises(self, tmp_path, monkeypatch):
        monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "three")
        with pytest.raises(ConfigurationError, match="QUEUE_MAX_ATTEMPTS"):
            Settings.from_yaml(tmp_path / "absent.yaml")

    def test_env_override_is_revalidated(self, tmp_path, monkeypatch):
        monkeypatch.setenv("QUEUE_BACKEND", "sqs")
        with pytest.raises(ConfigurationError, match="Unknown queue backend"):
            Settings.from_yaml(tmp_path / "absent.yaml")

    def test_unknown_environment_raises(self, write_yaml):
        with pytest.raises(ConfigurationError, match="Unknown environment"):
            Settings.from_yaml(write_yaml("environment: staging\n"))

    def test_intervals_follow_environment(self):
        dev = Settings(environment="development")
        prod = Settings(environment="production")
        assert dev.sync_interval_seconds == 5 * 60
        assert prod.sync_interval_seconds == 10 * 60
        assert dev.token_refresh_interval_seconds == 60 * 60
        assert prod.token_refresh_interval_seconds == 24 * 60 * 60


# ===========================================================================
# 3. OAuth clients
# ===========================================================================


class TestOAuthClients:
    def test_every_platform_has_env_vars(self):
        assert set(OAUTH_ENV_VARS) == set(Platform)

    def test_load_from_env(self, monkeypatch):
        monkeypatch.setenv("TWITTER_CLIENT_ID", "tw-id")
        monkeypatch.setenv("TWITTER_CLIENT_SECRET", "tw-secret")

        clients = load_oauth_clients()

        assert clients[Platform.TWITTER].client_id == "tw-id"
        assert clients[Platform.TWITTER].is_configured is True
        assert clients[Platform.TIKTOK].is_configured is False

    def test_instagram_shares_facebook_app(self, monkeypatch):
        monkeypatch.setenv("FACEBOOK_APP_ID", "fb-id")
        monkeypatch.setenv("FACEBOOK_APP_SECRET", "fb-secret")
        clients = load_oauth_clients()
        assert clients[Platform.INSTAGRAM].client_id == "fb-id"


# ===========================================================================
# 4. Singleton and env validation
# ===========================================================================


class TestGetSettings:
    def test_returns_same_instance(self):
        assert get_settings() is get_settings()

    def test_reset_creates_new_instance(self):
        first = get_settings()
        reset_settings()
        assert get_settings() is not first


class TestValidateEnv:
    def test_strict_raises_when_missing(self):
        with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
            validate_env(strict=True)

    def test_non_strict_reports_status(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://x.supabase.co")
        status = validate_env(strict=False)
        assert status["SUPABASE_URL"] is True
        assert status["SUPABASE_SERVICE_KEY"] is False
        assert status["REDIS_URL"] is False

    def test_strict_passes_when_set(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://x.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service-key")
        assert validate_env(strict=True)["SUPABASE_SERVICE_KEY"] is True
