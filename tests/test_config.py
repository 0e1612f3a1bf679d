import pytest
from pydantic import ValidationError

from leasekeeper.config import Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings()
    assert settings.lease_max_duration_minutes == 60
    assert settings.idle_timeout_default_minutes == 30
    assert settings.idle_timeout_min_minutes == 5
    assert settings.idle_timeout_max_minutes == 60
    assert settings.failed_validation_limit == 5
    assert settings.lease_retention_days == 7
    assert settings.idle_timeout_options == [5, 10, 15, 30, 45, 60]


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("LEASE_MAX_DURATION_MINUTES", "120")
    monkeypatch.setenv("IDLE_TIMEOUT_MAX_MINUTES", "90")
    monkeypatch.setenv("TOKEN_PEPPER", "pepper")
    monkeypatch.setenv("TRUST_PROXY_HEADERS", "true")

    settings = Settings.from_env()

    assert settings.lease_max_duration_minutes == 120
    assert settings.idle_timeout_max_minutes == 90
    assert settings.token_pepper == "pepper"
    assert settings.trust_proxy_headers is True


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setenv("SWEEPER_BATCH_SIZE", "50")
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("SWEEPER_BATCH_SIZE", "75")
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().sweeper_batch_size == 75


def test_idle_bounds_must_be_ordered():
    with pytest.raises(ValidationError):
        Settings(idle_timeout_min_minutes=30, idle_timeout_max_minutes=10, idle_timeout_default_minutes=20)


def test_default_must_sit_within_bounds():
    with pytest.raises(ValidationError):
        Settings(idle_timeout_default_minutes=90)


def test_options_follow_bounds():
    settings = Settings(idle_timeout_min_minutes=10, idle_timeout_max_minutes=30)
    assert settings.idle_timeout_options == [10, 15, 30]


def test_non_positive_durations_rejected():
    with pytest.raises(ValidationError):
        Settings(lease_max_duration_minutes=0)


def test_activity_interval_must_be_shorter_than_min_idle_window():
    with pytest.raises(ValidationError):
        Settings(activity_min_interval_seconds=300)

    settings = Settings(activity_min_interval_seconds=299)
    assert settings.activity_min_interval_seconds == 299
