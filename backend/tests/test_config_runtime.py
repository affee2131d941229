from __future__ import annotations

import os

from event_reminders.config import Settings, get_settings, is_known_timezone, runtime_config_issues

_REMINDER_ENV = (
    "APP_URL",
    "APP_TIMEZONE",
    "EVENT_REMINDER_POLL_INTERVAL_SECONDS",
    "EVENT_REMINDER_GRACE_PERIOD_SECONDS",
    "EVENT_REMINDER_RESEND_DELAY_SECONDS",
    "EVENT_REMINDER_MARK_SENT_MAX_ATTEMPTS",
    "EVENT_REMINDER_WORKER_ENABLED",
    "REMINDER_STORE_BACKEND",
    "RUNTIME_CONFIG_GUARD_MODE",
)


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults() -> None:
    previous = {name: _set_env(name, None) for name in _REMINDER_ENV}
    try:
        settings = get_settings()
        assert settings.app_timezone == "UTC"
        assert settings.poll_interval_seconds == 3600
        assert settings.grace_period_seconds == 900
        assert settings.resend_delay_seconds == 6 * 60 * 60
        assert settings.mark_sent_max_attempts == 3
        assert settings.worker_enabled is False
        assert settings.reminder_store_backend == "inmemory"
        assert settings.runtime_config_guard_mode == "warn"
        assert settings.window_seconds == 4500
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_ignores_invalid_numbers_and_modes() -> None:
    previous = {
        "EVENT_REMINDER_POLL_INTERVAL_SECONDS": _set_env("EVENT_REMINDER_POLL_INTERVAL_SECONDS", "0"),
        "EVENT_REMINDER_GRACE_PERIOD_SECONDS": _set_env("EVENT_REMINDER_GRACE_PERIOD_SECONDS", "soon"),
        "EVENT_REMINDER_MARK_SENT_MAX_ATTEMPTS": _set_env("EVENT_REMINDER_MARK_SENT_MAX_ATTEMPTS", "-2"),
        "EVENT_REMINDER_WORKER_ENABLED": _set_env("EVENT_REMINDER_WORKER_ENABLED", "maybe"),
        "RUNTIME_CONFIG_GUARD_MODE": _set_env("RUNTIME_CONFIG_GUARD_MODE", "STRICT"),
        "APP_TIMEZONE": _set_env("APP_TIMEZONE", "  "),
    }
    try:
        settings = get_settings()
        assert settings.poll_interval_seconds == 3600
        assert settings.grace_period_seconds == 900
        assert settings.mark_sent_max_attempts == 3
        assert settings.worker_enabled is False
        assert settings.runtime_config_guard_mode == "warn"
        assert settings.app_timezone == "UTC"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_reads_overrides() -> None:
    previous = {
        "APP_TIMEZONE": _set_env("APP_TIMEZONE", "Europe/Berlin"),
        "APP_URL": _set_env("APP_URL", " https://verein.example.org "),
        "EVENT_REMINDER_RESEND_DELAY_SECONDS": _set_env("EVENT_REMINDER_RESEND_DELAY_SECONDS", "86400"),
        "EVENT_REMINDER_WORKER_ENABLED": _set_env("EVENT_REMINDER_WORKER_ENABLED", "yes"),
    }
    try:
        settings = get_settings()
        assert settings.app_timezone == "Europe/Berlin"
        assert settings.app_url == "https://verein.example.org"
        assert settings.resend_delay_seconds == 86400
        assert settings.worker_enabled is True
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_is_known_timezone() -> None:
    assert is_known_timezone("Europe/Berlin")
    assert is_known_timezone("UTC")
    assert not is_known_timezone("Mars/Olympus_Mons")
    assert not is_known_timezone("")


def test_runtime_config_issues_flag_incomplete_settings() -> None:
    issues = runtime_config_issues(
        Settings(
            app_timezone="Mars/Olympus_Mons",
            reminder_trigger_secret="change-me",
            reminder_store_backend="postgres",
            notifier_sender_type="http",
        )
    )

    assert any("APP_TIMEZONE" in issue for issue in issues)
    assert any("APP_URL" in issue for issue in issues)
    assert any("REMINDER_TRIGGER_SECRET" in issue for issue in issues)
    assert any("DATABASE_URL" in issue for issue in issues)
    assert any("NOTIFIER_API_BASE_URL" in issue for issue in issues)
    assert any("NOTIFIER_API_KEY" in issue for issue in issues)


def test_runtime_config_issues_empty_for_complete_settings() -> None:
    settings = Settings(
        app_url="https://verein.example.org",
        app_timezone="Europe/Berlin",
        reminder_trigger_secret="prod-trigger-secret-001",
        reminder_store_backend="postgres",
        database_url="postgresql+psycopg://reminders@db/reminders",
    )

    assert runtime_config_issues(settings) == ()
