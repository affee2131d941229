from __future__ import annotations

import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = "UTC"


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


def is_known_timezone(name: str) -> bool:
    candidate = name.strip()
    if not candidate:
        return False
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


@dataclass(frozen=True)
class Settings:
    app_name: str = "Event Reminder Dispatch"
    api_prefix: str = "/api/v1"
    app_url: str = ""
    # Wall-clock times of events are interpreted in this zone at evaluation time.
    app_timezone: str = DEFAULT_TIMEZONE
    poll_interval_seconds: int = 3600
    grace_period_seconds: int = 900
    resend_delay_seconds: int = 6 * 60 * 60
    mark_sent_max_attempts: int = 3
    mark_sent_backoff_seconds: float = 0.0
    worker_enabled: bool = False
    notification_token_validity_days: int = 60
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    notifier_from_address: str = "noreply@example.org"
    reminder_trigger_secret: str = ""
    reminder_allow_now_override: bool = False
    runtime_config_guard_mode: str = "warn"

    @property
    def window_seconds(self) -> int:
        return self.poll_interval_seconds + self.grace_period_seconds


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDER_APP_NAME", "Event Reminder Dispatch"),
        api_prefix=os.getenv("REMINDER_API_PREFIX", "/api/v1"),
        app_url=os.getenv("APP_URL", "").strip(),
        app_timezone=os.getenv("APP_TIMEZONE", "").strip() or DEFAULT_TIMEZONE,
        poll_interval_seconds=_as_int(os.getenv("EVENT_REMINDER_POLL_INTERVAL_SECONDS"), 3600, minimum=1),
        grace_period_seconds=_as_int(os.getenv("EVENT_REMINDER_GRACE_PERIOD_SECONDS"), 900),
        resend_delay_seconds=_as_int(os.getenv("EVENT_REMINDER_RESEND_DELAY_SECONDS"), 6 * 60 * 60, minimum=1),
        mark_sent_max_attempts=_as_int(os.getenv("EVENT_REMINDER_MARK_SENT_MAX_ATTEMPTS"), 3, minimum=1),
        mark_sent_backoff_seconds=_as_float(os.getenv("EVENT_REMINDER_MARK_SENT_BACKOFF_SECONDS"), 0.0),
        worker_enabled=_as_bool(os.getenv("EVENT_REMINDER_WORKER_ENABLED"), False),
        notification_token_validity_days=_as_int(os.getenv("NOTIFICATION_TOKEN_VALIDITY_DAYS"), 60, minimum=1),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=os.getenv("NOTIFIER_SENDER_TYPE", "stub"),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30, minimum=1),
        notifier_from_address=os.getenv("NOTIFIER_FROM_ADDRESS", "noreply@example.org"),
        reminder_trigger_secret=os.getenv("REMINDER_TRIGGER_SECRET", ""),
        reminder_allow_now_override=_as_bool(os.getenv("REMINDER_ALLOW_NOW_OVERRIDE"), False),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if not is_known_timezone(settings.app_timezone):
        issues.append(f"APP_TIMEZONE '{settings.app_timezone}' is not a known IANA timezone; UTC will be used")
    if not settings.app_url.strip():
        issues.append("APP_URL is empty; reminder links cannot be built and ticks will send nothing")
    if _is_placeholder(
        settings.reminder_trigger_secret,
        defaults={"dev-trigger-secret", "change-me-in-production"},
    ):
        issues.append("REMINDER_TRIGGER_SECRET is empty or uses a placeholder value")
    if settings.reminder_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres")
    if settings.notifier_sender_type.strip().lower() == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_api_key.strip():
            issues.append("NOTIFIER_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    return tuple(issues)
