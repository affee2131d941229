from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

DEFAULT_TOKEN_VALIDITY_DAYS = 60


@dataclass(frozen=True)
class DispatchTokens:
    rsvp_token: str
    unsubscribe_token: str
    rsvp_token_hash: str
    unsubscribe_token_hash: str
    expires_at: datetime


def generate_notification_token() -> str:
    return secrets.token_urlsafe(32)


def hash_notification_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_expiry(now: datetime, validity_days: int = DEFAULT_TOKEN_VALIDITY_DAYS) -> datetime:
    days = validity_days if validity_days > 0 else DEFAULT_TOKEN_VALIDITY_DAYS
    return now + timedelta(days=days)


def issue_dispatch_tokens(now: datetime, *, validity_days: int = DEFAULT_TOKEN_VALIDITY_DAYS) -> DispatchTokens:
    rsvp_token = generate_notification_token()
    unsubscribe_token = generate_notification_token()
    return DispatchTokens(
        rsvp_token=rsvp_token,
        unsubscribe_token=unsubscribe_token,
        rsvp_token_hash=hash_notification_token(rsvp_token),
        unsubscribe_token_hash=hash_notification_token(unsubscribe_token),
        expires_at=token_expiry(now, validity_days),
    )


def normalize_app_url(app_url: str) -> str:
    return app_url.strip().rstrip("/")


def build_rsvp_url(app_url: str, token: str) -> str:
    return f"{normalize_app_url(app_url)}/anmeldung/{token}"


def build_unsubscribe_url(app_url: str, token: str) -> str:
    return f"{normalize_app_url(app_url)}/benachrichtigungen/abmelden/{token}"
