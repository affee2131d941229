from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from pydantic import ValidationError
from sqlalchemy import Boolean, Date, Integer, String, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import CandidateEvent, ReminderPreference

logger = logging.getLogger(__name__)

# Events from yesterday onward are still candidates; anything older cannot be due.
CANDIDATE_LOOKBACK = timedelta(days=1)


class CandidateLoadError(RuntimeError):
    """Raised when users or events cannot be loaded for a tick."""


def _earliest_candidate_date(now: datetime) -> date:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now.astimezone(timezone.utc) - CANDIDATE_LOOKBACK).date()


class UserDirectory(Protocol):
    def list_reminder_preferences(self) -> list[ReminderPreference]: ...


class EventDirectory(Protocol):
    def list_candidate_events(self, now: datetime) -> list[CandidateEvent]: ...


class InMemoryUserDirectory:
    def __init__(self, preferences: Iterable[ReminderPreference] = ()) -> None:
        self._lock = Lock()
        self._preferences: dict[str, ReminderPreference] = {item.user_id: item for item in preferences}

    def reset(self) -> None:
        with self._lock:
            self._preferences.clear()

    def upsert(self, preference: ReminderPreference) -> None:
        with self._lock:
            self._preferences[preference.user_id] = preference

    def remove(self, user_id: str) -> None:
        with self._lock:
            self._preferences.pop(user_id, None)

    def list_reminder_preferences(self) -> list[ReminderPreference]:
        with self._lock:
            return sorted(self._preferences.values(), key=lambda value: value.user_id)


class InMemoryEventDirectory:
    def __init__(self, events: Iterable[CandidateEvent] = ()) -> None:
        self._lock = Lock()
        self._events: dict[str, CandidateEvent] = {item.event_id: item for item in events}

    def reset(self) -> None:
        with self._lock:
            self._events.clear()

    def upsert(self, event: CandidateEvent) -> None:
        with self._lock:
            self._events[event.event_id] = event

    def list_candidate_events(self, now: datetime) -> list[CandidateEvent]:
        earliest = _earliest_candidate_date(now)
        with self._lock:
            events = [value for value in self._events.values() if value.start_date >= earliest]
        return sorted(events, key=lambda value: (value.start_date, value.start_time_of_day, value.event_id))


class DirectoryBase(DeclarativeBase):
    pass


class _UserRow(DirectoryBase):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    event_reminder_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    event_reminder_days_before: Mapped[int | None] = mapped_column(Integer, nullable=True)


class _EventRow(DirectoryBase):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    event_date: Mapped[date] = mapped_column("date", Date, nullable=False, index=True)
    time_from: Mapped[str] = mapped_column(String(8), nullable=False)
    time_to: Mapped[str | None] = mapped_column(String(8), nullable=True)
    location: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _EventVoteRow(DirectoryBase):
    __tablename__ = "event_votes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)


class _SqlAlchemyDirectory:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for the SQL user and event directories")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DirectoryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()


class SqlAlchemyUserDirectory(_SqlAlchemyDirectory):
    def list_reminder_preferences(self) -> list[ReminderPreference]:
        try:
            with self._session() as session:
                rows = session.execute(
                    select(_UserRow)
                    .where(_UserRow.event_reminder_enabled.is_(True))
                    .where(_UserRow.event_reminder_days_before.is_not(None))
                    .order_by(_UserRow.id.asc())
                ).scalars()
                preferences: list[ReminderPreference] = []
                for row in rows:
                    try:
                        preferences.append(
                            ReminderPreference(
                                user_id=row.id,
                                email=row.email,
                                lead_days=row.event_reminder_days_before,
                            )
                        )
                    except ValidationError as exc:
                        logger.warning("event_reminder_user_invalid: user_id=%s error=%s", row.id, exc)
                return preferences
        except SQLAlchemyError as exc:
            raise CandidateLoadError(f"could not load users: {exc}") from exc


class SqlAlchemyEventDirectory(_SqlAlchemyDirectory):
    def list_candidate_events(self, now: datetime) -> list[CandidateEvent]:
        earliest = _earliest_candidate_date(now)
        try:
            with self._session() as session:
                rows = session.execute(
                    select(_EventRow)
                    .where(_EventRow.visible.is_(True))
                    .where(_EventRow.event_date >= earliest)
                    .order_by(_EventRow.event_date.asc(), _EventRow.id.asc())
                ).scalars().all()
                event_ids = [row.id for row in rows]
                responded: dict[str, set[str]] = {}
                if event_ids:
                    votes = session.execute(
                        select(_EventVoteRow.event_id, _EventVoteRow.user_id).where(
                            _EventVoteRow.event_id.in_(event_ids)
                        )
                    )
                    for event_id, user_id in votes:
                        responded.setdefault(event_id, set()).add(user_id)
                events: list[CandidateEvent] = []
                for row in rows:
                    try:
                        events.append(
                            CandidateEvent(
                                event_id=row.id,
                                start_date=row.event_date,
                                start_time_of_day=row.time_from,
                                end_time_of_day=row.time_to,
                                location=row.location,
                                responded_user_ids=frozenset(responded.get(row.id, set())),
                            )
                        )
                    except ValidationError as exc:
                        logger.warning("event_reminder_candidate_invalid: event_id=%s error=%s", row.id, exc)
                return events
        except SQLAlchemyError as exc:
            raise CandidateLoadError(f"could not load events: {exc}") from exc


def create_directories(*, backend: str, database_url: str) -> tuple[UserDirectory, EventDirectory]:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyUserDirectory(database_url), SqlAlchemyEventDirectory(database_url)
    if normalized == "inmemory":
        return InMemoryUserDirectory(), InMemoryEventDirectory()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
