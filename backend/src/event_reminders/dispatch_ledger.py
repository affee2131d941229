from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol, Union

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, create_engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .notification_links import DispatchTokens


class DispatchNotFoundError(KeyError):
    """Raised when a ledger mutation targets a dispatch id that does not exist."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DispatchRecord:
    dispatch_id: str
    event_id: str
    user_id: str
    lead_days: int
    rsvp_token_hash: str
    unsubscribe_token_hash: str
    token_expires_at: datetime
    queued_at: datetime
    sent_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_sent(self) -> bool:
        return self.sent_at is not None


@dataclass(frozen=True)
class DispatchCreated:
    record: DispatchRecord


@dataclass(frozen=True)
class DispatchAlreadyExists:
    # None when the conflicting row disappeared before it could be read back.
    existing: DispatchRecord | None


DispatchCreateResult = Union[DispatchCreated, DispatchAlreadyExists]


class DispatchLedger(Protocol):
    def reset(self) -> None: ...

    def create(
        self,
        *,
        event_id: str,
        user_id: str,
        lead_days: int,
        tokens: DispatchTokens,
        queued_at: datetime,
    ) -> DispatchCreateResult: ...

    def find(self, event_id: str, user_id: str) -> DispatchRecord | None: ...

    def mark_sent(self, dispatch_id: str, *, sent_at: datetime) -> DispatchRecord: ...

    def reset_queued(
        self,
        dispatch_id: str,
        *,
        queued_at: datetime,
        expected_queued_at: datetime,
        lead_days: int,
        tokens: DispatchTokens,
    ) -> DispatchRecord | None: ...

    def delete(self, dispatch_id: str) -> None: ...

    def list_for_event(self, event_id: str) -> list[DispatchRecord]: ...


class InMemoryDispatchLedger:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = 1
        self._records: dict[str, DispatchRecord] = {}
        self._ids_by_pair: dict[tuple[str, str], str] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = 1
            self._records.clear()
            self._ids_by_pair.clear()

    def create(
        self,
        *,
        event_id: str,
        user_id: str,
        lead_days: int,
        tokens: DispatchTokens,
        queued_at: datetime,
    ) -> DispatchCreateResult:
        with self._lock:
            existing_id = self._ids_by_pair.get((event_id, user_id))
            if existing_id is not None:
                return DispatchAlreadyExists(self._records[existing_id])
            dispatch_id = f"erd_{self._counter:06d}"
            self._counter += 1
            now = _now_utc()
            record = DispatchRecord(
                dispatch_id=dispatch_id,
                event_id=event_id,
                user_id=user_id,
                lead_days=lead_days,
                rsvp_token_hash=tokens.rsvp_token_hash,
                unsubscribe_token_hash=tokens.unsubscribe_token_hash,
                token_expires_at=_coerce_utc(tokens.expires_at),
                queued_at=_coerce_utc(queued_at),
                sent_at=None,
                created_at=now,
                updated_at=now,
            )
            self._records[dispatch_id] = record
            self._ids_by_pair[(event_id, user_id)] = dispatch_id
            return DispatchCreated(record)

    def find(self, event_id: str, user_id: str) -> DispatchRecord | None:
        with self._lock:
            dispatch_id = self._ids_by_pair.get((event_id, user_id))
            return self._records.get(dispatch_id) if dispatch_id is not None else None

    def mark_sent(self, dispatch_id: str, *, sent_at: datetime) -> DispatchRecord:
        with self._lock:
            row = self._records.get(dispatch_id)
            if row is None:
                raise DispatchNotFoundError(dispatch_id)
            if row.sent_at is not None:
                return row
            updated = replace(row, sent_at=_coerce_utc(sent_at), updated_at=_now_utc())
            self._records[dispatch_id] = updated
            return updated

    def reset_queued(
        self,
        dispatch_id: str,
        *,
        queued_at: datetime,
        expected_queued_at: datetime,
        lead_days: int,
        tokens: DispatchTokens,
    ) -> DispatchRecord | None:
        with self._lock:
            row = self._records.get(dispatch_id)
            if row is None or row.sent_at is not None:
                return None
            if row.queued_at != _coerce_utc(expected_queued_at):
                return None
            updated = replace(
                row,
                lead_days=lead_days,
                rsvp_token_hash=tokens.rsvp_token_hash,
                unsubscribe_token_hash=tokens.unsubscribe_token_hash,
                token_expires_at=_coerce_utc(tokens.expires_at),
                queued_at=_coerce_utc(queued_at),
                sent_at=None,
                updated_at=_now_utc(),
            )
            self._records[dispatch_id] = updated
            return updated

    def delete(self, dispatch_id: str) -> None:
        with self._lock:
            row = self._records.pop(dispatch_id, None)
            if row is not None:
                self._ids_by_pair.pop((row.event_id, row.user_id), None)

    def list_for_event(self, event_id: str) -> list[DispatchRecord]:
        with self._lock:
            rows = [row for row in self._records.values() if row.event_id == event_id]
        return sorted(rows, key=lambda value: (value.queued_at, value.dispatch_id))


class DispatchLedgerBase(DeclarativeBase):
    pass


class _DispatchRow(DispatchLedgerBase):
    __tablename__ = "event_reminder_dispatches"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_event_reminder_dispatches_event_user"),)

    dispatch_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lead_days: Mapped[int] = mapped_column(Integer, nullable=False)
    rsvp_token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    unsubscribe_token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    queued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_record(row: _DispatchRow) -> DispatchRecord:
    return DispatchRecord(
        dispatch_id=row.dispatch_id,
        event_id=row.event_id,
        user_id=row.user_id,
        lead_days=row.lead_days,
        rsvp_token_hash=row.rsvp_token_hash,
        unsubscribe_token_hash=row.unsubscribe_token_hash,
        token_expires_at=_coerce_utc(row.token_expires_at),
        queued_at=_coerce_utc(row.queued_at),
        sent_at=_coerce_utc(row.sent_at) if row.sent_at is not None else None,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


class SqlAlchemyDispatchLedger:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DispatchLedgerBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_DispatchRow).delete()

    def create(
        self,
        *,
        event_id: str,
        user_id: str,
        lead_days: int,
        tokens: DispatchTokens,
        queued_at: datetime,
    ) -> DispatchCreateResult:
        now = _now_utc()
        row = _DispatchRow(
            dispatch_id=f"erd_{secrets.token_hex(8)}",
            event_id=event_id,
            user_id=user_id,
            lead_days=lead_days,
            rsvp_token_hash=tokens.rsvp_token_hash,
            unsubscribe_token_hash=tokens.unsubscribe_token_hash,
            token_expires_at=_coerce_utc(tokens.expires_at),
            queued_at=_coerce_utc(queued_at),
            sent_at=None,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
        except IntegrityError:
            return DispatchAlreadyExists(self.find(event_id, user_id))
        return DispatchCreated(_to_record(row))

    def find(self, event_id: str, user_id: str) -> DispatchRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_DispatchRow)
                .where(_DispatchRow.event_id == event_id)
                .where(_DispatchRow.user_id == user_id)
            ).scalar_one_or_none()
            if row is None:
                return None
            return _to_record(row)

    def mark_sent(self, dispatch_id: str, *, sent_at: datetime) -> DispatchRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_DispatchRow, dispatch_id)
                if row is None:
                    raise DispatchNotFoundError(dispatch_id)
                if row.sent_at is None:
                    row.sent_at = _coerce_utc(sent_at)
                    row.updated_at = _now_utc()
                return _to_record(row)

    def reset_queued(
        self,
        dispatch_id: str,
        *,
        queued_at: datetime,
        expected_queued_at: datetime,
        lead_days: int,
        tokens: DispatchTokens,
    ) -> DispatchRecord | None:
        with self._session() as session:
            with session.begin():
                # Conditional update: only one concurrent reconciler can claim a stale record.
                result = session.execute(
                    update(_DispatchRow)
                    .where(_DispatchRow.dispatch_id == dispatch_id)
                    .where(_DispatchRow.sent_at.is_(None))
                    .where(_DispatchRow.queued_at == _coerce_utc(expected_queued_at))
                    .values(
                        lead_days=lead_days,
                        rsvp_token_hash=tokens.rsvp_token_hash,
                        unsubscribe_token_hash=tokens.unsubscribe_token_hash,
                        token_expires_at=_coerce_utc(tokens.expires_at),
                        queued_at=_coerce_utc(queued_at),
                        updated_at=_now_utc(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                row = session.get(_DispatchRow, dispatch_id, populate_existing=True)
                return _to_record(row) if row is not None else None

    def delete(self, dispatch_id: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_DispatchRow, dispatch_id)
                if row is None:
                    return
                session.delete(row)

    def list_for_event(self, event_id: str) -> list[DispatchRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_DispatchRow)
                .where(_DispatchRow.event_id == event_id)
                .order_by(_DispatchRow.queued_at.asc(), _DispatchRow.dispatch_id.asc())
            ).scalars()
            return [_to_record(row) for row in rows]


def create_dispatch_ledger(*, backend: str, database_url: str) -> DispatchLedger:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDispatchLedger(database_url)
    if normalized == "inmemory":
        return InMemoryDispatchLedger()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
