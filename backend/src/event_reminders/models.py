from __future__ import annotations

from datetime import date, datetime, time, timezone

from pydantic import BaseModel, Field, field_validator

from .scheduling import parse_time_of_day


def _normalize_time_of_day(value: str) -> str:
    return parse_time_of_day(value).strftime("%H:%M:%S")


class ReminderPreference(BaseModel):
    user_id: str = Field(min_length=1)
    email: str = Field(min_length=3, max_length=320)
    lead_days: int = Field(ge=0)


class CandidateEvent(BaseModel):
    event_id: str = Field(min_length=1)
    start_date: date
    start_time_of_day: str
    end_time_of_day: str | None = None
    location: str = ""
    # Users who already answered the event do not need a reminder for it.
    responded_user_ids: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("start_time_of_day")
    @classmethod
    def _normalize_start(cls, value: str) -> str:
        return _normalize_time_of_day(value)

    @field_validator("end_time_of_day")
    @classmethod
    def _normalize_end(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return _normalize_time_of_day(value)

    @property
    def start_time(self) -> time:
        return parse_time_of_day(self.start_time_of_day)

    @property
    def end_time(self) -> time | None:
        if self.end_time_of_day is None:
            return None
        return parse_time_of_day(self.end_time_of_day)


class ReminderTickRequest(BaseModel):
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ReminderTickResponse(BaseModel):
    run_at: datetime
    evaluated_count: int
    due_count: int
    sent_count: int
    skipped_count: int
    failed_count: int
    unrecorded_count: int


class DispatchItem(BaseModel):
    dispatch_id: str
    event_id: str
    user_id: str
    lead_days: int
    queued_at: datetime
    sent_at: datetime | None = None


class DispatchListResponse(BaseModel):
    event_id: str
    items: list[DispatchItem]
