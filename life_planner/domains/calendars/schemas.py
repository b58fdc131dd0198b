"""Calendar domain schemas."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

PRIMARY_CALENDAR_ID = "primary"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Durable records
class AuthRecord(BaseModel):
    """Per-user Google Calendar authorization state."""

    user_id: str
    is_authorized: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    calendar_ids: List[str] = Field(default_factory=lambda: [PRIMARY_CALENDAR_ID])
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class NormalizedEvent(BaseModel):
    """A provider event translated into the planner's event shape."""

    id: Optional[str] = None
    user_id: str
    provider_event_id: str
    title: str
    description: str = ""
    start_time: datetime
    end_time: datetime
    location: str = ""
    is_all_day: bool = False
    color: str
    calendar_id: str
    last_synced_at: datetime
    revision_tag: str = ""
    raw_payload: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_time_order(self) -> "NormalizedEvent":
        if self.start_time > self.end_time:
            raise ValueError("start_time must be on or before end_time")
        return self

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id"})


# Authorization schemas
class AuthStatusResponse(BaseModel):
    is_authorized: bool
    token_expiry: Optional[datetime] = None
    calendar_ids: List[str] = Field(default_factory=lambda: [PRIMARY_CALENDAR_ID])
    has_refresh_token: bool = False
    flow_state: Optional[str] = None


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str = Field(..., min_length=10)
    state_expires_at: datetime


class CodeExchangeRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: Optional[str] = None


class OperationResult(BaseModel):
    """Structured outcome returned across the integration boundary."""

    success: bool
    message: str = ""


class AuthorizationResult(OperationResult):
    calendar_ids: List[str] = Field(default_factory=list)


class TokenRefreshResponse(OperationResult):
    token_expiry: Optional[datetime] = None
    reauthorization_required: bool = False


# Calendar schemas
class CalendarListEntry(BaseModel):
    id: str
    summary: Optional[str] = None
    primary: bool = False
    access_role: Optional[str] = None
    background_color: Optional[str] = None
    foreground_color: Optional[str] = None


class CalendarListResponse(OperationResult):
    calendars: List[CalendarListEntry] = Field(default_factory=list)
    calendar_ids: List[str] = Field(default_factory=list)


# Event schemas
class RefreshEventsRequest(BaseModel):
    calendar_id: str = PRIMARY_CALENDAR_ID
    time_min: Optional[datetime] = None
    time_max: Optional[datetime] = None
    max_results: int = Field(default=250, ge=1, le=2500)
    force_refresh: bool = False


class RefreshEventsResponse(OperationResult):
    events: List[Dict[str, Any]] = Field(default_factory=list)
    from_cache: bool = False


class SyncRequest(BaseModel):
    time_min: datetime
    time_max: datetime
    calendar_id: Optional[str] = None
    max_results: Optional[int] = Field(default=None, ge=1, le=2500)

    @model_validator(mode="after")
    def _check_window(self) -> "SyncRequest":
        if self.time_max < self.time_min:
            raise ValueError("time_max must be on or after time_min")
        return self


class SyncResult(OperationResult):
    event_count: int = 0
    calendars_processed: int = 0
    failed_calendar_ids: List[str] = Field(default_factory=list)
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0


class StoredEventsResponse(BaseModel):
    events: List[NormalizedEvent] = Field(default_factory=list)


class ClearEventsResponse(BaseModel):
    deleted_count: int
