"""Reconciles Google Calendar events into the normalized event store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from life_planner.domains.calendars.providers.base import CalendarProvider
from life_planner.domains.calendars.providers.google import format_rfc3339
from life_planner.domains.calendars.schemas import (
    NormalizedEvent,
    PRIMARY_CALENDAR_ID,
    SyncResult,
)
from life_planner.domains.calendars.tokens import (
    ReauthorizationRequired,
    TokenRefreshManager,
)
from life_planner.utils.errors import (
    GoogleCalendarAPIError,
    RefreshFailed,
    SupabaseStorageError,
)

DEFAULT_MAX_RESULTS = 250

# Google Calendar event colorId -> hex
COLOR_PALETTE: Dict[str, str] = {
    "1": "#7986cb",  # Lavender
    "2": "#33b679",  # Sage
    "3": "#8e24aa",  # Grape
    "4": "#e67c73",  # Flamingo
    "5": "#f6bf26",  # Banana
    "6": "#f4511e",  # Tangerine
    "7": "#039be5",  # Peacock
    "8": "#616161",  # Graphite
    "9": "#3f51b5",  # Blueberry
    "10": "#0b8043",  # Basil
    "11": "#d60000",  # Tomato
}

logger = logging.getLogger(__name__)


class EventStore(Protocol):
    def get_event_by_provider_id(
        self, user_id: str, provider_event_id: str
    ) -> NormalizedEvent | None: ...

    def insert_event(self, event: NormalizedEvent) -> NormalizedEvent: ...

    def replace_event(self, event_id: str, event: NormalizedEvent) -> NormalizedEvent: ...

    def delete_event(self, event_id: str) -> None: ...


def derive_title_color(title: str) -> str:
    """Deterministic colour from the first two characters of a title."""
    first = (ord(title[0]) if len(title) > 0 else 0) or 65
    second = (ord(title[1]) if len(title) > 1 else 0) or 66
    return "#" + format(abs(first * second) % 16777215, "06x")


def resolve_event_color(event: Dict[str, Any]) -> str:
    fallback = derive_title_color(event.get("summary") or "")
    color_id = event.get("colorId")
    if color_id:
        return COLOR_PALETTE.get(str(color_id), fallback)
    return fallback


def _parse_event_time(payload: Dict[str, Any]) -> Optional[datetime]:
    value = payload.get("dateTime")
    if value:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    value = payload.get("date")
    if value:
        return datetime.combine(date.fromisoformat(str(value)), time.min, timezone.utc)
    return None


def normalize_event(
    event: Dict[str, Any],
    *,
    user_id: str,
    calendar_id: str,
    synced_at: datetime,
) -> Optional[NormalizedEvent]:
    """Translate a provider event, or return None when it must be skipped."""
    title = event.get("summary")
    if not title or event.get("status") == "cancelled" or not event.get("id"):
        return None

    start_payload = event.get("start") or {}
    end_payload = event.get("end") or {}
    try:
        start_time = _parse_event_time(start_payload)
        end_time = _parse_event_time(end_payload)
    except ValueError:
        logger.warning("Skipping event %s with unparseable times", event.get("id"))
        return None
    if start_time is None or end_time is None:
        return None
    if end_time < start_time:
        logger.warning("Skipping event %s that ends before it starts", event.get("id"))
        return None

    return NormalizedEvent(
        user_id=user_id,
        provider_event_id=event["id"],
        title=title,
        description=event.get("description") or "",
        start_time=start_time,
        end_time=end_time,
        location=event.get("location") or "",
        is_all_day=bool(start_payload.get("date")),
        color=resolve_event_color(event),
        calendar_id=calendar_id,
        last_synced_at=synced_at,
        revision_tag=event.get("etag") or "",
        raw_payload=event,
    )


@dataclass
class _Tally:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.unchanged


class CalendarSyncEngine:
    """Pulls events for a time window and upserts them by Google event ID."""

    def __init__(
        self,
        repository: EventStore,
        token_manager: TokenRefreshManager,
        provider: CalendarProvider,
        *,
        max_results: int = DEFAULT_MAX_RESULTS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.repository = repository
        self.token_manager = token_manager
        self.provider = provider
        self.max_results = max_results
        self.clock = clock

    async def sync(
        self,
        user_id: str,
        time_min: datetime,
        time_max: datetime,
        *,
        calendar_ids: Optional[Sequence[str]] = None,
        max_results: Optional[int] = None,
    ) -> SyncResult:
        try:
            token = await self.token_manager.get_valid_access_token()
        except RefreshFailed as exc:
            logger.error("Token refresh failed before sync user=%s: %s", user_id, exc)
            return SyncResult(success=False, message=f"Failed to refresh access token: {exc}")
        if isinstance(token, ReauthorizationRequired):
            return SyncResult(success=False, message="Not authorized with Google Calendar")

        if not calendar_ids:
            record = self.token_manager.store.get()
            calendar_ids = (record.calendar_ids if record else None) or [PRIMARY_CALENDAR_ID]
        limit = max_results or self.max_results
        window_min = format_rfc3339(time_min)
        window_max = format_rfc3339(time_max)

        tally = _Tally()
        processed: List[str] = []
        failed: List[str] = []
        for calendar_id in calendar_ids:
            logger.info(
                "Fetching events from %s to %s for calendar %s user=%s",
                window_min,
                window_max,
                calendar_id,
                user_id,
            )
            try:
                events = await self.provider.list_events(
                    access_token=token,
                    calendar_id=calendar_id,
                    time_min=window_min,
                    time_max=window_max,
                    max_results=limit,
                    show_deleted=True,
                )
            except GoogleCalendarAPIError as exc:
                logger.error(
                    "Error fetching events for calendar %s user=%s status=%s",
                    calendar_id,
                    user_id,
                    exc.status_code,
                )
                failed.append(calendar_id)
                continue

            self.store_events(user_id, calendar_id, events, tally)
            processed.append(calendar_id)

        if not processed:
            return SyncResult(
                success=False,
                message=f"Failed to sync events from all calendars: {', '.join(failed)}",
                failed_calendar_ids=failed,
            )

        message = (
            f"Successfully synced {tally.processed} events from {len(processed)} "
            f"calendars ({', '.join(processed)})"
        )
        if failed:
            message += f" (Failed calendars: {', '.join(failed)})"
        return SyncResult(
            success=True,
            message=message,
            event_count=tally.processed,
            calendars_processed=len(processed),
            failed_calendar_ids=failed,
            inserted=tally.inserted,
            updated=tally.updated,
            unchanged=tally.unchanged,
            removed=tally.removed,
        )

    async def sync_calendar(
        self,
        user_id: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        *,
        max_results: Optional[int] = None,
    ) -> SyncResult:
        return await self.sync(
            user_id,
            time_min,
            time_max,
            calendar_ids=[calendar_id],
            max_results=max_results,
        )

    def store_events(
        self,
        user_id: str,
        calendar_id: str,
        events: List[Dict[str, Any]],
        tally: _Tally | None = None,
    ) -> int:
        """Upsert provider events in order; returns how many were processed."""
        tally = tally if tally is not None else _Tally()
        before = tally.processed
        synced_at = self.clock()
        for event in events:
            try:
                if event.get("status") == "cancelled":
                    self._retract(user_id, event, tally)
                    continue
                normalized = normalize_event(
                    event,
                    user_id=user_id,
                    calendar_id=calendar_id,
                    synced_at=synced_at,
                )
                if normalized is None:
                    continue
                self._upsert(user_id, normalized, tally)
            except SupabaseStorageError as exc:
                logger.error("Error storing event %s user=%s: %s", event.get("id"), user_id, exc)
        return tally.processed - before

    def _upsert(self, user_id: str, event: NormalizedEvent, tally: _Tally) -> None:
        existing = self.repository.get_event_by_provider_id(user_id, event.provider_event_id)
        if existing is None:
            self.repository.insert_event(event)
            tally.inserted += 1
        elif existing.revision_tag != event.revision_tag:
            self.repository.replace_event(existing.id, event)  # type: ignore[arg-type]
            tally.updated += 1
        else:
            tally.unchanged += 1

    def _retract(self, user_id: str, event: Dict[str, Any], tally: _Tally) -> None:
        event_id = event.get("id")
        if not event_id:
            return
        existing = self.repository.get_event_by_provider_id(user_id, event_id)
        if existing is not None and existing.id is not None:
            self.repository.delete_event(existing.id)
            tally.removed += 1
