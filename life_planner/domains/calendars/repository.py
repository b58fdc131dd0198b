"""Repository for calendar-related database operations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from postgrest import APIError

from life_planner.db.session import get_service_client
from life_planner.domains.calendars.schemas import AuthRecord, NormalizedEvent
from life_planner.utils.errors import SupabaseStorageError

AUTH_TABLE = "google_calendar_auth"
EVENTS_TABLE = "google_calendar_events"


def _event_from_row(row: Dict[str, Any]) -> NormalizedEvent:
    data = dict(row)
    if data.get("id") is not None:
        data["id"] = str(data["id"])
    return NormalizedEvent(**data)


class CalendarRepository:
    """Repository for calendar database operations."""

    # Auth records
    def get_auth_record(self, user_id: str) -> AuthRecord | None:
        """Get the Google Calendar auth record for a user."""
        client = get_service_client()
        try:
            result = (
                client.table(AUTH_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except APIError as exc:
            raise SupabaseStorageError(exc.message) from exc
        if not result.data:
            return None
        return AuthRecord(**result.data[0])

    def upsert_auth_record(self, user_id: str, record: AuthRecord) -> AuthRecord:
        """
        Write the full auth record for a user.

        Cleared fields are written as nulls, so callers must pass the merged
        record rather than a partial patch.
        """
        client = get_service_client()
        payload = {**record.to_row(), "user_id": user_id}
        try:
            result = (
                client.table(AUTH_TABLE)
                .upsert(payload, on_conflict="user_id")
                .execute()
            )
        except APIError as exc:
            raise SupabaseStorageError(exc.message) from exc
        if not result.data:
            raise SupabaseStorageError(
                "Supabase did not return google calendar auth data."
            )
        return AuthRecord(**result.data[0])

    # Normalized events
    def get_event_by_provider_id(
        self, user_id: str, provider_event_id: str
    ) -> NormalizedEvent | None:
        """Find a synced event by its Google event ID."""
        client = get_service_client()
        try:
            result = (
                client.table(EVENTS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .eq("provider_event_id", provider_event_id)
                .limit(1)
                .execute()
            )
        except APIError as exc:
            raise SupabaseStorageError(exc.message) from exc
        if not result.data:
            return None
        return _event_from_row(result.data[0])

    def insert_event(self, event: NormalizedEvent) -> NormalizedEvent:
        """Insert a newly seen Google event."""
        client = get_service_client()
        try:
            result = client.table(EVENTS_TABLE).insert(event.to_row()).execute()
        except APIError as exc:
            raise SupabaseStorageError(exc.message) from exc
        if not result.data:
            raise SupabaseStorageError("Supabase did not return inserted event data.")
        return _event_from_row(result.data[0])

    def replace_event(self, event_id: str, event: NormalizedEvent) -> NormalizedEvent:
        """Overwrite a stored event in place."""
        client = get_service_client()
        try:
            result = (
                client.table(EVENTS_TABLE)
                .update(event.to_row())
                .eq("id", event_id)
                .execute()
            )
        except APIError as exc:
            raise SupabaseStorageError(exc.message) from exc
        if not result.data:
            raise SupabaseStorageError("Event not found or update failed.")
        return _event_from_row(result.data[0])

    def list_events_for_user(self, user_id: str) -> List[NormalizedEvent]:
        """Get every synced event for a user."""
        client = get_service_client()
        try:
            result = (
                client.table(EVENTS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("start_time")
                .execute()
            )
        except APIError as exc:
            raise SupabaseStorageError(exc.message) from exc
        return [_event_from_row(row) for row in result.data or []]

    def list_events_in_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> List[NormalizedEvent]:
        """Get synced events overlapping [start, end]."""
        client = get_service_client()
        try:
            result = (
                client.table(EVENTS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .lte("start_time", end.isoformat())
                .gte("end_time", start.isoformat())
                .order("start_time")
                .execute()
            )
        except APIError as exc:
            raise SupabaseStorageError(exc.message) from exc
        return [_event_from_row(row) for row in result.data or []]

    def delete_event(self, event_id: str) -> None:
        """Delete a single synced event."""
        client = get_service_client()
        try:
            client.table(EVENTS_TABLE).delete().eq("id", event_id).execute()
        except APIError as exc:
            raise SupabaseStorageError(exc.message) from exc
