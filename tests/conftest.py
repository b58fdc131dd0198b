"""Pytest fixtures for backend tests."""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

# Set required env vars for tests
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-that-is-long-enough-for-hs256")

from life_planner.core.config import Settings, get_settings
from life_planner.core.dependencies import get_current_user, get_session_registry
from life_planner.domains.auth.schemas import AuthenticatedUser
from life_planner.domains.calendars.oauth_flow import InteractionSurface
from life_planner.domains.calendars.providers.google import (
    GoogleCalendarHttpClient,
    GoogleOAuthClient,
)
from life_planner.domains.calendars.schemas import AuthRecord, NormalizedEvent
from life_planner.domains.calendars.service import CalendarSessionRegistry
from life_planner.main import app
from life_planner.utils.errors import CrossOriginAccessError

USER_ID = "test-user-123"
START_TIME = datetime(2024, 3, 14, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeSurface(InteractionSurface):
    """Popup stand-in whose location is unreadable until navigated back."""

    def __init__(self, *, opens: bool = True) -> None:
        self.opens = opens
        self.opened_url = None
        self._location = None
        self._closed = False

    def open(self, url):
        self.opened_url = url
        return self.opens

    @property
    def location(self):
        if self._location is None:
            raise CrossOriginAccessError("still on accounts.google.com")
        return self._location

    def navigate(self, url):
        self._location = url

    @property
    def closed(self):
        return self._closed

    def close(self):
        self._closed = True


class InMemoryCalendarRepository:
    """Stand-in for CalendarRepository backed by dicts."""

    def __init__(self) -> None:
        self.auth: Dict[str, AuthRecord] = {}
        self.events: Dict[str, NormalizedEvent] = {}
        self.auth_writes = 0
        self.inserts = 0
        self.replaces = 0
        self.deletes = 0
        self._next_id = 1

    def get_auth_record(self, user_id: str) -> Optional[AuthRecord]:
        record = self.auth.get(user_id)
        return record.model_copy(deep=True) if record else None

    def upsert_auth_record(self, user_id: str, record: AuthRecord) -> AuthRecord:
        self.auth_writes += 1
        self.auth[user_id] = record.model_copy(update={"user_id": user_id}, deep=True)
        return self.auth[user_id].model_copy(deep=True)

    def get_event_by_provider_id(
        self, user_id: str, provider_event_id: str
    ) -> Optional[NormalizedEvent]:
        for event in self.events.values():
            if event.user_id == user_id and event.provider_event_id == provider_event_id:
                return event.model_copy(deep=True)
        return None

    def insert_event(self, event: NormalizedEvent) -> NormalizedEvent:
        self.inserts += 1
        event_id = str(self._next_id)
        self._next_id += 1
        self.events[event_id] = event.model_copy(update={"id": event_id}, deep=True)
        return self.events[event_id]

    def replace_event(self, event_id: str, event: NormalizedEvent) -> NormalizedEvent:
        self.replaces += 1
        self.events[event_id] = event.model_copy(update={"id": event_id}, deep=True)
        return self.events[event_id]

    def list_events_for_user(self, user_id: str) -> List[NormalizedEvent]:
        return [event for event in self.events.values() if event.user_id == user_id]

    def list_events_in_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> List[NormalizedEvent]:
        return [
            event
            for event in self.list_events_for_user(user_id)
            if event.start_time <= end and event.end_time >= start
        ]

    def delete_event(self, event_id: str) -> None:
        self.deletes += 1
        self.events.pop(event_id, None)


class FakeGoogle:
    """Scriptable Google OAuth + Calendar endpoints for httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token_responses: Dict[str, Tuple[int, Dict[str, Any]]] = {
            "authorization_code": (
                200,
                {
                    "access_token": "ya29.exchanged",
                    "refresh_token": "refresh-from-exchange",
                    "expires_in": 3600,
                    "scope": "https://www.googleapis.com/auth/calendar.readonly",
                    "token_type": "Bearer",
                },
            ),
            "refresh_token": (
                200,
                {"access_token": "ya29.refreshed", "expires_in": 3600, "token_type": "Bearer"},
            ),
        }
        self.calendars: List[Dict[str, Any]] = [
            {"id": "primary", "summary": "Me", "primary": True, "accessRole": "owner"},
            {"id": "team@group.calendar.google.com", "summary": "Team", "accessRole": "writer"},
            {"id": "holidays@group.v.calendar.google.com", "accessRole": "reader"},
            {"id": "busy@example.com", "accessRole": "freeBusyReader"},
        ]
        self.calendar_list_status = 200
        self.events: Dict[str, List[Dict[str, Any]]] = {"primary": []}
        self.event_status: Dict[str, int] = {}
        self.revoke_status = 200
        self.redeemed_codes: List[str] = []

    def token_requests(self, grant_type: Optional[str] = None) -> List[Dict[str, List[str]]]:
        forms = [
            parse_qs(request.content.decode())
            for request in self.requests
            if request.url.host == "oauth2.googleapis.com" and request.url.path == "/token"
        ]
        if grant_type is None:
            return forms
        return [form for form in forms if form["grant_type"] == [grant_type]]

    def event_requests(self) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith("/events")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = request.url
        if url.host == "oauth2.googleapis.com" and url.path == "/token":
            form = parse_qs(request.content.decode())
            grant_type = form["grant_type"][0]
            status_code, payload = self.token_responses[grant_type]
            if grant_type == "authorization_code" and status_code == 200:
                code = form["code"][0]
                if code in self.redeemed_codes:
                    return httpx.Response(
                        400,
                        json={
                            "error": "invalid_grant",
                            "error_description": "Code was already redeemed.",
                        },
                    )
                self.redeemed_codes.append(code)
            return httpx.Response(status_code, json=payload)
        if url.host == "oauth2.googleapis.com" and url.path == "/revoke":
            return httpx.Response(self.revoke_status)
        if url.path == "/calendar/v3/users/me/calendarList":
            if self.calendar_list_status >= 400:
                return httpx.Response(self.calendar_list_status, json={"error": "boom"})
            return httpx.Response(200, json={"items": self.calendars})
        prefix = "/calendar/v3/calendars/"
        if url.path.startswith(prefix) and url.path.endswith("/events"):
            calendar_id = url.path[len(prefix) : -len("/events")]
            status_code = self.event_status.get(calendar_id, 200)
            if status_code >= 400:
                return httpx.Response(status_code, json={"error": {"code": status_code}})
            return httpx.Response(200, json={"items": self.events.get(calendar_id, [])})
        return httpx.Response(404, json={"error": "not found"})


def google_event(
    event_id: str,
    summary: str = "Standup",
    *,
    start: str = "2024-03-14T10:00:00Z",
    end: str = "2024-03-14T10:30:00Z",
    etag: str = '"1"',
    **extra: Any,
) -> Dict[str, Any]:
    """Timed Google event payload."""
    return {
        "id": event_id,
        "summary": summary,
        "etag": etag,
        "status": "confirmed",
        "start": {"dateTime": start},
        "end": {"dateTime": end},
        **extra,
    }


@pytest.fixture
def settings():
    """Settings with Google credentials configured."""
    return Settings(
        supabase_url="https://test.supabase.co",
        supabase_service_role_key="test-key",
        supabase_jwt_secret="test-jwt-secret-that-is-long-enough-for-hs256",
        google_client_id="client-123.apps.googleusercontent.com",
        google_client_secret="client-secret-456",
        backend_url="http://testserver",
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def repository():
    return InMemoryCalendarRepository()


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def http_client(google):
    """httpx client routed to the fake Google endpoints."""
    return httpx.AsyncClient(transport=httpx.MockTransport(google.handler))


@pytest.fixture
def oauth_client(settings, http_client):
    return GoogleOAuthClient(settings, http_client=http_client)


@pytest.fixture
def provider(http_client):
    return GoogleCalendarHttpClient(http_client=http_client)


@pytest.fixture
def authorized_record(repository, clock):
    """A stored, authorized grant whose token is valid for an hour."""
    record = AuthRecord(
        user_id=USER_ID,
        is_authorized=True,
        access_token="ya29.stored",
        refresh_token="refresh-stored",
        token_expiry=clock() + timedelta(hours=1),
        calendar_ids=["primary"],
        created_at=clock(),
        updated_at=clock(),
    )
    repository.auth[USER_ID] = record
    return record


@pytest.fixture
def registry(settings, repository, oauth_client, provider, clock):
    return CalendarSessionRegistry(
        settings,
        repository=repository,
        oauth_client=oauth_client,
        provider=provider,
        clock=clock,
    )


@pytest.fixture
def session(registry):
    return registry.session_for(USER_ID)


@pytest.fixture
def mock_authenticated_user():
    """Mock authenticated user data."""
    return {
        "id": USER_ID,
        "email": "planner@example.com",
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-01-01T00:00:00Z",
    }


@pytest.fixture
def auth_headers():
    """Mock valid authentication headers."""
    return {"Authorization": "Bearer test-token-123"}


@pytest.fixture
def test_client(registry, settings, mock_authenticated_user):
    """FastAPI test client with the user, registry and settings overridden."""

    def override_get_current_user():
        return AuthenticatedUser(**mock_authenticated_user)

    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_session_registry] = lambda: registry
    app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
