"""Google Calendar provider implementation."""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx
import jwt

from life_planner.core.config import Settings
from life_planner.domains.calendars.providers.base import CalendarProvider
from life_planner.utils.errors import (
    ConfigurationError,
    ExchangeError,
    GoogleCalendarAPIError,
    InvalidGrantError,
    OAuthStateError,
    RefreshFailed,
)

AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
REVOKE_ENDPOINT = "https://oauth2.googleapis.com/revoke"
API_BASE_URL = "https://www.googleapis.com/calendar/v3"

STATE_AUDIENCE = "google-calendar-oauth-state"
STATE_TTL = timedelta(minutes=10)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GoogleTokens:
    """Google OAuth tokens."""

    access_token: str
    refresh_token: str | None
    expires_in: int | None
    scope: str
    token_type: str

    def expires_at(self, issued_at: datetime | None = None) -> datetime | None:
        """Calculate expiration time."""
        if self.expires_in is None:
            return None
        base = issued_at or datetime.now(timezone.utc)
        return base + timedelta(seconds=int(self.expires_in))

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "GoogleTokens":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            expires_in=data.get("expires_in"),
            scope=data.get("scope", ""),
            token_type=data.get("token_type", ""),
        )


def format_rfc3339(value: datetime) -> str:
    """Format a datetime the way the Calendar API expects timeMin/timeMax."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# OAuth state tokens
def _state_secret(settings: Settings) -> str:
    if not settings.supabase_jwt_secret:
        raise ConfigurationError(
            "SUPABASE_JWT_SECRET must be configured to sign Google OAuth state tokens."
        )
    return settings.supabase_jwt_secret


def create_state_token(
    settings: Settings, user_id: str, *, now: datetime | None = None
) -> str:
    """Create a signed CSRF state token bound to the user."""
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "aud": STATE_AUDIENCE,
        "nonce": secrets.token_urlsafe(16),
        "iat": int(now.timestamp()),
        "exp": int((now + STATE_TTL).timestamp()),
    }
    return jwt.encode(payload, _state_secret(settings), algorithm="HS256")


def decode_state_token(settings: Settings, state: str) -> Dict[str, Any]:
    """Decode OAuth state token."""
    try:
        decoded = jwt.decode(
            state,
            _state_secret(settings),
            algorithms=["HS256"],
            audience=STATE_AUDIENCE,
        )
    except jwt.PyJWTError as exc:
        raise OAuthStateError("Invalid or expired OAuth state token") from exc
    return decoded


def build_authorization_url(settings: Settings, *, state: str, redirect_uri: str) -> str:
    """Build Google OAuth consent URL."""
    params = {
        "client_id": settings.require_client_id(),
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(settings.google_oauth_scopes),
        "access_type": "offline",
        # Forces refresh-token issuance even on re-consent
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
    }
    return f"{AUTHORIZATION_ENDPOINT}?{urlencode(params)}"


def _safe_json(response: httpx.Response) -> Any:
    """Safely parse JSON from response."""
    try:
        return response.json()
    except ValueError:
        return response.text


def _provider_error(response: httpx.Response) -> tuple[str | None, str | None]:
    """Extract (error, error_description) from a token endpoint response."""
    data = _safe_json(response)
    if isinstance(data, dict):
        return data.get("error"), data.get("error_description")
    return None, data or None


class _HttpClientMixin:
    http_client: Optional[httpx.AsyncClient]
    timeout: float

    @asynccontextmanager
    async def _client(self, **kwargs: Any) -> AsyncIterator[httpx.AsyncClient]:
        if self.http_client is not None:
            yield self.http_client
            return
        async with httpx.AsyncClient(timeout=self.timeout, **kwargs) as client:
            yield client


class GoogleOAuthClient(_HttpClientMixin):
    """Confidential client for Google's token and revoke endpoints."""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.http_client = http_client
        self.timeout = settings.google_http_timeout

    async def _post_token(self, payload: Dict[str, str]) -> httpx.Response:
        async with self._client() as client:
            return await client.post(
                TOKEN_ENDPOINT, data=payload, headers={"Accept": "application/json"}
            )

    async def exchange_code(self, code: str, *, redirect_uri: str) -> GoogleTokens:
        """Exchange an authorization code for tokens."""
        payload = {
            "client_id": self.settings.require_client_id(),
            "client_secret": self.settings.require_client_secret(),
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        try:
            response = await self._post_token(payload)
        except httpx.HTTPError as exc:
            raise ExchangeError(f"Token exchange request failed: {exc}") from exc

        if not response.is_success:
            error, description = _provider_error(response)
            raise ExchangeError(
                "Failed to exchange code for tokens: "
                f"{description or error or 'Unknown error'}",
                status_code=response.status_code,
                description=description,
            )
        data = response.json()
        if not data.get("access_token"):
            raise ExchangeError("Token exchange response did not include an access token.")
        return GoogleTokens.from_payload(data)

    async def refresh(self, refresh_token: str) -> GoogleTokens:
        """Exchange a refresh token for a new access token."""
        payload = {
            "client_id": self.settings.require_client_id(),
            "client_secret": self.settings.require_client_secret(),
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self._post_token(payload)
        except httpx.HTTPError as exc:
            raise RefreshFailed(f"Token refresh request failed: {exc}") from exc

        if not response.is_success:
            error, description = _provider_error(response)
            if error == "invalid_grant":
                raise InvalidGrantError(
                    "Refresh token invalid, reauthorization required",
                    provider_status=response.status_code,
                )
            raise RefreshFailed(
                f"Failed to refresh token: {description or error or 'Unknown error'}",
                provider_status=response.status_code,
            )
        data = response.json()
        if not data.get("access_token"):
            raise RefreshFailed("Token refresh response did not include an access token.")
        return GoogleTokens.from_payload(data)

    async def revoke(self, token: str) -> bool:
        """Best-effort token revocation; never raises."""
        try:
            async with self._client() as client:
                response = await client.post(
                    REVOKE_ENDPOINT,
                    params={"token": token},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as exc:
            logger.warning("Error revoking Google token: %s", exc)
            return False
        if not response.is_success:
            logger.warning("Google token revocation returned status %s", response.status_code)
            return False
        return True


class GoogleCalendarHttpClient(_HttpClientMixin, CalendarProvider):
    """Thin wrapper around httpx.AsyncClient for Google Calendar API requests."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = 15.0,
    ) -> None:
        self.http_client = http_client
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        try:
            async with self._client() as client:
                response = await client.request(
                    method,
                    f"{API_BASE_URL}{path}",
                    headers=headers,
                    params=params,
                )
        except httpx.HTTPError as exc:
            raise GoogleCalendarAPIError(
                f"Google Calendar API request failed: {exc}",
                status_code=0,
            ) from exc

        if response.status_code >= 400:
            raise GoogleCalendarAPIError(
                f"Google Calendar API request failed with status {response.status_code}",
                status_code=response.status_code,
                payload=_safe_json(response),
            )
        return response.json()

    async def list_events(
        self,
        *,
        access_token: str,
        calendar_id: str,
        time_min: str,
        time_max: str,
        max_results: int = 250,
        show_deleted: bool = False,
    ) -> List[Dict[str, Any]]:
        """List events from a calendar, capped at max_results."""
        path = f"/calendars/{_encode_path_segment(calendar_id)}/events"
        params: Dict[str, Any] = {
            "timeMin": time_min,
            "timeMax": time_max,
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": max_results,
        }
        if show_deleted:
            params["showDeleted"] = "true"
        events: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            data = await self._request(
                "GET",
                path,
                access_token=access_token,
                params=params,
            )
            items = data.get("items") or []
            if isinstance(items, list):
                events.extend(items)
            page_token = data.get("nextPageToken")
            if not page_token or len(events) >= max_results:
                break
        return events[:max_results]

    async def list_calendars(
        self,
        *,
        access_token: str,
        min_access_role: str = "reader",
    ) -> List[Dict[str, Any]]:
        """List calendars for the authenticated user."""
        params: Dict[str, Any] = {"minAccessRole": min_access_role, "showHidden": "true"}
        calendars: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            data = await self._request(
                "GET",
                "/users/me/calendarList",
                access_token=access_token,
                params=params,
            )
            items = data.get("items") or []
            if isinstance(items, list):
                calendars.extend(items)
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return calendars


def _encode_path_segment(segment: str) -> str:
    """Encode a URL path segment."""
    return quote(segment, safe="")
