"""Calendar API routes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse

from life_planner.core.config import Settings, get_settings
from life_planner.core.dependencies import get_calendar_session, get_session_registry
from life_planner.domains.calendars.schemas import (
    AuthorizationResult,
    AuthStatusResponse,
    CalendarListResponse,
    ClearEventsResponse,
    CodeExchangeRequest,
    OAuthStartResponse,
    OperationResult,
    RefreshEventsRequest,
    RefreshEventsResponse,
    StoredEventsResponse,
    SyncRequest,
    SyncResult,
    TokenRefreshResponse,
)
from life_planner.domains.calendars.service import CalendarSession, CalendarSessionRegistry
from life_planner.utils.errors import (
    CalendarIntegrationError,
    ExchangeError,
    OAuthStateError,
    ProviderDeniedError,
    SupabaseStorageError,
)

router = APIRouter(prefix="/calendars", tags=["calendars"])
logger = logging.getLogger(__name__)


def _request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def _storage_failure(exc: SupabaseStorageError, user_id: str) -> HTTPException:
    logger.exception("SUPABASE_STORAGE_ERROR user=%s", user_id)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
    )


def _callback_failure_message(exc: Exception) -> str:
    if isinstance(exc, OAuthStateError):
        return "invalid_state"
    if isinstance(exc, ProviderDeniedError):
        return exc.error
    if isinstance(exc, ExchangeError):
        return "google_error"
    if isinstance(exc, SupabaseStorageError):
        return "storage_error"
    return "authorization_failed"


# Authorization routes
@router.get("/auth/status", response_model=AuthStatusResponse)
async def get_auth_status(
    session: CalendarSession = Depends(get_calendar_session),
) -> AuthStatusResponse:
    """Current Google Calendar authorization status."""
    try:
        return session.get_auth_status()
    except SupabaseStorageError as exc:
        raise _storage_failure(exc, session.user_id) from exc


@router.post("/auth/start", response_model=OAuthStartResponse)
async def start_authorization(
    request: Request,
    session: CalendarSession = Depends(get_calendar_session),
) -> OAuthStartResponse:
    """Start the Google OAuth flow and return the consent URL."""
    try:
        return session.start_authorization(_request_origin(request))
    except CalendarIntegrationError as exc:
        logger.exception("GOOGLE_OAUTH_START_ERROR user=%s", session.user_id)
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.get("/auth/callback", include_in_schema=False, response_model=None)
async def oauth_callback(
    request: Request,
    state: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
    registry: CalendarSessionRegistry = Depends(get_session_registry),
    settings: Settings = Depends(get_settings),
) -> Any:
    """Handle Google's redirect back to the app."""
    try:
        result = await registry.deliver_callback(
            state=state,
            origin=_request_origin(request),
            code=code,
            error=error,
        )
    except (CalendarIntegrationError, SupabaseStorageError) as exc:
        logger.warning("Google OAuth callback failed: %s", exc)
        redirect_url = settings.build_app_redirect_url(
            False, message=_callback_failure_message(exc)
        )
        if redirect_url:
            return RedirectResponse(redirect_url, status_code=status.HTTP_303_SEE_OTHER)
        status_code = getattr(exc, "status_code", status.HTTP_500_INTERNAL_SERVER_ERROR)
        raise HTTPException(status_code=status_code, detail=str(exc)) from exc

    redirect_url = settings.build_app_redirect_url(True, message="linked")
    if redirect_url:
        return RedirectResponse(redirect_url, status_code=status.HTTP_303_SEE_OTHER)
    return result


@router.post("/auth/exchange", response_model=AuthorizationResult)
async def exchange_code(
    body: CodeExchangeRequest,
    request: Request,
    session: CalendarSession = Depends(get_calendar_session),
) -> AuthorizationResult:
    """Deliver an authorization code captured by a direct navigation."""
    try:
        return await session.complete_authorization(
            body.code, body.state, origin=_request_origin(request)
        )
    except CalendarIntegrationError as exc:
        logger.warning("Google OAuth exchange failed user=%s: %s", session.user_id, exc)
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except SupabaseStorageError as exc:
        raise _storage_failure(exc, session.user_id) from exc


@router.post("/auth/refresh", response_model=TokenRefreshResponse)
async def refresh_access_token(
    session: CalendarSession = Depends(get_calendar_session),
) -> TokenRefreshResponse:
    try:
        return await session.refresh_access_token()
    except SupabaseStorageError as exc:
        raise _storage_failure(exc, session.user_id) from exc


@router.delete("/auth", response_model=OperationResult)
async def disconnect(
    session: CalendarSession = Depends(get_calendar_session),
) -> OperationResult:
    """Disconnect Google Calendar for the current user."""
    try:
        return await session.disconnect()
    except SupabaseStorageError as exc:
        raise _storage_failure(exc, session.user_id) from exc


# Calendar list routes
@router.get("/list", response_model=CalendarListResponse)
async def list_calendars(
    session: CalendarSession = Depends(get_calendar_session),
) -> CalendarListResponse:
    try:
        return await session.list_calendars()
    except SupabaseStorageError as exc:
        raise _storage_failure(exc, session.user_id) from exc


@router.post("/list/refresh", response_model=CalendarListResponse)
async def refresh_calendar_list(
    session: CalendarSession = Depends(get_calendar_session),
) -> CalendarListResponse:
    """Re-read the Google calendar list and store the readable calendar ids."""
    try:
        return await session.refresh_calendar_list()
    except SupabaseStorageError as exc:
        raise _storage_failure(exc, session.user_id) from exc


# Event routes
@router.post("/events/refresh", response_model=RefreshEventsResponse)
async def refresh_events(
    body: RefreshEventsRequest,
    session: CalendarSession = Depends(get_calendar_session),
) -> RefreshEventsResponse:
    """Fetch events for one calendar, using the cache unless forced."""
    try:
        return await session.refresh_events(
            calendar_id=body.calendar_id,
            time_min=body.time_min,
            time_max=body.time_max,
            max_results=body.max_results,
            force_refresh=body.force_refresh,
        )
    except SupabaseStorageError as exc:
        raise _storage_failure(exc, session.user_id) from exc


@router.post("/sync", response_model=SyncResult)
async def sync_events(
    body: SyncRequest,
    session: CalendarSession = Depends(get_calendar_session),
) -> SyncResult:
    """Sync Google events for a time window into the event store."""
    try:
        return await session.sync_events(
            body.time_min,
            body.time_max,
            calendar_id=body.calendar_id,
            max_results=body.max_results,
        )
    except SupabaseStorageError as exc:
        raise _storage_failure(exc, session.user_id) from exc


@router.get("/events", response_model=StoredEventsResponse)
async def list_stored_events(
    start: datetime = Query(...),
    end: datetime = Query(...),
    session: CalendarSession = Depends(get_calendar_session),
) -> StoredEventsResponse:
    """Stored events overlapping the requested window."""
    if end < start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end must be on or after start",
        )
    try:
        return StoredEventsResponse(events=session.events_in_range(start, end))
    except SupabaseStorageError as exc:
        raise _storage_failure(exc, session.user_id) from exc


@router.delete("/events", response_model=ClearEventsResponse)
async def clear_events(
    session: CalendarSession = Depends(get_calendar_session),
) -> ClearEventsResponse:
    """Delete every stored Google event for the current user."""
    try:
        return session.clear_all_events()
    except SupabaseStorageError as exc:
        raise _storage_failure(exc, session.user_id) from exc
