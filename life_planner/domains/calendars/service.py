"""Service for calendar business logic."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from life_planner.core.config import Settings
from life_planner.domains.calendars.cache import LocalEventCache, cache_key
from life_planner.domains.calendars.oauth_flow import (
    ACCEPTED_ACCESS_ROLES,
    CALLBACK_MESSAGE_TYPE,
    InteractionSurface,
    OAuthFlowController,
    OAuthFlowRegistry,
    RedirectSurface,
)
from life_planner.domains.calendars.providers.base import CalendarProvider
from life_planner.domains.calendars.providers.google import (
    GoogleCalendarHttpClient,
    GoogleOAuthClient,
    decode_state_token,
    format_rfc3339,
)
from life_planner.domains.calendars.repository import CalendarRepository
from life_planner.domains.calendars.schemas import (
    PRIMARY_CALENDAR_ID,
    AuthorizationResult,
    AuthStatusResponse,
    CalendarListEntry,
    CalendarListResponse,
    ClearEventsResponse,
    NormalizedEvent,
    OAuthStartResponse,
    OperationResult,
    RefreshEventsResponse,
    SyncResult,
    TokenRefreshResponse,
)
from life_planner.domains.calendars.sync import CalendarSyncEngine
from life_planner.domains.calendars.tokens import (
    ReauthorizationRequired,
    TokenRefreshManager,
    TokenStore,
)
from life_planner.utils.errors import (
    GoogleCalendarAPIError,
    OAuthStateError,
    ProviderDeniedError,
    RefreshFailed,
)

NOT_AUTHORIZED_MESSAGE = "Not authorized with Google Calendar"

T = TypeVar("T")
InflightKey = Tuple[Any, ...]

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def current_month_window(now: datetime) -> Tuple[datetime, datetime]:
    """First instant of this month through the last instant before the next."""
    start = now.astimezone(timezone.utc).replace(
        day=1, hour=0, minute=0, second=0, microsecond=0
    )
    if start.month == 12:
        next_month = start.replace(year=start.year + 1, month=1)
    else:
        next_month = start.replace(month=start.month + 1)
    return start, next_month - timedelta(microseconds=1)


def _calendar_entry(item: Dict[str, Any]) -> CalendarListEntry:
    return CalendarListEntry(
        id=item["id"],
        summary=item.get("summaryOverride") or item.get("summary"),
        primary=bool(item.get("primary")),
        access_role=item.get("accessRole"),
        background_color=item.get("backgroundColor"),
        foreground_color=item.get("foregroundColor"),
    )


class CalendarSession:
    """Google Calendar integration for a single user."""

    def __init__(
        self,
        user_id: str,
        *,
        settings: Settings,
        repository: CalendarRepository,
        oauth_client: GoogleOAuthClient,
        provider: CalendarProvider,
        cache: LocalEventCache,
        flows: OAuthFlowRegistry,
        inflight: Dict[InflightKey, asyncio.Task[Any]],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.user_id = user_id
        self.settings = settings
        self.repository = repository
        self.oauth_client = oauth_client
        self.provider = provider
        self.cache = cache
        self.flows = flows
        self.clock = clock
        self._inflight = inflight

        self.store = TokenStore(repository, user_id, clock=clock)
        self.tokens = TokenRefreshManager(
            self.store,
            oauth_client,
            leeway=timedelta(seconds=settings.token_refresh_leeway_seconds),
            clock=clock,
        )
        self.sync_engine = CalendarSyncEngine(
            repository,
            self.tokens,
            provider,
            max_results=settings.sync_max_results,
            clock=clock,
        )

    # Authorization
    def get_auth_status(self) -> AuthStatusResponse:
        status = self.store.status()
        flow = self.flows.latest_for_user(self.user_id)
        if flow is not None:
            status.flow_state = flow.state.value
        return status

    def new_flow(self, *, origin: Optional[str] = None) -> OAuthFlowController:
        return OAuthFlowController(
            self.settings,
            self.store,
            self.oauth_client,
            self.provider,
            redirect_uri=self.settings.resolve_redirect_uri(origin),
            clock=self.clock,
        )

    def start_authorization(self, origin: Optional[str] = None) -> OAuthStartResponse:
        """Begin a server-side flow; the caller sends the user to the returned URL.

        Must be called from a running event loop.
        """
        flow = self.new_flow(origin=origin)
        url = flow.build_authorization_url()
        self.flows.launch(flow, RedirectSurface())
        logger.info("Started Google OAuth flow for user=%s", self.user_id)
        return OAuthStartResponse(
            authorization_url=url,
            state=flow.state_token,
            state_expires_at=flow.state_expires_at,
        )

    async def connect(
        self, surface: InteractionSurface, *, origin: Optional[str] = None
    ) -> AuthorizationResult:
        """Run a full flow on a caller-provided surface.

        The flow is registered by state token so the callback route can deliver
        to it while the surface is being polled.
        """
        flow = self.new_flow(origin=origin)
        flow.build_authorization_url()
        task = self.flows.launch(flow, surface)
        return await task

    async def complete_authorization(
        self,
        code: str,
        state: Optional[str] = None,
        *,
        origin: Optional[str] = None,
    ) -> AuthorizationResult:
        """Direct-navigation delivery of an authorization code.

        Hands the code to the user's pending flow when there is one, otherwise
        verifies ``state`` and exchanges the code straight away.
        """
        flow = self.flows.get(state) if state else self.flows.latest_for_user(self.user_id)
        if flow is not None and flow.user_id == self.user_id and flow.state_token:
            task = self.flows.task_for(flow.state_token)
            if task is None or not (flow.deliver_direct(code) or flow.delivered):
                raise OAuthStateError("Authorization flow is no longer accepting codes")
            return await asyncio.shield(task)

        if not state:
            raise OAuthStateError("Missing OAuth state")
        flow = self.new_flow(origin=origin)
        flow.verify_state(state)
        settled = self.flows.settled(state)
        if settled is not None:
            return await settled
        return await flow.exchange_code_for_tokens(code)

    async def refresh_access_token(self) -> TokenRefreshResponse:
        try:
            result = await self.tokens.refresh()
        except RefreshFailed as exc:
            logger.error("Token refresh failed for user=%s: %s", self.user_id, exc)
            return TokenRefreshResponse(success=False, message=str(exc))
        if isinstance(result, ReauthorizationRequired):
            return TokenRefreshResponse(
                success=False,
                message=NOT_AUTHORIZED_MESSAGE,
                reauthorization_required=True,
            )
        record = self.store.get()
        return TokenRefreshResponse(
            success=True,
            message="Access token refreshed",
            token_expiry=record.token_expiry if record else None,
        )

    async def disconnect(self) -> OperationResult:
        """Revoke (best effort), mark unauthorized and drop cached events."""
        record = self.store.get(refresh=True)
        if record is not None and record.access_token:
            await self.oauth_client.revoke(record.access_token)
        self.flows.cancel_for_user(self.user_id)
        self.store.invalidate()
        cleared = self.cache.clear_all()
        logger.info(
            "Disconnected Google Calendar for user=%s (cleared %s cache entries)",
            self.user_id,
            cleared,
        )
        return OperationResult(success=True, message="Disconnected from Google Calendar")

    # Calendars
    async def list_calendars(self) -> CalendarListResponse:
        token = await self._access_token()
        if isinstance(token, OperationResult):
            return CalendarListResponse(success=False, message=token.message)
        try:
            items = await self.provider.list_calendars(access_token=token)
        except GoogleCalendarAPIError as exc:
            logger.error("Error listing calendars for user=%s: %s", self.user_id, exc)
            return CalendarListResponse(success=False, message=str(exc))

        calendars = [
            _calendar_entry(item)
            for item in items
            if item.get("id") and item.get("accessRole") in ACCEPTED_ACCESS_ROLES
        ]
        return CalendarListResponse(
            success=True,
            message=f"Found {len(calendars)} calendars",
            calendars=calendars,
            calendar_ids=[calendar.id for calendar in calendars],
        )

    async def refresh_calendar_list(self) -> CalendarListResponse:
        """Re-read the calendar list and store the readable calendar ids."""
        result = await self.list_calendars()
        if not result.success:
            return result
        record = self.store.upsert(is_authorized=True, calendar_ids=result.calendar_ids)
        result.calendar_ids = list(record.calendar_ids)
        return result

    # Events
    async def refresh_events(
        self,
        calendar_id: str = PRIMARY_CALENDAR_ID,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        max_results: int = 250,
        force_refresh: bool = False,
    ) -> RefreshEventsResponse:
        """Fetch events for one calendar, served from the cache when fresh."""
        if time_min is None or time_max is None:
            month_start, month_end = current_month_window(self.clock())
            time_min = time_min or month_start
            time_max = time_max or month_end
        window_min = format_rfc3339(time_min)
        window_max = format_rfc3339(time_max)

        async def fetch() -> RefreshEventsResponse:
            if not force_refresh:
                cached = self.cache.get(calendar_id, window_min, window_max)
                if cached is not None:
                    return RefreshEventsResponse(
                        success=True,
                        message=f"Loaded {len(cached)} events from cache",
                        events=cached,
                        from_cache=True,
                    )

            token = await self._access_token()
            if isinstance(token, OperationResult):
                return RefreshEventsResponse(success=False, message=token.message)
            try:
                events = await self.provider.list_events(
                    access_token=token,
                    calendar_id=calendar_id,
                    time_min=window_min,
                    time_max=window_max,
                    max_results=max_results,
                )
            except GoogleCalendarAPIError as exc:
                logger.error(
                    "Error fetching events for calendar %s user=%s: %s",
                    calendar_id,
                    self.user_id,
                    exc,
                )
                return RefreshEventsResponse(
                    success=False,
                    message=f"Failed to fetch events: {exc.status_code}",
                )
            self.cache.put(cache_key(calendar_id, window_min, window_max), events)
            return RefreshEventsResponse(
                success=True,
                message=f"Fetched {len(events)} events",
                events=events,
            )

        key = ("refresh", calendar_id, window_min, window_max, max_results, force_refresh)
        return await self._coalesce(key, fetch)

    async def sync_events(
        self,
        time_min: datetime,
        time_max: datetime,
        calendar_id: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> SyncResult:
        key = (
            "sync",
            calendar_id,
            format_rfc3339(time_min),
            format_rfc3339(time_max),
            max_results,
        )
        if calendar_id:
            return await self._coalesce(
                key,
                lambda: self.sync_engine.sync_calendar(
                    self.user_id, calendar_id, time_min, time_max, max_results=max_results
                ),
            )
        return await self._coalesce(
            key,
            lambda: self.sync_engine.sync(
                self.user_id, time_min, time_max, max_results=max_results
            ),
        )

    def events_in_range(self, start: datetime, end: datetime) -> List[NormalizedEvent]:
        """Stored events overlapping ``[start, end]``."""
        return self.repository.list_events_in_range(self.user_id, start, end)

    def clear_all_events(self) -> ClearEventsResponse:
        events = self.repository.list_events_for_user(self.user_id)
        for event in events:
            if event.id is not None:
                self.repository.delete_event(event.id)
        logger.info("Cleared %s stored events for user=%s", len(events), self.user_id)
        return ClearEventsResponse(deleted_count=len(events))

    # Helpers
    async def _access_token(self) -> str | OperationResult:
        try:
            token = await self.tokens.get_valid_access_token()
        except RefreshFailed as exc:
            return OperationResult(
                success=False, message=f"Failed to refresh access token: {exc}"
            )
        if isinstance(token, ReauthorizationRequired):
            return OperationResult(success=False, message=NOT_AUTHORIZED_MESSAGE)
        return token

    async def _coalesce(
        self, key: InflightKey, factory: Callable[[], Awaitable[T]]
    ) -> T:
        """Share one in-flight task between identical concurrent calls."""
        full_key = (self.user_id, *key)
        task = self._inflight.get(full_key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._inflight[full_key] = task

            def _forget(finished: asyncio.Task[Any]) -> None:
                if self._inflight.get(full_key) is finished:
                    self._inflight.pop(full_key, None)

            task.add_done_callback(_forget)
        else:
            logger.debug("Joining in-flight %s for user=%s", key[0], self.user_id)
        return await asyncio.shield(task)


class CalendarSessionRegistry:
    """Process-wide state shared by the per-user sessions."""

    def __init__(
        self,
        settings: Settings,
        *,
        repository: Optional[CalendarRepository] = None,
        oauth_client: Optional[GoogleOAuthClient] = None,
        provider: Optional[CalendarProvider] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.repository = repository or CalendarRepository()
        self.oauth_client = oauth_client or GoogleOAuthClient(settings)
        self.provider = provider or GoogleCalendarHttpClient(
            timeout=settings.google_http_timeout
        )
        self.clock = clock
        self.flows = OAuthFlowRegistry()
        self._caches: Dict[str, LocalEventCache] = {}
        self._inflight: Dict[InflightKey, asyncio.Task[Any]] = {}

    def cache_for(self, user_id: str) -> LocalEventCache:
        cache = self._caches.get(user_id)
        if cache is None:
            ttl = timedelta(seconds=self.settings.calendar_cache_ttl_seconds)
            cache = LocalEventCache(ttl=ttl, clock=self.clock)
            self._caches[user_id] = cache
        return cache

    def session_for(self, user_id: str) -> CalendarSession:
        return CalendarSession(
            user_id,
            settings=self.settings,
            repository=self.repository,
            oauth_client=self.oauth_client,
            provider=self.provider,
            cache=self.cache_for(user_id),
            flows=self.flows,
            inflight=self._inflight,
            clock=self.clock,
        )

    async def deliver_callback(
        self,
        *,
        state: Optional[str],
        origin: str,
        code: Optional[str] = None,
        error: Optional[str] = None,
    ) -> AuthorizationResult:
        """Route the provider redirect to the flow that issued ``state``."""
        if not state:
            raise OAuthStateError("Missing OAuth state")

        flow = self.flows.get(state)
        if flow is not None:
            task = self.flows.task_for(state)
            payload = {"type": CALLBACK_MESSAGE_TYPE, "code": code, "error": error}
            accepted = flow.post_message(origin, payload)
            if not accepted and code and not error:
                accepted = flow.deliver_direct(code)
            # Polling may already have picked up the same redirect.
            if task is None or not (accepted or flow.delivered):
                raise OAuthStateError("Authorization flow is no longer accepting codes")
            return await asyncio.shield(task)

        settled = self.flows.settled(state)
        if settled is not None:
            return await settled
        if error:
            raise ProviderDeniedError(error)
        if not code:
            raise OAuthStateError("Callback did not include an authorization code")
        claims = decode_state_token(self.settings, state)
        session = self.session_for(str(claims["sub"]))
        return await session.complete_authorization(code, state, origin=origin)

    async def shutdown(self) -> None:
        self.flows.cancel_all()
        pending = [task for task in self._inflight.values() if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()
