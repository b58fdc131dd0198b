"""Google OAuth authorization-code flow.

A flow opens an ``InteractionSurface`` on Google's consent page and then waits
for the authorization code on three channels at once:

* a message posted by the callback page (``post_message``),
* polling the surface location until it lands on the redirect URI,
* a one-shot direct delivery when the redirect navigated the main page
  (``deliver_direct``).

Whichever channel resolves first wins; the others are cancelled and any later
delivery is ignored.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from life_planner.core.config import Settings
from life_planner.domains.calendars.providers.base import CalendarProvider
from life_planner.domains.calendars.providers.google import (
    STATE_TTL,
    GoogleOAuthClient,
    build_authorization_url,
    create_state_token,
    decode_state_token,
)
from life_planner.domains.calendars.schemas import AuthorizationResult
from life_planner.domains.calendars.tokens import TokenStore
from life_planner.utils.errors import (
    AuthorizationCancelled,
    AuthorizationTimeout,
    CalendarIntegrationError,
    CrossOriginAccessError,
    GoogleCalendarAPIError,
    OAuthStateError,
    PopupBlockedError,
    ProviderDeniedError,
    SupabaseStorageError,
)

CALLBACK_MESSAGE_TYPE = "GOOGLE_AUTH_CALLBACK"
ACCEPTED_ACCESS_ROLES = frozenset({"owner", "writer", "reader"})

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    IDLE = "idle"
    AWAITING_USER_CONSENT = "awaiting_user_consent"
    CODE_RECEIVED = "code_received"
    EXCHANGING_CODE = "exchanging_code"
    AUTHORIZED = "authorized"
    FAILED = "failed"


TERMINAL_STATES = frozenset({FlowState.AUTHORIZED, FlowState.FAILED})


class InteractionSurface(ABC):
    """Where the user is sent to give consent (popup, tab, redirect)."""

    # Whether ``location`` can ever be read back
    pollable: bool = True

    @abstractmethod
    def open(self, url: str) -> bool:
        """Navigate to ``url``; False when the surface could not be opened."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Current URL. Raises CrossOriginAccessError while on another origin."""

    @property
    @abstractmethod
    def closed(self) -> bool: ...

    @abstractmethod
    def close(self) -> None: ...


class RedirectSurface(InteractionSurface):
    """The user agent follows the URL itself; the code comes back over HTTP."""

    pollable = False

    def __init__(self) -> None:
        self.url: Optional[str] = None
        self._closed = False

    def open(self, url: str) -> bool:
        self.url = url
        return True

    @property
    def location(self) -> str:
        raise CrossOriginAccessError("Redirect surfaces cannot be inspected")

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


@dataclass(frozen=True)
class CodeDelivery:
    code: Optional[str] = None
    error: Optional[str] = None
    channel: str = ""


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def _first(params: Dict[str, List[str]], name: str) -> Optional[str]:
    values = params.get(name)
    return values[0] if values else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OAuthFlowController:
    """Drives one authorization attempt for one user."""

    def __init__(
        self,
        settings: Settings,
        store: TokenStore,
        oauth_client: GoogleOAuthClient,
        calendar_provider: CalendarProvider,
        *,
        redirect_uri: str,
        clock: Callable[[], datetime] = _utcnow,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.oauth_client = oauth_client
        self.calendar_provider = calendar_provider
        self.redirect_uri = redirect_uri
        self.redirect_origin = _origin(redirect_uri)
        self.clock = clock
        self.timeout = (
            timeout if timeout is not None else settings.oauth_authorization_timeout_seconds
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.oauth_poll_interval_seconds
        )

        self.state = FlowState.IDLE
        self.state_token: Optional[str] = None
        self.state_expires_at: Optional[datetime] = None
        self.authorization_url: Optional[str] = None
        self.error: Optional[str] = None

        self._messages: asyncio.Queue[CodeDelivery] = asyncio.Queue()
        self._direct_event = asyncio.Event()
        self._direct_code: Optional[str] = None
        self._delivered = False

    @property
    def user_id(self) -> str:
        return self.store.user_id

    @property
    def delivered(self) -> bool:
        """A code or error has already reached this flow on some channel."""
        return self._delivered

    @property
    def accepting_deliveries(self) -> bool:
        return (
            not self._delivered
            and self.state_token is not None
            and self.state in (FlowState.IDLE, FlowState.AWAITING_USER_CONSENT)
        )

    def build_authorization_url(self) -> str:
        """Build the consent URL with a fresh signed state token."""
        now = self.clock()
        self.state_token = create_state_token(self.settings, self.user_id, now=now)
        self.state_expires_at = now + STATE_TTL
        self.authorization_url = build_authorization_url(
            self.settings, state=self.state_token, redirect_uri=self.redirect_uri
        )
        return self.authorization_url

    def verify_state(self, state: str) -> None:
        """Reject state tokens that are forged, expired, or for another user."""
        claims = decode_state_token(self.settings, state)
        if claims.get("sub") != self.user_id:
            raise OAuthStateError("OAuth state token does not belong to this user")

    async def initiate_authorization(self, surface: InteractionSurface) -> AuthorizationResult:
        """Run the consent flow on ``surface`` through to stored tokens.

        Raises:
            PopupBlockedError: the surface could not be opened.
            AuthorizationTimeout: no code arrived within ``timeout``.
            AuthorizationCancelled: the surface was closed first.
            ProviderDeniedError: the user declined consent.
            ExchangeError: the code could not be exchanged.
        """
        if self.state in TERMINAL_STATES:
            raise CalendarIntegrationError("Authorization flow already finished")
        url = self.authorization_url or self.build_authorization_url()

        if not surface.open(url):
            self._fail("popup_blocked")
            raise PopupBlockedError("Popup blocked. Please allow popups for this site.")
        self.state = FlowState.AWAITING_USER_CONSENT
        logger.info("Awaiting Google consent for user=%s", self.user_id)

        listeners = [
            asyncio.create_task(self._await_message()),
            asyncio.create_task(self._await_direct()),
        ]
        if surface.pollable:
            listeners.append(asyncio.create_task(self._poll_surface(surface)))

        try:
            done, _ = await asyncio.wait(
                listeners,
                timeout=self.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in listeners:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*listeners, return_exceptions=True)

        if not done:
            surface.close()
            self._fail("timeout")
            raise AuthorizationTimeout("Authorization timed out")

        delivery: Optional[CodeDelivery] = None
        failure: Optional[BaseException] = None
        for task in done:
            exc = task.exception()
            if exc is None:
                delivery = task.result()
                break
            failure = exc
        self._delivered = True
        if not surface.closed:
            surface.close()

        if delivery is None:
            if failure is None:
                failure = CalendarIntegrationError("Authorization flow ended without a result")
            self._fail(str(failure))
            raise failure
        if delivery.error:
            self._fail(delivery.error)
            raise ProviderDeniedError(delivery.error)
        if not delivery.code:
            self._fail("missing_code")
            raise CalendarIntegrationError("No authorization code received")

        logger.info(
            "Authorization code received via %s for user=%s", delivery.channel, self.user_id
        )
        self.state = FlowState.CODE_RECEIVED
        return await self.exchange_code_for_tokens(delivery.code)

    def post_message(self, origin: str, payload: Mapping[str, Any]) -> bool:
        """Deliver a callback-page message. Returns False when it was ignored."""
        if origin != self.redirect_origin:
            logger.warning("Ignoring OAuth message from unexpected origin %s", origin)
            return False
        if payload.get("type") != CALLBACK_MESSAGE_TYPE:
            return False
        if not self.accepting_deliveries:
            return False
        code = payload.get("code")
        error = payload.get("error")
        if not code and not error:
            return False
        self._delivered = True
        self._messages.put_nowait(CodeDelivery(code=code, error=error, channel="message"))
        return True

    def deliver_direct(self, code: str) -> bool:
        """One-shot delivery when the redirect navigated the main page."""
        if not code or not self.accepting_deliveries:
            return False
        self._delivered = True
        self._direct_code = code
        self._direct_event.set()
        return True

    async def exchange_code_for_tokens(self, code: str) -> AuthorizationResult:
        """Exchange ``code`` for tokens and persist them."""
        self.state = FlowState.EXCHANGING_CODE
        try:
            tokens = await self.oauth_client.exchange_code(code, redirect_uri=self.redirect_uri)
            self.store.upsert(
                is_authorized=True,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                token_expiry=tokens.expires_at(self.clock()),
            )
        except (CalendarIntegrationError, SupabaseStorageError) as exc:
            self._fail(str(exc))
            raise

        calendar_ids = await self._fetch_calendar_ids(tokens.access_token)
        record = self.store.upsert(calendar_ids=calendar_ids) if calendar_ids else self.store.get()
        self.state = FlowState.AUTHORIZED
        logger.info("Google Calendar authorized for user=%s", self.user_id)
        return AuthorizationResult(
            success=True,
            message="Successfully authorized with Google Calendar",
            calendar_ids=list(record.calendar_ids) if record else [],
        )

    async def _fetch_calendar_ids(self, access_token: str) -> List[str]:
        try:
            calendars = await self.calendar_provider.list_calendars(access_token=access_token)
        except GoogleCalendarAPIError as exc:
            logger.warning(
                "Could not fetch calendar list for user=%s: %s", self.user_id, exc
            )
            return []
        return [
            entry["id"]
            for entry in calendars
            if entry.get("id") and entry.get("accessRole") in ACCEPTED_ACCESS_ROLES
        ]

    async def _await_message(self) -> CodeDelivery:
        return await self._messages.get()

    async def _await_direct(self) -> CodeDelivery:
        await self._direct_event.wait()
        return CodeDelivery(code=self._direct_code, channel="direct")

    async def _poll_surface(self, surface: InteractionSurface) -> CodeDelivery:
        while True:
            await asyncio.sleep(self.poll_interval)
            if surface.closed:
                raise AuthorizationCancelled("Authorization window was closed")
            try:
                location = surface.location
            except CrossOriginAccessError:
                # Still on Google's domain
                continue
            if not location.startswith(self.redirect_uri):
                continue
            params = parse_qs(urlsplit(location).query)
            code = _first(params, "code")
            error = _first(params, "error")
            if code or error:
                return CodeDelivery(code=code, error=error, channel="poll")

    def _fail(self, reason: str) -> None:
        self.state = FlowState.FAILED
        self.error = reason


class OAuthFlowRegistry:
    """Pending flows keyed by state token.

    Flows that finish are remembered until their state token expires, so a
    callback arriving after polling already resolved the flow shares its
    outcome instead of redeeming the code again.
    """

    def __init__(self) -> None:
        self._flows: Dict[str, OAuthFlowController] = {}
        self._tasks: Dict[str, asyncio.Task[AuthorizationResult]] = {}
        self._settled: Dict[str, Tuple[datetime, asyncio.Task[AuthorizationResult]]] = {}

    def __len__(self) -> int:
        return len(self._flows)

    def get(self, state: Optional[str]) -> Optional[OAuthFlowController]:
        if not state:
            return None
        return self._flows.get(state)

    def task_for(self, state: str) -> Optional[asyncio.Task[AuthorizationResult]]:
        return self._tasks.get(state)

    def settled(self, state: str) -> Optional[asyncio.Task[AuthorizationResult]]:
        """The finished task for ``state``, while its state token is still valid."""
        entry = self._settled.get(state)
        return entry[1] if entry else None

    def latest_for_user(self, user_id: str) -> Optional[OAuthFlowController]:
        flows = [flow for flow in self._flows.values() if flow.user_id == user_id]
        return flows[-1] if flows else None

    def launch(
        self, controller: OAuthFlowController, surface: InteractionSurface
    ) -> asyncio.Task[AuthorizationResult]:
        """Run ``controller`` in the background until it resolves."""
        if controller.state_token is None:
            controller.build_authorization_url()
        state = controller.state_token
        if state is None:
            raise CalendarIntegrationError("Authorization flow has no state token")
        self.cancel_for_user(controller.user_id)

        task = asyncio.create_task(controller.initiate_authorization(surface))
        self._flows[state] = controller
        self._tasks[state] = task
        task.add_done_callback(lambda finished: self._finished(state, finished))
        return task

    def cancel_for_user(self, user_id: str) -> int:
        states = [state for state, flow in self._flows.items() if flow.user_id == user_id]
        for state in states:
            task = self._tasks.get(state)
            if task is not None and not task.done():
                task.cancel()
            self._flows.pop(state, None)
            self._tasks.pop(state, None)
        return len(states)

    def cancel_all(self) -> None:
        for task in list(self._tasks.values()):
            if not task.done():
                task.cancel()
        self._flows.clear()
        self._tasks.clear()
        self._settled.clear()

    def _finished(self, state: str, task: asyncio.Task[AuthorizationResult]) -> None:
        flow = self._flows.pop(state, None)
        self._tasks.pop(state, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Authorization flow ended without tokens user=%s: %s",
                flow.user_id if flow else "unknown",
                exc,
            )
        if flow is None or flow.state_expires_at is None:
            return
        now = flow.clock()
        for stale in [key for key, (expires, _) in self._settled.items() if expires <= now]:
            del self._settled[stale]
        self._settled[state] = (flow.state_expires_at, task)
