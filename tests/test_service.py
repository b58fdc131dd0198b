"""Tests for the per-user calendar session."""

import asyncio
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

import pytest

from life_planner.domains.calendars.cache import cache_key
from life_planner.domains.calendars.providers.google import create_state_token
from life_planner.domains.calendars.service import current_month_window
from life_planner.utils.errors import OAuthStateError, ProviderDeniedError

from .conftest import FakeSurface, USER_ID, google_event

TIME_MIN = datetime(2024, 3, 1, tzinfo=timezone.utc)
TIME_MAX = datetime(2024, 3, 31, 23, 59, 59, tzinfo=timezone.utc)
ORIGIN = "http://testserver"
CALLBACK_URL = f"{ORIGIN}/api/v1/calendars/auth/callback"


async def open_popup(session, surface):
    """Start ``connect`` and wait until the surface shows the consent page."""
    connecting = asyncio.create_task(session.connect(surface, origin=ORIGIN))
    for _ in range(100):
        if surface.opened_url is not None:
            break
        await asyncio.sleep(0)
    state = parse_qs(urlsplit(surface.opened_url).query)["state"][0]
    return connecting, state


class TestMonthWindow:
    def test_mid_month(self):
        start, end = current_month_window(datetime(2024, 3, 14, 9, tzinfo=timezone.utc))

        assert start == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)

    def test_december_rolls_over(self):
        start, end = current_month_window(datetime(2024, 12, 31, 23, tzinfo=timezone.utc))

        assert start == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert end.year == 2024 and end.month == 12 and end.day == 31


class TestRefreshEvents:
    """Tests for CalendarSession.refresh_events."""

    @pytest.mark.asyncio
    async def test_fetch_then_serve_from_cache(self, session, authorized_record, google):
        google.events["primary"] = [google_event("evt-1")]

        first = await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)
        second = await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)

        assert first.success is True and first.from_cache is False
        assert second.from_cache is True
        assert second.events == first.events
        assert len(google.event_requests()) == 1

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache_read_but_writes(
        self, session, authorized_record, google
    ):
        google.events["primary"] = [google_event("evt-1")]
        await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)
        google.events["primary"] = [google_event("evt-1"), google_event("evt-2", "Lunch")]

        forced = await session.refresh_events(
            time_min=TIME_MIN, time_max=TIME_MAX, force_refresh=True
        )
        cached = await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)

        assert forced.from_cache is False
        assert len(forced.events) == 2
        assert cached.from_cache is True
        assert len(cached.events) == 2
        assert len(google.event_requests()) == 2

    @pytest.mark.asyncio
    async def test_cache_expires(self, session, authorized_record, google, clock):
        await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)
        clock.advance(minutes=10, seconds=1)

        result = await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)

        assert result.from_cache is False
        assert len(google.event_requests()) == 2

    @pytest.mark.asyncio
    async def test_defaults_to_current_month(self, session, authorized_record, google):
        await session.refresh_events()

        params = google.event_requests()[0].url.params
        assert params["timeMin"] == "2024-03-01T00:00:00Z"
        assert params["timeMax"] == "2024-03-31T23:59:59.999999Z"
        assert "showDeleted" not in params

    @pytest.mark.asyncio
    async def test_identical_concurrent_calls_share_one_fetch(
        self, session, authorized_record, google
    ):
        results = await asyncio.gather(
            session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX, force_refresh=True),
            session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX, force_refresh=True),
        )

        assert results[0] == results[1]
        assert len(google.event_requests()) == 1

    @pytest.mark.asyncio
    async def test_provider_error(self, session, authorized_record, google):
        google.event_status["primary"] = 404

        result = await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)

        assert result.success is False
        assert result.message == "Failed to fetch events: 404"

    @pytest.mark.asyncio
    async def test_not_authorized(self, session, google):
        result = await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)

        assert result.success is False
        assert result.message == "Not authorized with Google Calendar"


class TestSyncEvents:
    @pytest.mark.asyncio
    async def test_concurrent_syncs_are_coalesced(
        self, session, repository, authorized_record, google
    ):
        google.events["primary"] = [google_event("evt-1")]

        first, second = await asyncio.gather(
            session.sync_events(TIME_MIN, TIME_MAX),
            session.sync_events(TIME_MIN, TIME_MAX),
        )

        assert first == second
        assert len(google.event_requests()) == 1
        assert repository.inserts == 1

    @pytest.mark.asyncio
    async def test_single_calendar(self, session, authorized_record, google):
        google.events["team@group.calendar.google.com"] = [google_event("evt-1")]

        result = await session.sync_events(
            TIME_MIN, TIME_MAX, calendar_id="team@group.calendar.google.com"
        )

        assert result.success is True
        assert result.event_count == 1


class TestCalendars:
    @pytest.mark.asyncio
    async def test_list_calendars_filters_access_roles(self, session, authorized_record):
        result = await session.list_calendars()

        assert result.success is True
        assert result.calendar_ids == [
            "primary",
            "team@group.calendar.google.com",
            "holidays@group.v.calendar.google.com",
        ]
        assert result.calendars[0].primary is True
        assert result.calendars[1].access_role == "writer"

    @pytest.mark.asyncio
    async def test_refresh_calendar_list_stores_ids(self, session, repository, authorized_record):
        result = await session.refresh_calendar_list()

        assert result.message == "Found 3 calendars"
        assert repository.auth[USER_ID].calendar_ids == result.calendar_ids

    @pytest.mark.asyncio
    async def test_refresh_calendar_list_failure_keeps_stored_ids(
        self, session, repository, authorized_record, google
    ):
        google.calendar_list_status = 503

        result = await session.refresh_calendar_list()

        assert result.success is False
        assert repository.auth[USER_ID].calendar_ids == ["primary"]


class TestAuthorization:
    """Tests for authorization, refresh and disconnect."""

    @pytest.mark.asyncio
    async def test_start_then_complete_with_direct_delivery(self, session, repository):
        started = session.start_authorization(ORIGIN)
        await asyncio.sleep(0)

        assert session.get_auth_status().flow_state == "awaiting_user_consent"
        result = await session.complete_authorization("code-direct", started.state)

        assert result.success is True
        assert repository.auth[USER_ID].is_authorized is True
        assert session.get_auth_status().is_authorized is True

    @pytest.mark.asyncio
    async def test_complete_without_pending_flow_verifies_state(
        self, session, settings, repository, google
    ):
        state = create_state_token(settings, USER_ID)

        result = await session.complete_authorization("code", state, origin=ORIGIN)

        assert result.success is True
        assert google.token_requests("authorization_code")[0]["redirect_uri"] == [
            f"{ORIGIN}/api/v1/calendars/auth/callback"
        ]

    @pytest.mark.asyncio
    async def test_complete_rejects_foreign_state(self, session, settings, google):
        with pytest.raises(OAuthStateError):
            await session.complete_authorization(
                "code", create_state_token(settings, "someone-else")
            )
        with pytest.raises(OAuthStateError):
            await session.complete_authorization("code")

        assert google.token_requests() == []

    @pytest.mark.asyncio
    async def test_callback_delivers_to_pending_flow(self, registry, session, google):
        started = session.start_authorization(ORIGIN)
        await asyncio.sleep(0)

        result = await registry.deliver_callback(
            state=started.state, origin=ORIGIN, code="code-from-callback"
        )

        assert result.success is True
        assert google.token_requests("authorization_code")[0]["code"] == ["code-from-callback"]

    @pytest.mark.asyncio
    async def test_callback_with_error_denies(self, registry, session):
        started = session.start_authorization(ORIGIN)
        await asyncio.sleep(0)

        with pytest.raises(ProviderDeniedError):
            await registry.deliver_callback(
                state=started.state, origin=ORIGIN, error="access_denied"
            )

    @pytest.mark.asyncio
    async def test_callback_requires_state(self, registry):
        with pytest.raises(OAuthStateError):
            await registry.deliver_callback(state=None, origin=ORIGIN, code="code")

    @pytest.mark.asyncio
    async def test_connect_flow_takes_callback_and_redirect_once(
        self, registry, session, settings, google
    ):
        settings.oauth_poll_interval_seconds = 0.01
        surface = FakeSurface()
        connecting, state = await open_popup(session, surface)
        assert registry.flows.get(state) is not None

        surface.navigate(f"{CALLBACK_URL}?code=one-time-code&state={state}")
        delivered = await registry.deliver_callback(
            state=state, origin=ORIGIN, code="one-time-code"
        )
        connected = await connecting

        assert delivered.success is True
        assert connected == delivered
        assert google.redeemed_codes == ["one-time-code"]
        assert len(google.token_requests("authorization_code")) == 1

    @pytest.mark.asyncio
    async def test_callback_after_polling_resolved_shares_outcome(
        self, registry, session, settings, google
    ):
        settings.oauth_poll_interval_seconds = 0.01
        surface = FakeSurface()
        connecting, state = await open_popup(session, surface)

        surface.navigate(f"{CALLBACK_URL}?code=one-time-code&state={state}")
        connected = await connecting
        delivered = await registry.deliver_callback(
            state=state, origin=ORIGIN, code="one-time-code"
        )

        assert connected.success is True
        assert delivered == connected
        assert registry.flows.get(state) is None
        assert len(google.token_requests("authorization_code")) == 1

    @pytest.mark.asyncio
    async def test_refresh_access_token(self, session, repository, authorized_record):
        result = await session.refresh_access_token()

        assert result.success is True
        assert repository.auth[USER_ID].access_token == "ya29.refreshed"

    @pytest.mark.asyncio
    async def test_refresh_access_token_invalid_grant(
        self, session, repository, authorized_record, google
    ):
        google.token_responses["refresh_token"] = (400, {"error": "invalid_grant"})

        result = await session.refresh_access_token()

        assert result.success is False
        assert result.reauthorization_required is True
        assert session.get_auth_status().is_authorized is False

    @pytest.mark.asyncio
    async def test_disconnect(self, session, repository, authorized_record, google):
        await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)
        session.cache.storage["unrelated"] = "keep"

        result = await session.disconnect()

        assert result.success is True
        revokes = [r for r in google.requests if r.url.path == "/revoke"]
        assert revokes[0].url.params["token"] == "ya29.stored"
        stored = repository.auth[USER_ID]
        assert stored.is_authorized is False
        assert stored.access_token is None
        assert stored.refresh_token == "refresh-stored"
        assert session.cache.storage == {"unrelated": "keep"}

    @pytest.mark.asyncio
    async def test_disconnect_survives_failed_revoke(
        self, session, repository, authorized_record, google
    ):
        google.revoke_status = 400

        result = await session.disconnect()

        assert result.success is True
        assert repository.auth[USER_ID].is_authorized is False

    @pytest.mark.asyncio
    async def test_reconnect_after_disconnect_refetches(
        self, session, authorized_record, google
    ):
        await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)
        await session.disconnect()
        session.store.upsert(is_authorized=True, access_token="ya29.new", token_expiry=TIME_MAX)

        result = await session.refresh_events(time_min=TIME_MIN, time_max=TIME_MAX)

        assert result.from_cache is False


class TestStoredEvents:
    @pytest.mark.asyncio
    async def test_events_in_range_and_clear(self, session, repository, authorized_record, google):
        google.events["primary"] = [
            google_event("evt-1"),
            google_event("evt-2", start="2024-03-20T10:00:00Z", end="2024-03-20T11:00:00Z"),
        ]
        await session.sync_events(TIME_MIN, TIME_MAX)

        in_range = session.events_in_range(
            datetime(2024, 3, 14, tzinfo=timezone.utc),
            datetime(2024, 3, 15, tzinfo=timezone.utc),
        )
        cleared = session.clear_all_events()

        assert [event.provider_event_id for event in in_range] == ["evt-1"]
        assert cleared.deleted_count == 2
        assert repository.events == {}

    def test_cache_key_format(self):
        assert cache_key("primary", "a", "b") == "google_calendar_events_primary_a_b"
