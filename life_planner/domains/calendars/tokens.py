"""Google Calendar token storage and silent refresh."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from life_planner.domains.calendars.providers.google import GoogleOAuthClient
from life_planner.domains.calendars.schemas import (
    AuthRecord,
    AuthStatusResponse,
    PRIMARY_CALENDAR_ID,
)
from life_planner.utils.errors import InvalidGrantError

TOKEN_REFRESH_LEEWAY = timedelta(minutes=5)

Clock = Callable[[], datetime]

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthRecordStore(Protocol):
    def get_auth_record(self, user_id: str) -> AuthRecord | None: ...

    def upsert_auth_record(self, user_id: str, record: AuthRecord) -> AuthRecord: ...


@dataclass(frozen=True)
class ReauthorizationRequired:
    """Signal that the stored grant is unusable and the user must re-consent."""

    reason: str

    def __bool__(self) -> bool:
        return False


class TokenStore:
    """Per-user view over the durable auth record.

    The persisted record is the source of truth; ``_mirror`` only caches the
    last value read or written by this process.
    """

    def __init__(
        self,
        repository: AuthRecordStore,
        user_id: str,
        *,
        clock: Clock = _utcnow,
    ) -> None:
        self.repository = repository
        self.user_id = user_id
        self.clock = clock
        self._mirror: AuthRecord | None = None

    def get(self, *, refresh: bool = False) -> AuthRecord | None:
        if refresh or self._mirror is None:
            self._mirror = self.repository.get_auth_record(self.user_id)
        return self._mirror

    def upsert(self, **fields: Any) -> AuthRecord:
        """Merge ``fields`` into the stored record and persist it.

        A missing or empty ``refresh_token`` keeps the one already stored;
        Google only issues it on first (or forced) consent.
        """
        now = self.clock()
        existing = self.get(refresh=True)
        if fields.get("refresh_token") in (None, ""):
            fields.pop("refresh_token", None)
        if "calendar_ids" in fields and not fields["calendar_ids"]:
            fields["calendar_ids"] = [PRIMARY_CALENDAR_ID]

        if existing is None:
            record = AuthRecord(
                user_id=self.user_id,
                created_at=now,
                updated_at=now,
                **fields,
            )
        else:
            record = existing.model_copy(update={**fields, "updated_at": now})

        self._mirror = self.repository.upsert_auth_record(self.user_id, record)
        return self._mirror

    def invalidate(self) -> AuthRecord | None:
        """Mark the user unauthorized and drop the access token."""
        if self.get(refresh=True) is None:
            return None
        return self.upsert(is_authorized=False, access_token=None, token_expiry=None)

    def status(self) -> AuthStatusResponse:
        record = self.get(refresh=True)
        if record is None:
            return AuthStatusResponse(is_authorized=False)
        return AuthStatusResponse(
            is_authorized=record.is_authorized,
            token_expiry=record.token_expiry,
            calendar_ids=record.calendar_ids or [PRIMARY_CALENDAR_ID],
            has_refresh_token=bool(record.refresh_token),
        )


class TokenRefreshManager:
    """Guarantees outbound provider calls use a token with validity remaining."""

    def __init__(
        self,
        store: TokenStore,
        oauth_client: GoogleOAuthClient,
        *,
        leeway: timedelta = TOKEN_REFRESH_LEEWAY,
        clock: Clock = _utcnow,
    ) -> None:
        self.store = store
        self.oauth_client = oauth_client
        self.leeway = leeway
        self.clock = clock

    def needs_refresh(self, record: AuthRecord) -> bool:
        if not record.access_token or record.token_expiry is None:
            return True
        return record.token_expiry <= self.clock() + self.leeway

    async def get_valid_access_token(self) -> str | ReauthorizationRequired:
        record = self.store.get(refresh=True)
        if record is None or not record.is_authorized:
            return ReauthorizationRequired("not_authorized")
        if not self.needs_refresh(record):
            return record.access_token  # type: ignore[return-value]
        logger.info(
            "Google token for user=%s expired or expiring soon, refreshing",
            self.store.user_id,
        )
        return await self.refresh()

    async def refresh(self) -> str | ReauthorizationRequired:
        """Silently refresh the access token.

        Raises:
            RefreshFailed: on any retryable provider failure (no retry here).
        """
        record = self.store.get(refresh=True)
        if record is None or not record.is_authorized:
            return ReauthorizationRequired("not_authorized")
        if not record.refresh_token:
            return ReauthorizationRequired("missing_refresh_token")

        try:
            tokens = await self.oauth_client.refresh(record.refresh_token)
        except InvalidGrantError:
            logger.warning(
                "Google refresh token rejected for user=%s, marking unauthorized",
                self.store.user_id,
            )
            self.store.upsert(is_authorized=False, access_token=None, token_expiry=None)
            return ReauthorizationRequired("invalid_grant")

        updated = self.store.upsert(
            is_authorized=True,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expiry=tokens.expires_at(self.clock()),
        )
        return updated.access_token  # type: ignore[return-value]
