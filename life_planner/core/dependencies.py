from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from life_planner.core.config import get_settings
from life_planner.domains.auth.repository import AuthRepository
from life_planner.domains.auth.schemas import AuthenticatedUser
from life_planner.domains.calendars.service import CalendarSession, CalendarSessionRegistry
from life_planner.utils.errors import SupabaseAuthError, SupabaseStorageError

security = HTTPBearer()
logger = logging.getLogger(__name__)


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthenticatedUser:
    """
    Dependency to get the current authenticated user from the request.
    Validates the JWT token and returns the user information.
    Also stores user_id in request.state for middleware access.
    """
    token = credentials.credentials

    repository = AuthRepository()
    try:
        user = await repository.get_user_from_token(token)
    except SupabaseAuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    except SupabaseStorageError as exc:
        error_msg = str(exc).lower()
        if "jwt" in error_msg or "expired" in error_msg or "unauthorized" in error_msg:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication token has expired. Please refresh your session.",
                headers={"WWW-Authenticate": "Bearer"},
            ) from exc
        raise

    if not user or not user.get("id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Store user_id in request.state for middleware logging
    request.state.user_id = user["id"]

    return AuthenticatedUser(**user)


def get_session_registry(request: Request) -> CalendarSessionRegistry:
    """Process-wide calendar session registry, created on first use."""
    registry = getattr(request.app.state, "calendar_sessions", None)
    if registry is None:
        registry = CalendarSessionRegistry(get_settings())
        request.app.state.calendar_sessions = registry
    return registry


def get_calendar_session(
    current_user: Annotated[AuthenticatedUser, Depends(get_current_user)],
    registry: Annotated[CalendarSessionRegistry, Depends(get_session_registry)],
) -> CalendarSession:
    return registry.session_for(current_user.id)
