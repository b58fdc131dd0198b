"""Centralized exception classes for the application."""

from __future__ import annotations

from typing import Any

from fastapi import status


# Supabase errors
class SupabaseAuthError(RuntimeError):
    """Raised when Supabase auth operations fail."""


class SupabaseStorageError(RuntimeError):
    """Raised when Supabase data operations fail."""


# Calendar integration errors
class CalendarIntegrationError(RuntimeError):
    """Base error for the Google Calendar integration."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ConfigurationError(CalendarIntegrationError):
    """Raised when Google OAuth credentials are missing."""


class OAuthStateError(CalendarIntegrationError):
    """Raised when the OAuth state token is invalid."""

    status_code = status.HTTP_400_BAD_REQUEST


class PopupBlockedError(CalendarIntegrationError):
    """Raised when the authorization surface could not be opened."""

    status_code = status.HTTP_409_CONFLICT


class AuthorizationTimeout(CalendarIntegrationError):
    """Raised when no authorization code arrives in time."""

    status_code = status.HTTP_408_REQUEST_TIMEOUT


class AuthorizationCancelled(CalendarIntegrationError):
    """Raised when the user closes the authorization surface."""

    status_code = status.HTTP_409_CONFLICT


class ProviderDeniedError(CalendarIntegrationError):
    """Raised when the user declines consent at the provider."""

    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, error: str) -> None:
        super().__init__(f"Authorization error: {error}")
        self.error = error


class ExchangeError(CalendarIntegrationError):
    """Raised when the authorization code could not be exchanged."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_status = status_code
        self.description = description


class RefreshFailed(CalendarIntegrationError):
    """Raised when a token refresh fails for a retryable reason."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, *, provider_status: int | None = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class InvalidGrantError(RefreshFailed):
    """Raised when Google rejects the refresh token permanently."""

    status_code = status.HTTP_401_UNAUTHORIZED


# Google Calendar API errors
class GoogleCalendarAPIError(RuntimeError):
    """Raised when the Google Calendar REST API returns an error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        payload: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


# Interaction surface errors
class CrossOriginAccessError(RuntimeError):
    """Raised when a surface's location cannot be read (still on the provider domain)."""
