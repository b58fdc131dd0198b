"""Application configuration using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict
from urllib.parse import urlencode

from pydantic_settings import BaseSettings, SettingsConfigDict

from life_planner.utils.errors import ConfigurationError

# Get the project root directory (two levels up from this file)
PROJECT_ROOT = Path(__file__).parent.parent.parent

DEFAULT_CALLBACK_PATH = "/api/v1/calendars/auth/callback"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Backend base URL (fallback origin for the OAuth redirect URI)
    backend_url: str = "http://localhost:8000"

    # Supabase configuration
    supabase_url: str
    supabase_service_role_key: str
    # Verifies user sessions and signs OAuth state tokens
    supabase_jwt_secret: str | None = None

    # Google OAuth configuration
    google_client_id: str | None = None
    google_client_secret: str | None = None
    # Full redirect URI override (if set, takes precedence over constructed URI)
    google_redirect_uri: str | None = None
    google_oauth_redirect_path: str = DEFAULT_CALLBACK_PATH
    # Where the browser lands after the callback (JSON response when unset)
    google_oauth_app_redirect_uri: str | None = None
    google_oauth_scopes: list[str] = [
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/calendar.events.readonly",
    ]
    google_http_timeout: float = 15.0

    # Calendar integration tuning
    calendar_cache_ttl_seconds: int = 600
    oauth_authorization_timeout_seconds: float = 120.0
    oauth_poll_interval_seconds: float = 0.5
    token_refresh_leeway_seconds: int = 300
    sync_max_results: int = 250

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def resolve_redirect_uri(self, origin: str | None = None) -> str:
        """Get the Google OAuth redirect URI.

        Priority:
        1. If google_redirect_uri is set, use it (full override)
        2. Otherwise, the request origin + callback path
        3. Otherwise, backend_url + callback path
        """
        if self.google_redirect_uri:
            return self.google_redirect_uri
        base = (origin or self.backend_url).rstrip("/")
        path = self.google_oauth_redirect_path.lstrip("/")
        return f"{base}/{path}"

    def build_app_redirect_url(self, success: bool, message: str | None = None) -> str | None:
        """App URL the OAuth callback sends the browser back to, if configured."""
        base = self.google_oauth_app_redirect_uri
        if not base:
            return None
        params = {"result": "success" if success else "error"}
        if message:
            params["message"] = message
        query = urlencode(params)
        if "?" in base:
            return f"{base}&{query}"
        return f"{base}?{query}"

    def require_client_id(self) -> str:
        if not self.google_client_id:
            raise ConfigurationError("Google client ID not configured")
        return self.google_client_id

    def require_client_secret(self) -> str:
        """Client secret for confidential (server-side) token requests."""
        if not self.google_client_secret:
            raise ConfigurationError("Google client secret not configured")
        return self.google_client_secret

    def credential_report(self) -> Dict[str, str]:
        """Report which Google credentials are present without exposing them."""
        return {
            "GOOGLE_CLIENT_ID": "Set" if self.google_client_id else "Not set",
            "GOOGLE_CLIENT_SECRET": "Set" if self.google_client_secret else "Not set",
            "GOOGLE_REDIRECT_URI": self.google_redirect_uri or "Using default",
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
