"""Supabase client factory for the durable calendar store."""

from __future__ import annotations

from functools import lru_cache

from supabase import Client, create_client

from life_planner.core.config import get_settings
from life_planner.utils.errors import ConfigurationError


@lru_cache
def get_service_client() -> Client:
    """Get cached Supabase service-role client."""
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise ConfigurationError("Supabase URL and service role key must be configured")
    return create_client(settings.supabase_url, settings.supabase_service_role_key)
