"""Repository for authentication-related database operations."""

from __future__ import annotations

from typing import Any, Dict

import jwt
from postgrest import APIError

from life_planner.core.config import get_settings
from life_planner.db.session import get_service_client
from life_planner.utils.errors import SupabaseAuthError, SupabaseStorageError

USERS_TABLE = "users"
SESSION_AUDIENCE = "authenticated"


class AuthRepository:
    """Repository for authentication database operations."""

    async def get_user_from_token(self, access_token: str) -> Dict[str, Any]:
        """
        Validate a Supabase session JWT and load the user's profile row.

        Args:
            access_token: Supabase JWT access token

        Returns:
            User dictionary (at least ``id``)

        Raises:
            SupabaseAuthError: If token is invalid, expired, or user not found
        """
        settings = get_settings()

        if not settings.supabase_jwt_secret:
            raise SupabaseAuthError("JWT secret not configured")

        try:
            decoded = jwt.decode(
                access_token,
                settings.supabase_jwt_secret,
                algorithms=["HS256"],
                audience=SESSION_AUDIENCE,
            )
        except jwt.ExpiredSignatureError as exc:
            raise SupabaseAuthError("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise SupabaseAuthError(f"Invalid token: {exc}") from exc

        user_id = decoded.get("sub")
        if not user_id:
            raise SupabaseAuthError("Invalid token: missing user ID")

        client = get_service_client()
        try:
            result = client.table(USERS_TABLE).select("*").eq("id", user_id).execute()
        except APIError as exc:
            # Supabase may report JWT expiry even with the service role key when RLS checks run
            error_message = str(exc.message).lower()
            if exc.code == "PGRST303" or "jwt expired" in error_message:
                raise SupabaseAuthError("Token has expired") from exc
            raise SupabaseStorageError(f"Failed to fetch user: {exc.message}") from exc

        if not result.data:
            raise SupabaseAuthError("User not found")

        return result.data[0]
