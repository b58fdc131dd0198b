"""Authenticated user schema."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class AuthenticatedUser(BaseModel):
    """Represents an authenticated user."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
