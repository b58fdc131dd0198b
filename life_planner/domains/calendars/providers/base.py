"""Base calendar provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List


class CalendarProvider(ABC):
    """Abstract base class for read-only calendar providers."""

    @abstractmethod
    async def list_calendars(
        self,
        *,
        access_token: str,
        min_access_role: str = "reader",
    ) -> List[Dict[str, Any]]:
        """List all calendars the account can access."""
        ...

    @abstractmethod
    async def list_events(
        self,
        *,
        access_token: str,
        calendar_id: str,
        time_min: str,
        time_max: str,
        max_results: int = 250,
        show_deleted: bool = False,
    ) -> List[Dict[str, Any]]:
        """List expanded event instances in [time_min, time_max], ordered by start.

        With ``show_deleted`` the provider also returns cancelled instances so
        callers can retract copies they stored earlier.
        """
        ...
