"""TTL cache of Google Calendar event listings."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, MutableMapping, Optional

CACHE_KEY_PREFIX = "google_calendar_events_"
CACHE_TTL = timedelta(minutes=10)

logger = logging.getLogger(__name__)


def cache_key(calendar_id: str, time_min: str, time_max: str) -> str:
    return f"{CACHE_KEY_PREFIX}{calendar_id}_{time_min}_{time_max}"


class LocalEventCache:
    """Event listings keyed by (calendar id, time window).

    Entries are JSON strings in ``storage`` so any string mapping can back the
    cache. Only keys carrying ``CACHE_KEY_PREFIX`` belong to it.
    """

    def __init__(
        self,
        storage: Optional[MutableMapping[str, str]] = None,
        *,
        ttl: timedelta = CACHE_TTL,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.storage: MutableMapping[str, str] = storage if storage is not None else {}
        self.ttl = ttl
        self.clock = clock

    def get(
        self, calendar_id: str, time_min: str, time_max: str
    ) -> Optional[List[Dict[str, Any]]]:
        """Return cached events, or None on a miss or an expired entry."""
        key = cache_key(calendar_id, time_min, time_max)
        raw = self.storage.get(key)
        if raw is None:
            return None
        try:
            entry = json.loads(raw)
            fetched_at = datetime.fromisoformat(entry["fetched_at"])
            events = entry["events"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable cache entry %s", key)
            self.storage.pop(key, None)
            return None

        if self.clock() - fetched_at > self.ttl:
            logger.debug("Cache expired, removing %s", key)
            self.storage.pop(key, None)
            return None
        return events

    def put(self, key: str, events: Optional[List[Dict[str, Any]]]) -> None:
        if events is None:
            return
        self.storage[key] = json.dumps(
            {"events": events, "fetched_at": self.clock().isoformat()}
        )

    def clear_all(self) -> int:
        keys = [key for key in list(self.storage) if key.startswith(CACHE_KEY_PREFIX)]
        for key in keys:
            self.storage.pop(key, None)
        return len(keys)
