from __future__ import annotations

from collections import OrderedDict
from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    # SQLite and some JSON payloads hand back naive datetimes; treat them as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class DateParser:
    """Parse loosely typed date values coming back from the store.

    Accepted inputs: ``datetime``, ISO-8601 strings, epoch seconds,
    ``{"seconds": ..., "nanoseconds": ...}`` mappings and objects exposing
    ``to_datetime()``. Results are memoized in a bounded LRU cache; the
    parser is created by the composition root and injected where needed.
    """

    def __init__(self, max_size: int = 1000) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._cache: OrderedDict[str, datetime | None] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def parse(self, value: Any) -> datetime | None:
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return ensure_aware(value)
        if hasattr(value, "to_datetime"):
            return ensure_aware(value.to_datetime())

        key = self._cache_key(value)
        if key in self._cache:
            self.hits += 1
            self._cache.move_to_end(key)
            return self._cache[key]

        self.misses += 1
        parsed = self._parse_uncached(value)
        self._cache[key] = parsed
        if len(self._cache) > self.max_size:
            self._cache.popitem(last=False)
        return parsed

    def parse_or_now(self, value: Any) -> datetime:
        return self.parse(value) or utcnow()

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    @staticmethod
    def _cache_key(value: Any) -> str:
        if isinstance(value, dict):
            return f"ts:{value.get('seconds')}:{value.get('nanoseconds', 0)}"
        return f"{type(value).__name__}:{value}"

    @staticmethod
    def _parse_uncached(value: Any) -> datetime | None:
        if isinstance(value, dict):
            seconds = value.get("seconds")
            if not isinstance(seconds, int | float):
                return None
            nanos = value.get("nanoseconds") or 0
            return datetime.fromtimestamp(seconds + nanos / 1_000_000_000, tz=UTC)
        if isinstance(value, bool):
            return None
        if isinstance(value, int | float):
            # Values above 1e11 are epoch milliseconds.
            seconds = value / 1000 if value > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=UTC)
        if isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                return ensure_aware(datetime.fromisoformat(text))
            except ValueError:
                return None
        return None
