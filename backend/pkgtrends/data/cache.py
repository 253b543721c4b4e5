"""Day-bucketed response cache.

Keys embed the calendar date in the cache timezone, so entries roll over at
midnight without explicit invalidation. TTLs run to the end of the same day in that
timezone. The cache is an optimization only; callers treat failures as misses.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone, tzinfo
import threading
import time
from typing import Any, Callable
from zoneinfo import ZoneInfo

from pkgtrends.core.config import Settings
from pkgtrends.core.periods import resolve_period


KEY_PREFIX = "pypi-downloads"


def resolve_timezone(name: str) -> tzinfo:
    if name.strip().upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class ResponseCache(ABC):
    def __init__(
        self,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tz = tz
        self._clock = clock

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=self._tz)

    def key(
        self,
        entity_id: str,
        period: str,
        exclude_noise: bool,
        *,
        kind: str = "timeseries",
    ) -> str:
        spec = resolve_period(period)
        period_name = spec.name if spec else period
        noise = "no_ci" if exclude_noise else "with_ci"
        today = self.now().date().isoformat()
        return f"{KEY_PREFIX}:{kind}:{entity_id}:{period_name}:{noise}:{today}"

    def ttl_until_midnight(self) -> int:
        now = self.now()
        end_of_day = now.replace(hour=23, minute=59, second=59, microsecond=999000)
        return max(int((end_of_day - now).total_seconds()), 0)

    @abstractmethod
    def get(self, key: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def put(self, key: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        raise NotImplementedError


class InMemoryResponseCache(ResponseCache):
    def __init__(
        self,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(tz=tz, clock=clock)
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return dict(payload)

    def put(self, key: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        now = self._clock()
        with self._lock:
            # Date-scoped keys are never read again once the day rolls over.
            self._drop_expired(now)
            self._entries[key] = (now + ttl_seconds, dict(payload))

    def purge_expired(self) -> int:
        with self._lock:
            return self._drop_expired(self._clock())

    def _drop_expired(self, now: float) -> int:
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


def build_cache(settings: Settings) -> ResponseCache:
    tz = resolve_timezone(settings.cache_timezone)
    if settings.cache_backend == "file":
        from pkgtrends.data.file_cache import JsonFileResponseCache

        return JsonFileResponseCache(settings.cache_dir, tz=tz)
    if settings.cache_backend != "memory":
        raise ValueError(f"Unsupported cache backend: {settings.cache_backend}")
    return InMemoryResponseCache(tz=tz)
