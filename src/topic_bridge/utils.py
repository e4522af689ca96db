"""Miscellaneous helpers."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone, tzinfo
from typing import AsyncIterator

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

STATUS_BROADCAST = "status@broadcast"
CALL_BROADCAST = "call@broadcast"
SPECIAL_THREADS = frozenset({STATUS_BROADCAST, CALL_BROADCAST})


class RateLimiter:
    """Simple rate limiter using sleep between events."""

    def __init__(self, rate_per_second: float):
        self.update_rate(rate_per_second)
        self._lock = asyncio.Lock()
        self._next_time = 0.0

    def update_rate(self, rate_per_second: float) -> None:
        self._interval = 0.0 if rate_per_second <= 0 else 1.0 / rate_per_second

    async def wait(self) -> None:
        async with self._lock:
            if self._interval <= 0:
                return
            now = time.perf_counter()
            if now < self._next_time:
                await asyncio.sleep(self._next_time - now)
            self._next_time = time.perf_counter() + self._interval


class KeyedLock:
    """Per-key mutual exclusion shared across coroutines."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        async with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
        async with lock:
            yield


_DURATION_UNITS = (("ms", 0.001), ("s", 1.0), ("m", 60.0), ("h", 3600.0), ("d", 86400.0))


def parse_duration(value: str | None, default: float = 0.0) -> float:
    """Parse a duration in seconds; ``ms``, ``s``, ``m``, ``h`` and ``d`` suffixes are accepted."""

    if value is None:
        return default
    stripped = value.strip().lower()
    if not stripped:
        return default
    factor = 1.0
    for suffix, multiplier in _DURATION_UNITS:
        if stripped.endswith(suffix):
            stripped = stripped[: -len(suffix)].strip()
            factor = multiplier
            break
    try:
        parsed = float(stripped) * factor
    except ValueError:
        return default
    return max(0.0, parsed)


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse textual boolean configuration values.

    Supported truthy values: ``on``, ``true``, ``yes``, ``1`` (case-insensitive).
    Supported falsy values: ``off``, ``false``, ``no``, ``0``.
    Any other value returns ``default``.
    """

    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    if normalized in {"on", "true", "yes", "1"}:
        return True
    if normalized in {"off", "false", "no", "0"}:
        return False
    return default


def parse_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def phone_from_jid(jid: str) -> str:
    """Return the bare number of a WhatsApp identifier such as ``79991234567@c.us``."""

    return jid.split("@", 1)[0].split(":", 1)[0]


def jid_from_phone(value: str) -> str:
    """Normalize a phone number or identifier to a direct chat jid."""

    stripped = value.strip()
    if "@" in stripped:
        return stripped
    digits = "".join(ch for ch in stripped if ch.isdigit())
    return f"{digits}@c.us"


def is_group_jid(jid: str) -> bool:
    return jid.endswith("@g.us")


def is_valid_contact_name(name: str | None, phone: str) -> bool:
    """Reject names that are just the number in another shape."""

    if not name:
        return False
    candidate = name.strip()
    if len(candidate) <= 2:
        return False
    if candidate == phone or candidate.startswith("+"):
        return False
    return not candidate.replace(" ", "").isdigit()


def resolve_timezone(name: str | None) -> tzinfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def as_local_time(moment: datetime, zone: tzinfo) -> datetime:
    """Return ``moment`` converted to ``zone``; naive values are treated as UTC."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(zone)
