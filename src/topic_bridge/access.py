"""Authorization and per-user rate limiting for inbound Telegram actions."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from .mapping_store import MappingStore
from .models import RateLimitConfig

logger = logging.getLogger(__name__)

_AUTHORIZED_KEY = "access.authorized"
_BLOCKED_KEY = "access.blocked"


class GateDecision(str, Enum):
    ALLOWED = "allowed"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"


@dataclass(slots=True)
class _Window:
    window_start: float
    count: int


class AccessGate:
    """Default-deny gate: owner plus allow-list, minus block-list, then a fixed window."""

    def __init__(
        self,
        owner_id: int,
        *,
        rate_limit: RateLimitConfig | None = None,
        authorized: Iterable[int] = (),
        blocked: Iterable[int] = (),
        store: MappingStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._owner_id = owner_id
        self._limit = rate_limit or RateLimitConfig()
        self._store = store
        self._clock = clock
        self._authorized: set[int] = set(authorized)
        self._blocked: set[int] = set(blocked)
        if store is not None:
            self._authorized |= store.get_id_set(_AUTHORIZED_KEY)
            self._blocked |= store.get_id_set(_BLOCKED_KEY)
        self._windows: dict[tuple[int, str], _Window] = {}

    @property
    def owner_id(self) -> int:
        return self._owner_id

    @property
    def authorized(self) -> frozenset[int]:
        return frozenset(self._authorized | {self._owner_id})

    @property
    def blocked(self) -> frozenset[int]:
        return frozenset(self._blocked)

    def is_owner(self, user_id: int) -> bool:
        return user_id == self._owner_id

    def is_authorized(self, user_id: int) -> bool:
        allowed = user_id == self._owner_id or user_id in self._authorized
        return allowed and user_id not in self._blocked

    def check_rate_limit(self, user_id: int, action: str = "message") -> bool:
        now = self._clock()
        key = (user_id, action)
        window = self._windows.get(key)
        if window is None or now > window.window_start + self._limit.window_seconds:
            self._windows[key] = _Window(window_start=now, count=1)
            return True
        if window.count >= self._limit.max_count:
            return False
        window.count += 1
        return True

    def admit(self, user_id: int, action: str = "message") -> GateDecision:
        """Authorize first; only authorized requests touch the rate counters."""

        if not self.is_authorized(user_id):
            logger.warning("Отклонён запрос %s от неавторизованного пользователя %s", action, user_id)
            return GateDecision.UNAUTHORIZED
        if not self.check_rate_limit(user_id, action):
            logger.info("Превышен лимит запросов %s для пользователя %s", action, user_id)
            return GateDecision.RATE_LIMITED
        return GateDecision.ALLOWED

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------
    def authorize(self, user_id: int) -> bool:
        if user_id in self._authorized:
            return False
        self._authorized.add(user_id)
        self._persist()
        return True

    def unauthorize(self, user_id: int) -> bool:
        if user_id not in self._authorized:
            return False
        self._authorized.discard(user_id)
        self._persist()
        return True

    def block(self, user_id: int) -> bool:
        if user_id == self._owner_id or user_id in self._blocked:
            return False
        self._blocked.add(user_id)
        self._persist()
        return True

    def unblock(self, user_id: int) -> bool:
        if user_id not in self._blocked:
            return False
        self._blocked.discard(user_id)
        self._persist()
        return True

    def _persist(self) -> None:
        if self._store is None:
            return
        self._store.set_id_set(_AUTHORIZED_KEY, self._authorized)
        self._store.set_id_set(_BLOCKED_KEY, self._blocked)
