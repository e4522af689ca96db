"""Debounced presence, read receipts and call de-duplication."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Callable

from .task_queue import OrderedTaskQueue, TaskFactory

if TYPE_CHECKING:
    from .whatsapp import WhatsAppAPIProtocol

logger = logging.getLogger(__name__)


class PresenceBatcher:
    """Per-key timer table; a new event for a key replaces the pending timer.

    The deferred work itself runs on the ordered queue, so presence updates
    and receipts never race the relay tasks they follow.
    """

    def __init__(
        self,
        queue: OrderedTaskQueue,
        whatsapp: "WhatsAppAPIProtocol",
        *,
        typing_pause: float = 3.0,
        read_delay: float = 2.0,
        available_delay: float = 2.0,
        min_presence_interval: float = 1.0,
        call_ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._whatsapp = whatsapp
        self._typing_pause = typing_pause
        self._read_delay = read_delay
        self._available_delay = available_delay
        self._min_presence_interval = min_presence_interval
        self._call_ttl = call_ttl
        self._clock = clock
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._last_presence: dict[str, float] = {}
        self._pending_reads: dict[str, str] = {}
        self._recent_calls: dict[str, float] = {}

    @property
    def pending(self) -> int:
        return len(self._timers)

    def debounce(self, key: str, delay: float, factory: TaskFactory) -> None:
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._timers.pop(key, None)
            self._queue.enqueue(factory, name=key)

        self._timers[key] = loop.call_later(max(0.0, delay), fire)

    async def typing(self, chat_id: str) -> None:
        """Send ``composing`` now and ``paused`` once the chat goes quiet."""

        now = self._clock()
        last = self._last_presence.get(chat_id)
        if last is None or now - last >= self._min_presence_interval:
            self._last_presence[chat_id] = now
            await self._whatsapp.send_presence(chat_id, "composing")

        async def pause() -> None:
            await self._whatsapp.send_presence(chat_id, "paused")

        self.debounce(f"typing:{chat_id}", self._typing_pause, pause)

    def mark_available(self) -> None:
        async def available() -> None:
            await self._whatsapp.send_presence(None, "available")

        self.debounce("presence:available", self._available_delay, available)

    def queue_read(self, chat_id: str, message_id: str) -> None:
        """Batch read receipts per chat; only the newest message is acknowledged."""

        self._pending_reads[chat_id] = message_id

        async def flush() -> None:
            latest = self._pending_reads.pop(chat_id, None)
            if latest is None:
                return
            logger.debug("Отмечен как прочитанный чат %s до %s", chat_id, latest)
            await self._whatsapp.read_chat(chat_id, latest)

        self.debounce(f"read:{chat_id}", self._read_delay, flush)

    def seen_call(self, caller: str, call_id: str) -> bool:
        """Return ``True`` when the same call was already reported recently."""

        now = self._clock()
        for key, expires in list(self._recent_calls.items()):
            if expires <= now:
                del self._recent_calls[key]
        key = f"{caller}_{call_id}"
        if key in self._recent_calls:
            return True
        self._recent_calls[key] = now + self._call_ttl
        return False

    def forget_call(self, caller: str, call_id: str) -> None:
        self._recent_calls.pop(f"{caller}_{call_id}", None)

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._pending_reads.clear()
        self._last_presence.clear()
        self._recent_calls.clear()
