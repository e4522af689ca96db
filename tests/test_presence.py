from __future__ import annotations

import asyncio

from fakes import DummyWhatsApp

from topic_bridge.presence import PresenceBatcher
from topic_bridge.task_queue import OrderedTaskQueue


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_read_receipts_are_batched_per_chat() -> None:
    async def runner() -> None:
        queue = OrderedTaskQueue()
        whatsapp = DummyWhatsApp()
        batcher = PresenceBatcher(queue, whatsapp, read_delay=0.02)
        consumer = asyncio.create_task(queue.run())

        batcher.queue_read("a@c.us", "m1")
        batcher.queue_read("a@c.us", "m2")
        batcher.queue_read("b@c.us", "m3")
        assert batcher.pending == 2
        await asyncio.sleep(0.06)
        await queue.join()
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

        assert sorted(whatsapp.reads) == [("a@c.us", "m2"), ("b@c.us", "m3")]
        assert batcher.pending == 0

    asyncio.run(runner())


def test_typing_is_throttled_and_paused_once() -> None:
    async def runner() -> None:
        queue = OrderedTaskQueue()
        whatsapp = DummyWhatsApp()
        clock = FakeClock()
        batcher = PresenceBatcher(queue, whatsapp, typing_pause=0.02, clock=clock)
        consumer = asyncio.create_task(queue.run())

        await batcher.typing("a@c.us")
        clock.now += 0.5
        await batcher.typing("a@c.us")
        clock.now += 1.0
        await batcher.typing("a@c.us")
        await asyncio.sleep(0.06)
        await queue.join()
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

        assert whatsapp.presence == [
            ("a@c.us", "composing"),
            ("a@c.us", "composing"),
            ("a@c.us", "paused"),
        ]

    asyncio.run(runner())


def test_calls_are_deduplicated_for_ttl() -> None:
    clock = FakeClock()
    batcher = PresenceBatcher(OrderedTaskQueue(), DummyWhatsApp(), call_ttl=30, clock=clock)

    assert batcher.seen_call("1@c.us", "c1") is False
    assert batcher.seen_call("1@c.us", "c1") is True
    assert batcher.seen_call("1@c.us", "c2") is False
    clock.now += 31
    assert batcher.seen_call("1@c.us", "c1") is False


def test_cancel_all_drops_pending_timers() -> None:
    async def runner() -> None:
        queue = OrderedTaskQueue()
        whatsapp = DummyWhatsApp()
        batcher = PresenceBatcher(queue, whatsapp, read_delay=0.01)

        batcher.queue_read("a@c.us", "m1")
        batcher.cancel_all()
        await asyncio.sleep(0.03)

        assert queue.size == 0
        assert whatsapp.reads == []

    asyncio.run(runner())
