"""Single-consumer FIFO queue that serializes relay work."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .config import OverflowPolicy
from .errors import TransientPlatformError

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[None]]
DropCallback = Callable[[], Awaitable[None]]


@dataclass(slots=True)
class QueuedTask:
    name: str
    factory: TaskFactory
    on_drop: DropCallback | None = None


class OrderedTaskQueue:
    """Bounded queue consumed by exactly one coroutine.

    Producers call :meth:`enqueue` and never wait. Tasks run one after another
    in arrival order, each under ``task_timeout``. A timeout or
    :class:`TransientPlatformError` retries the task in place with exponential
    backoff, so later tasks never overtake it; after ``max_retries`` retries
    the task is dropped and its ``on_drop`` callback is awaited.
    """

    def __init__(
        self,
        *,
        max_size: int = 1000,
        policy: OverflowPolicy = OverflowPolicy.REJECT,
        task_timeout: float = 60.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self._queue: asyncio.Queue[QueuedTask] = asyncio.Queue(maxsize=max(1, max_size))
        self._policy = policy
        self._task_timeout = task_timeout
        self._max_retries = max(0, max_retries)
        self._retry_delay = max(0.0, retry_delay)
        self._timers: set[asyncio.TimerHandle] = set()
        self._running = False
        self.dropped = 0
        self.processed = 0
        self.failed = 0

    @property
    def size(self) -> int:
        return self._queue.qsize()

    @property
    def full(self) -> bool:
        return self._queue.full()

    @property
    def running(self) -> bool:
        return self._running

    def enqueue(
        self,
        factory: TaskFactory,
        *,
        name: str = "task",
        on_drop: DropCallback | None = None,
    ) -> bool:
        """Append a task; returns ``False`` when the queue rejected it."""

        task = QueuedTask(name=name, factory=factory, on_drop=on_drop)
        try:
            self._queue.put_nowait(task)
            return True
        except asyncio.QueueFull:
            pass
        if self._policy is OverflowPolicy.DROP_OLDEST:
            oldest = self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning("Очередь переполнена, отброшена задача %s", oldest.name)
            self._queue.put_nowait(task)
            return True
        self.dropped += 1
        logger.warning("Очередь переполнена, задача %s отклонена", name)
        return False

    def enqueue_later(
        self,
        delay: float,
        factory: TaskFactory,
        *,
        name: str = "deferred",
    ) -> asyncio.TimerHandle:
        """Put ``factory`` on the queue after ``delay`` seconds."""

        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def fire() -> None:
            self._timers.discard(handle)
            self.enqueue(factory, name=name)

        handle = loop.call_later(max(0.0, delay), fire)
        self._timers.add(handle)
        return handle

    async def join(self) -> None:
        await self._queue.join()

    async def run(self) -> None:
        self._running = True
        try:
            while True:
                task = await self._queue.get()
                try:
                    await self._execute(task)
                finally:
                    self._queue.task_done()
        finally:
            self._running = False

    def stop(self) -> None:
        """Cancel pending deferred tasks and drop everything still queued."""

        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()

    async def _execute(self, task: QueuedTask) -> None:
        attempt = 0
        while True:
            try:
                await asyncio.wait_for(task.factory(), timeout=self._task_timeout)
            except asyncio.CancelledError:
                raise
            except (TransientPlatformError, asyncio.TimeoutError) as exc:
                if attempt >= self._max_retries:
                    self.failed += 1
                    logger.error(
                        "Задача %s отброшена после %d попыток: %s",
                        task.name,
                        attempt + 1,
                        exc or type(exc).__name__,
                    )
                    await self._run_drop_callback(task)
                    return
                delay = self._retry_delay * (2**attempt)
                retry_after = getattr(exc, "retry_after", None)
                if retry_after:
                    delay = max(delay, float(retry_after))
                attempt += 1
                logger.warning(
                    "Временная ошибка в задаче %s, повтор %d через %.1f с",
                    task.name,
                    attempt,
                    delay,
                )
                await asyncio.sleep(delay)
            except Exception:
                self.failed += 1
                logger.exception("Ошибка при выполнении задачи %s", task.name)
                return
            else:
                self.processed += 1
                return

    async def _run_drop_callback(self, task: QueuedTask) -> None:
        if task.on_drop is None:
            return
        try:
            await task.on_drop()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Ошибка обработчика отброшенной задачи %s", task.name)

