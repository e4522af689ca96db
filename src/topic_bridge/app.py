"""Application bootstrap for the WhatsApp ↔ Telegram bridge."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

import aiohttp

from .bridge import BridgeEngine
from .config import BridgeSettings, OverflowPolicy, load_settings
from .errors import PlatformError, QueueFullError, TransientPlatformError
from .mapping_store import MappingStore
from .telegram import TelegramAPI, TelegramController
from .utils import RateLimiter
from .whatsapp import WhatsAppAPI, parse_notification

logger = logging.getLogger(__name__)

_BACKPRESSURE_DELAY = 1.0
_LISTENER_ERROR_DELAY = 5.0


class BridgeApp:
    """Ties the engine to both platform clients and keeps its loops alive."""

    def __init__(
        self,
        *,
        db_path: Path,
        telegram_token: str | None = None,
        telegram_chat_id: str | None = None,
        owner_id: str | None = None,
        whatsapp_instance: str | None = None,
        whatsapp_token: str | None = None,
        whatsapp_api_url: str | None = None,
    ):
        self._store = MappingStore(db_path)
        try:
            self._settings: BridgeSettings = load_settings(
                self._store,
                telegram_token=telegram_token,
                telegram_chat_id=telegram_chat_id,
                owner_id=owner_id,
                whatsapp_instance=whatsapp_instance,
                whatsapp_token=whatsapp_token,
                whatsapp_api_url=whatsapp_api_url,
            )
        except Exception:
            self._store.close()
            raise

    async def run(self) -> None:
        settings = self._settings
        async with aiohttp.ClientSession() as session:
            telegram_api = TelegramAPI(
                settings.telegram_token,
                session,
                rate_limiter=RateLimiter(settings.telegram_rate),
            )
            whatsapp_api = WhatsAppAPI(
                session,
                api_url=settings.whatsapp_api_url,
                instance_id=settings.whatsapp_instance,
                token=settings.whatsapp_token,
            )
            engine = BridgeEngine(settings, self._store, telegram_api, whatsapp_api)
            engine.start()
            controller = TelegramController(telegram_api, self._store, engine)
            engine.queue.enqueue(engine.announce_startup, name="startup")

            tasks = [
                asyncio.create_task(
                    self._supervise("relay-queue", engine.queue.run),
                    name="relay-queue-supervisor",
                ),
                asyncio.create_task(
                    self._supervise("telegram-controller", controller.run),
                    name="telegram-controller-supervisor",
                ),
                asyncio.create_task(
                    self._supervise(
                        "whatsapp-listener", lambda: self._listen(whatsapp_api, engine)
                    ),
                    name="whatsapp-listener-supervisor",
                ),
                asyncio.create_task(
                    self._supervise("contact-sync", lambda: self._sync_loop(engine)),
                    name="contact-sync-supervisor",
                ),
            ]
            try:
                await asyncio.gather(*tasks)
            finally:
                controller.stop()
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                await engine.shutdown()
                self._store.close()

    async def _listen(self, whatsapp_api: WhatsAppAPI, engine: BridgeEngine) -> None:
        reject_when_full = self._settings.queue_policy is OverflowPolicy.REJECT
        while True:
            if reject_when_full and engine.queue.full:
                # unacknowledged notifications stay on the gateway
                await asyncio.sleep(_BACKPRESSURE_DELAY)
                continue
            try:
                notification = await whatsapp_api.receive_notification()
            except TransientPlatformError as exc:
                logger.warning("Не удалось получить уведомление WhatsApp: %s", exc)
                await asyncio.sleep(_LISTENER_ERROR_DELAY)
                continue
            if notification is None:
                continue
            receipt_id = int(notification["receiptId"])
            body = notification.get("body") or {}
            try:
                event = parse_notification(body)
            except (KeyError, TypeError, ValueError):
                logger.exception("Некорректное уведомление WhatsApp %s", receipt_id)
                event = None
            if event is not None:
                try:
                    engine.submit_whatsapp(event)
                except QueueFullError:
                    # left unacknowledged, the gateway hands it out again
                    logger.warning(
                        "Очередь занята, уведомление %s будет получено повторно", receipt_id
                    )
                    await asyncio.sleep(_BACKPRESSURE_DELAY)
                    continue
            await whatsapp_api.delete_notification(receipt_id)

    async def _sync_loop(self, engine: BridgeEngine) -> None:
        async def sync() -> None:
            try:
                await engine.sync_contacts()
            except TransientPlatformError:
                raise
            except PlatformError as exc:
                logger.warning("Синхронизация контактов не удалась: %s", exc)

        while True:
            engine.queue.enqueue(sync, name="contact-sync")
            await asyncio.sleep(self._settings.contacts_sync_interval)

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Задача %s остановлена", name)
                raise
            except Exception:
                logger.exception("Задача %s завершилась с ошибкой", name)
            else:
                logger.warning("Задача %s завершилась неожиданно, будет перезапущена", name)
            await asyncio.sleep(retry_delay)
