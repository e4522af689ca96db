"""The bridge engine: producers, relay flows and admin operations."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

from .access import AccessGate, GateDecision
from .config import BridgeSettings
from .crossref import CrossReferenceIndex, RevokeStatus
from .errors import AuthorizationError, NotFoundError, PlatformError, QueueFullError
from .formatting import (
    SPOILER_PREFIX,
    call_notice,
    compose_html,
    contains_mention_all,
    mention_all_notice,
    mention_all_text,
    outgoing_prefix,
    quote_block,
    revoked_notice,
    sender_prefix,
    status_header,
    whatsapp_to_html,
)
from .mapping_store import MappingStore
from .media import MediaTranscoder, TranscoderProtocol
from .models import (
    CallEvent,
    ContactMapping,
    ContentVariant,
    Destination,
    EphemeralSetting,
    GroupUpdateEvent,
    InboundEvent,
    Platform,
    Reaction,
    RecordType,
    RemoteKey,
    UserMapping,
)
from .presence import PresenceBatcher
from .routing import MessageRouter, RelayResult, build_router
from .state import BridgeState
from .task_queue import OrderedTaskQueue
from .telegram import parse_message
from .topics import TopicLifecycleManager
from .utils import (
    CALL_BROADCAST,
    SPECIAL_THREADS,
    STATUS_BROADCAST,
    is_group_jid,
    is_valid_contact_name,
    jid_from_phone,
    phone_from_jid,
    resolve_timezone,
)

if TYPE_CHECKING:
    from .telegram import TelegramAPIProtocol
    from .whatsapp import WhatsAppAPIProtocol, WhatsAppEvent

logger = logging.getLogger(__name__)

SUCCESS_REACTION = "👍"
FAILURE_REACTION = "👎"
BUSY_REACTION = "😴"
REVOKE_PREFIX = "revoke:"


class BridgeEngine:
    """One bridge instance relaying WhatsApp chats into Telegram forum topics.

    Producers (``submit_*``) only validate and enqueue; every relay runs on
    the single consumer of :class:`OrderedTaskQueue`.
    """

    def __init__(
        self,
        settings: BridgeSettings,
        store: MappingStore,
        telegram: "TelegramAPIProtocol",
        whatsapp: "WhatsAppAPIProtocol",
        *,
        transcoder: TranscoderProtocol | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._store = store
        self._telegram = telegram
        self._whatsapp = whatsapp
        self._features = settings.features
        self._zone = resolve_timezone(settings.timezone)
        self.state = BridgeState()
        self._gate = AccessGate(
            settings.owner_id, rate_limit=settings.rate_limit, store=store, clock=clock
        )
        self.crossref = CrossReferenceIndex(store, max_entries=settings.crossref_max_entries)
        self.queue = OrderedTaskQueue(
            max_size=settings.queue_max_size,
            policy=settings.queue_policy,
            task_timeout=settings.task_timeout,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
        )
        self.topics = TopicLifecycleManager(
            telegram,
            whatsapp,
            store,
            self.state,
            chat_id=settings.telegram_chat_id,
            verify_ttl=settings.topic_verify_ttl,
            features=settings.features,
            zone=self._zone,
            clock=clock,
        )
        self.presence = PresenceBatcher(self.queue, whatsapp, clock=clock)
        self.router: MessageRouter = build_router(
            telegram, whatsapp, self.crossref, transcoder or MediaTranscoder()
        )
        self._signals: set[asyncio.Task[None]] = set()
        self._last_sync: datetime | None = None

    # ------------------------------------------------------------------
    # BridgeCommands
    # ------------------------------------------------------------------
    @property
    def gate(self) -> AccessGate:
        return self._gate

    @property
    def forum_chat_id(self) -> int:
        return self._settings.telegram_chat_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        records = self._store.load()
        links = self.crossref.load()
        topics = self.topics.load()
        logger.info(
            "Мост запущен: записей %s, тем %s, связей сообщений %s", records, topics, links
        )

    async def announce_startup(self) -> None:
        """Verify known topics, warm caches and greet the owner."""

        await self.topics.recreate_missing()
        await self.topics.sync_participants()
        if self._features.presence:
            self.presence.mark_available()
        text = "\n".join(
            [
                "🚀 <b>Мост WhatsApp ↔ Telegram запущен</b>",
                "",
                f"• Тем: <b>{self._store.count(RecordType.CHAT)}</b>",
                f"• Контактов: <b>{self._store.count(RecordType.CONTACT)}</b>",
                f"• Пользователей: <b>{self._store.count(RecordType.USER)}</b>",
            ]
        )
        try:
            await self._telegram.send_message(self._settings.owner_id, text)
        except PlatformError as exc:
            logger.warning("Не удалось отправить уведомление владельцу: %s", exc)

    async def shutdown(self) -> None:
        self.presence.cancel_all()
        self.queue.stop()
        for task in list(self._signals):
            task.cancel()
        if self._signals:
            await asyncio.gather(*self._signals, return_exceptions=True)
        self._signals.clear()
        self.state.clear()
        logger.info("Мост остановлен")

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------
    def _admit(self, user_id: int, action: str) -> None:
        decision = self._gate.admit(user_id, action)
        if decision is not GateDecision.ALLOWED:
            raise AuthorizationError(user_id, decision.value)

    def _spawn(self, factory: Callable[[], Awaitable[None]]) -> None:
        task = asyncio.get_running_loop().create_task(factory())
        self._signals.add(task)
        task.add_done_callback(self._signals.discard)

    def submit_whatsapp(self, event: "WhatsAppEvent") -> bool:
        """Queue one gateway event; ``False`` means it was intentionally skipped.

        Raises :class:`QueueFullError` when the queue rejected the task, so
        the caller can leave the notification unacknowledged.
        """

        if isinstance(event, CallEvent):
            if not self._features.call_logs or self.presence.seen_call(event.caller, event.call_id):
                return False
            if not self.queue.enqueue(
                lambda: self._relay_call(event), name=f"call:{event.call_id}"
            ):
                self.presence.forget_call(event.caller, event.call_id)
                raise QueueFullError(f"call:{event.call_id}")
            return True
        if isinstance(event, GroupUpdateEvent):
            if not self.queue.enqueue(
                lambda: self._refresh_participants(event.group_id),
                name=f"group:{event.group_id}",
            ):
                raise QueueFullError(f"group:{event.group_id}")
            self.topics.forget_participants(event.group_id)
            return True
        if event.chat_id == STATUS_BROADCAST and (not self._features.status_sync or event.from_me):
            return False
        if not self.queue.enqueue(
            lambda: self._relay_whatsapp(event), name=f"wa:{event.message_id}"
        ):
            raise QueueFullError(f"wa:{event.message_id}")
        # counted once per accepted message, retries of the relay do not touch it
        self._observe_sender(event)
        return True

    def submit_telegram_message(self, message: Mapping[str, Any]) -> None:
        sender = message.get("from") or {}
        if sender.get("is_bot"):
            return
        user_id = int(sender.get("id", 0))
        thread_id = message.get("message_thread_id")
        try:
            self._admit(user_id, "message")
        except AuthorizationError as exc:
            if exc.reason == GateDecision.RATE_LIMITED.value:
                self._spawn(lambda: self._rate_limit_notice(thread_id, message.get("message_id")))
            return
        event = parse_message(message)
        if event is None:
            return

        async def on_drop() -> None:
            await self._react(event, FAILURE_REACTION)

        accepted = self.queue.enqueue(
            lambda: self._relay_telegram(event),
            name=f"tg:{event.message_id}",
            on_drop=on_drop,
        )
        if not accepted:
            self._spawn(lambda: self._react(event, BUSY_REACTION))

    def submit_telegram_reaction(self, reaction: Mapping[str, Any]) -> None:
        chat = reaction.get("chat") or {}
        user = reaction.get("user") or {}
        if int(chat.get("id", 0)) != self.forum_chat_id or not user or user.get("is_bot"):
            return
        try:
            self._admit(int(user.get("id", 0)), "reaction")
        except AuthorizationError:
            return
        emoji = ""
        for item in reaction.get("new_reaction") or []:
            if item.get("type") == "emoji":
                emoji = str(item.get("emoji") or "")
                break
        event = InboundEvent(
            platform=Platform.TELEGRAM,
            chat_id=str(chat.get("id")),
            message_id=f"reaction:{reaction.get('message_id')}",
            sender_id=str(user.get("id")),
            reaction=Reaction(target_message_id=str(reaction.get("message_id")), emoji=emoji),
        )
        self.queue.enqueue(
            lambda: self._relay_telegram_reaction(event), name=event.message_id
        )

    def submit_callback(self, callback: Mapping[str, Any]) -> None:
        callback_id = str(callback.get("id") or "")
        user_id = int((callback.get("from") or {}).get("id", 0))
        data = str(callback.get("data") or "")
        try:
            self._admit(user_id, "callback")
        except AuthorizationError as exc:
            text = (
                "⏳ Слишком много запросов, попробуйте позже."
                if exc.reason == GateDecision.RATE_LIMITED.value
                else "⛔ Нет доступа."
            )
            self._spawn(lambda: self._telegram.answer_callback_query(callback_id, text))
            return
        if not data.startswith(REVOKE_PREFIX) or not data[len(REVOKE_PREFIX):].isdigit():
            self._spawn(
                lambda: self._telegram.answer_callback_query(callback_id, "Неизвестное действие.")
            )
            return
        local_id = int(data[len(REVOKE_PREFIX):])
        button_id = (callback.get("message") or {}).get("message_id")
        accepted = self.queue.enqueue(
            lambda: self._revoke(callback_id, local_id, button_id), name=f"revoke:{local_id}"
        )
        if not accepted:
            self._spawn(
                lambda: self._telegram.answer_callback_query(
                    callback_id, "Мост занят, попробуйте позже."
                )
            )

    # ------------------------------------------------------------------
    # WhatsApp → Telegram
    # ------------------------------------------------------------------
    async def _relay_whatsapp(self, event: InboundEvent) -> None:
        thread_key = event.chat_id
        # own phone messages, reactions and deletions never open a new topic
        opens_topic = not event.from_me and event.reaction is None and not event.revoked_id
        topic_id = await self.topics.get_or_create(thread_key, event, create=opens_topic)
        if topic_id is None:
            if opens_topic:
                logger.error(
                    "Нет темы для %s, сообщение %s не доставлено", thread_key, event.message_id
                )
            return

        destination = Destination(
            chat_id=str(self.forum_chat_id),
            thread_id=topic_id,
            reply_to=self._quoted_local(event),
        )
        body = self._inbound_body(event)
        try:
            result = await self.router.route(event, destination, body)
        except NotFoundError:
            logger.warning("Тема %s пропала во время пересылки, создаём заново", topic_id)
            self.topics.purge(thread_key)
            topic_id = await self.topics.get_or_create(thread_key, event)
            if topic_id is None:
                logger.error("Сообщение %s потеряно: тема не создана", event.message_id)
                return
            destination = Destination(chat_id=str(self.forum_chat_id), thread_id=topic_id)
            result = await self.router.route(event, destination, body)
        await self._after_inbound(event, topic_id, result)

    async def _after_inbound(self, event: InboundEvent, topic_id: int, result: RelayResult) -> None:
        if not result.delivered:
            return
        if result.message_id and result.variant not in {
            ContentVariant.REACTION,
            ContentVariant.REVOKE,
        }:
            # status replies are addressed to the author kept in ``participant``
            keeps_author = event.is_group or event.chat_id == STATUS_BROADCAST
            self.crossref.record(
                int(result.message_id),
                RemoteKey(
                    chat_id=event.chat_id,
                    message_id=event.message_id,
                    from_me=event.from_me,
                    participant=event.sender_id if keeps_author else None,
                ),
            )
        if event.from_me or event.chat_id in SPECIAL_THREADS:
            return
        if self._features.read_receipts:
            self.presence.queue_read(event.chat_id, event.message_id)
        if event.is_group and contains_mention_all(event.body):
            name = self._display_name(event.sender_id, event.sender_name)

            async def notify() -> None:
                await self._telegram.send_message(
                    self.forum_chat_id, mention_all_notice(name), message_thread_id=topic_id
                )

            self.queue.enqueue(notify, name=f"mention:{event.message_id}")

    def _inbound_body(self, event: InboundEvent) -> str:
        prefixes: list[str] = []
        if event.from_me:
            prefixes.append(outgoing_prefix())
        elif event.chat_id == STATUS_BROADCAST:
            prefixes.append(status_header(self._display_name(event.sender_id, event.sender_name)))
        elif event.is_group:
            prefixes.append(sender_prefix(self._display_name(event.sender_id, event.sender_name)))
        if event.quoted_text and self._quoted_local(event) is None:
            prefixes.append(quote_block(event.quoted_text))
        return compose_html(whatsapp_to_html(event.body), prefixes=prefixes)

    def _quoted_local(self, event: InboundEvent) -> str | None:
        if not event.quoted_id:
            return None
        local_id = self.crossref.resolve_remote(event.quoted_id)
        return str(local_id) if local_id is not None else None

    def _observe_sender(self, event: InboundEvent) -> None:
        if event.from_me or event.sender_id in SPECIAL_THREADS:
            return
        phone = phone_from_jid(event.sender_id)
        now = datetime.now(timezone.utc)
        existing = self._store.get(RecordType.USER, event.sender_id)
        user = (
            UserMapping.from_record(existing)
            if existing
            else UserMapping(external_user_id=event.sender_id, handle=phone, first_seen=now)
        )
        user.message_count += 1
        user.last_seen = now
        if event.sender_name:
            user.display_name = event.sender_name
        self._store.upsert(RecordType.USER, event.sender_id, user.to_record())

        name = event.sender_contact_name
        if is_valid_contact_name(name, phone):
            current = self._store.get(RecordType.CONTACT, phone)
            if current is None or current.get("display_name") != name:
                contact = ContactMapping(handle=phone, display_name=str(name).strip())
                self._store.upsert(RecordType.CONTACT, phone, contact.to_record())

    def _display_name(self, jid: str, fallback: str | None = None) -> str:
        phone = phone_from_jid(jid)
        contact = self._store.get(RecordType.CONTACT, phone)
        if contact and contact.get("display_name"):
            return str(contact["display_name"])
        user = self._store.get(RecordType.USER, jid)
        if user and user.get("display_name"):
            return str(user["display_name"])
        return fallback or f"+{phone}"

    async def _relay_call(self, event: CallEvent) -> None:
        name = self._display_name(event.caller)
        text = call_notice(
            name, phone_from_jid(event.caller), event.status, event.timestamp, self._zone
        )
        await self._send_service(CALL_BROADCAST, text)

    async def _send_service(self, thread_key: str, text: str) -> int | None:
        for _ in range(2):
            topic_id = await self.topics.get_or_create(thread_key)
            if topic_id is None:
                return None
            try:
                return await self._telegram.send_message(
                    self.forum_chat_id, text, message_thread_id=topic_id
                )
            except NotFoundError:
                self.topics.purge(thread_key)
        return None

    async def _refresh_participants(self, group_id: str) -> None:
        members = await self.topics.participants(group_id, refresh=True)
        logger.debug("Участники %s обновлены: %s", group_id, len(members))

    # ------------------------------------------------------------------
    # Telegram → WhatsApp
    # ------------------------------------------------------------------
    async def _relay_telegram(self, event: InboundEvent) -> None:
        thread_key = self.topics.find_thread(event.thread_id)
        if thread_key is None or thread_key == CALL_BROADCAST:
            logger.debug("Сообщение %s вне известных тем пропущено", event.message_id)
            return

        destination = Destination(chat_id=thread_key)
        quoted = (
            self.crossref.resolve_local(int(event.quoted_id))
            if event.quoted_id and event.quoted_id.isdigit()
            else None
        )
        if thread_key == STATUS_BROADCAST:
            author = quoted.participant if quoted is not None else None
            if not author:
                await self._telegram.send_message(
                    self.forum_chat_id,
                    "ℹ️ Ответьте на конкретный статус, чтобы написать его автору.",
                    message_thread_id=event.thread_id,
                    reply_to=int(event.message_id),
                )
                return
            destination.chat_id = author
        elif quoted is not None:
            destination.reply_to = quoted.message_id

        setting = self._ephemeral(destination.chat_id)
        if setting is not None and setting.enabled:
            destination.expiration = setting.timer_seconds
            destination.view_once = True
        if event.spoiler:
            destination.view_once = True

        body = event.body
        if event.spoiler and body:
            body = SPOILER_PREFIX + body
        if self._features.presence:
            try:
                await self.presence.typing(destination.chat_id)
            except PlatformError as exc:
                logger.debug("Статус набора не отправлен: %s", exc)

        result = await self.router.route(event, destination, body)
        if not result.delivered:
            if result.variant is not None:
                await self._react(event, FAILURE_REACTION)
            return
        if result.message_id:
            local_id = int(event.message_id)
            self.crossref.record(
                local_id,
                RemoteKey(chat_id=destination.chat_id, message_id=result.message_id, from_me=True),
            )
            await self._react(event, SUCCESS_REACTION)
            if self._features.revoke_buttons:
                await self._offer_revoke(event, local_id)
        if is_group_jid(destination.chat_id) and contains_mention_all(event.body):
            group_id = destination.chat_id
            self.queue.enqueue(
                lambda: self._mention_all(group_id), name=f"mention-all:{event.message_id}"
            )

    async def _relay_telegram_reaction(self, event: InboundEvent) -> None:
        result = await self.router.route(event, Destination(chat_id=""), "")
        if not result.delivered and event.reaction is not None:
            logger.info("Реакция на сообщение %s не передана", event.reaction.target_message_id)

    async def _react(self, event: InboundEvent, emoji: str) -> None:
        if not event.message_id.isdigit():
            return
        try:
            await self._telegram.set_reaction(self.forum_chat_id, int(event.message_id), emoji)
        except PlatformError as exc:
            logger.debug("Реакция %s не установлена: %s", emoji, exc)

    async def _offer_revoke(self, event: InboundEvent, local_id: int) -> None:
        markup = {
            "inline_keyboard": [
                [{"text": "🗑️ Отозвать", "callback_data": f"{REVOKE_PREFIX}{local_id}"}]
            ]
        }
        try:
            await self._telegram.send_message(
                self.forum_chat_id,
                "✅ Доставлено в WhatsApp",
                message_thread_id=event.thread_id,
                reply_to=local_id,
                reply_markup=markup,
            )
        except PlatformError as exc:
            logger.debug("Кнопка отзыва не отправлена: %s", exc)

    async def _mention_all(self, group_id: str) -> None:
        members = await self.topics.participants(group_id)
        phones = [phone_from_jid(member) for member in members]
        if not phones:
            logger.info("Нет участников для упоминания в %s", group_id)
            return
        await self._whatsapp.send_text(group_id, mention_all_text(phones))

    async def _revoke(self, callback_id: str, local_id: int, button_id: int | None) -> None:
        remote = self.crossref.resolve_local(local_id)
        if remote is None:
            status, _ = self.crossref.revoke(local_id)
        else:
            await self._whatsapp.delete_message(remote.chat_id, remote.message_id)
            status, _ = self.crossref.revoke(local_id)
        if status is RevokeStatus.REVOKED:
            answer = "🗑️ Сообщение отозвано."
            if button_id:
                try:
                    await self._telegram.edit_message_text(
                        self.forum_chat_id, int(button_id), revoked_notice()
                    )
                except PlatformError as exc:
                    logger.debug("Кнопка отзыва не обновлена: %s", exc)
        elif status is RevokeStatus.ALREADY_HANDLED:
            answer = "Сообщение уже отозвано."
        else:
            answer = "Сообщение не найдено."
        logger.info("Отзыв сообщения %s: %s", local_id, status.value)
        await self._telegram.answer_callback_query(callback_id, answer)

    async def _rate_limit_notice(self, thread_id: int | None, message_id: Any) -> None:
        try:
            await self._telegram.send_message(
                self.forum_chat_id,
                "⏳ Слишком много сообщений. Подождите немного и повторите.",
                message_thread_id=thread_id,
                reply_to=int(message_id) if message_id else None,
            )
        except PlatformError as exc:
            logger.debug("Уведомление о лимите не отправлено: %s", exc)

    def _ephemeral(self, chat_id: str) -> EphemeralSetting | None:
        data = self._store.get(RecordType.EPHEMERAL, chat_id)
        return EphemeralSetting.from_record(data) if data else None

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------
    async def sync_contacts(self) -> int:
        """Pull the gateway contact list; returns the number of changed names."""

        contacts = await self._whatsapp.get_contacts()
        changed = 0
        for item in contacts:
            jid = str(item.get("id") or "")
            if not jid or is_group_jid(jid) or item.get("type") == "group":
                continue
            phone = phone_from_jid(jid)
            name = str(item.get("contactName") or item.get("name") or "").strip()
            if not is_valid_contact_name(name, phone):
                continue
            current = self._store.get(RecordType.CONTACT, phone)
            if current is not None and current.get("display_name") == name:
                continue
            self._store.upsert(
                RecordType.CONTACT, phone, ContactMapping(handle=phone, display_name=name).to_record()
            )
            changed += 1
        self._last_sync = datetime.now(timezone.utc)
        logger.info("Синхронизация контактов: получено %s, изменено %s", len(contacts), changed)
        await self.topics.rename_topics()
        return changed

    async def update_topic_names(self) -> int:
        return await self.topics.rename_topics()

    async def send_direct(self, number: str, text: str) -> bool:
        chat_id = jid_from_phone(number)
        if chat_id == "@c.us":
            return False
        setting = self._ephemeral(chat_id)
        try:
            await self._whatsapp.send_text(
                chat_id,
                text,
                expiration=setting.timer_seconds if setting and setting.enabled else None,
            )
        except PlatformError as exc:
            logger.warning("Не удалось отправить сообщение %s: %s", chat_id, exc)
            return False
        return True

    def set_ephemeral(self, number: str, enabled: bool, timer_seconds: int) -> None:
        chat_id = jid_from_phone(number)
        setting = EphemeralSetting(thread_id=chat_id, enabled=enabled, timer_seconds=timer_seconds)
        self._store.upsert(RecordType.EPHEMERAL, chat_id, setting.to_record())
        logger.info("Исчезающие сообщения для %s: %s", chat_id, enabled)

    def status_rows(self) -> list[tuple[str, str]]:
        features = [name for name, enabled in self._feature_items() if enabled]
        last_sync = (
            self._last_sync.astimezone(self._zone).strftime("%d.%m.%Y %H:%M")
            if self._last_sync
            else "—"
        )
        return [
            ("Темы", str(self._store.count(RecordType.CHAT))),
            ("Контакты", str(self._store.count(RecordType.CONTACT))),
            ("Пользователи", str(self._store.count(RecordType.USER))),
            ("Связи сообщений", str(len(self.crossref))),
            ("Очередь", str(self.queue.size)),
            ("Обработано", str(self.queue.processed)),
            ("Ошибок", str(self.queue.failed)),
            ("Отброшено", str(self.queue.dropped)),
            ("Синхронизация контактов", last_sync),
            ("Функции", ", ".join(features) or "—"),
        ]

    def _feature_items(self) -> list[tuple[str, bool]]:
        flags = self._features
        return [
            ("read_receipts", flags.read_receipts),
            ("presence", flags.presence),
            ("status_sync", flags.status_sync),
            ("call_logs", flags.call_logs),
            ("profile_pictures", flags.profile_pictures),
            ("revoke_buttons", flags.revoke_buttons),
            ("pin_welcome", flags.pin_welcome),
        ]
