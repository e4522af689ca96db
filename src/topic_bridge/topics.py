"""Forum topic lifecycle: get-or-create, verification and recreation."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Any, Callable, Mapping

from .config import FeatureFlags
from .errors import NotFoundError, PlatformError
from .formatting import IdentitySnapshot, welcome_message
from .mapping_store import MappingStore
from .models import InboundEvent, RecordType, ThreadMapping, UserMapping
from .state import BridgeState, TopicState
from .utils import (
    CALL_BROADCAST,
    STATUS_BROADCAST,
    KeyedLock,
    is_group_jid,
    is_valid_contact_name,
    phone_from_jid,
)

if TYPE_CHECKING:
    from .telegram import TelegramAPIProtocol
    from .whatsapp import WhatsAppAPIProtocol

logger = logging.getLogger(__name__)

CHECK_TEXT = "🔍"
GROUP_COLOR = 0x6FB9F0
CONTACT_COLOR = 0x7ABA3C
SPECIAL_TOPICS: dict[str, tuple[str, int]] = {
    STATUS_BROADCAST: ("📊 Статусы", 0xFF6B35),
    CALL_BROADCAST: ("📞 Звонки", 0xFF4757),
}


def _moment(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


class TopicLifecycleManager:
    """Owns every :class:`ThreadMapping`.

    A thread moves ``ABSENT → CREATING → ACTIVE``; a failed existence probe
    marks it ``VERIFY_FAILED``, purges the mapping and falls through to
    creation again. Creation for one thread is serialized by a per-key lock,
    so concurrent first messages produce a single topic.
    """

    def __init__(
        self,
        telegram: "TelegramAPIProtocol",
        whatsapp: "WhatsAppAPIProtocol",
        store: MappingStore,
        state: BridgeState,
        *,
        chat_id: int,
        verify_ttl: float = 60.0,
        features: FeatureFlags | None = None,
        zone: tzinfo = timezone.utc,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._telegram = telegram
        self._whatsapp = whatsapp
        self._store = store
        self._state = state
        self._chat_id = chat_id
        self._verify_ttl = verify_ttl
        self._features = features or FeatureFlags()
        self._zone = zone
        self._clock = clock
        self._locks = KeyedLock()
        self._by_topic: dict[int, str] = {}
        self.created = 0

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def load(self) -> int:
        self._by_topic.clear()
        for key, data in self._store.items(RecordType.CHAT):
            try:
                mapping = ThreadMapping.from_record(data)
            except (KeyError, TypeError, ValueError):
                logger.warning("Повреждённая привязка темы %s пропущена", key)
                continue
            self._by_topic[mapping.topic_id] = key
            self._state.topic_states[key] = TopicState.ACTIVE
            if mapping.title:
                self._state.topic_titles[key] = mapping.title
        return len(self._by_topic)

    def state(self, thread_key: str) -> TopicState:
        return self._state.topic_states.get(thread_key, TopicState.ABSENT)

    def get_mapping(self, thread_key: str) -> ThreadMapping | None:
        data = self._store.get(RecordType.CHAT, thread_key)
        if data is None:
            return None
        return ThreadMapping.from_record(data)

    def find_thread(self, topic_id: int | None) -> str | None:
        if topic_id is None:
            return None
        return self._by_topic.get(topic_id)

    def thread_keys(self) -> list[str]:
        return [key for key, _ in self._store.items(RecordType.CHAT)]

    def contact_name(self, thread_key: str) -> str | None:
        phone = phone_from_jid(thread_key)
        data = self._store.get(RecordType.CONTACT, phone)
        if data and is_valid_contact_name(data.get("display_name"), phone):
            return str(data["display_name"])
        return None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    async def get_or_create(
        self, thread_key: str, event: InboundEvent | None = None, *, create: bool = True
    ) -> int | None:
        """Return the topic for ``thread_key``, creating it when needed.

        ``None`` means the topic could not be created (or ``create`` is off
        and no live mapping exists).
        """

        async with self._locks.lock(thread_key):
            mapping = self.get_mapping(thread_key)
            if mapping is not None:
                if await self._verify(thread_key, mapping):
                    self._state.topic_states[thread_key] = TopicState.ACTIVE
                    mapping.last_activity = datetime.now(timezone.utc)
                    self._store.upsert(RecordType.CHAT, thread_key, mapping.to_record())
                    return mapping.topic_id
                self._state.topic_states[thread_key] = TopicState.VERIFY_FAILED
                logger.warning(
                    "Тема %s для %s не найдена, создаём заново", mapping.topic_id, thread_key
                )
                self.purge(thread_key)
            if not create:
                return None
            return await self._create(thread_key, event)

    async def _verify(self, thread_key: str, mapping: ThreadMapping) -> bool:
        checked = self._state.verified_at.get(thread_key)
        if checked is not None and self._clock() - checked < self._verify_ttl:
            return True
        try:
            probe_id = await self._telegram.send_message(
                self._chat_id, CHECK_TEXT, parse_mode=None, message_thread_id=mapping.topic_id
            )
        except NotFoundError:
            return False
        try:
            await self._telegram.delete_message(self._chat_id, probe_id)
        except PlatformError as exc:
            logger.debug("Не удалось удалить проверочное сообщение: %s", exc)
        self._state.verified_at[thread_key] = self._clock()
        return True

    def invalidate(self, thread_key: str) -> None:
        """Forget the last successful probe so the next lookup re-checks the topic."""

        self._state.verified_at.pop(thread_key, None)

    def purge(self, thread_key: str) -> None:
        data = self._store.get(RecordType.CHAT, thread_key)
        if data is not None:
            self._by_topic.pop(int(data.get("topic_id", 0)), None)
        self._store.delete(RecordType.CHAT, thread_key)
        self._state.verified_at.pop(thread_key, None)
        self._state.topic_titles.pop(thread_key, None)
        self._state.topic_states[thread_key] = TopicState.ABSENT

    async def _create(self, thread_key: str, event: InboundEvent | None) -> int | None:
        self._state.topic_states[thread_key] = TopicState.CREATING
        name, color, group_data = await self._resolve_name(thread_key, event)
        try:
            topic_id = await self._telegram.create_forum_topic(
                self._chat_id, name, icon_color=color
            )
        except asyncio.CancelledError:
            raise
        except PlatformError:
            logger.exception("Не удалось создать тему для %s", thread_key)
            self._state.topic_states[thread_key] = TopicState.ABSENT
            return None

        mapping = ThreadMapping(external_thread_id=thread_key, topic_id=topic_id, title=name)
        self._store.upsert(RecordType.CHAT, thread_key, mapping.to_record())
        self._by_topic[topic_id] = thread_key
        self._state.topic_states[thread_key] = TopicState.ACTIVE
        self._state.verified_at[thread_key] = self._clock()
        self._state.topic_titles[thread_key] = name
        self.created += 1
        logger.info("Создана тема %s «%s» для %s", topic_id, name, thread_key)

        if thread_key not in SPECIAL_TOPICS:
            await self._introduce(thread_key, topic_id, name, event, group_data)
        return topic_id

    async def _resolve_name(
        self, thread_key: str, event: InboundEvent | None
    ) -> tuple[str, int, Mapping[str, Any] | None]:
        special = SPECIAL_TOPICS.get(thread_key)
        if special is not None:
            return special[0], special[1], None

        phone = phone_from_jid(thread_key)
        if is_group_jid(thread_key):
            group_data = await self._group_data(thread_key)
            subject = (event.chat_name if event else None) or (
                str(group_data.get("subject") or "") if group_data else ""
            )
            return subject or f"Группа {phone}", GROUP_COLOR, group_data

        name = self.contact_name(thread_key)
        if name is None and event is not None and not event.from_me:
            if is_valid_contact_name(event.sender_name, phone):
                name = event.sender_name
        return name or f"+{phone}", CONTACT_COLOR, None

    async def _group_data(self, group_id: str) -> Mapping[str, Any] | None:
        try:
            data = await self._whatsapp.get_group_data(group_id)
        except PlatformError as exc:
            logger.warning("Не удалось получить данные группы %s: %s", group_id, exc)
            return None
        self._remember_participants(group_id, data)
        return data

    async def _introduce(
        self,
        thread_key: str,
        topic_id: int,
        name: str,
        event: InboundEvent | None,
        group_data: Mapping[str, Any] | None,
    ) -> None:
        snapshot = await self._snapshot(thread_key, name, event, group_data)
        try:
            welcome_id = await self._telegram.send_message(
                self._chat_id,
                welcome_message(snapshot, self._zone),
                message_thread_id=topic_id,
            )
            if self._features.pin_welcome:
                await self._telegram.pin_message(self._chat_id, welcome_id)
        except PlatformError as exc:
            logger.warning("Приветственное сообщение для %s не отправлено: %s", thread_key, exc)
        if self._features.profile_pictures:
            await self._send_avatar(thread_key, topic_id)

    async def _snapshot(
        self,
        thread_key: str,
        name: str,
        event: InboundEvent | None,
        group_data: Mapping[str, Any] | None,
    ) -> IdentitySnapshot:
        if is_group_jid(thread_key):
            participants = self._state.participants.get(thread_key)
            return IdentitySnapshot(
                thread_id=thread_key,
                name=name,
                is_group=True,
                participants=len(participants) if participants is not None else None,
                created_at=_moment(group_data.get("creation")) if group_data else None,
            )
        about = None
        try:
            info = await self._whatsapp.get_contact_info(thread_key)
            about = str(info.get("description") or "") or None
        except PlatformError as exc:
            logger.debug("Нет сведений о контакте %s: %s", thread_key, exc)
        user = self._store.get(RecordType.USER, thread_key)
        first_seen = UserMapping.from_record(user).first_seen if user else None
        handle = event.sender_name if event is not None and not event.from_me else None
        return IdentitySnapshot(
            thread_id=thread_key,
            name=name,
            phone=phone_from_jid(thread_key),
            handle=handle,
            about=about,
            first_seen=first_seen or (event.timestamp if event else None),
        )

    async def _send_avatar(self, thread_key: str, topic_id: int) -> None:
        try:
            url = await self._whatsapp.get_avatar(thread_key)
            if url:
                await self._telegram.send_file(
                    "photo", self._chat_id, url, message_thread_id=topic_id
                )
        except PlatformError as exc:
            logger.debug("Аватар %s не отправлен: %s", thread_key, exc)

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------
    def _remember_participants(self, group_id: str, data: Mapping[str, Any]) -> None:
        raw = data.get("participants")
        if not isinstance(raw, list):
            return
        members = [
            str(item["id"]) for item in raw if isinstance(item, Mapping) and item.get("id")
        ]
        self._state.participants[group_id] = members

    async def participants(self, group_id: str, *, refresh: bool = False) -> list[str]:
        if refresh or group_id not in self._state.participants:
            await self._group_data(group_id)
        return list(self._state.participants.get(group_id, []))

    def forget_participants(self, group_id: str) -> None:
        self._state.participants.pop(group_id, None)

    async def sync_participants(self) -> int:
        """Refresh the participant cache of every mapped group."""

        refreshed = 0
        for key in self.thread_keys():
            if is_group_jid(key):
                await self._group_data(key)
                refreshed += 1
        return refreshed

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    async def rename_topics(self) -> int:
        """Rename direct-chat topics whose resolved contact name changed."""

        renamed = 0
        for key, data in self._store.items(RecordType.CHAT):
            if key in SPECIAL_TOPICS or is_group_jid(key):
                continue
            name = self.contact_name(key)
            if not name or self._state.topic_titles.get(key) == name:
                continue
            mapping = ThreadMapping.from_record(data)
            try:
                await self._telegram.edit_forum_topic(self._chat_id, mapping.topic_id, name)
            except NotFoundError:
                self.purge(key)
                continue
            except PlatformError as exc:
                logger.debug("Тема %s не переименована: %s", key, exc)
                self._state.topic_titles[key] = name
                continue
            self._state.topic_titles[key] = name
            mapping.title = name
            self._store.upsert(RecordType.CHAT, key, mapping.to_record())
            renamed += 1
        if renamed:
            logger.info("Переименовано тем: %s", renamed)
        return renamed

    async def recreate_missing(self) -> int:
        """Probe every mapped topic and recreate the ones that disappeared."""

        recreated = 0
        for key in self.thread_keys():
            before = self.get_mapping(key)
            self.invalidate(key)
            topic_id = await self.get_or_create(key)
            if before is not None and topic_id is not None and topic_id != before.topic_id:
                recreated += 1
        if recreated:
            logger.info("Восстановлено тем: %s", recreated)
        return recreated
