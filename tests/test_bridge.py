from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from fakes import DummyTelegram, DummyTranscoder, DummyWhatsApp

from topic_bridge.bridge import BUSY_REACTION, SUCCESS_REACTION, BridgeEngine
from topic_bridge.config import BridgeSettings, FeatureFlags
from topic_bridge.errors import TransientPlatformError
from topic_bridge.mapping_store import MappingStore
from topic_bridge.models import (
    CallEvent,
    ContactMapping,
    InboundEvent,
    MediaRef,
    Platform,
    RateLimitConfig,
    Reaction,
    RecordType,
)
from topic_bridge.utils import CALL_BROADCAST, STATUS_BROADCAST

FORUM = -100500
OWNER = 42
CONTACT = "79990001122@c.us"
GROUP = "123-456@g.us"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _engine(
    tmp_path: Path, clock: FakeClock | None = None, **overrides: Any
) -> tuple[BridgeEngine, DummyTelegram, DummyWhatsApp, MappingStore]:
    telegram = DummyTelegram()
    whatsapp = DummyWhatsApp()
    store = MappingStore(tmp_path / "db.sqlite")
    overrides.setdefault(
        "features", FeatureFlags(read_receipts=False, presence=False, profile_pictures=False)
    )
    settings = BridgeSettings(
        telegram_token="123:abc",
        telegram_chat_id=FORUM,
        owner_id=OWNER,
        whatsapp_instance="1101",
        whatsapp_token="secret",
        **overrides,
    )
    engine = BridgeEngine(
        settings,
        store,
        telegram,
        whatsapp,
        transcoder=DummyTranscoder(),
        clock=clock or FakeClock(),
    )
    engine.start()
    return engine, telegram, whatsapp, store


async def _drain(engine: BridgeEngine) -> None:
    consumer = asyncio.create_task(engine.queue.run())
    await engine.queue.join()
    consumer.cancel()
    await asyncio.gather(consumer, return_exceptions=True)
    if engine._signals:
        await asyncio.gather(*list(engine._signals), return_exceptions=True)


def _wa(chat_id: str = CONTACT, message_id: str = "WAM1", **kwargs: Any) -> InboundEvent:
    kwargs.setdefault("sender_id", chat_id)
    return InboundEvent(
        platform=Platform.WHATSAPP,
        chat_id=chat_id,
        message_id=message_id,
        **kwargs,
    )


def _tg(message_id: int, thread_id: int | None, text: str, *, user: int = OWNER, **extra: Any):
    message = {
        "message_id": message_id,
        "date": 1700000000,
        "chat": {"id": FORUM, "type": "supergroup", "is_forum": True},
        "from": {"id": user, "first_name": "Owner"},
        "message_thread_id": thread_id,
        "text": text,
    }
    message.update(extra)
    return message


def test_first_message_from_new_chat_opens_topic_and_relays_media(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, _, store = _engine(tmp_path)
        image = _wa(
            sender_name="Анна",
            photo=MediaRef(source="https://media/1.jpg", file_name="1.jpg"),
            caption="hi",
        )

        assert engine.submit_whatsapp(image)
        await _drain(engine)

        assert telegram.create_calls == 1
        assert store.count(RecordType.CHAT) == 1
        topic = engine.topics.find_thread(next(iter(telegram.topics)))
        assert topic == CONTACT
        sent = telegram.files[0]
        assert sent["kind"] == "photo"
        assert sent["caption"] == "hi"
        assert engine.crossref.resolve_remote("WAM1") == sent["id"]

        engine.submit_whatsapp(_wa(message_id="WAM2", text="again"))
        await _drain(engine)

        assert telegram.create_calls == 1
        assert telegram.texts(sent["thread_id"])[-1] == "again"
        assert store.get(RecordType.USER, CONTACT)["message_count"] == 2

    asyncio.run(runner())


def test_deleted_topic_is_recreated_once_without_losing_the_message(tmp_path: Path) -> None:
    async def runner() -> None:
        clock = FakeClock()
        engine, telegram, _, _ = _engine(tmp_path, clock=clock)
        engine.submit_whatsapp(_wa(text="first"))
        await _drain(engine)
        first_topic = next(iter(telegram.topics))

        telegram.deleted_topics.add(first_topic)
        clock.now += 600
        engine.submit_whatsapp(_wa(message_id="WAM2", text="second"))
        await _drain(engine)

        assert telegram.create_calls == 2
        second_topic = engine.topics.get_mapping(CONTACT).topic_id
        assert second_topic != first_topic
        assert telegram.texts(second_topic)[-1] == "second"

    asyncio.run(runner())


def test_topic_deleted_between_check_and_send_is_recreated(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, _, _ = _engine(tmp_path)
        engine.submit_whatsapp(_wa(text="first"))
        await _drain(engine)
        first_topic = next(iter(telegram.topics))

        # existence check is still cached, so the send itself hits the missing thread
        telegram.deleted_topics.add(first_topic)
        engine.submit_whatsapp(_wa(message_id="WAM2", text="second"))
        await _drain(engine)

        assert telegram.create_calls == 2
        second_topic = engine.topics.get_mapping(CONTACT).topic_id
        assert telegram.texts(second_topic).count("second") == 1

    asyncio.run(runner())


def test_own_phone_messages_do_not_open_topics(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, _, _ = _engine(tmp_path)

        engine.submit_whatsapp(_wa(text="from my phone", from_me=True))
        await _drain(engine)
        assert telegram.create_calls == 0

        engine.submit_whatsapp(_wa(message_id="WAM2", text="hello"))
        engine.submit_whatsapp(_wa(message_id="WAM3", text="reply", from_me=True))
        await _drain(engine)
        assert telegram.texts()[-1].startswith("📤 <b>Вы</b>:")
        assert telegram.texts()[-1].endswith("reply")

    asyncio.run(runner())


def test_telegram_reply_is_delivered_confirmed_and_revocable_once(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, _ = _engine(tmp_path)
        engine.submit_whatsapp(_wa(text="hello"))
        await _drain(engine)
        topic = engine.topics.get_mapping(CONTACT).topic_id

        engine.submit_telegram_message(_tg(5001, topic, "привет"))
        await _drain(engine)

        outgoing = whatsapp.sent[-1]
        assert outgoing["chat_id"] == CONTACT
        assert outgoing["text"] == "привет"
        assert (5001, SUCCESS_REACTION) in telegram.reactions
        assert engine.crossref.resolve_local(5001).message_id == outgoing["id"]
        button = telegram.messages[-1]
        assert button["reply_to"] == 5001
        callback_data = button["reply_markup"]["inline_keyboard"][0][0]["callback_data"]
        assert callback_data == "revoke:5001"

        for callback_id in ("cb1", "cb2"):
            engine.submit_callback(
                {
                    "id": callback_id,
                    "from": {"id": OWNER},
                    "data": callback_data,
                    "message": {"message_id": button["id"]},
                }
            )
            await _drain(engine)

        assert whatsapp.deleted == [(CONTACT, outgoing["id"])]
        assert telegram.callback_answers == [
            ("cb1", "🗑️ Сообщение отозвано."),
            ("cb2", "Сообщение уже отозвано."),
        ]
        assert telegram.edits == [(button["id"], "🗑️ Сообщение отозвано")]

    asyncio.run(runner())


def test_quoted_telegram_message_becomes_whatsapp_quote(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, _ = _engine(tmp_path)
        engine.submit_whatsapp(_wa(text="hello"))
        await _drain(engine)
        topic = engine.topics.get_mapping(CONTACT).topic_id
        relayed = telegram.messages[-1]["id"]

        engine.submit_telegram_message(
            _tg(5002, topic, "ответ", reply_to_message={"message_id": relayed, "text": "hello"})
        )
        await _drain(engine)

        assert whatsapp.sent[-1]["quoted_id"] == "WAM1"

    asyncio.run(runner())


def test_unauthorized_messages_are_dropped_silently(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, _ = _engine(tmp_path)
        engine.submit_whatsapp(_wa(text="hello"))
        await _drain(engine)
        topic = engine.topics.get_mapping(CONTACT).topic_id
        before = len(telegram.messages)

        engine.submit_telegram_message(_tg(6001, topic, "spam", user=999))
        await _drain(engine)

        assert whatsapp.sent == []
        assert len(telegram.messages) == before
        assert telegram.reactions == []

    asyncio.run(runner())


def test_rate_limited_sender_gets_a_notice(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, _ = _engine(
            tmp_path, rate_limit=RateLimitConfig(max_count=1, window_seconds=60)
        )
        engine.submit_whatsapp(_wa(text="hello"))
        await _drain(engine)
        topic = engine.topics.get_mapping(CONTACT).topic_id

        engine.submit_telegram_message(_tg(7001, topic, "one"))
        engine.submit_telegram_message(_tg(7002, topic, "two"))
        await _drain(engine)

        assert [item["text"] for item in whatsapp.sent] == ["one"]
        notices = [item for item in telegram.messages if item["text"].startswith("⏳")]
        assert [item["reply_to"] for item in notices] == [7002]

    asyncio.run(runner())


def test_full_queue_marks_message_busy(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, _, _ = _engine(tmp_path, queue_max_size=1)

        engine.submit_telegram_message(_tg(8001, 11, "one"))
        engine.submit_telegram_message(_tg(8002, 11, "two"))
        await asyncio.gather(*list(engine._signals))

        assert (8002, BUSY_REACTION) in telegram.reactions
        assert engine.queue.dropped == 1

    asyncio.run(runner())


def test_reactions_are_mirrored_both_ways(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, _ = _engine(tmp_path)
        engine.submit_whatsapp(_wa(text="hello", sender_name="Анна"))
        await _drain(engine)
        relayed = telegram.messages[-1]["id"]

        engine.submit_whatsapp(
            _wa(message_id="WAR1", sender_name="Анна", reaction=Reaction("WAM1", "❤️"))
        )
        engine.submit_telegram_reaction(
            {
                "chat": {"id": FORUM},
                "user": {"id": OWNER},
                "message_id": relayed,
                "new_reaction": [{"type": "emoji", "emoji": "🔥"}],
            }
        )
        await _drain(engine)

        notice = telegram.messages[-1]
        assert notice["reply_to"] == relayed
        assert notice["text"] == "💬 Анна отреагировал(а): ❤️"
        assert whatsapp.reactions == [(CONTACT, "WAM1", "🔥")]
        assert engine.crossref.resolve_remote("WAR1") is None

    asyncio.run(runner())


def test_whatsapp_deletion_marks_the_telegram_copy(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, _, _ = _engine(tmp_path)
        engine.submit_whatsapp(_wa(text="oops"))
        await _drain(engine)
        relayed = telegram.messages[-1]["id"]

        engine.submit_whatsapp(_wa(message_id="WAD1", revoked_id="WAM1"))
        engine.submit_whatsapp(_wa(message_id="WAD2", revoked_id="WAM1"))
        await _drain(engine)

        notices = [item for item in telegram.messages if item["text"] == "🗑️ Сообщение отозвано"]
        assert len(notices) == 1
        assert notices[0]["reply_to"] == relayed

    asyncio.run(runner())


def test_mention_all_in_both_directions(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, _ = _engine(tmp_path)
        whatsapp.groups[GROUP] = {
            "subject": "Семья",
            "participants": [{"id": "111@c.us"}, {"id": "222@c.us"}],
        }

        engine.submit_whatsapp(
            _wa(GROUP, sender_id="111@c.us", sender_name="Анна", is_group=True, text="@all ужин")
        )
        await _drain(engine)
        topic = engine.topics.get_mapping(GROUP).topic_id

        texts = telegram.texts(topic)
        assert texts[-2] == "👤 <b>Анна</b>:\n@all ужин"
        assert "упомянул(а) всех" in texts[-1]

        engine.submit_telegram_message(_tg(9001, topic, "@all готово"))
        await _drain(engine)

        assert [item["text"] for item in whatsapp.sent] == ["@all готово", "@111 @222"]

    asyncio.run(runner())


def test_status_replies_go_to_the_status_author(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, _ = _engine(tmp_path)
        engine.submit_whatsapp(
            _wa(STATUS_BROADCAST, message_id="ST1", sender_id=CONTACT, sender_name="Анна", text="море")
        )
        engine.submit_whatsapp(_wa(STATUS_BROADCAST, message_id="ST2", from_me=True, text="мой"))
        await _drain(engine)
        topic = engine.topics.get_mapping(STATUS_BROADCAST).topic_id
        status_message = telegram.messages[-1]
        assert status_message["text"] == "📱 <b>Статус</b> · Анна\nморе"
        assert len(telegram.texts(topic)) == 1

        engine.submit_telegram_message(_tg(9101, topic, "без ответа"))
        engine.submit_telegram_message(
            _tg(9102, topic, "красиво", reply_to_message={"message_id": status_message["id"]})
        )
        await _drain(engine)

        hints = [item for item in telegram.messages if item["text"].startswith("ℹ️")]
        assert [item["reply_to"] for item in hints] == [9101]
        assert [(item["chat_id"], item["text"]) for item in whatsapp.sent] == [(CONTACT, "красиво")]

    asyncio.run(runner())


def test_calls_are_logged_once_in_calls_topic(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, _ = _engine(tmp_path)

        call = CallEvent(caller=CONTACT, call_id="c1", status="offer")
        assert engine.submit_whatsapp(call)
        assert not engine.submit_whatsapp(call)
        await _drain(engine)

        topic = engine.topics.get_mapping(CALL_BROADCAST).topic_id
        assert telegram.topics[topic] == "📞 Звонки"
        texts = telegram.texts(topic)
        assert len(texts) == 1
        assert "входящий" in texts[0]

        engine.submit_telegram_message(_tg(9201, topic, "перезвоню"))
        await _drain(engine)

        assert whatsapp.sent == []

    asyncio.run(runner())


def test_sync_contacts_updates_names_and_topics(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, store = _engine(tmp_path)
        engine.submit_whatsapp(_wa(text="hello"))
        await _drain(engine)
        topic = engine.topics.get_mapping(CONTACT).topic_id
        whatsapp.contacts = [
            {"id": CONTACT, "name": "Анна Петрова", "type": "user"},
            {"id": GROUP, "name": "Семья", "type": "group"},
            {"id": "79995550000@c.us", "name": "+7 999 555"},
        ]

        assert await engine.sync_contacts() == 1
        assert store.get(RecordType.CONTACT, "79990001122")["display_name"] == "Анна Петрова"
        assert telegram.renamed == [(topic, "Анна Петрова")]
        assert await engine.sync_contacts() == 0

        rows = dict(engine.status_rows())
        assert rows["Темы"] == "1"
        assert rows["Контакты"] == "1"
        assert rows["Синхронизация контактов"] != "—"

    asyncio.run(runner())


def test_direct_send_honours_ephemeral_setting(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, _, whatsapp, store = _engine(tmp_path)

        engine.set_ephemeral("+7 999 000-11-22", True, 86400)
        assert await engine.send_direct("+7 999 000-11-22", "hello")
        assert not await engine.send_direct("---", "hello")

        assert whatsapp.sent[-1]["chat_id"] == CONTACT
        assert whatsapp.sent[-1]["expiration"] == 86400
        assert store.get(RecordType.EPHEMERAL, CONTACT)["enabled"] is True

    asyncio.run(runner())


def test_sender_contact_name_is_remembered(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, _, _, store = _engine(tmp_path)
        store.upsert(
            RecordType.CONTACT,
            "79990001122",
            ContactMapping(handle="79990001122", display_name="Старое").to_record(),
        )

        engine.submit_whatsapp(_wa(text="hello", sender_contact_name="Анна"))
        await _drain(engine)

        assert store.get(RecordType.CONTACT, "79990001122")["display_name"] == "Анна"

    asyncio.run(runner())


def test_retried_mention_notice_does_not_repeat_the_relay(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, store = _engine(tmp_path, retry_delay=0.0)
        whatsapp.groups[GROUP] = {
            "subject": "Семья",
            "participants": [{"id": "111@c.us"}, {"id": "222@c.us"}],
        }
        telegram.send_failures.append(
            ("упомянул(а) всех", TransientPlatformError("Too Many Requests", status=429))
        )

        engine.submit_whatsapp(
            _wa(GROUP, sender_id="111@c.us", sender_name="Анна", is_group=True, text="@all ужин")
        )
        await _drain(engine)

        texts = telegram.texts(engine.topics.get_mapping(GROUP).topic_id)
        assert texts.count("👤 <b>Анна</b>:\n@all ужин") == 1
        assert sum("упомянул(а) всех" in text for text in texts) == 1
        assert store.get(RecordType.USER, "111@c.us")["message_count"] == 1

    asyncio.run(runner())


def test_retried_media_download_counts_the_sender_once(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, store = _engine(tmp_path, retry_delay=0.0)
        whatsapp.download_failures.append(TransientPlatformError("timeout"))

        engine.submit_whatsapp(_wa(photo=MediaRef(source="https://media/1.jpg")))
        await _drain(engine)

        assert telegram.create_calls == 1
        assert len(telegram.files) == 1
        assert store.get(RecordType.USER, CONTACT)["message_count"] == 1

    asyncio.run(runner())


def test_retried_mention_all_keeps_single_relay_and_reaction(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, _ = _engine(tmp_path, retry_delay=0.0)
        whatsapp.groups[GROUP] = {"participants": [{"id": "111@c.us"}, {"id": "222@c.us"}]}
        engine.submit_whatsapp(_wa(GROUP, sender_id="111@c.us", is_group=True, text="привет"))
        await _drain(engine)
        topic = engine.topics.get_mapping(GROUP).topic_id
        whatsapp.send_failures.append(("@111", TransientPlatformError("Bad Gateway", status=502)))

        engine.submit_telegram_message(_tg(9001, topic, "@all готово"))
        await _drain(engine)

        assert [item["text"] for item in whatsapp.sent] == ["@all готово", "@111 @222"]
        assert [item for item in telegram.reactions if item[0] == 9001] == [
            (9001, SUCCESS_REACTION)
        ]
        buttons = [item for item in telegram.messages if item["reply_markup"]]
        assert len(buttons) == 1

    asyncio.run(runner())


def test_deletion_notice_is_sent_after_a_transient_failure(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, _, _ = _engine(tmp_path, retry_delay=0.0)
        engine.submit_whatsapp(_wa(text="oops"))
        await _drain(engine)
        relayed = telegram.messages[-1]["id"]
        telegram.send_failures.append(
            ("Сообщение отозвано", TransientPlatformError("Too Many Requests", status=429))
        )

        engine.submit_whatsapp(_wa(message_id="WAD1", revoked_id="WAM1"))
        await _drain(engine)

        notices = [item for item in telegram.messages if item["text"] == "🗑️ Сообщение отозвано"]
        assert [item["reply_to"] for item in notices] == [relayed]
        assert engine.crossref.resolve_remote("WAM1") is None

    asyncio.run(runner())


def test_status_reply_reaches_author_after_restart(tmp_path: Path) -> None:
    async def runner() -> None:
        engine, telegram, whatsapp, store = _engine(tmp_path)
        engine.submit_whatsapp(
            _wa(STATUS_BROADCAST, message_id="ST1", sender_id=CONTACT, sender_name="Анна", text="море")
        )
        await _drain(engine)
        topic = engine.topics.get_mapping(STATUS_BROADCAST).topic_id
        status_id = telegram.messages[-1]["id"]
        await engine.shutdown()

        restarted = BridgeEngine(
            engine._settings, store, telegram, whatsapp, transcoder=DummyTranscoder(), clock=FakeClock()
        )
        restarted.start()
        restarted.submit_telegram_message(
            _tg(9102, topic, "красиво", reply_to_message={"message_id": status_id})
        )
        await _drain(restarted)

        assert [(item["chat_id"], item["text"]) for item in whatsapp.sent] == [(CONTACT, "красиво")]

    asyncio.run(runner())
