from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Mapping

import pytest
from fakes import DummyTelegram

from topic_bridge.access import AccessGate
from topic_bridge.errors import NotFoundError, PlatformError, TransientPlatformError
from topic_bridge.mapping_store import MappingStore
from topic_bridge.telegram import (
    BOT_COMMANDS,
    CommandContext,
    TelegramController,
    _raise_for_payload,
    parse_message,
)

FORUM = -100500
OWNER = 42


class DummyBridge:
    def __init__(self, store: MappingStore) -> None:
        self._gate = AccessGate(OWNER, store=store)
        self.messages: list[Mapping[str, Any]] = []
        self.callbacks: list[Mapping[str, Any]] = []
        self.reactions: list[Mapping[str, Any]] = []
        self.direct: list[tuple[str, str]] = []
        self.ephemeral: list[tuple[str, bool, int]] = []
        self.synced = 0

    @property
    def gate(self) -> AccessGate:
        return self._gate

    @property
    def forum_chat_id(self) -> int:
        return FORUM

    def submit_telegram_message(self, message: Mapping[str, Any]) -> None:
        self.messages.append(message)

    def submit_callback(self, callback: Mapping[str, Any]) -> None:
        self.callbacks.append(callback)

    def submit_telegram_reaction(self, reaction: Mapping[str, Any]) -> None:
        self.reactions.append(reaction)

    def status_rows(self) -> list[tuple[str, str]]:
        return [("Темы", "3"), ("Очередь", "0")]

    async def sync_contacts(self) -> int:
        self.synced += 1
        return 5

    async def update_topic_names(self) -> int:
        return 2

    async def send_direct(self, number: str, text: str) -> bool:
        self.direct.append((number, text))
        return True

    def set_ephemeral(self, number: str, enabled: bool, timer_seconds: int) -> None:
        self.ephemeral.append((number, enabled, timer_seconds))


def _private(text: str, user: int = OWNER) -> dict[str, Any]:
    return {
        "message": {
            "message_id": 1,
            "chat": {"id": user, "type": "private"},
            "from": {"id": user, "username": f"user{user}"},
            "text": text,
        }
    }


def _controller(tmp_path: Path) -> tuple[TelegramController, DummyTelegram, DummyBridge, MappingStore]:
    store = MappingStore(tmp_path / "db.sqlite")
    api = DummyTelegram()
    bridge = DummyBridge(store)
    return TelegramController(api, store, bridge), api, bridge, store


def test_updates_are_routed_to_the_bridge(tmp_path: Path) -> None:
    async def runner() -> None:
        controller, api, bridge, _ = _controller(tmp_path)

        forum_message = {"message_id": 5, "chat": {"id": FORUM, "type": "supergroup"}, "text": "x"}
        other_group = {"message_id": 6, "chat": {"id": -1, "type": "supergroup"}, "text": "x"}
        await controller._handle_update({"update_id": 1, "message": forum_message})
        await controller._handle_update({"update_id": 2, "message": other_group})
        await controller._handle_update({"update_id": 3, "callback_query": {"id": "cb"}})
        await controller._handle_update({"update_id": 4, "message_reaction": {"message_id": 5}})
        await controller._handle_update(_private("просто текст"))

        assert bridge.messages == [forum_message]
        assert bridge.callbacks == [{"id": "cb"}]
        assert bridge.reactions == [{"message_id": 5}]
        assert api.messages == []

    asyncio.run(runner())


def test_commands_require_authorization(tmp_path: Path) -> None:
    async def runner() -> None:
        controller, api, bridge, _ = _controller(tmp_path)

        await controller._handle_update(_private("/status", user=7))
        assert api.messages == []

        await controller._handle_update(_private("/status"))
        assert "Состояние моста" in api.texts()[-1]
        assert "Темы: <b>3</b>" in api.texts()[-1]

        await controller._handle_update(_private("/authorize 7"))
        assert bridge.gate.is_authorized(7)

        await controller._handle_update(_private("/status", user=7))
        assert "Состояние моста" in api.texts()[-1]

        await controller._handle_update(_private("/block 8", user=7))
        assert "Нет доступа" in api.texts()[-1]
        assert 8 not in bridge.gate.blocked

    asyncio.run(runner())


def test_access_lists_survive_restart(tmp_path: Path) -> None:
    async def runner() -> None:
        controller, _, _, store = _controller(tmp_path)
        await controller._handle_update(_private("/authorize 7"))
        await controller._handle_update(_private("/block 9"))

        restored = AccessGate(OWNER, store=store)
        assert restored.is_authorized(7)
        assert 9 in restored.blocked

    asyncio.run(runner())


def test_admin_commands_call_bridge_operations(tmp_path: Path) -> None:
    async def runner() -> None:
        controller, api, bridge, _ = _controller(tmp_path)

        await controller._handle_update(_private("/sync"))
        assert bridge.synced == 1
        assert "обновлено записей: 5" in api.texts()[-1]

        await controller._handle_update(_private("/updatetopics"))
        assert "Переименовано тем: 2" in api.texts()[-1]

        await controller._handle_update(_private("/send +79990001122 привет всем"))
        assert bridge.direct == [("+79990001122", "привет всем")]

        await controller._handle_update(_private("/send +79990001122"))
        assert "Неверный ввод" in api.texts()[-1]

        await controller._handle_update(_private("/ephemeral 79990001122 on 24h"))
        await controller._handle_update(_private("/ephemeral 79990001122 off"))
        await controller._handle_update(_private("/ephemeral 79990001122 on 1y"))
        assert bridge.ephemeral == [
            ("79990001122", True, 86400),
            ("79990001122", False, 604800),
        ]

        await controller._handle_update(_private("/unknown"))
        assert "Команда не найдена" in api.texts()[-1]

    asyncio.run(runner())


def test_help_hides_owner_commands_from_others(tmp_path: Path) -> None:
    async def runner() -> None:
        controller, api, bridge, _ = _controller(tmp_path)
        bridge.gate.authorize(7)

        await controller._handle_update(_private("/help", user=7))
        helper_view = api.texts()[-1]
        await controller._handle_update(_private("/help"))
        owner_view = api.texts()[-1]

        assert "/authorize" not in helper_view
        assert "/authorize" in owner_view
        assert "/status" in helper_view

    asyncio.run(runner())


def test_command_errors_are_reported(tmp_path: Path) -> None:
    async def runner() -> None:
        controller, api, _, _ = _controller(tmp_path)

        async def failing(_: CommandContext) -> None:
            raise RuntimeError("boom")

        controller.cmd_status = failing  # type: ignore[method-assign]
        await controller._handle_update(_private("/status"))

        assert "Внутренняя ошибка" in api.texts()[-1]

    asyncio.run(runner())


def test_controller_registers_commands_and_persists_offset(tmp_path: Path) -> None:
    async def runner() -> None:
        store = MappingStore(tmp_path / "db.sqlite")

        class UpdateAPI(DummyTelegram):
            def __init__(self) -> None:
                super().__init__()
                self.offsets: list[int | None] = []

            async def get_updates(
                self, offset: int | None = None, timeout: int = 30
            ) -> list[dict[str, Any]]:
                self.offsets.append(offset)
                controller.stop()
                return [{"update_id": 41, "message": {"chat": {"id": -1, "type": "group"}}}]

        api = UpdateAPI()
        controller = TelegramController(api, store, DummyBridge(store))
        await controller.run()

        assert [name for name, _ in api.commands] == [info.name for info in BOT_COMMANDS]
        assert api.offsets == [0]
        assert store.get_telegram_offset() == 42

        controller = TelegramController(api, store, DummyBridge(store))
        await controller.run()
        assert api.offsets == [0, 42]

    asyncio.run(runner())


def test_error_payloads_map_to_error_kinds() -> None:
    with pytest.raises(TransientPlatformError) as limited:
        _raise_for_payload(
            "sendMessage",
            429,
            {"error_code": 429, "description": "Too Many Requests", "parameters": {"retry_after": 7}},
        )
    assert limited.value.retry_after == 7.0

    with pytest.raises(TransientPlatformError):
        _raise_for_payload("sendMessage", 502, {"description": "Bad Gateway"})
    with pytest.raises(NotFoundError):
        _raise_for_payload(
            "sendMessage", 400, {"error_code": 400, "description": "Bad Request: message thread not found"}
        )
    with pytest.raises(PlatformError) as rejected:
        _raise_for_payload("sendMessage", 400, {"description": "Bad Request: chat not found"})
    assert not isinstance(rejected.value, NotFoundError)


def test_parse_message_extracts_content_and_quotes() -> None:
    message = {
        "message_id": 77,
        "date": 1700000000,
        "message_thread_id": 11,
        "chat": {"id": FORUM, "type": "supergroup"},
        "from": {"id": OWNER, "first_name": "Owner"},
        "photo": [
            {"file_id": "small", "file_size": 10},
            {"file_id": "large", "file_size": 1000},
        ],
        "caption": "секрет и жирный",
        "caption_entities": [
            {"type": "spoiler", "offset": 0, "length": 6},
            {"type": "bold", "offset": 9, "length": 6},
        ],
        "reply_to_message": {"message_id": 11},
    }

    event = parse_message(message)

    assert event is not None
    assert event.photo is not None and event.photo.source == "large"
    assert event.caption == "секрет и *жирный*"
    assert event.spoiler
    assert event.quoted_id is None

    message["reply_to_message"] = {"message_id": 50, "text": "исходное"}
    quoted = parse_message(message)
    assert quoted is not None
    assert quoted.quoted_id == "50"
    assert quoted.quoted_text == "исходное"


def test_parse_message_stickers_and_service_messages() -> None:
    base = {"message_id": 1, "chat": {"id": FORUM}, "from": {"id": OWNER}}

    video = parse_message({**base, "sticker": {"file_id": "s1", "is_video": True}})
    animated = parse_message({**base, "sticker": {"file_id": "s2", "is_animated": True}})
    still = parse_message({**base, "sticker": {"file_id": "s3"}})

    assert video is not None and video.sticker is not None
    assert video.sticker.file_name == "sticker.webm" and video.sticker.animated
    assert animated is not None and animated.sticker is not None
    assert animated.sticker.file_name == "sticker.tgs"
    assert still is not None and still.sticker is not None
    assert not still.sticker.animated
    assert parse_message({**base, "forum_topic_created": {"name": "x"}}) is None
