"""Telegram Bot API client and the admin command controller."""

from __future__ import annotations

import asyncio
import html
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Sequence

import aiohttp

from .access import AccessGate
from .errors import NotFoundError, PlatformError, TransientPlatformError
from .formatting import telegram_to_whatsapp
from .mapping_store import MappingStore
from .models import ContactCard, InboundEvent, Location, MediaRef, Platform
from .utils import RateLimiter

logger = logging.getLogger(__name__)

_API_BASE = "https://api.telegram.org"

_ALLOWED_UPDATES = ("message", "edited_message", "callback_query", "message_reaction")

_TOPIC_MISSING_MARKERS = (
    "message thread not found",
    "thread not found",
    "topic_deleted",
    "topic_id_invalid",
    "topic not found",
)

_NBSP = "\u00A0"
_INDENT = _NBSP * 2


def _panel_header(title: str, icon: str) -> str:
    return f"<b>{icon} {html.escape(title)}</b>"


def _panel_note(text: str, *, escape: bool = True) -> str:
    content = html.escape(text) if escape else text
    return f"<i>{content}</i>"


def _panel_bullet(text: str, *, indent: int = 1, icon: str | None = None) -> str:
    prefix = _INDENT * indent
    bullet = f"{icon} " if icon else "• "
    return f"{prefix}{bullet}{text}"


def _panel_message(
    title: str,
    *,
    icon: str,
    description: str | None = None,
    description_escape: bool = True,
    rows: Sequence[str] = (),
) -> str:
    lines = [_panel_header(title, icon)]
    if description is not None:
        lines.append(_panel_note(description, escape=description_escape))
    if rows:
        if description is not None:
            lines.append("")
        lines.extend(rows)
    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines)


def _raise_for_payload(method: str, status: int, payload: Mapping[str, Any]) -> None:
    code = int(payload.get("error_code") or status or 0)
    description = str(payload.get("description") or "unknown error")
    lowered = description.lower()
    if code == 429:
        parameters = payload.get("parameters") or {}
        retry_after = parameters.get("retry_after") if isinstance(parameters, Mapping) else None
        raise TransientPlatformError(
            description,
            status=code,
            method=method,
            retry_after=float(retry_after) if retry_after else None,
        )
    if code >= 500:
        raise TransientPlatformError(description, status=code, method=method)
    if any(marker in lowered for marker in _TOPIC_MISSING_MARKERS):
        raise NotFoundError(description, status=code, method=method)
    raise PlatformError(description, status=code, method=method)


class TelegramAPIProtocol(Protocol):
    async def get_updates(
        self,
        offset: int | None = None,
        timeout: int = 30,
    ) -> list[dict[str, Any]]: ...

    async def set_my_commands(self, commands: Iterable[tuple[str, str]]) -> None: ...

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        *,
        parse_mode: str | None = "HTML",
        disable_preview: bool = True,
        message_thread_id: int | None = None,
        reply_to: int | None = None,
        reply_markup: Mapping[str, Any] | None = None,
    ) -> int: ...

    async def send_file(
        self,
        kind: str,
        chat_id: int | str,
        payload: bytes | str,
        *,
        filename: str | None = None,
        caption: str | None = None,
        parse_mode: str | None = "HTML",
        message_thread_id: int | None = None,
        reply_to: int | None = None,
    ) -> int: ...

    async def send_location(
        self,
        chat_id: int | str,
        latitude: float,
        longitude: float,
        *,
        message_thread_id: int | None = None,
        reply_to: int | None = None,
    ) -> int: ...

    async def send_contact(
        self,
        chat_id: int | str,
        phone: str,
        first_name: str,
        *,
        message_thread_id: int | None = None,
        reply_to: int | None = None,
    ) -> int: ...

    async def edit_message_text(
        self, chat_id: int | str, message_id: int, text: str, *, parse_mode: str | None = "HTML"
    ) -> None: ...

    async def delete_message(self, chat_id: int | str, message_id: int) -> None: ...

    async def pin_message(self, chat_id: int | str, message_id: int) -> None: ...

    async def set_reaction(
        self, chat_id: int | str, message_id: int, emoji: str | None
    ) -> None: ...

    async def answer_callback_query(self, callback_id: str, text: str) -> None: ...

    async def create_forum_topic(
        self, chat_id: int | str, name: str, *, icon_color: int | None = None
    ) -> int: ...

    async def edit_forum_topic(self, chat_id: int | str, topic_id: int, name: str) -> None: ...

    async def download(self, file_id: str) -> bytes: ...


class TelegramAPI:
    """Lightweight Telegram Bot API wrapper.

    Every call carries an explicit timeout. Network failures, 429 and 5xx
    responses raise :class:`TransientPlatformError`; a missing forum topic
    raises :class:`NotFoundError`; other rejections raise
    :class:`PlatformError`.
    """

    def __init__(
        self,
        token: str,
        session: aiohttp.ClientSession,
        *,
        rate_limiter: RateLimiter | None = None,
    ):
        self._token = token
        self._session = session
        self._rate = rate_limiter

    async def _request(
        self,
        method: str,
        data: Mapping[str, Any] | None = None,
        *,
        upload: tuple[str, bytes, str] | None = None,
        timeout: float = 15.0,
    ) -> Any:
        url = f"{_API_BASE}/bot{self._token}/{method}"
        if self._rate is not None:
            await self._rate.wait()
        payload_kwargs: dict[str, Any]
        if upload is not None:
            form = aiohttp.FormData()
            for key, value in (data or {}).items():
                if value is None:
                    continue
                if isinstance(value, (dict, list)):
                    form.add_field(key, json.dumps(value, ensure_ascii=False))
                elif isinstance(value, bool):
                    form.add_field(key, "true" if value else "false")
                else:
                    form.add_field(key, str(value))
            field_name, content, filename = upload
            form.add_field(field_name, content, filename=filename)
            payload_kwargs = {"data": form}
        else:
            payload_kwargs = {"json": {k: v for k, v in (data or {}).items() if v is not None}}
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=timeout)
            async with self._session.post(url, timeout=timeout_cfg, **payload_kwargs) as resp:
                status = resp.status
                try:
                    payload = await resp.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError):
                    payload = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientPlatformError(
                f"Telegram {method}: {exc or type(exc).__name__}", method=method
            ) from exc
        if not isinstance(payload, Mapping):
            if status >= 500 or status == 429:
                raise TransientPlatformError(
                    f"Telegram {method}: HTTP {status}", status=status, method=method
                )
            raise PlatformError(f"Telegram {method}: HTTP {status}", status=status, method=method)
        if payload.get("ok"):
            return payload.get("result")
        _raise_for_payload(method, status, payload)

    @staticmethod
    def _message_id(result: Any) -> int:
        if isinstance(result, Mapping) and "message_id" in result:
            return int(result["message_id"])
        raise PlatformError("Telegram не вернул message_id")

    async def get_updates(
        self,
        offset: int | None = None,
        timeout: int = 30,
    ) -> list[dict[str, Any]]:
        data: dict[str, Any] = {"timeout": timeout, "allowed_updates": list(_ALLOWED_UPDATES)}
        if offset is not None:
            data["offset"] = offset
        try:
            result = await self._request("getUpdates", data, timeout=timeout + 5)
        except PlatformError as exc:
            logger.warning("Не удалось получить обновления Telegram: %s", exc)
            await asyncio.sleep(1.0)
            return []
        return list(result or [])

    async def set_my_commands(self, commands: Iterable[tuple[str, str]]) -> None:
        payload = {
            "commands": [
                {"command": name, "description": description[:256]}
                for name, description in commands
            ]
        }
        try:
            await self._request("setMyCommands", payload)
        except PlatformError as exc:
            logger.warning("Не удалось зарегистрировать команды бота: %s", exc)

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        *,
        parse_mode: str | None = "HTML",
        disable_preview: bool = True,
        message_thread_id: int | None = None,
        reply_to: int | None = None,
        reply_markup: Mapping[str, Any] | None = None,
    ) -> int:
        data: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": disable_preview,
            "parse_mode": parse_mode,
            "message_thread_id": message_thread_id,
            "reply_markup": dict(reply_markup) if reply_markup else None,
        }
        if reply_to is not None:
            data["reply_parameters"] = {"message_id": reply_to, "allow_sending_without_reply": True}
        return self._message_id(await self._request("sendMessage", data))

    async def send_file(
        self,
        kind: str,
        chat_id: int | str,
        payload: bytes | str,
        *,
        filename: str | None = None,
        caption: str | None = None,
        parse_mode: str | None = "HTML",
        message_thread_id: int | None = None,
        reply_to: int | None = None,
    ) -> int:
        """Send ``photo``, ``video``, ``video_note``, ``voice``, ``audio``,
        ``document``, ``sticker`` or ``animation``.

        ``payload`` is raw bytes to upload or a URL / file id string.
        """

        method = "send" + "".join(part.capitalize() for part in kind.split("_"))
        data: dict[str, Any] = {
            "chat_id": chat_id,
            "message_thread_id": message_thread_id,
        }
        if caption and kind not in {"sticker", "video_note"}:
            data["caption"] = caption
            data["parse_mode"] = parse_mode
        if reply_to is not None:
            data["reply_parameters"] = {"message_id": reply_to, "allow_sending_without_reply": True}
        if isinstance(payload, bytes):
            result = await self._request(
                method,
                data,
                upload=(kind, payload, filename or kind),
                timeout=120.0,
            )
        else:
            data[kind] = payload
            result = await self._request(method, data, timeout=60.0)
        return self._message_id(result)

    async def send_location(
        self,
        chat_id: int | str,
        latitude: float,
        longitude: float,
        *,
        message_thread_id: int | None = None,
        reply_to: int | None = None,
    ) -> int:
        data: dict[str, Any] = {
            "chat_id": chat_id,
            "latitude": latitude,
            "longitude": longitude,
            "message_thread_id": message_thread_id,
        }
        if reply_to is not None:
            data["reply_parameters"] = {"message_id": reply_to, "allow_sending_without_reply": True}
        return self._message_id(await self._request("sendLocation", data))

    async def send_contact(
        self,
        chat_id: int | str,
        phone: str,
        first_name: str,
        *,
        message_thread_id: int | None = None,
        reply_to: int | None = None,
    ) -> int:
        data: dict[str, Any] = {
            "chat_id": chat_id,
            "phone_number": phone,
            "first_name": first_name or phone,
            "message_thread_id": message_thread_id,
        }
        if reply_to is not None:
            data["reply_parameters"] = {"message_id": reply_to, "allow_sending_without_reply": True}
        return self._message_id(await self._request("sendContact", data))

    async def edit_message_text(
        self, chat_id: int | str, message_id: int, text: str, *, parse_mode: str | None = "HTML"
    ) -> None:
        await self._request(
            "editMessageText",
            {"chat_id": chat_id, "message_id": message_id, "text": text, "parse_mode": parse_mode},
        )

    async def delete_message(self, chat_id: int | str, message_id: int) -> None:
        await self._request("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def pin_message(self, chat_id: int | str, message_id: int) -> None:
        await self._request(
            "pinChatMessage",
            {"chat_id": chat_id, "message_id": message_id, "disable_notification": True},
        )

    async def set_reaction(self, chat_id: int | str, message_id: int, emoji: str | None) -> None:
        reaction = [{"type": "emoji", "emoji": emoji}] if emoji else []
        await self._request(
            "setMessageReaction",
            {"chat_id": chat_id, "message_id": message_id, "reaction": reaction},
        )

    async def answer_callback_query(self, callback_id: str, text: str) -> None:
        data = {"callback_query_id": callback_id, "text": text[:200]}
        try:
            await self._request("answerCallbackQuery", data, timeout=10.0)
        except PlatformError as exc:
            logger.warning("Не удалось ответить на callback %s: %s", callback_id, exc)

    async def create_forum_topic(
        self, chat_id: int | str, name: str, *, icon_color: int | None = None
    ) -> int:
        result = await self._request(
            "createForumTopic",
            {"chat_id": chat_id, "name": name[:128], "icon_color": icon_color},
        )
        if not isinstance(result, Mapping) or "message_thread_id" not in result:
            raise PlatformError("Telegram не вернул message_thread_id")
        return int(result["message_thread_id"])

    async def edit_forum_topic(self, chat_id: int | str, topic_id: int, name: str) -> None:
        await self._request(
            "editForumTopic",
            {"chat_id": chat_id, "message_thread_id": topic_id, "name": name[:128]},
        )

    async def download(self, file_id: str) -> bytes:
        result = await self._request("getFile", {"file_id": file_id})
        file_path = result.get("file_path") if isinstance(result, Mapping) else None
        if not file_path:
            raise PlatformError(f"Файл {file_id} недоступен для скачивания")
        url = f"{_API_BASE}/file/bot{self._token}/{file_path}"
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=120)
            async with self._session.get(url, timeout=timeout_cfg) as resp:
                if resp.status >= 500:
                    raise TransientPlatformError(
                        f"Telegram file: HTTP {resp.status}", status=resp.status
                    )
                if resp.status >= 400:
                    raise PlatformError(f"Telegram file: HTTP {resp.status}", status=resp.status)
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientPlatformError(f"Telegram file: {exc or type(exc).__name__}") from exc


class BridgeCommands(Protocol):
    """Operations of the bridge engine that the admin bot exposes."""

    @property
    def gate(self) -> AccessGate: ...

    @property
    def forum_chat_id(self) -> int: ...

    def submit_telegram_message(self, message: Mapping[str, Any]) -> None: ...

    def submit_callback(self, callback: Mapping[str, Any]) -> None: ...

    def submit_telegram_reaction(self, reaction: Mapping[str, Any]) -> None: ...

    def status_rows(self) -> list[tuple[str, str]]: ...

    async def sync_contacts(self) -> int: ...

    async def update_topic_names(self) -> int: ...

    async def send_direct(self, number: str, text: str) -> bool: ...

    def set_ephemeral(self, number: str, enabled: bool, timer_seconds: int) -> None: ...


@dataclass(slots=True)
class CommandContext:
    chat_id: int
    user_id: int
    username: str
    handle: str | None
    args: str
    message: dict[str, Any]


@dataclass(frozen=True, slots=True)
class _CommandInfo:
    name: str
    summary: str
    help_text: str
    owner_only: bool = False


BOT_COMMANDS: tuple[_CommandInfo, ...] = (
    _CommandInfo(
        name="start",
        summary="Приветствие бота.",
        help_text="/start — короткое приветствие и напоминание про /help.",
    ),
    _CommandInfo(
        name="help",
        summary="Показать справку.",
        help_text="/help — открыть описание команд.",
    ),
    _CommandInfo(
        name="status",
        summary="Состояние моста.",
        help_text="/status — темы, контакты, очередь и включённые функции.",
    ),
    _CommandInfo(
        name="sync",
        summary="Синхронизировать контакты.",
        help_text="/sync — загрузить контакты WhatsApp и обновить названия тем.",
    ),
    _CommandInfo(
        name="updatetopics",
        summary="Обновить названия тем.",
        help_text="/updatetopics — переименовать темы по сохранённым контактам.",
    ),
    _CommandInfo(
        name="send",
        summary="Написать в WhatsApp.",
        help_text="/send <номер> <текст> — отправить сообщение напрямую.",
    ),
    _CommandInfo(
        name="ephemeral",
        summary="Исчезающие сообщения.",
        help_text="/ephemeral <номер> <on|off> [24h|7d|90d]",
    ),
    _CommandInfo(
        name="authorize",
        summary="Выдать доступ к мосту.",
        help_text="/authorize <id> — разрешить пользователю работать с мостом.",
        owner_only=True,
    ),
    _CommandInfo(
        name="unauthorize",
        summary="Отозвать доступ к мосту.",
        help_text="/unauthorize <id> — убрать пользователя из списка доступа.",
        owner_only=True,
    ),
    _CommandInfo(
        name="block",
        summary="Заблокировать пользователя.",
        help_text="/block <id> — игнорировать все действия пользователя.",
        owner_only=True,
    ),
    _CommandInfo(
        name="unblock",
        summary="Разблокировать пользователя.",
        help_text="/unblock <id> — снять блокировку.",
        owner_only=True,
    ),
)

_COMMAND_MAP = {info.name: info for info in BOT_COMMANDS}

EPHEMERAL_TIMERS = {"24h": 86400, "7d": 604800, "90d": 7776000}


class TelegramController:
    """Long-polls Telegram, routes bridge updates and serves admin commands."""

    def __init__(
        self,
        api: TelegramAPIProtocol,
        store: MappingStore,
        bridge: BridgeCommands,
    ) -> None:
        self._api = api
        self._store = store
        self._bridge = bridge
        stored_offset = self._store.get_telegram_offset()
        self._offset = stored_offset if stored_offset is not None else 0
        self._running = True
        self._commands_registered = False

    async def run(self) -> None:
        self._running = True
        await self._ensure_commands_registered()
        while self._running:
            updates = await self._api.get_updates(self._offset, timeout=25)
            highest_offset = self._offset
            for update in updates:
                update_offset = self._extract_update_offset(update)
                if update_offset is not None and update_offset > highest_offset:
                    highest_offset = update_offset
                try:
                    await self._handle_update(update)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(
                        "Ошибка обработки обновления Telegram %s", update.get("update_id")
                    )
            if highest_offset != self._offset:
                self._offset = highest_offset
                self._store.set_telegram_offset(highest_offset)

    def stop(self) -> None:
        """Stop the controller loop on the next iteration."""

        self._running = False

    async def _handle_update(self, update: dict[str, Any]) -> None:
        callback = update.get("callback_query")
        if callback:
            self._bridge.submit_callback(callback)
            return
        reaction = update.get("message_reaction")
        if reaction:
            self._bridge.submit_telegram_reaction(reaction)
            return
        message = update.get("message")
        if not message:
            return
        chat = message.get("chat") or {}
        if chat.get("type") != "private":
            if int(chat.get("id", 0)) == self._bridge.forum_chat_id:
                self._bridge.submit_telegram_message(message)
            return
        text = str(message.get("text") or "").strip()
        if not text.startswith("/"):
            return
        command, _, args = text.partition(" ")
        command = command.split("@")[0][1:].lower()
        sender = message.get("from") or {}
        handle_raw = sender.get("username")
        display_name = str(handle_raw or sender.get("first_name") or "user")
        ctx = CommandContext(
            chat_id=int(chat["id"]),
            user_id=int(sender.get("id", 0)),
            username=display_name,
            handle=str(handle_raw) if handle_raw else None,
            args=args.strip(),
            message=message,
        )
        await self._dispatch(command, ctx)

    async def _dispatch(self, command: str, ctx: CommandContext) -> None:
        # Команды принимаются только в личных сообщениях
        chat_type = ctx.message.get("chat", {}).get("type", "")
        if chat_type != "private":
            return

        gate = self._bridge.gate
        if not gate.is_authorized(ctx.user_id):
            logger.warning(
                "Команда /%s от неавторизованного пользователя %s отклонена",
                command,
                ctx.user_id,
            )
            return
        if not gate.check_rate_limit(ctx.user_id, "command"):
            await self._send_status_notice(
                ctx,
                title="Слишком часто",
                icon="⏳",
                message="Превышен лимит команд. Попробуйте немного позже.",
                message_icon="🕒",
            )
            return

        handler = getattr(self, f"cmd_{command}", None)
        info = _COMMAND_MAP.get(command)
        if handler is None or info is None:
            await self._send_panel_message(
                ctx,
                title="Команда не найдена",
                icon="ℹ️",
                description=(
                    f"Не удалось распознать <code>/{html.escape(command)}</code>. "
                    "Откройте <code>/help</code> для полного списка."
                ),
                description_escape=False,
            )
            return

        if info.owner_only and not gate.is_owner(ctx.user_id):
            await self._notify_access_denied(ctx)
            return

        await self._execute_command(handler, ctx)

    async def _execute_command(
        self,
        handler: Callable[[CommandContext], Awaitable[None]],
        ctx: CommandContext,
    ) -> None:
        try:
            await handler(ctx)
        except asyncio.CancelledError:
            raise
        except sqlite3.Error:
            logger.exception("Database error while executing command %s", handler.__name__)
            await self._api.send_message(
                ctx.chat_id,
                (
                    "⚠️ <b>Ошибка базы данных</b>\n"
                    "Не удалось выполнить команду. Попробуйте немного позже."
                ),
            )
        except Exception:
            logger.exception("Unexpected error while executing command %s", handler.__name__)
            await self._api.send_message(
                ctx.chat_id,
                (
                    "⚠️ <b>Внутренняя ошибка</b>\n"
                    "Команда завершилась неудачно. Попробуйте повторить позже."
                ),
            )

    async def _send_panel_message(
        self,
        ctx: CommandContext,
        *,
        title: str,
        icon: str = "ℹ️",
        description: str | None = None,
        description_escape: bool = True,
        rows: Sequence[str] = (),
    ) -> None:
        message = _panel_message(
            title,
            icon=icon,
            description=description,
            description_escape=description_escape,
            rows=rows,
        )
        await self._api.send_message(ctx.chat_id, message, parse_mode="HTML")

    async def _send_usage_error(
        self,
        ctx: CommandContext,
        usage: str,
        *,
        tip: str | None = None,
    ) -> None:
        rows = [
            _panel_bullet(
                f"Использование: <code>{html.escape(usage)}</code>",
                icon="📌",
            )
        ]
        if tip:
            rows.append(_panel_bullet(html.escape(tip), icon="💡"))
        await self._send_panel_message(ctx, title="Неверный ввод", icon="⚠️", rows=rows)

    async def _send_status_notice(
        self,
        ctx: CommandContext,
        *,
        title: str,
        icon: str,
        message: str,
        message_icon: str,
        escape: bool = True,
    ) -> None:
        rows = [_panel_bullet(message if not escape else html.escape(message), icon=message_icon)]
        await self._send_panel_message(ctx, title=title, icon=icon, rows=rows)

    @staticmethod
    def _extract_update_offset(update: dict[str, Any]) -> int | None:
        try:
            update_id = int(update.get("update_id", 0))
        except (TypeError, ValueError):
            return None
        return max(0, update_id + 1)

    @staticmethod
    def _parse_user_id(raw: str) -> int | None:
        candidate = raw.strip()
        if candidate.lstrip("-").isdigit():
            return int(candidate)
        return None

    # ------------------------------------------------------------------
    # Basic commands
    # ------------------------------------------------------------------
    async def cmd_start(self, ctx: CommandContext) -> None:
        await self._send_panel_message(
            ctx,
            title="Topic Bridge",
            icon="👋",
            description=(
                "Мост WhatsApp ↔ Telegram работает. "
                "Откройте <code>/help</code>, чтобы увидеть список команд."
            ),
            description_escape=False,
            rows=[
                _panel_bullet(
                    "Каждый чат WhatsApp получает собственную тему в форуме.",
                    icon="🧵",
                )
            ],
        )

    async def cmd_help(self, ctx: CommandContext) -> None:
        is_owner = self._bridge.gate.is_owner(ctx.user_id)
        rows = [
            _panel_bullet(html.escape(info.help_text), icon="🔒" if info.owner_only else "▫️")
            for info in BOT_COMMANDS
            if is_owner or not info.owner_only
        ]
        await self._send_panel_message(
            ctx,
            title="Команды",
            icon="📖",
            description="Команды доступны только в личном чате с ботом.",
            rows=rows,
        )

    async def cmd_status(self, ctx: CommandContext) -> None:
        rows = [
            _panel_bullet(f"{html.escape(label)}: <b>{html.escape(value)}</b>")
            for label, value in self._bridge.status_rows()
        ]
        await self._send_panel_message(ctx, title="Состояние моста", icon="📊", rows=rows)

    async def cmd_sync(self, ctx: CommandContext) -> None:
        changed = await self._bridge.sync_contacts()
        await self._send_status_notice(
            ctx,
            title="Синхронизация",
            icon="🔄",
            message=f"Контакты загружены, обновлено записей: {changed}.",
            message_icon="✅",
        )

    async def cmd_updatetopics(self, ctx: CommandContext) -> None:
        renamed = await self._bridge.update_topic_names()
        await self._send_status_notice(
            ctx,
            title="Темы",
            icon="🧵",
            message=f"Переименовано тем: {renamed}.",
            message_icon="✅",
        )

    async def cmd_send(self, ctx: CommandContext) -> None:
        number, _, text = ctx.args.partition(" ")
        if not number or not text.strip():
            await self._send_usage_error(ctx, "/send <номер> <текст>")
            return
        delivered = await self._bridge.send_direct(number, text.strip())
        if delivered:
            await self._send_status_notice(
                ctx, title="Отправка", icon="📤", message="Сообщение отправлено.", message_icon="✅"
            )
        else:
            await self._send_status_notice(
                ctx,
                title="Отправка",
                icon="📤",
                message="Не удалось отправить сообщение.",
                message_icon="❗️",
            )

    async def cmd_ephemeral(self, ctx: CommandContext) -> None:
        parts = ctx.args.split()
        if len(parts) < 2 or parts[1].lower() not in {"on", "off"}:
            await self._send_usage_error(
                ctx, "/ephemeral <номер> <on|off> [24h|7d|90d]", tip="По умолчанию 7d."
            )
            return
        timer_key = parts[2].lower() if len(parts) > 2 else "7d"
        if timer_key not in EPHEMERAL_TIMERS:
            await self._send_usage_error(
                ctx, "/ephemeral <номер> <on|off> [24h|7d|90d]", tip="Допустимо: 24h, 7d, 90d."
            )
            return
        enabled = parts[1].lower() == "on"
        self._bridge.set_ephemeral(parts[0], enabled, EPHEMERAL_TIMERS[timer_key])
        state = f"включены ({timer_key})" if enabled else "выключены"
        await self._send_status_notice(
            ctx,
            title="Исчезающие сообщения",
            icon="⏱️",
            message=f"Для {parts[0]} исчезающие сообщения {state}.",
            message_icon="✅",
        )

    # ------------------------------------------------------------------
    # Access management
    # ------------------------------------------------------------------
    async def _change_access(
        self,
        ctx: CommandContext,
        *,
        usage: str,
        action: Callable[[int], bool],
        done: str,
        unchanged: str,
    ) -> None:
        user_id = self._parse_user_id(ctx.args)
        if user_id is None:
            await self._send_usage_error(ctx, usage)
            return
        if action(user_id):
            await self._send_status_notice(
                ctx,
                title="Доступ",
                icon="🛡️",
                message=done.format(user_id),
                message_icon="✅",
            )
        else:
            await self._send_status_notice(
                ctx,
                title="Доступ",
                icon="🛡️",
                message=unchanged.format(user_id),
                message_icon="ℹ️",
            )

    async def cmd_authorize(self, ctx: CommandContext) -> None:
        await self._change_access(
            ctx,
            usage="/authorize <id>",
            action=self._bridge.gate.authorize,
            done="Пользователь {} получил доступ.",
            unchanged="Пользователь {} уже в списке доступа.",
        )

    async def cmd_unauthorize(self, ctx: CommandContext) -> None:
        await self._change_access(
            ctx,
            usage="/unauthorize <id>",
            action=self._bridge.gate.unauthorize,
            done="Доступ пользователя {} отозван.",
            unchanged="Пользователь {} не найден в списке доступа.",
        )

    async def cmd_block(self, ctx: CommandContext) -> None:
        await self._change_access(
            ctx,
            usage="/block <id>",
            action=self._bridge.gate.block,
            done="Пользователь {} заблокирован.",
            unchanged="Пользователь {} уже заблокирован или является владельцем.",
        )

    async def cmd_unblock(self, ctx: CommandContext) -> None:
        await self._change_access(
            ctx,
            usage="/unblock <id>",
            action=self._bridge.gate.unblock,
            done="Пользователь {} разблокирован.",
            unchanged="Пользователь {} не был заблокирован.",
        )

    async def _ensure_commands_registered(self) -> None:
        if self._commands_registered:
            return
        await self._api.set_my_commands((info.name, info.summary) for info in BOT_COMMANDS)
        self._commands_registered = True

    async def _notify_access_denied(self, ctx: CommandContext) -> None:
        await self._send_panel_message(
            ctx,
            title="Нет доступа",
            icon="🚫",
            rows=[
                _panel_bullet(
                    "Эта команда доступна только владельцу моста.",
                    icon="🛡️",
                )
            ],
            description="Недостаточно прав для выполнения команды.",
        )


def _media_from(payload: Mapping[str, Any] | None, default_name: str) -> MediaRef | None:
    if not payload or not payload.get("file_id"):
        return None
    return MediaRef(
        source=str(payload["file_id"]),
        file_name=payload.get("file_name") or default_name,
        mime_type=payload.get("mime_type") or None,
    )


def parse_message(message: Mapping[str, Any]) -> InboundEvent | None:
    """Normalize a forum message; service messages without content return ``None``."""

    chat = message.get("chat") or {}
    sender = message.get("from") or {}
    raw_text = message.get("text")
    raw_caption = message.get("caption")
    text, text_spoiler = telegram_to_whatsapp(str(raw_text or ""), message.get("entities"))
    caption, caption_spoiler = telegram_to_whatsapp(
        str(raw_caption or ""), message.get("caption_entities")
    )
    event = InboundEvent(
        platform=Platform.TELEGRAM,
        chat_id=str(chat.get("id", "")),
        message_id=str(message.get("message_id", "")),
        sender_id=str(sender.get("id", "")),
        sender_name=str(sender.get("first_name") or sender.get("username") or "") or None,
        timestamp=datetime.fromtimestamp(int(message.get("date") or 0), timezone.utc),
        thread_id=message.get("message_thread_id"),
        text=text or None,
        caption=caption or None,
        spoiler=text_spoiler or caption_spoiler or bool(message.get("has_media_spoiler")),
    )
    reply = message.get("reply_to_message") or {}
    # A topic message without an explicit reply points at the topic header.
    if reply and reply.get("message_id") != event.thread_id:
        event.quoted_id = str(reply.get("message_id"))
        event.quoted_text = reply.get("text") or reply.get("caption") or None

    photos = message.get("photo") or []
    if photos:
        largest = max(photos, key=lambda item: int(item.get("file_size") or 0))
        event.photo = _media_from(largest, "photo.jpg")
    event.video = _media_from(message.get("video"), "video.mp4")
    event.animation = _media_from(message.get("animation"), "animation.mp4")
    event.video_note = _media_from(message.get("video_note"), "video_note.mp4")
    event.voice = _media_from(message.get("voice"), "voice.ogg")
    event.audio = _media_from(message.get("audio"), "audio.mp3")
    if not event.animation:
        event.document = _media_from(message.get("document"), "document")
    sticker = message.get("sticker")
    if sticker:
        if sticker.get("is_video"):
            name = "sticker.webm"
        elif sticker.get("is_animated"):
            name = "sticker.tgs"
        else:
            name = "sticker.webp"
        event.sticker = _media_from(sticker, name)
        if event.sticker is not None:
            event.sticker.animated = bool(sticker.get("is_video") or sticker.get("is_animated"))
    location = message.get("location")
    if location:
        venue = message.get("venue") or {}
        event.location = Location(
            latitude=float(location["latitude"]),
            longitude=float(location["longitude"]),
            name=venue.get("title") or None,
            address=venue.get("address") or None,
        )
    contact = message.get("contact")
    if contact:
        name = " ".join(
            part for part in (contact.get("first_name"), contact.get("last_name")) if part
        )
        phone = "".join(ch for ch in str(contact.get("phone_number") or "") if ch.isdigit())
        event.contact = ContactCard(phone=phone, name=name or phone)

    has_content = any(
        (
            event.text,
            event.photo,
            event.video,
            event.animation,
            event.video_note,
            event.voice,
            event.audio,
            event.document,
            event.sticker,
            event.location,
            event.contact,
        )
    )
    return event if has_content else None
