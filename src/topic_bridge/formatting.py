"""Text conversion between WhatsApp markup and Telegram HTML, plus notice builders."""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Iterable, Mapping, Sequence

from .utils import as_local_time

QUOTE_EXCERPT_LENGTH = 100
TELEGRAM_TEXT_LIMIT = 4000
TELEGRAM_CAPTION_LIMIT = 1000
SPOILER_PREFIX = "🫥 "

_CODE_BLOCK_RE = re.compile(r"```([\s\S]+?)```")
_CODE_SPAN_RE = re.compile(r"`([^`\n]+)`")
_BOLD_RE = re.compile(r"(?<![\w*])\*(?!\s)([^*\n]+?)(?<!\s)\*(?![\w*])")
_ITALIC_RE = re.compile(r"(?<![\w_])_(?!\s)([^_\n]+?)(?<!\s)_(?![\w_])")
_STRIKE_RE = re.compile(r"(?<![\w~])~(?!\s)([^~\n]+?)(?<!\s)~(?![\w~])")
_MENTION_ALL_RE = re.compile(r"(?<!\w)@(all|everyone)\b", re.IGNORECASE)
_HTML_TAG_RE = re.compile(r"<(/?)([a-zA-Z][\w-]*)(?:\s[^>]*)?>")
# room for the tags repeated at chunk boundaries
_HTML_TAG_RESERVE = 64

_ENTITY_MARKERS = {
    "bold": ("*", "*"),
    "italic": ("_", "_"),
    "strikethrough": ("~", "~"),
    "code": ("```", "```"),
    "pre": ("```", "```"),
}


def escape(text: str) -> str:
    return html.escape(text, quote=False)


def whatsapp_to_html(text: str) -> str:
    """Render WhatsApp ``*bold*``, ``_italic_``, ``~strike~`` and code as Telegram HTML."""

    if not text:
        return ""
    placeholders: dict[str, str] = {}

    def _store(value: str) -> str:
        token = f"§§TBPLACEHOLDER_{len(placeholders)}§§"
        placeholders[token] = value
        return token

    def _format_code_block(match: re.Match[str]) -> str:
        content = match.group(1).strip("\n")
        return _store(f"<pre>{escape(content)}</pre>")

    def _format_inline_code(match: re.Match[str]) -> str:
        return _store(f"<code>{escape(match.group(1))}</code>")

    text_without_code = _CODE_BLOCK_RE.sub(_format_code_block, text)
    text_without_code = _CODE_SPAN_RE.sub(_format_inline_code, text_without_code)

    escaped = escape(text_without_code)
    escaped = _BOLD_RE.sub(lambda m: f"<b>{m.group(1)}</b>", escaped)
    escaped = _ITALIC_RE.sub(lambda m: f"<i>{m.group(1)}</i>", escaped)
    escaped = _STRIKE_RE.sub(lambda m: f"<s>{m.group(1)}</s>", escaped)

    result = escaped
    for token, value in placeholders.items():
        result = result.replace(token, value)
    return result


def telegram_to_whatsapp(
    text: str, entities: Sequence[Mapping[str, Any]] | None = None
) -> tuple[str, bool]:
    """Apply Telegram entities as WhatsApp markup.

    Returns the converted text and whether a spoiler entity was present.
    Entity offsets are counted in UTF-16 code units.
    """

    if not text:
        return "", False
    if not entities:
        return text, False
    encoded = text.encode("utf-16-le")
    inserts: dict[int, list[str]] = {}
    spoiler = False
    for entity in entities:
        kind = str(entity.get("type") or "")
        if kind == "spoiler":
            spoiler = True
            continue
        markers = _ENTITY_MARKERS.get(kind)
        if markers is None:
            continue
        try:
            start = int(entity["offset"])
            end = start + int(entity["length"])
        except (KeyError, TypeError, ValueError):
            continue
        inserts.setdefault(start, []).append(markers[0])
        inserts.setdefault(end, []).insert(0, markers[1])
    if not inserts:
        return text, spoiler
    pieces: list[str] = []
    cursor = 0
    for position in sorted(inserts):
        pieces.append(encoded[cursor * 2 : position * 2].decode("utf-16-le"))
        pieces.append("".join(inserts[position]))
        cursor = position
    pieces.append(encoded[cursor * 2 :].decode("utf-16-le"))
    return "".join(pieces), spoiler


def chunk_text(text: str, limit: int = TELEGRAM_TEXT_LIMIT, ellipsis: str = "…") -> list[str]:
    if not text:
        return []
    if limit <= 0 or len(text) <= limit:
        return [text]

    remaining = text
    chunks: list[str] = []
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break

        split = remaining.rfind("\n", 0, limit)
        if split == -1 or split < limit // 4:
            split = remaining.rfind(" ", 0, limit)
        if split == -1 or split < limit // 4:
            split = _safe_cut(remaining, limit)

        chunk = remaining[:split].rstrip()
        tail = remaining[split:].lstrip("\n")
        if chunk:
            if tail:
                chunk = f"{chunk}{ellipsis}"
            chunks.append(chunk)
        else:
            chunk = remaining[:limit]
            chunks.append(f"{chunk}{ellipsis}")
            tail = remaining[limit:]
        remaining = tail.lstrip()
    return chunks


def _safe_cut(text: str, limit: int) -> int:
    """Move a hard cut back so it never lands inside a tag or an entity."""

    head = text[:limit]
    cut = limit
    for opener, closer in (("<", ">"), ("&", ";")):
        start = head.rfind(opener)
        if 0 < start and start > head.rfind(closer):
            cut = min(cut, start)
    return cut


def chunk_html(text: str, limit: int = TELEGRAM_TEXT_LIMIT) -> list[str]:
    """Split rendered Telegram HTML into chunks that parse on their own.

    Tags still open at a chunk boundary are closed at the end of that chunk
    and reopened at the start of the next one.
    """

    if not text:
        return []
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    carried: list[tuple[str, str]] = []
    for piece in chunk_text(text, max(1, limit - _HTML_TAG_RESERVE)):
        opened = "".join(tag for _, tag in carried)
        stack = list(carried)
        for match in _HTML_TAG_RE.finditer(piece):
            name = match.group(2).lower()
            if not match.group(1):
                stack.append((name, match.group(0)))
                continue
            for index in range(len(stack) - 1, -1, -1):
                if stack[index][0] == name:
                    del stack[index]
                    break
        closed = "".join(f"</{name}>" for name, _ in reversed(stack))
        chunks.append(f"{opened}{piece}{closed}")
        carried = stack
    return chunks


def contains_mention_all(text: str | None) -> bool:
    return bool(text) and _MENTION_ALL_RE.search(text or "") is not None


def excerpt(text: str, limit: int = QUOTE_EXCERPT_LENGTH) -> str:
    cleaned = " ".join(text.split())
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[:limit].rstrip() + "..."


# ----------------------------------------------------------------------
# Relay decorations
# ----------------------------------------------------------------------
def sender_prefix(name: str) -> str:
    return f"👤 <b>{escape(name)}</b>:"


def outgoing_prefix() -> str:
    return "📤 <b>Вы</b>:"


def quote_block(text: str) -> str:
    return f"📝 <i>Ответ на: «{escape(excerpt(text))}»</i>"


def compose_html(body_html: str, *, prefixes: Iterable[str] = ()) -> str:
    """Join decoration lines and the already rendered body."""

    lines = [prefix for prefix in prefixes if prefix]
    if body_html:
        lines.append(body_html)
    return "\n".join(lines)


def reaction_notice(name: str, emoji: str) -> str:
    if not emoji:
        return f"↩️ {escape(name)} убрал(а) реакцию"
    return f"💬 {escape(name)} отреагировал(а): {emoji}"


def mention_all_notice(sender: str) -> str:
    return f"🔔 <b>{escape(sender)}</b> упомянул(а) всех участников группы"


def mention_all_text(phones: Iterable[str]) -> str:
    return " ".join(f"@{phone}" for phone in phones)


def status_header(name: str) -> str:
    return f"📱 <b>Статус</b> · {escape(name)}"


def revoked_notice() -> str:
    return "🗑️ Сообщение отозвано"


# ----------------------------------------------------------------------
# Topic welcome and service messages
# ----------------------------------------------------------------------
@dataclass(slots=True)
class IdentitySnapshot:
    """What is known about a thread when its topic is created."""

    thread_id: str
    name: str
    is_group: bool = False
    phone: str | None = None
    handle: str | None = None
    about: str | None = None
    participants: int | None = None
    created_at: datetime | None = None
    first_seen: datetime | None = None


def _format_moment(moment: datetime | None, zone: tzinfo) -> str:
    if moment is None:
        return "—"
    return as_local_time(moment, zone).strftime("%d.%m.%Y %H:%M")


def welcome_message(snapshot: IdentitySnapshot, zone: tzinfo) -> str:
    if snapshot.is_group:
        lines = [
            "🏷️ <b>Информация о группе</b>",
            "",
            f"📝 <b>Название:</b> {escape(snapshot.name)}",
            f"👥 <b>Участников:</b> {snapshot.participants if snapshot.participants is not None else '—'}",
            f"🆔 <b>ID группы:</b> <code>{escape(snapshot.thread_id)}</code>",
            f"📅 <b>Создана:</b> {_format_moment(snapshot.created_at, zone)}",
            "",
            "💬 Сообщения этой группы появятся здесь. "
            "Напишите <code>@all</code> или <code>@everyone</code>, чтобы упомянуть всех.",
        ]
        return "\n".join(lines)
    lines = [
        "🏷️ <b>Информация о контакте</b>",
        "",
        f"📝 <b>Имя:</b> {escape(snapshot.name)}",
        f"📱 <b>Телефон:</b> +{escape(snapshot.phone or '')}",
        f"🖐️ <b>Отображаемое имя:</b> {escape(snapshot.handle or '—')}",
    ]
    if snapshot.about:
        lines.append(f"📄 <b>Статус:</b> {escape(snapshot.about)}")
    lines.extend(
        [
            f"🆔 <b>WhatsApp ID:</b> <code>{escape(snapshot.thread_id)}</code>",
            f"📅 <b>Первый контакт:</b> {_format_moment(snapshot.first_seen, zone)}",
            "",
            "💬 Сообщения этого контакта появятся здесь.",
        ]
    )
    return "\n".join(lines)


_CALL_STATUS_LABELS = {
    "offer": "входящий",
    "pickup": "принят",
    "hangup": "завершён",
    "missed": "пропущен",
    "declined": "отклонён",
    "timeout": "без ответа",
}


def call_notice(name: str, phone: str, status: str, moment: datetime, zone: tzinfo) -> str:
    label = _CALL_STATUS_LABELS.get(status.lower(), status)
    lines = [
        "📞 <b>Звонок</b>",
        "",
        f"👤 <b>От:</b> {escape(name)}",
        f"📱 <b>Номер:</b> +{escape(phone)}",
        f"⏰ <b>Время:</b> {_format_moment(moment, zone)}",
        f"📋 <b>Статус:</b> {escape(label)}",
    ]
    return "\n".join(lines)
