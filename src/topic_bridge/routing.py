"""Structural classification of inbound events and per-variant dispatch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Mapping

from .adapters import (
    ContactAdapter,
    LocationAdapter,
    MediaAdapter,
    NativeReactionAdapter,
    ReactionNoticeAdapter,
    RelayAdapter,
    RevokeNoticeAdapter,
    StickerAdapter,
    TelegramTarget,
    TextAdapter,
    VideoNoteAdapter,
    WhatsAppTarget,
)
from .errors import NotFoundError, TransientPlatformError
from .media import TranscoderProtocol
from .models import ContentVariant, Destination, InboundEvent, MediaRef, Platform

if TYPE_CHECKING:
    from .crossref import CrossReferenceIndex
    from .telegram import TelegramAPIProtocol
    from .whatsapp import WhatsAppAPIProtocol

logger = logging.getLogger(__name__)

_WHATSAPP_ORDER: tuple[tuple[str, ContentVariant], ...] = (
    ("video_note", ContentVariant.VIDEO_NOTE),
    ("photo", ContentVariant.IMAGE),
    ("video", ContentVariant.VIDEO),
    ("voice", ContentVariant.AUDIO),
    ("audio", ContentVariant.AUDIO),
    ("document", ContentVariant.DOCUMENT),
    ("sticker", ContentVariant.STICKER),
    ("location", ContentVariant.LOCATION),
    ("contact", ContentVariant.CONTACT),
    ("text", ContentVariant.TEXT),
)

_TELEGRAM_ORDER: tuple[tuple[str, ContentVariant], ...] = (
    ("photo", ContentVariant.IMAGE),
    ("video", ContentVariant.VIDEO),
    ("animation", ContentVariant.VIDEO),
    ("video_note", ContentVariant.VIDEO_NOTE),
    ("voice", ContentVariant.AUDIO),
    ("audio", ContentVariant.AUDIO),
    ("document", ContentVariant.DOCUMENT),
    ("sticker", ContentVariant.STICKER),
    ("location", ContentVariant.LOCATION),
    ("contact", ContentVariant.CONTACT),
    ("text", ContentVariant.TEXT),
)

_ORDERS = {Platform.WHATSAPP: _WHATSAPP_ORDER, Platform.TELEGRAM: _TELEGRAM_ORDER}


def classify(event: InboundEvent) -> ContentVariant | None:
    """Return the single content variant of ``event``; first populated field wins."""

    if event.reaction is not None:
        return ContentVariant.REACTION
    if event.revoked_id:
        return ContentVariant.REVOKE
    for attr, variant in _ORDERS[event.platform]:
        if getattr(event, attr):
            return variant
    return None


def media_of(event: InboundEvent, variant: ContentVariant) -> MediaRef | None:
    for attr, candidate in _ORDERS[event.platform]:
        if candidate is not variant:
            continue
        value = getattr(event, attr)
        if isinstance(value, MediaRef):
            return value
    return None


def _field_for(variant: ContentVariant) -> Callable[[InboundEvent], MediaRef | None]:
    return lambda event: media_of(event, variant)


@dataclass(slots=True)
class RelayResult:
    variant: ContentVariant | None
    message_id: str | None = None
    delivered: bool = False
    error: str | None = None


@dataclass(slots=True)
class RelayDirection:
    """Adapters for events originating on ``source``."""

    source: Platform
    adapters: dict[ContentVariant, RelayAdapter] = field(default_factory=dict)

    @property
    def name(self) -> str:
        target = Platform.TELEGRAM if self.source is Platform.WHATSAPP else Platform.WHATSAPP
        return f"{self.source.value}→{target.value}"


class MessageRouter:
    """Pick the adapter for an event and isolate its failures.

    Transient and not-found errors propagate so the queue can retry and the
    engine can recreate a topic; everything else is logged and reported as an
    undelivered :class:`RelayResult`.
    """

    def __init__(self, directions: Mapping[Platform, RelayDirection]):
        self._directions = dict(directions)

    async def route(self, event: InboundEvent, destination: Destination, body: str) -> RelayResult:
        variant = classify(event)
        if variant is None:
            logger.debug("Пустое событие %s пропущено", event.message_id)
            return RelayResult(variant=None, error="empty")
        direction = self._directions.get(event.platform)
        adapter = direction.adapters.get(variant) if direction else None
        if adapter is None:
            logger.warning(
                "Нет обработчика для %s (%s)", variant.value, event.platform.value
            )
            return RelayResult(variant=variant, error="unsupported")
        try:
            message_id = await adapter.relay(event, destination, body)
        except (asyncio.CancelledError, TransientPlatformError, NotFoundError):
            raise
        except Exception as exc:
            logger.exception(
                "Ошибка пересылки %s %s из %s",
                variant.value,
                event.message_id,
                direction.name if direction else event.platform.value,
            )
            return RelayResult(variant=variant, error=str(exc) or type(exc).__name__)
        return RelayResult(variant=variant, message_id=message_id, delivered=True)


def build_router(
    telegram: "TelegramAPIProtocol",
    whatsapp: "WhatsAppAPIProtocol",
    crossref: "CrossReferenceIndex",
    transcoder: TranscoderProtocol,
) -> MessageRouter:
    """Wire both relay directions over the two platform clients."""

    to_telegram = TelegramTarget(telegram)
    to_whatsapp = WhatsAppTarget(whatsapp)

    async def from_whatsapp(media: MediaRef) -> bytes:
        return await whatsapp.download(media.source)

    async def from_telegram(media: MediaRef) -> bytes:
        return await telegram.download(media.source)

    def media_adapters(downloader, target) -> dict[ContentVariant, RelayAdapter]:
        adapters: dict[ContentVariant, RelayAdapter] = {}
        for variant in (
            ContentVariant.IMAGE,
            ContentVariant.VIDEO,
            ContentVariant.AUDIO,
            ContentVariant.DOCUMENT,
        ):
            adapters[variant] = MediaAdapter(variant, _field_for(variant), downloader, target)
        adapters[ContentVariant.STICKER] = StickerAdapter(
            ContentVariant.STICKER,
            _field_for(ContentVariant.STICKER),
            downloader,
            target,
            transcoder=transcoder,
        )
        adapters[ContentVariant.TEXT] = TextAdapter(target)
        adapters[ContentVariant.LOCATION] = LocationAdapter(target)
        adapters[ContentVariant.CONTACT] = ContactAdapter(target)
        return adapters

    inbound = media_adapters(from_whatsapp, to_telegram)
    inbound[ContentVariant.VIDEO_NOTE] = VideoNoteAdapter(
        ContentVariant.VIDEO_NOTE,
        _field_for(ContentVariant.VIDEO_NOTE),
        from_whatsapp,
        to_telegram,
        transcoder=transcoder,
    )
    inbound[ContentVariant.REACTION] = ReactionNoticeAdapter(to_telegram, crossref)
    inbound[ContentVariant.REVOKE] = RevokeNoticeAdapter(to_telegram, crossref)

    outbound = media_adapters(from_telegram, to_whatsapp)
    # round videos have no WhatsApp counterpart; sent as ordinary video
    outbound[ContentVariant.VIDEO_NOTE] = MediaAdapter(
        ContentVariant.VIDEO, _field_for(ContentVariant.VIDEO_NOTE), from_telegram, to_whatsapp
    )
    outbound[ContentVariant.REACTION] = NativeReactionAdapter(whatsapp, crossref)

    return MessageRouter(
        {
            Platform.WHATSAPP: RelayDirection(Platform.WHATSAPP, inbound),
            Platform.TELEGRAM: RelayDirection(Platform.TELEGRAM, outbound),
        }
    )
