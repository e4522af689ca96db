"""Per-variant relay adapters and the platform targets they deliver to."""

from __future__ import annotations

import logging
from pathlib import PurePath
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol

from .crossref import CrossReferenceIndex
from .errors import ConversionError, NotFoundError, PlatformError, TransientPlatformError
from .formatting import (
    TELEGRAM_CAPTION_LIMIT,
    TELEGRAM_TEXT_LIMIT,
    chunk_html,
    reaction_notice,
    revoked_notice,
)
from .media import TranscoderProtocol
from .models import ContactCard, ContentVariant, Destination, InboundEvent, Location, MediaRef

if TYPE_CHECKING:
    from .telegram import TelegramAPIProtocol
    from .whatsapp import WhatsAppAPIProtocol

logger = logging.getLogger(__name__)

Downloader = Callable[[MediaRef], Awaitable[bytes]]

_TELEGRAM_KINDS = {
    ContentVariant.IMAGE: "photo",
    ContentVariant.VIDEO: "video",
    ContentVariant.VIDEO_NOTE: "video_note",
    ContentVariant.AUDIO: "audio",
    ContentVariant.DOCUMENT: "document",
    ContentVariant.STICKER: "sticker",
}

_DEFAULT_NAMES = {
    ContentVariant.IMAGE: "image.jpg",
    ContentVariant.VIDEO: "video.mp4",
    ContentVariant.VIDEO_NOTE: "video_note.mp4",
    ContentVariant.AUDIO: "audio.ogg",
    ContentVariant.DOCUMENT: "document",
    ContentVariant.STICKER: "sticker.webp",
}


def _extension(media: MediaRef) -> str:
    if media.file_name:
        suffix = PurePath(media.file_name).suffix.lstrip(".").lower()
        if suffix:
            return suffix
    if media.mime_type and "/" in media.mime_type:
        return media.mime_type.split("/", 1)[1].split(";", 1)[0].lower()
    return ""


def _is_voice(media: MediaRef) -> bool:
    mime = (media.mime_type or "").lower()
    return "ogg" in mime or "opus" in mime or _extension(media) in {"ogg", "oga", "opus"}


class TargetPlatform(Protocol):
    """Send side of a chat platform."""

    async def send_text(self, destination: Destination, text: str) -> str: ...

    async def send_media(
        self,
        destination: Destination,
        variant: ContentVariant,
        data: bytes,
        media: MediaRef,
        caption: str | None,
    ) -> str: ...

    async def send_location(self, destination: Destination, location: Location) -> str: ...

    async def send_contact(self, destination: Destination, contact: ContactCard) -> str: ...


class TelegramTarget:
    """Delivers into a forum topic; text and captions are Telegram HTML."""

    def __init__(self, api: "TelegramAPIProtocol") -> None:
        self._api = api

    @staticmethod
    def _reply_to(destination: Destination) -> int | None:
        if destination.reply_to and destination.reply_to.isdigit():
            return int(destination.reply_to)
        return None

    async def send_text(self, destination: Destination, text: str) -> str:
        first_id: int | None = None
        for chunk in chunk_html(text, TELEGRAM_TEXT_LIMIT):
            message_id = await self._api.send_message(
                int(destination.chat_id),
                chunk,
                parse_mode="HTML",
                message_thread_id=destination.thread_id,
                reply_to=self._reply_to(destination) if first_id is None else None,
            )
            if first_id is None:
                first_id = message_id
        if first_id is None:
            raise PlatformError("Пустой текст не отправлен", method="sendMessage")
        return str(first_id)

    async def send_media(
        self,
        destination: Destination,
        variant: ContentVariant,
        data: bytes,
        media: MediaRef,
        caption: str | None,
    ) -> str:
        kind = _TELEGRAM_KINDS[variant]
        if variant is ContentVariant.AUDIO and _is_voice(media):
            kind = "voice"
        if caption and len(caption) > TELEGRAM_CAPTION_LIMIT:
            caption = chunk_html(caption, TELEGRAM_CAPTION_LIMIT)[0]
        message_id = await self._api.send_file(
            kind,
            int(destination.chat_id),
            data,
            filename=media.file_name or _DEFAULT_NAMES[variant],
            caption=caption,
            message_thread_id=destination.thread_id,
            reply_to=self._reply_to(destination),
        )
        return str(message_id)

    async def send_location(self, destination: Destination, location: Location) -> str:
        message_id = await self._api.send_location(
            int(destination.chat_id),
            location.latitude,
            location.longitude,
            message_thread_id=destination.thread_id,
            reply_to=self._reply_to(destination),
        )
        return str(message_id)

    async def send_contact(self, destination: Destination, contact: ContactCard) -> str:
        message_id = await self._api.send_contact(
            int(destination.chat_id),
            f"+{contact.phone}" if contact.phone else contact.name,
            contact.name,
            message_thread_id=destination.thread_id,
            reply_to=self._reply_to(destination),
        )
        return str(message_id)


class WhatsAppTarget:
    """Delivers into a WhatsApp chat; text uses WhatsApp markup."""

    def __init__(self, api: "WhatsAppAPIProtocol") -> None:
        self._api = api

    async def send_text(self, destination: Destination, text: str) -> str:
        return await self._api.send_text(
            destination.chat_id,
            text,
            quoted_id=destination.reply_to,
            expiration=destination.expiration,
        )

    async def send_media(
        self,
        destination: Destination,
        variant: ContentVariant,
        data: bytes,
        media: MediaRef,
        caption: str | None,
    ) -> str:
        return await self._api.send_file(
            destination.chat_id,
            data,
            media.file_name or _DEFAULT_NAMES[variant],
            caption=caption,
            quoted_id=destination.reply_to,
            expiration=destination.expiration,
            view_once=destination.view_once and variant in {
                ContentVariant.IMAGE,
                ContentVariant.VIDEO,
            },
        )

    async def send_location(self, destination: Destination, location: Location) -> str:
        return await self._api.send_location(
            destination.chat_id,
            location.latitude,
            location.longitude,
            name=location.name,
            address=location.address,
            quoted_id=destination.reply_to,
        )

    async def send_contact(self, destination: Destination, contact: ContactCard) -> str:
        return await self._api.send_contact(
            destination.chat_id, contact.phone, contact.name, quoted_id=destination.reply_to
        )


class RelayAdapter(Protocol):
    async def relay(self, event: InboundEvent, destination: Destination, body: str) -> str | None: ...


class TextAdapter:
    def __init__(self, target: TargetPlatform) -> None:
        self._target = target

    async def relay(self, event: InboundEvent, destination: Destination, body: str) -> str | None:
        if not body:
            return None
        return await self._target.send_text(destination, body)


class LocationAdapter:
    def __init__(self, target: TargetPlatform) -> None:
        self._target = target

    async def relay(self, event: InboundEvent, destination: Destination, body: str) -> str | None:
        if event.location is None:
            return None
        message_id = await self._target.send_location(destination, event.location)
        if body:
            await self._target.send_text(destination, body)
        return message_id


class ContactAdapter:
    def __init__(self, target: TargetPlatform) -> None:
        self._target = target

    async def relay(self, event: InboundEvent, destination: Destination, body: str) -> str | None:
        if event.contact is None:
            return None
        return await self._target.send_contact(destination, event.contact)


class MediaAdapter:
    """download → transform → send for one media variant."""

    def __init__(
        self,
        variant: ContentVariant,
        media_field: Callable[[InboundEvent], MediaRef | None],
        downloader: Downloader,
        target: TargetPlatform,
    ) -> None:
        self.variant = variant
        self._media_field = media_field
        self._downloader = downloader
        self._target = target

    async def download(self, media: MediaRef) -> bytes:
        return await self._downloader(media)

    async def transform(self, data: bytes, media: MediaRef) -> tuple[bytes, MediaRef, ContentVariant]:
        return data, media, self.variant

    async def send(
        self,
        destination: Destination,
        data: bytes,
        media: MediaRef,
        variant: ContentVariant,
        caption: str | None,
    ) -> str:
        return await self._target.send_media(destination, variant, data, media, caption)

    async def relay(self, event: InboundEvent, destination: Destination, body: str) -> str | None:
        media = self._media_field(event)
        if media is None:
            return None
        data = await self.download(media)
        data, media, variant = await self.transform(data, media)
        return await self.send(destination, data, media, variant, body or None)


class VideoNoteAdapter(MediaAdapter):
    """Square-crops WhatsApp round videos; falls back to a plain video."""

    def __init__(self, *args: object, transcoder: TranscoderProtocol, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self._transcoder = transcoder

    async def transform(self, data: bytes, media: MediaRef) -> tuple[bytes, MediaRef, ContentVariant]:
        try:
            converted = await self._transcoder.convert(data, "mp4", "video_note")
        except ConversionError as exc:
            logger.warning("Не удалось подготовить видеосообщение, отправляем как видео: %s", exc)
            return data, media, ContentVariant.VIDEO
        return converted, MediaRef(source=media.source, file_name="video_note.mp4"), self.variant


class StickerAdapter(MediaAdapter):
    """Sends stickers natively and falls back to a PNG picture.

    Animated WebM stickers are re-encoded to animated WebP first.
    """

    def __init__(
        self,
        *args: object,
        transcoder: TranscoderProtocol,
        fallback_caption: str = "Стикер",
        **kwargs: object,
    ) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self._transcoder = transcoder
        self._fallback_caption = fallback_caption

    async def transform(self, data: bytes, media: MediaRef) -> tuple[bytes, MediaRef, ContentVariant]:
        extension = _extension(media)
        if media.animated and extension in {"webm", "mp4"}:
            converted = await self._transcoder.convert(data, extension, "webp")
            return converted, MediaRef(source=media.source, file_name="sticker.webp"), self.variant
        if extension == "tgs":
            raise ConversionError("Анимированные стикеры TGS не поддерживаются")
        return data, media, self.variant

    async def relay(self, event: InboundEvent, destination: Destination, body: str) -> str | None:
        media = self._media_field(event)
        if media is None:
            return None
        data = await self.download(media)
        try:
            converted, ref, variant = await self.transform(data, media)
            return await self.send(destination, converted, ref, variant, None)
        except (TransientPlatformError, NotFoundError):
            raise
        except (ConversionError, PlatformError) as exc:
            logger.info("Стикер отправляется как изображение: %s", exc)
        if _extension(media) not in {"webp", ""}:
            raise ConversionError("Нет запасного представления для стикера")
        png = await self._transcoder.convert(data, "webp", "png")
        return await self._target.send_media(
            destination,
            ContentVariant.IMAGE,
            png,
            MediaRef(source=media.source, file_name="sticker.png", mime_type="image/png"),
            self._fallback_caption,
        )


class ReactionNoticeAdapter:
    """WhatsApp reaction shown as a short reply under the reacted message."""

    def __init__(self, target: TargetPlatform, crossref: CrossReferenceIndex) -> None:
        self._target = target
        self._crossref = crossref

    async def relay(self, event: InboundEvent, destination: Destination, body: str) -> str | None:
        if event.reaction is None:
            return None
        local_id = self._crossref.resolve_remote(event.reaction.target_message_id)
        if local_id is None:
            logger.debug("Реакция на неизвестное сообщение %s", event.reaction.target_message_id)
            return None
        destination.reply_to = str(local_id)
        name = event.sender_name or event.sender_id
        return await self._target.send_text(destination, reaction_notice(name, event.reaction.emoji))


class NativeReactionAdapter:
    """Telegram reaction mirrored as a WhatsApp reaction on the paired message."""

    def __init__(self, api: "WhatsAppAPIProtocol", crossref: CrossReferenceIndex) -> None:
        self._api = api
        self._crossref = crossref

    async def relay(self, event: InboundEvent, destination: Destination, body: str) -> str | None:
        if event.reaction is None or not event.reaction.target_message_id.isdigit():
            return None
        remote = self._crossref.resolve_local(int(event.reaction.target_message_id))
        if remote is None:
            return None
        await self._api.send_reaction(remote.chat_id, remote.message_id, event.reaction.emoji)
        return None


class RevokeNoticeAdapter:
    """WhatsApp deletion: invalidate the pair and mark the Telegram copy."""

    def __init__(self, target: TargetPlatform, crossref: CrossReferenceIndex) -> None:
        self._target = target
        self._crossref = crossref

    async def relay(self, event: InboundEvent, destination: Destination, body: str) -> str | None:
        if not event.revoked_id:
            return None
        local_id = self._crossref.resolve_remote(event.revoked_id)
        if local_id is None:
            return None
        destination.reply_to = str(local_id)
        message_id = await self._target.send_text(destination, revoked_notice())
        # a retried task must still find the pair
        self._crossref.revoke(local_id)
        return message_id
