"""WhatsApp gateway client (Green API HTTP flavour) and notification parsing."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

import aiohttp

from .errors import PlatformError, TransientPlatformError
from .models import (
    CallEvent,
    ContactCard,
    GroupUpdateEvent,
    InboundEvent,
    Location,
    MediaRef,
    Platform,
    Reaction,
)
from .utils import is_group_jid

logger = logging.getLogger(__name__)

WhatsAppEvent = InboundEvent | CallEvent | GroupUpdateEvent

_RELAYED_WEBHOOKS = {"incomingMessageReceived", "outgoingMessageReceived"}
_VCARD_WAID_RE = re.compile(r"waid=(\d+)")
_VCARD_TEL_RE = re.compile(r"TEL[^:]*:([+\d\s\-()]+)")


class WhatsAppAPIProtocol(Protocol):
    async def send_text(
        self,
        chat_id: str,
        text: str,
        *,
        quoted_id: str | None = None,
        expiration: int | None = None,
    ) -> str: ...

    async def send_file(
        self,
        chat_id: str,
        data: bytes,
        filename: str,
        *,
        caption: str | None = None,
        quoted_id: str | None = None,
        expiration: int | None = None,
        view_once: bool = False,
    ) -> str: ...

    async def send_location(
        self,
        chat_id: str,
        latitude: float,
        longitude: float,
        *,
        name: str | None = None,
        address: str | None = None,
        quoted_id: str | None = None,
    ) -> str: ...

    async def send_contact(
        self, chat_id: str, phone: str, name: str, *, quoted_id: str | None = None
    ) -> str: ...

    async def send_reaction(self, chat_id: str, message_id: str, emoji: str) -> None: ...

    async def delete_message(self, chat_id: str, message_id: str) -> None: ...

    async def read_chat(self, chat_id: str, message_id: str | None = None) -> None: ...

    async def send_presence(self, chat_id: str | None, state: str) -> None: ...

    async def get_group_data(self, group_id: str) -> dict[str, Any]: ...

    async def get_contacts(self) -> list[dict[str, Any]]: ...

    async def get_contact_info(self, chat_id: str) -> dict[str, Any]: ...

    async def get_avatar(self, chat_id: str) -> str | None: ...

    async def download(self, url: str) -> bytes: ...


class WhatsAppAPI:
    """Thin asynchronous wrapper around the gateway REST API.

    URLs follow ``{api_url}/waInstance{instance}/{method}/{token}``.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        api_url: str,
        instance_id: str,
        token: str,
        media_url: str | None = None,
    ):
        self._session = session
        self._api_url = api_url.rstrip("/")
        self._media_url = (media_url or api_url).rstrip("/")
        self._instance_id = instance_id
        self._token = token

    def _url(self, method: str, *, media: bool = False, suffix: str = "") -> str:
        base = self._media_url if media else self._api_url
        url = f"{base}/waInstance{self._instance_id}/{method}/{self._token}"
        return f"{url}/{suffix}" if suffix else url

    async def _request(
        self,
        http_method: str,
        method: str,
        *,
        json: Mapping[str, Any] | None = None,
        data: aiohttp.FormData | None = None,
        params: Mapping[str, Any] | None = None,
        media: bool = False,
        suffix: str = "",
        timeout: float = 15.0,
    ) -> Any:
        url = self._url(method, media=media, suffix=suffix)
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=timeout)
            async with self._session.request(
                http_method,
                url,
                json=dict(json) if json is not None else None,
                data=data,
                params=dict(params) if params else None,
                timeout=timeout_cfg,
            ) as resp:
                status = resp.status
                try:
                    payload = await resp.json(content_type=None)
                except ValueError:
                    payload = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientPlatformError(
                f"WhatsApp {method}: {exc or type(exc).__name__}", method=method
            ) from exc
        if status == 429 or status >= 500:
            raise TransientPlatformError(
                f"WhatsApp {method}: HTTP {status}", status=status, method=method
            )
        if status >= 400:
            raise PlatformError(f"WhatsApp {method}: HTTP {status}", status=status, method=method)
        return payload

    @staticmethod
    def _message_id(payload: Any, method: str) -> str:
        if isinstance(payload, Mapping) and payload.get("idMessage"):
            return str(payload["idMessage"])
        raise PlatformError(f"WhatsApp {method}: нет idMessage в ответе", method=method)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------
    async def send_text(
        self,
        chat_id: str,
        text: str,
        *,
        quoted_id: str | None = None,
        expiration: int | None = None,
    ) -> str:
        body: dict[str, Any] = {"chatId": chat_id, "message": text}
        if quoted_id:
            body["quotedMessageId"] = quoted_id
        if expiration:
            body["ephemeralExpiration"] = expiration
        payload = await self._request("POST", "sendMessage", json=body)
        return self._message_id(payload, "sendMessage")

    async def send_file(
        self,
        chat_id: str,
        data: bytes,
        filename: str,
        *,
        caption: str | None = None,
        quoted_id: str | None = None,
        expiration: int | None = None,
        view_once: bool = False,
    ) -> str:
        form = aiohttp.FormData()
        form.add_field("chatId", chat_id)
        if caption:
            form.add_field("caption", caption)
        if quoted_id:
            form.add_field("quotedMessageId", quoted_id)
        if expiration:
            form.add_field("ephemeralExpiration", str(expiration))
        if view_once:
            form.add_field("viewOnce", "true")
        form.add_field("file", data, filename=filename)
        payload = await self._request(
            "POST", "sendFileByUpload", data=form, media=True, timeout=120.0
        )
        return self._message_id(payload, "sendFileByUpload")

    async def send_location(
        self,
        chat_id: str,
        latitude: float,
        longitude: float,
        *,
        name: str | None = None,
        address: str | None = None,
        quoted_id: str | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "chatId": chat_id,
            "latitude": latitude,
            "longitude": longitude,
            "nameLocation": name or "",
            "address": address or "",
        }
        if quoted_id:
            body["quotedMessageId"] = quoted_id
        payload = await self._request("POST", "sendLocation", json=body)
        return self._message_id(payload, "sendLocation")

    async def send_contact(
        self, chat_id: str, phone: str, name: str, *, quoted_id: str | None = None
    ) -> str:
        digits = "".join(ch for ch in phone if ch.isdigit())
        body: dict[str, Any] = {
            "chatId": chat_id,
            "contact": {"phoneContact": int(digits) if digits else 0, "firstName": name},
        }
        if quoted_id:
            body["quotedMessageId"] = quoted_id
        payload = await self._request("POST", "sendContact", json=body)
        return self._message_id(payload, "sendContact")

    async def send_reaction(self, chat_id: str, message_id: str, emoji: str) -> None:
        await self._request(
            "POST",
            "sendReaction",
            json={"chatId": chat_id, "idMessage": message_id, "reaction": emoji},
        )

    async def delete_message(self, chat_id: str, message_id: str) -> None:
        await self._request(
            "POST", "deleteMessage", json={"chatId": chat_id, "idMessage": message_id}
        )

    async def read_chat(self, chat_id: str, message_id: str | None = None) -> None:
        body: dict[str, Any] = {"chatId": chat_id}
        if message_id:
            body["idMessage"] = message_id
        await self._request("POST", "readChat", json=body)

    async def send_presence(self, chat_id: str | None, state: str) -> None:
        body: dict[str, Any] = {"presence": state}
        if chat_id:
            body["chatId"] = chat_id
        await self._request("POST", "setPresence", json=body)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def get_group_data(self, group_id: str) -> dict[str, Any]:
        payload = await self._request("POST", "getGroupData", json={"groupId": group_id})
        return dict(payload) if isinstance(payload, Mapping) else {}

    async def get_contacts(self) -> list[dict[str, Any]]:
        payload = await self._request("GET", "getContacts", timeout=30.0)
        if not isinstance(payload, list):
            return []
        return [dict(item) for item in payload if isinstance(item, Mapping)]

    async def get_contact_info(self, chat_id: str) -> dict[str, Any]:
        payload = await self._request("POST", "getContactInfo", json={"chatId": chat_id})
        return dict(payload) if isinstance(payload, Mapping) else {}

    async def get_avatar(self, chat_id: str) -> str | None:
        payload = await self._request("POST", "getAvatar", json={"chatId": chat_id})
        if isinstance(payload, Mapping) and payload.get("urlAvatar"):
            return str(payload["urlAvatar"])
        return None

    async def download(self, url: str) -> bytes:
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=120)
            async with self._session.get(url, timeout=timeout_cfg) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise TransientPlatformError(
                        f"WhatsApp download: HTTP {resp.status}", status=resp.status
                    )
                if resp.status >= 400:
                    raise PlatformError(
                        f"WhatsApp download: HTTP {resp.status}", status=resp.status
                    )
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientPlatformError(
                f"WhatsApp download: {exc or type(exc).__name__}"
            ) from exc

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    async def receive_notification(self, timeout: int = 20) -> dict[str, Any] | None:
        payload = await self._request(
            "GET",
            "receiveNotification",
            params={"receiveTimeout": timeout},
            timeout=timeout + 10,
        )
        if isinstance(payload, Mapping) and payload.get("receiptId") is not None:
            return dict(payload)
        return None

    async def delete_notification(self, receipt_id: int) -> None:
        await self._request("DELETE", "deleteNotification", suffix=str(receipt_id))


def _parse_timestamp(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


def _media(file_data: Mapping[str, Any]) -> MediaRef | None:
    url = file_data.get("downloadUrl")
    if not url:
        return None
    return MediaRef(
        source=str(url),
        file_name=file_data.get("fileName") or None,
        mime_type=file_data.get("mimeType") or None,
        animated=bool(file_data.get("isAnimated", False)),
    )


def _contact_from_vcard(data: Mapping[str, Any]) -> ContactCard | None:
    vcard = str(data.get("vcard") or "")
    name = str(data.get("displayName") or "")
    match = _VCARD_WAID_RE.search(vcard)
    phone = match.group(1) if match else ""
    if not phone:
        tel = _VCARD_TEL_RE.search(vcard)
        phone = "".join(ch for ch in tel.group(1) if ch.isdigit()) if tel else ""
    if not phone and not name:
        return None
    return ContactCard(phone=phone, name=name or phone)


def parse_notification(body: Mapping[str, Any]) -> WhatsAppEvent | None:
    """Normalize one gateway notification body; unknown kinds return ``None``."""

    webhook = str(body.get("typeWebhook") or "")
    if webhook == "incomingCall":
        caller = str(body.get("from") or "")
        if not caller:
            return None
        return CallEvent(
            caller=caller,
            call_id=str(body.get("idMessage") or ""),
            status=str(body.get("status") or "offer"),
            timestamp=_parse_timestamp(body.get("timestamp")),
        )
    if webhook not in _RELAYED_WEBHOOKS:
        return None

    sender_data = body.get("senderData") or {}
    message_data = body.get("messageData") or {}
    chat_id = str(sender_data.get("chatId") or "")
    if not chat_id:
        return None
    kind = str(message_data.get("typeMessage") or "")
    if kind == "notificationMessage" and is_group_jid(chat_id):
        return GroupUpdateEvent(group_id=chat_id, action=message_data.get("typeNotification"))

    event = InboundEvent(
        platform=Platform.WHATSAPP,
        chat_id=chat_id,
        message_id=str(body.get("idMessage") or ""),
        sender_id=str(sender_data.get("sender") or chat_id),
        sender_name=(
            sender_data.get("senderContactName") or sender_data.get("senderName") or None
        ),
        sender_contact_name=sender_data.get("senderContactName") or None,
        timestamp=_parse_timestamp(body.get("timestamp")),
        from_me=webhook == "outgoingMessageReceived",
        is_group=is_group_jid(chat_id),
        chat_name=sender_data.get("chatName") or None,
    )

    quoted = message_data.get("quotedMessage") or {}
    if kind != "reactionMessage" and quoted.get("stanzaId"):
        event.quoted_id = str(quoted["stanzaId"])
        event.quoted_participant = quoted.get("participant") or None
        event.quoted_text = (
            quoted.get("textMessage")
            or quoted.get("caption")
            or (quoted.get("extendedTextMessage") or {}).get("text")
            or None
        )

    file_data = message_data.get("fileMessageData") or {}
    if kind == "textMessage":
        event.text = str((message_data.get("textMessageData") or {}).get("textMessage") or "")
    elif kind in {"extendedTextMessage", "quotedMessage"}:
        event.text = str((message_data.get("extendedTextMessageData") or {}).get("text") or "")
    elif kind == "reactionMessage":
        emoji = str((message_data.get("extendedTextMessageData") or {}).get("text") or "")
        target = quoted.get("stanzaId")
        if not target:
            return None
        event.reaction = Reaction(target_message_id=str(target), emoji=emoji)
    elif kind == "deletedMessage":
        deleted = message_data.get("deletedMessageData") or {}
        target = deleted.get("stanzaId") or deleted.get("idMessage")
        if not target:
            return None
        event.revoked_id = str(target)
    elif kind == "imageMessage":
        event.photo = _media(file_data)
    elif kind in {"videoMessage", "ptvMessage"}:
        media = _media(file_data)
        if kind == "ptvMessage" or file_data.get("ptv"):
            event.video_note = media
        else:
            event.video = media
    elif kind == "audioMessage":
        media = _media(file_data)
        if file_data.get("ptt"):
            event.voice = media
        else:
            event.audio = media
    elif kind == "documentMessage":
        event.document = _media(file_data)
    elif kind == "stickerMessage":
        event.sticker = _media(file_data)
    elif kind == "locationMessage":
        location = message_data.get("locationMessageData") or message_data.get("location") or {}
        try:
            event.location = Location(
                latitude=float(location["latitude"]),
                longitude=float(location["longitude"]),
                name=location.get("nameLocation") or None,
                address=location.get("address") or None,
            )
        except (KeyError, TypeError, ValueError):
            return None
    elif kind == "contactMessage":
        contact = message_data.get("contactMessageData") or message_data.get("contact") or {}
        event.contact = _contact_from_vcard(contact)
    else:
        logger.debug("Пропущено уведомление WhatsApp с типом %s", kind or "?")
        return None

    if file_data:
        event.caption = file_data.get("caption") or None
    return event
