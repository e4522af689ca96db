"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

from .app import BridgeApp
from .config import DEFAULT_WHATSAPP_API_URL
from .errors import ConfigurationError


def main() -> None:
    parser = argparse.ArgumentParser(description="Bridge WhatsApp chats into Telegram forum topics")
    parser.add_argument("--db-path", default="bridge.db", help="Путь к файлу хранилища")
    parser.add_argument(
        "--telegram-token",
        default=os.getenv("BRIDGE_TELEGRAM_TOKEN"),
        help="Токен Telegram бота. Можно передать через BRIDGE_TELEGRAM_TOKEN",
    )
    parser.add_argument(
        "--telegram-chat-id",
        default=os.getenv("BRIDGE_TELEGRAM_CHAT_ID"),
        help="ID форум-группы Telegram (BRIDGE_TELEGRAM_CHAT_ID)",
    )
    parser.add_argument(
        "--owner-id",
        default=os.getenv("BRIDGE_OWNER_ID"),
        help="Telegram ID владельца моста (BRIDGE_OWNER_ID)",
    )
    parser.add_argument(
        "--whatsapp-instance",
        default=os.getenv("BRIDGE_WHATSAPP_INSTANCE"),
        help="ID инстанса WhatsApp шлюза (BRIDGE_WHATSAPP_INSTANCE)",
    )
    parser.add_argument(
        "--whatsapp-token",
        default=os.getenv("BRIDGE_WHATSAPP_TOKEN"),
        help="Токен WhatsApp шлюза (BRIDGE_WHATSAPP_TOKEN)",
    )
    parser.add_argument(
        "--whatsapp-api-url",
        default=os.getenv("BRIDGE_WHATSAPP_API_URL"),
        help=f"Адрес API WhatsApp шлюза, по умолчанию {DEFAULT_WHATSAPP_API_URL}",
    )
    parser.add_argument("--log-level", default="INFO", help="Уровень логирования")
    args = parser.parse_args()

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        app = BridgeApp(
            db_path=Path(args.db_path),
            telegram_token=args.telegram_token,
            telegram_chat_id=args.telegram_chat_id,
            owner_id=args.owner_id,
            whatsapp_instance=args.whatsapp_instance,
            whatsapp_token=args.whatsapp_token,
            whatsapp_api_url=args.whatsapp_api_url,
        )
    except ConfigurationError as exc:
        parser.error(str(exc))

    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Остановка по запросу пользователя")


if __name__ == "__main__":
    main()
