from __future__ import annotations

from pathlib import Path

import pytest

from topic_bridge.config import DEFAULT_WHATSAPP_API_URL, OverflowPolicy, load_settings
from topic_bridge.errors import ConfigurationError
from topic_bridge.mapping_store import MappingStore

CREDENTIALS = {
    "telegram_token": "123:abc",
    "telegram_chat_id": "-100500",
    "owner_id": "42",
    "whatsapp_instance": "1101",
    "whatsapp_token": "secret",
}


def test_explicit_credentials_and_defaults(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / "db.sqlite")

    settings = load_settings(store, **CREDENTIALS)

    assert settings.telegram_chat_id == -100500
    assert settings.owner_id == 42
    assert settings.whatsapp_api_url == DEFAULT_WHATSAPP_API_URL
    assert settings.queue_max_size == 1000
    assert settings.queue_policy is OverflowPolicy.REJECT
    assert settings.crossref_max_entries == 0
    assert settings.rate_limit.max_count == 30
    assert settings.rate_limit.window_seconds == 60.0
    assert settings.features.read_receipts and settings.features.pin_welcome


def test_credentials_fall_back_to_stored_settings(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / "db.sqlite")
    store.set_setting("telegram.token", "stored:token")
    store.set_setting("telegram.chat_id", "-1001")
    store.set_setting("telegram.owner_id", "7")
    store.set_setting("whatsapp.instance", "2202")
    store.set_setting("whatsapp.token", "stored")
    store.set_setting("whatsapp.api_url", "https://gate.example.com/")

    settings = load_settings(store, telegram_token="explicit:token")

    assert settings.telegram_token == "explicit:token"
    assert settings.telegram_chat_id == -1001
    assert settings.whatsapp_instance == "2202"
    assert settings.whatsapp_api_url == "https://gate.example.com"


@pytest.mark.parametrize(
    "override",
    [
        {"telegram_token": "YOUR_BOT_TOKEN"},
        {"telegram_chat_id": "YOUR_CHAT_ID"},
        {"whatsapp_token": "your_token_here"},
        {"whatsapp_instance": "  "},
        {"owner_id": "not-a-number"},
    ],
)
def test_placeholder_or_missing_credentials_are_rejected(
    tmp_path: Path, override: dict[str, str]
) -> None:
    store = MappingStore(tmp_path / "db.sqlite")

    with pytest.raises(ConfigurationError):
        load_settings(store, **{**CREDENTIALS, **override})


def test_runtime_settings_are_parsed(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / "db.sqlite")
    for key, value in {
        "rate_limit.max_count": "5",
        "rate_limit.window": "2m",
        "queue.max_size": "10",
        "queue.policy": "DROP_OLDEST",
        "queue.task_timeout": "30s",
        "queue.max_retries": "-1",
        "crossref.max_entries": "500",
        "topics.verify_ttl": "5m",
        "sync.contacts_interval": "10",
        "display.timezone": "Europe/Moscow",
        "features.read_receipts": "off",
        "features.call_logs": "no",
        "features.presence": "garbage",
    }.items():
        store.set_setting(key, value)

    settings = load_settings(store, **CREDENTIALS)

    assert settings.rate_limit.max_count == 5
    assert settings.rate_limit.window_seconds == 120.0
    assert settings.queue_max_size == 10
    assert settings.queue_policy is OverflowPolicy.DROP_OLDEST
    assert settings.task_timeout == 30.0
    assert settings.max_retries == 0
    assert settings.crossref_max_entries == 500
    assert settings.topic_verify_ttl == 300.0
    assert settings.contacts_sync_interval == 60.0
    assert settings.timezone == "Europe/Moscow"
    assert not settings.features.read_receipts
    assert not settings.features.call_logs
    assert settings.features.presence


def test_unknown_queue_policy_falls_back_to_reject(tmp_path: Path) -> None:
    store = MappingStore(tmp_path / "db.sqlite")
    store.set_setting("queue.policy", "block")

    assert load_settings(store, **CREDENTIALS).queue_policy is OverflowPolicy.REJECT
