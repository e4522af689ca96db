"""Startup and runtime configuration."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum

from .errors import ConfigurationError
from .mapping_store import MappingStore
from .models import RateLimitConfig
from .utils import parse_bool, parse_duration, parse_float, parse_int

DEFAULT_WHATSAPP_API_URL = "https://api.green-api.com"

_PLACEHOLDER_MARKERS = ("YOUR_BOT_TOKEN", "YOUR_CHAT_ID", "YOUR_")


class OverflowPolicy(str, Enum):
    REJECT = "reject"
    DROP_OLDEST = "drop_oldest"


@dataclass(slots=True)
class FeatureFlags:
    read_receipts: bool = True
    presence: bool = True
    status_sync: bool = True
    call_logs: bool = True
    profile_pictures: bool = True
    revoke_buttons: bool = True
    pin_welcome: bool = True


@dataclass(slots=True)
class BridgeSettings:
    """Everything the engine needs to run one bridge instance."""

    telegram_token: str
    telegram_chat_id: int
    owner_id: int
    whatsapp_instance: str
    whatsapp_token: str
    whatsapp_api_url: str = DEFAULT_WHATSAPP_API_URL
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    queue_max_size: int = 1000
    queue_policy: OverflowPolicy = OverflowPolicy.REJECT
    task_timeout: float = 60.0
    max_retries: int = 3
    retry_delay: float = 1.0
    crossref_max_entries: int = 0
    topic_verify_ttl: float = 60.0
    contacts_sync_interval: float = 1800.0
    telegram_rate: float = 20.0
    timezone: str = "UTC"
    features: FeatureFlags = field(default_factory=FeatureFlags)


def _is_placeholder(value: str) -> bool:
    upper = value.upper()
    return any(marker in upper for marker in _PLACEHOLDER_MARKERS)


def _require(name: str, value: str | None) -> str:
    candidate = (value or "").strip()
    if not candidate:
        raise ConfigurationError(f"Не задан параметр {name}")
    if _is_placeholder(candidate):
        raise ConfigurationError(f"Параметр {name} содержит шаблонное значение")
    return candidate


def _require_int(name: str, value: str | None) -> int:
    candidate = _require(name, value)
    try:
        return int(candidate)
    except ValueError as exc:
        raise ConfigurationError(f"Параметр {name} должен быть числом") from exc


def load_settings(
    store: MappingStore,
    *,
    telegram_token: str | None = None,
    telegram_chat_id: str | None = None,
    owner_id: str | None = None,
    whatsapp_instance: str | None = None,
    whatsapp_token: str | None = None,
    whatsapp_api_url: str | None = None,
) -> BridgeSettings:
    """Merge explicit credentials with values stored in the settings table.

    Explicit arguments win over stored values. Missing or placeholder
    credentials raise :class:`ConfigurationError`.
    """

    def setting(key: str) -> str | None:
        return store.get_setting(key)

    settings = BridgeSettings(
        telegram_token=_require("telegram token", telegram_token or setting("telegram.token")),
        telegram_chat_id=_require_int(
            "telegram chat id", telegram_chat_id or setting("telegram.chat_id")
        ),
        owner_id=_require_int("owner id", owner_id or setting("telegram.owner_id")),
        whatsapp_instance=_require(
            "whatsapp instance", whatsapp_instance or setting("whatsapp.instance")
        ),
        whatsapp_token=_require("whatsapp token", whatsapp_token or setting("whatsapp.token")),
        whatsapp_api_url=(
            whatsapp_api_url or setting("whatsapp.api_url") or DEFAULT_WHATSAPP_API_URL
        ).rstrip("/"),
    )

    settings.rate_limit = RateLimitConfig(
        max_count=max(1, parse_int(setting("rate_limit.max_count"), 30)),
        window_seconds=parse_duration(setting("rate_limit.window"), 60.0) or 60.0,
    )
    settings.queue_max_size = max(1, parse_int(setting("queue.max_size"), 1000))
    try:
        settings.queue_policy = OverflowPolicy(
            (setting("queue.policy") or OverflowPolicy.REJECT.value).strip().lower()
        )
    except ValueError:
        settings.queue_policy = OverflowPolicy.REJECT
    settings.task_timeout = parse_duration(setting("queue.task_timeout"), 60.0)
    settings.max_retries = max(0, parse_int(setting("queue.max_retries"), 3))
    settings.crossref_max_entries = max(0, parse_int(setting("crossref.max_entries"), 0))
    settings.topic_verify_ttl = parse_duration(setting("topics.verify_ttl"), 60.0)
    settings.contacts_sync_interval = max(
        60.0, parse_duration(setting("sync.contacts_interval"), 1800.0)
    )
    settings.telegram_rate = parse_float(setting("runtime.telegram_rate"), 20.0)
    settings.timezone = setting("display.timezone") or "UTC"

    flags = FeatureFlags()
    for flag in fields(flags):
        name = flag.name
        current = getattr(flags, name)
        setattr(flags, name, parse_bool(setting(f"features.{name}"), current))
    settings.features = flags
    return settings
