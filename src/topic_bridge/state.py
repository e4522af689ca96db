"""Long-lived in-memory state owned by one bridge instance."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TopicState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    ACTIVE = "active"
    VERIFY_FAILED = "verify_failed"


@dataclass(slots=True)
class BridgeState:
    """Caches that live for the process lifetime and are dropped on shutdown."""

    topic_states: dict[str, TopicState] = field(default_factory=dict)
    verified_at: dict[str, float] = field(default_factory=dict)
    topic_titles: dict[str, str] = field(default_factory=dict)
    participants: dict[str, list[str]] = field(default_factory=dict)

    def clear(self) -> None:
        self.topic_states.clear()
        self.verified_at.clear()
        self.topic_titles.clear()
        self.participants.clear()
