"""Bidirectional index between Telegram message ids and WhatsApp message keys."""

from __future__ import annotations

import logging
from collections import OrderedDict
from enum import Enum

from .mapping_store import MappingStore
from .models import MessageCrossRef, RecordType, RemoteKey

logger = logging.getLogger(__name__)


class RevokeStatus(str, Enum):
    REVOKED = "revoked"
    ALREADY_HANDLED = "already_handled"
    NOT_FOUND = "not_found"


class CrossReferenceIndex:
    """Pairs of relayed messages, resolvable from either side in O(1).

    Revoked pairs stay in the index as tombstones so that a repeated revoke
    is reported as already handled instead of acting twice. ``max_entries``
    caps the index with least-recently-used eviction; ``0`` keeps everything.
    """

    def __init__(self, store: MappingStore, *, max_entries: int = 0) -> None:
        self._store = store
        self._max_entries = max(0, max_entries)
        self._by_local: OrderedDict[int, MessageCrossRef] = OrderedDict()
        self._by_remote: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._by_local)

    def load(self) -> int:
        self._by_local.clear()
        self._by_remote.clear()
        entries: list[MessageCrossRef] = []
        for key, data in self._store.items(RecordType.MESSAGE):
            try:
                entries.append(MessageCrossRef.from_record(data))
            except (KeyError, TypeError, ValueError):
                logger.warning("Пропущена повреждённая связь сообщений %s", key)
        entries.sort(key=lambda entry: entry.created_at)
        for entry in entries:
            self._index(entry)
        self._evict()
        return len(self._by_local)

    def record(self, local_id: int, remote_key: RemoteKey) -> MessageCrossRef:
        entry = MessageCrossRef(local_message_id=local_id, remote_key=remote_key)
        previous = self._by_local.get(local_id)
        if previous is not None:
            self._by_remote.pop(previous.remote_key.message_id, None)
        self._index(entry)
        self._store.upsert(RecordType.MESSAGE, str(local_id), entry.to_record())
        self._evict()
        return entry

    def resolve_local(self, local_id: int) -> RemoteKey | None:
        entry = self._by_local.get(local_id)
        if entry is None or entry.revoked:
            return None
        self._by_local.move_to_end(local_id)
        return entry.remote_key

    def resolve_remote(self, remote_message_id: str) -> int | None:
        local_id = self._by_remote.get(remote_message_id)
        if local_id is None:
            return None
        entry = self._by_local.get(local_id)
        if entry is None or entry.revoked:
            return None
        self._by_local.move_to_end(local_id)
        return local_id

    def resolve(self, identifier: int | str) -> RemoteKey | int | None:
        """Telegram ids resolve to a remote key, WhatsApp ids to a Telegram id."""

        if isinstance(identifier, int):
            return self.resolve_local(identifier)
        return self.resolve_remote(identifier)

    def revoke(self, local_id: int) -> tuple[RevokeStatus, RemoteKey | None]:
        entry = self._by_local.get(local_id)
        if entry is None:
            return RevokeStatus.NOT_FOUND, None
        if entry.revoked:
            return RevokeStatus.ALREADY_HANDLED, entry.remote_key
        entry.revoked = True
        self._store.upsert(RecordType.MESSAGE, str(local_id), entry.to_record())
        return RevokeStatus.REVOKED, entry.remote_key

    def _index(self, entry: MessageCrossRef) -> None:
        self._by_local[entry.local_message_id] = entry
        self._by_local.move_to_end(entry.local_message_id)
        self._by_remote[entry.remote_key.message_id] = entry.local_message_id

    def _evict(self) -> None:
        if not self._max_entries:
            return
        while len(self._by_local) > self._max_entries:
            local_id, entry = self._by_local.popitem(last=False)
            if self._by_remote.get(entry.remote_key.message_id) == local_id:
                del self._by_remote[entry.remote_key.message_id]
            self._store.delete(RecordType.MESSAGE, str(local_id))
