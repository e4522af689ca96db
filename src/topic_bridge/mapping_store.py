"""SQLite backed write-through store for bridge mappings and settings."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from .models import RecordType

_DB_PRAGMA = "PRAGMA journal_mode=WAL;" "PRAGMA synchronous=NORMAL;" "PRAGMA foreign_keys=ON;"

logger = logging.getLogger(__name__)


class MappingStore:
    """Persisted records with an in-memory cache keyed by record type.

    Reads are served from the cache only. Writes go to SQLite first and then
    to the cache; a failed durable write is logged and the cache is still
    updated so the running process keeps a consistent view.
    """

    def __init__(self, path: Path):
        self._path = path
        self._conn = sqlite3.connect(self._path)
        self._conn.row_factory = sqlite3.Row
        self._cache: dict[RecordType, dict[str, dict[str, Any]]] = {
            record_type: {} for record_type in RecordType
        }
        self._setup()

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------
    def _setup(self) -> None:
        with closing(self._conn.cursor()) as cur:
            for statement in _DB_PRAGMA.split(";"):
                if statement.strip():
                    cur.execute(statement)
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_type TEXT NOT NULL,
                    natural_key TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(record_type, natural_key)
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def load(self) -> int:
        """Hydrate every cache from SQLite and return the number of records."""

        for bucket in self._cache.values():
            bucket.clear()
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT record_type, natural_key, data FROM records")
            rows = cur.fetchall()
        loaded = 0
        for row in rows:
            try:
                record_type = RecordType(str(row["record_type"]))
            except ValueError:
                logger.warning("Пропущена запись неизвестного типа %s", row["record_type"])
                continue
            try:
                data = json.loads(row["data"])
            except json.JSONDecodeError:
                logger.warning(
                    "Повреждённая запись %s/%s пропущена",
                    record_type.value,
                    row["natural_key"],
                )
                continue
            self._cache[record_type][str(row["natural_key"])] = data
            loaded += 1
        return loaded

    def upsert(self, record_type: RecordType, key: str, value: Mapping[str, Any]) -> None:
        data = dict(value)
        try:
            with closing(self._conn.cursor()) as cur:
                cur.execute(
                    "INSERT INTO records(record_type, natural_key, data, updated_at)"
                    " VALUES(?, ?, ?, ?)"
                    " ON CONFLICT(record_type, natural_key) DO UPDATE SET"
                    " data=excluded.data, updated_at=excluded.updated_at",
                    (
                        record_type.value,
                        key,
                        json.dumps(data, ensure_ascii=False),
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                self._conn.commit()
        except sqlite3.Error:
            logger.exception(
                "Не удалось сохранить запись %s/%s, используется только кэш",
                record_type.value,
                key,
            )
        self._cache[record_type][key] = data

    def get(self, record_type: RecordType, key: str) -> dict[str, Any] | None:
        return self._cache[record_type].get(key)

    def delete(self, record_type: RecordType, key: str) -> bool:
        try:
            with closing(self._conn.cursor()) as cur:
                cur.execute(
                    "DELETE FROM records WHERE record_type=? AND natural_key=?",
                    (record_type.value, key),
                )
                self._conn.commit()
        except sqlite3.Error:
            logger.exception(
                "Не удалось удалить запись %s/%s из базы", record_type.value, key
            )
        return self._cache[record_type].pop(key, None) is not None

    def items(self, record_type: RecordType) -> list[tuple[str, dict[str, Any]]]:
        return list(self._cache[record_type].items())

    def count(self, record_type: RecordType) -> int:
        return len(self._cache[record_type])

    # ------------------------------------------------------------------
    # Basic settings
    # ------------------------------------------------------------------
    def set_setting(self, key: str, value: str) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO settings(key, value) VALUES(?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
            self._conn.commit()

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT value FROM settings WHERE key=?", (key,))
            row = cur.fetchone()
        return row["value"] if row else default

    def set_telegram_offset(self, offset: int) -> None:
        safe_value = max(0, int(offset))
        self.set_setting("state.telegram.offset", str(safe_value))

    def get_telegram_offset(self) -> int | None:
        value = self.get_setting("state.telegram.offset")
        if value is None:
            return None
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return None
        return max(0, parsed)

    def get_id_set(self, key: str) -> set[int]:
        """Return a comma separated id list stored under ``key``."""

        raw = self.get_setting(key) or ""
        result: set[int] = set()
        for chunk in raw.split(","):
            chunk = chunk.strip()
            if chunk.lstrip("-").isdigit():
                result.add(int(chunk))
        return result

    def set_id_set(self, key: str, values: set[int]) -> None:
        self.set_setting(key, ",".join(str(value) for value in sorted(values)))
