from __future__ import annotations

import copy
import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Protocol

from .utils import iso_from_epoch

ChangeCallback = Callable[[str, Any, Any], None]


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...

    def on_change(self, callback: ChangeCallback) -> None: ...


class _Notifier:
    def __init__(self) -> None:
        self._callbacks: list[ChangeCallback] = []

    def on_change(self, callback: ChangeCallback) -> None:
        self._callbacks.append(callback)

    def _notify(self, key: str, old: Any, new: Any) -> None:
        if old == new:
            return
        for callback in list(self._callbacks):
            callback(key, copy.deepcopy(old), copy.deepcopy(new))


class MemoryStore(_Notifier):
    """Process-local store; several cores sharing one instance act like several tabs."""

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, Any] = {}

    def get(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        old = self._data.get(key)
        self._data[key] = copy.deepcopy(value)
        self._notify(key, old, value)

    def remove(self, key: str) -> None:
        if key not in self._data:
            return
        old = self._data.pop(key)
        self._notify(key, old, None)

    def compare_and_set(self, key: str, expected: Any, value: Any) -> bool:
        current = self._data.get(key)
        if current != expected:
            return False
        if value is None:
            self.remove(key)
        else:
            self.set(key, value)
        return True

    def sync(self) -> None:
        return None

    def close(self) -> None:
        return None


class SqliteStore(_Notifier):
    """Key-value store in a SQLite file that several processes can share.

    Writes made through this object notify listeners immediately. Writes
    made by other processes are picked up by `sync()`, which compares the
    per-key version counters against the last ones this object has seen.
    """

    def __init__(self, db_path: Path, *, busy_timeout: float = 5.0) -> None:
        super().__init__()
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), timeout=busy_timeout, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._seen: dict[str, tuple[int, Any]] = {}

    def close(self) -> None:
        self.conn.close()

    def init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL
            );
            """
        )
        self._seen = {row["key"]: (int(row["version"]), json.loads(row["value_json"])) for row in self._rows()}

    def get(self, key: str) -> Any:
        row = self.conn.execute("SELECT value_json FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return json.loads(row["value_json"])

    def set(self, key: str, value: Any) -> None:
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            old = self._current(key)
            version = self._write(key, value)
            self.conn.execute("COMMIT")
        except sqlite3.Error:
            self.conn.execute("ROLLBACK")
            raise
        self._remember(key, version, value)
        self._notify(key, old, value)

    def remove(self, key: str) -> None:
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            old = self._current(key)
            self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self.conn.execute("COMMIT")
        except sqlite3.Error:
            self.conn.execute("ROLLBACK")
            raise
        self._seen.pop(key, None)
        self._notify(key, old, None)

    def compare_and_set(self, key: str, expected: Any, value: Any) -> bool:
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            current = self._current(key)
            if current != expected:
                self.conn.execute("ROLLBACK")
                return False
            version = 0
            if value is None:
                self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            else:
                version = self._write(key, value)
            self.conn.execute("COMMIT")
        except sqlite3.Error:
            self.conn.execute("ROLLBACK")
            raise
        if value is None:
            self._seen.pop(key, None)
        else:
            self._remember(key, version, value)
        self._notify(key, current, value)
        return True

    def sync(self) -> None:
        latest = {row["key"]: (int(row["version"]), json.loads(row["value_json"])) for row in self._rows()}
        for key, (version, value) in latest.items():
            seen = self._seen.get(key)
            # A key deleted and re-created elsewhere restarts at version 1.
            if seen is not None and seen[0] == version and seen[1] == value:
                continue
            self._seen[key] = (version, value)
            self._notify(key, seen[1] if seen else None, value)
        for key in [key for key in self._seen if key not in latest]:
            _, old = self._seen.pop(key)
            self._notify(key, old, None)

    def _rows(self) -> list[sqlite3.Row]:
        return self.conn.execute("SELECT key, value_json, version FROM kv ORDER BY key").fetchall()

    def _current(self, key: str) -> Any:
        row = self.conn.execute("SELECT value_json FROM kv WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value_json"]) if row is not None else None

    def _write(self, key: str, value: Any) -> int:
        rows = self.conn.execute(
            """
            INSERT INTO kv(key, value_json, version, updated_at)
            VALUES (?, ?, 1, ?)
            ON CONFLICT(key) DO UPDATE SET
                value_json = excluded.value_json,
                version = kv.version + 1,
                updated_at = excluded.updated_at
            RETURNING version
            """,
            (key, json.dumps(value, sort_keys=True), iso_from_epoch(time.time())),
        ).fetchall()
        return int(rows[0]["version"])

    def _remember(self, key: str, version: int, value: Any) -> None:
        self._seen[key] = (version, json.loads(json.dumps(value, sort_keys=True)))
