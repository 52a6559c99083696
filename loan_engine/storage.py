"""
Storage Backend Module

Document store behind the loan repository and the audit trail. A record is a
JSON object addressed by (table, id); Decimal values are written as strings.
Writes made inside ``atomic()`` land together or not at all, which is what
keeps a loan and its installments consistent on disk.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager
import json
import re
import sqlite3
import threading

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _encode(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=str)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    missing = object()
    return all(record.get(key, missing) == expected for key, expected in filters.items())


@dataclass
class StorageRecord:
    """Common identity and timestamps of persisted records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Flat dict of the dataclass fields with datetimes and Decimals as strings"""
        data = {}
        for field in fields(self):
            value = getattr(self, field.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Decimal):
                value = str(value)
            data[field.name] = value
        return data


class StorageInterface(ABC):
    """Operations every storage backend provides"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Write a record, replacing any record with the same id"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Read one record or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record of the table, oldest first"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level keys equal all filter values"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a record; False when there was nothing to remove"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """Group writes; any exception inside the block undoes all of them"""
        self.begin_transaction()
        try:
            yield self
        except Exception:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """
    Process-local storage for tests and embedded hosts.

    Records are kept as JSON text, so every load hands out a fresh dict.
    The outermost atomic block takes a snapshot of all tables and puts it
    back if the block fails.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, str]]] = None
        self._depth = 0

    def _rows(self, table: str) -> Dict[str, str]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        encoded = _encode(data)
        with self._lock:
            self._rows(table)[record_id] = encoded

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            encoded = self._rows(table).get(record_id)
        return None if encoded is None else json.loads(encoded)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            encoded = list(self._rows(table).values())
        return [json.loads(text) for text in encoded]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._rows(table).pop(record_id, None) is not None

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._rows(table))

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if not self._depth:
            self._snapshot = {name: dict(rows) for name, rows in self._tables.items()}
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if not self._depth:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        # Inner blocks re-raise; the outermost one restores
        if not self._depth:
            self._tables, self._snapshot = self._snapshot or {}, None
        self._lock.release()

    def close(self) -> None:
        with self._lock:
            self._tables.clear()


class SQLiteStorage(StorageInterface):
    """
    SQLite-backed storage.

    Each table holds (seq, id, data, updated_at) with the record as JSON in
    ``data``; ``seq`` preserves first-insert order across updates. One
    connection is shared between threads and serialized by a re-entrant lock
    that an atomic block holds until it finishes.
    """

    URL_PREFIX = "sqlite:///"

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables = set()
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row

        if self.db_path != ":memory:":
            self._connection.executescript(
                "PRAGMA journal_mode = WAL; PRAGMA synchronous = NORMAL;"
            )

    @classmethod
    def from_url(cls, database_url: str) -> 'SQLiteStorage':
        """Open the database named by a ``sqlite:///path`` URL; an empty path means in-memory"""
        if not database_url.startswith(cls.URL_PREFIX):
            raise ValueError(f"Unsupported database URL: {database_url}")
        return cls(database_url[len(cls.URL_PREFIX):] or ":memory:")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        return self._connection.execute(sql, params)

    def _prepare(self, table: str) -> str:
        """Create the table on first use and return its quoted name"""
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        name = f'"{table}"'
        if table not in self._known_tables:
            self._execute(
                f"CREATE TABLE IF NOT EXISTS {name} ("
                "seq INTEGER PRIMARY KEY AUTOINCREMENT, "
                "id TEXT UNIQUE NOT NULL, "
                "data TEXT NOT NULL, "
                "updated_at TEXT NOT NULL)"
            )
            self._known_tables.add(table)
        return name

    def _autocommit(self) -> None:
        if not self._depth:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            name = self._prepare(table)
            self._execute(
                f"INSERT INTO {name} (id, data, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
                (record_id, _encode(data), datetime.now(timezone.utc).isoformat()),
            )
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            name = self._prepare(table)
            row = self._execute(f"SELECT data FROM {name} WHERE id = ?", (record_id,)).fetchone()
        return json.loads(row["data"]) if row is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            name = self._prepare(table)
            rows = self._execute(f"SELECT data FROM {name} ORDER BY seq").fetchall()
        return [json.loads(row["data"]) for row in rows]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            name = self._prepare(table)
            removed = self._execute(f"DELETE FROM {name} WHERE id = ?", (record_id,)).rowcount
            self._autocommit()
        return removed > 0

    def count(self, table: str) -> int:
        with self._lock:
            name = self._prepare(table)
            (total,) = self._execute(f"SELECT COUNT(*) FROM {name}").fetchone()
        return total

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        try:
            self._autocommit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        try:
            if not self._depth:
                self._connection.rollback()
                # CREATE TABLE statements were rolled back as well
                self._known_tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
