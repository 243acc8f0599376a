"""
Document Storage Module

Tables of JSON documents behind one interface: a dictionary backend for
tests and a SQLite backend for persistence. A record may be inserted with a
unique key (``period:...``, ``code:...``, ``email:...``) and both backends
reject a second record carrying the same key, which is what keeps one
return per organization and period when creates race.
"""

import copy
import json
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union


Document = Dict[str, Any]

# Table and filter field names are interpolated into SQL
_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class DuplicateKeyError(Exception):
    """Raised when an insert reuses a record id or a unique key"""

    def __init__(self, table: str, unique_key: str):
        super().__init__(f"Duplicate key in {table}: {unique_key}")
        self.table = table
        self.unique_key = unique_key


def parse_optional_datetime(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """Parse an optional ISO timestamp coming back from storage"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class StorageRecord:
    """Identity and timestamps shared by every persisted value"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Document:
        """JSON-ready form: datetimes as ISO strings, Decimals as strings"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Document) -> 'StorageRecord':
        for key in ('created_at', 'updated_at'):
            if key in data:
                data[key] = parse_optional_datetime(data[key])
        return cls(**data)


def _clone(document: Document) -> Document:
    return json.loads(json.dumps(document, default=str))


def _matches(document: Document, filters: Dict[str, Any]) -> bool:
    return all(document.get(field) == value for field, value in filters.items())


class StorageInterface(ABC):
    """Tables of JSON documents keyed by record id"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Document) -> None:
        """Create or replace a record; an existing unique key stays attached"""

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Document, unique_key: Optional[str] = None) -> None:
        """Create a record, raising DuplicateKeyError if the id or unique key is taken"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Document]:
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a record and release its unique key; False if it did not exist"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Document]:
        """Records whose top-level fields equal every filter value (None matches a missing field)"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def atomic(self) -> Iterator[None]:
        """
        Context manager for a unit of work.

        Everything written inside commits together or not at all. The backend
        lock is held for the whole block, so load-check-save sequences are
        serialized. Nested blocks join the outermost one.
        """

    @abstractmethod
    def close(self) -> None:
        pass


class InMemoryStorage(StorageInterface):
    """Dictionary-backed storage for tests and throwaway runs"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Document]] = {}
        # table -> unique key -> owning record id
        self._keys: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()
        self._undo = None

    def _table(self, table: str) -> Dict[str, Document]:
        self._keys.setdefault(table, {})
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Document) -> None:
        with self._lock:
            self._table(table)[record_id] = _clone(data)

    def insert(self, table: str, record_id: str, data: Document, unique_key: Optional[str] = None) -> None:
        with self._lock:
            records = self._table(table)
            keys = self._keys[table]
            if record_id in records:
                raise DuplicateKeyError(table, record_id)
            if unique_key is not None:
                if unique_key in keys:
                    raise DuplicateKeyError(table, unique_key)
                keys[unique_key] = record_id
            records[record_id] = _clone(data)

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            document = self._table(table).get(record_id)
            return _clone(document) if document is not None else None

    def load_all(self, table: str) -> List[Document]:
        with self._lock:
            return [_clone(document) for document in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            if self._table(table).pop(record_id, None) is None:
                return False
            keys = self._keys[table]
            for key in [k for k, owner in keys.items() if owner == record_id]:
                del keys[key]
            return True

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Document]:
        with self._lock:
            return [_clone(d) for d in self._table(table).values() if _matches(d, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    @contextmanager
    def atomic(self):
        with self._lock:
            if self._undo is not None:
                yield
                return
            self._undo = (copy.deepcopy(self._tables), copy.deepcopy(self._keys))
            try:
                yield
            except Exception:
                self._tables, self._keys = self._undo
                raise
            finally:
                self._undo = None

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite-backed storage

    Each table holds the JSON document, its timestamps and an optional
    UNIQUE key column. The connection runs in autocommit mode; atomic()
    wraps its block in BEGIN IMMEDIATE ... COMMIT.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._known_tables = set()
        self._in_transaction = False

        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute("PRAGMA synchronous = NORMAL")

    def _table(self, table: str) -> str:
        """Create the table on first use and return its name"""
        if table not in self._known_tables:
            if not _IDENTIFIER.match(table):
                raise ValueError(f"Invalid table name: {table}")
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    unique_key TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)")
            self._known_tables.add(table)
        return table

    def save(self, table: str, record_id: str, data: Document) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._connection.execute(f"""
                INSERT INTO {self._table(table)} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Document, unique_key: Optional[str] = None) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            try:
                self._connection.execute(f"""
                    INSERT INTO {self._table(table)} (id, data, unique_key, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), unique_key, now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(table, unique_key or record_id) from e

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            row = self._connection.execute(
                f"SELECT data FROM {self._table(table)} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Document]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            cursor = self._connection.execute(f"DELETE FROM {self._table(table)} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            row = self._connection.execute(
                f"SELECT 1 FROM {self._table(table)} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Document]:
        """Filters are pushed down as json_extract comparisons"""
        clauses = []
        params = []
        for field, value in filters.items():
            if not _IDENTIFIER.match(field):
                raise ValueError(f"Invalid filter field: {field}")
            if value is None:
                clauses.append(f"json_extract(data, '$.{field}') IS NULL")
            else:
                clauses.append(f"json_extract(data, '$.{field}') = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            rows = self._connection.execute(
                f"SELECT data FROM {self._table(table)} {where} ORDER BY created_at, rowid", params
            ).fetchall()
            return [json.loads(row['data']) for row in rows]

    def count(self, table: str) -> int:
        with self._lock:
            return self._connection.execute(f"SELECT COUNT(*) FROM {self._table(table)}").fetchone()[0]

    @contextmanager
    def atomic(self):
        with self._lock:
            if self._in_transaction:
                yield
                return
            self._connection.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield
            except Exception:
                self._connection.execute("ROLLBACK")
                # Tables created inside the block are gone again
                self._known_tables.clear()
                raise
            else:
                self._connection.execute("COMMIT")
            finally:
                self._in_transaction = False

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
