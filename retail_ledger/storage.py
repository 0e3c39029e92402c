"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents; all monetary values are
stored as Decimal strings.

Both backends make `atomic()` all-or-nothing: writes inside the block become
visible to other threads only when the outermost block exits cleanly, and are
discarded if it raises. `snapshot()` lets readers see a consistent state that
no commit can interleave with.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Tuple, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from pathlib import Path
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from decimal import Decimal

from .errors import DuplicateRecordError


_DELETED = object()


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises DuplicateRecordError if the id exists"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal all given filter values"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self.load_all(table))

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise

    @contextmanager
    def snapshot(self):
        """Context manager for a consistent multi-record read (default no-op)"""
        yield


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage with per-thread write buffers.

    Inside `atomic()` a thread's writes go to its own buffer; reads by that
    thread see the buffer first. The buffer is published under the storage
    lock when the outermost block commits.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy through JSON so callers never share mutable state
        return json.loads(json.dumps(data, default=str))

    def _buffer(self) -> Optional[Dict[Tuple[str, str], Any]]:
        return getattr(self._local, 'buffer', None)

    def _reset_local(self) -> None:
        self._local.buffer = None
        self._local.inserts = set()
        self._local.depth = 0

    def _committed(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        record = self._copy(data)
        buffer = self._buffer()
        if buffer is not None:
            buffer[(table, record_id)] = record
            return
        with self._lock:
            self._committed(table)[record_id] = record

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record, rejecting an existing id"""
        with self._lock:
            if self.exists(table, record_id):
                raise DuplicateRecordError(table, record_id)
            self.save(table, record_id, data)
            if self._buffer() is not None:
                self._local.inserts.add((table, record_id))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        buffer = self._buffer()
        if buffer is not None and (table, record_id) in buffer:
            record = buffer[(table, record_id)]
            return None if record is _DELETED else self._copy(record)
        with self._lock:
            record = self._committed(table).get(record_id)
            if record is not None:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            records = dict(self._committed(table))
        buffer = self._buffer()
        if buffer:
            for (buffered_table, record_id), record in buffer.items():
                if buffered_table != table:
                    continue
                if record is _DELETED:
                    records.pop(record_id, None)
                else:
                    records[record_id] = record
        return [self._copy(record) for record in records.values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        existed = self.exists(table, record_id)
        buffer = self._buffer()
        if buffer is not None:
            if existed:
                buffer[(table, record_id)] = _DELETED
            return existed
        with self._lock:
            return self._committed(table).pop(record_id, None) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}
        buffer = self._buffer()
        if buffer:
            for key in [key for key in buffer if key[0] == table]:
                del buffer[key]

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Open (or nest into) this thread's write buffer"""
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            self._local.buffer = {}
            self._local.inserts = set()
        self._local.depth = depth + 1

    def commit(self) -> None:
        """Publish the write buffer when the outermost block commits"""
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            return
        if depth > 1:
            self._local.depth = depth - 1
            return

        buffer = self._local.buffer or {}
        inserts: Set[Tuple[str, str]] = self._local.inserts
        self._reset_local()

        with self._lock:
            for table, record_id in inserts:
                if record_id in self._committed(table):
                    raise DuplicateRecordError(table, record_id)
            for (table, record_id), record in buffer.items():
                if record is _DELETED:
                    self._committed(table).pop(record_id, None)
                else:
                    self._committed(table)[record_id] = record

    def rollback(self) -> None:
        """Discard the write buffer when the outermost block fails"""
        depth = getattr(self._local, 'depth', 0)
        if depth <= 1:
            self._reset_local()
        else:
            self._local.depth = depth - 1

    @contextmanager
    def snapshot(self):
        """Hold the storage lock so no commit interleaves with the reads"""
        with self._lock:
            yield


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    A single connection is shared by all threads; an atomic block holds the
    storage lock from start to commit, so atomic blocks are serialized.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables: Set[str] = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            if not self._in_transaction:
                self._connection.commit()
            self._tables.add(table)

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert keeps the rowid stable so insertion order survives updates
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))
            self._autocommit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record, rejecting an existing id"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError:
                raise DuplicateRecordError(table, record_id)
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    @contextmanager
    def atomic(self):
        """Hold the connection for the whole block; only the outermost block commits"""
        with self._lock:
            outermost = not self._in_transaction
            self._in_transaction = True
            try:
                yield
            except Exception:
                if outermost:
                    self._in_transaction = False
                    self._connection.rollback()
                    # Tables created inside the block were rolled back too
                    self._tables.clear()
                raise
            if outermost:
                self._in_transaction = False
                self._connection.commit()

    @contextmanager
    def snapshot(self):
        """Hold the connection so no atomic block interleaves with the reads"""
        with self._lock:
            yield

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported: ``memory://``, ``sqlite://`` (in-memory SQLite) and
    ``sqlite:///path/to/file.db``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
