"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Every backend offers a unit of work (``atomic()``) whose writes become visible
to other threads all at once on commit, or not at all, and per-record locks
(``lock_records()``) that are always acquired in sorted key order.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Iterator, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConcurrencyError
from .logging_config import get_logger


RecordKey = Tuple[str, str]


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


class DuplicateRecord(Exception):
    """Raised by insert() when the record id is already taken"""


class RowLockRegistry:
    """
    Process-wide registry of per-record locks

    Locks are re-entrant so a thread that already holds a record may lock it
    again. Multiple records are always acquired in sorted order to avoid
    deadlock between opposite-direction transfers.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[RecordKey, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _get(self, key: RecordKey) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[RecordKey]) -> Iterator[None]:
        """Acquire all keys in sorted order, release in reverse"""
        ordered = sorted(set(keys))
        acquired: List[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._get(key)
                if not lock.acquire(timeout=self.timeout):
                    raise ConcurrencyError(f"Timed out waiting for lock on {key[0]}:{key[1]}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self, lock_timeout: float = 5.0):
        self.row_locks = RowLockRegistry(timeout=lock_timeout)

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record, raising DuplicateRecord if the id exists"""
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
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record. Returns True if it existed"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        """True if the calling thread has an open unit of work"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a unit of work for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's unit of work"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard the calling thread's unit of work"""
        pass

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Context manager for atomic operations

        Nested calls join the enclosing unit of work; only the outermost
        block commits or rolls back.
        """
        if self.in_transaction():
            yield
            return

        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    def lock_records(self, keys: Iterable[RecordKey]):
        """Hold per-record locks for the duration of a with block"""
        return self.row_locks.hold(keys)


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Writes made inside a unit of work are buffered per thread and published
    under the table lock on commit, so concurrent readers never observe a
    half-applied unit.
    """

    def __init__(self, lock_timeout: float = 5.0):
        super().__init__(lock_timeout=lock_timeout)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _pending(self) -> Optional[Dict[str, Dict[str, Dict[str, Any]]]]:
        return getattr(self._local, 'writes', None)

    def _merged(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's pending writes"""
        with self._lock:
            self._ensure_table(table)
            rows = dict(self._data[table])
        pending = self._pending()
        if pending and table in pending:
            for record_id, record in pending[table].items():
                if record is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = record
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        pending = self._pending()
        if pending is not None:
            pending.setdefault(table, {})[record_id] = self._copy(data)
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record, failing on duplicate id"""
        with self._lock:
            if self.exists(table, record_id):
                raise DuplicateRecord(f"{table}:{record_id}")
            self.save(table, record_id, data)
            if self.in_transaction() and record_id not in self._data.get(table, {}):
                # Rechecked on commit against units that committed meanwhile
                self._local.inserts.add((table, record_id))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        pending = self._pending()
        if pending and record_id in pending.get(table, {}):
            record = pending[table][record_id]
            return self._copy(record) if record is not None else None
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [self._copy(record) for record in self._merged(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._merged(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        results = []
        for record in self._merged(table).values():
            match = True
            for key, value in filters.items():
                if key not in record or record[key] != value:
                    match = False
                    break
            if match:
                results.append(self._copy(record))
        return results

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        existed = self.exists(table, record_id)
        pending = self._pending()
        if pending is not None:
            # None marks a pending delete
            pending.setdefault(table, {})[record_id] = None
            return existed
        with self._lock:
            self._ensure_table(table)
            self._data[table].pop(record_id, None)
        return existed

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._merged(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def in_transaction(self) -> bool:
        return self._pending() is not None

    def begin_transaction(self) -> None:
        if self._pending() is None:
            self._local.writes = {}
            self._local.inserts = set()

    def commit(self) -> None:
        pending = self._pending()
        if pending is None:
            return
        try:
            with self._lock:
                for table, record_id in self._local.inserts:
                    if record_id in self._data.get(table, {}):
                        raise ConcurrencyError(
                            f"{table}:{record_id} was inserted by a concurrent unit of work"
                        )
                for table, rows in pending.items():
                    self._ensure_table(table)
                    for record_id, record in rows.items():
                        if record is None:
                            self._data[table].pop(record_id, None)
                        else:
                            self._data[table][record_id] = record
        finally:
            self._end_unit()

    def rollback(self) -> None:
        self._end_unit()

    def _end_unit(self) -> None:
        self._local.writes = None
        self._local.inserts = None


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    One connection is shared by all threads. A unit of work holds the
    connection lock from BEGIN IMMEDIATE until COMMIT/ROLLBACK, so other
    threads wait instead of seeing uncommitted rows.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        busy_timeout_ms: int = 5000,
        lock_timeout: float = 5.0
    ):
        super().__init__(lock_timeout=lock_timeout)
        self.db_path = str(db_path)
        self.logger = get_logger("funds_core.storage")
        # Autocommit mode; units of work are opened explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_owner: Optional[int] = None
        self._tables: set = set()

        with self._lock:
            self._connection.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _execute_guard(self) -> Iterator[None]:
        """Translate lock contention into ConcurrencyError"""
        try:
            yield
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise ConcurrencyError(f"Database busy: {e}")
            raise

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock, self._execute_guard():
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            # DDL inside an open unit of work can still be rolled back
            if not self.in_transaction():
                self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        self._ensure_table(table)
        with self._lock, self._execute_guard():
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert keeps the original seq and created_at
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record, failing on duplicate id"""
        self._ensure_table(table)
        with self._lock, self._execute_guard():
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError:
                raise DuplicateRecord(f"{table}:{record_id}")

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        self._ensure_table(table)
        with self._lock, self._execute_guard():
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        self._ensure_table(table)
        with self._lock, self._execute_guard():
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY seq
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        self._ensure_table(table)
        with self._lock, self._execute_guard():
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
            match = True
            for key, value in filters.items():
                if key not in record or record[key] != value:
                    match = False
                    break
            if match:
                results.append(record)
        return results

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        self._ensure_table(table)
        with self._lock, self._execute_guard():
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def count(self, table: str) -> int:
        """Count records in table"""
        self._ensure_table(table)
        with self._lock, self._execute_guard():
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        self._ensure_table(table)
        with self._lock, self._execute_guard():
            self._connection.execute(f"DELETE FROM {table}")

    def in_transaction(self) -> bool:
        return self._tx_owner == threading.get_ident()

    def begin_transaction(self) -> None:
        """Start a write transaction and hold the connection for this thread"""
        if self.in_transaction():
            return
        self._lock.acquire()
        try:
            with self._execute_guard():
                self._connection.execute("BEGIN IMMEDIATE")
        except BaseException:
            self._lock.release()
            raise
        self._tx_owner = threading.get_ident()

    def commit(self) -> None:
        """Commit current transaction"""
        if not self.in_transaction():
            return
        try:
            with self._execute_guard():
                self._connection.execute("COMMIT")
        except BaseException:
            self._connection.execute("ROLLBACK")
            raise
        finally:
            self._tx_owner = None
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self.in_transaction():
            return
        try:
            self._connection.execute("ROLLBACK")
        finally:
            self._tx_owner = None
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, busy_timeout_ms: int = 5000, lock_timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite://`` alone gives an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)

    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:", busy_timeout_ms=busy_timeout_ms, lock_timeout=lock_timeout)

    raise ValueError(f"Unsupported database URL: {database_url}")
