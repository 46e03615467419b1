"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import logging
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConcurrencyConflict, StorageError


logger = logging.getLogger("payroll_loans.storage")

_DELETED = object()


def serialize_value(value: Any) -> Any:
    """Convert a value to its JSON-compatible storage form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: serialize_value(getattr(self, f.name)) for f in fields(self)}

    def touch(self, now: Optional[datetime] = None) -> None:
        """Bump updated_at"""
        self.updated_at = now or datetime.now(timezone.utc)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

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
        except BaseException:
            self.rollback()
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Writes inside a transaction go to a per-thread buffer that is applied
    under the storage lock on commit and dropped on rollback, so a failed
    transaction leaves nothing behind and other threads never see
    uncommitted rows.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _pending(self) -> Optional[Dict[str, Dict[str, Any]]]:
        return getattr(self._local, 'pending', None)

    def _table_view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's uncommitted writes"""
        with self._lock:
            view = dict(self._data.get(table, {}))
        pending = self._pending()
        if pending and table in pending:
            for record_id, record in pending[table].items():
                if record is _DELETED:
                    view.pop(record_id, None)
                else:
                    view[record_id] = record
        return view

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        record = self._copy(data)
        pending = self._pending()
        if pending is not None:
            pending.setdefault(table, {})[record_id] = record
            return
        with self._lock:
            self._data.setdefault(table, {})[record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._table_view(table).get(record_id)
        if record:
            return self._copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [self._copy(record) for record in self._table_view(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        existed = record_id in self._table_view(table)
        pending = self._pending()
        if pending is not None:
            pending.setdefault(table, {})[record_id] = _DELETED
            return existed
        with self._lock:
            self._data.get(table, {}).pop(record_id, None)
        return existed

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            self._copy(record)
            for record in self._table_view(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._table_view(table))

    def begin_transaction(self) -> None:
        """Start buffering writes for this thread"""
        if self._pending() is None:
            self._local.pending = {}
            self._local.depth = 0
        self._local.depth += 1

    def commit(self) -> None:
        """Apply buffered writes when the outermost transaction ends"""
        pending = self._pending()
        if pending is None:
            return
        self._local.depth -= 1
        if self._local.depth > 0:
            return
        with self._lock:
            for table, records in pending.items():
                target = self._data.setdefault(table, {})
                for record_id, record in records.items():
                    if record is _DELETED:
                        target.pop(record_id, None)
                    else:
                        target[record_id] = record
        self._local.pending = None

    def rollback(self) -> None:
        """Discard buffered writes"""
        self._local.pending = None
        self._local.depth = 0

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    Transactions use BEGIN IMMEDIATE so a second writer (another process on
    the same file) fails fast with a lock error, surfaced as
    ConcurrencyConflict for the repository to retry.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are issued explicitly
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise ConcurrencyConflict(f"SQLite database is locked: {e}") from e
            raise StorageError(f"SQLite operation failed: {e}") from e
        except sqlite3.Error as e:
            raise StorageError(f"SQLite operation failed: {e}") from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        if not table.replace("_", "").isalnum():
            raise StorageError(f"Invalid table name: {table}")
        with self._lock:
            self._execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
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
            cursor = self._execute(f"""
                SELECT data FROM {table} ORDER BY created_at, id
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    @contextmanager
    def atomic(self):
        """Hold the connection for the whole transaction"""
        with self._lock:
            self.begin_transaction()
            try:
                yield
                self.commit()
            except BaseException:
                self.rollback()
                raise

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if self._depth == 0:
                self._execute("BEGIN IMMEDIATE")
            self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._depth == 0:
                return
            if self._depth == 1:
                self._execute("COMMIT")
            self._depth -= 1

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._depth == 0:
                return
            self._depth = 0
            # Tables created inside the transaction are gone too
            self._tables.clear()
            try:
                self._connection.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.error(f"SQLite rollback failed: {e}")

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(
    backend: str,
    sqlite_path: Union[str, Path] = ":memory:",
    timeout: float = 5.0
) -> StorageInterface:
    """Build the configured storage backend"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(sqlite_path, timeout=timeout)
    raise ValueError(f"Unknown storage backend: {backend}")
