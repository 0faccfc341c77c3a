"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite (persistence) and PostgreSQL. Records are JSON documents
keyed by id; monetary values are stored as Decimal strings.

Besides plain save/load, every backend offers two conditional writes:

* ``update`` applies a set of field changes only when the stored record still
  matches an ``expected`` precondition (compare-and-swap).
* ``increment`` adds a Decimal delta to one field as a single atomic step and
  refuses the write when the result would drop below ``minimum``.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Sequence, Type, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager

from .errors import NotFoundError, StateConflictError, ConcurrencyConflictError
from .logging_config import get_logger


logger = get_logger("vault.storage")

# Bounded retry for cross-process compare-and-swap on the SQLite document column
_SQLITE_CAS_ATTEMPTS = 20


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-ready dictionary"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


def _copy(data: Any) -> Any:
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


def _apply_changes(record: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Merge changes, bump the version counter and stamp updated_at"""
    updated = dict(record)
    updated.update(_copy(changes))
    if 'version' in record:
        updated['version'] = int(record['version']) + 1
    updated['updated_at'] = datetime.now(timezone.utc).isoformat()
    return updated


def _apply_delta(record: Dict[str, Any], field: str, delta: Decimal,
                 minimum: Optional[Decimal], mirror: Sequence[str]) -> Optional[Dict[str, Any]]:
    current = Decimal(str(record.get(field) or "0"))
    new_value = current + Decimal(delta)
    if minimum is not None and new_value < minimum:
        return None
    changes = {field: str(new_value)}
    for name in mirror:
        changes[name] = str(new_value)
    return _apply_changes(record, changes)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._in_transaction = False

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (upsert) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record, raising StateConflictError if the id is taken"""
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
    def update(self, table: str, record_id: str, changes: Dict[str, Any],
               expected: Optional[Dict[str, Any]] = None) -> bool:
        """
        Apply field changes when the stored record matches ``expected``.

        Returns False when the record is missing or the precondition fails.
        The record's ``version`` (when present) is bumped on success.
        """
        pass

    @abstractmethod
    def increment(self, table: str, record_id: str, field: str, delta: Decimal,
                  minimum: Optional[Decimal] = None,
                  mirror: Sequence[str] = ()) -> Optional[Dict[str, Any]]:
        """
        Atomically add ``delta`` to a Decimal field.

        Args:
            field: Name of the Decimal field to adjust
            delta: Signed amount to add
            minimum: Floor the result may not go below (None = unbounded)
            mirror: Other fields that receive the same new value

        Returns:
            The updated record, or None when the floor would be breached

        Raises:
            NotFoundError: If the record does not exist
        """
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value"""
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

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        self._in_transaction = False

    @contextmanager
    def atomic(self):
        """
        Group writes into one all-or-nothing unit.

        The backend lock is held for the whole block, so concurrent callers in
        this process are serialized. Nested blocks join the outermost one.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self.begin_transaction()
            self._depth += 1
            try:
                yield
            except Exception:
                self._depth -= 1
                if outermost:
                    self.rollback()
                raise
            self._depth -= 1
            if outermost:
                self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = _copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                raise StateConflictError(f"Record {record_id} already exists in {table}", record_id)
            rows[record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values()]

    def update(self, table: str, record_id: str, changes: Dict[str, Any],
               expected: Optional[Dict[str, Any]] = None) -> bool:
        with self._lock:
            rows = self._table(table)
            record = rows.get(record_id)
            if record is None or not _matches(record, expected or {}):
                return False
            rows[record_id] = _apply_changes(record, changes)
            return True

    def increment(self, table: str, record_id: str, field: str, delta: Decimal,
                  minimum: Optional[Decimal] = None,
                  mirror: Sequence[str] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = self._table(table)
            record = rows.get(record_id)
            if record is None:
                raise NotFoundError(f"Record {record_id} not found in {table}", record_id)
            updated = _apply_delta(record, field, delta, minimum, mirror)
            if updated is None:
                return None
            rows[record_id] = updated
            return _copy(updated)

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                _copy(record) for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        with self._lock:
            self._snapshot = _copy(self._data)
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None
            self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
            self._snapshot = None
            self._in_transaction = False


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._tables = set()

        # WAL mode for concurrent readers from other processes
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _maybe_commit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
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
        self._maybe_commit()
        self._tables.add(table)

    def _read_raw(self, table: str, record_id: str) -> Optional[str]:
        row = self._connection.execute(
            f"SELECT data FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        return row['data'] if row else None

    def _swap(self, table: str, record_id: str, old_raw: str, new_data: Dict[str, Any]) -> bool:
        cursor = self._connection.execute(f"""
            UPDATE {table} SET data = ?, updated_at = ?
            WHERE id = ? AND data = ?
        """, (json.dumps(new_data, default=str), datetime.now(timezone.utc).isoformat(),
              record_id, old_raw))
        return cursor.rowcount == 1

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))
            self._maybe_commit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError:
                raise StateConflictError(f"Record {record_id} already exists in {table}", record_id)
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            raw = self._read_raw(table, record_id)
            return json.loads(raw) if raw is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def update(self, table: str, record_id: str, changes: Dict[str, Any],
               expected: Optional[Dict[str, Any]] = None) -> bool:
        with self._lock:
            self._ensure_table(table)
            for _ in range(_SQLITE_CAS_ATTEMPTS):
                raw = self._read_raw(table, record_id)
                if raw is None:
                    return False
                record = json.loads(raw)
                if not _matches(record, expected or {}):
                    return False
                if self._swap(table, record_id, raw, _apply_changes(record, changes)):
                    self._maybe_commit()
                    return True
            raise ConcurrencyConflictError(f"Could not update {table}/{record_id}", record_id)

    def increment(self, table: str, record_id: str, field: str, delta: Decimal,
                  minimum: Optional[Decimal] = None,
                  mirror: Sequence[str] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            for _ in range(_SQLITE_CAS_ATTEMPTS):
                raw = self._read_raw(table, record_id)
                if raw is None:
                    raise NotFoundError(f"Record {record_id} not found in {table}", record_id)
                updated = _apply_delta(json.loads(raw), field, delta, minimum, mirror)
                if updated is None:
                    return None
                if self._swap(table, record_id, raw, updated):
                    self._maybe_commit()
                    return updated
            raise ConcurrencyConflictError(f"Could not adjust {table}/{record_id}.{field}", record_id)

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return self._read_raw(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (JSON key matching in Python)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def begin_transaction(self) -> None:
        with self._lock:
            # isolation_level='DEFERRED' opens the transaction on the first write
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            self._connection.commit()
            self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            self._connection.rollback()
            self._in_transaction = False
            # Tables created inside the rolled back transaction are gone
            self._tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend using JSONB documents and row locks"""

    def __init__(self, connection_string: str):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._tables = set()
        self._connect()

    def _connect(self) -> None:
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False

    @contextmanager
    def _cursor(self):
        """Cursor that commits standalone statements and rolls back on error"""
        cursor = self._connection.cursor()
        try:
            yield cursor
            if not self._in_transaction:
                self._connection.commit()
        except Exception:
            if not self._in_transaction:
                self._connection.rollback()
            raise
        finally:
            cursor.close()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
        self._tables.add(table)

    def _locked_read(self, cursor, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        cursor.execute(f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,))
        row = cursor.fetchone()
        return dict(row['data']) if row else None

    def _write(self, cursor, table: str, record_id: str, data: Dict[str, Any]) -> None:
        cursor.execute(f"""
            UPDATE {table} SET data = %s, updated_at = %s WHERE id = %s
        """, (json.dumps(data, default=str), datetime.now(timezone.utc), record_id))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            with self._cursor() as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            with self._cursor() as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                """, (record_id, json.dumps(data, default=str), now, now))
                inserted = cursor.rowcount == 1
            if not inserted:
                raise StateConflictError(f"Record {record_id} already exists in {table}", record_id)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
                return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
                return [dict(row['data']) for row in cursor.fetchall()]

    def update(self, table: str, record_id: str, changes: Dict[str, Any],
               expected: Optional[Dict[str, Any]] = None) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                record = self._locked_read(cursor, table, record_id)
                if record is None or not _matches(record, expected or {}):
                    return False
                self._write(cursor, table, record_id, _apply_changes(record, changes))
                return True

    def increment(self, table: str, record_id: str, field: str, delta: Decimal,
                  minimum: Optional[Decimal] = None,
                  mirror: Sequence[str] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                record = self._locked_read(cursor, table, record_id)
                if record is None:
                    raise NotFoundError(f"Record {record_id} not found in {table}", record_id)
                updated = _apply_delta(record, field, delta, minimum, mirror)
                if updated is not None:
                    self._write(cursor, table, record_id, updated)
                return updated

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
                return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
                return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                if not filters:
                    cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
                else:
                    cursor.execute(f"""
                        SELECT data FROM {table}
                        WHERE data @> %s::jsonb
                        ORDER BY created_at
                    """, (json.dumps(filters, default=str),))
                return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
                return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        with self._lock:
            # psycopg2 opens the transaction implicitly on the next statement
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            self._connection.commit()
            self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            self._connection.rollback()
            self._in_transaction = False
            self._tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except Exception as e:
                    logger.warning(f"Error closing PostgreSQL connection: {e}")
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage, ``sqlite:///path`` (or
    ``sqlite://:memory:``) gives SQLiteStorage and ``postgresql://...`` gives
    PostgreSQLStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")


def compare_and_set(
    storage: StorageInterface,
    table: str,
    record_id: str,
    compute_changes: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
    max_retries: int = 5,
    not_found: Type[NotFoundError] = NotFoundError
) -> Dict[str, Any]:
    """
    Optimistic read-modify-write on a versioned record.

    ``compute_changes`` receives the current record and returns the fields to
    change (or None/empty for nothing to do). It may raise to abort. The write
    is retried against a fresh read whenever another writer bumped the
    version first.

    Returns:
        The record as stored after the write

    Raises:
        not_found: If the record does not exist
        ConcurrencyConflictError: If every attempt lost the race
    """
    for _ in range(max_retries):
        current = storage.load(table, record_id)
        if current is None:
            raise not_found(f"{table} record {record_id} not found", record_id)
        changes = compute_changes(current)
        if not changes:
            return current
        if storage.update(table, record_id, changes, expected={'version': current.get('version', 0)}):
            return storage.load(table, record_id)
        logger.debug(f"Version conflict on {table}/{record_id}, retrying")
    raise ConcurrencyConflictError(
        f"Gave up updating {table}/{record_id} after {max_retries} conflicting writes", record_id
    )
