"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (single node persistence) and PostgreSQL (production). Besides plain
record persistence every backend offers the three atomic primitives the
workflow engine relies on:

- compare_and_swap: conditional update on a record's ``revision``
- claim_key / release_key: unique constraints over arbitrary keys
- increment_and_wrap: atomic modular counters (rotation cursors)
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def parse_datetime(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """Parse an optional ISO timestamp"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Format an optional timestamp as ISO string"""
    return value.isoformat() if value else None


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage (unconditional upsert)"""
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
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
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
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a new record; returns False if the id is already taken"""
        pass

    @abstractmethod
    def compare_and_swap(self, table: str, record_id: str, expected_revision: int,
                         data: Dict[str, Any]) -> bool:
        """
        Replace a record only if its stored ``revision`` equals expected_revision.

        The caller is responsible for bumping ``data['revision']``.
        Returns False when the record is missing or the revision moved.
        """
        pass

    @abstractmethod
    def claim_key(self, namespace: str, key: str, owner: str) -> bool:
        """Atomically claim a unique key; returns False if already claimed"""
        pass

    @abstractmethod
    def release_key(self, namespace: str, key: str, owner: str) -> bool:
        """Release a key, only if still held by owner"""
        pass

    @abstractmethod
    def key_owner(self, namespace: str, key: str) -> Optional[str]:
        """Current owner of a claimed key"""
        pass

    @abstractmethod
    def increment_and_wrap(self, namespace: str, key: str, modulus: int) -> int:
        """
        Atomically return the counter's current slot and advance it modulo ``modulus``.

        A missing counter starts at slot 0.
        """
        pass


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._keys: Dict[str, Dict[str, str]] = {}
        self._counters: Dict[str, Dict[str, int]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(self._copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a new record if the id is free"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                return False
            self._data[table][record_id] = self._copy(data)
            return True

    def compare_and_swap(self, table: str, record_id: str, expected_revision: int,
                         data: Dict[str, Any]) -> bool:
        """Conditional replace on revision"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None or current.get('revision', 0) != expected_revision:
                return False
            self._data[table][record_id] = self._copy(data)
            return True

    def claim_key(self, namespace: str, key: str, owner: str) -> bool:
        """Claim a unique key"""
        with self._lock:
            keys = self._keys.setdefault(namespace, {})
            if key in keys:
                return False
            keys[key] = owner
            return True

    def release_key(self, namespace: str, key: str, owner: str) -> bool:
        """Release a key held by owner"""
        with self._lock:
            keys = self._keys.setdefault(namespace, {})
            if keys.get(key) != owner:
                return False
            del keys[key]
            return True

    def key_owner(self, namespace: str, key: str) -> Optional[str]:
        """Owner of a key"""
        with self._lock:
            return self._keys.get(namespace, {}).get(key)

    def increment_and_wrap(self, namespace: str, key: str, modulus: int) -> int:
        """Advance a modular counter"""
        if modulus <= 0:
            raise ValueError("modulus must be positive")
        with self._lock:
            counters = self._counters.setdefault(namespace, {})
            slot = counters.get(key, 0) % modulus
            counters[key] = (slot + 1) % modulus
            return slot

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    revision INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._connection.commit()

    def _ensure_key_table(self, namespace: str) -> None:
        """Ensure a key/counter table exists"""
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {namespace} (
                    key TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    value INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, revision, created_at, updated_at)
                VALUES (?, ?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, data.get('revision', 0), record_id, now, now))
            self._connection.commit()

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
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._connection.commit()
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
        return [
            record for record in self.load_all(table)
            if all(key in record and record[key] == value for key, value in filters.items())
        ]

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
            self._connection.commit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a new record; primary key violation means taken"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, revision, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), data.get('revision', 0), now, now))
            except sqlite3.IntegrityError:
                self._connection.rollback()
                return False
            self._connection.commit()
            return True

    def compare_and_swap(self, table: str, record_id: str, expected_revision: int,
                         data: Dict[str, Any]) -> bool:
        """Conditional UPDATE guarded by the revision column"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, revision = ?, updated_at = ?
                WHERE id = ? AND revision = ?
            """, (json.dumps(data, default=str), data.get('revision', expected_revision + 1),
                  datetime.now(timezone.utc).isoformat(), record_id, expected_revision))
            self._connection.commit()
            return cursor.rowcount == 1

    def claim_key(self, namespace: str, key: str, owner: str) -> bool:
        """Claim a unique key via primary key constraint"""
        with self._lock:
            self._ensure_key_table(namespace)
            try:
                self._connection.execute(f"""
                    INSERT INTO {namespace} (key, owner, value, updated_at) VALUES (?, ?, 0, ?)
                """, (key, owner, datetime.now(timezone.utc).isoformat()))
            except sqlite3.IntegrityError:
                self._connection.rollback()
                return False
            self._connection.commit()
            return True

    def release_key(self, namespace: str, key: str, owner: str) -> bool:
        """Release a key held by owner"""
        with self._lock:
            self._ensure_key_table(namespace)
            cursor = self._connection.execute(f"""
                DELETE FROM {namespace} WHERE key = ? AND owner = ?
            """, (key, owner))
            self._connection.commit()
            return cursor.rowcount > 0

    def key_owner(self, namespace: str, key: str) -> Optional[str]:
        """Owner of a key"""
        with self._lock:
            self._ensure_key_table(namespace)
            row = self._connection.execute(f"""
                SELECT owner FROM {namespace} WHERE key = ?
            """, (key,)).fetchone()
            return row['owner'] if row else None

    def increment_and_wrap(self, namespace: str, key: str, modulus: int) -> int:
        """Advance a modular counter inside one write transaction"""
        if modulus <= 0:
            raise ValueError("modulus must be positive")
        with self._lock:
            self._ensure_key_table(namespace)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute("BEGIN IMMEDIATE")
                row = self._connection.execute(f"""
                    SELECT value FROM {namespace} WHERE key = ?
                """, (key,)).fetchone()
                slot = (row['value'] if row else 0) % modulus
                self._connection.execute(f"""
                    INSERT OR REPLACE INTO {namespace} (key, owner, value, updated_at)
                    VALUES (?, 'counter', ?, ?)
                """, (key, (slot + 1) % modulus, now))
                self._connection.commit()
            except Exception:
                self._connection.rollback()
                raise
            return slot

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend; every atomic primitive is a single statement"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._known_tables = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            # Each statement is its own transaction; CAS atomicity comes from the statement
            self._connection.autocommit = True

    def _execute(self, sql: str, params: tuple = ()):
        """Run a statement and return the cursor's rows (if any) and rowcount"""
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(sql, params)
                rows = cursor.fetchall() if cursor.description else []
                return rows, cursor.rowcount
            finally:
                cursor.close()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                revision INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        self._known_tables.add(table)

    def _ensure_key_table(self, namespace: str) -> None:
        """Ensure a key/counter table exists"""
        if namespace in self._known_tables:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {namespace} (
                key TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                value INTEGER NOT NULL DEFAULT 0,
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        self._known_tables.add(namespace)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        self._execute(f"""
            INSERT INTO {table} (id, data, revision, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                data = EXCLUDED.data,
                revision = EXCLUDED.revision,
                updated_at = EXCLUDED.updated_at
        """, (record_id, json.dumps(data, default=str), data.get('revision', 0), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        self._ensure_table(table)
        rows, _ = self._execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
        return dict(rows[0]['data']) if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        self._ensure_table(table)
        rows, _ = self._execute(f"SELECT data FROM {table} ORDER BY created_at")
        return [dict(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        self._ensure_table(table)
        _, rowcount = self._execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
        return rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        self._ensure_table(table)
        rows, _ = self._execute(f"SELECT 1 AS found FROM {table} WHERE id = %s LIMIT 1", (record_id,))
        return bool(rows)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        self._ensure_table(table)
        if not filters:
            return self.load_all(table)
        rows, _ = self._execute(f"""
            SELECT data FROM {table}
            WHERE data @> %s::jsonb
            ORDER BY created_at
        """, (json.dumps(filters, default=str),))
        return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        """Count records in table"""
        self._ensure_table(table)
        rows, _ = self._execute(f"SELECT COUNT(*) AS count FROM {table}")
        return rows[0]['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        self._ensure_table(table)
        self._execute(f"DELETE FROM {table}")

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a new record if the id is free"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        _, rowcount = self._execute(f"""
            INSERT INTO {table} (id, data, revision, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
        """, (record_id, json.dumps(data, default=str), data.get('revision', 0), now, now))
        return rowcount == 1

    def compare_and_swap(self, table: str, record_id: str, expected_revision: int,
                         data: Dict[str, Any]) -> bool:
        """Conditional UPDATE guarded by the revision column"""
        self._ensure_table(table)
        _, rowcount = self._execute(f"""
            UPDATE {table} SET data = %s, revision = %s, updated_at = %s
            WHERE id = %s AND revision = %s
        """, (json.dumps(data, default=str), data.get('revision', expected_revision + 1),
              datetime.now(timezone.utc), record_id, expected_revision))
        return rowcount == 1

    def claim_key(self, namespace: str, key: str, owner: str) -> bool:
        """Claim a unique key"""
        self._ensure_key_table(namespace)
        _, rowcount = self._execute(f"""
            INSERT INTO {namespace} (key, owner) VALUES (%s, %s)
            ON CONFLICT (key) DO NOTHING
        """, (key, owner))
        return rowcount == 1

    def release_key(self, namespace: str, key: str, owner: str) -> bool:
        """Release a key held by owner"""
        self._ensure_key_table(namespace)
        _, rowcount = self._execute(f"""
            DELETE FROM {namespace} WHERE key = %s AND owner = %s
        """, (key, owner))
        return rowcount > 0

    def key_owner(self, namespace: str, key: str) -> Optional[str]:
        """Owner of a key"""
        self._ensure_key_table(namespace)
        rows, _ = self._execute(f"SELECT owner FROM {namespace} WHERE key = %s", (key,))
        return rows[0]['owner'] if rows else None

    def increment_and_wrap(self, namespace: str, key: str, modulus: int) -> int:
        """Single-statement upsert; the stored value is the next slot to hand out"""
        if modulus <= 0:
            raise ValueError("modulus must be positive")
        self._ensure_key_table(namespace)
        rows, _ = self._execute(f"""
            INSERT INTO {namespace} AS c (key, owner, value) VALUES (%s, 'counter', %s)
            ON CONFLICT (key) DO UPDATE SET
                value = (c.value %% %s + 1) %% %s,
                updated_at = NOW()
            RETURNING value
        """, (key, 1 % modulus, modulus, modulus))
        return (rows[0]['value'] - 1) % modulus

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Factory function to create a storage backend from a URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db``, ``sqlite://``
    (in-memory SQLite) and ``postgresql://...`` / ``postgres://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
