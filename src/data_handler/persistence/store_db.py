"""
data-handler — embedded record store.

File: src/data_handler/persistence/store_db.py

Purpose
- Own one SQLite connection holding records and their ordered relationship rows.

What should be included in this file
- Versioned, checksummed migrations recorded in ``schema_versions``.
- Bounded retries for SQLITE_BUSY/SQLITE_LOCKED with exponential backoff.
- Nested transactions through savepoints.
- Backup and integrity-check helpers.

Functional requirements
- File stores run in WAL mode; ``":memory:"`` opens a private in-memory store.
- A store identifier is written once and survives a reopen, so record
  identifiers minted against a file stay valid.

Non-functional requirements
- With ``async_blocking_policy="strict"`` any synchronous call made from a
  thread running an event loop raises instead of blocking the loop.
"""

from __future__ import annotations

import asyncio
import hashlib
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, Literal, TypeAlias, TypeVar

from data_handler.constants import IN_MEMORY_STORE_PATH, RECORD_STORE_SCHEMA_VERSION
from data_handler.domain import ids

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None
Row = dict[str, RowValue]
AsyncBlockingPolicy: TypeAlias = Literal["allow", "strict"]

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25
DEFAULT_ASYNC_BLOCKING_POLICY: Final[AsyncBlockingPolicy] = "allow"
ASYNC_BLOCKING_POLICIES: Final[tuple[AsyncBlockingPolicy, ...]] = ("allow", "strict")

_T = TypeVar("_T")

# Primary SQLite result codes; extended codes carry them in the low byte.
_SQLITE_BUSY: Final[int] = 5
_SQLITE_LOCKED: Final[int] = 6
_SQLITE_CORRUPT: Final[int] = 11
_SQLITE_NOTADB: Final[int] = 26

_STORE_ID_KEY: Final[str] = "store_id"

_VERSION_TABLE: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        digest = hashlib.sha256(f"{self.version}:{self.name}".encode())
        for statement in self.statements:
            digest.update(b"\0")
            digest.update(" ".join(statement.split()).encode("utf-8"))
        return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="initial_record_schema",
        statements=(
            """
            CREATE TABLE store_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE records (
                id TEXT PRIMARY KEY,
                entity TEXT NOT NULL CHECK (length(entity) > 0),
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE relations (
                parent_id TEXT NOT NULL REFERENCES records(id) ON DELETE CASCADE,
                relation TEXT NOT NULL,
                position INTEGER NOT NULL CHECK (position >= 0),
                child_id TEXT NOT NULL REFERENCES records(id) ON DELETE CASCADE,
                PRIMARY KEY (parent_id, relation, position),
                UNIQUE (parent_id, relation, child_id)
            )
            """,
            "CREATE INDEX idx_records_entity_created ON records(entity, created_at)",
            "CREATE INDEX idx_relations_child ON relations(child_id)",
        ),
    ),
)


class RecordStoreError(RuntimeError):
    """Base class for record store errors."""


class RecordStoreBusyError(RecordStoreError):
    """Raised when the database stayed locked through every retry."""


class RecordStoreMigrationError(RecordStoreError):
    """Raised when the on-disk schema does not match the known migrations."""


class RecordStoreCorruptionError(RecordStoreError):
    """Raised when SQLite reports a damaged or foreign database file."""


class RecordStoreAsyncPolicyError(RecordStoreError):
    """Raised when blocking store I/O is attempted on an event loop thread."""


class RecordStoreClosedError(RecordStoreError):
    """Raised when the store is used after ``close()``."""


class RecordStore:
    """SQLite record store with one owned connection, shared across worker threads."""

    def __init__(
        self,
        path: str | Path = IN_MEMORY_STORE_PATH,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
        async_blocking_policy: AsyncBlockingPolicy = DEFAULT_ASYNC_BLOCKING_POLICY,
    ) -> None:
        for name, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")
        if async_blocking_policy not in ASYNC_BLOCKING_POLICIES:
            raise ValueError(
                f"async_blocking_policy must be 'allow' or 'strict', got {async_blocking_policy!r}"
            )

        self._path: Path | None = (
            None if str(path) == IN_MEMORY_STORE_PATH else Path(path).expanduser()
        )
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._async_blocking_policy = async_blocking_policy
        self._conn: sqlite3.Connection | None = None
        self._closed = False
        self._store_id: str | None = None
        self._savepoints = 0
        self._lock = threading.RLock()

    @property
    def path(self) -> Path | None:
        """Database file path, or ``None`` for in-memory stores."""
        return self._path

    @property
    def is_in_memory(self) -> bool:
        return self._path is None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def async_blocking_policy(self) -> AsyncBlockingPolicy:
        return self._async_blocking_policy

    @property
    def store_id(self) -> str:
        """Stable identifier of this store, readable once ``migrate()`` has run."""
        if self._store_id is None:
            raise RecordStoreError(f"store_id of {self.describe()} is unknown until migrate()")
        return self._store_id

    def describe(self) -> str:
        return IN_MEMORY_STORE_PATH if self._path is None else str(self._path)

    # ------------------------------------------------------------------
    # Connection and transactions
    # ------------------------------------------------------------------

    def connection(self) -> sqlite3.Connection:
        """Return the owned connection, opening it on first use."""

        self._check_blocking_allowed("connection")
        with self._lock:
            if self._closed:
                raise RecordStoreClosedError(f"record store {self.describe()} is closed")
            if self._conn is None:
                self._conn = self._connect()
            return self._conn

    @contextmanager
    def transaction(self, *, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Commit on success and roll back on error; nested calls use savepoints."""

        self._check_blocking_allowed("transaction")
        with self._lock:
            conn = self.connection()
            if conn.in_transaction:
                self._savepoints += 1
                name = f"sp_{self._savepoints}"
                opening, on_success, on_error = (
                    f"SAVEPOINT {name}",
                    (f"RELEASE {name}",),
                    (f"ROLLBACK TO {name}", f"RELEASE {name}"),
                )
            else:
                opening, on_success, on_error = (
                    "BEGIN IMMEDIATE" if immediate else "BEGIN",
                    ("COMMIT",),
                    ("ROLLBACK",),
                )

            self._retrying(opening, lambda: conn.execute(opening))
            try:
                yield conn
            except BaseException:
                for statement in on_error:
                    self._retrying(statement, lambda sql=statement: conn.execute(sql))
                raise
            for statement in on_success:
                self._retrying(statement, lambda sql=statement: conn.execute(sql))

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    def migrate(self) -> int:
        """Bring the schema up to date and return its version; safe to repeat."""

        self._check_blocking_allowed("migrate")
        with self._lock:
            conn = self.connection()
            self._retrying("create schema_versions", lambda: conn.execute(_VERSION_TABLE))
            recorded = {
                int(row["version"]): str(row["checksum"])
                for row in self._rows("SELECT version, checksum FROM schema_versions", ())
            }
            newest = max(recorded, default=0)
            if newest > RECORD_STORE_SCHEMA_VERSION:
                raise RecordStoreMigrationError(
                    f"database schema is newer than this library supports "
                    f"(db={newest}, supported={RECORD_STORE_SCHEMA_VERSION}) for {self.describe()}"
                )

            for migration in _MIGRATIONS:
                checksum = migration.checksum
                if migration.version in recorded:
                    if recorded[migration.version] != checksum:
                        raise RecordStoreMigrationError(
                            f"migration checksum mismatch for version {migration.version} "
                            f"in {self.describe()}"
                        )
                    continue
                with self.transaction() as tx:
                    for statement in migration.statements:
                        tx.execute(statement)
                    tx.execute(
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, checksum, utc_now_iso()),
                    )

            self._store_id = self._load_or_assign_store_id()
            return self.schema_version()

    async def migrate_async(self) -> int:
        return await asyncio.to_thread(self.migrate)

    def schema_version(self) -> int:
        row = self.query_one("SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions")
        version = None if row is None else row["version"]
        if not isinstance(version, int):
            raise RecordStoreMigrationError(f"unreadable schema version: {version!r}")
        return version

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: SQLParams = ()) -> int:
        """Run one statement in its own transaction and return the affected row count."""

        with self.transaction() as tx:
            return self._retrying(sql, lambda: tx.execute(sql, tuple(params))).rowcount

    def executemany(self, sql: str, params_iter: Iterable[SQLParams]) -> int:
        batch = [tuple(params) for params in params_iter]
        with self.transaction() as tx:
            return self._retrying(sql, lambda: tx.executemany(sql, batch)).rowcount

    def query_all(self, sql: str, params: SQLParams = ()) -> list[Row]:
        self._check_blocking_allowed("query_all")
        return self._rows(sql, params)

    def query_one(self, sql: str, params: SQLParams = ()) -> Row | None:
        self._check_blocking_allowed("query_one")
        with self._lock:
            conn = self.connection()
            row = self._retrying(sql, lambda: conn.execute(sql, tuple(params))).fetchone()
        return None if row is None else dict(row)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def backup(self, destination: str | Path) -> Path:
        """Write a consistent copy of the database to ``destination``."""

        self._check_blocking_allowed("backup")
        target_path = Path(destination).expanduser()
        target_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            source = self.connection()
            target = sqlite3.connect(target_path, isolation_level=None)
            try:
                source.backup(target)
                target.execute("PRAGMA journal_mode=WAL")
            finally:
                target.close()
        return target_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return SQLite's integrity problems; an empty tuple means the file is sound."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        problems = tuple(
            str(next(iter(row.values())))
            for row in self.query_all(f"PRAGMA integrity_check({int(max_errors)})")
        )
        return () if problems == ("ok",) else problems

    def close(self) -> None:
        """Close the connection; later use raises ``RecordStoreClosedError``."""

        with self._lock:
            conn, self._conn = self._conn, None
            self._closed = True
        if conn is not None:
            conn.close()

    def __enter__(self) -> RecordStore:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_blocking_allowed(self, operation: str) -> None:
        if self._async_blocking_policy == "allow":
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        raise RecordStoreAsyncPolicyError(
            f"{operation} on {self.describe()} is disallowed from an active event loop thread; "
            "run it via asyncio.to_thread(...)"
        )

    def _connect(self) -> sqlite3.Connection:
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            IN_MEMORY_STORE_PATH if self._path is None else self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        if self._path is not None:
            (mode,) = conn.execute("PRAGMA journal_mode=WAL").fetchone()
            if str(mode).lower() != "wal":
                conn.close()
                raise RecordStoreError(f"{self.describe()} refused WAL journal mode ({mode})")
        return conn

    def _rows(self, sql: str, params: SQLParams) -> list[Row]:
        with self._lock:
            conn = self.connection()
            cursor = self._retrying(sql, lambda: conn.execute(sql, tuple(params)))
            return [dict(row) for row in cursor.fetchall()]

    def _load_or_assign_store_id(self) -> str:
        row = self.query_one("SELECT value FROM store_meta WHERE key = ?", (_STORE_ID_KEY,))
        if row is not None:
            value = str(row["value"])
            ids.validate_prefixed_id(value, ids.STORE_ID_PREFIX)
            return value
        store_id = ids.generate_store_id()
        self.execute(
            "INSERT INTO store_meta (key, value) VALUES (?, ?)", (_STORE_ID_KEY, store_id)
        )
        return store_id

    def _retrying(self, sql: str, call: Callable[[], _T]) -> _T:
        """Run ``call``, retrying while SQLite reports the database as busy."""

        attempt = 0
        while True:
            try:
                return call()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                busy = _is_busy(exc)
                if busy and attempt < self._busy_retry_limit:
                    time.sleep(self._busy_retry_backoff_ms / 1000.0 * (2**attempt))
                    attempt += 1
                    continue
                statement = " ".join(sql.split())[:80]
                if busy:
                    raise RecordStoreBusyError(
                        f"{self.describe()} stayed locked after {attempt + 1} attempt(s) "
                        f"running {statement!r}: {exc}"
                    ) from exc
                if _is_corruption(exc):
                    raise RecordStoreCorruptionError(
                        f"{self.describe()} looks damaged ({exc}); run integrity_check() "
                        "and restore from a backup()"
                    ) from exc
                raise RecordStoreError(f"{statement!r} failed on {self.describe()}: {exc}") from exc


def _primary_code(exc: sqlite3.Error) -> int | None:
    code = getattr(exc, "sqlite_errorcode", None)
    return code & 0xFF if isinstance(code, int) else None


def _is_busy(exc: sqlite3.Error) -> bool:
    if _primary_code(exc) in (_SQLITE_BUSY, _SQLITE_LOCKED):
        return True
    return "is locked" in str(exc).lower()


def _is_corruption(exc: sqlite3.Error) -> bool:
    if _primary_code(exc) in (_SQLITE_CORRUPT, _SQLITE_NOTADB):
        return True
    message = str(exc).lower()
    return "malformed" in message or "not a database" in message


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "ASYNC_BLOCKING_POLICIES",
    "AsyncBlockingPolicy",
    "DEFAULT_ASYNC_BLOCKING_POLICY",
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "RecordStore",
    "RecordStoreAsyncPolicyError",
    "RecordStoreBusyError",
    "RecordStoreClosedError",
    "RecordStoreCorruptionError",
    "RecordStoreError",
    "RecordStoreMigrationError",
    "Row",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "utc_now_iso",
]
