"""Key/value storage for gappsbot.

A thin wrapper over an embedded SQLite file (SQLAlchemy Core). All records
live in a single flat namespace table named "global": a string key mapped to
an opaque, nullable byte value. Each operation runs in its own transaction.

Purging drops the namespace. It is not recreated automatically: every
operation fails with NamespaceMissingError until ensure_namespace() is
called explicitly.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import (
    Column,
    LargeBinary,
    MetaData,
    Table,
    Text,
    create_engine,
    delete,
    inspect,
    select,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from gappsbot.logging import get_logger

log = get_logger("storage")

NAMESPACE = "global"

metadata = MetaData()

records = Table(
    NAMESPACE,
    metadata,
    Column("key", Text, primary_key=True),
    Column("value", LargeBinary, nullable=True),  # NULL is a deliberate nil value
)


# =============================================================================
# Errors
# =============================================================================


class StorageError(Exception):
    """Base class for storage failures."""


class OpenError(StorageError):
    """The database file could not be opened or initialized."""


class NamespaceMissingError(StorageError):
    """The global namespace does not exist (e.g. after purge)."""


class NotFoundError(StorageError):
    """The key has never been set."""

    def __init__(self, key: str) -> None:
        super().__init__(f"key not found: {key!r}")
        self.key = key


class NilValueError(StorageError):
    """The key exists but holds a nil value."""

    def __init__(self, key: str) -> None:
        super().__init__(f"value is nil for key: {key!r}")
        self.key = key


class CloseTimeoutError(StorageError):
    """Closing the database took longer than the configured timeout."""


# =============================================================================
# Store
# =============================================================================


class Store:
    """Key/value store backed by a single SQLite file.

    Attributes:
        name: Component identifier used by the shutdown coordinator.
        timeout: Seconds bounding lock acquisition and close.
    """

    name = "storage"

    def __init__(self, engine: Engine, timeout: float) -> None:
        """Wrap an existing engine. Use Store.open() to create one from a path.

        Args:
            engine: SQLAlchemy engine for the database file.
            timeout: Positive number of seconds bounding close().
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.engine = engine
        self.timeout = timeout
        self._closed = False

    @classmethod
    def open(cls, path: Path | str, timeout: float) -> "Store":
        """Open or create the database file and its namespace.

        Args:
            path: Path to the database file. Parent directories are created.
            timeout: Seconds to wait for a lock held by another process, and
                the bound applied to close().

        Returns:
            An open Store.

        Raises:
            OpenError: If the file cannot be opened or the namespace created.
            ValueError: If timeout is not positive.
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        path = Path(path)
        log.debug("db_opening", path=str(path), timeout=timeout)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                f"sqlite:///{path}",
                connect_args={"timeout": timeout},
            )
            with engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.commit()
        except (OSError, SQLAlchemyError) as e:
            raise OpenError(f"unable to open DB at {path}: {e}") from e

        store = cls(engine, timeout)
        log.debug("db_namespace_setup", namespace=NAMESPACE)
        try:
            store.ensure_namespace()
        except StorageError as e:
            engine.dispose()
            raise OpenError(f"unable to create {NAMESPACE} namespace: {e}") from e

        log.debug("db_opened", path=str(path))
        return store

    @property
    def closed(self) -> bool:
        """Whether close() has been called."""
        return self._closed

    def ensure_namespace(self) -> None:
        """Create the global namespace if it does not exist.

        This is the only way to recover from purge().
        """
        self._check_open()
        try:
            with self.engine.begin() as conn:
                records.create(conn, checkfirst=True)
        except SQLAlchemyError as e:
            raise StorageError(f"unable to create {NAMESPACE} namespace: {e}") from e

    def keys(self) -> list[str]:
        """List keys holding a non-nil value, in ascending byte order.

        Raises:
            NamespaceMissingError: If the namespace was purged.
        """
        log.debug("db_keys")
        with self._namespace("unable to get the list of keys from DB") as conn:
            stmt = (
                select(records.c.key)
                .where(records.c.value.is_not(None))
                .order_by(records.c.key)
            )
            return [row.key for row in conn.execute(stmt)]

    def get(self, key: str) -> bytes:
        """Get a copy of the value stored under key.

        Raises:
            NotFoundError: If the key was never set.
            NilValueError: If the key holds a nil value.
            NamespaceMissingError: If the namespace was purged.
        """
        log.debug("db_get", key=key)
        with self._namespace(f"unable to get value for key {key!r} from DB") as conn:
            row = conn.execute(
                select(records.c.value).where(records.c.key == key)
            ).first()

        if row is None:
            raise NotFoundError(key)
        if row.value is None:
            raise NilValueError(key)
        return bytes(row.value)

    def put(self, key: str, value: bytes | bytearray | memoryview | None) -> None:
        """Insert or replace the value under key.

        The value is copied on write. None is stored as a nil value, which
        get() reports as NilValueError rather than NotFoundError.

        Raises:
            NamespaceMissingError: If the namespace was purged.
        """
        if value is not None and not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeError(f"value must be bytes-like or None, got {type(value).__name__}")

        data = None if value is None else bytes(value)
        log.debug("db_put", key=key, size=None if data is None else len(data))

        stmt = sqlite_insert(records).values(key=key, value=data)
        stmt = stmt.on_conflict_do_update(
            index_elements=[records.c.key],
            set_={"value": stmt.excluded.value},
        )
        with self._namespace(f"unable to put value for key {key!r} to DB") as conn:
            conn.execute(stmt)

    def delete(self, key: str) -> None:
        """Remove key. Deleting a missing key is not an error.

        Raises:
            NamespaceMissingError: If the namespace was purged.
        """
        log.debug("db_delete", key=key)
        with self._namespace(f"unable to delete value for key {key!r} from DB") as conn:
            conn.execute(delete(records).where(records.c.key == key))

    def purge(self) -> None:
        """Drop the whole namespace, losing every key.

        Raises:
            NamespaceMissingError: If the namespace is already gone.
        """
        log.warning("db_purge", namespace=NAMESPACE)
        with self._namespace(f"unable to purge {NAMESPACE} namespace from DB") as conn:
            records.drop(conn)

    async def close(self) -> None:
        """Close the database, bounded by the configured timeout.

        The engine is disposed in a worker thread. If the timeout fires first
        the dispose keeps running in the background; it is only no longer
        awaited. Closing twice is a no-op.

        Raises:
            CloseTimeoutError: If dispose did not finish within the timeout.
            StorageError: If dispose failed.
        """
        if self._closed:
            log.debug("db_already_closed")
            return
        self._closed = True

        log.debug("db_closing", timeout=self.timeout)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.engine.dispose),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise CloseTimeoutError(
                f"unable to close DB within {self.timeout}s"
            ) from e
        except SQLAlchemyError as e:
            raise StorageError(f"unable to close DB: {e}") from e
        log.debug("db_closed")

    # =========================================================================
    # Internals
    # =========================================================================

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError("storage is closed")

    @contextmanager
    def _namespace(self, action: str) -> Iterator[Connection]:
        """Open a transaction on a connection whose namespace exists."""
        self._check_open()
        try:
            with self.engine.begin() as conn:
                if not inspect(conn).has_table(NAMESPACE):
                    raise NamespaceMissingError(
                        f"{action}: namespace {NAMESPACE!r} not found"
                    )
                yield conn
        except SQLAlchemyError as e:
            raise StorageError(f"{action}: {e}") from e
