#!/usr/bin/env python3
"""
Widestore Storage Primitives

Widestore is the reference store behind widetable. It keeps wide-column tables
(column families, qualifiers, byte row keys) in an ordered key-value table on
top of SQLite, and hands out pooled connections through an acquire/release
handle contract.
"""

import json
import logging
import os
import queue
import sqlite3
import threading
from collections import namedtuple
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Store builtin bytes to avoid naming conflicts
_builtin_bytes = bytes

# Default constants
DEFAULT_DB_PATH = "widestore.db"
POOL_SIZE_DEFAULT = 4
SCAN_CACHING_DEFAULT = 100
WRITE_BUFFER_SIZE_DEFAULT = 2 * 1024 * 1024
WRITE_BUFFER_SIZE_KEY = "store.client.write.buffer"


def pool_size_default() -> int:
    """Calculate the default pool size based on available CPU cores.

    Returns:
        int: Default pool size (2 * CPU count, or 4 if CPU count is not available)
    """
    return os.cpu_count() * 2 if os.cpu_count() else POOL_SIZE_DEFAULT


class StoreError(Exception):
    """Base class for store failures."""


class TableNotFound(StoreError):
    pass


class TableExists(StoreError):
    pass


class TableDisabled(StoreError):
    pass


class TableNotDisabled(StoreError):
    pass


# Order-preserving encoding constants
_WIDESTORE_BYTE_NULL = 0x00
_WIDESTORE_BYTE_BYTES = 0x01
_WIDESTORE_BYTE_STRING = 0x02

# Every encoded item starts with a code below this byte
_WIDESTORE_BYTE_END = 0xFF


def _bytes_write_one(value: Any) -> bytes:
    """Encode a single value to bytes with order preservation."""
    if value is None:
        return _builtin_bytes([_WIDESTORE_BYTE_NULL])
    elif isinstance(value, (_builtin_bytes, bytearray)):
        return (
            _builtin_bytes([_WIDESTORE_BYTE_BYTES])
            + _builtin_bytes(value).replace(b"\x00", b"\x00\xff")
            + b"\x00"
        )
    elif isinstance(value, str):
        return (
            _builtin_bytes([_WIDESTORE_BYTE_STRING])
            + value.encode("utf-8").replace(b"\x00", b"\x00\xff")
            + b"\x00"
        )
    else:
        raise ValueError(f"Unsupported type for encoding: {type(value)}")


def _bytes_read_escaped(data: bytes, pos: int) -> Tuple[bytes, int]:
    end = pos
    while end < len(data):
        if data[end] == 0x00 and (end + 1 >= len(data) or data[end + 1] != 0xFF):
            break
        end += 1 if data[end] != 0x00 else 2
    return (data[pos:end].replace(b"\x00\xff", b"\x00"), end + 1)


def _bytes_read_one(data: bytes, pos: int = 0) -> Tuple[Any, int]:
    """Decode a single value from bytes."""
    code = data[pos]
    if code == _WIDESTORE_BYTE_NULL:
        return (None, pos + 1)
    elif code == _WIDESTORE_BYTE_BYTES:
        return _bytes_read_escaped(data, pos + 1)
    elif code == _WIDESTORE_BYTE_STRING:
        raw, pos = _bytes_read_escaped(data, pos + 1)
        return (raw.decode("utf-8"), pos)
    else:
        raise ValueError(f"Unknown encode type code: {code}")


def bytes_write(items: Tuple) -> bytes:
    """Encode a tuple to bytes with order preservation."""
    return b"".join(_bytes_write_one(item) for item in items)


def bytes_read(data: bytes) -> Tuple:
    """Decode bytes back to tuple."""
    result = []
    pos = 0
    while pos < len(data):
        val, pos = _bytes_read_one(data, pos)
        result.append(val)
    return tuple(result)


def bytes_next(data: _builtin_bytes) -> Optional[_builtin_bytes]:
    """Compute next byte sequence for exclusive upper bound in range queries."""
    if not data:
        return _builtin_bytes([0x00])

    # Find rightmost byte that's not 0xFF
    for i in range(len(data) - 1, -1, -1):
        if data[i] != 0xFF:
            # Increment this byte and truncate everything after
            return data[:i] + _builtin_bytes([data[i] + 1])

    # All bytes are 0xFF, no successor exists
    return None


def _cell_range(
    table_name: str, lower: Optional[bytes], upper: Optional[bytes]
) -> Tuple[bytes, bytes]:
    """Return the [start, end) cell key range covering rows in [lower, upper)."""
    prefix = bytes_write((table_name,))
    start = prefix if lower is None else bytes_write((table_name, lower))
    end = (
        prefix + _builtin_bytes([_WIDESTORE_BYTE_END])
        if upper is None
        else bytes_write((table_name, upper))
    )
    return start, end


def _row_range(table_name: str, row: bytes) -> Tuple[bytes, bytes]:
    """Return the [start, end) cell key range of exactly one row."""
    # Cells of a row continue with the family, which is always a string
    prefix = bytes_write((table_name, row)) + _builtin_bytes([_WIDESTORE_BYTE_STRING])
    return prefix, bytes_next(prefix)


Result = namedtuple("Result", ["row", "cells"])

# Mutation kinds accepted by StoreConnection.mutate
Put = namedtuple("Put", ["row", "family", "qualifier", "value"])
Delete = namedtuple("Delete", ["row"])


def mutation_size(mutation) -> int:
    """Approximate buffered size of a mutation in bytes."""
    if isinstance(mutation, Put):
        return (
            len(mutation.row)
            + len(mutation.family.encode("utf-8"))
            + len(mutation.qualifier)
            + len(mutation.value)
        )
    return len(mutation.row)


def _sqlite_connect(db_path: str) -> sqlite3.Connection:
    cnx = sqlite3.connect(db_path, check_same_thread=False)
    cnx.execute("PRAGMA journal_mode=WAL")
    cnx.execute("PRAGMA foreign_keys=ON")
    return cnx


class StoreConnection:
    """Store operations over one pooled SQLite connection.

    A connection may be bound to a table (for row lookups, scans and writes)
    and carries the properties it was acquired with.
    """

    def __init__(
        self,
        sqlite: sqlite3.Connection,
        table_name: Optional[str] = None,
        properties: Optional[Dict[str, str]] = None,
    ):
        self.sqlite = sqlite
        self.table_name = table_name
        self.properties = dict(properties or {})

    def _table_row(self, name: str):
        cursor = self.sqlite.execute(
            "SELECT enabled FROM wide_tables WHERE name = ?", (name,)
        )
        row = cursor.fetchone()
        if row is None:
            raise TableNotFound(name)
        return row

    def _bound_table(self) -> str:
        if self.table_name is None:
            raise StoreError("connection is not bound to a table")
        if not self._table_row(self.table_name)[0]:
            raise TableDisabled(self.table_name)
        return self.table_name

    def table_exists(self, name: str) -> bool:
        cursor = self.sqlite.execute(
            "SELECT 1 FROM wide_tables WHERE name = ?", (name,)
        )
        return cursor.fetchone() is not None

    def table_disabled(self, name: str) -> bool:
        return not self._table_row(name)[0]

    def table_available(self, name: str) -> bool:
        # A SQLite table is available as soon as it is created
        return self.table_exists(name)

    def _table_enabled_set(self, name: str, enabled: bool) -> None:
        self._table_row(name)
        with self.sqlite:
            self.sqlite.execute(
                "UPDATE wide_tables SET enabled = ? WHERE name = ?",
                (1 if enabled else 0, name),
            )

    def table_disable(self, name: str) -> None:
        self._table_enabled_set(name, False)

    def table_enable(self, name: str) -> None:
        self._table_enabled_set(name, True)

    def table_delete(self, name: str) -> None:
        """Delete a disabled table, its families and all of its cells."""
        if not self.table_disabled(name):
            raise TableNotDisabled(name)
        start, end = _cell_range(name, None, None)
        with self.sqlite:
            self.sqlite.execute(
                "DELETE FROM kv_store WHERE key >= ? AND key < ?", (start, end)
            )
            self.sqlite.execute(
                "DELETE FROM wide_families WHERE table_name = ?", (name,)
            )
            self.sqlite.execute("DELETE FROM wide_tables WHERE name = ?", (name,))

    def table_create(
        self,
        name: str,
        families: List[str],
        properties: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.table_exists(name):
            raise TableExists(name)
        with self.sqlite:
            self.sqlite.execute(
                "INSERT INTO wide_tables (name, enabled, properties) VALUES (?, 1, ?)",
                (name, json.dumps(dict(properties or {}), sort_keys=True)),
            )
            self.sqlite.executemany(
                "INSERT INTO wide_families (table_name, position, family) VALUES (?, ?, ?)",
                [(name, position, family) for position, family in enumerate(families)],
            )

    def table_properties(self, name: str) -> Dict[str, Any]:
        self._table_row(name)
        cursor = self.sqlite.execute(
            "SELECT properties FROM wide_tables WHERE name = ?", (name,)
        )
        return json.loads(cursor.fetchone()[0])

    def table_families(self, name: str) -> List[str]:
        self._table_row(name)
        cursor = self.sqlite.execute(
            "SELECT family FROM wide_families WHERE table_name = ? ORDER BY position",
            (name,),
        )
        return [row[0] for row in cursor]

    def row_exists(self, row: bytes) -> bool:
        """Check whether the bound table holds any cell for the given row."""
        start, end = _row_range(self._bound_table(), row)
        cursor = self.sqlite.execute(
            "SELECT 1 FROM kv_store WHERE key >= ? AND key < ? LIMIT 1", (start, end)
        )
        return cursor.fetchone() is not None

    def write_buffer_size(self) -> int:
        value = self.properties.get(WRITE_BUFFER_SIZE_KEY)
        return int(value) if value is not None else WRITE_BUFFER_SIZE_DEFAULT

    def mutate(self, mutations: List[Any]) -> None:
        """Apply puts and row deletes to the bound table in one transaction."""
        table_name = self._bound_table()
        families = set(self.table_families(table_name))
        with self.sqlite:
            for mutation in mutations:
                if isinstance(mutation, Put):
                    if mutation.family not in families:
                        raise StoreError(
                            f"unknown column family {mutation.family!r} in {table_name!r}"
                        )
                    key = bytes_write(
                        (table_name, mutation.row, mutation.family, mutation.qualifier)
                    )
                    self.sqlite.execute(
                        "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                        (key, _builtin_bytes(mutation.value)),
                    )
                elif isinstance(mutation, Delete):
                    start, end = _row_range(table_name, mutation.row)
                    self.sqlite.execute(
                        "DELETE FROM kv_store WHERE key >= ? AND key < ?", (start, end)
                    )
                else:
                    raise StoreError(f"unsupported mutation: {type(mutation)}")

    def scan(
        self,
        lower: Optional[bytes] = None,
        upper: Optional[bytes] = None,
        columns: Optional[List[Tuple[str, Optional[bytes]]]] = None,
        caching: int = 0,
    ) -> Iterator[Result]:
        """Yield rows of the bound table with lower <= row < upper.

        Args:
            lower: Inclusive start row, None for the first row
            upper: Exclusive stop row, None for past the last row
            columns: (family, qualifier) pairs to keep; a None qualifier keeps
                the whole family. None or empty keeps every cell.
            caching: Rows fetched per round trip, 0 for SCAN_CACHING_DEFAULT
        """
        table_name = self._bound_table()
        start, end = _cell_range(table_name, lower, upper)
        cursor = self.sqlite.execute(
            "SELECT key, value FROM kv_store WHERE key >= ? AND key < ? ORDER BY key ASC",
            (start, end),
        )
        batch = caching if caching > 0 else SCAN_CACHING_DEFAULT
        current = None
        cells: Dict[Tuple[str, bytes], bytes] = {}
        while True:
            rows = cursor.fetchmany(batch)
            if not rows:
                break
            for key, value in rows:
                _, row, family, qualifier = bytes_read(key)
                if columns and not _column_selected(columns, family, qualifier):
                    continue
                if current is not None and row != current:
                    yield Result(current, cells)
                    cells = {}
                current = row
                cells[(family, qualifier)] = value
        if current is not None:
            yield Result(current, cells)


def _column_selected(columns, family: str, qualifier: bytes) -> bool:
    for wanted_family, wanted_qualifier in columns:
        if wanted_family == family and (
            wanted_qualifier is None or wanted_qualifier == qualifier
        ):
            return True
    return False


class ConnectionHandle:
    """A pooled connection lent to exactly one caller.

    ``release()`` returns the connection to its pool; calling it again is a
    no-op.
    """

    def __init__(self, pool: "ConnectionPool", connection: StoreConnection):
        self.pool = pool
        self.connection = connection
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.pool._sqlite_release(self.connection.sqlite)

    close = release

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class ConnectionPool:
    """Pool of SQLite connections to one widestore database."""

    def __init__(self, db_path: str, pool_size: int):
        self.db_path = db_path
        self.pool_size = pool_size
        self.idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self.lock = threading.Lock()

    def acquire(
        self,
        table_name: Optional[str] = None,
        properties: Optional[Dict[str, str]] = None,
    ) -> ConnectionHandle:
        """Lend a connection, optionally bound to a table and properties."""
        try:
            sqlite = self.idle.get_nowait()
        except queue.Empty:
            sqlite = _sqlite_connect(self.db_path)
        logger.debug("acquired connection for table %r", table_name)
        return ConnectionHandle(self, StoreConnection(sqlite, table_name, properties))

    def _sqlite_release(self, sqlite: sqlite3.Connection) -> None:
        if sqlite.in_transaction:
            sqlite.rollback()
        with self.lock:
            if self.idle.qsize() < self.pool_size:
                self.idle.put(sqlite)
                sqlite = None
        if sqlite is not None:
            sqlite.close()
        logger.debug("released connection")

    def close(self) -> None:
        """Close every idle connection."""
        while True:
            try:
                self.idle.get_nowait().close()
            except queue.Empty:
                return


def new(db_path: str = DEFAULT_DB_PATH, pool_size: int = None) -> ConnectionPool:
    """
    Create a connection pool over a widestore database, initializing its schema.

    Args:
        db_path: Path to the SQLite database file.
        pool_size: Maximum number of idle connections kept by the pool.

    Returns:
        A ConnectionPool ready to lend connections.
    """
    # Calculate default pool size if not provided
    if pool_size is None:
        pool_size = pool_size_default()

    cnx = _sqlite_connect(db_path)
    cnx.executescript(
        """
        CREATE TABLE IF NOT EXISTS wide_tables (
            name TEXT PRIMARY KEY,
            enabled INTEGER NOT NULL,
            properties TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS wide_families (
            table_name TEXT NOT NULL REFERENCES wide_tables (name),
            position INTEGER NOT NULL,
            family TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS kv_store (
            key BLOB PRIMARY KEY,
            value BLOB NOT NULL
        );
        """
    )
    cnx.commit()
    cnx.close()

    return ConnectionPool(db_path, pool_size)
