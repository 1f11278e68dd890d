#!/usr/bin/env python3
"""
Widetable Table Access

Widetable is the table-access layer over a widestore-shaped sorted key-value
store. It manages table lifecycle, turns typed start/stop key literals into
byte-encoded scan bounds, and hands out scanner builders and write-operation
managers. Every store call runs inside a scoped pooled connection handle that
is released on every exit path.
"""

import contextlib
import functools
import logging
from collections import namedtuple
from typing import Any, Callable, Dict, Iterator, List, Optional

from widekey import (
    KeyType,
    Mapping,
    date_parse,
    environment_substitute,
    key_encode,
    number_parse,
)
from widestore import WRITE_BUFFER_SIZE_KEY, Delete, Put, Result, mutation_size

logger = logging.getLogger(__name__)

BOUND_LOWER = "lower"
BOUND_UPPER = "upper"


class TableError(Exception):
    """Base class for widetable failures."""


class TableConfigError(TableError, ValueError):
    """A user supplied value (key literal, mask, cache size) is unusable."""


class KeyBoundaryError(TableConfigError):
    """A start or stop key literal could not be parsed or encoded."""

    def __init__(self, literal: str, bound: str):
        super().__init__(f"Unable to parse {bound} bound key value '{literal}'")
        self.literal = literal
        self.bound = bound


class CacheSizeError(TableConfigError):
    def __init__(self, literal: str):
        super().__init__(f"Unable to parse scanner cache size '{literal}'")
        self.literal = literal


class TableIOError(TableError, IOError):
    """Acquiring a connection or talking to the store failed.

    The original failure is chained as ``__cause__``.
    """


# Table, scan and write descriptors
Table = namedtuple("Table", ["pool", "name"])
ScanBoundary = namedtuple("ScanBoundary", ["lower", "upper"])
ScanPlan = namedtuple("ScanPlan", ["table_name", "cache_size", "boundary"])


class WriteSettings(namedtuple("WriteSettings", ["write_buffer_size"])):
    """Recognized options of a write connection."""

    __slots__ = ()

    def properties(self) -> Dict[str, str]:
        if self.write_buffer_size is None:
            return {}
        return {WRITE_BUFFER_SIZE_KEY: str(self.write_buffer_size)}


def table_new(pool, name: str) -> Table:
    """Bind a table name to the pool its operations acquire connections from."""
    return Table(pool, name)


# ============================================================================
# Connection handle scope
# ============================================================================


def _handle_acquire(pool, table_name: Optional[str], properties: Optional[Dict[str, str]]):
    try:
        return pool.acquire(table_name, properties)
    except TableIOError:
        raise
    except Exception as e:
        raise TableIOError(f"Unable to acquire a connection for {table_name!r}") from e


def _handle_release(handle, table_name: Optional[str]) -> None:
    try:
        handle.release()
    except TableIOError:
        raise
    except Exception as e:
        raise TableIOError(f"Unable to release the connection for {table_name!r}") from e


@contextlib.contextmanager
def handle_scope(
    pool,
    table_name: Optional[str] = None,
    properties: Optional[Dict[str, str]] = None,
) -> Iterator[Any]:
    """Lend the connection of one pooled handle to the body of a with block.

    The handle is released exactly once when the block exits, whatever the
    reason. Exceptions raised by the acquisition or the body become
    TableIOError; interrupts propagate unchanged.

    Args:
        pool: Anything with acquire(table_name, properties) -> handle
        table_name: Bind the connection to this table
        properties: Connection properties, e.g. WRITE_BUFFER_SIZE_KEY
    """
    handle = _handle_acquire(pool, table_name, properties)
    failed = True
    try:
        yield handle.connection
        failed = False
    except TableIOError:
        raise
    except Exception as e:
        raise TableIOError(f"Operation on {table_name!r} failed: {e}") from e
    finally:
        try:
            _handle_release(handle, table_name)
        except TableIOError as e:
            if not failed:
                raise
            # The body's error is already propagating
            logger.warning("%s: %s", e, e.__cause__)


def _pooled(bound: bool):
    def decorator(func):
        @functools.wraps(func)
        def wrapper(table: Table, *args, **kwargs):
            with handle_scope(table.pool, table.name if bound else None) as cnx:
                return func(cnx, table.name, *args, **kwargs)

        return wrapper

    return decorator


# Run a table operation with a connection from the table's pool
pooled = _pooled(bound=False)
# Same, with the connection bound to the table for row level access
pooled_bound = _pooled(bound=True)


# ============================================================================
# Table lifecycle
# ============================================================================


@pooled
def table_exists(cnx, name: str) -> bool:
    return cnx.table_exists(name)


@pooled
def table_disabled(cnx, name: str) -> bool:
    return cnx.table_disabled(name)


@pooled
def table_available(cnx, name: str) -> bool:
    return cnx.table_available(name)


@pooled
def table_disable(cnx, name: str) -> None:
    logger.debug("disabling table %r", name)
    cnx.table_disable(name)


@pooled
def table_enable(cnx, name: str) -> None:
    logger.debug("enabling table %r", name)
    cnx.table_enable(name)


@pooled
def table_delete(cnx, name: str) -> None:
    logger.debug("deleting table %r", name)
    cnx.table_delete(name)


@pooled
def table_create(
    cnx,
    name: str,
    families: List[str],
    properties: Optional[Dict[str, Any]] = None,
) -> None:
    """Create the table with its column families.

    Args:
        families: Column family names, kept in order and not deduplicated
        properties: Store specific creation options, passed through as is
    """
    logger.debug("creating table %r with families %r", name, families)
    cnx.table_create(name, list(families), dict(properties or {}))


@pooled
def table_column_families(cnx, name: str) -> List[str]:
    return cnx.table_families(name)


@pooled_bound
def table_key_exists(cnx, name: str, key: bytes) -> bool:
    """Check whether a row with this encoded key exists in the table."""
    return cnx.row_exists(key)


def table_close(table: Table) -> None:
    """Tables hold no connection between calls; nothing to release."""


# ============================================================================
# Boundary resolution
# ============================================================================


def _mask_split(literal: str):
    parts = literal.split("@")
    # Trailing empty parts do not count, "2020@" is not split
    while len(parts) > 1 and parts[-1] == "":
        parts.pop()
    return parts


def boundary_resolve(
    literal: Optional[str],
    key_type: KeyType,
    mask: Optional[str] = None,
    substitute: Optional[Callable[[str], str]] = None,
    bound: str = BOUND_LOWER,
) -> Optional[bytes]:
    """Encode a start or stop key literal into a scan bound.

    STRING literals are encoded as is and BINARY literals are hex; neither
    looks at a mask. Date and numeric literals may carry their own mask as
    ``literal@mask`` which overrides ``mask`` for that literal only. Without
    any mask the literal is converted straight to the key type.

    Args:
        literal: The key literal, None or empty for an unbounded side
        key_type: KeyType of the mapping
        mask: Declared date or decimal conversion mask
        substitute: Resolves ${VAR} placeholders, environment_substitute by default
        bound: BOUND_LOWER or BOUND_UPPER, reported on failure

    Returns:
        The encoded bound, or None when the literal is empty

    Raises:
        KeyBoundaryError: if the literal does not parse under its mask
    """
    if not literal:
        return None
    substitute = substitute or environment_substitute
    literal = substitute(literal)

    try:
        if key_type is KeyType.BINARY:
            # assume we have a hex encoded string
            return key_encode(literal, key_type)
        if key_type is KeyType.STRING:
            return key_encode(literal, key_type)

        parts = _mask_split(literal)
        if len(parts) == 2:
            literal, mask = parts

        if mask:
            if key_type.is_date:
                return key_encode(date_parse(literal, mask), key_type)
            return key_encode(number_parse(literal, mask), key_type)
        # just try it as a string
        return key_encode(literal, key_type)
    except ValueError as e:
        raise KeyBoundaryError(literal, bound) from e


def boundaries_resolve(
    key_start: Optional[str],
    key_stop: Optional[str],
    key_type: KeyType,
    mask: Optional[str] = None,
    substitute: Optional[Callable[[str], str]] = None,
) -> ScanBoundary:
    """Resolve both bounds of a scan.

    The stop literal is only resolved when a start literal is given; a scan
    with only a stop key is unbounded on both sides.
    """
    lower = upper = None
    if key_start:
        lower = boundary_resolve(key_start, key_type, mask, substitute, BOUND_LOWER)
        if key_stop:
            upper = boundary_resolve(key_stop, key_type, mask, substitute, BOUND_UPPER)
    return ScanBoundary(lower, upper)


def cache_size_resolve(
    literal: Optional[str],
    substitute: Optional[Callable[[str], str]] = None,
    log: Optional[logging.Logger] = None,
) -> int:
    """Parse a scanner cache size literal; empty means 0, the store default."""
    if not literal:
        return 0
    substitute = substitute or environment_substitute
    text = substitute(literal)
    try:
        cache_size = int(text.strip())
    except ValueError as e:
        raise CacheSizeError(text) from e
    if cache_size < 0:
        raise CacheSizeError(text)
    (log or logger).info("Setting scanner caching to %d rows", cache_size)
    return cache_size


# ============================================================================
# Scanning
# ============================================================================


def scan_plan(
    table_name: str,
    cache_size: int,
    lower: Optional[bytes],
    upper: Optional[bytes],
) -> ScanPlan:
    """Assemble a scan plan; cache_size 0 asks for the store default."""
    if cache_size < 0:
        raise TableConfigError(f"Scanner cache size can not be negative: {cache_size}")
    return ScanPlan(table_name, cache_size, ScanBoundary(lower, upper))


class ResultScanner:
    """Iterator over the rows of a scan.

    Owns a pooled handle until it is exhausted, fails or is closed.
    """

    def __init__(self, handle, rows: Iterator[Result], table_name: str):
        self.handle = handle
        self.rows = rows
        self.table_name = table_name
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self) -> Result:
        if self.closed:
            raise StopIteration
        try:
            return next(self.rows)
        except StopIteration:
            self.close()
            raise
        except Exception as e:
            self.close()
            raise TableIOError(f"Scan of {self.table_name!r} failed: {e}") from e

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            if hasattr(self.rows, "close"):
                self.rows.close()
        finally:
            _handle_release(self.handle, self.table_name)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ScannerBuilder:
    """A scan plan plus the columns to read, materialized by build()."""

    def __init__(self, pool, plan: ScanPlan):
        self.pool = pool
        self.plan = plan
        self.columns = []

    def column_add(self, family: str, qualifier=None, binary: bool = False):
        """Restrict the scan to a family, or to one qualifier of it.

        A binary qualifier is given as a hex string.
        """
        if isinstance(qualifier, str):
            qualifier = bytes.fromhex(qualifier) if binary else qualifier.encode("utf-8")
        self.columns.append((family, qualifier))
        return self

    def caching_set(self, cache_size: int):
        boundary = self.plan.boundary
        self.plan = scan_plan(
            self.plan.table_name, cache_size, boundary.lower, boundary.upper
        )
        return self

    def build(self) -> ResultScanner:
        plan = self.plan
        handle = _handle_acquire(self.pool, plan.table_name, None)
        try:
            rows = handle.connection.scan(
                plan.boundary.lower,
                plan.boundary.upper,
                list(self.columns),
                plan.cache_size,
            )
        except Exception as e:
            _handle_release(handle, plan.table_name)
            raise TableIOError(f"Unable to scan {plan.table_name!r}") from e
        return ResultScanner(handle, iter(rows), plan.table_name)


def table_scanner_builder(
    table: Table, lower: Optional[bytes] = None, upper: Optional[bytes] = None
) -> ScannerBuilder:
    """Scanner builder over already encoded bounds, with the default cache size."""
    return ScannerBuilder(table.pool, scan_plan(table.name, 0, lower, upper))


def table_scanner_builder_mapping(
    table: Table,
    mapping: Mapping,
    mask: Optional[str],
    key_start: Optional[str],
    key_stop: Optional[str],
    cache_size: Optional[str] = None,
    log: Optional[logging.Logger] = None,
    substitute: Optional[Callable[[str], str]] = None,
) -> ScannerBuilder:
    """Scanner builder over typed key literals of a mapping.

    Args:
        table: The table to scan
        mapping: Provides the key type
        mask: Date or decimal conversion mask declared for the key
        key_start: Start key literal, inclusive
        key_stop: Stop key literal, exclusive; ignored without key_start
        cache_size: Rows per round trip as a literal, may use ${VAR}
        log: Logger for the caching message, the module logger by default
        substitute: Variable substitution for literals

    Raises:
        KeyBoundaryError: when a key literal does not parse
        CacheSizeError: when the cache size is not a non-negative integer
    """
    boundary = boundaries_resolve(key_start, key_stop, mapping.key_type, mask, substitute)
    caching = cache_size_resolve(cache_size, substitute, log)
    plan = scan_plan(table.name, caching, boundary.lower, boundary.upper)
    return ScannerBuilder(table.pool, plan)


# ============================================================================
# Writing
# ============================================================================


class WriteOperationManager:
    """Puts and deletes against one table over a handle it owns.

    With auto flush on (the default) every mutation is sent immediately.
    Otherwise mutations are buffered until flush_commits(), close(), or the
    buffer reaching the connection's write buffer size.
    """

    def __init__(self, handle, buffer_size_explicit: bool):
        self.handle = handle
        self.buffer_size_explicit = buffer_size_explicit
        self.auto_flush = True
        self.pending = []
        self.pending_size = 0
        self.closed = False

    def auto_flush_set(self, auto_flush: bool) -> None:
        self.auto_flush = auto_flush
        if auto_flush:
            self.flush_commits()

    def put(self, row: bytes, family: str, qualifier, value: bytes) -> None:
        """Queue a cell write; a None qualifier is the empty qualifier."""
        if qualifier is None:
            qualifier = b""
        elif isinstance(qualifier, str):
            qualifier = qualifier.encode("utf-8")
        if not isinstance(qualifier, (bytes, bytearray)):
            raise TableConfigError(f"Qualifier must be str or bytes, not {type(qualifier)}")
        self._mutation_add(Put(row, family, bytes(qualifier), value))

    def delete(self, row: bytes) -> None:
        self._mutation_add(Delete(row))

    def _mutation_add(self, mutation) -> None:
        if self.closed:
            raise TableError("write operation manager is closed")
        self.pending.append(mutation)
        self.pending_size += mutation_size(mutation)
        if self.auto_flush or self.pending_size >= self._buffer_limit():
            self.flush_commits()

    def _buffer_limit(self) -> int:
        try:
            return self.handle.connection.write_buffer_size()
        except Exception as e:
            raise TableIOError("Unable to read the write buffer size") from e

    def flush_commits(self) -> None:
        if not self.pending:
            return
        mutations = self.pending
        self.pending = []
        self.pending_size = 0
        try:
            self.handle.connection.mutate(mutations)
        except Exception as e:
            raise TableIOError(f"Unable to write {len(mutations)} mutations") from e

    def close(self) -> None:
        """Flush what is pending, then give the handle back exactly once."""
        if self.closed:
            return
        self.closed = True
        try:
            self.flush_commits()
        finally:
            _handle_release(self.handle, None)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def table_write_manager(
    table: Table, write_buffer_size: Optional[int] = None
) -> WriteOperationManager:
    """Create a write manager owning a connection bound to the table.

    The handle stays open after this call returns; the manager releases it on
    close().

    Args:
        write_buffer_size: Bytes to buffer before flushing, None for the store
            default
    """
    settings = WriteSettings(write_buffer_size)
    handle = _handle_acquire(table.pool, table.name, settings.properties())
    return WriteOperationManager(handle, settings.write_buffer_size is not None)
