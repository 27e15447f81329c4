"""SQLite-backed ordered key-value engine.

This module provides SQLiteEngine, the storage substrate of a tile store:
binary keys in one WITHOUT ROWID table, point get/put/delete, atomic
multi-operation batches and ascending range scans. A store is a directory
holding the database file and a LOCK file that keeps a second process from
opening the same store for writing.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from shared.constants import (
    DEFAULT_SCAN_PAGE_SIZE,
    SQLITE_BUSY_TIMEOUT_S,
    STORE_DB_FILENAME,
    STORE_LOCK_FILENAME,
)

if sys.platform == 'win32':
    import msvcrt
else:
    import fcntl

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

logger = logging.getLogger(__name__)

OP_PUT = 'put'
OP_DELETE = 'del'


class EngineMissingError(FileNotFoundError):
    """Store directory or database does not exist and creation was not allowed."""


class EngineLockedError(OSError):
    """Another process holds the write lock of the store."""


@dataclass(frozen=True)
class Operation:
    """One mutation of an atomic batch."""

    type: str
    key: bytes
    value: bytes | None = None

    @classmethod
    def put(cls, key: bytes, value: bytes) -> Operation:
        return cls(OP_PUT, key, value)

    @classmethod
    def delete(cls, key: bytes) -> Operation:
        return cls(OP_DELETE, key)


def _acquire_lock(lock_path: Path) -> int:
    """Take an exclusive, non-blocking lock on lock_path; returns the fd."""
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        if sys.platform == 'win32':
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        os.close(fd)
        msg = f'Store is locked by another writer: {lock_path.parent}'
        raise EngineLockedError(msg) from e
    return fd


def _release_lock(fd: int) -> None:
    try:
        if sys.platform == 'win32':
            os.lseek(fd, 0, os.SEEK_SET)
            msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


class SQLiteEngine:
    """Ordered binary key-value store on top of one SQLite database.

    Features:
    - Byte-ordered keys (BLOB primary key, memcmp collation)
    - WAL mode for concurrent readers while writing
    - Atomic batches (one transaction, rolled back on failure)
    - Paged range scans without long-lived cursors
    - Single writer per store directory across processes

    Usage:
        engine = SQLiteEngine.open(path, create_if_missing=True)
        engine.batch([Operation.put(b'k', b'v')])
        for key, value in engine.iterate(b'a', b'z'):
            ...
        engine.close()
    """

    def __init__(
        self,
        path: Path,
        conn: sqlite3.Connection,
        *,
        read_only: bool,
        lock_fd: int | None = None,
    ) -> None:
        self.path = path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = conn
        self._lock_fd = lock_fd
        self._lock = threading.Lock()
        # Held by a write coalescer for a whole read-modify-write flush, so
        # flushes of different stores sharing this engine never interleave
        self.write_lock = threading.Lock()

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        create_if_missing: bool = False,
        read_only: bool = False,
    ) -> SQLiteEngine:
        """Open the store at path.

        Args:
            path: Store directory.
            create_if_missing: Create the directory and database if absent.
            read_only: Open without write access and without the write lock.

        Raises:
            EngineMissingError: Store does not exist and creation is not allowed.
            EngineLockedError: Another process holds the write lock.
            sqlite3.Error: The database cannot be opened.
        """
        path = Path(path)
        db_path = path / STORE_DB_FILENAME
        if not db_path.is_file():
            if read_only or not create_if_missing:
                msg = f'Tile store does not exist: {path}'
                raise EngineMissingError(msg)
            path.mkdir(parents=True, exist_ok=True)

        lock_fd = None if read_only else _acquire_lock(path / STORE_LOCK_FILENAME)
        try:
            if read_only:
                conn = sqlite3.connect(
                    f'{db_path.resolve().as_uri()}?mode=ro',
                    uri=True,
                    check_same_thread=False,
                    timeout=SQLITE_BUSY_TIMEOUT_S,
                )
            else:
                conn = sqlite3.connect(
                    str(db_path),
                    check_same_thread=False,
                    timeout=SQLITE_BUSY_TIMEOUT_S,
                )
                conn.execute('PRAGMA journal_mode=WAL')
                conn.execute('PRAGMA synchronous=NORMAL')
                cls._init_schema(conn)
        except Exception:
            if lock_fd is not None:
                _release_lock(lock_fd)
            raise

        logger.debug(
            'Opened engine %s (%s)', path, 'read-only' if read_only else 'read-write'
        )
        return cls(path, conn, read_only=read_only, lock_fd=lock_fd)

    @staticmethod
    def _init_schema(conn: sqlite3.Connection) -> None:
        """Initialize database schema."""
        conn.executescript('''
            CREATE TABLE IF NOT EXISTS kv (
                key BLOB PRIMARY KEY,
                value BLOB NOT NULL
            ) WITHOUT ROWID;
        ''')
        conn.commit()

    def snapshot(self) -> SQLiteEngine:
        """Open a read-only view pinned to the state committed right now.

        The view runs on its own connection and keeps one read transaction
        open until it is closed, so later commits stay invisible to it.
        WAL checkpoints cannot pass the pinned state while the view is open.

        Raises:
            sqlite3.Error: The view cannot be opened.
        """
        db_path = self.path / STORE_DB_FILENAME
        conn = sqlite3.connect(
            f'{db_path.resolve().as_uri()}?mode=ro',
            uri=True,
            check_same_thread=False,
            timeout=SQLITE_BUSY_TIMEOUT_S,
            isolation_level=None,
        )
        try:
            conn.execute('BEGIN')
            # The first read fixes the snapshot
            conn.execute('SELECT 1 FROM kv LIMIT 1').fetchall()
        except sqlite3.Error:
            conn.close()
            raise
        return SQLiteEngine(self.path, conn, read_only=True)

    @property
    def closed(self) -> bool:
        return self._conn is None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            msg = f'Engine for {self.path} is closed'
            raise sqlite3.ProgrammingError(msg)
        return self._conn

    def get(self, key: bytes) -> bytes | None:
        """Get the value stored under key, or None."""
        with self._lock:
            row = self._connection().execute(
                'SELECT value FROM kv WHERE key = ?', (key,)
            ).fetchone()
        return None if row is None else bytes(row[0])

    def put(self, key: bytes, value: bytes) -> None:
        self.batch([Operation.put(key, value)])

    def delete(self, key: bytes) -> None:
        self.batch([Operation.delete(key)])

    def batch(self, operations: Sequence[Operation]) -> None:
        """Apply operations atomically, in order.

        Raises:
            sqlite3.Error: Nothing was applied.
        """
        if not operations:
            return
        with self._lock:
            conn = self._connection()
            try:
                for op in operations:
                    if op.type == OP_PUT:
                        conn.execute(
                            'INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)',
                            (op.key, op.value),
                        )
                    elif op.type == OP_DELETE:
                        conn.execute('DELETE FROM kv WHERE key = ?', (op.key,))
                    else:
                        msg = f'Unknown operation type: {op.type!r}'
                        raise ValueError(msg)
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def iterate(
        self,
        gte: bytes,
        lte: bytes,
        *,
        keys_only: bool = False,
        page_size: int = DEFAULT_SCAN_PAGE_SIZE,
    ) -> Iterator[tuple[bytes, bytes | None]]:
        """Yield (key, value) pairs with gte <= key <= lte in ascending order.

        Rows are fetched one page at a time; no cursor stays open between
        pages, so writers are never blocked by a slow consumer.
        """
        columns = 'key' if keys_only else 'key, value'
        lower = gte
        op = '>='
        while True:
            with self._lock:
                rows = self._connection().execute(
                    f'SELECT {columns} FROM kv WHERE key {op} ? AND key <= ? '
                    'ORDER BY key LIMIT ?',
                    (lower, lte, page_size),
                ).fetchall()
            for row in rows:
                yield bytes(row[0]), None if keys_only else bytes(row[1])
            if len(rows) < page_size:
                return
            lower = bytes(rows[-1][0])
            op = '>'

    def count(self) -> int:
        with self._lock:
            return self._connection().execute('SELECT COUNT(*) FROM kv').fetchone()[0]

    def compact(self) -> None:
        """Checkpoint the WAL and rebuild the database file."""
        if self.read_only:
            msg = f'Cannot compact read-only engine {self.path}'
            raise sqlite3.OperationalError(msg)
        with self._lock:
            conn = self._connection()
            conn.execute('PRAGMA wal_checkpoint(TRUNCATE)')
            conn.execute('VACUUM')
        logger.info('Compacted tile store %s', self.path)

    def close(self) -> None:
        """Close the connection and release the write lock."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
            if self._lock_fd is not None:
                _release_lock(self._lock_fd)
                self._lock_fd = None
        logger.debug('Closed engine %s', self.path)

    def __enter__(self) -> SQLiteEngine:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()
