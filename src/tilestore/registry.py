"""Registry of open engine handles.

HandleRegistry owns every SQLiteEngine opened by the process's tile stores.
Stores borrow handles through acquire()/release(); a handle is shared by all
stores of the same path and is only closed by the registry, either when it
falls out of the LRU cache while idle or when the registry itself closes.
Opens for one path are serialized by a per-path lock, so concurrent
promotions never race to create the same store.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from shared.constants import DEFAULT_MAX_HANDLES
from tilestore.engine import EngineLockedError, EngineMissingError, SQLiteEngine
from tilestore.errors import (
    ArchiveMissingError,
    ArchiveOpenError,
    ConcurrentOpenConflictError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

HandleKey = tuple[str, bool]


@dataclass
class EngineHandle:
    """Shared, reference-counted engine for one store path."""

    path: str
    writable: bool
    engine: SQLiteEngine
    refs: int = 0
    last_used_at: float = field(default_factory=time.monotonic)

    @property
    def key(self) -> HandleKey:
        return self.path, self.writable

    @property
    def idle(self) -> bool:
        return self.refs == 0


class HandleRegistry:
    """LRU cache of open engine handles keyed by (path, writable).

    A read-only request is served by a cached writable handle of the same
    path when there is one, since read-write is a superset of read-only.

    Usage:
        async with HandleRegistry(max_handles=10) as registry:
            store = await open_store(path, registry)
            ...
    """

    def __init__(
        self,
        max_handles: int = DEFAULT_MAX_HANDLES,
        engine_factory: Callable[..., SQLiteEngine] = SQLiteEngine.open,
    ) -> None:
        self.max_handles = max_handles
        self._engine_factory = engine_factory
        self._handles: OrderedDict[HandleKey, EngineHandle] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()
        self._stats_opened = 0
        self._stats_evicted = 0
        self._stats_compactions = 0

    @staticmethod
    def normalize_path(path: str | Path) -> str:
        return str(Path(path).expanduser().resolve())

    def _lock_for(self, path: str) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = self._locks[path] = asyncio.Lock()
        return lock

    def _cached(self, path: str, writable: bool) -> EngineHandle | None:
        handle = self._handles.get((path, True))
        if handle is None and not writable:
            handle = self._handles.get((path, False))
        return handle

    async def acquire(self, path: str | Path, *, writable: bool) -> EngineHandle:
        """Borrow the handle for path, opening the engine if needed.

        Args:
            path: Store directory.
            writable: Open with write access, creating the store if missing.

        Raises:
            ArchiveMissingError: Read-only open of a path that does not exist.
            ConcurrentOpenConflictError: Another process writes the store.
            ArchiveOpenError: The engine could not be opened.
        """
        key_path = self.normalize_path(path)
        async with self._lock_for(key_path):
            handle = self._cached(key_path, writable)
            if handle is None:
                engine = await self._open_engine(key_path, writable)
                handle = EngineHandle(key_path, writable, engine)
                self._handles[handle.key] = handle
                self._stats_opened += 1
            else:
                logger.debug('Handle cache hit for %s', key_path)
            self._handles.move_to_end(handle.key)
            handle.refs += 1
            handle.last_used_at = time.monotonic()
        await self._evict_idle()
        return handle

    async def _open_engine(self, path: str, writable: bool) -> SQLiteEngine:
        try:
            return await asyncio.to_thread(
                self._engine_factory,
                Path(path),
                create_if_missing=writable,
                read_only=not writable,
            )
        except EngineMissingError as e:
            raise ArchiveMissingError(str(e)) from e
        except EngineLockedError as e:
            raise ConcurrentOpenConflictError(str(e)) from e
        except (OSError, sqlite3.Error) as e:
            msg = f'Failed to open tile store {path}: {e}'
            raise ArchiveOpenError(msg) from e

    def retain(self, handle: EngineHandle) -> EngineHandle:
        """Add a borrower to a handle that is already held."""
        handle.refs += 1
        handle.last_used_at = time.monotonic()
        return handle

    def release_nowait(self, handle: EngineHandle) -> None:
        """Return a borrowed handle without evicting; used from sync code."""
        handle.refs = max(0, handle.refs - 1)
        handle.last_used_at = time.monotonic()

    async def release(self, handle: EngineHandle) -> None:
        """Return a borrowed handle; idle handles stay cached for reuse."""
        self.release_nowait(handle)
        await self._evict_idle()

    async def _evict_idle(self) -> None:
        """Close least recently used idle handles while over capacity."""
        while len(self._handles) > self.max_handles:
            victim = next((h for h in self._handles.values() if h.idle), None)
            if victim is None:
                return
            async with self._lock_for(victim.path):
                if not victim.idle or self._handles.get(victim.key) is not victim:
                    continue
                del self._handles[victim.key]
                await asyncio.to_thread(victim.engine.close)
            self._stats_evicted += 1
            logger.debug('Evicted idle handle %s', victim.path)

    def schedule_compaction(self, path: str | Path) -> asyncio.Task:
        """Compact the store at path in the background."""
        task = asyncio.get_running_loop().create_task(self.compact(path))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def compact(self, path: str | Path) -> bool:
        """Compact the store at path; returns False if that was not possible.

        Uses the cached writable handle when there is one, otherwise opens a
        short-lived writable engine.
        """
        key_path = self.normalize_path(path)
        async with self._lock_for(key_path):
            handle = self._handles.get((key_path, True))
            try:
                if handle is not None:
                    await asyncio.to_thread(handle.engine.compact)
                else:
                    await asyncio.to_thread(self._compact_detached, key_path)
            except (OSError, sqlite3.Error) as e:
                logger.warning('Compaction of %s failed: %s', key_path, e)
                return False
        self._stats_compactions += 1
        return True

    def _compact_detached(self, path: str) -> None:
        engine = self._engine_factory(Path(path), create_if_missing=False)
        try:
            engine.compact()
        finally:
            engine.close()

    async def wait_background(self) -> None:
        """Wait for scheduled compactions to finish."""
        while self._background:
            await asyncio.gather(*list(self._background))

    async def close(self) -> None:
        """Wait for background work and close every cached handle."""
        await self.wait_background()
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            if handle.refs:
                logger.warning(
                    'Closing handle %s with %d active borrowers', handle.path, handle.refs
                )
            await asyncio.to_thread(handle.engine.close)
        logger.info('HandleRegistry closed (%d handles)', len(handles))

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        key_path = self.normalize_path(path)
        return any(h.path == key_path for h in self._handles.values())

    @property
    def stats(self) -> dict:
        """Get registry statistics."""
        return {
            'open_handles': len(self._handles),
            'busy_handles': sum(1 for h in self._handles.values() if not h.idle),
            'opened': self._stats_opened,
            'evicted': self._stats_evicted,
            'compactions': self._stats_compactions,
        }

    async def __aenter__(self) -> HandleRegistry:
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit - closes all handles."""
        await self.close()
