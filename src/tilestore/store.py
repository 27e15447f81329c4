"""Tile store: point access, writes and streaming over one archive path.

A TileStore moves through CLOSED -> READ_ONLY (or MISSING) -> READ_WRITE ->
CLOSED. Reads open the archive read-only without creating it; the first
write promotes the store to read-write, creating the archive if needed.
Engine handles are borrowed from a HandleRegistry and never closed here.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from domain.models import (
    StoreInfo,
    StoreOptions,
    StoreSettings,
    validate_bounds,
    validate_zoom,
)
from shared.constants import CONTENT_HASH_HEADER, MIN_ZOOM, WORLD_BOUNDS, StoreState
from tilestore.content import ContentStore, content_digest
from tilestore.coverage import tile_range as default_tile_range
from tilestore.engine import Operation
from tilestore.errors import ArchiveMissingError, NotFoundError, WriteError
from tilestore.keys import KeyCodec, normalize_hash, validate_coord
from tilestore.streaming import RangeStreamer
from tilestore.writer import WriteCoalescer, log_write_failure

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from domain.models import Bounds
    from tilestore.engine import SQLiteEngine
    from tilestore.registry import EngineHandle, HandleRegistry
    from tilestore.streaming import StreamElement

logger = logging.getLogger(__name__)


def normalize_headers(headers: dict | None) -> dict[str, str]:
    """Lower-case header names and stringify values."""
    return {str(k).strip().lower(): str(v) for k, v in (headers or {}).items()}


class TileStore:
    """Content-addressed tile store bound to one archive path.

    Usage:
        async with HandleRegistry() as registry:
            store = await open_store('tiles', registry)
            await store.put_tile(0, 0, 0, png_bytes, {'Content-Type': 'image/png'})
            body, headers = await store.get_tile(0, 0, 0)
            await store.close()
    """

    def __init__(
        self,
        path: str | Path,
        registry: HandleRegistry,
        options: StoreOptions | None = None,
        settings: StoreSettings | None = None,
        tile_range: Callable[[Bounds, int], tuple[int, int, int, int]] = default_tile_range,
    ) -> None:
        self.path = Path(path)
        self.registry = registry
        self.options = options or StoreOptions()
        self.settings = settings or StoreSettings()
        self.codec = KeyCodec(self.options.namespace)
        self.content = ContentStore(self.codec)
        self._tile_range = tile_range
        self._state = StoreState.CLOSED
        self._handle: EngineHandle | None = None
        self._promoted = False
        self._lock = asyncio.Lock()
        self._writer = WriteCoalescer(
            self._writable_engine,
            batch_size=self.settings.write_batch_size,
            batch_window=self.settings.write_batch_window_s,
            name=str(self.path),
        )

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def writer(self) -> WriteCoalescer:
        return self._writer

    # Lifecycle

    async def open(self) -> TileStore:
        """Open read-only; a missing archive puts the store in MISSING state.

        Raises:
            ArchiveOpenError: The archive exists but cannot be opened.
        """
        async with self._lock:
            if self._state is StoreState.CLOSED:
                await self._open_read_only()
        return self

    async def _open_read_only(self) -> None:
        try:
            self._handle = await self.registry.acquire(self.path, writable=False)
        except ArchiveMissingError:
            self._state = StoreState.MISSING
            logger.info('Tile store %s does not exist yet', self.path)
            return
        self._state = StoreState.READ_ONLY
        logger.info('Opened tile store %s (read-only)', self.path)

    async def open_for_write(self) -> TileStore:
        """Promote to read-write, creating the archive if it is missing.

        Raises:
            ConcurrentOpenConflictError: Another process writes the archive.
            ArchiveOpenError: The archive cannot be opened for writing.
        """
        if self._state is StoreState.READ_WRITE:
            return self
        async with self._lock:
            if self._state is StoreState.READ_WRITE:
                return self
            handle = await self.registry.acquire(self.path, writable=True)
            previous, self._handle = self._handle, handle
            if previous is not None:
                await self.registry.release(previous)
            self._state = StoreState.READ_WRITE
            self._promoted = True
            logger.info('Tile store %s promoted to read-write', self.path)
        return self

    async def close(self) -> None:
        """Flush pending writes and release the handle.

        Idempotent. After a write session the archive is compacted in the
        background (see StoreSettings.compact_on_close).
        """
        async with self._lock:
            if self._state is StoreState.CLOSED:
                return
            await self._writer.drain()
            await self._writer.stop()
            handle, self._handle = self._handle, None
            promoted, self._promoted = self._promoted, False
            self._state = StoreState.CLOSED
            if handle is not None:
                await self.registry.release(handle)
            if promoted and self.settings.compact_on_close:
                self.registry.schedule_compaction(self.path)
            logger.info('Closed tile store %s', self.path)

    async def _ensure_open(self) -> None:
        if self._state is StoreState.CLOSED:
            await self.open()
        if self._state is StoreState.MISSING:
            # The archive may have been created by another store since
            async with self._lock:
                if self._state is StoreState.MISSING:
                    await self._open_read_only()

    async def _read_engine(self) -> SQLiteEngine:
        await self._ensure_open()
        if self._handle is None:
            msg = f'Tile store does not exist: {self.path}'
            raise ArchiveMissingError(msg)
        return self._handle.engine

    async def _writable_engine(self) -> SQLiteEngine:
        handle = self._handle
        if self._state is not StoreState.READ_WRITE or handle is None:
            msg = f'Tile store {self.path} is not open for writing'
            raise WriteError(msg)
        return handle.engine

    async def _settle(self, future: asyncio.Future, wait: bool) -> asyncio.Future | None:
        if wait:
            await future
            return None
        future.add_done_callback(log_write_failure)
        return future

    # Tiles

    async def get_tile(self, z: int, x: int, y: int) -> tuple[bytes, dict[str, str]]:
        """Read a tile body and its headers.

        Raises:
            NotFoundError: No tile at the coordinate.
            IntegrityError: The stored body does not match its hash.
            ArchiveMissingError: The archive was never created.
        """
        coord = validate_coord(z, x, y)
        engine = await self._read_engine()
        return await asyncio.to_thread(self.content.read, engine, coord)

    async def put_tile(
        self,
        z: int,
        x: int,
        y: int,
        body: bytes,
        headers: dict | None = None,
        *,
        wait: bool = True,
    ) -> asyncio.Future | None:
        """Store a tile, deduplicating its body by content hash.

        Args:
            z, x, y: Tile coordinate.
            body: Tile bytes.
            headers: Tile metadata. A 'content-md5' header supplies the hash
                instead of computing it.
            wait: Return after the write is committed. With False the write
                is queued and its future returned; failures are logged.

        Raises:
            ValueError: Invalid coordinate or malformed supplied hash.
            WriteError: The batch carrying this write failed.
        """
        coord = validate_coord(z, x, y)
        body = bytes(body)
        headers = normalize_headers(headers)
        supplied = headers.get(CONTENT_HASH_HEADER)
        content_hash = normalize_hash(supplied) if supplied else content_digest(body)
        headers[CONTENT_HASH_HEADER] = content_hash

        await self.open_for_write()
        future = self._writer.submit(
            lambda pending: self.content.bind(pending, coord, content_hash, body, headers),
            f'put {z}/{x}/{y}',
        )
        return await self._settle(future, wait)

    async def drop_tile(
        self, z: int, x: int, y: int, *, wait: bool = True
    ) -> asyncio.Future | None:
        """Remove a tile; its body is deleted with the last reference.

        Raises:
            NotFoundError: No tile at the coordinate.
            WriteError: The batch carrying this write failed.
        """
        coord = validate_coord(z, x, y)
        await self._ensure_open()
        if self._state is StoreState.MISSING:
            msg = f'Tile {z}/{x}/{y} does not exist'
            raise NotFoundError(msg)

        await self.open_for_write()
        future = self._writer.submit(
            lambda pending: self.content.unbind(pending, coord),
            f'drop {z}/{x}/{y}',
        )
        return await self._settle(future, wait)

    # Info

    async def get_info(self) -> StoreInfo:
        """Read the info record.

        Raises:
            NotFoundError: No info record was stored.
            ArchiveMissingError: The archive was never created.
        """
        engine = await self._read_engine()
        raw = await asyncio.to_thread(engine.get, self.codec.info_key())
        if raw is None:
            msg = f'Tile store {self.path} has no info record'
            raise NotFoundError(msg)
        return StoreInfo.model_validate_json(raw)

    async def put_info(
        self, info: StoreInfo | dict, *, wait: bool = True
    ) -> asyncio.Future | None:
        """Store (replace) the info record.

        Raises:
            pydantic.ValidationError: The record is invalid.
            WriteError: The batch carrying this write failed.
        """
        if not isinstance(info, StoreInfo):
            info = StoreInfo.model_validate(info)
        payload = info.model_dump_json(exclude_unset=True).encode('utf-8')
        key = self.codec.info_key()

        await self.open_for_write()
        future = self._writer.submit(lambda pending: [Operation.put(key, payload)], 'put info')
        return await self._settle(future, wait)

    # Streaming

    async def create_read_stream(
        self,
        min_zoom: int | None = None,
        max_zoom: int | None = None,
        bounds: Bounds | None = None,
    ) -> RangeStreamer:
        """Open a lazy stream over a zoom range and bounds.

        Missing arguments default from the info record and given ones are
        narrowed to it. The streamer's ``info`` is the record restricted to
        the streamed window. Without an info record ``max_zoom`` is required
        and bounds default to the whole world.

        The stream reads a snapshot taken here: writes committed while it
        runs are not seen. Close the stream promptly, since an open snapshot
        holds back WAL checkpoints.

        Raises:
            ValueError: The window is empty or max_zoom cannot be determined.
            ArchiveMissingError: The archive was never created.
        """
        engine = await self._read_engine()
        handle = self.registry.retain(self._handle)
        snapshot = None
        try:
            snapshot = await asyncio.to_thread(engine.snapshot)
            raw = await asyncio.to_thread(snapshot.get, self.codec.info_key())
            info = None if raw is None else StoreInfo.model_validate_json(raw)
            min_zoom, max_zoom, bounds = self._stream_window(info, min_zoom, max_zoom, bounds)
        except BaseException:
            if snapshot is not None:
                snapshot.close()
            self.registry.release_nowait(handle)
            raise

        def release() -> None:
            snapshot.close()
            self.registry.release_nowait(handle)

        return RangeStreamer(
            snapshot,
            self.codec,
            self.content,
            min_zoom=min_zoom,
            max_zoom=max_zoom,
            bounds=bounds,
            tile_range=self._tile_range,
            info=info.restricted(min_zoom, max_zoom, bounds) if info is not None else None,
            page_size=self.settings.scan_page_size,
            on_close=release,
        )

    @staticmethod
    def _stream_window(
        info: StoreInfo | None,
        min_zoom: int | None,
        max_zoom: int | None,
        bounds: Bounds | None,
    ) -> tuple[int, int, Bounds]:
        if info is not None:
            if info.minzoom is not None:
                min_zoom = info.minzoom if min_zoom is None else max(min_zoom, info.minzoom)
            if info.maxzoom is not None:
                max_zoom = info.maxzoom if max_zoom is None else min(max_zoom, info.maxzoom)
            if info.bounds is not None:
                bounds = info.bounds if bounds is None else _intersect(bounds, info.bounds)

        min_zoom = MIN_ZOOM if min_zoom is None else validate_zoom(min_zoom)
        if max_zoom is None:
            msg = 'max_zoom is required for stores without an info record'
            raise ValueError(msg)
        max_zoom = validate_zoom(max_zoom)
        if min_zoom > max_zoom:
            msg = f'Empty zoom range: {min_zoom}..{max_zoom}'
            raise ValueError(msg)
        bounds = WORLD_BOUNDS if bounds is None else validate_bounds(bounds)
        return min_zoom, max_zoom, bounds

    async def stream_tiles(
        self,
        min_zoom: int | None = None,
        max_zoom: int | None = None,
        bounds: Bounds | None = None,
    ) -> AsyncIterator[StreamElement]:
        """Yield TileRecord / StreamError elements in (z, x, y) order."""
        stream = await self.create_read_stream(min_zoom, max_zoom, bounds)
        try:
            async for element in stream:
                yield element
        finally:
            stream.close()

    @property
    def stats(self) -> dict:
        """Get store statistics."""
        return {
            'path': str(self.path),
            'state': self._state.value,
            'namespace': self.codec.namespace,
            'writer': self._writer.stats,
        }

    async def __aenter__(self) -> TileStore:
        """Async context manager entry - opens read-only."""
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit - flushes and closes."""
        await self.close()


def _intersect(a: Bounds, b: Bounds) -> Bounds:
    west, south = max(a[0], b[0]), max(a[1], b[1])
    east, north = min(a[2], b[2]), min(a[3], b[3])
    if west > east or south > north:
        msg = f'Bounds {a} do not intersect the store bounds {b}'
        raise ValueError(msg)
    return west, south, east, north


async def open_store(
    path: str | Path,
    registry: HandleRegistry,
    options: StoreOptions | None = None,
    settings: StoreSettings | None = None,
) -> TileStore:
    """Create a TileStore for path and open it read-only."""
    return await TileStore(path, registry, options, settings).open()
