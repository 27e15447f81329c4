"""Range streaming and bulk import of tile pyramids.

RangeStreamer walks a zoom range of a store in (z, x, y) order and yields one
element per stored tile. Tiles that cannot be read are yielded as StreamError
elements instead of ending the stream; the consumer decides whether to stop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from shared.constants import DEFAULT_SCAN_PAGE_SIZE
from shared.diagnostics import log_memory_usage
from tilestore.content import decode_hash
from tilestore.errors import IntegrityError, NotFoundError, TileStoreError

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable, Iterator

    from domain.models import Bounds, StoreInfo
    from tilestore.content import ContentStore
    from tilestore.engine import SQLiteEngine
    from tilestore.keys import Coord, KeyCodec
    from tilestore.store import TileStore

logger = logging.getLogger(__name__)

_END = object()


@dataclass(frozen=True)
class TileRecord:
    """One stored tile of a stream."""

    z: int
    x: int
    y: int
    headers: dict[str, str] = field(repr=False)
    body: bytes = field(repr=False)

    @property
    def coord(self) -> Coord:
        return self.z, self.x, self.y


@dataclass(frozen=True)
class StreamError:
    """A tile whose key was scanned but whose content could not be read."""

    z: int
    x: int
    y: int
    error: TileStoreError

    @property
    def coord(self) -> Coord:
        return self.z, self.x, self.y


StreamElement = TileRecord | StreamError


class RangeStreamer:
    """Lazy, ordered scan over the tiles of a zoom range and bounds.

    Each zoom is one ascending skip-scan over the coordinate index, from
    (z, min_x, min_y) to (z, max_x, max_y). Keys below the row band jump
    forward to min_y of the same column, keys above it jump to the next
    column, so only occupied columns are visited.

    Supports blocking iteration (``for``) and asynchronous iteration
    (``async for``), where every step runs in a worker thread. The stream is
    not resumable: close() stops it and a new stream repeats the traversal.

    Usage:
        stream = await store.create_read_stream(0, 5)
        async for element in stream:
            ...
    """

    def __init__(
        self,
        engine: SQLiteEngine,
        codec: KeyCodec,
        content: ContentStore,
        *,
        min_zoom: int,
        max_zoom: int,
        bounds: Bounds,
        tile_range: Callable[[Bounds, int], tuple[int, int, int, int]],
        info: StoreInfo | None = None,
        page_size: int = DEFAULT_SCAN_PAGE_SIZE,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self._engine = engine
        self._codec = codec
        self._content = content
        self.min_zoom = min_zoom
        self.max_zoom = max_zoom
        self.bounds = bounds
        self._tile_range = tile_range
        # Info record restricted to the streamed window
        self.info = info
        self._page_size = page_size
        self._on_close = on_close
        self._closed = False
        self._elements = self._generate()
        self.records = 0
        self.errors = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _generate(self) -> Iterator[StreamElement]:
        for z in range(self.min_zoom, self.max_zoom + 1):
            min_x, min_y, max_x, max_y = self._tile_range(self.bounds, z)
            for coord, raw_hash in self._scan_zoom(z, min_x, min_y, max_x, max_y):
                yield self._resolve(coord, raw_hash)

    def _scan_zoom(
        self, z: int, min_x: int, min_y: int, max_x: int, max_y: int
    ) -> Iterator[tuple[Coord, bytes]]:
        upper = self._codec.tile_key(z, max_x, max_y)
        x, y = min_x, min_y
        while x <= max_x:
            lower = self._codec.tile_key(z, x, y)
            restart = None
            for key, value in self._engine.iterate(lower, upper, page_size=self._page_size):
                coord = self._codec.decode_tile_key(key)
                _, kx, ky = coord
                if ky < min_y:
                    restart = kx, min_y
                    break
                if ky > max_y:
                    restart = kx + 1, min_y
                    break
                yield coord, value
            if restart is None:
                return
            x, y = restart

    def _resolve(self, coord: Coord, raw_hash: bytes) -> StreamElement:
        z, x, y = coord
        try:
            content_hash = decode_hash(coord, raw_hash)
            body, headers = self._content.read(self._engine, coord, content_hash)
        except (NotFoundError, IntegrityError) as e:
            self.errors += 1
            logger.debug('Stream error at %d/%d/%d: %s', z, x, y, e)
            return StreamError(z, x, y, e)
        self.records += 1
        return TileRecord(z, x, y, headers, body)

    def __iter__(self) -> RangeStreamer:
        return self

    def __next__(self) -> StreamElement:
        element = next(self._elements, _END)
        if element is _END:
            self.close()
            raise StopIteration
        return element

    def __aiter__(self) -> RangeStreamer:
        return self

    async def __anext__(self) -> StreamElement:
        if self._closed:
            raise StopAsyncIteration
        element = await asyncio.to_thread(next, self._elements, _END)
        if element is _END:
            self.close()
            raise StopAsyncIteration
        return element

    def close(self) -> None:
        """Stop producing elements and return the borrowed handle."""
        if self._closed:
            return
        self._closed = True
        self._elements.close()
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> RangeStreamer:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    async def __aenter__(self) -> RangeStreamer:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


@dataclass
class ImportStats:
    """Outcome of a bulk import."""

    written: int = 0
    skipped: int = 0
    info_written: bool = False


async def _elements_of(
    records: Iterable[StreamElement] | AsyncIterable[StreamElement],
) -> AsyncIterator[StreamElement]:
    if hasattr(records, '__aiter__'):
        async for element in records:
            yield element
    else:
        for element in records:
            yield element


async def import_tiles(
    target: TileStore,
    records: Iterable[StreamElement] | AsyncIterable[StreamElement],
    *,
    info: StoreInfo | dict | None = None,
    skip_errors: bool = False,
) -> ImportStats:
    """Write a stream of tiles into target.

    Writes are issued in chunks of ``import_chunk_size`` concurrent puts, so
    each chunk is coalesced into few commits while memory stays bounded.

    Args:
        target: Store to write into; promoted to read-write.
        records: Stream elements, e.g. another store's read stream.
        info: Info record written after the tiles.
        skip_errors: Count and skip StreamError elements instead of raising.

    Returns:
        ImportStats with written and skipped counts.

    Raises:
        TileStoreError: A StreamError was met and skip_errors is False, or a
            write failed.
    """
    settings = target.settings
    stats = ImportStats()
    chunk: list[TileRecord] = []

    async def flush() -> None:
        if not chunk:
            return
        await asyncio.gather(
            *(target.put_tile(r.z, r.x, r.y, r.body, r.headers) for r in chunk)
        )
        before = stats.written
        stats.written += len(chunk)
        chunk.clear()
        every = settings.log_memory_every_tiles
        if stats.written // every > before // every:
            log_memory_usage(f'after {stats.written} imported tiles')

    async for element in _elements_of(records):
        if isinstance(element, StreamError):
            if not skip_errors:
                await flush()
                raise element.error
            stats.skipped += 1
            logger.warning(
                'Skipping tile %d/%d/%d: %s', element.z, element.x, element.y, element.error
            )
            continue
        chunk.append(element)
        if len(chunk) >= settings.import_chunk_size:
            await flush()
    await flush()

    if info is not None:
        await target.put_info(info)
        stats.info_written = True

    logger.info(
        'Imported %d tiles into %s (%d skipped)', stats.written, target.path, stats.skipped
    )
    return stats


async def copy_store(
    source: TileStore,
    target: TileStore,
    min_zoom: int | None = None,
    max_zoom: int | None = None,
    bounds: Bounds | None = None,
    *,
    skip_errors: bool = False,
) -> ImportStats:
    """Copy a pyramid window from source to target, with its info record."""
    stream = await source.create_read_stream(min_zoom, max_zoom, bounds)
    try:
        return await import_tiles(target, stream, info=stream.info, skip_errors=skip_errors)
    finally:
        stream.close()
