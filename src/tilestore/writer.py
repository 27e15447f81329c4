"""Write coalescing for tile stores.

This module provides WriteCoalescer: a FIFO queue of write requests drained by
a single asyncio task, which folds everything queued since the last flush
into one atomic engine batch. Every request gets a future that resolves once
its batch is committed, or fails with the batch's error.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from shared.constants import DEFAULT_WRITE_BATCH_SIZE, DEFAULT_WRITE_BATCH_WINDOW_S
from tilestore.errors import KeyFormatError, TileStoreError, WriteError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from tilestore.engine import Operation, SQLiteEngine

logger = logging.getLogger(__name__)


class PendingBatch:
    """Engine view overlaid with the operations accepted so far in one flush.

    Mutations read through it, so a request sees the effects of the requests
    queued before it even though nothing is committed yet.
    """

    def __init__(self, engine: SQLiteEngine) -> None:
        self._engine = engine
        self._overlay: dict[bytes, bytes | None] = {}
        self._operations: list[Operation] = []

    def get(self, key: bytes) -> bytes | None:
        if key in self._overlay:
            return self._overlay[key]
        return self._engine.get(key)

    def extend(self, operations: Sequence[Operation]) -> None:
        for op in operations:
            self._overlay[op.key] = op.value
        self._operations.extend(operations)

    @property
    def operations(self) -> list[Operation]:
        return self._operations

    def __len__(self) -> int:
        return len(self._operations)


@dataclass
class WriteRequest:
    """Queued write: a mutation computed at flush time and its completion."""

    mutation: Callable[[PendingBatch], Sequence[Operation]]
    future: asyncio.Future = field(repr=False)
    description: str = ''


def log_write_failure(future: asyncio.Future) -> None:
    """Done-callback for fire-and-forget writes."""
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.warning('Background write failed: %s', error)


class WriteCoalescer:
    """Single-writer queue that batches store mutations into atomic commits.

    Collects write requests and commits everything pending as one engine
    batch from one asyncio task. Because only that task runs mutations,
    read-modify-write sequences (reference counts) never interleave.

    Features:
    - submit() returns a future resolved after the commit
    - Many concurrent writes share one commit
    - Per-request failures (e.g. dropping a missing tile) fail only that request
    - Commit failures fail every request of the batch
    - Graceful shutdown with drain

    Usage:
        writer = WriteCoalescer(get_engine)
        future = writer.submit(mutation, 'put 3/1/2')
        await future
        await writer.stop()  # Waits for queue to drain
    """

    BATCH_SIZE = DEFAULT_WRITE_BATCH_SIZE  # Requests per commit at most
    BATCH_WINDOW = DEFAULT_WRITE_BATCH_WINDOW_S  # Seconds to wait for more requests

    def __init__(
        self,
        engine_provider: Callable[[], Awaitable[SQLiteEngine]],
        *,
        batch_size: int | None = None,
        batch_window: float | None = None,
        name: str = '',
    ) -> None:
        """Initialize write coalescer.

        Args:
            engine_provider: Coroutine function returning the writable engine.
            batch_size: Max requests per commit. Defaults to BATCH_SIZE.
            batch_window: Coalescing window in seconds. Defaults to BATCH_WINDOW.
            name: Label for log messages (usually the store path).
        """
        self._engine_provider = engine_provider
        self.batch_size = batch_size or self.BATCH_SIZE
        self.batch_window = self.BATCH_WINDOW if batch_window is None else batch_window
        self.name = name
        self._pending: list[WriteRequest] = []
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._running = False
        self._stopping = False
        self._flushing = False
        self._idle_callbacks: list[Callable[[], None]] = []
        self._stats_written = 0
        self._stats_failed = 0
        self._stats_batches = 0

    def start(self) -> None:
        """Start the background writer task unless one is already running."""
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._writer_loop())
        logger.debug('WriteCoalescer started for %s', self.name)

    async def stop(self) -> None:
        """Drain the queue and stop the writer task.

        Requests submitted while the writer task is exiting are flushed by a
        fresh task before stop() returns.
        """
        if not self._running:
            return
        self._stopping = True
        while True:
            self._wakeup.set()
            if self._task is not None and not self._task.done():
                await self._task
                continue
            if not self._pending:
                break
            self._task = asyncio.get_running_loop().create_task(self._writer_loop())
        self._task = None
        self._running = False
        self._stopping = False
        logger.info(
            'WriteCoalescer stopped for %s: %d writes committed in %d batches, %d failed',
            self.name,
            self._stats_written,
            self._stats_batches,
            self._stats_failed,
        )

    def submit(
        self,
        mutation: Callable[[PendingBatch], Sequence[Operation]],
        description: str = '',
    ) -> asyncio.Future:
        """Queue a mutation for the next flush.

        Args:
            mutation: Called with the flush's PendingBatch, returns operations.
                A TileStoreError raised here fails only this request.
            description: Label for log messages.

        Returns:
            Future resolved with None once the batch is committed.
        """
        future = asyncio.get_running_loop().create_future()
        self._pending.append(WriteRequest(mutation, future, description))
        self.start()
        self._wakeup.set()
        return future

    def queue_size(self) -> int:
        """Get number of requests waiting for a flush."""
        return len(self._pending)

    def idle(self) -> bool:
        """True when nothing is queued or being flushed."""
        return not self._pending and not self._flushing

    def is_running(self) -> bool:
        """Check if writer task is running."""
        return self._running and self._task is not None and not self._task.done()

    def on_idle(self, callback: Callable[[], None]) -> None:
        """Run callback once the queue is drained (soon, if already idle)."""
        if self.idle():
            asyncio.get_running_loop().call_soon(callback)
        else:
            self._idle_callbacks.append(callback)

    async def drain(self) -> None:
        """Wait until every queued request has been flushed."""
        if self.idle():
            return
        drained = asyncio.get_running_loop().create_future()
        self.on_idle(lambda: drained.done() or drained.set_result(None))
        await drained

    @property
    def stats(self) -> dict:
        """Get writer statistics."""
        return {
            'written': self._stats_written,
            'failed': self._stats_failed,
            'batches': self._stats_batches,
            'queue_size': self.queue_size(),
            'running': self.is_running(),
        }

    async def _writer_loop(self) -> None:
        """Background task loop that flushes queued requests."""
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()

            while self._pending:
                if self.batch_window > 0:
                    await asyncio.sleep(self.batch_window)
                batch = self._pending[: self.batch_size]
                del self._pending[: len(batch)]
                self._flushing = True
                try:
                    await self._write_batch(batch)
                finally:
                    self._flushing = False

            self._notify_idle()
            if self._stopping:
                break

    def _notify_idle(self) -> None:
        callbacks, self._idle_callbacks = self._idle_callbacks, []
        for callback in callbacks:
            callback()

    async def _write_batch(self, batch: list[WriteRequest]) -> None:
        """Commit a batch of requests and resolve their futures.

        Args:
            batch: Requests in submission order.
        """
        try:
            engine = await self._engine_provider()
            outcomes = await asyncio.to_thread(self._apply_batch, engine, batch)
        except (TileStoreError, KeyFormatError) as e:
            logger.warning('Batch of %d writes to %s failed: %s', len(batch), self.name, e)
            self._fail(batch, e)
            return
        except Exception as e:
            logger.exception('Unexpected error writing batch to %s', self.name)
            error = WriteError(f'Batch write to {self.name} failed: {e}')
            error.__cause__ = e
            self._fail(batch, error)
            return

        self._stats_batches += 1
        for request, error in zip(batch, outcomes):
            if error is None:
                self._stats_written += 1
            else:
                self._stats_failed += 1
            if request.future.done():
                continue
            if error is None:
                request.future.set_result(None)
            else:
                request.future.set_exception(error)
        logger.debug('Committed batch of %d writes to %s', len(batch), self.name)

    def _fail(self, batch: list[WriteRequest], error: BaseException) -> None:
        self._stats_failed += len(batch)
        for request in batch:
            if not request.future.done():
                request.future.set_exception(error)

    @staticmethod
    def _apply_batch(
        engine: SQLiteEngine, batch: list[WriteRequest]
    ) -> list[TileStoreError | None]:
        """Run mutations in order and commit their operations (worker thread)."""
        with engine.write_lock:
            pending = PendingBatch(engine)
            outcomes: list[TileStoreError | None] = []
            for request in batch:
                try:
                    operations = request.mutation(pending)
                except TileStoreError as e:
                    outcomes.append(e)
                    continue
                pending.extend(operations)
                outcomes.append(None)

            try:
                engine.batch(pending.operations)
            except sqlite3.Error as e:
                msg = f'Failed to commit {len(pending)} operations: {e}'
                raise WriteError(msg) from e
        return outcomes

    async def __aenter__(self) -> WriteCoalescer:
        """Async context manager entry - starts the writer."""
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit - drains and stops the writer."""
        await self.stop()
