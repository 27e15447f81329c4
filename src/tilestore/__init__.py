"""Content-addressed tile store.

This module provides:
- TileStore: point access, writes and streaming over one archive path
- HandleRegistry: shared engine handles with LRU eviction and compaction
- WriteCoalescer: batching of concurrent writes into atomic commits
- RangeStreamer: lazy ordered scans of tile pyramids
- SQLiteEngine: ordered key-value engine backing the store
"""

from tilestore.engine import Operation, SQLiteEngine
from tilestore.errors import (
    ArchiveMissingError,
    ArchiveOpenError,
    ConcurrentOpenConflictError,
    IntegrityError,
    KeyFormatError,
    NotFoundError,
    TileStoreError,
    WriteError,
)
from tilestore.registry import HandleRegistry
from tilestore.store import TileStore, open_store
from tilestore.streaming import (
    ImportStats,
    RangeStreamer,
    StreamError,
    TileRecord,
    copy_store,
    import_tiles,
)
from tilestore.writer import WriteCoalescer

__all__ = [
    'ArchiveMissingError',
    'ArchiveOpenError',
    'ConcurrentOpenConflictError',
    'HandleRegistry',
    'ImportStats',
    'IntegrityError',
    'KeyFormatError',
    'NotFoundError',
    'Operation',
    'RangeStreamer',
    'SQLiteEngine',
    'StreamError',
    'TileRecord',
    'TileStore',
    'TileStoreError',
    'WriteCoalescer',
    'WriteError',
    'copy_store',
    'import_tiles',
    'open_store',
]
