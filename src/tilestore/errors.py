"""Error types of the tile store.

Every recoverable failure is a TileStoreError subclass. KeyFormatError is not:
it means a key that this store never writes was found in the engine, which is
a defect rather than a condition callers can handle.
"""

from __future__ import annotations


class TileStoreError(Exception):
    """Base class for tile store failures."""


class ArchiveOpenError(TileStoreError):
    """The underlying engine could not be opened."""


class ConcurrentOpenConflictError(ArchiveOpenError):
    """Another writer (usually another process) holds the archive."""


class ArchiveMissingError(TileStoreError):
    """The archive path was never created."""


class NotFoundError(TileStoreError):
    """A coordinate, content hash or info record is absent."""


class IntegrityError(TileStoreError):
    """A stored body does not match its recorded content hash."""


class WriteError(TileStoreError):
    """An atomic batch could not be committed."""


class KeyFormatError(RuntimeError):
    """A scanned key does not follow the store key layout."""
