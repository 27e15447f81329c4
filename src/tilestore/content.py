"""Content-addressed tile bodies with reference counting.

ContentStore never writes to the engine itself. Its mutating methods read the
current state through a KeyReader and return the operations that the caller
commits together with the rest of its batch, so binding a coordinate and
bumping a reference count are applied atomically. Callers must run these
methods through the store's single write path (WriteCoalescer); reading a
reference count and writing it back is not safe from two places at once.

Bodies and reference counts are keyed by content hash, metadata is keyed by
coordinate: two coordinates can share a body and still carry different
headers.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import TYPE_CHECKING, Protocol

from shared.constants import CONTENT_HASH_HEADER
from tilestore.engine import Operation
from tilestore.errors import IntegrityError, NotFoundError
from tilestore.keys import normalize_hash

if TYPE_CHECKING:
    from tilestore.keys import Coord, KeyCodec

logger = logging.getLogger(__name__)


class KeyReader(Protocol):
    def get(self, key: bytes) -> bytes | None: ...


def content_digest(body: bytes) -> str:
    """MD5 of a tile body as lowercase hex."""
    return hashlib.md5(body).hexdigest()


def decode_hash(coord: Coord, raw: bytes) -> str:
    """Parse the content hash stored under a coordinate's tile key."""
    try:
        return normalize_hash(raw.decode('ascii'))
    except ValueError as e:
        z, x, y = coord
        msg = f'Corrupt content hash for tile {z}/{x}/{y}: {raw!r}'
        raise IntegrityError(msg) from e


def encode_headers(headers: dict[str, str]) -> bytes:
    return json.dumps(headers, sort_keys=True, separators=(',', ':')).encode('utf-8')


def decode_headers(raw: bytes) -> dict[str, str]:
    return json.loads(raw.decode('utf-8'))


class ContentStore:
    """Deduplicating body store for one key namespace."""

    def __init__(self, codec: KeyCodec) -> None:
        self.codec = codec

    def refcount(self, reader: KeyReader, content_hash: str) -> int:
        """Number of coordinates bound to content_hash (0 if none)."""
        raw = reader.get(self.codec.refcount_key(content_hash))
        if raw is None:
            return 0
        try:
            return int(raw.decode('ascii'))
        except ValueError as e:
            msg = f'Corrupt reference count for {content_hash}: {raw!r}'
            raise IntegrityError(msg) from e

    def put(self, reader: KeyReader, content_hash: str, body: bytes) -> list[Operation]:
        """Operations adding one reference to content_hash.

        The body is only written for the first reference.
        """
        count = self.refcount(reader, content_hash)
        ops = []
        if count == 0:
            ops.append(Operation.put(self.codec.data_key(content_hash), body))
        ops.append(
            Operation.put(
                self.codec.refcount_key(content_hash), str(count + 1).encode('ascii')
            )
        )
        return ops

    def release(self, reader: KeyReader, content_hash: str) -> list[Operation]:
        """Operations dropping one reference to content_hash.

        Releasing the last reference deletes the body and the count.

        Raises:
            IntegrityError: The hash has no references to release.
        """
        count = self.refcount(reader, content_hash)
        if count <= 0:
            msg = f'Release of unreferenced content {content_hash}'
            raise IntegrityError(msg)
        if count == 1:
            return [
                Operation.delete(self.codec.data_key(content_hash)),
                Operation.delete(self.codec.refcount_key(content_hash)),
            ]
        return [
            Operation.put(
                self.codec.refcount_key(content_hash), str(count - 1).encode('ascii')
            )
        ]

    def get(self, reader: KeyReader, content_hash: str) -> bytes:
        """Read and verify the body stored for content_hash.

        Raises:
            NotFoundError: No body is stored for the hash.
            IntegrityError: The stored body does not hash to content_hash.
        """
        body = reader.get(self.codec.data_key(content_hash))
        if body is None:
            msg = f'No content stored for hash {content_hash}'
            raise NotFoundError(msg)
        actual = content_digest(body)
        if actual != content_hash:
            msg = f'Content hash mismatch: expected {content_hash}, got {actual}'
            raise IntegrityError(msg)
        return body

    def bound_hash(self, reader: KeyReader, coord: Coord) -> str | None:
        """Content hash bound to a coordinate, or None."""
        raw = reader.get(self.codec.tile_key(*coord))
        return None if raw is None else decode_hash(coord, raw)

    def bind(
        self,
        reader: KeyReader,
        coord: Coord,
        content_hash: str,
        body: bytes,
        headers: dict[str, str],
    ) -> list[Operation]:
        """Operations binding coord to content_hash with its metadata.

        Rebinding to the same hash only rewrites the metadata; rebinding to a
        different hash releases the previous one.
        """
        previous = self.bound_hash(reader, coord)
        ops = []
        if previous != content_hash:
            if previous is not None:
                ops.extend(self.release(reader, previous))
            ops.extend(self.put(reader, content_hash, body))
        ops.append(Operation.put(self.codec.tile_key(*coord), content_hash.encode('ascii')))
        ops.append(Operation.put(self.codec.headers_key(*coord), encode_headers(headers)))
        return ops

    def unbind(self, reader: KeyReader, coord: Coord) -> list[Operation]:
        """Operations removing coord and releasing its content.

        Raises:
            NotFoundError: Nothing is bound to coord.
        """
        content_hash = self.bound_hash(reader, coord)
        if content_hash is None:
            z, x, y = coord
            msg = f'Tile {z}/{x}/{y} does not exist'
            raise NotFoundError(msg)
        ops = self.release(reader, content_hash)
        ops.append(Operation.delete(self.codec.tile_key(*coord)))
        ops.append(Operation.delete(self.codec.headers_key(*coord)))
        return ops

    def read(
        self,
        reader: KeyReader,
        coord: Coord,
        content_hash: str | None = None,
    ) -> tuple[bytes, dict[str, str]]:
        """Body and metadata of the tile at coord.

        Args:
            reader: Engine or pending batch to read from.
            coord: Tile coordinate.
            content_hash: Hash already resolved from the coordinate index,
                saves one lookup during range scans.

        Raises:
            NotFoundError: The tile or its content is absent.
            IntegrityError: The stored body is corrupt.
        """
        if content_hash is None:
            content_hash = self.bound_hash(reader, coord)
            if content_hash is None:
                z, x, y = coord
                msg = f'Tile {z}/{x}/{y} does not exist'
                raise NotFoundError(msg)
        body = self.get(reader, content_hash)
        raw_headers = reader.get(self.codec.headers_key(*coord))
        headers = decode_headers(raw_headers) if raw_headers is not None else {}
        headers.setdefault(CONTENT_HASH_HEADER, content_hash)
        return body, headers
