"""Binary key layout of a tile store.

    info                      -> info record (JSON)
    tile:{z}/{x}/{y}          -> content hash (ASCII)
    headers:{z}/{x}/{y}       -> tile metadata (JSON)
    data:{hash}               -> tile body
    {hash}                    -> reference count (ASCII decimal)

Coordinates are zero padded so that byte order of the keys equals numeric
(z, x, y) order. Tile sets opened with non-default options get a
'!{namespace}!' prefix on every key.
"""

from __future__ import annotations

import re

from shared.constants import (
    AXIS_KEY_WIDTH,
    CONTENT_HASH_LENGTH,
    DATA_KEY_PREFIX,
    HEADERS_KEY_PREFIX,
    INFO_KEY,
    MAX_ZOOM,
    MIN_ZOOM,
    NAMESPACE_SEPARATOR,
    TILE_KEY_PREFIX,
    ZOOM_KEY_WIDTH,
)
from tilestore.errors import KeyFormatError

HASH_RE = re.compile(rf'^[0-9a-f]{{{CONTENT_HASH_LENGTH}}}$')

Coord = tuple[int, int, int]


def validate_coord(z: int, x: int, y: int) -> Coord:
    """Check that (z, x, y) addresses a tile of the zoom's grid.

    Raises:
        ValueError: Coordinate is negative or outside the grid.
    """
    z, x, y = int(z), int(x), int(y)
    if not (MIN_ZOOM <= z <= MAX_ZOOM):
        msg = f'Zoom must be in range [{MIN_ZOOM}, {MAX_ZOOM}], got {z}'
        raise ValueError(msg)
    limit = 2**z
    if not (0 <= x < limit and 0 <= y < limit):
        msg = f'Tile {z}/{x}/{y} is outside the zoom {z} grid'
        raise ValueError(msg)
    return z, x, y


def normalize_hash(value: str) -> str:
    """Lower-case a content hash and check its format."""
    content_hash = value.strip().lower()
    if not HASH_RE.match(content_hash):
        msg = f'Malformed content hash: {value!r}'
        raise ValueError(msg)
    return content_hash


class KeyCodec:
    """Stateless mapping between store entities and engine keys."""

    def __init__(self, namespace: str = '') -> None:
        self.namespace = namespace
        self._prefix = (
            f'{NAMESPACE_SEPARATOR}{namespace}{NAMESPACE_SEPARATOR}' if namespace else ''
        )

    def _key(self, name: str) -> bytes:
        return f'{self._prefix}{name}'.encode('ascii')

    @staticmethod
    def coord_path(z: int, x: int, y: int) -> str:
        return f'{z:0{ZOOM_KEY_WIDTH}d}/{x:0{AXIS_KEY_WIDTH}d}/{y:0{AXIS_KEY_WIDTH}d}'

    def info_key(self) -> bytes:
        return self._key(INFO_KEY)

    def tile_key(self, z: int, x: int, y: int) -> bytes:
        return self._key(TILE_KEY_PREFIX + self.coord_path(z, x, y))

    def headers_key(self, z: int, x: int, y: int) -> bytes:
        return self._key(HEADERS_KEY_PREFIX + self.coord_path(z, x, y))

    def data_key(self, content_hash: str) -> bytes:
        return self._key(DATA_KEY_PREFIX + content_hash)

    def refcount_key(self, content_hash: str) -> bytes:
        return self._key(content_hash)

    def decode_tile_key(self, key: bytes) -> Coord:
        """Extract (z, x, y) from a scanned 'tile:' key.

        Raises:
            KeyFormatError: The key is not a tile key of this namespace.
        """
        text = key.decode('ascii', errors='replace')
        if not text.startswith(self._prefix):
            msg = f'Key {text!r} is outside namespace {self.namespace!r}'
            raise KeyFormatError(msg)
        kind, _, coords = text[len(self._prefix):].partition(':')
        parts = coords.split('/')
        if kind + ':' != TILE_KEY_PREFIX or len(parts) != 3 or not all(p.isdigit() for p in parts):
            msg = f'Malformed tile key: {text!r}'
            raise KeyFormatError(msg)
        z, x, y = (int(p) for p in parts)
        return z, x, y
