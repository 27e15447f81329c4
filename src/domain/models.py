from __future__ import annotations

import hashlib
import json

from pydantic import BaseModel, field_validator, model_validator

from shared.constants import (
    DEFAULT_COMPACT_ON_CLOSE,
    DEFAULT_IMPORT_CHUNK_SIZE,
    DEFAULT_LOG_MEMORY_EVERY_TILES,
    DEFAULT_MAX_HANDLES,
    DEFAULT_SCAN_PAGE_SIZE,
    DEFAULT_WRITE_BATCH_SIZE,
    DEFAULT_WRITE_BATCH_WINDOW_S,
    MAX_ZOOM,
    MIN_ZOOM,
    TileScheme,
)

Bounds = tuple[float, float, float, float]


def validate_zoom(v: int) -> int:
    v = int(v)
    if not (MIN_ZOOM <= v <= MAX_ZOOM):
        msg = f'Zoom must be in range [{MIN_ZOOM}, {MAX_ZOOM}], got {v}'
        raise ValueError(msg)
    return v


def validate_bounds(v: Bounds) -> Bounds:
    west, south, east, north = (float(c) for c in v)
    if west > east or south > north:
        msg = f'Bounds must be (west, south, east, north), got {v}'
        raise ValueError(msg)
    return west, south, east, north


class StoreOptions(BaseModel):
    """Open options of a tile set inside an archive.

    Several tile sets (formats, styles, scales) may live in one archive path;
    each non-default combination gets its own key namespace.
    """

    model_config = {'frozen': True}

    # Tile format of multi-format archives (e.g. 'png', 'pbf')
    format: str = ''
    # Style id of archives holding several styles
    id: str = ''
    scale: float = 1

    @property
    def is_default(self) -> bool:
        return self == StoreOptions()

    @property
    def namespace(self) -> str:
        """Key namespace of this tile set; empty for default options."""
        if self.is_default:
            return ''
        payload = json.dumps(self.model_dump(), sort_keys=True)
        return hashlib.sha1(payload.encode('utf-8')).hexdigest()


class StoreInfo(BaseModel):
    """Info record describing the whole pyramid of a store.

    Provider-specific fields (name, attribution, format, ...) are kept as
    extra attributes and survive a round trip unchanged.
    """

    model_config = {'extra': 'allow'}

    scheme: TileScheme = TileScheme.XYZ
    minzoom: int | None = None
    maxzoom: int | None = None
    # (west, south, east, north) in WGS84 degrees
    bounds: Bounds | None = None

    @field_validator('minzoom', 'maxzoom')
    @classmethod
    def check_zooms(cls, v: int | None) -> int | None:
        return None if v is None else validate_zoom(v)

    @field_validator('bounds')
    @classmethod
    def check_bounds(cls, v: Bounds | None) -> Bounds | None:
        return None if v is None else validate_bounds(v)

    @model_validator(mode='after')
    def validate_zoom_order(self) -> StoreInfo:
        if (
            self.minzoom is not None
            and self.maxzoom is not None
            and self.minzoom > self.maxzoom
        ):
            msg = f'minzoom {self.minzoom} is greater than maxzoom {self.maxzoom}'
            raise ValueError(msg)
        return self

    def restricted(self, minzoom: int, maxzoom: int, bounds: Bounds) -> StoreInfo:
        """Copy of this record narrowed to a streamed window."""
        return self.model_copy(
            update={'minzoom': minzoom, 'maxzoom': maxzoom, 'bounds': bounds},
        )


class StoreSettings(BaseModel):
    """Tunables of the registry, the write coalescer and bulk streaming."""

    model_config = {
        'extra': 'ignore',  # ignore unknown keys of older profiles
    }

    # Open engine handles cached by the registry
    max_handles: int = DEFAULT_MAX_HANDLES
    # Coalescing window (s) after the first queued write
    write_batch_window_s: float = DEFAULT_WRITE_BATCH_WINDOW_S
    # Write requests folded into one commit at most
    write_batch_size: int = DEFAULT_WRITE_BATCH_SIZE
    # Rows per range-scan page
    scan_page_size: int = DEFAULT_SCAN_PAGE_SIZE
    # Compact the archive when a write session closes
    compact_on_close: bool = DEFAULT_COMPACT_ON_CLOSE
    # Writes in flight during bulk import
    import_chunk_size: int = DEFAULT_IMPORT_CHUNK_SIZE
    log_memory_every_tiles: int = DEFAULT_LOG_MEMORY_EVERY_TILES

    @field_validator(
        'max_handles',
        'write_batch_size',
        'scan_page_size',
        'import_chunk_size',
        'log_memory_every_tiles',
    )
    @classmethod
    def validate_positive(cls, v: int | str) -> int:
        v = int(v)
        if v <= 0:
            msg = 'Value must be positive'
            raise ValueError(msg)
        return v

    @field_validator('write_batch_window_s')
    @classmethod
    def validate_window(cls, v: float | str) -> float:
        v = float(v)
        if v < 0:
            msg = 'Coalescing window cannot be negative'
            raise ValueError(msg)
        return v
