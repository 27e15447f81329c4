"""Tile pyramid math: geographic bounds to XYZ tile ranges."""

from __future__ import annotations

import math

from domain.models import Bounds, validate_bounds, validate_zoom
from shared.constants import (
    MERCATOR_MAX_SIN,
    TILE_SIZE,
    WORLD_LNG_HALF_SPAN_DEG,
    WORLD_LNG_SPAN_DEG,
    XY_EPSILON,
)

TileRange = tuple[int, int, int, int]


def latlng_to_pixel_xy(
    lat_deg: float,
    lng_deg: float,
    zoom: int,
) -> tuple[float, float]:
    """Convert WGS84 (lat, lng) to Web Mercator world pixel coordinates."""
    siny = math.sin(math.radians(lat_deg))
    siny = min(max(siny, -MERCATOR_MAX_SIN), MERCATOR_MAX_SIN)
    world_size = TILE_SIZE * (2**zoom)
    x = (lng_deg + WORLD_LNG_HALF_SPAN_DEG) / WORLD_LNG_SPAN_DEG * world_size
    y = (0.5 - math.log((1 + siny) / (1 - siny)) / (4 * math.pi)) * world_size
    return x, y


def _clamp(value: int, limit: int) -> int:
    return min(max(value, 0), limit - 1)


def tile_range(bounds: Bounds, zoom: int) -> TileRange:
    """Inclusive XYZ tile range covering bounds at zoom.

    Args:
        bounds: (west, south, east, north) in WGS84 degrees.
        zoom: Zoom level.

    Returns:
        (min_x, min_y, max_x, max_y), clamped to the zoom's grid. Rows grow
        southwards, so min_y comes from the north edge.
    """
    west, south, east, north = validate_bounds(bounds)
    zoom = validate_zoom(zoom)
    tiles = 2**zoom

    left, top = latlng_to_pixel_xy(north, west, zoom)
    right, bottom = latlng_to_pixel_xy(south, east, zoom)

    min_x = _clamp(math.floor(left / TILE_SIZE), tiles)
    min_y = _clamp(math.floor(top / TILE_SIZE), tiles)
    # An edge lying exactly on a tile boundary does not pull in the next tile
    max_x = _clamp(math.floor((right - XY_EPSILON) / TILE_SIZE), tiles)
    max_y = _clamp(math.floor((bottom - XY_EPSILON) / TILE_SIZE), tiles)
    return min_x, min_y, max(min_x, max_x), max(min_y, max_y)
