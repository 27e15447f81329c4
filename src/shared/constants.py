from enum import Enum

# --- Key layout of the ordered key-value engine
INFO_KEY = 'info'
TILE_KEY_PREFIX = 'tile:'
HEADERS_KEY_PREFIX = 'headers:'
DATA_KEY_PREFIX = 'data:'
# Separator between a namespace prefix and the key proper ('!ns!key')
NAMESPACE_SEPARATOR = '!'

# Zero padding of coordinates inside keys, so byte order == numeric order
ZOOM_KEY_WIDTH = 2
AXIS_KEY_WIDTH = 10
# Highest zoom level that fits the padded key layout (2**30 columns)
MAX_ZOOM = 30
MIN_ZOOM = 0

# --- Content addressing
# Header that carries the tile digest; always present in stored metadata
CONTENT_HASH_HEADER = 'content-md5'
CONTENT_HASH_LENGTH = 32

# --- Engine files inside a store directory
STORE_DB_FILENAME = 'tiles.sqlite'
STORE_LOCK_FILENAME = 'LOCK'
# Timeout (s) for SQLite busy waits inside one process
SQLITE_BUSY_TIMEOUT_S = 10.0

# --- Defaults for StoreSettings
# Size of the open-handle cache
DEFAULT_MAX_HANDLES = 10
# Coalescing window: 0 means flush as soon as the writer is idle
DEFAULT_WRITE_BATCH_WINDOW_S = 0.0
# Upper bound of write requests folded into one atomic commit
DEFAULT_WRITE_BATCH_SIZE = 1000
# Rows fetched per range-scan page
DEFAULT_SCAN_PAGE_SIZE = 256
DEFAULT_COMPACT_ON_CLOSE = True
# Tile writes kept in flight by the bulk importer
DEFAULT_IMPORT_CHUNK_SIZE = 64
# Memory usage is logged every N imported tiles
DEFAULT_LOG_MEMORY_EVERY_TILES = 10000

# --- Web Mercator and XYZ
TILE_SIZE = 256
# Sine clamp to keep the projection finite near the poles
MERCATOR_MAX_SIN = 0.9999
WORLD_LNG_SPAN_DEG = 360.0
WORLD_LNG_HALF_SPAN_DEG = 180.0
# Latitude limit of the square Web Mercator world
WEB_MERCATOR_MAX_LAT_DEG = 85.0511287798066
# Whole-world bounds (west, south, east, north)
WORLD_BOUNDS = (
    -WORLD_LNG_HALF_SPAN_DEG,
    -WEB_MERCATOR_MAX_LAT_DEG,
    WORLD_LNG_HALF_SPAN_DEG,
    WEB_MERCATOR_MAX_LAT_DEG,
)
# Small epsilon for tile-boundary arithmetic
XY_EPSILON = 1e-9

# --- Logging
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class TileScheme(str, Enum):
    XYZ = 'xyz'
    TMS = 'tms'


class StoreState(str, Enum):
    CLOSED = 'closed'
    # Read-only open found no archive at the path
    MISSING = 'missing'
    READ_ONLY = 'read_only'
    READ_WRITE = 'read_write'
