"""Internal constants shared across the library."""

# ------------------------------------------------------------------
# Key-value store layout
# ------------------------------------------------------------------

DOT_KEY_PREFIX = "dots:"
MESHCORE_DOT_KEY_PREFIX = "dots_meshcore:"
DEVICE_INDEX_KEY = "devices:active"
CATEGORY_INDEX_PREFIX = "portnums:"

ALL_DOTS_CACHE_KEY = "optimized_dots_cache"
MAP_DATA_CACHE_KEY = "map_data_cache"
MESHCORE_DOTS_CACHE_KEY = "dots_meshcore_cache"

# ------------------------------------------------------------------
# Aggregation defaults
# ------------------------------------------------------------------

DEBOUNCE_MS = 3000
DUPLICATE_WINDOW_MS = 3000
MAX_CATEGORY_MESSAGES = 200
CACHE_TTL_SECONDS = 30
INDEX_CACHE_TTL_SECONDS = 10.0
MESHCORE_DOT_TTL_SECONDS = 3 * 60 * 60
PIPELINE_TIMEOUT_SECONDS = 30.0
SCAN_BATCH_SIZE = 100

# ------------------------------------------------------------------
# Message-record fields ignored when comparing for duplicates
# ------------------------------------------------------------------

DUPLICATE_IGNORED_FIELDS: frozenset[str] = frozenset({"timestamp", "gatewayId"})
