from __future__ import annotations
# API Endpoints
BASE_URL = "https://api.meteomatics.com"
USER_STATS_PATH = "user_stats_json"

# Request retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_MIN_WAIT = 1.0
DEFAULT_RETRY_MAX_WAIT = 30.0
DEFAULT_TIMEOUT_SECONDS = 300

# Concurrency
DEFAULT_MAX_WORKERS = 4

# Value the API writes for missing data
MISSING_VALUE_SENTINEL = -999.0

# CSV layout
CSV_DELIMITERS = (";", ",")
VALIDDATE_COLUMN = "validdate"
STATION_COLUMN = "station_id"
GRID_HEADER_MARKER = "data"
POSTAL_PREFIX = "postal_"

# HTTP status codes
AUTH_STATUS_CODES = {401, 403}
RATE_LIMIT_STATUS_CODE = 429
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

# Tolerance when matching coordinates in responses against the request
COORDINATE_TOLERANCE = 1e-6

__all__ = [
    "BASE_URL",
    "USER_STATS_PATH",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_RETRY_MIN_WAIT",
    "DEFAULT_RETRY_MAX_WAIT",
    "DEFAULT_TIMEOUT_SECONDS",
    "DEFAULT_MAX_WORKERS",
    "MISSING_VALUE_SENTINEL",
    "CSV_DELIMITERS",
    "VALIDDATE_COLUMN",
    "STATION_COLUMN",
    "GRID_HEADER_MARKER",
    "POSTAL_PREFIX",
    "AUTH_STATUS_CODES",
    "RATE_LIMIT_STATUS_CODE",
    "RETRYABLE_STATUS_CODES",
    "COORDINATE_TOLERANCE",
]
