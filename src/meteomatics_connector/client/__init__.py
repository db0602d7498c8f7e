"""Meteomatics API Client Package.

This package provides a typed interface to the Meteomatics weather API
with support for:
- Point and postal-code time series, routes, grids and grid time series
- All-or-nothing decoding into records, grids or DataFrames
- NetCDF and PNG downloads
- Exponential backoff retry logic for transient failures

Example usage:
    >>> from meteomatics_connector.client import MeteomaticsClient, Point, Credentials
    >>> client = MeteomaticsClient(Credentials(username="user", password="secret"))
    >>> records = client.query_point(Point(lat=47.0, lon=9.0), "t_2m:C", when)
"""

from __future__ import annotations

# Re-export main client class
from .client import DOWNLOAD_CHUNK_BYTES, HTTPSession, MeteomaticsClient

# Re-export constants
from .constants import (
    BASE_URL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_WORKERS,
    DEFAULT_TIMEOUT_SECONDS,
    MISSING_VALUE_SENTINEL,
)

# Re-export models
from .models import (
    BBox,
    ClientConfig,
    Credentials,
    Grid,
    Limit,
    Location,
    MeteomaticsAPIError,
    MeteomaticsAuthError,
    MeteomaticsBadRequestError,
    MeteomaticsConfigError,
    MeteomaticsError,
    MeteomaticsNetworkError,
    MeteomaticsParseError,
    MeteomaticsRateLimitError,
    MeteomaticsServerError,
    OutputFormat,
    Point,
    Resolution,
    ResponseRecord,
    TimeSeries,
    UserStats,
)

# Re-export parsers (for advanced usage)
from .parsers import (
    decode_grid_csv,
    decode_time_series_csv,
    decode_time_series_json,
    decode_unpivoted_grid_csv,
    decode_user_stats,
    records_to_dataframe,
)
from .rate_limiter import RateLimiter


__all__ = [
    # Main client
    "MeteomaticsClient",
    "HTTPSession",
    "DOWNLOAD_CHUNK_BYTES",
    # Models
    "BBox",
    "ClientConfig",
    "Credentials",
    "Grid",
    "Limit",
    "Location",
    "OutputFormat",
    "Point",
    "Resolution",
    "ResponseRecord",
    "TimeSeries",
    "UserStats",
    # Exceptions
    "MeteomaticsError",
    "MeteomaticsConfigError",
    "MeteomaticsNetworkError",
    "MeteomaticsAPIError",
    "MeteomaticsAuthError",
    "MeteomaticsBadRequestError",
    "MeteomaticsRateLimitError",
    "MeteomaticsServerError",
    "MeteomaticsParseError",
    # Parsers
    "decode_time_series_csv",
    "decode_time_series_json",
    "decode_grid_csv",
    "decode_unpivoted_grid_csv",
    "decode_user_stats",
    "records_to_dataframe",
    # Rate limiter
    "RateLimiter",
    # Constants
    "BASE_URL",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_MAX_WORKERS",
    "DEFAULT_TIMEOUT_SECONDS",
    "MISSING_VALUE_SENTINEL",
]
