"""Query/result models and custom exceptions for the Meteomatics API client."""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd
import requests
from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import (
    BASE_URL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_MAX_WAIT,
    DEFAULT_RETRY_MIN_WAIT,
    DEFAULT_TIMEOUT_SECONDS,
)


# ─────────────────────────────────────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────────────────────────────────────

class MeteomaticsError(Exception):
    """Base exception for all Meteomatics client errors."""

    retryable: bool = False


class MeteomaticsConfigError(MeteomaticsError):
    """Invalid client configuration or query construction."""
    pass


class MeteomaticsNetworkError(MeteomaticsError):
    """Transport-level failure (timeout, connection reset, DNS)."""

    retryable = True


class MeteomaticsAPIError(MeteomaticsError):
    """API request failed with an error response."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
        response: Optional[requests.Response] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.response = response


class MeteomaticsAuthError(MeteomaticsAPIError):
    """Credentials rejected (HTTP 401/403)."""
    pass


class MeteomaticsBadRequestError(MeteomaticsAPIError):
    """Malformed query rejected by the API (HTTP 4xx)."""
    pass


class MeteomaticsRateLimitError(MeteomaticsAPIError):
    """Rate limit exceeded (HTTP 429)."""

    retryable = True


class MeteomaticsServerError(MeteomaticsAPIError):
    """The API failed on its side (HTTP 5xx)."""

    retryable = True


class MeteomaticsParseError(MeteomaticsError):
    """Response body does not match the expected grammar."""
    pass


# ─────────────────────────────────────────────────────────────────────────────
# Query models
# ─────────────────────────────────────────────────────────────────────────────

class OutputFormat(str, Enum):
    """Output formats understood by the API path."""

    CSV = "csv"
    JSON = "json"
    NETCDF = "netcdf"
    PNG = "png"

    @property
    def is_file(self) -> bool:
        return self in (OutputFormat.NETCDF, OutputFormat.PNG)


class Credentials(BaseModel):
    """Username/password pair sent via HTTP basic auth."""

    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, repr=False)

    def as_auth(self) -> Tuple[str, str]:
        return (self.username, self.password)


class Point(BaseModel):
    """Geographic point in decimal degrees.

    Attributes:
        lat: Latitude, -90 to 90.
        lon: Longitude, -180 to 180.
    """

    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)

    model_config = {"frozen": True}


class BBox(BaseModel):
    """Rectangular area bounded by its upper left and lower right corners."""

    lat_min: float = Field(..., ge=-90.0, le=90.0)
    lat_max: float = Field(..., ge=-90.0, le=90.0)
    lon_min: float = Field(..., ge=-180.0, le=180.0)
    lon_max: float = Field(..., ge=-180.0, le=180.0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_corners(self) -> "BBox":
        """Reject boxes whose minimum exceeds the maximum."""
        if self.lat_min > self.lat_max:
            raise ValueError("lat_min must not exceed lat_max")
        if self.lon_min > self.lon_max:
            raise ValueError("lon_min must not exceed lon_max")
        return self


class Resolution(BaseModel):
    """Grid spacing in degrees along latitude and longitude."""

    lat_res: float = Field(..., gt=0.0)
    lon_res: float = Field(..., gt=0.0)

    model_config = {"frozen": True}

    @classmethod
    def square(cls, degrees: float) -> "Resolution":
        return cls(lat_res=degrees, lon_res=degrees)


class TimeSeries(BaseModel):
    """A single valid date or an inclusive range stepped by ``interval``.

    Naive datetimes are interpreted as UTC.

    Attributes:
        start: First valid date.
        end: Last valid date; ``None`` for a single instant.
        interval: Step between valid dates; required when ``end`` is set.
    """

    start: dt.datetime
    end: Optional[dt.datetime] = None
    interval: Optional[dt.timedelta] = None

    model_config = {"frozen": True}

    @field_validator("start", "end")
    @classmethod
    def as_utc(cls, v: Optional[dt.datetime]) -> Optional[dt.datetime]:
        """Normalize to timezone-aware UTC."""
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=dt.timezone.utc)
        return v.astimezone(dt.timezone.utc)

    @model_validator(mode="after")
    def check_range(self) -> "TimeSeries":
        """Validate that the range is ordered and has a positive step."""
        if self.end is None:
            return self
        if self.end < self.start:
            raise MeteomaticsConfigError("end must not be before start")
        if self.interval is None:
            raise MeteomaticsConfigError("interval is required for a time range")
        if self.interval <= dt.timedelta(0):
            raise MeteomaticsConfigError("interval must be positive")
        return self

    @classmethod
    def instant(cls, when: dt.datetime) -> "TimeSeries":
        return cls(start=when)

    @property
    def is_instant(self) -> bool:
        return self.end is None

    def timestamps(self) -> List[dt.datetime]:
        """Enumerate every valid date covered by this series."""
        if self.end is None or self.interval is None:
            return [self.start]
        stamps: List[dt.datetime] = []
        cursor = self.start
        while cursor <= self.end:
            stamps.append(cursor)
            cursor = cursor + self.interval
        return stamps


Location = Union[Point, str]


class ClientConfig(BaseModel):
    """Configuration settings for the Meteomatics client.

    Attributes:
        base_url: API base URL.
        timeout: Request timeout in seconds.
        max_retries: Maximum attempts for retryable failures.
        retry_min_wait: Minimum wait between retries in seconds.
        retry_max_wait: Maximum wait between retries in seconds.
        requests_per_minute: Client-side request spacing; 0 disables it.
        max_parallel: Requests allowed in flight at once; 0 disables the cap.
    """

    base_url: str = BASE_URL
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=1)
    retry_min_wait: float = Field(DEFAULT_RETRY_MIN_WAIT, ge=0.0)
    retry_max_wait: float = Field(DEFAULT_RETRY_MAX_WAIT, ge=0.0)
    requests_per_minute: float = 0.0
    max_parallel: int = Field(0, ge=0)

    @field_validator("base_url")
    @classmethod
    def strip_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


# ─────────────────────────────────────────────────────────────────────────────
# Result models
# ─────────────────────────────────────────────────────────────────────────────

class ResponseRecord(BaseModel):
    """One decoded value at a (location, parameter, valid date) triple.

    Attributes:
        lat: Latitude, ``None`` for postal-code locations.
        lon: Longitude, ``None`` for postal-code locations.
        postal_code: Postal location identifier (e.g. ``postal_CH9000``).
        parameter: Parameter name as requested (e.g. ``t_2m:C``).
        valid_date: Valid date in UTC.
        value: Decoded value, ``None`` when the API reports missing data.
    """

    lat: Optional[float] = None
    lon: Optional[float] = None
    postal_code: Optional[str] = None
    parameter: str
    valid_date: dt.datetime
    value: Optional[float] = None

    model_config = {"frozen": True}

    @property
    def location_key(self) -> str:
        if self.postal_code is not None:
            return self.postal_code
        return f"{self.lat},{self.lon}"


@dataclass
class Grid:
    """Gridded values at a single valid date.

    ``values[parameter][i][j]`` is the value at ``(lats[i], lons[j])``. Rows
    run north to south as the API serves them.
    """

    valid_date: dt.datetime
    lats: List[float]
    lons: List[float]
    values: Dict[str, List[List[Optional[float]]]] = field(default_factory=dict)

    @property
    def shape(self) -> Tuple[int, int]:
        return (len(self.lats), len(self.lons))

    @property
    def parameters(self) -> List[str]:
        return list(self.values)

    def get(self, parameter: str) -> List[List[Optional[float]]]:
        try:
            return self.values[parameter]
        except KeyError:
            raise KeyError(f"Parameter '{parameter}' not in grid") from None

    def to_dataframe(self) -> pd.DataFrame:
        """Flatten to one row per grid cell with one column per parameter."""
        rows = []
        for i, lat in enumerate(self.lats):
            for j, lon in enumerate(self.lons):
                row = {"lat": lat, "lon": lon, "validdate": self.valid_date}
                for parameter, matrix in self.values.items():
                    row[parameter] = matrix[i][j]
                rows.append(row)
        return pd.DataFrame(rows, columns=["lat", "lon", "validdate", *self.values])


class Limit(BaseModel):
    """Usage counter with its soft and hard limits."""

    used: int = 0
    soft_limit: int = Field(0, alias="soft limit")
    hard_limit: int = Field(0, alias="hard limit")

    model_config = {"populate_by_name": True}


class UserStats(BaseModel):
    """Account statistics and feature availability."""

    username: str
    total: Optional[Limit] = Field(None, alias="requests total")
    since_midnight: Optional[Limit] = Field(None, alias="requests since last UTC midnight")
    since_hour: Optional[Limit] = Field(None, alias="requests since HH:00:00")
    last_60s: Optional[Limit] = Field(None, alias="requests in the last 60 seconds")
    parallel: Optional[Limit] = Field(None, alias="requests in parallel")
    historic_option: Optional[str] = Field(None, alias="historic request option")
    area_option: bool = Field(False, alias="area request option")
    models: List[str] = Field(default_factory=list, alias="model select option")
    error_message: Optional[str] = Field(None, alias="error message")
    contact_emails: List[str] = Field(default_factory=list, alias="contact emails")

    model_config = {"populate_by_name": True, "extra": "allow"}


class UserStatsResponse(BaseModel):
    """Envelope of the ``user_stats_json`` endpoint."""

    message: str = ""
    stats: UserStats = Field(..., alias="user statistics")

    model_config = {"populate_by_name": True, "extra": "allow"}


__all__ = [
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
    # Query models
    "OutputFormat",
    "Credentials",
    "Point",
    "BBox",
    "Resolution",
    "TimeSeries",
    "Location",
    "ClientConfig",
    # Result models
    "ResponseRecord",
    "Grid",
    "Limit",
    "UserStats",
    "UserStatsResponse",
]
