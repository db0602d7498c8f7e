"""Request path builders for the Meteomatics API.

A query path has four segments joined by ``/``:

    <time>/<parameters>/<locations>/<format>

e.g. ``2023-01-01T00:00:00Z--2023-01-02T00:00:00Z:PT3600S/t_2m:C/47,9/csv``.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Mapping, Optional, Sequence, Tuple

from .constants import POSTAL_PREFIX
from .models import (
    BBox,
    Location,
    MeteomaticsConfigError,
    OutputFormat,
    Point,
    Resolution,
    TimeSeries,
)


# ─────────────────────────────────────────────────────────────────────────────
# Scalar formatting
# ─────────────────────────────────────────────────────────────────────────────

def format_number(value: float) -> str:
    """Render a coordinate in positional notation without trailing zeros.

    ``47.0 -> 47``, ``1e-05 -> 0.00001``; the API rejects exponents.
    """
    text = format(Decimal(repr(float(value))), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text == "-0":
        text = "0"
    return text


def format_datetime(value: dt.datetime) -> str:
    """Format a datetime as an ISO 8601 UTC string with a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text = f"{text}.{value.microsecond:06d}"
    return f"{text}Z"


def format_interval(value: dt.timedelta) -> str:
    """Format a step as an ISO 8601 duration in seconds (``PT3600S``)."""
    seconds = value.total_seconds()
    if seconds.is_integer():
        return f"PT{int(seconds)}S"
    return f"PT{seconds}S"


# ─────────────────────────────────────────────────────────────────────────────
# Path segments
# ─────────────────────────────────────────────────────────────────────────────

def time_segment(time_range: TimeSeries) -> str:
    if time_range.end is None or time_range.interval is None:
        return format_datetime(time_range.start)
    return (
        f"{format_datetime(time_range.start)}--{format_datetime(time_range.end)}"
        f":{format_interval(time_range.interval)}"
    )


def dates_segment(dates: Sequence[dt.datetime]) -> str:
    """Comma-separated list of valid dates, used by route queries."""
    if not dates:
        raise MeteomaticsConfigError("At least one date is required")
    return ",".join(format_datetime(value) for value in dates)


def parameters_segment(parameters: Sequence[str]) -> str:
    cleaned = [p.strip() for p in parameters if p and p.strip()]
    if not cleaned:
        raise MeteomaticsConfigError("At least one parameter is required")
    if len(set(cleaned)) != len(cleaned):
        raise MeteomaticsConfigError(f"Duplicate parameters: {', '.join(cleaned)}")
    return ",".join(cleaned)


def point_segment(point: Point) -> str:
    return f"{format_number(point.lat)},{format_number(point.lon)}"


def locations_segment(locations: Sequence[Location]) -> str:
    """Join points and postal codes with ``+``."""
    if not locations:
        raise MeteomaticsConfigError("At least one location is required")
    parts = []
    for location in locations:
        if isinstance(location, Point):
            parts.append(point_segment(location))
        elif isinstance(location, str) and location.startswith(POSTAL_PREFIX):
            parts.append(location)
        else:
            raise MeteomaticsConfigError(
                f"Unsupported location {location!r}; expected Point or '{POSTAL_PREFIX}...' code"
            )
    return "+".join(parts)


def bbox_segment(bbox: BBox, resolution: Optional[Resolution] = None) -> str:
    """Render ``lat_max,lon_min_lat_min,lon_max`` with an optional ``:res`` suffix."""
    corners = (
        f"{format_number(bbox.lat_max)},{format_number(bbox.lon_min)}_"
        f"{format_number(bbox.lat_min)},{format_number(bbox.lon_max)}"
    )
    if resolution is None:
        return corners
    return f"{corners}:{format_number(resolution.lat_res)},{format_number(resolution.lon_res)}"


def grid_shape(bbox: BBox, resolution: Resolution) -> Tuple[int, int]:
    """Number of (rows, columns) the API serves for a box at a resolution."""
    n_lat = int(round((bbox.lat_max - bbox.lat_min) / resolution.lat_res)) + 1
    n_lon = int(round((bbox.lon_max - bbox.lon_min) / resolution.lon_res)) + 1
    return (n_lat, n_lon)


# ─────────────────────────────────────────────────────────────────────────────
# Full paths
# ─────────────────────────────────────────────────────────────────────────────

def build_query_path(
    time_part: str,
    parameters: Sequence[str],
    locations_part: str,
    fmt: OutputFormat,
) -> str:
    return f"{time_part}/{parameters_segment(parameters)}/{locations_part}/{fmt.value}"


def build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def merge_optionals(
    optionals: Optional[Mapping[str, str]], **extra: str
) -> Optional[dict]:
    """Combine caller optionals (``model=mix``...) with client-set ones."""
    merged = dict(optionals or {})
    merged.update(extra)
    return merged or None


__all__ = [
    "format_number",
    "format_datetime",
    "format_interval",
    "time_segment",
    "dates_segment",
    "parameters_segment",
    "point_segment",
    "locations_segment",
    "bbox_segment",
    "grid_shape",
    "build_query_path",
    "build_url",
    "merge_optionals",
]
