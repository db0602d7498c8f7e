"""Typed client for the Meteomatics weather API."""

from __future__ import annotations

from .client import (
    BBox,
    ClientConfig,
    Credentials,
    Grid,
    MeteomaticsClient,
    MeteomaticsError,
    OutputFormat,
    Point,
    Resolution,
    ResponseRecord,
    TimeSeries,
)

__version__ = "0.3.0"

__all__ = [
    "MeteomaticsClient",
    "MeteomaticsError",
    "BBox",
    "ClientConfig",
    "Credentials",
    "Grid",
    "OutputFormat",
    "Point",
    "Resolution",
    "ResponseRecord",
    "TimeSeries",
    "__version__",
]
