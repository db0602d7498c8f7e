"""Response decoders for the Meteomatics API.

Every decoder is all-or-nothing: a body that does not match the expected
grammar, or that carries more or fewer values than the query asked for,
raises ``MeteomaticsParseError`` instead of returning a partial result.
"""

from __future__ import annotations

import csv
import datetime as dt
import json
import math
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

import pandas as pd
from pydantic import ValidationError

from .constants import (
    COORDINATE_TOLERANCE,
    CSV_DELIMITERS,
    GRID_HEADER_MARKER,
    MISSING_VALUE_SENTINEL,
    STATION_COLUMN,
    VALIDDATE_COLUMN,
)
from .models import (
    Grid,
    Location,
    MeteomaticsParseError,
    OutputFormat,
    Point,
    ResponseRecord,
    UserStats,
    UserStatsResponse,
)


# ─────────────────────────────────────────────────────────────────────────────
# Scalar Helpers
# ─────────────────────────────────────────────────────────────────────────────

def parse_value(raw: Any) -> Optional[float]:
    """Convert a cell to float; empty cells and the -999 sentinel become None."""
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = raw.strip()
        if raw == "":
            return None
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise MeteomaticsParseError(f"Invalid numeric value {raw!r}") from exc
    if math.isnan(value) or value == MISSING_VALUE_SENTINEL:
        return None
    return value


def parse_valid_date(raw: str) -> dt.datetime:
    """Parse an ISO 8601 valid date into an aware UTC datetime."""
    text = (raw or "").strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError as exc:
        raise MeteomaticsParseError(f"Invalid valid date {raw!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def parse_coordinate(raw: str) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise MeteomaticsParseError(f"Invalid coordinate {raw!r}") from exc


def _close(a: float, b: float) -> bool:
    return abs(a - b) <= COORDINATE_TOLERANCE


def _detect_delimiter(line: str) -> str:
    for delimiter in CSV_DELIMITERS:
        if delimiter in line:
            return delimiter
    return CSV_DELIMITERS[0]


def _read_rows(text: str, delimiter: Optional[str] = None) -> List[List[str]]:
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    if not lines:
        raise MeteomaticsParseError("Empty response body")
    delimiter = delimiter or _detect_delimiter(lines[0])
    return [[cell.strip() for cell in row] for row in csv.reader(lines, delimiter=delimiter)]


# ─────────────────────────────────────────────────────────────────────────────
# Record Validation
# ─────────────────────────────────────────────────────────────────────────────

def _match_location(
    lat: float, lon: float, requested: Optional[Sequence[Location]]
) -> None:
    if not requested:
        return
    for location in requested:
        if isinstance(location, Point) and _close(location.lat, lat) and _close(location.lon, lon):
            return
    raise MeteomaticsParseError(f"Response contains unrequested location {lat},{lon}")


def _check_rows(
    keys: List[Tuple[str, dt.datetime]],
    *,
    expected_rows: Optional[int],
    timestamps: Optional[Sequence[dt.datetime]],
) -> None:
    """Validate row count, uniqueness and valid dates of decoded rows."""
    if expected_rows is not None and len(keys) != expected_rows:
        raise MeteomaticsParseError(
            f"Expected {expected_rows} rows in response, got {len(keys)}"
        )
    if len(set(keys)) != len(keys):
        raise MeteomaticsParseError("Response contains duplicate (location, valid date) rows")
    if timestamps is not None:
        allowed: Set[dt.datetime] = set(timestamps)
        for _, valid_date in keys:
            if valid_date not in allowed:
                raise MeteomaticsParseError(
                    f"Response contains unrequested valid date {valid_date.isoformat()}"
                )


# ─────────────────────────────────────────────────────────────────────────────
# Time Series (CSV)
# ─────────────────────────────────────────────────────────────────────────────

def decode_time_series_csv(
    text: str,
    parameters: Sequence[str],
    *,
    locations: Optional[Sequence[Location]] = None,
    expected_rows: Optional[int] = None,
    timestamps: Optional[Sequence[dt.datetime]] = None,
) -> List[ResponseRecord]:
    """Decode a time series CSV body into one record per value.

    Accepts the layouts the API serves:

    - ``validdate;p1;p2`` for a single location (labelled from ``locations``),
    - ``lat;lon;validdate;p1;p2`` for several points or grids,
    - ``station_id;validdate;p1`` for postal codes,
    - a headerless ``validdate,p1`` body for a single location.

    Args:
        text: Response body.
        parameters: Requested parameter names; the body must carry exactly these.
        locations: Requested locations, used for labelling and membership checks.
        expected_rows: Number of (location, valid date) rows the query implies.
        timestamps: Valid dates the query asked for.

    Returns:
        Records ordered by row, then by requested parameter order.

    Raises:
        MeteomaticsParseError: If the body does not match the query.
    """
    rows = _read_rows(text)
    first = rows[0][0].lower() if rows[0] else ""

    if first in ("lat", VALIDDATE_COLUMN, STATION_COLUMN):
        header, body = rows[0], rows[1:]
    else:
        header, body = [VALIDDATE_COLUMN, *parameters], rows

    if VALIDDATE_COLUMN not in header:
        raise MeteomaticsParseError(f"Missing '{VALIDDATE_COLUMN}' column in response header")
    date_idx = header.index(VALIDDATE_COLUMN)
    value_columns = header[date_idx + 1:]
    missing = [p for p in parameters if p not in value_columns]
    unexpected = [c for c in value_columns if c not in parameters]
    if missing or unexpected or len(value_columns) != len(parameters):
        raise MeteomaticsParseError(
            f"Response columns {value_columns} do not match requested parameters {list(parameters)}"
        )
    column_index = {name: date_idx + 1 + i for i, name in enumerate(value_columns)}

    has_latlon = header[:2] == ["lat", "lon"]
    has_station = header[0] == STATION_COLUMN
    fixed_location: Optional[Location] = None
    if not has_latlon and not has_station:
        if not locations or len(locations) != 1:
            raise MeteomaticsParseError(
                "Response has no location columns but the query has several locations"
            )
        fixed_location = locations[0]

    records: List[ResponseRecord] = []
    keys: List[Tuple[str, dt.datetime]] = []
    for line_no, row in enumerate(body, start=1):
        if len(row) != len(header):
            raise MeteomaticsParseError(
                f"Row {line_no} has {len(row)} fields, expected {len(header)}"
            )
        lat: Optional[float] = None
        lon: Optional[float] = None
        postal: Optional[str] = None
        if has_latlon:
            lat, lon = parse_coordinate(row[0]), parse_coordinate(row[1])
            _match_location(lat, lon, locations)
        elif has_station:
            postal = row[0]
            if locations and postal not in locations:
                raise MeteomaticsParseError(f"Response contains unrequested station {postal}")
        elif isinstance(fixed_location, Point):
            lat, lon = fixed_location.lat, fixed_location.lon
        else:
            postal = fixed_location

        valid_date = parse_valid_date(row[date_idx])
        keys.append((postal if postal is not None else f"{lat},{lon}", valid_date))
        for parameter in parameters:
            records.append(
                ResponseRecord(
                    lat=lat,
                    lon=lon,
                    postal_code=postal,
                    parameter=parameter,
                    valid_date=valid_date,
                    value=parse_value(row[column_index[parameter]]),
                )
            )

    _check_rows(keys, expected_rows=expected_rows, timestamps=timestamps)
    return records


# ─────────────────────────────────────────────────────────────────────────────
# Time Series (JSON)
# ─────────────────────────────────────────────────────────────────────────────

def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError) as exc:
        raise MeteomaticsParseError(f"Response is not valid JSON: {exc}") from exc


def decode_time_series_json(
    text: str,
    parameters: Sequence[str],
    *,
    locations: Optional[Sequence[Location]] = None,
    expected_rows: Optional[int] = None,
    timestamps: Optional[Sequence[dt.datetime]] = None,
) -> List[ResponseRecord]:
    """Decode the JSON time series body (``data[].coordinates[].dates[]``)."""
    payload = _load_json(text)
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise MeteomaticsParseError("JSON response has no 'data' list")

    by_parameter: Dict[str, List[ResponseRecord]] = {}
    for series in payload["data"]:
        try:
            parameter = series["parameter"]
            coordinates = series["coordinates"]
        except (KeyError, TypeError) as exc:
            raise MeteomaticsParseError(f"Malformed JSON series: {exc}") from exc
        if parameter not in parameters or parameter in by_parameter:
            raise MeteomaticsParseError(f"Unexpected parameter {parameter!r} in JSON response")

        series_records: List[ResponseRecord] = []
        for coordinate in coordinates:
            try:
                dates = coordinate["dates"]
                postal = coordinate.get(STATION_COLUMN)
                lat = None if postal else parse_coordinate(coordinate["lat"])
                lon = None if postal else parse_coordinate(coordinate["lon"])
            except (KeyError, TypeError, AttributeError) as exc:
                raise MeteomaticsParseError(f"Malformed JSON coordinate: {exc}") from exc
            if postal is None:
                _match_location(lat, lon, locations)
            elif locations and postal not in locations:
                raise MeteomaticsParseError(f"Response contains unrequested station {postal}")
            for entry in dates:
                try:
                    valid_date = parse_valid_date(entry["date"])
                    raw_value = entry["value"]
                except (KeyError, TypeError) as exc:
                    raise MeteomaticsParseError(f"Malformed JSON date entry: {exc}") from exc
                series_records.append(
                    ResponseRecord(
                        lat=lat,
                        lon=lon,
                        postal_code=postal,
                        parameter=parameter,
                        valid_date=valid_date,
                        value=parse_value(raw_value),
                    )
                )
        by_parameter[parameter] = series_records

    missing = [p for p in parameters if p not in by_parameter]
    if missing:
        raise MeteomaticsParseError(f"JSON response is missing parameters {missing}")

    for parameter in parameters:
        keys = [(r.location_key, r.valid_date) for r in by_parameter[parameter]]
        _check_rows(keys, expected_rows=expected_rows, timestamps=timestamps)

    # Order like the CSV decoder: by row, then by requested parameter order.
    first = by_parameter[parameters[0]]
    lookup = {
        parameter: {(r.location_key, r.valid_date): r for r in by_parameter[parameter]}
        for parameter in parameters
    }
    records: List[ResponseRecord] = []
    for anchor in first:
        key = (anchor.location_key, anchor.valid_date)
        for parameter in parameters:
            record = lookup[parameter].get(key)
            if record is None:
                raise MeteomaticsParseError(
                    f"Parameter {parameter!r} has no value at {key[0]} {key[1].isoformat()}"
                )
            records.append(record)
    return records


TimeSeriesDecoder = Callable[..., List[ResponseRecord]]

TIME_SERIES_DECODERS: Dict[OutputFormat, TimeSeriesDecoder] = {
    OutputFormat.CSV: decode_time_series_csv,
    OutputFormat.JSON: decode_time_series_json,
}


def get_time_series_decoder(fmt: OutputFormat) -> TimeSeriesDecoder:
    try:
        return TIME_SERIES_DECODERS[fmt]
    except KeyError:
        raise MeteomaticsParseError(f"No time series decoder for format '{fmt.value}'") from None


# ─────────────────────────────────────────────────────────────────────────────
# Grids
# ─────────────────────────────────────────────────────────────────────────────

def _check_shape(shape: Tuple[int, int], expected: Optional[Tuple[int, int]]) -> None:
    if expected is not None and shape != tuple(expected):
        raise MeteomaticsParseError(
            f"Grid shape {shape[0]}x{shape[1]} does not match expected {expected[0]}x{expected[1]}"
        )


def decode_grid_csv(
    text: str,
    parameter: str,
    valid_date: dt.datetime,
    *,
    expected_shape: Optional[Tuple[int, int]] = None,
) -> Grid:
    """Decode the pivoted single-parameter grid CSV.

    Any preamble lines (valid date, parameter) are skipped up to the header
    ``data;lon_1;...;lon_n``; each following row is ``lat;v_1;...;v_n``.
    """
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    header_at = None
    for idx, line in enumerate(lines):
        if line.lower().startswith(GRID_HEADER_MARKER) and len(line) > len(GRID_HEADER_MARKER):
            if line[len(GRID_HEADER_MARKER)] in CSV_DELIMITERS:
                header_at = idx
                break
    if header_at is None:
        raise MeteomaticsParseError(f"Grid response has no '{GRID_HEADER_MARKER}' header line")

    delimiter = lines[header_at][len(GRID_HEADER_MARKER)]
    rows = _read_rows("\n".join(lines[header_at:]), delimiter)
    lons = [parse_coordinate(cell) for cell in rows[0][1:]]
    if not lons:
        raise MeteomaticsParseError("Grid header lists no longitudes")

    lats: List[float] = []
    matrix: List[List[Optional[float]]] = []
    for line_no, row in enumerate(rows[1:], start=1):
        if len(row) != len(lons) + 1:
            raise MeteomaticsParseError(
                f"Grid row {line_no} has {len(row) - 1} values, expected {len(lons)}"
            )
        lats.append(parse_coordinate(row[0]))
        matrix.append([parse_value(cell) for cell in row[1:]])

    if not lats:
        raise MeteomaticsParseError("Grid response has no data rows")
    _check_shape((len(lats), len(lons)), expected_shape)
    return Grid(valid_date=valid_date, lats=lats, lons=lons, values={parameter: matrix})


def _unique_sorted(values: Sequence[float], *, descending: bool) -> List[float]:
    unique: List[float] = []
    for value in sorted(values, reverse=descending):
        if not unique or not _close(unique[-1], value):
            unique.append(value)
    return unique


def _index_of(axis: List[float], value: float) -> int:
    for idx, candidate in enumerate(axis):
        if _close(candidate, value):
            return idx
    raise MeteomaticsParseError(f"Coordinate {value} not on grid axis")


def decode_unpivoted_grid_csv(
    text: str,
    parameters: Sequence[str],
    valid_date: dt.datetime,
    *,
    expected_shape: Optional[Tuple[int, int]] = None,
) -> Grid:
    """Decode the ``lat;lon;validdate;p1;p2`` grid CSV into a Grid."""
    expected_rows = expected_shape[0] * expected_shape[1] if expected_shape else None
    records = decode_time_series_csv(
        text, parameters, expected_rows=expected_rows, timestamps=[valid_date]
    )
    if not records or records[0].lat is None:
        raise MeteomaticsParseError("Grid response has no lat/lon columns")

    lats = _unique_sorted([r.lat for r in records], descending=True)
    lons = _unique_sorted([r.lon for r in records], descending=False)
    _check_shape((len(lats), len(lons)), expected_shape)
    if len(records) != len(lats) * len(lons) * len(parameters):
        raise MeteomaticsParseError("Grid response does not cover every cell exactly once")

    values: Dict[str, List[List[Optional[float]]]] = {
        parameter: [[None] * len(lons) for _ in lats] for parameter in parameters
    }
    for record in records:
        i = _index_of(lats, record.lat)
        j = _index_of(lons, record.lon)
        values[record.parameter][i][j] = record.value
    return Grid(valid_date=valid_date, lats=lats, lons=lons, values=values)


# ─────────────────────────────────────────────────────────────────────────────
# Account Statistics
# ─────────────────────────────────────────────────────────────────────────────

def decode_user_stats(text: str) -> UserStats:
    try:
        return UserStatsResponse.model_validate(_load_json(text)).stats
    except ValidationError as exc:
        raise MeteomaticsParseError(f"Unexpected user statistics payload: {exc}") from exc


# ─────────────────────────────────────────────────────────────────────────────
# Tabular Output
# ─────────────────────────────────────────────────────────────────────────────

def records_to_dataframe(
    records: Sequence[ResponseRecord], parameters: Sequence[str]
) -> pd.DataFrame:
    """Pivot records to one row per (location, valid date), one column per parameter.

    Identity columns are ``lat, lon`` for points and ``station_id`` for
    postal codes; a mix of both kinds carries all three.
    """
    has_station = any(r.postal_code is not None for r in records)
    has_point = not records or any(r.postal_code is None for r in records)
    id_columns: List[str] = []
    if has_station:
        id_columns.append(STATION_COLUMN)
    if has_point:
        id_columns.extend(["lat", "lon"])
    id_columns.append(VALIDDATE_COLUMN)

    rows: Dict[Tuple[str, dt.datetime], Dict[str, Any]] = {}
    for record in records:
        key = (record.location_key, record.valid_date)
        row = rows.get(key)
        if row is None:
            row = {
                STATION_COLUMN: record.postal_code,
                "lat": record.lat,
                "lon": record.lon,
                VALIDDATE_COLUMN: record.valid_date,
            }
            rows[key] = row
        row[record.parameter] = record.value

    return pd.DataFrame(list(rows.values()), columns=[*id_columns, *parameters])


__all__ = [
    # Scalar helpers
    "parse_value",
    "parse_valid_date",
    "parse_coordinate",
    # Time series
    "decode_time_series_csv",
    "decode_time_series_json",
    "TIME_SERIES_DECODERS",
    "get_time_series_decoder",
    # Grids
    "decode_grid_csv",
    "decode_unpivoted_grid_csv",
    # Account statistics
    "decode_user_stats",
    # Tabular output
    "records_to_dataframe",
]
