#!/usr/bin/env python3
"""Command-line access to Meteomatics point, grid and file queries."""
from __future__ import annotations
import argparse
import datetime as dt
import logging
import sys
from typing import Dict, List, Optional

import pandas as pd
from pydantic import ValidationError

from meteomatics_connector.client import (
    BBox,
    ClientConfig,
    Credentials,
    MeteomaticsClient,
    MeteomaticsError,
    OutputFormat,
    Point,
    Resolution,
    TimeSeries,
    records_to_dataframe,
)
from meteomatics_connector.config import get_settings
from meteomatics_connector.utils.logging_config import configure_logging

LOGGER = logging.getLogger(__name__)


def _parse_datetime(value: Optional[str]) -> Optional[dt.datetime]:
    """Parse an ISO 8601 datetime; a trailing ``Z`` and naive values mean UTC."""
    if value is None:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"Invalid datetime '{value}'. Expected ISO 8601 format."
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _parse_point(value: str) -> Point:
    """Parse ``lat,lon``."""
    try:
        lat, lon = (float(part) for part in value.split(","))
        return Point(lat=lat, lon=lon)
    except (ValueError, ValidationError) as exc:
        raise argparse.ArgumentTypeError(f"Invalid point '{value}'. Expected LAT,LON") from exc


def _parse_bbox(value: str) -> BBox:
    """Parse ``lat_min,lon_min,lat_max,lon_max``."""
    try:
        lat_min, lon_min, lat_max, lon_max = (float(part) for part in value.split(","))
        return BBox(lat_min=lat_min, lon_min=lon_min, lat_max=lat_max, lon_max=lon_max)
    except (ValueError, ValidationError) as exc:
        raise argparse.ArgumentTypeError(
            f"Invalid bbox '{value}'. Expected LAT_MIN,LON_MIN,LAT_MAX,LON_MAX"
        ) from exc


def _parse_resolution(value: str) -> Resolution:
    """Parse ``res`` or ``lat_res,lon_res`` in degrees."""
    try:
        parts = [float(part) for part in value.split(",")]
        if len(parts) == 1:
            return Resolution.square(parts[0])
        lat_res, lon_res = parts
        return Resolution(lat_res=lat_res, lon_res=lon_res)
    except (ValueError, ValidationError) as exc:
        raise argparse.ArgumentTypeError(f"Invalid resolution '{value}'") from exc


def _parse_optional(value: str) -> tuple:
    """Parse a ``key=value`` query option."""
    key, sep, val = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Invalid option '{value}'. Expected KEY=VALUE")
    return key.strip(), val.strip()


def _split_parameters(value: str) -> List[str]:
    parameters = [p.strip() for p in value.split(",") if p.strip()]
    if not parameters:
        raise argparse.ArgumentTypeError("At least one parameter is required")
    return parameters


def _add_time_range(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=_parse_datetime, required=True, help="Start datetime ISO 8601")
    parser.add_argument("--end", type=_parse_datetime, help="End datetime ISO 8601 (omit for a single date)")
    parser.add_argument(
        "--interval-hours",
        type=float,
        default=1.0,
        help="Step between valid dates in hours (default: 1)",
    )


def _add_grid(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--bbox", type=_parse_bbox, required=True, help="LAT_MIN,LON_MIN,LAT_MAX,LON_MAX")
    parser.add_argument("--resolution", type=_parse_resolution, required=True, help="Degrees, or LAT_RES,LON_RES")


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser for the connector CLI."""
    parser = argparse.ArgumentParser(
        prog="meteomatics-connector",
        description="Query the Meteomatics weather API.",
    )
    parser.add_argument("--username", help="Override METEOMATICS_USER")
    parser.add_argument("--password", help="Override METEOMATICS_PW")
    parser.add_argument(
        "--option",
        dest="optionals",
        action="append",
        type=_parse_optional,
        default=[],
        help="Extra query option KEY=VALUE (repeatable), e.g. model=mix",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    point = commands.add_parser("point", help="Time series for points or postal codes")
    point.add_argument("--point", dest="points", action="append", type=_parse_point, default=[], help="LAT,LON (repeatable)")
    point.add_argument("--postal", dest="postals", action="append", default=[], help="Postal code, e.g. postal_CH9000 (repeatable)")
    point.add_argument("--parameters", type=_split_parameters, required=True, help="Comma-separated parameters")
    _add_time_range(point)
    point.add_argument("--format", choices=["csv", "json"], default="csv", help="Response format (default: csv)")
    point.add_argument("--output", help="Write the table to this CSV file instead of stdout")

    grid = commands.add_parser("grid", help="Grid at a single valid date")
    _add_grid(grid)
    grid.add_argument("--parameters", type=_split_parameters, required=True, help="Comma-separated parameters")
    grid.add_argument("--date", type=_parse_datetime, required=True, help="Valid date ISO 8601")
    grid.add_argument("--output", help="Write the table to this CSV file instead of stdout")

    netcdf = commands.add_parser("netcdf", help="Download a NetCDF file")
    _add_grid(netcdf)
    netcdf.add_argument("--parameter", required=True, help="Parameter name")
    _add_time_range(netcdf)
    netcdf.add_argument("--output", required=True, help="Target .nc file")

    png = commands.add_parser("png", help="Download a PNG rendering of a grid")
    _add_grid(png)
    png.add_argument("--parameter", required=True, help="Parameter name")
    png.add_argument("--date", type=_parse_datetime, required=True, help="Valid date ISO 8601")
    png.add_argument("--output", required=True, help="Target .png file")

    png_series = commands.add_parser("png-series", help="Download one PNG per valid date")
    _add_grid(png_series)
    png_series.add_argument("--parameter", required=True, help="Parameter name")
    _add_time_range(png_series)
    png_series.add_argument("--prefix", required=True, help="File prefix; files are PREFIX_YYYYmmdd_HHMMSS.png")

    commands.add_parser("user-stats", help="Show account limits and usage")
    return parser


def _time_series(args: argparse.Namespace) -> TimeSeries:
    if args.end is None:
        return TimeSeries.instant(args.start)
    return TimeSeries(
        start=args.start,
        end=args.end,
        interval=dt.timedelta(hours=args.interval_hours),
    )


def _build_client(args: argparse.Namespace) -> MeteomaticsClient:
    settings = get_settings()
    credentials = settings.credentials()
    if args.username or args.password:
        credentials = Credentials(
            username=args.username or settings.username or "",
            password=args.password or settings.password or "",
        )
    config: ClientConfig = settings.client_config()
    return MeteomaticsClient(credentials=credentials, config=config)


def _emit(frame: pd.DataFrame, output: Optional[str]) -> None:
    if output:
        frame.to_csv(output, index=False)
        LOGGER.info("Wrote %d rows to %s", len(frame), output)
    else:
        sys.stdout.write(frame.to_csv(index=False))


def _run_command(client: MeteomaticsClient, args: argparse.Namespace) -> None:
    optionals: Dict[str, str] = dict(args.optionals)

    if args.command == "point":
        locations = [*args.points, *args.postals]
        if not locations:
            raise MeteomaticsError("Provide at least one --point or --postal location")
        records = client.query_point(
            locations,
            args.parameters,
            _time_series(args),
            fmt=OutputFormat(args.format),
            optionals=optionals,
        )
        _emit(records_to_dataframe(records, args.parameters), args.output)
    elif args.command == "grid":
        grid = client.query_grid(args.bbox, args.resolution, args.parameters, args.date, optionals=optionals)
        _emit(grid.to_dataframe(), args.output)
    elif args.command == "netcdf":
        client.query_netcdf(
            args.bbox, args.resolution, args.parameter, _time_series(args), args.output, optionals=optionals
        )
    elif args.command == "png":
        client.query_grid_png(
            args.bbox, args.resolution, args.parameter, args.date, args.output, optionals=optionals
        )
    elif args.command == "png-series":
        written = client.query_grid_png_time_series(
            args.bbox, args.resolution, args.parameter, _time_series(args), args.prefix, optionals=optionals
        )
        LOGGER.info("Wrote %d PNG files with prefix %s", len(written), args.prefix)
    elif args.command == "user-stats":
        stats = client.query_user_stats()
        sys.stdout.write(stats.model_dump_json(indent=2, by_alias=True) + "\n")


def run_cli(argv: Optional[List[str]] = None) -> int:
    """Execute CLI with given arguments.

    Args:
        argv: Command-line arguments (uses sys.argv if None).

    Returns:
        Process exit code (0 on success, 1 on API or validation failure).
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        with _build_client(args) as client:
            _run_command(client, args)
    except MeteomaticsError as e:
        LOGGER.error("Command '%s' failed: %s", args.command, e)
        return 1
    except ValidationError as e:
        LOGGER.error("Invalid input for '%s': %s", args.command, e)
        return 1
    return 0


def main() -> None:  # pragma: no cover - CLI entrypoint
    """CLI entry point."""
    sys.exit(run_cli())


if __name__ == "__main__":  # pragma: no cover - CLI execution path
    main()
