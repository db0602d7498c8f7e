from __future__ import annotations
import datetime as dt
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, TypeVar, Union
import pandas as pd
import requests
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from .constants import (
    AUTH_STATUS_CODES,
    DEFAULT_MAX_WORKERS,
    RATE_LIMIT_STATUS_CODE,
    RETRYABLE_STATUS_CODES,
    USER_STATS_PATH,
)
from .models import (
    BBox,
    ClientConfig,
    Credentials,
    Grid,
    Location,
    MeteomaticsAPIError,
    MeteomaticsAuthError,
    MeteomaticsBadRequestError,
    MeteomaticsConfigError,
    MeteomaticsError,
    MeteomaticsNetworkError,
    MeteomaticsRateLimitError,
    MeteomaticsServerError,
    OutputFormat,
    Point,
    Resolution,
    ResponseRecord,
    TimeSeries,
    UserStats,
)
from .parsers import (
    decode_grid_csv,
    decode_unpivoted_grid_csv,
    decode_user_stats,
    get_time_series_decoder,
    records_to_dataframe,
)
from .rate_limiter import RateLimiter
from .urls import (
    bbox_segment,
    build_query_path,
    build_url,
    dates_segment,
    grid_shape,
    locations_segment,
    merge_optionals,
    time_segment,
)

LOGGER = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 64 * 1024
ERROR_DETAIL_MAX_CHARS = 500

T = TypeVar("T")

ParametersArg = Union[str, Sequence[str]]
LocationsArg = Union[Location, Sequence[Location]]
TimeArg = Union[dt.datetime, TimeSeries]
ResolutionArg = Union[float, Resolution]

# HTTP session protocol (requests.Session or a test double)
class HTTPSession(Protocol):
    def get(self, url: str, **kwargs: Any) -> requests.Response:
        ...

    def close(self) -> None:
        ...


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, MeteomaticsError) and exc.retryable


def _error_detail(response: requests.Response) -> Optional[str]:
    """Extract the server's error message from a JSON or text body."""
    try:
        body = response.json()
        if isinstance(body, dict):
            detail = body.get("message") or body.get("error") or body.get("reason")
            if detail:
                return str(detail)
    except ValueError:
        pass
    try:
        text = response.text
    except (requests.RequestException, UnicodeDecodeError):
        return None
    text = (text or "").strip()
    return text[:ERROR_DETAIL_MAX_CHARS] or None


def _error_from_response(response: requests.Response, url: str) -> MeteomaticsAPIError:
    """Map a non-2xx response onto the client's error taxonomy."""
    status = response.status_code
    detail = _error_detail(response)
    message = f"HTTP {status} for {url}"
    if detail:
        message = f"{message} (details: {detail})"

    if status in AUTH_STATUS_CODES:
        error_type = MeteomaticsAuthError
    elif status == RATE_LIMIT_STATUS_CODE:
        error_type = MeteomaticsRateLimitError
    elif status in RETRYABLE_STATUS_CODES or status >= 500:
        error_type = MeteomaticsServerError
    elif 400 <= status < 500:
        error_type = MeteomaticsBadRequestError
    else:
        error_type = MeteomaticsAPIError
    return error_type(message, status_code=status, detail=detail, response=response)


# Normalization of caller arguments
def _as_parameters(parameters: ParametersArg) -> List[str]:
    if isinstance(parameters, str):
        parameters = [parameters]
    cleaned = [p.strip() for p in parameters if p and p.strip()]
    if not cleaned:
        raise MeteomaticsConfigError("At least one parameter is required")
    return cleaned


def _as_locations(coords: LocationsArg) -> List[Location]:
    if isinstance(coords, (Point, str)):
        return [coords]
    if isinstance(coords, tuple) and len(coords) == 2 and all(isinstance(c, (int, float)) for c in coords):
        return [Point(lat=coords[0], lon=coords[1])]
    locations: List[Location] = []
    for item in coords:
        if isinstance(item, (Point, str)):
            locations.append(item)
        elif isinstance(item, (tuple, list)) and len(item) == 2:
            locations.append(Point(lat=item[0], lon=item[1]))
        else:
            raise MeteomaticsConfigError(f"Unsupported location {item!r}")
    if not locations:
        raise MeteomaticsConfigError("At least one location is required")
    return locations


def _as_time_series(value: TimeArg) -> TimeSeries:
    if isinstance(value, TimeSeries):
        return value
    if isinstance(value, dt.datetime):
        return TimeSeries.instant(value)
    raise MeteomaticsConfigError(f"Unsupported time specification {value!r}")


def _as_instant(value: TimeArg) -> dt.datetime:
    series = _as_time_series(value)
    if not series.is_instant:
        raise MeteomaticsConfigError("Grid queries take a single valid date, not a range")
    return series.start


def _as_resolution(value: ResolutionArg) -> Resolution:
    if isinstance(value, Resolution):
        return value
    try:
        return Resolution.square(float(value))
    except (TypeError, ValueError) as exc:
        raise MeteomaticsConfigError(f"Invalid grid resolution {value!r}") from exc


# Main client class for interacting with the Meteomatics API
class MeteomaticsClient:
    """Authenticated client for Meteomatics point, grid and file queries.

    Credentials and configuration default to the environment
    (``METEOMATICS_USER`` / ``METEOMATICS_PW``) when not passed explicitly.
    The client owns a ``requests.Session`` connection pool, shared safely
    across threads by ``query_many``; use it as a context manager or call
    ``close()`` when done.

    Example:
        >>> with MeteomaticsClient(Credentials(username="user", password="pw")) as client:
        ...     records = client.query_point(Point(lat=47.0, lon=9.0), "t_2m:C", when)
    """

    def __init__(
        self,
        credentials: Optional[Credentials] = None,
        config: Optional[ClientConfig] = None,
        session: Optional[HTTPSession] = None,
        limiter: Optional[RateLimiter] = None,
    ) -> None:
        if credentials is None or config is None:
            from meteomatics_connector.config import get_settings

            settings = get_settings()
            credentials = credentials or settings.credentials()
            config = config or settings.client_config()
        if credentials is None:
            raise MeteomaticsConfigError(
                "Missing credentials. Pass Credentials or set METEOMATICS_USER and METEOMATICS_PW."
            )
        self._credentials = credentials
        self._config = config
        # HTTP session - track if we own it for cleanup
        self._owns_session = session is None
        self._session: HTTPSession = session or requests.Session()
        self._limiter = limiter or RateLimiter(config.requests_per_minute, config.max_parallel)

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def __enter__(self) -> "MeteomaticsClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"MeteomaticsClient(username={self._credentials.username!r}, base_url={self._config.base_url!r})"

    @property
    def username(self) -> str:
        return self._credentials.username

    @property
    def config(self) -> ClientConfig:
        return self._config

    # Create retry decorator
    def _create_retry_decorator(self) -> Callable:
        return retry(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_exponential(
                multiplier=1,
                min=self._config.retry_min_wait,
                max=self._config.retry_max_wait,
            ),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )

    def _send(
        self, url: str, params: Optional[Mapping[str, str]], *, stream: bool = False
    ) -> requests.Response:
        """Issue one GET and raise the mapped error for non-2xx responses."""
        timeout = self._config.timeout
        with self._limiter.slot():
            try:
                response = self._session.get(
                    url,
                    params=params,
                    auth=self._credentials.as_auth(),
                    timeout=timeout,
                    stream=stream,
                )
            except requests.exceptions.Timeout as exc:
                raise MeteomaticsNetworkError(
                    f"Request timed out after {timeout} seconds: {url}"
                ) from exc
            except requests.exceptions.ConnectionError as exc:
                raise MeteomaticsNetworkError(f"Failed to connect to {url}: {exc}") from exc
            except requests.RequestException as exc:
                raise MeteomaticsNetworkError(f"Request to {url} failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                raise _error_from_response(response, url)
            finally:
                response.close()
        return response

    def _fetch_text(self, path: str, params: Optional[Mapping[str, str]] = None) -> str:
        url = build_url(self._config.base_url, path)

        @self._create_retry_decorator()
        def _do_request() -> str:
            LOGGER.debug("GET %s params=%s", url, params)
            response = self._send(url, params)
            try:
                return response.text
            except requests.RequestException as exc:
                raise MeteomaticsNetworkError(f"Failed reading response from {url}: {exc}") from exc
            finally:
                response.close()

        return _do_request()

    def _download(
        self, path: str, target: Union[str, Path], params: Optional[Mapping[str, str]] = None
    ) -> Path:
        """Stream a response body to ``target``; partial files are removed."""
        url = build_url(self._config.base_url, path)
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(f"{target.name}.part")

        @self._create_retry_decorator()
        def _do_download() -> Path:
            LOGGER.debug("GET %s -> %s", url, target)
            response = self._send(url, params, stream=True)
            try:
                try:
                    with partial.open("wb") as handle:
                        for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                            if chunk:
                                handle.write(chunk)
                except requests.RequestException as exc:
                    raise MeteomaticsNetworkError(f"Download from {url} interrupted: {exc}") from exc
                partial.replace(target)
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
            finally:
                response.close()
            return target

        path_out = _do_download()
        LOGGER.info("Saved %s", path_out)
        return path_out

    # ─────────────────────────────────────────────────────────────────────
    # Point queries
    # ─────────────────────────────────────────────────────────────────────

    def query_point(
        self,
        coords: LocationsArg,
        parameters: ParametersArg,
        time_range: TimeArg,
        *,
        fmt: OutputFormat = OutputFormat.CSV,
        optionals: Optional[Mapping[str, str]] = None,
    ) -> List[ResponseRecord]:
        """
        Query a time series for one or more points or postal codes.

        Args:
            coords: A Point, ``(lat, lon)`` tuple, postal code, or a sequence of them.
            parameters: Parameter name(s), e.g. ``"t_2m:C"``.
            time_range: A valid date or a TimeSeries range.
            fmt: Response format to request and decode (CSV or JSON).
            optionals: Extra query-string options such as ``{"model": "mix"}``.

        Returns:
            One record per (location, parameter, valid date) requested.

        Raises:
            MeteomaticsAuthError: Credentials rejected.
            MeteomaticsBadRequestError: Query rejected by the API.
            MeteomaticsNetworkError: Transport failure after all retries.
            MeteomaticsParseError: Body does not match the query.
        """
        if fmt.is_file:
            raise MeteomaticsConfigError(f"Format '{fmt.value}' is a file download, not a time series")
        locations = _as_locations(coords)
        params_list = _as_parameters(parameters)
        series = _as_time_series(time_range)
        path = build_query_path(time_segment(series), params_list, locations_segment(locations), fmt)

        text = self._fetch_text(path, merge_optionals(optionals))
        timestamps = series.timestamps()
        records = get_time_series_decoder(fmt)(
            text,
            params_list,
            locations=locations,
            expected_rows=len(locations) * len(timestamps),
            timestamps=timestamps,
        )
        LOGGER.debug("Decoded %d records for %d location(s)", len(records), len(locations))
        return records

    def query_point_dataframe(
        self,
        coords: LocationsArg,
        parameters: ParametersArg,
        time_range: TimeArg,
        *,
        fmt: OutputFormat = OutputFormat.CSV,
        optionals: Optional[Mapping[str, str]] = None,
    ) -> pd.DataFrame:
        """Like ``query_point`` but pivoted to ``lat, lon, validdate, <parameters>``."""
        params_list = _as_parameters(parameters)
        records = self.query_point(coords, params_list, time_range, fmt=fmt, optionals=optionals)
        return records_to_dataframe(records, params_list)

    def query_route(
        self,
        points: Sequence[Location],
        dates: Sequence[dt.datetime],
        parameters: ParametersArg,
        *,
        optionals: Optional[Mapping[str, str]] = None,
    ) -> List[ResponseRecord]:
        """Query values along a route: the i-th point at the i-th date."""
        locations = _as_locations(points)
        if len(locations) != len(dates):
            raise MeteomaticsConfigError(
                f"Route needs one date per point ({len(locations)} points, {len(dates)} dates)"
            )
        params_list = _as_parameters(parameters)
        stamps = [TimeSeries.instant(value).start for value in dates]
        path = build_query_path(
            dates_segment(stamps), params_list, locations_segment(locations), OutputFormat.CSV
        )
        text = self._fetch_text(path, merge_optionals(optionals, route="true"))
        return get_time_series_decoder(OutputFormat.CSV)(
            text,
            params_list,
            locations=locations,
            expected_rows=len(locations),
            timestamps=stamps,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Grid queries
    # ─────────────────────────────────────────────────────────────────────

    def query_grid(
        self,
        bbox: BBox,
        resolution: ResolutionArg,
        parameters: ParametersArg,
        time_instant: TimeArg,
        *,
        optionals: Optional[Mapping[str, str]] = None,
    ) -> Grid:
        """
        Query a 2-D grid of values at a single valid date.

        A single parameter is served as a pivoted ``data;lon...`` table, several
        parameters as ``lat;lon;validdate;...`` rows; both decode into a Grid
        whose shape is checked against the box and resolution.

        Args:
            bbox: Area of interest.
            resolution: Grid spacing in degrees, or a Resolution.
            parameters: Parameter name(s).
            time_instant: The valid date.
            optionals: Extra query-string options.

        Returns:
            Grid with one value matrix per parameter.
        """
        res = _as_resolution(resolution)
        params_list = _as_parameters(parameters)
        valid_date = _as_instant(time_instant)
        shape = grid_shape(bbox, res)
        path = build_query_path(
            time_segment(TimeSeries.instant(valid_date)),
            params_list,
            bbox_segment(bbox, res),
            OutputFormat.CSV,
        )

        text = self._fetch_text(path, merge_optionals(optionals))
        if len(params_list) == 1:
            grid = decode_grid_csv(text, params_list[0], valid_date, expected_shape=shape)
        else:
            grid = decode_unpivoted_grid_csv(text, params_list, valid_date, expected_shape=shape)
        LOGGER.debug("Decoded %dx%d grid for %s", grid.shape[0], grid.shape[1], ",".join(params_list))
        return grid

    def query_grid_time_series(
        self,
        bbox: BBox,
        resolution: ResolutionArg,
        parameters: ParametersArg,
        time_range: TimeArg,
        *,
        optionals: Optional[Mapping[str, str]] = None,
    ) -> List[ResponseRecord]:
        """Query every grid cell over a time range as flat records."""
        res = _as_resolution(resolution)
        params_list = _as_parameters(parameters)
        series = _as_time_series(time_range)
        n_lat, n_lon = grid_shape(bbox, res)
        path = build_query_path(
            time_segment(series), params_list, bbox_segment(bbox, res), OutputFormat.CSV
        )

        text = self._fetch_text(path, merge_optionals(optionals))
        timestamps = series.timestamps()
        return get_time_series_decoder(OutputFormat.CSV)(
            text,
            params_list,
            expected_rows=n_lat * n_lon * len(timestamps),
            timestamps=timestamps,
        )

    # ─────────────────────────────────────────────────────────────────────
    # File downloads
    # ─────────────────────────────────────────────────────────────────────

    def query_netcdf(
        self,
        bbox: BBox,
        resolution: ResolutionArg,
        parameter: str,
        time_range: TimeArg,
        path: Union[str, Path],
        *,
        optionals: Optional[Mapping[str, str]] = None,
    ) -> Path:
        """Download a NetCDF file for one parameter over a grid and time range."""
        query = build_query_path(
            time_segment(_as_time_series(time_range)),
            _as_parameters(parameter),
            bbox_segment(bbox, _as_resolution(resolution)),
            OutputFormat.NETCDF,
        )
        return self._download(query, path, merge_optionals(optionals))

    def query_grid_png(
        self,
        bbox: BBox,
        resolution: ResolutionArg,
        parameter: str,
        time_instant: TimeArg,
        path: Union[str, Path],
        *,
        optionals: Optional[Mapping[str, str]] = None,
    ) -> Path:
        """Download a rendered PNG of one parameter over a grid."""
        query = build_query_path(
            time_segment(TimeSeries.instant(_as_instant(time_instant))),
            _as_parameters(parameter),
            bbox_segment(bbox, _as_resolution(resolution)),
            OutputFormat.PNG,
        )
        return self._download(query, path, merge_optionals(optionals))

    def query_grid_png_time_series(
        self,
        bbox: BBox,
        resolution: ResolutionArg,
        parameter: str,
        time_range: TimeArg,
        prefix: Union[str, Path],
        *,
        optionals: Optional[Mapping[str, str]] = None,
    ) -> List[Path]:
        """
        Download one PNG per valid date in ``time_range``.

        Files are named ``{prefix}_{YYYYmmdd_HHMMSS}.png``, e.g.
        ``maps/t_2m_20230101_000000.png`` for ``prefix="maps/t_2m"``.

        Returns:
            Written paths in valid-date order.
        """
        written: List[Path] = []
        for stamp in _as_time_series(time_range).timestamps():
            target = Path(f"{prefix}_{stamp:%Y%m%d_%H%M%S}.png")
            written.append(
                self.query_grid_png(bbox, resolution, parameter, stamp, target, optionals=optionals)
            )
        return written

    # ─────────────────────────────────────────────────────────────────────
    # Account
    # ─────────────────────────────────────────────────────────────────────

    def query_user_stats(self) -> UserStats:
        """Return request counters and feature availability for the account."""
        return decode_user_stats(self._fetch_text(USER_STATS_PATH))

    # ─────────────────────────────────────────────────────────────────────
    # Concurrency
    # ─────────────────────────────────────────────────────────────────────

    def query_many(
        self,
        calls: Iterable[Callable[[], T]],
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        timeout: Optional[float] = None,
    ) -> List[T]:
        """
        Run independent queries concurrently on a thread pool.

        Each call typically wraps one query on this client, e.g.
        ``lambda: client.query_grid(...)``. All calls share the client's
        connection pool and rate limiter.

        Args:
            calls: Zero-argument callables.
            max_workers: Maximum concurrent requests.
            timeout: Seconds to wait for all results; None waits indefinitely.

        Returns:
            Results in the same order as ``calls``.

        Raises:
            MeteomaticsNetworkError: If ``timeout`` elapses first.
            The first exception raised by any call otherwise. Either way the
            caller is not held up by requests still in flight: calls not yet
            started are cancelled and running ones are abandoned, their
            results discarded.
        """
        tasks = list(calls)
        if not tasks:
            return []
        results: List[Any] = [None] * len(tasks)
        workers = max(1, min(max_workers, len(tasks)))

        executor = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = {executor.submit(task): idx for idx, task in enumerate(tasks)}
            for future in as_completed(futures, timeout=timeout):
                results[futures[future]] = future.result()
        except FuturesTimeoutError as exc:
            executor.shutdown(wait=False, cancel_futures=True)
            raise MeteomaticsNetworkError(
                f"{len(tasks)} queries did not complete within {timeout} seconds"
            ) from exc
        except BaseException:
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)
        return results


__all__ = [
    # Main client class
    "MeteomaticsClient",
    # HTTP session protocol
    "HTTPSession",
    # Constants
    "DOWNLOAD_CHUNK_BYTES",
]
