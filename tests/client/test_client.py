"""Tests for the Meteomatics API client."""

from __future__ import annotations

import datetime as dt
import json
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import requests

from meteomatics_connector.client import (
    BBox,
    ClientConfig,
    Credentials,
    MeteomaticsAuthError,
    MeteomaticsBadRequestError,
    MeteomaticsClient,
    MeteomaticsConfigError,
    MeteomaticsNetworkError,
    MeteomaticsParseError,
    MeteomaticsRateLimitError,
    MeteomaticsServerError,
    OutputFormat,
    Point,
    RateLimiter,
    TimeSeries,
)

def make_response(status: int = 200, body: Union[str, bytes] = "") -> requests.Response:
    """Build a fully-read ``requests.Response`` with the given status and body."""
    response = requests.Response()
    response.status_code = status
    response._content = body.encode("utf-8") if isinstance(body, str) else body
    response._content_consumed = True
    response.encoding = "utf-8"
    response.url = "https://api.meteomatics.com/test"
    return response


ResponseItem = Union[requests.Response, Exception]


class FakeSession:
    """Stands in for ``requests.Session`` and records every GET.

    Responses are served in order with the last one repeating, or produced by
    ``handler(url, **kwargs)``. Exception items are raised.
    """

    def __init__(
        self,
        responses: Optional[List[ResponseItem]] = None,
        handler: Optional[Callable[..., ResponseItem]] = None,
    ):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []
        self.closed = False
        self._lock = threading.Lock()

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        with self._lock:
            self.calls.append({"url": url, **kwargs})
            item = None
            if self.handler is None:
                if not self.responses:
                    raise AssertionError(f"Unexpected request to {url}")
                item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if self.handler is not None:
            item = self.handler(url, **kwargs)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


UTC = dt.timezone.utc
JAN_1 = dt.datetime(2023, 1, 1, tzinfo=UTC)
BASE = "https://api.meteomatics.com"
BOX = BBox(lat_min=47.0, lat_max=48.0, lon_min=9.0, lon_max=10.0)

GRID_3X3 = (
    "validdate: 2023-01-01T00:00:00Z\n"
    "parameter: t_2m:C\n"
    "data;9;9.5;10\n"
    "48;1;2;3\n"
    "47.5;4;5;6\n"
    "47;7;8;9\n"
)


@pytest.fixture
def make_client(credentials, fast_config):
    def _make(*responses, handler=None, config=None):
        session = FakeSession(list(responses), handler=handler)
        client = MeteomaticsClient(credentials, config or fast_config, session=session)
        return client, session

    return _make


class TestClientInit:
    """Tests for client construction."""

    def test_explicit_credentials(self, credentials, fast_config):
        client = MeteomaticsClient(credentials, fast_config, session=FakeSession())
        assert client.username == "test_user"
        assert client.config is fast_config
        assert "test_password" not in repr(client)

    def test_credentials_from_environment(self, clean_env, monkeypatch):
        monkeypatch.setenv("METEOMATICS_USER", "env_user")
        monkeypatch.setenv("METEOMATICS_PW", "env_pw")
        monkeypatch.setenv("METEOMATICS_TIMEOUT", "42")

        client = MeteomaticsClient(session=FakeSession())

        assert client.username == "env_user"
        assert client.config.timeout == 42

    def test_missing_credentials_raise(self, clean_env):
        with pytest.raises(MeteomaticsConfigError, match="Missing credentials"):
            MeteomaticsClient(session=FakeSession())

    def test_injected_session_not_closed(self, credentials, fast_config):
        session = FakeSession()
        with MeteomaticsClient(credentials, fast_config, session=session):
            pass
        assert session.closed is False

    def test_owned_session_closed(self, credentials, fast_config, monkeypatch):
        closed = []
        monkeypatch.setattr(requests.Session, "close", lambda self: closed.append(True))
        with MeteomaticsClient(credentials, fast_config):
            pass
        assert closed == [True]


class TestQueryPoint:
    """Tests for point time series queries."""

    def test_single_value(self, make_client):
        client, session = make_client(make_response(200, "2023-01-01T00:00:00Z,3.5"))

        records = client.query_point(Point(lat=47.0, lon=9.0), "t_2m:C", JAN_1)

        assert len(records) == 1
        assert records[0].value == 3.5
        assert records[0].lat == 47.0
        assert records[0].valid_date == JAN_1

        call = session.calls[0]
        assert call["url"] == f"{BASE}/2023-01-01T00:00:00Z/t_2m:C/47,9/csv"
        assert call["auth"] == ("test_user", "test_password_TESTONLY")
        assert call["timeout"] == 10
        assert call["params"] is None

    def test_time_range_and_optionals(self, make_client):
        body = (
            "validdate;t_2m:C\n"
            "2023-01-01T00:00:00Z;1\n"
            "2023-01-01T01:00:00Z;2\n"
            "2023-01-01T02:00:00Z;3\n"
        )
        client, session = make_client(make_response(200, body))
        series = TimeSeries(start=JAN_1, end=JAN_1 + dt.timedelta(hours=2), interval=dt.timedelta(hours=1))

        records = client.query_point((47.0, 9.0), ["t_2m:C"], series, optionals={"model": "mix"})

        assert [r.value for r in records] == [1.0, 2.0, 3.0]
        assert session.calls[0]["url"] == (
            f"{BASE}/2023-01-01T00:00:00Z--2023-01-01T02:00:00Z:PT3600S/t_2m:C/47,9/csv"
        )
        assert session.calls[0]["params"] == {"model": "mix"}

    def test_several_points(self, make_client):
        body = (
            "lat;lon;validdate;t_2m:C\n"
            "47;9;2023-01-01T00:00:00Z;1\n"
            "46;8;2023-01-01T00:00:00Z;2\n"
        )
        client, session = make_client(make_response(200, body))

        records = client.query_point([Point(lat=47, lon=9), (46, 8)], "t_2m:C", JAN_1)

        assert [(r.lat, r.value) for r in records] == [(47.0, 1.0), (46.0, 2.0)]
        assert "/47,9+46,8/csv" in session.calls[0]["url"]

    def test_json_format(self, make_client):
        body = json.dumps(
            {
                "data": [
                    {
                        "parameter": "t_2m:C",
                        "coordinates": [
                            {"lat": 47, "lon": 9, "dates": [{"date": "2023-01-01T00:00:00Z", "value": 3.5}]}
                        ],
                    }
                ]
            }
        )
        client, session = make_client(make_response(200, body))

        records = client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1, fmt=OutputFormat.JSON)

        assert records[0].value == 3.5
        assert session.calls[0]["url"].endswith("/json")

    def test_file_format_rejected(self, make_client):
        client, session = make_client()
        with pytest.raises(MeteomaticsConfigError, match="file download"):
            client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1, fmt=OutputFormat.NETCDF)
        assert session.calls == []

    def test_missing_column_is_parse_error(self, make_client):
        body = "validdate;t_2m:C\n2023-01-01T00:00:00Z;1\n"
        client, session = make_client(make_response(200, body))

        with pytest.raises(MeteomaticsParseError):
            client.query_point(Point(lat=47, lon=9), ["t_2m:C", "precip_1h:mm"], JAN_1)
        assert len(session.calls) == 1

    def test_wrong_row_count_is_parse_error(self, make_client):
        body = "validdate;t_2m:C\n2023-01-01T00:00:00Z;1\n"
        client, _ = make_client(make_response(200, body))
        series = TimeSeries(start=JAN_1, end=JAN_1 + dt.timedelta(hours=1), interval=dt.timedelta(hours=1))

        with pytest.raises(MeteomaticsParseError, match="Expected 2 rows"):
            client.query_point(Point(lat=47, lon=9), "t_2m:C", series)

    def test_dataframe(self, make_client):
        body = "validdate;t_2m:C;precip_1h:mm\n2023-01-01T00:00:00Z;1.5;0.2\n"
        client, _ = make_client(make_response(200, body))

        frame = client.query_point_dataframe(Point(lat=47, lon=9), ["t_2m:C", "precip_1h:mm"], JAN_1)

        assert list(frame.columns) == ["lat", "lon", "validdate", "t_2m:C", "precip_1h:mm"]
        assert frame.iloc[0]["precip_1h:mm"] == 0.2

    def test_dataframe_accepts_parameter_generator(self, make_client):
        body = "validdate;t_2m:C;precip_1h:mm\n2023-01-01T00:00:00Z;1.5;0.2\n"
        client, _ = make_client(make_response(200, body))

        frame = client.query_point_dataframe(
            Point(lat=47, lon=9), (p for p in ["t_2m:C", "precip_1h:mm"]), JAN_1
        )

        assert list(frame.columns) == ["lat", "lon", "validdate", "t_2m:C", "precip_1h:mm"]
        assert frame.iloc[0]["t_2m:C"] == 1.5

    def test_route(self, make_client):
        body = (
            "lat;lon;validdate;t_2m:C\n"
            "47;9;2023-01-01T00:00:00Z;1\n"
            "47.5;9.5;2023-01-01T01:00:00Z;2\n"
        )
        client, session = make_client(make_response(200, body))
        points = [Point(lat=47, lon=9), Point(lat=47.5, lon=9.5)]
        dates = [JAN_1, JAN_1 + dt.timedelta(hours=1)]

        records = client.query_route(points, dates, "t_2m:C")

        assert [r.value for r in records] == [1.0, 2.0]
        assert session.calls[0]["url"] == (
            f"{BASE}/2023-01-01T00:00:00Z,2023-01-01T01:00:00Z/t_2m:C/47,9+47.5,9.5/csv"
        )
        assert session.calls[0]["params"] == {"route": "true"}

    def test_route_length_mismatch(self, make_client):
        client, _ = make_client()
        with pytest.raises(MeteomaticsConfigError, match="one date per point"):
            client.query_route([Point(lat=47, lon=9)], [JAN_1, JAN_1], "t_2m:C")


class TestErrorHandling:
    """Tests for HTTP error mapping and retries."""

    def test_unauthorized_is_auth_error(self, make_client):
        client, session = make_client(make_response(401, "Unauthorized"))

        with pytest.raises(MeteomaticsAuthError) as exc_info:
            client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1)

        assert exc_info.value.status_code == 401
        assert len(session.calls) == 1

    def test_forbidden_is_auth_error(self, make_client):
        client, _ = make_client(make_response(403, ""))
        with pytest.raises(MeteomaticsAuthError):
            client.query_user_stats()

    def test_bad_request_carries_detail(self, make_client):
        client, session = make_client(make_response(400, "Error: Parameter 'foo' unknown"))

        with pytest.raises(MeteomaticsBadRequestError) as exc_info:
            client.query_point(Point(lat=47, lon=9), "foo", JAN_1)

        assert exc_info.value.status_code == 400
        assert "Parameter 'foo' unknown" in exc_info.value.detail
        assert "details:" in str(exc_info.value)
        assert len(session.calls) == 1

    def test_json_error_message_extracted(self, make_client):
        body = json.dumps({"status": "error", "message": "bad coordinates"})
        client, _ = make_client(make_response(404, body))

        with pytest.raises(MeteomaticsBadRequestError) as exc_info:
            client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1)

        assert exc_info.value.detail == "bad coordinates"

    def test_server_error_retried_then_succeeds(self, make_client):
        client, session = make_client(
            make_response(503, "Service Unavailable"),
            make_response(502, ""),
            make_response(200, "2023-01-01T00:00:00Z,3.5"),
        )

        records = client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1)

        assert records[0].value == 3.5
        assert len(session.calls) == 3

    def test_server_error_exhausts_retries(self, make_client):
        client, session = make_client(make_response(500, "Internal Server Error"))

        with pytest.raises(MeteomaticsServerError):
            client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1)

        assert len(session.calls) == 3

    def test_rate_limit_is_distinct_and_retried(self, make_client):
        client, session = make_client(make_response(429, "Too Many Requests"))

        with pytest.raises(MeteomaticsRateLimitError) as exc_info:
            client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1)

        assert exc_info.value.status_code == 429
        assert len(session.calls) == 3

    def test_timeout_becomes_network_error(self, make_client):
        client, session = make_client(requests.exceptions.Timeout("read timed out"))

        with pytest.raises(MeteomaticsNetworkError, match="timed out"):
            client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1)

        assert len(session.calls) == 3

    def test_connection_error_retried(self, make_client):
        client, session = make_client(
            requests.exceptions.ConnectionError("connection reset"),
            make_response(200, "2023-01-01T00:00:00Z,3.5"),
        )

        records = client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1)

        assert records[0].value == 3.5
        assert len(session.calls) == 2

    def test_single_attempt_config(self, make_client):
        config = ClientConfig(max_retries=1, retry_min_wait=0, retry_max_wait=0)
        client, session = make_client(make_response(503, ""), config=config)

        with pytest.raises(MeteomaticsServerError):
            client.query_user_stats()

        assert len(session.calls) == 1


class TestQueryGrid:
    """Tests for grid queries."""

    def test_three_by_three(self, make_client):
        client, session = make_client(make_response(200, GRID_3X3))

        grid = client.query_grid(BOX, 0.5, "t_2m:C", JAN_1)

        assert grid.shape == (3, 3)
        assert grid.get("t_2m:C")[1][1] == 5.0
        assert session.calls[0]["url"] == f"{BASE}/2023-01-01T00:00:00Z/t_2m:C/48,9_47,10:0.5,0.5/csv"

    def test_shape_mismatch_is_parse_error(self, make_client):
        client, _ = make_client(make_response(200, GRID_3X3))
        with pytest.raises(MeteomaticsParseError, match="does not match expected"):
            client.query_grid(BOX, 0.25, "t_2m:C", JAN_1)

    def test_several_parameters(self, make_client):
        body = "lat;lon;validdate;t_2m:C;precip_1h:mm\n"
        for lat in (48, 47.5, 47):
            for lon in (9, 9.5, 10):
                body += f"{lat};{lon};2023-01-01T00:00:00Z;{lat};{lon}\n"
        client, _ = make_client(make_response(200, body))

        grid = client.query_grid(BOX, 0.5, ["t_2m:C", "precip_1h:mm"], JAN_1)

        assert grid.shape == (3, 3)
        assert grid.get("t_2m:C")[2] == [47.0, 47.0, 47.0]
        assert grid.get("precip_1h:mm")[0] == [9.0, 9.5, 10.0]

    def test_range_rejected(self, make_client):
        client, session = make_client()
        series = TimeSeries(start=JAN_1, end=JAN_1 + dt.timedelta(hours=1), interval=dt.timedelta(hours=1))
        with pytest.raises(MeteomaticsConfigError, match="single valid date"):
            client.query_grid(BOX, 0.5, "t_2m:C", series)
        assert session.calls == []

    def test_non_positive_resolution_rejected(self, make_client):
        client, session = make_client()
        with pytest.raises(MeteomaticsConfigError, match="Invalid grid resolution"):
            client.query_grid(BOX, 0, "t_2m:C", JAN_1)
        assert session.calls == []

    def test_empty_parameters_rejected(self, make_client):
        client, _ = make_client()
        with pytest.raises(MeteomaticsConfigError, match="At least one parameter"):
            client.query_grid(BOX, 0.5, [], JAN_1)

    def test_grid_time_series(self, make_client):
        body = "lat;lon;validdate;t_2m:C\n"
        for hour in (0, 1):
            for lat in (48, 47):
                for lon in (9, 10):
                    body += f"{lat};{lon};2023-01-01T0{hour}:00:00Z;{hour}\n"
        client, session = make_client(make_response(200, body))
        series = TimeSeries(start=JAN_1, end=JAN_1 + dt.timedelta(hours=1), interval=dt.timedelta(hours=1))

        records = client.query_grid_time_series(BOX, 1.0, "t_2m:C", series)

        assert len(records) == 8
        assert "/48,9_47,10:1,1/csv" in session.calls[0]["url"]


class TestDownloads:
    """Tests for NetCDF and PNG downloads."""

    def test_netcdf_written(self, make_client, tmp_path):
        payload = b"CDF\x01" + b"\x00" * 200_000
        client, session = make_client(make_response(200, payload))
        target = tmp_path / "out" / "t_2m.nc"
        series = TimeSeries(start=JAN_1, end=JAN_1 + dt.timedelta(days=1), interval=dt.timedelta(hours=1))

        result = client.query_netcdf(BOX, 0.5, "t_2m:C", series, target)

        assert result == target
        assert target.read_bytes() == payload
        assert not Path(f"{target}.part").exists()
        assert session.calls[0]["stream"] is True
        assert session.calls[0]["url"].endswith("/t_2m:C/48,9_47,10:0.5,0.5/netcdf")

    def test_png_written(self, make_client, tmp_path):
        client, session = make_client(make_response(200, b"\x89PNG\r\n"))
        target = tmp_path / "t_2m.png"

        client.query_grid_png(BOX, 0.5, "t_2m:C", JAN_1, str(target))

        assert target.read_bytes() == b"\x89PNG\r\n"
        assert session.calls[0]["url"] == f"{BASE}/2023-01-01T00:00:00Z/t_2m:C/48,9_47,10:0.5,0.5/png"

    def test_png_time_series_one_file_per_date(self, make_client, tmp_path):
        client, session = make_client(make_response(200, b"\x89PNG\r\n"))
        series = TimeSeries(start=JAN_1, end=JAN_1 + dt.timedelta(hours=2), interval=dt.timedelta(hours=1))

        written = client.query_grid_png_time_series(BOX, 0.5, "t_2m:C", series, tmp_path / "t_2m")

        assert [path.name for path in written] == [
            "t_2m_20230101_000000.png",
            "t_2m_20230101_010000.png",
            "t_2m_20230101_020000.png",
        ]
        assert all(path.read_bytes() == b"\x89PNG\r\n" for path in written)
        assert [call["url"] for call in session.calls] == [
            f"{BASE}/2023-01-01T0{hour}:00:00Z/t_2m:C/48,9_47,10:0.5,0.5/png" for hour in range(3)
        ]

    def test_failed_download_leaves_no_file(self, make_client, tmp_path, monkeypatch):
        client, _ = make_client(make_response(200, b"partial"))

        def broken(self, chunk_size=1):
            yield b"part"
            raise requests.exceptions.ChunkedEncodingError("connection broken")

        monkeypatch.setattr(requests.Response, "iter_content", broken)
        target = tmp_path / "t_2m.nc"

        with pytest.raises(MeteomaticsNetworkError, match="interrupted"):
            client.query_netcdf(BOX, 0.5, "t_2m:C", JAN_1, target)

        assert not target.exists()
        assert list(tmp_path.iterdir()) == []

    def test_auth_error_on_download(self, make_client, tmp_path):
        client, _ = make_client(make_response(401, ""))
        with pytest.raises(MeteomaticsAuthError):
            client.query_grid_png(BOX, 0.5, "t_2m:C", JAN_1, tmp_path / "x.png")
        assert not (tmp_path / "x.png").exists()


class TestUserStats:
    """Tests for the account statistics endpoint."""

    def test_user_stats(self, make_client):
        body = json.dumps(
            {"message": "OK", "user statistics": {"username": "test_user", "area request option": True}}
        )
        client, session = make_client(make_response(200, body))

        stats = client.query_user_stats()

        assert stats.username == "test_user"
        assert stats.area_option is True
        assert session.calls[0]["url"] == f"{BASE}/user_stats_json"


class TestQueryMany:
    """Tests for concurrent queries on a shared client."""

    @staticmethod
    def _handler(url, **kwargs):
        # Value encodes the requested latitude
        lat = url.split("/")[-2].split(",")[0]
        return make_response(200, f"2023-01-01T00:00:00Z,{lat}")

    def test_results_in_call_order(self, make_client):
        client, session = make_client(handler=self._handler)
        lats = [40, 41, 42, 43, 44, 45]

        results = client.query_many(
            [lambda lat=lat: client.query_point(Point(lat=lat, lon=9), "t_2m:C", JAN_1) for lat in lats],
            max_workers=3,
        )

        assert [records[0].value for records in results] == [float(lat) for lat in lats]
        assert len(session.calls) == len(lats)

    def test_empty(self, make_client):
        client, _ = make_client()
        assert client.query_many([]) == []

    def test_first_error_propagates(self, make_client):
        def handler(url, **kwargs):
            if "/41,9/" in url:
                return make_response(400, "bad")
            return self._handler(url)

        client, _ = make_client(handler=handler)

        with pytest.raises(MeteomaticsBadRequestError):
            client.query_many(
                [lambda lat=lat: client.query_point(Point(lat=lat, lon=9), "t_2m:C", JAN_1) for lat in (40, 41, 42)]
            )

    def test_limiter_caps_parallel_requests(self, credentials, fast_config):
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        def handler(url, **kwargs):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.05)
            with lock:
                state["active"] -= 1
            return make_response(200, "2023-01-01T00:00:00Z,1")

        client = MeteomaticsClient(
            credentials,
            fast_config,
            session=FakeSession(handler=handler),
            limiter=RateLimiter(max_parallel=2),
        )

        results = client.query_many(
            [lambda: client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1) for _ in range(6)],
            max_workers=6,
        )

        assert len(results) == 6
        assert 1 <= state["peak"] <= 2

    def test_config_max_parallel_caps_requests(self, credentials):
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        def handler(url, **kwargs):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.05)
            with lock:
                state["active"] -= 1
            return make_response(200, "2023-01-01T00:00:00Z,1")

        config = ClientConfig(max_retries=1, retry_min_wait=0, retry_max_wait=0, max_parallel=2)
        client = MeteomaticsClient(credentials, config, session=FakeSession(handler=handler))

        client.query_many(
            [lambda: client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1) for _ in range(6)],
            max_workers=6,
        )

        assert 1 <= state["peak"] <= 2

    def test_failure_not_held_up_by_slow_call(self, make_client):
        release = threading.Event()

        def handler(url, **kwargs):
            if "/41,9/" in url:
                return make_response(400, "bad")
            release.wait(5)
            return self._handler(url)

        client, _ = make_client(handler=handler)
        started = time.monotonic()
        try:
            with pytest.raises(MeteomaticsBadRequestError):
                client.query_many(
                    [lambda lat=lat: client.query_point(Point(lat=lat, lon=9), "t_2m:C", JAN_1) for lat in (40, 41)],
                    max_workers=2,
                )
            assert time.monotonic() - started < 1.0
        finally:
            release.set()

    def test_timeout_is_network_error(self, make_client):
        release = threading.Event()

        def handler(url, **kwargs):
            release.wait(5)
            return self._handler(url)

        client, _ = make_client(handler=handler)
        started = time.monotonic()
        try:
            with pytest.raises(MeteomaticsNetworkError, match="did not complete within 0.1 seconds"):
                client.query_many(
                    [lambda: client.query_point(Point(lat=47, lon=9), "t_2m:C", JAN_1)],
                    timeout=0.1,
                )
            assert time.monotonic() - started < 1.0
        finally:
            release.set()
