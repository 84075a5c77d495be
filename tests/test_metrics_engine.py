import math
from datetime import UTC, datetime, timedelta

import pytest

T0 = datetime(2026, 1, 1, 0, 0, 0, tzinfo=UTC)


def _iso(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ")


class _FakeTelemetry:
    """
    Answers the engine's InfluxQL from raw request points.

    Each point: {"time", "flow_id", "step_id", "duration", "error"}.
    """

    def __init__(self, points, *, empty_polls: int = 0):
        self.points = points
        self.empty_polls = empty_polls
        self.queries: list[tuple[str, dict]] = []

    async def query(self, query, bind_params=None):
        params = dict(bind_params or {})
        self.queries.append((query, params))
        if 'first("value")' in query or 'last("value")' in query:
            if self.empty_polls > 0:
                self.empty_polls -= 1
                return []
            if not self.points:
                return []
            times = sorted(p["time"] for p in self.points)
            ts = times[0] if "first(" in query else times[-1]
            return [{"time": _iso(ts), "value": 1}]
        return self._aggregate(query, params)

    def _aggregate(self, query, params):
        points = [
            p
            for p in self.points
            if all(p[k] == params[k] for k in ("flow_id", "step_id") if k in params)
        ]
        keys: list[str] = []
        if "GROUP BY" in query:
            group_clause = query.split("GROUP BY")[-1]
            if "time(" in group_clause:
                keys.append("time")
            if '"flow_id"' in group_clause:
                keys += ["flow_id", "step_id"]

        groups: dict[tuple, list] = {}
        for p in points:
            groups.setdefault(tuple(p[k] for k in keys), []).append(p)

        rows = []
        for key, grp in groups.items():
            row = dict(zip(keys, key))
            if "time" in row:
                row["time"] = _iso(row["time"])
            if 'FROM "http_req_duration"' in query:
                durations = sorted(p["duration"] for p in grp)
                row["mean"] = sum(durations) / len(durations)
                row["p95"] = durations[max(0, math.ceil(0.95 * len(durations)) - 1)]
            elif 'FROM "http_reqs"' in query:
                row["count"] = len(grp)
            else:
                row["mean"] = sum(p["error"] for p in grp) / len(grp)
            rows.append(row)
        return rows


def _two_flow_points():
    # One VU, flow weights 1:3 -> 3 requests on flow A, 9 on flow B.
    points = []
    for i in range(3):
        points.append(
            {
                "time": T0 + timedelta(seconds=i * 3),
                "flow_id": "flowA",
                "step_id": "a1",
                "duration": 100.0 + i,
                "error": 0,
            }
        )
    for i in range(9):
        points.append(
            {
                "time": T0 + timedelta(seconds=1 + i),
                "flow_id": "flowB",
                "step_id": "b1",
                "duration": 200.0,
                "error": 1 if i == 0 else 0,
            }
        )
    return points


def _engine(telemetry, **overrides):
    from loadpilot.core.metrics_engine import MetricsEngine

    kwargs = dict(run_at_attempts=3, run_at_interval_seconds=0, run_at_timeout_seconds=5)
    kwargs.update(overrides)
    return MetricsEngine(telemetry, **kwargs)


def test_series_queries_bind_values_and_group():
    from loadpilot.core.metrics_engine import build_series_queries

    queries = build_series_queries(
        interval="10s",
        tags={"flow_id": "flowA'; DROP MEASUREMENT x; --"},
        run_at=T0,
        end_at=T0 + timedelta(minutes=1),
        group_by_tags=True,
    )

    query, params = queries["latency"]
    assert 'FROM "http_req_duration"' in query
    assert '"flow_id" = $flow_id' in query
    assert "DROP" not in query
    assert 'GROUP BY time(10s), "flow_id", "step_id" fill(none)' in query
    assert params["flow_id"] == "flowA'; DROP MEASUREMENT x; --"
    assert params["run_at"] == "2026-01-01T00:00:00.000000Z"
    assert 'count("value")' in queries["requests"][0]
    assert 'FROM "errors"' in queries["errors"][0]


def test_interval_validation():
    from loadpilot.core.metrics_engine import interval_seconds, validate_interval

    assert validate_interval("1m") == "1m"
    assert interval_seconds("10s") == 10
    assert interval_seconds("1h") == 3600
    for bad in ("", "0s", "1 minute", "5s; DROP", "m"):
        with pytest.raises(ValueError):
            validate_interval(bad)


@pytest.mark.asyncio
async def test_query_metrics_without_run_id_is_empty():
    telemetry = _FakeTelemetry(_two_flow_points())
    engine = _engine(telemetry)

    series = await engine.query_metrics("")

    assert series.is_empty
    assert telemetry.queries == []


@pytest.mark.asyncio
async def test_per_flow_queries_partition_total_requests():
    telemetry = _FakeTelemetry(_two_flow_points())
    engine = _engine(telemetry)

    flow_a = await engine.query_metrics("r1", tags={"flow_id": "flowA"}, group_by_tags=False)
    flow_b = await engine.query_metrics("r1", tags={"flow_id": "flowB"}, group_by_tags=False)
    overall = await engine.query_metrics("r1", group_by_tags=False)

    assert flow_a.latency and flow_b.latency
    assert flow_a.total_requests == 3
    assert flow_b.total_requests == 9
    assert flow_a.total_requests + flow_b.total_requests == overall.total_requests
    assert all(params["run_id"] == "r1" for _, params in telemetry.queries)


@pytest.mark.asyncio
async def test_get_run_at_polls_until_data_arrives():
    telemetry = _FakeTelemetry(_two_flow_points(), empty_polls=2)
    engine = _engine(telemetry)

    assert await engine.get_run_at("r1") == T0
    assert len(telemetry.queries) == 3


@pytest.mark.asyncio
async def test_get_run_at_times_out():
    from loadpilot.core.errors import TelemetryTimeoutError

    engine = _engine(_FakeTelemetry([]))

    with pytest.raises(TelemetryTimeoutError):
        await engine.get_run_at("r1")


@pytest.mark.asyncio
async def test_get_end_at_and_lenient_lookups():
    from loadpilot.core.errors import TelemetryTimeoutError

    engine = _engine(_FakeTelemetry(_two_flow_points()))
    assert await engine.get_end_at("r1") == T0 + timedelta(seconds=9)

    empty = _engine(_FakeTelemetry([]))
    with pytest.raises(TelemetryTimeoutError):
        await empty.get_end_at("r1")
    assert await empty.find_end_at("r1") is None
    assert await empty.find_run_at("r1") is None


@pytest.mark.asyncio
async def test_compute_run_metrics_rows_and_aggregate():
    engine = _engine(_FakeTelemetry(_two_flow_points()))
    pairs = [("flowA", "a1"), ("flowB", "b1"), ("flowB", "b2")]

    rows, aggregate = await engine.compute_run_metrics(
        "r1", pairs, T0, T0 + timedelta(seconds=10)
    )

    assert [(r.flow_id, r.step_id) for r in rows] == pairs
    by_pair = {(r.flow_id, r.step_id): r for r in rows}
    assert by_pair[("flowA", "a1")].total_requests == 3
    assert by_pair[("flowA", "a1")].avg_throughput == pytest.approx(0.3)
    assert by_pair[("flowA", "a1")].avg_response_time == pytest.approx(101.0)
    assert by_pair[("flowB", "b1")].error_rate == pytest.approx(1 / 9)
    assert by_pair[("flowB", "b2")].total_requests == 0
    assert by_pair[("flowB", "b2")].success_rate == 1.0

    assert aggregate.total_requests == 12
    assert aggregate.avg_throughput == pytest.approx(12 / 10)
    assert aggregate.error_rate == pytest.approx(1 / 12)
    assert aggregate.success_rate == pytest.approx(11 / 12)


@pytest.mark.asyncio
async def test_zero_length_window_uses_request_count():
    engine = _engine(_FakeTelemetry(_two_flow_points()))

    _, aggregate = await engine.compute_run_metrics("r1", [], T0, T0)

    assert aggregate.avg_throughput == 12.0


def test_build_points_throughput_per_second():
    from loadpilot.core.metrics_engine import MetricsEngine
    from loadpilot.models.metrics import CountRow, ErrorRateRow, LatencyRow, MetricSeriesSet

    t1 = T0 + timedelta(seconds=10)
    series = MetricSeriesSet(
        latency=[
            LatencyRow(time=T0, flow_id="a", step_id="1", mean=100, p95=150),
            LatencyRow(time=T0, flow_id="b", step_id="1", mean=200, p95=400),
            LatencyRow(time=t1, mean=120, p95=130),
        ],
        requests=[CountRow(time=T0, count=20), CountRow(time=t1, count=5)],
        errors=[ErrorRateRow(time=T0, mean=0.5), ErrorRateRow(time=t1, mean=0.0)],
    )

    points = MetricsEngine.build_points(series, "10s")

    assert [(p.avg, p.p95) for p in points.latency] == [(150.0, 400.0), (120.0, 130.0)]
    assert [p.value for p in points.throughput] == [2.0, 0.5]
    assert [p.value for p in points.error_rate] == [0.5, 0.0]
    dumped = points.model_dump(by_alias=True)
    assert "errorRate" in dumped
