import asyncio
import json
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from loadpilot.models.run_history import RunHistory, RunHistoryStatus

HEADERS = {"X-User-Id": "user-1"}
T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _client(services):
    from fastapi import FastAPI
    from fastapi.testclient import TestClient

    from loadpilot.api.routes import load_tests, metrics, schedulers

    app = FastAPI()
    app.include_router(load_tests.router, prefix="/api/load-tests")
    app.include_router(metrics.router, prefix="/api/metrics")
    app.include_router(schedulers.router, prefix="/api/schedulers")
    if services is not None:
        app.state.services = services
    return TestClient(app)


def _run(**overrides):
    data = dict(id="run-1", scenario_id="scn-1", user_id="user-1")
    data.update(overrides)
    return RunHistory(**data)


class _Coordinator:
    def __init__(self, *, error=None):
        self.error = error

    async def start(self, scenario_id, user_id):
        if self.error is not None:
            raise self.error
        return _run(scenario_id=scenario_id, user_id=user_id, run_at=T0)

    async def stop(self, scenario_id, user_id):
        if self.error is not None:
            raise self.error
        return [_run(status=RunHistoryStatus.ABORTED, run_at=T0, end_at=T0)]


# ---------------------------------------------------------------------------
# Error mapping and dependencies
# ---------------------------------------------------------------------------


def test_http_exception_mapping():
    from fastapi import HTTPException

    from loadpilot.api.error_handling import http_exception
    from loadpilot.core.errors import (
        InvalidScheduleError,
        NotFoundError,
        RunStartError,
        RunStoppedError,
    )

    assert http_exception("x", NotFoundError("nope")).status_code == 404
    assert http_exception("x", RunStoppedError("stopped")).status_code == 409
    assert http_exception("x", InvalidScheduleError("bad cron")).status_code == 400
    assert http_exception("x", ValueError("bad interval")).status_code == 400

    start_failure = RunStartError("Failed to start load test for scenario s")
    start_failure.__cause__ = RuntimeError("pod crashed: secret detail")
    mapped = http_exception("start load test", start_failure)
    assert mapped.status_code == 500
    assert "secret detail" not in mapped.detail

    unexpected = http_exception("stop load test", KeyError("internal"))
    assert unexpected.status_code == 500
    assert unexpected.detail == "Failed to stop load test"

    passthrough = HTTPException(status_code=418)
    assert http_exception("x", passthrough) is passthrough


def test_requests_without_user_are_unauthorized():
    client = _client(SimpleNamespace(coordinator=_Coordinator()))
    response = client.post("/api/load-tests/scn-1/run")
    assert response.status_code == 401


def test_requests_before_startup_are_unavailable():
    client = _client(None)
    response = client.post("/api/load-tests/scn-1/run", headers=HEADERS)
    assert response.status_code == 503


# ---------------------------------------------------------------------------
# Load tests
# ---------------------------------------------------------------------------


def test_run_load_test_returns_accepted_run():
    client = _client(SimpleNamespace(coordinator=_Coordinator()))

    response = client.post("/api/load-tests/scn-1/run", headers=HEADERS)

    assert response.status_code == 202
    body = response.json()
    assert body["id"] == "run-1"
    assert body["status"] == "RUNNING"
    assert body["scenario_id"] == "scn-1"


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        ("not_found", 404),
        ("start", 500),
    ],
)
def test_run_load_test_errors(error, expected):
    from loadpilot.core.errors import NotFoundError, RunStartError

    exc = NotFoundError("Scenario scn-1 not found") if error == "not_found" else RunStartError("x")
    client = _client(SimpleNamespace(coordinator=_Coordinator(error=exc)))

    response = client.post("/api/load-tests/scn-1/run", headers=HEADERS)

    assert response.status_code == expected


def test_stop_load_test_lists_aborted_runs():
    client = _client(SimpleNamespace(coordinator=_Coordinator()))

    response = client.delete("/api/load-tests/scn-1/stop", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["scenario_id"] == "scn-1"
    assert [r["status"] for r in body["stopped"]] == ["ABORTED"]


def test_stop_without_running_run_is_404():
    from loadpilot.core.errors import NotFoundError

    client = _client(SimpleNamespace(coordinator=_Coordinator(error=NotFoundError("none"))))
    response = client.delete("/api/load-tests/scn-1/stop", headers=HEADERS)
    assert response.status_code == 404


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class _Scenarios:
    async def find_one(self, scenario_id, user_id):
        from loadpilot.models.scenario import Scenario

        if user_id != "user-1":
            return None
        return Scenario(id=scenario_id, user_id=user_id, name="Checkout", duration=30)


class _Runs:
    def __init__(self, runs):
        self.runs = {r.id: r for r in runs}

    async def get(self, run_id):
        return self.runs.get(run_id)

    async def find_latest(self, scenario_id):
        matching = [r for r in self.runs.values() if r.scenario_id == scenario_id]
        return matching[-1] if matching else None


class _Metrics:
    default_interval = "10s"

    def __init__(self):
        self.calls = []

    async def query_metrics(self, run_id, interval, tags, run_at, end_at, *, group_by_tags):
        from loadpilot.models.metrics import CountRow, ErrorRateRow, LatencyRow, MetricSeriesSet

        self.calls.append((run_id, interval, tags, run_at, end_at, group_by_tags))
        return MetricSeriesSet(
            latency=[LatencyRow(time=T0, mean=120.0, p95=200.0)],
            requests=[CountRow(time=T0, count=50)],
            errors=[ErrorRateRow(time=T0, mean=0.1)],
        )

    @staticmethod
    def build_points(series, interval):
        from loadpilot.core.metrics_engine import MetricsEngine

        return MetricsEngine.build_points(series, interval)


def _metrics_services(runs):
    return SimpleNamespace(scenarios=_Scenarios(), runs=_Runs(runs), metrics=_Metrics())


def test_metrics_for_run_uses_run_window():
    done = _run(status=RunHistoryStatus.SUCCESS, run_at=T0, end_at=T0 + timedelta(minutes=1))
    services = _metrics_services([done])
    client = _client(services)

    response = client.get(
        "/api/metrics/scn-1/run-1", params={"flowId": "flowA"}, headers=HEADERS
    )

    assert response.status_code == 200
    body = response.json()
    assert body["runHistoryId"] == "run-1"
    assert body["scenarioName"] == "Checkout"
    assert body["interval"] == "10s"
    assert body["tags"] == {"flow_id": "flowA"}
    assert body["metrics"]["throughput"][0]["value"] == 5.0
    assert body["metrics"]["errorRate"][0]["value"] == 0.1
    assert body["metrics"]["latency"][0]["avg"] == 120.0
    assert services.metrics.calls == [
        ("run-1", "10s", {"flow_id": "flowA"}, done.run_at, done.end_at, False)
    ]


def test_metrics_latest_resolves_most_recent_run():
    services = _metrics_services([_run(id="old"), _run(id="new")])
    client = _client(services)

    response = client.get("/api/metrics/scn-1/latest?interval=1m", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["runHistoryId"] == "new"
    assert services.metrics.calls[0][1] == "1m"


@pytest.mark.parametrize(
    ("path", "headers", "expected"),
    [
        ("/api/metrics/scn-1/missing", HEADERS, 404),
        ("/api/metrics/scn-1/run-1", {"X-User-Id": "intruder"}, 404),
        ("/api/metrics/other-scn/run-1", HEADERS, 404),
        ("/api/metrics/scn-1/run-1?interval=5s;DROP", HEADERS, 400),
    ],
)
def test_metrics_errors(path, headers, expected):
    client = _client(_metrics_services([_run()]))
    assert client.get(path, headers=headers).status_code == expected


# ---------------------------------------------------------------------------
# Schedulers
# ---------------------------------------------------------------------------


class _Cron:
    def __init__(self):
        self.created = []
        self.deleted = []

    def _row(self, **overrides):
        from loadpilot.models.scheduler import CronConfig, Scheduler

        data = dict(
            id="sch-1",
            scenario_id="scn-1",
            user_id="user-1",
            cron_expression="0 7 * * *",
            config=CronConfig(type="every_day", time="07:00"),
        )
        data.update(overrides)
        return Scheduler(**data)

    async def list_for_user(self, user_id):
        return [self._row(user_id=user_id)]

    async def create(self, user_id, payload):
        self.created.append((user_id, payload))
        return self._row(scenario_id=payload.scenario_id, is_active=payload.is_active)

    async def update(self, scheduler_id, user_id, payload):
        from loadpilot.core.errors import InvalidScheduleError, NotFoundError

        if scheduler_id != "sch-1":
            raise NotFoundError(f"Scheduler {scheduler_id} not found")
        if payload.time_end is not None and payload.time_end < T0:
            raise InvalidScheduleError("timeEnd is in the past")
        return self._row(is_active=bool(payload.is_active))

    async def delete(self, scheduler_id, user_id):
        self.deleted.append(scheduler_id)


def test_scheduler_crud_routes():
    cron = _Cron()
    client = _client(SimpleNamespace(cron=cron))

    listed = client.get("/api/schedulers/", headers=HEADERS)
    assert listed.status_code == 200
    assert listed.json()[0]["cron_expression"] == "0 7 * * *"

    created = client.post(
        "/api/schedulers/",
        headers=HEADERS,
        json={
            "scenarioId": "scn-1",
            "timezone": "Europe/Berlin",
            "config": {"type": "every_day", "time": "07:00"},
        },
    )
    assert created.status_code == 201
    user_id, payload = cron.created[0]
    assert user_id == "user-1"
    assert payload.timezone == "Europe/Berlin"

    patched = client.patch("/api/schedulers/sch-1", headers=HEADERS, json={"isActive": False})
    assert patched.status_code == 200
    assert patched.json()["is_active"] is False

    deleted = client.delete("/api/schedulers/sch-1", headers=HEADERS)
    assert deleted.status_code == 204
    assert cron.deleted == ["sch-1"]


def test_scheduler_validation_errors():
    client = _client(SimpleNamespace(cron=_Cron()))

    bad_tz = client.post(
        "/api/schedulers/",
        headers=HEADERS,
        json={"scenarioId": "scn-1", "timezone": "Nowhere/City", "config": {"type": "once"}},
    )
    assert bad_tz.status_code == 422

    missing = client.patch("/api/schedulers/sch-404", headers=HEADERS, json={})
    assert missing.status_code == 404

    past = client.patch(
        "/api/schedulers/sch-1", headers=HEADERS, json={"timeEnd": "2020-01-01T00:00:00Z"}
    )
    assert past.status_code == 400


# ---------------------------------------------------------------------------
# Live status streaming
# ---------------------------------------------------------------------------


def test_format_sse_frames():
    from loadpilot.models.metrics import LiveEvent
    from loadpilot.websocket import format_sse

    frame = format_sse(
        LiveEvent(event="message", id="scn-1:run-1", retry=3000, data={"status": "RUNNING"})
    )
    assert frame == (
        "id: scn-1:run-1\n"
        "event: message\n"
        "retry: 3000\n"
        'data: {"status": "RUNNING"}\n\n'
    )

    multiline = format_sse(LiveEvent(event="ping", data="a\nb"))
    assert multiline == "event: ping\ndata: a\ndata: b\n\n"


@pytest.mark.asyncio
async def test_sse_stream_replays_and_closes_on_disconnect():
    from loadpilot.core.status_fanout import StatusFanout
    from loadpilot.models.run_history import StatusEvent
    from loadpilot.websocket import sse_status_stream

    async def replay(user_id):
        return [
            StatusEvent(run_id="run-1", scenario_id="scn-1", user_id=user_id, status="RUNNING")
        ]

    fanout = StatusFanout(None, heartbeat_seconds=3600, replay_provider=replay)
    disconnected = asyncio.Event()

    async def is_disconnected():
        return disconnected.is_set()

    stream = sse_status_stream(fanout, "user-1", is_disconnected, poll_seconds=0.01)
    first = await stream.__anext__()
    assert first.startswith("id: scn-1:run-1\nevent: message\n")
    assert json.loads(first.split("data: ", 1)[1])["runId"] == "run-1"
    assert await fanout.has_channel("user-1")

    disconnected.set()
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
    assert not await fanout.has_channel("user-1")
