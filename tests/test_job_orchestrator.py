import asyncio
from types import SimpleNamespace

import pytest

from loadpilot.core.errors import ClusterOperationError


def _job(name, *, active=0, started=True, succeeded=0, failed=0, labels=None):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels=labels or {}),
        status=SimpleNamespace(
            active=active,
            start_time="2026-01-01T00:00:00Z" if started else None,
            succeeded=succeeded,
            failed=failed,
            completion_time=None,
        ),
    )


def _pod(name, *, phase="Running", ready=True):
    container = SimpleNamespace(
        ready=ready, state=SimpleNamespace(running=SimpleNamespace() if ready else None)
    )
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        status=SimpleNamespace(phase=phase, container_statuses=[container]),
    )


class _FakeStream:
    """Yields queued items, then either ends or blocks until stopped."""

    def __init__(self, items, *, block=False, error=None):
        self._items = list(items)
        self._block = block
        self._error = error
        self._stopped = asyncio.Event()
        self.stop_calls = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._items and not self._stopped.is_set():
            return self._items.pop(0)
        if self._error is not None:
            raise self._error
        if self._block:
            await self._stopped.wait()
        raise StopAsyncIteration

    def stop(self):
        self.stop_calls += 1
        self._stopped.set()


class _FakeCluster:
    def __init__(self):
        self.jobs: dict[str, object] = {}
        self.config_maps: dict[str, dict] = {}
        self.pods: dict[str, list] = {}
        self.watch_streams: list[_FakeStream] = []
        self.log_lines: list[str] = []
        self.delete_job_error: ClusterOperationError | None = None
        self.pod_sequence: list[list] | None = None
        self.calls: list[str] = []

    @staticmethod
    def _missing(kind, name):
        return ClusterOperationError(f"{kind} {name} not found", status=404)

    async def create_config_map(self, body):
        self.calls.append("create_config_map")
        self.config_maps[body["metadata"]["name"]] = body

    async def create_job(self, body):
        self.calls.append("create_job")
        name = body["metadata"]["name"]
        self.jobs[name] = _job(name, active=1, labels=body["metadata"]["labels"])
        return self.jobs[name]

    async def read_job(self, name):
        if name not in self.jobs:
            raise self._missing("Job", name)
        return self.jobs[name]

    async def list_jobs(self, *, label_selector):
        key, _, value = label_selector.partition("=")
        return [j for j in self.jobs.values() if j.metadata.labels.get(key) == value]

    async def delete_job(self, name):
        self.calls.append("delete_job")
        if self.delete_job_error is not None:
            raise self.delete_job_error
        if self.jobs.pop(name, None) is None:
            raise self._missing("Job", name)

    def watch_jobs(self, *, field_selector, timeout_seconds):
        return self.watch_streams.pop(0) if self.watch_streams else _FakeStream([], block=True)

    async def list_pods(self, *, label_selector):
        if self.pod_sequence:
            return self.pod_sequence.pop(0)
        return list(self.pods.get(label_selector.partition("=")[2], []))

    async def delete_pod(self, name):
        for job_name, pods in self.pods.items():
            self.pods[job_name] = [p for p in pods if p.metadata.name != name]

    def stream_pod_log(self, pod_name, *, container, tail_lines):
        self.log_stream = _FakeStream(self.log_lines)
        return self.log_stream

    async def delete_config_map(self, name):
        self.calls.append("delete_config_map")
        if self.config_maps.pop(name, None) is None:
            raise self._missing("ConfigMap", name)


def _orchestrator(cluster, **overrides):
    from loadpilot.core.job_orchestrator import JobOrchestrator

    kwargs = dict(
        image="grafana/k6",
        influx_write_url="http://influxdb:8086/k6",
        ready_attempts=3,
        ready_interval_seconds=0,
        log_attach_delay_seconds=0,
    )
    kwargs.update(overrides)
    return JobOrchestrator(cluster, **kwargs)


def test_job_manifest_shape():
    from loadpilot.core.job_orchestrator import build_job_manifest

    manifest = build_job_manifest(
        run_id="r1",
        scenario_id="s1",
        user_id="u1",
        image="grafana/k6:latest",
        influx_write_url="http://influxdb:8086/k6",
        ttl_seconds=10,
    )

    assert manifest["metadata"]["name"] == "k6-load-test-r1"
    assert manifest["metadata"]["labels"] == {
        "run-history-id": "r1",
        "scenario-id": "s1",
        "user-id": "u1",
    }
    spec = manifest["spec"]
    assert spec["ttlSecondsAfterFinished"] == 10
    assert spec["backoffLimit"] == 0
    pod_spec = spec["template"]["spec"]
    assert pod_spec["restartPolicy"] == "Never"
    container = pod_spec["containers"][0]
    assert container["name"] == "k6"
    assert container["args"] == [
        "run",
        "/scripts/r1.js",
        "--out",
        "influxdb=http://influxdb:8086/k6",
    ]
    assert pod_spec["volumes"][0]["configMap"]["name"] == "k6-script-r1"


@pytest.mark.asyncio
async def test_submit_creates_script_before_job():
    cluster = _FakeCluster()
    orch = _orchestrator(cluster)

    name = await orch.submit("r1", "s1", "u1", "export default function () {}")

    assert name == "k6-load-test-r1"
    assert cluster.calls == ["create_config_map", "create_job"]
    assert cluster.config_maps["k6-script-r1"]["data"] == {
        "r1.js": "export default function () {}"
    }
    assert await orch.job_exists("r1")
    assert not await orch.job_exists("other")


@pytest.mark.asyncio
async def test_wait_until_ready_polls_until_container_ready():
    cluster = _FakeCluster()
    cluster.pod_sequence = [
        [],
        [_pod("p1", phase="Pending", ready=False)],
        [_pod("p1")],
    ]
    orch = _orchestrator(cluster)

    assert await orch.wait_until_ready("r1") == "p1"


@pytest.mark.asyncio
async def test_wait_until_ready_gives_up():
    from loadpilot.core.errors import JobNotReadyError

    cluster = _FakeCluster()
    cluster.pod_sequence = [[], [], [_pod("p1", phase="Pending", ready=False)]]
    orch = _orchestrator(cluster)

    with pytest.raises(JobNotReadyError):
        await orch.wait_until_ready("r1")


@pytest.mark.asyncio
async def test_completion_fires_exactly_once():
    from loadpilot.models.run_history import RunHistoryStatus

    cluster = _FakeCluster()
    orch = _orchestrator(cluster)
    await orch.submit("r1", "s1", "u1", "script")
    cluster.pods["k6-load-test-r1"] = [_pod("p1")]
    finished = _job("k6-load-test-r1", active=0)
    cluster.watch_streams.append(
        _FakeStream(
            [
                {"type": "MODIFIED", "object": _job("k6-load-test-r1", active=1)},
                {"type": "MODIFIED", "object": finished},
                {"type": "MODIFIED", "object": finished},
            ]
        )
    )

    calls: list[RunHistoryStatus] = []

    async def on_complete(status):
        calls.append(status)

    task = await orch.await_completion("r1", on_complete)
    await task

    # A second watch on the same run finds the job gone but must not fire again.
    task = await orch.await_completion("r1", on_complete)
    await task

    assert calls == [RunHistoryStatus.SUCCESS]
    assert "k6-load-test-r1" not in cluster.jobs
    assert "k6-script-r1" not in cluster.config_maps
    assert cluster.pods["k6-load-test-r1"] == []
    assert not await orch.is_watching("r1")


@pytest.mark.asyncio
async def test_deleted_job_counts_as_success():
    from loadpilot.models.run_history import RunHistoryStatus

    cluster = _FakeCluster()
    orch = _orchestrator(cluster)
    await orch.submit("r1", "s1", "u1", "script")
    cluster.watch_streams.append(
        _FakeStream([{"type": "DELETED", "object": _job("k6-load-test-r1", active=1)}])
    )

    calls = []

    async def on_complete(status):
        calls.append(status)

    await (await orch.await_completion("r1", on_complete))
    assert calls == [RunHistoryStatus.SUCCESS]


@pytest.mark.asyncio
async def test_settled_run_history_is_bounded():
    cluster = _FakeCluster()
    orch = _orchestrator(cluster, fired_history_size=2)
    calls = []

    async def on_complete(status):
        calls.append(status)

    for rid in ("r1", "r2", "r3"):
        # No job left in the cluster: the watch settles immediately.
        await (await orch.await_completion(rid, on_complete))

    assert len(calls) == 3
    assert list(orch._fired) == ["r2", "r3"]

    # Still remembered: a second watch does not fire again.
    await (await orch.await_completion("r3", on_complete))
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_watch_error_reports_failure():
    from loadpilot.models.run_history import RunHistoryStatus

    cluster = _FakeCluster()
    orch = _orchestrator(cluster)
    await orch.submit("r1", "s1", "u1", "script")
    cluster.watch_streams.append(
        _FakeStream([], error=ClusterOperationError("watch broke", status=500))
    )

    calls = []

    async def on_complete(status):
        calls.append(status)

    await (await orch.await_completion("r1", on_complete))
    assert calls == [RunHistoryStatus.FAILED]


@pytest.mark.asyncio
async def test_cancel_watch_suppresses_callback_and_is_reentrant():
    cluster = _FakeCluster()
    orch = _orchestrator(cluster)
    await orch.submit("r1", "s1", "u1", "script")

    calls = []

    async def on_complete(status):
        calls.append(status)

    task = await orch.await_completion("r1", on_complete)
    await asyncio.sleep(0)
    assert await orch.is_watching("r1")

    await orch.cancel_watch("r1")
    await orch.cancel_watch("r1")
    await asyncio.gather(task, return_exceptions=True)

    assert calls == []
    assert not await orch.is_watching("r1")


@pytest.mark.asyncio
async def test_cleanup_is_idempotent():
    cluster = _FakeCluster()
    orch = _orchestrator(cluster)
    await orch.submit("r1", "s1", "u1", "script")
    cluster.pods["k6-load-test-r1"] = [_pod("p1")]

    first = await orch.cleanup("r1")
    second = await orch.cleanup("r1")

    assert sorted(first.deleted) == ["ConfigMap", "Job", "Pods"]
    assert first.ok
    assert second.ok
    assert sorted(second.missing) == ["ConfigMap", "Job"]


@pytest.mark.asyncio
async def test_cleanup_attempts_every_resource_when_one_fails():
    cluster = _FakeCluster()
    orch = _orchestrator(cluster)
    await orch.submit("r1", "s1", "u1", "script")
    cluster.delete_job_error = ClusterOperationError("forbidden", status=403)

    result = await orch.cleanup("r1")

    assert not result.ok
    assert list(result.failed) == ["Job"]
    assert "ConfigMap" in result.deleted
    assert "k6-script-r1" not in cluster.config_maps


@pytest.mark.asyncio
async def test_stream_logs_stops_when_callback_returns_true():
    cluster = _FakeCluster()
    cluster.pods["k6-load-test-r1"] = [_pod("p1")]
    cluster.log_lines = ["running [ 10% ]", "running [ 100% ]", "never read"]
    orch = _orchestrator(cluster)

    seen = []

    async def on_line(line):
        seen.append(line)
        return "100%" in line

    await orch.stream_logs("r1", on_line)

    assert seen == ["running [ 10% ]", "running [ 100% ]"]
    assert cluster.log_stream.stop_calls >= 1


@pytest.mark.asyncio
async def test_list_running_jobs_for_user_skips_finished():
    cluster = _FakeCluster()
    orch = _orchestrator(cluster)
    await orch.submit("r1", "s1", "u1", "script")
    await orch.submit("r2", "s2", "u1", "script")
    await orch.submit("r3", "s3", "u2", "script")
    cluster.jobs["k6-load-test-r2"].status.succeeded = 1

    jobs = await orch.list_running_jobs_for_user("u1")

    assert [(j.run_id, j.scenario_id) for j in jobs] == [("r1", "s1")]
