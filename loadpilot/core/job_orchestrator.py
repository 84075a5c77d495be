"""
k6 job lifecycle on Kubernetes.

One run maps to one ConfigMap (the script) and one Job (a single k6 pod). This
module submits them, waits for the pod, follows its log, watches the Job until no
pod is active, and deletes everything afterwards. It knows nothing about run
records; callers pass callbacks.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from loadpilot.connectors.k8s_client import ClusterClient
from loadpilot.core.errors import ClusterOperationError, JobNotReadyError
from loadpilot.models.run_history import RunHistoryStatus

logger = logging.getLogger(__name__)

K6_CONTAINER = "k6"
SCRIPTS_VOLUME = "k6-scripts"
SCRIPTS_MOUNT_PATH = "/scripts"

LABEL_RUN = "run-history-id"
LABEL_SCENARIO = "scenario-id"
LABEL_USER = "user-id"

CompletionCallback = Callable[[RunHistoryStatus], Awaitable[None]]
LineCallback = Callable[[str], Union[bool, None, Awaitable[Optional[bool]]]]


def job_name_for(run_id: str) -> str:
    return f"k6-load-test-{run_id}"


def config_map_name_for(run_id: str) -> str:
    return f"k6-script-{run_id}"


def script_file_for(run_id: str) -> str:
    return f"{run_id}.js"


def build_config_map_manifest(run_id: str, script: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": config_map_name_for(run_id),
            "labels": {LABEL_RUN: run_id},
        },
        "data": {script_file_for(run_id): script},
    }


def build_job_manifest(
    *,
    run_id: str,
    scenario_id: str,
    user_id: str,
    image: str,
    influx_write_url: str,
    ttl_seconds: int,
) -> dict[str, Any]:
    """Job spec: one k6 pod, never retried, reclaimed shortly after it finishes."""
    labels = {LABEL_RUN: run_id, LABEL_SCENARIO: scenario_id, LABEL_USER: user_id}
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {"name": job_name_for(run_id), "labels": dict(labels)},
        "spec": {
            "ttlSecondsAfterFinished": int(ttl_seconds),
            "backoffLimit": 0,
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {
                    "restartPolicy": "Never",
                    "containers": [
                        {
                            "name": K6_CONTAINER,
                            "image": image,
                            "args": [
                                "run",
                                f"{SCRIPTS_MOUNT_PATH}/{script_file_for(run_id)}",
                                "--out",
                                f"influxdb={influx_write_url}",
                            ],
                            "volumeMounts": [
                                {"name": SCRIPTS_VOLUME, "mountPath": SCRIPTS_MOUNT_PATH}
                            ],
                        }
                    ],
                    "volumes": [
                        {
                            "name": SCRIPTS_VOLUME,
                            "configMap": {"name": config_map_name_for(run_id)},
                        }
                    ],
                },
            },
        },
    }


@dataclass(frozen=True)
class RunningJob:
    """A user's in-flight job as seen by the cluster."""

    run_id: str
    scenario_id: str
    user_id: str
    job_name: str


@dataclass
class CleanupResult:
    run_id: str
    deleted: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class _Watch:
    run_id: str
    task: Optional[asyncio.Task] = None
    stream: Any = None
    cancelled: bool = False


def _attr(obj: Any, *path: str) -> Any:
    for name in path:
        if obj is None:
            return None
        obj = getattr(obj, name, None)
    return obj


def _pod_ready(pod: Any) -> bool:
    phase = _attr(pod, "status", "phase")
    if phase == "Succeeded":
        # Very short runs can finish between polls; their log is still readable.
        return True
    if phase != "Running":
        return False
    statuses = _attr(pod, "status", "container_statuses") or []
    if not statuses:
        return False
    first = statuses[0]
    return bool(getattr(first, "ready", False)) and _attr(first, "state", "running") is not None


def _job_finished(job: Any) -> bool:
    """No pod active any more, after the job has actually started."""
    status = _attr(job, "status")
    if status is None:
        return False
    active = int(getattr(status, "active", None) or 0)
    if active > 0:
        return False
    started = (
        getattr(status, "start_time", None) is not None
        or int(getattr(status, "succeeded", None) or 0) > 0
        or int(getattr(status, "failed", None) or 0) > 0
        or getattr(status, "completion_time", None) is not None
    )
    return started


class JobOrchestrator:
    """
    Submits, supervises and removes k6 jobs.

    ``await_completion`` callbacks fire at most once per run id, and never after
    ``cancel_watch`` has been called for that run. Settled ids are remembered for
    the most recent ``fired_history_size`` runs.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        *,
        image: str,
        influx_write_url: str,
        job_ttl_seconds: int = 10,
        ready_attempts: int = 30,
        ready_interval_seconds: float = 2.0,
        log_tail_lines: int = 10,
        log_attach_delay_seconds: float = 1.0,
        watch_timeout_seconds: int = 300,
        fired_history_size: int = 1024,
    ) -> None:
        self._cluster = cluster
        self._image = image
        self._influx_write_url = influx_write_url
        self._job_ttl_seconds = int(job_ttl_seconds)
        self._ready_attempts = max(1, int(ready_attempts))
        self._ready_interval = float(ready_interval_seconds)
        self._log_tail_lines = int(log_tail_lines)
        self._log_attach_delay = float(log_attach_delay_seconds)
        self._watch_timeout = int(watch_timeout_seconds)

        self._lock = asyncio.Lock()
        self._watches: dict[str, _Watch] = {}
        # Recently settled run ids, oldest first.
        self._fired: OrderedDict[str, None] = OrderedDict()
        self._fired_history_size = max(1, int(fired_history_size))
        self._background_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Submission / lookup
    # ------------------------------------------------------------------

    async def submit(self, run_id: str, scenario_id: str, user_id: str, script: str) -> str:
        """Create the script ConfigMap and the Job; returns the job name."""
        rid = str(run_id).strip()
        await self._cluster.create_config_map(build_config_map_manifest(rid, script))
        await self._cluster.create_job(
            build_job_manifest(
                run_id=rid,
                scenario_id=scenario_id,
                user_id=user_id,
                image=self._image,
                influx_write_url=self._influx_write_url,
                ttl_seconds=self._job_ttl_seconds,
            )
        )
        async with self._lock:
            self._fired.pop(rid, None)
        logger.info("Submitted k6 job %s (scenario=%s)", job_name_for(rid), scenario_id)
        return job_name_for(rid)

    async def get_job(self, run_id: str) -> Any | None:
        try:
            return await self._cluster.read_job(job_name_for(run_id))
        except ClusterOperationError as e:
            if e.is_not_found:
                return None
            raise

    async def job_exists(self, run_id: str) -> bool:
        return await self.get_job(run_id) is not None

    async def list_running_jobs_for_user(self, user_id: str) -> list[RunningJob]:
        """Jobs labeled with the user that have neither succeeded nor failed."""
        jobs = await self._cluster.list_jobs(label_selector=f"{LABEL_USER}={user_id}")
        running: list[RunningJob] = []
        for job in jobs:
            if int(_attr(job, "status", "succeeded") or 0) > 0:
                continue
            if int(_attr(job, "status", "failed") or 0) > 0:
                continue
            labels = _attr(job, "metadata", "labels") or {}
            run_id = labels.get(LABEL_RUN)
            if not run_id:
                continue
            running.append(
                RunningJob(
                    run_id=run_id,
                    scenario_id=labels.get(LABEL_SCENARIO, ""),
                    user_id=labels.get(LABEL_USER, user_id),
                    job_name=_attr(job, "metadata", "name") or job_name_for(run_id),
                )
            )
        return running

    # ------------------------------------------------------------------
    # Readiness and logs
    # ------------------------------------------------------------------

    async def wait_until_ready(self, run_id: str) -> str:
        """
        Poll for the job's pod until it is running with a ready container.

        Returns the pod name. Raises JobNotReadyError when the attempts run out;
        if the last attempts failed on the cluster API, that error is raised.
        """
        job_name = job_name_for(run_id)
        selector = f"job-name={job_name}"
        last_error: ClusterOperationError | None = None

        for attempt in range(1, self._ready_attempts + 1):
            try:
                pods = await self._cluster.list_pods(label_selector=selector)
                last_error = None
            except ClusterOperationError as e:
                logger.warning(
                    "Listing pods for %s failed (attempt %d/%d): %s",
                    job_name,
                    attempt,
                    self._ready_attempts,
                    e,
                )
                last_error = e
                pods = []

            for pod in pods:
                if _pod_ready(pod):
                    pod_name = _attr(pod, "metadata", "name")
                    logger.info("Pod %s for %s is ready", pod_name, job_name)
                    return pod_name

            if attempt < self._ready_attempts:
                await asyncio.sleep(self._ready_interval)

        if last_error is not None:
            raise last_error
        raise JobNotReadyError(
            f"k6 pod not ready after {self._ready_attempts} attempts "
            f"(label selector: {selector})"
        )

    async def stream_logs(self, run_id: str, on_line: LineCallback) -> None:
        """
        Follow the k6 container log, calling ``on_line`` per line.

        Waits for readiness first (JobNotReadyError propagates). After attaching,
        stream errors are logged, never raised. Returning True from ``on_line``
        ends the stream.
        """
        pod_name = await self.wait_until_ready(run_id)
        await asyncio.sleep(self._log_attach_delay)

        stream = self._cluster.stream_pod_log(
            pod_name, container=K6_CONTAINER, tail_lines=self._log_tail_lines
        )
        try:
            async for line in stream:
                result = on_line(line)
                if inspect.isawaitable(result):
                    result = await result
                if result is True:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Log stream for run %s ended with error: %s", run_id, e)
        finally:
            stream.stop()

    # ------------------------------------------------------------------
    # Completion watch
    # ------------------------------------------------------------------

    def _track_task(self, task: asyncio.Task) -> None:
        self._background_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Job watch task failed: %s", exc, exc_info=exc)

        task.add_done_callback(_done)

    async def await_completion(
        self, run_id: str, on_complete: CompletionCallback
    ) -> asyncio.Task:
        """Start watching the run's job; returns the (already running) watch task."""
        rid = str(run_id).strip()
        async with self._lock:
            existing = self._watches.get(rid)
            if existing is not None and existing.task is not None and not existing.task.done():
                return existing.task
            watch = _Watch(run_id=rid)
            self._watches[rid] = watch
            watch.task = asyncio.create_task(
                self._watch_job(watch, on_complete), name=f"job-watch:{rid}"
            )
            self._track_task(watch.task)
            return watch.task

    async def cancel_watch(self, run_id: str) -> None:
        """Stop watching; the completion callback will not fire. No-op if not watching."""
        rid = str(run_id).strip()
        async with self._lock:
            watch = self._watches.pop(rid, None)
            if watch is None:
                return
            watch.cancelled = True
        if watch.stream is not None:
            watch.stream.stop()
        task = watch.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def is_watching(self, run_id: str) -> bool:
        async with self._lock:
            return str(run_id).strip() in self._watches

    async def _settle(
        self, watch: _Watch, status: RunHistoryStatus, on_complete: CompletionCallback
    ) -> bool:
        rid = watch.run_id
        async with self._lock:
            if watch.cancelled or rid in self._fired:
                return False
            self._fired[rid] = None
            while len(self._fired) > self._fired_history_size:
                self._fired.popitem(last=False)
            if self._watches.get(rid) is watch:
                self._watches.pop(rid, None)
        if watch.stream is not None:
            watch.stream.stop()

        logger.info("k6 job %s finished: %s", job_name_for(rid), status.value)
        try:
            await on_complete(status)
        except Exception as e:
            logger.error("Completion handler for run %s failed: %s", rid, e, exc_info=True)
        await self.cleanup(rid)
        return True

    async def _watch_job(self, watch: _Watch, on_complete: CompletionCallback) -> None:
        rid = watch.run_id
        job_name = job_name_for(rid)
        try:
            job = await self.get_job(rid)
            if job is None or _job_finished(job):
                # Already reclaimed by its TTL or finished before we looked.
                await self._settle(watch, RunHistoryStatus.SUCCESS, on_complete)
                return

            while not watch.cancelled:
                watch.stream = self._cluster.watch_jobs(
                    field_selector=f"metadata.name={job_name}",
                    timeout_seconds=self._watch_timeout,
                )
                received = 0
                async for event in watch.stream:
                    if watch.cancelled:
                        return
                    received += 1
                    event_type = str((event or {}).get("type") or "").upper()
                    obj = (event or {}).get("object")
                    if event_type == "DELETED" or _job_finished(obj):
                        await self._settle(watch, RunHistoryStatus.SUCCESS, on_complete)
                        return
                # Server-side watch timeout; reopen.
                if not received:
                    await asyncio.sleep(1.0)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if watch.cancelled:
                return
            logger.warning("Watch for job %s failed: %s", job_name, e)
            await self._settle(watch, RunHistoryStatus.FAILED, on_complete)
        finally:
            if watch.stream is not None:
                watch.stream.stop()
            async with self._lock:
                if self._watches.get(rid) is watch:
                    self._watches.pop(rid, None)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _delete_pods(self, job_name: str) -> list[str]:
        pods = await self._cluster.list_pods(label_selector=f"job-name={job_name}")
        names = [_attr(p, "metadata", "name") for p in pods]
        names = [n for n in names if n]
        results = await asyncio.gather(
            *(self._cluster.delete_pod(n) for n in names), return_exceptions=True
        )
        errors = [
            r
            for r in results
            if isinstance(r, BaseException)
            and not (isinstance(r, ClusterOperationError) and r.is_not_found)
        ]
        if errors:
            raise errors[0]
        return names

    async def cleanup(self, run_id: str) -> CleanupResult:
        """
        Delete the job, its pods and the script ConfigMap.

        Every deletion is attempted regardless of the others. Missing resources are
        not errors, so calling this twice is safe. Never raises.
        """
        rid = str(run_id).strip()
        job_name = job_name_for(rid)
        cm_name = config_map_name_for(rid)
        result = CleanupResult(run_id=rid)

        outcomes = await asyncio.gather(
            self._cluster.delete_job(job_name),
            self._delete_pods(job_name),
            self._cluster.delete_config_map(cm_name),
            return_exceptions=True,
        )
        for resource, outcome in zip(("Job", "Pods", "ConfigMap"), outcomes):
            if not isinstance(outcome, BaseException):
                result.deleted.append(resource)
                continue
            if isinstance(outcome, ClusterOperationError) and outcome.is_not_found:
                logger.warning("%s for run %s not found, skipping cleanup", resource, rid)
                result.missing.append(resource)
                continue
            logger.warning("Failed to delete %s for run %s: %s", resource, rid, outcome)
            result.failed[resource] = str(outcome)

        return result

    async def shutdown(self) -> None:
        """Cancel every watch without firing callbacks."""
        async with self._lock:
            run_ids = list(self._watches)
        for rid in run_ids:
            await self.cancel_watch(rid)
        tasks = list(self._background_tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
