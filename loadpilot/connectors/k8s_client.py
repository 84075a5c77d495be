"""
Kubernetes API connector.

Thin async facade over the official (synchronous) ``kubernetes`` client. Request/response
calls run on a bounded thread pool. Long-lived watches and log follows each get their
own daemon thread, bridged back onto the event loop through :class:`BlockingStream`,
so open streams never starve the pool. SDK errors are translated
into :class:`ClusterOperationError` at this boundary.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, Iterable, Optional

from kubernetes import client as k8s
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.exceptions import ApiException

from loadpilot.config import settings
from loadpilot.core.errors import ClusterOperationError

logger = logging.getLogger(__name__)


def _translate(exc: BaseException, action: str) -> ClusterOperationError:
    if isinstance(exc, ClusterOperationError):
        return exc
    if isinstance(exc, ApiException):
        return ClusterOperationError(
            f"{action} failed: {exc.status} {exc.reason}", status=exc.status
        )
    return ClusterOperationError(f"{action} failed: {type(exc).__name__}: {exc}")


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: ClusterOperationError) -> None:
        self.exc = exc


_DONE = object()


class BlockingStream:
    """
    Async iterator over a blocking iterable consumed on its own daemon thread.

    Items are handed to the event loop with ``call_soon_threadsafe``. ``stop()`` is
    idempotent; the thread exits after its current blocking read returns, which the
    read timeout given to the underlying request bounds.
    """

    def __init__(
        self,
        open_iter: Callable[[], Iterable[Any]],
        *,
        action: str,
        on_stop: Callable[[], None] | None = None,
    ) -> None:
        self._open_iter = open_iter
        self._action = action
        self._on_stop = on_stop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._stopped = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._finished = False

    def __aiter__(self) -> "BlockingStream":
        return self

    async def __anext__(self) -> Any:
        if self._finished:
            raise StopAsyncIteration
        if self._thread is None:
            self._loop = asyncio.get_running_loop()
            self._thread = threading.Thread(
                target=self._pump, name=f"k8s-stream: {self._action}", daemon=True
            )
            self._thread.start()
        item = await self._queue.get()
        if item is _DONE:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.exc
        return item

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        if self._on_stop is not None:
            try:
                self._on_stop()
            except Exception as e:
                logger.debug("Stopping %s stream raised: %s", self._action, e)

    def _post(self, item: Any) -> bool:
        loop = self._loop
        if loop is None or loop.is_closed():
            return False
        try:
            loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Event loop shut down underneath us.
            return False
        return True

    def _pump(self) -> None:
        try:
            for item in self._open_iter():
                if self._stopped.is_set():
                    break
                if not self._post(item):
                    break
        except Exception as e:
            if not self._stopped.is_set():
                self._post(_Failure(_translate(e, self._action)))
        finally:
            self._post(_DONE)


class ClusterClient:
    """Async access to the Batch and Core APIs of one namespace."""

    def __init__(
        self,
        *,
        namespace: str,
        in_cluster: bool = False,
        executor: Executor | None = None,
        owns_executor: bool = False,
        stream_read_timeout_seconds: float = 60.0,
        batch_api: Optional[k8s.BatchV1Api] = None,
        core_api: Optional[k8s.CoreV1Api] = None,
    ) -> None:
        self.namespace = namespace
        self._in_cluster = bool(in_cluster)
        self._executor = executor
        self._owns_executor = bool(owns_executor)
        self._stream_read_timeout = float(stream_read_timeout_seconds)
        self._batch = batch_api
        self._core = core_api

    def _ensure_apis(self) -> None:
        if self._batch is not None and self._core is not None:
            return
        if self._in_cluster:
            k8s_config.load_incluster_config()
        else:
            k8s_config.load_kube_config()
        self._batch = self._batch or k8s.BatchV1Api()
        self._core = self._core or k8s.CoreV1Api()
        logger.info(
            "Kubernetes client configured (namespace=%s, in_cluster=%s)",
            self.namespace,
            self._in_cluster,
        )

    async def _call(self, action: str, func_name: str, api: str, *args, **kwargs):
        loop = asyncio.get_running_loop()

        def _invoke():
            self._ensure_apis()
            target = self._batch if api == "batch" else self._core
            return getattr(target, func_name)(*args, **kwargs)

        try:
            return await loop.run_in_executor(self._executor, _invoke)
        except Exception as e:
            raise _translate(e, action) from e

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, body: dict[str, Any]):
        return await self._call(
            "create job", "create_namespaced_job", "batch", self.namespace, body
        )

    async def read_job(self, name: str):
        return await self._call(
            f"read job {name}", "read_namespaced_job", "batch", name, self.namespace
        )

    async def list_jobs(self, *, label_selector: str) -> list:
        result = await self._call(
            "list jobs",
            "list_namespaced_job",
            "batch",
            self.namespace,
            label_selector=label_selector,
        )
        return list(result.items or [])

    async def delete_job(self, name: str) -> None:
        await self._call(
            f"delete job {name}",
            "delete_namespaced_job",
            "batch",
            name,
            self.namespace,
            propagation_policy="Background",
        )

    def watch_jobs(self, *, field_selector: str, timeout_seconds: int) -> BlockingStream:
        """Watch events ({"type", "object"}) for jobs matching ``field_selector``."""
        watcher = k8s_watch.Watch()

        def _open():
            self._ensure_apis()
            return watcher.stream(
                self._batch.list_namespaced_job,
                self.namespace,
                field_selector=field_selector,
                timeout_seconds=timeout_seconds,
                # The server closes the watch at timeout_seconds; the read timeout is a backstop.
                _request_timeout=(10, timeout_seconds + self._stream_read_timeout),
            )

        return BlockingStream(
            _open,
            action=f"watch jobs ({field_selector})",
            on_stop=watcher.stop,
        )

    # ------------------------------------------------------------------
    # Pods
    # ------------------------------------------------------------------

    async def list_pods(self, *, label_selector: str) -> list:
        result = await self._call(
            "list pods",
            "list_namespaced_pod",
            "core",
            self.namespace,
            label_selector=label_selector,
        )
        return list(result.items or [])

    async def delete_pod(self, name: str) -> None:
        await self._call(
            f"delete pod {name}", "delete_namespaced_pod", "core", name, self.namespace
        )

    def stream_pod_log(
        self, pod_name: str, *, container: str, tail_lines: int
    ) -> BlockingStream:
        """Follow a container's log, one line per item."""
        watcher = k8s_watch.Watch()

        def _open():
            self._ensure_apis()
            return watcher.stream(
                self._core.read_namespaced_pod_log,
                name=pod_name,
                namespace=self.namespace,
                container=container,
                tail_lines=tail_lines,
                _request_timeout=(10, self._stream_read_timeout),
            )

        return BlockingStream(
            _open,
            action=f"stream logs of pod {pod_name}",
            on_stop=watcher.stop,
        )

    # ------------------------------------------------------------------
    # ConfigMaps
    # ------------------------------------------------------------------

    async def create_config_map(self, body: dict[str, Any]):
        return await self._call(
            "create config map",
            "create_namespaced_config_map",
            "core",
            self.namespace,
            body,
        )

    async def delete_config_map(self, name: str) -> None:
        await self._call(
            f"delete config map {name}",
            "delete_namespaced_config_map",
            "core",
            name,
            self.namespace,
        )

    def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            try:
                self._executor.shutdown(wait=False, cancel_futures=True)
            except Exception as e:
                logger.debug("Cluster executor shutdown raised: %s", e)
            self._executor = None
            self._owns_executor = False


def build_cluster_client() -> ClusterClient:
    """Cluster client configured from settings, owning its own thread pool."""
    executor = ThreadPoolExecutor(
        max_workers=max(1, int(settings.CLUSTER_EXECUTOR_MAX_WORKERS)),
        thread_name_prefix="k8s",
    )
    return ClusterClient(
        namespace=settings.K8S_NAMESPACE,
        in_cluster=settings.K8S_IN_CLUSTER,
        executor=executor,
        owns_executor=True,
        stream_read_timeout_seconds=settings.K8S_STREAM_READ_TIMEOUT_SECONDS,
    )
