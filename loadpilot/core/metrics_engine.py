"""
Run metrics from k6 telemetry.

The telemetry store is the only source of truth for when traffic actually started
and stopped, and for latency/throughput/error figures. Queries are InfluxQL with
bound parameters; the bucket interval cannot be bound, so it is validated instead.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import UTC, datetime
from typing import Any, Iterable, Mapping, Optional

from loadpilot.connectors.influx_client import TelemetryStoreClient
from loadpilot.core.errors import TelemetryTimeoutError
from loadpilot.models.metrics import (
    CountRow,
    ErrorRateRow,
    LatencyPoint,
    LatencyRow,
    MetricPoints,
    MetricSeriesSet,
    ValuePoint,
)
from loadpilot.models.run_history import AggregateMetrics, RunHistoryMetric

logger = logging.getLogger(__name__)

MEASUREMENT_DURATION = "http_req_duration"
MEASUREMENT_REQUESTS = "http_reqs"
MEASUREMENT_ERRORS = "errors"

FILTERABLE_TAGS = ("flow_id", "step_id")

_INTERVAL_RE = re.compile(r"^(\d+)(ns|u|µ|ms|s|m|h|d|w)$")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "u": 1e-6,
    "µ": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
    "w": 604800.0,
}


def validate_interval(interval: str) -> str:
    value = str(interval or "").strip()
    m = _INTERVAL_RE.match(value)
    if not m or int(m.group(1)) <= 0:
        raise ValueError(f"Invalid interval: {interval!r}")
    return value


def interval_seconds(interval: str) -> float:
    m = _INTERVAL_RE.match(validate_interval(interval))
    return int(m.group(1)) * _UNIT_SECONDS[m.group(2)]


def format_influx_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_influx_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        # epoch nanoseconds
        return datetime.fromtimestamp(value / 1e9, tz=UTC)
    text = str(value).strip()
    if not text:
        return None
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def build_series_queries(
    *,
    interval: Optional[str],
    tags: Optional[Mapping[str, str]],
    run_at: Optional[datetime],
    end_at: Optional[datetime],
    group_by_tags: bool,
) -> dict[str, tuple[str, dict[str, Any]]]:
    """
    The three InfluxQL statements behind one metrics query.

    Returns ``{"latency"|"requests"|"errors": (query, extra_bind_params)}``; the
    caller adds ``run_id``.
    """
    params: dict[str, Any] = {}
    where = ['"run_history_id" = $run_id']
    for key in FILTERABLE_TAGS:
        value = (tags or {}).get(key)
        if value:
            params[key] = str(value)
            where.append(f'"{key}" = ${key}')
    if run_at is not None:
        params["run_at"] = format_influx_time(run_at)
        where.append("time >= $run_at")
    if end_at is not None:
        params["end_at"] = format_influx_time(end_at)
        where.append("time <= $end_at")

    group_parts: list[str] = []
    if interval:
        group_parts.append(f"time({validate_interval(interval)})")
    if group_by_tags:
        group_parts.extend(f'"{key}"' for key in FILTERABLE_TAGS)
    group_clause = f" GROUP BY {', '.join(group_parts)}" if group_parts else ""
    fill_clause = " fill(none)" if interval else ""
    tail = f" WHERE {' AND '.join(where)}{group_clause}{fill_clause}"

    return {
        "latency": (
            f'SELECT mean("value") AS "mean", percentile("value", 95) AS "p95" '
            f'FROM "{MEASUREMENT_DURATION}"{tail}',
            params,
        ),
        "requests": (
            f'SELECT count("value") AS "count" FROM "{MEASUREMENT_REQUESTS}"{tail}',
            params,
        ),
        "errors": (
            f'SELECT mean("value") AS "mean" FROM "{MEASUREMENT_ERRORS}"{tail}',
            params,
        ),
    }


def _sort_key(row) -> tuple:
    ts = row.time or datetime.min.replace(tzinfo=UTC)
    return (ts, row.flow_id or "", row.step_id or "")


def _pair_key(row) -> tuple[str, str]:
    return (row.flow_id or "", row.step_id or "")


class MetricsEngine:
    def __init__(
        self,
        telemetry: TelemetryStoreClient,
        *,
        run_at_attempts: int = 60,
        run_at_interval_seconds: float = 1.0,
        run_at_timeout_seconds: float = 90.0,
        default_interval: str = "1m",
    ) -> None:
        self._telemetry = telemetry
        self._run_at_attempts = max(1, int(run_at_attempts))
        self._run_at_interval = float(run_at_interval_seconds)
        self._run_at_timeout = float(run_at_timeout_seconds)
        self.default_interval = validate_interval(default_interval)

    async def query_metrics(
        self,
        run_id: Optional[str],
        interval: Optional[str] = None,
        tags: Optional[Mapping[str, str]] = None,
        run_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        *,
        group_by_tags: bool = True,
    ) -> MetricSeriesSet:
        """
        Latency, request-count and error-rate series for one run.

        A missing run id yields three empty series.
        """
        rid = str(run_id or "").strip()
        if not rid:
            return MetricSeriesSet()

        queries = build_series_queries(
            interval=interval,
            tags=tags,
            run_at=run_at,
            end_at=end_at,
            group_by_tags=group_by_tags,
        )
        names = list(queries)
        results = await asyncio.gather(
            *(
                self._telemetry.query(query, {"run_id": rid, **params})
                for query, params in (queries[n] for n in names)
            )
        )
        raw = dict(zip(names, results))

        latency = [
            LatencyRow(
                time=parse_influx_time(r.get("time")),
                flow_id=r.get("flow_id") or None,
                step_id=r.get("step_id") or None,
                mean=r.get("mean"),
                p95=r.get("p95"),
            )
            for r in raw["latency"]
        ]
        requests = [
            CountRow(
                time=parse_influx_time(r.get("time")),
                flow_id=r.get("flow_id") or None,
                step_id=r.get("step_id") or None,
                count=int(r.get("count") or 0),
            )
            for r in raw["requests"]
        ]
        errors = [
            ErrorRateRow(
                time=parse_influx_time(r.get("time")),
                flow_id=r.get("flow_id") or None,
                step_id=r.get("step_id") or None,
                mean=r.get("mean"),
            )
            for r in raw["errors"]
        ]
        return MetricSeriesSet(
            latency=sorted(latency, key=_sort_key),
            requests=sorted(requests, key=_sort_key),
            errors=sorted(errors, key=_sort_key),
        )

    # ------------------------------------------------------------------
    # Run window
    # ------------------------------------------------------------------

    async def _edge_time(self, run_id: str, selector: str) -> Optional[datetime]:
        rows = await self._telemetry.query(
            f'SELECT {selector}("value") AS "value" FROM "{MEASUREMENT_REQUESTS}" '
            f'WHERE "run_history_id" = $run_id',
            {"run_id": str(run_id)},
        )
        for row in rows:
            ts = parse_influx_time(row.get("time"))
            if ts is not None:
                return ts
        return None

    async def get_run_at(self, run_id: str) -> datetime:
        """
        Time of the run's first request.

        Polls until ingestion catches up; raises TelemetryTimeoutError when the
        attempts or the overall timeout run out.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._run_at_timeout
        for attempt in range(1, self._run_at_attempts + 1):
            try:
                ts = await self._edge_time(run_id, "first")
            except Exception as e:
                logger.warning(
                    "runAt lookup for %s failed (attempt %d/%d): %s",
                    run_id,
                    attempt,
                    self._run_at_attempts,
                    e,
                )
                ts = None
            if ts is not None:
                return ts
            remaining = deadline - loop.time()
            if attempt >= self._run_at_attempts or remaining <= 0:
                break
            await asyncio.sleep(min(self._run_at_interval, remaining))
        raise TelemetryTimeoutError(f"No telemetry for run {run_id}; cannot determine runAt")

    async def get_end_at(self, run_id: str) -> datetime:
        """Time of the run's last request; data must already exist."""
        ts = await self._edge_time(run_id, "last")
        if ts is None:
            raise TelemetryTimeoutError(f"No telemetry for run {run_id}; cannot determine endAt")
        return ts

    async def find_run_at(self, run_id: str) -> Optional[datetime]:
        try:
            return await self._edge_time(run_id, "first")
        except Exception as e:
            logger.warning("runAt lookup for %s failed: %s", run_id, e)
            return None

    async def find_end_at(self, run_id: str) -> Optional[datetime]:
        try:
            return await self._edge_time(run_id, "last")
        except Exception as e:
            logger.warning("endAt lookup for %s failed: %s", run_id, e)
            return None

    # ------------------------------------------------------------------
    # Derived metrics
    # ------------------------------------------------------------------

    @staticmethod
    def _derive(
        latency: Iterable[LatencyRow],
        requests: Iterable[CountRow],
        errors: Iterable[ErrorRateRow],
        elapsed_seconds: float,
    ) -> AggregateMetrics:
        latency = list(latency)
        errors = list(errors)
        total = sum(r.count for r in requests)

        means = [r.mean for r in latency if r.mean is not None]
        p95s = [r.p95 for r in latency if r.p95 is not None]
        error_means = [r.mean for r in errors if r.mean is not None]

        error_rate = sum(error_means) / len(error_means) if error_means else 0.0
        throughput = total / elapsed_seconds if elapsed_seconds > 0 else float(total)
        return AggregateMetrics(
            avg_response_time=sum(means) / len(means) if means else 0.0,
            p95_response_time=max(p95s) if p95s else 0.0,
            avg_throughput=throughput,
            error_rate=error_rate,
            success_rate=max(0.0, 1.0 - error_rate),
            total_requests=total,
        )

    async def compute_run_metrics(
        self,
        run_id: str,
        flow_step_pairs: Iterable[tuple[str, str]],
        run_at: datetime,
        end_at: datetime,
    ) -> tuple[list[RunHistoryMetric], AggregateMetrics]:
        """
        One metrics row per (flow, step) pair plus the whole-run aggregate.

        Pairs without telemetry get zero rows. Throughput is the request count over
        ``end_at - run_at`` in seconds.
        """
        elapsed = max(0.0, (end_at - run_at).total_seconds())

        per_step, overall = await asyncio.gather(
            self.query_metrics(run_id, None, None, run_at, end_at, group_by_tags=True),
            self.query_metrics(run_id, None, None, run_at, end_at, group_by_tags=False),
        )

        latency_by_pair: dict[tuple[str, str], list[LatencyRow]] = {}
        requests_by_pair: dict[tuple[str, str], list[CountRow]] = {}
        errors_by_pair: dict[tuple[str, str], list[ErrorRateRow]] = {}
        for row in per_step.latency:
            latency_by_pair.setdefault(_pair_key(row), []).append(row)
        for row in per_step.requests:
            requests_by_pair.setdefault(_pair_key(row), []).append(row)
        for row in per_step.errors:
            errors_by_pair.setdefault(_pair_key(row), []).append(row)

        rows: list[RunHistoryMetric] = []
        for flow_id, step_id in flow_step_pairs:
            key = (flow_id, step_id)
            derived = self._derive(
                latency_by_pair.get(key, []),
                requests_by_pair.get(key, []),
                errors_by_pair.get(key, []),
                elapsed,
            )
            rows.append(
                RunHistoryMetric(
                    run_history_id=run_id,
                    flow_id=flow_id,
                    step_id=step_id,
                    **derived.model_dump(),
                )
            )

        aggregate = self._derive(overall.latency, overall.requests, overall.errors, elapsed)
        return rows, aggregate

    @staticmethod
    def build_points(series: MetricSeriesSet, interval: str) -> MetricPoints:
        """Chart points; throughput is requests per second within each bucket."""
        bucket = interval_seconds(interval)
        latency_by_ts: dict[datetime, list[LatencyRow]] = {}
        count_by_ts: dict[datetime, int] = {}
        errors_by_ts: dict[datetime, list[float]] = {}

        for row in series.latency:
            if row.time is not None:
                latency_by_ts.setdefault(row.time, []).append(row)
        for row in series.requests:
            if row.time is not None:
                count_by_ts[row.time] = count_by_ts.get(row.time, 0) + row.count
        for row in series.errors:
            if row.time is not None and row.mean is not None:
                errors_by_ts.setdefault(row.time, []).append(row.mean)

        latency_points = []
        for ts in sorted(latency_by_ts):
            group = latency_by_ts[ts]
            means = [r.mean for r in group if r.mean is not None]
            p95s = [r.p95 for r in group if r.p95 is not None]
            latency_points.append(
                LatencyPoint(
                    timestamp=ts,
                    avg=sum(means) / len(means) if means else 0.0,
                    p95=max(p95s) if p95s else 0.0,
                )
            )

        return MetricPoints(
            latency=latency_points,
            throughput=[
                ValuePoint(timestamp=ts, value=count_by_ts[ts] / bucket)
                for ts in sorted(count_by_ts)
            ],
            error_rate=[
                ValuePoint(timestamp=ts, value=sum(v) / len(v))
                for ts, v in sorted(errors_by_ts.items())
            ],
        )
