"""
k6 script generation.

Turns a scenario into a self-contained k6 script. Generation is a pure function of
(scenario, run id): identical input always yields identical text, so every literal
is emitted through ``json.dumps(..., sort_keys=True)`` and identifiers are derived
from positions rather than user-supplied names.
"""

from __future__ import annotations

import bisect
import json
from typing import Any, Sequence

from loadpilot.models.scenario import ApiStep, BrowserStep, Scenario, ScenarioFlow

ERROR_RATE_METRIC = "errors"
REQUEST_DURATION_METRIC = "request_duration"

_HEADER = """\
import http from 'k6/http';
import { check, sleep } from 'k6';
import { Rate, Trend } from 'k6/metrics';

const errorRate = new Rate(%(errors)s);
const requestDuration = new Trend(%(duration)s);

export const options = {
  vus: %(vus)d,
  duration: %(duration_literal)s,
  tags: %(global_tags)s,
  thresholds: {
    %(errors)s: ['rate<0.1'],
    %(duration)s: ['p(95)<500'],
  },
};
"""

_SELECTOR = """\
const FLOWS = [%(flow_names)s];
const CUMULATIVE_WEIGHTS = %(cumulative)s;
const TOTAL_WEIGHT = %(total)s;

function selectFlow() {
  if (!(TOTAL_WEIGHT > 0)) {
    return FLOWS[0];
  }
  const point = Math.random() * TOTAL_WEIGHT;
  let lo = 0;
  let hi = CUMULATIVE_WEIGHTS.length;
  while (lo < hi) {
    const mid = (lo + hi) >> 1;
    if (point < CUMULATIVE_WEIGHTS[mid]) {
      hi = mid;
    } else {
      lo = mid + 1;
    }
  }
  return lo < FLOWS.length ? FLOWS[lo] : FLOWS[0];
}

export default function () {
  selectFlow()();
}
"""


def _js(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def cumulative_weights(flows: Sequence[ScenarioFlow]) -> list[float]:
    """Running sum of flow weights, in flow order."""
    out: list[float] = []
    total = 0.0
    for flow in flows:
        total += max(float(flow.weight), 0.0)
        out.append(total)
    return out


def select_flow_index(cumulative: Sequence[float], point: float) -> int:
    """
    Index of the flow owning ``point`` in ``[0, total)``.

    Same partitioning as the generated ``selectFlow``: the first flow whose
    cumulative weight exceeds the point. Out-of-range points and a zero total fall
    back to the first flow.
    """
    if not cumulative or not cumulative[-1] > 0:
        return 0
    idx = bisect.bisect_right(cumulative, point)
    return idx if idx < len(cumulative) else 0


def _request_args(step: ApiStep | BrowserStep) -> tuple[str, str, str, str]:
    """(method, url, body, headers) JS literals for one step."""
    if isinstance(step, BrowserStep):
        return _js("GET"), _js(step.config.url), "null", _js({})

    cfg = step.config
    payload = cfg.payload
    if payload is None:
        body = "null"
    elif isinstance(payload, str):
        body = _js(payload)
    else:
        # k6 sends strings verbatim; objects go out JSON-encoded.
        body = _js(_js(payload))
    return _js(cfg.method.value), _js(cfg.endpoint), body, _js(cfg.headers or {})


def _render_step(flow: ScenarioFlow, flow_idx: int, step, step_idx: int) -> str:
    var = f"step_{flow_idx}_{step_idx}"
    method, url, body, headers = _request_args(step)
    tags = _js({"flow_id": flow.id, "step_id": step.id})
    check_label = _js(f"{step.name} status is 2xx")
    return (
        f"  const {var}Tags = {tags};\n"
        f"  const {var}Res = http.request({method}, {url}, {body}, "
        f"{{ headers: {headers}, tags: {var}Tags }});\n"
        f"  check({var}Res, {{ {check_label}: (r) => r.status >= 200 && r.status < 300 }});\n"
        f"  errorRate.add({var}Res.status >= 400, {var}Tags);\n"
        f"  requestDuration.add({var}Res.timings.duration, {var}Tags);\n"
        f"  sleep(1);\n"
    )


def _render_flow(flow: ScenarioFlow, flow_idx: int) -> str:
    body = "\n".join(
        _render_step(flow, flow_idx, step, step_idx)
        for step_idx, step in enumerate(flow.steps)
    )
    return f"// {_js(flow.name)}\nfunction flow_{flow_idx}() {{\n{body}}}\n"


def generate_script(scenario: Scenario, run_id: str) -> str:
    """
    Render the k6 script for one run of ``scenario``.

    Raises:
        ValueError: if the scenario has no flows.
    """
    if not scenario.flows:
        raise ValueError(f"Scenario {scenario.id} has no flows")

    header = _HEADER % {
        "errors": _js(ERROR_RATE_METRIC),
        "duration": _js(REQUEST_DURATION_METRIC),
        "vus": int(scenario.vus),
        "duration_literal": _js(f"{int(scenario.duration)}s"),
        "global_tags": _js(
            {"run_history_id": str(run_id), "scenario_id": scenario.id}
        ),
    }
    flows = "\n".join(_render_flow(flow, i) for i, flow in enumerate(scenario.flows))

    cumulative = cumulative_weights(scenario.flows)
    selector = _SELECTOR % {
        "flow_names": ", ".join(f"flow_{i}" for i in range(len(scenario.flows))),
        "cumulative": _js(cumulative),
        "total": _js(cumulative[-1]),
    }
    return f"{header}\n{flows}\n{selector}"
