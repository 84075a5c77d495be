import json
import random
import re

import pytest


def _scenario(flows=None, **overrides):
    from loadpilot.models.scenario import Scenario

    data = {
        "id": "scn-1",
        "user_id": "user-1",
        "name": "Checkout",
        "vus": 5,
        "duration": 30,
        "flows": flows
        if flows is not None
        else [
            {
                "id": "flow-a",
                "name": "Browse",
                "weight": 1,
                "steps": [
                    {
                        "id": "step-1",
                        "name": "List products",
                        "type": "API",
                        "config": {
                            "endpoint": "https://shop.test/products",
                            "method": "get",
                            "headers": {"Accept": "application/json"},
                        },
                    },
                    {
                        "id": "step-2",
                        "name": "Landing page",
                        "type": "BROWSER",
                        "config": {"url": "https://shop.test/"},
                    },
                ],
            },
            {
                "id": "flow-b",
                "name": "Buy",
                "weight": 3,
                "steps": [
                    {
                        "id": "step-3",
                        "name": "Create order",
                        "type": "API",
                        "config": {
                            "endpoint": "https://shop.test/orders",
                            "method": "POST",
                            "bodyType": "JSON",
                            "payload": {"sku": "A-1", "qty": 2},
                        },
                    }
                ],
            },
        ],
    }
    data.update(overrides)
    return Scenario.model_validate(data)


def test_generate_script_is_deterministic():
    from loadpilot.core.script_generator import generate_script

    scenario = _scenario()
    assert generate_script(scenario, "run-1") == generate_script(scenario, "run-1")
    assert generate_script(scenario, "run-1") != generate_script(scenario, "run-2")


def test_generate_script_options_and_metrics():
    from loadpilot.core.script_generator import generate_script

    script = generate_script(_scenario(), "run-1")

    assert "vus: 5," in script
    assert 'duration: "30s",' in script
    assert 'new Rate("errors")' in script
    assert 'new Trend("request_duration")' in script
    assert '"errors": [\'rate<0.1\']' in script
    assert '"request_duration": [\'p(95)<500\']' in script
    assert '{"run_history_id": "run-1", "scenario_id": "scn-1"}' in script


def test_generate_script_renders_each_step_kind():
    from loadpilot.core.script_generator import generate_script

    script = generate_script(_scenario(), "run-1")

    # API step: upper-cased method, headers and per-request tags
    assert 'http.request("GET", "https://shop.test/products", null' in script
    assert '{"Accept": "application/json"}' in script
    assert '{"flow_id": "flow-a", "step_id": "step-1"}' in script
    # BROWSER step: plain GET, no body, no headers
    assert 'http.request("GET", "https://shop.test/", null, { headers: {}' in script
    # Object payloads are sent as JSON text
    assert '"{\\"qty\\": 2, \\"sku\\": \\"A-1\\"}"' in script
    assert "function flow_0()" in script
    assert "function flow_1()" in script
    assert "const CUMULATIVE_WEIGHTS = [1.0, 4.0];" in script
    assert script.count("sleep(1);") == 3


def test_generate_script_sends_string_payload_verbatim():
    from loadpilot.core.script_generator import generate_script

    scenario = _scenario(
        flows=[
            {
                "id": "f",
                "name": "Raw",
                "steps": [
                    {
                        "id": "s",
                        "name": "Post text",
                        "type": "API",
                        "config": {
                            "endpoint": "https://x.test",
                            "method": "POST",
                            "payload": "a=1&b=2",
                        },
                    }
                ],
            }
        ]
    )
    script = generate_script(scenario, "r")
    assert 'http.request("POST", "https://x.test", "a=1&b=2"' in script


def test_generate_script_requires_flows():
    from loadpilot.core.script_generator import generate_script

    with pytest.raises(ValueError):
        generate_script(_scenario(flows=[]), "run-1")


def test_flow_selection_converges_to_weights():
    from loadpilot.core.script_generator import cumulative_weights, select_flow_index

    scenario = _scenario()
    cumulative = cumulative_weights(scenario.flows)
    total = cumulative[-1]

    rng = random.Random(1234)
    n = 40_000
    counts = [0, 0]
    for _ in range(n):
        counts[select_flow_index(cumulative, rng.random() * total)] += 1

    assert counts[0] / n == pytest.approx(0.25, abs=0.02)
    assert counts[1] / n == pytest.approx(0.75, abs=0.02)


def test_generated_selector_uses_the_same_partition():
    from loadpilot.core.script_generator import cumulative_weights, generate_script

    scenario = _scenario()
    script = generate_script(scenario, "run-1")

    emitted = re.search(r"^const CUMULATIVE_WEIGHTS = (.*);$", script, re.MULTILINE)
    total = re.search(r"^const TOTAL_WEIGHT = (.*);$", script, re.MULTILINE)
    cumulative = cumulative_weights(scenario.flows)
    assert json.loads(emitted.group(1)) == cumulative
    assert json.loads(total.group(1)) == cumulative[-1]

    # First flow whose cumulative weight exceeds the point, as select_flow_index does.
    assert "const point = Math.random() * TOTAL_WEIGHT;" in script
    assert "if (point < CUMULATIVE_WEIGHTS[mid]) {" in script
    assert "return lo < FLOWS.length ? FLOWS[lo] : FLOWS[0];" in script


def test_select_flow_index_edges():
    from loadpilot.core.script_generator import select_flow_index

    assert select_flow_index([1.0, 4.0], 0.0) == 0
    assert select_flow_index([1.0, 4.0], 1.0) == 1
    assert select_flow_index([1.0, 4.0], 3.999) == 1
    # Out of range and zero total fall back to the first flow.
    assert select_flow_index([1.0, 4.0], 4.0) == 0
    assert select_flow_index([0.0, 0.0], 0.0) == 0
    assert select_flow_index([], 0.5) == 0
    # Zero-weight flows are never chosen.
    assert select_flow_index([0.0, 2.0], 0.0) == 1
