from __future__ import annotations

import json
from typing import Any

import pytest

from hypolab.contracts import (
    extract_first_json_object,
    infer_falsification_plan_status,
    normalize_axis_parameters,
    normalize_axis_values,
    parse_contract,
    strip_code_fence,
)


def _runner(runner_id: str = "toy_1", phase: str = "toy") -> dict[str, Any]:
    return {
        "id": runner_id,
        "goal": "Check the sign of the effect",
        "test_ids": ["T1"],
        "phase": phase,
        "language": "python",
        "filename": f"{runner_id}.py",
        "run_command": f"python3 {runner_id}.py",
        "required_inputs": [],
        "expected_signal": "PASS",
        "failure_signal": "FAIL",
        "code": "print('PASS')",
    }


def _runners_payload(**meta: Any) -> dict[str, Any]:
    return {
        "experiment_runners": {
            "meta": {"plan_version": "experiment-runners-v1", "status": "ready", **meta},
            "hypothesis_snapshot": "Warmer days increase ice cream sales",
            "assumptions": ["daily data"],
            "runners": [_runner()],
            "execution_order": ["toy_1"],
            "next_action": "Run the toy check",
        }
    }


def _falsification_payload() -> dict[str, Any]:
    return {
        "falsification_plan": {
            "meta": {"plan_version": "falsification-plan-v1", "status": "ready"},
            "normalized_claim": {
                "claim": "Warmer days increase ice cream sales",
                "domain": "retail",
                "entities": ["temperature", "sales"],
                "relation": "increases",
                "observables": "daily sales",
                "expected_direction": "positive",
                "conditions": ["summer"],
                "time_scope": "2020-2023",
            },
            "tests": [
                {
                    "id": "T1",
                    "goal": "Sign check",
                    "method": "regression",
                    "minimal_data": "daily series",
                    "procedure": "fit slope",
                    "what_would_falsify": "negative slope",
                    "confounds": "holidays",
                    "falsifier_kind": "mechanism",
                    "phase": "both",
                    "priority": 1,
                }
            ],
            "test_matrix": {
                "axes": [
                    {
                        "axis": "season",
                        "rationale": "seasonality",
                        "parameters": [{"key": "months", "value": [6, 7, 8]}],
                    }
                ],
                "variants": [
                    {
                        "id": "V1",
                        "axis_values": [{"axis": "season", "value": "summer"}],
                        "applies_to_tests": ["T1"],
                        "rationale": "baseline",
                    }
                ],
            },
            "data_requests": ["daily sales by store"],
        },
        "invariants_match": {
            "meta": {"match_version": "invariants-match-v1", "status": "ready", "reason": "matched"},
            "matches": [],
            "overall": {"match_strength": "none", "notes": "", "next_action": "proceed"},
        },
    }


def test_strip_code_fence_only_removes_complete_fences() -> None:
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('```json\n{"a": 1}') == '```json\n{"a": 1}'
    assert strip_code_fence("  plain  ") == "plain"


def test_extract_first_json_object_respects_strings_and_escapes() -> None:
    text = 'Here you go: {"note": "brace } inside \\" quote", "n": {"x": 1}} trailing {"b": 2}'

    extracted = extract_first_json_object(text)

    assert extracted is not None
    assert json.loads(extracted) == {"note": 'brace } inside " quote', "n": {"x": 1}}
    assert extract_first_json_object("no object here") is None
    assert extract_first_json_object('{"open": ') is None


def test_parse_experiment_runners_from_fenced_prose() -> None:
    raw = "```json\n" + json.dumps(_runners_payload()) + "\n```"

    parsed = parse_contract("experiment_runners", raw)

    assert parsed is not None
    body = parsed["experiment_runners"]
    assert body["meta"] == {"plan_version": "experiment-runners-v1", "status": "ready"}
    assert body["runners"][0]["id"] == "toy_1"


def test_parse_experiment_runners_rejects_skipped_without_reason() -> None:
    assert parse_contract("experiment_runners", json.dumps(_runners_payload(status="skipped"))) is None
    assert parse_contract("experiment_runners", json.dumps(_runners_payload(status="skipped", reason="  "))) is None

    parsed = parse_contract(
        "experiment_runners", json.dumps(_runners_payload(status="skipped", reason="normalization incomplete"))
    )
    assert parsed is not None
    assert parsed["experiment_runners"]["meta"]["reason"] == "normalization incomplete"


@pytest.mark.parametrize(
    "mutate",
    [
        lambda body: body["meta"].update(plan_version="experiment-runners-v2"),
        lambda body: body["runners"][0].update(phase="lab"),
        lambda body: body["runners"][0].update(language="rust"),
        lambda body: body["runners"][0].update(test_ids="T1"),
        lambda body: body.update(runners={"toy_1": {}}),
    ],
)
def test_parse_experiment_runners_rejects_invalid_shapes(mutate) -> None:
    payload = _runners_payload()
    mutate(payload["experiment_runners"])

    assert parse_contract("experiment_runners", json.dumps(payload)) is None


def test_parse_contract_never_raises_on_garbage() -> None:
    assert parse_contract("experiment_runners", "") is None
    assert parse_contract("experiment_runners", "[1, 2, 3]") is None
    assert parse_contract("experiment_runners", "{not: json}") is None


def test_parse_contract_unknown_schema_raises_key_error() -> None:
    with pytest.raises(KeyError):
        parse_contract("horoscope", "{}")


def test_falsification_plan_folds_pair_encodings() -> None:
    parsed = parse_contract("falsification_plan", json.dumps(_falsification_payload()))

    assert parsed is not None
    matrix = parsed["falsification_plan"]["test_matrix"]
    assert matrix["axes"][0]["parameters"] == {"months": [6, 7, 8]}
    assert matrix["variants"][0]["axis_values"] == {"season": "summer"}
    assert parsed["falsification_plan"]["tests"][0]["priority"] == 1


def test_falsification_plan_rejects_too_many_variants() -> None:
    payload = _falsification_payload()
    variant = payload["falsification_plan"]["test_matrix"]["variants"][0]
    payload["falsification_plan"]["test_matrix"]["variants"] = [dict(variant, id=f"V{i}") for i in range(6)]

    assert parse_contract("falsification_plan", json.dumps(payload)) is None


def test_falsification_plan_rejects_boolean_priority() -> None:
    payload = _falsification_payload()
    payload["falsification_plan"]["tests"][0]["priority"] = True

    assert parse_contract("falsification_plan", json.dumps(payload)) is None


@pytest.mark.parametrize(
    ("schema", "payload"),
    [
        ("experiment_runners", _runners_payload(status="skipped", reason="waiting on data")),
        ("falsification_plan", _falsification_payload()),
    ],
)
def test_canonical_output_reparses_to_itself(schema: str, payload: dict[str, Any]) -> None:
    first = parse_contract(schema, json.dumps(payload))
    assert first is not None

    second = parse_contract(schema, json.dumps(first))

    assert second == first


def test_literature_contract_normalizes_and_filters_findings() -> None:
    payload = {
        "summary": "  Prior   work exists ",
        "novelty_assessment": "partial_overlap",
        "confidence": "very high",
        "findings": [
            {"title": "A", "url": "https://a.example", "evidence_type": "blog", "relation_to_claim": "supports"},
            {"title": "B", "url": "", "relation_to_claim": "contradicts"},
        ],
    }

    parsed = parse_contract("literature", json.dumps(payload))

    assert parsed is not None
    assert parsed["summary"] == "Prior work exists"
    assert "confidence" not in parsed
    assert parsed["findings"] == [
        {"title": "A", "url": "https://a.example", "evidence_type": "other", "relation_to_claim": "supports"}
    ]


def test_axis_normalizers_accept_interchangeable_encodings() -> None:
    assert normalize_axis_parameters("lag 1-3") == "lag 1-3"
    assert normalize_axis_parameters(["a", "b"]) == ["a", "b"]
    assert normalize_axis_parameters([{"key": "k", "value": 2}]) == {"k": 2}
    assert normalize_axis_parameters([{"value": 2}]) is None
    assert normalize_axis_parameters(3) is None
    assert normalize_axis_values({"x": 1}) == {"x": 1}
    assert normalize_axis_values([{"axis": "x", "value": 1}]) == {"x": 1}
    assert normalize_axis_values("x") is None


def test_infer_falsification_plan_status() -> None:
    assert infer_falsification_plan_status("") == "not_ready"
    assert infer_falsification_plan_status(json.dumps(_falsification_payload())) == "ready"
    assert infer_falsification_plan_status("Status plan/match: ready") == "ready"
    assert infer_falsification_plan_status("plan skipped: normalization_incomplete") == "not_ready"
    assert infer_falsification_plan_status("something else") == "unknown"
