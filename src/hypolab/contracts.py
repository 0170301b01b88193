"""Strict stage-output contracts.

Every parser takes the raw model text, strips a surrounding code fence,
extracts the first balanced JSON object, and validates it against one stage
schema. Parsers return a canonical dict or ``None``; they never raise.
Canonical output re-parses to itself.
"""

from __future__ import annotations

import json
from typing import Any, Callable

from hypolab.constants import MAX_PLAN_VARIANTS
from hypolab.utils import _normalize_inline

_CONFIDENCE = {"low", "medium", "high"}
_PHASES = {"toy", "field", "both"}
_LANGUAGES = {"python", "bash", "pseudo"}
_PLAN_STATUSES = {"ready", "skipped"}
_FALSIFIER_KINDS = {
    "mechanism",
    "confound",
    "boundary",
    "invariance",
    "intervention",
    "measurement",
    "alternative",
    "robustness",
    "counterexample",
}
_MATCH_STRENGTHS = {"strong", "moderate", "weak"}
_OVERALL_STRENGTHS = {"none", "weak", "moderate", "strong"}
_NOVELTY = {"likely_novel", "partial_overlap", "well_established", "insufficient_evidence"}
_EVIDENCE_TYPES = {"paper", "preprint", "survey", "technical_report", "repository"}


class _Invalid(Exception):
    pass


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------


def strip_code_fence(text: str) -> str:
    trimmed = str(text or "").strip()
    if not trimmed.startswith("```"):
        return trimmed
    lines = trimmed.split("\n")
    if len(lines) < 2 or lines[-1].strip() != "```":
        return trimmed
    return "\n".join(lines[1:-1]).strip()


def extract_first_json_object(text: str) -> str | None:
    raw = str(text or "").strip()
    if not raw:
        return None
    if raw.startswith("{") and raw.endswith("}"):
        return raw
    start = raw.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(raw)):
        ch = raw[index]
        if escaped:
            escaped = False
            continue
        if in_string:
            if ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return raw[start : index + 1]
    return None


def _load_object(raw_text: str) -> dict[str, Any]:
    unwrapped = strip_code_fence(raw_text)
    extracted = (extract_first_json_object(unwrapped) or unwrapped).strip()
    if not (extracted.startswith("{") and extracted.endswith("}")):
        raise _Invalid("no JSON object")
    try:
        parsed = json.loads(extracted)
    except json.JSONDecodeError as exc:
        raise _Invalid(str(exc)) from exc
    if not isinstance(parsed, dict):
        raise _Invalid("not an object")
    return parsed


# ---------------------------------------------------------------------------
# Field validators
# ---------------------------------------------------------------------------


def _record(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise _Invalid("expected object")
    return value


def _string(value: Any) -> str:
    if not isinstance(value, str):
        raise _Invalid("expected string")
    return value.strip()


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise _Invalid("expected list of strings")
    return [item.strip() for item in value]


def _string_or_list(value: Any) -> str | list[str]:
    if isinstance(value, str):
        return value
    return list(_string_list(value))


def _optional(value: Any, validator: Callable[[Any], Any]) -> Any:
    return None if value is None else validator(value)


def _enum(value: Any, allowed: set[str]) -> str:
    if value not in allowed:
        raise _Invalid(f"unexpected value {value!r}")
    return value


def _confidence(value: Any) -> str | None:
    return value if value in _CONFIDENCE else None


def _drop_none(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


# ---------------------------------------------------------------------------
# Interchangeable encodings
# ---------------------------------------------------------------------------


def normalize_axis_parameters(value: Any) -> str | list[str] | dict[str, Any] | None:
    """Axis parameters: a string, a list of strings, a map, or ``[{key, value}]`` pairs.

    The pair encoding is folded into a map; anything else is ``None``.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, list):
        if all(isinstance(item, str) for item in value):
            return list(value)
        return _pairs_to_map(value, "key")
    return None


def normalize_axis_values(value: Any) -> dict[str, Any] | None:
    """Variant axis values: a map or ``[{axis, value}]`` pairs."""
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, list):
        return _pairs_to_map(value, "axis")
    return None


def _pairs_to_map(items: list[Any], key_field: str) -> dict[str, Any] | None:
    mapped: dict[str, Any] = {}
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get(key_field), str):
            return None
        mapped[item[key_field]] = item.get("value")
    return mapped


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


def _validate_dialectic(parsed: dict[str, Any]) -> dict[str, Any]:
    return _drop_none(
        {
            "summary": _string(parsed.get("summary")),
            "hypothesis": _string(parsed.get("hypothesis")),
            "antithesis": _string(parsed.get("antithesis")),
            "synthesis": _string(parsed.get("synthesis")),
            "confidence": _confidence(parsed.get("confidence")),
        }
    )


def _validate_baconian(parsed: dict[str, Any]) -> dict[str, Any]:
    idols = _record(parsed.get("idols"))
    clearing = _record(parsed.get("clearing"))
    tables = _record(parsed.get("truth_tables"))
    quadrants = ("tribe", "cave", "market", "theater")
    return _drop_none(
        {
            "summary": _string(parsed.get("summary")),
            "idols": {key: _string(idols.get(key)) for key in quadrants},
            "clearing": {key: _string(clearing.get(key)) for key in quadrants},
            "truth_tables": {key: _string(tables.get(key)) for key in ("presence", "absence", "degrees")},
            "forma_veritas": _string(parsed.get("forma_veritas")),
            "confidence": _confidence(parsed.get("confidence")),
        }
    )


def _validate_orchestrator(parsed: dict[str, Any]) -> dict[str, Any]:
    return {
        "dialectic": _validate_dialectic(_record(parsed.get("dialectic"))),
        "baconian": _validate_baconian(_record(parsed.get("baconian"))),
    }


def _validate_literature(parsed: dict[str, Any]) -> dict[str, Any]:
    summary = _normalize_inline(parsed.get("summary")) if isinstance(parsed.get("summary"), str) else ""
    if not summary:
        raise _Invalid("literature summary missing")
    novelty = _enum(parsed.get("novelty_assessment"), _NOVELTY)

    def _inline_list(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        items = [_normalize_inline(item) for item in value if isinstance(item, str)]
        return [item for item in items if item][:20]

    findings: list[dict[str, str]] = []
    for item in parsed.get("findings") if isinstance(parsed.get("findings"), list) else []:
        if not isinstance(item, dict):
            continue
        title = _normalize_inline(item.get("title")) if isinstance(item.get("title"), str) else ""
        url = item.get("url").strip() if isinstance(item.get("url"), str) else ""
        relation = (
            _normalize_inline(item.get("relation_to_claim"))
            if isinstance(item.get("relation_to_claim"), str)
            else ""
        )
        if not title or not url or not relation:
            continue
        evidence_type = str(item.get("evidence_type", "")).strip()
        findings.append(
            {
                "title": title,
                "url": url,
                "evidence_type": evidence_type if evidence_type in _EVIDENCE_TYPES else "other",
                "relation_to_claim": relation,
            }
        )
        if len(findings) >= 15:
            break
    return _drop_none(
        {
            "summary": summary,
            "novelty_assessment": novelty,
            "confidence": _confidence(parsed.get("confidence")),
            "search_queries": _inline_list(parsed.get("search_queries")),
            "findings": findings,
            "overlap_signals": _inline_list(parsed.get("overlap_signals")),
            "novelty_signals": _inline_list(parsed.get("novelty_signals")),
            "gaps": _inline_list(parsed.get("gaps")),
            "recommended_next_steps": _inline_list(parsed.get("recommended_next_steps")),
        }
    )


def _validate_normalization(parsed: dict[str, Any]) -> dict[str, Any]:
    meta = _record(parsed.get("meta"))
    body = _record(parsed.get("hypothesis_normalization"))
    if meta.get("normalization_version") != "normalization-v1":
        raise _Invalid("normalization version")
    mode = _enum(meta.get("mode"), {"strict", "autocorrect"})
    normalized: dict[str, Any] = {
        key: _string(body.get(key))
        for key in ("claim", "domain", "relation", "expected_direction", "conditions", "time_scope", "notes")
    }
    for key in ("entities", "observables", "missing_fields", "clarification_questions"):
        normalized[key] = _string_list(body.get(key))
    if not isinstance(body.get("clarification_required"), bool):
        raise _Invalid("clarification_required must be boolean")
    normalized["clarification_required"] = body["clarification_required"]
    plan = body.get("clarification_plan")
    if plan is not None:
        plan = _record(plan)
        normalized["clarification_plan"] = _drop_none(
            {
                "required_fields": _optional(plan.get("required_fields"), _string_list),
                "questions": _optional(plan.get("questions"), _string_list),
                "proxy_observables": _optional(plan.get("proxy_observables"), _string_list),
                "proxy_time_scope": _optional(plan.get("proxy_time_scope"), _string),
                "proxy_conditions": _optional(plan.get("proxy_conditions"), _string),
                "weakened_claim": _optional(plan.get("weakened_claim"), _string),
                "experiment_design_min": _optional(plan.get("experiment_design_min"), _string),
            }
        )
    return {
        "meta": {"normalization_version": "normalization-v1", "mode": mode},
        "hypothesis_normalization": normalized,
    }


def _validate_plan_test(raw: Any) -> dict[str, Any]:
    test = _record(raw)
    parsed = {
        key: _string(test.get(key))
        for key in ("id", "goal", "method", "minimal_data", "procedure", "what_would_falsify", "confounds")
    }
    if test.get("falsifier_kind") is not None:
        parsed["falsifier_kind"] = _enum(test.get("falsifier_kind"), _FALSIFIER_KINDS)
    if test.get("phase") is not None:
        parsed["phase"] = _enum(test.get("phase"), _PHASES)
    priority = test.get("priority")
    if priority is not None:
        if isinstance(priority, bool) or not isinstance(priority, (int, float)):
            raise _Invalid("priority must be a number")
        parsed["priority"] = priority
    return parsed


def _validate_invariants_match(raw: Any) -> dict[str, Any]:
    match_block = _record(raw)
    meta = _record(match_block.get("meta"))
    if meta.get("match_version") != "invariants-match-v1":
        raise _Invalid("match version")
    matches_raw = match_block.get("matches")
    if not isinstance(matches_raw, list):
        raise _Invalid("matches must be a list")
    overall = _record(match_block.get("overall"))
    matches: list[dict[str, Any]] = []
    for item in matches_raw:
        match = _record(item)
        profile = _record(match.get("evidence_profile"))
        flags = ("needs_gauge", "needs_nulls", "needs_bootstrap", "needs_intervention")
        if not all(isinstance(profile.get(flag), bool) for flag in flags):
            raise _Invalid("evidence_profile flags must be boolean")
        matches.append(
            {
                "invariant_name": _string(match.get("invariant_name")),
                "gate_id": _string(match.get("gate_id")),
                "match_strength": _enum(match.get("match_strength"), _MATCH_STRENGTHS),
                "why": _string(match.get("why")),
                "evidence_profile": {flag: profile[flag] for flag in flags},
                "dataset_hints": _string_list(match.get("dataset_hints")),
                "runner_implications": _string_list(match.get("runner_implications")),
            }
        )
    return {
        "meta": _drop_none(
            {
                "match_version": "invariants-match-v1",
                "status": _enum(meta.get("status"), _PLAN_STATUSES),
                "reason": _string(meta.get("reason")),
                "catalog_sha256": _optional(meta.get("catalog_sha256"), _string),
            }
        ),
        "matches": matches,
        "overall": {
            "match_strength": _enum(overall.get("match_strength"), _OVERALL_STRENGTHS),
            "notes": _string(overall.get("notes")),
            "next_action": _string(overall.get("next_action")),
        },
    }


def _validate_falsification_plan(parsed: dict[str, Any]) -> dict[str, Any]:
    plan = _record(parsed.get("falsification_plan"))
    meta = _record(plan.get("meta"))
    claim = _record(plan.get("normalized_claim"))
    if meta.get("plan_version") != "falsification-plan-v1":
        raise _Invalid("plan version")
    status = _enum(meta.get("status"), _PLAN_STATUSES)
    tests_raw = plan.get("tests")
    matrix = _record(plan.get("test_matrix"))
    if not isinstance(tests_raw, list):
        raise _Invalid("tests must be a list")
    data_requests = _string_list(plan.get("data_requests"))

    normalized_claim: dict[str, Any] = {}
    for key in ("claim", "domain", "entities", "relation", "observables", "expected_direction", "conditions", "time_scope"):
        if key in {"entities", "observables", "conditions"}:
            normalized_claim[key] = _string_or_list(claim.get(key))
        else:
            normalized_claim[key] = _string(claim.get(key))

    axes_raw = matrix.get("axes")
    variants_raw = matrix.get("variants")
    if not isinstance(axes_raw, list) or not isinstance(variants_raw, list):
        raise _Invalid("test_matrix axes/variants must be lists")
    if len(variants_raw) > MAX_PLAN_VARIANTS:
        raise _Invalid("too many variants")
    axes: list[dict[str, Any]] = []
    for item in axes_raw:
        axis = _record(item)
        parameters = normalize_axis_parameters(axis.get("parameters"))
        if parameters is None:
            raise _Invalid("axis parameters")
        axes.append(
            {
                "axis": _string(axis.get("axis")),
                "rationale": _string(axis.get("rationale")),
                "parameters": parameters,
            }
        )
    variants: list[dict[str, Any]] = []
    for item in variants_raw:
        variant = _record(item)
        axis_values = normalize_axis_values(variant.get("axis_values"))
        if axis_values is None:
            raise _Invalid("variant axis_values")
        variants.append(
            {
                "id": _string(variant.get("id")),
                "axis_values": axis_values,
                "applies_to_tests": _string_list(variant.get("applies_to_tests")),
                "rationale": _string(variant.get("rationale")),
            }
        )

    reason = meta.get("reason")
    return {
        "falsification_plan": {
            "meta": _drop_none(
                {
                    "plan_version": "falsification-plan-v1",
                    "status": status,
                    "reason": reason.strip() if isinstance(reason, str) else None,
                }
            ),
            "normalized_claim": normalized_claim,
            "tests": [_validate_plan_test(item) for item in tests_raw],
            "test_matrix": {"axes": axes, "variants": variants},
            "data_requests": data_requests,
        },
        "invariants_match": _validate_invariants_match(parsed.get("invariants_match")),
    }


def _validate_runner(raw: Any) -> dict[str, Any]:
    runner = _record(raw)
    return {
        "id": _string(runner.get("id")),
        "goal": _string(runner.get("goal")),
        "test_ids": _string_list(runner.get("test_ids")),
        "phase": _enum(runner.get("phase"), _PHASES),
        "language": _enum(runner.get("language"), _LANGUAGES),
        "filename": _string(runner.get("filename")),
        "run_command": _string(runner.get("run_command")),
        "required_inputs": _string_list(runner.get("required_inputs")),
        "expected_signal": _string(runner.get("expected_signal")),
        "failure_signal": _string(runner.get("failure_signal")),
        "code": _string(runner.get("code")),
    }


def _validate_experiment_runners(parsed: dict[str, Any]) -> dict[str, Any]:
    body = _record(parsed.get("experiment_runners"))
    meta = _record(body.get("meta"))
    if meta.get("plan_version") != "experiment-runners-v1":
        raise _Invalid("plan version")
    status = _enum(meta.get("status"), _PLAN_STATUSES)
    reason = _optional(meta.get("reason"), _string)
    if status == "skipped" and not reason:
        raise _Invalid("status=skipped requires reason")
    runners_raw = body.get("runners")
    if not isinstance(runners_raw, list):
        raise _Invalid("runners must be a list")
    return {
        "experiment_runners": {
            "meta": _drop_none(
                {"plan_version": "experiment-runners-v1", "status": status, "reason": reason}
            ),
            "hypothesis_snapshot": _string(body.get("hypothesis_snapshot")),
            "assumptions": _string_list(body.get("assumptions")),
            "runners": [_validate_runner(item) for item in runners_raw],
            "execution_order": _string_list(body.get("execution_order")),
            "next_action": _string(body.get("next_action")),
        }
    }


SCHEMA_VALIDATORS: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
    "dialectic": _validate_dialectic,
    "baconian": _validate_baconian,
    "orchestrator": _validate_orchestrator,
    "literature": _validate_literature,
    "normalization": _validate_normalization,
    "falsification_plan": _validate_falsification_plan,
    "experiment_runners": _validate_experiment_runners,
}


def parse_contract(schema_id: str, raw_text: str) -> dict[str, Any] | None:
    validator = SCHEMA_VALIDATORS.get(schema_id)
    if validator is None:
        raise KeyError(f"unknown contract schema: {schema_id}")
    try:
        return validator(_load_object(raw_text))
    except _Invalid:
        return None


def parse_json_object_loose(raw_text: str) -> dict[str, Any] | None:
    """Best-effort object extraction for upstream documents that are not schema-checked."""
    try:
        return _load_object(raw_text)
    except _Invalid:
        return None


# ---------------------------------------------------------------------------
# Plan status helpers
# ---------------------------------------------------------------------------


def infer_falsification_plan_status(raw_text: str | None) -> str:
    """Return ``ready``, ``not_ready`` or ``unknown`` for an upstream plan document."""
    text = str(raw_text or "").strip()
    if not text:
        return "not_ready"
    parsed = parse_json_object_loose(text)
    if parsed is not None:
        plan = parsed.get("falsification_plan")
        meta = plan.get("meta") if isinstance(plan, dict) else None
        status = meta.get("status") if isinstance(meta, dict) else None
        if isinstance(status, str):
            return "ready" if status.strip().lower() == "ready" else "not_ready"
    lowered = text.lower()
    if (
        "status plan/match: ready" in lowered
        or "status plan: ready" in lowered
        or '"status":"ready"' in lowered.replace(" ", "")
    ):
        return "ready"
    if "skipped" in lowered or "normalization_incomplete" in lowered or "falsification_incomplete" in lowered:
        return "not_ready"
    return "unknown"
