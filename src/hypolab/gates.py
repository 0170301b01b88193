"""Hypolab gates: layered evidence verdicts over runner execution results.

``evaluate_runner_gates`` is a pure function of the plan, the execution
results, the dependency-install error and the upstream context gates. The
order in which the stage decision is derived matters:

1. toy truth assessment (contract verdicts first, then output signals);
2. runner contract (every attempted run ok, no install/runtime errors);
3. field advancement (toy executed, not FAIL, no toy execution failure);
4. evidence sufficiency (real dataset, rows, folds, semantic fit);
5. stage decision, then universal gates that may only lower it.
"""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable

from hypolab.constants import (
    AUTO_FIELD_RUNNER_PREFIX,
    DEFINITIVE_FAIL,
    DEFINITIVE_PASS,
    EVIDENCE_CONTRACT_PREFIX,
    EVIDENCE_MIN_FOLDS,
    EVIDENCE_MIN_ROWS,
    FIELD_EVIDENCE_MARKER_PATTERN,
    GATE_FAIL,
    GATE_PASS,
    GATE_REPORT_FILE_NAME,
    GATE_REPORT_SCHEMA,
    GATE_UNRESOLVED,
    NEEDS_FIELD,
    PROVISIONAL_PASS,
    REJECT_EARLY,
    RUNNERS_OUTPUT_DIR_NAME,
)
from hypolab.evidence import (
    ROW_COUNT_PATTERNS,
    detect_run_signals,
    has_concrete_dataset_reference,
    has_dataset_signal,
    has_disallowed_dataset_reference,
    has_runtime_error_signal,
    has_strong_fail_signal,
    infer_local_dataset_evidence,
    parse_first_bool_metric,
    parse_first_float_metric,
    parse_max_metric,
)
from hypolab.models import ExperimentPlan, RunnerDefinition, RunnerExecutionResult, SemanticProfile
from hypolab.semantic import evaluate_semantic_fit
from hypolab.utils import _append_log, _normalize_inline, _resolve_config_dir, _utc_now, _write_json

_FOLD_PATTERNS = (
    re.compile(r"\blobo[_\s-]?folds?\s*[:=]\s*(\d+)\b", re.IGNORECASE),
    re.compile(r"\bfolds?\s*[:=]\s*(\d+)\b", re.IGNORECASE),
)
_NUMBER = r"(-?\d+(?:\.\d+)?)"
_FLOAT_METRIC_PATTERNS = {
    "delta_bits": re.compile(r"\bdelta[_\s-]?bits?\s*[:=]\s*" + _NUMBER, re.IGNORECASE),
    "delta_bic": re.compile(r"\bdelta[_\s-]?bic\s*[:=]\s*" + _NUMBER, re.IGNORECASE),
    "h4": re.compile(r"\bh4\s*[:=]\s*" + _NUMBER, re.IGNORECASE),
    "h2": re.compile(r"\bh2\s*[:=]\s*" + _NUMBER, re.IGNORECASE),
    "frag": re.compile(r"\bfrag(?:mentation)?\s*[:=]\s*" + _NUMBER, re.IGNORECASE),
    "energy_available": re.compile(r"\benergy(?:\.|_|\s*)available\s*[:=]\s*" + _NUMBER, re.IGNORECASE),
    "energy_required": re.compile(r"\benergy(?:\.|_|\s*)required\s*[:=]\s*" + _NUMBER, re.IGNORECASE),
    "energy_delta": re.compile(r"\benergy(?:\.|_|\s*)delta\s*[:=]\s*" + _NUMBER, re.IGNORECASE),
    "information_delta_bits": re.compile(
        r"\binformation(?:\.|_|\s*)delta[_\s-]?bits?\s*[:=]\s*" + _NUMBER, re.IGNORECASE
    ),
    "information_delta_bic": re.compile(
        r"\binformation(?:\.|_|\s*)delta[_\s-]?bic\s*[:=]\s*" + _NUMBER, re.IGNORECASE
    ),
}
_LOBO_PASS_PATTERN = re.compile(
    r"\blobo(?:\.|_|\s*)pass\s*[:=]\s*(true|false|pass|fail|yes|no|1|0)\b", re.IGNORECASE
)
_EXISTENCE_PATTERN = re.compile(r"\bexistence\s*[:=]\s*(EXISTS|INEFFICIENT|NONEXISTENT)\b", re.IGNORECASE)
_TOPOLOGY_PATTERN = re.compile(r"\btopology\s*[:=]\s*([a-zA-Z0-9_.:-]+)\b", re.IGNORECASE)
_UMC_KEYS = ("delta_bits", "delta_bic", "h4", "h2", "frag")
_LEDGER_KEYS = (
    "energy_available",
    "energy_required",
    "energy_delta",
    "information_delta_bits",
    "information_delta_bic",
)
_VALID_DATASET_FORMATS = {"csv", "tsv", "jsonl", "parquet"}
_PENDING_DECISIONS = {DEFINITIVE_PASS, PROVISIONAL_PASS, NEEDS_FIELD}
_DOWNGRADE_SUFFIX = " (downgraded to UNRESOLVED while real field evidence is still missing)."
_LEDGER_TOLERANCE = 1e-6

NEXT_ACTIONS = {
    PROVISIONAL_PASS: "Continue to field to elevate evidence (n_rows>=30, lobo_folds>=2).",
    NEEDS_FIELD: "Find/download a real dataset and run field runners before concluding.",
    DEFINITIVE_PASS: "Advance to the next pipeline stage.",
    DEFINITIVE_FAIL: "Fix runner contract/environment and repeat toy phase.",
}
REJECT_AFTER_TOY_FAIL_ACTION = (
    "Stop: toy falsified the claim. Close with refutation or reformulate hypothesis before rerunning."
)
REJECT_AUTO_REPAIR_ACTION = (
    "Auto-repair: update FalsificationPlan with observed FAIL signals and regenerate toy runners."
)
DATASET_DECISION_OPTIONS = (
    {
        "label": "Provide URL/path now (Recommended)",
        "description": "You provide a real dataset that can operationalize the claim tests and field is retried.",
    },
    {
        "label": "Authorize extended web search",
        "description": "Try additional web discovery for datasets with measurable variables/proxies.",
    },
    {
        "label": "Use provisional synthetic",
        "description": "Allow provisional progress without definitive closure.",
    },
)


# ---------------------------------------------------------------------------
# Verdict helpers
# ---------------------------------------------------------------------------


def gate(status: str, reason: str) -> dict[str, str]:
    return {"status": status, "reason": reason}


def overall_status(statuses: Iterable[str]) -> str:
    """FAIL if any gate failed, PASS only if every gate passed, else UNRESOLVED."""
    statuses = list(statuses)
    if GATE_FAIL in statuses:
        return GATE_FAIL
    if statuses and all(status == GATE_PASS for status in statuses):
        return GATE_PASS
    return GATE_UNRESOLVED


def tri_gate_from_decision(decision: str) -> str:
    if decision == DEFINITIVE_PASS:
        return GATE_PASS
    if decision in (REJECT_EARLY, DEFINITIVE_FAIL):
        return GATE_FAIL
    return GATE_UNRESOLVED


def dataset_decision_prompt() -> dict[str, Any]:
    """Question offered to the user once automatic dataset resolution is exhausted."""
    return {
        "header": "Dataset",
        "question": (
            "No real tabular dataset was resolved automatically for the field phase "
            "(with measurable variables/proxies to test this claim). How do you want to continue?"
        ),
        "options": [dict(option) for option in DATASET_DECISION_OPTIONS],
        "multi_select": False,
    }


# ---------------------------------------------------------------------------
# Upstream context gates
# ---------------------------------------------------------------------------


def _nonempty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(_normalize_inline(value))


def evaluate_normalization_gate(raw: str | None) -> dict[str, str]:
    """``claim_well_formed`` from the normalization stage JSON."""
    text = (raw or "").strip()
    if not text:
        return gate(GATE_UNRESOLVED, "No normalization_json available to evaluate claim_well_formed.")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return gate(GATE_UNRESOLVED, "normalization_json is not valid JSON (unstructured input).")
    normalization = parsed.get("hypothesis_normalization") if isinstance(parsed, dict) else None
    if not isinstance(normalization, dict):
        return gate(
            GATE_UNRESOLVED,
            "normalization_json does not contain a valid hypothesis_normalization (non-strict format).",
        )

    missing = normalization.get("missing_fields")
    missing = [value for value in missing if isinstance(value, str)] if isinstance(missing, list) else []
    if missing:
        return gate(GATE_UNRESOLVED, f"Missing core fields in normalization: {', '.join(missing)}.")

    observables = normalization.get("observables")
    has_observables = (
        any(_nonempty_str(value) for value in observables)
        if isinstance(observables, list)
        else _nonempty_str(observables)
    )
    if not all(_nonempty_str(normalization.get(key)) for key in ("claim", "domain", "relation")) or not has_observables:
        return gate(
            GATE_UNRESOLVED,
            "Incomplete or inconsistent normalization: missing claim/domain/relation/observables.",
        )
    return gate(GATE_PASS, "Claim normalized with complete core fields and no missing_fields.")


_PLAN_TEST_FIELDS = ("id", "goal", "method", "minimal_data", "procedure", "what_would_falsify", "confounds")


def evaluate_plan_quality_gate(raw: str | None) -> dict[str, str]:
    """``falsification_plan_quality`` from the falsification stage JSON."""
    text = (raw or "").strip()
    if not text:
        return gate(GATE_UNRESOLVED, "No falsification_plan_json available to validate plan quality.")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return gate(GATE_UNRESOLVED, "falsification_plan_json is not valid JSON (unstructured input).")
    plan = parsed.get("falsification_plan") if isinstance(parsed, dict) else None
    if not isinstance(plan, dict):
        return gate(
            GATE_UNRESOLVED,
            "falsification_plan_json does not contain a valid falsification_plan (non-strict format).",
        )

    meta = plan.get("meta") if isinstance(plan.get("meta"), dict) else {}
    if meta.get("status") == "skipped":
        return gate(GATE_UNRESOLVED, f"FalsificationPlan skipped ({meta.get('reason') or 'no explicit reason'}).")

    tests = plan.get("tests") if isinstance(plan.get("tests"), list) else []
    matrix = plan.get("test_matrix") if isinstance(plan.get("test_matrix"), dict) else {}
    variants = matrix.get("variants") if isinstance(matrix.get("variants"), list) else []
    axes = matrix.get("axes") if isinstance(matrix.get("axes"), list) else []

    if not tests:
        return gate(GATE_FAIL, "Falsification plan has no tests.")
    if len(variants) > 5:
        return gate(GATE_FAIL, f"Falsification plan exceeds allowed variants ({len(variants)} > 5).")
    if not axes:
        return gate(GATE_FAIL, "Falsification plan has no axes (test_matrix.axes is empty).")
    for test in tests:
        if not isinstance(test, dict) or not all(_nonempty_str(test.get(name)) for name in _PLAN_TEST_FIELDS):
            return gate(GATE_FAIL, "At least one plan test is missing required fields.")
    version = meta.get("plan_version")
    if version != "falsification-plan-v1":
        return gate(GATE_FAIL, f"Invalid plan version ({version or 'unknown'}).")
    return gate(GATE_PASS, "Plan ready with valid tests, bounded matrix and axes present (falsification-plan-v1).")


# ---------------------------------------------------------------------------
# Gate report
# ---------------------------------------------------------------------------


@dataclass
class GateContext:
    normalization_gate: dict[str, str] | None = None
    plan_quality_gate: dict[str, str] | None = None
    claim_profile: SemanticProfile | None = None


@dataclass
class RunnerGateReport:
    toy: dict[str, Any]
    field: dict[str, Any]
    runner_contract: dict[str, str]
    evidence_sufficiency: dict[str, Any]
    stage_decision: str
    stage_reason: str
    next_action: str
    gate_stack: dict[str, Any] = field(default_factory=dict)

    @property
    def has_real_dataset(self) -> bool:
        return bool(self.evidence_sufficiency.get("has_real_dataset"))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RunnerGateReport":
        return cls(
            toy=dict(payload.get("toy") or {}),
            field=dict(payload.get("field") or {}),
            runner_contract=dict(payload.get("runner_contract") or {}),
            evidence_sufficiency=dict(payload.get("evidence_sufficiency") or {}),
            stage_decision=str(payload.get("stage_decision", NEEDS_FIELD)),
            stage_reason=str(payload.get("stage_reason", "")),
            next_action=str(payload.get("next_action", "")),
            gate_stack=dict(payload.get("gate_stack") or {}),
        )


def _phase(run: RunnerExecutionResult, runner: RunnerDefinition | None) -> str:
    if runner is not None and runner.phase:
        return runner.phase
    return str((run.evidence_contract or {}).get("phase", ""))


def _looks_like_field_run(run: RunnerExecutionResult, runner: RunnerDefinition | None) -> bool:
    contract = run.evidence_contract or {}
    if contract.get("phase") == "field":
        return True
    if runner is not None:
        if runner.phase in ("field", "both") or "FIELD" in runner.id.upper():
            return True
        if any("FIELD" in test_id.upper() for test_id in runner.test_ids):
            return True
    combined = "\n".join(
        part
        for part in (
            run.command,
            run.stdout,
            run.stderr,
            run.stdout_preview,
            run.stderr_preview,
            runner.run_command if runner else "",
            runner.goal if runner else "",
            " ".join(runner.test_ids) if runner else "",
        )
        if part
    )
    return bool(FIELD_EVIDENCE_MARKER_PATTERN.search(combined)) or EVIDENCE_CONTRACT_PREFIX in combined


def is_auto_generated_runner(runner: RunnerDefinition) -> bool:
    return runner.id.startswith(AUTO_FIELD_RUNNER_PREFIX) or any(
        "AUTO_FIELD" in test_id.upper() for test_id in runner.test_ids
    )


def _output_text(run: RunnerExecutionResult, sep: str = "\n") -> str:
    return sep.join(part for part in (run.stdout, run.stderr, run.stdout_preview, run.stderr_preview) if part)


def _evaluate_toy(
    toy_runs: list[RunnerExecutionResult], runners: dict[str, RunnerDefinition]
) -> tuple[dict[str, Any], bool]:
    executed = [run for run in toy_runs if run.status in ("success", "failed")]
    if not toy_runs or not executed:
        status = "not_executed"
    elif all(run.status == "success" for run in executed):
        status = "success"
    else:
        status = "executed"

    pass_tests = fail_tests = strong_fail_tests = 0
    contradiction = False
    for run in toy_runs:
        if run.status == "failed":
            fail_tests += 1
            continue
        if run.status != "success":
            continue
        runner = runners.get(run.id)
        text = _normalize_inline(" ".join(part for part in (run.stdout_preview, run.stderr_preview, run.reason) if part))
        has_pass, has_fail = detect_run_signals(
            text,
            expected_signal=runner.expected_signal if runner else None,
            failure_signal=runner.failure_signal if runner else None,
        )
        pass_tests += int(has_pass)
        fail_tests += int(has_fail)
        strong_fail_tests += int(has_strong_fail_signal(text, runner.failure_signal if runner else None))
        contradiction = contradiction or (has_pass and has_fail)

    assessments = [(run.evidence_contract or {}).get("truth_assessment") for run in toy_runs]
    execution_failed = any(run.status == "failed" for run in toy_runs)
    if "FAIL" in assessments:
        truth = "FAIL"
    elif "PASS" in assessments:
        truth = "PASS"
    elif execution_failed:
        truth = "INCONCLUSIVE"
    elif status in ("executed", "success") and not contradiction and pass_tests > 0 and fail_tests == 0:
        truth = "PASS"
    elif strong_fail_tests > 0 and pass_tests == 0 and not contradiction:
        truth = "FAIL"
    else:
        truth = "INCONCLUSIVE"

    should_advance = any(run.status == "success" for run in executed) and truth != "FAIL" and not execution_failed
    toy = {
        "status": status,
        "truth_assessment": truth,
        "pass_tests": pass_tests,
        "fail_tests": fail_tests,
        "logical_contradiction": contradiction,
    }
    return toy, should_advance


def _evaluate_runner_contract(results: list[RunnerExecutionResult], install_error: str) -> dict[str, str]:
    failed = sum(1 for run in results if run.status == "failed")
    ok = sum(1 for run in results if run.status == "success")
    runtime_error = any(has_runtime_error_signal(_output_text(run)) for run in results)
    signals = [
        (run.evidence_contract or {}).get("runner_contract")
        for run in results
        if (run.evidence_contract or {}).get("runner_contract") in (GATE_PASS, GATE_FAIL)
    ]
    passed = ok > 0 and failed == 0 and not install_error and not runtime_error and GATE_FAIL not in signals
    if passed:
        reason = (
            "PASS contract confirmed by runners (HYPOLAB_EVIDENCE_CONTRACT)."
            if signals
            else "All executed runs finished without contract errors."
        )
    elif GATE_FAIL in signals:
        reason = "At least one runner reported runner_contract=FAIL."
    elif runtime_error:
        reason = "Runtime error signals detected in stdout/stderr despite exit=0."
    else:
        reason = "There are failed runs or environment/dependency failures."
    return gate(GATE_PASS if passed else GATE_FAIL, reason)


def _scrape_metric(name: str, combined: str) -> Any:
    if name == "lobo_pass":
        return parse_first_bool_metric(combined, [_LOBO_PASS_PATTERN])
    if name == "existence":
        match = _EXISTENCE_PATTERN.search(combined)
        return match.group(1).upper() if match else None
    if name == "topology":
        match = _TOPOLOGY_PATTERN.search(combined)
        return _normalize_inline(match.group(1)) if match else None
    return parse_first_float_metric(combined, [_FLOAT_METRIC_PATTERNS[name]])


def _evaluate_field(
    field_runs: list[RunnerExecutionResult],
    runners: dict[str, RunnerDefinition],
    profile: SemanticProfile | None,
) -> tuple[dict[str, Any], dict[str, Any], bool]:
    used = real = explicit_failure = synthetic_evidence = False
    n_rows = folds = 0
    metrics: dict[str, Any] = {}
    semantic_parts: list[str] = []

    for run in field_runs:
        runner = runners.get(run.id)
        contract = run.evidence_contract or {}
        local = infer_local_dataset_evidence(run, runner)
        combined = "\n".join(
            part
            for part in (
                run.stdout,
                run.stderr,
                run.stdout_preview,
                run.stderr_preview,
                " ".join(runner.required_inputs) if runner else "",
                runner.run_command if runner else "",
                runner.code if runner else "",
                run.command,
            )
            if part
        )
        auto_synthetic = (runner is not None and is_auto_generated_runner(runner)) or contract.get(
            "dataset_source"
        ) == "synthetic"
        contract_used = contract.get("dataset_used") is True
        if auto_synthetic and contract_used:
            synthetic_evidence = True
        if contract.get("column_hints"):
            semantic_parts.append(" ".join(contract["column_hints"]))
        semantic_parts.append(combined)

        real_source = contract.get("dataset_source") == "real" or has_concrete_dataset_reference(
            contract.get("dataset_source_uri", "")
        ) or has_concrete_dataset_reference(_output_text(run))
        validated = (
            contract_used
            and real_source
            and contract.get("dataset_mime_valid") is True
            and contract.get("dataset_parse_ok") is True
            and contract.get("dataset_format") in _VALID_DATASET_FORMATS
        )
        invalid = (
            contract_used
            and real_source
            and (contract.get("dataset_mime_valid") is False or contract.get("dataset_parse_ok") is False)
        )
        explicit_failure = explicit_failure or invalid

        for name in (*_UMC_KEYS, "lobo_pass", "existence", "topology", *_LEDGER_KEYS):
            value = contract.get(name)
            if value is None or value == "":
                value = metrics.get(name)
            if value is None:
                value = _scrape_metric(name, combined)
            metrics[name] = value

        run_has_dataset = contract_used or has_dataset_signal(
            [
                *(runner.required_inputs if runner else ()),
                runner.goal if runner else None,
                runner.run_command if runner else None,
                runner.code if runner else None,
                run.stdout,
                run.stderr,
                run.stdout_preview,
                run.stderr_preview,
            ]
        )
        used = used or run_has_dataset or local.dataset_used
        if (
            not auto_synthetic
            and (validated or local.has_real_dataset)
            and not invalid
            and not has_disallowed_dataset_reference(combined)
        ):
            real = True

        n_rows = max(n_rows, local.n_rows, int(contract.get("n_rows") or 0), parse_max_metric(combined, ROW_COUNT_PATTERNS))
        folds = max(folds, local.lobo_folds, int(contract.get("lobo_folds") or 0), parse_max_metric(combined, _FOLD_PATTERNS))
        if folds == 0 and real:
            folds = 4 if n_rows >= EVIDENCE_MIN_ROWS else 2 if n_rows >= 10 else 1 if n_rows > 0 else 0

    fit = evaluate_semantic_fit(profile, "\n".join(semantic_parts))
    sufficient = (
        used
        and real
        and n_rows >= EVIDENCE_MIN_ROWS
        and folds >= EVIDENCE_MIN_FOLDS
        and not explicit_failure
        and fit.passed
    )
    sufficiency = {
        "status": GATE_PASS if sufficient else GATE_FAIL,
        "dataset_used": used,
        "has_real_dataset": real,
        "has_synthetic_evidence": synthetic_evidence,
        "n_rows": n_rows,
        "lobo_folds": folds,
        "claim_dataset_fit": fit.passed,
        "claim_dataset_fit_matched_tokens": fit.matched,
        "claim_dataset_fit_required_tokens": fit.required,
        "claim_dataset_fit_reason": fit.reason,
    }
    return sufficiency, metrics, sufficient


def _decide(
    toy_truth: str,
    contract_passed: bool,
    should_advance: bool,
    sufficiency: dict[str, Any],
    sufficient: bool,
) -> tuple[str, str]:
    used = sufficiency["dataset_used"]
    real = sufficiency["has_real_dataset"]
    if toy_truth == "FAIL":
        return REJECT_EARLY, "Toy truth_assessment=FAIL; stop before field."
    if not contract_passed:
        return DEFINITIVE_FAIL, "Runner contract FAIL (execution/environment errors)."
    if should_advance and used and real and not sufficiency["claim_dataset_fit"]:
        return (
            NEEDS_FIELD,
            "Real dataset detected but not relevant to claim/observables; another field dataset is required.",
        )
    if sufficient:
        return DEFINITIVE_PASS, "Sufficient field evidence and execution contract in PASS."
    if should_advance and used and not real:
        if sufficiency["has_synthetic_evidence"]:
            return (
                PROVISIONAL_PASS,
                "Provisional synthetic evidence available; real dataset still required for definitive closure.",
            )
        return NEEDS_FIELD, "Synthetic/autorepair evidence exists, but no real field dataset."
    if should_advance:
        if used:
            return PROVISIONAL_PASS, "Toy PASS and data present, but evidence thresholds are still insufficient."
        return NEEDS_FIELD, "Toy provisional PASS; proceed to field with a real dataset."
    return NEEDS_FIELD, "Missing field evidence for closure (dataset_used + n_rows + lobo_folds)."


def _umc_gate(metrics: dict[str, Any], sufficient: bool) -> dict[str, Any]:
    values = {name: metrics.get(name) for name in _UMC_KEYS}
    values["lobo_pass"] = metrics.get("lobo_pass")
    complete = all(isinstance(values[name], float) for name in _UMC_KEYS) and isinstance(values["lobo_pass"], bool)
    if not sufficient:
        report = gate(
            GATE_UNRESOLVED,
            "UMC v1 UNRESOLVED: insufficient evidence (requires real dataset, n_rows>=30, lobo_folds>=2).",
        )
    elif not complete:
        report = gate(GATE_UNRESOLVED, "UMC v1 UNRESOLVED: missing required metrics (delta/h2/h4/frag/lobo.pass).")
    elif (
        values["delta_bits"] < 0
        and values["delta_bic"] < 0
        and values["h2"] < 0
        and values["h4"] <= 0.3
        and values["frag"] <= 0.05
        and values["lobo_pass"] is True
    ):
        report = gate(
            GATE_PASS, "UMC v1 PASS: delta_bits<0, delta_bic<0, h2<0, h4<=0.3, frag<=0.05, lobo.pass=true."
        )
    else:
        report = gate(GATE_FAIL, "UMC v1 FAIL: at least one hard threshold is not satisfied.")
    return {**report, "metrics": values}


def _ledger_gate(metrics: dict[str, Any], sufficient: bool) -> dict[str, str]:
    existence = metrics.get("existence")
    if not sufficient:
        return gate(
            GATE_UNRESOLVED,
            "Ledger closure UNRESOLVED: insufficient field evidence for energy/information closure.",
        )
    if existence == "NONEXISTENT":
        return gate(GATE_FAIL, "Ledger closure FAIL: existence reported as NONEXISTENT.")
    if existence not in ("EXISTS", "INEFFICIENT"):
        return gate(
            GATE_UNRESOLVED,
            "Ledger closure UNRESOLVED: missing existence verdict (EXISTS/INEFFICIENT/NONEXISTENT).",
        )
    if not metrics.get("topology") or not all(isinstance(metrics.get(name), float) for name in _LEDGER_KEYS):
        return gate(GATE_UNRESOLVED, "Ledger closure UNRESOLVED: missing topology/energy/information for closure.")
    expected = metrics["energy_available"] - metrics["energy_required"]
    if abs(expected - metrics["energy_delta"]) <= _LEDGER_TOLERANCE:
        return gate(GATE_PASS, "Ledger closure PASS: consistent energy closure.")
    return gate(GATE_FAIL, "Ledger closure FAIL: energy.delta inconsistent with energy.available-required.")


def _downgrade(context_gate: dict[str, str]) -> dict[str, str]:
    if context_gate["status"] != GATE_FAIL:
        return context_gate
    return gate(GATE_UNRESOLVED, f"{context_gate['reason']}{_DOWNGRADE_SUFFIX}")


def _next_action(decision: str, toy_truth: str) -> str:
    if decision == REJECT_EARLY:
        return REJECT_AFTER_TOY_FAIL_ACTION if toy_truth == "FAIL" else REJECT_AUTO_REPAIR_ACTION
    return NEXT_ACTIONS[decision]


def evaluate_runner_gates(
    plan: ExperimentPlan,
    results: list[RunnerExecutionResult],
    context: GateContext | None = None,
    install_error: str = "",
) -> RunnerGateReport:
    """Reduce execution results into a stage decision and the seven-gate stack."""
    context = context or GateContext()
    runners = {runner.id: runner for runner in plan.runners}
    toy_runs = [run for run in results if _phase(run, runners.get(run.id)) in ("toy", "both")]
    field_runs = [run for run in results if _phase(run, runners.get(run.id)) in ("field", "both")]
    if not field_runs:
        field_runs = [run for run in results if _looks_like_field_run(run, runners.get(run.id))]

    toy, should_advance = _evaluate_toy(toy_runs, runners)
    contract_gate = _evaluate_runner_contract(results, install_error)
    contract_passed = contract_gate["status"] == GATE_PASS
    sufficiency, metrics, sufficient = _evaluate_field(field_runs, runners, context.claim_profile)

    toy_truth = toy["truth_assessment"]
    decision, reason = _decide(toy_truth, contract_passed, should_advance, sufficiency, sufficient)

    evidence_status = tri_gate_from_decision(decision)
    if evidence_status == GATE_PASS:
        evidence_reason = "Evidence gate PASS: real dataset and field thresholds satisfied."
    elif evidence_status == GATE_FAIL:
        evidence_reason = f"Evidence gate FAIL due to stage decision={decision}."
    elif sufficiency["claim_dataset_fit"]:
        evidence_reason = f"Evidence gate UNRESOLVED: stage decision={decision}."
    else:
        evidence_reason = (
            "Evidence gate UNRESOLVED: dataset not relevant to claim "
            f"(semantic_fit={sufficiency['claim_dataset_fit_matched_tokens']}/"
            f"{sufficiency['claim_dataset_fit_required_tokens']})."
        )
    evidence_gate = gate(evidence_status, evidence_reason)
    toy_gate = gate(
        toy_truth if toy_truth in (GATE_PASS, GATE_FAIL) else GATE_UNRESOLVED,
        f"toy.truth_assessment={toy_truth}.",
    )
    umc_gate = _umc_gate(metrics, sufficient)
    ledger_gate = _ledger_gate(metrics, sufficient)

    if GATE_FAIL in (umc_gate["status"], ledger_gate["status"]) and decision in _PENDING_DECISIONS:
        decision = DEFINITIVE_FAIL
        reason = "Universal gates reported FAIL (UMC/ledger); positive conclusion is not allowed."
    if toy_truth == "FAIL" and decision in _PENDING_DECISIONS:
        decision = REJECT_EARLY
        reason = "Toy truth_assessment=FAIL; positive conclusion is not allowed."

    normalization_gate = context.normalization_gate or gate(
        GATE_UNRESOLVED, "No normalization context received to validate claim_well_formed."
    )
    plan_gate = context.plan_quality_gate or gate(
        GATE_UNRESOLVED, "No FalsificationPlan context received to evaluate falsification_plan_quality."
    )
    if decision in (NEEDS_FIELD, PROVISIONAL_PASS) and contract_passed and toy_truth != "FAIL" and not sufficient:
        normalization_gate = _downgrade(normalization_gate)
        plan_gate = _downgrade(plan_gate)

    gate_stack = {
        "ontology": {"claim_well_formed": normalization_gate},
        "epistemic": {"falsification_plan_quality": plan_gate, "evidence_gate": evidence_gate},
        "operational": {"runner_contract": contract_gate, "toy_truth_assessment": toy_gate},
        "universal": {"umc_v1": umc_gate, "ledger_closure": ledger_gate},
    }
    gate_stack["overall"] = overall_status(
        [
            normalization_gate["status"],
            plan_gate["status"],
            contract_gate["status"],
            toy_gate["status"],
            evidence_gate["status"],
            umc_gate["status"],
            ledger_gate["status"],
        ]
    )
    return RunnerGateReport(
        toy=toy,
        field={
            "should_advance": should_advance,
            "reason": "Toy executed without hard FAIL; field can proceed."
            if should_advance
            else "Toy does not meet minimum criteria (exit!=0 or truth_assessment=FAIL).",
        },
        runner_contract=contract_gate,
        evidence_sufficiency=sufficiency,
        stage_decision=decision,
        stage_reason=reason,
        next_action=_next_action(decision, toy_truth),
        gate_stack=gate_stack,
    )


# ---------------------------------------------------------------------------
# Critical verdicts
# ---------------------------------------------------------------------------


def _critical_item(runner: RunnerDefinition, run: RunnerExecutionResult | None) -> dict[str, str]:
    if run is None:
        return {"runner_id": runner.id, "verdict": "INCONCLUSIVE", "reason": "runner_not_executed"}
    if run.status == "failed":
        return {"runner_id": runner.id, "verdict": "FAIL", "reason": "execution_failed"}
    truth = (run.evidence_contract or {}).get("truth_assessment")
    if truth in ("PASS", "FAIL"):
        return {"runner_id": runner.id, "verdict": truth, "reason": "evidence_contract"}

    has_pass, has_fail = detect_run_signals(
        _normalize_inline(_output_text(run, " ")),
        expected_signal=runner.expected_signal,
        failure_signal=runner.failure_signal,
    )
    if has_fail and not has_pass:
        return {"runner_id": runner.id, "verdict": "FAIL", "reason": "stdout_fail_signal"}
    if has_pass and not has_fail:
        return {"runner_id": runner.id, "verdict": "PASS", "reason": "stdout_pass_signal"}
    if has_pass and has_fail:
        return {"runner_id": runner.id, "verdict": "INCONCLUSIVE", "reason": "mixed_signals"}
    return {"runner_id": runner.id, "verdict": "INCONCLUSIVE", "reason": "missing_verdict"}


def evaluate_critical_verdicts(plan: ExperimentPlan, results: list[RunnerExecutionResult]) -> dict[str, Any]:
    """Per-runner PASS/FAIL/INCONCLUSIVE for every runner the plan itself authored."""
    by_id: dict[str, RunnerExecutionResult] = {}
    for run in results:
        by_id.setdefault(run.id, run)
    items = [_critical_item(runner, by_id.get(runner.id)) for runner in plan.runners if not is_auto_generated_runner(runner)]
    verdicts = {item["verdict"] for item in items}
    overall = "FAIL" if "FAIL" in verdicts else "PASS" if "PASS" in verdicts else "INCONCLUSIVE"
    return {"overall": overall, "items": items}


def apply_critical_override(gates: RunnerGateReport, critical: dict[str, Any]) -> RunnerGateReport:
    """A failing critical runner forbids any positive or pending conclusion."""
    if critical.get("overall") != "FAIL" or gates.stage_decision not in _PENDING_DECISIONS:
        return gates
    return replace(
        gates,
        stage_decision=DEFINITIVE_FAIL,
        stage_reason="At least one critical test reported FAIL; positive conclusion is not allowed.",
        next_action="Auto-repair: adjust FalsificationPlan and regenerate/execute critical runners before concluding.",
    )


def apply_dataset_decision_guidance(gates: RunnerGateReport) -> RunnerGateReport:
    if gates.stage_decision != NEEDS_FIELD or gates.has_real_dataset:
        return gates
    return replace(
        gates,
        stage_reason="No real field dataset; missing user decision or additional discovery.",
        next_action=(
            "Attempt real dataset automatically and, if it fails, ask the user to choose URL/path, "
            "extended search, or provisional synthetic mode."
        ),
    )


# ---------------------------------------------------------------------------
# Skipped stage
# ---------------------------------------------------------------------------


def skipped_next_action(reason: str) -> str:
    if "normalization" in reason.lower():
        return "Complete normalization (claim, domain, relation, observables) and then retry experiment runners."
    return "Complete FalsificationPlan with ready status and then retry experiment runners."


def build_skipped_gates(reason: str) -> RunnerGateReport:
    """Gate report for a runner stage that never executed anything."""
    contract_gate = gate(GATE_FAIL, "No runs were executed.")
    gate_stack = {
        "ontology": {"claim_well_formed": gate(GATE_UNRESOLVED, "No ready normalization in skipped run.")},
        "epistemic": {
            "falsification_plan_quality": gate(GATE_UNRESOLVED, "No ready falsification plan in skipped run."),
            "evidence_gate": gate(GATE_FAIL, "Evidence gate FAIL due to skipped execution."),
        },
        "operational": {
            "runner_contract": contract_gate,
            "toy_truth_assessment": gate(GATE_UNRESOLVED, "Toy not executed."),
        },
        "universal": {
            "umc_v1": {**gate(GATE_UNRESOLVED, "Insufficient evidence for UMC v1."), "metrics": {}},
            "ledger_closure": gate(GATE_UNRESOLVED, "Insufficient evidence for ledger closure."),
        },
        "overall": GATE_FAIL,
    }
    return RunnerGateReport(
        toy={
            "status": "not_executed",
            "truth_assessment": "INCONCLUSIVE",
            "pass_tests": 0,
            "fail_tests": 0,
            "logical_contradiction": False,
        },
        field={"should_advance": False, "reason": "No toy/field execution because prerequisites are missing."},
        runner_contract=contract_gate,
        evidence_sufficiency={
            "status": GATE_FAIL,
            "dataset_used": False,
            "has_real_dataset": False,
            "has_synthetic_evidence": False,
            "n_rows": 0,
            "lobo_folds": 0,
            "claim_dataset_fit": False,
            "claim_dataset_fit_matched_tokens": 0,
            "claim_dataset_fit_required_tokens": 0,
            "claim_dataset_fit_reason": "No dataset evaluation in skipped run.",
        },
        stage_decision=REJECT_EARLY,
        stage_reason=f"Runners skipped due to {reason}.",
        next_action=skipped_next_action(reason),
        gate_stack=gate_stack,
    )


def write_gate_report(
    cwd: Path,
    gates: RunnerGateReport,
    critical: dict[str, Any],
    results: list[RunnerExecutionResult],
    hypothesis: str,
    *,
    config_dir: Path | None = None,
) -> str | None:
    """Overwrite ``<cwd>/hypolab-runners/gate-report.latest.json``; failures are logged, never raised."""
    relative = f"{RUNNERS_OUTPUT_DIR_NAME}/{GATE_REPORT_FILE_NAME}"
    payload = {
        "schema_version": GATE_REPORT_SCHEMA,
        "generated_at": _utc_now(),
        "hypothesis_query": hypothesis,
        "gates": gates.to_dict(),
        "critical_verdicts": critical,
        "runs": [
            {
                "id": run.id,
                "status": run.status,
                "exit_code": run.exit_code,
                "duration_ms": run.duration_ms,
                "reason": run.reason,
            }
            for run in results
        ],
    }
    try:
        _write_json(cwd / relative, payload)
    except OSError as exc:
        _append_log(config_dir or _resolve_config_dir(), f"gates: could not write gate report: {exc}")
        return None
    return relative
