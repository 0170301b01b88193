from __future__ import annotations

import argparse
import json
import sys
from dataclasses import fields
from pathlib import Path
from typing import Any

from hypolab.cancellation import CancellationContext
from hypolab.contracts import SCHEMA_VALIDATORS, parse_contract
from hypolab.gates import (
    GateContext,
    evaluate_critical_verdicts,
    evaluate_normalization_gate,
    evaluate_plan_quality_gate,
    evaluate_runner_gates,
)
from hypolab.models import (
    ConfigError,
    ExperimentPlan,
    InvocationError,
    OperationCancelled,
    RunnerExecutionResult,
)
from hypolab.pipeline import RunnerStageRequest, build_runner_stage, render_summary
from hypolab.semantic import derive_claim_profile
from hypolab.state_store import StateStore
from hypolab.utils import _resolve_config_dir

_RESULT_FIELDS = {item.name for item in fields(RunnerExecutionResult)}


def _read_text(path_value: str) -> str:
    return Path(path_value).expanduser().read_text(encoding="utf-8")


def _read_optional_text(path_value: str | None) -> str:
    return _read_text(path_value) if path_value else ""


def _config_dir(args: argparse.Namespace) -> Path:
    if getattr(args, "config_dir", None):
        return Path(args.config_dir).expanduser()
    return _resolve_config_dir()


def _load_results(path_value: str) -> list[RunnerExecutionResult]:
    payload = json.loads(_read_text(path_value))
    items = payload.get("runs", payload.get("execution_results")) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise ConfigError(f"results file must hold a list of runs: {path_value}")
    results: list[RunnerExecutionResult] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        known = {key: value for key, value in item.items() if key in _RESULT_FIELDS}
        known.setdefault("id", "")
        known.setdefault("command", "")
        known.setdefault("cwd", "")
        known.setdefault("status", "skipped")
        results.append(RunnerExecutionResult(**known))
    return results


def _cmd_parse(args: argparse.Namespace) -> int:
    try:
        raw = _read_text(args.file)
    except OSError as exc:
        print(f"hypolab parse: ERROR {exc}", file=sys.stderr)
        return 1
    parsed = parse_contract(args.schema, raw)
    if parsed is None:
        print(f"hypolab parse: ERROR output does not satisfy the {args.schema} contract", file=sys.stderr)
        return 1
    print(json.dumps(parsed, indent=2, ensure_ascii=False))
    return 0


def _cmd_state_show(args: argparse.Namespace) -> int:
    store = StateStore(_config_dir(args))
    print(f"state_file: {store.state_path(args.namespace, args.key)}")
    print(json.dumps(store.load(args.namespace, args.key), indent=2, ensure_ascii=False, sort_keys=True))
    return 0


def _cmd_gates(args: argparse.Namespace) -> int:
    try:
        plan_payload = json.loads(_read_text(args.plan))
        results = _load_results(args.results)
        normalization = _read_optional_text(args.normalization)
        falsification = _read_optional_text(args.falsification_plan)
    except (OSError, ValueError, ConfigError) as exc:
        print(f"hypolab gates: ERROR {exc}", file=sys.stderr)
        return 1

    plan = ExperimentPlan.from_payload(plan_payload if isinstance(plan_payload, dict) else {})
    context = GateContext(
        normalization_gate=evaluate_normalization_gate(normalization) if normalization else None,
        plan_quality_gate=evaluate_plan_quality_gate(falsification) if falsification else None,
        claim_profile=derive_claim_profile(args.hypothesis, normalization) if args.hypothesis else None,
    )
    gates = evaluate_runner_gates(plan, results, context)
    payload: dict[str, Any] = {
        "gates": gates.to_dict(),
        "critical_verdicts": evaluate_critical_verdicts(plan, results),
    }
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    try:
        request = RunnerStageRequest(
            hypothesis=args.hypothesis,
            falsification_plan_json=_read_text(args.falsification_plan),
            normalization_json=_read_optional_text(args.normalization),
            literature_summary=_read_optional_text(args.literature_summary),
            dataset_hint=args.dataset_hint or "",
            conversation_key=args.conversation_key or "",
        )
        stage = build_runner_stage(Path(args.cwd).expanduser().resolve(), config_dir=_config_dir(args))
    except (OSError, InvocationError, ConfigError) as exc:
        print(f"hypolab run: ERROR {exc}", file=sys.stderr)
        return 1

    cancel = CancellationContext()
    try:
        output = stage.run(request, cancel, on_progress=lambda line: print(line, file=sys.stderr))
    except KeyboardInterrupt:
        cancel.cancel()
        print("hypolab run: cancelled", file=sys.stderr)
        return 130
    except OperationCancelled as exc:
        print(f"hypolab run: cancelled: {exc}", file=sys.stderr)
        return 130
    except (InvocationError, TimeoutError) as exc:
        print(f"hypolab run: ERROR {exc}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(output.to_dict(), indent=2, ensure_ascii=False, default=str))
    else:
        print(render_summary(output))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="hypolab command line interface")
    parser.add_argument(
        "--config-dir",
        default=None,
        help="State/log/policy directory (default: $HYPOLAB_CONFIG_DIR or ~/.hypolab)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parse = subparsers.add_parser("parse", help="Strictly parse a stage output against a contract schema")
    parse.add_argument("--schema", required=True, choices=sorted(SCHEMA_VALIDATORS), help="Contract schema id.")
    parse.add_argument("file", help="File holding the raw stage output text.")
    parse.set_defaults(handler=_cmd_parse)

    state = subparsers.add_parser("state", help="Inspect persisted stage state")
    state_sub = state.add_subparsers(dest="state_command")
    show = state_sub.add_parser("show", help="Print the persisted state for a namespace/conversation")
    show.add_argument("--namespace", required=True, help="State namespace (e.g. hypolab-shared-v1).")
    show.add_argument("--key", default="default", help="Conversation key (default: default).")
    show.set_defaults(handler=_cmd_state_show)

    gates = subparsers.add_parser("gates", help="Evaluate the gate stack for stored runner results")
    gates.add_argument("--plan", required=True, help="Experiment runners plan JSON.")
    gates.add_argument("--results", required=True, help="JSON list of runner execution results.")
    gates.add_argument("--normalization", default=None, help="Normalization JSON for claim_well_formed.")
    gates.add_argument("--falsification-plan", default=None, help="Falsification plan JSON for plan quality.")
    gates.add_argument("--hypothesis", default="", help="Hypothesis text for the claim/dataset semantic fit.")
    gates.set_defaults(handler=_cmd_gates)

    run = subparsers.add_parser("run", help="Run the experiment-runners stage against the configured model")
    run.add_argument("--hypothesis", required=True, help="Hypothesis under test.")
    run.add_argument("--falsification-plan", required=True, help="Falsification plan JSON file.")
    run.add_argument("--normalization", default=None, help="Normalization JSON file.")
    run.add_argument("--literature-summary", default=None, help="Literature summary text file.")
    run.add_argument("--dataset-hint", default="", help="Dataset URL/path or decision hint.")
    run.add_argument("--conversation-key", default="", help="Conversation key for state and caching.")
    run.add_argument("--cwd", default=".", help="Workspace directory for the runner sandbox (default: .)")
    run.add_argument("--json", action="store_true", help="Print the full stage output as JSON.")
    run.set_defaults(handler=_cmd_run)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
