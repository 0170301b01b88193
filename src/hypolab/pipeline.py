"""Hypolab pipeline: the experiment-runners stage from plan request to gated verdict.

One call asks the model for an experiment plan, materializes and executes
its runners, tries to resolve a real field dataset when toy evidence allows
the field phase, and reduces everything into the gate stack. Results are
cached per conversation and per turn; identical concurrent calls share one
execution.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Mapping

from hypolab.cache import (
    CONVERSATION_SCOPE,
    TURN_SCOPE,
    RunnerResultCache,
    build_cache_key,
    build_conversation_key,
    build_turn_cache_key,
    resolve_turn_key,
    should_force_field_refresh,
    should_reuse_output,
    should_reuse_turn_output,
)
from hypolab.cancellation import CancellationContext
from hypolab.config import (
    DiscoverySettings,
    SemanticThresholds,
    load_discovery_settings,
    load_invocation_settings,
    load_semantic_thresholds,
)
from hypolab.constants import DEFINITIVE_PASS, NEEDS_FIELD, PROVISIONAL_PASS, REJECT_EARLY, RUNNERS_OUTPUT_DIR_NAME
from hypolab.contracts import infer_falsification_plan_status
from hypolab.datasets import (
    DatasetResolver,
    build_auto_field_runner,
    build_dataset_field_runner,
    discover_local_candidates,
    extract_dataset_candidates,
    select_top_candidates,
)
from hypolab.discovery import (
    DiscoveryAdvisor,
    HttpSearchProvider,
    SearchProvider,
    WebDatasetDiscovery,
    build_literature_queries,
    discover_literature_affinity,
)
from hypolab.execution import ExecutionEngine, ExecutionReport
from hypolab.gates import (
    GateContext,
    RunnerGateReport,
    apply_critical_override,
    apply_dataset_decision_guidance,
    build_skipped_gates,
    dataset_decision_prompt,
    evaluate_critical_verdicts,
    evaluate_normalization_gate,
    evaluate_plan_quality_gate,
    evaluate_runner_gates,
    skipped_next_action,
    write_gate_report,
)
from hypolab.invocation import ResilientInvocationService
from hypolab.materializer import MaterializationResult, definition_preview, materialize_runners
from hypolab.model_client import HttpModelClient, ModelClient
from hypolab.models import (
    ExperimentPlan,
    InvocationError,
    MaterializedFile,
    RunnerDefinition,
    RunnerExecutionResult,
)
from hypolab.semantic import derive_claim_profile, derive_discovery_profile
from hypolab.utils import (
    _append_log,
    _compact_log_text,
    _dedupe_strings,
    _normalize_inline,
    _resolve_config_dir,
    _truncate_for_ui,
)

RUNNERS_SCOPE = "runners"
_SYNTHETIC_PROVISIONAL = re.compile(r"\bsynthetic_provisional\b|\b(?:sintetico|synthetic)\b", re.IGNORECASE)
_DEFINITION_PREVIEW_LIMIT = 4
_PLAN_PREVIEW_LIMIT = 3


# ---------------------------------------------------------------------------
# Request / output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunnerStageRequest:
    hypothesis: str
    falsification_plan_json: str = ""
    dialectical_synthesis: str = ""
    baconian_forma_veritas: str = ""
    normalization_json: str = ""
    literature_summary: str = ""
    dataset_hint: str = ""
    # latest ready plan known to the session; used when the given one is not ready
    latest_falsification_plan_json: str = ""
    conversation_key: str = ""
    turn_key: str = ""


@dataclass(frozen=True)
class DefinitionPreview:
    id: str
    relative_path: str
    preview: str


@dataclass
class RunnerStageOutput:
    analysis: str
    retries_used: int
    model: str
    plan_status: str
    runners_count: int
    execution_order: list[str]
    next_action: str
    hypothesis_snapshot: str
    runners_dir: str
    materialized_files: list[MaterializedFile] = field(default_factory=list)
    materialized_diffs: list[MaterializedFile] = field(default_factory=list)
    execution_results: list[RunnerExecutionResult] = field(default_factory=list)
    installed_dependencies: list[str] = field(default_factory=list)
    install_error: str = ""
    definition_previews: list[DefinitionPreview] = field(default_factory=list)
    gates: RunnerGateReport | None = None
    critical_verdicts: dict[str, Any] = field(default_factory=dict)
    gate_report_path: str | None = None
    plan: ExperimentPlan | None = None
    progress: list[str] = field(default_factory=list)
    from_cache_reuse: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["gates"] = self.gates.to_dict() if self.gates is not None else None
        payload["plan"] = self.plan.to_payload() if self.plan is not None else None
        return payload


def build_runner_stage_message(request: RunnerStageRequest) -> str:
    return "\n".join(
        [
            f"Current hypothesis: {request.hypothesis}",
            f"Dialectical synthesis: {request.dialectical_synthesis}",
            f"Baconian forma veritas: {request.baconian_forma_veritas}",
            f"Normalization JSON: {request.normalization_json}",
            f"Falsification plan JSON: {request.falsification_plan_json}",
            f"Literature summary: {request.literature_summary}",
        ]
    )


def build_skipped_output(request: RunnerStageRequest, model: str, reason: str, *, analysis: str = "") -> RunnerStageOutput:
    return RunnerStageOutput(
        analysis=analysis or f"Experiment runners skipped: {reason}.",
        retries_used=0,
        model=model,
        plan_status="skipped",
        runners_count=0,
        execution_order=[],
        next_action=skipped_next_action(reason),
        hypothesis_snapshot=request.hypothesis,
        runners_dir=RUNNERS_OUTPUT_DIR_NAME,
        gates=build_skipped_gates(reason),
        critical_verdicts={"overall": "INCONCLUSIVE", "items": []},
    )


def has_field_phase_runner(plan: ExperimentPlan) -> bool:
    return any(runner.phase in ("field", "both") for runner in plan.runners)


def _definition_previews(plan: ExperimentPlan, materialized: MaterializationResult) -> list[DefinitionPreview]:
    return [
        DefinitionPreview(
            id=runner.id,
            relative_path=materialized.path_for(runner.id) or runner.filename,
            preview=definition_preview(runner.code, runner.language),
        )
        for runner in plan.runners[:_DEFINITION_PREVIEW_LIMIT]
    ]


@dataclass
class _StageWork:
    """Mutable accumulation of one stage run across the appended-runner passes."""

    plan: ExperimentPlan
    materialized: MaterializationResult
    diffs: list[MaterializedFile]
    previews: list[DefinitionPreview]
    results: list[RunnerExecutionResult] = field(default_factory=list)
    installed: list[str] = field(default_factory=list)
    install_error: str = ""

    def absorb(self, report: ExecutionReport) -> None:
        self.results.extend(report.results)
        self.installed = _dedupe_strings([*self.installed, *report.installed_dependencies])
        self.install_error = self.install_error or report.install_error


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------


class RunnerStage:
    """Runs the experiment-runners stage with caching, dedupe and dataset auto-repair."""

    def __init__(
        self,
        invocation: ResilientInvocationService,
        *,
        cwd: Path,
        config_dir: Path | None = None,
        model_name: str = "",
        cache: RunnerResultCache | None = None,
        engine: ExecutionEngine | None = None,
        resolver: DatasetResolver | None = None,
        search_provider: SearchProvider | None = None,
        advisor: DiscoveryAdvisor | None = None,
        web_discovery: WebDatasetDiscovery | None = None,
        discovery_settings: DiscoverySettings | None = None,
        thresholds: SemanticThresholds | None = None,
    ) -> None:
        self.invocation = invocation
        self.cwd = Path(cwd)
        self.config_dir = config_dir or invocation.config_dir
        self.model_name = model_name or invocation.settings.model_name
        self.cache = cache or RunnerResultCache()
        self.engine = engine or ExecutionEngine(self.cwd, config_dir=self.config_dir)
        self.resolver = resolver or DatasetResolver(self.cwd, config_dir=self.config_dir)
        self.discovery_settings = discovery_settings or load_discovery_settings(self.config_dir)
        self.thresholds = thresholds or load_semantic_thresholds(self.config_dir)
        self.search_provider = search_provider
        self.advisor = advisor
        self.web_discovery = web_discovery
        if self.web_discovery is None and search_provider is not None:
            self.web_discovery = WebDatasetDiscovery(search_provider, config_dir=self.config_dir)

    # -- entry point -----------------------------------------------------

    def run(
        self,
        request: RunnerStageRequest,
        cancel: CancellationContext | None = None,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> RunnerStageOutput:
        cancel = cancel or CancellationContext()
        emit = _ProgressLog(self.config_dir, on_progress)

        falsification_status = infer_falsification_plan_status(request.falsification_plan_json)
        if (
            falsification_status != "ready"
            and infer_falsification_plan_status(request.latest_falsification_plan_json) == "ready"
        ):
            request = replace(request, falsification_plan_json=request.latest_falsification_plan_json)
            falsification_status = "ready"
            emit("Auto-correction: using the latest ready FalsificationPlan from shared session context.")

        conversation_key = request.conversation_key or build_conversation_key()
        turn_key = build_turn_cache_key(
            request,
            conversation_key,
            request.turn_key or resolve_turn_key(last_user_prompt=request.hypothesis),
        )
        cache_key = build_cache_key(request, conversation_key, self.model_name)
        self.cache.prune()

        turn_cached = self.cache.get(TURN_SCOPE, turn_key)
        if turn_cached is not None:
            if should_force_field_refresh(turn_cached.output, request.dataset_hint):
                self.cache.invalidate(TURN_SCOPE, turn_key)
                emit("Auto-correction: invalidating turn cache to retry field with recent dataset/local decision.")
            elif should_reuse_output(turn_cached.output) or should_reuse_turn_output(turn_cached.output):
                emit("ExperimentRunners already ran in this turn for this hypothesis; reusing result.")
                return replace(turn_cached.output, from_cache_reuse=True)

        if falsification_status != "ready":
            emit("Skipping runners: FalsificationPlan is not ready (status != ready).")
            output = build_skipped_output(request, self.model_name, "falsification_incomplete")
            output.progress = emit.lines
            return output

        cached = self.cache.get(CONVERSATION_SCOPE, cache_key)
        if cached is not None:
            if should_force_field_refresh(cached.output, request.dataset_hint):
                self.cache.invalidate(CONVERSATION_SCOPE, cache_key)
                emit("Auto-correction: invalidating recent cache to force field evidence re-evaluation.")
            elif should_reuse_output(cached.output):
                emit("Reusing recent experiment runners for this same hypothesis.")
                return replace(cached.output, from_cache_reuse=True)

        if self.cache.in_flight(cache_key, turn_key) is not None:
            emit("Waiting for result from an experiment runners execution already in progress.")
        output, _ = self.cache.run_deduplicated(
            cache_key,
            turn_key,
            lambda: self._execute(request, conversation_key, cancel, emit),
        )
        return output

    # -- one execution ---------------------------------------------------

    def _invoke_plan(
        self, request: RunnerStageRequest, conversation_key: str, cancel: CancellationContext
    ) -> tuple[ExperimentPlan, str, int]:
        result = self.invocation.invoke(
            RUNNERS_SCOPE,
            build_runner_stage_message(request),
            conversation_key=conversation_key,
            cancel=cancel,
            input_payload=asdict(request),
        )
        if not result.output:
            raise InvocationError("Experiment runners subagent did not return structured output.")
        return ExperimentPlan.from_payload(result.output), result.text, result.retries_used

    def _execute(
        self,
        request: RunnerStageRequest,
        conversation_key: str,
        cancel: CancellationContext,
        emit: "_ProgressLog",
    ) -> RunnerStageOutput:
        emit("Running runners subagent (design -> files -> execution command)...")
        plan, analysis, retries_used = self._invoke_plan(request, conversation_key, cancel)
        if plan.status != "ready":
            reason = plan.reason or "plan_not_ready"
            emit(f"Runner plan skipped by subagent: {reason}.")
            output = build_skipped_output(request, self.model_name, reason, analysis=analysis)
            output.retries_used = retries_used
            output.plan = plan
            output.progress = emit.lines
            return output

        materialized = materialize_runners(plan, self.cwd)
        work = _StageWork(
            plan=plan,
            materialized=materialized,
            diffs=list(materialized.diffs),
            previews=_definition_previews(plan, materialized),
        )
        synthetic_requested = bool(_SYNTHETIC_PROVISIONAL.search(_normalize_inline(request.dataset_hint)))
        claim_profile = derive_claim_profile(request.hypothesis, request.normalization_json, thresholds=self.thresholds)
        context = GateContext(
            normalization_gate=evaluate_normalization_gate(request.normalization_json),
            plan_quality_gate=evaluate_plan_quality_gate(request.falsification_plan_json),
            claim_profile=claim_profile,
        )

        pass1_candidates, pass1_hints = self._literature_pass(request, context, cancel, emit)

        planned = " · ".join(
            f"{runner.id}: {_truncate_for_ui(_normalize_inline(runner.run_command), 90)}"
            for runner in plan.runners[:_PLAN_PREVIEW_LIMIT]
        )
        if planned:
            emit(f"Runner execution plan: {planned}")

        work.absorb(self.engine.run_plan(plan, materialized, cancel, on_progress=emit.relay))
        cancel.raise_if_cancelled()
        gates = evaluate_runner_gates(work.plan, work.results, context, work.install_error)

        if gates.field.get("should_advance") and not gates.has_real_dataset and not cancel.done:
            gates = self._field_pass(request, work, context, gates, pass1_candidates, pass1_hints, cancel, emit)

        if (
            gates.stage_decision == NEEDS_FIELD
            and gates.field.get("should_advance")
            and not has_field_phase_runner(work.plan)
            and not cancel.done
        ):
            if self.discovery_settings.synthetic_fallback_enabled or synthetic_requested:
                auto_runner = RunnerDefinition.from_payload(build_auto_field_runner(work.plan))
                emit(f"Auto-repair: no field runners found; generating {auto_runner.id} for minimum evidence.")
                self._run_appended_runner(
                    work, auto_runner, "Run field evidence and re-evaluate sufficiency gates.", cancel, emit
                )
                gates = evaluate_runner_gates(work.plan, work.results, context, work.install_error)
            else:
                emit(
                    "Pending auto-repair: synthetic fallback is disabled by default; "
                    "user decision is required to continue field."
                )

        critical = evaluate_critical_verdicts(work.plan, work.results)
        gates = apply_dataset_decision_guidance(apply_critical_override(gates, critical))
        gate_report_path = write_gate_report(
            self.cwd, gates, critical, work.results, request.hypothesis, config_dir=self.config_dir
        )
        emit(
            f"Gate {gates.stage_decision}: toy={gates.toy.get('truth_assessment')} · "
            f"contract={gates.runner_contract.get('status')} · "
            f"evidence={gates.evidence_sufficiency.get('status')} · critical={critical['overall']}"
        )
        return RunnerStageOutput(
            analysis=analysis,
            retries_used=retries_used,
            model=self.model_name,
            plan_status=work.plan.status,
            runners_count=len(work.plan.runners),
            execution_order=list(work.plan.execution_order),
            next_action=work.plan.next_action if gates.stage_decision == DEFINITIVE_PASS else gates.next_action,
            hypothesis_snapshot=work.plan.hypothesis_snapshot or request.hypothesis,
            runners_dir=str(work.materialized.runners_dir),
            materialized_files=list(work.materialized.files),
            materialized_diffs=work.diffs,
            execution_results=work.results,
            installed_dependencies=work.installed,
            install_error=work.install_error,
            definition_previews=work.previews,
            gates=gates,
            critical_verdicts=critical,
            gate_report_path=gate_report_path,
            plan=work.plan,
            progress=emit.lines,
        )

    # -- dataset passes --------------------------------------------------

    def _literature_pass(
        self,
        request: RunnerStageRequest,
        context: GateContext,
        cancel: CancellationContext,
        emit: "_ProgressLog",
    ) -> tuple[list[str], list[str]]:
        if cancel.done:
            return [], []
        if not build_literature_queries(request.hypothesis, request.falsification_plan_json, context.claim_profile):
            emit("dataset_pass1_literature_skip: no affinity queries generated from hypothesis.")
            return [], []
        report = discover_literature_affinity(
            self.search_provider,
            request.hypothesis,
            request.falsification_plan_json,
            context.claim_profile,
            enabled=self.discovery_settings.literature_enabled,
            cancel=cancel,
            config_dir=self.config_dir,
        )
        emit(f"dataset_pass1_literature_start: queries={len(report.queries)}")
        if report.results:
            emit(
                f"dataset_pass1_literature_hit: results={len(report.results)} "
                f"semantic_fit={report.fit.matched}/{report.fit.required}"
            )
        else:
            emit("dataset_pass1_literature_miss: no useful literature evidence candidates found.")
        return report.dataset_candidates, report.keyword_hints

    def _field_pass(
        self,
        request: RunnerStageRequest,
        work: _StageWork,
        context: GateContext,
        gates: RunnerGateReport,
        pass1_candidates: list[str],
        pass1_hints: list[str],
        cancel: CancellationContext,
        emit: "_ProgressLog",
    ) -> RunnerGateReport:
        """Resolve a real dataset and append a field runner for it; returns re-evaluated gates."""
        emit(f"dataset_pass2_field_start: toy_truth={gates.toy.get('truth_assessment')} stage={gates.stage_decision}")
        top_k = self.discovery_settings.top_k

        advisor_plan = None
        if self.advisor is not None:
            advisor_plan = self.advisor.advise(
                request.hypothesis,
                falsification_raw=request.falsification_plan_json,
                profile=context.claim_profile,
                keyword_hints=pass1_hints,
                toy_truth=str(gates.toy.get("truth_assessment", "INCONCLUSIVE")),
                stage_decision=gates.stage_decision,
                cancel=cancel,
            )
        if advisor_plan is not None:
            if advisor_plan.search_queries:
                emit(f"dataset_pass2_advisor_queries: count={len(advisor_plan.search_queries)}")
            if advisor_plan.seed_urls:
                emit(f"dataset_pass2_advisor_seeds: count={len(advisor_plan.seed_urls)}")
            if advisor_plan.observable_mapping:
                mapping = " · ".join(
                    f"{item.claim_variable}->{item.dataset_proxy}" for item in advisor_plan.observable_mapping[:3]
                )
                emit(f"dataset_pass2_observable_mapping: {_truncate_for_ui(mapping, 140)}")
        else:
            emit("dataset_pass2_advisor_miss: could not derive agentic discovery plan; using heuristic discovery.")

        advisor_hints = advisor_plan.keyword_hints if advisor_plan else []
        hints = _dedupe_strings([*pass1_hints, *advisor_hints])
        extra_texts = list(hints)
        if advisor_plan is not None:
            extra_texts.extend(item.dataset_proxy for item in advisor_plan.observable_mapping)
        profile = derive_discovery_profile(
            context.claim_profile, request.hypothesis, extra_texts=extra_texts, thresholds=self.thresholds
        )
        if profile is not None:
            context.claim_profile = profile
            emit(f"dataset_pass2_semantic_profile: tokens={len(profile.tokens)} min_matches={profile.min_matches}")

        structured = extract_dataset_candidates(
            work.plan, request.falsification_plan_json, request.dataset_hint, structured_only=True
        )
        if structured:
            emit(f"dataset_pass2_structured_hit: candidates={len(structured)}")
            explicit = structured
        else:
            emit(
                "dataset_pass2_structured_miss: no structured dataset hints in "
                "required_inputs/data_requests/dataset_hint; enabling heuristic fallback."
            )
            explicit = extract_dataset_candidates(
                work.plan, request.falsification_plan_json, request.dataset_hint, structured_only=False
            )
        local = discover_local_candidates(self.cwd, request.hypothesis)
        seeds = advisor_plan.seed_urls if advisor_plan else []
        candidates = _dedupe_strings([*explicit, *seeds, *local, *pass1_candidates])

        resolved = None
        if candidates:
            shortlist = select_top_candidates(candidates, context.claim_profile, top_k=top_k)
            if len(shortlist) != len(candidates):
                emit(f"dataset_pass2_field_shortlist: selected={len(shortlist)}/{len(candidates)} top_k={top_k}")
            emit(f"dataset_resolve_start: candidates={len(shortlist)}")
            resolved = self.resolver.resolve(shortlist, context.claim_profile, cancel=cancel)

        if (
            resolved is None
            and not cancel.done
            and self.web_discovery is not None
            and self.discovery_settings.web_discovery_enabled
        ):
            web_candidates = self.web_discovery.discover(
                request.hypothesis,
                request.falsification_plan_json,
                keyword_hints=hints,
                advisor_queries=advisor_plan.search_queries if advisor_plan else (),
                profile=context.claim_profile,
                cancel=cancel,
            )
            if web_candidates:
                candidates = _dedupe_strings([*candidates, *web_candidates])
                shortlist = select_top_candidates(web_candidates, context.claim_profile, top_k=top_k)
                emit(f"dataset_web_discovery_hit: web_candidates={len(web_candidates)}")
                if len(shortlist) != len(web_candidates):
                    emit(
                        f"dataset_pass2_field_shortlist: selected={len(shortlist)}/{len(web_candidates)} "
                        f"top_k={top_k} source=web"
                    )
                emit(f"dataset_resolve_start: candidates={len(shortlist)} source=web")
                resolved = self.resolver.resolve(shortlist, context.claim_profile, cancel=cancel)
            else:
                emit("dataset_web_discovery_miss: no usable web dataset candidates found.")

        if resolved is None:
            if not candidates:
                emit(
                    "dataset_resolve_miss: no dataset candidates found after pass1 literature affinity "
                    "and pass2 preparation."
                )
            else:
                emit("dataset_resolve_miss: could not resolve a usable dataset automatically.")
            emit(f"dataset_decision_required: ask the user for a real source or strategy. options={_decision_options()}")
            return gates

        emit(
            f"dataset_resolve_hit: source={_truncate_for_ui(resolved.source, 80)} format={resolved.fmt} "
            f"parse_ok={_yes_no(resolved.parse_ok)} mime_valid={_yes_no(resolved.mime_valid)} "
            f"rows={resolved.n_rows} downloaded={_yes_no(resolved.downloaded)}"
        )
        dataset_runner = RunnerDefinition.from_payload(build_dataset_field_runner(work.plan, resolved))
        emit(f"Auto-repair: dataset detected; generating {dataset_runner.id} for real field evidence.")
        self._run_appended_runner(
            work,
            dataset_runner,
            "Run field with resolved dataset and re-evaluate evidence gates.",
            cancel,
            emit,
        )
        return evaluate_runner_gates(work.plan, work.results, context, work.install_error)

    def _run_appended_runner(
        self,
        work: _StageWork,
        runner: RunnerDefinition,
        next_action: str,
        cancel: CancellationContext,
        emit: "_ProgressLog",
    ) -> None:
        work.plan = replace(
            work.plan,
            runners=[*work.plan.runners, runner],
            execution_order=[*(item for item in work.plan.execution_order if item), runner.id],
            next_action=next_action,
        )
        materialized = materialize_runners(work.plan, self.cwd)
        work.materialized = materialized
        seen = {(item.relative_path, item.diff) for item in work.diffs}
        for item in materialized.diffs:
            if (item.relative_path, item.diff) not in seen:
                seen.add((item.relative_path, item.diff))
                work.diffs.append(item)
        work.previews = [item for item in work.previews if item.id != runner.id]
        work.previews.append(
            DefinitionPreview(
                id=runner.id,
                relative_path=materialized.path_for(runner.id) or runner.filename,
                preview=definition_preview(runner.code, runner.language),
            )
        )
        report = self.engine.run_plan(
            work.plan, materialized, cancel, only_ids=[runner.id], on_progress=emit.relay
        )
        work.absorb(report)
        cancel.raise_if_cancelled()


class _ProgressLog:
    """Collects the progress lines of one stage run and forwards them to the caller."""

    def __init__(self, config_dir: Path, on_progress: Callable[[str], None] | None = None) -> None:
        self.config_dir = config_dir
        self.on_progress = on_progress
        self.lines: list[str] = []

    def __call__(self, line: str) -> None:
        _append_log(self.config_dir, f"runner-stage {_compact_log_text(line)}")
        self.relay(line)

    def relay(self, line: str) -> None:
        # engine lines arrive here already logged
        self.lines.append(line)
        if self.on_progress is not None:
            self.on_progress(line)


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def _decision_options() -> str:
    prompt = dataset_decision_prompt()
    return " | ".join(str(option.get("label", "")) for option in prompt.get("options", []))


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def build_runner_stage(
    cwd: Path,
    *,
    config_dir: Path | None = None,
    client: ModelClient | None = None,
    env: Mapping[str, str] | None = None,
) -> RunnerStage:
    """Wire a stage from configuration: model endpoint, search endpoint and policy."""
    config_dir = config_dir or _resolve_config_dir(dict(env) if env is not None else None)
    invocation_settings = load_invocation_settings(config_dir, env)
    if client is None:
        client = HttpModelClient(invocation_settings.model_endpoint, api_key=invocation_settings.api_key)
    invocation = ResilientInvocationService(client, config_dir=config_dir, settings=invocation_settings, env=env)
    discovery_settings = load_discovery_settings(config_dir, env)
    search_provider: SearchProvider | None = None
    if discovery_settings.web_search_endpoint:
        search_provider = HttpSearchProvider(
            discovery_settings.web_search_endpoint, api_key=discovery_settings.web_search_api_key
        )
    return RunnerStage(
        invocation,
        cwd=cwd,
        config_dir=config_dir,
        model_name=invocation_settings.model_name,
        search_provider=search_provider,
        advisor=DiscoveryAdvisor(client, model=invocation_settings.model_name, config_dir=config_dir),
        discovery_settings=discovery_settings,
        thresholds=load_semantic_thresholds(config_dir, env),
    )


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def _gate_line(gate_stack: dict[str, Any], layer: str, name: str) -> str:
    entry = gate_stack.get(layer, {}).get(name, {})
    return f"Gate {layer}.{name}: {entry.get('status', 'UNRESOLVED')} ({entry.get('reason', '')})"


def _run_preview(run: RunnerExecutionResult) -> str:
    exit_code = "n/a" if run.exit_code is None else run.exit_code
    base = f'{run.id}: {run.status} exit={exit_code} cmd="{run.command}"'
    if run.status == "failed" and run.stderr_preview:
        return f'{base} stderr="{run.stderr_preview}"'
    if run.status == "success" and run.stdout_preview:
        return f'{base} stdout="{run.stdout_preview}"'
    if run.reason:
        return f'{base} reason="{run.reason}"'
    return base


def _closing_rules(output: RunnerStageOutput, gates: RunnerGateReport, critical: dict[str, Any]) -> list[str]:
    lines: list[str] = []
    if critical.get("overall") == "FAIL":
        lines += [
            "MANDATORY CLOSURE RULE: at least one critical test FAILED.",
            "Do not claim the hypothesis was confirmed/supported/globally plausible.",
            "State that there is partial falsification or contradiction in critical tests "
            "and center the conclusion on those verdicts.",
        ]
    decision = gates.stage_decision
    if output.plan_status == "skipped":
        lines += [
            "Experiment runners were skipped due to insufficient context.",
            f"Mandatory next step: {output.next_action}",
        ]
    elif decision == REJECT_EARLY:
        if gates.toy.get("truth_assessment") == "FAIL":
            lines += [
                "Terminal gate: toy phase produced truth_assessment=FAIL.",
                "Do not auto-repair this into a positive conclusion in the same turn.",
                "Close as refutation/contradiction or start a new revised hypothesis.",
            ]
        else:
            lines += [
                "Mandatory auto-repair: revise the FalsificationPlan with the observed fail signals "
                "and run experiment runners again.",
                "Do not close with a final narrative until plan repair is complete.",
            ]
    elif decision == "DEFINITIVE_FAIL":
        lines += [
            "Mandatory auto-repair: fix runner contract/environment and rerun experiment runners.",
            "If deps/commands fail, report the concrete error and repair before concluding.",
        ]
    elif decision in (PROVISIONAL_PASS, NEEDS_FIELD):
        lines.append("Provisional result: do not close as definitive validation.")
        if not gates.has_real_dataset:
            lines += [
                "No usable real dataset for field. Synthetic fallback stays off unless explicitly requested.",
                "Mandatory next step: first attempt to resolve a real dataset (plan/falsification/web).",
                f"If a real dataset is still missing, ask the user to choose: {_decision_options()}.",
            ]
        else:
            lines.append(
                "Mandatory next step: run field phase with real dataset and thresholds n_rows>=30, lobo_folds>=2."
            )
    else:
        lines += [
            "Reuse this result instead of running experiment runners again for this hypothesis in this turn.",
            "Use real run evidence (ok/fail, stdout/stderr) and keep the conclusion calibrated.",
        ]
        if decision == DEFINITIVE_PASS and critical.get("overall") == "PASS":
            lines.append(
                "COHERENCE RULE: the final verdict must be consistent with Gate=DEFINITIVE_PASS "
                "and Critical verdict=PASS."
            )
    return lines


def render_summary(output: RunnerStageOutput) -> str:
    """Human-readable stage summary, including the closing rules for the verdict."""
    plan = output.plan or ExperimentPlan(status=output.plan_status)
    gates = output.gates or evaluate_runner_gates(plan, output.execution_results, install_error=output.install_error)
    critical = output.critical_verdicts or evaluate_critical_verdicts(plan, output.execution_results)
    sufficiency = gates.evidence_sufficiency
    toy = gates.toy
    stack = gates.gate_stack
    ok = sum(1 for run in output.execution_results if run.status == "success")
    failed = sum(1 for run in output.execution_results if run.status == "failed")
    skipped = sum(1 for run in output.execution_results if run.status == "skipped")
    languages = {runner.id: runner.language for runner in plan.runners}
    items = critical.get("items") or []

    lines = [
        "Experiment runners result (summary):",
        f"Status: {output.plan_status}",
        f"Runner execution status: total={len(output.execution_results)}, ok={ok}, fail={failed}, skipped={skipped}.",
        f"Gate decision: {gates.stage_decision}",
        f"Toy truth: status={toy.get('status')}, assessment={toy.get('truth_assessment')}, "
        f"pass={toy.get('pass_tests')}, fail={toy.get('fail_tests')}, "
        f"contradiction={toy.get('logical_contradiction')}.",
        f"Runner contract: {gates.runner_contract.get('status')} ({gates.runner_contract.get('reason')})",
        f"Evidence sufficiency: {sufficiency.get('status')} (dataset_used={sufficiency.get('dataset_used')}, "
        f"real_dataset={sufficiency.get('has_real_dataset')}, claim_dataset_fit={sufficiency.get('claim_dataset_fit')}, "
        f"n_rows={sufficiency.get('n_rows')}, lobo_folds={sufficiency.get('lobo_folds')}).",
        f"Claim dataset fit detail: {sufficiency.get('claim_dataset_fit_reason', '')}",
        _gate_line(stack, "ontology", "claim_well_formed"),
        _gate_line(stack, "epistemic", "falsification_plan_quality"),
        _gate_line(stack, "epistemic", "evidence_gate"),
        _gate_line(stack, "universal", "umc_v1"),
        _gate_line(stack, "universal", "ledger_closure"),
        f"Gate stack overall: {stack.get('overall', 'UNRESOLVED')}",
        f"Critical verdict overall: {critical.get('overall')}",
        "Critical verdict detail: "
        + (", ".join(f"{item['runner_id']}:{item['verdict']}" for item in items) if items else "(none)"),
    ]
    if output.installed_dependencies:
        lines.append(f"Dependencies installed automatically: {', '.join(output.installed_dependencies)}")
    if output.install_error:
        lines.append(f"Dependency installation failure: {output.install_error}")
    lines += [
        f"Hypothesis snapshot: {output.hypothesis_snapshot}",
        f"Runners: {output.runners_count}",
        f"Files directory: {output.runners_dir}",
    ]
    if output.gate_report_path:
        lines.append(f"Gate artifact: {output.gate_report_path}")
    lines += [
        f"Execution order: {', '.join(output.execution_order) or '(none)'}",
        f"Next action: {output.next_action}",
        "Key runners:",
    ]
    lines += [
        f"- {runner.id} [{runner.language}] {runner.filename} :: {runner.run_command}" for runner in plan.runners[:4]
    ] or ["- (no runners)"]
    lines.append("Materialized files:")
    lines += [
        f"- {item.relative_path} [{item.status}] ({languages.get(item.id, 'unknown')})"
        for item in output.materialized_files
    ] or ["- (no materialized files)"]
    lines.append("Runner defs:")
    lines += [
        f"- {item.id} ({item.relative_path}): {item.preview}" for item in output.definition_previews
    ] or ["- (no defs available)"]
    lines.append("Run results:")
    lines += [f"- {_run_preview(run)}" for run in output.execution_results[:6]] or ["- (no runs)"]
    lines += _closing_rules(output, gates, critical)
    return "\n".join(lines)
