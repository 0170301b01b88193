"""Exceptions and dataclasses shared across hypolab."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any


def _coerce_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class StateError(RuntimeError):
    """Raised when persisted state cannot be loaded, locked, or written."""


class ConfigError(RuntimeError):
    """Raised when the policy file or environment holds unusable values."""


class InvocationError(RuntimeError):
    """Raised when a stage invocation fails after classification."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ContractViolationError(InvocationError):
    """Raised when stage output does not satisfy its strict JSON contract."""


class BudgetExceededError(InvocationError):
    """Raised when an attempt exceeds its runtime/event/tool-call ceiling."""


class OperationCancelled(Exception):
    """Raised when the caller explicitly cancels an operation."""


class DeadlineExceeded(TimeoutError):
    """Raised when an attempt or global deadline elapses."""


# ---------------------------------------------------------------------------
# Plan and runner models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunnerDefinition:
    id: str
    goal: str
    test_ids: tuple[str, ...]
    phase: str             # "toy" | "field" | "both"
    language: str          # "python" | "bash" | "pseudo"
    filename: str
    run_command: str
    required_inputs: tuple[str, ...]
    expected_signal: str
    failure_signal: str
    code: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RunnerDefinition":
        return cls(
            id=str(payload.get("id", "")).strip(),
            goal=str(payload.get("goal", "")),
            test_ids=tuple(_coerce_str_list(payload.get("test_ids"))),
            phase=str(payload.get("phase", "toy")),
            language=str(payload.get("language", "python")),
            filename=str(payload.get("filename", "")),
            run_command=str(payload.get("run_command", "")),
            required_inputs=tuple(_coerce_str_list(payload.get("required_inputs"))),
            expected_signal=str(payload.get("expected_signal", "")),
            failure_signal=str(payload.get("failure_signal", "")),
            code=str(payload.get("code", "")),
        )

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["test_ids"] = list(self.test_ids)
        payload["required_inputs"] = list(self.required_inputs)
        return payload


@dataclass
class ExperimentPlan:
    status: str            # "ready" | "skipped"
    reason: str = ""
    hypothesis_snapshot: str = ""
    assumptions: list[str] = field(default_factory=list)
    runners: list[RunnerDefinition] = field(default_factory=list)
    execution_order: list[str] = field(default_factory=list)
    next_action: str = ""
    schema_version: str = "experiment-runners-v1"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ExperimentPlan":
        """Build from the canonical ``experiment_runners`` contract (wrapped or bare)."""
        body = payload.get("experiment_runners", payload)
        if not isinstance(body, dict):
            body = {}
        meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
        runners = body.get("runners")
        return cls(
            status=str(meta.get("status", "skipped")),
            reason=str(meta.get("reason", "") or ""),
            hypothesis_snapshot=str(body.get("hypothesis_snapshot", "")),
            assumptions=_coerce_str_list(body.get("assumptions")),
            runners=[
                RunnerDefinition.from_payload(item)
                for item in (runners if isinstance(runners, list) else [])
                if isinstance(item, dict)
            ],
            execution_order=_coerce_str_list(body.get("execution_order")),
            next_action=str(body.get("next_action", "")),
            schema_version=str(meta.get("plan_version", "experiment-runners-v1")),
        )

    def to_payload(self) -> dict[str, Any]:
        meta: dict[str, Any] = {"plan_version": self.schema_version, "status": self.status}
        if self.reason:
            meta["reason"] = self.reason
        return {
            "experiment_runners": {
                "meta": meta,
                "hypothesis_snapshot": self.hypothesis_snapshot,
                "assumptions": list(self.assumptions),
                "runners": [runner.to_payload() for runner in self.runners],
                "execution_order": list(self.execution_order),
                "next_action": self.next_action,
            }
        }

    def runner_by_id(self, runner_id: str) -> RunnerDefinition | None:
        for runner in self.runners:
            if runner.id == runner_id:
                return runner
        return None


@dataclass(frozen=True)
class MaterializedFile:
    id: str
    relative_path: str
    status: str            # "created" | "updated" | "unchanged"
    diff: str = ""


@dataclass
class RunnerExecutionResult:
    id: str
    command: str
    cwd: str
    status: str            # "success" | "failed" | "skipped"
    exit_code: int | None = None
    duration_ms: int = 0
    stdout: str = ""
    stderr: str = ""
    stdout_preview: str = ""
    stderr_preview: str = ""
    reason: str = ""
    evidence_contract: dict[str, Any] | None = None
    relative_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ProcessOutcome:
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str = ""


# ---------------------------------------------------------------------------
# Dataset and semantic models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatasetAnalysis:
    fmt: str
    mime: str
    mime_valid: bool
    parse_ok: bool
    n_rows: int = 0
    n_cols: int = 0
    has_header: bool = False
    column_hints: tuple[str, ...] = ()


@dataclass(frozen=True)
class SemanticProfile:
    tokens: tuple[str, ...]
    min_matches: int


@dataclass(frozen=True)
class SemanticFit:
    passed: bool
    matched: int
    required: int
    matched_tokens: tuple[str, ...]
    reason: str


@dataclass(frozen=True)
class ResolvedDataset:
    source: str
    source_type: str       # "url" | "local"
    fmt: str
    mime: str
    mime_valid: bool
    parse_ok: bool
    n_rows: int
    n_cols: int
    has_header: bool
    sha256: str
    local_path: Path
    column_hints: tuple[str, ...]
    downloaded: bool
    fit: SemanticFit

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["local_path"] = str(self.local_path)
        payload["column_hints"] = list(self.column_hints)
        return payload


@dataclass(frozen=True)
class LocalDatasetEvidence:
    dataset_used: bool
    has_real_dataset: bool
    n_rows: int
    lobo_folds: int
    synthetic_tagged: bool
    disallowed_reference: bool
    paths: tuple[str, ...] = ()
    column_hints: tuple[str, ...] = ()
