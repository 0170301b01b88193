"""Hypolab execution: run materialized runners as sandboxed subprocesses.

Python runners get an isolated runtime (a venv under the sandbox unless
configured otherwise), an allow-listed dependency pre-install and bounded
auto-repair rounds for module-not-found failures. Every run is time-bounded
and observes the caller's cancellation context.
"""

from __future__ import annotations

import os
import re
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from hypolab.cancellation import CancellationContext
from hypolab.config import ExecutionSettings, load_execution_settings
from hypolab.constants import (
    MODULE_PACKAGE_ALIASES,
    PREINSTALL_SAFE_PACKAGES,
    RUNNERS_OUTPUT_DIR_NAME,
)
from hypolab.evidence import parse_evidence_contract
from hypolab.materializer import MaterializationResult, runners_root
from hypolab.models import ExperimentPlan, ProcessOutcome, RunnerDefinition, RunnerExecutionResult
from hypolab.utils import (
    _append_log,
    _clamp_raw_output,
    _compact_log_text,
    _format_duration,
    _redact_sensitive_text,
    _resolve_config_dir,
    _truncate_for_ui,
    _truncate_preview,
)

_WAIT_SLICE_SECONDS = 0.1
_PROBE_TIMEOUT_SECONDS = 2
_PIP_PROBE_TIMEOUT_SECONDS = 5
_MAX_CAPTURE_CHARS = 512 * 1024
_MISSING_MODULE_PATTERNS = (
    re.compile(r"No module named ['\"]([^'\"]+)['\"]"),
    re.compile(r"ModuleNotFoundError:\s*No module named ([^\s'\"]+)"),
)
_IMPORT_PATTERN = re.compile(r"^\s*import\s+([A-Za-z0-9_.]+)", re.MULTILINE)
_FROM_IMPORT_PATTERN = re.compile(r"^\s*from\s+([A-Za-z0-9_.]+)\s+import\s+", re.MULTILINE)
_PACKAGE_NAME = re.compile(r"^[A-Za-z0-9._-]+$")
_NO_PYTHON_MESSAGE = "No Python interpreter found (set HYPOLAB_PYTHON_BIN)."
_SYSTEM_PIP_HINT = "(set HYPOLAB_USE_VENV=1 or HYPOLAB_ALLOW_SYSTEM_PIP=1)"


# ---------------------------------------------------------------------------
# Ordering and dependency inference
# ---------------------------------------------------------------------------


def pick_execution_order(plan: ExperimentPlan) -> list[str]:
    """Declared order first (known ids, deduped), then the remaining runners."""
    fallback = [runner.id for runner in plan.runners]
    if not plan.execution_order:
        return fallback
    known = set(fallback)
    ordered: list[str] = []
    for runner_id in plan.execution_order:
        if runner_id in known and runner_id not in ordered:
            ordered.append(runner_id)
    ordered.extend(runner_id for runner_id in fallback if runner_id not in ordered)
    return ordered


def map_module_to_package(module_name: str) -> str:
    normalized = module_name.strip()
    return MODULE_PACKAGE_ALIASES.get(normalized, normalized)


def extract_missing_python_modules(stderr: str) -> list[str]:
    packages: list[str] = []
    for pattern in _MISSING_MODULE_PATTERNS:
        for match in pattern.finditer(stderr):
            module_name = match.group(1).strip().split(".")[0]
            if not module_name:
                continue
            package = map_module_to_package(module_name)
            if _PACKAGE_NAME.match(package) and package not in packages:
                packages.append(package)
    return packages


def infer_python_packages(code: str) -> list[str]:
    """Allow-listed packages imported by runner code, in first-seen order."""
    packages: list[str] = []
    for pattern in (_IMPORT_PATTERN, _FROM_IMPORT_PATTERN):
        for match in pattern.finditer(code):
            package = map_module_to_package(match.group(1).split(".")[0])
            if package in PREINSTALL_SAFE_PACKAGES and package not in packages:
                packages.append(package)
    return packages


# ---------------------------------------------------------------------------
# Python runtime provisioning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PythonRuntime:
    command: str
    mode: str              # "venv" | "system"


def _run_setup_command(argv: list[str], *, cwd: Path, timeout: float) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            argv,
            cwd=cwd,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(argv, 124, "", f"timed out after {timeout:g}s: {' '.join(argv)}")
    except (FileNotFoundError, OSError) as exc:
        return subprocess.CompletedProcess(argv, 127, "", str(exc))


def resolve_python_base(settings: ExecutionSettings, cwd: Path) -> str | None:
    candidates = [settings.python_bin] if settings.python_bin else ["python3", "python"]
    for candidate in candidates:
        probe = _run_setup_command([candidate, "--version"], cwd=cwd, timeout=_PROBE_TIMEOUT_SECONDS)
        if probe.returncode == 0:
            return candidate
    return None


def venv_paths(cwd: Path, settings: ExecutionSettings) -> tuple[Path, str, Path]:
    """(absolute venv dir, venv dir as configured, interpreter path)."""
    relative = settings.venv_dir or f"{RUNNERS_OUTPUT_DIR_NAME}/.venv"
    absolute = (cwd / relative).resolve()
    if sys.platform == "win32":
        return absolute, relative, absolute / "Scripts" / "python.exe"
    return absolute, relative, absolute / "bin" / "python"


def ensure_python_runtime(
    cwd: Path,
    base: str | None,
    settings: ExecutionSettings,
) -> tuple[PythonRuntime | None, str]:
    """Return the runtime for Python runners and a setup diagnostic ("" when clean).

    Without strict mode a failed venv setup degrades to the system interpreter
    and reports why; with strict mode it yields no runtime at all.
    """
    if base is None:
        return None, _NO_PYTHON_MESSAGE

    if not settings.use_venv:
        if settings.strict_venv:
            return None, "Strict venv mode is active: enable HYPOLAB_USE_VENV=1 to run Python runners."
        return PythonRuntime(command=base, mode="system"), ""

    setup_timeout = settings.venv_setup_timeout_ms / 1000
    venv_dir, venv_label, interpreter = venv_paths(cwd, settings)

    def _degrade(action: str, detail: str) -> tuple[PythonRuntime | None, str]:
        if settings.strict_venv:
            return None, _truncate_preview(f"Could not {action} ({venv_label}) in strict mode. {detail}", 220)
        return (
            PythonRuntime(command=base, mode="system"),
            _truncate_preview(f"Could not {action} ({venv_label}); using system Python. {detail}", 220),
        )

    if not interpreter.exists():
        create = _run_setup_command([base, "-m", "venv", str(venv_dir)], cwd=cwd, timeout=setup_timeout)
        if create.returncode != 0 or not interpreter.exists():
            return _degrade("create local venv", (create.stderr or "").strip() or "venv_create_failed")

    probe = _run_setup_command(
        [str(interpreter), "-m", "pip", "--version"], cwd=cwd, timeout=_PIP_PROBE_TIMEOUT_SECONDS
    )
    if probe.returncode != 0:
        ensure = _run_setup_command(
            [str(interpreter), "-m", "ensurepip", "--upgrade"], cwd=cwd, timeout=setup_timeout
        )
        if ensure.returncode != 0:
            return _degrade("enable pip in venv", (ensure.stderr or "").strip() or "ensurepip_failed")

    return PythonRuntime(command=str(interpreter), mode="venv"), ""


# ---------------------------------------------------------------------------
# Subprocess execution
# ---------------------------------------------------------------------------


def run_process(
    argv: list[str],
    *,
    cwd: Path,
    timeout_ms: int,
    cancel: CancellationContext | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> ProcessOutcome:
    """Run ``argv`` with pumped pipes, a hard timeout and cooperative cancellation.

    On timeout or cancellation the child is terminated, then killed if it does
    not exit within two seconds.
    """
    captured_stdout: list[str] = []
    captured_stderr: list[str] = []
    captured_stdout_len = [0]
    captured_stderr_len = [0]

    def _pump_stream(stream: Any, captured_chunks: list[str], captured_len: list[int]) -> None:
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                if captured_len[0] < _MAX_CAPTURE_CHARS:
                    snippet = line[: _MAX_CAPTURE_CHARS - captured_len[0]]
                    captured_chunks.append(snippet)
                    captured_len[0] += len(snippet)
        finally:
            try:
                stream.close()
            except Exception:
                pass

    start = clock()
    timeout_seconds = max(0.0, timeout_ms / 1000)
    process: subprocess.Popen[str] | None = None
    stdout_thread: threading.Thread | None = None
    stderr_thread: threading.Thread | None = None
    timed_out = False
    error = ""
    returncode: int | None = None
    try:
        try:
            process = subprocess.Popen(
                argv,
                cwd=cwd,
                shell=False,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
                env=os.environ.copy(),
            )
        except (FileNotFoundError, OSError) as exc:
            return ProcessOutcome(
                exit_code=None,
                stdout="",
                stderr=str(exc),
                duration_ms=int((clock() - start) * 1000),
                error=str(exc),
            )

        stdout_thread = threading.Thread(
            target=_pump_stream, args=(process.stdout, captured_stdout, captured_stdout_len), daemon=True
        )
        stderr_thread = threading.Thread(
            target=_pump_stream, args=(process.stderr, captured_stderr, captured_stderr_len), daemon=True
        )
        stdout_thread.start()
        stderr_thread.start()

        while True:
            try:
                returncode = process.wait(timeout=_WAIT_SLICE_SECONDS)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.done:
                error = cancel.cancel_message() or cancel.expired_message()
            elif clock() - start >= timeout_seconds:
                timed_out = True
                error = f"runner timed out after {timeout_ms}ms"
            else:
                continue
            process.terminate()
            try:
                process.wait(timeout=2)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            returncode = None
            break
    finally:
        if stdout_thread is not None:
            stdout_thread.join(timeout=2)
        if stderr_thread is not None:
            stderr_thread.join(timeout=2)

    stderr_text = "".join(captured_stderr)
    if error and not stderr_text.strip():
        stderr_text = error
    return ProcessOutcome(
        exit_code=returncode,
        stdout="".join(captured_stdout),
        stderr=stderr_text,
        duration_ms=int((clock() - start) * 1000),
        timed_out=timed_out,
        error=error,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class ExecutionReport:
    results: list[RunnerExecutionResult] = field(default_factory=list)
    installed_dependencies: list[str] = field(default_factory=list)
    install_error: str = ""
    progress: list[str] = field(default_factory=list)
    aborted: bool = False

    def result_for(self, runner_id: str) -> RunnerExecutionResult | None:
        for result in self.results:
            if result.id == runner_id:
                return result
        return None

    def counts(self) -> tuple[int, int, int]:
        ok = sum(1 for result in self.results if result.status == "success")
        failed = sum(1 for result in self.results if result.status == "failed")
        skipped = sum(1 for result in self.results if result.status == "skipped")
        return ok, failed, skipped


def _skipped(runner_id: str, relative_path: str, cwd: Path, command: str, reason: str) -> RunnerExecutionResult:
    return RunnerExecutionResult(
        id=runner_id,
        command=command,
        cwd=str(cwd),
        status="skipped",
        reason=reason,
        relative_path=relative_path,
    )


def _outcome_status(outcome: ProcessOutcome) -> str:
    return "failed" if outcome.error or outcome.exit_code != 0 else "success"


def _outcome_result(
    runner_id: str,
    relative_path: str,
    cwd: Path,
    command: str,
    outcome: ProcessOutcome,
) -> RunnerExecutionResult:
    return RunnerExecutionResult(
        id=runner_id,
        command=command,
        cwd=str(cwd),
        status=_outcome_status(outcome),
        exit_code=outcome.exit_code,
        duration_ms=outcome.duration_ms,
        stdout=_clamp_raw_output(outcome.stdout),
        stderr=_clamp_raw_output(outcome.stderr),
        stdout_preview=_truncate_preview(outcome.stdout.strip()),
        stderr_preview=_truncate_preview(outcome.stderr.strip()),
        reason=_truncate_preview(outcome.error, 120) if outcome.error else "",
        evidence_contract=parse_evidence_contract(outcome.stdout, outcome.stderr),
        relative_path=relative_path,
    )


def _format_exit(result: RunnerExecutionResult) -> str:
    return "n/a" if result.exit_code is None else str(result.exit_code)


class ExecutionEngine:
    """Executes the runners of a materialized plan inside ``<cwd>/hypolab-runners``."""

    def __init__(
        self,
        cwd: Path,
        settings: ExecutionSettings | None = None,
        *,
        config_dir: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cwd = Path(cwd)
        self.config_dir = config_dir or _resolve_config_dir()
        self.settings = settings or load_execution_settings(self.config_dir)
        self._clock = clock

    # -- progress --------------------------------------------------------

    def _emit(
        self,
        report: ExecutionReport,
        line: str,
        on_progress: Callable[[str], None] | None,
    ) -> None:
        report.progress.append(line)
        _append_log(self.config_dir, f"runners {_compact_log_text(_redact_sensitive_text(line))}")
        if on_progress is not None:
            on_progress(line)

    def _run(self, argv: list[str], cancel: CancellationContext | None) -> ProcessOutcome:
        return run_process(
            argv,
            cwd=self.cwd,
            timeout_ms=self.settings.runner_timeout_ms,
            cancel=cancel,
            clock=self._clock,
        )

    def _pip_install(self, runtime: PythonRuntime, packages: list[str]) -> subprocess.CompletedProcess[str]:
        return _run_setup_command(
            [runtime.command, "-m", "pip", "install", *packages],
            cwd=self.cwd,
            timeout=self.settings.pip_install_timeout_ms / 1000,
        )

    # -- main loop -------------------------------------------------------

    def run_plan(
        self,
        plan: ExperimentPlan,
        materialized: MaterializationResult,
        cancel: CancellationContext | None = None,
        *,
        only_ids: list[str] | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> ExecutionReport:
        """Execute the plan's runners and return results plus progress lines.

        ``only_ids`` restricts execution to a subset (used when a field runner
        is appended after the first pass). A cancelled context stops the run:
        the active child is killed and the remaining runners are recorded as
        ``aborted``; callers re-raise through ``cancel.raise_if_cancelled()``.
        """
        report = ExecutionReport()
        self._emit(report, "stage_start: experiment_runners", on_progress)
        if plan.status != "ready" or not plan.runners:
            self._emit(report, "stage_end: experiment_runners runs=0 ok=0 fail=0 skipped=0", on_progress)
            return report

        settings = self.settings
        output_root = runners_root(self.cwd)
        order = pick_execution_order(plan)
        if only_ids is not None:
            order = [runner_id for runner_id in order if runner_id in only_ids]
        selected = [runner for runner in (plan.runner_by_id(runner_id) for runner_id in order) if runner]

        python_runners = [runner for runner in selected if runner.language == "python"]
        runtime: PythonRuntime | None = None
        if python_runners:
            base = resolve_python_base(settings, self.cwd)
            runtime, setup_error = ensure_python_runtime(self.cwd, base, settings)
            report.install_error = setup_error
            if setup_error:
                _append_log(self.config_dir, f"runners python runtime: {setup_error}")

        if settings.auto_install and runtime is not None and python_runners and not _is_done(cancel):
            self._preinstall(report, runtime, python_runners, on_progress)

        failed_missing: list[str] = []
        failed_runner_ids: list[str] = []
        for runner_id in order:
            runner = plan.runner_by_id(runner_id)
            if runner is None:
                continue
            relative_path = materialized.path_for(runner_id) or runner.filename
            absolute_path = (self.cwd / relative_path).resolve()
            if absolute_path != output_root and output_root not in absolute_path.parents:
                report.results.append(
                    _skipped(runner_id, relative_path, self.cwd, "(blocked)", "runner_outside_output_dir")
                )
                continue
            if not absolute_path.exists():
                report.results.append(
                    _skipped(runner_id, relative_path, self.cwd, "(missing file)", "runner_file_missing")
                )
                continue
            if _is_done(cancel):
                report.aborted = True
                report.results.append(_skipped(runner_id, relative_path, self.cwd, "(aborted)", "aborted"))
                continue

            argv = self._argv_for(runner, relative_path, runtime)
            if argv is None and runner.language == "python":
                message = report.install_error or _NO_PYTHON_MESSAGE
                report.results.append(
                    RunnerExecutionResult(
                        id=runner_id,
                        command="(python missing)",
                        cwd=str(self.cwd),
                        status="failed",
                        stderr=message,
                        stderr_preview=_truncate_preview(message),
                        reason="python_not_found",
                        relative_path=relative_path,
                    )
                )
                continue
            if argv is None:
                report.results.append(_skipped(runner_id, relative_path, self.cwd, "(pseudo)", "pseudo_runner"))
                continue

            command = " ".join(argv)
            self._emit(report, f"tool_start: {runner_id} cmd={_truncate_for_ui(command, 110)}", on_progress)
            outcome = self._run(argv, cancel)
            result = _outcome_result(runner_id, relative_path, self.cwd, command, outcome)
            if _is_done(cancel):
                report.aborted = True
                result.reason = "aborted"
            report.results.append(result)
            if runner.language == "python" and result.status == "failed":
                missing = extract_missing_python_modules(outcome.stderr)
                if missing:
                    failed_runner_ids.append(runner_id)
                    failed_missing.extend(pkg for pkg in missing if pkg not in failed_missing)
            self._emit(
                report,
                f"tool_end: {runner_id} status={result.status} "
                f"(exit {_format_exit(result)}, {_format_duration(result.duration_ms)})",
                on_progress,
            )

        if settings.auto_install and runtime is not None and failed_missing and not _is_done(cancel):
            self._auto_repair(report, plan, materialized, runtime, failed_missing, failed_runner_ids, cancel, on_progress)

        ok, failed, skipped = report.counts()
        self._emit(
            report,
            f"stage_end: experiment_runners runs={len(report.results)} ok={ok} fail={failed} skipped={skipped}",
            on_progress,
        )
        return report

    def _argv_for(self, runner: RunnerDefinition, relative_path: str, runtime: PythonRuntime | None) -> list[str] | None:
        if runner.language == "python":
            return [runtime.command, relative_path] if runtime is not None else None
        if runner.language == "bash":
            return ["bash", relative_path]
        return None

    def _system_pip_blocked(self, runtime: PythonRuntime) -> bool:
        return runtime.mode == "system" and not self.settings.allow_system_pip

    def _preinstall(
        self,
        report: ExecutionReport,
        runtime: PythonRuntime,
        python_runners: list[RunnerDefinition],
        on_progress: Callable[[str], None] | None,
    ) -> None:
        candidates: list[str] = []
        for runner in python_runners:
            candidates.extend(pkg for pkg in infer_python_packages(runner.code) if pkg not in candidates)
        if not candidates:
            return

        listed = _truncate_for_ui(", ".join(candidates), 90)
        self._emit(report, f"Preparing Python runtime ({runtime.mode}) and installing base deps: {listed}", on_progress)
        if self._system_pip_blocked(runtime):
            report.install_error = report.install_error or (
                f"Skipped pre auto-install: system Python without venv {_SYSTEM_PIP_HINT}."
            )
            return
        install = self._pip_install(runtime, candidates)
        if install.returncode == 0:
            for package in candidates:
                if package not in report.installed_dependencies:
                    report.installed_dependencies.append(package)
            self._emit(report, f"Base deps installed: {listed}", on_progress)
            return
        report.install_error = report.install_error or _truncate_preview(
            (install.stderr or "").strip() or "preinstall_failed", 180
        )
        self._emit(report, f"Base deps preinstall failed: {_truncate_for_ui(report.install_error, 90)}", on_progress)

    def _auto_repair(
        self,
        report: ExecutionReport,
        plan: ExperimentPlan,
        materialized: MaterializationResult,
        runtime: PythonRuntime,
        failed_missing: list[str],
        failed_runner_ids: list[str],
        cancel: CancellationContext | None,
        on_progress: Callable[[str], None] | None,
    ) -> None:
        """Install exactly the missing packages and re-run only the runners that needed them."""
        if self._system_pip_blocked(runtime):
            report.install_error = report.install_error or (
                f"Auto-install skipped: system Python without venv {_SYSTEM_PIP_HINT}."
            )
            return

        max_rounds = self.settings.auto_install_max_rounds
        pending_deps = list(failed_missing)
        pending_runners = list(failed_runner_ids)
        round_number = 0
        while pending_deps and pending_runners and round_number < max_rounds and not _is_done(cancel):
            round_number += 1
            packages = [pkg for pkg in pending_deps if pkg not in report.installed_dependencies]
            if not packages:
                break

            self._emit(
                report,
                f"Auto-repair deps (round {round_number}): {_truncate_for_ui(', '.join(packages), 90)}",
                on_progress,
            )
            install = self._pip_install(runtime, packages)
            if install.returncode != 0:
                report.install_error = _truncate_preview(
                    (install.stderr or "").strip() or "pip_install_failed", 180
                )
                self._emit(
                    report,
                    f"Auto-repair deps failed (round {round_number}): {_truncate_for_ui(report.install_error, 90)}",
                    on_progress,
                )
                break
            for package in packages:
                if package not in report.installed_dependencies:
                    report.installed_dependencies.append(package)

            next_deps: list[str] = []
            next_runners: list[str] = []
            for runner_id in pending_runners:
                runner = plan.runner_by_id(runner_id)
                if runner is None or runner.language != "python":
                    continue
                relative_path = materialized.path_for(runner_id) or runner.filename
                command = f"{runtime.command} {relative_path}"
                self._emit(report, f"tool_start: {runner_id} retry cmd={_truncate_for_ui(command, 110)}", on_progress)
                outcome = self._run([runtime.command, relative_path], cancel)
                missing = extract_missing_python_modules(outcome.stderr)
                status = _outcome_status(outcome)
                if status == "failed" and missing:
                    next_runners.append(runner_id)
                    next_deps.extend(
                        pkg for pkg in missing if pkg not in report.installed_dependencies and pkg not in next_deps
                    )

                previous = report.result_for(runner_id)
                if previous is None:
                    continue
                retried = _outcome_result(runner_id, relative_path, self.cwd, command, outcome)
                retried.duration_ms += previous.duration_ms
                if outcome.error:
                    retried.reason = "aborted" if _is_done(cancel) else _truncate_preview(outcome.error, 120)
                elif missing:
                    retried.reason = f"missing_after_retry:{','.join(missing)}"
                else:
                    retried.reason = f"retry_after_install:{','.join(report.installed_dependencies)}"
                report.results[report.results.index(previous)] = retried
                self._emit(
                    report,
                    f"tool_end: {runner_id} retry status={retried.status} "
                    f"(exit {_format_exit(retried)}, {_format_duration(outcome.duration_ms)})",
                    on_progress,
                )
                if _is_done(cancel):
                    report.aborted = True
                    break

            pending_deps = next_deps
            pending_runners = next_runners

        if not report.install_error and pending_deps and pending_runners and not _is_done(cancel):
            report.install_error = _truncate_preview(
                f"Deps still missing after {max_rounds} round(s): {', '.join(pending_deps)}", 180
            )


def _is_done(cancel: CancellationContext | None) -> bool:
    return cancel is not None and cancel.done
