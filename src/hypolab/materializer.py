"""Runner materialization: confine plan runner files to the sandbox and track diffs."""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from hypolab.constants import RUNNER_FILE_EXTENSIONS, RUNNER_PLACEHOLDER_CODE, RUNNERS_OUTPUT_DIR_NAME
from hypolab.models import ExperimentPlan, MaterializedFile, RunnerDefinition
from hypolab.utils import _normalize_inline, _truncate_for_ui

_UNSAFE_SEGMENT_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")
_DRIVE_OR_ROOT_PREFIX = re.compile(r"^([A-Za-z]:)?/+")
_HAS_EXTENSION = re.compile(r"\.[a-zA-Z0-9]+$")
_BASH_FUNCTION_LINE = re.compile(r"^\w[\w-]*\s*\(\)\s*\{")


@dataclass
class MaterializationResult:
    runners_dir: Path
    files: list[MaterializedFile] = field(default_factory=list)

    def path_for(self, runner_id: str) -> str | None:
        for item in self.files:
            if item.id == runner_id:
                return item.relative_path
        return None

    @property
    def diffs(self) -> list[MaterializedFile]:
        return [item for item in self.files if item.diff]


def runners_root(cwd: Path) -> Path:
    return (cwd / RUNNERS_OUTPUT_DIR_NAME).resolve()


# ---------------------------------------------------------------------------
# Path sanitation
# ---------------------------------------------------------------------------


def _sanitize_segment(raw: str) -> str:
    cleaned = _UNSAFE_SEGMENT_CHARS.sub("-", raw.strip()).strip("-")[:80]
    return cleaned or "runner"


def _default_extension(language: str) -> str:
    return RUNNER_FILE_EXTENSIONS.get(language, ".txt")


def _default_filename(runner_id: str, language: str) -> str:
    return f"{_sanitize_segment(runner_id).lower()}{_default_extension(language)}"


def build_safe_relative_path(filename: str, runner_id: str, language: str) -> str:
    """Relative POSIX path under the sandbox for a requested runner filename.

    Backslashes become slashes, drive letters and leading slashes are dropped,
    ``.`` and ``..`` segments are removed and every remaining segment is
    sanitized. An empty result falls back to ``<runner id><ext>``.
    """
    normalized = (filename or "").replace("\\", "/").strip()
    normalized = _DRIVE_OR_ROOT_PREFIX.sub("", normalized)
    segments = [
        _sanitize_segment(segment)
        for segment in (part.strip() for part in normalized.split("/"))
        if segment and segment not in {".", ".."}
    ]
    candidate = "/".join(segments) or _default_filename(runner_id, language)
    if not _HAS_EXTENSION.search(candidate):
        candidate += _default_extension(language)
    return candidate


def make_unique_relative_path(candidate: str, used: set[str]) -> str:
    if candidate not in used:
        return candidate
    path = PurePosixPath(candidate)
    stem = str(path.with_suffix("")) if path.suffix else candidate
    suffix = 2
    while True:
        option = f"{stem}-{suffix}{path.suffix}"
        if option not in used:
            return option
        suffix += 1


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# Code normalization
# ---------------------------------------------------------------------------


def rewrite_workspace_absolute_paths(code: str, cwd: Path) -> str:
    """Turn ``<cwd>/x`` (and ``file://<cwd>/x``) references into relative paths."""
    normalized_cwd = _normalize_inline(str(cwd)).replace("\\", "/").rstrip("/")
    if not normalized_cwd:
        return code
    prefix = f"{normalized_cwd}/"
    if prefix not in code:
        return code
    return code.replace(f"file://{prefix}", "file://").replace(prefix, "")


def normalize_runner_code(code: str, language: str) -> str:
    if code.strip():
        return code if code.endswith("\n") else f"{code}\n"
    return RUNNER_PLACEHOLDER_CODE.get(language, RUNNER_PLACEHOLDER_CODE["pseudo"])


def definition_preview(code: str, language: str) -> str:
    lines = [line.strip() for line in code.splitlines() if line.strip()]
    if not lines:
        return "(no explicit definition)"
    if language == "python":
        for line in lines:
            if line.startswith(("def ", "class ")):
                return _truncate_for_ui(line, 96)
    if language == "bash":
        for line in lines:
            if _BASH_FUNCTION_LINE.match(line):
                return _truncate_for_ui(line, 96)
        for line in lines:
            if not line.startswith("#"):
                return _truncate_for_ui(line, 96)
    return _truncate_for_ui(lines[0], 96)


def _unified_diff(relative_path: str, before: str, after: str) -> str:
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=f"a/{relative_path}",
            tofile=f"b/{relative_path}",
        )
    )


# ---------------------------------------------------------------------------
# Materialization
# ---------------------------------------------------------------------------


def _resolve_target(root: Path, candidate: str, runner: RunnerDefinition, used: set[str]) -> tuple[str, Path]:
    relative = make_unique_relative_path(candidate, used)
    target = (root / relative).resolve()
    if target != root and _is_within(target, root):
        return relative, target
    # resolved outside the sandbox (symlinked directory)
    relative = make_unique_relative_path(_default_filename(runner.id, runner.language), used)
    return relative, (root / relative).resolve()


def materialize_runners(plan: ExperimentPlan, cwd: Path) -> MaterializationResult:
    """Write each runner of a ready plan under ``<cwd>/hypolab-runners``.

    Files are only rewritten when their content changes; created/updated files
    carry a unified diff against the previous content.
    """
    root = runners_root(cwd)
    result = MaterializationResult(runners_dir=root)
    if plan.status != "ready" or not plan.runners:
        return result

    root.mkdir(parents=True, exist_ok=True)
    base = cwd.resolve()
    used: set[str] = set()
    for runner in plan.runners:
        relative, target = _resolve_target(
            root, build_safe_relative_path(runner.filename, runner.id, runner.language), runner, used
        )
        used.add(relative)
        target.parent.mkdir(parents=True, exist_ok=True)

        next_code = normalize_runner_code(rewrite_workspace_absolute_paths(runner.code, base), runner.language)
        exists = target.exists()
        current = target.read_text(encoding="utf-8") if exists else ""
        status = "created"
        if exists:
            status = "unchanged" if current == next_code else "updated"

        relative_to_cwd = target.relative_to(base).as_posix()
        diff = ""
        if status != "unchanged":
            target.write_text(next_code, encoding="utf-8")
            diff = _unified_diff(relative_to_cwd, current, next_code)
        result.files.append(
            MaterializedFile(id=runner.id, relative_path=relative_to_cwd, status=status, diff=diff)
        )
    return result
