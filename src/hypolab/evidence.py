"""Hypolab evidence: runner evidence contracts, signal classification, and local dataset evidence.

The classifier is heuristic by nature. A structured evidence contract emitted
by a runner always wins over keyword matches in its output.
"""

from __future__ import annotations

import json
import math
import re
from pathlib import Path
from typing import Any, Iterable

from hypolab.constants import (
    CONCRETE_DATASET_REFERENCE_PATTERN,
    DATASET_HINT_PATTERN,
    DISALLOWED_URL_PATH_PATTERN,
    EVIDENCE_CONTRACT_PREFIX,
    EVIDENCE_MIN_ROWS,
    EXPECTED_FAIL_CONTEXT_PATTERN,
    EXPLICIT_FAIL_PATTERN,
    FAIL_SIGNAL_PATTERN,
    NEGATED_FAIL_PATTERN,
    PASS_SIGNAL_PATTERN,
    RUNTIME_ERROR_PATTERN,
    SYNTHETIC_PATTERN,
)
from hypolab.datasets import analyze_dataset_bytes, format_from_extension, is_disallowed_url, mime_for_format
from hypolab.models import LocalDatasetEvidence, RunnerDefinition, RunnerExecutionResult
from hypolab.semantic import normalize_token
from hypolab.utils import _normalize_inline

_CONTRACT_LINE = re.compile(re.escape(EVIDENCE_CONTRACT_PREFIX) + r"(\{[^\n]+\})")
_URL_IN_TEXT = re.compile(r"\bhttps?://[^\s'\"`)<>\]]+", re.IGNORECASE)
_LOCAL_DATASET_PATH = re.compile(
    r"(?:^|[\s\"'`])((?:\.{0,2}/|/|[a-zA-Z]:\\)?[^\s\"'`]+?\.(?:csv|tsv|jsonl|parquet))(?=$|[\s\"'`])",
    re.IGNORECASE,
)
_DATASET_USED_TRUE = re.compile(r"dataset_used\s*[:=]\s*true", re.IGNORECASE)
_REMOTE_CSV_URL = re.compile(r"\bhttps?://[^\s'\"`]+\.csv\b", re.IGNORECASE)
_READ_CSV_CALL = re.compile(r"\b(?:pd|pandas)\.read_csv\(", re.IGNORECASE)
_KNOWN_LOADERS = (
    re.compile(r"\b(?:sns|seaborn)\.load_dataset\(", re.IGNORECASE),
    re.compile(r"\b(?:pd|pandas)\.read_csv\(\s*['\"]https?://[^'\"]+\.csv\b", re.IGNORECASE),
    re.compile(r"\bsklearn\.datasets\.(?:fetch_[a-z0-9_]+|load_[a-z0-9_]+)\(", re.IGNORECASE),
    re.compile(r"\bdatasets\.load_dataset\(", re.IGNORECASE),
    re.compile(r"\bopenml\b", re.IGNORECASE),
)
ROW_COUNT_PATTERNS = (
    re.compile(r"\bn[_\s-]?rows?\s*[:=]\s*(\d+)\b", re.IGNORECASE),
    re.compile(r"\brows?\s*[:=]\s*(\d+)\b", re.IGNORECASE),
)
_OUTPUT_ROW_PATTERNS = ROW_COUNT_PATTERNS + (
    re.compile(r"\bno\.?\s*observations?\s*[:=]\s*(\d+)\b", re.IGNORECASE),
    re.compile(r"\bn\s*total\s*[:=]\s*(\d+)\b", re.IGNORECASE),
    re.compile(r"\btotal\s*muestras(?:\s*validas)?\s*[:=]\s*(\d+)\b", re.IGNORECASE),
    re.compile(r"\bmuestras(?:\s*validas)?\s*[:=]\s*(\d+)\b", re.IGNORECASE),
    re.compile(r"\bprocesad[oa]s?\s*(\d+)\s*(?:filas|rows?)\b", re.IGNORECASE),
    re.compile(r"\bshape\s*[:=]?\s*\(?\s*(\d+)\s*,\s*\d+\s*\)?", re.IGNORECASE),
)

_TRUTH_PASS = {"pass", "supported", "support", "confirmed", "valid", "true"}
_TRUTH_FAIL = {"fail", "contradicted", "falsified", "rejected", "refuted", "false"}
_TRUTH_INCONCLUSIVE = {"inconclusive", "mixed", "ambiguous", "ambiguo"}
_CONTRACT_PASS = {"pass", "ok", "success", "supported", "confirmed", "true"}
_CONTRACT_FAIL = {"fail", "error", "falsified", "refuted", "rejected", "false"}
_BOOL_FALSE = {"false", "no", "n", "0"}
_METRIC_TRUE = {"true", "pass", "yes", "1"}
_METRIC_FALSE = {"false", "fail", "no", "0"}
_EXISTENCE_VALUES = {"EXISTS", "INEFFICIENT", "NONEXISTENT"}
_REAL_FORMATS = {"csv", "tsv", "parquet"}
_JSONL_ALIASES = {"jsonl", "json", "ndjson", "jsonlines"}
_STRING_LIST_MAX = 64


# ---------------------------------------------------------------------------
# Signal classification
# ---------------------------------------------------------------------------


def has_signal_hint(text: str, signal: str | None) -> bool:
    """Case-insensitive containment of a runner's declared signal string."""
    normalized_signal = _normalize_inline(signal).lower()
    normalized_text = _normalize_inline(text).lower()
    if not normalized_signal or not normalized_text:
        return False
    return normalized_signal in normalized_text


def detect_run_signals(
    text: str, *, expected_signal: str | None = None, failure_signal: str | None = None
) -> tuple[bool, bool]:
    """Return ``(has_pass, has_fail)`` for runner output.

    Declared runner signals take precedence over generic keywords. A generic
    failure keyword does not count when it is negated (``falsified: false``,
    ``not refuted``) or framed as an expected negative result.
    """
    normalized = _normalize_inline(text)
    if not normalized:
        return False, False

    pass_hint = has_signal_hint(normalized, expected_signal)
    fail_hint = has_signal_hint(normalized, failure_signal)
    if pass_hint or fail_hint:
        return pass_hint, fail_hint

    has_pass = bool(PASS_SIGNAL_PATTERN.search(normalized))
    has_fail = (
        bool(FAIL_SIGNAL_PATTERN.search(normalized))
        and not NEGATED_FAIL_PATTERN.search(normalized)
        and not EXPECTED_FAIL_CONTEXT_PATTERN.search(normalized)
    )
    return has_pass, has_fail


def has_strong_fail_signal(text: str, failure_signal: str | None = None) -> bool:
    if has_signal_hint(text, failure_signal):
        return True
    normalized = _normalize_inline(text)
    return bool(EXPLICIT_FAIL_PATTERN.search(normalized)) and not EXPECTED_FAIL_CONTEXT_PATTERN.search(normalized)


def has_runtime_error_signal(text: str) -> bool:
    normalized = _normalize_inline(text)
    return bool(normalized) and bool(RUNTIME_ERROR_PATTERN.search(normalized))


def has_concrete_dataset_reference(text: str) -> bool:
    normalized = _normalize_inline(text)
    return bool(normalized) and bool(CONCRETE_DATASET_REFERENCE_PATTERN.search(normalized))


def has_dataset_signal(parts: Iterable[str | None]) -> bool:
    for part in parts:
        text = _normalize_inline(part)
        if not text:
            continue
        if _DATASET_USED_TRUE.search(text) or DATASET_HINT_PATTERN.search(text):
            return True
    return False


def has_disallowed_dataset_reference(text: str) -> bool:
    normalized = _normalize_inline(text)
    if not normalized:
        return False
    if any(is_disallowed_url(url) for url in _URL_IN_TEXT.findall(normalized)):
        return True
    return bool(DISALLOWED_URL_PATH_PATTERN.search(normalized.lower()))


# ---------------------------------------------------------------------------
# Metric scraping from free text
# ---------------------------------------------------------------------------


def parse_max_metric(text: str, patterns: Iterable[re.Pattern[str]]) -> int:
    best = 0
    for pattern in patterns:
        for match in pattern.finditer(text):
            try:
                best = max(best, int(match.group(1)))
            except (TypeError, ValueError):
                continue
    return best


def parse_first_float_metric(text: str, patterns: Iterable[re.Pattern[str]]) -> float | None:
    for pattern in patterns:
        for match in pattern.finditer(text):
            try:
                value = float((match.group(1) or "").strip())
            except ValueError:
                continue
            if math.isfinite(value):
                return value
    return None


def parse_first_bool_metric(text: str, patterns: Iterable[re.Pattern[str]]) -> bool | None:
    for pattern in patterns:
        for match in pattern.finditer(text):
            normalized = _normalize_inline(match.group(1)).lower()
            if normalized in _METRIC_TRUE:
                return True
            if normalized in _METRIC_FALSE:
                return False
    return None


# ---------------------------------------------------------------------------
# Evidence contract
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _truth_assessment(raw: Any) -> str | None:
    if raw in ("PASS", "FAIL", "INCONCLUSIVE"):
        return raw
    if isinstance(raw, bool):
        return "PASS" if raw else "FAIL"
    if _is_number(raw):
        return "PASS" if raw != 0 else "FAIL"
    if not isinstance(raw, str):
        return None
    normalized = _normalize_inline(raw).lower()
    if normalized in _TRUTH_PASS:
        return "PASS"
    if normalized in _TRUTH_FAIL:
        return "FAIL"
    if normalized in _TRUTH_INCONCLUSIVE:
        return "INCONCLUSIVE"
    return None


def _runner_contract(raw: Any, truth: str | None) -> str | None:
    if raw in ("PASS", "FAIL"):
        return raw
    if isinstance(raw, bool):
        return "PASS" if raw else "FAIL"
    if _is_number(raw):
        return "PASS" if raw != 0 else "FAIL"
    if isinstance(raw, str):
        normalized = _normalize_inline(raw).lower()
        if normalized in _CONTRACT_PASS:
            return "PASS"
        if normalized in _CONTRACT_FAIL:
            return "FAIL"
    return truth if truth in ("PASS", "FAIL") else None


def parse_booleanish(value: Any) -> bool | None:
    """Booleans, non-zero numbers, and yes/no-style strings; any other non-empty string is true."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    normalized = _normalize_inline(value).lower()
    if not normalized:
        return None
    if normalized in _BOOL_FALSE:
        return False
    return True


def parse_numberish(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if not isinstance(value, str):
        return None
    match = re.match(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:e[+-]?\d+)?", _normalize_inline(value), re.IGNORECASE)
    if not match:
        return None
    parsed = float(match.group(0))
    return parsed if math.isfinite(parsed) else None


def parse_integerish(value: Any) -> int | None:
    parsed = parse_numberish(value)
    if parsed is None:
        return None
    return max(0, int(parsed))


def _string_list(value: Any) -> list[str] | None:
    if isinstance(value, list):
        raw_items = [item for item in value if isinstance(item, str)]
    elif isinstance(value, str):
        raw_items = re.split(r"[;,]\s*|\s+", value)
    else:
        return None
    items: list[str] = []
    for item in raw_items:
        token = normalize_token(item)
        if token and token not in items:
            items.append(token)
    return items[:_STRING_LIST_MAX] or None


def _existence(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = _normalize_inline(value).upper()
    return normalized if normalized in _EXISTENCE_VALUES else None


def _dataset_source(raw_source: Any, raw_uri: Any) -> str:
    source = _normalize_inline(raw_source) if isinstance(raw_source, str) else ""
    if source.lower() in ("real", "synthetic", "unknown"):
        return source.lower()
    uri = _normalize_inline(raw_uri) if isinstance(raw_uri, str) else ""
    if has_concrete_dataset_reference(uri or source):
        return "real"
    return "unknown"


def _dataset_source_type(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    normalized = _normalize_inline(raw).lower()
    if not normalized:
        return None
    if normalized in ("url", "http", "https"):
        return "url"
    if normalized in ("file", "path") or "local" in normalized:
        return "local"
    if normalized in ("unknown", "none", "n/a"):
        return "unknown"
    return None


def _dataset_format(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    normalized = _normalize_inline(raw).lower()
    if normalized in _REAL_FORMATS:
        return normalized
    if normalized in _JSONL_ALIASES:
        return "jsonl"
    if normalized == "unknown":
        return "unknown"
    return None


def _inline_str(value: Any) -> str | None:
    return _normalize_inline(value) if isinstance(value, str) else None


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def normalize_evidence_contract(payload: dict[str, Any]) -> dict[str, Any]:
    """Normalize one decoded contract object; absent or unusable fields are dropped."""
    phase = payload.get("phase")
    truth = _truth_assessment(payload.get("truth_assessment"))
    source = payload.get("dataset_source")
    uri = payload.get("dataset_source_uri")
    source_uri = _inline_str(uri)
    if source_uri is None and isinstance(source, str) and has_concrete_dataset_reference(source):
        source_uri = _normalize_inline(source)

    contract: dict[str, Any] = {
        "phase": phase if phase in ("toy", "field", "both") else None,
        "truth_assessment": truth,
        "runner_contract": _runner_contract(payload.get("runner_contract"), truth),
        "dataset_used": parse_booleanish(payload.get("dataset_used")),
        "dataset_source": _dataset_source(source, uri),
        "dataset_source_type": _dataset_source_type(payload.get("dataset_source_type")),
        "dataset_format": _dataset_format(payload.get("dataset_format")),
        "dataset_mime_type": _inline_str(payload.get("dataset_mime_type")),
        "dataset_mime_valid": parse_booleanish(payload.get("dataset_mime_valid")),
        "dataset_parse_ok": parse_booleanish(payload.get("dataset_parse_ok")),
        "dataset_checksum_sha256": _inline_str(payload.get("dataset_checksum_sha256")),
        "dataset_source_uri": source_uri,
        "n_rows": parse_integerish(payload.get("n_rows")),
        "n_cols": parse_integerish(payload.get("n_cols")),
        "header_detected": parse_booleanish(payload.get("header_detected")),
        "lobo_folds": parse_integerish(payload.get("lobo_folds")),
        "delta_bits": parse_numberish(payload.get("delta_bits")),
        "delta_bic": parse_numberish(payload.get("delta_bic")),
        "h4": parse_numberish(payload.get("h4")),
        "h2": parse_numberish(payload.get("h2")),
        "frag": parse_numberish(payload.get("frag")),
        "lobo_pass": parse_booleanish(_first_present(payload, "lobo_pass", "lobo.pass")),
        "existence": _existence(payload.get("existence")),
        "topology": _inline_str(payload.get("topology")),
        "energy_available": parse_numberish(_first_present(payload, "energy_available", "energy.available")),
        "energy_required": parse_numberish(_first_present(payload, "energy_required", "energy.required")),
        "energy_delta": parse_numberish(_first_present(payload, "energy_delta", "energy.delta")),
        "information_delta_bits": parse_numberish(
            _first_present(payload, "information_delta_bits", "information.delta_bits")
        ),
        "information_delta_bic": parse_numberish(
            _first_present(payload, "information_delta_bic", "information.delta_bic")
        ),
        "column_hints": _string_list(payload.get("column_hints")),
    }
    return {key: value for key, value in contract.items() if value is not None}


def parse_evidence_contract(stdout: str | None, stderr: str | None = None) -> dict[str, Any] | None:
    """Decode the last ``HYPOLAB_EVIDENCE_CONTRACT={...}`` line of a run, if any."""
    combined = f"{stdout or ''}\n{stderr or ''}"
    last = ""
    for match in _CONTRACT_LINE.finditer(combined):
        candidate = match.group(1).strip()
        if candidate:
            last = candidate
    if not last:
        return None
    try:
        payload = json.loads(last)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return normalize_evidence_contract(payload)


# ---------------------------------------------------------------------------
# Local dataset evidence
# ---------------------------------------------------------------------------


def extract_local_dataset_paths(text: str) -> list[str]:
    candidates: list[str] = []
    if not (text or "").strip():
        return candidates
    for match in _LOCAL_DATASET_PATH.finditer(text):
        raw = _normalize_inline(match.group(1))
        if not raw or re.match(r"^https?://", raw, re.IGNORECASE):
            continue
        cleaned = re.sub(r"^dataset\s*:\s*", "", raw, flags=re.IGNORECASE)
        if cleaned not in candidates:
            candidates.append(cleaned)
    return candidates


def _folds_for_rows(rows: int) -> int:
    if rows >= EVIDENCE_MIN_ROWS:
        return 4
    if rows >= 10:
        return 2
    return 1 if rows > 0 else 0


def _validated_local_rows(paths: Iterable[str], base: Path) -> tuple[int, list[str], list[str]]:
    best = 0
    validated: list[str] = []
    hints: list[str] = []
    for candidate in paths:
        path = Path(candidate)
        if not path.is_absolute():
            path = base / path
        fmt = format_from_extension(path.name)
        if fmt == "unknown" or not path.is_file():
            continue
        try:
            payload = path.read_bytes()
        except OSError:
            continue
        analysis = analyze_dataset_bytes(payload, fmt, mime_for_format(fmt))
        if not analysis.parse_ok or not analysis.mime_valid or analysis.n_rows <= 0:
            continue
        validated.append(str(path))
        hints.extend(hint for hint in analysis.column_hints if hint not in hints)
        best = max(best, analysis.n_rows)
    return best, validated, hints


def infer_local_dataset_evidence(
    run: RunnerExecutionResult, runner: RunnerDefinition | None = None
) -> LocalDatasetEvidence:
    """Judge from a run's text and the files it names whether a real dataset was used.

    A bare filename mention is not evidence: the dataset only counts as used
    when rows were parsed, a referenced local file validates, or a known
    loader (seaborn, sklearn.datasets, HF datasets, openml, remote CSV) is
    visible in the runner text.
    """
    aggregate = "\n".join(
        [
            " ".join(runner.required_inputs) if runner else "",
            runner.run_command if runner else "",
            runner.code if runner else "",
            run.command,
            run.stdout,
            run.stderr,
            run.stdout_preview,
            run.stderr_preview,
        ]
    )
    synthetic_tagged = bool(SYNTHETIC_PATTERN.search(_normalize_inline(aggregate)))
    disallowed = has_disallowed_dataset_reference(aggregate)
    known_loader = any(pattern.search(aggregate) for pattern in _KNOWN_LOADERS) or bool(
        _READ_CSV_CALL.search(aggregate) and _REMOTE_CSV_URL.search(aggregate)
    )

    base = Path(run.cwd) if run.cwd else Path.cwd()
    local_rows, validated, hints = _validated_local_rows(extract_local_dataset_paths(aggregate), base)
    rows = max(local_rows, parse_max_metric(aggregate, _OUTPUT_ROW_PATTERNS))
    used = rows > 0 or bool(validated) or known_loader
    real = (
        used
        and not synthetic_tagged
        and not disallowed
        and (bool(validated) or (known_loader and rows >= EVIDENCE_MIN_ROWS))
    )
    return LocalDatasetEvidence(
        dataset_used=used,
        has_real_dataset=real,
        n_rows=rows,
        lobo_folds=_folds_for_rows(rows),
        synthetic_tagged=synthetic_tagged,
        disallowed_reference=disallowed,
        paths=tuple(validated),
        column_hints=tuple(hints),
    )
