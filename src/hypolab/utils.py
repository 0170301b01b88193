"""Hypolab utility functions: timestamps, JSON I/O, logging, and text helpers."""

from __future__ import annotations

import hashlib
import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from hypolab.constants import (
    DEFAULT_CONFIG_DIR_NAME,
    ENV_PREFIX,
    LOG_DIR_NAME,
    LOG_FILE_NAME,
    OUTPUT_PREVIEW_CHARS,
    RAW_OUTPUT_MAX_CHARS,
)
from hypolab.models import StateError


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _epoch_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


# ---------------------------------------------------------------------------
# JSON I/O helpers
# ---------------------------------------------------------------------------


def _read_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise StateError(f"could not parse JSON at {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateError(f"expected JSON object at {path}")
    return payload


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def _load_json_if_exists(path: Path) -> Any | None:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return None


def _json_roundtrip(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


# ---------------------------------------------------------------------------
# Environment + config dir
# ---------------------------------------------------------------------------


def _env_name(name: str) -> str:
    return name if name.startswith(ENV_PREFIX) else f"{ENV_PREFIX}{name}"


def _resolve_config_dir(env: dict[str, str] | None = None) -> Path:
    source = os.environ if env is None else env
    override = str(source.get(_env_name("CONFIG_DIR"), "")).strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / DEFAULT_CONFIG_DIR_NAME


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s]+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bhf_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bAIza[0-9A-Za-z\-_]{35}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(
            lambda match: f"{match.group(1)}=<redacted>" if match.groups() else "<redacted>",
            redacted,
        )
    return redacted


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _append_log(config_dir: Path, message: str) -> None:
    log_path = config_dir / LOG_DIR_NAME / LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {_redact_sensitive_text(message)}\n")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _normalize_inline(text: Any) -> str:
    return " ".join(str(text or "").split())


def _truncate_preview(text: str, limit: int = OUTPUT_PREVIEW_CHARS) -> str:
    if len(text) <= limit:
        return text
    return f"{text[: max(0, limit - 3)]}..."


def _truncate_for_ui(text: str, limit: int = 120) -> str:
    return _truncate_preview(_normalize_inline(text), limit)


def _clamp_raw_output(text: str, limit: int = RAW_OUTPUT_MAX_CHARS) -> str:
    if len(text) <= limit:
        return text.rstrip()
    return f"{text[:limit]}\n...[truncated]"


def _format_duration(duration_ms: int | float) -> str:
    if duration_ms < 1000:
        return f"{int(duration_ms)}ms"
    return f"{duration_ms / 1000:.1f}s"


def _sha1_hex(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def _sha256_bytes(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def _dedupe_strings(values: list[str], *, limit: int | None = None) -> list[str]:
    deduped: list[str] = []
    seen: set[str] = set()
    for value in values:
        text = str(value).strip()
        if not text or text in seen:
            continue
        seen.add(text)
        deduped.append(text)
        if limit is not None and len(deduped) >= limit:
            break
    return deduped
