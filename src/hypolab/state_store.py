"""Hypolab state store: per-(namespace, conversation) JSON state with exclusive writes."""

from __future__ import annotations

import json
import os
import re
import time
import uuid
from pathlib import Path
from typing import Any, Callable

from hypolab.constants import (
    SESSION_ID_PREFIX,
    STATE_DIR_NAME,
    STATE_LOCK_RETRY_SECONDS,
    STATE_LOCK_STALE_SECONDS,
    STATE_LOCK_TIMEOUT_SECONDS,
    STATE_NAMESPACE_MAX_CHARS,
    STATE_RECORD_VERSION,
)
from hypolab.models import StateError
from hypolab.utils import (
    _append_log,
    _epoch_ms,
    _json_roundtrip,
    _read_json,
    _resolve_config_dir,
    _sha1_hex,
    _utc_now,
)

_NAMESPACE_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------


def _normalize_namespace(namespace: str | None) -> str:
    cleaned = _NAMESPACE_UNSAFE.sub("_", str(namespace or "").strip())[:STATE_NAMESPACE_MAX_CHARS]
    return cleaned or "default"


def _normalize_conversation_key(conversation_key: str | None) -> str:
    return str(conversation_key or "").strip() or "default"


def _state_digest(namespace: str, conversation_key: str) -> str:
    return _sha1_hex(f"{namespace}::{conversation_key}")


def build_session_id(namespace: str, conversation_key: str) -> str:
    ns = _normalize_namespace(namespace)
    key = _normalize_conversation_key(conversation_key)
    return f"{SESSION_ID_PREFIX}{_state_digest(ns, key)[:28]}"


# ---------------------------------------------------------------------------
# Directory lock
# ---------------------------------------------------------------------------


def _lock_is_stale(lock_dir: Path, *, stale_seconds: float) -> bool:
    try:
        age = time.time() - lock_dir.stat().st_mtime
    except FileNotFoundError:
        return False
    return age > stale_seconds


def _acquire_dir_lock(
    lock_dir: Path,
    *,
    timeout_seconds: float = STATE_LOCK_TIMEOUT_SECONDS,
    stale_seconds: float = STATE_LOCK_STALE_SECONDS,
    retry_seconds: float = STATE_LOCK_RETRY_SECONDS,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    lock_dir.parent.mkdir(parents=True, exist_ok=True)
    deadline = clock() + timeout_seconds
    while True:
        try:
            lock_dir.mkdir()
            return
        except FileExistsError:
            if _lock_is_stale(lock_dir, stale_seconds=stale_seconds):
                stale_path = lock_dir.with_name(f"{lock_dir.name}.stale.{uuid.uuid4().hex[:8]}")
                try:
                    os.replace(lock_dir, stale_path)
                    os.rmdir(stale_path)
                except OSError:
                    pass
                else:
                    continue
        if clock() >= deadline:
            raise StateError(f"Timed out acquiring state lock: {lock_dir}")
        sleep(retry_seconds)


def _release_dir_lock(lock_dir: Path) -> None:
    try:
        lock_dir.rmdir()
    except FileNotFoundError:
        return


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StateStore:
    """Durable JSON state keyed by (namespace, conversation key).

    Writes go through a directory lock next to the state file and an atomic
    temp-file rename. ``load`` and ``save`` never raise; failures are logged.
    """

    def __init__(
        self,
        config_dir: Path | None = None,
        *,
        lock_timeout_seconds: float = STATE_LOCK_TIMEOUT_SECONDS,
        lock_stale_seconds: float = STATE_LOCK_STALE_SECONDS,
    ) -> None:
        self.config_dir = config_dir or _resolve_config_dir()
        self.root = self.config_dir / STATE_DIR_NAME
        self.lock_timeout_seconds = lock_timeout_seconds
        self.lock_stale_seconds = lock_stale_seconds

    def state_path(self, namespace: str, conversation_key: str) -> Path:
        ns = _normalize_namespace(namespace)
        key = _normalize_conversation_key(conversation_key)
        return self.root / f"{ns}-{_state_digest(ns, key)[:20]}.json"

    def load(self, namespace: str, conversation_key: str) -> dict[str, Any]:
        path = self.state_path(namespace, conversation_key)
        if not path.exists():
            return {}
        try:
            record = _read_json(path)
        except StateError as exc:
            _append_log(self.config_dir, f"state load failed path={path}: {exc}")
            return {}
        state = record.get("state")
        return dict(state) if isinstance(state, dict) else {}

    def save(self, namespace: str, conversation_key: str, state: dict[str, Any]) -> bool:
        ns = _normalize_namespace(namespace)
        key = _normalize_conversation_key(conversation_key)
        path = self.state_path(ns, key)
        lock_dir = path.with_name(f"{path.name}.lock")
        try:
            _acquire_dir_lock(
                lock_dir,
                timeout_seconds=self.lock_timeout_seconds,
                stale_seconds=self.lock_stale_seconds,
            )
        except (StateError, OSError) as exc:
            _append_log(self.config_dir, f"state save skipped namespace={ns}: {exc}")
            return False
        try:
            previous = self._read_state_unlocked(path)
            merged = _merge_state(previous, _json_roundtrip(state))
            record = {
                "version": STATE_RECORD_VERSION,
                "namespace": ns,
                "conversationKey": key,
                "updatedAt": _utc_now(),
                "state": merged,
            }
            _atomic_write_json(path, record)
            return True
        except Exception as exc:
            _append_log(self.config_dir, f"state save failed path={path}: {exc}")
            return False
        finally:
            _release_dir_lock(lock_dir)

    def _read_state_unlocked(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            record = _read_json(path)
        except StateError:
            return {}
        state = record.get("state")
        return state if isinstance(state, dict) else {}


def _merge_state(previous: dict[str, Any], incoming: Any) -> dict[str, Any]:
    if not isinstance(incoming, dict):
        return dict(previous)
    merged = dict(incoming)
    old_artifacts = previous.get("artifacts")
    new_artifacts = incoming.get("artifacts")
    if isinstance(old_artifacts, dict) or isinstance(new_artifacts, dict):
        combined: dict[str, Any] = {}
        if isinstance(old_artifacts, dict):
            combined.update(old_artifacts)
        if isinstance(new_artifacts, dict):
            combined.update(new_artifacts)
        merged["artifacts"] = combined
    return merged


def _atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp-{os.getpid()}-{_epoch_ms()}-{uuid.uuid4().hex[:8]}")
    try:
        tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)
