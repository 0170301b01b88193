"""Hypolab cache: short-lived runner-stage results and in-flight dedupe.

Two scopes are kept: a conversation scope keyed by the full stage input
(30 s) and a turn scope keyed by conversation + turn + hypothesis
fingerprint (300 s). Concurrent identical requests share one in-flight
``Future`` instead of executing twice.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from hypolab.constants import (
    CACHE_KEY_VERSION,
    CACHE_TTL_SECONDS,
    DEFINITIVE_FAIL,
    NEEDS_FIELD,
    PROVISIONAL_PASS,
    REJECT_EARLY,
    TURN_CACHE_TTL_SECONDS,
)
from hypolab.evidence import has_concrete_dataset_reference
from hypolab.utils import _normalize_inline, _sha1_hex

if TYPE_CHECKING:
    from hypolab.pipeline import RunnerStageOutput, RunnerStageRequest

CONVERSATION_SCOPE = "conversation"
TURN_SCOPE = "turn"
_FIELD_REFRESH_HINTS = ("validate_local", "dataset local", "web_search")


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def build_conversation_key(message_log_name: str = "", fork_number: int = 0, agent_id: str = "") -> str:
    return f"{message_log_name or 'default'}:{fork_number}:{agent_id or 'main'}"


def resolve_turn_key(message_id: str = "", last_user_prompt: str = "", request_id: str = "") -> str:
    if message_id.strip():
        return f"msg:{message_id.strip()}"
    if last_user_prompt.strip():
        return f"prompt:{_sha1_hex(_normalize_inline(last_user_prompt).lower())[:12]}"
    if request_id.strip():
        return f"req:{request_id.strip()}"
    return "conversation-turn-fallback"


def _fingerprint(parts: list[str]) -> str:
    return _sha1_hex(_normalize_inline(" | ".join(parts)).lower())


def build_cache_key(request: "RunnerStageRequest", conversation_key: str, model_name: str = "") -> str:
    """Conversation-scope key: every stage input plus the model name."""
    fingerprint = _fingerprint(
        [
            CACHE_KEY_VERSION,
            request.hypothesis,
            request.dialectical_synthesis,
            request.baconian_forma_veritas,
            request.normalization_json,
            request.falsification_plan_json,
            request.literature_summary,
            request.dataset_hint,
            model_name.strip(),
        ]
    )
    return f"{conversation_key}::{fingerprint}"


def build_turn_cache_key(request: "RunnerStageRequest", conversation_key: str, turn_key: str) -> str:
    fingerprint = _fingerprint(
        [
            _normalize_inline(request.hypothesis),
            request.dataset_hint,
            request.falsification_plan_json,
            request.normalization_json,
        ]
    )
    return f"{conversation_key}::{turn_key}::{fingerprint[:16]}"


# ---------------------------------------------------------------------------
# Reuse rules
# ---------------------------------------------------------------------------


def should_reuse_output(output: "RunnerStageOutput") -> bool:
    """Only settled outcomes are reused within the conversation scope."""
    if output.plan_status == "skipped":
        return True
    stage = output.gates.stage_decision if output.gates is not None else ""
    if not stage:
        return True
    if stage in (REJECT_EARLY, DEFINITIVE_FAIL, NEEDS_FIELD, PROVISIONAL_PASS):
        return False
    return output.critical_verdicts.get("overall") != "FAIL"


def should_reuse_turn_output(output: "RunnerStageOutput") -> bool:
    if not output.execution_results:
        return False
    stage = output.gates.stage_decision if output.gates is not None else ""
    return stage not in (DEFINITIVE_FAIL, REJECT_EARLY)


def should_force_field_refresh(output: "RunnerStageOutput", dataset_hint: str) -> bool:
    """A pending field outcome is recomputed once the user points at new data."""
    gates = output.gates
    if gates is None or gates.stage_decision not in (NEEDS_FIELD, PROVISIONAL_PASS):
        return False
    if gates.has_real_dataset:
        return False
    hint = _normalize_inline(dataset_hint).lower()
    if any(token in hint for token in _FIELD_REFRESH_HINTS):
        return True
    return has_concrete_dataset_reference(hint)


# ---------------------------------------------------------------------------
# Cache service
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    output: Any
    created_at: float


class RunnerResultCache:
    """Thread-safe TTL cache with an in-flight map for request dedupe."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        ttl_s: float = CACHE_TTL_SECONDS,
        turn_ttl_s: float = TURN_CACHE_TTL_SECONDS,
    ) -> None:
        self._clock = clock
        self._ttl = {CONVERSATION_SCOPE: ttl_s, TURN_SCOPE: turn_ttl_s}
        self._entries: dict[str, dict[str, CacheEntry]] = {CONVERSATION_SCOPE: {}, TURN_SCOPE: {}}
        self._in_flight: dict[str, Future] = {}
        self._in_flight_by_turn: dict[str, Future] = {}
        self._lock = threading.Lock()

    def _prune_locked(self, now: float) -> None:
        for scope, entries in self._entries.items():
            ttl = self._ttl[scope]
            for key in [key for key, entry in entries.items() if now - entry.created_at > ttl]:
                del entries[key]

    def prune(self) -> None:
        with self._lock:
            self._prune_locked(self._clock())

    def get(self, scope: str, key: str) -> CacheEntry | None:
        with self._lock:
            self._prune_locked(self._clock())
            return self._entries[scope].get(key)

    def set(self, key: str, turn_key: str, output: Any) -> None:
        with self._lock:
            self._set_locked(key, turn_key, output)

    def _set_locked(self, key: str, turn_key: str, output: Any) -> None:
        now = self._clock()
        self._entries[CONVERSATION_SCOPE][key] = CacheEntry(output=output, created_at=now)
        self._entries[TURN_SCOPE][turn_key] = CacheEntry(output=output, created_at=now)

    def invalidate(self, scope: str, key: str) -> None:
        with self._lock:
            self._entries[scope].pop(key, None)

    def in_flight(self, key: str, turn_key: str) -> Future | None:
        with self._lock:
            return self._in_flight.get(key) or self._in_flight_by_turn.get(turn_key)

    def run_deduplicated(
        self,
        key: str,
        turn_key: str,
        compute: Callable[[], "RunnerStageOutput"],
    ) -> tuple["RunnerStageOutput", bool]:
        """Run ``compute`` once per key; concurrent callers wait for the same result.

        Returns ``(output, shared)``; waiters receive the very object the
        executing caller produced, with ``shared`` set. A failure propagates to every
        waiter. The result is cached before the in-flight slot is released.
        """
        with self._lock:
            existing = self._in_flight.get(key) or self._in_flight_by_turn.get(turn_key)
            if existing is None:
                future: Future = Future()
                self._in_flight[key] = future
                self._in_flight_by_turn[turn_key] = future
        if existing is not None:
            return existing.result(), True

        try:
            output = compute()
        except BaseException as exc:
            future.set_exception(exc)
            with self._lock:
                self._release_locked(key, turn_key, future)
            raise
        with self._lock:
            self._set_locked(key, turn_key, output)
            self._release_locked(key, turn_key, future)
        future.set_result(output)
        return output, False

    def _release_locked(self, key: str, turn_key: str, future: Future) -> None:
        if self._in_flight.get(key) is future:
            del self._in_flight[key]
        if self._in_flight_by_turn.get(turn_key) is future:
            del self._in_flight_by_turn[turn_key]
