"""Hypolab invocation service: retries, budgets, sessions, traces, and artifacts per stage."""

from __future__ import annotations

import json
import math
import queue
import random
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping

from hypolab.artifacts import LocalArtifactService
from hypolab.budget import BudgetLimits, ExecutionBudget, resolve_budget_limits
from hypolab.cancellation import CancellationContext
from hypolab.config import InvocationSettings, load_invocation_settings
from hypolab.constants import (
    ATTEMPT_TIMEOUT_MESSAGE,
    INVALID_OUTPUT_PREVIEW_CHARS,
    OVERLOAD_MESSAGE_TOKENS,
    OVERLOAD_MIN_DELAY_MS,
    RETRY_BASE_DELAY_MS,
    RETRY_JITTER_RATIO,
    RETRY_MAX_DELAY_MS,
    RETRYABLE_MESSAGE_TOKENS,
    RETRYABLE_STATUS_CODES,
    STAGE_LABELS,
    STAGE_SCHEMAS,
    STAGE_SCOPES,
    STRICT_JSON_ERROR_TOKENS,
    TRACE_MAX_EVENTS,
    TRACE_TEXT_PREVIEW_CHARS,
)
from hypolab.contracts import parse_contract
from hypolab.model_client import ModelClient, StageRequest, StreamEvent, raise_on_llm_event_error
from hypolab.models import BudgetExceededError, ContractViolationError, InvocationError, OperationCancelled
from hypolab.state_store import StateStore, build_session_id
from hypolab.utils import _append_log, _compact_log_text, _epoch_ms, _resolve_config_dir, _truncate_preview

SHARED_STATE_NAMESPACE = "hypolab-shared-v1"
STAGE_USER_ID = "hypolab-main-user"
STAGE_APP_NAME = "HypolabV1"
ARTIFACTS_STATE_KEY = "artifacts"
_EVENT_POLL_SECONDS = 0.05


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def stage_namespace(scope: str) -> str:
    return f"hypolab-{scope}-v1"


def stage_app_name(scope: str) -> str:
    if scope == "orchestrator":
        return STAGE_APP_NAME
    return f"{STAGE_APP_NAME}_{STAGE_LABELS[scope].replace(' ', '')}"


def empty_output_message(scope: str) -> str:
    return f"{STAGE_LABELS[scope]} subagent returned empty output."


def contract_violation_message(scope: str) -> str:
    label = STAGE_LABELS[scope]
    if scope == "orchestrator":
        return "Orchestrator contract violation: expected dialectical + baconian strict JSON output."
    return f"{label} subagent contract violation: expected strict {label.lower()} JSON output."


def extract_status_code(exc: BaseException) -> int | None:
    for attr in ("status", "status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
    return None


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, OperationCancelled):
        return False
    if isinstance(exc, BudgetExceededError):
        return True
    status = extract_status_code(exc)
    if status is not None and (status in RETRYABLE_STATUS_CODES or status >= 500):
        return True
    message = str(exc).lower()
    if not message:
        return False
    return any(token in message for token in RETRYABLE_MESSAGE_TOKENS)


def normalize_strict_json_error(scope: str, exc: BaseException) -> BaseException:
    """Map JSON-parse-like failures onto the stage's contract-violation message."""
    message = str(exc).lower()
    if not message or "contract violation" in message:
        return exc
    json_like = any(token in message for token in STRICT_JSON_ERROR_TOKENS) or (
        "exception" in message and "json" in message
    )
    if not json_like:
        return exc
    return ContractViolationError(contract_violation_message(scope))


def compute_retry_delay_ms(
    attempt: int,
    *,
    error_message: str = "",
    deterministic: bool = False,
    random_fn: Callable[[], float] = random.random,
    base_delay_ms: int = RETRY_BASE_DELAY_MS,
    max_delay_ms: int = RETRY_MAX_DELAY_MS,
) -> int:
    attempt = max(0, int(attempt))
    jitter_ratio = 0.0 if deterministic else RETRY_JITTER_RATIO
    draw = 0.5 if deterministic else min(1.0, max(0.0, random_fn()))
    exponential = min(max_delay_ms, base_delay_ms * 2 ** min(attempt, 10))
    window = max(0, int(exponential * jitter_ratio))
    jitter = math.floor((draw * 2 - 1) * window)
    delay = max(0, exponential + jitter)
    lowered = error_message.lower()
    if any(token in lowered for token in OVERLOAD_MESSAGE_TOKENS):
        delay = max(delay, OVERLOAD_MIN_DELAY_MS)
    return delay


# ---------------------------------------------------------------------------
# Execution trace
# ---------------------------------------------------------------------------


class StageTrace:
    """Bounded list of event snapshots plus synthetic lifecycle markers."""

    def __init__(self, scope: str, *, max_events: int = TRACE_MAX_EVENTS) -> None:
        self.scope = scope
        self.max_events = max_events
        self.events: list[dict[str, Any]] = []
        self.dropped_count = 0
        self._seq = 0

    def _push(self, entry: dict[str, Any]) -> None:
        if len(self.events) >= self.max_events:
            self.dropped_count += 1
            return
        self.events.append(entry)

    def add_event(self, event: StreamEvent) -> None:
        text = event.best_text()
        snapshot: dict[str, Any] = {
            "author": event.author,
            "partial": event.partial,
            "finalResponse": event.final,
            "hasText": bool(text),
            "textPreview": _truncate_preview(" ".join(text.split()), TRACE_TEXT_PREVIEW_CHARS),
        }
        if event.function_calls:
            snapshot["functionCalls"] = [
                {
                    "name": str(call.get("name", "")),
                    "argsKeys": sorted((call.get("args") or {}).keys()) if isinstance(call.get("args"), dict) else [],
                }
                for call in event.function_calls
            ]
        if event.function_responses:
            snapshot["functionResponses"] = [
                {
                    "name": str(response.get("name", "")),
                    "preview": _truncate_preview(json.dumps(response.get("response"), default=str), 120),
                }
                for response in event.function_responses
            ]
        if event.state_delta or event.artifact_delta:
            snapshot["actions"] = {
                "stateDeltaKeys": sorted(event.state_delta),
                "artifactDeltaKeys": sorted(event.artifact_delta),
            }
        self._push(snapshot)
        for call in event.function_calls:
            args = call.get("args")
            self.add_synthetic(
                "tool_start",
                f"Tool start: {call.get('name', '')}",
                {"argsKeys": sorted(args.keys()) if isinstance(args, dict) else []},
            )
        for response in event.function_responses:
            self.add_synthetic(
                "tool_end",
                f"Tool end: {response.get('name', '')}",
                {"resultPreview": _truncate_preview(json.dumps(response.get("response"), default=str), 160)},
            )

    def add_synthetic(self, kind: str, text: str, metadata: dict[str, Any] | None = None) -> None:
        self._seq += 1
        self._push(
            {
                "id": f"synthetic-{self.scope}-{kind}-{_epoch_ms()}-{self._seq}",
                "author": "HypolabRuntime",
                "synthetic": True,
                "kind": kind,
                "scope": self.scope,
                "metadata": dict(metadata or {}),
                "textPreview": _truncate_preview(text, TRACE_TEXT_PREVIEW_CHARS),
            }
        )

    def to_payload(self, conversation_key: str) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "conversationKey": conversation_key,
            "capturedAt": _epoch_ms(),
            "capturedCount": len(self.events),
            "droppedCount": self.dropped_count,
            "events": list(self.events),
        }


# ---------------------------------------------------------------------------
# Sessions and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageSession:
    scope: str
    namespace: str
    app_name: str
    user_id: str
    conversation_key: str
    session_id: str
    attempt_index: int
    isolated: bool
    initial_state: dict[str, Any] = field(default_factory=dict)


def build_stage_session(
    scope: str,
    conversation_key: str,
    attempt_index: int,
    *,
    isolate_retry_sessions: bool,
    store: StateStore,
) -> StageSession:
    """Session ids are stable across retries unless retry isolation is enabled."""
    namespace = stage_namespace(scope)
    isolated = isolate_retry_sessions and attempt_index > 0
    session_namespace = f"{namespace}-attempt-{attempt_index + 1}" if isolated else namespace
    return StageSession(
        scope=scope,
        namespace=session_namespace,
        app_name=stage_app_name(scope),
        user_id=STAGE_USER_ID,
        conversation_key=conversation_key,
        session_id=build_session_id(session_namespace, conversation_key),
        attempt_index=attempt_index,
        isolated=isolated,
        initial_state=store.load(SHARED_STATE_NAMESPACE, conversation_key),
    )


@dataclass
class InvocationResult:
    scope: str
    output: dict[str, Any]
    text: str
    retries_used: int
    session_id: str
    artifacts: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ResilientInvocationService:
    """Drives one stage call against a ``ModelClient`` with retry and budget policy."""

    def __init__(
        self,
        client: ModelClient,
        *,
        config_dir: Path | None = None,
        store: StateStore | None = None,
        artifacts: LocalArtifactService | None = None,
        settings: InvocationSettings | None = None,
        env: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        random_fn: Callable[[], float] = random.random,
        sleep: Callable[[CancellationContext, float], None] | None = None,
    ) -> None:
        self.client = client
        self.config_dir = config_dir or _resolve_config_dir(dict(env) if env is not None else None)
        self.store = store or StateStore(self.config_dir)
        self.artifacts = artifacts or LocalArtifactService(self.config_dir / "artifacts")
        self.settings = settings or load_invocation_settings(self.config_dir, env)
        self.env = env
        self._clock = clock
        self._random = random_fn
        self._sleep = sleep or CancellationContext.sleep

    def invoke(
        self,
        scope: str,
        message: str,
        *,
        conversation_key: str = "",
        max_retries: int | None = None,
        cancel: CancellationContext | None = None,
        instruction: str = "",
        input_payload: Any = None,
    ) -> InvocationResult:
        if scope not in STAGE_SCOPES:
            raise ValueError(f"unknown stage scope: {scope}")
        limits = resolve_budget_limits(scope, self.env)
        retries_allowed = self.settings.max_retries if max_retries is None else max(0, int(max_retries))
        global_message = f"{scope} global timeout exceeded ({limits.global_timeout_ms}ms)"
        global_ctx = CancellationContext(
            cancel,
            timeout_seconds=limits.global_timeout_ms / 1000.0,
            timeout_message=global_message,
            clock=self._clock,
        )
        retries_used = 0
        while True:
            try:
                result = self._run_attempt(
                    scope,
                    message,
                    conversation_key=conversation_key,
                    attempt_index=retries_used,
                    total_attempts=retries_allowed + 1,
                    limits=limits,
                    global_ctx=global_ctx,
                    instruction=instruction,
                    input_payload=message if input_payload is None else input_payload,
                )
            except OperationCancelled:
                raise
            except Exception as exc:
                if global_ctx.cancelled:
                    raise OperationCancelled(global_ctx.cancel_message()) from exc
                global_expired = bool(global_ctx.expired_message())
                should_retry = retries_used < retries_allowed and not global_expired and is_retryable_error(exc)
                if not should_retry:
                    if global_expired:
                        raise InvocationError(global_message) from exc
                    normalized = normalize_strict_json_error(scope, exc)
                    if normalized is exc:
                        raise
                    raise normalized from exc
                delay_ms = compute_retry_delay_ms(
                    retries_used,
                    error_message=str(exc),
                    deterministic=self.settings.deterministic,
                    random_fn=self._random,
                )
                _append_log(
                    self.config_dir,
                    f"stage retry scope={scope} attempt={retries_used + 1}/{retries_allowed + 1} "
                    f"delay_ms={delay_ms} error={_compact_log_text(str(exc))}",
                )
                try:
                    self._sleep(global_ctx, delay_ms / 1000.0)
                except TimeoutError as sleep_exc:
                    raise InvocationError(global_message) from sleep_exc
                retries_used += 1
                continue
            result.retries_used = retries_used
            return result

    # -- attempt ------------------------------------------------------------

    def _run_attempt(
        self,
        scope: str,
        message: str,
        *,
        conversation_key: str,
        attempt_index: int,
        total_attempts: int,
        limits: BudgetLimits,
        global_ctx: CancellationContext,
        instruction: str,
        input_payload: Any,
    ) -> InvocationResult:
        session = build_stage_session(
            scope,
            conversation_key,
            attempt_index,
            isolate_retry_sessions=self.settings.isolate_retry_sessions,
            store=self.store,
        )
        trace = StageTrace(scope)
        trace.add_synthetic(
            "stage_start",
            f"Starting {scope} stage",
            {
                "model": self.settings.model_name,
                "attempt": attempt_index + 1,
                "totalAttempts": total_attempts,
                "sessionId": session.session_id,
                "deterministicMode": self.settings.deterministic,
                "longRunMode": self.settings.long_run,
                "isolatedRetrySession": session.isolated,
            },
        )
        if attempt_index > 0:
            trace.add_synthetic("retry", f"Retry attempt {attempt_index + 1}/{total_attempts}")

        attempt_ctx = global_ctx.child(
            timeout_seconds=limits.attempt_timeout_ms / 1000.0,
            timeout_message=ATTEMPT_TIMEOUT_MESSAGE,
        )
        budget = ExecutionBudget(limits, clock=self._clock)
        state: dict[str, Any] = dict(session.initial_state)
        request = StageRequest(
            scope=scope,
            app_name=session.app_name,
            user_id=session.user_id,
            session_id=session.session_id,
            model=self.settings.model_name,
            message=message,
            instruction=instruction,
            state=dict(session.initial_state),
        )
        texts: list[str] = []
        partial_texts: list[str] = []

        def _on_event(event: StreamEvent) -> None:
            trace.add_event(event)
            raise_on_llm_event_error(event)
            if event.state_delta:
                state.update(event.state_delta)
            if event.artifact_delta:
                pointers = dict(state.get(ARTIFACTS_STATE_KEY) or {})
                for filename, version in event.artifact_delta.items():
                    pointers[str(filename)] = {
                        "filename": str(filename),
                        "version": version,
                        "appName": session.app_name,
                        "sessionId": session.session_id,
                        "savedAt": _epoch_ms(),
                    }
                state[ARTIFACTS_STATE_KEY] = pointers
            text = event.best_text()
            if not text:
                return
            if event.partial:
                partial_texts.append(text)
            else:
                texts.append(text)

        status = "success"
        error_message = ""
        try:
            self._consume_events(request, attempt_ctx, budget, _on_event)
        except BaseException as exc:
            status = "error"
            error_message = str(exc) or exc.__class__.__name__
            trace.add_synthetic("error", f"Stage error: {error_message}", {"error": error_message})
            raise
        finally:
            trace.add_synthetic(
                "stage_end",
                f"Finished {scope} stage ({status})",
                {
                    "status": status,
                    "error": error_message or None,
                    "eventsSeen": budget.events_seen,
                    "toolCallsSeen": budget.tool_calls_seen,
                },
            )
            if status == "success":
                self._persist_session_state(session, state)
            self._persist_artifact(session, f"{scope}-events.json", f"{scope}_events", trace.to_payload(conversation_key))

        final_text = (texts[-1] if texts else "".join(partial_texts)).strip()
        if not final_text:
            empty_message = empty_output_message(scope)
            trace.add_synthetic(
                "error",
                empty_message,
                {"reason": "empty_output", "eventsSeen": budget.events_seen},
            )
            self._persist_artifact(session, f"{scope}-events.json", f"{scope}_events", trace.to_payload(conversation_key))
            raise ContractViolationError(f"{empty_message} (events={budget.events_seen})")

        parsed = parse_contract(STAGE_SCHEMAS[scope], final_text)
        if parsed is None:
            violation = contract_violation_message(scope)
            trace.add_synthetic("error", violation, {"reason": "contract_violation"})
            self._persist_artifact(session, f"{scope}-events.json", f"{scope}_events", trace.to_payload(conversation_key))
            self._persist_artifact(
                session,
                f"{scope}-invalid-output.json",
                f"{scope}_invalid_output",
                {"reason": "contract_violation", "outputPreview": final_text[:INVALID_OUTPUT_PREVIEW_CHARS]},
            )
            raise ContractViolationError(violation)

        pointer = self._persist_artifact(
            session,
            f"{scope}-result.json",
            f"{scope}_result",
            {"input": input_payload, "output": parsed},
        )
        return InvocationResult(
            scope=scope,
            output=parsed,
            text=final_text,
            retries_used=attempt_index,
            session_id=session.session_id,
            artifacts={f"{scope}_result": pointer} if pointer else {},
        )

    def _consume_events(
        self,
        request: StageRequest,
        ctx: CancellationContext,
        budget: ExecutionBudget,
        on_event: Callable[[StreamEvent], None],
    ) -> None:
        """Race next event, cancellation and the attempt deadline; events stay in order."""
        events: queue.Queue = queue.Queue()
        stop = threading.Event()
        stream: Iterator[StreamEvent] = iter(self.client.stream(request, ctx))

        def _pump() -> None:
            try:
                for event in stream:
                    events.put(("event", event))
                    if stop.is_set():
                        return
            except BaseException as exc:
                events.put(("error", exc))
                return
            events.put(("done", None))

        pump = threading.Thread(target=_pump, name=f"hypolab-{request.scope}-events", daemon=True)
        pump.start()
        try:
            while True:
                ctx.raise_if_cancelled()
                budget.check_deadline()
                try:
                    kind, item = events.get(timeout=_EVENT_POLL_SECONDS)
                except queue.Empty:
                    continue
                if kind == "done":
                    return
                if kind == "error":
                    raise item
                budget.observe(tool_calls=len(item.function_calls))
                on_event(item)
        finally:
            stop.set()
            _close_stream(stream)
            pump.join(timeout=_EVENT_POLL_SECONDS)

    # -- persistence ----------------------------------------------------------

    def _persist_session_state(self, session: StageSession, state: dict[str, Any]) -> None:
        existing = self.store.load(SHARED_STATE_NAMESPACE, session.conversation_key)
        merged = {**existing, **state}
        old_pointers = existing.get(ARTIFACTS_STATE_KEY)
        new_pointers = state.get(ARTIFACTS_STATE_KEY)
        if isinstance(old_pointers, dict) or isinstance(new_pointers, dict):
            merged[ARTIFACTS_STATE_KEY] = {
                **(old_pointers if isinstance(old_pointers, dict) else {}),
                **(new_pointers if isinstance(new_pointers, dict) else {}),
            }
        if not self.store.save(SHARED_STATE_NAMESPACE, session.conversation_key, merged):
            _append_log(self.config_dir, f"stage state not persisted scope={session.scope} session={session.session_id}")

    def _persist_artifact(
        self,
        session: StageSession,
        filename: str,
        pointer_key: str,
        payload: Any,
    ) -> dict[str, Any] | None:
        try:
            version = self.artifacts.save(session.app_name, session.user_id, session.session_id, filename, payload)
        except (OSError, TypeError, ValueError) as exc:
            _append_log(self.config_dir, f"artifact save failed scope={session.scope} file={filename}: {exc}")
            return None
        pointer = {
            "filename": filename,
            "version": version,
            "appName": session.app_name,
            "sessionId": session.session_id,
            "savedAt": _epoch_ms(),
        }
        current = self.store.load(SHARED_STATE_NAMESPACE, session.conversation_key)
        self.store.save(
            SHARED_STATE_NAMESPACE,
            session.conversation_key,
            {**current, ARTIFACTS_STATE_KEY: {pointer_key: pointer}},
        )
        return pointer


def _close_stream(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if not callable(close):
        return
    try:
        close()
    except (RuntimeError, ValueError):
        # generator still running in the pump thread; it stops at its next yield
        return