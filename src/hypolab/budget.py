"""Per-stage execution budgets: limit resolution and the attempt guard."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Mapping

from hypolab.config import _read_bool_env, _read_positive_int_env
from hypolab.constants import (
    DEFAULT_ATTEMPT_TIMEOUT_FALLBACK_MS,
    DEFAULT_ATTEMPT_TIMEOUT_MS,
    DEFAULT_GLOBAL_TIMEOUT_FALLBACK_MS,
    DEFAULT_GLOBAL_TIMEOUT_MS,
    DEFAULT_MAX_EVENTS,
    DEFAULT_MAX_EVENTS_FALLBACK,
    DEFAULT_MAX_TOOL_CALLS,
    DEFAULT_MAX_TOOL_CALLS_FALLBACK,
    LONG_RUN_ATTEMPT_TIMEOUT_FALLBACK_MS,
    LONG_RUN_ATTEMPT_TIMEOUT_MS,
    LONG_RUN_GLOBAL_TIMEOUT_FALLBACK_MS,
    LONG_RUN_GLOBAL_TIMEOUT_MS,
    LONG_RUN_MAX_EVENTS,
    LONG_RUN_MAX_EVENTS_FALLBACK,
    LONG_RUN_MAX_TOOL_CALLS,
    LONG_RUN_MAX_TOOL_CALLS_FALLBACK,
    STAGE_SCOPES,
)
from hypolab.models import BudgetExceededError

_LIMIT_TABLES = {
    "ATTEMPT_TIMEOUT_MS": (
        DEFAULT_ATTEMPT_TIMEOUT_MS,
        DEFAULT_ATTEMPT_TIMEOUT_FALLBACK_MS,
        LONG_RUN_ATTEMPT_TIMEOUT_MS,
        LONG_RUN_ATTEMPT_TIMEOUT_FALLBACK_MS,
    ),
    "GLOBAL_TIMEOUT_MS": (
        DEFAULT_GLOBAL_TIMEOUT_MS,
        DEFAULT_GLOBAL_TIMEOUT_FALLBACK_MS,
        LONG_RUN_GLOBAL_TIMEOUT_MS,
        LONG_RUN_GLOBAL_TIMEOUT_FALLBACK_MS,
    ),
    "MAX_EVENTS": (
        DEFAULT_MAX_EVENTS,
        DEFAULT_MAX_EVENTS_FALLBACK,
        LONG_RUN_MAX_EVENTS,
        LONG_RUN_MAX_EVENTS_FALLBACK,
    ),
    "MAX_TOOL_CALLS": (
        DEFAULT_MAX_TOOL_CALLS,
        DEFAULT_MAX_TOOL_CALLS_FALLBACK,
        LONG_RUN_MAX_TOOL_CALLS,
        LONG_RUN_MAX_TOOL_CALLS_FALLBACK,
    ),
}


@dataclass(frozen=True)
class BudgetLimits:
    scope: str
    attempt_timeout_ms: int
    global_timeout_ms: int
    max_events: int
    max_tool_calls: int


def _resolve_limit(scope: str, name: str, *, long_run: bool, env: Mapping[str, str] | None) -> int:
    scoped = _read_positive_int_env(f"{scope.upper()}_{name}", env=env)
    if scoped is not None:
        return scoped
    shared = _read_positive_int_env(name, env=env)
    if shared is not None:
        return shared
    base, base_fallback, long_table, long_fallback = _LIMIT_TABLES[name]
    if long_run:
        return long_table.get(scope, long_fallback)
    return base.get(scope, base_fallback)


def resolve_budget_limits(scope: str, env: Mapping[str, str] | None = None) -> BudgetLimits:
    """Resolve limits: per-scope env > shared env > long-run defaults > base defaults."""
    if scope not in STAGE_SCOPES:
        raise ValueError(f"unknown stage scope: {scope}")
    long_run = _read_bool_env("LONG_RUN", default=False, env=env)
    return BudgetLimits(
        scope=scope,
        attempt_timeout_ms=_resolve_limit(scope, "ATTEMPT_TIMEOUT_MS", long_run=long_run, env=env),
        global_timeout_ms=_resolve_limit(scope, "GLOBAL_TIMEOUT_MS", long_run=long_run, env=env),
        max_events=_resolve_limit(scope, "MAX_EVENTS", long_run=long_run, env=env),
        max_tool_calls=_resolve_limit(scope, "MAX_TOOL_CALLS", long_run=long_run, env=env),
    )


class ExecutionBudget:
    """Counters for one attempt. A violation raises ``BudgetExceededError``."""

    def __init__(self, limits: BudgetLimits, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.limits = limits
        self._clock = clock
        self.started_at = clock()
        self.deadline = self.started_at + limits.attempt_timeout_ms / 1000.0
        self.events_seen = 0
        self.tool_calls_seen = 0

    def elapsed_ms(self) -> int:
        return int((self._clock() - self.started_at) * 1000)

    def check_deadline(self) -> None:
        if self._clock() > self.deadline:
            raise BudgetExceededError(
                f"{self.limits.scope} execution budget exceeded: "
                f"runtime {self.elapsed_ms()}ms > {self.limits.attempt_timeout_ms}ms"
            )

    def observe(self, tool_calls: int = 0) -> None:
        self.check_deadline()
        self.events_seen += 1
        if self.events_seen > self.limits.max_events:
            raise BudgetExceededError(
                f"{self.limits.scope} execution budget exceeded: "
                f"events {self.events_seen} > {self.limits.max_events}"
            )
        self.tool_calls_seen += max(0, tool_calls)
        if self.tool_calls_seen > self.limits.max_tool_calls:
            raise BudgetExceededError(
                f"{self.limits.scope} execution budget exceeded: "
                f"tool_calls {self.tool_calls_seen} > {self.limits.max_tool_calls}"
            )
