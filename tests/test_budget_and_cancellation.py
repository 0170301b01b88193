from __future__ import annotations

import pytest

from hypolab.budget import ExecutionBudget, resolve_budget_limits
from hypolab.cancellation import CancellationContext
from hypolab.models import BudgetExceededError, DeadlineExceeded, OperationCancelled


class _Clock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_budget_defaults_per_scope() -> None:
    runners = resolve_budget_limits("runners", env={})
    literature = resolve_budget_limits("literature", env={})

    assert runners.attempt_timeout_ms == 210_000
    assert runners.global_timeout_ms == 360_000
    assert runners.max_events == 280
    assert literature.max_tool_calls == 80
    assert literature.attempt_timeout_ms == 150_000


def test_budget_precedence_scope_env_over_shared_env_over_long_run() -> None:
    env = {
        "HYPOLAB_LONG_RUN": "1",
        "HYPOLAB_MAX_EVENTS": "50",
        "HYPOLAB_RUNNERS_MAX_EVENTS": "7",
    }

    runners = resolve_budget_limits("runners", env=env)
    orchestrator = resolve_budget_limits("orchestrator", env=env)

    assert runners.max_events == 7
    assert orchestrator.max_events == 50
    assert orchestrator.global_timeout_ms == 28_800_000
    assert runners.attempt_timeout_ms == 1_800_000


def test_budget_rejects_unknown_scope() -> None:
    with pytest.raises(ValueError):
        resolve_budget_limits("poetry", env={})


def test_budget_observe_counts_events_then_tool_calls() -> None:
    limits = resolve_budget_limits("runners", env={"HYPOLAB_MAX_EVENTS": "2", "HYPOLAB_MAX_TOOL_CALLS": "1"})
    budget = ExecutionBudget(limits, clock=_Clock())

    budget.observe(tool_calls=1)
    with pytest.raises(BudgetExceededError, match=r"tool_calls 2 > 1"):
        budget.observe(tool_calls=1)

    events_only = ExecutionBudget(limits, clock=_Clock())
    events_only.observe()
    events_only.observe()
    with pytest.raises(BudgetExceededError, match=r"runners execution budget exceeded: events 3 > 2"):
        events_only.observe()


def test_budget_deadline_is_checked_first() -> None:
    clock = _Clock()
    limits = resolve_budget_limits("runners", env={"HYPOLAB_ATTEMPT_TIMEOUT_MS": "1000"})
    budget = ExecutionBudget(limits, clock=clock)
    clock.now += 1.5

    with pytest.raises(BudgetExceededError, match=r"runtime 1500ms > 1000ms"):
        budget.observe(tool_calls=99)
    assert budget.events_seen == 0


def test_explicit_cancel_beats_deadlines() -> None:
    clock = _Clock()
    parent = CancellationContext(timeout_seconds=1, timeout_message="global timeout", clock=clock)
    child = parent.child(timeout_seconds=1, timeout_message="attempt timeout exceeded")
    clock.now += 5
    parent.cancel()

    assert child.cancelled
    with pytest.raises(OperationCancelled, match="Request cancelled by user"):
        child.raise_if_cancelled()


def test_own_deadline_beats_ancestor_deadline() -> None:
    clock = _Clock()
    parent = CancellationContext(timeout_seconds=2, timeout_message="global timeout", clock=clock)
    child = parent.child(timeout_seconds=1, timeout_message="attempt timeout exceeded")
    clock.now += 3

    assert child.expired_message() == "attempt timeout exceeded"
    with pytest.raises(DeadlineExceeded, match="attempt timeout exceeded"):
        child.raise_if_cancelled()


def test_ancestor_deadline_applies_to_child() -> None:
    clock = _Clock()
    parent = CancellationContext(timeout_seconds=1, timeout_message="global timeout", clock=clock)
    child = parent.child(timeout_seconds=10, timeout_message="attempt timeout exceeded")
    clock.now += 2

    assert child.done
    assert child.expired_message() == "global timeout"
    assert child.remaining() == 0.0


def test_sleep_aborts_when_cancelled() -> None:
    context = CancellationContext()
    context.cancel("stop now")

    with pytest.raises(OperationCancelled, match="stop now"):
        context.sleep(10)


def test_remaining_is_none_without_deadline() -> None:
    assert CancellationContext().remaining() is None
