"""Cooperative cancellation contexts with explicit-cancel and deadline precedence."""

from __future__ import annotations

import threading
import time
from typing import Callable

from hypolab.constants import CANCELLED_MESSAGE
from hypolab.models import DeadlineExceeded, OperationCancelled

_POLL_SECONDS = 0.02


class CancellationContext:
    """A node in a cancellation tree.

    A child observes its ancestors: an explicit cancel anywhere up the chain
    wins over any deadline, and the nearest elapsed deadline (the child's own
    before its parent's) decides the timeout message.
    """

    def __init__(
        self,
        parent: "CancellationContext | None" = None,
        *,
        timeout_seconds: float | None = None,
        timeout_message: str = "",
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.parent = parent
        self._clock = clock or (parent._clock if parent is not None else time.monotonic)
        self._event = threading.Event()
        self._cancel_message = ""
        self.timeout_message = timeout_message or "deadline exceeded"
        self.deadline = None if timeout_seconds is None else self._clock() + max(0.0, timeout_seconds)

    def child(self, *, timeout_seconds: float | None = None, timeout_message: str = "") -> "CancellationContext":
        return CancellationContext(self, timeout_seconds=timeout_seconds, timeout_message=timeout_message)

    def cancel(self, message: str = CANCELLED_MESSAGE) -> None:
        self._cancel_message = message or CANCELLED_MESSAGE
        self._event.set()

    def _chain(self) -> list["CancellationContext"]:
        nodes: list[CancellationContext] = []
        node: CancellationContext | None = self
        while node is not None:
            nodes.append(node)
            node = node.parent
        return nodes

    def cancel_message(self) -> str:
        for node in self._chain():
            if node._event.is_set():
                return node._cancel_message
        return ""

    def expired_message(self) -> str:
        now = self._clock()
        for node in self._chain():
            if node.deadline is not None and now >= node.deadline:
                return node.timeout_message
        return ""

    @property
    def cancelled(self) -> bool:
        return bool(self.cancel_message())

    @property
    def done(self) -> bool:
        return bool(self.cancel_message() or self.expired_message())

    def remaining(self) -> float | None:
        deadlines = [node.deadline for node in self._chain() if node.deadline is not None]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - self._clock())

    def raise_if_cancelled(self) -> None:
        message = self.cancel_message()
        if message:
            raise OperationCancelled(message)
        expired = self.expired_message()
        if expired:
            raise DeadlineExceeded(expired)

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, raising as soon as the context is done."""
        end = self._clock() + max(0.0, seconds)
        while True:
            self.raise_if_cancelled()
            left = end - self._clock()
            if left <= 0:
                return
            time.sleep(min(_POLL_SECONDS, left))
