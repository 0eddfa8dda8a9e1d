"""Cancellable execution context shared by every wait and external call."""

from __future__ import annotations

import threading
import time

from wsagent.errors import Cancelled


class CancelContext:
    """A cancellation flag with an optional monotonic deadline.

    Children created with :meth:`child` or :meth:`with_timeout` are cancelled
    together with their parent and never outlive its deadline.
    """

    def __init__(
        self,
        *,
        deadline: float | None = None,
        parent: CancelContext | None = None,
    ) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list[CancelContext] = []
        self._reason = ""
        if parent is not None:
            if parent.deadline is not None:
                deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
            parent._adopt(self)
        self.deadline = deadline

    @classmethod
    def background(cls) -> CancelContext:
        return cls()

    def _adopt(self, child: CancelContext) -> None:
        with self._lock:
            if self._event.is_set():
                child.cancel(self._reason)
                return
            self._children.append(child)

    def child(self) -> CancelContext:
        return CancelContext(parent=self)

    def with_timeout(self, seconds: float) -> CancelContext:
        return CancelContext(deadline=time.monotonic() + seconds, parent=self)

    def cancel(self, reason: str = "context cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    def remaining(self) -> float | None:
        """Seconds until the deadline (never negative), or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired()

    @property
    def reason(self) -> str:
        if self._event.is_set():
            return self._reason
        if self.expired():
            return "context deadline exceeded"
        return ""

    def check(self) -> None:
        """Raise Cancelled if the context is done."""
        if self.cancelled():
            raise Cancelled(self.reason)

    def sleep(self, seconds: float) -> None:
        """Wait *seconds*, raising Cancelled as soon as the context is done."""
        self.check()
        remaining = self.remaining()
        wait = seconds if remaining is None else min(seconds, remaining)
        if self._event.wait(max(0.0, wait)):
            raise Cancelled(self._reason)
        if remaining is not None and seconds > remaining:
            raise Cancelled("context deadline exceeded")
