"""Cooperative cancellation signals with per-operation child scopes."""

from __future__ import annotations

import threading


class CancellationSignal:
    """Thread-safe, set-once stop request.

    A child created with :meth:`child` is cancelled together with its parent,
    but cancelling the child never touches the parent. Each attempt gets its
    own child so a stale handle from an earlier attempt cannot stop a later one.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list[CancellationSignal] = []
        self._parent: CancellationSignal | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel()

    def wait(self, timeout: float | None = None) -> bool:
        """Block up to ``timeout`` seconds; return True once cancelled."""

        return self._event.wait(timeout)

    def child(self) -> CancellationSignal:
        scoped = CancellationSignal()
        scoped._parent = self
        with self._lock:
            if not self._event.is_set():
                self._children.append(scoped)
                return scoped
        scoped.cancel()
        return scoped

    def detach(self) -> None:
        """Stop following the parent; used when an attempt scope is retired."""

        parent = self._parent
        if parent is None:
            return
        self._parent = None
        with parent._lock:
            if self in parent._children:
                parent._children.remove(self)
