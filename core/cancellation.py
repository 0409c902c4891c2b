from __future__ import annotations

import threading
from typing import Callable, List, Optional


class RunCancelled(Exception):
    """Raised inside a pipeline run once its token has been cancelled."""

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(reason or 'cancelled')
        self.reason = reason


class CancellationToken:
    """Cooperative cancellation for a single submission run.

    - cancel(reason) marks the token cancelled and runs registered callbacks once.
    - is_cancelled() is polled by the pipeline before applying each result.
    - on_cancel(fn) attaches a callback (e.g. cancelling the backing task).
    """

    def __init__(self) -> None:
        self._ev = threading.Event()
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    def cancel(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._ev.is_set():
                return
            self._reason = reason
            self._ev.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for fn in callbacks:
            fn()

    def is_cancelled(self) -> bool:
        return self._ev.is_set()

    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._ev.is_set():
            raise RunCancelled(self._reason)

    def on_cancel(self, fn: Callable[[], None]) -> None:
        with self._lock:
            if not self._ev.is_set():
                self._callbacks.append(fn)
                return
        # Already cancelled: run immediately
        fn()
