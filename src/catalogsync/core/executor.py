"""
Bounded concurrent executor for independent remote calls.

- At most ``limit`` operations in flight (thread pool sized to the limit).
- The first failure sets a shared cancel event: operations that have not
  started yet are skipped, running ones may poll ``cancelled`` to stop early.
- Waits for everything already started, then raises the first error.
  Later errors are logged and dropped.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, List, Optional, Sequence

Operation = Callable[[], None]

DEFAULT_LIMIT = 10


class OperationCancelled(Exception):
    """Raised by an operation that observed cancellation before doing any work."""


class BoundedExecutor:
    """Runs a batch of zero-argument operations with a concurrency ceiling."""

    def __init__(self, limit: int = DEFAULT_LIMIT, *, logger: Optional[logging.LoggerAdapter] = None) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = int(limit)
        self.log = logger or logging.getLogger("cs.executor")
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._first_error: Optional[BaseException] = None
        self.started = 0
        self.skipped = 0

    @property
    def cancelled(self) -> threading.Event:
        return self._cancel

    def _record_error(self, exc: BaseException) -> None:
        with self._lock:
            if self._first_error is None:
                self._first_error = exc
                self._cancel.set()
                return
        self.log.debug("Discarding additional failure after cancellation: %s", exc)

    def _guarded(self, op: Operation) -> None:
        if self._cancel.is_set():
            with self._lock:
                self.skipped += 1
            return
        with self._lock:
            self.started += 1
        try:
            op()
        except OperationCancelled:
            return
        except Exception as exc:
            self._record_error(exc)

    def run(self, operations: Sequence[Operation]) -> None:
        """Execute ``operations``; raise the first error once started work has drained."""
        self._cancel.clear()
        self._first_error = None
        self.started = 0
        self.skipped = 0

        if not operations:
            return

        futures: List[Future[None]] = []
        with ThreadPoolExecutor(max_workers=min(self.limit, len(operations))) as pool:
            for op in operations:
                if self._cancel.is_set():
                    with self._lock:
                        self.skipped += 1
                    continue
                futures.append(pool.submit(self._guarded, op))
            wait(futures)

        self.log.debug(
            "Batch finished: total=%d started=%d skipped=%d failed=%s",
            len(operations), self.started, self.skipped, self._first_error is not None,
        )
        if self._first_error is not None:
            raise self._first_error


def run_bounded(operations: Sequence[Operation], limit: int = DEFAULT_LIMIT) -> None:
    """Convenience wrapper around :class:`BoundedExecutor`."""
    BoundedExecutor(limit).run(operations)
