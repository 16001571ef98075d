"""
Background worker for maintenance jobs that must not block the write path.

Jobs run on a small thread pool.  A failing job is retried with a linear
backoff; once the attempts are exhausted it is logged and kept in
``dead_letters`` instead of being raised.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from typing import Any

from .internal import utc_now

logger = logging.getLogger(__name__)

_MAX_DEAD_LETTERS = 100


@dataclass
class DeadLetter:
    label: str
    attempts: int
    error: str
    failed_at: str = field(default_factory=lambda: utc_now().isoformat())


class BackgroundWorker:
    """
    Fire-and-forget job runner.

    Args:
        max_workers:    Thread pool size.
        max_attempts:   Attempts per job before it is dead-lettered.
        retry_delay_s:  Base delay; attempt *n* sleeps ``retry_delay_s * n``.
        name:           Thread name prefix, also used in log lines.
    """

    def __init__(
        self,
        *,
        max_workers: int = 2,
        max_attempts: int = 3,
        retry_delay_s: float = 0.5,
        name: str = "chatmem-worker",
    ) -> None:
        self.name = name
        self._max_attempts = max(1, int(max_attempts))
        self._retry_delay_s = max(0.0, float(retry_delay_s))
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)), thread_name_prefix=name
        )
        self._lock = threading.Lock()
        self._pending: set[Future[Any]] = set()
        self._closed = False
        self.dead_letters: list[DeadLetter] = []

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future[Any]:
        """Queue *fn*; the returned future resolves to its result, or ``None`` on failure."""
        with self._lock:
            if self._closed:
                raise RuntimeError(f"{self.name} is shut down")
            future = self._executor.submit(self._run, label, fn, args, kwargs)
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future[Any]) -> None:
        with self._lock:
            self._pending.discard(future)

    def _run(
        self,
        label: str,
        fn: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                if attempt < self._max_attempts:
                    logger.warning(
                        "%s: job %s failed (attempt %d/%d): %s",
                        self.name, label, attempt, self._max_attempts, exc,
                    )
                    time.sleep(self._retry_delay_s * attempt)
                    continue
                logger.error(
                    "%s: job %s dead-lettered after %d attempts: %s",
                    self.name, label, attempt, exc,
                    exc_info=exc,
                )
                self._dead_letter(DeadLetter(label=label, attempts=attempt, error=str(exc)))
        return None

    def _dead_letter(self, entry: DeadLetter) -> None:
        with self._lock:
            self.dead_letters.append(entry)
            del self.dead_letters[:-_MAX_DEAD_LETTERS]

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for f in self._pending if not f.done())

    def wait_idle(self, timeout: float | None = None) -> bool:
        """
        Block until every job submitted so far has finished.

        Jobs submitted while waiting are waited for as well.  Returns ``False``
        if *timeout* expired first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = {f for f in self._pending if not f.done()}
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait_futures(pending, timeout=remaining)
            if not_done and deadline is not None and time.monotonic() >= deadline:
                return False

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=wait)
