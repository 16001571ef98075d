"""Unit tests for chatmem.worker."""
from __future__ import annotations

import threading

import pytest

from chatmem.worker import BackgroundWorker


@pytest.fixture()
def worker():
    w = BackgroundWorker(max_workers=2, max_attempts=3, retry_delay_s=0.0, name="test-worker")
    yield w
    w.shutdown(wait=True)


class TestBackgroundWorker:
    def test_returns_job_result(self, worker: BackgroundWorker) -> None:
        future = worker.submit("add", lambda a, b: a + b, 2, 3)
        assert future.result(timeout=5) == 5

    def test_retries_until_success(self, worker: BackgroundWorker) -> None:
        calls = {"n": 0}

        def flaky() -> str:
            calls["n"] += 1
            if calls["n"] < 3:
                raise RuntimeError("transient")
            return "done"

        assert worker.submit("flaky", flaky).result(timeout=5) == "done"
        assert calls["n"] == 3
        assert worker.dead_letters == []

    def test_dead_letters_after_max_attempts(self, worker: BackgroundWorker) -> None:
        calls = {"n": 0}

        def broken() -> None:
            calls["n"] += 1
            raise ValueError("always broken")

        assert worker.submit("broken", broken).result(timeout=5) is None
        assert calls["n"] == 3
        assert len(worker.dead_letters) == 1
        letter = worker.dead_letters[0]
        assert letter.label == "broken"
        assert letter.attempts == 3
        assert "always broken" in letter.error

    def test_wait_idle_waits_for_jobs(self, worker: BackgroundWorker) -> None:
        release = threading.Event()
        done: list[int] = []

        def job(i: int) -> None:
            release.wait(5)
            done.append(i)

        for i in range(4):
            worker.submit(f"job:{i}", job, i)
        assert worker.wait_idle(timeout=0.05) is False
        release.set()
        assert worker.wait_idle(timeout=5) is True
        assert sorted(done) == [0, 1, 2, 3]
        assert worker.pending == 0

    def test_wait_idle_with_nothing_queued(self, worker: BackgroundWorker) -> None:
        assert worker.wait_idle(timeout=0.01) is True

    def test_submit_after_shutdown_raises(self) -> None:
        w = BackgroundWorker(max_workers=1)
        w.shutdown()
        with pytest.raises(RuntimeError):
            w.submit("late", lambda: None)

    def test_shutdown_is_idempotent(self) -> None:
        w = BackgroundWorker(max_workers=1)
        w.shutdown()
        w.shutdown()
