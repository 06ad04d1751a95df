"""Tests for the BackgroundWorker."""

import threading
import time

import pytest

from pyherd.worker import BackgroundWorker


class TestBackgroundWorker:
    """Tests for BackgroundWorker."""

    def test_completion_delivered_on_drain(self):
        worker = BackgroundWorker()
        results = []

        worker.defer(lambda: 42, results.append)

        assert worker.outstanding == 1
        assert worker.drain(timeout=2.0) == 1
        assert results == [42]
        assert worker.outstanding == 0

    def test_done_runs_on_draining_thread(self):
        """Work runs in the background, completions on the caller's thread."""
        worker = BackgroundWorker()
        threads = {}

        def work():
            threads["work"] = threading.current_thread()

        def done(_result):
            threads["done"] = threading.current_thread()

        worker.defer(work, done)
        worker.wait_idle(timeout=2.0)

        assert threads["work"] is not threading.current_thread()
        assert threads["done"] is threading.current_thread()

    def test_threads_are_named_daemons(self):
        worker = BackgroundWorker(name="Terminator")
        seen = []
        worker.defer(lambda: seen.append(threading.current_thread()))
        worker.wait_idle(timeout=2.0)

        assert seen[0].daemon is True
        assert seen[0].name.startswith("Terminator-")

    def test_drain_without_timeout_does_not_block(self):
        worker = BackgroundWorker()
        worker.defer(lambda: time.sleep(0.5))

        started = time.monotonic()
        assert worker.drain() == 0
        assert time.monotonic() - started < 0.2
        assert worker.wait_idle(timeout=2.0)

    def test_errors_are_raised_on_drain(self):
        worker = BackgroundWorker()
        worker.defer(lambda: 1 / 0)

        with pytest.raises(ZeroDivisionError):
            worker.drain(timeout=2.0)
        assert worker.outstanding == 0

    def test_wait_idle_follows_work_started_by_callbacks(self):
        worker = BackgroundWorker()
        results = []

        def first_done(_result):
            worker.defer(lambda: "second", results.append)

        worker.defer(lambda: "first", first_done)

        assert worker.wait_idle(timeout=2.0)
        assert results == ["second"]

    def test_wait_idle_times_out(self):
        worker = BackgroundWorker()
        worker.defer(lambda: time.sleep(1.0))

        assert worker.wait_idle(timeout=0.2) is False
        assert worker.wait_idle(timeout=3.0) is True
