"""Shared fixtures: an in-memory process table and a worker driven by the test."""

import itertools
from datetime import datetime

import pytest

from pyherd.job import Job
from pyherd.models import GracefulWithDeadline, JobDescription, ProcessSnapshot
from pyherd.process import TerminationPhase, TerminationResult
from pyherd.registry import PidRegistry


def make_snapshot(pid: int, **overrides) -> ProcessSnapshot:
    """Build a ProcessSnapshot with plausible defaults."""
    fields = {
        "pid": pid,
        "cpu_percent": 1.0,
        "memory_percent": 0.5,
        "resident_bytes": 10 * 1024 * 1024,
        "virtual_bytes": 100 * 1024 * 1024,
        "started_at": datetime.now(),
        "user": "worker",
        "group": "worker",
        "command": f"worker --id {pid}",
    }
    fields.update(overrides)
    return ProcessSnapshot(**fields)


class FakeProcessTable:
    """Process table whose processes only exist in ``alive``."""

    def __init__(self) -> None:
        self.alive: set[int] = set()
        self.snapshots: dict[int, ProcessSnapshot] = {}
        self.terminated: list[int] = []
        self.poll_interval = 0.0

    def pids(self) -> set[int]:
        return set(self.alive)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def sample(self, pid: int) -> ProcessSnapshot | None:
        if pid not in self.alive:
            return None
        return self.snapshots.get(pid) or make_snapshot(pid)

    def terminate(self, pid, mode) -> TerminationResult:
        self.terminated.append(pid)
        if pid not in self.alive:
            return TerminationResult(pid, (TerminationPhase.CONFIRMED_DEAD,))
        self.alive.discard(pid)
        return TerminationResult(
            pid, (TerminationPhase.RUNNING, TerminationPhase.SIGNAL_SENT, TerminationPhase.CONFIRMED_DEAD)
        )


class FakeLauncher:
    """Launches pretend processes into a FakeProcessTable."""

    def __init__(self, table: FakeProcessTable, first_pid: int = 1000) -> None:
        self.table = table
        self.launched: list[tuple[str, int]] = []
        self._pids = itertools.count(first_pid)

    def __call__(self) -> tuple[str, int]:
        pid = next(self._pids)
        slot = f"slot-{pid}"
        self.table.alive.add(pid)
        self.launched.append((slot, pid))
        return slot, pid


class ManualWorker:
    """Holds deferred work until the test calls drain()."""

    def __init__(self) -> None:
        self.pending: list[tuple] = []

    @property
    def outstanding(self) -> int:
        return len(self.pending)

    def defer(self, work, done=None) -> None:
        self.pending.append((work, done))

    def drain(self, timeout=None) -> int:
        delivered = 0
        while self.pending:
            work, done = self.pending.pop(0)
            result = work()
            delivered += 1
            if done is not None:
                done(result)
        return delivered

    def wait_idle(self, timeout: float = 30.0) -> bool:
        self.drain()
        return True


@pytest.fixture
def table() -> FakeProcessTable:
    return FakeProcessTable()


@pytest.fixture
def worker() -> ManualWorker:
    return ManualWorker()


@pytest.fixture
def registry() -> PidRegistry:
    return PidRegistry()


@pytest.fixture
def launcher(table) -> FakeLauncher:
    return FakeLauncher(table)


@pytest.fixture
def make_description(launcher):
    """Factory for job descriptions launching into the fake table."""

    def factory(job_id: str = "web", initial_processes: int = 3, **kwargs) -> JobDescription:
        kwargs.setdefault("allowed_processes", (0, 10))
        kwargs.setdefault("kill_mode", GracefulWithDeadline(5.0))
        return JobDescription(
            id=job_id,
            name=kwargs.pop("name", job_id.capitalize()),
            launcher=kwargs.pop("launcher", launcher),
            initial_processes=initial_processes,
            **kwargs,
        )

    return factory


@pytest.fixture
def make_job(make_description, registry, table, worker):
    """Factory for jobs wired to the fake table, manual worker and shared registry."""

    def factory(initial_processes: int = 3, state: dict | None = None, **kwargs) -> Job:
        description = make_description(initial_processes=initial_processes, **kwargs)
        return Job(description, state, registry, table, worker)

    return factory


@pytest.fixture(name="make_snapshot")
def make_snapshot_fixture():
    return make_snapshot
