"""Verification Test: Chaos Monkey - processes killed behind the supervisor's back.

Runs real `sleep` workers under a Supervisor, kills some of them from
outside, and checks that the next beat notices the losses and refills the
pool without raising.
"""

import random
import signal

import psutil
import pytest

from pyherd.config import CommandLauncher
from pyherd.models import GracefulWithDeadline, JobDescription
from pyherd.process import ProcessTable
from pyherd.supervisor import Supervisor


@pytest.fixture
def supervisor(tmp_path):
    description = JobDescription(
        id="sleepers",
        name="Sleepers",
        launcher=CommandLauncher(["sleep", "60"]),
        initial_processes=6,
        allowed_processes=(0, 10),
        kill_mode=GracefulWithDeadline(2.0),
    )
    supervisor = Supervisor(
        [description],
        state_file=tmp_path / "state.json",
        table=ProcessTable(poll_interval=0.05),
    )
    yield supervisor
    job = supervisor["sleepers"]
    for pid in [*job.tracked.values(), *job.terminating.values()]:
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            pass


class TestChaosMonkey:
    """Chaos Monkey verification suite tests."""

    def test_supervisor_heals_killed_processes(self, supervisor):
        job = supervisor["sleepers"]
        supervisor.beat()
        assert job.running_count == 6

        victims = random.sample(list(job.tracked.values()), 3)
        for pid in victims:
            psutil.Process(pid).send_signal(signal.SIGKILL)
        psutil.wait_procs([psutil.Process(pid) for pid in victims if psutil.pid_exists(pid)], timeout=5)

        supervisor.beat()

        assert job.running_count == 6
        assert not set(victims) & set(job.tracked.values())
        for pid in job.tracked.values():
            assert psutil.pid_exists(pid)
            assert supervisor.by_pid(pid) is job
        for pid in victims:
            assert supervisor.by_pid(pid) is None

    def test_shutdown_terminates_real_processes(self, supervisor):
        job = supervisor["sleepers"]
        supervisor.beat()
        pids = list(job.tracked.values())
        calls = []

        supervisor.shutdown(lambda: calls.append(True))

        assert supervisor.worker.wait_idle(timeout=15.0)
        assert calls == [True]
        assert job.terminating_count == 0
        assert len(supervisor.registry) == 0
        table = supervisor.table
        assert not any(table.is_alive(pid) for pid in pids)

    def test_scale_down_then_up(self, supervisor):
        job = supervisor["sleepers"]
        supervisor.beat()
        oldest = list(job.tracked.values())[:4]

        job.desired_count = 2
        supervisor.beat()
        assert job.terminating_count == 4
        assert supervisor.worker.wait_idle(timeout=15.0)
        assert not any(supervisor.table.is_alive(pid) for pid in oldest)

        job.desired_count = 5
        supervisor.beat()

        assert job.running_count == 5
        assert job.terminating_count == 0
