"""Supervisor - owns every job and drives them from the main thread."""

import json
import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from pyherd.exceptions import UnknownJobError
from pyherd.job import Job
from pyherd.models import JobDescription
from pyherd.process import ProcessHandle, ProcessTable
from pyherd.registry import PidRegistry
from pyherd.worker import BackgroundWorker

logger = logging.getLogger(__name__)


class Supervisor:
    """
    Holds the jobs together with the pid registry, process table and
    background worker they share.

    ``beat()`` is the periodic heartbeat: it reconciles every job, runs its
    triggers and saves state. ``process_completions()`` must be called
    regularly on the same thread to deliver finished terminations.
    """

    def __init__(
        self,
        descriptions: Iterable[JobDescription],
        state_file: Path | None = None,
        table: ProcessTable | None = None,
        worker: BackgroundWorker | None = None,
        registry: PidRegistry | None = None,
    ) -> None:
        self.state_file = state_file
        self.table = table or ProcessTable()
        self.worker = worker or BackgroundWorker()
        self.registry = registry or PidRegistry()
        saved = self.load_state()
        self.jobs: dict[str, Job] = {}
        for description in descriptions:
            self.jobs[description.id] = Job(
                description, saved.get(description.id), self.registry, self.table, self.worker
            )

    def __getitem__(self, job_id: str) -> Job:
        try:
            return self.jobs[job_id]
        except KeyError:
            raise UnknownJobError(f"Unknown job ID {job_id!r}") from None

    def __iter__(self):
        return iter(self.jobs.values())

    def by_pid(self, pid: int) -> Job | None:
        return self.registry.owner(pid)

    def process(self, pid: int) -> ProcessHandle:
        """Sample ``pid`` as seen by this supervisor."""
        return ProcessHandle(pid, self.table, self.registry)

    def beat(self) -> None:
        """Reconcile every job, evaluate its triggers and persist state."""
        for job in self.jobs.values():
            job.sync()
            job.evaluate_triggers()
        self.save_state()

    def process_completions(self, timeout: float | None = None) -> int:
        """Deliver finished terminations. Returns how many were delivered."""
        delivered = self.worker.drain(timeout)
        if delivered:
            self.save_state()
        return delivered

    def shutdown(self, on_done: Callable[[], None] | None = None) -> None:
        """Stop the processes of every job; ``on_done`` runs once all are dead."""
        remaining = len(self.jobs)

        def job_done() -> None:
            nonlocal remaining
            remaining -= 1
            if remaining == 0:
                self.save_state()
                if on_done is not None:
                    on_done()

        if not self.jobs:
            if on_done is not None:
                on_done()
            return
        for job in self.jobs.values():
            job.desired_count = 0
            job.shutdown(job_done)

    def close(self) -> None:
        """Persist state and release the registry at the end of the supervisor's life."""
        self.save_state()
        self.registry.clear()

    def state(self) -> dict[str, Any]:
        return {job_id: job.state() for job_id, job in self.jobs.items()}

    def save_state(self) -> None:
        if self.state_file is None:
            return
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(self.state(), indent=2))
        tmp.replace(self.state_file)

    def load_state(self) -> dict[str, Any]:
        if self.state_file is None or not self.state_file.exists():
            return {}
        try:
            return json.loads(self.state_file.read_text())
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file %s", self.state_file)
            return {}
