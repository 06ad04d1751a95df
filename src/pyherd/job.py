"""Reconciliation engine: keeps a job's process count where it should be."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pyherd.exceptions import UntrackedProcessError
from pyherd.models import JobDescription
from pyherd.process import ProcessHandle, ProcessTable, TerminationResult
from pyherd.registry import PidRegistry
from pyherd.triggers import Trigger, make_trigger
from pyherd.worker import BackgroundWorker

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class Job:
    """
    A job description paired with the live processes running it.

    ``tracked`` and ``terminating`` map slot IDs to OS pids, in the order the
    slots were added. A slot lives in at most one of them. Both maps and the
    pid registry are only touched from the main thread; terminations run on
    the background worker and report back through ``drain()``.
    """

    def __init__(
        self,
        description: JobDescription,
        state: dict[str, Any] | None,
        registry: PidRegistry,
        table: ProcessTable,
        worker: BackgroundWorker,
    ) -> None:
        state = state or {}
        self.description = description
        self._registry = registry
        self._table = table
        self._worker = worker
        self._desired_count = 0
        self.desired_count = state.get("desired_count", description.initial_processes)
        self.tracked: dict[str, int] = {slot: int(pid) for slot, pid in state.get("tracked", {}).items()}
        self.terminating: dict[str, int] = {
            slot: int(pid) for slot, pid in state.get("terminating", {}).items() if slot not in self.tracked
        }
        for pid in list(self.tracked.values()):
            self._claim(pid)
        self.triggers: list[Trigger] = [make_trigger(self, *config) for config in description.triggers]

    @property
    def id(self) -> str:
        return self.description.id

    @property
    def name(self) -> str:
        return self.description.name

    @property
    def allowed_processes(self) -> tuple[int, int]:
        return self.description.allowed_processes

    @property
    def desired_count(self) -> int:
        return self._desired_count

    @desired_count.setter
    def desired_count(self, value: int) -> None:
        value = int(value)
        if value < 0:
            raise ValueError(f"Desired process count must not be negative, got {value}")
        self._desired_count = value

    @property
    def running_count(self) -> int:
        return len(self.tracked)

    @property
    def terminating_count(self) -> int:
        return len(self.terminating)

    def state(self) -> dict[str, Any]:
        """Serializable state, accepted back by the constructor."""
        return {
            "desired_count": self.desired_count,
            "tracked": dict(self.tracked),
            "terminating": dict(self.terminating),
        }

    def sync(self) -> None:
        """Forget lost processes, then start or stop processes to match the desired count."""
        self._prune()

        while self.running_count < self.desired_count:
            self._start_one()

        while self.running_count > self.desired_count:
            self._stop_one()

    def evaluate_triggers(self) -> None:
        for trigger in self.triggers:
            trigger.evaluate()

    def shutdown(self, on_done: Callback | None = None) -> None:
        """
        Stop every running process at once.

        ``on_done`` is called once, after the last of them is confirmed dead,
        or right away if nothing is running.
        """
        remaining = self.running_count
        if remaining == 0:
            if on_done is not None:
                on_done()
            return

        def stopped() -> None:
            nonlocal remaining
            remaining -= 1
            if remaining == 0 and on_done is not None:
                on_done()

        for _ in range(remaining):
            self._stop_one(callback=stopped)

    def terminate(self) -> None:
        """Stop all processes and keep them stopped."""
        self.desired_count = 0
        self.sync()

    def restart(self, on_done: Callback | None = None) -> Job:
        """
        Replace every process: drain to zero, then bring the count back.

        The desired count is restored once every old process is confirmed
        dead, after which ``on_done`` is called.
        """
        count = self.desired_count
        if count == 0:
            if on_done is not None:
                on_done()
            return self

        logger.info("Restarting %d processes of job %s", count, self.id)
        self.desired_count = 0
        self._prune()

        def drained() -> None:
            self.desired_count = count
            self.sync()
            if on_done is not None:
                on_done()

        self.shutdown(drained)
        return self

    def running_processes(self) -> dict[str, ProcessHandle]:
        """Fresh samples of tracked processes that are still alive, keyed by slot ID."""
        processes = {}
        for slot, pid in self.tracked.items():
            handle = ProcessHandle(pid, self._table, self._registry)
            if handle.was_alive:
                processes[slot] = handle
        return processes

    def replace(self, pid: int, on_done: Callback | None = None) -> None:
        """
        Stop the process with ``pid`` and start a new one in its place.

        Raises:
            UntrackedProcessError: If ``pid`` is not running for this job.
        """

        def replaced() -> None:
            while self.running_count < self.desired_count:
                self._start_one()
            if on_done is not None:
                on_done()

        self._stop_one(pid, callback=replaced)

    def release(self, pid: int) -> None:
        """Forget ``pid`` without signalling it, now that another job owns it."""
        for slots in (self.tracked, self.terminating):
            for slot, known in list(slots.items()):
                if known == pid:
                    logger.warning("Process %d of job %s was reused by the OS, forgetting it", pid, self.id)
                    del slots[slot]

    def _claim(self, pid: int) -> None:
        previous = self._registry.register(pid, self)
        if previous is not None:
            previous.release(pid)

    def _prune(self) -> None:
        live = self._table.pids()

        for slot, pid in list(self.tracked.items()):
            if pid not in live:
                logger.info("Lost process %d of job %s", pid, self.id)
                del self.tracked[slot]
                self._registry.deregister(pid, self)

        # A previous supervisor may have sent TERM and died before following
        # up with KILL; anything already gone needs no completion.
        for slot, pid in list(self.terminating.items()):
            if not self._table.is_alive(pid):
                logger.debug("Forgetting dead terminating process %d of job %s", pid, self.id)
                del self.terminating[slot]
                self._registry.deregister(pid, self)

    def _start_one(self) -> None:
        slot, pid = self.description.launch()
        logger.info("Started process %d (slot %s) for job %s", pid, slot, self.id)
        self.tracked[slot] = pid
        self._claim(pid)

    def _stop_one(self, pid: int | None = None, callback: Callback | None = None) -> None:
        if pid is None:
            # Oldest slot first
            slot = next(iter(self.tracked))
            pid = self.tracked.pop(slot)
        else:
            slot = next((s for s, p in self.tracked.items() if p == pid), None)
            if slot is None:
                raise UntrackedProcessError(f"Process {pid} isn't managed by job {self.id}")
            del self.tracked[slot]

        self.terminating[slot] = pid
        mode = self.description.kill_mode
        table = self._table

        def work() -> TerminationResult:
            return table.terminate(pid, mode)

        def done(result: TerminationResult) -> None:
            self.terminating.pop(slot, None)
            self._registry.deregister(pid, self)
            logger.info("Process %d of job %s stopped", pid, self.id)
            if callback is not None:
                callback()

        self._worker.defer(work, done)

    def __repr__(self) -> str:
        return f"<Job {self.id} running={self.running_count} desired={self.desired_count}>"
