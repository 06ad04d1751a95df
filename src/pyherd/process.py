"""Process introspection and termination for pyherd."""

from __future__ import annotations

import grp
import logging
import os
import pwd
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING

import psutil

from pyherd.exceptions import ProcessNotRunningError, UnmanagedProcessError
from pyherd.models import (
    DEFAULT_KILL_TIMEOUT,
    GracefulWithDeadline,
    Immediate,
    KillMode,
    ProcessSnapshot,
)
from pyherd.registry import PidRegistry

if TYPE_CHECKING:
    from pyherd.job import Job

logger = logging.getLogger(__name__)

PS_FORMAT = "pid,%cpu,%mem,rss,vsz,lstart,uid,gid,command"
LSTART_FORMAT = "%a %b %d %H:%M:%S %Y"
DEFAULT_POLL_INTERVAL = 0.2


@lru_cache(maxsize=None)
def user_name(uid: int) -> str:
    """Resolve a numeric user ID, or "" if it has no passwd entry."""
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return ""


@lru_cache(maxsize=None)
def group_name(gid: int) -> str:
    """Resolve a numeric group ID, or "" if it has no group entry."""
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return ""


def parse_ps_line(line: str) -> ProcessSnapshot:
    """
    Parse one record of ``ps -o pid,%cpu,%mem,rss,vsz,lstart,uid,gid,command``.

    ProcessTable samples live processes through psutil. This reads process
    listings captured with ``ps -o PS_FORMAT`` instead, such as ones
    collected from another host, into the same ProcessSnapshot. The start
    time spans five tokens and the command keeps its embedded whitespace.
    Memory columns are in kilobytes.

    Raises:
        ValueError: If the line does not have the expected fields.
    """
    parts = line.strip().split(None, 12)
    if len(parts) < 13:
        raise ValueError(f"Malformed process record: {line!r}")

    return ProcessSnapshot(
        pid=int(parts[0]),
        cpu_percent=float(parts[1]),
        memory_percent=float(parts[2]),
        resident_bytes=int(parts[3]) * 1024,
        virtual_bytes=int(parts[4]) * 1024,
        started_at=datetime.strptime(" ".join(parts[5:10]), LSTART_FORMAT),
        user=user_name(int(parts[10])),
        group=group_name(int(parts[11])),
        command=parts[12],
    )


class TerminationPhase(Enum):
    """Steps a termination request moves through."""

    RUNNING = "running"
    SIGNAL_SENT = "signal_sent"
    DEADLINE_EXPIRED = "deadline_expired"
    FORCED = "forced"
    CONFIRMED_DEAD = "confirmed_dead"


@dataclass(slots=True, frozen=True)
class TerminationResult:
    """Outcome of a termination request."""

    pid: int
    phases: tuple[TerminationPhase, ...]

    @property
    def escalated(self) -> bool:
        return TerminationPhase.DEADLINE_EXPIRED in self.phases


class ProcessTable:
    """
    Access to the OS process table through psutil.

    ``terminate`` is safe to call from a background thread: it only signals
    and polls the OS. Everything else is meant for the main thread.
    """

    def __init__(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        # Kept between samples so cpu_percent has a previous reading to diff against
        self._processes: dict[int, psutil.Process] = {}

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    def pids(self) -> set[int]:
        """Get the pids of every live process (zombies excluded)."""
        live: set[int] = set()
        for proc in psutil.process_iter(attrs=["pid", "status"]):
            if proc.info.get("status") != psutil.STATUS_ZOMBIE:
                live.add(proc.info["pid"])
        for pid in self._processes.keys() - live:
            self._processes.pop(pid, None)
        return live

    @property
    def cached_pids(self) -> set[int]:
        """Pids whose psutil handle is kept for cpu_percent sampling."""
        return set(self._processes)

    def is_alive(self, pid: int) -> bool:
        """Check whether ``pid`` is running. Zombies count as dead."""
        try:
            status = psutil.Process(pid).status()
        except psutil.NoSuchProcess:
            return False
        if status == psutil.STATUS_ZOMBIE:
            _reap(pid)
            return False
        return True

    def sample(self, pid: int) -> ProcessSnapshot | None:
        """Take a fresh snapshot of ``pid``, or None if it isn't running."""
        proc = self._processes.get(pid)
        if proc is None or not proc.is_running():
            try:
                proc = psutil.Process(pid)
            except psutil.NoSuchProcess:
                self._processes.pop(pid, None)
                return None
            self._processes[pid] = proc

        try:
            with proc.oneshot():
                if proc.status() == psutil.STATUS_ZOMBIE:
                    raise psutil.ZombieProcess(pid)
                mem_info = proc.memory_info()
                cmdline = proc.cmdline()
                return ProcessSnapshot(
                    pid=pid,
                    cpu_percent=proc.cpu_percent(interval=None),
                    memory_percent=proc.memory_percent(),
                    resident_bytes=mem_info.rss,
                    virtual_bytes=mem_info.vms,
                    started_at=datetime.fromtimestamp(proc.create_time()),
                    user=user_name(proc.uids().real),
                    group=group_name(proc.gids().real),
                    command=" ".join(cmdline) if cmdline else proc.name(),
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            # ZombieProcess is a NoSuchProcess
            self._processes.pop(pid, None)
            return None

    def signal(self, pid: int, sig: signal.Signals) -> bool:
        """Send ``sig`` to ``pid``. Returns False if the process was already gone."""
        logger.info("Sending %s to process %d", sig.name, pid)
        try:
            psutil.Process(pid).send_signal(sig)
        except psutil.NoSuchProcess:
            return False
        return True

    def terminate(self, pid: int, mode: KillMode) -> TerminationResult:
        """
        Terminate ``pid`` and block until it is confirmed dead.

        Immediate sends SIGKILL. Graceful sends SIGTERM and waits however long
        it takes. GracefulWithDeadline sends SIGTERM, polls until the deadline
        passes, then sends SIGKILL and keeps polling. A pid that is already
        dead is left alone.
        """
        if not self.is_alive(pid):
            self._processes.pop(pid, None)
            return TerminationResult(pid, (TerminationPhase.CONFIRMED_DEAD,))

        phases = [TerminationPhase.RUNNING]
        deadline: float | None = None
        if isinstance(mode, Immediate):
            self.signal(pid, signal.SIGKILL)
            phases.append(TerminationPhase.FORCED)
        else:
            if isinstance(mode, GracefulWithDeadline):
                noun = "second" if mode.seconds == 1 else "seconds"
                logger.info("Will wait %s %s for process %d to terminate gracefully", mode.seconds, noun, pid)
                deadline = self._clock() + mode.seconds
            self.signal(pid, signal.SIGTERM)
            phases.append(TerminationPhase.SIGNAL_SENT)

        while self.is_alive(pid):
            if deadline is not None and self._clock() >= deadline:
                phases.append(TerminationPhase.DEADLINE_EXPIRED)
                self.signal(pid, signal.SIGKILL)
                phases.append(TerminationPhase.FORCED)
                deadline = None
                continue
            self._sleep(self._poll_interval)

        phases.append(TerminationPhase.CONFIRMED_DEAD)
        self._processes.pop(pid, None)
        logger.info("Process %d terminated", pid)
        return TerminationResult(pid, tuple(phases))


def _reap(pid: int) -> None:
    """Collect the exit status of a zombie child of ours, if it is one."""
    try:
        os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass


class ProcessHandle:
    """
    A pid together with its most recent sample.

    Built either from an existing snapshot or from a bare pid, in which case
    it samples straight away. Metric access on a process that was not alive
    at sampling time raises ProcessNotRunningError.
    """

    def __init__(
        self,
        pid: int,
        table: ProcessTable,
        registry: PidRegistry,
        snapshot: ProcessSnapshot | None = None,
    ) -> None:
        self.pid = int(pid)
        self._table = table
        self._registry = registry
        self._snapshot = snapshot
        if snapshot is None:
            self.reload()

    def reload(self) -> ProcessHandle:
        """Resample the process."""
        self._snapshot = self._table.sample(self.pid)
        return self

    @property
    def was_alive(self) -> bool:
        """Whether the process was running when last sampled."""
        return self._snapshot is not None

    @property
    def snapshot(self) -> ProcessSnapshot:
        if self._snapshot is None:
            raise ProcessNotRunningError(f"Tried to access details of non-running process {self.pid}")
        return self._snapshot

    def kill(self, mode: KillMode | None = None) -> TerminationResult:
        """Terminate the process synchronously."""
        return self._table.terminate(self.pid, mode if mode is not None else GracefulWithDeadline(DEFAULT_KILL_TIMEOUT))

    def owning_job(self) -> Job | None:
        return self._registry.owner(self.pid)

    def restart(self, on_done: Callable[[], None] | None = None) -> None:
        """Ask the owning job to replace this process with a fresh one."""
        job = self.owning_job()
        if job is None:
            raise UnmanagedProcessError(
                f"Cannot restart process {self.pid} because it is not managed by a job"
            )
        job.replace(self.pid, on_done)

    def __repr__(self) -> str:
        state = "alive" if self.was_alive else "dead"
        return f"<ProcessHandle pid={self.pid} {state}>"
