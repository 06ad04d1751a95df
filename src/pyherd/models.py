"""Data models for pyherd."""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

DEFAULT_KILL_TIMEOUT = 20.0


@dataclass(slots=True, frozen=True)
class ProcessSnapshot:
    """Immutable snapshot of a process state."""

    pid: int
    cpu_percent: float
    memory_percent: float
    resident_bytes: int
    virtual_bytes: int
    started_at: datetime
    user: str
    group: str
    command: str

    @property
    def total_bytes(self) -> int:
        """Sum of resident and virtual memory."""
        return self.resident_bytes + self.virtual_bytes

    @property
    def uptime(self) -> float:
        """Seconds since the process started."""
        return time.time() - self.started_at.timestamp()

    @property
    def is_root(self) -> bool:
        return self.user == "root"


@dataclass(slots=True, frozen=True)
class Immediate:
    """Send SIGKILL straight away."""


@dataclass(slots=True, frozen=True)
class Graceful:
    """Send SIGTERM and wait for the process to exit on its own."""


@dataclass(slots=True, frozen=True)
class GracefulWithDeadline:
    """Send SIGTERM, then SIGKILL if the process outlives the deadline."""

    seconds: float


KillMode = Immediate | Graceful | GracefulWithDeadline


def kill_mode_from_timeout(timeout: bool | float | None) -> KillMode:
    """
    Translate a job file's ``kill_timeout`` value into a KillMode.

    ``True`` kills immediately, ``False`` only asks nicely, and a number is
    the grace period in seconds before escalating.
    """
    if timeout is None:
        return GracefulWithDeadline(DEFAULT_KILL_TIMEOUT)
    if timeout is True:
        return Immediate()
    if timeout is False:
        return Graceful()
    if timeout < 0:
        raise ValueError(f"kill timeout must not be negative, got {timeout}")
    return GracefulWithDeadline(float(timeout))


Launcher = Callable[[], tuple[str, int]]


@dataclass(slots=True, frozen=True)
class JobDescription:
    """Static description of a supervised job."""

    id: str
    name: str
    launcher: Launcher
    initial_processes: int = 1
    allowed_processes: tuple[int, int] = (0, 1)
    triggers: list[tuple] = field(default_factory=list)
    kill_mode: KillMode = field(default_factory=lambda: GracefulWithDeadline(DEFAULT_KILL_TIMEOUT))

    def launch(self) -> tuple[str, int]:
        """Start one process, returning its slot ID and OS pid."""
        return self.launcher()
