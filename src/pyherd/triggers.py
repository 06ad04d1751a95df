"""
Triggers - corrective actions driven by process metrics.

A trigger is bound to one job. On each evaluation it samples the job's
running processes, tests each snapshot, and fires its action on the ones
that satisfy it. A trigger fires once per breach: after firing for a pid it
stays quiet for that pid until the condition clears.
"""

from __future__ import annotations

import logging
import operator
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pyherd.exceptions import ConfigError
from pyherd.models import ProcessSnapshot

if TYPE_CHECKING:
    from pyherd.job import Job
    from pyherd.process import ProcessHandle

logger = logging.getLogger(__name__)

COMPARISONS: dict[str, tuple[str, Callable[[Any, Any], bool]]] = {
    ">": (">", operator.gt),
    "gt": (">", operator.gt),
    ">=": (">=", operator.ge),
    "gte": (">=", operator.ge),
    "<": ("<", operator.lt),
    "lt": ("<", operator.lt),
    "<=": ("<=", operator.le),
    "lte": ("<=", operator.le),
    "=": ("=", operator.eq),
    "==": ("=", operator.eq),
    "eq": ("=", operator.eq),
}

ACTIONS = ("restart",)


class Trigger(ABC):
    """Abstract trigger bound to a job."""

    def __init__(self, job: Job, action: str = "restart") -> None:
        if action not in ACTIONS:
            raise ConfigError(f"Unknown trigger action {action!r}")
        self.job = job
        self.action = action
        self._breached: set[int] = set()

    @abstractmethod
    def test(self, snapshot: ProcessSnapshot) -> bool:
        """Whether the process in ``snapshot`` needs corrective action."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable account of what tripped the trigger."""

    def fire(self, process: ProcessHandle) -> None:
        """Apply the corrective action to ``process``."""
        if self.action == "restart":
            process.restart()

    def evaluate(self) -> None:
        """Test every running process of the job and fire on new breaches."""
        seen: set[int] = set()
        for process in self.job.running_processes().values():
            seen.add(process.pid)
            if not self.test(process.snapshot):
                self._breached.discard(process.pid)
                continue
            if process.pid in self._breached:
                continue
            self._breached.add(process.pid)
            logger.info("Process %d of job %s: %s", process.pid, self.job.id, self.describe())
            self.fire(process)
        self._breached &= seen


class ComparisonTrigger(Trigger):
    """Compares one snapshot metric against a threshold."""

    metric: str = ""
    label: str = ""
    unit: str = ""

    def __init__(self, job: Job, op: str, value: float, action: str = "restart") -> None:
        super().__init__(job, action)
        try:
            self.symbol, self._compare = COMPARISONS[op]
        except KeyError:
            raise ConfigError(f"Unknown comparison operator {op!r}") from None
        self.value = value

    def measure(self, snapshot: ProcessSnapshot) -> float:
        return getattr(snapshot, self.metric)

    def test(self, snapshot: ProcessSnapshot) -> bool:
        return self._compare(self.measure(snapshot), self.value)

    def describe(self) -> str:
        return f"{self.label} {self.symbol} {self.value}{self.unit}"


class MemoryTrigger(ComparisonTrigger):
    metric = "resident_bytes"
    label = "Physical memory"
    unit = " bytes"


class CpuTrigger(ComparisonTrigger):
    metric = "cpu_percent"
    label = "CPU usage"
    unit = "%"


class UptimeTrigger(ComparisonTrigger):
    metric = "uptime"
    label = "Uptime"
    unit = " seconds"


TRIGGERS: dict[str, type[Trigger]] = {
    "memory": MemoryTrigger,
    "cpu": CpuTrigger,
    "uptime": UptimeTrigger,
}


def make_trigger(job: Job, kind: str, *args: Any, **kwargs: Any) -> Trigger:
    """
    Build a trigger from a job file entry such as ``("memory", ">", 1e8)``.

    Raises:
        ConfigError: If the kind is unknown or the arguments don't fit it.
    """
    try:
        trigger_class = TRIGGERS[kind]
    except KeyError:
        raise ConfigError(f"Unknown trigger type {kind!r}") from None
    try:
        return trigger_class(job, *args, **kwargs)
    except TypeError as exc:
        raise ConfigError(f"Bad arguments for {kind} trigger: {exc}") from None
