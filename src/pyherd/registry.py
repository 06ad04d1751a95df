"""Reverse index from OS pid to the job that owns it."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pyherd.job import Job

logger = logging.getLogger(__name__)


class PidRegistry:
    """
    Process-wide map of pid to owning Job.

    One instance lives as long as the supervisor and is handed to every Job
    and ProcessHandle. Only Job mutates it, and only from the main thread,
    so no locking is needed.
    """

    def __init__(self) -> None:
        self._owners: dict[int, Job] = {}

    def register(self, pid: int, job: Job) -> Job | None:
        """
        Record that ``job`` owns ``pid``.

        Returns the other job that owned ``pid`` before, if any. The OS has
        reused the pid, so the caller must make that job let go of it.
        """
        current = self._owners.get(pid)
        self._owners[pid] = job
        if current is not None and current is not job:
            logger.warning(
                "Pid %d was registered to job %s, reassigning to job %s", pid, current.id, job.id
            )
            return current
        return None

    def deregister(self, pid: int, job: Job | None = None) -> Job | None:
        """
        Forget ``pid``, returning the job that owned it (if any).

        When ``job`` is given, the entry is only removed if that job still
        owns the pid.
        """
        if job is not None and self._owners.get(pid) is not job:
            return None
        return self._owners.pop(pid, None)

    def owner(self, pid: int) -> Job | None:
        """Get the job that owns ``pid``."""
        return self._owners.get(pid)

    def pids_for(self, job: Job) -> list[int]:
        """Get every pid registered to ``job``."""
        return [pid for pid, owner in self._owners.items() if owner is job]

    def clear(self) -> None:
        """Drop every entry, at supervisor teardown."""
        self._owners.clear()

    def __contains__(self, pid: object) -> bool:
        return pid in self._owners

    def __len__(self) -> int:
        return len(self._owners)
