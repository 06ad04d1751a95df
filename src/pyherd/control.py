"""Textual control instructions for jobs, e.g. ``"3"``, ``"2 more"`` or ``"restart"``."""

import re

from pyherd.exceptions import InvalidInstructionError
from pyherd.job import Job
from pyherd.supervisor import Supervisor

RELATIVE = re.compile(r"^(?:(\d+) )?(more|less)$")


def run_instruction(supervisor: Supervisor, job_id: str, instruction: str) -> str:
    """
    Apply ``instruction`` to the job with ``job_id`` and return a reply for the operator.

    The supervisor beats first, so the instruction acts on the processes
    that are running now rather than those seen at the last beat.

    Raises:
        UnknownJobError: If no such job exists.
        InvalidInstructionError: If the instruction is unknown or the count
            falls outside the job's allowed range.
    """
    job = supervisor[job_id]
    supervisor.beat()
    instruction = instruction.strip().lower()

    if instruction.isdigit():
        return set_count(job, int(instruction))

    match = RELATIVE.match(instruction)
    if match:
        amount = int(match.group(1) or 1)
        delta = amount if match.group(2) == "more" else -amount
        return set_count(job, job.desired_count + delta)

    if instruction == "max":
        return set_count(job, job.allowed_processes[1])
    if instruction == "min":
        return set_count(job, job.allowed_processes[0])
    if instruction == "restart":
        job.restart()
        return f"Restarting '{job.name}' processes"
    if instruction in ("pause", "resume"):
        return f"{instruction.capitalize()} is not supported"

    raise InvalidInstructionError(f"Unknown instruction {instruction!r}")


def set_count(job: Job, count: int) -> str:
    low, high = job.allowed_processes
    if not low <= count <= high:
        raise InvalidInstructionError(
            f"Job '{job.name}' must run between {low} and {high} processes, not {count}"
        )

    previous = job.desired_count
    if count == previous:
        return f"'{job.name}' is already running {count} processes"

    job.desired_count = count
    job.sync()
    verb = "Decreasing" if count < previous else "Increasing"
    return f"{verb} '{job.name}' processes by {abs(previous - count)} (from {previous} to {count})"
