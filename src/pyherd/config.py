"""Settings, logging setup and job file loading."""

import logging
import os
import subprocess
import tomllib
import uuid
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

from pyherd.exceptions import ConfigError
from pyherd.models import JobDescription, kill_mode_from_timeout

logger = logging.getLogger(__name__)


class PyherdSettings(BaseSettings):
    jobs_file: Path = Path("pyherd.toml")
    state_file: Path = Path(".pyherd/state.json")
    log_file: Path = Path(".pyherd/pyherd.log")
    log_level: str = "INFO"
    beat_interval: float = 5.0  # seconds between sync/trigger passes
    poll_interval: float = 0.2  # liveness polling while terminating
    default_kill_timeout: float = 20.0

    model_config = {"env_prefix": "PYHERD_"}


def configure_logging(settings: PyherdSettings) -> None:
    """Send log records to the log file; the terminal belongs to the UI."""
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=settings.log_file,
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class JobConfig(BaseModel):
    """One ``[[jobs]]`` table of the job file."""

    id: str
    name: str = ""
    command: list[str] = Field(min_length=1)
    cwd: Path | None = None
    env: dict[str, str] = Field(default_factory=dict)
    initial_processes: int = Field(default=1, ge=0)
    allowed_processes: tuple[int, int] = (0, 1)
    kill_timeout: bool | float | None = None
    triggers: list[list[str | float]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_range(self) -> "JobConfig":
        low, high = self.allowed_processes
        if low < 0 or high < low:
            raise ValueError(f"allowed_processes must be 0 <= min <= max, got {self.allowed_processes}")
        if not self.name:
            self.name = self.id
        return self


class JobFile(BaseModel):
    jobs: list[JobConfig] = Field(default_factory=list)


class CommandLauncher:
    """Launches a job's command as a detached child, one slot per call."""

    def __init__(self, command: list[str], cwd: Path | None = None, env: dict[str, str] | None = None) -> None:
        self.command = command
        self.cwd = cwd
        self.env = env or {}
        self._children: list[subprocess.Popen] = []

    def __call__(self) -> tuple[str, int]:
        # Collect exit statuses of children that already finished
        self._children = [child for child in self._children if child.poll() is None]
        child = subprocess.Popen(
            self.command,
            cwd=self.cwd,
            env={**os.environ, **self.env},
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        self._children.append(child)
        return uuid.uuid4().hex[:8], child.pid


def describe_job(config: JobConfig, settings: PyherdSettings) -> JobDescription:
    kill_timeout = config.kill_timeout if config.kill_timeout is not None else settings.default_kill_timeout
    return JobDescription(
        id=config.id,
        name=config.name,
        launcher=CommandLauncher(config.command, config.cwd, config.env),
        initial_processes=config.initial_processes,
        allowed_processes=config.allowed_processes,
        triggers=[tuple(trigger) for trigger in config.triggers],
        kill_mode=kill_mode_from_timeout(kill_timeout),
    )


def load_jobs(settings: PyherdSettings) -> list[JobDescription]:
    """
    Read job descriptions from the TOML job file.

    Raises:
        ConfigError: If the file is missing, unparsable or invalid.
    """
    path = settings.jobs_file
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Job file {path} does not exist") from None
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Job file {path} is not valid TOML: {exc}") from None

    try:
        job_file = JobFile.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Job file {path} is invalid:\n{exc}") from None

    ids = [job.id for job in job_file.jobs]
    duplicates = sorted({job_id for job_id in ids if ids.count(job_id) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate job IDs in {path}: {', '.join(duplicates)}")

    logger.info("Loaded %d jobs from %s", len(ids), path)
    return [describe_job(job, settings) for job in job_file.jobs]
