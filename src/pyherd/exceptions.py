"""Exception hierarchy for pyherd."""


class PyherdError(Exception):
    """Base for all pyherd errors."""


class FatalError(PyherdError):
    """Unrecoverable misuse that must reach the operator."""


class UnknownJobError(FatalError):
    """No job with the given ID is configured."""


class UntrackedProcessError(FatalError):
    """The pid is not a running process of the addressed job."""


class UnmanagedProcessError(FatalError):
    """The pid does not belong to any job."""


class InvalidInstructionError(FatalError):
    """A control instruction could not be understood or applied."""


class ProcessNotRunningError(PyherdError):
    """Tried to read details of a process that was not alive when sampled."""


class ConfigError(PyherdError):
    """A job file or trigger configuration is invalid."""
