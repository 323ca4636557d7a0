"""Error types raised by the gce-machine driver.

Not-found conditions are not represented here: they come from the provider
client as google.api_core.exceptions.NotFound and are classified with
gce_machine.gcp.compute.is_not_found().
"""
from typing import List, Tuple


class DriverError(Exception):
    """Driver operation failed, with an actionable message."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PreconditionError(DriverError):
    """A required setting or remote precondition is not satisfied.

    Raised before any mutation of remote state.
    """
    pass


class InstanceNotFoundError(PreconditionError):
    """use-existing mode was requested but the instance does not exist."""

    def __init__(self, name: str, zone: str):
        super().__init__(f"unable to find instance {name!r} in zone {zone!r}")
        self.name = name
        self.zone = zone


class InstanceExistsError(PreconditionError):
    """A new instance was requested but one with the same name exists."""

    def __init__(self, name: str, zone: str):
        super().__init__(f"instance {name!r} already exists in zone {zone!r}")
        self.name = name
        self.zone = zone


class HostNotRunningError(DriverError):
    """The instance exists but has no reachable address."""

    def __init__(self, name: str = ""):
        message = "host is not running"
        if name:
            message = f"host {name!r} is not running"
        super().__init__(message)
        self.name = name


class OperationError(DriverError):
    """A Compute Engine operation completed with errors."""

    def __init__(self, operation: str, details: List[str]):
        joined = "; ".join(details) if details else "unknown error"
        super().__init__(f"operation {operation} failed: {joined}")
        self.operation = operation
        self.details = details


class SSHKeyError(DriverError):
    """SSH key pair could not be generated or read."""
    pass


class RemoveError(DriverError):
    """One or more teardown steps of remove() failed.

    Every step is attempted before this is raised; ``failures`` keeps the
    step description next to the original provider error.
    """

    def __init__(self, failures: List[Tuple[str, Exception]]):
        lines = [f"{step}: {error}" for step, error in failures]
        super().__init__("\n".join(lines))
        self.failures = failures

    @property
    def errors(self) -> List[Exception]:
        return [error for _, error in self.failures]
