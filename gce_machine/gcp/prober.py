"""Read-only probes of the instance, disk and firewall rules.

Each probe returns what it found or the error it got, never both, so that
callers can tell "resource absent" apart from "query failed" before they
mutate anything. Nothing is cached between calls.
"""
import logging
from typing import Any, NamedTuple, Optional

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError

from gce_machine.gcp.compute import ComputeService, is_not_found

logger = logging.getLogger(__name__)


def disk_name_for(machine_name: str) -> str:
    """Boot disk name of a machine."""
    return f"{machine_name}-disk"


class Probe(NamedTuple):
    """Result of a single remote lookup."""

    resource: Optional[Any] = None
    error: Optional[BaseException] = None

    @property
    def exists(self) -> bool:
        return self.resource is not None

    @property
    def not_found(self) -> bool:
        return is_not_found(self.error)

    def raise_for_error(self) -> None:
        """Re-raise the probe error unless it is a not-found."""
        if self.error is not None and not self.not_found:
            raise self.error


class ResourceProber:
    """Looks up the remote resources belonging to one machine."""

    def __init__(self, compute: ComputeService, machine_name: str):
        self.compute = compute
        self.machine_name = machine_name

    @property
    def disk_name(self) -> str:
        return disk_name_for(self.machine_name)

    def instance(self) -> Probe:
        return self._probe("instance", self.machine_name, self.compute.get_instance)

    def disk(self) -> Probe:
        return self._probe("disk", self.disk_name, self.compute.get_disk)

    def firewall_rule(self, name: str) -> Probe:
        return self._probe("firewall rule", name, self.compute.get_firewall)

    def _probe(self, kind: str, name: str, getter) -> Probe:
        try:
            return Probe(resource=getter(name))
        except (GoogleAPIError, GoogleAuthError) as e:
            if is_not_found(e):
                logger.debug("%s %s not found", kind, name)
            else:
                logger.debug("failed to get %s %s: %s", kind, name, e)
            return Probe(error=e)
