"""Coarse lifecycle state of a host, derived from remote signals.

The state is never stored: every query re-derives it from the instance
probe and, when the instance is absent, the disk probe.
"""
from enum import Enum
from typing import Any, Optional

from gce_machine.gcp.compute import is_not_found


class State(Enum):
    """Lifecycle states reported by get_state()."""

    NONE = "None"
    NOT_FOUND = "NotFound"
    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"


STARTING_STATUSES = frozenset({"PROVISIONING", "STAGING"})
RUNNING_STATUSES = frozenset({"RUNNING"})
STOPPED_STATUSES = frozenset({"STOPPING", "STOPPED", "TERMINATED"})


def infer_state(
    instance: Optional[Any],
    instance_error: Optional[BaseException] = None,
    disk: Optional[Any] = None,
) -> State:
    """Map probe results to a lifecycle state.

    Rules, first match wins:
        1. no instance and a not-found error  -> NOT_FOUND
        2. no instance and no disk            -> NONE
        3. no instance but a retained disk    -> STOPPED
        4. PROVISIONING / STAGING             -> STARTING
        5. RUNNING                            -> RUNNING
        6. STOPPING / STOPPED / TERMINATED    -> STOPPED
        7. any other status                   -> NONE

    Args:
        instance: Instance resource, or None if the probe found nothing
        instance_error: Error returned by the instance probe
        disk: Disk resource, or None; only consulted when the instance is
            absent without an explicit not-found error

    Returns:
        The derived State
    """
    if instance is None:
        if instance_error is not None and is_not_found(instance_error):
            return State.NOT_FOUND
        if disk is None:
            return State.NONE
        return State.STOPPED

    status = str(getattr(instance, "status", "") or "")
    if status in STARTING_STATUSES:
        return State.STARTING
    if status in RUNNING_STATUSES:
        return State.RUNNING
    if status in STOPPED_STATUSES:
        return State.STOPPED
    return State.NONE
