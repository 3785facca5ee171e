"""Errors raised inside the placement flow. None of them ever reach the simulation host."""


class PlacementError(Exception):
    """Base class for placement failures."""


class InfeasibleHost(PlacementError):
    """No machine in the fleet passes the feasibility checks for a task."""

    def __init__(self, task_id, reason="no feasible host"):
        super().__init__(f"Task {task_id}: {reason}")
        self.task_id = task_id
        self.reason = reason


class ProvisioningError(PlacementError):
    """The host rejected creating or attaching a VM."""


class StaleEventError(PlacementError):
    """A completion or migration event refers to an id the scheduler has no record of."""


class HostError(Exception):
    """Raised by a simulation host when it rejects a mutation request."""
