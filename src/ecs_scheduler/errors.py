"""Scheduler exceptions."""
from enum import Enum
from typing import Any, Dict, Optional


class FailureReason(str, Enum):
    INSUFFICIENT_CAPACITY = "InsufficientCapacity"
    CONSTRAINT_VIOLATION = "ConstraintViolation"
    HEALTH_CHECK_TIMEOUT = "HealthCheckTimeout"


class SchedulerError(Exception):
    """Base class for scheduler errors"""
    pass


class PlacementFailure(SchedulerError):
    """No candidate instance satisfies the task's constraints and resources.

    The task stays PENDING and is retried on the next registry change.
    """

    def __init__(self, reason: FailureReason, task_id: Optional[str] = None, detail: str = ""):
        self.reason = reason
        self.task_id = task_id
        self.detail = detail
        message = f"{reason.value} placing task {task_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ConstraintViolation(PlacementFailure):
    """No instance in the fleet can ever host the task. Not retried."""

    def __init__(self, task_id: Optional[str] = None, detail: str = ""):
        super().__init__(FailureReason.CONSTRAINT_VIOLATION, task_id, detail)


class DeploymentFailure(SchedulerError):
    """A rolling deployment could not reach a steady state."""

    def __init__(self, reason: FailureReason, service_name: str, progress: Optional[Dict[str, Any]] = None):
        self.reason = reason
        self.service_name = service_name
        self.progress = progress or {}
        super().__init__(f"Deployment of {service_name} failed: {reason.value} (progress: {self.progress})")


class RegistryContention(SchedulerError):
    """A per-instance registry lock could not be acquired in time."""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Timed out waiting for registry lock on instance {instance_id}")
