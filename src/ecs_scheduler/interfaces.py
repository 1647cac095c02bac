"""
Collaborator interfaces consumed by the scheduler.

Implementations live in ecs_scheduler.simulation (in-memory) and
ecs_scheduler.aws (boto3).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from ecs_scheduler.models import MetricType


@dataclass
class GroupInstance:
    """An instance as reported by the instance group."""
    instance_id: str
    availability_zone: str
    instance_type: str
    lifecycle_state: str
    protected_from_scale_in: bool = False
    launch_time: Optional[datetime] = None


@dataclass
class GroupCapacity:
    """Size settings of the instance group."""
    desired_capacity: int
    min_size: int
    max_size: int


class InstanceGroupProvider(ABC):
    """Auto Scaling group (or equivalent) backing a capacity provider."""

    @abstractmethod
    def list_instances(self) -> List[GroupInstance]:
        pass

    @abstractmethod
    def describe(self) -> GroupCapacity:
        pass

    @abstractmethod
    def scale_to(self, desired_capacity: int) -> None:
        pass

    @abstractmethod
    def protect_from_scale_in(self, instance_id: str, protect: bool) -> None:
        pass

    @abstractmethod
    def terminate_instance(self, instance_id: str) -> None:
        """Terminate one instance and decrement desired capacity."""
        pass


class MetricsSource(ABC):
    """Service utilization metrics."""

    @abstractmethod
    def get_utilization(self, service_id: str, metric_type: MetricType) -> Optional[float]:
        """Latest average utilization in percent, or None without datapoints."""
        pass


class HealthChecker(ABC):
    @abstractmethod
    def is_healthy(self, task_id: str) -> bool:
        pass


class LoadBalancerRegistrar(ABC):
    @abstractmethod
    def register_target(self, instance_id: str, port: int) -> None:
        pass

    @abstractmethod
    def deregister_target(self, instance_id: str, port: Optional[int] = None) -> None:
        pass
