"""
In-memory collaborators
Stand-ins for the instance group, metrics, health checks and load balancer so the
scheduler can run locally (CLI simulator, local-dev mode, tests) without AWS.
"""
import itertools
import logging
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ecs_scheduler.interfaces import (
    GroupCapacity,
    GroupInstance,
    HealthChecker,
    InstanceGroupProvider,
    LoadBalancerRegistrar,
    MetricsSource,
)
from ecs_scheduler.models import Instance, InstanceStatus, MetricType
from ecs_scheduler.registry import ClusterRegistry

logger = logging.getLogger(__name__)


class InMemoryInstanceGroup(InstanceGroupProvider):
    """Auto Scaling group simulator that registers launched instances with the registry."""

    def __init__(self, registry: ClusterRegistry, zones: Sequence[str] = ("us-east-1a", "us-east-1b"),
                 instance_type: str = "t3.medium", instance_cpu: int = 2048, instance_memory: int = 3928,
                 min_size: int = 0, max_size: int = 10, clock=datetime.now):
        if not zones:
            raise ValueError("At least one availability zone is required")
        self.registry = registry
        self.zones = list(zones)
        self.instance_type = instance_type
        self.instance_cpu = instance_cpu
        self.instance_memory = instance_memory
        self.min_size = min_size
        self.max_size = max_size
        self.clock = clock
        self.desired_capacity = 0
        self.instances: Dict[str, GroupInstance] = {}
        self._ids = itertools.count(1)

    def list_instances(self) -> List[GroupInstance]:
        return [self.instances[i] for i in sorted(self.instances)]

    def describe(self) -> GroupCapacity:
        return GroupCapacity(self.desired_capacity, self.min_size, self.max_size)

    def scale_to(self, desired_capacity: int) -> None:
        desired = max(self.min_size, min(self.max_size, desired_capacity))
        if desired != desired_capacity:
            logger.warning(f"Desired capacity {desired_capacity} clamped to {desired} [{self.min_size}-{self.max_size}]")
        self.desired_capacity = desired

        while len(self.instances) < desired:
            self._launch()

        surplus = len(self.instances) - desired
        if surplus > 0:
            for instance_id in self._termination_order()[:surplus]:
                self.terminate_instance(instance_id, decrement=False)

    def protect_from_scale_in(self, instance_id: str, protect: bool) -> None:
        group_instance = self.instances.get(instance_id)
        if group_instance is None:
            raise KeyError(f"Instance {instance_id} is not in the group")
        group_instance.protected_from_scale_in = protect
        if self.registry.get_instance(instance_id) is not None:
            self.registry.set_scale_in_protection(instance_id, protect)

    def terminate_instance(self, instance_id: str, decrement: bool = True) -> None:
        self.instances.pop(instance_id, None)
        if decrement:
            self.desired_capacity = max(self.min_size, self.desired_capacity - 1)
        if self.registry.get_instance(instance_id) is None:
            return
        self.registry.set_instance_status(instance_id, InstanceStatus.TERMINATING)
        if self.registry.active_task_count(instance_id) == 0:
            self.registry.deregister_instance(instance_id)
        logger.info(f"📉 Terminated instance {instance_id}")

    def _launch(self) -> Instance:
        per_zone = Counter(i.availability_zone for i in self.instances.values())
        zone = min(self.zones, key=lambda z: (per_zone[z], z))
        instance_id = f"i-{next(self._ids):017x}"
        launched_at = self.clock()
        self.instances[instance_id] = GroupInstance(
            instance_id=instance_id,
            availability_zone=zone,
            instance_type=self.instance_type,
            lifecycle_state="InService",
            launch_time=launched_at,
        )
        logger.info(f"📈 Launched instance {instance_id} in {zone}")
        return self.registry.register_instance(Instance(
            instance_id=instance_id,
            availability_zone=zone,
            instance_type=self.instance_type,
            total_cpu=self.instance_cpu,
            total_memory=self.instance_memory,
            launch_time=launched_at,
        ))

    def _termination_order(self) -> List[str]:
        """Unprotected instances, draining ones first, then the fewest tasks, then oldest."""
        def rank(group_instance: GroupInstance):
            registered = self.registry.get_instance(group_instance.instance_id)
            draining = registered is not None and registered.status != InstanceStatus.IN_SERVICE
            return (
                not draining,
                self.registry.active_task_count(group_instance.instance_id) if registered else 0,
                group_instance.launch_time or datetime.min,
                group_instance.instance_id,
            )

        unprotected = [i for i in self.instances.values() if not i.protected_from_scale_in]
        return [i.instance_id for i in sorted(unprotected, key=rank)]


class StaticMetricsSource(MetricsSource):
    """Utilization values set by hand."""

    def __init__(self, values: Optional[Dict[Tuple[str, MetricType], float]] = None):
        self.values: Dict[Tuple[str, MetricType], float] = dict(values or {})

    def set_utilization(self, service_id: str, metric_type: MetricType, value: Optional[float]) -> None:
        if value is None:
            self.values.pop((service_id, metric_type), None)
        else:
            self.values[(service_id, metric_type)] = value

    def get_utilization(self, service_id: str, metric_type: MetricType) -> Optional[float]:
        return self.values.get((service_id, metric_type))


class StaticHealthChecker(HealthChecker):
    """Reports tasks healthy after a number of polls unless marked unhealthy."""

    def __init__(self, polls_until_healthy: int = 0, unhealthy: Optional[Set[str]] = None):
        self.polls_until_healthy = polls_until_healthy
        self.unhealthy: Set[str] = set(unhealthy or ())
        self.polls: Counter = Counter()
        self.always_unhealthy = False

    def is_healthy(self, task_id: str) -> bool:
        self.polls[task_id] += 1
        if self.always_unhealthy or task_id in self.unhealthy:
            return False
        return self.polls[task_id] > self.polls_until_healthy


class RecordingLoadBalancer(LoadBalancerRegistrar):
    """Keeps the registered (instance, port) targets in memory."""

    def __init__(self):
        self.targets: Set[Tuple[str, int]] = set()

    def register_target(self, instance_id: str, port: int) -> None:
        self.targets.add((instance_id, port))
        logger.debug(f"Registered target {instance_id}:{port}")

    def deregister_target(self, instance_id: str, port: Optional[int] = None) -> None:
        if port is None:
            self.targets = {t for t in self.targets if t[0] != instance_id}
        else:
            self.targets.discard((instance_id, port))
        logger.debug(f"Deregistered target {instance_id}:{port or '*'}")
