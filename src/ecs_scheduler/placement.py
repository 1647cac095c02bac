"""
Task Placement Engine
Selects a container instance for each task: constraints filter the candidates,
then the ordered placement strategies narrow them down pass by pass.
"""
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ecs_scheduler.errors import ConstraintViolation, FailureReason, PlacementFailure
from ecs_scheduler.models import (
    Instance,
    InstanceStatus,
    PlacementConstraint,
    PlacementConstraintType,
    PlacementStrategy,
    PlacementStrategyType,
    ResourceType,
    Task,
)
from ecs_scheduler.registry import ClusterRegistry

logger = logging.getLogger(__name__)


class PlacementEngine:
    """Places tasks on instances tracked by a ClusterRegistry."""

    def __init__(self, registry: ClusterRegistry):
        self.registry = registry

    def place(self, task: Task, candidates: Optional[Iterable[Instance]] = None,
              strategies: Sequence[PlacementStrategy] = (),
              constraints: Sequence[PlacementConstraint] = ()) -> Instance:
        """Choose an instance for a task and reserve its resources there.

        Raises:
            ConstraintViolation: no instance in the fleet could ever host the task
            PlacementFailure: no eligible instance has room for the task right now
        """
        if candidates is None:
            fleet = self.registry.list_instances()
        else:
            # Work on the registry's live records, not possibly stale copies
            fleet = [self.registry.get_instance(i.instance_id) or i for i in candidates]

        if fleet and not any(i.could_ever_fit(task.cpu, task.memory) for i in fleet):
            raise ConstraintViolation(
                task.task_id,
                f"requires cpu={task.cpu} memory={task.memory}, larger than any instance in the fleet",
            )

        in_service = [i for i in fleet if i.status == InstanceStatus.IN_SERVICE]
        eligible = self.apply_constraints(task, in_service, constraints)
        rejected: Set[str] = set()

        while True:
            feasible = [
                i for i in eligible
                if i.instance_id not in rejected and i.can_fit(task.cpu, task.memory)
            ]
            if not feasible:
                raise PlacementFailure(
                    FailureReason.INSUFFICIENT_CAPACITY,
                    task.task_id,
                    f"{len(in_service)} in-service instance(s), {len(eligible)} after constraints, "
                    f"none with cpu>={task.cpu} memory>={task.memory} available",
                )

            chosen = self.select(task, feasible, strategies)

            # Lost a race against a concurrent placement on the same instance
            if not self.registry.reserve(chosen.instance_id, task.cpu, task.memory):
                logger.debug(f"Reservation on {chosen.instance_id} refused, trying next candidate")
                rejected.add(chosen.instance_id)
                continue

            task.instance_id = chosen.instance_id
            logger.info(
                f"📦 Placed task {task.task_id} ({task.service_name}) on {chosen.instance_id} "
                f"[{chosen.availability_zone}]"
            )
            return self.registry.get_instance(chosen.instance_id) or chosen

    def place_all(self, tasks: Iterable[Task], candidates: Optional[Iterable[Instance]] = None,
                  strategies: Sequence[PlacementStrategy] = (),
                  constraints: Sequence[PlacementConstraint] = ()
                  ) -> Tuple[List[Tuple[Task, Instance]], List[PlacementFailure]]:
        """Place tasks in order; returns (placed, failures)."""
        pool = list(candidates) if candidates is not None else None
        placed = []
        failures = []
        for task in tasks:
            try:
                instance = self.place(task, pool, strategies, constraints)
                placed.append((task, instance))
            except PlacementFailure as e:
                logger.warning(f"Could not place task {task.task_id}: {e}")
                failures.append(e)
        return placed, failures

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------

    def apply_constraints(self, task: Task, instances: List[Instance],
                          constraints: Sequence[PlacementConstraint]) -> List[Instance]:
        remaining = list(instances)
        for constraint in constraints:
            if constraint.type == PlacementConstraintType.DISTINCT_INSTANCE:
                occupied = self._instances_hosting_service(task)
                remaining = [i for i in remaining if i.instance_id not in occupied]
            elif constraint.type == PlacementConstraintType.MEMBER_OF:
                remaining = [i for i in remaining if constraint.matches(i)]
            else:
                raise ValueError(f"Unknown placement constraint type: {constraint.type}")
        return remaining

    def _instances_hosting_service(self, task: Task) -> Set[str]:
        return {
            t.instance_id
            for t in self.registry.list_tasks(service_name=task.service_name)
            if t.is_active and t.instance_id and t.task_id != task.task_id
        }

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def select(self, task: Task, feasible: List[Instance],
               strategies: Sequence[PlacementStrategy]) -> Instance:
        """Narrow feasible instances through each strategy, then break ties by instance id."""
        remaining = list(feasible)
        for strategy in strategies:
            if len(remaining) <= 1:
                break
            if strategy.type == PlacementStrategyType.SPREAD:
                remaining = self._spread(task, remaining, strategy.field)
            elif strategy.type == PlacementStrategyType.BINPACK:
                remaining = self._binpack(remaining, ResourceType(strategy.field))
            else:
                raise ValueError(f"Unknown placement strategy type: {strategy.type}")
        return min(remaining, key=lambda i: i.instance_id)

    def _spread(self, task: Task, candidates: List[Instance], field: str) -> List[Instance]:
        """Keep the group (by attribute value) holding the fewest tasks of this service."""
        counts = self.service_task_counts(task.service_name, field)
        groups: Dict[str, List[Instance]] = defaultdict(list)
        for instance in candidates:
            groups[instance.attribute(field) or ""].append(instance)
        best = min(groups, key=lambda value: (counts.get(value, 0), value))
        return groups[best]

    @staticmethod
    def _binpack(candidates: List[Instance], resource: ResourceType) -> List[Instance]:
        """Keep the instances with the least remaining amount of the resource."""
        least = min(i.available(resource) for i in candidates)
        return [i for i in candidates if i.available(resource) == least]

    def service_task_counts(self, service_name: str, field: str) -> Dict[str, int]:
        """Active placed tasks of a service per attribute value."""
        counts: Dict[str, int] = defaultdict(int)
        for t in self.registry.list_tasks(service_name=service_name):
            if not t.is_active or not t.instance_id:
                continue
            instance = self.registry.get_instance(t.instance_id)
            if instance is not None:
                counts[instance.attribute(field) or ""] += 1
        return counts

