"""
Capacity Scaler
Managed scaling for a capacity provider: keeps the number of in-service instances
at the level where the target utilization holds, including room for the pending
task backlog, and protects busy instances from scale-in.

    M  = instances needed for the running tasks and the pending backlog
    N' = ceil(M * 100 / target_capacity), clamped to the group's [min, max]

The delta N' - N is bounded to [minimum_scaling_step_size, maximum_scaling_step_size]
per cycle.
"""
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional, Tuple

from ecs_scheduler.config.settings import get_settings
from ecs_scheduler.interfaces import GroupCapacity, InstanceGroupProvider
from ecs_scheduler.models import (
    CapacityProvider,
    Instance,
    InstanceStatus,
    ScalingAction,
    ScalingActionType,
    ScalingEvent,
)
from ecs_scheduler.registry import ClusterRegistry

logger = logging.getLogger(__name__)


@dataclass
class ClusterUtilization:
    """What the capacity scaler needs to know about the cluster in one cycle."""
    instances: List[Instance]
    active_tasks: Dict[str, int]
    pending: List[Tuple[int, int]]  # (cpu, memory) of tasks waiting for an instance
    group: GroupCapacity
    taken_at: datetime = field(default_factory=datetime.now)

    @property
    def in_service(self) -> List[Instance]:
        return [i for i in self.instances if i.status == InstanceStatus.IN_SERVICE]

    @classmethod
    def from_registry(cls, registry: ClusterRegistry, group: InstanceGroupProvider) -> "ClusterUtilization":
        snapshot = registry.snapshot()
        return cls(
            instances=snapshot.instances,
            active_tasks={i.instance_id: snapshot.active_tasks_on(i.instance_id) for i in snapshot.instances},
            pending=[(t.cpu, t.memory) for t in snapshot.pending_tasks()],
            group=group.describe(),
            taken_at=snapshot.taken_at,
        )


class CapacityScaler:
    """Reconciles instance count against utilization for one capacity provider."""

    def __init__(self, provider: CapacityProvider, registry: ClusterRegistry,
                 instance_group: InstanceGroupProvider, scheduler=None):
        self.provider = provider
        self.registry = registry
        self.instance_group = instance_group
        self.scheduler = scheduler
        self.scaling_events: Deque[ScalingEvent] = deque(maxlen=get_settings().event_history_size)

    # ------------------------------------------------------------------
    # Decision (pure)
    # ------------------------------------------------------------------

    def reconcile(self, utilization: ClusterUtilization, now: Optional[datetime] = None) -> ScalingAction:
        """Decide on ScaleOut(n), ScaleIn(n) or NoAction for this cycle."""
        now = now or utilization.taken_at
        in_service = utilization.in_service
        current = len(in_service)
        group = utilization.group

        used, extra = self.instances_required(utilization)
        required = used + extra
        target = math.ceil(required * 100 / self.provider.target_capacity)
        target = max(group.min_size, min(group.max_size, target))

        logger.info(
            f"💭 Capacity analysis: in-service={current} required={required} "
            f"(used={used}, new={extra}) pending={len(utilization.pending)} target={target} "
            f"group={group.desired_capacity} [{group.min_size}-{group.max_size}]"
        )

        delta = target - current
        if delta > 0:
            if group.desired_capacity > current:
                return ScalingAction.no_action(
                    f"Scale-out in progress ({group.desired_capacity} desired, {current} in service)", target)
            count = max(self.provider.minimum_scaling_step_size,
                        min(delta, self.provider.maximum_scaling_step_size))
            count = min(count, group.max_size - current)
            if count <= 0:
                return ScalingAction.no_action(f"Instance group at max size {group.max_size}", target)
            return ScalingAction(
                ScalingActionType.SCALE_OUT, count, current + count, [],
                f"{required} instance(s) required at {self.provider.target_capacity}% target, {current} in service",
            )

        if delta < 0:
            candidates = self.scale_in_candidates(utilization, now)
            count = max(self.provider.minimum_scaling_step_size,
                        min(-delta, self.provider.maximum_scaling_step_size))
            count = min(count, len(candidates), current - group.min_size)
            if count <= 0:
                return ScalingAction.no_action(
                    f"{-delta} surplus instance(s) but none eligible for scale-in", target)
            victims = [i.instance_id for i in candidates[:count]]
            return ScalingAction(
                ScalingActionType.SCALE_IN, count, current - count, victims,
                f"{required} instance(s) required at {self.provider.target_capacity}% target, {current} in service",
            )

        return ScalingAction.no_action(f"Capacity matches target ({current} instance(s))", target)

    def instances_required(self, utilization: ClusterUtilization) -> Tuple[int, int]:
        """Return (in-service instances in use, new instances needed) for tasks and backlog.

        The backlog is first fitted into free capacity of in-service instances, largest
        task first, then into fresh instances of the provider's instance shape.
        """
        in_service = utilization.in_service
        free = {i.instance_id: [i.available_cpu, i.available_memory] for i in in_service}
        used = {i.instance_id for i in in_service if utilization.active_tasks.get(i.instance_id, 0) > 0}
        new_bins: List[List[int]] = []
        shape = (self.provider.instance_cpu, self.provider.instance_memory)

        for cpu, memory in sorted(utilization.pending, key=lambda r: (r[1], r[0]), reverse=True):
            if cpu > shape[0] or memory > shape[1]:
                logger.warning(f"Pending task (cpu={cpu}, memory={memory}) exceeds the instance shape {shape}")
                continue
            placed = False
            for instance_id in sorted(free):
                room = free[instance_id]
                if room[0] >= cpu and room[1] >= memory:
                    room[0] -= cpu
                    room[1] -= memory
                    used.add(instance_id)
                    placed = True
                    break
            if placed:
                continue
            for room in new_bins:
                if room[0] >= cpu and room[1] >= memory:
                    room[0] -= cpu
                    room[1] -= memory
                    placed = True
                    break
            if not placed:
                new_bins.append([shape[0] - cpu, shape[1] - memory])

        return len(used), len(new_bins)

    def scale_in_candidates(self, utilization: ClusterUtilization, now: datetime) -> List[Instance]:
        """Instances that may be removed, fewest tasks first, then oldest launch."""
        warmup = timedelta(seconds=self.provider.instance_warmup_period)
        candidates = []
        for instance in utilization.in_service:
            active = utilization.active_tasks.get(instance.instance_id, 0)
            protected = instance.protected_from_scale_in or self.provider.managed_termination_protection
            if active > 0 and protected:
                continue
            if now - instance.launch_time < warmup:
                continue
            candidates.append(instance)
        return sorted(candidates, key=lambda i: (
            utilization.active_tasks.get(i.instance_id, 0), i.launch_time, i.instance_id))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def apply(self, action: ScalingAction, current: Optional[int] = None) -> ScalingEvent:
        """Hand a decision to the instance group. Fire-and-forget: the next cycle reconciles."""
        if current is None:
            current = len(self.registry.list_instances(InstanceStatus.IN_SERVICE))
        after = current

        if action.action == ScalingActionType.SCALE_OUT:
            self.instance_group.scale_to(action.target_capacity)
            after = action.target_capacity
            logger.info(f"📈 SCALE OUT: {current} → {after} instances | Reason: {action.reason}")

        elif action.action == ScalingActionType.SCALE_IN:
            for instance_id in action.instance_ids:
                self.registry.set_instance_status(instance_id, InstanceStatus.DRAINING)
                if self.scheduler is not None:
                    self.scheduler.stop_tasks(
                        self.registry.tasks_on_instance(instance_id), reason="Instance draining")
                self.instance_group.protect_from_scale_in(instance_id, False)
                self.instance_group.terminate_instance(instance_id)
            after = current - len(action.instance_ids)
            logger.info(
                f"📉 SCALE IN: {current} → {after} instances "
                f"({', '.join(action.instance_ids)}) | Reason: {action.reason}")

        else:
            logger.info(f"⚖️  NO SCALING: {action.reason}")

        event = ScalingEvent(
            timestamp=datetime.now(),
            action=action.action.value,
            reason=action.reason,
            scope="cluster",
            count_before=current,
            count_after=after,
        )
        self.scaling_events.append(event)
        return event

    def sync_instances(self) -> None:
        """Register group instances the registry doesn't know yet; retire vanished ones."""
        group_instances = {i.instance_id: i for i in self.instance_group.list_instances()}
        for group_instance in group_instances.values():
            if group_instance.lifecycle_state != "InService":
                continue
            if self.registry.get_instance(group_instance.instance_id) is None:
                self.registry.register_instance(Instance(
                    instance_id=group_instance.instance_id,
                    availability_zone=group_instance.availability_zone,
                    instance_type=group_instance.instance_type,
                    total_cpu=self.provider.instance_cpu,
                    total_memory=self.provider.instance_memory,
                    protected_from_scale_in=group_instance.protected_from_scale_in,
                    launch_time=group_instance.launch_time or datetime.now(),
                ))
        for instance in self.registry.list_instances():
            if instance.instance_id not in group_instances and instance.status == InstanceStatus.IN_SERVICE:
                self.registry.set_instance_status(instance.instance_id, InstanceStatus.TERMINATING)

    def complete_scale_in(self) -> List[str]:
        """Deregister draining/terminating instances once their tasks are gone."""
        removed = []
        for instance in self.registry.list_instances():
            if instance.status == InstanceStatus.IN_SERVICE:
                continue
            tasks = self.registry.tasks_on_instance(instance.instance_id)
            if tasks and self.scheduler is not None:
                self.scheduler.stop_tasks(tasks, reason="Instance draining")
                tasks = self.registry.tasks_on_instance(instance.instance_id)
            if not tasks:
                self.registry.deregister_instance(instance.instance_id)
                removed.append(instance.instance_id)
        return removed

    def sync_protection(self) -> int:
        """Protect busy instances and unprotect idle ones; returns how many changed."""
        if not self.provider.managed_termination_protection:
            return 0
        changed = 0
        for instance in self.registry.list_instances(InstanceStatus.IN_SERVICE):
            busy = self.registry.active_task_count(instance.instance_id) > 0
            if instance.protected_from_scale_in != busy:
                self.instance_group.protect_from_scale_in(instance.instance_id, busy)
                self.registry.set_scale_in_protection(instance.instance_id, busy)
                changed += 1
        return changed

    def run_cycle(self, now: Optional[datetime] = None) -> ScalingAction:
        """One full reconciliation: sync, decide, act."""
        self.sync_instances()
        self.complete_scale_in()
        self.sync_protection()
        utilization = ClusterUtilization.from_registry(self.registry, self.instance_group)
        action = self.reconcile(utilization, now)
        self.apply(action, current=len(utilization.in_service))
        return action

    def get_scaling_status(self) -> Dict:
        group = self.instance_group.describe()
        return {
            "status": "active",
            "capacity_provider": self.provider.name,
            "current_capacity": len(self.registry.list_instances(InstanceStatus.IN_SERVICE)),
            "desired_capacity": group.desired_capacity,
            "min_capacity": group.min_size,
            "max_capacity": group.max_size,
            "target_utilization": self.provider.target_capacity,
            "recent_events": [e.to_dict() for e in list(self.scaling_events)[-10:]],
        }
