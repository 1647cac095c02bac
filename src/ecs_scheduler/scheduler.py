"""
Service scheduler
Turns each service's desired count into placed tasks, stops surplus tasks, and
retries PENDING tasks whenever the registry reports freed capacity.
"""
import logging
import threading
import uuid
from collections import Counter
from typing import Dict, Iterable, List, Optional

from ecs_scheduler.errors import ConstraintViolation, PlacementFailure
from ecs_scheduler.interfaces import LoadBalancerRegistrar
from ecs_scheduler.models import Service, Task, TaskDefinition, TaskState
from ecs_scheduler.placement import PlacementEngine
from ecs_scheduler.registry import ClusterRegistry

logger = logging.getLogger(__name__)


class ServiceScheduler:
    """Launches and stops tasks for registered services."""

    def __init__(self, registry: ClusterRegistry, placement: Optional[PlacementEngine] = None,
                 load_balancer: Optional[LoadBalancerRegistrar] = None):
        self.registry = registry
        self.placement = placement or PlacementEngine(registry)
        self.load_balancer = load_balancer
        self.services: Dict[str, Service] = {}
        self._placement_lock = threading.RLock()
        self._retry_guard = threading.Lock()
        registry.add_listener(self._on_registry_change)

    def register_service(self, service: Service) -> Service:
        self.services[service.name] = service
        logger.info(f"Registered service {service.name} ({service.task_definition.name}, desired={service.desired_count})")
        return service

    def get_service(self, name: str) -> Service:
        service = self.services.get(name)
        if service is None:
            raise KeyError(f"Unknown service {name}")
        return service

    def active_tasks(self, service_name: str) -> List[Task]:
        return [t for t in self.registry.list_tasks(service_name=service_name) if t.is_active]

    # ------------------------------------------------------------------
    # Launch / stop
    # ------------------------------------------------------------------

    def launch_tasks(self, service: Service, count: int,
                     task_definition: Optional[TaskDefinition] = None) -> List[Task]:
        """Create count PENDING tasks and try to place each of them."""
        definition = task_definition or service.task_definition
        launched = []
        for _ in range(count):
            task = self.registry.add_task(Task(
                task_id=uuid.uuid4().hex,
                service_name=service.name,
                task_definition=definition,
            ))
            self.start_task(service, task)
            launched.append(task)
        return launched

    def start_task(self, service: Service, task: Task) -> bool:
        """Place a PENDING task and mark it RUNNING. Returns False if it stays PENDING."""
        # Control loops run on worker threads; a task must only be placed once
        with self._placement_lock:
            if task.state != TaskState.PENDING or task.instance_id is not None:
                return False
            return self._start_task(service, task)

    def _start_task(self, service: Service, task: Task) -> bool:
        try:
            instance = self.placement.place(
                task,
                strategies=service.placement_strategies,
                constraints=service.placement_constraints,
            )
        except ConstraintViolation as e:
            logger.error(f"❌ Task {task.task_id} can never be placed: {e}")
            self.registry.set_task_state(task.task_id, TaskState.STOPPED, reason=str(e))
            return False
        except PlacementFailure as e:
            logger.warning(f"⏳ Task {task.task_id} remains PENDING: {e}")
            return False

        try:
            task.host_port = self.registry.allocate_port(instance.instance_id)
        except RuntimeError as e:
            self._unreserve(task)
            logger.warning(f"⏳ Task {task.task_id} remains PENDING: {e}")
            return False
        except Exception:
            self._unreserve(task)
            raise

        self.registry.set_task_state(task.task_id, TaskState.RUNNING)
        if self.load_balancer is not None:
            self.load_balancer.register_target(instance.instance_id, task.host_port)
        return True

    def _unreserve(self, task: Task) -> None:
        """Hand back the capacity reserved by placement for a task that could not start."""
        instance_id = task.instance_id
        task.instance_id = None
        self.registry.release(instance_id, task.cpu, task.memory)

    def stop_tasks(self, tasks: Iterable[Task], reason: str = "Scaling activity") -> List[Task]:
        """Stop tasks, deregister their targets and hand their resources back."""
        stopped = []
        for task in tasks:
            if task.state == TaskState.STOPPED:
                continue
            self.registry.set_task_state(task.task_id, TaskState.STOPPING, reason=reason)
            if task.instance_id is not None:
                if self.load_balancer is not None and task.host_port is not None:
                    self.load_balancer.deregister_target(task.instance_id, task.host_port)
                self.registry.free_port(task.instance_id, task.host_port)
                self.registry.set_task_state(task.task_id, TaskState.STOPPED)
                self.registry.release(task.instance_id, task.cpu, task.memory)
            else:
                self.registry.set_task_state(task.task_id, TaskState.STOPPED)
            logger.info(f"🛑 Stopped task {task.task_id} ({task.service_name}): {reason}")
            stopped.append(task)
        return stopped

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_service(self, service: Service) -> Dict[str, int]:
        """Launch or stop tasks so the active count matches the desired count."""
        active = self.active_tasks(service.name)
        delta = service.desired_count - len(active)
        launched = stopped = 0

        if delta > 0:
            launched = len(self.launch_tasks(service, delta))
        elif delta < 0:
            victims = self.choose_scale_in_victims(service, -delta)
            stopped = len(self.stop_tasks(victims, reason="Service scale-in"))

        if launched or stopped:
            logger.info(
                f"⚖️ Service {service.name}: desired={service.desired_count} "
                f"active={len(active)} launched={launched} stopped={stopped}"
            )
        return {"desired": service.desired_count, "active": len(active),
                "launched": launched, "stopped": stopped}

    def choose_scale_in_victims(self, service: Service, count: int) -> List[Task]:
        """Pick tasks to stop: unplaced ones first, then from the most loaded zone, newest first."""
        active = self.active_tasks(service.name)
        victims = [t for t in active if t.instance_id is None][:count]
        placed = [t for t in active if t.instance_id is not None]

        zone_of = {}
        for task in placed:
            instance = self.registry.get_instance(task.instance_id)
            zone_of[task.task_id] = instance.availability_zone if instance else ""

        while len(victims) < count and placed:
            per_zone = Counter(zone_of[t.task_id] for t in placed)
            busiest = max(sorted(per_zone), key=lambda zone: per_zone[zone])
            in_zone = [t for t in placed if zone_of[t.task_id] == busiest]
            newest = max(in_zone, key=lambda t: (t.created_at, t.task_id))
            victims.append(newest)
            placed.remove(newest)
        return victims

    def retry_pending(self) -> int:
        """Re-attempt placement of PENDING tasks; returns how many were placed."""
        # Placement inside a retry may itself release capacity; one retry pass at a time
        if not self._retry_guard.acquire(blocking=False):
            return 0
        placed = 0
        try:
            for task in self.registry.pending_tasks():
                service = self.services.get(task.service_name)
                if service is None:
                    continue
                if self.start_task(service, task):
                    placed += 1
        finally:
            self._retry_guard.release()
        if placed:
            logger.info(f"🔁 Placed {placed} previously pending task(s)")
        return placed

    def _on_registry_change(self, reason: str) -> None:
        if reason not in ("instance_registered", "instance_in_service", "capacity_released"):
            return
        if self.registry.pending_tasks():
            self.retry_pending()
