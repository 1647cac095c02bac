"""
Cluster Registry
Tracks registered container instances, their remaining resources and the tasks placed on them.

Every change to an instance's available resources goes through reserve()/release(),
which run inside that instance's lock. Locks are per instance, so placements on
different instances never wait for each other.
"""
import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ecs_scheduler.config.settings import get_settings
from ecs_scheduler.errors import RegistryContention
from ecs_scheduler.models import Instance, InstanceStatus, Task, TaskState, ACTIVE_TASK_STATES

logger = logging.getLogger(__name__)

RegistryListener = Callable[[str], None]


@dataclass
class RegistrySnapshot:
    """Point-in-time copy of the registry for side-effect free computations."""
    instances: List[Instance]
    tasks: List[Task]
    version: int
    taken_at: datetime

    def active_tasks_on(self, instance_id: str) -> int:
        return len([t for t in self.tasks if t.instance_id == instance_id and t.is_active])

    def pending_tasks(self) -> List[Task]:
        return [t for t in self.tasks if t.state == TaskState.PENDING and t.instance_id is None]


class ClusterRegistry:
    """Registered instances and tasks of one cluster."""

    def __init__(self, lock_timeout: Optional[float] = None, retry_attempts: Optional[int] = None,
                 retry_backoff: Optional[float] = None, port_range: Optional[Tuple[int, int]] = None):
        settings = get_settings()
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.registry_lock_timeout
        self.retry_attempts = retry_attempts or settings.registry_retry_attempts
        self.retry_backoff = retry_backoff if retry_backoff is not None else settings.registry_retry_backoff
        self.port_range = tuple(port_range or settings.ephemeral_port_range)

        self._instances: Dict[str, Instance] = {}
        self._instance_locks: Dict[str, threading.Lock] = {}
        self._tasks: Dict[str, Task] = {}
        self._index_lock = threading.RLock()
        self._listeners: List[RegistryListener] = []
        self.version = 0

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def register_instance(self, instance: Instance) -> Instance:
        """Register an instance (instance-group scale-out)."""
        with self._index_lock:
            if instance.instance_id in self._instances:
                raise ValueError(f"Instance {instance.instance_id} is already registered")
            self._instances[instance.instance_id] = instance
            self._instance_locks[instance.instance_id] = threading.Lock()
            self.version += 1
        logger.info(
            f"🖥️ Registered instance {instance.instance_id} ({instance.instance_type}, "
            f"{instance.availability_zone}) cpu={instance.total_cpu} memory={instance.total_memory}"
        )
        self._notify("instance_registered")
        return instance

    def deregister_instance(self, instance_id: str) -> Instance:
        """Remove an instance once scale-in has completed."""
        with self._locked(instance_id) as instance:
            active = self.active_task_count(instance_id)
            if active:
                raise ValueError(f"Instance {instance_id} still hosts {active} active task(s)")
            with self._index_lock:
                del self._instances[instance_id]
                del self._instance_locks[instance_id]
                self.version += 1
        logger.info(f"🗑️ Deregistered instance {instance_id}")
        self._notify("instance_deregistered")
        return instance

    def get_instance(self, instance_id: str) -> Optional[Instance]:
        return self._instances.get(instance_id)

    def list_instances(self, status: Optional[InstanceStatus] = None) -> List[Instance]:
        """List instances ordered by instance id, optionally filtered by status."""
        with self._index_lock:
            instances = list(self._instances.values())
        if status is not None:
            instances = [i for i in instances if i.status == status]
        return sorted(instances, key=lambda i: i.instance_id)

    def set_instance_status(self, instance_id: str, status: InstanceStatus) -> None:
        with self._locked(instance_id) as instance:
            previous = instance.status
            instance.status = status
        with self._index_lock:
            self.version += 1
        logger.info(f"Instance {instance_id}: {previous.value} → {status.value}")
        if status == InstanceStatus.IN_SERVICE:
            self._notify("instance_in_service")

    def set_scale_in_protection(self, instance_id: str, protected: bool) -> None:
        with self._locked(instance_id) as instance:
            instance.protected_from_scale_in = protected

    # ------------------------------------------------------------------
    # Capacity (single mutation point)
    # ------------------------------------------------------------------

    def reserve(self, instance_id: str, cpu: int, memory: int) -> bool:
        """Atomically check and decrement an instance's available resources.

        Returns False when the instance is gone, not in service, or lacks room.
        """
        try:
            with self._locked(instance_id) as instance:
                if instance.status != InstanceStatus.IN_SERVICE:
                    return False
                if not instance.can_fit(cpu, memory):
                    return False
                instance.available_cpu -= cpu
                instance.available_memory -= memory
        except KeyError:
            logger.warning(f"Reservation on unknown instance {instance_id} refused")
            return False
        with self._index_lock:
            self.version += 1
        return True

    def release(self, instance_id: str, cpu: int, memory: int) -> None:
        """Return reserved resources to an instance, capped at its totals."""
        if instance_id not in self._instances:
            logger.warning(f"Release on unknown instance {instance_id} ignored")
            return
        with self._locked(instance_id) as instance:
            instance.available_cpu = min(instance.total_cpu, instance.available_cpu + cpu)
            instance.available_memory = min(instance.total_memory, instance.available_memory + memory)
        with self._index_lock:
            self.version += 1
        self._notify("capacity_released")

    def allocate_port(self, instance_id: str) -> int:
        """Pick the lowest free host port in the ephemeral range (bridge mode)."""
        low, high = self.port_range
        with self._locked(instance_id) as instance:
            for port in range(low, high + 1):
                if port not in instance.allocated_ports:
                    instance.allocated_ports.add(port)
                    return port
        raise RuntimeError(f"No free host ports left on instance {instance_id}")

    def free_port(self, instance_id: str, port: Optional[int]) -> None:
        if port is None or instance_id not in self._instances:
            return
        with self._locked(instance_id) as instance:
            instance.allocated_ports.discard(port)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def add_task(self, task: Task) -> Task:
        with self._index_lock:
            if task.task_id in self._tasks:
                raise ValueError(f"Task {task.task_id} is already tracked")
            self._tasks[task.task_id] = task
            self.version += 1
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def set_task_state(self, task_id: str, state: TaskState, reason: Optional[str] = None) -> Task:
        with self._index_lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(f"Unknown task {task_id}")
            task.state = state
            if state == TaskState.RUNNING and task.started_at is None:
                task.started_at = datetime.now()
            if reason:
                task.stopped_reason = reason
            self.version += 1
        return task

    def list_tasks(self, service_name: Optional[str] = None,
                   states: Optional[Iterable[TaskState]] = None) -> List[Task]:
        with self._index_lock:
            tasks = list(self._tasks.values())
        if service_name is not None:
            tasks = [t for t in tasks if t.service_name == service_name]
        if states is not None:
            wanted = set(states)
            tasks = [t for t in tasks if t.state in wanted]
        return sorted(tasks, key=lambda t: (t.created_at, t.task_id))

    def tasks_on_instance(self, instance_id: str, active_only: bool = True) -> List[Task]:
        states = ACTIVE_TASK_STATES if active_only else None
        return [t for t in self.list_tasks(states=states) if t.instance_id == instance_id]

    def active_task_count(self, instance_id: str) -> int:
        return len(self.tasks_on_instance(instance_id))

    def pending_tasks(self) -> List[Task]:
        """Tasks waiting for an instance."""
        return [t for t in self.list_tasks(states=[TaskState.PENDING]) if t.instance_id is None]

    def purge_stopped_tasks(self) -> int:
        """Forget STOPPED tasks; returns how many were removed."""
        with self._index_lock:
            stopped = [tid for tid, t in self._tasks.items() if t.state == TaskState.STOPPED]
            for task_id in stopped:
                del self._tasks[task_id]
            if stopped:
                self.version += 1
        return len(stopped)

    # ------------------------------------------------------------------
    # Snapshots and change notification
    # ------------------------------------------------------------------

    def snapshot(self) -> RegistrySnapshot:
        with self._index_lock:
            return RegistrySnapshot(
                instances=copy.deepcopy(self.list_instances()),
                tasks=copy.deepcopy(self.list_tasks()),
                version=self.version,
                taken_at=datetime.now(),
            )

    def add_listener(self, listener: RegistryListener) -> None:
        """Call listener(reason) after changes that may free capacity."""
        self._listeners.append(listener)

    def _notify(self, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.error(f"Registry listener failed on {reason}: {e}")

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _require_instance(self, instance_id: str) -> Instance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise KeyError(f"Unknown instance {instance_id}")
        return instance

    @contextmanager
    def _locked(self, instance_id: str):
        """Hold an instance's lock, retrying contention with exponential backoff."""
        retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=1.0),
            retry=retry_if_exception_type(RegistryContention),
        )
        for attempt in retrying:
            with attempt:
                lock = self._acquire(instance_id)
        try:
            yield self._require_instance(instance_id)
        finally:
            lock.release()

    def _acquire(self, instance_id: str) -> threading.Lock:
        with self._index_lock:
            lock = self._instance_locks.get(instance_id)
        if lock is None:
            raise KeyError(f"Unknown instance {instance_id}")
        if not lock.acquire(timeout=self.lock_timeout):
            logger.debug(f"Registry lock contention on {instance_id}")
            raise RegistryContention(instance_id)
        return lock
