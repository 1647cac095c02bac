"""
Deployment Controller
Rolls a service onto a new task definition in batches bounded by the deployment
policy:

    healthy running tasks   >= floor(desired * minimum_healthy_percent / 100)
    tasks in flight (total) <= ceil(desired * maximum_percent / 100)

Each batch stops what the healthy floor allows, starts what the in-flight ceiling
allows, and waits for the health-check collaborator to confirm the replacements
before moving on. Failures surface partial progress; nothing is rolled back.
"""
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, Iterator, List, Optional, Set, Tuple

from ecs_scheduler.config.settings import get_settings
from ecs_scheduler.errors import DeploymentFailure, FailureReason
from ecs_scheduler.interfaces import HealthChecker
from ecs_scheduler.models import Service, Task, TaskDefinition, TaskState
from ecs_scheduler.scheduler import ServiceScheduler

logger = logging.getLogger(__name__)


class DeploymentState(str, Enum):
    PLANNING = "PLANNING"
    REPLACING = "REPLACING"
    STEADY = "STEADY"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


TERMINAL_STATES = (DeploymentState.STEADY, DeploymentState.FAILED, DeploymentState.ABORTED)


@dataclass
class DeploymentEvent:
    """Progress report emitted by a rollout."""
    state: DeploymentState
    service_name: str
    task_definition: str
    message: str
    batch: int = 0
    progress: Dict[str, int] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self):
        return {
            'state': self.state.value,
            'service_name': self.service_name,
            'task_definition': self.task_definition,
            'message': self.message,
            'batch': self.batch,
            'progress': dict(self.progress),
            'timestamp': self.timestamp.isoformat(),
        }


class DeploymentController:
    """Replaces a service's tasks with tasks of a new task definition."""

    def __init__(self, scheduler: ServiceScheduler, health_checker: HealthChecker,
                 health_check_timeout: Optional[float] = None, poll_interval: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep):
        settings = get_settings()
        self.scheduler = scheduler
        self.health_checker = health_checker
        self.health_check_timeout = (health_check_timeout if health_check_timeout is not None
                                     else settings.health_check_timeout)
        self.poll_interval = poll_interval if poll_interval is not None else settings.health_check_poll_interval
        self.clock = clock
        self.sleep = sleep
        self.events: Deque[DeploymentEvent] = deque(maxlen=settings.event_history_size)
        self.in_progress: Set[str] = set()
        self._abort = threading.Event()

    def abort(self) -> None:
        """Stop issuing batches; tasks already placed keep their current state."""
        logger.warning("🛑 Deployment abort requested")
        self._abort.set()

    @staticmethod
    def bounds(service: Service) -> Tuple[int, int]:
        """(minimum healthy running tasks, maximum tasks in flight) for a service."""
        policy = service.deployment_policy
        desired = service.desired_count
        min_healthy = math.floor(desired * policy.minimum_healthy_percent / 100)
        max_total = math.ceil(desired * policy.maximum_percent / 100)
        return min_healthy, max_total

    def roll_out(self, service: Service, new_task_definition: TaskDefinition) -> Iterator[DeploymentEvent]:
        """Replace the service's tasks, yielding a DeploymentEvent at each step.

        Raises:
            ValueError: the deployment policy leaves no room to replace any task
            DeploymentFailure: health checks or placement never converged (after a FAILED event)
        """
        min_healthy, max_total = self.bounds(service)
        desired = service.desired_count
        if desired > 0 and min_healthy >= desired and max_total <= desired:
            raise ValueError(
                f"Deployment policy {service.deployment_policy} leaves no room to replace tasks of {service.name}"
            )

        self._abort.clear()
        self.in_progress.add(service.name)
        previous = service.task_definition
        service.task_definition = new_task_definition
        healthy_new: Set[str] = set()
        batch = 0
        stalled_since: Optional[float] = None

        try:
            yield self._event(DeploymentState.PLANNING, service, new_task_definition, batch, healthy_new,
                              f"{previous.name} → {new_task_definition.name}: desired={desired} "
                              f"min_healthy={min_healthy} max_total={max_total}")

            while True:
                if self._abort.is_set():
                    yield self._event(DeploymentState.ABORTED, service, new_task_definition, batch, healthy_new,
                                      "Deployment aborted, remaining tasks left as they are")
                    return

                old, new = self._split(service, new_task_definition)
                healthy_new &= {t.task_id for t in new}
                old_running = [t for t in old if t.state == TaskState.RUNNING]

                if not old and len(healthy_new) >= desired:
                    yield self._event(DeploymentState.STEADY, service, new_task_definition, batch, healthy_new,
                                      f"All {desired} task(s) running {new_task_definition.name}")
                    return

                batch += 1
                healthy = len(old_running) + len(healthy_new)

                # Old tasks that never got placed are not serving; stop them first
                to_stop = [t for t in old if t.state != TaskState.RUNNING]
                to_stop += old_running[:max(0, healthy - min_healthy)]
                self.scheduler.stop_tasks(to_stop, reason=f"Deployment to {new_task_definition.name}")

                placed_before = {t.task_id for t in new if t.instance_id is not None}
                for task in new:
                    if task.instance_id is None and task.state == TaskState.PENDING:
                        self.scheduler.start_task(service, task)

                in_flight = len(old) - len(to_stop) + len(new)
                start_count = min(desired - len(new), max(0, max_total - in_flight))
                launched = self.scheduler.launch_tasks(service, start_count, new_task_definition) if start_count > 0 else []

                rejected = [t for t in launched if t.state == TaskState.STOPPED]
                if rejected:
                    yield from self._fail(service, new_task_definition, batch, healthy_new,
                                          FailureReason.CONSTRAINT_VIOLATION,
                                          rejected[0].stopped_reason or "Task can never be placed")

                _, new = self._split(service, new_task_definition)
                placed_now = {t.task_id for t in new if t.instance_id is not None}

                yield self._event(DeploymentState.REPLACING, service, new_task_definition, batch, healthy_new,
                                  f"Batch {batch}: stopped {len(to_stop)}, started {len(placed_now - placed_before)}, "
                                  f"pending {len([t for t in new if t.instance_id is None])}")

                waiting = [t for t in new if t.state == TaskState.RUNNING and t.task_id not in healthy_new]
                newly_healthy: Set[str] = set()
                if waiting:
                    newly_healthy, timed_out = self._wait_for_health(waiting)
                    healthy_new |= newly_healthy
                    if timed_out:
                        yield from self._fail(service, new_task_definition, batch, healthy_new,
                                              FailureReason.HEALTH_CHECK_TIMEOUT,
                                              f"{len(waiting) - len(newly_healthy)} task(s) not healthy "
                                              f"after {self.health_check_timeout}s")

                progressed = bool(to_stop) or bool(placed_now - placed_before) or bool(newly_healthy)
                if progressed:
                    stalled_since = None
                    continue

                now = self.clock()
                if stalled_since is None:
                    stalled_since = now
                elif now - stalled_since >= self.health_check_timeout:
                    yield from self._fail(service, new_task_definition, batch, healthy_new,
                                          FailureReason.INSUFFICIENT_CAPACITY,
                                          f"No replacement could be placed for {self.health_check_timeout}s")
                self.sleep(self.poll_interval)
        finally:
            self.in_progress.discard(service.name)

    def run(self, service: Service, new_task_definition: TaskDefinition) -> DeploymentEvent:
        """Drive a rollout to completion and return its final event."""
        final = None
        for event in self.roll_out(service, new_task_definition):
            final = event
        return final

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _split(self, service: Service, new_task_definition: TaskDefinition) -> Tuple[List[Task], List[Task]]:
        active = self.scheduler.active_tasks(service.name)
        old = [t for t in active if t.task_definition != new_task_definition]
        new = [t for t in active if t.task_definition == new_task_definition]
        return old, new

    def _wait_for_health(self, tasks: List[Task]) -> Tuple[Set[str], bool]:
        """Poll health checks until every task is healthy, the timeout passes, or an abort."""
        started = self.clock()
        remaining = {t.task_id for t in tasks}
        healthy: Set[str] = set()
        while remaining:
            for task_id in sorted(remaining):
                if self.health_checker.is_healthy(task_id):
                    healthy.add(task_id)
            remaining -= healthy
            if not remaining or self._abort.is_set():
                break
            if self.clock() - started >= self.health_check_timeout:
                return healthy, True
            self.sleep(self.poll_interval)
        return healthy, False

    def _fail(self, service: Service, new_task_definition: TaskDefinition, batch: int,
              healthy_new: Set[str], reason: FailureReason, message: str) -> Iterator[DeploymentEvent]:
        event = self._event(DeploymentState.FAILED, service, new_task_definition, batch, healthy_new,
                            f"{reason.value}: {message}")
        logger.error(f"❌ Deployment of {service.name} failed: {reason.value}: {message}")
        yield event
        raise DeploymentFailure(reason, service.name, event.progress)

    def _event(self, state: DeploymentState, service: Service, new_task_definition: TaskDefinition,
               batch: int, healthy_new: Set[str], message: str) -> DeploymentEvent:
        old, new = self._split(service, new_task_definition)
        min_healthy, max_total = self.bounds(service)
        event = DeploymentEvent(
            state=state,
            service_name=service.name,
            task_definition=new_task_definition.name,
            message=message,
            batch=batch,
            progress={
                "desired": service.desired_count,
                "min_healthy": min_healthy,
                "max_total": max_total,
                "old_running": len([t for t in old if t.state == TaskState.RUNNING]),
                "new_running": len([t for t in new if t.state == TaskState.RUNNING]),
                "new_healthy": len(healthy_new),
                "pending": len([t for t in old + new if t.instance_id is None]),
            },
        )
        self.events.append(event)
        if state in TERMINAL_STATES:
            logger.info(f"🏁 {service.name} deployment {state.value}: {message}")
        else:
            logger.info(f"🚀 {service.name} deployment {state.value}: {message}")
        return event
