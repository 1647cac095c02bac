"""
Control loops
Runs the capacity scaler, the service scalers and pending-task retries as
independent periodic asyncio tasks, each on its own cadence.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ecs_scheduler.capacity import CapacityScaler
from ecs_scheduler.config.settings import get_settings
from ecs_scheduler.deployment import DeploymentController
from ecs_scheduler.registry import ClusterRegistry
from ecs_scheduler.scheduler import ServiceScheduler
from ecs_scheduler.service_scaler import ServiceScaler

logger = logging.getLogger(__name__)


class PeriodicLoop:
    """Calls a reconcile function every interval until stopped."""

    def __init__(self, name: str, interval: float, step: Callable[[], Any]):
        self.name = name
        self.interval = interval
        self.step = step
        self.running = False
        self.iterations = 0
        self.errors = 0
        self.last_result: Any = None
        self.last_run: Optional[datetime] = None

    async def run(self, duration_seconds: Optional[float] = None, max_iterations: Optional[int] = None):
        """Run until stop(), the duration elapses, or max_iterations is reached."""
        self.running = True
        loop = asyncio.get_running_loop()
        started = loop.time()
        logger.info(f"🔄 Starting {self.name} loop (every {self.interval}s)")

        try:
            while self.running:
                self.iterations += 1
                self.last_run = datetime.now()
                try:
                    # Steps block on boto3 calls and registry locks; keep them off the event loop
                    self.last_result = await asyncio.to_thread(self.step)
                except Exception as e:
                    # Next cycle reconciles from fresh state
                    self.errors += 1
                    logger.error(f"❌ {self.name} iteration {self.iterations} failed: {e}")

                if max_iterations is not None and self.iterations >= max_iterations:
                    break
                if duration_seconds is not None and loop.time() - started >= duration_seconds:
                    break
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.info(f"🛑 {self.name} loop cancelled")
            raise
        finally:
            self.running = False
            logger.info(f"{self.name} loop stopped after {self.iterations} iteration(s), {self.errors} error(s)")

    def stop(self):
        self.running = False

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval": self.interval,
            "running": self.running,
            "iterations": self.iterations,
            "errors": self.errors,
            "last_run": self.last_run.isoformat() if self.last_run else None,
        }


class ControlPlane:
    """Wires the registry, scheduler, scalers and deployment controller into running loops."""

    def __init__(self, registry: ClusterRegistry, scheduler: ServiceScheduler,
                 capacity_scaler: Optional[CapacityScaler] = None,
                 deployments: Optional[DeploymentController] = None):
        self.settings = get_settings()
        self.registry = registry
        self.scheduler = scheduler
        self.capacity_scaler = capacity_scaler
        self.deployments = deployments
        self.service_scalers: Dict[str, ServiceScaler] = {}
        self.loops: List[PeriodicLoop] = []

    def add_service_scaler(self, service_name: str, scaler: ServiceScaler) -> None:
        self.scheduler.get_service(service_name)
        # evaluate() reconciles the service through this scheduler
        scaler.scheduler = self.scheduler
        self.service_scalers[service_name] = scaler

    def scale_services(self) -> Dict[str, int]:
        """One service-scaling cycle over every service."""
        results = {}
        for name, service in list(self.scheduler.services.items()):
            if self.deployments is not None and name in self.deployments.in_progress:
                logger.info(f"Skipping {name}: deployment in progress")
                continue
            scaler = self.service_scalers.get(name)
            if scaler is not None:
                results[name] = scaler.evaluate(service)
            else:
                self.scheduler.reconcile_service(service)
                results[name] = service.desired_count
        return results

    def retry_pending(self) -> int:
        """One pending-task cycle: retry placements, then forget STOPPED tasks."""
        placed = self.scheduler.retry_pending()
        purged = self.registry.purge_stopped_tasks()
        if purged:
            logger.debug(f"Purged {purged} stopped task(s)")
        return placed

    def build_loops(self) -> List[PeriodicLoop]:
        loops = [
            PeriodicLoop("services", self.settings.service_reconcile_interval, self.scale_services),
            PeriodicLoop("pending", self.settings.pending_retry_interval, self.retry_pending),
        ]
        if self.capacity_scaler is not None:
            loops.insert(0, PeriodicLoop("capacity", self.settings.capacity_reconcile_interval,
                                         self.capacity_scaler.run_cycle))
        return loops

    async def run(self, duration_seconds: Optional[float] = None):
        """Run every loop concurrently until stop() or the duration elapses."""
        self.loops = self.build_loops()
        async with asyncio.TaskGroup() as tg:
            for loop in self.loops:
                tg.create_task(loop.run(duration_seconds))

    def stop(self):
        for loop in self.loops:
            loop.stop()
        if self.deployments is not None:
            self.deployments.abort()

    def status(self) -> Dict[str, Any]:
        return {
            "loops": [loop.status() for loop in self.loops],
            "instances": len(self.registry.list_instances()),
            "services": {name: s.desired_count for name, s in self.scheduler.services.items()},
            "pending_tasks": len(self.registry.pending_tasks()),
        }
