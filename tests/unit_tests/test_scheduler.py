"""
Unit Tests for the service scheduler.
Tests desired-count reconciliation, task stops and pending retries.
"""

from collections import Counter

from ecs_scheduler.models import InstanceStatus, TaskState
from ecs_scheduler.registry import ClusterRegistry
from ecs_scheduler.scheduler import ServiceScheduler
from tests.fixtures.cluster_fixtures import make_instance, make_service


class TestReconcileService:
    """Test launching and stopping tasks toward the desired count"""

    def test_launches_running_tasks_with_ports_and_targets(self, registry, fleet, scheduler,
                                                           load_balancer, web_service):
        scheduler.register_service(web_service)
        result = scheduler.reconcile_service(web_service)

        assert result == {"desired": 2, "active": 0, "launched": 2, "stopped": 0}
        tasks = scheduler.active_tasks("web")
        assert all(t.state == TaskState.RUNNING for t in tasks)
        assert all(t.host_port is not None for t in tasks)
        assert load_balancer.targets == {(t.instance_id, t.host_port) for t in tasks}

    def test_reconcile_is_idempotent(self, fleet, scheduler, web_service):
        scheduler.register_service(web_service)
        scheduler.reconcile_service(web_service)
        assert scheduler.reconcile_service(web_service)["launched"] == 0

    def test_scale_in_stops_from_busiest_zone_and_releases_resources(self, registry, fleet, scheduler,
                                                                       load_balancer, web_service):
        web_service.desired_count = 3
        scheduler.register_service(web_service)
        scheduler.reconcile_service(web_service)

        web_service.desired_count = 2
        result = scheduler.reconcile_service(web_service)

        assert result["stopped"] == 1
        zones = Counter(
            registry.get_instance(t.instance_id).availability_zone for t in scheduler.active_tasks("web")
        )
        assert zones == {"us-east-1a": 1, "us-east-1b": 1}
        assert len(load_balancer.targets) == 2
        used_cpu = sum(i.total_cpu - i.available_cpu for i in registry.list_instances())
        assert used_cpu == 2 * 256

    def test_unplaced_tasks_are_stopped_first(self, registry, scheduler):
        registry.register_instance(make_instance(1, cpu=256, memory=512))
        service = scheduler.register_service(make_service(desired=2))
        scheduler.reconcile_service(service)
        assert len(registry.pending_tasks()) == 1

        service.desired_count = 1
        scheduler.reconcile_service(service)
        remaining = scheduler.active_tasks("web")
        assert len(remaining) == 1
        assert remaining[0].instance_id == "i-0001"
        assert registry.pending_tasks() == []

    def test_exhausted_host_ports_release_the_reservation(self):
        registry = ClusterRegistry(lock_timeout=0.5, retry_attempts=3, retry_backoff=0.01,
                                   port_range=(32768, 32768))
        registry.register_instance(make_instance(1))
        scheduler = ServiceScheduler(registry)
        service = scheduler.register_service(make_service(desired=2))

        scheduler.reconcile_service(service)

        running = [t for t in scheduler.active_tasks("web") if t.state == TaskState.RUNNING]
        pending = registry.pending_tasks()
        assert len(running) == 1
        assert len(pending) == 1
        assert pending[0].instance_id is None
        instance = registry.get_instance("i-0001")
        assert (instance.available_cpu, instance.available_memory) == (2048 - 256, 4096 - 512)


class TestPendingRetry:
    """Test placement retries when capacity appears"""

    def test_new_instance_places_pending_task(self, registry, scheduler):
        service = scheduler.register_service(make_service(desired=1))
        scheduler.reconcile_service(service)
        assert len(registry.pending_tasks()) == 1

        registry.register_instance(make_instance(1))
        assert registry.pending_tasks() == []
        assert scheduler.active_tasks("web")[0].state == TaskState.RUNNING

    def test_released_capacity_places_pending_task(self, registry, scheduler):
        registry.register_instance(make_instance(1, cpu=256, memory=512))
        first = scheduler.register_service(make_service("first", desired=1))
        second = scheduler.register_service(make_service("second", desired=1))
        scheduler.reconcile_service(first)
        scheduler.reconcile_service(second)
        assert [t.service_name for t in registry.pending_tasks()] == ["second"]

        scheduler.stop_tasks(scheduler.active_tasks("first"), reason="test")
        assert registry.pending_tasks() == []
        assert scheduler.active_tasks("second")[0].instance_id == "i-0001"

    def test_retry_pending_counts_placements(self, registry, scheduler):
        registry.register_instance(make_instance(1, status=InstanceStatus.DRAINING))
        service = scheduler.register_service(make_service(desired=2))
        scheduler.reconcile_service(service)
        assert len(registry.pending_tasks()) == 2

        registry.get_instance("i-0001").status = InstanceStatus.IN_SERVICE
        assert scheduler.retry_pending() == 2
        assert scheduler.retry_pending() == 0
