"""
Unit Tests for the Task Placement Engine.
Tests strategies, constraints and placement failures against small fleets.
"""

from collections import Counter

import pytest

from ecs_scheduler.errors import ConstraintViolation, FailureReason, PlacementFailure
from ecs_scheduler.models import (
    InstanceStatus,
    PlacementConstraint,
    PlacementStrategy,
    ResourceType,
    Task,
    TaskDefinition,
)
from ecs_scheduler.placement import PlacementEngine
from tests.fixtures.cluster_fixtures import make_instance, make_service


def zone_counts(registry, service_name):
    counts = Counter()
    for task in registry.list_tasks(service_name=service_name):
        if task.is_active and task.instance_id:
            counts[registry.get_instance(task.instance_id).availability_zone] += 1
    return counts


class TestStrategies:
    """Test spread and binpack ordering"""

    def test_spread_then_binpack_two_per_zone_on_fullest_instances(self, registry, scheduler):
        # Per zone: one roomy instance, one with less memory
        registry.register_instance(make_instance(1, "us-east-1a", memory=4096))
        registry.register_instance(make_instance(2, "us-east-1b", memory=4096))
        registry.register_instance(make_instance(3, "us-east-1a", memory=2048))
        registry.register_instance(make_instance(4, "us-east-1b", memory=2048))
        service = scheduler.register_service(make_service(
            desired=4,
            placement_strategies=[PlacementStrategy.spread(), PlacementStrategy.binpack(ResourceType.MEMORY)],
        ))

        scheduler.reconcile_service(service)

        assert zone_counts(registry, "web") == {"us-east-1a": 2, "us-east-1b": 2}
        hosts = Counter(t.instance_id for t in scheduler.active_tasks("web"))
        assert hosts == {"i-0003": 2, "i-0004": 2}

    @pytest.mark.parametrize("desired", range(1, 9))
    def test_spread_keeps_zones_balanced(self, registry, fleet, scheduler, desired):
        service = scheduler.register_service(make_service(
            desired=desired, placement_strategies=[PlacementStrategy.spread()]))
        scheduler.reconcile_service(service)

        counts = zone_counts(registry, "web")
        assert sum(counts.values()) == desired
        assert max(counts.values()) - min(counts.get(z, 0) for z in ("us-east-1a", "us-east-1b")) <= 1

    def test_spread_by_instance_id_uses_every_instance(self, registry, fleet, scheduler):
        service = scheduler.register_service(make_service(
            desired=4, placement_strategies=[PlacementStrategy.spread("instanceId")]))
        scheduler.reconcile_service(service)
        assert {t.instance_id for t in scheduler.active_tasks("web")} == {i.instance_id for i in fleet}

    def test_binpack_cpu_fills_one_instance_first(self, registry, fleet, scheduler):
        service = scheduler.register_service(make_service(
            cpu=512, desired=4, placement_strategies=[PlacementStrategy.binpack(ResourceType.CPU)]))
        scheduler.reconcile_service(service)
        assert {t.instance_id for t in scheduler.active_tasks("web")} == {"i-0001"}
        assert registry.get_instance("i-0001").available_cpu == 0

    def test_ties_break_on_instance_id(self, registry, fleet):
        engine = PlacementEngine(registry)
        task = registry.add_task(Task("t1", "web", TaskDefinition("web", 1, 256, 512)))
        assert engine.place(task).instance_id == "i-0001"
        assert task.instance_id == "i-0001"


class TestConstraints:
    """Test hard filters on eligible instances"""

    def test_distinct_instance_leaves_extra_task_pending(self, registry, fleet, scheduler):
        service = scheduler.register_service(make_service(
            desired=5, placement_constraints=[PlacementConstraint.distinct_instance()]))
        scheduler.reconcile_service(service)

        placed = [t for t in scheduler.active_tasks("web") if t.instance_id]
        assert len({t.instance_id for t in placed}) == 4
        assert len(registry.pending_tasks()) == 1

    def test_member_of_restricts_zone(self, registry, fleet, scheduler):
        service = scheduler.register_service(make_service(
            desired=3,
            placement_constraints=[PlacementConstraint.member_of("attribute:ecs.availability-zone == us-east-1b")],
        ))
        scheduler.reconcile_service(service)
        assert zone_counts(registry, "web") == {"us-east-1b": 3}

    def test_draining_instances_are_skipped(self, registry, fleet):
        for instance_id in ("i-0001", "i-0002", "i-0003"):
            registry.set_instance_status(instance_id, InstanceStatus.DRAINING)
        engine = PlacementEngine(registry)
        task = registry.add_task(Task("t1", "web", TaskDefinition("web", 1, 256, 512)))
        assert engine.place(task).instance_id == "i-0004"


class TestFailures:
    """Test placement failure reasons"""

    def test_oversized_task_is_constraint_violation(self, registry, fleet):
        engine = PlacementEngine(registry)
        task = Task("t1", "web", TaskDefinition("web", 1, cpu=4096, memory=512))
        with pytest.raises(ConstraintViolation) as excinfo:
            engine.place(task)
        assert excinfo.value.reason == FailureReason.CONSTRAINT_VIOLATION
        assert task.instance_id is None

    def test_full_fleet_is_insufficient_capacity(self, registry, fleet):
        for instance in fleet:
            registry.reserve(instance.instance_id, 2048, 0)
        engine = PlacementEngine(registry)
        task = Task("t1", "web", TaskDefinition("web", 1, 256, 512))
        with pytest.raises(PlacementFailure) as excinfo:
            engine.place(task)
        assert not isinstance(excinfo.value, ConstraintViolation)
        assert excinfo.value.reason == FailureReason.INSUFFICIENT_CAPACITY

    def test_scheduler_stops_unplaceable_task(self, registry, fleet, scheduler):
        service = scheduler.register_service(make_service(cpu=8192, desired=1))
        scheduler.reconcile_service(service)
        task = registry.list_tasks(service_name="web")[0]
        assert task.state.value == "STOPPED"
        assert "ConstraintViolation" in task.stopped_reason

    def test_lost_reservation_race_moves_to_next_candidate(self, registry, fleet, monkeypatch):
        engine = PlacementEngine(registry)
        original = registry.reserve

        def reserve(instance_id, cpu, memory):
            if instance_id == "i-0001":
                return False
            return original(instance_id, cpu, memory)

        monkeypatch.setattr(registry, "reserve", reserve)
        task = Task("t1", "web", TaskDefinition("web", 1, 256, 512))
        assert engine.place(task).instance_id == "i-0002"

    def test_place_all_collects_failures(self, registry):
        registry.register_instance(make_instance(1, cpu=512, memory=1024))
        engine = PlacementEngine(registry)
        definition = TaskDefinition("web", 1, 256, 512)
        tasks = [Task(f"t{n}", "web", definition) for n in range(3)]
        placed, failures = engine.place_all(tasks)
        assert len(placed) == 2
        assert [f.task_id for f in failures] == ["t2"]

    def test_explicit_candidates_use_live_state(self, registry, fleet):
        engine = PlacementEngine(registry)
        stale = make_instance(1)
        registry.reserve("i-0001", 2048, 0)
        task = Task("t1", "web", TaskDefinition("web", 1, 256, 512))
        with pytest.raises(PlacementFailure):
            engine.place(task, candidates=[stale])
