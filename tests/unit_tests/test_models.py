"""
Unit Tests for the cluster models.
Covers attribute lookup, memberOf expressions and model validation.
"""

import pytest

from ecs_scheduler.models import (
    CapacityProvider,
    InstanceStatus,
    MetricType,
    PlacementConstraint,
    ResourceType,
    ScalingPolicy,
    Task,
    TaskDefinition,
    TaskState,
)
from tests.fixtures.cluster_fixtures import make_instance


class TestInstance:
    """Test container instance resource bookkeeping"""

    def test_available_defaults_to_totals(self):
        instance = make_instance(1, cpu=1024, memory=2048)
        assert instance.available_cpu == 1024
        assert instance.available(ResourceType.MEMORY) == 2048
        assert instance.status == InstanceStatus.IN_SERVICE

    def test_can_fit_checks_both_resources(self):
        instance = make_instance(1, cpu=1024, memory=2048, available_cpu=100)
        assert not instance.can_fit(256, 512)
        assert instance.could_ever_fit(256, 512)
        assert not instance.could_ever_fit(4096, 512)

    def test_attribute_aliases_and_custom_attributes(self):
        instance = make_instance(7, zone="us-east-1b", attributes={"stack": "blue"})
        assert instance.attribute("attribute:ecs.availability-zone") == "us-east-1b"
        assert instance.attribute("instanceId") == "i-0007"
        assert instance.attribute("attribute:ecs.instance-type") == "t3.medium"
        assert instance.attribute("attribute:stack") == "blue"
        assert instance.attribute("stack") == "blue"
        assert instance.attribute("attribute:missing") is None

    def test_to_dict_is_serializable(self):
        data = make_instance(1).to_dict()
        assert data["status"] == "in_service"
        assert isinstance(data["launch_time"], str)
        assert data["allocated_ports"] == []


class TestPlacementConstraint:
    """Test memberOf expression parsing and evaluation"""

    def test_equality_and_inequality(self):
        instance = make_instance(1, zone="us-east-1a")
        assert PlacementConstraint.member_of("attribute:ecs.availability-zone == us-east-1a").matches(instance)
        assert not PlacementConstraint.member_of("attribute:ecs.availability-zone != us-east-1a").matches(instance)

    def test_in_and_not_in_lists(self):
        instance = make_instance(1, zone="us-east-1b")
        assert PlacementConstraint.member_of("attribute:ecs.availability-zone in [us-east-1a, us-east-1b]").matches(instance)
        assert not PlacementConstraint.member_of("attribute:ecs.availability-zone not in [us-east-1b]").matches(instance)

    def test_clauses_joined_with_and(self):
        instance = make_instance(1, zone="us-east-1a", attributes={"stack": "blue"})
        constraint = PlacementConstraint.member_of(
            "attribute:ecs.availability-zone == us-east-1a and attribute:stack == green"
        )
        assert len(constraint.clauses()) == 2
        assert not constraint.matches(instance)

    @pytest.mark.parametrize("expression", ["", "attribute:stack ~= blue", "attribute:stack in blue"])
    def test_malformed_expressions_rejected(self, expression):
        with pytest.raises(ValueError):
            PlacementConstraint.member_of(expression)


class TestValidation:
    """Test model invariants enforced at construction"""

    @pytest.mark.parametrize("target", [0, 101])
    def test_capacity_provider_target_range(self, target):
        with pytest.raises(ValueError):
            CapacityProvider(name="cp", instance_group="asg", target_capacity=target)

    def test_capacity_provider_step_sizes(self):
        with pytest.raises(ValueError):
            CapacityProvider(name="cp", instance_group="asg",
                             minimum_scaling_step_size=5, maximum_scaling_step_size=2)

    def test_scaling_policy_requires_positive_target(self):
        with pytest.raises(ValueError):
            ScalingPolicy(MetricType.CPU_UTILIZATION, target_value=0)

    def test_scaling_policy_capacity_range(self):
        with pytest.raises(ValueError):
            ScalingPolicy(MetricType.CPU_UTILIZATION, target_value=50, min_capacity=5, max_capacity=2)

    @pytest.mark.parametrize("cpu,memory", [(-256, 512), (256, 0), (256, -512)])
    def test_task_definition_rejects_invalid_resources(self, cpu, memory):
        with pytest.raises(ValueError):
            TaskDefinition("web", 1, cpu=cpu, memory=memory)

    def test_task_takes_resources_from_definition(self):
        definition = TaskDefinition("web", 3, cpu=256, memory=512)
        task = Task(task_id="t1", service_name="web", task_definition=definition)
        assert definition.name == "web:3"
        assert (task.cpu, task.memory) == (256, 512)
        assert task.is_active
        task.state = TaskState.STOPPED
        assert not task.is_active
