"""
Unit Tests for the boto3 adapters.
Runs against moto's in-process AWS mocks; the ECS health check uses a botocore
Stubber because moto does not report container health.
"""

from datetime import datetime, timezone

import boto3
import pytest
from botocore.exceptions import ProfileNotFound
from botocore.stub import Stubber
from moto import mock_aws

from ecs_scheduler.aws.clients import AWSClientManager, get_ecs_client
from ecs_scheduler.aws.health import EcsTaskHealthChecker
from ecs_scheduler.aws.instance_group import AutoScalingGroupProvider
from ecs_scheduler.aws.load_balancer import TargetGroupRegistrar
from ecs_scheduler.aws.metrics import CloudWatchMetricsSource
from ecs_scheduler.capacity import CapacityScaler
from ecs_scheduler.config.settings import Settings, get_settings
from ecs_scheduler.models import CapacityProvider, InstanceStatus, MetricType, ScalingActionType
from ecs_scheduler.registry import ClusterRegistry

pytestmark = pytest.mark.aws

REGION = "us-east-1"
ASG_NAME = "test-asg"


@pytest.fixture
def mocked_aws(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    with mock_aws():
        yield


@pytest.fixture
def asg(mocked_aws):
    ec2 = boto3.client("ec2", region_name=REGION)
    autoscaling = boto3.client("autoscaling", region_name=REGION)
    image_id = ec2.describe_images()["Images"][0]["ImageId"]
    autoscaling.create_launch_configuration(
        LaunchConfigurationName="test-lc",
        ImageId=image_id,
        InstanceType="t3.medium",
    )
    autoscaling.create_auto_scaling_group(
        AutoScalingGroupName=ASG_NAME,
        LaunchConfigurationName="test-lc",
        MinSize=0,
        MaxSize=5,
        DesiredCapacity=2,
        AvailabilityZones=[f"{REGION}a"],
    )
    return autoscaling


@pytest.fixture
def provider(asg):
    return AutoScalingGroupProvider(ASG_NAME, asg_client=asg, ec2_client=boto3.client("ec2", region_name=REGION))


class TestAutoScalingGroupProvider:
    """Test the Auto Scaling group instance group"""

    def test_describe_and_list_instances(self, provider):
        capacity = provider.describe()
        assert (capacity.desired_capacity, capacity.min_size, capacity.max_size) == (2, 0, 5)

        instances = provider.list_instances()
        assert len(instances) == 2
        assert all(i.availability_zone == f"{REGION}a" for i in instances)
        assert all(i.instance_type == "t3.medium" for i in instances)
        assert all(i.launch_time is not None for i in instances)

    def test_scale_to_sets_desired_capacity(self, provider):
        provider.scale_to(4)
        assert provider.describe().desired_capacity == 4

    def test_protect_from_scale_in(self, provider):
        instance_id = provider.list_instances()[0].instance_id
        provider.protect_from_scale_in(instance_id, True)
        protected = {i.instance_id: i.protected_from_scale_in for i in provider.list_instances()}
        assert protected[instance_id] is True

    def test_terminate_decrements_desired(self, provider):
        instance_id = provider.list_instances()[0].instance_id
        provider.terminate_instance(instance_id)
        assert provider.describe().desired_capacity == 1

    def test_launch_time_is_comparable_with_local_clock(self, provider):
        launch_time = provider.list_instances()[0].launch_time
        assert launch_time.tzinfo is None
        assert datetime.now() >= launch_time

    def test_capacity_cycle_scales_in_idle_instances(self, provider):
        registry = ClusterRegistry()
        scaler = CapacityScaler(CapacityProvider("cp", ASG_NAME, instance_warmup_period=0), registry, provider)

        action = scaler.run_cycle()

        assert action.action == ScalingActionType.SCALE_IN
        assert action.count == 2
        assert all(i.status != InstanceStatus.IN_SERVICE for i in registry.list_instances())
        assert provider.describe().desired_capacity == 0

    def test_unknown_group(self, mocked_aws):
        provider = AutoScalingGroupProvider("missing", asg_client=boto3.client("autoscaling", region_name=REGION),
                                            ec2_client=boto3.client("ec2", region_name=REGION))
        with pytest.raises(KeyError):
            provider.describe()


class TestCloudWatchMetricsSource:
    """Test service utilization reads"""

    def test_latest_average(self, mocked_aws):
        cloudwatch = boto3.client("cloudwatch", region_name=REGION)
        cloudwatch.put_metric_data(
            Namespace="AWS/ECS",
            MetricData=[{
                "MetricName": "CPUUtilization",
                "Dimensions": [
                    {"Name": "ClusterName", "Value": "test-cluster"},
                    {"Name": "ServiceName", "Value": "web"},
                ],
                "Timestamp": datetime.now(timezone.utc),
                "Value": 72.5,
                "Unit": "Percent",
            }],
        )
        metrics = CloudWatchMetricsSource("test-cluster", period=60, client=cloudwatch)
        assert metrics.get_utilization("web", MetricType.CPU_UTILIZATION) == pytest.approx(72.5)

    def test_no_datapoints(self, mocked_aws):
        metrics = CloudWatchMetricsSource("test-cluster", period=60,
                                          client=boto3.client("cloudwatch", region_name=REGION))
        assert metrics.get_utilization("web", MetricType.MEMORY_UTILIZATION) is None


class TestEcsTaskHealthChecker:
    """Test task health reads"""

    @pytest.mark.parametrize("health_status,expected", [("HEALTHY", True), ("UNHEALTHY", False), ("UNKNOWN", False)])
    def test_health_status(self, mocked_aws, health_status, expected):
        ecs = boto3.client("ecs", region_name=REGION)
        with Stubber(ecs) as stubber:
            stubber.add_response(
                "describe_tasks",
                {"tasks": [{"taskArn": "arn:aws:ecs:us-east-1:123456789012:task/t1",
                            "lastStatus": "RUNNING", "healthStatus": health_status}]},
                {"cluster": "test-cluster", "tasks": ["t1"]},
            )
            assert EcsTaskHealthChecker("test-cluster", client=ecs).is_healthy("t1") is expected

    def test_missing_task_is_unhealthy(self, mocked_aws):
        ecs = boto3.client("ecs", region_name=REGION)
        with Stubber(ecs) as stubber:
            stubber.add_response("describe_tasks", {"tasks": []}, {"cluster": "test-cluster", "tasks": ["t1"]})
            assert EcsTaskHealthChecker("test-cluster", client=ecs).is_healthy("t1") is False


class TestTargetGroupRegistrar:
    """Test load balancer target registration"""

    @pytest.fixture
    def target_group(self, mocked_aws):
        ec2 = boto3.client("ec2", region_name=REGION)
        elbv2 = boto3.client("elbv2", region_name=REGION)
        vpc_id = ec2.describe_vpcs()["Vpcs"][0]["VpcId"]
        arn = elbv2.create_target_group(
            Name="web", Protocol="HTTP", Port=80, VpcId=vpc_id, TargetType="instance",
        )["TargetGroups"][0]["TargetGroupArn"]
        image_id = ec2.describe_images()["Images"][0]["ImageId"]
        instance_id = ec2.run_instances(ImageId=image_id, MinCount=1, MaxCount=1)["Instances"][0]["InstanceId"]
        return elbv2, arn, instance_id

    def test_register_and_deregister(self, target_group):
        elbv2, arn, instance_id = target_group
        registrar = TargetGroupRegistrar(arn, client=elbv2)

        registrar.register_target(instance_id, 32768)
        targets = elbv2.describe_target_health(TargetGroupArn=arn)["TargetHealthDescriptions"]
        assert [t["Target"]["Port"] for t in targets] == [32768]
        registrar.deregister_target(instance_id, 32768)
        assert elbv2.describe_target_health(TargetGroupArn=arn)["TargetHealthDescriptions"] == []

        # Without a port every target on the instance is looked up and removed
        registrar.register_target(instance_id, 32769)
        registrar.deregister_target(instance_id)
        assert elbv2.describe_target_health(TargetGroupArn=arn)["TargetHealthDescriptions"] == []

    def test_requires_target_group(self, mocked_aws):
        with pytest.raises(ValueError):
            TargetGroupRegistrar(client=boto3.client("elbv2", region_name=REGION))


class TestAWSClientManager:
    """Test client construction and caching"""

    def test_clients_are_cached(self, mocked_aws):
        assert get_ecs_client() is get_ecs_client()

    def test_region_change_builds_new_client(self, mocked_aws, monkeypatch):
        east = get_ecs_client()
        monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-west-1")
        get_settings.cache_clear()

        west = get_ecs_client()
        assert west is not east
        assert west.meta.region_name == "eu-west-1"

    def test_aws_mock_mode_uses_endpoint(self, monkeypatch):
        monkeypatch.setenv("DEPLOYMENT_MODE", "aws-mock")
        monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)
        get_settings.cache_clear()
        assert get_ecs_client().meta.endpoint_url == "http://localhost:5000"

    def test_aws_prod_ignores_endpoint(self, monkeypatch):
        monkeypatch.setenv("DEPLOYMENT_MODE", "aws-prod")
        monkeypatch.setenv("AWS_ENDPOINT_URL", "http://localhost:5000")
        monkeypatch.delenv("AWS_PROFILE", raising=False)
        assert AWSClientManager(Settings()).endpoint_url is None

    def test_missing_profile_is_raised(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DEPLOYMENT_MODE", "aws-prod")
        monkeypatch.setenv("AWS_PROFILE", "missing-profile")
        monkeypatch.setenv("AWS_CONFIG_FILE", str(tmp_path / "config"))
        monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(tmp_path / "credentials"))
        with pytest.raises(ProfileNotFound):
            AWSClientManager(Settings()).get_client("ecs")
