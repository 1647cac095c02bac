"""Auto Scaling group backed instance group."""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from botocore.exceptions import ClientError

from ecs_scheduler.aws.clients import get_asg_client, get_ec2_client
from ecs_scheduler.config.settings import get_settings
from ecs_scheduler.interfaces import GroupCapacity, GroupInstance, InstanceGroupProvider

logger = logging.getLogger(__name__)


def _local_time(value: Optional[datetime]) -> Optional[datetime]:
    """EC2 reports aware UTC timestamps; the registry works in naive local time."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class AutoScalingGroupProvider(InstanceGroupProvider):
    """Capacity provider instance group implemented by an EC2 Auto Scaling group."""

    def __init__(self, asg_name: Optional[str] = None, asg_client=None, ec2_client=None):
        self.asg_name = asg_name or get_settings().asg_name
        self.asg = asg_client or get_asg_client()
        self.ec2 = ec2_client or get_ec2_client()

    def _group(self) -> Dict:
        response = self.asg.describe_auto_scaling_groups(AutoScalingGroupNames=[self.asg_name])
        if not response['AutoScalingGroups']:
            raise KeyError(f"ASG {self.asg_name} not found")
        return response['AutoScalingGroups'][0]

    def describe(self) -> GroupCapacity:
        group = self._group()
        return GroupCapacity(
            desired_capacity=group['DesiredCapacity'],
            min_size=group['MinSize'],
            max_size=group['MaxSize'],
        )

    def list_instances(self) -> List[GroupInstance]:
        group = self._group()
        members = group.get('Instances', [])
        if not members:
            return []

        # Instance type and launch time come from EC2
        details = {}
        instance_ids = [m['InstanceId'] for m in members]
        try:
            response = self.ec2.describe_instances(InstanceIds=instance_ids)
            for reservation in response.get('Reservations', []):
                for instance in reservation.get('Instances', []):
                    details[instance['InstanceId']] = instance
        except ClientError as e:
            logger.warning(f"Could not describe instances of {self.asg_name}: {e}")

        instances = []
        for member in members:
            detail = details.get(member['InstanceId'], {})
            instances.append(GroupInstance(
                instance_id=member['InstanceId'],
                availability_zone=member['AvailabilityZone'],
                instance_type=member.get('InstanceType') or detail.get('InstanceType', 'unknown'),
                lifecycle_state=member['LifecycleState'],
                protected_from_scale_in=member.get('ProtectedFromScaleIn', False),
                launch_time=_local_time(detail.get('LaunchTime')),
            ))
        return sorted(instances, key=lambda i: i.instance_id)

    def scale_to(self, desired_capacity: int) -> None:
        try:
            self.asg.set_desired_capacity(
                AutoScalingGroupName=self.asg_name,
                DesiredCapacity=desired_capacity,
                HonorCooldown=False
            )
            logger.info(f"📈 ASG {self.asg_name} desired capacity set to {desired_capacity}")
        except ClientError as e:
            logger.error(f"❌ Failed to set desired capacity of {self.asg_name}: {e}")
            raise

    def protect_from_scale_in(self, instance_id: str, protect: bool) -> None:
        try:
            self.asg.set_instance_protection(
                InstanceIds=[instance_id],
                AutoScalingGroupName=self.asg_name,
                ProtectedFromScaleIn=protect
            )
            logger.debug(f"Scale-in protection of {instance_id} set to {protect}")
        except ClientError as e:
            logger.error(f"❌ Failed to change scale-in protection of {instance_id}: {e}")
            raise

    def terminate_instance(self, instance_id: str) -> None:
        try:
            self.asg.terminate_instance_in_auto_scaling_group(
                InstanceId=instance_id,
                ShouldDecrementDesiredCapacity=True
            )
            logger.info(f"📉 Terminating {instance_id} in {self.asg_name}")
        except ClientError as e:
            logger.error(f"❌ Failed to terminate {instance_id}: {e}")
            raise
