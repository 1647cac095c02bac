"""ELBv2 target group registration."""
import logging
from typing import Optional

from botocore.exceptions import ClientError

from ecs_scheduler.aws.clients import get_elbv2_client
from ecs_scheduler.config.settings import get_settings
from ecs_scheduler.interfaces import LoadBalancerRegistrar

logger = logging.getLogger(__name__)


class TargetGroupRegistrar(LoadBalancerRegistrar):
    """Registers task host ports as instance targets of one target group."""

    def __init__(self, target_group_arn: Optional[str] = None, client=None):
        self.target_group_arn = target_group_arn or get_settings().target_group_arn
        if not self.target_group_arn:
            raise ValueError("A target group ARN is required (TARGET_GROUP_ARN)")
        self.elbv2 = client or get_elbv2_client()

    def register_target(self, instance_id: str, port: int) -> None:
        try:
            self.elbv2.register_targets(
                TargetGroupArn=self.target_group_arn,
                Targets=[{'Id': instance_id, 'Port': port}]
            )
            logger.info(f"🎯 Registered {instance_id}:{port} with target group")
        except ClientError as e:
            logger.error(f"❌ Failed to register {instance_id}:{port}: {e}")
            raise

    def deregister_target(self, instance_id: str, port: Optional[int] = None) -> None:
        if port is None:
            targets = self._targets_on(instance_id)
        else:
            targets = [{'Id': instance_id, 'Port': port}]
        if not targets:
            return
        try:
            self.elbv2.deregister_targets(TargetGroupArn=self.target_group_arn, Targets=targets)
            logger.info(f"Deregistered {len(targets)} target(s) on {instance_id}")
        except ClientError as e:
            logger.error(f"❌ Failed to deregister targets on {instance_id}: {e}")
            raise

    def _targets_on(self, instance_id: str):
        response = self.elbv2.describe_target_health(TargetGroupArn=self.target_group_arn)
        return [
            {'Id': d['Target']['Id'], 'Port': d['Target']['Port']}
            for d in response.get('TargetHealthDescriptions', [])
            if d['Target']['Id'] == instance_id
        ]
