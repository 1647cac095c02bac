"""CloudWatch service utilization metrics."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from botocore.exceptions import ClientError

from ecs_scheduler.aws.clients import get_cloudwatch_client
from ecs_scheduler.config.settings import get_settings
from ecs_scheduler.interfaces import MetricsSource
from ecs_scheduler.models import MetricType

logger = logging.getLogger(__name__)

METRIC_NAMES = {
    MetricType.CPU_UTILIZATION: 'CPUUtilization',
    MetricType.MEMORY_UTILIZATION: 'MemoryUtilization',
}


class CloudWatchMetricsSource(MetricsSource):
    """Average ECS service utilization from the AWS/ECS namespace."""

    def __init__(self, cluster_name: Optional[str] = None, period: Optional[int] = None, client=None):
        settings = get_settings()
        self.cluster_name = cluster_name or settings.cluster_name
        self.period = period or settings.metric_period
        self.cloudwatch = client or get_cloudwatch_client()

    def get_utilization(self, service_id: str, metric_type: MetricType) -> Optional[float]:
        end_time = datetime.now(timezone.utc)
        # Three periods back so a late datapoint still shows up
        start_time = end_time - timedelta(seconds=self.period * 3)
        try:
            response = self.cloudwatch.get_metric_statistics(
                Namespace='AWS/ECS',
                MetricName=METRIC_NAMES[MetricType(metric_type)],
                Dimensions=[
                    {'Name': 'ClusterName', 'Value': self.cluster_name},
                    {'Name': 'ServiceName', 'Value': service_id},
                ],
                StartTime=start_time,
                EndTime=end_time,
                Period=self.period,
                Statistics=['Average']
            )
        except ClientError as e:
            logger.error(f"❌ Failed to read {metric_type.value} for {service_id}: {e}")
            raise

        datapoints = response.get('Datapoints', [])
        if not datapoints:
            return None
        latest = max(datapoints, key=lambda point: point['Timestamp'])
        return float(latest['Average'])
