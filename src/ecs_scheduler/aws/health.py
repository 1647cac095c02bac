"""ECS task health checks."""
import logging
from typing import Optional

from botocore.exceptions import ClientError

from ecs_scheduler.aws.clients import get_ecs_client
from ecs_scheduler.config.settings import get_settings
from ecs_scheduler.interfaces import HealthChecker

logger = logging.getLogger(__name__)


class EcsTaskHealthChecker(HealthChecker):
    """Reads the container health status ECS reports for a task."""

    def __init__(self, cluster_name: Optional[str] = None, client=None):
        self.cluster_name = cluster_name or get_settings().cluster_name
        self.ecs = client or get_ecs_client()

    def is_healthy(self, task_id: str) -> bool:
        try:
            response = self.ecs.describe_tasks(cluster=self.cluster_name, tasks=[task_id])
        except ClientError as e:
            logger.warning(f"Health check for task {task_id} failed: {e}")
            return False

        tasks = response.get('tasks', [])
        if not tasks:
            logger.debug(f"Task {task_id} not found in {self.cluster_name}")
            return False
        task = tasks[0]
        return task.get('lastStatus') == 'RUNNING' and task.get('healthStatus') == 'HEALTHY'
