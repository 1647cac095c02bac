"""
boto3 clients for the scheduler's AWS collaborators.

Region, endpoint and credentials come from settings. Clients are cached per
(service, region, endpoint): switching regions or pointing aws-mock mode at a
moto server yields a fresh client rather than a stale one.
"""
import logging
import os
import threading
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError

from ecs_scheduler.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)

ClientKey = Tuple[str, str, Optional[str]]


class AWSClientManager:
    """Builds and caches boto3 clients from the scheduler settings."""
    _clients: Dict[ClientKey, Any] = {}
    _lock = threading.Lock()

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    def endpoint_url(self) -> Optional[str]:
        # Custom endpoints only apply to the local modes; aws-prod always talks to AWS
        if self.settings.deployment_mode in ('local-dev', 'aws-mock'):
            return self.settings.aws_endpoint_url
        return None

    def get_client(self, service_name: str) -> Any:
        """Get or create the client for a service in the configured region and endpoint."""
        key = (service_name, self.settings.aws_region, self.endpoint_url)
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = self._create_client(service_name)
                self._clients[key] = client
        return client

    def _session(self) -> boto3.Session:
        region = self.settings.aws_region

        # Named profile (SSO) for production runs; a missing profile raises ProfileNotFound
        profile = os.environ.get('AWS_PROFILE')
        if profile and self.settings.deployment_mode == 'aws-prod':
            return boto3.Session(profile_name=profile, region_name=region)

        return boto3.Session(
            aws_access_key_id=self.settings.aws_access_key_id,
            aws_secret_access_key=self.settings.aws_secret_access_key,
            region_name=region,
        )

    def _create_client(self, service_name: str) -> Any:
        try:
            client = self._session().client(service_name, endpoint_url=self.endpoint_url)
        except BotoCoreError as e:
            logger.error(f"❌ Could not create {service_name} client: {e}")
            raise
        logger.debug(
            f"Created {service_name} client (mode={self.settings.deployment_mode}, "
            f"region={self.settings.aws_region}, endpoint={self.endpoint_url})"
        )
        return client

    @classmethod
    def clear_clients(cls) -> None:
        with cls._lock:
            cls._clients.clear()
        logger.debug("Cleared all AWS clients")


def get_asg_client():
    return AWSClientManager().get_client('autoscaling')


def get_ec2_client():
    return AWSClientManager().get_client('ec2')


def get_ecs_client():
    return AWSClientManager().get_client('ecs')


def get_cloudwatch_client():
    return AWSClientManager().get_client('cloudwatch')


def get_elbv2_client():
    return AWSClientManager().get_client('elbv2')
