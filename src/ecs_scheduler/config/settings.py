# src/ecs_scheduler/config/settings.py
from typing import Optional, Tuple
from functools import lru_cache

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Single source of truth for all scheduler settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from ecs_scheduler.config.settings import get_settings
        settings = get_settings()
        cluster = settings.cluster_name
    """

    # Application Settings
    app_name: str = Field(
        default="ecs-scheduler",
        description="Application name"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="local-dev",
        description="Deployment mode: local-dev, aws-mock, or aws-prod"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    # Cluster wiring
    cluster_name: str = Field(
        default="ecs-cluster",
        description="ECS cluster name"
    )

    asg_name: str = Field(
        default="ecs-cluster-asg",
        description="Auto Scaling group backing the capacity provider"
    )

    target_group_arn: Optional[str] = Field(
        default=None,
        description="Application load balancer target group for service tasks"
    )

    # Capacity provider (managed scaling)
    capacity_target_utilization: int = Field(
        default=100,
        description="Managed scaling target capacity in percent (1-100)"
    )

    minimum_scaling_step_size: int = Field(
        default=1,
        description="Minimum number of instances added or removed per cycle"
    )

    maximum_scaling_step_size: int = Field(
        default=10,
        description="Maximum number of instances added or removed per cycle"
    )

    managed_termination_protection: bool = Field(
        default=True,
        description="Protect instances hosting active tasks from scale-in"
    )

    instance_warmup_period: int = Field(
        default=300,
        description="Seconds after launch before an instance may be scaled in"
    )

    instance_cpu: int = Field(
        default=2048,
        description="CPU units of one instance in the group"
    )

    instance_memory: int = Field(
        default=3928,
        description="Memory (MiB) of one instance in the group"
    )

    # Service scaling (target tracking)
    scaling_tolerance: float = Field(
        default=0.10,
        description="Relative band around the target inside which no action is taken"
    )

    scale_out_cooldown: int = Field(
        default=300,
        description="Seconds between successive scale-out actions"
    )

    scale_in_cooldown: int = Field(
        default=300,
        description="Seconds between successive scale-in actions"
    )

    metric_period: int = Field(
        default=60,
        description="CloudWatch statistics period in seconds"
    )

    # Deployments
    health_check_timeout: float = Field(
        default=300.0,
        description="Seconds a replacement batch may take to report healthy"
    )

    health_check_poll_interval: float = Field(
        default=5.0,
        description="Seconds between health-check polls"
    )

    # Cluster registry
    registry_lock_timeout: float = Field(
        default=1.0,
        description="Seconds to wait for a per-instance lock before retrying"
    )

    registry_retry_attempts: int = Field(
        default=5,
        description="Attempts for a contended registry update"
    )

    registry_retry_backoff: float = Field(
        default=0.05,
        description="Initial backoff (seconds) between contended registry attempts"
    )

    ephemeral_port_range: Tuple[int, int] = Field(
        default=(32768, 61000),
        description="Host port range for bridge-mode dynamic port mapping"
    )

    # Control loops
    capacity_reconcile_interval: float = Field(
        default=60.0,
        description="Seconds between capacity scaler cycles"
    )

    service_reconcile_interval: float = Field(
        default=60.0,
        description="Seconds between service scaler cycles"
    )

    pending_retry_interval: float = Field(
        default=15.0,
        description="Seconds between retries of pending task placement"
    )

    event_history_size: int = Field(
        default=200,
        description="Scaling and deployment events kept per scaler/controller"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('deployment_mode', mode='before')
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Normalize deployment mode values for backwards compatibility."""
        if v:
            mode_mapping = {
                "local-mock": "local-dev",
                "cloud": "aws-prod",
            }
            return mode_mapping.get(v, v)
        return v

    @field_validator('deployment_mode')
    @classmethod
    def validate_deployment_mode(cls, v):
        """Validate deployment mode is one of the allowed values."""
        valid_modes = ["local-dev", "aws-mock", "aws-prod"]
        if v not in valid_modes:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {valid_modes}")
        return v

    @field_validator('capacity_target_utilization')
    @classmethod
    def validate_target_utilization(cls, v):
        if not 1 <= v <= 100:
            raise ValueError(f"capacity_target_utilization must be between 1 and 100, got {v}")
        return v

    @field_validator('maximum_scaling_step_size')
    @classmethod
    def validate_step_sizes(cls, v, info: ValidationInfo):
        minimum = info.data.get('minimum_scaling_step_size', 1)
        if v < minimum:
            raise ValueError(
                f"maximum_scaling_step_size ({v}) must be >= minimum_scaling_step_size ({minimum})"
            )
        return v

    @field_validator('aws_endpoint_url')
    @classmethod
    def set_endpoint_url_based_on_mode(cls, v, info: ValidationInfo):
        """Auto-set endpoint URL based on deployment mode if not explicitly provided."""
        if v is None and info.data.get('deployment_mode') == "aws-mock":
            return "http://localhost:5000"
        return v

    @field_validator('aws_access_key_id', 'aws_secret_access_key')
    @classmethod
    def set_mock_credentials_for_local_modes(cls, v, info: ValidationInfo):
        """Auto-set mock credentials for local modes if not provided."""
        if v is None and info.data.get('deployment_mode') in ["local-dev", "aws-mock"]:
            return "mock"
        return v

    def get_environment_dict(self) -> dict:
        """Get configuration as a dictionary suitable for subprocesses.

        Returns:
            Dictionary of environment variables
        """
        return {
            'DEPLOYMENT_MODE': self.deployment_mode,
            'AWS_DEFAULT_REGION': self.aws_region,
            'AWS_ENDPOINT_URL': self.aws_endpoint_url or '',
            'CLUSTER_NAME': self.cluster_name,
            'ASG_NAME': self.asg_name,
            'TARGET_GROUP_ARN': self.target_group_arn or '',
            'LOG_LEVEL': self.log_level,
        }

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
        validate_default=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
