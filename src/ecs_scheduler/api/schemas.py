####################################
# --- Request/response schemas --- #
####################################

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class InstanceStatusResponse(BaseModel):
    """A registered container instance."""
    instance_id: str = Field(
        description="EC2 instance id.",
        json_schema_extra={"example": "i-0000000000000001"},
    )
    availability_zone: str
    instance_type: str
    status: str = Field(description="in_service, draining or terminating.")
    total_cpu: int
    total_memory: int
    available_cpu: int
    available_memory: int
    protected_from_scale_in: bool
    active_tasks: int = Field(description="PENDING or RUNNING tasks placed on the instance.")
    launch_time: datetime


class GetInstancesResponse(BaseModel):
    """Response model for `GET /v1/instances`."""
    instances: List[InstanceStatusResponse]
    pending_tasks: int = Field(description="Tasks waiting for an instance with room.")


class TaskResponse(BaseModel):
    task_id: str
    task_definition: str
    instance_id: Optional[str] = None
    host_port: Optional[int] = None
    state: str


class GetServiceResponse(BaseModel):
    """Response model for `GET /v1/services/{name}`."""
    name: str
    task_definition: str
    desired_count: int
    running_count: int
    pending_count: int
    deployment_in_progress: bool
    tasks: List[TaskResponse]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "web",
                "task_definition": "web:2",
                "desired_count": 2,
                "running_count": 2,
                "pending_count": 0,
                "deployment_in_progress": False,
                "tasks": [
                    {
                        "task_id": "5f0c1c2d",
                        "task_definition": "web:2",
                        "instance_id": "i-0000000000000001",
                        "host_port": 32768,
                        "state": "RUNNING",
                    }
                ],
            }
        }
    )


class ScalingEventResponse(BaseModel):
    timestamp: datetime
    action: str
    reason: str
    scope: str = Field(description="'cluster' or a service name.")
    count_before: int
    count_after: int


class GetScalingEventsResponse(BaseModel):
    """Response model for `GET /v1/scaling/events`."""
    events: List[ScalingEventResponse]


class HealthResponse(BaseModel):
    status: str
    deployment_mode: str
    cluster_name: str
    loops: List[Dict] = Field(default_factory=list)
