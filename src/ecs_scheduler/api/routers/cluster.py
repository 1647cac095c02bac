from fastapi import APIRouter, HTTPException, Path, Query, Request, status

from ecs_scheduler.api.schemas import (
    GetInstancesResponse,
    GetScalingEventsResponse,
    GetServiceResponse,
    InstanceStatusResponse,
    ScalingEventResponse,
    TaskResponse,
)
from ecs_scheduler.models import TaskState

router = APIRouter()


@router.get("/instances", response_model=GetInstancesResponse)
async def get_instances(request: Request):
    """List registered container instances with their remaining resources."""
    registry = request.app.state.control_plane.registry
    snapshot = registry.snapshot()
    instances = [
        InstanceStatusResponse(
            instance_id=i.instance_id,
            availability_zone=i.availability_zone,
            instance_type=i.instance_type,
            status=i.status.value,
            total_cpu=i.total_cpu,
            total_memory=i.total_memory,
            available_cpu=i.available_cpu,
            available_memory=i.available_memory,
            protected_from_scale_in=i.protected_from_scale_in,
            active_tasks=snapshot.active_tasks_on(i.instance_id),
            launch_time=i.launch_time,
        )
        for i in snapshot.instances
    ]
    return GetInstancesResponse(instances=instances, pending_tasks=len(snapshot.pending_tasks()))


@router.get("/services/{name}", response_model=GetServiceResponse)
async def get_service(request: Request, name: str = Path(description="Service name")):
    """Desired and actual task counts of a service."""
    control_plane = request.app.state.control_plane
    try:
        service = control_plane.scheduler.get_service(name)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Service {name} not found")

    tasks = control_plane.scheduler.active_tasks(name)
    deployments = control_plane.deployments
    return GetServiceResponse(
        name=service.name,
        task_definition=service.task_definition.name,
        desired_count=service.desired_count,
        running_count=len([t for t in tasks if t.state == TaskState.RUNNING]),
        pending_count=len([t for t in tasks if t.state == TaskState.PENDING]),
        deployment_in_progress=deployments is not None and name in deployments.in_progress,
        tasks=[
            TaskResponse(
                task_id=t.task_id,
                task_definition=t.task_definition.name,
                instance_id=t.instance_id,
                host_port=t.host_port,
                state=t.state.value,
            )
            for t in tasks
        ],
    )


@router.get("/scaling/events", response_model=GetScalingEventsResponse)
async def get_scaling_events(request: Request, limit: int = Query(50, ge=1, le=500)):
    """Recent capacity and service scaling events, newest first."""
    control_plane = request.app.state.control_plane
    events = []
    if control_plane.capacity_scaler is not None:
        events.extend(control_plane.capacity_scaler.scaling_events)
    for scaler in control_plane.service_scalers.values():
        events.extend(scaler.scaling_events)

    events.sort(key=lambda e: e.timestamp, reverse=True)
    return GetScalingEventsResponse(
        events=[ScalingEventResponse(**e.to_dict()) for e in events[:limit]]
    )
