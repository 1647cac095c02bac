from fastapi import APIRouter, Request

from ecs_scheduler.api.schemas import HealthResponse
from ecs_scheduler.config.settings import get_settings

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Health check endpoint for the control plane.

    Reports "degraded" when any control loop has recorded failed iterations.
    """
    settings = get_settings()
    control_plane = request.app.state.control_plane
    loops = [loop.status() for loop in control_plane.loops]

    return HealthResponse(
        status="degraded" if any(loop["errors"] for loop in loops) else "ok",
        deployment_mode=settings.deployment_mode,
        cluster_name=settings.cluster_name,
        loops=loops,
    )
