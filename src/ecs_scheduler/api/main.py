from textwrap import dedent
import logging

from fastapi import FastAPI
from fastapi.routing import APIRoute

from ecs_scheduler.api.routers.cluster import router as cluster_router
from ecs_scheduler.api.routers.health import router as health_router
from ecs_scheduler.control_loop import ControlPlane

# Set up logging
logger = logging.getLogger(__name__)


def create_app(control_plane: ControlPlane) -> FastAPI:
    """Create a read-only status API over a running control plane."""
    app = FastAPI(
        title="ECS Scheduler",
        summary="Inspect cluster, service and scaling state",
        version="v1",
        description=dedent(
            """\
        Read-only view of the scheduler: registered instances, service task
        counts and recent scaling decisions.
        """
        ),
        generate_unique_id_function=custom_generate_unique_id,
    )
    app.state.control_plane = control_plane
    logger.info("Status API created")

    app.include_router(cluster_router, prefix="/v1", tags=["cluster"])
    app.include_router(health_router, tags=["health"])

    return app


def custom_generate_unique_id(route: APIRoute):
    """
    Generate prettier `operationId`s in the OpenAPI schema.

    These become the function names in generated client SDKs.
    """
    return f"{route.tags[0]}-{route.name}"
