"""FastAPI application for the image-based upgrade agent."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
import uvicorn

from ibu.api.routes import router
from ibu.config import AgentConfig
from ibu.models.conditions import ConditionType
from ibu.services.cluster_config import ClusterConfigGatherer
from ibu.services.cluster_info import KubeClusterInfoAccessor
from ibu.services.executor import OstreeStageExecutor
from ibu.services.process import ProcessManager
from ibu.services.seed_restoration import SeedRestoration
from ibu.services.stage_controller import StageController, set_controller
from ibu.services.state_manager import StateManager
from ibu.utils.logging import setup_logger


def build_controller(config: AgentConfig) -> StageController:
    """Wire the stage controller to the host and cluster collaborators."""
    process_manager = ProcessManager(use_host_namespace=config.use_host_namespace)
    return StageController(
        state_manager=StateManager(config.state_file),
        executor=OstreeStageExecutor(process_manager, config),
        gatherer=ClusterConfigGatherer(KubeClusterInfoAccessor(), config.gatherer_config()),
        restorer=SeedRestoration(
            process_manager,
            host_root=config.host_root,
            backup_dir=config.backup_dir,
            workspace_dir=config.workspace_dir,
            auth_file=config.registry_auth_file,
            recert_image=config.recert_image,
        ),
        default_init_monitor_timeout=config.default_init_monitor_timeout,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Initialize logger
    - Create required directories (workspace, state file dir)
    - Build the stage controller and load the persisted resource
    - Re-arm the watchdog for an in-flight upgrade and reconcile once

    Shutdown:
    - Stop the watchdog timer
    """
    config: AgentConfig = getattr(app.state, "config", None) or AgentConfig.from_env()

    # Startup
    logger = setup_logger("ibu", config.log_file, level=logging.INFO)
    logger.info("Image-based upgrade agent starting up...")

    for directory in (config.workspace_dir, config.state_file.parent):
        directory.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured directory exists: {directory}")

    controller = build_controller(config)
    set_controller(controller)

    ibu = controller.state_manager.load_state()
    if ibu:
        conditions = ibu.status.conditions
        latest = conditions[-1] if conditions else None
        logger.info(
            f"Found persistent resource: generation={ibu.metadata.generation}, "
            f"stage={ibu.spec.stage.value}, "
            f"latest condition={latest.type.value if latest else None}"
        )
        if conditions.is_true(ConditionType.UPGRADE_IN_PROGRESS):
            logger.warning("Agent restarted during an upgrade")
    else:
        logger.info("No persistent resource found, starting fresh")

    await controller.resume()
    reconcile_task = asyncio.create_task(controller.reconcile())

    logger.info(f"Image-based upgrade agent ready on port {config.port}")

    yield

    # Shutdown
    logger.info("Image-based upgrade agent shutting down...")
    if not reconcile_task.done():
        reconcile_task.cancel()
    await controller.shutdown()
    set_controller(None)


# Create FastAPI application
app = FastAPI(
    title="Image-Based Upgrade Agent",
    description="Stage-driven image-based upgrade of single-node clusters",
    version="1.0.0",
    lifespan=lifespan,
)

# Register API routes
app.include_router(router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "ibu-agent", "version": "1.0.0"}


def main(config: Optional[AgentConfig] = None):
    """Main entry point for running the server."""
    config = config or AgentConfig.from_env()
    app.state.config = config
    uvicorn.run(
        app,  # Pass app object directly for debug support
        host=config.host,
        port=config.port,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    main()
