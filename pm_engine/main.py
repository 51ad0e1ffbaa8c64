"""
Project Engine - FastAPI Application

Wires the repository, cascade, reconciliation loop, hooks and workflow to
their collaborator ports and serves the read-only project API.

Startup:  load projects, start the reconciliation loop
Shutdown: stop the loop (waits for an in-flight tick), drain cascade work
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .adapters import HttpDashboardClient, LoggingMessenger, WebhookMessenger
from .cascade import CascadeController
from .config import EngineConfig
from .external_hooks import ExternalHooks
from .persistence import JsonFilePersistence
from .ports import AgentCommunicationPort, DashboardPort, MessagingPort, PersistencePort
from .project_repository import ProjectRepository
from .reconciliation_loop import ReconciliationLoop
from .router import router as pm_router
from .workflow import ProjectWorkflow

logger = logging.getLogger("pm_engine")


@dataclass
class PMEngine:
    """All engine components for one workspace, sharing one repository."""
    config: EngineConfig
    repository: ProjectRepository
    cascade: CascadeController
    loop: ReconciliationLoop
    hooks: ExternalHooks
    workflow: ProjectWorkflow

    async def start(self) -> None:
        await self.loop.start()

    async def stop(self) -> None:
        await self.loop.stop()
        await self.cascade.drain()

    async def switch_workspace(self, persistence: PersistencePort) -> None:
        """Stop, reload from another store, restart."""
        await self.stop()
        self.repository.reinitialize(persistence)
        await self.start()
        logger.info(f"Switched workspace ({len(self.repository.get_projects())} projects)")


def build_engine(
    config: Optional[EngineConfig] = None,
    agent_comm: Optional[AgentCommunicationPort] = None,
    dashboard: Optional[DashboardPort] = None,
    messaging: Optional[MessagingPort] = None,
    persistence: Optional[PersistencePort] = None,
) -> PMEngine:
    """
    Construct the engine. Ports not given explicitly fall back to the HTTP
    adapters when their URL is configured.
    """
    config = config or EngineConfig.from_env()

    if dashboard is None and config.dashboard_url:
        dashboard = HttpDashboardClient(config.dashboard_url, timeout=config.http_timeout_seconds)
    if messaging is None:
        if config.webhook_url:
            messaging = WebhookMessenger(config.webhook_url, timeout=config.http_timeout_seconds)
        else:
            messaging = LoggingMessenger()
    if persistence is None:
        persistence = JsonFilePersistence(config.projects_file)

    cascade = CascadeController(agent_comm=agent_comm, dashboard=dashboard)
    repository = ProjectRepository(
        persistence,
        cascade=cascade,
        default_standup_interval_ms=config.default_standup_interval_ms,
    )
    loop = ReconciliationLoop(
        repository,
        agent_comm=agent_comm,
        dashboard=dashboard,
        messaging=messaging,
        interval_seconds=config.check_interval_seconds,
        startup_delay_seconds=config.startup_delay_seconds,
        progress_threshold=config.progress_notify_threshold,
    )
    return PMEngine(
        config=config,
        repository=repository,
        cascade=cascade,
        loop=loop,
        hooks=ExternalHooks(repository, dashboard=dashboard),
        workflow=ProjectWorkflow(repository, agent_comm=agent_comm),
    )


def create_app(engine: Optional[PMEngine] = None) -> FastAPI:
    engine = engine or build_engine()

    app = FastAPI(
        title="Project Engine",
        description="Project, milestone and task tracking with delegated-work reconciliation",
        version=__version__,
    )
    app.state.engine = engine
    app.state.repository = engine.repository
    app.include_router(pm_router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "projects": len(engine.repository.get_projects()),
            "loop_running": engine.loop.running,
        }

    # -------------------------------------------------------------------------
    # Startup/Shutdown Events
    # -------------------------------------------------------------------------
    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Project engine starting (data dir: {engine.config.data_dir})")
        await engine.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Project engine shutting down...")
        try:
            await engine.stop()
        except Exception as e:
            logger.error(f"Error stopping project engine: {e}")

    return app


# -----------------------------------------------------------------------------
# Main Entry Point (for development)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    _config = EngineConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, _config.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    uvicorn.run(create_app(build_engine(_config)), host="0.0.0.0", port=8000)
