"""
Fleet controller main application
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

from . import __version__
from .bootstrap import seed_defaults
from .core.config import settings
from .core.database import database
from .core.exceptions import install_exception_handlers
from .core.logging import get_logger, setup_logging
from .routers import (
    agent_router,
    auth_router,
    groups_router,
    inbounds_router,
    monitoring_router,
    nodes_router,
    relay_router,
    sni_router,
    templates_router,
)
from .services.health_monitor import HealthMonitor
from .services.node_service import NodeService
from .services.rotation_scheduler import RotationScheduler
from .services.template_engine import TemplateEngine


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    setup_logging(settings.log_level, settings.log_format, settings.log_file)
    logger.info("Starting fleet controller...")

    await seed_defaults(database, settings)

    stop_event = asyncio.Event()
    app.state.stop_event = stop_event
    app.state.background_tasks = {
        "health_monitor": HealthMonitor(database, settings, stop_event=stop_event),
        "rotation_scheduler": RotationScheduler(
            database,
            settings,
            engine=TemplateEngine(database, settings),
            node_service=NodeService(database, settings),
            stop_event=stop_event,
        ),
    }
    if settings.background_tasks_enabled:
        for task in app.state.background_tasks.values():
            await task.start()

    logger.info("Fleet controller started successfully")

    yield

    logger.info("Shutting down fleet controller...")
    stop_event.set()
    for task in app.state.background_tasks.values():
        await task.stop()
    await database.dispose()
    logger.info("Fleet controller shut down")


def create_app() -> FastAPI:
    app = FastAPI(
        title="VPN Fleet Controller",
        description="Orchestration core for a fleet of VPN nodes",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.ALLOWED_HOSTS:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)

    install_exception_handlers(app)

    for router in (
        auth_router,
        agent_router,
        nodes_router,
        groups_router,
        templates_router,
        inbounds_router,
        sni_router,
        relay_router,
        monitoring_router,
    ):
        app.include_router(router)

    @app.get("/api")
    async def root():
        """API root endpoint"""
        return {
            "name": "VPN Fleet Controller API",
            "version": __version__,
            "status": "operational",
            "endpoints": {
                "auth": "/api/v1/auth",
                "agent": "/api/v1/agent",
                "nodes": "/api/v1/nodes",
                "groups": "/api/v1/groups",
                "templates": "/api/v1/templates",
                "inbounds": "/api/v1/inbounds",
                "sni": "/api/v1/sni",
                "relay": "/api/v1/relay",
                "monitoring": "/api/v1/monitoring",
                "docs": "/api/docs",
            },
        }

    return app


app = create_app()
