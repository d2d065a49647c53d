from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from octopus.application.api.route.runs import router as runs_router
from octopus.application.websocket.connection_manager import ConnectionManager
from octopus.application.websocket.ws_server import router as ws_router
from octopus.core.config import Settings, get_settings
from octopus.domain.context.state.run_repository import InMemoryRunRepository, RunRepository
from octopus.domain.orchestration.run_orchestrator import RunOrchestrator
from octopus.domain.tool.builtin import build_registry
from octopus.domain.tool.tool_registry import ToolRegistry
from octopus.infrastructure.observability.logging import setup_logging
from octopus.infrastructure.persistence.history import InMemoryHistory
from octopus.infrastructure.persistence.hooks import PersistenceHooks

logger = structlog.get_logger(__name__)


class AppServices:
    """Everything the HTTP and WebSocket handlers share"""

    def __init__(
        self,
        settings: Settings,
        repository: RunRepository,
        registry: ToolRegistry,
        history: InMemoryHistory,
        orchestrator: RunOrchestrator,
        connection_manager: ConnectionManager
    ):
        self.settings = settings
        self.repository = repository
        self.registry = registry
        self.history = history
        self.orchestrator = orchestrator
        self.connection_manager = connection_manager

    @property
    def hooks(self) -> PersistenceHooks:
        return self.orchestrator.hooks


def build_services(settings: Settings, registry: Optional[ToolRegistry] = None, **orchestrator_kwargs) -> AppServices:
    repository = InMemoryRunRepository()
    history = InMemoryHistory()
    registry = registry or build_registry(settings)
    orchestrator = RunOrchestrator.from_settings(
        settings,
        repository=repository,
        registry=registry,
        hooks=PersistenceHooks(history),
        **orchestrator_kwargs
    )
    return AppServices(
        settings=settings,
        repository=repository,
        registry=registry,
        history=history,
        orchestrator=orchestrator,
        connection_manager=ConnectionManager()
    )


def create_app(settings: Optional[Settings] = None, services: Optional[AppServices] = None) -> FastAPI:
    """Build the Octopus API application"""

    settings = settings or (services.settings if services else get_settings())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Octopus API started", tools=services.registry.known_tools())
        yield
        for connection_id in list(services.connection_manager.active_connections):
            await services.connection_manager.disconnect(connection_id)
        await services.hooks.drain()
        logger.info("Octopus API shutdown")

    app = FastAPI(title="Octopus Run Orchestrator", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(runs_router)
    app.include_router(ws_router)
    return app


def main():
    import uvicorn

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name, settings.environment)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
