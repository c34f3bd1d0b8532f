"""Application entrypoint for the IDP Provisioning Service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis
from fastapi import FastAPI

from .api.routes import register_error_handlers
from .api.routes import router as api_router
from .config import AppConfig, EngineBackend, PersistenceBackend, get_settings
from .events.consumer import EventConsumer
from .events.publisher import AuditEventPublisher, RabbitMQPublisher
from .orchestration.engines.argo import ArgoWorkflowEngine
from .orchestration.engines.base import WorkflowEngine
from .orchestration.engines.pulumi_stack import PulumiStackEngine
from .orchestration.main import WorkflowOrchestrator
from .orchestration.strategy import StrategyToggle
from .services.cluster_api import KubernetesClients, KubernetesClusterApi
from .services.repository import InMemoryWorkflowRepository, RedisWorkflowRepository, WorkflowRepository

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: AppConfig = app.state.settings
    event_consumer: Optional[EventConsumer] = app.state.event_consumer
    LOGGER.info("Starting IDP Provisioning Service", extra={"service": settings.service_name})
    if event_consumer is not None:
        event_consumer.start()
    yield
    LOGGER.info("Shutting down IDP Provisioning Service")
    if event_consumer is not None:
        event_consumer.stop()
    app.state.orchestrator.shutdown(wait=False)
    if isinstance(app.state.engine, PulumiStackEngine):
        app.state.engine.shutdown()
    if app.state.redis is not None:
        app.state.redis.close()
    if app.state.event_publisher is not None:
        app.state.event_publisher.close()


def build_engine(settings: AppConfig, clients: KubernetesClients) -> WorkflowEngine:
    if settings.engine.backend == EngineBackend.PULUMI:
        return PulumiStackEngine(settings.pulumi)
    return ArgoWorkflowEngine(clients, settings.argo)


def create_app(
    settings: Optional[AppConfig] = None, orchestrator: Optional[WorkflowOrchestrator] = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    A pre-built ``orchestrator`` skips construction of the Redis, RabbitMQ and
    Kubernetes collaborators.
    """

    settings = settings or get_settings()
    logging.basicConfig(level=settings.logging.level, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    redis_client = None
    event_publisher = None
    audit_publisher = None
    event_consumer = None
    engine: Optional[WorkflowEngine] = None
    if orchestrator is None:
        repository: WorkflowRepository
        if settings.persistence == PersistenceBackend.REDIS:
            redis_client = redis.from_url(settings.redis.url, decode_responses=settings.redis.decode_responses)
            repository = RedisWorkflowRepository(redis_client, settings.redis.key_prefix)
        else:
            repository = InMemoryWorkflowRepository()
        if settings.events_enabled:
            event_publisher = RabbitMQPublisher(settings)
            audit_publisher = AuditEventPublisher(event_publisher, settings.service_name)
        clients = KubernetesClients(settings.kubernetes)
        engine = build_engine(settings, clients)
        orchestrator = WorkflowOrchestrator(
            repository,
            engine,
            KubernetesClusterApi(clients),
            toggle=StrategyToggle(settings.use_direct_strategy),
            polling=settings.polling,
            max_workers=settings.max_concurrent_workflows,
            event_publisher=event_publisher,
            audit_publisher=audit_publisher,
        )
        if settings.events_enabled:
            event_consumer = EventConsumer(settings, orchestrator.handle_event)

    app = FastAPI(
        title="IDP Provisioning Service",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(api_router, prefix=settings.api_prefix)
    register_error_handlers(app)

    app.state.settings = settings
    app.state.redis = redis_client
    app.state.orchestrator = orchestrator
    app.state.engine = engine
    app.state.event_publisher = event_publisher
    app.state.audit_publisher = audit_publisher
    app.state.event_consumer = event_consumer

    return app


app = create_app()


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("idp_orchestrator.main:app", host="0.0.0.0", port=8000, reload=False)
