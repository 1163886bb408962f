"""Application factory.

Run with ``uvicorn --factory flowbot.main:create_app``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import openai
from fastapi import FastAPI

from flowbot import __version__
from flowbot.config import Settings
from flowbot.config import configure_logging
from flowbot.config import load_settings
from flowbot.connectors.base import USER_AGENT
from flowbot.connectors.registry import build_connector_registry
from flowbot.connectors.registry import build_llm_client
from flowbot.connectors.resolver import CredentialResolver
from flowbot.database import SessionFactory
from flowbot.database import initialize_database
from flowbot.database import make_engine
from flowbot.database import make_sessionmaker
from flowbot.routers.executions import router as executions_router
from flowbot.routers.metrics import router as metrics_router
from flowbot.routers.scheduler import router as scheduler_router
from flowbot.routers.webhooks import router as webhooks_router
from flowbot.services.execution_ledger import ExecutionLedger
from flowbot.services.execution_service import ExecutionService
from flowbot.services.scheduler_service import SchedulerService
from flowbot.services.step_executor import StepExecutor
from flowbot.services.trigger_evaluator import TriggerEvaluator
from flowbot.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

API_PREFIX = "/api"


def create_app(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[SessionFactory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    llm_client: Optional[openai.AsyncOpenAI] = None,
) -> FastAPI:
    """Build the FastAPI app and wire every service from *settings*.

    Tests pass their own session factory and clients; in production they
    are created here from the settings.
    """
    settings = settings or load_settings()
    configure_logging(settings)

    if session_factory is None:
        engine = make_engine(settings.database_url)
        initialize_database(engine)
        session_factory = make_sessionmaker(engine)

    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            headers={"User-Agent": USER_AGENT},
        )
    if llm_client is None:
        llm_client = build_llm_client(settings)

    connectors = build_connector_registry(settings, http_client, llm_client)
    resolver = CredentialResolver(session_factory)
    ledger = ExecutionLedger(session_factory)
    executor = StepExecutor(
        connectors,
        step_timeout=settings.step_timeout_seconds,
        execution_timeout=settings.execution_timeout_seconds,
    )
    execution_service = ExecutionService(session_factory, executor, ledger, resolver)
    evaluator = TriggerEvaluator(connectors, resolver)
    scheduler = SchedulerService(session_factory, evaluator, execution_service, settings)
    webhook_dispatcher = WebhookDispatcher(session_factory, execution_service)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Background ticks stay off under tests unless explicitly enabled
        if settings.scheduler_enabled and not settings.testing:
            await scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()
            if owns_http_client:
                await http_client.aclose()

    app = FastAPI(title="FlowBot", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.ledger = ledger
    app.state.execution_service = execution_service
    app.state.scheduler = scheduler
    app.state.webhook_dispatcher = webhook_dispatcher

    app.include_router(executions_router, prefix=API_PREFIX)
    app.include_router(scheduler_router, prefix=API_PREFIX)
    app.include_router(webhooks_router, prefix=API_PREFIX)
    app.include_router(metrics_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    logger.info("FlowBot application created")
    return app
