"""FastAPI dependency providers.

Services are built once by :func:`flowbot.main.create_app` and stored on
``app.state``; routers pull them from the request.
"""

from fastapi import Request

from flowbot.services.execution_ledger import ExecutionLedger
from flowbot.services.execution_service import ExecutionService
from flowbot.services.scheduler_service import SchedulerService
from flowbot.services.webhook_dispatcher import WebhookDispatcher


def get_execution_service(request: Request) -> ExecutionService:
    return request.app.state.execution_service


def get_ledger(request: Request) -> ExecutionLedger:
    return request.app.state.ledger


def get_scheduler(request: Request) -> SchedulerService:
    return request.app.state.scheduler


def get_webhook_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.webhook_dispatcher
