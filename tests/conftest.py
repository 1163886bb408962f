import json
from types import SimpleNamespace
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple
from typing import Union
from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from flowbot.config import Settings
from flowbot.connectors.registry import build_connector_registry
from flowbot.connectors.resolver import CredentialResolver
from flowbot.crud import crud
from flowbot.database import Base
from flowbot.database import make_engine
from flowbot.database import make_sessionmaker
from flowbot.main import create_app
from flowbot.models.enums import ServiceType
from flowbot.models.models import Agent
from flowbot.schemas.workflow import AgentDefinition
from flowbot.services.execution_ledger import ExecutionLedger
from flowbot.services.execution_service import ExecutionService
from flowbot.services.scheduler_service import SchedulerService
from flowbot.services.step_executor import StepExecutor
from flowbot.services.trigger_evaluator import TriggerEvaluator
from flowbot.services.webhook_dispatcher import WebhookDispatcher

LLM_REPLY = "This is a mock response from the LLM"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads via StaticPool."""
    test_engine = make_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def test_session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def db_session(test_session_factory):
    db = test_session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def settings():
    return Settings(
        testing=True,
        database_url="sqlite:///:memory:",
        llm_api_key="test-key",
        step_timeout_seconds=5.0,
        execution_timeout_seconds=10.0,
        scheduler_max_concurrency=4,
        agent_lease_seconds=600,
    )


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------


Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class MockHTTP:
    """Route table for ``httpx.MockTransport`` that records every request."""

    def __init__(self):
        self.routes: List[Tuple[str, str, Responder]] = []
        self.requests: List[httpx.Request] = []

    def add(self, method: str, url_prefix: str, response: Responder) -> None:
        self.routes.append((method.upper(), url_prefix, response))

    def add_json(self, method: str, url_prefix: str, payload: Any, status_code: int = 200) -> None:
        self.add(method, url_prefix, httpx.Response(status_code, json=payload))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        for method, prefix, response in self.routes:
            if request.method == method and url.startswith(prefix):
                return response(request) if callable(response) else response
        return httpx.Response(404, json={"message": f"no mock route for {request.method} {url}"})

    def sent_json(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content)


@pytest.fixture
def mock_http():
    return MockHTTP()


@pytest.fixture
def http_client(mock_http):
    return httpx.AsyncClient(transport=httpx.MockTransport(mock_http.handler))


def _completion(content: str):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def llm_client():
    """Stand-in for ``openai.AsyncOpenAI``; only chat.completions.create is used."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_completion(LLM_REPLY))
    return client


# ---------------------------------------------------------------------------
# Engine services
# ---------------------------------------------------------------------------


@pytest.fixture
def connectors(settings, http_client, llm_client):
    return build_connector_registry(settings, http_client, llm_client)


@pytest.fixture
def resolver(test_session_factory):
    return CredentialResolver(test_session_factory)


@pytest.fixture
def ledger(test_session_factory):
    return ExecutionLedger(test_session_factory)


@pytest.fixture
def executor(connectors, settings):
    return StepExecutor(
        connectors,
        step_timeout=settings.step_timeout_seconds,
        execution_timeout=settings.execution_timeout_seconds,
    )


@pytest.fixture
def execution_service(test_session_factory, executor, ledger, resolver):
    return ExecutionService(test_session_factory, executor, ledger, resolver)


@pytest.fixture
def evaluator(connectors, resolver):
    return TriggerEvaluator(connectors, resolver)


@pytest.fixture
def scheduler(test_session_factory, evaluator, execution_service, settings):
    service = SchedulerService(test_session_factory, evaluator, execution_service, settings)
    yield service
    if service._initialized:
        service.scheduler.shutdown(wait=False)


@pytest.fixture
def webhook_dispatcher(test_session_factory, execution_service):
    return WebhookDispatcher(test_session_factory, execution_service)


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_agent(db_session):
    """Create an agent row from keyword overrides and return its id."""

    def _make(**overrides: Any) -> int:
        data: Dict[str, Any] = {
            "user_id": "user-1",
            "name": "Test Agent",
            "trigger_type": "schedule",
            "trigger_config": {},
            "workflow_steps": [],
            "schedule_config": {"interval": "hourly", "enabled": True},
        }
        data.update(overrides)
        row = crud.create_agent(db_session, AgentDefinition.parse(data))
        return row.id

    return _make


@pytest.fixture
def add_connection(db_session):
    def _add(
        service_type: ServiceType,
        access_token: Optional[str] = "token-123",
        user_id: str = "user-1",
        **service_config: Any,
    ):
        return crud.upsert_connection(
            db_session,
            user_id=user_id,
            service_type=service_type,
            access_token=access_token,
            service_config=service_config,
        )

    return _add


@pytest.fixture
def fetch_agent(test_session_factory):
    """Read an agent row through a fresh session (the fixture session caches rows)."""

    def _fetch(agent_id: int) -> Agent:
        db = test_session_factory()
        try:
            return crud.get_agent(db, agent_id)
        finally:
            db.close()

    return _fetch


@pytest.fixture
def set_agent_fields(test_session_factory):
    """Write raw column values, bypassing validation."""

    def _set(agent_id: int, **fields: Any) -> None:
        db = test_session_factory()
        try:
            db.query(Agent).filter(Agent.id == agent_id).update(fields, synchronize_session=False)
            db.commit()
        finally:
            db.close()

    return _set


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


@pytest.fixture
def client(settings, test_session_factory, http_client, llm_client):
    app = create_app(
        settings,
        session_factory=test_session_factory,
        http_client=http_client,
        llm_client=llm_client,
    )
    with TestClient(app) as test_client:
        yield test_client
