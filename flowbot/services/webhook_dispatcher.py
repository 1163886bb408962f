"""Inbound webhook fan-out.

Resolves which webhook agents an inbound request addresses (endpoint prefix
plus optional event allow-list) and runs each of them with the request as
its trigger payload, under the ``webhook`` key.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping

from flowbot.crud import crud
from flowbot.database import SessionFactory
from flowbot.database import db_session
from flowbot.exceptions import AgentValidationError
from flowbot.metrics import WEBHOOK_DELIVERIES_TOTAL
from flowbot.models.enums import ExecutionTrigger
from flowbot.schemas.schemas import WebhookAgentResult
from flowbot.schemas.schemas import WebhookReport
from flowbot.schemas.workflow import AgentDefinition
from flowbot.services.execution_service import ExecutionService
from flowbot.utils.time import utc_now

logger = logging.getLogger(__name__)

UNKNOWN_EVENT = "unknown"


@dataclass
class WebhookDelivery:
    path: str
    method: str
    headers: Dict[str, str] = field(default_factory=dict)
    payload: Any = None


def normalise_path(path: str) -> str:
    return "/" + path.strip().lstrip("/")


def detect_event_type(headers: Mapping[str, str], payload: Any) -> str:
    """Best-effort event name: GitHub header, then Slack ``type``, then ``event_type``."""
    lowered = {key.lower(): value for key, value in headers.items()}
    if lowered.get("x-github-event"):
        return f"github.{lowered['x-github-event']}"
    if isinstance(payload, Mapping):
        if payload.get("type"):
            return f"slack.{payload['type']}"
        if payload.get("event_type"):
            return str(payload["event_type"])
    return UNKNOWN_EVENT


def agent_matches(agent: AgentDefinition, path: str, event_type: str) -> bool:
    config = agent.webhook_config()
    endpoint = config.endpoint.strip()
    if not endpoint:
        return False
    if not normalise_path(path).startswith(normalise_path(endpoint)):
        return False
    if config.events and event_type not in config.events:
        return False
    return True


class WebhookDispatcher:
    def __init__(self, session_factory: SessionFactory, executions: ExecutionService):
        self.session_factory = session_factory
        self.executions = executions

    def matching_agents(self, path: str, event_type: str) -> List[AgentDefinition]:
        with db_session(self.session_factory) as db:
            rows = crud.list_webhook_agents(db)
            candidates = []
            for row in rows:
                try:
                    candidates.append(AgentDefinition.parse(row))
                except AgentValidationError as exc:
                    logger.warning(f"[WebhookDispatcher] Skipping invalid agent {row.id}: {exc}")

        matched = []
        for agent in candidates:
            try:
                if agent_matches(agent, path, event_type):
                    matched.append(agent)
            except AgentValidationError as exc:
                logger.warning(f"[WebhookDispatcher] Skipping agent {agent.id} with bad trigger_config: {exc}")
        return matched

    async def dispatch(self, delivery: WebhookDelivery) -> WebhookReport:
        path = normalise_path(delivery.path)
        event_type = detect_event_type(delivery.headers, delivery.payload)
        agents = self.matching_agents(path, event_type)
        WEBHOOK_DELIVERIES_TOTAL.labels(matched="yes" if agents else "no").inc()
        logger.info(f"[WebhookDispatcher] {delivery.method} {path} ({event_type}) matched {len(agents)} agent(s)")

        trigger_payload = {
            "webhook": {
                "path": path,
                "method": delivery.method,
                "headers": dict(delivery.headers),
                "payload": delivery.payload,
                "event_type": event_type,
                "timestamp": utc_now().isoformat(),
            }
        }

        results: List[WebhookAgentResult] = []
        for agent in agents:
            try:
                outcome = await self.executions.run_agent(
                    agent, trigger_payload, trigger_source=ExecutionTrigger.WEBHOOK
                )
            except Exception as exc:  # noqa: BLE001 - other agents still get the delivery
                logger.exception(f"[WebhookDispatcher] Agent {agent.id} crashed handling {path}")
                results.append(
                    WebhookAgentResult(agent_id=agent.id, agent_name=agent.name, success=False, error=str(exc))
                )
                continue
            results.append(
                WebhookAgentResult(
                    agent_id=agent.id,
                    agent_name=agent.name,
                    execution_id=outcome.execution_id,
                    success=outcome.success,
                    error=outcome.error,
                )
            )

        return WebhookReport(agents_triggered=len(agents), event_type=event_type, results=results)
