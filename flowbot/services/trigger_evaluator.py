"""
Trigger Evaluator

Decides, per agent and tick, whether the agent should run and what trigger
payload its execution starts from. Evaluation never raises: connection or
provider problems come back as ``run=False`` with a reason so the scheduler
can carry on with the other agents.

Inbox and messaging triggers keep a provider watermark in the agent's
``trigger_state`` so the same message never starts two executions:

- inbox: ``last_internal_date`` (Gmail ``internalDate`` in ms)
- messaging: ``last_update_id`` (Telegram update id)
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Dict
from typing import Optional

from flowbot.connectors.messaging import normalise_update
from flowbot.connectors.registry import ConnectorRegistry
from flowbot.connectors.resolver import CredentialResolver
from flowbot.exceptions import AgentValidationError
from flowbot.exceptions import ConnectorError
from flowbot.exceptions import TriggerEvaluationError
from flowbot.metrics import TRIGGER_EVALUATIONS_TOTAL
from flowbot.models.enums import ServiceType
from flowbot.models.enums import TriggerType
from flowbot.schemas.workflow import AgentDefinition
from flowbot.schemas.workflow import ServiceCredentials
from flowbot.services.email_filtering import matches
from flowbot.services.email_filtering import message_matches

logger = logging.getLogger(__name__)

REASON_NOT_DUE = "not due"
REASON_SCHEDULE_DISABLED = "schedule disabled"
REASON_CONNECTION_MISSING = "connection missing"
REASON_NO_MATCH = "no match"
REASON_WATERMARK_INITIALISED = "watermark initialised"
REASON_WEBHOOK_ONLY = "webhook agents run on inbound requests only"

# Upper bound on Gmail listing pages read per inbox check
INBOX_MAX_PAGES = 10


@dataclass
class TriggerDecision:
    run: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    # Provider state to persist on the agent, present even when run is False
    watermark: Dict[str, Any] = field(default_factory=dict)


class TriggerEvaluator:
    def __init__(self, connectors: ConnectorRegistry, resolver: CredentialResolver):
        self.connectors = connectors
        self.resolver = resolver

    async def evaluate(self, agent: AgentDefinition, now: datetime) -> TriggerDecision:
        """Return the run decision for *agent* at *now* (naive UTC)."""
        trigger_type = agent.trigger_type
        try:
            if trigger_type == TriggerType.SCHEDULE:
                decision = self._evaluate_schedule(agent, now)
            elif trigger_type == TriggerType.INBOX:
                decision = await self._evaluate_inbox(agent, now)
            elif trigger_type == TriggerType.MESSAGING_INBOUND:
                decision = await self._evaluate_messaging(agent)
            else:
                decision = TriggerDecision(run=False, reason=REASON_WEBHOOK_ONLY)
        except (TriggerEvaluationError, AgentValidationError) as exc:
            logger.warning(f"[TriggerEvaluator] Agent {agent.id} trigger check failed: {exc}")
            decision = TriggerDecision(run=False, reason=f"trigger check failed: {exc}")
        except Exception as exc:  # noqa: BLE001 - one agent must not break the tick
            logger.exception(f"[TriggerEvaluator] Unexpected error evaluating agent {agent.id}")
            decision = TriggerDecision(run=False, reason=f"trigger check failed: {exc}")

        outcome = "run" if decision.run else "skip"
        TRIGGER_EVALUATIONS_TOTAL.labels(trigger_type=trigger_type.value, outcome=outcome).inc()
        logger.debug(f"[TriggerEvaluator] Agent {agent.id} ({trigger_type.value}): {outcome} {decision.reason or ''}")
        return decision

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    def _evaluate_schedule(self, agent: AgentDefinition, now: datetime) -> TriggerDecision:
        if not agent.schedule_config.enabled:
            return TriggerDecision(run=False, reason=REASON_SCHEDULE_DISABLED)
        if agent.next_run_at is not None and agent.next_run_at > now:
            return TriggerDecision(run=False, reason=REASON_NOT_DUE)
        return TriggerDecision(run=True, payload={"scheduled_time": now.isoformat()})

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    async def _evaluate_inbox(self, agent: AgentDefinition, now: datetime) -> TriggerDecision:
        credentials = self._credentials(agent, ServiceType.GMAIL)
        if credentials is None:
            return TriggerDecision(run=False, reason=REASON_CONNECTION_MISSING)

        config = agent.inbox_config()
        last_seen = agent.trigger_state.get("last_internal_date")
        if last_seen is None:
            # First poll only records where "new" starts
            return TriggerDecision(
                run=False,
                reason=REASON_WATERMARK_INITIALISED,
                watermark={"last_internal_date": _epoch_ms(now)},
            )
        last_seen = int(last_seen)

        query_parts = [config.query] if config.query else []
        query_parts.append(f"after:{last_seen // 1000}")
        try:
            emails = await self.connectors.inbox.fetch_messages(
                credentials,
                query=" ".join(query_parts),
                label=config.label,
                max_results=config.max_results,
                newer_than=last_seen,
                max_pages=INBOX_MAX_PAGES,
            )
        except ConnectorError as exc:
            raise TriggerEvaluationError(f"inbox check failed: {exc}") from exc

        fresh = [email for email in emails if email["internal_date"] > last_seen]
        if not fresh:
            return TriggerDecision(run=False, reason=REASON_NO_MATCH)

        watermark = {"last_internal_date": max(email["internal_date"] for email in fresh)}
        matched = [email for email in fresh if matches(email, config.model_dump())]
        if not matched:
            return TriggerDecision(run=False, reason=REASON_NO_MATCH, watermark=watermark)

        matched.sort(key=lambda email: email["internal_date"], reverse=True)
        return TriggerDecision(
            run=True,
            payload={"emails": matched, "email_count": len(matched)},
            watermark=watermark,
        )

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def _evaluate_messaging(self, agent: AgentDefinition) -> TriggerDecision:
        credentials = self._credentials(agent, ServiceType.TELEGRAM)
        if credentials is None:
            return TriggerDecision(run=False, reason=REASON_CONNECTION_MISSING)

        config = agent.messaging_config()
        last_update_id = agent.trigger_state.get("last_update_id")
        offset = int(last_update_id) + 1 if last_update_id is not None else None
        try:
            updates = await self.connectors.messaging.fetch_updates(credentials, offset=offset)
        except ConnectorError as exc:
            raise TriggerEvaluationError(f"messaging check failed: {exc}") from exc

        update_ids = [u["update_id"] for u in updates if isinstance(u.get("update_id"), int)]
        if offset is None:
            # First poll skips the pending backlog; 0 marks "initialised, nothing pending"
            return TriggerDecision(
                run=False,
                reason=REASON_WATERMARK_INITIALISED,
                watermark={"last_update_id": max(update_ids, default=0)},
            )
        update_ids = [uid for uid in update_ids if uid >= offset]
        if not update_ids:
            return TriggerDecision(run=False, reason=REASON_NO_MATCH)

        watermark = {"last_update_id": max(update_ids)}
        messages = [
            message
            for message in (normalise_update(u) for u in updates if u.get("update_id") in update_ids)
            if message is not None and message_matches(message, config.model_dump())
        ]
        if not messages:
            return TriggerDecision(run=False, reason=REASON_NO_MATCH, watermark=watermark)

        return TriggerDecision(
            run=True,
            payload={
                "messages": messages,
                "message_count": len(messages),
                "text": "\n".join(m["text"] for m in messages),
            },
            watermark=watermark,
        )

    # ------------------------------------------------------------------

    def _credentials(self, agent: AgentDefinition, service_type: ServiceType) -> Optional[ServiceCredentials]:
        try:
            connections = self.resolver.load(agent.user_id)
        except Exception as exc:  # noqa: BLE001 - surfaced as a skipped tick
            raise TriggerEvaluationError(f"connection lookup failed: {exc}") from exc
        credentials = connections.get(service_type)
        if credentials is None or not credentials.access_token:
            return None
        return credentials


def _epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)
