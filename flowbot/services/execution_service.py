"""
Execution pipeline shared by every entry point.

``run_agent`` performs one full attempt: load connections, open a ledger
entry, run the step chain, finalise the entry and write the post-run
bookkeeping to the agent store. Manual execution, retries, the scheduler and
inbound webhooks all go through it.
"""

import logging
import time
from datetime import datetime
from typing import Any
from typing import Dict
from typing import Optional

from flowbot.connectors.resolver import CredentialResolver
from flowbot.crud import crud
from flowbot.database import SessionFactory
from flowbot.database import db_session
from flowbot.exceptions import AgentNotFoundError
from flowbot.exceptions import AgentValidationError
from flowbot.metrics import EXECUTION_DURATION_SECONDS
from flowbot.metrics import EXECUTIONS_TOTAL
from flowbot.models.enums import AgentStatus
from flowbot.models.enums import ExecutionTrigger
from flowbot.schemas.schemas import ExecutionResult
from flowbot.schemas.schemas import RetryResult
from flowbot.schemas.workflow import AgentDefinition
from flowbot.services.execution_ledger import ExecutionLedger
from flowbot.services.step_executor import StepExecutor
from flowbot.utils.time import utc_now_naive

logger = logging.getLogger(__name__)


class ExecutionService:
    def __init__(
        self,
        session_factory: SessionFactory,
        executor: StepExecutor,
        ledger: ExecutionLedger,
        resolver: CredentialResolver,
    ):
        self.session_factory = session_factory
        self.executor = executor
        self.ledger = ledger
        self.resolver = resolver

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def load_agent(self, agent_id: int) -> AgentDefinition:
        """Snapshot and validate an agent; raises AgentNotFoundError / AgentValidationError."""
        with db_session(self.session_factory) as db:
            row = crud.get_agent(db, agent_id)
            if row is None:
                raise AgentNotFoundError(agent_id)
            return AgentDefinition.parse(row)

    async def execute_agent(self, agent_id: int, trigger_data: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """Manual "execute now": bypasses the trigger evaluator."""
        agent = self.load_agent(agent_id)
        logger.info(f"[ExecutionService] Manual execution of agent {agent_id} ({agent.name})")
        return await self.run_agent(agent, trigger_data or {}, trigger_source=ExecutionTrigger.MANUAL)

    async def retry_execution(self, execution_id: int) -> RetryResult:
        """Replay a failed execution's stored trigger payload as a new entry.

        Raises ExecutionNotFoundError / RetryNotAllowedError before anything is
        written when the target is missing or not failed.
        """
        original = self.ledger.retry_source(execution_id)
        agent = self.load_agent(original.agent_id)
        logger.info(f"[ExecutionService] Retrying execution {execution_id} of agent {agent.id}")

        result = await self.run_agent(
            agent,
            original.trigger_data,
            trigger_source=ExecutionTrigger.RETRY,
            retry_of_id=execution_id,
        )
        return RetryResult(**result.model_dump(), original_execution_id=execution_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run_agent(
        self,
        agent: AgentDefinition,
        trigger_payload: Dict[str, Any],
        *,
        trigger_source: ExecutionTrigger,
        retry_of_id: Optional[int] = None,
        ran_at: Optional[datetime] = None,
        next_run_at: Optional[datetime] = None,
    ) -> ExecutionResult:
        """Run *agent* once and record the attempt in the ledger."""
        if agent.id is None:
            raise AgentValidationError("Agent must be persisted before it can run")

        connections = self.resolver.load(agent.user_id)
        execution_id = self.ledger.start(
            agent,
            trigger_payload,
            trigger_source=trigger_source,
            retry_of_id=retry_of_id,
        )
        started = time.monotonic()

        try:
            outcome = await self.executor.run(agent.workflow_steps, trigger_payload, connections)
        except Exception as exc:
            # The executor converts connector errors itself; this is a bug path
            logger.exception(f"[ExecutionService] Execution {execution_id} crashed")
            self.ledger.finish(execution_id, success=False, trace=[], output=None, error=f"Internal error: {exc}")
            self._record_agent_run(agent, success=False, ran_at=ran_at, next_run_at=next_run_at)
            raise

        error_message = str(outcome.error) if outcome.error else None
        self.ledger.finish(
            execution_id,
            success=outcome.success,
            trace=outcome.trace,
            output=outcome.context,
            error=error_message,
            failed_step_index=outcome.error.step_index if outcome.error else None,
        )
        self._record_agent_run(agent, success=outcome.success, ran_at=ran_at, next_run_at=next_run_at)

        status = "completed" if outcome.success else "failed"
        EXECUTIONS_TOTAL.labels(trigger_source=trigger_source.value, status=status).inc()
        EXECUTION_DURATION_SECONDS.observe(time.monotonic() - started)

        if outcome.success:
            logger.info(f"[ExecutionService] Agent {agent.id} execution {execution_id} completed successfully")
        else:
            logger.warning(f"[ExecutionService] Agent {agent.id} execution {execution_id} failed: {error_message}")

        return ExecutionResult(
            execution_id=execution_id,
            success=outcome.success,
            output=outcome.context,
            error=error_message,
        )

    def _record_agent_run(
        self,
        agent: AgentDefinition,
        *,
        success: bool,
        ran_at: Optional[datetime],
        next_run_at: Optional[datetime],
    ) -> None:
        with db_session(self.session_factory) as db:
            crud.record_agent_run(
                db,
                agent.id,
                status=AgentStatus.ACTIVE if success else AgentStatus.ERROR,
                last_run_at=ran_at or utc_now_naive(),
                next_run_at=next_run_at,
            )
