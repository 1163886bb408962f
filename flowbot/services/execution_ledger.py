"""Append-only record of execution attempts.

Entries move ``running`` → ``completed`` | ``failed`` exactly once. A
terminal entry is never modified again; a retry always appends a new entry.
"""

import logging
from datetime import timedelta
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence

from flowbot.crud import crud
from flowbot.database import SessionFactory
from flowbot.database import db_session
from flowbot.exceptions import ExecutionNotFoundError
from flowbot.exceptions import IllegalTransitionError
from flowbot.exceptions import RetryNotAllowedError
from flowbot.models.enums import ExecutionStatus
from flowbot.models.enums import ExecutionTrigger
from flowbot.schemas.schemas import ExecutionOut
from flowbot.schemas.schemas import StepTrace
from flowbot.schemas.workflow import AgentDefinition
from flowbot.utils.time import utc_now_naive

logger = logging.getLogger(__name__)


class ExecutionStateMachine:
    """Transition rules for ledger entries."""

    @staticmethod
    def can_finish(status: ExecutionStatus) -> bool:
        """Only running entries can be finalised."""
        return status == ExecutionStatus.RUNNING

    @staticmethod
    def can_retry(status: ExecutionStatus) -> bool:
        """Only failed entries can be retried."""
        return status == ExecutionStatus.FAILED

    @staticmethod
    def terminal_status(success: bool) -> ExecutionStatus:
        return ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED


class ExecutionLedger:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def start(
        self,
        agent: AgentDefinition,
        trigger_payload: Dict[str, Any],
        *,
        trigger_source: ExecutionTrigger,
        retry_of_id: Optional[int] = None,
    ) -> int:
        """Create the *running* entry and return its id."""
        with db_session(self.session_factory) as db:
            started_at = utc_now_naive()
            latest = crud.latest_execution_start(db, agent.id)
            if latest is not None and started_at <= latest:
                # Keep per-agent start times strictly increasing
                started_at = latest + timedelta(microseconds=1)

            row = crud.create_execution(
                db,
                agent_id=agent.id,
                user_id=agent.user_id,
                agent_version=agent.version,
                trigger_source=trigger_source,
                trigger_data=trigger_payload,
                started_at=started_at,
                retry_of_id=retry_of_id,
            )
            logger.info(f"[ExecutionLedger] Started execution {row.id} for agent {agent.id} ({trigger_source.value})")
            return row.id

    def finish(
        self,
        execution_id: int,
        *,
        success: bool,
        trace: Sequence[StepTrace],
        output: Optional[Dict[str, Any]],
        error: Optional[str] = None,
        failed_step_index: Optional[int] = None,
    ) -> ExecutionOut:
        """Stamp the terminal status; raises IllegalTransitionError if already terminal."""
        status = ExecutionStateMachine.terminal_status(success)
        with db_session(self.session_factory) as db:
            row = crud.get_execution(db, execution_id)
            if row is None:
                raise ExecutionNotFoundError(execution_id)
            if not ExecutionStateMachine.can_finish(row.status):
                raise IllegalTransitionError(f"Execution {execution_id} is already {row.status.value}")

            finished = crud.finish_execution(
                db,
                execution_id,
                status=status,
                trace=[entry.model_dump(mode="json") for entry in trace],
                output=output,
                error=error,
                failed_step_index=failed_step_index,
            )
            if not finished:
                # Lost a race with another finisher
                raise IllegalTransitionError(f"Execution {execution_id} was finalised concurrently")

            db.expire_all()
            entry = ExecutionOut.model_validate(crud.get_execution(db, execution_id))

        logger.info(f"[ExecutionLedger] Execution {execution_id} {status.value} in {entry.duration_ms}ms")
        return entry

    def get(self, execution_id: int) -> Optional[ExecutionOut]:
        with db_session(self.session_factory) as db:
            row = crud.get_execution(db, execution_id)
            return ExecutionOut.model_validate(row) if row is not None else None

    def list(
        self,
        *,
        agent_id: Optional[int] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ExecutionOut]:
        with db_session(self.session_factory) as db:
            rows = crud.list_executions(db, agent_id=agent_id, status=status, limit=limit, offset=offset)
            return [ExecutionOut.model_validate(row) for row in rows]

    def retry_source(self, execution_id: int) -> ExecutionOut:
        """Return the entry a retry would replay, enforcing the failed-only rule."""
        entry = self.get(execution_id)
        if entry is None:
            raise ExecutionNotFoundError(execution_id)
        if not ExecutionStateMachine.can_retry(entry.status):
            raise RetryNotAllowedError(execution_id, entry.status.value)
        return entry
