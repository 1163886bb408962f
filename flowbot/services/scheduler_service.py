"""
Scheduler Service

``tick`` is one finite batch pass over the agent store:

- select active agents that are due (schedule) or pollable (inbox, messaging)
- claim each one with a lease so concurrent ticks never run it twice
- evaluate its trigger and, when eligible, run the step chain
- write ``last_run_at`` / ``next_run_at`` / ``status`` back

Agents are processed concurrently up to ``scheduler_max_concurrency``; the
steps inside one agent always run sequentially. ``tick`` can be driven
externally (``POST /api/scheduler/tick``) or by the APScheduler interval job
started with :meth:`SchedulerService.start`.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from flowbot.config import Settings
from flowbot.crud import crud
from flowbot.database import SessionFactory
from flowbot.database import db_session
from flowbot.exceptions import AgentValidationError
from flowbot.models.enums import AgentStatus
from flowbot.models.enums import ExecutionTrigger
from flowbot.models.enums import ScheduleInterval
from flowbot.schemas.schemas import AgentTickResult
from flowbot.schemas.schemas import TickReport
from flowbot.schemas.workflow import AgentDefinition
from flowbot.services.execution_service import ExecutionService
from flowbot.services.trigger_evaluator import TriggerEvaluator
from flowbot.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

TICK_JOB_ID = "flowbot_scheduler_tick"
REASON_CLAIMED = "claimed by another tick"
REASON_INACTIVE = "agent no longer active"


class SchedulerService:
    """Periodic driver for due and pollable agents."""

    def __init__(
        self,
        session_factory: SessionFactory,
        evaluator: TriggerEvaluator,
        executions: ExecutionService,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.evaluator = evaluator
        self.executions = executions
        self.settings = settings
        self.scheduler = AsyncIOScheduler()
        self._initialized = False

    # ------------------------------------------------------------------
    # Periodic driver
    # ------------------------------------------------------------------

    async def start(self):
        """Start the interval job if not already running."""
        if not self._initialized:
            self.scheduler.add_job(
                self.tick,
                IntervalTrigger(seconds=self.settings.scheduler_interval_seconds),
                id=TICK_JOB_ID,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self.scheduler.start()
            self._initialized = True
            logger.info(f"Scheduler service started (every {self.settings.scheduler_interval_seconds}s)")

    async def stop(self):
        """Shutdown the scheduler gracefully."""
        if self._initialized:
            self.scheduler.shutdown(wait=False)
            self._initialized = False
            logger.info("Scheduler service stopped")

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or utc_now_naive()
        with db_session(self.session_factory) as db:
            # Plain tuples only; rows are re-read under the lease
            candidates = [(row.id, row.name) for row in crud.list_schedulable_agents(db, now)]

        if not candidates:
            logger.debug("[Scheduler] No agents due")
            return TickReport(processed=0, results=[])

        logger.info(f"[Scheduler] Tick at {now.isoformat()} - {len(candidates)} candidate agent(s)")
        semaphore = asyncio.Semaphore(max(1, self.settings.scheduler_max_concurrency))

        async def guarded(agent_id: int, agent_name: str) -> AgentTickResult:
            async with semaphore:
                return await self._process_agent(agent_id, agent_name, now)

        results = await asyncio.gather(*(guarded(agent_id, name) for agent_id, name in candidates))
        processed = sum(1 for result in results if result.execution_id is not None)
        logger.info(f"[Scheduler] Tick finished - {processed} execution(s)")
        return TickReport(processed=processed, results=list(results))

    async def _process_agent(self, agent_id: int, agent_name: str, now: datetime) -> AgentTickResult:
        if not self._claim(agent_id, now):
            return AgentTickResult(agent_id=agent_id, agent_name=agent_name, success=False, skipped_reason=REASON_CLAIMED)

        try:
            return await self._run_claimed(agent_id, agent_name, now)
        except Exception as exc:  # noqa: BLE001 - keep the rest of the tick going
            logger.exception(f"[Scheduler] Agent {agent_id} failed during tick")
            return AgentTickResult(agent_id=agent_id, agent_name=agent_name, success=False, error=str(exc))
        finally:
            with db_session(self.session_factory) as db:
                crud.release_agent(db, agent_id)

    async def _run_claimed(self, agent_id: int, agent_name: str, now: datetime) -> AgentTickResult:
        with db_session(self.session_factory) as db:
            row = crud.get_agent(db, agent_id)
            if row is None or row.status != AgentStatus.ACTIVE:
                return AgentTickResult(agent_id=agent_id, agent_name=agent_name, success=False, skipped_reason=REASON_INACTIVE)
            try:
                agent = AgentDefinition.parse(row)
            except AgentValidationError as exc:
                logger.warning(f"[Scheduler] Agent {agent_id} has an invalid definition: {exc}")
                crud.mark_agent_invalid(db, agent_id, next_run_at=now + _raw_interval(row.schedule_config).delta)
                return AgentTickResult(agent_id=agent_id, agent_name=agent_name, success=False, error=str(exc))

        decision = await self.evaluator.evaluate(agent, now)
        if decision.watermark:
            with db_session(self.session_factory) as db:
                crud.update_trigger_state(db, agent_id, decision.watermark)

        if not decision.run:
            return AgentTickResult(agent_id=agent_id, agent_name=agent.name, success=False, skipped_reason=decision.reason)

        outcome = await self.executions.run_agent(
            agent,
            decision.payload,
            trigger_source=ExecutionTrigger(agent.trigger_type.value),
            ran_at=now,
            next_run_at=now + agent.schedule_config.interval.delta,
        )
        return AgentTickResult(
            agent_id=agent_id,
            agent_name=agent.name,
            success=outcome.success,
            execution_id=outcome.execution_id,
            error=outcome.error,
        )

    def _claim(self, agent_id: int, now: datetime) -> bool:
        with db_session(self.session_factory) as db:
            claimed = crud.claim_agent(db, agent_id, now=now, lease_seconds=self.settings.agent_lease_seconds)
        if not claimed:
            logger.info(f"[Scheduler] Agent {agent_id} is already claimed; skipping")
        return claimed


def _raw_interval(schedule_config) -> ScheduleInterval:
    try:
        return ScheduleInterval((schedule_config or {}).get("interval") or ScheduleInterval.HOURLY)
    except ValueError:
        return ScheduleInterval.HOURLY
