# Keep stdlib ``datetime`` for type annotations; runtime *now()* comes from
# ``utc_now_naive``.
from datetime import datetime
from datetime import timedelta
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from sqlalchemy import and_
from sqlalchemy import or_
from sqlalchemy import update
from sqlalchemy.orm import Session

from flowbot.models.enums import AgentStatus
from flowbot.models.enums import ExecutionStatus
from flowbot.models.enums import ExecutionTrigger
from flowbot.models.enums import ServiceType
from flowbot.models.enums import TriggerType
from flowbot.models.models import Agent
from flowbot.models.models import AgentExecution
from flowbot.models.models import ServiceConnection
from flowbot.schemas.workflow import AgentDefinition
from flowbot.utils.time import duration_ms
from flowbot.utils.time import utc_now_naive

# Changes to these fields produce a new definition version
VERSIONED_FIELDS = ("trigger_type", "trigger_config", "workflow_steps")

MAX_PAGE_SIZE = 200


# ---------------------------------------------------------------------------
# Agent store
# ---------------------------------------------------------------------------


def get_agent(db: Session, agent_id: int) -> Optional[Agent]:
    """Get a single agent by ID"""
    return db.query(Agent).filter(Agent.id == agent_id).first()


def create_agent(db: Session, definition: AgentDefinition) -> Agent:
    """Persist a validated definition as a new agent row."""

    fields = definition.definition_dict()
    db_agent = Agent(
        **fields,
        version=1,
        trigger_state={},
        next_run_at=definition.next_run_at,
        last_run_at=None,
    )
    db.add(db_agent)
    db.commit()
    db.refresh(db_agent)
    return db_agent


def update_agent(db: Session, agent_id: int, **changes: Any) -> Optional[Agent]:
    """Apply *changes* to an agent definition, re-validating the result.

    ``version`` increments whenever the trigger or the step chain changes.
    Raises :class:`~flowbot.exceptions.AgentValidationError` when the updated
    definition is malformed; nothing is written in that case.
    """
    db_agent = get_agent(db, agent_id)
    if db_agent is None:
        return None

    current = AgentDefinition.parse(db_agent).definition_dict()
    unknown = set(changes) - set(current)
    if unknown:
        raise ValueError(f"Unknown agent fields: {sorted(unknown)}")

    merged = AgentDefinition.parse({**current, **changes}).definition_dict()

    if any(merged[key] != current[key] for key in VERSIONED_FIELDS):
        db_agent.version = (db_agent.version or 1) + 1

    for key, value in merged.items():
        if merged[key] != current[key]:
            setattr(db_agent, key, value)

    db.commit()
    db.refresh(db_agent)
    return db_agent


def list_schedulable_agents(db: Session, now: datetime) -> List[Agent]:
    """Active polled agents worth looking at on a scheduler tick.

    Schedule agents are only returned once due; inbox and messaging agents
    are polled every tick. Webhook agents never appear here.
    """
    due = or_(Agent.next_run_at.is_(None), Agent.next_run_at <= now)
    return (
        db.query(Agent)
        .filter(Agent.status == AgentStatus.ACTIVE)
        .filter(
            or_(
                and_(Agent.trigger_type == TriggerType.SCHEDULE, due),
                Agent.trigger_type.in_([TriggerType.INBOX, TriggerType.MESSAGING_INBOUND]),
            )
        )
        .order_by(Agent.id)
        .all()
    )


def list_webhook_agents(db: Session) -> List[Agent]:
    return (
        db.query(Agent)
        .filter(Agent.status == AgentStatus.ACTIVE, Agent.trigger_type == TriggerType.WEBHOOK)
        .order_by(Agent.id)
        .all()
    )


def claim_agent(db: Session, agent_id: int, *, now: datetime, lease_seconds: int) -> bool:
    """Take the scheduler lease on an agent with a conditional update.

    Returns ``False`` when another tick already holds an unexpired lease.
    """
    stmt = (
        update(Agent)
        .where(Agent.id == agent_id)
        .where(or_(Agent.lease_expires_at.is_(None), Agent.lease_expires_at <= now))
        .values(lease_expires_at=now + timedelta(seconds=lease_seconds))
        .execution_options(synchronize_session=False)
    )
    claimed = db.execute(stmt).rowcount == 1
    db.commit()
    return claimed


def release_agent(db: Session, agent_id: int) -> None:
    db.execute(
        update(Agent)
        .where(Agent.id == agent_id)
        .values(lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def record_agent_run(
    db: Session,
    agent_id: int,
    *,
    status: AgentStatus,
    last_run_at: datetime,
    next_run_at: Optional[datetime] = None,
) -> Optional[Agent]:
    """Write the post-run bookkeeping back to the agent store.

    Paused or inactive agents keep their status when run manually.
    """
    db_agent = get_agent(db, agent_id)
    if db_agent is None:
        return None

    if db_agent.status in (AgentStatus.ACTIVE, AgentStatus.ERROR):
        db_agent.status = status
    db_agent.last_run_at = last_run_at
    if next_run_at is not None:
        # never move the schedule backwards
        if db_agent.next_run_at is None or next_run_at > db_agent.next_run_at:
            db_agent.next_run_at = next_run_at
    db.commit()
    db.refresh(db_agent)
    return db_agent


def update_trigger_state(db: Session, agent_id: int, state: Dict[str, Any]) -> None:
    """Merge provider watermarks into the agent's trigger state."""
    db_agent = get_agent(db, agent_id)
    if db_agent is None:
        return
    db_agent.trigger_state = {**(db_agent.trigger_state or {}), **state}
    db.commit()


# ---------------------------------------------------------------------------
# Connection store (read-only for the engine; writes come from onboarding)
# ---------------------------------------------------------------------------


def get_active_connections(db: Session, user_id: str) -> List[ServiceConnection]:
    return (
        db.query(ServiceConnection)
        .filter(ServiceConnection.user_id == user_id, ServiceConnection.is_active.is_(True))
        .order_by(ServiceConnection.id)
        .all()
    )


def upsert_connection(
    db: Session,
    *,
    user_id: str,
    service_type: ServiceType,
    access_token: Optional[str],
    refresh_token: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    service_config: Optional[Dict[str, Any]] = None,
) -> ServiceConnection:
    """Store a connection, deactivating any previous active one for the service."""

    (
        db.query(ServiceConnection)
        .filter(
            ServiceConnection.user_id == user_id,
            ServiceConnection.service_type == service_type,
            ServiceConnection.is_active.is_(True),
        )
        .update({ServiceConnection.is_active: False}, synchronize_session=False)
    )
    row = ServiceConnection(
        user_id=user_id,
        service_type=service_type,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        service_config=service_config or {},
        is_active=True,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


# ---------------------------------------------------------------------------
# Execution store
# ---------------------------------------------------------------------------


def create_execution(
    db: Session,
    *,
    agent_id: int,
    user_id: str,
    agent_version: int,
    trigger_source: ExecutionTrigger,
    trigger_data: Dict[str, Any],
    started_at: Optional[datetime] = None,
    retry_of_id: Optional[int] = None,
) -> AgentExecution:
    """Insert a new *running* ledger entry."""

    row = AgentExecution(
        agent_id=agent_id,
        user_id=user_id,
        agent_version=agent_version,
        status=ExecutionStatus.RUNNING,
        trigger_source=trigger_source,
        trigger_data=trigger_data,
        trace=[],
        started_at=started_at or utc_now_naive(),
        retry_of_id=retry_of_id,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def finish_execution(
    db: Session,
    execution_id: int,
    *,
    status: ExecutionStatus,
    trace: List[Dict[str, Any]],
    output: Optional[Dict[str, Any]],
    error: Optional[str] = None,
    failed_step_index: Optional[int] = None,
    completed_at: Optional[datetime] = None,
) -> bool:
    """Finalise a running entry. Returns ``False`` if it was not running."""

    row = get_execution(db, execution_id)
    if row is None:
        return False

    completed_at = completed_at or utc_now_naive()
    stmt = (
        update(AgentExecution)
        .where(AgentExecution.id == execution_id)
        .where(AgentExecution.status == ExecutionStatus.RUNNING)
        .values(
            status=status,
            trace=trace,
            output_data=output,
            error_message=error,
            failed_step_index=failed_step_index,
            completed_at=completed_at,
            duration_ms=duration_ms(row.started_at, completed_at),
        )
        .execution_options(synchronize_session=False)
    )
    finished = db.execute(stmt).rowcount == 1
    db.commit()
    return finished


def get_execution(db: Session, execution_id: int) -> Optional[AgentExecution]:
    return db.query(AgentExecution).filter(AgentExecution.id == execution_id).first()


def list_executions(
    db: Session,
    *,
    agent_id: Optional[int] = None,
    status: Optional[ExecutionStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[AgentExecution]:
    """Return ledger entries, newest first."""
    query = db.query(AgentExecution)
    if agent_id is not None:
        query = query.filter(AgentExecution.agent_id == agent_id)
    if status is not None:
        query = query.filter(AgentExecution.status == status)

    limit = max(1, min(limit, MAX_PAGE_SIZE))
    return (
        query.order_by(AgentExecution.started_at.desc(), AgentExecution.id.desc())
        .offset(max(0, offset))
        .limit(limit)
        .all()
    )


def latest_execution_start(db: Session, agent_id: int) -> Optional[datetime]:
    row = (
        db.query(AgentExecution.started_at)
        .filter(AgentExecution.agent_id == agent_id)
        .order_by(AgentExecution.started_at.desc())
        .first()
    )
    return row[0] if row else None


def mark_agent_invalid(db: Session, agent_id: int, *, next_run_at: Optional[datetime]) -> None:
    """Flag an agent whose stored definition no longer validates."""
    db_agent = get_agent(db, agent_id)
    if db_agent is None:
        return
    db_agent.status = AgentStatus.ERROR
    if next_run_at is not None and (db_agent.next_run_at is None or next_run_at > db_agent.next_run_at):
        db_agent.next_run_at = next_run_at
    db.commit()
