from sqlalchemy import JSON
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import text
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from flowbot.database import Base
from flowbot.models.enums import AgentStatus
from flowbot.models.enums import ExecutionStatus
from flowbot.models.enums import ExecutionTrigger
from flowbot.models.enums import ServiceType
from flowbot.models.enums import TriggerType


def _enum_column(enum_cls, name: str) -> SAEnum:
    # Persist the enum *values* ("messaging-inbound"), not the member names
    return SAEnum(
        enum_cls,
        native_enum=False,
        name=name,
        values_callable=lambda members: [m.value for m in members],
    )


class Agent(Base):
    """A user-defined automation: one trigger plus an ordered step chain."""

    __tablename__ = "agents"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(_enum_column(AgentStatus, "agent_status_enum"), nullable=False, default=AgentStatus.ACTIVE)

    # -------------------------------------------------------------------
    # Versioned definition: any change to these bumps ``version``
    # -------------------------------------------------------------------
    trigger_type = Column(_enum_column(TriggerType, "trigger_type_enum"), nullable=False)
    trigger_config = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)
    workflow_steps = Column(MutableList.as_mutable(JSON), nullable=False, default=list)
    schedule_config = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)

    # Provider watermarks (last seen message / update); not part of the definition
    trigger_state = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)

    # Scheduling bookkeeping ----------------------------------------------
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True, index=True)
    lease_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    executions = relationship("AgentExecution", back_populates="agent", order_by="AgentExecution.id")


class ServiceConnection(Base):
    """Per-user credential bundle for one external service."""

    __tablename__ = "service_connections"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    service_type = Column(_enum_column(ServiceType, "service_type_enum"), nullable=False)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    service_config = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # At most one *active* connection per (user, service)
        Index(
            "uq_active_connection_per_service",
            "user_id",
            "service_type",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class AgentExecution(Base):
    """Ledger entry: one execution attempt of an agent."""

    __tablename__ = "agent_executions"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    user_id = Column(String, nullable=False)
    # Definition version the run started against
    agent_version = Column(Integer, nullable=False, default=1)

    status = Column(
        _enum_column(ExecutionStatus, "execution_status_enum"),
        nullable=False,
        default=ExecutionStatus.RUNNING,
    )
    trigger_source = Column(
        _enum_column(ExecutionTrigger, "execution_trigger_enum"),
        nullable=False,
        default=ExecutionTrigger.MANUAL,
    )
    trigger_data = Column(JSON, nullable=False, default=dict)
    trace = Column(JSON, nullable=False, default=list)
    output_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    failed_step_index = Column(Integer, nullable=True)

    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    retry_of_id = Column(Integer, ForeignKey("agent_executions.id"), nullable=True)

    agent = relationship("Agent", back_populates="executions")

    __table_args__ = (Index("ix_agent_executions_agent_started", "agent_id", "started_at"),)
