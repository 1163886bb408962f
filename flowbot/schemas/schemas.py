from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from flowbot.models.enums import ExecutionStatus
from flowbot.models.enums import ExecutionTrigger


# ------------------------------------------------------------
# Manual execute / retry
# ------------------------------------------------------------


class ExecuteRequest(BaseModel):
    trigger_data: Dict[str, Any] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    execution_id: int
    success: bool
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class RetryResult(ExecutionResult):
    original_execution_id: int


# ------------------------------------------------------------
# Ledger entries
# ------------------------------------------------------------


class StepTrace(BaseModel):
    """One attempted step inside an execution."""

    index: int
    step_id: str
    kind: str
    status: str
    started_at: datetime
    duration_ms: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None


class ExecutionOut(BaseModel):
    id: int
    agent_id: int
    user_id: str
    agent_version: int
    status: ExecutionStatus
    trigger_source: ExecutionTrigger
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    trace: List[StepTrace] = Field(default_factory=list)
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    failed_step_index: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    retry_of_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


# ------------------------------------------------------------
# Scheduler tick
# ------------------------------------------------------------


class AgentTickResult(BaseModel):
    agent_id: int
    agent_name: str
    success: bool
    execution_id: Optional[int] = None
    error: Optional[str] = None
    skipped_reason: Optional[str] = None


class TickReport(BaseModel):
    processed: int
    results: List[AgentTickResult] = Field(default_factory=list)


# ------------------------------------------------------------
# Inbound webhooks
# ------------------------------------------------------------


class WebhookAgentResult(BaseModel):
    agent_id: int
    agent_name: str
    execution_id: Optional[int] = None
    success: bool
    error: Optional[str] = None


class WebhookReport(BaseModel):
    agents_triggered: int
    event_type: str
    results: List[WebhookAgentResult] = Field(default_factory=list)
