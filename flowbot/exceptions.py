"""Error taxonomy for the workflow engine.

Connector failures derive from :class:`ConnectorError`; the step executor
catches them and wraps the first one in :class:`ExecutionFailed`.
"""

from __future__ import annotations

from typing import Optional


class FlowbotError(Exception):
    """Base class for all engine errors."""


# ---------------------------------------------------------------------------
# Connector-level errors
# ---------------------------------------------------------------------------


class ConnectorError(FlowbotError):
    """A connector could not perform its external action."""

    code = "connector_error"


class ConnectionMissingError(ConnectorError):
    """The connector needs an active service connection the user does not have."""

    code = "connection_missing"

    def __init__(self, service_type: str):
        self.service_type = service_type
        super().__init__(f"No active {service_type} connection found")


class ConnectorAPIError(ConnectorError):
    """The external service answered with a non-success response."""

    code = "api_error"

    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        super().__init__(message)


class ConfigError(ConnectorError):
    """A required step configuration field is missing or invalid."""

    code = "config_error"

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"Missing required config field '{field}'")


class StepTimeoutError(ConnectorError):
    """A step did not finish within its time budget."""

    code = "timeout"

    def __init__(self, timeout: Optional[float] = None, message: Optional[str] = None):
        self.timeout = timeout
        if message is None:
            message = "Step timed out" if timeout is None else f"Step timed out after {timeout:g}s"
        super().__init__(message)


# ---------------------------------------------------------------------------
# Pipeline-level errors
# ---------------------------------------------------------------------------


class ExecutionFailed(FlowbotError):
    """Wraps the first failing step of an execution."""

    def __init__(self, step_index: int, step_kind: str, cause: ConnectorError):
        self.step_index = step_index
        self.step_kind = step_kind
        self.cause = cause
        super().__init__(f"Step {step_index} ({step_kind}) failed: {cause}")


class TriggerEvaluationError(FlowbotError):
    """A provider-side trigger check failed; the agent is skipped this tick."""


class AgentValidationError(FlowbotError):
    """An agent or step definition is malformed."""


class AgentNotFoundError(FlowbotError):
    def __init__(self, agent_id: int):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not found")


class ExecutionNotFoundError(FlowbotError):
    def __init__(self, execution_id: int):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")


class RetryNotAllowedError(FlowbotError):
    def __init__(self, execution_id: int, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__("Can only retry failed executions")


class IllegalTransitionError(FlowbotError):
    """A ledger entry was asked to move out of a terminal state."""
