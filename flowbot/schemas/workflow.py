"""
Validated snapshots of agent definitions and service connections.

Rows from the agent and connection stores are turned into these immutable
models before any execution starts, so malformed definitions surface as
:class:`~flowbot.exceptions.AgentValidationError` up front and a running
pipeline never observes later edits.
"""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from pydantic import field_validator
from pydantic import model_validator

from flowbot.exceptions import AgentValidationError
from flowbot.models.enums import STEP_KIND_ALIASES
from flowbot.models.enums import TRIGGER_TYPE_ALIASES
from flowbot.models.enums import AgentStatus
from flowbot.models.enums import ScheduleInterval
from flowbot.models.enums import ServiceType
from flowbot.models.enums import StepKind
from flowbot.models.enums import TriggerType


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return value


class WorkflowStep(BaseModel):
    """One step of an agent's chain."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    kind: StepKind
    config: Dict[str, Any] = Field(default_factory=dict)
    position: int = 0

    @model_validator(mode="before")
    @classmethod
    def _normalise_kind(cls, data: Any):
        """Accept the legacy ``type`` key and the historical kind aliases."""

        if not isinstance(data, dict):
            return data

        raw_kind = data.get("kind", data.get("type"))
        if raw_kind is None:
            raise ValueError("step is missing its kind")

        data = {key: value for key, value in data.items() if key != "type"}
        config = data.get("config")
        if config is None:
            data["config"] = {}
        elif not isinstance(config, dict):
            raise ValueError("step config must be an object")

        if isinstance(raw_kind, str):
            alias = STEP_KIND_ALIASES.get(raw_kind.strip().lower())
            if alias is not None:
                if raw_kind.strip().lower() == "gmail_fetch":
                    data["config"] = {"action": "fetch", **data["config"]}
                raw_kind = alias
            else:
                raw_kind = raw_kind.strip().lower()
        data["kind"] = raw_kind
        return data


class ScheduleConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    interval: ScheduleInterval = ScheduleInterval.HOURLY
    enabled: bool = True

    @field_validator("interval", mode="before")
    @classmethod
    def _default_interval(cls, value: Any) -> Any:
        return ScheduleInterval.HOURLY if value in (None, "") else value


# ---------------------------------------------------------------------------
# Kind-specific trigger configuration
# ---------------------------------------------------------------------------


class WebhookTriggerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    endpoint: str = ""
    events: List[str] = Field(default_factory=list)

    @field_validator("events", mode="before")
    @classmethod
    def _events_list(cls, value: Any) -> Any:
        return _as_list(value)


class InboxTriggerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    query: Optional[str] = None
    label: Optional[str] = None
    from_contains: List[str] = Field(default_factory=list)
    subject_contains: List[str] = Field(default_factory=list)
    max_results: int = Field(default=10, ge=1, le=100)

    @field_validator("from_contains", "subject_contains", mode="before")
    @classmethod
    def _filter_lists(cls, value: Any) -> Any:
        return _as_list(value)


class MessagingTriggerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    chat_id: Optional[Union[int, str]] = None
    text_contains: List[str] = Field(default_factory=list)
    from_username: Optional[str] = None

    @field_validator("text_contains", mode="before")
    @classmethod
    def _text_list(cls, value: Any) -> Any:
        return _as_list(value)


# ---------------------------------------------------------------------------
# Agent snapshot
# ---------------------------------------------------------------------------


class AgentDefinition(BaseModel):
    """Immutable, validated view of an agent row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: Optional[int] = None
    user_id: str
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    status: AgentStatus = AgentStatus.ACTIVE
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    workflow_steps: List[WorkflowStep] = Field(default_factory=list)
    schedule_config: ScheduleConfig = Field(default_factory=ScheduleConfig)
    version: int = 1
    trigger_state: Dict[str, Any] = Field(default_factory=dict)
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("trigger_type", mode="before")
    @classmethod
    def _normalise_trigger(cls, value: Any) -> Any:
        if isinstance(value, str) and not isinstance(value, TriggerType):
            return TRIGGER_TYPE_ALIASES.get(value.strip().lower(), value.strip().lower())
        return value

    @field_validator("trigger_config", "trigger_state", mode="before")
    @classmethod
    def _mapping_or_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("schedule_config", mode="before")
    @classmethod
    def _schedule_or_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("workflow_steps", mode="before")
    @classmethod
    def _fill_step_defaults(cls, value: Any) -> Any:
        """Give every step a stable id and a position when the stored data has none."""

        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("workflow_steps must be an array")

        steps = []
        for index, raw in enumerate(value):
            if isinstance(raw, dict):
                raw = dict(raw)
                if not raw.get("id"):
                    raw["id"] = f"step-{index + 1}"
                raw["id"] = str(raw["id"])
                if raw.get("position") is None:
                    raw["position"] = index
            steps.append(raw)
        return steps

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def parse(cls, data: Any) -> "AgentDefinition":
        """Validate *data* (a mapping or ORM row), raising AgentValidationError."""

        try:
            if isinstance(data, dict):
                return cls.model_validate(data)
            return cls.model_validate(data, from_attributes=True)
        except ValidationError as exc:
            raise AgentValidationError(_describe(exc)) from exc

    def definition_dict(self) -> Dict[str, Any]:
        """The persisted definition fields in their normalised JSON form."""

        dumped = self.model_dump(mode="json")
        fields = {
            key: dumped[key]
            for key in (
                "user_id",
                "name",
                "description",
                "trigger_config",
                "workflow_steps",
                "schedule_config",
            )
        }
        # Enum columns take the members themselves
        fields["status"] = self.status
        fields["trigger_type"] = self.trigger_type
        return fields

    # ------------------------------------------------------------------
    # Typed trigger configuration
    # ------------------------------------------------------------------

    def webhook_config(self) -> WebhookTriggerConfig:
        return self._trigger_settings(WebhookTriggerConfig)

    def inbox_config(self) -> InboxTriggerConfig:
        return self._trigger_settings(InboxTriggerConfig)

    def messaging_config(self) -> MessagingTriggerConfig:
        return self._trigger_settings(MessagingTriggerConfig)

    def _trigger_settings(self, model):
        try:
            return model.model_validate(self.trigger_config)
        except ValidationError as exc:
            raise AgentValidationError(f"Invalid trigger_config: {_describe(exc)}") from exc


class ServiceCredentials(BaseModel):
    """Read-only credential snapshot handed to connectors."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    service_type: ServiceType
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    service_config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("service_config", mode="before")
    @classmethod
    def _mapping_or_empty(cls, value: Any) -> Any:
        return {} if value is None else value


ConnectionMap = Dict[ServiceType, ServiceCredentials]


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


__all__ = [
    "WorkflowStep",
    "ScheduleConfig",
    "WebhookTriggerConfig",
    "InboxTriggerConfig",
    "MessagingTriggerConfig",
    "AgentDefinition",
    "ServiceCredentials",
    "ConnectionMap",
]
