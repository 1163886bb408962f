"""Shared *Enum* definitions for SQLAlchemy & Pydantic models.

The Enums inherit from ``str`` so JSON serialisation renders plain strings and
equality checks against raw literals (``status == "failed"``) keep working.
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum


class AgentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PAUSED = "paused"
    ERROR = "error"


class TriggerType(str, Enum):
    SCHEDULE = "schedule"
    INBOX = "inbox"
    MESSAGING_INBOUND = "messaging-inbound"
    WEBHOOK = "webhook"


# Names used by agent definitions created before the trigger kinds were renamed
TRIGGER_TYPE_ALIASES = {
    "scheduler": TriggerType.SCHEDULE,
    "gmail": TriggerType.INBOX,
    "email": TriggerType.INBOX,
    "telegram": TriggerType.MESSAGING_INBOUND,
}


class ScheduleInterval(str, Enum):
    MINUTELY = "minutely"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def delta(self) -> timedelta:
        return _INTERVAL_DELTAS[self]


_INTERVAL_DELTAS = {
    ScheduleInterval.MINUTELY: timedelta(minutes=1),
    ScheduleInterval.HOURLY: timedelta(hours=1),
    ScheduleInterval.DAILY: timedelta(days=1),
    ScheduleInterval.WEEKLY: timedelta(weeks=1),
}


class StepKind(str, Enum):
    """Closed set of connector variants a workflow step can dispatch to."""

    TEXT_GENERATION = "llm"
    INBOX = "gmail"
    PAGE_STORE = "notion"
    MESSAGING = "telegram"
    HTTP = "http"


STEP_KIND_ALIASES = {
    "llm_summarize": StepKind.TEXT_GENERATION,
    "llm_process": StepKind.TEXT_GENERATION,
    "llm_analyze": StepKind.TEXT_GENERATION,
    "gmail_send": StepKind.INBOX,
    "gmail_fetch": StepKind.INBOX,
    "notion_create_page": StepKind.PAGE_STORE,
    "telegram_send": StepKind.MESSAGING,
    "webhook": StepKind.HTTP,
    "webhook_call": StepKind.HTTP,
}


class ServiceType(str, Enum):
    """Connection kinds stored in the connection store."""

    GMAIL = "gmail"
    NOTION = "notion"
    TELEGRAM = "telegram"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    INBOX = "inbox"
    MESSAGING_INBOUND = "messaging-inbound"
    WEBHOOK = "webhook"
    RETRY = "retry"


__all__ = [
    "AgentStatus",
    "TriggerType",
    "TRIGGER_TYPE_ALIASES",
    "ScheduleInterval",
    "StepKind",
    "STEP_KIND_ALIASES",
    "ServiceType",
    "ExecutionStatus",
    "ExecutionTrigger",
]
