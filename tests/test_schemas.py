"""Agent definition validation and agent store bookkeeping."""

from datetime import datetime
from datetime import timedelta

import pytest
from pydantic import ValidationError

from flowbot.crud import crud
from flowbot.exceptions import AgentValidationError
from flowbot.models.enums import AgentStatus
from flowbot.models.enums import ScheduleInterval
from flowbot.models.enums import ServiceType
from flowbot.models.enums import StepKind
from flowbot.models.enums import TriggerType
from flowbot.schemas.workflow import AgentDefinition
from flowbot.schemas.workflow import WorkflowStep


def definition(**overrides):
    data = {
        "user_id": "user-1",
        "name": "Digest",
        "trigger_type": "schedule",
        "workflow_steps": [],
    }
    data.update(overrides)
    return AgentDefinition.parse(data)


class TestWorkflowStep:
    @pytest.mark.parametrize(
        "raw_kind,expected",
        [
            ("llm_summarize", StepKind.TEXT_GENERATION),
            ("llm_analyze", StepKind.TEXT_GENERATION),
            ("notion_create_page", StepKind.PAGE_STORE),
            ("telegram_send", StepKind.MESSAGING),
            ("gmail_send", StepKind.INBOX),
            ("webhook", StepKind.HTTP),
            ("HTTP", StepKind.HTTP),
        ],
    )
    def test_legacy_kind_aliases(self, raw_kind, expected):
        step = WorkflowStep.model_validate({"id": "s", "type": raw_kind})
        assert step.kind == expected

    def test_gmail_fetch_alias_sets_action(self):
        step = WorkflowStep.model_validate({"id": "s", "type": "gmail_fetch", "config": {"query": "x"}})
        assert step.kind == StepKind.INBOX
        assert step.config == {"action": "fetch", "query": "x"}

    def test_unknown_kind_is_rejected_at_load(self):
        with pytest.raises(AgentValidationError):
            definition(workflow_steps=[{"type": "carrier_pigeon"}])

    def test_missing_kind_is_rejected(self):
        with pytest.raises(AgentValidationError, match="missing its kind"):
            definition(workflow_steps=[{"config": {}}])

    def test_non_object_config_is_rejected(self):
        with pytest.raises(AgentValidationError):
            definition(workflow_steps=[{"type": "llm", "config": "prompt"}])


class TestAgentDefinition:
    def test_step_ids_and_positions_are_filled(self):
        agent = definition(workflow_steps=[{"type": "llm"}, {"type": "http", "id": 7}])
        assert [(s.id, s.position) for s in agent.workflow_steps] == [("step-1", 0), ("7", 1)]

    def test_trigger_type_aliases(self):
        assert definition(trigger_type="scheduler").trigger_type == TriggerType.SCHEDULE
        assert definition(trigger_type="gmail").trigger_type == TriggerType.INBOX
        assert definition(trigger_type="telegram").trigger_type == TriggerType.MESSAGING_INBOUND

    def test_unknown_trigger_type(self):
        with pytest.raises(AgentValidationError):
            definition(trigger_type="carrier_pigeon")

    def test_steps_must_be_a_list(self):
        with pytest.raises(AgentValidationError, match="workflow_steps must be an array"):
            definition(workflow_steps={"type": "llm"})

    def test_name_limits(self):
        with pytest.raises(AgentValidationError):
            definition(name="   ")
        with pytest.raises(AgentValidationError):
            definition(name="x" * 256)

    def test_schedule_defaults(self):
        agent = definition(schedule_config=None)
        assert agent.schedule_config.interval == ScheduleInterval.HOURLY
        assert agent.schedule_config.enabled is True

    def test_snapshot_is_immutable(self):
        agent = definition()
        with pytest.raises(ValidationError):
            agent.name = "changed"

    def test_typed_trigger_configs(self):
        agent = definition(
            trigger_type="inbox",
            trigger_config={"from_contains": "billing@", "subject_contains": ["Invoice"], "max_results": 5},
        )
        config = agent.inbox_config()
        assert config.from_contains == ["billing@"]
        assert config.subject_contains == ["Invoice"]
        assert config.max_results == 5

    def test_bad_trigger_config_raises(self):
        agent = definition(trigger_type="inbox", trigger_config={"max_results": 0})
        with pytest.raises(AgentValidationError, match="Invalid trigger_config"):
            agent.inbox_config()

    def test_webhook_events_string_becomes_list(self):
        agent = definition(trigger_type="webhook", trigger_config={"endpoint": "/gh", "events": "github.push"})
        assert agent.webhook_config().events == ["github.push"]


class TestAgentStore:
    def test_create_agent_roundtrips(self, db_session):
        row = crud.create_agent(db_session, definition(workflow_steps=[{"type": "llm_summarize"}]))
        assert row.version == 1
        assert row.status == AgentStatus.ACTIVE
        assert row.workflow_steps[0]["kind"] == "llm"
        assert AgentDefinition.parse(row).workflow_steps[0].kind == StepKind.TEXT_GENERATION

    def test_version_bumps_on_step_change_only(self, db_session):
        row = crud.create_agent(db_session, definition(workflow_steps=[{"type": "llm"}]))

        row = crud.update_agent(db_session, row.id, name="Renamed")
        assert row.version == 1
        assert row.name == "Renamed"

        row = crud.update_agent(db_session, row.id, workflow_steps=[{"type": "llm"}, {"type": "http"}])
        assert row.version == 2

        row = crud.update_agent(db_session, row.id, trigger_config={"endpoint": "/x"})
        assert row.version == 3

    def test_invalid_update_writes_nothing(self, db_session):
        row = crud.create_agent(db_session, definition())
        with pytest.raises(AgentValidationError):
            crud.update_agent(db_session, row.id, workflow_steps=[{"type": "nope"}])
        assert crud.get_agent(db_session, row.id).version == 1

    def test_unknown_field_rejected(self, db_session):
        row = crud.create_agent(db_session, definition())
        with pytest.raises(ValueError, match="Unknown agent fields"):
            crud.update_agent(db_session, row.id, colour="blue")

    def test_schedulable_agents(self, db_session):
        now = datetime(2024, 1, 1, 12, 0)
        due = crud.create_agent(db_session, definition(name="due"))
        later = crud.create_agent(db_session, definition(name="later", next_run_at=now + timedelta(hours=1)))
        inbox = crud.create_agent(db_session, definition(name="inbox", trigger_type="inbox"))
        hook = crud.create_agent(db_session, definition(name="hook", trigger_type="webhook"))
        paused = crud.create_agent(db_session, definition(name="paused", status="paused"))

        ids = [row.id for row in crud.list_schedulable_agents(db_session, now)]
        assert ids == [due.id, inbox.id]
        assert later.id not in ids and hook.id not in ids and paused.id not in ids

    def test_claim_is_exclusive_until_released(self, db_session):
        now = datetime(2024, 1, 1, 12, 0)
        row = crud.create_agent(db_session, definition())

        assert crud.claim_agent(db_session, row.id, now=now, lease_seconds=60) is True
        assert crud.claim_agent(db_session, row.id, now=now, lease_seconds=60) is False
        # an expired lease can be taken over
        assert crud.claim_agent(db_session, row.id, now=now + timedelta(seconds=61), lease_seconds=60) is True

        crud.release_agent(db_session, row.id)
        assert crud.claim_agent(db_session, row.id, now=now, lease_seconds=60) is True

    def test_record_agent_run_never_moves_schedule_back(self, db_session):
        now = datetime(2024, 1, 1, 12, 0)
        row = crud.create_agent(db_session, definition(next_run_at=now + timedelta(hours=2)))

        row = crud.record_agent_run(
            db_session, row.id, status=AgentStatus.ACTIVE, last_run_at=now, next_run_at=now + timedelta(hours=1)
        )
        assert row.next_run_at == now + timedelta(hours=2)
        assert row.last_run_at == now

    def test_record_agent_run_keeps_paused_status(self, db_session):
        row = crud.create_agent(db_session, definition(status="paused"))
        row = crud.record_agent_run(db_session, row.id, status=AgentStatus.ERROR, last_run_at=datetime(2024, 1, 1))
        assert row.status == AgentStatus.PAUSED

    def test_one_active_connection_per_service(self, db_session):
        crud.upsert_connection(db_session, user_id="u", service_type=ServiceType.NOTION, access_token="old")
        crud.upsert_connection(db_session, user_id="u", service_type=ServiceType.NOTION, access_token="new")

        active = crud.get_active_connections(db_session, "u")
        assert [c.access_token for c in active] == ["new"]
