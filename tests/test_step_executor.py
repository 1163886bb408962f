import asyncio

import pytest

from flowbot.connectors.base import Connector
from flowbot.connectors.base import ConnectorResult
from flowbot.connectors.registry import ConnectorRegistry
from flowbot.exceptions import ConfigError
from flowbot.exceptions import ConnectionMissingError
from flowbot.exceptions import ConnectorError
from flowbot.exceptions import ExecutionFailed
from flowbot.exceptions import StepTimeoutError
from flowbot.models.enums import StepKind
from flowbot.schemas.workflow import WorkflowStep
from flowbot.services.step_executor import StepExecutor
from flowbot.services.step_executor import deep_merge
from flowbot.services.step_executor import order_steps


class RecordingConnector(Connector):
    """Connector double: records calls and runs a scripted behaviour."""

    def __init__(self, kind, behaviour=None):
        self.kind = kind
        self.behaviour = behaviour
        self.calls = []

    async def execute(self, config, context, connections):
        self.calls.append({"config": dict(config), "context": dict(context)})
        if self.behaviour is None:
            return ConnectorResult(output={})
        result = self.behaviour(config, context)
        if asyncio.iscoroutine(result):
            result = await result
        return result


def make_registry(**behaviours):
    connectors = {kind: RecordingConnector(kind, behaviours.get(kind.name.lower())) for kind in StepKind}
    return ConnectorRegistry(connectors)


def steps(*specs):
    return [WorkflowStep.model_validate({"id": f"s{i}", "position": i, **spec}) for i, spec in enumerate(specs)]


def make_executor(registry, step_timeout=5.0, execution_timeout=10.0):
    return StepExecutor(registry, step_timeout=step_timeout, execution_timeout=execution_timeout)


def test_deep_merge_nested_mappings():
    base = {"a": {"x": 1, "y": 2}, "b": 1}
    update = {"a": {"y": 3}, "c": [1]}
    assert deep_merge(base, update) == {"a": {"x": 1, "y": 3}, "b": 1, "c": [1]}
    # inputs untouched
    assert base == {"a": {"x": 1, "y": 2}, "b": 1}


def test_order_steps_sorts_by_position_keeping_ties_stable():
    unordered = [
        WorkflowStep(id="late", kind=StepKind.HTTP, position=2),
        WorkflowStep(id="first-tie", kind=StepKind.HTTP, position=0),
        WorkflowStep(id="second-tie", kind=StepKind.HTTP, position=0),
    ]
    assert [step.id for step in order_steps(unordered)] == ["first-tie", "second-tie", "late"]


@pytest.mark.asyncio
async def test_outputs_merge_last_writer_wins():
    registry = make_registry(
        text_generation=lambda config, context: ConnectorResult(output={"summary": "first", "shared": {"a": 1}}),
        http=lambda config, context: ConnectorResult(output={"summary": "second", "shared": {"b": 2}}),
    )
    result = await make_executor(registry).run(
        steps({"kind": "llm"}, {"kind": "http"}), {"seed": True}, {}
    )

    assert result.success is True
    assert result.error is None
    assert result.context == {"seed": True, "summary": "second", "shared": {"a": 1, "b": 2}}
    assert [entry.status for entry in result.trace] == ["completed", "completed"]
    assert [entry.index for entry in result.trace] == [1, 2]


@pytest.mark.asyncio
async def test_config_is_interpolated_with_prior_outputs():
    registry = make_registry(
        text_generation=lambda config, context: ConnectorResult(output={"summary": "generated"}),
    )
    await make_executor(registry).run(
        steps({"kind": "llm"}, {"kind": "telegram", "config": {"message": "Digest: {{summary}} ({{unknown}})"}}),
        {},
        {},
    )

    telegram = registry.get(StepKind.MESSAGING)
    assert telegram.calls[0]["config"] == {"message": "Digest: generated ({{unknown}})"}


@pytest.mark.asyncio
async def test_first_failure_stops_the_chain():
    def fail(config, context):
        raise ConnectionMissingError("notion")

    registry = make_registry(page_store=fail)
    result = await make_executor(registry).run(
        steps({"kind": "llm"}, {"kind": "notion"}, {"kind": "http"}),
        {},
        {},
    )

    assert result.success is False
    assert isinstance(result.error, ExecutionFailed)
    assert result.error.step_index == 2
    assert result.error.step_kind == "notion"
    assert isinstance(result.error.cause, ConnectionMissingError)
    assert str(result.error) == "Step 2 (notion) failed: No active notion connection found"

    assert len(result.trace) == 2
    assert result.trace[1].status == "failed"
    assert result.trace[1].error_code == "connection_missing"
    assert registry.get(StepKind.HTTP).calls == []


@pytest.mark.asyncio
async def test_failed_step_output_is_still_merged():
    def half_done(config, context):
        return ConnectorResult(output={"status": 500, "response": "boom"}, error=ConnectorError("HTTP 500"))

    registry = make_registry(http=half_done)
    result = await make_executor(registry).run(steps({"kind": "http"}), {"x": 1}, {})

    assert result.success is False
    assert result.context == {"x": 1, "status": 500, "response": "boom"}


@pytest.mark.asyncio
async def test_slow_step_times_out():
    async def slow(config, context):
        await asyncio.sleep(5)
        return ConnectorResult(output={"never": True})

    registry = make_registry(http=slow)
    result = await make_executor(registry, step_timeout=0.05).run(steps({"kind": "http"}), {}, {})

    assert result.success is False
    assert isinstance(result.error.cause, StepTimeoutError)
    assert result.trace[0].error_code == "timeout"
    assert "never" not in result.context


@pytest.mark.asyncio
async def test_unexpected_exception_is_wrapped():
    def buggy(config, context):
        raise KeyError("oops")

    registry = make_registry(http=buggy)
    result = await make_executor(registry).run(steps({"kind": "http"}), {}, {})

    assert result.success is False
    assert type(result.error.cause) is ConnectorError
    assert "Unexpected error" in str(result.error.cause)


@pytest.mark.asyncio
async def test_trigger_payload_is_not_mutated():
    registry = make_registry(http=lambda config, context: ConnectorResult(output={"nested": {"added": 1}}))
    payload = {"nested": {"original": 1}}
    result = await make_executor(registry).run(steps({"kind": "http"}), payload, {})

    assert payload == {"nested": {"original": 1}}
    assert result.context["nested"] == {"original": 1, "added": 1}


@pytest.mark.asyncio
async def test_empty_chain_succeeds_with_payload_as_context():
    result = await make_executor(make_registry()).run([], {"a": 1}, {})
    assert result.success is True
    assert result.context == {"a": 1}
    assert result.trace == []


@pytest.mark.asyncio
async def test_config_error_surfaces_as_step_failure():
    def bad_config(config, context):
        raise ConfigError("url")

    registry = make_registry(http=bad_config)
    result = await make_executor(registry).run(steps({"kind": "http"}), {}, {})

    assert result.trace[0].error_code == "config_error"
    assert result.trace[0].error == "Missing required config field 'url'"


def test_registry_requires_every_kind():
    partial = {StepKind.HTTP: RecordingConnector(StepKind.HTTP)}
    with pytest.raises(ValueError, match="No connector registered"):
        ConnectorRegistry(partial)


def test_registry_rejects_mismatched_kind():
    connectors = {kind: RecordingConnector(kind) for kind in StepKind}
    connectors[StepKind.HTTP] = RecordingConnector(StepKind.MESSAGING)
    with pytest.raises(ValueError, match="registered for 'http'"):
        ConnectorRegistry(connectors)
