"""
Step Executor

Runs an agent's step chain strictly in order against the connector registry:

1. interpolate the step config with the current context
2. dispatch to the connector for the step kind (bounded by a timeout)
3. deep-merge the output into the context (last writer wins)

The first failing step aborts the chain; steps after it are never attempted
and leave no trace entry. Already-completed side effects are not rolled back.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional
from typing import Sequence

from flowbot.connectors.base import ConnectorResult
from flowbot.connectors.registry import ConnectorRegistry
from flowbot.exceptions import ConnectorError
from flowbot.exceptions import ExecutionFailed
from flowbot.exceptions import StepTimeoutError
from flowbot.metrics import STEP_FAILURES_TOTAL
from flowbot.schemas.schemas import StepTrace
from flowbot.schemas.workflow import ConnectionMap
from flowbot.schemas.workflow import WorkflowStep
from flowbot.services.variable_resolver import interpolate
from flowbot.utils.time import utc_now_naive

logger = logging.getLogger(__name__)


def deep_merge(base: Mapping[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a new mapping with *update* merged into *base*.

    Nested mappings merge recursively; every other value in *update*
    replaces the one in *base*.
    """
    merged = dict(base)
    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def order_steps(steps: Sequence[WorkflowStep]) -> List[WorkflowStep]:
    """Sort by position; ties keep their original list order."""
    return [step for _, step in sorted(enumerate(steps), key=lambda pair: (pair[1].position, pair[0]))]


@dataclass
class StepRunResult:
    success: bool
    context: Dict[str, Any]
    trace: List[StepTrace] = field(default_factory=list)
    error: Optional[ExecutionFailed] = None


class StepExecutor:
    """Sequential, fail-fast runner for one agent's steps."""

    def __init__(
        self,
        connectors: ConnectorRegistry,
        *,
        step_timeout: float,
        execution_timeout: float,
    ):
        self.connectors = connectors
        self.step_timeout = step_timeout
        self.execution_timeout = execution_timeout

    async def run(
        self,
        steps: Sequence[WorkflowStep],
        trigger_payload: Optional[Mapping[str, Any]],
        connections: ConnectionMap,
    ) -> StepRunResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.execution_timeout

        # The trigger payload seeds the context; the stored copy stays untouched
        context: Dict[str, Any] = copy.deepcopy(dict(trigger_payload or {}))
        trace: List[StepTrace] = []

        for index, step in enumerate(order_steps(steps), start=1):
            started_at = utc_now_naive()
            started = loop.time()
            logger.info(f"[StepExecutor] Executing step {index}: {step.kind.value} ({step.id})")

            result: Optional[ConnectorResult] = None
            try:
                result = await self._run_step(step, context, connections, deadline)
                failure = result.error
            except ConnectorError as exc:
                failure = exc
            except Exception as exc:  # noqa: BLE001 - connector bugs must not escape the executor
                logger.exception(f"[StepExecutor] Step {index} ({step.kind.value}) raised unexpectedly")
                failure = ConnectorError(f"Unexpected error: {exc}")

            entry = StepTrace(
                index=index,
                step_id=step.id,
                kind=step.kind.value,
                status="failed" if failure else "completed",
                started_at=started_at,
                duration_ms=int((loop.time() - started) * 1000),
                error=str(failure) if failure else None,
                error_code=getattr(failure, "code", None) if failure else None,
            )
            trace.append(entry)

            if result is not None:
                context = deep_merge(context, result.output)

            if failure is not None:
                STEP_FAILURES_TOTAL.labels(step_kind=step.kind.value, error=failure.code).inc()
                logger.warning(f"[StepExecutor] Step {index} ({step.kind.value}) failed: {failure}")
                return StepRunResult(
                    success=False,
                    context=context,
                    trace=trace,
                    error=ExecutionFailed(index, step.kind.value, failure),
                )

            logger.info(f"[StepExecutor] Step {index} completed successfully")

        return StepRunResult(success=True, context=context, trace=trace)

    async def _run_step(
        self,
        step: WorkflowStep,
        context: Dict[str, Any],
        connections: ConnectionMap,
        deadline: float,
    ) -> ConnectorResult:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise StepTimeoutError(message="Execution deadline exceeded before step started")
        timeout = min(self.step_timeout, remaining)

        config = interpolate(step.config, context)
        connector = self.connectors.get(step.kind)
        try:
            return await asyncio.wait_for(connector.execute(config, context, connections), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StepTimeoutError(timeout) from exc
