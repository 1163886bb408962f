from typing import List
from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Query

from flowbot.dependencies import get_execution_service
from flowbot.dependencies import get_ledger
from flowbot.exceptions import AgentNotFoundError
from flowbot.exceptions import AgentValidationError
from flowbot.exceptions import ExecutionNotFoundError
from flowbot.exceptions import RetryNotAllowedError
from flowbot.models.enums import ExecutionStatus
from flowbot.schemas.schemas import ExecuteRequest
from flowbot.schemas.schemas import ExecutionOut
from flowbot.schemas.schemas import ExecutionResult
from flowbot.schemas.schemas import RetryResult
from flowbot.services.execution_ledger import ExecutionLedger
from flowbot.services.execution_service import ExecutionService

router = APIRouter(tags=["executions"])


@router.post("/agents/{agent_id}/execute", response_model=ExecutionResult)
async def execute_agent(
    agent_id: int,
    payload: Optional[ExecuteRequest] = None,
    service: ExecutionService = Depends(get_execution_service),
):
    """Run an agent now with the given trigger data."""
    try:
        return await service.execute_agent(agent_id, payload.trigger_data if payload else {})
    except AgentNotFoundError:
        raise HTTPException(status_code=404, detail="Agent not found")
    except AgentValidationError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid agent definition: {exc}")


@router.get("/executions", response_model=List[ExecutionOut])
def list_executions(
    agent_id: Optional[int] = None,
    status: Optional[ExecutionStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ledger: ExecutionLedger = Depends(get_ledger),
):
    """Execution history, newest first."""
    return ledger.list(agent_id=agent_id, status=status, limit=limit, offset=offset)


@router.get("/executions/{execution_id}", response_model=ExecutionOut)
def get_execution(execution_id: int, ledger: ExecutionLedger = Depends(get_ledger)):
    entry = ledger.get(execution_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return entry


@router.post("/executions/{execution_id}/retry", response_model=RetryResult)
async def retry_execution(execution_id: int, service: ExecutionService = Depends(get_execution_service)):
    """Replay a failed execution's trigger data as a new execution."""
    try:
        return await service.retry_execution(execution_id)
    except ExecutionNotFoundError:
        raise HTTPException(status_code=404, detail="Execution not found")
    except RetryNotAllowedError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except AgentNotFoundError:
        raise HTTPException(status_code=404, detail="Agent not found")
    except AgentValidationError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid agent definition: {exc}")
