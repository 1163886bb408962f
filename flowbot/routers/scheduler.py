from fastapi import APIRouter
from fastapi import Depends

from flowbot.dependencies import get_scheduler
from flowbot.schemas.schemas import TickReport
from flowbot.services.scheduler_service import SchedulerService

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


@router.post("/tick", response_model=TickReport)
async def run_tick(scheduler: SchedulerService = Depends(get_scheduler)):
    """Run one scheduler pass (for external cron drivers)."""
    return await scheduler.tick()
