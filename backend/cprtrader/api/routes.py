"""
Control API Routes
CPR Options Trader

Endpoints:
- POST /stop                   liquidate and deactivate every active credential
- POST /stop/{credential_id}   liquidate and deactivate one credential
- GET  /health                 scheduler phase, tick counters, context freshness
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger

from cprtrader.execution.scheduler import TickScheduler
from cprtrader.schemas.api import HealthResponse, StopResponse

router = APIRouter(tags=["control"])


def get_scheduler(request: Request) -> TickScheduler:
    services = getattr(request.app.state, "services", None)
    scheduler = services.scheduler if services else None
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Trading engine not initialized")
    return scheduler


async def _stop(scheduler: TickScheduler, credential_id: Optional[int]) -> StopResponse:
    report = await scheduler.liquidate(credential_id)
    if credential_id is not None and not report.closed and not report.failed:
        raise HTTPException(status_code=404, detail=f"Credential {credential_id} not found")

    if report.failed:
        logger.warning(f"Stop left {len(report.failed)} credential(s) open: {report.failed}")
        return StopResponse(
            status=False,
            message="Some positions could not be closed",
            closed=report.closed,
            failed=report.failed,
        )
    return StopResponse(status=True, message="Deactivated for the day", closed=report.closed)


@router.post("/stop", response_model=StopResponse)
async def stop_all(scheduler: TickScheduler = Depends(get_scheduler)) -> StopResponse:
    """Force-close every active credential now."""
    return await _stop(scheduler, None)


@router.post("/stop/{credential_id}", response_model=StopResponse)
async def stop_one(credential_id: int, scheduler: TickScheduler = Depends(get_scheduler)) -> StopResponse:
    """Force-close one credential now."""
    return await _stop(scheduler, credential_id)


@router.get("/health", response_model=HealthResponse)
async def health(scheduler: TickScheduler = Depends(get_scheduler)) -> HealthResponse:
    status = scheduler.status()
    return HealthResponse(
        status="degraded" if status["last_error"] else "healthy",
        **status,
    )
