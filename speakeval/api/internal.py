"""Service-to-service routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from speakeval.api.deps import get_scheduler, verify_internal_key
from speakeval.db.session import get_db
from speakeval.schemas.schemas import StageTriggerRequest, StageTriggerResponse
from speakeval.services.job_service import job_service
from speakeval.services.orchestrator import StageScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/internal", tags=["Internal"])


@router.post(
    "/stage-trigger",
    response_model=StageTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Trigger the next stage of a job",
    description="Queue one stage unit for a job. Requires the internal key.",
)
async def trigger_stage(
    request: StageTriggerRequest,
    db: AsyncSession = Depends(get_db),
    scheduler: StageScheduler = Depends(get_scheduler),
    _: bool = Depends(verify_internal_key),
):
    """Queue advance_job; the claim decides whether anything runs."""
    job = await job_service.get_job(db, request.job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {request.job_id} not found",
        )

    try:
        scheduler.schedule(job.id, 0)
    except Exception:
        logger.exception(f"Stage trigger could not queue job {job.id}")
        await job_service.mark_stale(db, job.id)
        await db.commit()
        return StageTriggerResponse(job_id=job.id, queued=False)

    return StageTriggerResponse(job_id=job.id, queued=True)
