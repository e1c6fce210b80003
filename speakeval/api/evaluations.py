"""Evaluation job API routes."""

import asyncio
import base64
import binascii
import logging
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speakeval.api.deps import get_scheduler, get_session_factory, get_storage
from speakeval.config import get_settings
from speakeval.db.models import EvaluationResult
from speakeval.db.session import get_db
from speakeval.middleware.rate_limit import rate_limit_general, rate_limit_submissions
from speakeval.schemas.schemas import (
    EvaluationCreateRequest,
    EvaluationCreateResponse,
    EvaluationResultResponse,
    JobStatusResponse,
    RetryResponse,
)
from speakeval.services.errors import StorageError
from speakeval.services.job_service import job_service
from speakeval.services.orchestrator import StageScheduler
from speakeval.services.storage import StorageService
from speakeval.services.watchdog import ResumeOutcome, Watchdog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/evaluations", tags=["Evaluations"])

settings = get_settings()


async def _store_inline_segments(
    storage: StorageService, job_id: str, request: EvaluationCreateRequest
) -> dict[str, str]:
    """Upload base64 segments and return segment key -> object path."""
    audio_refs = {}
    for key, segment in request.audio_segments.items():
        if segment.path:
            audio_refs[key] = segment.path
            continue
        try:
            data = base64.b64decode(segment.audio_b64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Segment {key}: audio_b64 is not valid base64",
            )
        if not data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Segment {key}: audio is empty",
            )
        path = storage.segment_path(job_id, key, segment.content_type)
        await asyncio.to_thread(storage.put, path, data, segment.content_type)
        audio_refs[key] = path
    return audio_refs


@router.post(
    "",
    response_model=EvaluationCreateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a speaking test for evaluation",
    description="Store the recordings, create an evaluation job and queue its first stage.",
)
@rate_limit_submissions()
async def create_evaluation(
    request: Request,
    body: EvaluationCreateRequest,
    db: AsyncSession = Depends(get_db),
    scheduler: StageScheduler = Depends(get_scheduler),
    storage: StorageService = Depends(get_storage),
):
    """
    Submit a speaking test.

    - **submission_id**: Submission being evaluated; earlier live jobs for it are cancelled
    - **audio_segments**: Segment key (`part{N}-q{id}`) -> object path or base64 audio
    - **metadata**: Topic, difficulty, question texts and optional transcripts
    - **callback_url**: Webhook notified when the job completes or fails
    """
    job_id = str(uuid4())
    try:
        audio_refs = await _store_inline_segments(storage, job_id, body)
    except StorageError as e:
        logger.error(f"Audio upload failed for submission {body.submission_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audio storage unavailable, please retry",
        )

    metadata = body.metadata.model_dump(exclude={"transcripts"})
    transcripts = {
        key: entry.model_dump()
        for key, entry in body.metadata.transcripts.items()
        if key in audio_refs and entry.text.strip()
    }

    job = await job_service.create_job(
        db,
        job_id=job_id,
        submission_id=body.submission_id,
        owner_id=body.owner_id,
        audio_refs=audio_refs,
        max_retries=settings.job_max_retries,
        durations=body.durations,
        exam_metadata=metadata,
        transcripts=transcripts,
        callback_url=body.callback_url,
    )
    await db.commit()

    try:
        scheduler.schedule(job.id, 0)
    except Exception:
        # The watchdog picks the job up once it goes stale
        logger.exception(f"Could not queue job {job.id}")

    logger.info(
        f"Accepted submission {body.submission_id} as job {job.id} "
        f"({len(audio_refs)} segment(s), {job.total_parts} part(s))"
    )
    return EvaluationCreateResponse(
        job_id=job.id,
        status=job.status.value,
        stage=job.stage.value,
        total_parts=job.total_parts,
        created_at=job.created_at,
    )


@router.get(
    "/{job_id}",
    response_model=JobStatusResponse,
    summary="Get job status",
    description="Coarse status and progress of an evaluation job.",
)
@rate_limit_general()
async def get_evaluation(
    request: Request,
    job_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Get job status for polling clients."""
    job = await job_service.get_job(db, job_id)

    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )

    return job_service.job_to_response(job)


@router.get(
    "/{job_id}/result",
    response_model=EvaluationResultResponse,
    summary="Get evaluation result",
    description="Final score record of a completed job.",
)
@rate_limit_general()
async def get_evaluation_result(
    request: Request,
    job_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Get the result record written when the job completed."""
    job = await job_service.get_job(db, job_id)

    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    if not job.result_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} has no result (status: {job.status.value})",
        )

    result = await db.execute(select(EvaluationResult).where(EvaluationResult.id == job.result_id))
    record = result.scalar_one_or_none()
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Result for job {job_id} was superseded",
        )

    return EvaluationResultResponse.model_validate(record)


@router.post(
    "/{job_id}/retry",
    response_model=RetryResponse,
    summary="Retry a job",
    description="Force a resumption pass for a stuck or failed job.",
)
@rate_limit_general()
async def retry_evaluation(
    request: Request,
    job_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    scheduler: StageScheduler = Depends(get_scheduler),
):
    """
    Manually retry a job.

    Completed and cancelled jobs are refused, as are jobs whose submission
    has a newer job. A job a worker is currently processing is reported as
    busy and left alone.
    """
    outcome, job = await Watchdog(session_factory, scheduler, settings).resume_job(job_id)

    if outcome == ResumeOutcome.NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    if outcome == ResumeOutcome.REFUSED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} is {job.stage.value} and cannot be retried",
        )
    if outcome == ResumeOutcome.SUPERSEDED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} was superseded by a newer job for submission {job.submission_id}",
        )

    return RetryResponse(
        job_id=job_id,
        outcome=outcome.value,
        stage=job.stage.value if job else None,
    )
