"""Job record access: creation, claiming and lock-guarded writes."""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from speakeval.db.models import (
    PENDING_STAGES,
    TERMINAL_STAGES,
    WORKING_STAGES,
    EvaluationJob,
    JobStage,
    JobStatus,
    as_utc,
    utcnow,
)
from speakeval.schemas.schemas import JobStatusResponse
from speakeval.services.errors import LockLostError
from speakeval.services.prompts import group_segments

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = (JobStatus.PENDING, JobStatus.RETRYING, JobStatus.STALE)
LIVE_STAGES = [stage for stage in JobStage if stage not in TERMINAL_STAGES]

LOCK_RELEASED = {"lock_owner_token": None, "lock_expires_at": None}


def lock_is_free(now: datetime):
    """SQL condition: nobody holds an unexpired lock on the job."""
    return or_(
        EvaluationJob.lock_owner_token.is_(None),
        EvaluationJob.lock_expires_at.is_(None),
        EvaluationJob.lock_expires_at <= now,
    )


def lock_is_live(job: EvaluationJob, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    expires = as_utc(job.lock_expires_at)
    return bool(job.lock_owner_token) and expires is not None and expires > now


def is_claimable(job: EvaluationJob, now: Optional[datetime] = None) -> bool:
    """Whether the job's (status, stage) allows a worker to pick it up."""
    if job.stage in TERMINAL_STAGES or lock_is_live(job, now):
        return False
    if job.status in CLAIMABLE_STATUSES:
        return job.stage in WORKING_STAGES
    # A processing job whose lock expired lost its worker
    return job.status == JobStatus.PROCESSING


class JobService:
    """Service for reading and mutating evaluation jobs."""

    async def create_job(
        self,
        db: AsyncSession,
        *,
        submission_id: str,
        owner_id: str,
        audio_refs: dict[str, str],
        max_retries: int,
        durations: Optional[dict] = None,
        exam_metadata: Optional[dict] = None,
        transcripts: Optional[dict] = None,
        callback_url: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> EvaluationJob:
        """
        Create a job in pending_upload, cancelling live siblings first.

        Args:
            db: Database session
            submission_id: Submission being evaluated
            owner_id: Owner of the submission
            audio_refs: Segment key -> object path
            max_retries: Retry budget for the job

        Returns:
            The new job (flushed, not committed)
        """
        job_id = job_id or str(uuid4())
        cancelled = await self.cancel_live_jobs(
            db, submission_id, exclude_job_id=job_id, reason="Superseded by a newer evaluation request"
        )
        if cancelled:
            logger.info(f"Cancelled {cancelled} live job(s) for submission {submission_id}")

        now = utcnow()
        job = EvaluationJob(
            id=job_id,
            owner_id=owner_id,
            submission_id=submission_id,
            status=JobStatus.PENDING,
            stage=JobStage.PENDING_UPLOAD,
            audio_refs=dict(audio_refs),
            durations=durations,
            exam_metadata=exam_metadata,
            transcripts=transcripts or None,
            callback_url=callback_url,
            partial_results={},
            part_failures={},
            total_parts=max(group_segments(audio_refs), default=0),
            progress=0,
            retry_count=0,
            max_retries=max_retries,
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        await db.flush()
        return job

    async def get_job(self, db: AsyncSession, job_id: str, refresh: bool = False) -> Optional[EvaluationJob]:
        """Get a job by ID."""
        query = select(EvaluationJob).where(EvaluationJob.id == job_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def claim(
        self,
        db: AsyncSession,
        job_id: str,
        token: str,
        lock_seconds: int,
    ) -> Optional[EvaluationJob]:
        """
        Take the job lock and move the job into its working stage.

        The update is conditioned on the status and stage that were read and
        on the lock being free, so of several concurrent claimers exactly one
        sees a row affected.

        Returns:
            The claimed job, or None when the job is absent, not claimable
            or won by another worker
        """
        now = utcnow()
        job = await self.get_job(db, job_id)
        if job is None or not is_claimable(job, now):
            return None

        pending_stage = PENDING_STAGES.get(job.stage, job.stage)
        working_stage = WORKING_STAGES.get(pending_stage)
        if working_stage is None:
            return None

        result = await db.execute(
            update(EvaluationJob)
            .where(
                EvaluationJob.id == job_id,
                EvaluationJob.status == job.status,
                EvaluationJob.stage == job.stage,
                lock_is_free(now),
            )
            .values(
                status=JobStatus.PROCESSING,
                stage=working_stage,
                lock_owner_token=token,
                lock_expires_at=now + timedelta(seconds=lock_seconds),
                heartbeat_at=now,
                processing_started_at=job.processing_started_at or now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return await self.get_job(db, job_id, refresh=True)

    async def renew_lock(self, db: AsyncSession, job_id: str, token: str, lock_seconds: int) -> bool:
        """Extend a held lock and record a heartbeat."""
        now = utcnow()
        result = await db.execute(
            update(EvaluationJob)
            .where(
                EvaluationJob.id == job_id,
                EvaluationJob.lock_owner_token == token,
                EvaluationJob.lock_expires_at > now,
            )
            .values(
                lock_expires_at=now + timedelta(seconds=lock_seconds),
                heartbeat_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def guarded_update(self, db: AsyncSession, job_id: str, token: str, **values):
        """
        Write job fields only while still holding an unexpired lock.

        Raises:
            LockLostError: The lock expired, was taken over or was cleared
                by a cancellation
        """
        now = utcnow()
        values.setdefault("updated_at", now)
        result = await db.execute(
            update(EvaluationJob)
            .where(
                EvaluationJob.id == job_id,
                EvaluationJob.lock_owner_token == token,
                EvaluationJob.lock_expires_at > now,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise LockLostError(f"Lost lock on job {job_id}")

    async def cancel_live_jobs(
        self,
        db: AsyncSession,
        submission_id: str,
        exclude_job_id: Optional[str],
        reason: str,
    ) -> int:
        """Cancel every non-terminal job of a submission except one."""
        now = utcnow()
        conditions = [
            EvaluationJob.submission_id == submission_id,
            EvaluationJob.stage.in_(LIVE_STAGES),
        ]
        if exclude_job_id:
            conditions.append(EvaluationJob.id != exclude_job_id)

        result = await db.execute(
            update(EvaluationJob)
            .where(and_(*conditions))
            .values(
                status=JobStatus.FAILED,
                stage=JobStage.CANCELLED,
                last_error=reason,
                prepared_audio=None,
                next_attempt_at=None,
                completed_at=now,
                updated_at=now,
                **LOCK_RELEASED,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def mark_stale(self, db: AsyncSession, job_id: str) -> bool:
        """Flag a waiting job whose follow-up could not be queued."""
        result = await db.execute(
            update(EvaluationJob)
            .where(
                EvaluationJob.id == job_id,
                EvaluationJob.status.in_(CLAIMABLE_STATUSES),
                EvaluationJob.stage.in_(list(WORKING_STAGES)),
                lock_is_free(utcnow()),
            )
            .values(status=JobStatus.STALE, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def job_to_response(self, job: EvaluationJob) -> JobStatusResponse:
        """Convert EvaluationJob model to response schema."""
        return JobStatusResponse(
            id=job.id,
            submission_id=job.submission_id,
            status=job.status.value,
            stage=job.stage.value,
            evaluation_mode=job.evaluation_mode.value,
            progress=job.progress,
            current_part=job.current_part,
            total_parts=job.total_parts,
            completed_parts=job.completed_parts,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            last_error=job.last_error,
            result_id=job.result_id,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )


# Singleton instance
job_service = JobService()
