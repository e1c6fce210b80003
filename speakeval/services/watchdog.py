"""Watchdog: reclaims stalled jobs and enforces the retry budget."""

import enum
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from speakeval.config import Settings, get_settings
from speakeval.db.models import (
    TERMINAL_STAGES,
    EvaluationJob,
    EvaluationMode,
    JobStage,
    JobStatus,
    utcnow,
)
from speakeval.services.job_service import (
    LIVE_STAGES,
    LOCK_RELEASED,
    job_service,
    lock_is_free,
    lock_is_live,
)
from speakeval.services.orchestrator import StageScheduler

logger = logging.getLogger(__name__)

SWEEP_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.STALE)


class ResumeOutcome(str, enum.Enum):
    RESUMED = "resumed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    REFUSED = "refused"
    BUSY = "busy"
    SUPERSEDED = "superseded"


@dataclass
class SweepReport:
    reclaimed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    dispatched: list[str] = field(default_factory=list)


def resume_stage(job: EvaluationJob) -> JobStage:
    """Pick the stage to resume from based on the artifacts the job already has."""
    if job.evaluation_mode == EvaluationMode.TEXT and job.transcripts:
        return JobStage.PENDING_TEXT_EVAL
    if job.prepared_audio:
        return JobStage.PENDING_EVAL
    return JobStage.PENDING_UPLOAD


def superseded(job: EvaluationJob):
    """Another job of the same submission is still live or was created later."""
    sibling = aliased(EvaluationJob)
    return exists().where(
        sibling.submission_id == job.submission_id,
        sibling.id != job.id,
        or_(sibling.stage.in_(LIVE_STAGES), sibling.created_at > job.created_at),
    )


class Watchdog:
    """Periodic sweep plus the manual retry entry point."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: StageScheduler,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.settings = settings or get_settings()

    async def sweep(self) -> SweepReport:
        """Reclaim stale jobs, then re-dispatch retrying jobs whose follow-up got lost."""
        report = SweepReport()
        now = utcnow()
        cutoff = now - timedelta(seconds=self.settings.stale_after_seconds)

        async with self.session_factory() as db:
            result = await db.execute(
                select(EvaluationJob)
                .where(
                    EvaluationJob.status.in_(SWEEP_STATUSES),
                    EvaluationJob.stage.not_in(list(TERMINAL_STAGES)),
                    EvaluationJob.updated_at < cutoff,
                    lock_is_free(now),
                )
                .order_by(EvaluationJob.updated_at)
                .limit(self.settings.watchdog_batch_size)
            )
            stale_jobs = list(result.scalars().all())

            for job in stale_jobs:
                outcome = await self._reclaim(db, job)
                if outcome == ResumeOutcome.RESUMED:
                    report.reclaimed.append(job.id)
                elif outcome == ResumeOutcome.FAILED:
                    report.failed.append(job.id)

            overdue = now - timedelta(seconds=self.settings.retrying_grace_seconds)
            result = await db.execute(
                select(EvaluationJob.id)
                .where(
                    EvaluationJob.status == JobStatus.RETRYING,
                    EvaluationJob.next_attempt_at < overdue,
                    lock_is_free(now),
                )
                .order_by(EvaluationJob.next_attempt_at)
                .limit(self.settings.watchdog_batch_size)
            )
            overdue_ids = list(result.scalars().all())

        for job_id in report.reclaimed + overdue_ids:
            if await self._dispatch(job_id) and job_id in overdue_ids:
                report.dispatched.append(job_id)

        if report.reclaimed or report.failed or report.dispatched:
            logger.info(
                f"Watchdog sweep: reclaimed={len(report.reclaimed)} "
                f"failed={len(report.failed)} dispatched={len(report.dispatched)}"
            )
        return report

    async def resume_job(self, job_id: str) -> tuple[ResumeOutcome, Optional[EvaluationJob]]:
        """Run one resumption pass for a single job, ignoring staleness."""
        async with self.session_factory() as db:
            job = await job_service.get_job(db, job_id)
            if job is None:
                return ResumeOutcome.NOT_FOUND, None
            if job.stage in (JobStage.COMPLETED, JobStage.CANCELLED):
                return ResumeOutcome.REFUSED, job
            if lock_is_live(job):
                return ResumeOutcome.BUSY, job
            if await db.scalar(select(superseded(job))):
                logger.info(
                    f"Manual retry of job {job_id} refused; "
                    f"submission {job.submission_id} has a newer job"
                )
                return ResumeOutcome.SUPERSEDED, job

            outcome = await self._reclaim(db, job, reason="Manual retry", guard=(~superseded(job),))
            job = await job_service.get_job(db, job_id, refresh=True)

        if outcome == ResumeOutcome.RESUMED:
            await self._dispatch(job_id)
        return outcome, job

    async def _reclaim(
        self,
        db: AsyncSession,
        job: EvaluationJob,
        reason: str = "Reclaimed by watchdog",
        guard: tuple = (),
    ) -> ResumeOutcome:
        now = utcnow()
        guard = (
            *guard,
            EvaluationJob.id == job.id,
            EvaluationJob.status == job.status,
            EvaluationJob.stage == job.stage,
            lock_is_free(now),
        )

        if job.retry_count >= job.max_retries:
            result = await db.execute(
                update(EvaluationJob)
                .where(*guard)
                .values(
                    status=JobStatus.FAILED,
                    stage=JobStage.FAILED,
                    last_error=f"Retry budget exhausted after {job.retry_count} attempts"
                    + (f"; last error: {job.last_error}" if job.last_error else ""),
                    prepared_audio=None,
                    next_attempt_at=None,
                    completed_at=job.completed_at or now,
                    updated_at=now,
                    **LOCK_RELEASED,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount:
                logger.error(f"Job {job.id} exhausted its retry budget; marked failed")
                return ResumeOutcome.FAILED
            return ResumeOutcome.BUSY

        stage = resume_stage(job)
        result = await db.execute(
            update(EvaluationJob)
            .where(*guard)
            .values(
                status=JobStatus.PENDING,
                stage=stage,
                retry_count=job.retry_count + 1,
                last_error=f"{reason} from {job.stage.value}",
                next_attempt_at=None,
                completed_at=None,
                updated_at=now,
                **LOCK_RELEASED,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if not result.rowcount:
            return ResumeOutcome.BUSY

        logger.info(
            f"{reason}: job {job.id} {job.stage.value} -> {stage.value} "
            f"(retry {job.retry_count + 1}/{job.max_retries})"
        )
        return ResumeOutcome.RESUMED

    async def _dispatch(self, job_id: str) -> bool:
        try:
            self.scheduler.schedule(job_id, 0)
            return True
        except Exception:
            logger.exception(f"Could not queue job {job_id}; marking stale")
            async with self.session_factory() as db:
                await job_service.mark_stale(db, job_id)
                await db.commit()
            return False
