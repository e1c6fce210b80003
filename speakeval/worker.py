"""Celery worker configuration and tasks."""

import asyncio
import logging
from datetime import datetime, timezone

from celery import Celery, Task

from speakeval.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "speakeval_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes max per stage
    task_soft_time_limit=540,  # Soft limit at 9 minutes
    worker_prefetch_multiplier=1,  # Fetch one task at a time
    task_acks_late=True,  # Ack after task completes
    task_reject_on_worker_lost=True,
    task_default_queue="default",
    task_queues={
        "default": {"exchange": "default", "routing_key": "default"},
        "evaluation": {"exchange": "evaluation", "routing_key": "evaluation"},
        "maintenance": {"exchange": "maintenance", "routing_key": "maintenance"},
    },
    task_routes={
        "speakeval.worker.advance_job": {"queue": "evaluation"},
        "speakeval.worker.sweep_stale_jobs": {"queue": "maintenance"},
        "speakeval.worker.cleanup_old_key_locks": {"queue": "maintenance"},
        "speakeval.worker.cleanup_old_jobs": {"queue": "maintenance"},
    },
    beat_schedule={
        "sweep-stale-jobs": {
            "task": "speakeval.worker.sweep_stale_jobs",
            "schedule": settings.watchdog_interval_seconds,
        },
        "cleanup-old-key-locks": {
            "task": "speakeval.worker.cleanup_old_key_locks",
            "schedule": 3600.0,  # Every hour
        },
        "cleanup-old-jobs": {
            "task": "speakeval.worker.cleanup_old_jobs",
            "schedule": 3600.0,
        },
    },
)


class BaseTask(Task):
    """Base task with retry configuration for infrastructure failures."""

    autoretry_for = (Exception,)
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True
    max_retries = 3


class CeleryStageScheduler:
    """Queues advance_job through the broker."""

    def schedule(self, job_id: str, delay_seconds: float = 0) -> None:
        advance_job.apply_async(args=[job_id], countdown=max(0, int(delay_seconds)))


def run_async(coro):
    """Run a coroutine on a fresh event loop and drop the loop-bound engine afterwards."""
    from speakeval.db.session import dispose_engine

    async def runner():
        try:
            return await coro
        finally:
            await dispose_engine()

    return asyncio.run(runner())


@celery_app.task(bind=True, base=BaseTask, name="speakeval.worker.advance_job")
def advance_job(self, job_id: str) -> dict:
    """
    Advance one job by a single stage unit.

    Args:
        job_id: Evaluation job ID

    Returns:
        Dict describing what the invocation did
    """
    from speakeval.db.session import get_session_maker
    from speakeval.services.orchestrator import AdvanceOutcome, StageOrchestrator

    async def run():
        orchestrator = StageOrchestrator(get_session_maker(), CeleryStageScheduler())
        return await orchestrator.advance(job_id)

    result = run_async(run())
    if result.outcome in (AdvanceOutcome.COMPLETED, AdvanceOutcome.FAILED):
        trigger_webhook_if_needed(job_id, result.callback_url)
    return result.as_dict()


@celery_app.task(bind=True, base=BaseTask, name="speakeval.worker.sweep_stale_jobs")
def sweep_stale_jobs(self) -> dict:
    """Periodic watchdog sweep."""
    from speakeval.db.session import get_session_maker
    from speakeval.services.watchdog import Watchdog

    async def run():
        return await Watchdog(get_session_maker(), CeleryStageScheduler()).sweep()

    report = run_async(run())
    for job_id in report.failed:
        notify_job_failed(job_id)
    return {
        "reclaimed": report.reclaimed,
        "failed": report.failed,
        "dispatched": report.dispatched,
    }


@celery_app.task(name="speakeval.worker.cleanup_old_key_locks")
def cleanup_old_key_locks() -> int:
    """Periodic task deleting credential locks that no longer matter."""
    from speakeval.db.session import get_session_maker
    from speakeval.services.key_pool import KeyPoolManager

    async def do_cleanup():
        async with get_session_maker()() as db:
            deleted = await KeyPoolManager().cleanup_old_locks(db)
            await db.commit()
            return deleted

    deleted = run_async(do_cleanup())
    logger.info(f"Deleted {deleted} old credential locks")
    return deleted


@celery_app.task(name="speakeval.worker.cleanup_old_jobs")
def cleanup_old_jobs() -> int:
    """Periodic task deleting old failed/cancelled jobs and leftover audio payloads."""
    from datetime import timedelta

    from sqlalchemy import select, update

    from speakeval.db.models import TERMINAL_STAGES, EvaluationJob, JobStage
    from speakeval.db.session import get_session_maker
    from speakeval.services.storage import storage_service

    async def do_cleanup():
        async with get_session_maker()() as db:
            cutoff = datetime.now(timezone.utc) - timedelta(days=settings.job_retention_days)

            await db.execute(
                update(EvaluationJob)
                .where(
                    EvaluationJob.stage.in_(list(TERMINAL_STAGES)),
                    EvaluationJob.prepared_audio.is_not(None),
                )
                .values(prepared_audio=None)
                .execution_options(synchronize_session=False)
            )

            result = await db.execute(
                select(EvaluationJob).where(
                    EvaluationJob.completed_at < cutoff,
                    EvaluationJob.stage.in_([JobStage.FAILED, JobStage.CANCELLED]),
                )
            )
            old_jobs = list(result.scalars().all())

            for job in old_jobs:
                try:
                    storage_service.delete_job_files(job.id)
                except Exception as e:
                    logger.error(f"Failed to delete storage for job {job.id}: {e}")
                    continue
                await db.delete(job)

            await db.commit()
            return len(old_jobs)

    removed = run_async(do_cleanup())
    logger.info(f"Cleaned up {removed} old jobs")
    return removed


@celery_app.task(name="speakeval.worker.send_webhook", bind=True, max_retries=3)
def send_webhook(self, job_id: str, callback_url: str):
    """
    Send webhook notification when a job reaches a terminal state.

    Retries up to 3 times with exponential backoff.
    """
    import httpx

    from speakeval.db.session import get_session_maker
    from speakeval.services.job_service import job_service

    async def get_job_data():
        async with get_session_maker()() as db:
            job = await job_service.get_job(db, job_id)
            if not job:
                return None
            return job_service.job_to_response(job).model_dump(mode="json")

    job_data = run_async(get_job_data())
    if not job_data:
        logger.error(f"Job {job_id} not found for webhook")
        return

    event = "evaluation.completed" if job_data["status"] == "completed" else "evaluation.failed"
    payload = {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": job_data,
    }

    try:
        response = httpx.post(
            callback_url,
            json=payload,
            timeout=30,
            headers={
                "Content-Type": "application/json",
                "User-Agent": "SpeakEval/1.0",
                "X-Webhook-Event": event,
            },
        )
        response.raise_for_status()
        logger.info(f"Webhook sent for job {job_id} to {callback_url}")
    except httpx.HTTPStatusError as e:
        logger.error(f"Webhook HTTP error for job {job_id}: {e.response.status_code}")
        # Retry on 5xx errors
        if e.response.status_code >= 500:
            raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    except httpx.RequestError as e:
        logger.error(f"Webhook request error for job {job_id}: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


def trigger_webhook_if_needed(job_id: str, callback_url: str | None):
    """
    Trigger webhook task if callback URL is set.

    Call this after a job reaches completed or failed.
    """
    if callback_url:
        send_webhook.apply_async(
            args=[job_id, callback_url],
            countdown=5,  # Small delay to ensure DB is committed
        )


def notify_job_failed(job_id: str):
    """Trigger the failure webhook for a job failed outside advance_job."""
    from speakeval.db.session import get_session_maker
    from speakeval.services.job_service import job_service

    async def lookup():
        async with get_session_maker()() as db:
            job = await job_service.get_job(db, job_id)
            return job.callback_url if job else None

    trigger_webhook_if_needed(job_id, run_async(lookup()))
