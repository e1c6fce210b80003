"""Stage orchestrator: claims a job and runs exactly one unit of work."""

import asyncio
import base64
import enum
import logging
import secrets
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Optional, Protocol
from uuid import uuid4

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from speakeval.config import Settings, get_settings
from speakeval.db.models import (
    PENDING_STAGES,
    Capability,
    EvaluationJob,
    EvaluationMode,
    EvaluationResult,
    JobStage,
    JobStatus,
    utcnow,
)
from speakeval.services.aggregator import ResultAggregator
from speakeval.services.errors import (
    ErrorClassification,
    ErrorKind,
    JobDataError,
    LockLostError,
    MalformedResponseError,
    extract_retry_after_seconds,
)
from speakeval.services.evaluation_parser import ParseFailure, PartEvaluation, parse_part_evaluation
from speakeval.services.heartbeat import LockHeartbeat
from speakeval.services.job_service import LOCK_RELEASED, job_service
from speakeval.services.key_pool import CheckedOutCredential, KeyPoolManager
from speakeval.services.prompts import Segment, build_audio_prompt, build_text_prompt, group_segments
from speakeval.services.provider import AudioPayload, GeminiGateway
from speakeval.services.storage import mime_type_for, storage_service

logger = logging.getLogger(__name__)


class StageScheduler(Protocol):
    """Queues a future advance() of a job."""

    def schedule(self, job_id: str, delay_seconds: float = 0) -> None: ...


class AdvanceOutcome(str, enum.Enum):
    SKIPPED = "skipped"
    ADVANCED = "advanced"
    DEFERRED = "deferred"
    COMPLETED = "completed"
    FAILED = "failed"
    LOCK_LOST = "lock_lost"


@dataclass
class AdvanceResult:
    """What one advance() invocation did."""

    job_id: str
    outcome: AdvanceOutcome
    stage: Optional[str] = None
    part: Optional[int] = None
    delay_seconds: Optional[float] = None
    detail: str = ""
    callback_url: Optional[str] = None

    def as_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data


class StageOrchestrator:
    """Runs one stage transition per call; all coordination goes through the database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: StageScheduler,
        provider: Optional[GeminiGateway] = None,
        storage=None,
        key_pool: Optional[KeyPoolManager] = None,
        aggregator: Optional[ResultAggregator] = None,
        settings: Optional[Settings] = None,
        retry_wait=None,
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self.provider = provider or GeminiGateway(self.settings)
        self.storage = storage or storage_service
        self.key_pool = key_pool or KeyPoolManager(self.settings)
        self.aggregator = aggregator or ResultAggregator()
        self.retry_wait = retry_wait or wait_exponential_jitter(initial=1, max=20, jitter=2)

    async def advance(self, job_id: str) -> AdvanceResult:
        """
        Claim the job and execute one unit of work for its stage.

        Safe to call concurrently: only the caller whose claim lands does
        anything, everyone else gets SKIPPED.
        """
        token = secrets.token_hex(16)
        async with self.session_factory() as db:
            job = await job_service.claim(db, job_id, token, self.settings.job_lock_seconds)
            await db.commit()

        if job is None:
            logger.info(f"Job {job_id} not claimable; skipping")
            return AdvanceResult(job_id=job_id, outcome=AdvanceOutcome.SKIPPED)

        logger.info(f"Claimed job {job_id} at stage {job.stage.value} (retry {job.retry_count})")
        async with LockHeartbeat(
            self.session_factory,
            job_id,
            token,
            self.settings.heartbeat_interval_seconds,
            self.settings.job_lock_seconds,
            key_pool=self.key_pool,
        ):
            try:
                if job.stage == JobStage.UPLOADING:
                    result = await self._run_ingest(job, token)
                else:
                    result = await self._run_evaluation(job, token)
            except LockLostError as e:
                logger.warning(f"{e}; abandoning this invocation")
                result = AdvanceResult(job_id=job_id, outcome=AdvanceOutcome.LOCK_LOST, detail=str(e))

        result.callback_url = job.callback_url
        if result.delay_seconds is not None:
            await self._schedule(job_id, result.delay_seconds)
        return result

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    async def _run_ingest(self, job: EvaluationJob, token: str) -> AdvanceResult:
        try:
            prepared = await self._prepare_audio(job)
        except Exception as exc:
            return await self._handle_failure(job, token, exc)

        async with self.session_factory() as db:
            await job_service.guarded_update(
                db,
                job.id,
                token,
                status=JobStatus.PENDING,
                stage=JobStage.PENDING_EVAL,
                prepared_audio=prepared,
                upload_completed_at=utcnow(),
                last_error=None,
                next_attempt_at=None,
                **LOCK_RELEASED,
            )
            await db.commit()

        logger.info(f"Job {job.id}: prepared {len(prepared)} audio segment(s)")
        return AdvanceResult(
            job_id=job.id,
            outcome=AdvanceOutcome.ADVANCED,
            stage=JobStage.PENDING_EVAL.value,
            delay_seconds=0,
        )

    async def _prepare_audio(self, job: EvaluationJob) -> dict:
        """Fetch every segment and turn it into an inline provider payload."""
        parts = group_segments(job.audio_refs)
        keys = [segment.segment_key for segments in parts.values() for segment in segments]
        if not keys:
            raise JobDataError("Submission has no audio segments")

        existing = job.prepared_audio or {}
        prepared = {}
        for key in keys:
            if key in existing:
                prepared[key] = existing[key]
                continue
            path = job.audio_refs[key]
            data = await self._with_retries(asyncio.to_thread, self.storage.get, path)
            if not data:
                raise JobDataError(f"Audio segment {key} is empty")
            prepared[key] = {
                "mime_type": mime_type_for(path),
                "data": base64.b64encode(data).decode("ascii"),
                "size_bytes": len(data),
            }
        return prepared

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def _run_evaluation(self, job: EvaluationJob, token: str) -> AdvanceResult:
        mode = EvaluationMode.TEXT if job.stage == JobStage.EVALUATING_TEXT else EvaluationMode.AUDIO
        pending_stage = PENDING_STAGES[job.stage]
        metadata = job.exam_metadata or {}
        parts = group_segments(job.audio_refs, metadata.get("questions"))
        if not parts:
            return await self._handle_failure(job, token, JobDataError("Submission has no audio segments"))

        done = {int(p) for p in (job.partial_results or {})}
        remaining = [p for p in parts if p not in done]
        if not remaining:
            try:
                async with self.session_factory() as db:
                    result_id = await self._finalize(db, job, token, dict(job.partial_results), mode)
            except LockLostError:
                raise
            except Exception as exc:
                return await self._handle_failure(job, token, exc)
            return self._completed(job, result_id, None)

        part = remaining[0]
        segments = parts[part]

        if mode == EvaluationMode.AUDIO:
            prepared = job.prepared_audio or {}
            missing = [s.segment_key for s in segments if s.segment_key not in prepared]
            if missing:
                logger.warning(f"Job {job.id}: prepared audio missing for {missing}; re-ingesting")
                async with self.session_factory() as db:
                    await job_service.guarded_update(
                        db,
                        job.id,
                        token,
                        status=JobStatus.PENDING,
                        stage=JobStage.PENDING_UPLOAD,
                        last_error=f"Prepared audio missing for part {part}",
                        **LOCK_RELEASED,
                    )
                    await db.commit()
                return AdvanceResult(
                    job_id=job.id,
                    outcome=AdvanceOutcome.ADVANCED,
                    stage=JobStage.PENDING_UPLOAD.value,
                    part=part,
                    delay_seconds=0,
                )
            capability, model = Capability.AUDIO_EVALUATION, self.settings.audio_model
        else:
            capability, model = Capability.TEXT_EVALUATION, self.settings.text_model

        async with self.session_factory() as db:
            credential = await self.key_pool.checkout(db, job.id, part, capability)
            if credential is None:
                delay = self.settings.no_credential_retry_seconds
                await job_service.guarded_update(
                    db,
                    job.id,
                    token,
                    status=JobStatus.RETRYING,
                    stage=pending_stage,
                    current_part=part,
                    next_attempt_at=utcnow() + timedelta(seconds=delay),
                    last_error=f"No API credential available for part {part}; waiting for quota",
                    **LOCK_RELEASED,
                )
                await db.commit()
                logger.warning(f"Job {job.id} part {part}: credential pool empty; retrying in {delay}s")
                return AdvanceResult(
                    job_id=job.id,
                    outcome=AdvanceOutcome.DEFERRED,
                    stage=pending_stage.value,
                    part=part,
                    delay_seconds=delay,
                    detail="no credential available",
                )
            await job_service.guarded_update(db, job.id, token, current_part=part)
            await db.commit()

        try:
            evaluation = await self._evaluate_part(job, credential, model, part, segments, mode)
        except Exception as exc:
            return await self._handle_failure(job, token, exc, part=part, credential=credential)

        return await self._store_part(job, token, credential, part, evaluation, list(parts), mode, pending_stage)

    async def _evaluate_part(
        self,
        job: EvaluationJob,
        credential: CheckedOutCredential,
        model: str,
        part: int,
        segments: list[Segment],
        mode: EvaluationMode,
    ) -> PartEvaluation:
        metadata = job.exam_metadata or {}
        if mode == EvaluationMode.AUDIO:
            payloads = [AudioPayload.from_prepared(s.segment_key, job.prepared_audio[s.segment_key]) for s in segments]
            prompt = build_audio_prompt(part, segments, metadata)
        else:
            payloads = []
            prompt = build_text_prompt(part, segments, job.transcripts or {}, metadata)

        async def call() -> PartEvaluation:
            text = await self.provider.generate(
                credential.secret,
                model,
                payloads,
                prompt,
                timeout=self.settings.provider_timeout_seconds,
            )
            outcome = parse_part_evaluation(text, part)
            if isinstance(outcome, ParseFailure):
                raise MalformedResponseError(outcome.reason)
            return outcome.evaluation

        logger.info(f"Job {job.id}: evaluating part {part} ({mode.value}, {len(segments)} segment(s))")
        return await self._with_retries(call)

    async def _store_part(
        self,
        job: EvaluationJob,
        token: str,
        credential: CheckedOutCredential,
        part: int,
        evaluation: PartEvaluation,
        all_parts: list[int],
        mode: EvaluationMode,
        pending_stage: JobStage,
    ) -> AdvanceResult:
        results = {**(job.partial_results or {}), str(part): evaluation.model_dump(mode="json")}
        remaining = [p for p in all_parts if str(p) not in results]
        progress = max(job.progress or 0, round(len(results) / len(all_parts) * 100))

        async with self.session_factory() as db:
            try:
                await self.key_pool.release(db, job.id, part, self.settings.key_cooldown_seconds)
                await self.key_pool.reset_rate_limit(db, credential.id)
                if remaining:
                    await job_service.guarded_update(
                        db,
                        job.id,
                        token,
                        status=JobStatus.PENDING,
                        stage=pending_stage,
                        partial_results=results,
                        progress=progress,
                        current_part=part,
                        last_error=None,
                        next_attempt_at=None,
                        **LOCK_RELEASED,
                    )
                    await db.commit()
                else:
                    result_id = await self._finalize(db, job, token, results, mode)
            except LockLostError:
                await db.rollback()
                await self._release_credential(job.id, part)
                raise
            except Exception as exc:
                await db.rollback()
                store_error = exc
            else:
                store_error = None

        if store_error is not None:
            logger.error(f"Job {job.id}: storing part {part} failed: {store_error!r}")
            await self._release_credential(job.id, part)
            return await self._handle_failure(job, token, store_error)

        if remaining:
            logger.info(f"Job {job.id}: part {part} stored ({progress}%), {len(remaining)} part(s) left")
            return AdvanceResult(
                job_id=job.id,
                outcome=AdvanceOutcome.ADVANCED,
                stage=pending_stage.value,
                part=part,
                delay_seconds=self.settings.inter_part_delay_seconds,
            )
        return self._completed(job, result_id, part)

    async def _finalize(
        self,
        db: AsyncSession,
        job: EvaluationJob,
        token: str,
        results: dict,
        mode: EvaluationMode,
    ) -> str:
        """Persist the final result and complete the job in one transaction."""
        payload = self.aggregator.aggregate(results, mode.value)
        now = utcnow()

        await db.execute(
            delete(EvaluationResult)
            .where(EvaluationResult.submission_id == job.submission_id)
            .execution_options(synchronize_session=False)
        )
        record = EvaluationResult(
            id=str(uuid4()),
            submission_id=job.submission_id,
            owner_id=job.owner_id,
            job_id=job.id,
            overall_band=payload["overall_band"],
            evaluation_mode=mode.value,
            payload=payload,
            created_at=now,
        )
        db.add(record)
        await db.flush()

        await job_service.guarded_update(
            db,
            job.id,
            token,
            status=JobStatus.COMPLETED,
            stage=JobStage.COMPLETED,
            partial_results=results,
            progress=100,
            result_id=record.id,
            prepared_audio=None,
            current_part=None,
            last_error=None,
            next_attempt_at=None,
            completed_at=now,
            **LOCK_RELEASED,
        )
        cancelled = await job_service.cancel_live_jobs(
            db, job.submission_id, exclude_job_id=job.id, reason="Superseded by successful evaluation"
        )
        await db.commit()

        logger.info(
            f"Job {job.id} completed: band {payload['overall_band']}"
            + (f", cancelled {cancelled} sibling job(s)" if cancelled else "")
        )
        return record.id

    def _completed(self, job: EvaluationJob, result_id: str, part: Optional[int]) -> AdvanceResult:
        return AdvanceResult(
            job_id=job.id,
            outcome=AdvanceOutcome.COMPLETED,
            stage=JobStage.COMPLETED.value,
            part=part,
            detail=f"result {result_id}",
        )

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _retry_in_place(self, exc: BaseException) -> bool:
        if isinstance(exc, MalformedResponseError):
            return True
        return self.key_pool.classify(exc).kind == ErrorKind.TRANSIENT

    async def _with_retries(self, func, *args):
        """Run func, retrying transient errors and malformed output in place."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(self._retry_in_place),
            wait=self.retry_wait,
            stop=stop_after_attempt(self.settings.provider_max_attempts),
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        ):
            with attempt:
                result = await func(*args)
        return result

    async def _handle_failure(
        self,
        job: EvaluationJob,
        token: str,
        exc: Exception,
        part: Optional[int] = None,
        credential: Optional[CheckedOutCredential] = None,
    ) -> AdvanceResult:
        classification = self.key_pool.classify(exc)
        logger.warning(
            f"Job {job.id} part {part}: {classification.kind.value} error: {classification.message[:200]}"
        )

        if credential is not None:
            await self._record_credential_failure(job.id, part, credential, classification, exc)

        now = utcnow()
        retry_count = job.retry_count + 1
        next_stage = PENDING_STAGES.get(job.stage, job.stage)
        values = {
            "retry_count": retry_count,
            "last_error": _describe(classification, part, job.stage),
            **LOCK_RELEASED,
        }

        if part is not None and classification.kind in (ErrorKind.TRANSIENT, ErrorKind.PERMANENT):
            failures = dict(job.part_failures or {})
            failures[str(part)] = failures.get(str(part), 0) + 1
            values["part_failures"] = failures
            if self._should_fall_back_to_text(job, part, failures[str(part)]):
                next_stage = JobStage.PENDING_TEXT_EVAL
                values["evaluation_mode"] = EvaluationMode.TEXT
                values["last_error"] = (
                    f"Switching to transcript evaluation after {failures[str(part)]} "
                    f"failed audio attempts on part {part}"
                )
                logger.info(f"Job {job.id}: falling back to transcript evaluation")

        if isinstance(exc, JobDataError) or retry_count >= job.max_retries:
            if not isinstance(exc, JobDataError):
                values["last_error"] = f"Evaluation failed after {retry_count} attempts: {values['last_error']}"
            values.update(
                status=JobStatus.FAILED,
                stage=JobStage.FAILED,
                prepared_audio=None,
                current_part=None,
                next_attempt_at=None,
                completed_at=now,
            )
            outcome, delay, stage = AdvanceOutcome.FAILED, None, JobStage.FAILED
            logger.error(f"Job {job.id} failed: {values['last_error']}")
        else:
            delay = self._retry_delay(classification, retry_count)
            values.update(
                status=JobStatus.RETRYING,
                stage=next_stage,
                next_attempt_at=now + timedelta(seconds=delay),
            )
            outcome, stage = AdvanceOutcome.DEFERRED, next_stage

        async with self.session_factory() as db:
            await job_service.guarded_update(db, job.id, token, **values)
            await db.commit()

        return AdvanceResult(
            job_id=job.id,
            outcome=outcome,
            stage=stage.value,
            part=part,
            delay_seconds=delay,
            detail=classification.kind.value,
        )

    async def _record_credential_failure(
        self,
        job_id: str,
        part: int,
        credential: CheckedOutCredential,
        classification: ErrorClassification,
        exc: Exception,
    ):
        async with self.session_factory() as db:
            await self.key_pool.release(db, job_id, part, self.settings.key_cooldown_seconds)
            if classification.kind == ErrorKind.RATE_LIMIT:
                await self.key_pool.mark_rate_limited(
                    db, credential.id, retry_after_seconds=extract_retry_after_seconds(exc)
                )
            elif classification.kind == ErrorKind.DAILY_QUOTA:
                await self.key_pool.mark_daily_exhausted(db, credential.id, credential.capability)
            else:
                await self.key_pool.record_error(db, credential.id)
            await db.commit()

    async def _release_credential(self, job_id: str, part: int):
        async with self.session_factory() as db:
            await self.key_pool.release(db, job_id, part, self.settings.key_cooldown_seconds)
            await db.commit()

    def _should_fall_back_to_text(self, job: EvaluationJob, part: int, failures: int) -> bool:
        if job.evaluation_mode != EvaluationMode.AUDIO or job.stage != JobStage.EVALUATING:
            return False
        if failures < self.settings.text_fallback_after_failures or not job.transcripts:
            return False
        segments = group_segments(job.audio_refs).get(part, [])
        return any(s.segment_key in job.transcripts for s in segments)

    def _retry_delay(self, classification: ErrorClassification, retry_count: int) -> int:
        if classification.should_switch_credential:
            return self.settings.key_cooldown_seconds
        return min(30 * 2 ** (retry_count - 1), 600)

    async def _schedule(self, job_id: str, delay_seconds: float):
        try:
            self.scheduler.schedule(job_id, delay_seconds)
        except Exception:
            logger.exception(f"Could not queue job {job_id}; marking it stale for the watchdog")
            async with self.session_factory() as db:
                await job_service.mark_stale(db, job_id)
                await db.commit()


def _describe(classification: ErrorClassification, part: Optional[int], stage: JobStage) -> str:
    if part is not None:
        where = f"Part {part}"
    elif stage == JobStage.UPLOADING:
        where = "Audio ingest"
    else:
        where = "Storing results"
    return f"{where} {classification.kind.value}: {classification.message[:300]}"
