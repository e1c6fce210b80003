"""Tests for the stage orchestrator."""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from tenacity import wait_none

from speakeval.db.models import (
    ApiCredential,
    CredentialLock,
    EvaluationJob,
    EvaluationMode,
    EvaluationResult,
    JobStage,
    JobStatus,
    utcnow,
)
from speakeval.services.errors import ProviderError, ProviderTimeout
from speakeval.services.job_service import job_service
from speakeval.services.key_pool import KeyPoolManager
from speakeval.services.orchestrator import AdvanceOutcome, StageOrchestrator
from speakeval.services.watchdog import Watchdog

from tests.fakes import part_response

RATE_LIMITED = "429 RESOURCE_EXHAUSTED: Too many requests per minute for this model"


async def load(session_factory, job_id) -> EvaluationJob:
    async with session_factory() as db:
        return await job_service.get_job(db, job_id)


async def results_for(session_factory, submission_id) -> list[EvaluationResult]:
    async with session_factory() as db:
        result = await db.execute(
            select(EvaluationResult).where(EvaluationResult.submission_id == submission_id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_three_parts_complete_with_one_result(
    orchestrator, provider, scheduler, create_job, add_credential, session_factory
):
    """A job with three parts that all succeed first time completes with one result."""
    await add_credential("a")
    provider.add(part_response(1, 6.0), part_response(2, 7.0), part_response(3, 6.5))
    job = await create_job()

    progress = []
    outcomes = []
    for _ in range(4):
        outcomes.append((await orchestrator.advance(job.id)).outcome)
        progress.append((await load(session_factory, job.id)).progress)

    assert outcomes == [
        AdvanceOutcome.ADVANCED,
        AdvanceOutcome.ADVANCED,
        AdvanceOutcome.ADVANCED,
        AdvanceOutcome.COMPLETED,
    ]
    assert progress == [0, 33, 67, 100]

    job = await load(session_factory, job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.stage == JobStage.COMPLETED
    assert job.progress == 100
    assert job.prepared_audio is None
    assert job.lock_owner_token is None
    assert job.retry_count == 0

    results = await results_for(session_factory, "sub-1")
    assert len(results) == 1
    assert results[0].id == job.result_id
    assert results[0].overall_band == 6.5
    assert results[0].payload["parts_evaluated"] == [1, 2, 3]

    assert [c["segments"] for c in provider.calls] == [["part1-q1"], ["part2-q1"], ["part3-q1"]]
    assert [delay for _, delay in scheduler.calls] == [0, 30, 30]


@pytest.mark.asyncio
async def test_rate_limited_part_switches_credentials(
    orchestrator, provider, create_job, add_credential, session_factory
):
    """Two rate limits on part 2 move to fresh credentials and cost two retries."""
    for label in ("a", "b", "c"):
        await add_credential(label)
    provider.add(
        part_response(1, 6.0),
        ProviderError(RATE_LIMITED, status_code=429),
        ProviderError(RATE_LIMITED, status_code=429),
        part_response(2, 8.0),
        part_response(3, 6.0),
    )
    job = await create_job()

    outcomes = [(await orchestrator.advance(job.id)).outcome for _ in range(6)]

    assert outcomes[2:4] == [AdvanceOutcome.DEFERRED, AdvanceOutcome.DEFERRED]
    assert outcomes[-1] == AdvanceOutcome.COMPLETED

    part_two_keys = [c["api_key"] for c in provider.calls[1:4]]
    assert len(set(part_two_keys)) == 3

    job = await load(session_factory, job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.retry_count == 2

    [result] = await results_for(session_factory, "sub-1")
    assert result.payload["part_scores"] == {"1": 6.0, "2": 8.0, "3": 6.0}

    async with session_factory() as db:
        limited = await db.execute(
            select(ApiCredential).where(ApiCredential.rate_limited_until.is_not(None))
        )
        assert len(limited.scalars().all()) == 2


@pytest.mark.asyncio
async def test_exhausted_pool_defers_until_quota_resets(
    orchestrator, provider, scheduler, create_job, add_credential, session_factory, settings
):
    """With every credential out of daily quota the job waits instead of failing."""
    key_pool = KeyPoolManager(settings)
    credential_ids = [await add_credential("a"), await add_credential("b")]
    async with session_factory() as db:
        for credential_id in credential_ids:
            await key_pool.mark_daily_exhausted(db, credential_id, "audio_evaluation")
        await db.commit()

    job = await create_job(parts=(1,))
    await orchestrator.advance(job.id)
    result = await orchestrator.advance(job.id)

    assert result.outcome == AdvanceOutcome.DEFERRED
    assert result.delay_seconds == settings.no_credential_retry_seconds
    assert provider.calls == []

    job = await load(session_factory, job.id)
    assert job.status == JobStatus.RETRYING
    assert job.stage == JobStage.PENDING_EVAL
    assert job.retry_count == 0
    assert job.next_attempt_at is not None
    assert job.lock_owner_token is None

    async with session_factory() as db:
        await key_pool.reset_quota(db, credential_ids[0])
        await db.commit()

    provider.add(part_response(1, 7.0))
    result = await orchestrator.advance(job.id)

    assert result.outcome == AdvanceOutcome.COMPLETED
    assert provider.calls[0]["api_key"] == "secret-a-0000"


@pytest.mark.asyncio
async def test_newer_submission_cancels_in_flight_job(
    orchestrator, provider, create_job, add_credential, session_factory
):
    """A resubmission during evaluation cancels the running job and it writes nothing."""
    await add_credential("a")
    first = await create_job(submission_id="sub-d", parts=(1,))
    await orchestrator.advance(first.id)

    created = {}

    async def resubmit():
        created["job"] = await create_job(submission_id="sub-d", parts=(1,))
        return part_response(1, 8.0)

    provider.add(resubmit)
    result = await orchestrator.advance(first.id)

    assert result.outcome == AdvanceOutcome.LOCK_LOST
    first = await load(session_factory, first.id)
    assert first.status == JobStatus.FAILED
    assert first.stage == JobStage.CANCELLED
    assert first.partial_results == {}
    assert await results_for(session_factory, "sub-d") == []

    async with session_factory() as db:
        locks = await db.execute(select(CredentialLock).where(CredentialLock.job_id == first.id))
        assert all(lock.released_at is not None for lock in locks.scalars().all())

    second = created["job"]
    provider.add(part_response(1, 7.0))
    await orchestrator.advance(second.id)
    assert (await orchestrator.advance(second.id)).outcome == AdvanceOutcome.COMPLETED

    [record] = await results_for(session_factory, "sub-d")
    assert record.job_id == second.id
    assert (await orchestrator.advance(first.id)).outcome == AdvanceOutcome.SKIPPED


@pytest.mark.asyncio
async def test_crashed_worker_is_reclaimed_and_resumed(
    orchestrator, provider, scheduler, create_job, add_credential, session_factory, settings
):
    """A job whose worker died is resumed from its prepared audio after the lock expires."""
    await add_credential("a")
    job = await create_job(parts=(1, 2))
    await orchestrator.advance(job.id)

    async with session_factory() as db:
        claimed = await job_service.claim(db, job.id, "dead-worker", settings.job_lock_seconds)
        await db.commit()
    assert claimed.stage == JobStage.EVALUATING

    assert (await orchestrator.advance(job.id)).outcome == AdvanceOutcome.SKIPPED

    watchdog = Watchdog(session_factory, scheduler, settings)
    assert (await watchdog.sweep()).reclaimed == []

    past = utcnow() - timedelta(minutes=10)
    async with session_factory() as db:
        await db.execute(
            update(EvaluationJob)
            .where(EvaluationJob.id == job.id)
            .values(lock_expires_at=past, updated_at=past)
        )
        await db.commit()

    report = await watchdog.sweep()
    assert report.reclaimed == [job.id]

    job = await load(session_factory, job.id)
    assert job.status == JobStatus.PENDING
    assert job.stage == JobStage.PENDING_EVAL
    assert job.retry_count == 1
    assert job.lock_owner_token is None
    assert scheduler.calls[-1] == (job.id, 0)

    provider.add(part_response(1), part_response(2))
    assert (await orchestrator.advance(job.id)).outcome == AdvanceOutcome.ADVANCED
    assert (await orchestrator.advance(job.id)).outcome == AdvanceOutcome.COMPLETED


@pytest.mark.asyncio
async def test_processing_job_with_expired_lock_is_claimable(
    orchestrator, provider, create_job, add_credential, session_factory, settings
):
    """The orchestrator itself can take over a job whose lock ran out."""
    await add_credential("a")
    job = await create_job(parts=(1,))
    await orchestrator.advance(job.id)

    async with session_factory() as db:
        await job_service.claim(db, job.id, "dead-worker", settings.job_lock_seconds)
        await db.execute(
            update(EvaluationJob)
            .where(EvaluationJob.id == job.id)
            .values(lock_expires_at=utcnow() - timedelta(seconds=1))
        )
        await db.commit()

    provider.add(part_response(1))
    assert (await orchestrator.advance(job.id)).outcome == AdvanceOutcome.COMPLETED


@pytest.mark.asyncio
async def test_advance_on_terminal_job_is_noop(
    orchestrator, provider, create_job, add_credential, session_factory
):
    """Advancing a completed job changes nothing."""
    await add_credential("a")
    provider.add(part_response(1))
    job = await create_job(parts=(1,))
    await orchestrator.advance(job.id)
    await orchestrator.advance(job.id)

    before = await load(session_factory, job.id)
    result = await orchestrator.advance(job.id)
    after = await load(session_factory, job.id)

    assert result.outcome == AdvanceOutcome.SKIPPED
    assert after.updated_at == before.updated_at
    assert after.retry_count == before.retry_count
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_advance_unknown_job_is_skipped(orchestrator):
    """Unknown job IDs are skipped, not errors."""
    result = await orchestrator.advance("00000000-0000-0000-0000-000000000000")
    assert result.outcome == AdvanceOutcome.SKIPPED


@pytest.mark.asyncio
async def test_racing_claims_have_one_winner(create_job, session_factory, settings):
    """Two workers that read the same pending job: only the first conditional claim lands."""
    job = await create_job(parts=(1,))

    async with session_factory() as late:
        # The late worker has already read the job as pending
        await job_service.get_job(late, job.id)

        async with session_factory() as early:
            won = await job_service.claim(early, job.id, "worker-a", settings.job_lock_seconds)
            await early.commit()

        lost = await job_service.claim(late, job.id, "worker-b", settings.job_lock_seconds)
        await late.commit()

    assert won is not None
    assert won.lock_owner_token == "worker-a"
    assert lost is None
    job = await load(session_factory, job.id)
    assert job.lock_owner_token == "worker-a"
    assert job.stage == JobStage.UPLOADING


@pytest.mark.asyncio
async def test_second_worker_skips_live_job(
    session_factory, scheduler, provider, storage, settings, create_job
):
    """A worker arriving while another holds the lock skips without touching the job."""
    job = await create_job(parts=(1,))
    async with session_factory() as db:
        await job_service.claim(db, job.id, "worker-a", settings.job_lock_seconds)
        await db.commit()

    other = StageOrchestrator(
        session_factory, scheduler, provider=provider, storage=storage,
        settings=settings, retry_wait=wait_none(),
    )
    result = await other.advance(job.id)

    assert result.outcome == AdvanceOutcome.SKIPPED
    assert (await load(session_factory, job.id)).lock_owner_token == "worker-a"


@pytest.mark.asyncio
async def test_transient_error_retries_same_credential(
    orchestrator, provider, create_job, add_credential, session_factory
):
    """A timeout is retried in place without spending retry budget."""
    await add_credential("a")
    await add_credential("b")
    provider.add(ProviderTimeout("Provider call timed out after 120s"), part_response(1))
    job = await create_job(parts=(1,))
    await orchestrator.advance(job.id)

    result = await orchestrator.advance(job.id)

    assert result.outcome == AdvanceOutcome.COMPLETED
    assert len(provider.calls) == 2
    assert provider.calls[0]["api_key"] == provider.calls[1]["api_key"]
    assert (await load(session_factory, job.id)).retry_count == 0


@pytest.mark.asyncio
async def test_malformed_output_is_requeued_with_backoff(
    orchestrator, provider, create_job, add_credential, session_factory
):
    """Unparseable output is retried in the call, then counted against the job."""
    await add_credential("a")
    provider.add("I think the candidate did well.", "```json\n{\"part_number\": 1}\n```")
    job = await create_job(parts=(1,))
    await orchestrator.advance(job.id)

    result = await orchestrator.advance(job.id)

    assert result.outcome == AdvanceOutcome.DEFERRED
    assert result.delay_seconds == 30
    job = await load(session_factory, job.id)
    assert job.status == JobStatus.RETRYING
    assert job.stage == JobStage.PENDING_EVAL
    assert job.retry_count == 1
    assert job.part_failures == {"1": 1}
    assert job.partial_results == {}
    assert "permanent" in job.last_error


@pytest.mark.asyncio
async def test_job_fails_when_retry_budget_is_spent(
    orchestrator, provider, create_job, add_credential, session_factory
):
    """The last allowed failure makes the job terminal."""
    await add_credential("a")
    provider.add(ProviderError("400 INVALID_ARGUMENT: unsupported audio", status_code=400))
    job = await create_job(parts=(1,), max_retries=1)
    await orchestrator.advance(job.id)

    result = await orchestrator.advance(job.id)

    assert result.outcome == AdvanceOutcome.FAILED
    assert result.delay_seconds is None
    job = await load(session_factory, job.id)
    assert job.status == JobStatus.FAILED
    assert job.stage == JobStage.FAILED
    assert job.prepared_audio is None
    assert job.last_error.startswith("Evaluation failed after 1 attempts")


@pytest.mark.asyncio
async def test_empty_audio_fails_immediately(orchestrator, storage, create_job, session_factory):
    """Audio that cannot be evaluated fails the job without retrying."""
    job = await create_job(parts=(1,))
    storage.objects[job.audio_refs["part1-q1"]] = b""

    result = await orchestrator.advance(job.id)

    assert result.outcome == AdvanceOutcome.FAILED
    job = await load(session_factory, job.id)
    assert job.stage == JobStage.FAILED
    assert "empty" in job.last_error


@pytest.mark.asyncio
async def test_ingest_prepares_inline_audio(orchestrator, create_job, session_factory):
    """Ingest stores base64 audio with a MIME type taken from the path."""
    job = await create_job(parts=(1, 3))

    result = await orchestrator.advance(job.id)

    assert result.outcome == AdvanceOutcome.ADVANCED
    job = await load(session_factory, job.id)
    assert job.stage == JobStage.PENDING_EVAL
    assert job.status == JobStatus.PENDING
    assert set(job.prepared_audio) == {"part1-q1", "part3-q1"}
    assert job.prepared_audio["part1-q1"]["mime_type"] == "audio/mpeg"
    assert job.upload_completed_at is not None
    assert job.total_parts == 3


@pytest.mark.asyncio
async def test_gap_in_parts_keeps_results_within_total_parts(
    orchestrator, provider, create_job, add_credential, session_factory
):
    """A submission without part 2 still completes; progress counts parts with audio."""
    await add_credential("a")
    provider.add(part_response(1), part_response(3))
    job = await create_job(parts=(1, 3))

    progress = []
    for _ in range(3):
        await orchestrator.advance(job.id)
        progress.append((await load(session_factory, job.id)).progress)

    job = await load(session_factory, job.id)
    assert job.status == JobStatus.COMPLETED
    assert progress == [0, 50, 100]
    assert {int(p) for p in job.partial_results} <= set(range(1, job.total_parts + 1))


@pytest.mark.asyncio
async def test_falls_back_to_transcripts_after_repeated_failures(
    orchestrator, provider, create_job, add_credential, session_factory, settings
):
    """Repeated audio failures switch the remaining parts to transcript evaluation."""
    await add_credential("a")
    bad_audio = ProviderError("400 INVALID_ARGUMENT: audio could not be decoded", status_code=400)
    provider.add(part_response(1, 6.0), bad_audio, bad_audio, part_response(2, 5.5))
    job = await create_job(parts=(1, 2), transcripts=True)

    await orchestrator.advance(job.id)
    await orchestrator.advance(job.id)
    first_failure = await orchestrator.advance(job.id)
    second_failure = await orchestrator.advance(job.id)

    assert first_failure.stage == JobStage.PENDING_EVAL.value
    assert second_failure.stage == JobStage.PENDING_TEXT_EVAL.value
    job = await load(session_factory, job.id)
    assert job.evaluation_mode == EvaluationMode.TEXT
    assert job.part_failures == {"2": 2}

    result = await orchestrator.advance(job.id)

    assert result.outcome == AdvanceOutcome.COMPLETED
    text_call = provider.calls[-1]
    assert text_call["segments"] == []
    assert text_call["model"] == settings.text_model
    assert "transcript of part2-q1" in text_call["prompt"]

    [record] = await results_for(session_factory, "sub-1")
    assert record.evaluation_mode == "text"
    assert record.payload["part_scores"] == {"1": 6.0, "2": 5.5}


@pytest.mark.asyncio
async def test_failed_enqueue_marks_job_stale(orchestrator, scheduler, create_job, session_factory):
    """A follow-up that cannot be queued leaves the job for the watchdog."""
    scheduler.fail = True
    job = await create_job(parts=(1,))

    await orchestrator.advance(job.id)

    job = await load(session_factory, job.id)
    assert job.status == JobStatus.STALE
    assert job.stage == JobStage.PENDING_EVAL


@pytest.mark.asyncio
async def test_slow_provider_call_keeps_its_credential(
    session_factory, scheduler, provider, storage, settings, create_job, add_credential
):
    """A call that outlasts key_lock_seconds still holds its credential against other jobs."""
    await add_credential("a")
    settings = settings.model_copy(update={"key_lock_seconds": 1, "heartbeat_interval_seconds": 0.2})
    orchestrator = StageOrchestrator(
        session_factory,
        scheduler,
        provider=provider,
        storage=storage,
        settings=settings,
        retry_wait=wait_none(),
    )
    seen_by_other_job = []

    async def slow_call():
        await asyncio.sleep(1.5)
        async with session_factory() as db:
            seen_by_other_job.append(
                await KeyPoolManager(settings).checkout(db, "other-job", 1, "audio_evaluation")
            )
        return part_response(1)

    provider.add(slow_call)
    job = await create_job(parts=(1,))
    await orchestrator.advance(job.id)

    result = await orchestrator.advance(job.id)

    assert result.outcome == AdvanceOutcome.COMPLETED
    assert seen_by_other_job == [None]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        RuntimeError("aggregation failed"),
        IntegrityError("INSERT INTO evaluation_results", {}, Exception("UNIQUE constraint failed")),
    ],
)
async def test_failed_completion_releases_credential_and_retries(
    orchestrator, provider, create_job, add_credential, session_factory, error
):
    """An error while storing the final result is handled like any other failure."""
    await add_credential("a")
    provider.add(part_response(1))
    orchestrator.aggregator = MagicMock(aggregate=MagicMock(side_effect=error))
    job = await create_job(parts=(1,))
    await orchestrator.advance(job.id)

    result = await orchestrator.advance(job.id)

    assert result.outcome == AdvanceOutcome.DEFERRED
    assert result.delay_seconds == 30
    job = await load(session_factory, job.id)
    assert job.status == JobStatus.RETRYING
    assert job.stage == JobStage.PENDING_EVAL
    assert job.retry_count == 1
    assert job.lock_owner_token is None
    assert job.part_failures == {}
    assert "Storing results" in job.last_error
    assert await results_for(session_factory, "sub-1") == []

    async with session_factory() as db:
        lock = (await db.execute(select(CredentialLock))).scalar_one()
    assert lock.released_at is not None
