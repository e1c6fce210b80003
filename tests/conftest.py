"""Pytest configuration and fixtures."""

import os
from typing import AsyncGenerator

# Settings are read once at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from tenacity import wait_none

from speakeval.api.deps import get_scheduler, get_session_factory, get_storage
from speakeval.config import Settings
from speakeval.db import models  # noqa: F401
from speakeval.db.models import ApiCredential
from speakeval.db.session import Base, get_db
from speakeval.main import app
from speakeval.services.job_service import job_service
from speakeval.services.orchestrator import StageOrchestrator

from tests.fakes import FakeProvider, FakeStorage, RecordingScheduler


@pytest.fixture
def settings() -> Settings:
    """Pipeline settings for tests: no credential cooldown, two in-call attempts."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        key_cooldown_seconds=0,
        provider_max_attempts=2,
        inter_part_delay_seconds=30,
        job_max_retries=5,
        stale_after_seconds=120,
        rate_limit_enabled=False,
    )


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """File-backed SQLite engine so each session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def orchestrator(session_factory, scheduler, provider, storage, settings) -> StageOrchestrator:
    return StageOrchestrator(
        session_factory,
        scheduler,
        provider=provider,
        storage=storage,
        settings=settings,
        retry_wait=wait_none(),
    )


@pytest_asyncio.fixture
async def add_credential(session_factory):
    """Factory adding an active credential to the pool."""

    async def _add(label: str = "key", secret: str | None = None) -> str:
        async with session_factory() as db:
            credential = ApiCredential(
                label=label,
                secret=secret or f"secret-{label}-0000",
                provider="gemini",
                is_active=True,
                error_count=0,
                consecutive_rate_limits=0,
            )
            db.add(credential)
            await db.commit()
            return credential.id

    return _add


@pytest_asyncio.fixture
async def create_job(session_factory, storage, settings):
    """Factory creating a job whose audio already sits in storage."""

    async def _create(
        submission_id: str = "sub-1",
        parts: tuple[int, ...] = (1, 2, 3),
        transcripts: bool = False,
        **kwargs,
    ):
        max_retries = kwargs.pop("max_retries", settings.job_max_retries)
        audio_refs = {}
        for part in parts:
            key = f"part{part}-q1"
            path = f"uploads/{submission_id}/{key}.mp3"
            storage.objects[path] = f"audio {submission_id} {key}".encode()
            audio_refs[key] = path

        async with session_factory() as db:
            job = await job_service.create_job(
                db,
                submission_id=submission_id,
                owner_id="owner-1",
                audio_refs=audio_refs,
                max_retries=max_retries,
                exam_metadata={"topic": "Hometown", "difficulty": "standard", "fluency_flag": False},
                transcripts=(
                    {key: {"text": f"transcript of {key}", "duration_ms": 30000} for key in audio_refs}
                    if transcripts
                    else None
                ),
                **kwargs,
            )
            await db.commit()
            return job

    return _create


@pytest_asyncio.fixture
async def client(session_factory, scheduler, storage) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_storage] = lambda: storage

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Key": "test-secret-key"}
