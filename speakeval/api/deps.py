"""Shared FastAPI dependencies for the pipeline routes."""

from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speakeval.config import get_settings
from speakeval.db.session import get_session_maker
from speakeval.services.orchestrator import StageScheduler
from speakeval.services.storage import StorageService, storage_service

settings = get_settings()


def get_scheduler() -> StageScheduler:
    """Queue used to run pipeline stages."""
    from speakeval.worker import CeleryStageScheduler

    return CeleryStageScheduler()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for services that open their own transactions."""
    return get_session_maker()


def get_storage() -> StorageService:
    return storage_service


def verify_admin_key(x_admin_key: Optional[str] = Header(None)):
    """Verify admin access using the secret key."""
    if not x_admin_key or x_admin_key != settings.secret_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin key",
        )
    return True


def verify_internal_key(x_internal_key: Optional[str] = Header(None)):
    """Verify a service-to-service call using the secret key."""
    if not x_internal_key or x_internal_key != settings.secret_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid internal key",
        )
    return True
