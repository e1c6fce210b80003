"""Key pool: exclusive, quota-aware checkout of provider credentials."""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, delete, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from speakeval.config import Settings, get_settings
from speakeval.db.models import (
    ApiCredential,
    Capability,
    CredentialLock,
    CredentialQuota,
    utcnow,
)
from speakeval.services.errors import ErrorClassification, classify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckedOutCredential:
    """A credential reserved for one job part."""

    id: str
    secret: str
    label: str
    job_id: str
    part_number: int
    capability: str


class KeyPoolManager:
    """Credential checkout, release and health bookkeeping.

    Methods take the caller's session and only flush; the caller commits so
    a checkout and its lock row land in the same transaction.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def checkout(
        self,
        db: AsyncSession,
        job_id: str,
        part_number: int,
        capability: Capability | str,
        provider: str = "gemini",
    ) -> Optional[CheckedOutCredential]:
        """
        Reserve the least recently used eligible credential.

        Args:
            db: Database session
            job_id: Job the credential is reserved for
            part_number: Part the credential is reserved for
            capability: Capability whose daily quota must not be exhausted
            provider: Credential provider

        Returns:
            The reserved credential, or None when the pool has nothing eligible
        """
        capability = Capability(capability).value
        now = utcnow()
        today = now.date()

        lock_live = exists().where(
            CredentialLock.credential_id == ApiCredential.id,
            or_(
                and_(CredentialLock.released_at.is_(None), CredentialLock.release_at > now),
                CredentialLock.cooldown_until > now,
            ),
        )
        quota_exhausted = exists().where(
            CredentialQuota.credential_id == ApiCredential.id,
            CredentialQuota.capability == capability,
            CredentialQuota.exhausted.is_(True),
            CredentialQuota.exhausted_date >= today,
        )

        result = await db.execute(
            select(ApiCredential)
            .where(
                ApiCredential.is_active.is_(True),
                ApiCredential.provider == provider,
                or_(
                    ApiCredential.rate_limited_until.is_(None),
                    ApiCredential.rate_limited_until <= now,
                ),
                ~lock_live,
                ~quota_exhausted,
            )
            .order_by(
                ApiCredential.last_used_at.asc().nulls_first(),
                ApiCredential.error_count.asc(),
                ApiCredential.id,
            )
            .limit(1)
            .with_for_update(skip_locked=True, of=ApiCredential)
        )
        credential = result.scalar_one_or_none()
        if credential is None:
            logger.warning(
                f"No eligible credential for job {job_id} part {part_number} ({capability})"
            )
            return None

        release_at = now + timedelta(seconds=self.settings.key_lock_seconds)
        existing = await db.execute(
            select(CredentialLock).where(
                CredentialLock.credential_id == credential.id,
                CredentialLock.job_id == job_id,
                CredentialLock.part_number == part_number,
            )
        )
        lock = existing.scalar_one_or_none()
        if lock is None:
            db.add(
                CredentialLock(
                    credential_id=credential.id,
                    job_id=job_id,
                    part_number=part_number,
                    locked_at=now,
                    release_at=release_at,
                )
            )
        else:
            lock.locked_at = now
            lock.release_at = release_at
            lock.released_at = None
            lock.cooldown_until = None

        credential.last_used_at = now
        await db.flush()

        logger.info(
            f"Checked out credential {credential.id} ({credential.masked_secret}) "
            f"for job {job_id} part {part_number}"
        )
        return CheckedOutCredential(
            id=credential.id,
            secret=credential.secret,
            label=credential.label,
            job_id=job_id,
            part_number=part_number,
            capability=capability,
        )

    async def extend_locks(self, db: AsyncSession, job_id: str, lock_seconds: Optional[int] = None) -> int:
        """Push back release_at of the credential locks a job still holds."""
        now = utcnow()
        result = await db.execute(
            update(CredentialLock)
            .where(
                CredentialLock.job_id == job_id,
                CredentialLock.released_at.is_(None),
                CredentialLock.release_at > now,
            )
            .values(release_at=now + timedelta(seconds=lock_seconds or self.settings.key_lock_seconds))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def release(
        self,
        db: AsyncSession,
        job_id: str,
        part_number: int,
        cooldown_seconds: Optional[int] = None,
    ) -> int:
        """Release the credential held for a job part and start its cooldown."""
        if cooldown_seconds is None:
            cooldown_seconds = self.settings.key_cooldown_seconds
        now = utcnow()
        result = await db.execute(
            update(CredentialLock)
            .where(
                CredentialLock.job_id == job_id,
                CredentialLock.part_number == part_number,
                CredentialLock.released_at.is_(None),
            )
            .values(
                released_at=now,
                cooldown_until=now + timedelta(seconds=cooldown_seconds),
            )
        )
        if result.rowcount:
            logger.info(
                f"Released credential for job {job_id} part {part_number} "
                f"with {cooldown_seconds}s cooldown"
            )
        return result.rowcount

    async def mark_rate_limited(
        self,
        db: AsyncSession,
        credential_id: str,
        cooldown_minutes: Optional[int] = None,
        retry_after_seconds: Optional[int] = None,
    ):
        """
        Put a credential on a rate-limit cooldown.

        Without an explicit duration the cooldown escalates once the
        credential has been rate limited several times in a row.
        """
        credential = await db.get(ApiCredential, credential_id)
        if credential is None:
            return None

        credential.consecutive_rate_limits = (credential.consecutive_rate_limits or 0) + 1
        credential.error_count = (credential.error_count or 0) + 1
        if cooldown_minutes is None:
            if credential.consecutive_rate_limits >= self.settings.rate_limit_escalation_threshold:
                cooldown_minutes = self.settings.rate_limit_escalation_minutes
            else:
                cooldown_minutes = self.settings.rate_limit_cooldown_minutes

        cooldown_seconds = max(cooldown_minutes * 60, retry_after_seconds or 0)
        now = utcnow()
        credential.rate_limited_until = now + timedelta(seconds=cooldown_seconds)
        credential.last_rate_limited_at = now
        await db.flush()

        logger.warning(
            f"Credential {credential_id} rate limited for {cooldown_seconds}s "
            f"({credential.consecutive_rate_limits} in a row)"
        )
        return credential.rate_limited_until

    async def mark_daily_exhausted(
        self,
        db: AsyncSession,
        credential_id: str,
        capability: Capability | str,
    ):
        """Mark one capability of a credential exhausted until tomorrow."""
        capability = Capability(capability).value
        result = await db.execute(
            select(CredentialQuota).where(
                CredentialQuota.credential_id == credential_id,
                CredentialQuota.capability == capability,
            )
        )
        quota = result.scalar_one_or_none()
        if quota is None:
            quota = CredentialQuota(credential_id=credential_id, capability=capability)
            db.add(quota)
        quota.exhausted = True
        quota.exhausted_date = utcnow().date()

        await db.execute(
            update(ApiCredential)
            .where(ApiCredential.id == credential_id)
            .values(error_count=ApiCredential.error_count + 1)
        )
        await db.flush()
        logger.warning(f"Credential {credential_id} exhausted daily quota for {capability}")

    async def record_error(self, db: AsyncSession, credential_id: str):
        """Count a failed call against the credential's health."""
        await db.execute(
            update(ApiCredential)
            .where(ApiCredential.id == credential_id)
            .values(error_count=ApiCredential.error_count + 1)
        )

    async def reset_rate_limit(self, db: AsyncSession, credential_id: str):
        """Clear the rate-limit streak after a successful call."""
        await db.execute(
            update(ApiCredential)
            .where(ApiCredential.id == credential_id)
            .values(consecutive_rate_limits=0, rate_limited_until=None)
        )

    async def reset_quota(self, db: AsyncSession, credential_id: str):
        """Clear daily exhaustion on every capability of a credential."""
        await db.execute(
            update(CredentialQuota)
            .where(CredentialQuota.credential_id == credential_id)
            .values(exhausted=False, exhausted_date=None)
        )

    def classify(self, error: BaseException) -> ErrorClassification:
        return classify(
            error,
            rate_limit_cooldown_seconds=self.settings.rate_limit_cooldown_minutes * 60,
            daily_quota_cooldown_seconds=self.settings.daily_quota_cooldown_minutes * 60,
        )

    async def cleanup_old_locks(self, db: AsyncSession) -> int:
        """Delete lock rows that stopped mattering long ago."""
        cutoff = utcnow() - timedelta(hours=self.settings.key_lock_retention_hours)
        result = await db.execute(
            delete(CredentialLock).where(
                or_(
                    CredentialLock.released_at < cutoff,
                    and_(CredentialLock.released_at.is_(None), CredentialLock.release_at < cutoff),
                )
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
