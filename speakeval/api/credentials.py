"""Provider credential management routes (admin)."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from speakeval.api.deps import verify_admin_key
from speakeval.db.models import ApiCredential
from speakeval.db.session import get_db
from speakeval.schemas.schemas import CredentialCreate, CredentialInfo, CredentialUpdate
from speakeval.services.key_pool import KeyPoolManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin/credentials", tags=["Admin - Credentials"])


async def _load_credential(db: AsyncSession, credential_id: str) -> ApiCredential:
    result = await db.execute(
        select(ApiCredential)
        .where(ApiCredential.id == credential_id)
        .options(selectinload(ApiCredential.quotas))
        .execution_options(populate_existing=True)
    )
    credential = result.scalar_one_or_none()

    if not credential:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Credential {credential_id} not found",
        )
    return credential


@router.post(
    "",
    response_model=CredentialInfo,
    status_code=status.HTTP_201_CREATED,
    summary="Add a provider credential",
    description="Add an API key to the shared credential pool. Admin only.",
)
async def create_credential(
    request: CredentialCreate,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """
    Add a credential to the pool.

    The secret is stored for provider calls and never returned by the API.
    """
    credential = ApiCredential(
        provider=request.provider,
        label=request.label,
        secret=request.secret,
        is_active=True,
        error_count=0,
        consecutive_rate_limits=0,
    )
    db.add(credential)
    await db.commit()

    logger.info(f"Added credential {credential.id} ({request.label}, {credential.masked_secret})")
    return CredentialInfo.model_validate(await _load_credential(db, credential.id))


@router.get(
    "",
    response_model=list[CredentialInfo],
    summary="List credentials",
    description="List pool credentials with quota and cooldown state. Admin only.",
)
async def list_credentials(
    include_inactive: bool = Query(False, description="Include inactive credentials"),
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """List all credentials."""
    query = select(ApiCredential).options(selectinload(ApiCredential.quotas))
    if not include_inactive:
        query = query.where(ApiCredential.is_active == True)  # noqa: E712

    query = query.order_by(ApiCredential.created_at.desc())
    result = await db.execute(query)

    return [CredentialInfo.model_validate(c) for c in result.scalars().all()]


@router.patch(
    "/{credential_id}",
    response_model=CredentialInfo,
    summary="Update a credential",
    description="Activate or deactivate a credential, or clear its quota and cooldown state. Admin only.",
)
async def update_credential(
    credential_id: str,
    request: CredentialUpdate,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """Update credential state."""
    credential = await _load_credential(db, credential_id)
    key_pool = KeyPoolManager()

    if request.is_active is not None:
        credential.is_active = request.is_active
    await db.flush()
    if request.reset_quota:
        await key_pool.reset_quota(db, credential_id)
    if request.reset_rate_limit:
        await key_pool.reset_rate_limit(db, credential_id)
    await db.commit()

    logger.info(f"Updated credential {credential_id}: {request.model_dump(exclude_defaults=True)}")
    return CredentialInfo.model_validate(await _load_credential(db, credential_id))
