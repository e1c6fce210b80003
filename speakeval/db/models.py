"""Database models for the speaking evaluation pipeline."""

import enum
from datetime import date, datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from speakeval.db.session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


class JobStatus(str, enum.Enum):
    """Coarse status of an evaluation job."""

    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    STALE = "stale"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStage(str, enum.Enum):
    """Position of a job in the stage graph."""

    PENDING_UPLOAD = "pending_upload"
    UPLOADING = "uploading"
    PENDING_EVAL = "pending_eval"
    EVALUATING = "evaluating"
    PENDING_TEXT_EVAL = "pending_text_eval"
    EVALUATING_TEXT = "evaluating_text"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EvaluationMode(str, enum.Enum):
    """What the model is given for each part."""

    AUDIO = "audio"
    TEXT = "text"


class Capability(str, enum.Enum):
    """Provider capabilities with independent daily quotas."""

    AUDIO_EVALUATION = "audio_evaluation"
    TEXT_EVALUATION = "text_evaluation"


TERMINAL_STAGES = {JobStage.COMPLETED, JobStage.FAILED, JobStage.CANCELLED}

# Pending stage -> the working stage a claim moves it into
WORKING_STAGES = {
    JobStage.PENDING_UPLOAD: JobStage.UPLOADING,
    JobStage.PENDING_EVAL: JobStage.EVALUATING,
    JobStage.PENDING_TEXT_EVAL: JobStage.EVALUATING_TEXT,
}

# Working stage -> the pending stage it returns to when deferred
PENDING_STAGES = {working: pending for pending, working in WORKING_STAGES.items()}

STAGE_TRANSITIONS: dict[JobStage, set[JobStage]] = {
    JobStage.PENDING_UPLOAD: {JobStage.UPLOADING},
    JobStage.UPLOADING: {JobStage.PENDING_EVAL, JobStage.PENDING_UPLOAD},
    JobStage.PENDING_EVAL: {JobStage.EVALUATING},
    JobStage.EVALUATING: {
        JobStage.PENDING_EVAL,
        JobStage.PENDING_TEXT_EVAL,
        JobStage.PENDING_UPLOAD,
        JobStage.COMPLETED,
    },
    JobStage.PENDING_TEXT_EVAL: {JobStage.EVALUATING_TEXT},
    JobStage.EVALUATING_TEXT: {JobStage.PENDING_TEXT_EVAL, JobStage.COMPLETED},
    JobStage.COMPLETED: set(),
    JobStage.FAILED: set(),
    JobStage.CANCELLED: set(),
}


def can_transition(current: JobStage, target: JobStage) -> bool:
    """Check a forward move along the stage graph.

    Any non-terminal stage may also end in failed or cancelled.
    """
    if current in TERMINAL_STAGES:
        return False
    if target in (JobStage.FAILED, JobStage.CANCELLED):
        return True
    return target in STAGE_TRANSITIONS[current]


class EvaluationJob(Base):
    """One evaluation attempt for a speaking submission."""

    __tablename__ = "evaluation_jobs"

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    owner_id: Mapped[str] = mapped_column(String(100), index=True)
    submission_id: Mapped[str] = mapped_column(String(100), index=True)

    status: Mapped[JobStatus] = mapped_column(_enum(JobStatus), default=JobStatus.PENDING, index=True)
    stage: Mapped[JobStage] = mapped_column(_enum(JobStage), default=JobStage.PENDING_UPLOAD)
    evaluation_mode: Mapped[EvaluationMode] = mapped_column(
        _enum(EvaluationMode), default=EvaluationMode.AUDIO
    )

    # Inputs
    audio_refs: Mapped[dict] = mapped_column(JSON)  # segment key -> object path
    durations: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    exam_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    transcripts: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    callback_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Artifacts
    prepared_audio: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    partial_results: Mapped[dict] = mapped_column(JSON, default=dict)  # "part" -> evaluation
    part_failures: Mapped[dict] = mapped_column(JSON, default=dict)  # "part" -> failed attempts

    # Progress
    current_part: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_parts: Mapped[int] = mapped_column(Integer, default=0)  # highest part number with audio
    progress: Mapped[int] = mapped_column(Integer, default=0)

    # Ownership
    lock_owner_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lock_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Retries
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=5)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    result_id: Mapped[Optional[str]] = mapped_column(Uuid(as_uuid=False), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    upload_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def completed_parts(self) -> list[int]:
        return sorted(int(part) for part in (self.partial_results or {}))


class ApiCredential(Base):
    """A provider API key shared by all jobs through the key pool."""

    __tablename__ = "api_credentials"

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    provider: Mapped[str] = mapped_column(String(30), default="gemini", index=True)
    label: Mapped[str] = mapped_column(String(100))
    secret: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Health
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_rate_limits: Mapped[int] = mapped_column(Integer, default=0)
    rate_limited_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_rate_limited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    quotas: Mapped[list["CredentialQuota"]] = relationship(
        "CredentialQuota", back_populates="credential", cascade="all, delete-orphan"
    )

    @property
    def masked_secret(self) -> str:
        return f"{self.secret[:6]}..." if self.secret else ""


class CredentialQuota(Base):
    """Daily quota state of one capability on one credential."""

    __tablename__ = "credential_quotas"
    __table_args__ = (UniqueConstraint("credential_id", "capability"),)

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    credential_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("api_credentials.id", ondelete="CASCADE"), index=True
    )
    capability: Mapped[str] = mapped_column(String(50))
    exhausted: Mapped[bool] = mapped_column(Boolean, default=False)
    exhausted_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    credential: Mapped["ApiCredential"] = relationship("ApiCredential", back_populates="quotas")


class CredentialLock(Base):
    """A credential held by (or cooling down after) one job part."""

    __tablename__ = "credential_locks"
    __table_args__ = (UniqueConstraint("credential_id", "job_id", "part_number"),)

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    credential_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("api_credentials.id", ondelete="CASCADE"), index=True
    )
    job_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), index=True)
    part_number: Mapped[int] = mapped_column(Integer)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    release_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cooldown_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class EvaluationResult(Base):
    """Final score record; at most one per submission."""

    __tablename__ = "evaluation_results"

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    submission_id: Mapped[str] = mapped_column(String(100), unique=True)
    owner_id: Mapped[str] = mapped_column(String(100), index=True)
    job_id: Mapped[str] = mapped_column(Uuid(as_uuid=False))
    overall_band: Mapped[float] = mapped_column(Float)
    evaluation_mode: Mapped[str] = mapped_column(String(10))
    payload: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
