"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from speakeval.services.prompts import parse_segment_key


# ============== Evaluation Schemas ==============


class AudioSegmentIn(BaseModel):
    """One recorded answer: an existing object path or inline audio."""

    path: Optional[str] = Field(None, description="Object-store path of the recording")
    audio_b64: Optional[str] = Field(None, description="Base64-encoded audio data")
    content_type: str = Field("audio/webm", description="MIME type of inline audio")

    @model_validator(mode="after")
    def require_one_source(self) -> "AudioSegmentIn":
        if bool(self.path) == bool(self.audio_b64):
            raise ValueError("provide exactly one of path or audio_b64")
        return self


class QuestionInfo(BaseModel):
    question_number: int = Field(..., ge=0)
    question_text: str = ""


class TranscriptIn(BaseModel):
    text: str = ""
    duration_ms: int = Field(0, ge=0)


class SubmissionMetadata(BaseModel):
    """Exam context used to build prompts."""

    topic: Optional[str] = None
    difficulty: Optional[str] = None
    fluency_flag: bool = False
    questions: dict[str, QuestionInfo] = Field(default_factory=dict)
    transcripts: dict[str, TranscriptIn] = Field(
        default_factory=dict,
        description="Speech-recognition transcripts used if audio evaluation keeps failing",
    )


class EvaluationCreateRequest(BaseModel):
    """Request to evaluate a speaking submission."""

    submission_id: str = Field(..., min_length=1, max_length=100)
    owner_id: str = Field(..., min_length=1, max_length=100)
    audio_segments: dict[str, AudioSegmentIn] = Field(
        ..., min_length=1, description="Segment key (part{N}-q{id}) -> audio"
    )
    durations: Optional[dict[str, float]] = Field(None, description="Segment key -> seconds")
    metadata: SubmissionMetadata = Field(default_factory=SubmissionMetadata)
    callback_url: Optional[str] = Field(None, description="Webhook URL for completion callback")

    @field_validator("audio_segments")
    @classmethod
    def validate_segment_keys(cls, v: dict[str, AudioSegmentIn]) -> dict[str, AudioSegmentIn]:
        invalid = [key for key in v if parse_segment_key(key) is None]
        if invalid:
            raise ValueError(f"invalid segment keys: {', '.join(sorted(invalid))}")
        return v


class EvaluationCreateResponse(BaseModel):
    """Response after accepting an evaluation request."""

    job_id: str
    status: str
    stage: str
    total_parts: int
    created_at: datetime


class JobStatusResponse(BaseModel):
    """Coarse job status for polling clients."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    submission_id: str
    status: str
    stage: str
    evaluation_mode: str
    progress: int
    current_part: Optional[int] = None
    total_parts: int
    completed_parts: list[int] = []
    retry_count: int
    max_retries: int
    last_error: Optional[str] = None
    result_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class EvaluationResultResponse(BaseModel):
    """Final score record."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    submission_id: str
    job_id: str
    overall_band: float
    evaluation_mode: str
    payload: dict
    created_at: datetime


class RetryResponse(BaseModel):
    job_id: str
    outcome: str
    stage: Optional[str] = None


class StageTriggerRequest(BaseModel):
    job_id: str


class StageTriggerResponse(BaseModel):
    job_id: str
    queued: bool


# ============== Credential Schemas ==============


class CredentialCreate(BaseModel):
    """Request to add a provider credential to the pool."""

    label: str = Field(..., min_length=1, max_length=100)
    secret: str = Field(..., min_length=8, max_length=255)
    provider: str = Field("gemini", max_length=30)


class CredentialUpdate(BaseModel):
    is_active: Optional[bool] = None
    reset_quota: bool = False
    reset_rate_limit: bool = False


class CredentialQuotaInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    capability: str
    exhausted: bool
    exhausted_date: Optional[str] = None

    @field_validator("capability", mode="before")
    @classmethod
    def capability_value(cls, v):
        return getattr(v, "value", v)

    @field_validator("exhausted_date", mode="before")
    @classmethod
    def format_date(cls, v):
        return v.isoformat() if v is not None and not isinstance(v, str) else v


class CredentialInfo(BaseModel):
    """Credential state (never includes the secret)."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    label: str
    provider: str
    masked_secret: str
    is_active: bool
    error_count: int
    consecutive_rate_limits: int
    rate_limited_until: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    quotas: list[CredentialQuotaInfo] = []
    created_at: Optional[datetime] = None


# ============== Health & Misc Schemas ==============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str
    storage: str
