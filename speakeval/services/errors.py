"""Pipeline exceptions and provider error classification."""

import enum
import re
from dataclasses import dataclass
from typing import Optional

import httpx


class ProviderError(Exception):
    """The AI provider answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTimeout(ProviderError):
    """The provider call exceeded its hard timeout."""


class MalformedResponseError(Exception):
    """Provider output could not be parsed into a part evaluation."""


class StorageError(Exception):
    """Object store read or write failed."""


class LockLostError(Exception):
    """A guarded write found the job lock no longer held by this worker."""


class JobDataError(Exception):
    """The job cannot be processed as submitted."""


class ErrorKind(str, enum.Enum):
    RATE_LIMIT = "rate_limit"
    DAILY_QUOTA = "daily_quota"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    LOCK_CONFLICT = "lock_conflict"


@dataclass(frozen=True)
class ErrorClassification:
    kind: ErrorKind
    cooldown_seconds: int
    should_switch_credential: bool
    should_retry_same_credential: bool
    message: str

    @property
    def recoverable(self) -> bool:
        return self.kind in (ErrorKind.RATE_LIMIT, ErrorKind.DAILY_QUOTA, ErrorKind.TRANSIENT)


DAILY_QUOTA_MARKERS = (
    "daily",
    "per day",
    "perday",
    "day limit",
    "24 hours",
    "check your plan",
    "billing",
    "limit: 0",
)

RATE_LIMIT_MARKERS = (
    "429",
    "too many requests",
    "rpm",
    "tpm",
    "requests per minute",
    "tokens per minute",
    "per minute",
    "rate limit",
    "rate_limit",
    "resource_exhausted",
)

TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "econnreset",
    "socket hang up",
    "fetch failed",
    "overloaded",
    "unavailable",
    "internal error",
)

_RETRY_DELAY_PATTERNS = (
    re.compile(r'retryDelay"?\s*:\s*"(\d+)s"', re.IGNORECASE),
    re.compile(r"retry\s+in\s+([0-9.]+)s", re.IGNORECASE),
)


def _status_of(error: BaseException) -> Optional[int]:
    if isinstance(error, ProviderError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def extract_retry_after_seconds(error: BaseException) -> Optional[int]:
    """Read a provider retry hint such as retryDelay "56s" or "retry in 56.7s"."""
    text = str(error)
    for pattern in _RETRY_DELAY_PATTERNS:
        match = pattern.search(text)
        if match:
            return max(0, int(float(match.group(1)) + 0.999))
    return None


def classify(
    error: BaseException,
    rate_limit_cooldown_seconds: int = 300,
    daily_quota_cooldown_seconds: int = 86400,
) -> ErrorClassification:
    """Map an exception to an error kind.

    Checked in order: daily quota, rate limit, transient, permanent. Daily
    quota messages often mention 429 or "quota exceeded" too, so they must
    win over the rate-limit markers.
    """
    message = str(error)
    text = message.lower()
    status = _status_of(error)

    if isinstance(error, LockLostError):
        return ErrorClassification(ErrorKind.LOCK_CONFLICT, 0, False, False, message)
    if isinstance(error, (MalformedResponseError, JobDataError)):
        return ErrorClassification(ErrorKind.PERMANENT, 0, False, False, message)

    per_minute = any(marker in text for marker in ("per minute", "perminute", "rpm", "tpm"))
    if any(marker in text for marker in DAILY_QUOTA_MARKERS) or (
        "quota" in text and "exceeded" in text and not per_minute
    ):
        return ErrorClassification(
            ErrorKind.DAILY_QUOTA, daily_quota_cooldown_seconds, True, False, message
        )

    if status == 429 or any(marker in text for marker in RATE_LIMIT_MARKERS):
        return ErrorClassification(
            ErrorKind.RATE_LIMIT, rate_limit_cooldown_seconds, True, False, message
        )

    if (
        isinstance(error, (ProviderTimeout, StorageError, httpx.TransportError))
        or (status is not None and status >= 500)
        or any(marker in text for marker in TRANSIENT_MARKERS)
    ):
        return ErrorClassification(ErrorKind.TRANSIENT, 0, False, True, message)

    return ErrorClassification(ErrorKind.PERMANENT, 0, False, False, message)
