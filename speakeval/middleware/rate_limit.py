"""Rate limiting middleware using SlowAPI."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from speakeval.config import get_settings

settings = get_settings()


def get_client_key(request: Request) -> str:
    """
    Get rate limit key for a request.

    Submissions are keyed by owner when the client sends X-Owner-Id,
    otherwise by IP address.
    """
    owner_id = request.headers.get("x-owner-id")
    if owner_id:
        return f"owner:{owner_id}"
    return f"ip:{get_remote_address(request)}"


# Create limiter with Redis storage
limiter = Limiter(
    key_func=get_client_key,
    storage_uri=settings.redis_url,
    strategy="fixed-window",
    enabled=settings.rate_limit_enabled,
)


def rate_limit_submissions():
    """Rate limit for the evaluation ingest endpoint."""
    return limiter.limit(
        f"{settings.rate_limit_per_minute}/minute",
        key_func=get_client_key,
    )


def rate_limit_general():
    """Rate limit for polling and retry endpoints."""
    return limiter.limit(
        f"{settings.rate_limit_per_minute * 2}/minute",
        key_func=get_client_key,
    )
