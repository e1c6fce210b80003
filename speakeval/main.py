"""FastAPI application for the speaking evaluation service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import func, select

from speakeval.api import credentials, evaluations, health, internal
from speakeval.config import get_settings
from speakeval.db.models import ApiCredential
from speakeval.db.session import dispose_engine, get_session_maker, init_db
from speakeval.middleware.rate_limit import limiter

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def count_active_credentials() -> int:
    async with get_session_maker()() as db:
        return await db.scalar(
            select(func.count()).select_from(ApiCredential).where(ApiCredential.is_active.is_(True))
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables and report what the workers will run with.

    The API only enqueues work, so an empty credential pool is logged but
    does not stop startup.
    """
    logger.info(
        f"Evaluation API starting ({settings.app_env}): audio model {settings.audio_model}, "
        f"text model {settings.text_model}, job lock {settings.job_lock_seconds}s"
    )
    try:
        await init_db()
        active = await count_active_credentials()
    except Exception as e:
        logger.error(f"Could not prepare the evaluation database: {e}")
        raise

    if active:
        logger.info(f"Credential pool has {active} active credential(s)")
    else:
        logger.warning("Credential pool is empty; jobs will wait until a credential is added")

    yield

    logger.info("Evaluation API stopping; closing database connections")
    await dispose_engine()


app = FastAPI(
    title="Speaking Evaluation Service",
    description="""
## Asynchronous IELTS-style speaking evaluation

Submitted recordings are evaluated part by part by a generative AI model:
- **Ingest**: store the audio and create an evaluation job
- **Evaluate**: one exam part per worker invocation, sharing a pool of provider credentials
- **Aggregate**: weighted overall band, per-criterion feedback and model answers

Jobs are processed in the background. Poll `GET /v1/evaluations/{job_id}` or
pass a `callback_url` to be notified.

### Rate Limiting
Submissions are rate-limited per client.
Default limit: 60 requests/minute.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def invalid_submission_handler(request: Request, exc: RequestValidationError):
    """Malformed submissions are a client error (400), not 422."""
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


app.include_router(health.router)
app.include_router(evaluations.router)
app.include_router(internal.router)
app.include_router(credentials.router)


@app.get("/", tags=["Root"])
async def root():
    """Service name plus the entry points a client needs."""
    return {
        "service": "Speaking Evaluation Service",
        "version": "1.0.0",
        "endpoints": {
            "submit": "POST /v1/evaluations",
            "status": "GET /v1/evaluations/{job_id}",
            "result": "GET /v1/evaluations/{job_id}/result",
            "retry": "POST /v1/evaluations/{job_id}/retry",
        },
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "speakeval.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
