"""
SpeakCoach API: FastAPI entry point.
Builds the coaching services at startup and serves the /v1 endpoints.
"""

import os
import sys
import time
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from badges import seed_default_badges
from coach import PersonalCoach
from coach_db import CoachDB
from exceptions import SpeechCoachError, QuotaExceededError
from llm_client import OllamaGenerator
from pipeline import SpeechCoachPipeline
from transcription import HttpTranscriber, WhisperTranscriber

from . import config
from .job_manager import CoachingQueue

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
os.makedirs(config.LOG_DIR, exist_ok=True)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.FileHandler(config.LOG_FILE),
        logging.StreamHandler(sys.stdout),
    ],
)
logger = logging.getLogger("speechcoach")

# Suppress noisy library logs
for name in ["faster_whisper", "ctranslate2", "httpx", "httpcore", "urllib3"]:
    logging.getLogger(name).setLevel(logging.WARNING)


def build_transcriber():
    if config.TRANSCRIBER == "http":
        return HttpTranscriber(config.TRANSCRIBE_URL, api_key=config.TRANSCRIBE_API_KEY,
                               model=config.TRANSCRIBE_MODEL, timeout=config.TRANSCRIBE_TIMEOUT_SEC)
    if config.TRANSCRIBER != "whisper":
        logger.warning("Unknown transcriber %r, using whisper", config.TRANSCRIBER)
    return WhisperTranscriber(config.WHISPER_MODEL, device=config.WHISPER_DEVICE,
                              compute_type=config.WHISPER_COMPUTE_TYPE)


def build_pipeline() -> SpeechCoachPipeline:
    db = CoachDB(config.DB_PATH)
    seed_default_badges(db)
    generator = OllamaGenerator(config.OLLAMA_URL, config.OLLAMA_MODEL,
                                timeout=config.OLLAMA_TIMEOUT_SEC)
    return SpeechCoachPipeline(
        db,
        build_transcriber(),
        PersonalCoach(db, generator),
        max_file_size=config.MAX_FILE_SIZE_BYTES,
        recent_recordings=config.DASHBOARD_RECENT_RECORDINGS,
        progress_months=config.DASHBOARD_PROGRESS_MONTHS,
        practice_ideas=config.DASHBOARD_PRACTICE_IDEAS,
    )


# ---------------------------------------------------------------------------
# Lifespan: build services at startup
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline and coaching queue unless already provided, start the queue."""
    app.state.start_time = time.time()
    logger.info("SpeakCoach API starting...")

    if getattr(app.state, "pipeline", None) is None:
        app.state.pipeline = build_pipeline()
    pipeline = app.state.pipeline

    if getattr(app.state, "coaching_queue", None) is None:
        app.state.coaching_queue = CoachingQueue(
            pipeline.generate_and_store_insight,
            max_queue_depth=config.MAX_COACHING_QUEUE,
            expiration_hours=config.JOB_EXPIRATION_HOURS,
        )
    pipeline.coaching_queue = app.state.coaching_queue

    app.state.coaching_queue.start(asyncio.get_running_loop())
    logger.info("SpeakCoach API ready (db=%s)", pipeline.db.db_path)

    yield

    app.state.coaching_queue.shutdown()
    logger.info("SpeakCoach API shutting down.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="SpeakCoach API",
    description="Speech practice scoring, progress tracking, badges and coaching feedback.",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Health", "description": "Server health and status"},
        {"name": "Analysis", "description": "Upload and analyze recordings"},
        {"name": "Dashboard", "description": "Aggregated progress view"},
        {"name": "Analytics", "description": "Running statistics and history"},
        {"name": "Badges", "description": "Badge progress and unlocks"},
        {"name": "Coaching", "description": "Coaching insights and practice ideas"},
    ],
)

# CORS (allow all for dev)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SpeechCoachError)
async def speechcoach_exception_handler(request: Request, exc: SpeechCoachError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s", exc, request.method, request.url.path)
    else:
        logger.info("%s on %s %s", exc, request.method, request.url.path)
    headers = None
    if isinstance(exc, QuotaExceededError) and exc.retry_after:
        headers = {"Retry-After": str(int(exc.retry_after))}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message}},
        headers=headers,
    )


# HTTP exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Format HTTPException responses consistently."""
    detail = exc.detail
    if isinstance(detail, dict) and "code" in detail:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": "HTTP_ERROR", "message": str(detail)}},
    )


# Validation error handler (missing file, etc.)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    for err in errors:
        if "audio" in str(err.get("loc", [])):
            return JSONResponse(
                status_code=400,
                content={"error": {"code": "MISSING_FILE", "message": "No audio file provided. Upload with field name 'audio'."}}
            )
    return JSONResponse(
        status_code=422,
        content={"error": {"code": "VALIDATION_ERROR", "message": str(errors)[:500]}}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.exception("Unhandled exception")
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": str(exc)[:500]}}
    )


from .router import router  # noqa: E402
app.include_router(router)
