"""API route handlers for SpeakCoach."""

import time
import uuid
import logging
from typing import Optional

from fastapi import APIRouter, UploadFile, File, Form, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from badges import BadgeProgress, badge_icon
from coach_db import UserAnalytics
from exceptions import OversizeInputError
from pipeline import SpeechCoachPipeline

from . import config
from .models import (
    HealthResponse, AnalyticsResponse, AnalyzeResponse, RecordingAnalysis,
    RecentRecordingResponse, ProgressPoint, BadgeProgressResponse,
    BadgeListResponse, BadgeCheckResponse, CoachingResponse,
    PracticeIdeasResponse, CoachingJobResponse, DashboardResponse,
)

logger = logging.getLogger("speechcoach.api")

router = APIRouter(prefix="/v1")

UPLOAD_CHUNK_SIZE = 1024 * 1024


def _error(status_code: int, code: str, message: str):
    """Return a structured JSON error response."""
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}}
    )


def _pipeline(request: Request) -> SpeechCoachPipeline:
    return request.app.state.pipeline


def _analytics_response(a: Optional[UserAnalytics]) -> Optional[AnalyticsResponse]:
    if a is None:
        return None
    return AnalyticsResponse(
        user_id=a.user_id,
        total_recordings=a.total_recordings,
        total_practice_time=a.total_practice_time,
        average_confidence=a.average_confidence,
        average_pace=a.average_pace,
        average_clarity=a.average_clarity,
        average_fillers=a.average_fillers,
        current_streak=a.current_streak,
        longest_streak=a.longest_streak,
        last_practice_date=a.last_practice_date,
        confidence_change=a.confidence_change,
        pace_change=a.pace_change,
        clarity_change=a.clarity_change,
        filler_change=a.filler_change,
    )


def _badge_response(p: BadgeProgress) -> BadgeProgressResponse:
    return BadgeProgressResponse(
        id=p.badge.id,
        name=p.badge.name,
        description=p.badge.description,
        category=p.badge.category,
        icon_name=p.badge.icon_name,
        icon=badge_icon(p.badge.icon_name, p.is_unlocked),
        is_unlocked=p.is_unlocked,
        progress=p.progress,
        requirement=p.requirement,
        unlocked_at=p.unlocked_at,
    )


async def _read_upload(audio: UploadFile) -> bytes:
    """Read the upload, stopping as soon as it exceeds the size limit."""
    data = bytearray()
    while True:
        chunk = await audio.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        data.extend(chunk)
        if len(data) > config.MAX_FILE_SIZE_BYTES:
            raise OversizeInputError(f"File exceeds {config.MAX_FILE_SIZE_MB}MB limit.")
    return bytes(data)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health(request: Request):
    """Server status and coaching queue depth."""
    queue = request.app.state.coaching_queue
    stats = queue.stats()
    return HealthResponse(
        status="ok",
        transcriber=config.TRANSCRIBER,
        text_model=config.OLLAMA_MODEL,
        coaching_queue={k: v for k, v in stats.items() if isinstance(v, int)},
        uptime_sec=round(time.time() - request.app.state.start_time, 1),
    )


# ---------------------------------------------------------------------------
# Recordings
# ---------------------------------------------------------------------------

@router.post("/recordings/analyze", response_model=AnalyzeResponse, tags=["Analysis"])
async def analyze_recording(
    request: Request,
    audio: UploadFile = File(...),
    user_id: str = Form(..., min_length=1),
    duration: Optional[float] = Form(None, description="Recording length in seconds"),
):
    """
    Transcribe and score one recording, update the user's progress and
    badges, and queue coaching generation in the background.
    """
    request_id = str(uuid.uuid4())[:8]
    mime_type = (audio.content_type or "").lower()
    logger.info("Analyze request %s: user_id=%s file=%s type=%s",
                request_id, user_id, audio.filename, mime_type)

    pipeline = _pipeline(request)
    data = await _read_upload(audio)
    pipeline.validate_upload(len(data), mime_type)

    t0 = time.time()
    session = await run_in_threadpool(pipeline.process_recording, user_id, data, mime_type, duration)
    logger.info("Analyze request %s complete in %.2fs", request_id, time.time() - t0)

    r = session.recording
    return AnalyzeResponse(
        analysis=RecordingAnalysis(
            recording_id=r.id,
            created_at=r.created_at,
            duration=r.duration,
            transcript=r.transcript,
            confidence=r.confidence,
            speaking_pace=r.speaking_pace,
            clarity_score=r.clarity_score,
            sentiment_score=r.sentiment_score,
            filler_word_count=r.filler_word_count,
            pause_count=r.pause_count,
            average_pause=r.average_pause,
            primary_insight=r.primary_insight,
            improvement_tips=r.improvement_tips,
            strengths=r.strengths,
            weaknesses=r.weaknesses,
        ),
        analytics=_analytics_response(session.analytics),
        new_badges=session.new_badges,
        coaching_job_id=session.coaching_job_id,
    )


# ---------------------------------------------------------------------------
# Dashboard / analytics
# ---------------------------------------------------------------------------

@router.get("/dashboard/{user_id}", response_model=DashboardResponse, tags=["Dashboard"])
def dashboard(user_id: str, request: Request):
    """Everything the dashboard shows for a user in one call."""
    d = _pipeline(request).get_dashboard_data(user_id)
    return DashboardResponse(
        user_id=d.user_id,
        analytics=_analytics_response(d.analytics),
        recent_recordings=[RecentRecordingResponse(**vars(r)) for r in d.recent_recordings],
        progress_data=[ProgressPoint(**vars(p)) for p in d.progress_data],
        badges=[_badge_response(p) for p in d.badges],
        coaching_insight=d.coaching_insight,
        practice_ideas=d.practice_ideas,
    )


@router.get("/analytics/{user_id}", response_model=AnalyticsResponse, tags=["Analytics"])
def get_analytics(user_id: str, request: Request):
    analytics = _pipeline(request).analytics.get_user_analytics(user_id)
    if analytics is None:
        return _error(404, "USER_NOT_FOUND", f"No recordings yet for user '{user_id}'.")
    return _analytics_response(analytics)


@router.get("/analytics/{user_id}/recordings", tags=["Analytics"])
def recent_recordings(
    user_id: str,
    request: Request,
    limit: int = Query(config.DASHBOARD_RECENT_RECORDINGS, ge=1, le=100),
):
    recordings = _pipeline(request).analytics.get_recent_recordings(user_id, limit)
    return {"recordings": [RecentRecordingResponse(**vars(r)) for r in recordings],
            "total": len(recordings)}


@router.get("/analytics/{user_id}/progress", tags=["Analytics"])
def progress(
    user_id: str,
    request: Request,
    months: int = Query(config.DASHBOARD_PROGRESS_MONTHS, ge=1, le=24),
):
    """Average score per month."""
    points = _pipeline(request).analytics.get_progress_data(user_id, months)
    return {"progress": [ProgressPoint(**vars(p)) for p in points]}


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------

@router.get("/badges/{user_id}", response_model=BadgeListResponse, tags=["Badges"])
def list_badges(user_id: str, request: Request):
    """Progress toward every active badge. Read-only."""
    results = _pipeline(request).badges.progress(user_id)
    return BadgeListResponse(
        badges=[_badge_response(p) for p in results],
        unlocked=sum(1 for p in results if p.is_unlocked),
        total=len(results),
    )


@router.post("/badges/{user_id}/check", response_model=BadgeCheckResponse, tags=["Badges"])
def check_badges(user_id: str, request: Request):
    """Unlock any badges the user now qualifies for."""
    return BadgeCheckResponse(new_badges=_pipeline(request).badges.evaluate(user_id))


# ---------------------------------------------------------------------------
# Coaching
# ---------------------------------------------------------------------------

@router.get("/coaching/insights/{user_id}", response_model=CoachingResponse, tags=["Coaching"])
def coaching_insights(user_id: str, request: Request):
    """Latest coaching insight with practice ideas."""
    payload = _pipeline(request).latest_coaching(user_id)
    if payload is None:
        return CoachingResponse()
    return CoachingResponse(insight=payload["insight"], practice_ideas=payload["practice_ideas"])


@router.get("/coaching/practice-ideas/{user_id}", response_model=PracticeIdeasResponse, tags=["Coaching"])
def practice_ideas(
    user_id: str,
    request: Request,
    count: int = Query(config.DASHBOARD_PRACTICE_IDEAS, ge=1, le=10),
):
    """Freshly generated practice exercises for the user."""
    ideas = _pipeline(request).coach.generate_practice_ideas(user_id, count)
    return PracticeIdeasResponse(practice_ideas=ideas)


@router.get("/coaching/jobs/{job_id}", response_model=CoachingJobResponse, tags=["Coaching"])
async def coaching_job(job_id: str, request: Request):
    """Status of a background coaching job."""
    job = request.app.state.coaching_queue.get_job(job_id)
    if not job:
        return _error(404, "JOB_NOT_FOUND", f"Job '{job_id}' not found or expired.")
    return CoachingJobResponse(**job.to_dict())
