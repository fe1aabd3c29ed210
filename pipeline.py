"""
Session pipeline and dashboard for SpeakCoach.

process_recording: validate upload -> transcribe -> metrics + insights ->
persist Recording and update analytics -> badge evaluation -> queue
coaching generation. get_dashboard_data is the single read-side call the
UI needs.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any

from badges import BadgeEngine, BadgeProgress
from coach import PersonalCoach
from coach_db import CoachDB, Recording, UserAnalytics, as_utc, utcnow
from exceptions import (
    OversizeInputError, QueueFullError, SpeechCoachError, UnsupportedMediaError,
)
from speech_analysis import AnalysisResult, analyze_transcription
from transcription import Transcriber
from user_analytics import (
    UserAnalyticsService, RecentRecording, ProgressDataPoint, user_lock,
)

logger = logging.getLogger("speechcoach.pipeline")

DEFAULT_MAX_FILE_SIZE = 500 * 1024 * 1024
ALLOWED_MEDIA_PREFIXES = ("audio/", "video/")


@dataclass
class SessionResult:
    recording: Recording
    analysis: AnalysisResult
    analytics: UserAnalytics
    new_badges: List[str] = field(default_factory=list)
    coaching_job_id: Optional[str] = None


@dataclass
class DashboardData:
    user_id: str
    analytics: Optional[UserAnalytics]
    recent_recordings: List[RecentRecording]
    progress_data: List[ProgressDataPoint]
    badges: List[BadgeProgress]
    coaching_insight: Optional[Dict[str, Any]]
    practice_ideas: List[Dict[str, Any]]


class SpeechCoachPipeline:
    """Wires the analysis, analytics, badge and coaching services together."""

    def __init__(
        self,
        db: CoachDB,
        transcriber: Transcriber,
        coach: PersonalCoach,
        analytics: Optional[UserAnalyticsService] = None,
        badges: Optional[BadgeEngine] = None,
        coaching_queue=None,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        recent_recordings: int = 5,
        progress_months: int = 7,
        practice_ideas: int = 3,
    ):
        self.db = db
        self.transcriber = transcriber
        self.coach = coach
        self.analytics = analytics or UserAnalyticsService(db)
        self.badges = badges or BadgeEngine(db)
        self.coaching_queue = coaching_queue
        self.max_file_size = max_file_size
        self.recent_recordings = recent_recordings
        self.progress_months = progress_months
        self.practice_ideas = practice_ideas

    # -- Write path --

    def validate_upload(self, size: int, mime_type: Optional[str]):
        if size > self.max_file_size:
            raise OversizeInputError(
                f"File too large ({size / 1024 / 1024:.1f} MB). "
                f"Maximum size is {self.max_file_size // (1024 * 1024)} MB."
            )
        if not mime_type or not mime_type.lower().startswith(ALLOWED_MEDIA_PREFIXES):
            raise UnsupportedMediaError(
                f"Unsupported file type '{mime_type}'. Please upload an audio or video file."
            )

    def process_recording(
        self,
        user_id: str,
        data: bytes,
        mime_type: str,
        duration: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> SessionResult:
        """Analyze one uploaded recording and fold it into the user's progress.

        Size and type are checked before the transcriber is called. Store
        failures propagate; coaching generation is only queued.
        """
        self.validate_upload(len(data), mime_type)

        transcription = self.transcriber.transcribe(data, mime_type)
        result = analyze_transcription(transcription)

        if not duration or duration <= 0:
            duration = transcription.words[-1].end if transcription.words else 0.0

        with user_lock(user_id):
            recording, analytics = self.analytics.save_session(user_id, duration, result, now=now)
            new_badges = self.badges.evaluate(user_id, now=now)

        logger.info("Processed recording %s for %s: confidence=%.2f pace=%s new_badges=%s",
                    recording.id, user_id, result.confidence, result.speaking_pace,
                    new_badges or "none")

        return SessionResult(
            recording=recording,
            analysis=result,
            analytics=analytics,
            new_badges=new_badges,
            coaching_job_id=self.queue_coaching(user_id),
        )

    def queue_coaching(self, user_id: str) -> Optional[str]:
        """Submit coaching generation in the background. Returns the job id, if queued."""
        if self.coaching_queue is None:
            return None
        try:
            return self.coaching_queue.submit(user_id).job_id
        except QueueFullError as e:
            logger.warning("Coaching not queued for %s: %s", user_id, e)
            return None

    def generate_and_store_insight(self, user_id: str) -> Dict[str, Any]:
        """Worker entry point for the coaching queue."""
        return self.coach.refresh(user_id, self.practice_ideas)

    # -- Read path --

    def latest_coaching(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Stored coaching payload, generating one synchronously if none exists yet."""
        try:
            payload = self.coach.latest(user_id)
            if payload is None:
                payload = self.generate_and_store_insight(user_id)
            return payload
        except SpeechCoachError:
            logger.warning("Coaching unavailable for %s", user_id, exc_info=True)
            return None

    def get_dashboard_data(self, user_id: str, now: Optional[datetime] = None) -> DashboardData:
        now = as_utc(now) if now else utcnow()
        coaching = self.latest_coaching(user_id)
        return DashboardData(
            user_id=user_id,
            analytics=self.analytics.get_user_analytics(user_id),
            recent_recordings=self.analytics.get_recent_recordings(user_id, self.recent_recordings),
            progress_data=self.analytics.get_progress_data(user_id, self.progress_months, now=now),
            badges=self.badges.progress(user_id, now=now),
            coaching_insight=coaching["insight"] if coaching else None,
            practice_ideas=coaching["practice_ideas"] if coaching else [],
        )
