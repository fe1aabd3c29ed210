"""
User analytics aggregation for SpeakCoach.

Keeps one running-statistics row per user: incremental averages of
confidence / pace / clarity / filler rate, practice time, streaks and the
latest deltas. Every processed recording updates the row exactly once, in
the same transaction that appends the Recording.
"""

import calendar
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Tuple

from coach_db import CoachDB, Recording, UserAnalytics, as_utc, utcnow
from speech_analysis import AnalysisResult, filler_rate_per_minute

logger = logging.getLogger("speechcoach.analytics")

# Two sessions count as consecutive when they are at most 48h apart.
STREAK_WINDOW = timedelta(hours=48)

MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
               "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


# ---------------------------------------------------------------------------
# Per-user serialization
# ---------------------------------------------------------------------------
LOCK_STRIPES = 64
_user_locks = [threading.RLock() for _ in range(LOCK_STRIPES)]


def lock_for(user_id: str) -> threading.RLock:
    return _user_locks[hash(user_id) % LOCK_STRIPES]


@contextmanager
def user_lock(user_id: str):
    """Serialize analytics writers (and badge evaluation) for one user in this process.

    Re-entrant, so the pipeline can hold it around save + evaluate while the
    service methods take it again. Users share a fixed pool of lock stripes,
    so unrelated users may occasionally wait on each other.
    """
    with lock_for(user_id):
        yield


# ---------------------------------------------------------------------------
# Read-side shapes
# ---------------------------------------------------------------------------
@dataclass
class RecentRecording:
    id: int
    created_at: datetime
    duration: float
    confidence: float
    primary_insight: str
    score: int


@dataclass
class ProgressDataPoint:
    name: str
    score: int
    month: int   # 1-12
    year: int


def shift_months(dt: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamping the day to the target month's length."""
    month_index = dt.year * 12 + (dt.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def session_filler_rate(filler_count: int, duration: float, word_count: int, pace: float) -> float:
    """Filler words per minute of recording.

    Uses the recorded duration; when that is missing falls back to the
    duration implied by word count and pace.
    """
    if duration and duration > 0:
        return filler_count / (duration / 60.0)
    return filler_rate_per_minute(filler_count, word_count, pace)


def apply_session(
    analytics: Optional[UserAnalytics],
    user_id: str,
    duration: float,
    confidence: float,
    pace: float,
    clarity: float,
    filler_rate: float,
    now: datetime,
) -> UserAnalytics:
    """Fold one session into a user's running statistics. Pure."""
    if analytics is None or analytics.total_recordings <= 0:
        return UserAnalytics(
            user_id=user_id,
            total_recordings=1,
            total_practice_time=duration,
            average_confidence=confidence,
            average_pace=pace,
            average_clarity=clarity,
            average_fillers=filler_rate,
            current_streak=1,
            longest_streak=max(1, analytics.longest_streak if analytics else 0),
            last_practice_date=now,
            version=analytics.version if analytics else 0,
        )

    n = analytics.total_recordings

    def running_mean(old: float, new: float) -> float:
        return (old * n + new) / (n + 1)

    avg_confidence = running_mean(analytics.average_confidence, confidence)
    avg_pace = running_mean(analytics.average_pace, pace)
    avg_clarity = running_mean(analytics.average_clarity, clarity)
    avg_fillers = running_mean(analytics.average_fillers, filler_rate)

    last = analytics.last_practice_date
    if last is not None and abs(now - last) <= STREAK_WINDOW:
        streak = analytics.current_streak + 1
    else:
        streak = 1

    return replace(
        analytics,
        total_recordings=n + 1,
        total_practice_time=analytics.total_practice_time + duration,
        average_confidence=avg_confidence,
        average_pace=avg_pace,
        average_clarity=avg_clarity,
        average_fillers=avg_fillers,
        current_streak=streak,
        longest_streak=max(analytics.longest_streak, streak),
        last_practice_date=now,
        confidence_change=avg_confidence - analytics.average_confidence,
        pace_change=avg_pace - analytics.average_pace,
        clarity_change=avg_clarity - analytics.average_clarity,
        filler_change=avg_fillers - analytics.average_fillers,
    )


class UserAnalyticsService:
    """Owns all writes to the user_analytics table."""

    def __init__(self, db: CoachDB):
        self.db = db

    def record_session(
        self,
        user_id: str,
        duration: float,
        confidence: float,
        pace: float,
        clarity: float,
        filler_rate: float,
        now: Optional[datetime] = None,
    ) -> UserAnalytics:
        """Update running statistics for one session in a single atomic read-modify-write."""
        now = as_utc(now) if now else utcnow()
        with user_lock(user_id):
            with self.db.transaction() as conn:
                existing = self.db.get_user_analytics(user_id, conn=conn)
                updated = apply_session(existing, user_id, duration, confidence,
                                        pace, clarity, filler_rate, now)
                updated = self.db.save_user_analytics(updated, conn=conn)
        logger.info("Analytics for %s: %d recordings, streak %d",
                    user_id, updated.total_recordings, updated.current_streak)
        return updated

    def save_recording(
        self,
        user_id: str,
        duration: float,
        result: AnalysisResult,
        now: Optional[datetime] = None,
    ) -> Recording:
        """Persist a Recording and fold it into UserAnalytics, all or nothing."""
        return self.save_session(user_id, duration, result, now=now)[0]

    def save_session(
        self,
        user_id: str,
        duration: float,
        result: AnalysisResult,
        now: Optional[datetime] = None,
    ) -> Tuple[Recording, UserAnalytics]:
        """Like save_recording, also returning the analytics row exactly as this session left it."""
        now = as_utc(now) if now else utcnow()
        recording = Recording(
            id=None,
            user_id=user_id,
            created_at=now,
            duration=duration,
            transcript=result.transcript,
            confidence=result.confidence,
            speaking_pace=result.speaking_pace,
            clarity_score=result.clarity_score,
            sentiment_score=result.sentiment_score,
            filler_word_count=result.filler_word_count,
            pause_count=result.pause_count,
            average_pause=result.average_pause,
            primary_insight=result.primary_insight,
            improvement_tips=list(result.improvement_tips),
            strengths=list(result.strengths),
            weaknesses=list(result.weaknesses),
        )
        filler_rate = session_filler_rate(result.filler_word_count, duration,
                                          result.word_count, result.speaking_pace)

        with user_lock(user_id):
            with self.db.transaction() as conn:
                recording.id = self.db.add_recording(recording, conn=conn)
                existing = self.db.get_user_analytics(user_id, conn=conn)
                updated = apply_session(existing, user_id, duration, result.confidence,
                                        result.speaking_pace, result.clarity_score,
                                        filler_rate, now)
                updated = self.db.save_user_analytics(updated, conn=conn)

        logger.info("Recording %s saved for %s (%d total)",
                    recording.id, user_id, updated.total_recordings)
        return recording, updated

    def reconcile(self, user_id: str) -> Optional[UserAnalytics]:
        """Rebuild a user's analytics by replaying their full Recording history.

        Corrects floating-point drift accumulated by incremental updates.
        Returns None when the user has no recordings.
        """
        with user_lock(user_id):
            with self.db.transaction() as conn:
                recordings = self.db.list_recordings(user_id, newest_first=False, conn=conn)
                if not recordings:
                    return None
                existing = self.db.get_user_analytics(user_id, conn=conn)

                rebuilt: Optional[UserAnalytics] = None
                for r in recordings:
                    rate = session_filler_rate(r.filler_word_count, r.duration,
                                               len(r.transcript.split()), r.speaking_pace)
                    rebuilt = apply_session(rebuilt, user_id, r.duration, r.confidence,
                                            r.speaking_pace, r.clarity_score, rate, r.created_at)
                rebuilt.version = existing.version if existing else 0
                rebuilt.longest_streak = max(rebuilt.longest_streak,
                                             existing.longest_streak if existing else 0)
                rebuilt = self.db.save_user_analytics(rebuilt, conn=conn)

        logger.info("Reconciled analytics for %s from %d recordings", user_id, len(recordings))
        return rebuilt

    # -- Read side --

    def get_user_analytics(self, user_id: str) -> Optional[UserAnalytics]:
        return self.db.get_user_analytics(user_id)

    def get_recent_recordings(self, user_id: str, limit: int = 5) -> List[RecentRecording]:
        return [
            RecentRecording(
                id=r.id,
                created_at=r.created_at,
                duration=r.duration,
                confidence=r.confidence,
                primary_insight=r.primary_insight,
                score=round(r.confidence * 100),
            )
            for r in self.db.list_recordings(user_id, limit=limit)
        ]

    def get_progress_data(self, user_id: str, months: int = 7,
                          now: Optional[datetime] = None) -> List[ProgressDataPoint]:
        """Mean confidence score per calendar month over the last ``months`` months."""
        now = as_utc(now) if now else utcnow()
        recordings = self.db.list_recordings(user_id, since=shift_months(now, -months),
                                             newest_first=False)

        buckets: Dict[tuple, List[float]] = {}
        for r in recordings:
            buckets.setdefault((r.created_at.year, r.created_at.month), []).append(r.confidence * 100)

        return [
            ProgressDataPoint(
                name=MONTH_NAMES[month - 1],
                score=round(sum(scores) / len(scores)),
                month=month,
                year=year,
            )
            for (year, month), scores in sorted(buckets.items())
        ]
