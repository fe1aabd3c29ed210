"""Pydantic response models for the SpeakCoach API."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from coach import CoachingInsight, PracticeIdea


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str
    transcriber: str
    text_model: str
    coaching_queue: Dict[str, int]
    uptime_sec: float


class AnalyticsResponse(BaseModel):
    user_id: str
    total_recordings: int
    total_practice_time: float
    average_confidence: float
    average_pace: float
    average_clarity: float
    average_fillers: float
    current_streak: int
    longest_streak: int
    last_practice_date: Optional[datetime] = None
    confidence_change: float
    pace_change: float
    clarity_change: float
    filler_change: float


class RecordingAnalysis(BaseModel):
    recording_id: int
    created_at: datetime
    duration: float
    transcript: str
    confidence: float
    speaking_pace: float
    clarity_score: float
    sentiment_score: float
    filler_word_count: int
    pause_count: int
    average_pause: float
    primary_insight: str
    improvement_tips: List[str]
    strengths: List[str]
    weaknesses: List[str]


class AnalyzeResponse(BaseModel):
    analysis: RecordingAnalysis
    analytics: AnalyticsResponse
    new_badges: List[str]
    coaching_job_id: Optional[str] = None


class RecentRecordingResponse(BaseModel):
    id: int
    created_at: datetime
    duration: float
    confidence: float
    primary_insight: str
    score: int


class ProgressPoint(BaseModel):
    name: str
    score: int
    month: int
    year: int


class BadgeProgressResponse(BaseModel):
    id: int
    name: str
    description: str
    category: str
    icon_name: str
    icon: str
    is_unlocked: bool
    progress: int
    requirement: str
    unlocked_at: Optional[datetime] = None


class BadgeListResponse(BaseModel):
    badges: List[BadgeProgressResponse]
    unlocked: int
    total: int


class BadgeCheckResponse(BaseModel):
    new_badges: List[str]


class CoachingResponse(BaseModel):
    insight: Optional[CoachingInsight] = None
    practice_ideas: List[PracticeIdea] = []


class PracticeIdeasResponse(BaseModel):
    practice_ideas: List[PracticeIdea]


class CoachingJobResponse(BaseModel):
    job_id: str
    user_id: str
    status: str
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None


class DashboardResponse(BaseModel):
    user_id: str
    analytics: Optional[AnalyticsResponse] = None
    recent_recordings: List[RecentRecordingResponse]
    progress_data: List[ProgressPoint]
    badges: List[BadgeProgressResponse]
    coaching_insight: Optional[CoachingInsight] = None
    practice_ideas: List[PracticeIdea]
