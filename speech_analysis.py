"""
Speech performance analysis for SpeakCoach.

Turns a transcript plus word-level timings into delivery metrics
(pace, filler words, clarity, sentiment, pauses) and derives the
strengths / weaknesses / tips shown after each recording.

Everything here is pure: no I/O, no clocks, no database.
"""

import re
import logging
from dataclasses import dataclass, field, asdict
from typing import List, Sequence

from exceptions import NoSpeechError

logger = logging.getLogger("speechcoach.analysis")


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_PACE_WPM = 150          # returned when pace cannot be determined
PAUSE_THRESHOLD_SEC = 0.5
SHORT_WORD_MAX_LEN = 2
SHORT_WORD_RATIO_LIMIT = 0.3
SHORT_WORD_CLARITY_PENALTY = 0.9
SENTIMENT_BASELINE = 0.5
SENTIMENT_STEP = 0.1

FILLER_WORDS = ["um", "uh", "like", "you know", "so", "actually", "basically", "literally"]
POSITIVE_WORDS = ["good", "great", "excellent", "amazing", "wonderful", "fantastic", "love", "enjoy"]
NEGATIVE_WORDS = ["bad", "terrible", "awful", "hate", "horrible", "worst", "stupid", "annoying"]

_FILLER_PATTERNS = [
    re.compile(r"\b" + re.escape(filler) + r"\b", re.IGNORECASE) for filler in FILLER_WORDS
]
_TOKEN_RE = re.compile(r"[a-z']+")

# Insight thresholds
CONFIDENCE_STRONG = 0.9
CONFIDENCE_WEAK = 0.7
PACE_OPTIMAL_MIN = 140
PACE_OPTIMAL_MAX = 160
PACE_TOO_FAST = 180
PACE_TOO_SLOW = 120
FILLER_RATE_STRONG = 2.0    # fillers per minute
FILLER_RATE_WEAK = 5.0


@dataclass
class WordTiming:
    text: str
    start: float  # seconds from start of recording
    end: float


@dataclass
class Transcription:
    transcript: str
    words: List[WordTiming] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class SpeechMetrics:
    speaking_pace: float
    filler_word_count: int
    clarity_score: float
    sentiment_score: float
    pause_count: int
    average_pause: float
    word_count: int = 0


@dataclass
class SpeechInsights:
    primary_insight: str
    improvement_tips: List[str]
    strengths: List[str]
    weaknesses: List[str]


@dataclass
class AnalysisResult:
    """Everything stored for one analyzed recording."""
    transcript: str
    confidence: float
    speaking_pace: float
    filler_word_count: int
    clarity_score: float
    sentiment_score: float
    pause_count: int
    average_pause: float
    word_count: int
    primary_insight: str
    improvement_tips: List[str]
    strengths: List[str]
    weaknesses: List[str]

    def to_dict(self) -> dict:
        return asdict(self)


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


# ---------------------------------------------------------------------------
# Metric extraction
# ---------------------------------------------------------------------------
def calculate_speaking_pace(words: Sequence[WordTiming]) -> float:
    """Words per minute between the first word's start and the last word's end."""
    if len(words) < 2:
        return DEFAULT_PACE_WPM

    duration_minutes = (words[-1].end - words[0].start) / 60.0
    if duration_minutes <= 0:
        return DEFAULT_PACE_WPM

    return round(len(words) / duration_minutes)


def count_filler_words(transcript: str) -> int:
    return sum(len(pattern.findall(transcript)) for pattern in _FILLER_PATTERNS)


def calculate_clarity_score(confidence: float, transcript: str) -> float:
    """Start from recognizer confidence, penalize transcripts dominated by very short tokens."""
    tokens = transcript.split()
    if not tokens:
        return 0.0

    short_ratio = sum(1 for t in tokens if len(t) <= SHORT_WORD_MAX_LEN) / len(tokens)
    score = confidence
    if short_ratio > SHORT_WORD_RATIO_LIMIT:
        score *= SHORT_WORD_CLARITY_PENALTY
    return _clamp(score)


def analyze_sentiment(transcript: str) -> float:
    """Lexicon sentiment: each lexicon entry present moves the score by 0.1."""
    tokens = set(_TOKEN_RE.findall(transcript.lower()))
    positive = sum(1 for w in POSITIVE_WORDS if w in tokens)
    negative = sum(1 for w in NEGATIVE_WORDS if w in tokens)
    return _clamp(SENTIMENT_BASELINE + (positive - negative) * SENTIMENT_STEP)


def analyze_pauses(words: Sequence[WordTiming]) -> tuple[int, float]:
    """Returns (pause_count, average_pause_sec) for inter-word gaps over the threshold."""
    pauses = []
    for prev, cur in zip(words, words[1:]):
        gap = cur.start - prev.end
        if gap > PAUSE_THRESHOLD_SEC:
            pauses.append(gap)

    if not pauses:
        return 0, 0.0
    return len(pauses), sum(pauses) / len(pauses)


def extract_metrics(transcript: str, words: Sequence[WordTiming], confidence: float) -> SpeechMetrics:
    """Compute the full metrics bundle for one transcript.

    An empty transcript yields a neutral bundle (pace 150, sentiment 0.5,
    everything else zero). Callers decide whether that is a no-speech
    condition; see ``generate_insights``.
    """
    transcript = (transcript or "").strip()
    if not transcript:
        return SpeechMetrics(
            speaking_pace=calculate_speaking_pace(words),
            filler_word_count=0,
            clarity_score=0.0,
            sentiment_score=SENTIMENT_BASELINE,
            pause_count=0,
            average_pause=0.0,
            word_count=0,
        )

    pause_count, average_pause = analyze_pauses(words)
    return SpeechMetrics(
        speaking_pace=calculate_speaking_pace(words),
        filler_word_count=count_filler_words(transcript),
        clarity_score=calculate_clarity_score(confidence, transcript),
        sentiment_score=analyze_sentiment(transcript),
        pause_count=pause_count,
        average_pause=average_pause,
        word_count=len(transcript.split()),
    )


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------
def filler_rate_per_minute(filler_count: int, word_count: int, pace: float) -> float:
    """Fillers per minute, using word_count / pace as the estimated duration."""
    pace = pace or DEFAULT_PACE_WPM
    estimated_minutes = word_count / pace
    if estimated_minutes <= 0:
        return 0.0
    return filler_count / estimated_minutes


def generate_insights(metrics: SpeechMetrics, confidence: float) -> SpeechInsights:
    """Qualitative feedback from fixed thresholds.

    Raises NoSpeechError when the metrics describe an empty transcript.
    """
    if metrics.word_count <= 0:
        raise NoSpeechError(
            "No speech detected. Please re-record with clear speech."
        )

    strengths: List[str] = []
    weaknesses: List[str] = []
    tips: List[str] = []

    if confidence > CONFIDENCE_STRONG:
        strengths.append("Excellent speech clarity")
    elif confidence < CONFIDENCE_WEAK:
        weaknesses.append("Speech clarity could be improved")
        tips.append("Try speaking more slowly and enunciating clearly")

    pace = metrics.speaking_pace
    if PACE_OPTIMAL_MIN <= pace <= PACE_OPTIMAL_MAX:
        strengths.append("Perfect speaking pace")
    elif pace > PACE_TOO_FAST:
        weaknesses.append("Speaking too quickly")
        tips.append(f"Slow down your pace - aim for {PACE_OPTIMAL_MIN}-{PACE_OPTIMAL_MAX} words per minute")
    elif pace < PACE_TOO_SLOW:
        weaknesses.append("Speaking pace is quite slow")
        tips.append("Try to increase your speaking pace slightly")

    fillers_per_minute = filler_rate_per_minute(metrics.filler_word_count, metrics.word_count, pace)
    if fillers_per_minute < FILLER_RATE_STRONG:
        strengths.append("Great control of filler words")
    elif fillers_per_minute > FILLER_RATE_WEAK:
        weaknesses.append("Too many filler words")
        tips.append("Practice pausing instead of using filler words like 'um' and 'uh'")

    if len(strengths) > len(weaknesses):
        primary = f"Your {strengths[0].lower()} really shines through!"
    elif weaknesses:
        primary = f"Focus on {weaknesses[0].lower()} for your next session"
    else:
        primary = "Keep up the great work!"

    return SpeechInsights(
        primary_insight=primary,
        improvement_tips=tips,
        strengths=strengths,
        weaknesses=weaknesses,
    )


def analyze_transcription(transcription: Transcription) -> AnalysisResult:
    """Metric extraction followed by insight generation for one transcription."""
    metrics = extract_metrics(transcription.transcript, transcription.words, transcription.confidence)
    insights = generate_insights(metrics, transcription.confidence)

    logger.debug("Analyzed %d words: pace=%s fillers=%d clarity=%.2f",
                 metrics.word_count, metrics.speaking_pace,
                 metrics.filler_word_count, metrics.clarity_score)

    return AnalysisResult(
        transcript=transcription.transcript.strip(),
        confidence=transcription.confidence,
        speaking_pace=metrics.speaking_pace,
        filler_word_count=metrics.filler_word_count,
        clarity_score=metrics.clarity_score,
        sentiment_score=metrics.sentiment_score,
        pause_count=metrics.pause_count,
        average_pause=metrics.average_pause,
        word_count=metrics.word_count,
        primary_insight=insights.primary_insight,
        improvement_tips=insights.improvement_tips,
        strengths=insights.strengths,
        weaknesses=insights.weaknesses,
    )
