"""
Personal coaching feedback for SpeakCoach.

Builds a trend summary from a user's recent recordings, asks the text
generator for structured coaching, and parses the labelled sections out of
the reply. Generation is best effort: any failure yields deterministic
feedback built from the same trend summary, so callers always get a
complete insight.
"""

import json
import re
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Literal, Sequence

from pydantic import BaseModel, Field, ValidationError

from coach_db import CoachDB, as_utc, utcnow
from llm_client import TextGenerator
from user_analytics import session_filler_rate

logger = logging.getLogger("speechcoach.coach")

TREND_WINDOW = 10          # recordings considered for trends
TREND_RECENT = 3           # "recent" slice compared with the earlier ones
TREND_THRESHOLD_PCT = 5.0

Difficulty = Literal["beginner", "intermediate", "advanced"]
Category = Literal["confidence", "pace", "clarity", "storytelling", "presentation"]


class PracticeIdea(BaseModel):
    id: str = ""
    title: str
    description: str
    duration: int = Field(ge=1, le=60)  # minutes
    difficulty: Difficulty
    category: Category
    instructions: List[str]
    tips: List[str] = Field(default_factory=list)


class CoachingInsight(BaseModel):
    what_working: str
    improvement_area: str
    specific_tip: str
    motivational_message: str
    custom_exercise: PracticeIdea
    source: Literal["generated", "fallback", "onboarding"] = "generated"


@dataclass
class UserTrends:
    confidence_scores: List[float] = field(default_factory=list)   # oldest first
    pace_values: List[float] = field(default_factory=list)
    clarity_scores: List[float] = field(default_factory=list)
    filler_rates: List[float] = field(default_factory=list)        # per minute
    common_weaknesses: List[str] = field(default_factory=list)
    recent_strengths: List[str] = field(default_factory=list)
    practice_frequency: int = 0   # sessions in the last 7 days
    total_sessions: int = 0


# ---------------------------------------------------------------------------
# Trend helpers
# ---------------------------------------------------------------------------
def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def describe_trend(values: List[float]) -> str:
    """Compare the mean of the last 3 values with the mean of the earlier ones."""
    if len(values) < TREND_RECENT:
        return "Building baseline"

    recent = values[-TREND_RECENT:]
    earlier = values[:-TREND_RECENT]
    if not earlier:
        return "Starting strong"

    earlier_avg = _mean(earlier)
    recent_avg = _mean(recent)
    if earlier_avg == 0:
        change = 100.0 if recent_avg > 0 else 0.0
    else:
        change = (recent_avg - earlier_avg) / abs(earlier_avg) * 100

    if change > TREND_THRESHOLD_PCT:
        return "Trending upward"
    if change < -TREND_THRESHOLD_PCT:
        return "Some recent challenges"
    return "Staying consistent"


def most_common(items: List[str], limit: int) -> List[str]:
    return [item for item, _ in Counter(items).most_common(limit)]


def user_level(total_sessions: int) -> str:
    if total_sessions < 5:
        return "beginner"
    if total_sessions < 20:
        return "intermediate"
    return "advanced"


# ---------------------------------------------------------------------------
# Prompt / response
# ---------------------------------------------------------------------------
SECTION_MARKERS = ["WHAT'S WORKING:", "FOCUS AREA:", "SPECIFIC TIP:", "MOTIVATION:"]

SECTION_DEFAULTS = {
    "what_working": "You're making great progress with your speaking practice!",
    "improvement_area": "Keep focusing on building your confidence.",
    "specific_tip": "Try recording yourself telling a 2-minute story about your day.",
    "motivational_message": "Every session makes you stronger. Keep it up!",
}


def build_coaching_prompt(trends: UserTrends) -> str:
    avg_confidence = _mean(trends.confidence_scores) * 100
    avg_pace = round(_mean(trends.pace_values))
    avg_fillers = _mean(trends.filler_rates)

    return f"""You are an encouraging and expert AI speaking coach. Analyze this user's progress:

USER DATA:
- Total practice sessions: {trends.total_sessions}
- Recent confidence average: {avg_confidence:.1f}%
- Speaking pace average: {avg_pace} WPM (optimal: 140-160)
- Filler words per minute: {avg_fillers:.1f} (goal: under 2)
- Practice frequency: {trends.practice_frequency} sessions this week
- Common challenges: {', '.join(trends.common_weaknesses) or 'None identified'}
- Recent strengths: {', '.join(trends.recent_strengths) or 'Building foundation'}

CONFIDENCE TREND: {describe_trend(trends.confidence_scores)}
PACE TREND: {describe_trend(trends.pace_values)}

Provide coaching feedback in this EXACT format:

WHAT'S WORKING: [2-3 sentences about their strengths and positive progress]

FOCUS AREA: [1-2 sentences about their biggest opportunity for improvement]

SPECIFIC TIP: [1 actionable, specific technique they can try in their next session]

MOTIVATION: [1-2 encouraging sentences that acknowledge their effort and progress]

Keep the tone warm, encouraging, and professional. Be specific but not overwhelming.
Do not use markdown formatting."""


def extract_section(text: str, start_marker: str, end_markers: Sequence[str] = ()) -> str:
    """Text after start_marker up to the nearest of end_markers (or end of text). "" if absent."""
    start = re.search(re.escape(start_marker), text, re.IGNORECASE)
    if not start:
        return ""
    end = len(text)
    for marker in end_markers:
        found = re.compile(re.escape(marker), re.IGNORECASE).search(text, start.end())
        if found:
            end = min(end, found.start())
    return text[start.end():end].strip(" \t\r\n*-_#")


def parse_coaching_response(response: str, trends: UserTrends) -> CoachingInsight:
    text = response.replace("’", "'")
    sections = {}
    for i, key in enumerate(SECTION_DEFAULTS):
        found = extract_section(text, SECTION_MARKERS[i], SECTION_MARKERS[i + 1:])
        sections[key] = found or SECTION_DEFAULTS[key]

    return CoachingInsight(**sections, custom_exercise=custom_exercise(trends), source="generated")


# ---------------------------------------------------------------------------
# Deterministic content
# ---------------------------------------------------------------------------
EXERCISE_TEMPLATES = {
    "Speaking too quickly": {
        "title": "🐌 Slow & Steady Story Time",
        "category": "pace",
        "instructions": [
            "Choose a childhood memory or favorite movie",
            "Set a timer for 3 minutes",
            "Tell the story, deliberately pausing between sentences",
            "Focus on speaking slower than feels natural",
            "Record and listen back for pace",
        ],
        "tips": [
            "Imagine you're explaining to someone who doesn't speak your language well",
            "Use the \"dot dot dot\" method - pause where you see periods",
        ],
    },
    "Speech clarity could be improved": {
        "title": "🎯 Crystal Clear Challenge",
        "category": "clarity",
        "instructions": [
            "Read a news article paragraph out loud",
            "Exaggerate your mouth movements",
            "Focus on pronouncing every consonant clearly",
            "Record yourself reading it",
            "Compare with normal speech",
        ],
        "tips": [
            "Pretend you're speaking to someone across a noisy room",
            "Focus on moving your lips and tongue more than usual",
        ],
    },
    "Too many filler words": {
        "title": "🚫 Filler-Free Challenge",
        "category": "confidence",
        "instructions": [
            "Choose a topic you know well",
            "Speak for 2 minutes about it",
            "When you want to say \"um\" or \"uh\", pause instead",
            "Count how many times you catch yourself",
            "Try again, aiming for fewer pauses",
        ],
        "tips": [
            "Silence is better than filler words",
            "Practice the \"power pause\" - count to 2 before continuing",
        ],
    },
}

EXERCISE_DURATIONS = {"beginner": 5, "intermediate": 7, "advanced": 10}


def custom_exercise(trends: UserTrends) -> PracticeIdea:
    """Exercise aimed at the user's most common weakness."""
    weakness = trends.common_weaknesses[0] if trends.common_weaknesses else None
    template = EXERCISE_TEMPLATES.get(weakness, EXERCISE_TEMPLATES["Speech clarity could be improved"])
    level = user_level(trends.total_sessions)
    return PracticeIdea(
        id=f"custom-{(weakness or 'general').lower().replace(' ', '-')}",
        title=template["title"],
        description=f"A personalized exercise to help with {weakness.lower() if weakness else 'your speaking skills'}",
        duration=EXERCISE_DURATIONS[level],
        difficulty=level,
        category=template["category"],
        instructions=template["instructions"],
        tips=template["tips"],
    )


ONBOARDING_INSIGHT = CoachingInsight(
    what_working="Welcome! You're taking the first step toward becoming a more confident speaker, which is already amazing progress.",
    improvement_area="Let's start with getting comfortable with recording yourself and hearing your own voice.",
    specific_tip="For your first recording, just introduce yourself and talk about something you love for 2 minutes. Don't worry about being perfect!",
    motivational_message="Every expert was once a beginner. You've got this! 🌟",
    custom_exercise=PracticeIdea(
        id="new-user-intro",
        title="👋 Your First Speaking Adventure",
        description="A gentle introduction to get you started with confidence",
        duration=3,
        difficulty="beginner",
        category="confidence",
        instructions=[
            "Find a quiet, comfortable space",
            "Introduce yourself to the camera/microphone",
            "Talk about your favorite hobby or interest",
            "Don't worry about mistakes - just be yourself!",
            "Celebrate completing your first recording!",
        ],
        tips=[
            "Smile while speaking - it comes through in your voice",
            "Remember: this is just for you to learn and grow",
        ],
    ),
    source="onboarding",
)

_FALLBACK_WORKING = {
    "Trending upward": "Your confidence scores are trending upward - your practice is clearly paying off!",
    "Staying consistent": "You're delivering steady, consistent sessions, and that reliability is a strong foundation.",
    "Some recent challenges": "You keep showing up even when sessions feel harder, and that persistence is what builds skill.",
}
_FALLBACK_TIPS = {
    "Speaking too quickly": "In your next session, pause for a full breath at the end of every sentence.",
    "Speaking pace is quite slow": "Try a 1-minute summary of your day, aiming to finish before the timer ends.",
    "Speech clarity could be improved": "Read a paragraph out loud slowly, exaggerating every consonant, then record it again normally.",
    "Too many filler words": "When you feel an \"um\" coming, close your mouth and pause for two beats instead.",
}


def fallback_coaching(trends: UserTrends) -> CoachingInsight:
    """Deterministic coaching from the trend summary alone."""
    confidence_trend = describe_trend(trends.confidence_scores)
    pace_trend = describe_trend(trends.pace_values)
    weakness = trends.common_weaknesses[0] if trends.common_weaknesses else None

    what_working = _FALLBACK_WORKING.get(
        confidence_trend,
        "You're consistently working on your speaking skills, and that dedication is going to pay off!",
    )
    if weakness:
        improvement_area = f"Your biggest opportunity right now: {weakness.lower()}."
    elif pace_trend == "Some recent challenges":
        improvement_area = "Your pace has shifted recently - aim to settle back into 140-160 words per minute."
    else:
        improvement_area = "Keep focusing on the fundamentals - clarity, pace, and confidence all work together."

    return CoachingInsight(
        what_working=what_working,
        improvement_area=improvement_area,
        specific_tip=_FALLBACK_TIPS.get(
            weakness,
            "Try recording yourself reading something interesting out loud for 3 minutes, focusing on clear pronunciation.",
        ),
        motivational_message="Progress isn't always linear, but it's always happening. Keep practicing!",
        custom_exercise=custom_exercise(trends),
        source="fallback",
    )


def default_practice_ideas(trends: UserTrends) -> List[PracticeIdea]:
    level = user_level(trends.total_sessions)
    return [
        PracticeIdea(
            id="storytelling-basics",
            title="📚 Story Time Challenge",
            description="Practice storytelling with a simple, engaging narrative",
            duration=5,
            difficulty=level,
            category="storytelling",
            instructions=[
                "Think of a funny or interesting thing that happened to you recently",
                "Structure it: setup, what happened, how it ended",
                "Tell it like you're talking to a friend",
                "Focus on being engaging rather than perfect",
            ],
            tips=["Use your hands and facial expressions", "Vary your tone to keep it interesting"],
        ),
        PracticeIdea(
            id="confidence-booster",
            title="💪 Power Pose & Speak",
            description="Build confidence through body language and positive affirmations",
            duration=3,
            difficulty="beginner",
            category="confidence",
            instructions=[
                "Stand in a power pose (hands on hips, chest out) for 30 seconds",
                "Look in the mirror and give yourself a compliment",
                "Record yourself sharing 3 things you're good at",
                "Speak with the same confident posture",
            ],
            tips=["Your body language affects how you sound", "Confidence is a skill you can practice"],
        ),
        PracticeIdea(
            id="pace-control",
            title="🎵 Rhythm & Flow Practice",
            description="Master your speaking pace with rhythm exercises",
            duration=7,
            difficulty=level,
            category="pace",
            instructions=[
                "Choose a topic you know well",
                "Speak about it for 1 minute at normal pace",
                "Repeat the same content speaking slower",
                "Then try it slightly faster but still clear",
                "Find your optimal pace",
            ],
            tips=[
                "Imagine you're a news anchor delivering important information",
                "Pace isn't just speed - it's about rhythm and pauses",
            ],
        ),
    ]


def build_practice_ideas_prompt(trends: UserTrends, count: int) -> str:
    recent = trends.confidence_scores[-5:]
    return f"""Based on this user's speaking practice data:
- Average confidence: {_mean(recent) * 100:.1f}%
- Common weaknesses: {', '.join(trends.common_weaknesses) or 'None identified'}
- Practice level: {user_level(trends.total_sessions)}
- Sessions completed: {trends.total_sessions}

Generate {count} personalized practice exercises in JSON format. Each should have:
- title: Fun, engaging title
- description: Brief description (1-2 sentences)
- duration: Time in minutes (5-15)
- difficulty: beginner/intermediate/advanced
- category: confidence/pace/clarity/storytelling/presentation
- instructions: Array of 3-5 step-by-step instructions
- tips: Array of 2-3 helpful tips

Make exercises specific to their weaknesses but keep them fun and achievable.
Use encouraging language and creative scenarios.

Return only valid JSON array."""


_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def parse_practice_ideas(response: str, id_prefix: str) -> List[PracticeIdea]:
    """Validate the JSON array in a generator reply. Raises ValueError if unusable."""
    match = _JSON_ARRAY_RE.search(response)
    if not match:
        raise ValueError("No JSON array in response")
    raw = json.loads(match.group(0))
    if not isinstance(raw, list) or not raw:
        raise ValueError("Expected a non-empty JSON array")
    return [
        PracticeIdea.model_validate({**item, "id": f"{id_prefix}-{i}"})
        for i, item in enumerate(raw)
    ]


# ---------------------------------------------------------------------------
# Coach
# ---------------------------------------------------------------------------
class PersonalCoach:
    """Generates, stores and serves coaching insights for a user."""

    def __init__(self, db: CoachDB, generator: TextGenerator):
        self.db = db
        self.generator = generator

    def analyze_user_trends(self, user_id: str, now: Optional[datetime] = None) -> UserTrends:
        now = as_utc(now) if now else utcnow()
        recordings = list(reversed(self.db.list_recordings(user_id, limit=TREND_WINDOW)))
        analytics = self.db.get_user_analytics(user_id)

        week_ago = now - timedelta(days=7)
        return UserTrends(
            confidence_scores=[r.confidence for r in recordings],
            pace_values=[r.speaking_pace for r in recordings],
            clarity_scores=[r.clarity_score for r in recordings],
            filler_rates=[
                session_filler_rate(r.filler_word_count, r.duration,
                                    len(r.transcript.split()), r.speaking_pace)
                for r in recordings
            ],
            common_weaknesses=most_common([w for r in recordings for w in r.weaknesses], 3),
            recent_strengths=most_common([s for r in recordings for s in r.strengths], 3),
            practice_frequency=sum(1 for r in recordings if r.created_at > week_ago),
            total_sessions=analytics.total_recordings if analytics else 0,
        )

    def generate_feedback(self, user_id: str) -> CoachingInsight:
        """Coaching for the user's recent sessions. Never raises on generation failure."""
        trends = self.analyze_user_trends(user_id)
        if trends.total_sessions == 0:
            return ONBOARDING_INSIGHT.model_copy(deep=True)

        prompt = build_coaching_prompt(trends)
        try:
            response = self.generator.generate(prompt)
        except Exception:
            logger.warning("Coaching generation failed for %s; using fallback", user_id, exc_info=True)
            return fallback_coaching(trends)

        if not response or not any(m in response.upper() for m in SECTION_MARKERS):
            logger.warning("Coaching response for %s had no recognizable sections; using fallback", user_id)
            return fallback_coaching(trends)
        return parse_coaching_response(response, trends)

    def generate_practice_ideas(self, user_id: str, count: int = 3) -> List[PracticeIdea]:
        trends = self.analyze_user_trends(user_id)
        if trends.total_sessions == 0:
            return default_practice_ideas(trends)[:count]

        try:
            response = self.generator.generate(build_practice_ideas_prompt(trends, count))
            ideas = parse_practice_ideas(response, id_prefix=f"exercise-{user_id}")
        except (ValueError, ValidationError):
            logger.warning("Practice ideas response for %s was unusable", user_id, exc_info=True)
            return default_practice_ideas(trends)[:count]
        except Exception:
            logger.warning("Practice idea generation failed for %s", user_id, exc_info=True)
            return default_practice_ideas(trends)[:count]
        return ideas[:count]

    def refresh(self, user_id: str, practice_idea_count: int = 3) -> dict:
        """Generate and persist a new insight with practice ideas. Returns the stored payload."""
        insight = self.generate_feedback(user_id)
        ideas = self.generate_practice_ideas(user_id, practice_idea_count)
        payload = {
            "insight": insight.model_dump(),
            "practice_ideas": [i.model_dump() for i in ideas],
        }
        self.db.save_coaching_insight(user_id, insight.source, payload)
        logger.info("Stored %s coaching insight for %s", insight.source, user_id)
        return payload

    def latest(self, user_id: str) -> Optional[dict]:
        """Most recent stored payload, or None."""
        row = self.db.get_latest_coaching_insight(user_id)
        return row["payload"] if row else None
