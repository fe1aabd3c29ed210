"""
Badge system for SpeakCoach.

Badges are unlocked when every criterion on them is satisfied by the
user's running analytics (and, for a few criteria, their recording
history). Criteria are stored as a JSON object on the badge row and parsed
once into typed criterion objects, each of which knows how to check
itself, how far along the user is, and how to describe itself.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from coach_db import CoachDB, UserAnalytics, as_utc, utcnow
from user_analytics import user_lock, shift_months

logger = logging.getLogger("speechcoach.badges")

CATEGORIES = ("milestone", "consistency", "improvement", "special")

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def _ratio(current: float, target: float) -> float:
    if target <= 0:
        return 1.0
    return max(0.0, min(current / target, 1.0))


def _sunday_based_weekday(dt: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (dt.weekday() + 1) % 7


@dataclass
class BadgeContext:
    """What a criterion may look at: the analytics snapshot plus history queries."""
    user_id: str
    analytics: UserAnalytics
    db: CoachDB
    now: datetime


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------
class Criterion:
    """One threshold on a badge. Subclasses implement all four methods."""

    def is_met(self, ctx: BadgeContext) -> bool:
        raise NotImplementedError

    def progress(self, ctx: BadgeContext) -> float:
        """Completion ratio in [0, 1]."""
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> dict:
        raise NotImplementedError


@dataclass(frozen=True)
class RecordingsAtLeast(Criterion):
    count: int

    def is_met(self, ctx):
        return ctx.analytics.total_recordings >= self.count

    def progress(self, ctx):
        return _ratio(ctx.analytics.total_recordings, self.count)

    def describe(self):
        return f"Complete {self.count} recording{'s' if self.count > 1 else ''}"

    def to_dict(self):
        return {"recordings": self.count}


@dataclass(frozen=True)
class StreakAtLeast(Criterion):
    days: int

    def is_met(self, ctx):
        return ctx.analytics.current_streak >= self.days

    def progress(self, ctx):
        return _ratio(ctx.analytics.current_streak, self.days)

    def describe(self):
        return f"Practice for {self.days} days in a row"

    def to_dict(self):
        return {"streak": self.days}


@dataclass(frozen=True)
class AverageConfidenceAtLeast(Criterion):
    value: float

    def is_met(self, ctx):
        return ctx.analytics.average_confidence >= self.value

    def progress(self, ctx):
        return _ratio(ctx.analytics.average_confidence, self.value)

    def describe(self):
        return f"Achieve {round(self.value * 100)}% average confidence"

    def to_dict(self):
        return {"averageConfidence": self.value}


@dataclass(frozen=True)
class PaceInRange(Criterion):
    min_wpm: float
    max_wpm: float

    def is_met(self, ctx):
        return self.min_wpm <= ctx.analytics.average_pace <= self.max_wpm

    def progress(self, ctx):
        pace = ctx.analytics.average_pace
        if self.min_wpm <= pace <= self.max_wpm:
            return 1.0
        width = self.max_wpm - self.min_wpm
        if width <= 0:
            return 0.0
        distance = max(self.min_wpm - pace, pace - self.max_wpm)
        return max(0.0, 1.0 - distance / width)

    def describe(self):
        return f"Speak at {self.min_wpm:g}-{self.max_wpm:g} words per minute"

    def to_dict(self):
        return {"speakingPace": {"min": self.min_wpm, "max": self.max_wpm}}


@dataclass(frozen=True)
class FillerRateAtMost(Criterion):
    max_per_minute: float

    def is_met(self, ctx):
        return ctx.analytics.average_fillers <= self.max_per_minute

    def progress(self, ctx):
        current = ctx.analytics.average_fillers
        if current <= self.max_per_minute:
            return 1.0
        if self.max_per_minute <= 0:
            return 0.0
        return max(0.0, 1.0 - (current - self.max_per_minute) / self.max_per_minute)

    def describe(self):
        return f"Reduce filler words to under {self.max_per_minute:g} per minute"

    def to_dict(self):
        return {"fillersPerMinute": {"max": self.max_per_minute}}


@dataclass(frozen=True)
class TotalMinutesAtLeast(Criterion):
    minutes: float

    def is_met(self, ctx):
        return ctx.analytics.total_practice_time >= self.minutes * 60

    def progress(self, ctx):
        return _ratio(ctx.analytics.total_practice_time / 60.0, self.minutes)

    def describe(self):
        return f"Practice for {self.minutes:g} total minutes"

    def to_dict(self):
        return {"totalMinutes": self.minutes}


@dataclass(frozen=True)
class ImprovementRateAtLeast(Criterion):
    rate: float

    def is_met(self, ctx):
        return ctx.analytics.confidence_change >= self.rate

    def progress(self, ctx):
        return _ratio(ctx.analytics.confidence_change, self.rate)

    def describe(self):
        return f"Improve confidence by {round(self.rate * 100)}%"

    def to_dict(self):
        return {"improvementRate": self.rate}


@dataclass(frozen=True)
class DistinctPracticeDays(Criterion):
    """Practiced on at least ``days`` different calendar days within the last ``days`` days."""
    days: int

    def _distinct_days(self, ctx) -> int:
        since = ctx.now - timedelta(days=self.days)
        times = ctx.db.recording_times(ctx.user_id, since=since)
        return len({t.date() for t in times})

    def is_met(self, ctx):
        return self._distinct_days(ctx) >= self.days

    def progress(self, ctx):
        return _ratio(self._distinct_days(ctx), self.days)

    def describe(self):
        return f"Practice consistently for {self.days} different days"

    def to_dict(self):
        return {"consistentDays": self.days}


@dataclass(frozen=True)
class PracticeOnWeekday(Criterion):
    """At least one session on ``weekday`` (0 = Sunday) during the last calendar month."""
    weekday: int

    def is_met(self, ctx):
        since = shift_months(ctx.now, -1)
        return any(_sunday_based_weekday(t) == self.weekday
                   for t in ctx.db.recording_times(ctx.user_id, since=since))

    def progress(self, ctx):
        return 1.0 if self.is_met(ctx) else 0.0

    def describe(self):
        return f"Practice on a {WEEKDAY_NAMES[self.weekday]}"

    def to_dict(self):
        return {"specificWeekday": self.weekday}


@dataclass(frozen=True)
class MonthlySessionGoal(Criterion):
    """At least ``sessions`` recordings since the first of the current month."""
    sessions: int

    def is_met(self, ctx):
        month_start = ctx.now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return ctx.db.count_recordings(ctx.user_id, since=month_start) >= self.sessions

    def progress(self, ctx):
        return 1.0 if self.is_met(ctx) else 0.0

    def describe(self):
        return f"Complete {self.sessions} sessions in a month"

    def to_dict(self):
        return {"monthlyGoal": self.sessions}


def _parse_weekday(value) -> PracticeOnWeekday:
    weekday = int(value)
    if not 0 <= weekday <= 6:
        raise ValueError(f"specificWeekday must be 0-6, got {value!r}")
    return PracticeOnWeekday(weekday)


_CRITERIA_PARSERS = {
    "recordings": lambda v: RecordingsAtLeast(int(v)),
    "streak": lambda v: StreakAtLeast(int(v)),
    "averageConfidence": lambda v: AverageConfidenceAtLeast(float(v)),
    "speakingPace": lambda v: PaceInRange(float(v["min"]), float(v["max"])),
    "fillersPerMinute": lambda v: FillerRateAtMost(float(v["max"])),
    "totalMinutes": lambda v: TotalMinutesAtLeast(float(v)),
    "consistentDays": lambda v: DistinctPracticeDays(int(v)),
    "specificWeekday": _parse_weekday,
    "monthlyGoal": lambda v: MonthlySessionGoal(int(v)),
    "improvementRate": lambda v: ImprovementRateAtLeast(float(v)),
}


def parse_criteria(raw: Dict[str, Any]) -> List[Criterion]:
    """Stored criteria JSON -> typed criteria, in key order.

    Zero / null thresholds are treated as absent, except specificWeekday
    where 0 means Sunday. Unknown keys raise ValueError.
    """
    criteria = []
    for key, value in raw.items():
        parser = _CRITERIA_PARSERS.get(key)
        if parser is None:
            raise ValueError(f"Unknown badge criterion: {key}")
        if value is None or (key != "specificWeekday" and not value):
            continue
        try:
            criteria.append(parser(value))
        except (TypeError, KeyError) as e:
            raise ValueError(f"Malformed badge criterion {key}={value!r}") from e
    return criteria


def criteria_to_dict(criteria: List[Criterion]) -> dict:
    out = {}
    for c in criteria:
        out.update(c.to_dict())
    return out


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------
@dataclass
class Badge:
    id: int
    name: str
    description: str
    category: str
    icon_name: str
    criteria: List[Criterion] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict) -> "Badge":
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            category=row["category"],
            icon_name=row["icon_name"],
            criteria=parse_criteria(row["criteria"]),
        )

    @property
    def requirement(self) -> str:
        return " and ".join(c.describe() for c in self.criteria)


@dataclass
class BadgeProgress:
    badge: Badge
    is_unlocked: bool
    progress: int  # 0-100
    requirement: str
    unlocked_at: Optional[datetime] = None


class BadgeEngine:
    """Evaluates the badge catalog against a user's analytics."""

    def __init__(self, db: CoachDB):
        self.db = db

    def catalog(self) -> List[Badge]:
        """Active badges in catalog order. Badges with malformed criteria are skipped."""
        badges = []
        for row in self.db.list_badges(active_only=True):
            try:
                badges.append(Badge.from_row(row))
            except ValueError:
                logger.error("Skipping badge %r with invalid criteria %r",
                             row["name"], row["criteria"], exc_info=True)
        return badges

    def evaluate(self, user_id: str, now: Optional[datetime] = None) -> List[str]:
        """Unlock every badge whose criteria all pass. Returns newly unlocked badge names.

        Already-unlocked badges are skipped, so repeated calls are no-ops.
        """
        now = as_utc(now) if now else utcnow()
        newly_unlocked: List[str] = []

        with user_lock(user_id):
            analytics = self.db.get_user_analytics(user_id)
            if analytics is None:
                return newly_unlocked

            unlocked = self.db.get_user_badges(user_id)
            ctx = BadgeContext(user_id=user_id, analytics=analytics, db=self.db, now=now)

            for badge in self.catalog():
                if badge.id in unlocked:
                    continue
                if all(c.is_met(ctx) for c in badge.criteria):
                    if self.db.add_user_badge(user_id, badge.id, now):
                        newly_unlocked.append(badge.name)

        if newly_unlocked:
            logger.info("User %s unlocked badges: %s", user_id, ", ".join(newly_unlocked))
        return newly_unlocked

    def progress(self, user_id: str, now: Optional[datetime] = None) -> List[BadgeProgress]:
        """Progress toward every active badge. Read-only."""
        now = as_utc(now) if now else utcnow()
        analytics = self.db.get_user_analytics(user_id)
        unlocked = self.db.get_user_badges(user_id)
        ctx = None
        if analytics is not None:
            ctx = BadgeContext(user_id=user_id, analytics=analytics, db=self.db, now=now)

        results = []
        for badge in self.catalog():
            is_unlocked = badge.id in unlocked
            if is_unlocked:
                pct = 100
            elif ctx is None or not badge.criteria:
                pct = 0
            else:
                ratios = [c.progress(ctx) for c in badge.criteria]
                pct = round(sum(ratios) / len(ratios) * 100)

            results.append(BadgeProgress(
                badge=badge,
                is_unlocked=is_unlocked,
                progress=pct,
                requirement=badge.requirement,
                unlocked_at=unlocked.get(badge.id),
            ))

        results.sort(key=lambda p: (p.badge.category, not p.is_unlocked, -p.progress))
        return results


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
DEFAULT_BADGES = [
    # Milestone
    {"name": "First Steps", "description": "Complete your first recording session",
     "category": "milestone", "icon_name": "award", "criteria": {"recordings": 1}},
    {"name": "Getting Started", "description": "Complete 5 recording sessions",
     "category": "milestone", "icon_name": "play", "criteria": {"recordings": 5}},
    {"name": "Practice Pro", "description": "Complete 10 recording sessions",
     "category": "milestone", "icon_name": "target", "criteria": {"recordings": 10}},
    {"name": "Speaking Veteran", "description": "Complete 25 recording sessions",
     "category": "milestone", "icon_name": "star", "criteria": {"recordings": 25}},
    {"name": "Speech Master", "description": "Complete 50 recording sessions",
     "category": "milestone", "icon_name": "crown", "criteria": {"recordings": 50}},

    # Consistency
    {"name": "Daily Dedication", "description": "Practice for 3 days in a row",
     "category": "consistency", "icon_name": "calendar", "criteria": {"streak": 3}},
    {"name": "Streak Master", "description": "Practice for 7 days in a row",
     "category": "consistency", "icon_name": "flame", "criteria": {"streak": 7}},
    {"name": "Unstoppable", "description": "Practice for 14 days in a row",
     "category": "consistency", "icon_name": "trending-up", "criteria": {"streak": 14}},
    {"name": "Marathon Speaker", "description": "Practice for 30 days in a row",
     "category": "consistency", "icon_name": "trophy", "criteria": {"streak": 30}},

    # Improvement
    {"name": "Confidence Builder", "description": "Achieve 80% average confidence score",
     "category": "improvement", "icon_name": "smile", "criteria": {"averageConfidence": 0.8}},
    {"name": "Confidence King", "description": "Achieve 90% average confidence score",
     "category": "improvement", "icon_name": "zap", "criteria": {"averageConfidence": 0.9}},
    {"name": "Perfect Pace", "description": "Master optimal speaking pace (150-160 WPM)",
     "category": "improvement", "icon_name": "gauge", "criteria": {"speakingPace": {"min": 150, "max": 160}}},
    {"name": "Clean Speaker", "description": "Reduce filler words to under 2 per minute",
     "category": "improvement", "icon_name": "sparkles", "criteria": {"fillersPerMinute": {"max": 2}}},
    {"name": "Filler-Free", "description": "Achieve under 1 filler word per minute",
     "category": "improvement", "icon_name": "check-circle", "criteria": {"fillersPerMinute": {"max": 1}}},

    # Time-based
    {"name": "Hour of Power", "description": "Practice for 60 total minutes",
     "category": "milestone", "icon_name": "clock", "criteria": {"totalMinutes": 60}},
    {"name": "Marathon Practitioner", "description": "Practice for 300 total minutes (5 hours)",
     "category": "milestone", "icon_name": "stopwatch", "criteria": {"totalMinutes": 300}},

    # Special
    {"name": "Weekend Warrior", "description": "Practice on a weekend",
     "category": "special", "icon_name": "sun", "criteria": {"specificWeekday": 0}},
    {"name": "Monday Motivator", "description": "Start your week with practice",
     "category": "special", "icon_name": "coffee", "criteria": {"specificWeekday": 1}},
    {"name": "Monthly Champion", "description": "Complete 12 sessions in a single month",
     "category": "consistency", "icon_name": "calendar-check", "criteria": {"monthlyGoal": 12}},
    {"name": "Rapid Improver", "description": "Improve confidence by 10% or more",
     "category": "improvement", "icon_name": "arrow-up", "criteria": {"improvementRate": 0.1}},
]

BADGE_ICONS = {
    "award": "🏆",
    "play": "▶️",
    "target": "🎯",
    "star": "⭐",
    "crown": "👑",
    "calendar": "📅",
    "flame": "🔥",
    "trending-up": "📈",
    "trophy": "🏆",
    "smile": "😊",
    "zap": "⚡",
    "gauge": "⏱️",
    "sparkles": "✨",
    "check-circle": "✅",
    "clock": "🕐",
    "stopwatch": "⏰",
    "sun": "☀️",
    "coffee": "☕",
    "calendar-check": "📋",
    "arrow-up": "⬆️",
}
DEFAULT_BADGE_ICON = "🎖️"
LOCKED_BADGE_ICON = "🔒"


def badge_icon(icon_name: str, is_unlocked: bool = False) -> str:
    if not is_unlocked:
        return LOCKED_BADGE_ICON
    return BADGE_ICONS.get(icon_name, DEFAULT_BADGE_ICON)


def seed_default_badges(db: CoachDB) -> int:
    """Insert the default catalog by name. Existing badges are not modified."""
    for badge in DEFAULT_BADGES:
        db.upsert_badge(badge["name"], badge["description"], badge["category"],
                        badge["icon_name"], badge["criteria"])
    logger.info("Badge catalog seeded (%d default badges)", len(DEFAULT_BADGES))
    return len(DEFAULT_BADGES)


def create_custom_badge(db: CoachDB, name: str, description: str, category: str,
                        icon_name: str, criteria: Dict[str, Any]) -> Badge:
    """Add a badge to the catalog after validating its category and criteria."""
    if category not in CATEGORIES:
        raise ValueError(f"Unknown badge category: {category}")
    parsed = parse_criteria(criteria)
    badge_id = db.upsert_badge(name, description, category, icon_name,
                               criteria_to_dict(parsed), update_existing=True)
    return Badge(id=badge_id, name=name, description=description, category=category,
                 icon_name=icon_name, criteria=parsed)
