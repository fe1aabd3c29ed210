"""Tests for badge criteria, unlocking and progress."""
from datetime import datetime, timedelta, timezone

import pytest

from badges import (
    DEFAULT_BADGES, DEFAULT_BADGE_ICON, LOCKED_BADGE_ICON, Badge, BadgeContext,
    BadgeEngine, DistinctPracticeDays,
    FillerRateAtMost, MonthlySessionGoal, PaceInRange, PracticeOnWeekday,
    RecordingsAtLeast, badge_icon, create_custom_badge, criteria_to_dict,
    parse_criteria, seed_default_badges,
)
from coach_db import UserAnalytics
from user_analytics import UserAnalyticsService

from conftest import make_result


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _set_analytics(db, user_id="u1", **fields):
    db.save_user_analytics(UserAnalytics(user_id=user_id, **fields))


def _badge(db, name, criteria, category="milestone"):
    return db.upsert_badge(name, f"{name} badge", category, "award", criteria)


class TestParseCriteria:

    def test_zero_thresholds_are_absent(self):
        assert parse_criteria({"recordings": 10, "streak": 0, "totalMinutes": None}) == [RecordingsAtLeast(10)]

    def test_weekday_zero_means_sunday(self):
        assert parse_criteria({"specificWeekday": 0}) == [PracticeOnWeekday(0)]

    def test_nested_thresholds(self):
        criteria = parse_criteria({"speakingPace": {"min": 150, "max": 160}, "fillersPerMinute": {"max": 2}})
        assert criteria == [PaceInRange(150, 160), FillerRateAtMost(2)]
        assert criteria_to_dict(criteria) == {
            "speakingPace": {"min": 150.0, "max": 160.0},
            "fillersPerMinute": {"max": 2.0},
        }

    @pytest.mark.parametrize("raw", [
        {"mystery": 1},
        {"speakingPace": {"min": 150}},
        {"specificWeekday": 9},
        {"recordings": "lots"},
    ])
    def test_invalid_criteria_raise(self, raw):
        with pytest.raises(ValueError):
            parse_criteria(raw)

    def test_requirement_text(self):
        badge = Badge(id=1, name="x", description="", category="milestone", icon_name="award",
                      criteria=parse_criteria({"recordings": 1, "averageConfidence": 0.8}))
        assert badge.requirement == "Complete 1 recording and Achieve 80% average confidence"

    def test_default_catalog_parses(self):
        for entry in DEFAULT_BADGES:
            assert parse_criteria(entry["criteria"])


class TestCriterionProgress:

    def _ctx(self, db, now, **fields):
        return BadgeContext(user_id="u1", analytics=UserAnalytics(user_id="u1", **fields), db=db, now=now)

    def test_pace_distance_to_range(self, db, now):
        pace = PaceInRange(150, 160)
        assert pace.progress(self._ctx(db, now, average_pace=155)) == 1.0
        assert pace.progress(self._ctx(db, now, average_pace=145)) == pytest.approx(0.5)
        assert pace.progress(self._ctx(db, now, average_pace=170)) == pytest.approx(0.0)
        assert not pace.is_met(self._ctx(db, now, average_pace=161))

    def test_filler_ceiling(self, db, now):
        fillers = FillerRateAtMost(2)
        assert fillers.is_met(self._ctx(db, now, average_fillers=2.0))
        assert fillers.progress(self._ctx(db, now, average_fillers=3.0)) == pytest.approx(0.5)
        assert fillers.progress(self._ctx(db, now, average_fillers=6.0)) == 0.0

    def test_weekday_within_last_month(self, db, now):
        service = UserAnalyticsService(db)
        service.save_recording("u1", 60, make_result(), now=_utc(2025, 1, 6, 9))   # Monday, too old
        ctx = self._ctx(db, now)
        assert not PracticeOnWeekday(1).is_met(ctx)

        service.save_recording("u1", 60, make_result(), now=_utc(2025, 3, 9, 9))   # Sunday
        assert PracticeOnWeekday(0).is_met(ctx)
        assert PracticeOnWeekday(0).progress(ctx) == 1.0
        assert PracticeOnWeekday(1).progress(ctx) == 0.0

    def test_distinct_days_window(self, db, now):
        service = UserAnalyticsService(db)
        for when in [_utc(2025, 3, 10, 10), _utc(2025, 3, 11, 10), _utc(2025, 3, 11, 18)]:
            service.save_recording("u1", 60, make_result(), now=when)
        ctx = self._ctx(db, now)
        assert not DistinctPracticeDays(3).is_met(ctx)
        assert DistinctPracticeDays(3).progress(ctx) == pytest.approx(2 / 3)

        service.save_recording("u1", 60, make_result(), now=_utc(2025, 3, 12, 10))
        assert DistinctPracticeDays(3).is_met(ctx)

    def test_monthly_goal_counts_current_month(self, db, now):
        service = UserAnalyticsService(db)
        for when in [_utc(2025, 2, 27, 10), _utc(2025, 2, 28, 10), _utc(2025, 3, 1, 10), _utc(2025, 3, 5, 10)]:
            service.save_recording("u1", 60, make_result(), now=when)
        ctx = self._ctx(db, now)
        assert MonthlySessionGoal(2).is_met(ctx)
        assert not MonthlySessionGoal(3).is_met(ctx)
        assert MonthlySessionGoal(3).progress(ctx) == 0.0


class TestEvaluate:

    def test_unlocks_exactly_once(self, db, now):
        _badge(db, "Practice Pro", {"recordings": 10})
        _set_analytics(db, total_recordings=10)
        engine = BadgeEngine(db)

        assert engine.evaluate("u1", now=now) == ["Practice Pro"]
        assert engine.evaluate("u1", now=now) == []
        assert len(db.get_user_badges("u1")) == 1

    def test_second_evaluate_is_noop(self, seeded_db, now):
        service = UserAnalyticsService(seeded_db)
        engine = BadgeEngine(seeded_db)
        service.save_recording("u1", 60, make_result(), now=now)

        first = engine.evaluate("u1", now=now)
        assert "First Steps" in first
        assert engine.evaluate("u1", now=now) == []

    def test_unlocks_as_sessions_accumulate(self, seeded_db, now):
        service = UserAnalyticsService(seeded_db)
        engine = BadgeEngine(seeded_db)
        unlocked = []
        for i in range(10):
            when = now + timedelta(hours=i)
            service.save_recording("u1", 60, make_result(), now=when)
            newly = engine.evaluate("u1", now=when)
            if i < 9:
                assert "Practice Pro" not in newly
            unlocked.extend(newly)

        assert "Practice Pro" in newly
        assert len(unlocked) == len(set(unlocked))
        assert {"First Steps", "Getting Started", "Practice Pro", "Confidence Builder"} <= set(unlocked)

    def test_conjunction(self, db, now):
        _badge(db, "Confident Regular", {"recordings": 3, "averageConfidence": 0.8})
        _set_analytics(db, total_recordings=5, average_confidence=0.75)
        engine = BadgeEngine(db)
        assert engine.evaluate("u1", now=now) == []

        _set_analytics(db, total_recordings=6, average_confidence=0.85)
        assert engine.evaluate("u1", now=now) == ["Confident Regular"]

    def test_user_without_analytics(self, seeded_db, now):
        engine = BadgeEngine(seeded_db)
        assert engine.evaluate("ghost", now=now) == []
        assert all(p.progress == 0 and not p.is_unlocked for p in engine.progress("ghost", now=now))

    def test_invalid_badge_is_skipped(self, db, now):
        _badge(db, "Broken", {"mystery": 1})
        _badge(db, "First Steps", {"recordings": 1})
        _set_analytics(db, total_recordings=1)
        engine = BadgeEngine(db)
        assert [b.name for b in engine.catalog()] == ["First Steps"]
        assert engine.evaluate("u1", now=now) == ["First Steps"]

    def test_empty_criteria_unlock(self, db, now):
        _badge(db, "Welcome", {})
        _set_analytics(db, total_recordings=1)
        engine = BadgeEngine(db)
        assert engine.progress("u1", now=now)[0].progress == 0
        assert engine.evaluate("u1", now=now) == ["Welcome"]

    def test_inactive_badges_ignored(self, db, now):
        badge_id = _badge(db, "First Steps", {"recordings": 1})
        db.set_badge_active(badge_id, False)
        _set_analytics(db, total_recordings=1)
        assert BadgeEngine(db).evaluate("u1", now=now) == []


class TestProgress:

    def test_recordings_progress_monotonic_and_clamped(self, db, now):
        _badge(db, "Five", {"recordings": 5})
        engine = BadgeEngine(db)
        seen = []
        for n in range(1, 9):
            _set_analytics(db, total_recordings=n)
            seen.append(engine.progress("u1", now=now)[0].progress)

        assert seen == sorted(seen)
        assert seen == [20, 40, 60, 80, 100, 100, 100, 100]

    def test_mean_of_criteria(self, db, now):
        _badge(db, "Combo", {"recordings": 10, "averageConfidence": 0.8})
        _set_analytics(db, total_recordings=5, average_confidence=0.4)
        p = BadgeEngine(db).progress("u1", now=now)[0]
        assert p.progress == 50
        assert not p.is_unlocked

    def test_progress_is_read_only(self, seeded_db, now):
        _set_analytics(seeded_db, total_recordings=50)
        BadgeEngine(seeded_db).progress("u1", now=now)
        assert seeded_db.get_user_badges("u1") == {}

    def test_unlocked_badges_report_full_progress(self, seeded_db, now):
        _set_analytics(seeded_db, total_recordings=1)
        engine = BadgeEngine(seeded_db)
        engine.evaluate("u1", now=now)
        first = next(p for p in engine.progress("u1", now=now) if p.badge.name == "First Steps")
        assert first.is_unlocked and first.progress == 100
        assert first.unlocked_at == now

    def test_sorted_by_category_then_unlocked_then_progress(self, seeded_db, now):
        _set_analytics(seeded_db, total_recordings=7, current_streak=2, average_confidence=0.85)
        engine = BadgeEngine(seeded_db)
        engine.evaluate("u1", now=now)
        results = engine.progress("u1", now=now)

        keys = [(p.badge.category, not p.is_unlocked, -p.progress) for p in results]
        assert keys == sorted(keys)
        assert len(results) == len(DEFAULT_BADGES)


class TestCatalog:

    def test_seed_is_idempotent(self, db):
        seed_default_badges(db)
        seed_default_badges(db)
        assert len(db.list_badges()) == len(DEFAULT_BADGES)

    def test_custom_badge(self, db):
        badge = create_custom_badge(db, "Night Owl", "Practice ten times", "special", "star",
                                    {"recordings": 10})
        assert badge.criteria == [RecordingsAtLeast(10)]
        assert [b.name for b in BadgeEngine(db).catalog()] == ["Night Owl"]

    def test_custom_badge_rejects_unknown_category(self, db):
        with pytest.raises(ValueError):
            create_custom_badge(db, "Odd", "", "legendary", "star", {"recordings": 1})

    def test_icons(self):
        assert badge_icon("flame", is_unlocked=True) == "🔥"
        assert badge_icon("flame", is_unlocked=False) == LOCKED_BADGE_ICON
        assert badge_icon("unknown-icon", is_unlocked=True) == DEFAULT_BADGE_ICON
