"""Tests for coaching feedback and practice ideas."""
import json
from datetime import timedelta

import pytest

from coach import (
    ONBOARDING_INSIGHT, SECTION_DEFAULTS, PersonalCoach, UserTrends,
    build_coaching_prompt, custom_exercise, describe_trend, fallback_coaching,
    most_common, parse_coaching_response, parse_practice_ideas, user_level,
)
from exceptions import QuotaExceededError
from user_analytics import UserAnalyticsService

from conftest import COACHING_REPLY, FailingGenerator, FakeGenerator, make_result

IDEAS_REPLY = "Here are your exercises:\n" + json.dumps([
    {
        "title": "Elevator Pitch",
        "description": "Pitch your favourite book in one minute.",
        "duration": 5,
        "difficulty": "beginner",
        "category": "presentation",
        "instructions": ["Pick a book", "Set a timer", "Pitch it"],
        "tips": ["Smile", "Pause between points"],
    },
    {
        "title": "Slow Motion News",
        "description": "Read a headline story at half speed.",
        "duration": 10,
        "difficulty": "intermediate",
        "category": "pace",
        "instructions": ["Find a news story", "Read it slowly", "Record it"],
        "tips": ["Breathe at each period"],
    },
])


def _practice(db, user_id, now, confidences):
    service = UserAnalyticsService(db)
    for i, conf in enumerate(confidences):
        service.save_recording(user_id, 60, make_result(confidence=conf), now=now + timedelta(hours=i))


class TestTrends:

    @pytest.mark.parametrize("values, expected", [
        ([], "Building baseline"),
        ([0.5, 0.6], "Building baseline"),
        ([0.5, 0.6, 0.7], "Starting strong"),
        ([0.5, 0.5, 0.6, 0.6, 0.6], "Trending upward"),
        ([0.8, 0.8, 0.7, 0.7, 0.7], "Some recent challenges"),
        ([0.8, 0.8, 0.81, 0.79, 0.8], "Staying consistent"),
    ])
    def test_describe_trend(self, values, expected):
        assert describe_trend(values) == expected

    def test_user_level(self):
        assert [user_level(n) for n in (0, 4, 5, 19, 20)] == [
            "beginner", "beginner", "intermediate", "intermediate", "advanced",
        ]

    def test_most_common(self):
        assert most_common(["a", "b", "a", "c", "b", "a", "d"], 3) == ["a", "b", "c"]

    def test_analyze_user_trends_is_chronological(self, coach, seeded_db, now):
        _practice(seeded_db, "u1", now, [0.5, 0.6, 0.95])
        trends = coach.analyze_user_trends("u1", now=now + timedelta(hours=3))

        assert trends.confidence_scores == [0.5, 0.6, 0.95]
        assert trends.total_sessions == 3
        assert trends.practice_frequency == 3
        assert trends.common_weaknesses == ["Speech clarity could be improved"]
        assert trends.pace_values == [150, 150, 150]

    def test_trend_window_is_last_ten(self, coach, seeded_db, now):
        _practice(seeded_db, "u1", now, [0.5 + i * 0.01 for i in range(12)])
        trends = coach.analyze_user_trends("u1", now=now)
        assert len(trends.confidence_scores) == 10
        assert trends.confidence_scores[0] == pytest.approx(0.52)
        assert trends.total_sessions == 12


class TestPrompt:

    def test_prompt_contains_user_data(self):
        trends = UserTrends(confidence_scores=[0.8, 0.9], pace_values=[150, 170],
                            filler_rates=[1.0, 2.0], common_weaknesses=["Speaking too quickly"],
                            practice_frequency=2, total_sessions=2)
        prompt = build_coaching_prompt(trends)
        assert "Total practice sessions: 2" in prompt
        assert "Recent confidence average: 85.0%" in prompt
        assert "Speaking pace average: 160 WPM" in prompt
        assert "Common challenges: Speaking too quickly" in prompt
        assert "CONFIDENCE TREND: Building baseline" in prompt
        for marker in ("WHAT'S WORKING:", "FOCUS AREA:", "SPECIFIC TIP:", "MOTIVATION:"):
            assert marker in prompt

    def test_parse_all_sections(self):
        insight = parse_coaching_response(COACHING_REPLY, UserTrends(total_sessions=5))
        assert insight.what_working == "Your pace has settled nicely and you sound relaxed."
        assert insight.improvement_area == "Filler words still creep in when you change topics."
        assert insight.specific_tip == "Pause for one breath before each new point."
        assert insight.motivational_message == "Five sessions in, the habit is forming. Keep going!"
        assert insight.source == "generated"

    def test_parse_tolerates_markdown_and_case(self):
        reply = "**What's working:** Strong opening.\n**FOCUS AREA:** Endings.\n**Specific tip:** Summarize.\n**Motivation:** Onward!"
        insight = parse_coaching_response(reply, UserTrends())
        assert insight.what_working == "Strong opening."
        assert insight.specific_tip == "Summarize."
        assert insight.motivational_message == "Onward!"

    def test_missing_sections_get_defaults(self):
        insight = parse_coaching_response("WHAT'S WORKING: Nice energy.\nMOTIVATION: Go!", UserTrends())
        assert insight.what_working == "Nice energy."
        assert insight.improvement_area == SECTION_DEFAULTS["improvement_area"]
        assert insight.specific_tip == SECTION_DEFAULTS["specific_tip"]
        assert insight.motivational_message == "Go!"


class TestExercises:

    def test_exercise_targets_primary_weakness(self):
        trends = UserTrends(common_weaknesses=["Speaking too quickly", "Too many filler words"],
                            total_sessions=7)
        exercise = custom_exercise(trends)
        assert exercise.category == "pace"
        assert exercise.difficulty == "intermediate"
        assert exercise.duration == 7
        assert "speaking too quickly" in exercise.description

    def test_default_exercise_without_weakness(self):
        exercise = custom_exercise(UserTrends(total_sessions=25))
        assert exercise.category == "clarity"
        assert exercise.duration == 10

    def test_parse_practice_ideas(self):
        ideas = parse_practice_ideas(IDEAS_REPLY, id_prefix="exercise-u1")
        assert [i.title for i in ideas] == ["Elevator Pitch", "Slow Motion News"]
        assert [i.id for i in ideas] == ["exercise-u1-0", "exercise-u1-1"]

    @pytest.mark.parametrize("reply", [
        "No exercises today",
        "[not json]",
        "[]",
        json.dumps([{"title": "x", "description": "y", "duration": 5, "difficulty": "expert",
                     "category": "pace", "instructions": ["a"]}]),
    ])
    def test_unusable_practice_ideas_raise(self, reply):
        with pytest.raises(ValueError):
            parse_practice_ideas(reply, id_prefix="p")


class TestGenerateFeedback:

    def test_new_user_gets_onboarding_without_generation(self, seeded_db):
        generator = FakeGenerator()
        insight = PersonalCoach(seeded_db, generator).generate_feedback("brand-new")
        assert insight == ONBOARDING_INSIGHT
        assert insight.source == "onboarding"
        assert generator.prompts == []

    def test_generated_feedback(self, coach, generator, seeded_db, now):
        _practice(seeded_db, "u1", now, [0.8] * 5)
        insight = coach.generate_feedback("u1")
        assert insight.source == "generated"
        assert insight.specific_tip == "Pause for one breath before each new point."
        assert len(generator.prompts) == 1
        assert "Total practice sessions: 5" in generator.prompts[0]

    @pytest.mark.parametrize("error", [None, QuotaExceededError("rate limited"), RuntimeError("boom")])
    def test_generation_failure_falls_back(self, seeded_db, now, error):
        _practice(seeded_db, "u1", now, [0.6, 0.62, 0.65])
        coach = PersonalCoach(seeded_db, FailingGenerator(error))
        insight = coach.generate_feedback("u1")

        assert insight.source == "fallback"
        assert insight.improvement_area == "Your biggest opportunity right now: speech clarity could be improved."
        assert insight == coach.generate_feedback("u1")

    def test_unstructured_reply_falls_back(self, seeded_db, now):
        _practice(seeded_db, "u1", now, [0.8, 0.8])
        coach = PersonalCoach(seeded_db, FakeGenerator("Sure! You are doing fine."))
        assert coach.generate_feedback("u1").source == "fallback"

    def test_fallback_uses_confidence_trend(self):
        trends = UserTrends(confidence_scores=[0.5, 0.5, 0.7, 0.7, 0.7], total_sessions=5)
        insight = fallback_coaching(trends)
        assert "trending upward" in insight.what_working
        assert all([insight.what_working, insight.improvement_area,
                    insight.specific_tip, insight.motivational_message])


class TestPracticeIdeas:

    def test_generated_ideas(self, seeded_db, now):
        _practice(seeded_db, "u1", now, [0.8, 0.85])
        generator = FakeGenerator(IDEAS_REPLY)
        ideas = PersonalCoach(seeded_db, generator).generate_practice_ideas("u1", count=1)
        assert [i.title for i in ideas] == ["Elevator Pitch"]
        assert "Generate 1 personalized practice exercises" in generator.prompts[0]

    def test_bad_reply_uses_defaults(self, seeded_db, now):
        _practice(seeded_db, "u1", now, [0.8])
        ideas = PersonalCoach(seeded_db, FakeGenerator("nope")).generate_practice_ideas("u1")
        assert [i.id for i in ideas] == ["storytelling-basics", "confidence-booster", "pace-control"]

    def test_generation_failure_uses_defaults(self, seeded_db, now):
        _practice(seeded_db, "u1", now, [0.8])
        ideas = PersonalCoach(seeded_db, FailingGenerator()).generate_practice_ideas("u1", count=2)
        assert len(ideas) == 2

    def test_new_user_defaults_without_generation(self, seeded_db):
        generator = FakeGenerator(IDEAS_REPLY)
        ideas = PersonalCoach(seeded_db, generator).generate_practice_ideas("nobody")
        assert len(ideas) == 3
        assert generator.prompts == []


class TestStoredInsights:

    def test_refresh_stores_latest(self, coach, seeded_db, now):
        _practice(seeded_db, "u1", now, [0.8, 0.9])
        assert coach.latest("u1") is None

        payload = coach.refresh("u1")
        assert payload["insight"]["source"] == "generated"
        assert len(payload["practice_ideas"]) == 3
        assert coach.latest("u1") == payload
        assert seeded_db.get_latest_coaching_insight("u1")["source"] == "generated"
