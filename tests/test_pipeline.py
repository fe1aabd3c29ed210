"""Tests for the session pipeline and dashboard."""
from datetime import datetime, timedelta

import pytest

from api.job_manager import CoachingQueue, STATUS_COMPLETE
from coach import PersonalCoach
from exceptions import (
    NoSpeechError, OversizeInputError, QuotaExceededError, StoreUnavailableError,
    UnsupportedMediaError,
)
from pipeline import SpeechCoachPipeline
from speech_analysis import Transcription

from conftest import FailingGenerator, FakeTranscriber, make_transcription


@pytest.fixture
def pipeline(seeded_db, transcriber, coach):
    return SpeechCoachPipeline(seeded_db, transcriber, coach, max_file_size=1024)


class TestProcessRecording:

    def test_full_session(self, pipeline, seeded_db, now):
        session = pipeline.process_recording("u1", b"RIFF....", "audio/wav", duration=45.0, now=now)

        assert session.recording.id is not None
        assert session.recording.duration == 45.0
        assert session.analysis.speaking_pace == 150
        assert session.analytics.total_recordings == 1
        assert "First Steps" in session.new_badges
        assert session.coaching_job_id is None
        assert seeded_db.count_recordings("u1") == 1

    def test_duration_defaults_to_last_word(self, pipeline, now):
        session = pipeline.process_recording("u1", b"data", "video/mp4", now=now)
        assert session.recording.duration == pytest.approx(3.6)

    def test_oversize_rejected_before_transcription(self, pipeline, transcriber):
        with pytest.raises(OversizeInputError):
            pipeline.process_recording("u1", b"x" * 2048, "audio/wav")
        assert transcriber.calls == []

    @pytest.mark.parametrize("mime_type", ["image/png", "", None, "application/pdf"])
    def test_unsupported_type_rejected(self, pipeline, transcriber, mime_type):
        with pytest.raises(UnsupportedMediaError):
            pipeline.process_recording("u1", b"data", mime_type)
        assert transcriber.calls == []

    def test_no_speech_writes_nothing(self, seeded_db, coach):
        pipeline = SpeechCoachPipeline(seeded_db, FakeTranscriber(Transcription("", [], 0.0)), coach)
        with pytest.raises(NoSpeechError):
            pipeline.process_recording("u1", b"data", "audio/webm")
        assert seeded_db.count_recordings("u1") == 0
        assert seeded_db.get_user_analytics("u1") is None

    def test_quota_error_propagates(self, seeded_db, coach):
        transcriber = FakeTranscriber(error=QuotaExceededError("quota"))
        pipeline = SpeechCoachPipeline(seeded_db, transcriber, coach)
        with pytest.raises(QuotaExceededError):
            pipeline.process_recording("u1", b"data", "audio/wav")

    def test_badge_store_failure_propagates(self, pipeline, monkeypatch, now):
        def unavailable(*args, **kwargs):
            raise StoreUnavailableError("database is locked")

        monkeypatch.setattr(pipeline.badges, "evaluate", unavailable)
        with pytest.raises(StoreUnavailableError):
            pipeline.process_recording("u1", b"data", "audio/wav", now=now)

    def test_analytics_reflect_this_session_only(self, pipeline, monkeypatch, now):
        evaluate = pipeline.badges.evaluate

        def evaluate_then_another_upload(user_id, now=None):
            unlocked = evaluate(user_id, now=now)
            pipeline.analytics.record_session(user_id, 60, 0.1, 150, 0.5, 1.0,
                                              now=now + timedelta(minutes=5))
            return unlocked

        monkeypatch.setattr(pipeline.badges, "evaluate", evaluate_then_another_upload)
        session = pipeline.process_recording("u1", b"data", "audio/wav", duration=60, now=now)

        assert session.analytics.total_recordings == 1
        assert session.analytics.average_confidence == pytest.approx(0.92)
        assert pipeline.analytics.get_user_analytics("u1").total_recordings == 2

    def test_naive_timestamps(self, pipeline):
        first = datetime(2025, 3, 12, 15)
        pipeline.process_recording("u1", b"data", "audio/wav", duration=60, now=first)
        session = pipeline.process_recording("u1", b"data", "audio/wav", duration=60,
                                             now=first + timedelta(hours=1))
        assert session.analytics.current_streak == 2
        assert pipeline.get_dashboard_data("u1", now=first).analytics.total_recordings == 2

    def test_coaching_is_queued(self, seeded_db, transcriber, coach, now):
        pipeline = SpeechCoachPipeline(seeded_db, transcriber, coach)
        queue = CoachingQueue(pipeline.generate_and_store_insight)
        pipeline.coaching_queue = queue

        session = pipeline.process_recording("u1", b"data", "audio/wav", duration=30, now=now)
        job = queue.wait(session.coaching_job_id, timeout=5)

        assert job.status == STATUS_COMPLETE
        assert seeded_db.get_latest_coaching_insight("u1")["source"] == "generated"
        queue.shutdown(wait=True)


class TestDashboard:

    def test_new_user(self, pipeline, now):
        d = pipeline.get_dashboard_data("new-user", now=now)
        assert d.analytics is None
        assert d.recent_recordings == []
        assert d.progress_data == []
        assert all(not b.is_unlocked for b in d.badges)
        assert d.coaching_insight["source"] == "onboarding"
        assert len(d.practice_ideas) == 3

    def test_returning_user(self, pipeline, now):
        for i in range(6):
            pipeline.process_recording("u1", b"data", "audio/wav", duration=60, now=now + timedelta(hours=i))

        d = pipeline.get_dashboard_data("u1", now=now + timedelta(hours=6))
        assert d.analytics.total_recordings == 6
        assert len(d.recent_recordings) == 5
        assert [(p.name, p.year) for p in d.progress_data] == [("Mar", 2025)]
        assert sum(b.is_unlocked for b in d.badges) >= 2
        assert d.coaching_insight["source"] == "generated"

    def test_stored_insight_is_reused(self, pipeline, generator, now):
        pipeline.process_recording("u1", b"data", "audio/wav", duration=60, now=now)
        pipeline.get_dashboard_data("u1", now=now)
        calls = len(generator.prompts)

        pipeline.get_dashboard_data("u1", now=now)
        assert len(generator.prompts) == calls

    def test_generation_failure_never_surfaces(self, seeded_db, now):
        coach = PersonalCoach(seeded_db, FailingGenerator())
        pipeline = SpeechCoachPipeline(seeded_db, FakeTranscriber(make_transcription(confidence=0.6)), coach)
        pipeline.process_recording("u1", b"data", "audio/wav", duration=60, now=now)

        d = pipeline.get_dashboard_data("u1", now=now)
        assert d.coaching_insight["source"] == "fallback"
        assert [i["id"] for i in d.practice_ideas] == ["storytelling-basics", "confidence-booster", "pace-control"]
