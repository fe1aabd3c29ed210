"""Pytest configuration and fixtures for SpeakCoach tests."""
import os
import tempfile
from datetime import datetime, timezone

import pytest

# Keep the API's log file and default database out of the source tree
_TMP = tempfile.mkdtemp(prefix="speechcoach-tests-")
os.environ.setdefault("SPEECHCOACH_LOG_DIR", os.path.join(_TMP, "logs"))
os.environ.setdefault("SPEECHCOACH_DB_PATH", os.path.join(_TMP, "speechcoach.db"))

from badges import seed_default_badges  # noqa: E402
from coach import PersonalCoach  # noqa: E402
from coach_db import CoachDB  # noqa: E402
from exceptions import GenerationError, NoSpeechError  # noqa: E402
from speech_analysis import Transcription, WordTiming, analyze_transcription  # noqa: E402

# Wednesday
FIXED_NOW = datetime(2025, 3, 12, 15, 0, 0, tzinfo=timezone.utc)

COACHING_REPLY = """WHAT'S WORKING: Your pace has settled nicely and you sound relaxed.

FOCUS AREA: Filler words still creep in when you change topics.

SPECIFIC TIP: Pause for one breath before each new point.

MOTIVATION: Five sessions in, the habit is forming. Keep going!"""


def make_words(count: int, wpm: float = 150, start: float = 0.0, text: str = "word"):
    """Evenly spaced word timings at the given words-per-minute."""
    step = 60.0 / wpm
    return [WordTiming(text=text, start=start + i * step, end=start + (i + 1) * step)
            for i in range(count)]


def make_transcription(transcript: str = "I really enjoy talking about great ideas with people",
                       confidence: float = 0.92, wpm: float = 150) -> Transcription:
    words = make_words(len(transcript.split()), wpm)
    for w, token in zip(words, transcript.split()):
        w.text = token
    return Transcription(transcript=transcript, words=words, confidence=confidence)


def make_result(confidence: float = 0.92, wpm: float = 150, transcript: str = None):
    if transcript is None:
        return analyze_transcription(make_transcription(confidence=confidence, wpm=wpm))
    return analyze_transcription(make_transcription(transcript, confidence=confidence, wpm=wpm))


class FakeTranscriber:
    """Returns a canned transcription and records every call."""

    def __init__(self, transcription: Transcription = None, error: Exception = None):
        self.transcription = transcription or make_transcription()
        self.error = error
        self.calls = []

    def transcribe(self, data: bytes, mime_type: str) -> Transcription:
        self.calls.append((len(data), mime_type))
        if self.error is not None:
            raise self.error
        if not self.transcription.transcript.strip():
            raise NoSpeechError("No speech detected")
        return self.transcription


class FakeGenerator:
    """Returns queued responses in order (the last one repeats) and records prompts."""

    def __init__(self, *responses: str):
        self.responses = list(responses) or [COACHING_REPLY]
        self.prompts = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class FailingGenerator:
    def __init__(self, error: Exception = None):
        self.error = error or GenerationError("Ollama request timed out")
        self.prompts = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        raise self.error


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def db(tmp_path):
    return CoachDB(tmp_path / "coach.db")


@pytest.fixture
def seeded_db(db):
    seed_default_badges(db)
    return db


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def coach(seeded_db, generator):
    return PersonalCoach(seeded_db, generator)
