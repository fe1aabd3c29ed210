"""
Speech-to-text backends.

Both backends return a ``Transcription`` (transcript, word timings, overall
confidence) and raise NoSpeechError when nothing usable was recognized.

- WhisperTranscriber: local faster-whisper model, loaded lazily once.
- HttpTranscriber: OpenAI-compatible /v1/audio/transcriptions service.
"""

import math
import os
import logging
import tempfile
import threading
from typing import Optional, Protocol

import httpx

from exceptions import (
    NoSpeechError, QuotaExceededError, SpeechCoachError, TranscriptionTimeoutError,
)
from speech_analysis import Transcription, WordTiming

logger = logging.getLogger("speechcoach.transcription")

# Extension used for the temp file handed to ffmpeg/whisper
MIME_SUFFIXES = {
    "audio/wav": ".wav", "audio/x-wav": ".wav", "audio/wave": ".wav",
    "audio/mpeg": ".mp3", "audio/mp3": ".mp3",
    "audio/m4a": ".m4a", "audio/x-m4a": ".m4a", "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "audio/webm": ".webm", "video/webm": ".webm",
    "audio/ogg": ".ogg",
    "video/mp4": ".mp4",
    "video/quicktime": ".mov", "video/mov": ".mov",
    "video/avi": ".avi", "video/x-msvideo": ".avi",
}


def suffix_for(mime_type: Optional[str]) -> str:
    return MIME_SUFFIXES.get((mime_type or "").lower(), ".bin")


class Transcriber(Protocol):
    def transcribe(self, data: bytes, mime_type: str) -> Transcription:
        ...


def _require_speech(transcript: str) -> str:
    transcript = (transcript or "").strip()
    if not transcript:
        raise NoSpeechError("No speech detected in the recording. Please ensure it contains clear speech.")
    return transcript


class WhisperTranscriber:
    """faster-whisper with word timestamps. Confidence = mean word probability."""

    def __init__(self, model_name: str = "large-v3", device: str = "cuda",
                 compute_type: str = "float16", language: str = "en"):
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self._model = None
        self._load_lock = threading.Lock()

    def _get_model(self):
        """Lazy-load the Whisper model."""
        with self._load_lock:
            if self._model is None:
                from faster_whisper import WhisperModel
                logger.info("Loading Whisper %s model...", self.model_name)
                self._model = WhisperModel(self.model_name, device=self.device,
                                           compute_type=self.compute_type)
                logger.info("Whisper model loaded.")
        return self._model

    def transcribe(self, data: bytes, mime_type: str) -> Transcription:
        model = self._get_model()
        with tempfile.NamedTemporaryFile(suffix=suffix_for(mime_type), delete=False) as tmp:
            tmp.write(data)
            tmp_path = tmp.name

        try:
            segments, _info = model.transcribe(tmp_path, beam_size=5, language=self.language,
                                               word_timestamps=True)
            texts = []
            words = []
            probabilities = []
            for seg in segments:
                texts.append(seg.text.strip())
                for w in seg.words or []:
                    words.append(WordTiming(text=w.word.strip(), start=float(w.start), end=float(w.end)))
                    probabilities.append(float(w.probability))
        finally:
            try:
                os.unlink(tmp_path)
            except OSError:
                logger.warning("Failed to delete temp file %s", tmp_path)

        transcript = _require_speech(" ".join(t for t in texts if t))
        confidence = sum(probabilities) / len(probabilities) if probabilities else 0.0
        logger.info("Whisper transcribed %d words (confidence %.2f)", len(words), confidence)
        return Transcription(transcript=transcript, words=words, confidence=confidence)


class HttpTranscriber:
    """Client for an OpenAI-compatible transcription endpoint (verbose_json, word timestamps)."""

    def __init__(self, base_url: str, api_key: str = "", model: str = "whisper-1",
                 timeout: float = 600.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout, headers=headers)

    def transcribe(self, data: bytes, mime_type: str) -> Transcription:
        try:
            response = self._client.post(
                "/v1/audio/transcriptions",
                files={"file": (f"recording{suffix_for(mime_type)}", data, mime_type or "application/octet-stream")},
                data={
                    "model": self.model,
                    "response_format": "verbose_json",
                    "timestamp_granularities[]": "word",
                    "language": "en",
                },
            )
        except httpx.TimeoutException as e:
            raise TranscriptionTimeoutError(
                "Transcription is taking too long. Please try a shorter recording."
            ) from e
        except httpx.HTTPError as e:
            raise SpeechCoachError(f"Transcription service unreachable: {e}",
                                   code="TRANSCRIPTION_UNAVAILABLE", status_code=503) from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise QuotaExceededError(
                "Speech analysis quota exceeded. Please try again later.",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code >= 400:
            logger.error("Transcription service returned %s: %s",
                         response.status_code, response.text[:200])
            raise SpeechCoachError(f"Transcription failed (HTTP {response.status_code})",
                                   code="TRANSCRIPTION_FAILED", status_code=502)

        try:
            body = response.json()
        except ValueError as e:
            logger.error("Transcription service returned a non-JSON body: %s", response.text[:200])
            raise SpeechCoachError("Transcription failed (malformed response)",
                                   code="TRANSCRIPTION_FAILED", status_code=502) from e
        if not isinstance(body, dict):
            raise SpeechCoachError("Transcription failed (malformed response)",
                                   code="TRANSCRIPTION_FAILED", status_code=502)

        transcript = _require_speech(body.get("text", ""))
        words = self._word_timings(body.get("words") or [])
        return Transcription(transcript=transcript, words=words,
                             confidence=self._confidence(body.get("segments") or []))

    @staticmethod
    def _word_timings(raw_words: list) -> list:
        """Word entries without usable start/end offsets are skipped."""
        words = []
        for w in raw_words:
            if not isinstance(w, dict):
                continue
            try:
                start, end = float(w["start"]), float(w["end"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping word without timing: %r", w)
                continue
            words.append(WordTiming(text=str(w.get("word", "")).strip(), start=start, end=end))
        return words

    @staticmethod
    def _confidence(segments: list) -> float:
        """Mean per-segment probability derived from avg_logprob; 0.75 when unavailable."""
        probs = [math.exp(float(s["avg_logprob"])) for s in segments
                 if isinstance(s, dict) and isinstance(s.get("avg_logprob"), (int, float))]
        if not probs:
            return 0.75
        return max(0.0, min(1.0, sum(probs) / len(probs)))

    def close(self):
        self._client.close()
