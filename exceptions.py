"""SpeakCoach exceptions."""


class SpeechCoachError(Exception):
    """Base exception for SpeakCoach errors."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str = None, status_code: int = None):
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(message)

    def __str__(self):
        return f"[{self.code}] {self.message}"


class NoSpeechError(SpeechCoachError):
    """Transcription succeeded but found no usable speech."""
    status_code = 400
    code = "NO_SPEECH"


class QuotaExceededError(SpeechCoachError):
    """An external capability rejected the call because of a rate limit or quota."""
    status_code = 429
    code = "QUOTA_EXCEEDED"

    def __init__(self, message: str, retry_after: float = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class OversizeInputError(SpeechCoachError):
    status_code = 413
    code = "FILE_TOO_LARGE"


class UnsupportedMediaError(SpeechCoachError):
    status_code = 400
    code = "INVALID_FILE_TYPE"


class TranscriptionTimeoutError(SpeechCoachError):
    status_code = 504
    code = "TRANSCRIPTION_TIMEOUT"


class StoreUnavailableError(SpeechCoachError):
    """Record store read or write failed. Safe for the caller to retry."""
    status_code = 503
    code = "STORE_UNAVAILABLE"


class GenerationError(SpeechCoachError):
    """Text generation failed or returned nothing usable."""
    status_code = 502
    code = "GENERATION_FAILED"


class QueueFullError(SpeechCoachError):
    """Background coaching queue is at capacity."""
    status_code = 429
    code = "QUEUE_FULL"
