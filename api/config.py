"""SpeakCoach API configuration."""

import os

# Server
HOST = os.getenv("SPEECHCOACH_HOST", "0.0.0.0")
PORT = int(os.getenv("SPEECHCOACH_PORT", "8000"))

# Limits
MAX_FILE_SIZE_MB = int(os.getenv("SPEECHCOACH_MAX_FILE_SIZE_MB", "500"))
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024

# Any audio/* or video/* content type is accepted
ALLOWED_CONTENT_PREFIXES = ("audio/", "video/")

# Paths
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
API_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.getenv("SPEECHCOACH_DB_PATH", os.path.join(BASE_DIR, "speechcoach.db"))
LOG_DIR = os.getenv("SPEECHCOACH_LOG_DIR", os.path.join(API_DIR, "logs"))
LOG_FILE = os.path.join(LOG_DIR, "api.log")

# Transcription backend: "whisper" (local faster-whisper) or "http"
TRANSCRIBER = os.getenv("SPEECHCOACH_TRANSCRIBER", "whisper")

# Whisper
WHISPER_MODEL = os.getenv("SPEECHCOACH_WHISPER_MODEL", "large-v3")
WHISPER_DEVICE = os.getenv("SPEECHCOACH_WHISPER_DEVICE", "cuda")
WHISPER_COMPUTE_TYPE = os.getenv("SPEECHCOACH_WHISPER_COMPUTE_TYPE", "float16")

# HTTP transcription service (OpenAI-compatible)
TRANSCRIBE_URL = os.getenv("SPEECHCOACH_TRANSCRIBE_URL", "http://localhost:9000")
TRANSCRIBE_API_KEY = os.getenv("SPEECHCOACH_TRANSCRIBE_API_KEY", "")
TRANSCRIBE_MODEL = os.getenv("SPEECHCOACH_TRANSCRIBE_MODEL", "whisper-1")
TRANSCRIBE_TIMEOUT_SEC = float(os.getenv("SPEECHCOACH_TRANSCRIBE_TIMEOUT", "600"))

# Text generation (Ollama)
OLLAMA_URL = os.getenv("SPEECHCOACH_OLLAMA_URL", "http://localhost:11434/api/generate")
OLLAMA_MODEL = os.getenv("SPEECHCOACH_OLLAMA_MODEL", "llama3")
OLLAMA_TIMEOUT_SEC = float(os.getenv("SPEECHCOACH_OLLAMA_TIMEOUT", "60"))

# Coaching queue
MAX_COACHING_QUEUE = int(os.getenv("SPEECHCOACH_MAX_COACHING_QUEUE", "100"))
JOB_EXPIRATION_HOURS = int(os.getenv("SPEECHCOACH_JOB_EXPIRY_HOURS", "24"))

# Dashboard
DASHBOARD_RECENT_RECORDINGS = 5
DASHBOARD_PROGRESS_MONTHS = 7
DASHBOARD_PRACTICE_IDEAS = 3
