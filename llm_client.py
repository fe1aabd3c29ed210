"""
Text generation client for coaching feedback.
Calls a local Ollama server; any failure is raised as a typed error so the
coach can fall back to deterministic text.
"""

import logging
from typing import Optional, Protocol

import httpx

from exceptions import GenerationError, QuotaExceededError

logger = logging.getLogger("speechcoach.llm")

OLLAMA_URL = "http://localhost:11434/api/generate"
MODEL = "llama3"


class TextGenerator(Protocol):
    def generate(self, prompt: str) -> str:
        ...


class OllamaGenerator:
    """Blocking Ollama /api/generate client."""

    def __init__(self, url: str = OLLAMA_URL, model: str = MODEL, timeout: float = 60.0,
                 temperature: float = 0.7, max_tokens: int = 500,
                 client: Optional[httpx.Client] = None):
        self.url = url
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or httpx.Client(timeout=timeout)

    def generate(self, prompt: str) -> str:
        try:
            response = self._client.post(
                self.url,
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "stream": False,
                    "options": {
                        "temperature": self.temperature,
                        "num_predict": self.max_tokens,
                    },
                },
            )
        except httpx.TimeoutException as e:
            raise GenerationError(f"Ollama request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Ollama request failed: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise QuotaExceededError(
                "Text generation rate limit reached",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code != 200:
            logger.error("Ollama returned %s: %s", response.status_code, response.text[:200])
            raise GenerationError(f"Ollama returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise GenerationError("Ollama returned a non-JSON body") from e
        text = body.get("response") if isinstance(body, dict) else None
        text = text.strip() if isinstance(text, str) else ""
        if not text:
            raise GenerationError("Ollama returned an empty response")
        return text

    def close(self):
        self._client.close()
