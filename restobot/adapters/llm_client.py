from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional, Protocol

from google import genai
from google.genai import types

logger = logging.getLogger(__name__)


class CompletionService(Protocol):
    """Narrow prompt-in/text-out interface every LLM-backed stage depends on."""

    def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:  # pragma: no cover - interface
        ...


class CompletionTimeout(TimeoutError):
    pass


class CompletionUnavailable(RuntimeError):
    pass


class GeminiCompletionService:
    """Completion service backed by the Gemini API."""

    def __init__(self, model_name: str, api_key: str, request_timeout_seconds: float | None = None) -> None:
        if not api_key:
            raise RuntimeError("Gemini API key is required for completions")
        http_options = None
        if request_timeout_seconds:
            http_options = types.HttpOptions(timeout=int(request_timeout_seconds * 1000))
        self._client = genai.Client(api_key=api_key, http_options=http_options)
        self._model_name = model_name

    def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        response = self._client.models.generate_content(
            model=self._model_name,
            contents=prompt,
            config=types.GenerateContentConfig(
                max_output_tokens=max_tokens,
                temperature=temperature,
            ),
        )
        return self._extract_text(response)

    def _extract_text(self, response) -> str:
        candidates = getattr(response, "candidates", None) or []
        for candidate in candidates:
            content = getattr(candidate, "content", None)
            parts = (getattr(content, "parts", None) or []) if content else []
            for part in parts:
                value = getattr(part, "text", None)
                if value:
                    return value
        raise RuntimeError("Gemini did not return text for the completion")


class UnavailableCompletionService:
    """Stand-in used when no LLM is configured; every call fails fast."""

    def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        raise CompletionUnavailable("No completion service is configured")


class TimeBoundCompletion:
    """Runs the wrapped service on a worker pool and abandons slow calls.

    A call that exceeds ``timeout_seconds`` raises :class:`CompletionTimeout`;
    the worker thread is left to finish in the background.
    """

    def __init__(
        self,
        inner: CompletionService,
        timeout_seconds: float,
        executor: Optional[Executor] = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._inner = inner
        self._timeout = timeout_seconds
        self._executor = executor or ThreadPoolExecutor(max_workers=8, thread_name_prefix="completion")

    def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        future = self._executor.submit(self._inner.complete, prompt, max_tokens, temperature)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            future.cancel()
            logger.warning("Completion exceeded %.2fs budget", self._timeout)
            raise CompletionTimeout(f"Completion timed out after {self._timeout}s") from exc
