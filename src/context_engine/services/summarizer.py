"""LLM-backed summarizer for SUMMARIZE and HIERARCHICAL compression.

Calls LiteLLM with a hard per-attempt timeout and tenacity retries. Any
failure surfaces as SummarizerUnavailableError, which the compressor
treats as "no summarizer" and answers with truncation.
"""

from __future__ import annotations

import asyncio

import litellm
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.context_engine.config import ContextEngineSettings
from src.context_engine.errors import SummarizerUnavailableError

logger = structlog.get_logger(__name__)


class LLMSummarizer:
    """Callable summarizer: ``await summarizer(text, instruction, target_tokens)``.

    Usage:
        summarizer = LLMSummarizer("anthropic/claude-3-5-haiku-20241022")
        manager = ContextManager(config, summarizer=summarizer)
    """

    def __init__(
        self,
        model: str,
        *,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        max_tokens: int = 2_048,
        backoff_multiplier: float = 1.0,
    ) -> None:
        if not model:
            raise ValueError("LLMSummarizer requires a model name")
        self._model = model
        self._timeout = timeout_seconds
        self._max_retries = max(1, max_retries)
        self._max_tokens = max_tokens
        self._backoff = backoff_multiplier

    @classmethod
    def from_settings(cls, settings: ContextEngineSettings) -> "LLMSummarizer | None":
        """Build from settings; None when no summarizer model is configured."""
        if not settings.summarizer_model:
            return None
        return cls(
            settings.summarizer_model,
            timeout_seconds=settings.summarizer_timeout_seconds,
            max_retries=settings.summarizer_max_retries,
            max_tokens=settings.summarizer_max_tokens,
        )

    async def __call__(self, text: str, instruction: str, target_tokens: int) -> str:
        messages = [
            {
                "role": "system",
                "content": f"{instruction}\nKeep the summary under {target_tokens} tokens.",
            },
            {"role": "user", "content": text},
        ]
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_retries),
                wait=wait_exponential(multiplier=self._backoff, min=0, max=10),
                retry=retry_if_exception_type(Exception),
            ):
                with attempt:
                    return await self._complete(messages, target_tokens)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            logger.warning(
                "summarizer.failed",
                model=self._model,
                attempts=self._max_retries,
                error=str(cause),
            )
            raise SummarizerUnavailableError(
                f"Summarizer {self._model} failed after {self._max_retries} attempts"
            ) from cause
        raise SummarizerUnavailableError(f"Summarizer {self._model} produced no result")

    async def _complete(self, messages: list[dict], target_tokens: int) -> str:
        response = await asyncio.wait_for(
            litellm.acompletion(
                model=self._model,
                messages=messages,
                max_tokens=min(self._max_tokens, max(64, target_tokens)),
                temperature=0.0,
            ),
            timeout=self._timeout,
        )
        content = response.choices[0].message.content
        if not content:
            raise ValueError("empty summary")
        logger.debug("summarizer.completed", model=self._model, target_tokens=target_tokens)
        return content.strip()
