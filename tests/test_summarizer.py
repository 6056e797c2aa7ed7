"""LLM summarizer tests.

Uses mocks for LiteLLM calls to avoid API costs in tests.

Tests cover:
- Request shape: model, prompt, capped max_tokens, deterministic temperature
- Retries on transient errors and empty completions
- Timeout and exhausted retries raise SummarizerUnavailableError
- from_settings returns None without a configured model
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.context_engine.config import ContextEngineSettings
from src.context_engine.errors import SummarizerUnavailableError
from src.context_engine.services.summarizer import LLMSummarizer

ACOMPLETION = "src.context_engine.services.summarizer.litellm.acompletion"


def _make_response(content: str | None) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


def _make_summarizer(**overrides) -> LLMSummarizer:
    options = {"max_retries": 3, "backoff_multiplier": 0}
    options.update(overrides)
    return LLMSummarizer("test/model", **options)


# ── Call Tests ───────────────────────────────────────────────────────────────


class TestSummarizerCall:
    """Tests for LLMSummarizer.__call__."""

    @pytest.mark.asyncio
    async def test_returns_stripped_summary(self):
        """The completion text is returned without surrounding whitespace."""
        mock_completion = AsyncMock(return_value=_make_response("  short summary \n"))
        with patch(ACOMPLETION, mock_completion):
            summary = await _make_summarizer()("long text", "Summarize.", 200)

        assert summary == "short summary"
        kwargs = mock_completion.await_args.kwargs
        assert kwargs["model"] == "test/model"
        assert kwargs["temperature"] == 0.0
        assert kwargs["max_tokens"] == 200
        assert kwargs["messages"][0]["role"] == "system"
        assert "under 200 tokens" in kwargs["messages"][0]["content"]
        assert kwargs["messages"][1] == {"role": "user", "content": "long text"}

    @pytest.mark.asyncio
    async def test_max_tokens_bounds(self):
        """Output length is floored at 64 and capped by max_tokens."""
        mock_completion = AsyncMock(return_value=_make_response("ok"))
        with patch(ACOMPLETION, mock_completion):
            await _make_summarizer(max_tokens=500)("text", "Summarize.", 10)
            assert mock_completion.await_args.kwargs["max_tokens"] == 64
            await _make_summarizer(max_tokens=500)("text", "Summarize.", 10_000)
            assert mock_completion.await_args.kwargs["max_tokens"] == 500

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        """A failure followed by success yields the summary."""
        mock_completion = AsyncMock(
            side_effect=[RuntimeError("rate limited"), _make_response("recovered")]
        )
        with patch(ACOMPLETION, mock_completion):
            summary = await _make_summarizer()("text", "Summarize.", 100)

        assert summary == "recovered"
        assert mock_completion.await_count == 2

    @pytest.mark.asyncio
    async def test_empty_completion_retried(self):
        """Empty completions count as failures."""
        mock_completion = AsyncMock(return_value=_make_response(""))
        with patch(ACOMPLETION, mock_completion):
            with pytest.raises(SummarizerUnavailableError):
                await _make_summarizer(max_retries=2)("text", "Summarize.", 100)
        assert mock_completion.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries(self):
        """Persistent errors raise SummarizerUnavailableError with the cause."""
        mock_completion = AsyncMock(side_effect=RuntimeError("provider down"))
        with patch(ACOMPLETION, mock_completion):
            with pytest.raises(SummarizerUnavailableError) as exc_info:
                await _make_summarizer()("text", "Summarize.", 100)

        assert mock_completion.await_count == 3
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Calls exceeding the timeout fail closed."""

        async def slow_completion(**kwargs):
            await asyncio.sleep(1)
            return _make_response("too late")

        with patch(ACOMPLETION, slow_completion):
            with pytest.raises(SummarizerUnavailableError):
                await _make_summarizer(timeout_seconds=0.01, max_retries=1)(
                    "text", "Summarize.", 100
                )


# ── Construction Tests ───────────────────────────────────────────────────────


class TestSummarizerConstruction:
    """Tests for constructors."""

    def test_model_required(self):
        """An empty model name is rejected."""
        with pytest.raises(ValueError):
            LLMSummarizer("")

    def test_from_settings_disabled(self):
        """No configured model means no summarizer."""
        assert LLMSummarizer.from_settings(ContextEngineSettings(summarizer_model="")) is None

    def test_from_settings_enabled(self):
        """A configured model builds a summarizer."""
        summarizer = LLMSummarizer.from_settings(
            ContextEngineSettings(summarizer_model="anthropic/claude-3-5-haiku-20241022")
        )
        assert isinstance(summarizer, LLMSummarizer)
