"""Unit tests for token estimation.

Tests cover:
- Empty text and basic heuristic estimates
- Code and JSON density multipliers
- Cached message tokens are authoritative
- Content-block, tool-result, and bucketed image estimates
- estimate_batch dispatch and never-raise fallback
- Calibration samples, TiktokenEstimator, reserve and context-size helpers
"""

from __future__ import annotations

from unittest.mock import MagicMock

from src.context_engine.window.schemas import (
    ContextMessage,
    ImageContent,
    MessageRole,
    ToolResult,
    create_message,
)
from src.context_engine.window.tokens import (
    IMAGE_TOKENS_LARGE,
    IMAGE_TOKENS_MEDIUM,
    IMAGE_TOKENS_SMALL,
    MESSAGE_OVERHEAD,
    TOOL_RESULT_OVERHEAD,
    TiktokenEstimator,
    TokenEstimator,
    get_model_context_size,
    get_recommended_reserve,
)


# ── Text Estimation ─────────────────────────────────────────────────────────


class TestEstimateText:
    """Tests for the character-density heuristic."""

    def test_empty_text_is_zero(self, estimator):
        """Empty text costs nothing."""
        assert estimator.estimate_text("") == 0

    def test_short_greeting(self, estimator):
        """Four raw tokens plus the safety margin rounds up to five."""
        assert estimator.estimate_text("Hello, world!") == 5

    def test_longer_text_costs_more(self, estimator):
        """Estimates grow with text length."""
        short = estimator.estimate_text("word " * 10)
        long = estimator.estimate_text("word " * 100)
        assert long > short > 0

    def test_code_is_denser_than_prose(self, estimator):
        """Code gets a higher per-character multiplier than prose of the same length."""
        code = "const total = items.map(x => x.price);"
        prose = "a" * len(code)
        assert estimator.estimate_text(code) > estimator.estimate_text(prose)

    def test_json_is_denser_than_prose(self, estimator):
        """JSON gets the highest multiplier."""
        payload = '{"name": "John", "age": 30, "city": "New York"}'
        prose = "b" * len(payload)
        assert estimator.estimate_text(payload) > estimator.estimate_text(prose)

    def test_non_ascii_adds_tokens(self, estimator):
        """Non-ASCII characters cost extra."""
        assert estimator.estimate_text("ééééé") > estimator.estimate_text("eeeee")


# ── Message Estimation ──────────────────────────────────────────────────────


class TestEstimateMessage:
    """Tests for per-message estimates."""

    def test_cached_tokens_returned_verbatim(self, estimator):
        """A message with tokens set is never recomputed."""
        message = create_message("user", "x" * 10_000, tokens=7)
        assert estimator.estimate_message(message) == 7

    def test_overhead_added_for_uncached(self, estimator):
        """Uncached messages cost overhead plus content."""
        message = create_message("user", "Hello, world!")
        assert estimator.estimate_message(message) == MESSAGE_OVERHEAD + 5

    def test_content_blocks_summed(self, estimator):
        """Text and tool_use blocks are each estimated."""
        message = create_message(
            "assistant",
            [
                {"type": "text", "text": "Running the tests now."},
                {"type": "tool_use", "id": "t1", "name": "bash", "input": {"command": "pytest"}},
            ],
        )
        text_only = estimator.estimate_text("Running the tests now.")
        assert estimator.estimate_message(message) > MESSAGE_OVERHEAD + text_only

    def test_tool_result(self, estimator):
        """Tool results cost overhead plus name and content."""
        result = ToolResult(tool_use_id="t1", name="grep", content="src/a.py:1:import os")
        expected = (
            TOOL_RESULT_OVERHEAD
            + estimator.estimate_text("grep")
            + estimator.estimate_text("src/a.py:1:import os")
        )
        assert estimator.estimate_tool_result(result) == expected


# ── Image Estimation ────────────────────────────────────────────────────────


class TestEstimateImage:
    """Tests for bucketed image costs."""

    def test_small_image(self, estimator):
        """Payloads under ~100KB decoded are small."""
        assert estimator.estimate_image(ImageContent(data="A" * 1000)) == IMAGE_TOKENS_SMALL

    def test_medium_image(self, estimator):
        """Payloads between ~100KB and ~500KB decoded are medium."""
        assert estimator.estimate_image(ImageContent(data="A" * 200_000)) == IMAGE_TOKENS_MEDIUM

    def test_large_image(self, estimator):
        """Payloads over ~500KB decoded are large."""
        assert estimator.estimate_image(ImageContent(data="A" * 800_000)) == IMAGE_TOKENS_LARGE

    def test_url_defaults_to_medium(self, estimator):
        """URL references have unknown size and cost the medium bucket."""
        image = ImageContent(source_type="url", data="https://example.com/a.png")
        assert estimator.estimate_image(image) == IMAGE_TOKENS_MEDIUM

    def test_image_block_in_message(self, estimator):
        """Image blocks inside messages use the bucketed cost."""
        message = create_message(
            "user",
            [{"type": "image", "source": {"type": "url", "url": "https://example.com/x.png"}}],
        )
        assert estimator.estimate_message(message) == MESSAGE_OVERHEAD + IMAGE_TOKENS_MEDIUM


# ── Batch Estimation ────────────────────────────────────────────────────────


class TestEstimateBatch:
    """Tests for mixed-variant batch estimation."""

    def test_mixed_variants_summed(self, estimator):
        """Messages, tool results, and text are dispatched and summed."""
        message = create_message("user", "hi", tokens=10)
        result = ToolResult(tool_use_id="t", name="read", content="abc")
        total = estimator.estimate_batch([message, result, "Hello, world!"])
        assert total == 10 + estimator.estimate_tool_result(result) + 5

    def test_dict_variants(self, estimator):
        """Tagged dict variants are accepted."""
        items = [
            {"type": "text", "text": "Hello, world!"},
            {"type": "message", "message": {"role": "user", "content": "x", "tokens": 3}},
        ]
        assert estimator.estimate_batch(items) == 5 + 3

    def test_never_raises_on_bad_items(self, estimator):
        """Unsupported items fall back to their string form."""
        total = estimator.estimate_batch([object(), {"type": "message", "message": {}}])
        assert total > 0


# ── Calibration and Helpers ─────────────────────────────────────────────────


class TestCalibrationAndHelpers:
    """Tests for calibration, tiktoken, and sizing helpers."""

    def test_calibration_report(self, estimator):
        """Margin-free estimates are compared against every sample."""
        report = estimator.validate_calibration()
        estimated = [r["estimated"] for r in report["results"]]
        assert estimated == [4, 13, 35, 21]
        assert [r["expected"] for r in report["results"]] == [4, 10, 32, 18]

    def test_calibration_flags_prose_overestimate(self, estimator):
        """Plain prose overshoots by 30% at 3.5 chars per token."""
        report = estimator.validate_calibration()
        assert report["accurate"] is False
        outside = [r["expected"] for r in report["results"] if r["error"] > 0.2]
        assert outside == [10]
        assert estimator.validate_calibration(tolerance=0.35)["accurate"] is True

    def test_tiktoken_estimator_uses_encoding(self):
        """TiktokenEstimator counts encoded tokens exactly."""
        encoding = MagicMock()
        encoding.encode.return_value = [1, 2, 3]
        tiktoken_estimator = TiktokenEstimator(encoding=encoding)
        assert tiktoken_estimator.estimate_text("anything") == 3
        assert tiktoken_estimator.estimate_text("") == 0
        message = ContextMessage(role=MessageRole.USER, content="hi")
        assert tiktoken_estimator.estimate_message(message) == MESSAGE_OVERHEAD + 3

    def test_recommended_reserves(self):
        """Task types map to response reserves."""
        assert get_recommended_reserve("chat") == 2_000
        assert get_recommended_reserve("coding") == 8_000
        assert get_recommended_reserve("analysis") == 4_000
        assert get_recommended_reserve("generation") == 16_000
        assert get_recommended_reserve("unknown") == 4_000

    def test_model_context_size(self):
        """Standard and extended context sizes."""
        assert get_model_context_size("claude-sonnet") == 200_000
        assert get_model_context_size("claude-sonnet", extended_context=True) == 1_000_000

    def test_model_context_size_lookup(self):
        """Known model names resolve through the size table."""
        assert get_model_context_size("claude-sonnet-4-1m") == 1_000_000
        assert get_model_context_size("anthropic/claude-opus-4.5-1m") == 1_000_000
        assert get_model_context_size("claude-3-opus-20240229") == 200_000
        assert get_model_context_size("claude-sonnet-4-1m-20250514") == 1_000_000
        assert get_model_context_size("some-other-model") == 200_000

    def test_default_estimator_is_heuristic(self):
        """The default estimator needs no tokenizer."""
        assert not isinstance(TokenEstimator(), TiktokenEstimator)
