"""Token estimation for messages, tool results, and images.

The default estimator is a character-density heuristic calibrated
against Claude-family tokenization; it never needs network access or a
tokenizer download. ``TiktokenEstimator`` swaps the text estimate for an
exact BPE count while keeping the structural overheads.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any

import structlog
import tiktoken

from src.context_engine.window.schemas import ContextMessage, ImageContent, ToolResult

logger = structlog.get_logger(__name__)

CHARS_PER_TOKEN = 3.5
MESSAGE_OVERHEAD = 4
TOOL_USE_OVERHEAD = 10
TOOL_RESULT_OVERHEAD = 8

IMAGE_TOKENS_SMALL = 85
IMAGE_TOKENS_MEDIUM = 170
IMAGE_TOKENS_LARGE = 340
IMAGE_SMALL_BYTES = 100_000
IMAGE_MEDIUM_BYTES = 500_000

CODE_MULTIPLIER = 1.3
JSON_MULTIPLIER = 1.4
WHITESPACE_DISCOUNT = 0.9
WHITESPACE_RATIO_THRESHOLD = 0.3
SAFETY_MARGIN = 1.05

STANDARD_CONTEXT_SIZE = 200_000
EXTENDED_CONTEXT_SIZE = 1_000_000

RECOMMENDED_RESERVES: dict[str, int] = {
    "chat": 2_000,
    "coding": 8_000,
    "analysis": 4_000,
    "generation": 16_000,
}
DEFAULT_RESERVE = 4_000

MODEL_CONTEXT_SIZES: dict[str, int] = {
    "claude-3-opus": STANDARD_CONTEXT_SIZE,
    "claude-3-sonnet": STANDARD_CONTEXT_SIZE,
    "claude-3-haiku": STANDARD_CONTEXT_SIZE,
    "claude-3.5-sonnet": STANDARD_CONTEXT_SIZE,
    "claude-3.5-haiku": STANDARD_CONTEXT_SIZE,
    "claude-sonnet-4": STANDARD_CONTEXT_SIZE,
    "claude-opus-4": STANDARD_CONTEXT_SIZE,
    "claude-sonnet-4-1m": EXTENDED_CONTEXT_SIZE,
    "claude-opus-4.5-1m": EXTENDED_CONTEXT_SIZE,
}

# (text, expected tokens) pairs used by validate_calibration.
CALIBRATION_SAMPLES: tuple[tuple[str, int], ...] = (
    ("Hello, world!", 4),
    ("The quick brown fox jumps over the lazy dog.", 10),
    (
        "function calculateTotal(items) { return items.reduce((sum, item) => sum + item.price, 0); }",
        32,
    ),
    ('{"name": "John", "age": 30, "city": "New York"}', 18),
)

_CODE_PATTERNS = (
    re.compile(r"```[\s\S]*?```"),
    re.compile(r"\bfunction\s+\w+\s*\("),
    re.compile(r"\bconst\s+\w+\s*="),
    re.compile(r"\bimport\s+.*\s+from\b"),
    re.compile(r"\bclass\s+\w+"),
    re.compile(r"\bdef\s+\w+\s*\("),
)
_PUNCTUATION_RUN = re.compile(r"[!?.,;:]{2,}")
_NUMBER = re.compile(r"\d+")
_NON_ASCII = re.compile(r"[^\x00-\x7f]")
_WHITESPACE = re.compile(r"\s")


class TokenEstimator:
    """Heuristic token estimator.

    Usage:
        estimator = TokenEstimator()
        estimator.estimate_text("Hello, world!")  # 5 (4 plus safety margin)
        estimator.estimate_message(message)
    """

    def estimate_text(self, text: str) -> int:
        """Estimate tokens in a text string. Empty text costs 0."""
        if not text:
            return 0
        return math.ceil(self._estimate_raw(text) * SAFETY_MARGIN)

    def estimate_message(self, message: ContextMessage) -> int:
        """Return the cached count if set, otherwise overhead plus content."""
        if message.tokens is not None:
            return message.tokens
        return MESSAGE_OVERHEAD + self.estimate_content(message.content)

    def estimate_content(self, content: str | list[dict[str, Any]]) -> int:
        if isinstance(content, str):
            return self.estimate_text(content)
        return sum(self._estimate_block(block) for block in content)

    def estimate_tool_result(self, result: ToolResult) -> int:
        return (
            TOOL_RESULT_OVERHEAD
            + self.estimate_text(result.name)
            + self.estimate_content(result.content)
        )

    def estimate_image(self, image: ImageContent) -> int:
        """Bucketed image cost; URL references have unknown size."""
        if image.source_type == "url":
            return IMAGE_TOKENS_MEDIUM
        approx_bytes = len(image.data) * 0.75
        if approx_bytes < IMAGE_SMALL_BYTES:
            return IMAGE_TOKENS_SMALL
        if approx_bytes < IMAGE_MEDIUM_BYTES:
            return IMAGE_TOKENS_MEDIUM
        return IMAGE_TOKENS_LARGE

    def estimate_batch(self, items: list[Any]) -> int:
        """Sum estimates over messages, tool results, and text.

        Accepts model instances, plain strings, or ``{"type": ..., ...}``
        dicts. Never raises: an item that cannot be estimated is logged
        and costed as its string form.
        """
        total = 0
        for item in items:
            try:
                total += self._estimate_item(item)
            except Exception:
                logger.warning(
                    "token_estimator.item_fallback",
                    item_type=type(item).__name__,
                    exc_info=True,
                )
                total += self.estimate_text(str(item))
        return total

    def validate_calibration(self, tolerance: float = 0.2) -> dict[str, Any]:
        """Compare margin-free estimates with known samples.

        Returns:
            Dict with ``accurate`` (all samples within tolerance) and
            per-sample ``results``.
        """
        results = []
        for text, expected in CALIBRATION_SAMPLES:
            estimated = self._estimate_raw(text)
            error = abs(estimated - expected) / expected
            results.append(
                {
                    "text": text,
                    "expected": expected,
                    "estimated": estimated,
                    "error": round(error, 3),
                }
            )
        return {
            "accurate": all(r["error"] <= tolerance for r in results),
            "results": results,
        }

    # ── Internals ─────────────────────────────────────────────────────────

    def _estimate_raw(self, text: str) -> int:
        if not text:
            return 0
        if self._looks_like_json(text):
            multiplier = JSON_MULTIPLIER
        elif self._looks_like_code(text):
            multiplier = CODE_MULTIPLIER
        elif len(_WHITESPACE.findall(text)) / len(text) > WHITESPACE_RATIO_THRESHOLD:
            multiplier = WHITESPACE_DISCOUNT
        else:
            multiplier = 1.0
        tokens = math.ceil(math.ceil(len(text) / CHARS_PER_TOKEN) * multiplier)
        return math.ceil(tokens + self._special_tokens(text))

    def _estimate_item(self, item: Any) -> int:
        if isinstance(item, ContextMessage):
            return self.estimate_message(item)
        if isinstance(item, ToolResult):
            return self.estimate_tool_result(item)
        if isinstance(item, str):
            return self.estimate_text(item)
        if isinstance(item, dict):
            kind = item.get("type")
            if kind == "message":
                return self.estimate_message(ContextMessage.model_validate(item["message"]))
            if kind == "tool_result":
                return self.estimate_tool_result(ToolResult.model_validate(item["result"]))
            if kind == "text":
                return self.estimate_text(str(item.get("text", "")))
        raise TypeError(f"Unsupported batch item: {type(item).__name__}")

    def _estimate_block(self, block: dict[str, Any]) -> int:
        block_type = block.get("type")
        if block_type == "text":
            return self.estimate_text(str(block.get("text", "")))
        if block_type == "image":
            source = block.get("source") or {}
            return self.estimate_image(
                ImageContent(
                    source_type="url" if source.get("type") == "url" else "base64",
                    media_type=source.get("media_type", "image/png"),
                    data=source.get("data") or source.get("url", ""),
                )
            )
        if block_type == "tool_use":
            return TOOL_USE_OVERHEAD + self.estimate_text(
                json.dumps(block.get("input", {}), default=str)
            )
        if block_type == "tool_result":
            return TOOL_RESULT_OVERHEAD + self.estimate_content(block.get("content", ""))
        return self.estimate_text(json.dumps(block, default=str))

    @staticmethod
    def _looks_like_json(text: str) -> bool:
        stripped = text.strip()
        if not stripped or stripped[0] not in "{[":
            return False
        try:
            json.loads(stripped)
        except ValueError:
            return False
        return True

    @staticmethod
    def _looks_like_code(text: str) -> bool:
        return any(pattern.search(text) for pattern in _CODE_PATTERNS)

    @staticmethod
    def _special_tokens(text: str) -> float:
        return (
            text.count("\n") * 0.5
            + len(_PUNCTUATION_RUN.findall(text))
            + len(_NUMBER.findall(text)) * 0.3
            + len(_NON_ASCII.findall(text)) * 0.5
        )


class TiktokenEstimator(TokenEstimator):
    """Estimator using a tiktoken BPE encoding for text.

    cl100k_base works as a reasonable approximation for both Claude and
    GPT models. Structural overheads (per-message, tool, image) are the
    same as the heuristic estimator.
    """

    def __init__(self, encoding_name: str = "cl100k_base", encoding: Any = None) -> None:
        self._encoding = encoding or tiktoken.get_encoding(encoding_name)

    def estimate_text(self, text: str) -> int:
        return self._estimate_raw(text)

    def _estimate_raw(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text))


def get_recommended_reserve(task_type: str) -> int:
    """Response reserve suited to a task type; unknown types get DEFAULT_RESERVE."""
    return RECOMMENDED_RESERVES.get(task_type, DEFAULT_RESERVE)


def get_model_context_size(model: str = "", extended_context: bool = False) -> int:
    """Context window size for a model name.

    Provider prefixes (``anthropic/``) are ignored and dated releases
    match their family by the longest known prefix. Unknown models get
    the standard size; ``extended_context`` always selects the 1M window.
    """
    if extended_context:
        return EXTENDED_CONTEXT_SIZE
    name = model.rsplit("/", 1)[-1].lower()
    if name in MODEL_CONTEXT_SIZES:
        return MODEL_CONTEXT_SIZES[name]
    matches = [known for known in MODEL_CONTEXT_SIZES if name.startswith(known)]
    if matches:
        return MODEL_CONTEXT_SIZES[max(matches, key=len)]
    return STANDARD_CONTEXT_SIZE
