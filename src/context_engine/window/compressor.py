"""Message-set compression strategies.

One async handler per CompressionStrategy, dispatched through a table.
Summary strategies delegate to an injected summarizer and fall back to
truncation when it is missing or fails, so compression never raises for
lack of an LLM.
"""

from __future__ import annotations

import math
import re
from collections.abc import Awaitable, Callable

import structlog
from pydantic import BaseModel, Field

from src.context_engine.observability.metrics import context_summarizer_failures_total
from src.context_engine.window.budget import TokenBudgetTracker
from src.context_engine.window.schemas import (
    CompressionResult,
    CompressionStrategy,
    ContextMessage,
    Lossiness,
    MessagePriority,
    MessageRole,
    new_message_id,
)
from src.context_engine.window.tokens import TokenEstimator
from src.context_engine.window.tool_reducers import ToolReducerRegistry, default_tool_reducers

logger = structlog.get_logger(__name__)

Summarizer = Callable[[str, str, int], Awaitable[str]]

DEFAULT_TARGET_RATIO = 0.5
HIERARCHICAL_CHUNK_SIZE = 20
HIERARCHICAL_OVERSHOOT = 1.2
TOOL_AWARE_HEADROOM = 1.2

DEFAULT_SUMMARY_PROMPT = (
    "Summarize this conversation, preserving key decisions, facts, file "
    "paths, identifiers, errors, and open tasks. Be concise."
)

LOSSINESS: dict[CompressionStrategy, Lossiness] = {
    CompressionStrategy.NONE: "none",
    CompressionStrategy.TRUNCATE: "high",
    CompressionStrategy.MINIFY: "minimal",
    CompressionStrategy.EXTRACT: "moderate",
    CompressionStrategy.SUMMARIZE: "high",
    CompressionStrategy.HIERARCHICAL: "high",
    CompressionStrategy.TOOL_AWARE: "moderate",
}

ESTIMATED_RATIOS: dict[CompressionStrategy, float] = {
    CompressionStrategy.NONE: 1.0,
    CompressionStrategy.MINIFY: 0.85,
    CompressionStrategy.EXTRACT: 0.4,
    CompressionStrategy.SUMMARIZE: 0.3,
    CompressionStrategy.HIERARCHICAL: 0.2,
    CompressionStrategy.TOOL_AWARE: 0.35,
}

_SPACE_RUN = re.compile(r"[ \t]{2,}")
_TRAILING_SPACE = re.compile(r"[ \t]+\n")
_BLANK_RUN = re.compile(r"\n{3,}")
_HEADING = re.compile(r"^\s*#{1,6}\s")
_LIST_ITEM = re.compile(r"^\s*([-*+]|\d+[.)])\s")
_SEVERITY = re.compile(
    r"\b(error|exception|fail(ed|ure)?|warning|critical|fatal|important|note|todo)\b",
    re.IGNORECASE,
)
_CODE_KEYWORD = re.compile(r"\b(def|class|function|return|import|const|let|var|async|await)\b")


class CompressionOptions(BaseModel):
    """Options for a single compress() call."""

    strategy: CompressionStrategy = CompressionStrategy.TRUNCATE
    target_tokens: int | None = None
    target_ratio: float | None = None
    preserve_patterns: list[str] = Field(default_factory=list)
    summary_prompt: str | None = None


class CompressionEstimate(BaseModel):
    strategy: CompressionStrategy
    estimated_tokens: int
    estimated_ratio: float
    lossiness: Lossiness


class ContextCompressor:
    """Applies compression strategies to message lists.

    Usage:
        compressor = ContextCompressor(estimator, summarizer=summarize)
        result = await compressor.compress(
            messages,
            CompressionOptions(strategy=CompressionStrategy.EXTRACT, target_ratio=0.4),
        )
    """

    def __init__(
        self,
        estimator: TokenEstimator | None = None,
        summarizer: Summarizer | None = None,
        tool_reducers: ToolReducerRegistry | None = None,
        compression_threshold: float = 0.7,
    ) -> None:
        self._estimator = estimator or TokenEstimator()
        self._summarizer = summarizer
        self._tool_reducers = tool_reducers or default_tool_reducers()
        self._compression_threshold = compression_threshold
        self._handlers = {
            CompressionStrategy.NONE: self._compress_none,
            CompressionStrategy.TRUNCATE: self._compress_truncate,
            CompressionStrategy.MINIFY: self._compress_minify,
            CompressionStrategy.EXTRACT: self._compress_extract,
            CompressionStrategy.SUMMARIZE: self._compress_summarize,
            CompressionStrategy.HIERARCHICAL: self._compress_hierarchical,
            CompressionStrategy.TOOL_AWARE: self._compress_tool_aware,
        }

    @property
    def has_summarizer(self) -> bool:
        return self._summarizer is not None

    # ── Public API ────────────────────────────────────────────────────────

    async def compress(
        self,
        messages: list[ContextMessage],
        options: CompressionOptions | None = None,
    ) -> CompressionResult:
        """Compress ``messages`` toward the target in ``options``.

        Returns the identity result (strategy NONE) when the input is
        already under target or when a strategy fails to shrink it.
        """
        options = options or CompressionOptions()
        original_tokens = self._total(messages)
        target = self._resolve_target(original_tokens, options)

        if options.strategy == CompressionStrategy.NONE or original_tokens <= target:
            return self._identity(messages, original_tokens)

        handler = self._handlers[options.strategy]
        compressed, strategy = await handler(messages, target, options)
        compressed_tokens = self._total(compressed)

        if compressed_tokens > original_tokens:
            logger.debug(
                "compressor.no_gain",
                strategy=strategy.value,
                original_tokens=original_tokens,
                compressed_tokens=compressed_tokens,
            )
            return self._identity(messages, original_tokens)

        result = CompressionResult(
            original=list(messages),
            compressed=compressed,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            ratio=compressed_tokens / original_tokens if original_tokens else 1.0,
            strategy=strategy,
            lossiness=LOSSINESS[strategy],
        )
        logger.info(
            "compressor.compressed",
            requested=options.strategy.value,
            strategy=strategy.value,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            target_tokens=target,
            message_count=len(messages),
        )
        return result

    def estimate(
        self,
        messages: list[ContextMessage],
        strategy: CompressionStrategy,
        target_ratio: float | None = None,
    ) -> CompressionEstimate:
        """Project the outcome of a strategy without running it."""
        original = self._total(messages)
        effective = strategy
        if strategy in (CompressionStrategy.SUMMARIZE, CompressionStrategy.HIERARCHICAL) and not self.has_summarizer:
            effective = CompressionStrategy.TRUNCATE

        if effective == CompressionStrategy.TRUNCATE:
            ratio = target_ratio or DEFAULT_TARGET_RATIO
        elif effective == CompressionStrategy.SUMMARIZE and target_ratio:
            ratio = target_ratio
        else:
            ratio = ESTIMATED_RATIOS[effective]

        return CompressionEstimate(
            strategy=effective,
            estimated_tokens=math.ceil(original * ratio),
            estimated_ratio=ratio,
            lossiness=LOSSINESS[effective],
        )

    def should_compress(
        self, messages: list[ContextMessage], budget: TokenBudgetTracker
    ) -> bool:
        if budget.max_tokens == 0:
            return self._total(messages) > 0
        return self._total(messages) / budget.max_tokens > self._compression_threshold

    @staticmethod
    def get_recommended_strategy(
        current_tokens: int,
        target_tokens: int,
        summarizer_available: bool,
        has_tool_content: bool = False,
    ) -> CompressionStrategy:
        """Deterministic strategy choice from the required reduction."""
        if current_tokens <= 0 or target_tokens >= current_tokens:
            return CompressionStrategy.NONE

        reduction = 1 - target_tokens / current_tokens
        if reduction <= 0.2:
            return CompressionStrategy.MINIFY
        if has_tool_content and (reduction <= 0.7 or not summarizer_available):
            return CompressionStrategy.TOOL_AWARE
        if reduction <= 0.5:
            return CompressionStrategy.EXTRACT
        if summarizer_available:
            if reduction > 0.75:
                return CompressionStrategy.HIERARCHICAL
            return CompressionStrategy.SUMMARIZE
        return CompressionStrategy.TRUNCATE

    # ── Helpers ───────────────────────────────────────────────────────────

    def _total(self, messages: list[ContextMessage]) -> int:
        return sum(self._estimator.estimate_message(m) for m in messages)

    @staticmethod
    def _resolve_target(original_tokens: int, options: CompressionOptions) -> int:
        if options.target_tokens is not None:
            return max(0, options.target_tokens)
        ratio = options.target_ratio if options.target_ratio is not None else DEFAULT_TARGET_RATIO
        return math.ceil(original_tokens * ratio)

    @staticmethod
    def _identity(messages: list[ContextMessage], tokens: int) -> CompressionResult:
        return CompressionResult(
            original=list(messages),
            compressed=list(messages),
            original_tokens=tokens,
            compressed_tokens=tokens,
            ratio=1.0,
            strategy=CompressionStrategy.NONE,
            lossiness="none",
        )

    @staticmethod
    def _plain_text(message: ContextMessage) -> str | None:
        """Rewritable text: string content or the body of a lone tool_result block."""
        if isinstance(message.content, str):
            return message.content
        if len(message.content) == 1:
            block = message.content[0]
            if block.get("type") == "tool_result" and isinstance(block.get("content"), str):
                return block["content"]
        return None

    def _rewrite(self, message: ContextMessage, text: str, **metadata) -> ContextMessage:
        """Copy of ``message`` with new text, re-estimated, keeping its id."""
        if isinstance(message.content, str):
            content = text
        else:
            content = [{**message.content[0], "content": text}]
        rewritten = message.model_copy(
            update={
                "content": content,
                "tokens": None,
                "metadata": {**message.metadata, **metadata},
            },
            deep=True,
        )
        rewritten.tokens = self._estimator.estimate_message(rewritten)
        if rewritten.tokens > self._estimator.estimate_message(message):
            return message
        return rewritten

    # ── Strategy handlers ─────────────────────────────────────────────────

    async def _compress_none(self, messages, target, options):
        return list(messages), CompressionStrategy.NONE

    async def _compress_truncate(self, messages, target, options):
        ordered = sorted(messages, key=lambda m: m.timestamp)
        total = self._total(ordered)
        while ordered and total > target:
            dropped = ordered.pop(0)
            total -= self._estimator.estimate_message(dropped)
        keep = {m.id for m in ordered}
        return [m for m in messages if m.id in keep], CompressionStrategy.TRUNCATE

    async def _compress_minify(self, messages, target, options):
        patterns = [re.compile(p) for p in options.preserve_patterns]
        result = []
        for message in messages:
            text = self._plain_text(message)
            if text is None:
                result.append(message)
                continue
            minified = self._minify_text(text, patterns)
            if minified == text:
                result.append(message)
            else:
                result.append(self._rewrite(message, minified, minified=True))
        return result, CompressionStrategy.MINIFY

    @staticmethod
    def _minify_text(text: str, patterns: list[re.Pattern]) -> str:
        protected: list[str] = []

        def _protect(match: re.Match) -> str:
            protected.append(match.group(0))
            return f"\x00{len(protected) - 1}\x00"

        for pattern in patterns:
            text = pattern.sub(_protect, text)

        text = _SPACE_RUN.sub(" ", text)
        text = _TRAILING_SPACE.sub("\n", text)
        text = _BLANK_RUN.sub("\n\n", text)
        text = text.strip()

        for index, original in enumerate(protected):
            text = text.replace(f"\x00{index}\x00", original)
        return text

    async def _compress_extract(self, messages, target, options):
        patterns = [re.compile(p) for p in options.preserve_patterns]
        original_total = self._total(messages) or 1
        result = []
        for message in messages:
            tokens = self._estimator.estimate_message(message)
            budget = max(1, math.floor(target * tokens / original_total))
            text = self._plain_text(message)
            if text is None or tokens <= budget:
                result.append(message)
                continue
            extracted = self._extract_text(text, budget, patterns)
            result.append(self._rewrite(message, extracted, extracted=True))
        return result, CompressionStrategy.EXTRACT

    def _score_line(self, line: str, patterns: list[re.Pattern]) -> int:
        if not line.strip():
            return -5
        score = 0
        if _HEADING.match(line):
            score += 10
        if _LIST_ITEM.match(line):
            score += 5
        if _SEVERITY.search(line):
            score += 8
        if _CODE_KEYWORD.search(line):
            score += 6
        if any(p.search(line) for p in patterns):
            score += 20
        if len(line.strip()) < 80:
            score += 2
        return score

    def _extract_text(self, text: str, budget: int, patterns: list[re.Pattern]) -> str:
        lines = text.split("\n")
        ranked = sorted(
            range(len(lines)),
            key=lambda i: self._score_line(lines[i], patterns),
            reverse=True,
        )
        chosen: list[int] = []
        used = 0
        for index in ranked:
            if not lines[index].strip():
                continue
            cost = self._estimator.estimate_text(lines[index]) + 1
            if used + cost > budget:
                continue
            chosen.append(index)
            used += cost

        if not chosen:
            best = next((i for i in ranked if lines[i].strip()), 0)
            max_chars = max(1, int(budget * 3))
            return lines[best][:max_chars].rstrip() + " [...]"
        return "\n".join(lines[i] for i in sorted(chosen))

    async def _summarize_text(self, text: str, target: int, options: CompressionOptions) -> str | None:
        """Run the summarizer; None means unavailable or failed."""
        if self._summarizer is None:
            logger.info("compressor.summarizer_unavailable", fallback="truncate")
            return None
        prompt = options.summary_prompt or DEFAULT_SUMMARY_PROMPT
        try:
            return await self._summarizer(text, prompt, target)
        except Exception as exc:
            context_summarizer_failures_total.inc()
            logger.warning(
                "compressor.summarizer_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                fallback="truncate",
            )
            return None

    def _summary_message(self, summary: str, sources: list[ContextMessage], strategy: CompressionStrategy) -> ContextMessage:
        message = ContextMessage(
            id=new_message_id("summary"),
            role=MessageRole.ASSISTANT,
            content=summary,
            timestamp=max(m.timestamp for m in sources),
            priority=int(MessagePriority.NORMAL),
            compressible=False,
            summarized_from=[m.id for m in sources],
            metadata={"summary": True, "strategy": strategy.value},
        )
        message.tokens = self._estimator.estimate_message(message)
        return message

    @staticmethod
    def _transcript(messages: list[ContextMessage]) -> str:
        return "\n\n".join(f"[{m.role.value}]: {m.text()}" for m in messages)

    async def _compress_summarize(self, messages, target, options):
        summary = await self._summarize_text(self._transcript(messages), target, options)
        if summary is None:
            return await self._compress_truncate(messages, target, options)
        return [self._summary_message(summary, messages, CompressionStrategy.SUMMARIZE)], CompressionStrategy.SUMMARIZE

    async def _compress_hierarchical(self, messages, target, options):
        """Summarize in chunks, then summarize the summaries until they fit.

        Every summary records the original messages it covers, whatever
        level it was produced at.
        """
        level: list[ContextMessage] = list(messages)
        covered: list[list[ContextMessage]] = [[m] for m in messages]
        while True:
            starts = range(0, len(level), HIERARCHICAL_CHUNK_SIZE)
            per_chunk = max(1, target // len(starts))
            summaries: list[ContextMessage] = []
            summary_sources: list[list[ContextMessage]] = []
            for start in starts:
                chunk = level[start : start + HIERARCHICAL_CHUNK_SIZE]
                originals = [
                    m for group in covered[start : start + HIERARCHICAL_CHUNK_SIZE] for m in group
                ]
                text = await self._summarize_text(self._transcript(chunk), per_chunk, options)
                if text is None:
                    return await self._compress_truncate(messages, target, options)
                summaries.append(
                    self._summary_message(text, originals, CompressionStrategy.HIERARCHICAL)
                )
                summary_sources.append(originals)

            level, covered = summaries, summary_sources
            if len(level) == 1 or self._total(level) <= target * HIERARCHICAL_OVERSHOOT:
                return level, CompressionStrategy.HIERARCHICAL

    async def _compress_tool_aware(self, messages, target, options):
        per_message = max(1, math.floor(target / max(1, len(messages)) * TOOL_AWARE_HEADROOM))
        patterns = [re.compile(p) for p in options.preserve_patterns]
        result = []
        for message in messages:
            tokens = self._estimator.estimate_message(message)
            text = self._plain_text(message)
            if tokens <= per_message or text is None:
                result.append(message)
                continue
            tool_name = message.metadata.get("tool_name")
            reducer = self._tool_reducers.get(tool_name)
            if reducer is not None:
                reduction = reducer(text, per_message, self._estimator)
                result.append(
                    self._rewrite(
                        message,
                        reduction.content,
                        reduced_by=str(tool_name).lower(),
                        preserved_fields=reduction.preserved,
                    )
                )
            else:
                extracted = self._extract_text(text, per_message, patterns)
                result.append(self._rewrite(message, extracted, extracted=True))
        return result, CompressionStrategy.TOOL_AWARE
