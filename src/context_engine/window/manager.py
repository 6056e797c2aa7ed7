"""Per-session context manager.

Composes the estimator, budget tracker, tiered memory, compressor, and
allocator into one API. Every collaborator is passed in or built per
instance, so independent managers coexist in one process.

Callers serialize mutating calls on a given instance (await each
add/compact/prepare before issuing the next). Reads are synchronous and
safe from event handlers.
"""

from __future__ import annotations

import copy
import math
import time
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.context_engine.config import ContextEngineSettings
from src.context_engine.observability.metrics import (
    context_messages_added_total,
    record_compression,
    record_eviction,
    record_utilization,
)
from src.context_engine.window.allocator import AllocationRequest, ContextAllocator
from src.context_engine.window.budget import TokenBudgetTracker
from src.context_engine.window.compressor import (
    CompressionOptions,
    ContextCompressor,
    Summarizer,
)
from src.context_engine.window.events import (
    ContextEvent,
    ContextEventType,
    EventEmitter,
    EventHandler,
)
from src.context_engine.window.memory import TieredMemory
from src.context_engine.window.schemas import (
    CompressionRecord,
    CompressionResult,
    CompressionStrategy,
    ContextMessage,
    MemoryTier,
    MessageContent,
    MessagePriority,
    MessageRole,
    PriorityRules,
    TieredMemoryConfig,
    ToolResult,
    create_message,
    new_message_id,
)
from src.context_engine.window.tokens import TokenEstimator

logger = structlog.get_logger(__name__)

COMPACTION_TIERS: tuple[MemoryTier, ...] = (MemoryTier.ARCHIVED, MemoryTier.EPHEMERAL)
STABLE_PREFIX_TIERS = frozenset({MemoryTier.SYSTEM, MemoryTier.TOOLS})


class ContextManagerConfig(BaseModel):
    """Per-manager configuration."""

    max_tokens: int = 200_000
    response_reserve: int = 4_000
    tool_reserve: int = 2_000
    enable_caching: bool = True
    compression_threshold: float = 0.7
    eviction_threshold: float = 0.9
    budget_warning_ratio: float = 0.7
    budget_critical_ratio: float = 0.9
    recent_turns_count: int = 10
    preserve_recent_messages: int = 4
    allocation_profile: str = "default"
    memory: TieredMemoryConfig = Field(default_factory=TieredMemoryConfig)
    priority_rules: PriorityRules = Field(default_factory=PriorityRules)

    @classmethod
    def from_settings(cls, settings: ContextEngineSettings, **overrides: Any) -> "ContextManagerConfig":
        values: dict[str, Any] = {
            "max_tokens": settings.max_tokens,
            "response_reserve": settings.response_reserve,
            "tool_reserve": settings.tool_reserve,
            "enable_caching": settings.enable_caching,
            "compression_threshold": settings.compression_threshold,
            "eviction_threshold": settings.eviction_threshold,
            "budget_warning_ratio": settings.budget_warning_ratio,
            "budget_critical_ratio": settings.budget_critical_ratio,
            "recent_turns_count": settings.recent_turns_count,
            "preserve_recent_messages": settings.preserve_recent_messages,
            "allocation_profile": settings.allocation_profile,
        }
        values.update(overrides)
        return cls(**values)


class PrepareOptions(BaseModel):
    force_compression: bool = False
    additional_reserve: int = 0
    include_system: bool = True
    max_messages: int | None = None


class PreparedRequest(BaseModel):
    messages: list[ContextMessage]
    total_tokens: int
    response_tokens: int
    was_compressed: bool
    cache_breakpoints: list[int] = Field(default_factory=list)


class RemovalRecord(BaseModel):
    """A message that left the window through eviction or compression."""

    timestamp: float
    message_id: str
    tier: MemoryTier
    tokens: int


class ContextStats(BaseModel):
    total_messages: int
    total_tokens: int
    messages_by_tier: dict[MemoryTier, int]
    tokens_by_tier: dict[MemoryTier, int]
    messages_by_role: dict[MessageRole, int]
    compression_count: int
    eviction_count: int
    average_message_tokens: float
    utilization: float
    oldest_timestamp: float | None = None
    newest_timestamp: float | None = None


class ContextManager:
    """Facade over one conversation's context window.

    Usage:
        manager = ContextManager(ContextManagerConfig(max_tokens=100_000))
        await manager.add_system_message("You are a helpful assistant.")
        await manager.add_user_message("Hello")
        request = await manager.prepare_for_request()
        payload = manager.to_api_format()
    """

    def __init__(
        self,
        config: ContextManagerConfig | None = None,
        *,
        estimator: TokenEstimator | None = None,
        compressor: ContextCompressor | None = None,
        allocator: ContextAllocator | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        self._config = config or ContextManagerConfig()
        self._estimator = estimator or TokenEstimator()
        self._memory = TieredMemory(
            self._estimator, self._config.memory, self._config.priority_rules
        )
        self._budget = TokenBudgetTracker(self._config.max_tokens)
        self._compressor = compressor or ContextCompressor(
            self._estimator,
            summarizer=summarizer,
            compression_threshold=self._config.compression_threshold,
        )
        self._allocator = allocator or ContextAllocator(
            self._config.allocation_profile,
            tier_configs=self._config.memory.tiers,
            estimator=self._estimator,
        )
        self._events = EventEmitter()

        self._compression_history: list[CompressionRecord] = []
        self._removals: list[RemovalRecord] = []
        self._inserted_at: dict[str, float] = {}
        self._retired_ids: set[str] = set()
        self._request_reservations: list[str] = []
        self._eviction_count = 0
        self._last_clock = 0.0
        self.created_at = time.time()

    # ── Accessors ─────────────────────────────────────────────────────────

    @property
    def config(self) -> ContextManagerConfig:
        return self._config

    @property
    def memory(self) -> TieredMemory:
        return self._memory

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    def get_budget(self) -> TokenBudgetTracker:
        return self._budget

    def get_budget_breakdown(self) -> dict:
        return self._budget.get_breakdown()

    def on(self, handler: EventHandler) -> Callable[[], None]:
        """Register an event handler; returns an unsubscribe callable."""
        return self._events.on(handler)

    def _clock(self) -> float:
        """Strictly increasing wall-clock timestamp for this instance."""
        self._last_clock = max(time.time(), self._last_clock + 1e-6)
        return self._last_clock

    # ── Adding messages ───────────────────────────────────────────────────

    async def add_message(
        self,
        message: ContextMessage,
        *,
        priority: int | None = None,
        tier: MemoryTier | None = None,
        metadata: dict[str, Any] | None = None,
        skip_compression: bool = False,
    ) -> ContextMessage:
        """Admit a message, update the budget, and relieve pressure.

        Args:
            message: Message to add; a copy is stored.
            priority: Explicit priority; computed from rules when omitted.
            tier: Tier override; the natural tier is used when omitted.
            metadata: Extra metadata merged into the stored copy.
            skip_compression: Suppress the compaction/eviction check.

        Returns:
            The stored message, with id, tokens, and priority filled in.
        """
        stored = message.model_copy(deep=True)
        if metadata:
            stored.metadata.update(metadata)
        if priority is not None:
            stored.priority = priority

        placed = self._admit(stored, tier)
        if not skip_compression:
            await self._relieve_pressure(placed)
        return stored

    def insert_message(
        self, message: ContextMessage, tier: MemoryTier | None = None
    ) -> ContextMessage:
        """Admit a message synchronously with compaction suppressed."""
        stored = message.model_copy(deep=True)
        self._admit(stored, tier)
        return stored

    async def add_user_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ) -> ContextMessage:
        return await self.add_message(
            create_message(MessageRole.USER, content, metadata=metadata, timestamp=self._clock())
        )

    async def add_assistant_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ) -> ContextMessage:
        return await self.add_message(
            create_message(MessageRole.ASSISTANT, content, metadata=metadata, timestamp=self._clock())
        )

    async def add_system_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ) -> ContextMessage:
        return await self.add_message(
            create_message(
                MessageRole.SYSTEM,
                content,
                compressible=False,
                metadata=metadata,
                timestamp=self._clock(),
            )
        )

    async def add_tool_result(
        self, result: ToolResult, metadata: dict[str, Any] | None = None
    ) -> ContextMessage:
        """Add a tool result as a TOOLS-tier message tagged with its tool name."""
        message = create_message(
            MessageRole.TOOL,
            [
                {
                    "type": "tool_result",
                    "tool_use_id": result.tool_use_id,
                    "content": result.content,
                    "is_error": result.is_error,
                }
            ],
            metadata={
                **(metadata or {}),
                "tool_name": result.name,
                "tool_use_id": result.tool_use_id,
                "is_error": result.is_error,
            },
            timestamp=self._clock(),
        )
        message.tokens = self._estimator.estimate_tool_result(result) + 4
        return await self.add_message(message, tier=MemoryTier.TOOLS)

    async def add_resource(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ) -> ContextMessage:
        """Add reference material (file contents, docs) to the RESOURCES tier."""
        return await self.add_message(
            create_message(MessageRole.USER, content, metadata=metadata, timestamp=self._clock()),
            tier=MemoryTier.RESOURCES,
        )

    async def add_ephemeral_message(
        self,
        content: MessageContent,
        role: MessageRole = MessageRole.USER,
        metadata: dict[str, Any] | None = None,
    ) -> ContextMessage:
        return await self.add_message(
            create_message(role, content, metadata=metadata, timestamp=self._clock()),
            priority=int(MessagePriority.EPHEMERAL),
            tier=MemoryTier.EPHEMERAL,
        )

    def _admit(self, message: ContextMessage, tier: MemoryTier | None) -> MemoryTier:
        if message.id in self._retired_ids or self._memory.get_message(message.id) is not None:
            fresh = new_message_id()
            logger.warning("context.message_reidentified", old_id=message.id, new_id=fresh)
            message.id = fresh

        placed = self._memory.add_message(message, tier)
        self._inserted_at[message.id] = self._clock()

        tokens = message.tokens or 0
        if not self._budget.allocate(placed.value, tokens):
            self._budget.commit(placed.value, tokens)
            logger.warning(
                "context.budget_overcommitted",
                tier=placed.value,
                tokens=tokens,
                used=self._budget.used_tokens,
                max_tokens=self._budget.max_tokens,
            )

        context_messages_added_total.labels(tier=placed.value).inc()
        self._emit(ContextEventType.MESSAGE_ADDED, messages=[message], tier=placed)
        return placed

    # ── Reads ─────────────────────────────────────────────────────────────

    def get_messages(self) -> list[ContextMessage]:
        return self._memory.get_all_messages()

    def get_messages_by_role(self, role: MessageRole) -> list[ContextMessage]:
        return [m for m in self._memory.get_all_messages() if m.role == role]

    def get_message(self, message_id: str) -> ContextMessage | None:
        return self._memory.get_message(message_id)

    def get_message_count(self) -> int:
        return self._memory.get_message_count()

    def get_compression_history(self) -> list[CompressionRecord]:
        return list(self._compression_history)

    def load_compression_history(self, records: list[CompressionRecord]) -> None:
        """Replace the compression history (used when restoring a session)."""
        self._compression_history = [r.model_copy(deep=True) for r in records]

    def inserted_since(self, timestamp: float) -> list[tuple[MemoryTier, ContextMessage]]:
        """Messages admitted or rewritten after ``timestamp``, with their tier."""
        result = []
        for message in self._memory.get_all_messages():
            if self._inserted_at.get(message.id, 0.0) > timestamp:
                result.append((self._memory.get_tier_of(message.id), message))
        return result

    def removed_since(self, timestamp: float) -> list[RemovalRecord]:
        return [r for r in self._removals if r.timestamp > timestamp]

    def mark_persisted(self) -> None:
        """Treat the current window as saved; later checkpoints carry only newer changes."""
        self._inserted_at = {message_id: 0.0 for message_id in self._inserted_at}
        self._removals = []

    def should_compress(self) -> bool:
        return self._budget.utilization_ratio() > self._config.compression_threshold

    def should_evict(self) -> bool:
        return self._budget.utilization_ratio() > self._config.eviction_threshold

    def to_api_format(self) -> list[dict[str, Any]]:
        """Role/content pairs in window order, without provider-specific framing."""
        return [
            {"role": m.role.value, "content": copy.deepcopy(m.content)}
            for m in self._memory.get_all_messages()
        ]

    def get_stats(self) -> ContextStats:
        messages = self._memory.get_all_messages()
        by_role: dict[MessageRole, int] = {role: 0 for role in MessageRole}
        for message in messages:
            by_role[message.role] += 1
        total_tokens = self._memory.get_total_tokens()
        return ContextStats(
            total_messages=len(messages),
            total_tokens=total_tokens,
            messages_by_tier={t: self._memory.get_message_count(t) for t in MemoryTier},
            tokens_by_tier={t: self._memory.get_tier_tokens(t) for t in MemoryTier},
            messages_by_role=by_role,
            compression_count=len(self._compression_history),
            eviction_count=self._eviction_count,
            average_message_tokens=total_tokens / len(messages) if messages else 0.0,
            utilization=self._budget.utilization_ratio(),
            oldest_timestamp=messages[0].timestamp if messages else None,
            newest_timestamp=messages[-1].timestamp if messages else None,
        )

    # ── Pressure handling ─────────────────────────────────────────────────

    async def _relieve_pressure(self, placed: MemoryTier) -> None:
        utilization = self._budget.utilization_ratio()
        record_utilization(utilization)
        if utilization > self._config.budget_critical_ratio:
            self._emit(ContextEventType.BUDGET_CRITICAL, utilization=utilization)
        elif utilization > self._config.budget_warning_ratio:
            self._emit(ContextEventType.BUDGET_WARNING, utilization=utilization)

        if self._memory.is_tier_over_limit(placed):
            self._emit(
                ContextEventType.TIER_OVERFLOW,
                tier=placed,
                overflow=self._memory.get_tier_overflow(placed),
            )

        self._age_recent()

        if self.should_compress():
            await self.compact()
        if self.should_evict():
            await self._enforce_budget()

    def _age_recent(self) -> None:
        """Keep RECENT bounded to the configured number of turns."""
        limit = self._config.recent_turns_count * 2
        excess = self._memory.get_message_count(MemoryTier.RECENT) - limit
        if excess > 0:
            self._demote(excess)

    def _demote(self, count: int) -> None:
        moved = self._memory.demote_to_archived(count)
        tokens = sum(m.tokens or 0 for m in moved)
        self._budget.deallocate(MemoryTier.RECENT.value, tokens)
        self._budget.commit(MemoryTier.ARCHIVED.value, tokens)

    async def compact(self, target_ratio: float | None = None) -> list[CompressionRecord]:
        """Compress ARCHIVED, then EPHEMERAL, with the recommended strategy.

        Under budget pressure, RECENT messages older than the newest
        ``preserve_recent_messages`` are demoted to ARCHIVED first.

        Args:
            target_ratio: Per-tier target as a fraction of current tokens;
                defaults to each tier's configured compression_target.

        Returns:
            Records of the compression passes applied.
        """
        if self.should_compress():
            excess = (
                self._memory.get_message_count(MemoryTier.RECENT)
                - self._config.preserve_recent_messages
            )
            if excess > 0:
                self._demote(excess)

        records: list[CompressionRecord] = []
        for tier in COMPACTION_TIERS:
            tier_config = self._memory.tier_config(tier)
            if not tier_config.compressible:
                continue
            candidates = [m for m in self._memory.get_messages(tier) if m.compressible]
            if not candidates:
                continue

            ratio = target_ratio if target_ratio is not None else tier_config.compression_target
            record = await self._compress_group(tier, candidates, ratio)
            if record is not None:
                records.append(record)
        return records

    async def _compress_group(
        self, tier: MemoryTier, candidates: list[ContextMessage], ratio: float
    ) -> CompressionRecord | None:
        current = sum(m.tokens or 0 for m in candidates)
        target = math.ceil(current * ratio)
        has_tool_content = any(
            m.role == MessageRole.TOOL or "tool_name" in m.metadata for m in candidates
        )
        strategy = self._compressor.get_recommended_strategy(
            current, target, self._compressor.has_summarizer, has_tool_content
        )
        if strategy == CompressionStrategy.NONE:
            return None

        self._emit(ContextEventType.COMPRESSION_STARTED, messages=candidates, tier=tier)
        result = await self._compressor.compress(
            candidates, CompressionOptions(strategy=strategy, target_tokens=target)
        )
        record = self._apply_compression(tier, result)
        self._emit(
            ContextEventType.COMPRESSION_COMPLETED,
            messages=result.compressed,
            tier=tier,
            record=record,
        )
        return record

    def _apply_compression(
        self, tier: MemoryTier, result: CompressionResult
    ) -> CompressionRecord | None:
        if result.strategy == CompressionStrategy.NONE:
            return None

        before = self._memory.get_tier_tokens(tier)
        original_by_id = {m.id: m for m in result.original}
        self._memory.replace_messages(tier, list(original_by_id), result.compressed)
        after = self._memory.get_tier_tokens(tier)
        self._budget.deallocate(tier.value, before)
        self._budget.commit(tier.value, after)

        now = self._clock()
        surviving = {m.id for m in result.compressed}
        removed = [m for m in result.original if m.id not in surviving]
        for message in removed:
            self._retire(message, tier, now)
        produced = []
        for message in result.compressed:
            if original_by_id.get(message.id) is not message:
                self._inserted_at[message.id] = now
                if message.id not in original_by_id:
                    produced.append(message.id)

        record = CompressionRecord(
            timestamp=now,
            tier=tier,
            strategy=result.strategy,
            lossiness=result.lossiness,
            original_tokens=result.original_tokens,
            compressed_tokens=result.compressed_tokens,
            ratio=result.ratio,
            removed_ids=[m.id for m in removed],
            produced_ids=produced,
        )
        self._compression_history.append(record)
        record_compression(result.strategy.value, result.ratio)
        logger.info(
            "context.compacted",
            tier=tier.value,
            strategy=result.strategy.value,
            original_tokens=result.original_tokens,
            compressed_tokens=result.compressed_tokens,
            removed=len(removed),
        )
        return record

    async def _enforce_budget(self) -> None:
        evicted = self._memory.evict(MemoryTier.EPHEMERAL, 0)
        self._after_eviction(MemoryTier.EPHEMERAL, evicted)
        if not self.should_evict():
            return

        plan = self._allocator.allocate(
            AllocationRequest(
                total_budget=int(self._budget.max_tokens * self._config.eviction_threshold),
                current_content=self._memory.snapshot(),
                reservations=self._budget.reservations,
            )
        )

        for tier, messages in self._group_by_tier(plan.to_compress).items():
            ratio = self._memory.tier_config(tier).compression_target
            await self._compress_group(tier, messages, ratio)

        for tier, messages in self._group_by_tier(plan.to_evict).items():
            removed = self._memory.remove_messages(
                tier, [m.id for m in messages], respect_floor=True
            )
            self._after_eviction(tier, removed)

        if not plan.success:
            logger.warning("context.system_overflow", overflow=plan.overflow)
            self._emit(
                ContextEventType.TIER_OVERFLOW,
                tier=MemoryTier.SYSTEM,
                overflow=plan.overflow,
            )

    def _group_by_tier(
        self, messages: list[ContextMessage]
    ) -> dict[MemoryTier, list[ContextMessage]]:
        grouped: dict[MemoryTier, list[ContextMessage]] = {}
        for message in messages:
            tier = self._memory.get_tier_of(message.id)
            if tier is None or tier == MemoryTier.SYSTEM:
                continue
            grouped.setdefault(tier, []).append(message)
        return grouped

    def _after_eviction(self, tier: MemoryTier, evicted: list[ContextMessage]) -> None:
        if not evicted:
            return
        self._budget.deallocate(tier.value, sum(m.tokens or 0 for m in evicted))
        now = self._clock()
        for message in evicted:
            self._retire(message, tier, now)
        self._eviction_count += len(evicted)
        record_eviction(tier.value, len(evicted))
        self._emit(ContextEventType.MESSAGE_EVICTED, messages=evicted, tier=tier)

    def _retire(self, message: ContextMessage, tier: MemoryTier, when: float) -> None:
        self._retired_ids.add(message.id)
        self._inserted_at.pop(message.id, None)
        self._removals.append(
            RemovalRecord(
                timestamp=when,
                message_id=message.id,
                tier=tier,
                tokens=message.tokens or 0,
            )
        )

    # ── Request assembly ──────────────────────────────────────────────────

    async def prepare_for_request(self, options: PrepareOptions | None = None) -> PreparedRequest:
        """Compact if needed, reserve request budgets, and assemble messages."""
        options = options or PrepareOptions()

        was_compressed = False
        if options.force_compression or self.should_compress():
            was_compressed = bool(await self.compact())

        self.release_request_reservations()
        for label, amount in (
            ("response", self._config.response_reserve),
            ("tools", self._config.tool_reserve),
            ("additional", options.additional_reserve),
        ):
            if amount > 0:
                self._request_reservations.append(self._budget.reserve(amount, label).id)

        messages = self._memory.get_all_messages()
        if not options.include_system:
            messages = [m for m in messages if m.role != MessageRole.SYSTEM]
        if options.max_messages is not None:
            messages = self._cap_messages(messages, options.max_messages)

        total_tokens = sum(m.tokens or 0 for m in messages)
        response_tokens = max(
            0,
            self._budget.max_tokens
            - total_tokens
            - self._config.tool_reserve
            - options.additional_reserve,
        )
        breakpoints = self._cache_breakpoints(messages) if self._config.enable_caching else []

        logger.info(
            "context.request_prepared",
            message_count=len(messages),
            total_tokens=total_tokens,
            response_tokens=response_tokens,
            was_compressed=was_compressed,
            utilization=f"{self._budget.utilization_ratio() * 100:.1f}%",
        )
        return PreparedRequest(
            messages=[m.model_copy(deep=True) for m in messages],
            total_tokens=total_tokens,
            response_tokens=response_tokens,
            was_compressed=was_compressed,
            cache_breakpoints=breakpoints,
        )

    def release_request_reservations(self) -> None:
        for reservation_id in self._request_reservations:
            self._budget.release(reservation_id)
        self._request_reservations = []

    def _cap_messages(self, messages: list[ContextMessage], limit: int) -> list[ContextMessage]:
        pinned = {
            m.id for m in messages if self._memory.get_tier_of(m.id) == MemoryTier.SYSTEM
        }
        others = [m for m in messages if m.id not in pinned]
        kept = others[max(0, len(others) - limit) :] if limit > 0 else []
        keep = pinned | {m.id for m in kept}
        return [m for m in messages if m.id in keep]

    def _cache_breakpoints(self, messages: list[ContextMessage]) -> list[int]:
        breakpoints: list[int] = []
        system_end = 0
        while system_end < len(messages) and messages[system_end].role == MessageRole.SYSTEM:
            system_end += 1
        if system_end:
            breakpoints.append(system_end)

        stable_end = 0
        while (
            stable_end < len(messages)
            and self._memory.get_tier_of(messages[stable_end].id) in STABLE_PREFIX_TIERS
        ):
            stable_end += 1
        if stable_end and stable_end not in breakpoints:
            breakpoints.append(stable_end)
        return breakpoints

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def set_max_tokens(self, max_tokens: int) -> None:
        self._budget.set_max_tokens(max_tokens)
        self._config = self._config.model_copy(update={"max_tokens": max_tokens})

    def clear(self) -> None:
        """Drop all messages; reservations and history are kept."""
        now = self._clock()
        for tier in MemoryTier:
            for message in self._memory.clear_tier(tier):
                self._retire(message, tier, now)
        self._budget.reset()

    def clone(self) -> "ContextManager":
        """Independent copy for branching; strategy objects are shared."""
        other = ContextManager(
            self._config,
            estimator=self._estimator,
            compressor=self._compressor,
            allocator=self._allocator,
        )
        other._memory = self._memory.clone()
        other._budget = self._budget.clone()
        other._compression_history = [r.model_copy(deep=True) for r in self._compression_history]
        other._removals = [r.model_copy() for r in self._removals]
        other._inserted_at = dict(self._inserted_at)
        other._retired_ids = set(self._retired_ids)
        other._request_reservations = list(self._request_reservations)
        other._eviction_count = self._eviction_count
        other._last_clock = self._last_clock
        other.created_at = self.created_at
        return other

    def _emit(self, event_type: ContextEventType, **fields: Any) -> None:
        self._events.emit(ContextEvent(type=event_type, **fields))
