"""Six-tier message store.

Each tier is an owned, ordered list with its own exact token counter.
Moving a message between tiers is remove-from-one plus append-to-other,
so counters never need a rescan except after a bulk replace.
"""

from __future__ import annotations

import copy
import re

import structlog

from src.context_engine.window.schemas import (
    TIER_ORDER,
    ContextMessage,
    MemoryTier,
    MessagePriority,
    MessageRole,
    PriorityRules,
    TierConfig,
    TieredMemoryConfig,
)
from src.context_engine.window.tokens import TokenEstimator

logger = structlog.get_logger(__name__)

_TIER_RANK = {tier: index for index, tier in enumerate(TIER_ORDER)}


def natural_tier(message: ContextMessage) -> MemoryTier:
    """Tier a message lands in when no override is given."""
    if message.role == MessageRole.SYSTEM or (
        message.priority is not None and message.priority >= MessagePriority.CRITICAL
    ):
        return MemoryTier.SYSTEM
    if message.role == MessageRole.TOOL:
        return MemoryTier.TOOLS
    return MemoryTier.RECENT


class TieredMemory:
    """Message store partitioned into retention tiers.

    Usage:
        memory = TieredMemory(TokenEstimator())
        memory.add_message(create_message("user", "Hello"))
        memory.get_all_messages()
    """

    def __init__(
        self,
        estimator: TokenEstimator | None = None,
        config: TieredMemoryConfig | None = None,
        priority_rules: PriorityRules | None = None,
    ) -> None:
        self._estimator = estimator or TokenEstimator()
        self._config = config or TieredMemoryConfig()
        self._rules = priority_rules or PriorityRules()
        self._boosts = [
            (re.compile(boost.pattern, re.IGNORECASE), boost.boost)
            for boost in self._rules.keyword_boosts
        ]
        self._tiers: dict[MemoryTier, list[ContextMessage]] = {
            tier: [] for tier in MemoryTier
        }
        self._tokens: dict[MemoryTier, int] = {tier: 0 for tier in MemoryTier}
        self._index: dict[str, MemoryTier] = {}

    @property
    def config(self) -> TieredMemoryConfig:
        return self._config

    def tier_config(self, tier: MemoryTier) -> TierConfig:
        return self._config.tiers[tier]

    # ── Placement ─────────────────────────────────────────────────────────

    def compute_tier(self, message: ContextMessage) -> MemoryTier:
        return natural_tier(message)

    def calculate_priority(
        self, message: ContextMessage, position: int = 0, total: int = 1
    ) -> int:
        """Role default plus keyword and recency boosts.

        Args:
            message: Message to score.
            position: Zero-based position among recent messages (newest last).
            total: Number of recent messages including this one.

        Returns:
            Priority; SYSTEM for the system role, otherwise capped at CRITICAL.
        """
        if message.role == MessageRole.SYSTEM:
            return int(MessagePriority.SYSTEM)
        if message.metadata.get("critical"):
            return int(MessagePriority.CRITICAL)

        priority = int(self._rules.role_defaults.get(message.role, MessagePriority.NORMAL))
        tool_name = str(message.metadata.get("tool_name", "")).lower()
        if tool_name in self._rules.tool_priorities:
            priority = int(self._rules.tool_priorities[tool_name])

        text = message.text()
        for pattern, boost in self._boosts:
            if pattern.search(text):
                priority += boost

        if total > 0:
            priority += round(
                self._rules.recency_weight * 100 * (position + 1) / total
            )

        return min(priority, int(MessagePriority.CRITICAL))

    def add_message(
        self, message: ContextMessage, tier: MemoryTier | None = None
    ) -> MemoryTier:
        """Insert a message, caching its token count and priority.

        Returns:
            The tier that now owns the message.
        """
        if message.id in self._index:
            raise ValueError(f"Message {message.id} is already stored")
        if message.tokens is None:
            message.tokens = self._estimator.estimate_message(message)
        if message.priority is None:
            recent = len(self._tiers[MemoryTier.RECENT])
            message.priority = self.calculate_priority(message, recent, recent + 1)

        target = tier or self.compute_tier(message)
        self._append(target, message)
        return target

    def _append(self, tier: MemoryTier, message: ContextMessage) -> None:
        self._tiers[tier].append(message)
        self._tokens[tier] += message.tokens or 0
        self._index[message.id] = tier

    def _pop(self, tier: MemoryTier, message_id: str) -> ContextMessage | None:
        messages = self._tiers[tier]
        for position, message in enumerate(messages):
            if message.id == message_id:
                del messages[position]
                self._tokens[tier] -= message.tokens or 0
                self._index.pop(message_id, None)
                return message
        return None

    # ── Reads ─────────────────────────────────────────────────────────────

    def get_messages(self, tier: MemoryTier) -> list[ContextMessage]:
        return list(self._tiers[tier])

    def get_all_messages(self) -> list[ContextMessage]:
        """All messages ascending by timestamp, ties by tier then insertion."""
        ordered: list[ContextMessage] = []
        for tier in TIER_ORDER:
            ordered.extend(self._tiers[tier])
        # Stable sort keeps tier precedence and insertion order for ties.
        return sorted(ordered, key=lambda m: m.timestamp)

    def get_message(self, message_id: str) -> ContextMessage | None:
        tier = self._index.get(message_id)
        if tier is None:
            return None
        return next(m for m in self._tiers[tier] if m.id == message_id)

    def get_tier_of(self, message_id: str) -> MemoryTier | None:
        return self._index.get(message_id)

    def get_tier_tokens(self, tier: MemoryTier) -> int:
        return self._tokens[tier]

    def get_total_tokens(self) -> int:
        return sum(self._tokens.values())

    def get_message_count(self, tier: MemoryTier | None = None) -> int:
        if tier is not None:
            return len(self._tiers[tier])
        return len(self._index)

    def is_tier_over_limit(self, tier: MemoryTier) -> bool:
        return self._tokens[tier] > self.tier_config(tier).max_tokens

    def get_tier_overflow(self, tier: MemoryTier) -> int:
        return max(0, self._tokens[tier] - self.tier_config(tier).max_tokens)

    def get_messages_needing_compression(self) -> dict[MemoryTier, list[ContextMessage]]:
        """Compressible messages in compressible tiers that exceed their limit."""
        result: dict[MemoryTier, list[ContextMessage]] = {}
        for tier in MemoryTier:
            if not self.tier_config(tier).compressible or not self.is_tier_over_limit(tier):
                continue
            candidates = [m for m in self._tiers[tier] if m.compressible]
            if candidates:
                result[tier] = candidates
        return result

    def snapshot(self) -> dict[MemoryTier, list[ContextMessage]]:
        return {tier: list(messages) for tier, messages in self._tiers.items()}

    def get_stats(self) -> dict[MemoryTier, dict]:
        stats = {}
        for tier in MemoryTier:
            limit = self.tier_config(tier).max_tokens
            stats[tier] = {
                "message_count": len(self._tiers[tier]),
                "tokens": self._tokens[tier],
                "max_tokens": limit,
                "utilization": self._tokens[tier] / limit if limit else 0.0,
            }
        return stats

    # ── Moves ─────────────────────────────────────────────────────────────

    def demote_to_archived(self, count: int) -> list[ContextMessage]:
        """Move the oldest ``count`` RECENT messages to ARCHIVED, in order."""
        recent = sorted(self._tiers[MemoryTier.RECENT], key=lambda m: m.timestamp)
        moved = []
        for message in recent[: max(0, count)]:
            self._pop(MemoryTier.RECENT, message.id)
            self._append(MemoryTier.ARCHIVED, message)
            moved.append(message)
        if moved:
            logger.debug("tiered_memory.demoted", count=len(moved))
        return moved

    def promote_to_recent(self, message_ids: list[str]) -> list[ContextMessage]:
        """Move the given ARCHIVED messages back to RECENT, in archive order."""
        wanted = set(message_ids)
        candidates = [m for m in self._tiers[MemoryTier.ARCHIVED] if m.id in wanted]
        for message in candidates:
            self._pop(MemoryTier.ARCHIVED, message.id)
            self._append(MemoryTier.RECENT, message)
        return candidates

    def evict(self, tier: MemoryTier, target_tokens: int = 0) -> list[ContextMessage]:
        """Remove lowest-priority, then oldest messages down toward ``target_tokens``.

        Never evicts from SYSTEM. Never takes the tier below its
        configured ``min_tokens``; a message whose removal would do so is
        skipped. Non-compressible messages are only evicted from
        compressible tiers.
        """
        if tier == MemoryTier.SYSTEM:
            return []

        config = self.tier_config(tier)
        target = max(target_tokens, config.min_tokens)
        candidates = sorted(
            (m for m in self._tiers[tier] if m.compressible or config.compressible),
            key=lambda m: (m.priority or 0, m.timestamp),
        )

        evicted: list[ContextMessage] = []
        for message in candidates:
            if self._tokens[tier] <= target:
                break
            if self._tokens[tier] - (message.tokens or 0) < config.min_tokens:
                continue
            self._pop(tier, message.id)
            evicted.append(message)

        if evicted:
            logger.info(
                "tiered_memory.evicted",
                tier=tier.value,
                count=len(evicted),
                remaining_tokens=self._tokens[tier],
            )
        return evicted

    def remove_messages(
        self,
        tier: MemoryTier,
        message_ids: list[str],
        *,
        respect_floor: bool = False,
    ) -> list[ContextMessage]:
        """Remove specific messages from a tier. SYSTEM is never touched.

        With ``respect_floor``, a message whose removal would take the tier
        below its ``min_tokens`` is left in place, as in ``evict``.
        """
        if tier == MemoryTier.SYSTEM:
            return []
        floor = self.tier_config(tier).min_tokens if respect_floor else 0
        removed = []
        for message_id in message_ids:
            current = self.get_message(message_id)
            if current is None or self._index.get(message_id) != tier:
                continue
            if respect_floor and self._tokens[tier] - (current.tokens or 0) < floor:
                logger.debug(
                    "tiered_memory.floor_kept",
                    tier=tier.value,
                    message_id=message_id,
                    min_tokens=floor,
                )
                continue
            message = self._pop(tier, message_id)
            if message is not None:
                removed.append(message)
        return removed

    def replace_messages(
        self,
        tier: MemoryTier,
        old_ids: list[str],
        new_messages: list[ContextMessage],
    ) -> None:
        """Swap ``old_ids`` for ``new_messages`` at the first replaced position."""
        if tier == MemoryTier.SYSTEM:
            raise ValueError("SYSTEM tier messages cannot be replaced")

        removing = set(old_ids)
        current = self._tiers[tier]
        insert_at = next(
            (i for i, m in enumerate(current) if m.id in removing), len(current)
        )
        kept_before = [m for m in current[:insert_at] if m.id not in removing]
        kept_after = [m for m in current[insert_at:] if m.id not in removing]

        for message in current:
            if message.id in removing:
                self._index.pop(message.id, None)
        for message in new_messages:
            if message.tokens is None:
                message.tokens = self._estimator.estimate_message(message)
            if message.priority is None:
                message.priority = int(MessagePriority.NORMAL)
            owner = self._index.get(message.id)
            if owner is not None and owner != tier:
                raise ValueError(f"Message {message.id} is owned by tier {owner.value}")
            self._index[message.id] = tier

        self._tiers[tier] = kept_before + list(new_messages) + kept_after
        self._tokens[tier] = sum(m.tokens or 0 for m in self._tiers[tier])

    def clear_tier(self, tier: MemoryTier) -> list[ContextMessage]:
        removed = self._tiers[tier]
        for message in removed:
            self._index.pop(message.id, None)
        self._tiers[tier] = []
        self._tokens[tier] = 0
        return removed

    def clear_all(self) -> None:
        for tier in MemoryTier:
            self.clear_tier(tier)

    def clone(self) -> "TieredMemory":
        """Deep copy of tier contents; estimator and rules are shared."""
        other = TieredMemory(self._estimator, self._config, self._rules)
        other._tiers = {tier: copy.deepcopy(messages) for tier, messages in self._tiers.items()}
        other._tokens = dict(self._tokens)
        other._index = dict(self._index)
        return other
