"""Per-tier budget allocation and retain/compress/evict planning.

Budget allocation follows a profile-specific percentage table over the
distributable budget (total minus reservations), clamped to each tier's
absolute maximum. SYSTEM content is always retained; if it cannot fit,
the shortfall is reported as overflow instead of being dropped.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, Field

from src.context_engine.window.budget import TokenBudgetTracker
from src.context_engine.window.memory import natural_tier
from src.context_engine.window.schemas import (
    DEFAULT_TIER_CONFIGS,
    ContextMessage,
    MemoryTier,
    TierConfig,
    TokenReservation,
)
from src.context_engine.window.tokens import TokenEstimator

logger = structlog.get_logger(__name__)

ALLOCATION_PROFILES: dict[str, dict[MemoryTier, float]] = {
    "default": {
        MemoryTier.SYSTEM: 0.08,
        MemoryTier.TOOLS: 0.06,
        MemoryTier.RESOURCES: 0.10,
        MemoryTier.RECENT: 0.45,
        MemoryTier.ARCHIVED: 0.25,
        MemoryTier.EPHEMERAL: 0.06,
    },
    "coding": {
        MemoryTier.SYSTEM: 0.08,
        MemoryTier.TOOLS: 0.15,
        MemoryTier.RESOURCES: 0.20,
        MemoryTier.RECENT: 0.35,
        MemoryTier.ARCHIVED: 0.17,
        MemoryTier.EPHEMERAL: 0.05,
    },
    "chat": {
        MemoryTier.SYSTEM: 0.06,
        MemoryTier.TOOLS: 0.03,
        MemoryTier.RESOURCES: 0.05,
        MemoryTier.RECENT: 0.52,
        MemoryTier.ARCHIVED: 0.30,
        MemoryTier.EPHEMERAL: 0.04,
    },
    "analysis": {
        MemoryTier.SYSTEM: 0.07,
        MemoryTier.TOOLS: 0.08,
        MemoryTier.RESOURCES: 0.30,
        MemoryTier.RECENT: 0.30,
        MemoryTier.ARCHIVED: 0.20,
        MemoryTier.EPHEMERAL: 0.05,
    },
}

# Order in which unused share is handed to over-filled tiers.
RETENTION_ORDER: tuple[MemoryTier, ...] = (
    MemoryTier.SYSTEM,
    MemoryTier.TOOLS,
    MemoryTier.RECENT,
    MemoryTier.RESOURCES,
    MemoryTier.ARCHIVED,
    MemoryTier.EPHEMERAL,
)


class AllocationRequest(BaseModel):
    total_budget: int
    current_content: dict[MemoryTier, list[ContextMessage]] = Field(default_factory=dict)
    incoming: list[ContextMessage] = Field(default_factory=list)
    reservations: list[TokenReservation] = Field(default_factory=list)


class AllocationResult(BaseModel):
    allocations: dict[MemoryTier, int]
    retained: list[ContextMessage] = Field(default_factory=list)
    to_compress: list[ContextMessage] = Field(default_factory=list)
    to_evict: list[ContextMessage] = Field(default_factory=list)
    success: bool = True
    overflow: int = 0


class ContextAllocator:
    """Decides how much each tier may hold and what must go.

    Usage:
        allocator = ContextAllocator(profile="coding")
        result = allocator.allocate(AllocationRequest(total_budget=100_000, ...))
    """

    def __init__(
        self,
        profile: str = "default",
        tier_configs: dict[MemoryTier, TierConfig] | None = None,
        estimator: TokenEstimator | None = None,
    ) -> None:
        if profile not in ALLOCATION_PROFILES:
            raise ValueError(
                f"Unknown allocation profile '{profile}'. "
                f"Must be one of: {list(ALLOCATION_PROFILES.keys())}"
            )
        self._profile = profile
        self._tier_configs = {**DEFAULT_TIER_CONFIGS, **(tier_configs or {})}
        self._estimator = estimator or TokenEstimator()

    @property
    def profile(self) -> str:
        return self._profile

    def get_optimal_allocation(self, budget: int) -> dict[MemoryTier, int]:
        """Profile share per tier, clamped to the tier's max_tokens."""
        percentages = ALLOCATION_PROFILES[self._profile]
        budget = max(0, budget)
        return {
            tier: min(int(budget * percentages[tier]), self._tier_configs[tier].max_tokens)
            for tier in MemoryTier
        }

    def allocate(self, request: AllocationRequest) -> AllocationResult:
        reserved = sum(r.tokens for r in request.reservations)
        distributable = max(0, request.total_budget - reserved)

        content: dict[MemoryTier, list[ContextMessage]] = {
            tier: list(request.current_content.get(tier, [])) for tier in MemoryTier
        }
        for message in request.incoming:
            content[natural_tier(message)].append(message)

        usage = {
            tier: sum(self._estimator.estimate_message(m) for m in messages)
            for tier, messages in content.items()
        }
        total_usage = sum(usage.values())

        if total_usage <= distributable:
            return AllocationResult(
                allocations=dict(usage),
                retained=[m for tier in MemoryTier for m in content[tier]],
            )

        shares = self._redistribute(self.get_optimal_allocation(distributable), usage)

        result = AllocationResult(allocations=shares)
        for tier in MemoryTier:
            messages = content[tier]
            if usage[tier] <= shares[tier]:
                result.retained.extend(messages)
                continue

            if tier == MemoryTier.SYSTEM:
                result.retained.extend(messages)
                result.overflow += usage[tier] - shares[tier]
                continue

            self._trim_tier(tier, messages, shares[tier], result)

        result.success = result.overflow == 0
        logger.info(
            "allocator.allocated",
            profile=self._profile,
            distributable=distributable,
            usage=total_usage,
            to_compress=len(result.to_compress),
            to_evict=len(result.to_evict),
            overflow=result.overflow,
        )
        return result

    def rebalance(
        self,
        content: dict[MemoryTier, list[ContextMessage]],
        budget: TokenBudgetTracker,
    ) -> AllocationResult:
        """Plan against a live tracker's ceiling and reservations."""
        return self.allocate(
            AllocationRequest(
                total_budget=budget.max_tokens,
                current_content=content,
                reservations=budget.reservations,
            )
        )

    def _redistribute(
        self, shares: dict[MemoryTier, int], usage: dict[MemoryTier, int]
    ) -> dict[MemoryTier, int]:
        slack = sum(max(0, shares[t] - usage[t]) for t in MemoryTier)
        adjusted = dict(shares)
        for tier in RETENTION_ORDER:
            if slack <= 0:
                break
            deficit = usage[tier] - adjusted[tier]
            if deficit <= 0:
                continue
            headroom = self._tier_configs[tier].max_tokens - adjusted[tier]
            grant = max(0, min(deficit, slack, headroom))
            adjusted[tier] += grant
            slack -= grant
        return adjusted

    def _trim_tier(
        self,
        tier: MemoryTier,
        messages: list[ContextMessage],
        share: int,
        result: AllocationResult,
    ) -> None:
        tier_compressible = self._tier_configs[tier].compressible
        ranked = sorted(
            messages,
            key=lambda m: (m.priority or 0, m.timestamp),
            reverse=True,
        )
        used = 0
        for message in ranked:
            tokens = self._estimator.estimate_message(message)
            if used + tokens <= share:
                result.retained.append(message)
                used += tokens
            elif tier_compressible and message.compressible:
                result.to_compress.append(message)
            else:
                result.to_evict.append(message)
