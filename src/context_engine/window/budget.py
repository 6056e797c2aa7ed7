"""Token budget tracking with named allocations and reservations.

Allocations are running totals per category (usually one per memory
tier). Reservations are trusted, capacity-unchecked pre-allocations for
a future need such as the model response; they survive ``reset()``.
"""

from __future__ import annotations

import copy
import math

import structlog

from src.context_engine.window.schemas import TokenReservation

logger = structlog.get_logger(__name__)


class TokenBudgetTracker:
    """Tracks a token ceiling against allocations and reservations.

    Invariant: ``used_tokens == sum(allocations) + sum(reservations)``.
    Running out of room is reported by return value, never by raising.

    Usage:
        budget = TokenBudgetTracker(max_tokens=1000)
        budget.allocate("history", 800)   # True
        budget.can_fit(150)               # True
        handle = budget.reserve(100, "response")
        budget.release(handle.id)
    """

    def __init__(self, max_tokens: int) -> None:
        if max_tokens < 0:
            raise ValueError("max_tokens must be non-negative")
        self._max_tokens = max_tokens
        self._allocations: dict[str, int] = {}
        self._reservations: dict[str, TokenReservation] = {}

    # ── Reads ─────────────────────────────────────────────────────────────

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @property
    def allocated_tokens(self) -> int:
        return sum(self._allocations.values())

    @property
    def reserved_tokens(self) -> int:
        return sum(r.tokens for r in self._reservations.values())

    @property
    def used_tokens(self) -> int:
        return self.allocated_tokens + self.reserved_tokens

    @property
    def remaining_tokens(self) -> int:
        return max(0, self._max_tokens - self.used_tokens)

    @property
    def reservations(self) -> list[TokenReservation]:
        return [r.model_copy() for r in self._reservations.values()]

    def get_allocation(self, category: str) -> int:
        return self._allocations.get(category, 0)

    def can_fit(self, amount: int) -> bool:
        return self.used_tokens + amount <= self._max_tokens

    def utilization_ratio(self) -> float:
        """used/max; 0.0 for an empty zero-sized budget, inf if anything is used."""
        if self._max_tokens == 0:
            return 0.0 if self.used_tokens == 0 else math.inf
        return self.used_tokens / self._max_tokens

    def get_breakdown(self) -> dict:
        return {
            "max_tokens": self._max_tokens,
            "allocations": dict(self._allocations),
            "allocated": self.allocated_tokens,
            "reserved": self.reserved_tokens,
            "used": self.used_tokens,
            "available": self.remaining_tokens,
            "utilization": self.utilization_ratio(),
        }

    # ── Mutations ─────────────────────────────────────────────────────────

    def allocate(self, category: str, amount: int) -> bool:
        """Add ``amount`` to ``category`` only if the ceiling allows it.

        Returns:
            True if applied, False with no effect otherwise.
        """
        if amount < 0:
            raise ValueError("allocation amount must be non-negative")
        if not self.can_fit(amount):
            logger.debug(
                "budget.allocation_rejected",
                category=category,
                amount=amount,
                used=self.used_tokens,
                max_tokens=self._max_tokens,
            )
            return False
        self._allocations[category] = self._allocations.get(category, 0) + amount
        return True

    def commit(self, category: str, amount: int) -> None:
        """Record tokens already admitted elsewhere, bypassing the ceiling.

        Keeps per-category totals equal to what memory actually holds;
        overcommitment shows up as utilization above 1.0.
        """
        if amount < 0:
            raise ValueError("commit amount must be non-negative")
        self._allocations[category] = self._allocations.get(category, 0) + amount

    def deallocate(self, category: str, amount: int) -> int:
        """Subtract from a category, clamped at zero. Returns the amount freed."""
        current = self._allocations.get(category, 0)
        freed = min(current, max(0, amount))
        remaining = current - freed
        if remaining:
            self._allocations[category] = remaining
        else:
            self._allocations.pop(category, None)
        return freed

    def reserve(self, amount: int, label: str) -> TokenReservation:
        """Reserve tokens unconditionally and return the reservation handle."""
        if amount < 0:
            raise ValueError("reservation amount must be non-negative")
        reservation = TokenReservation(label=label, tokens=amount)
        self._reservations[reservation.id] = reservation
        return reservation

    def release(self, reservation_id: str) -> bool:
        return self._reservations.pop(reservation_id, None) is not None

    def reset(self) -> None:
        """Clear allocations; reservations are kept."""
        self._allocations.clear()

    def set_max_tokens(self, max_tokens: int) -> None:
        if max_tokens < 0:
            raise ValueError("max_tokens must be non-negative")
        self._max_tokens = max_tokens

    def clone(self) -> "TokenBudgetTracker":
        return copy.deepcopy(self)
