"""Unit tests for TokenBudgetTracker.

Tests cover:
- Allocation against the ceiling and can_fit
- used == allocated + reserved across operation sequences
- Reservations: unchecked, released by id, kept across reset
- Deallocation clamping and zero-sized budget utilization
- Breakdown contents and clone independence
"""

from __future__ import annotations

import math

import pytest

from src.context_engine.window.budget import TokenBudgetTracker


class TestAllocation:
    """Tests for allocate/can_fit."""

    def test_history_allocation_and_fit(self):
        """800 of 1000 allocated leaves room for 150 but not 250."""
        budget = TokenBudgetTracker(max_tokens=1000)
        assert budget.allocate("history", 800) is True
        assert budget.can_fit(150) is True
        assert budget.can_fit(250) is False

    def test_allocation_rejected_without_effect(self):
        """A failed allocation leaves the totals unchanged."""
        budget = TokenBudgetTracker(max_tokens=100)
        budget.allocate("system", 90)
        assert budget.allocate("history", 20) is False
        assert budget.get_allocation("history") == 0
        assert budget.used_tokens == 90

    def test_exact_fit_allowed(self):
        """Filling the budget exactly is allowed."""
        budget = TokenBudgetTracker(max_tokens=100)
        assert budget.allocate("a", 100) is True
        assert budget.remaining_tokens == 0

    def test_negative_amount_rejected(self):
        """Negative allocations are a programming error."""
        budget = TokenBudgetTracker(max_tokens=100)
        with pytest.raises(ValueError):
            budget.allocate("a", -1)

    def test_commit_bypasses_ceiling(self):
        """commit records tokens even beyond max."""
        budget = TokenBudgetTracker(max_tokens=100)
        budget.commit("history", 150)
        assert budget.get_allocation("history") == 150
        assert budget.utilization_ratio() == pytest.approx(1.5)
        assert budget.remaining_tokens == 0


class TestConservation:
    """Tests for the used-token invariant."""

    def test_used_equals_allocated_plus_reserved(self):
        """The invariant holds after every step of a mixed sequence."""
        budget = TokenBudgetTracker(max_tokens=1000)

        def check():
            assert budget.used_tokens == budget.allocated_tokens + budget.reserved_tokens
            breakdown = budget.get_breakdown()
            assert breakdown["used"] == sum(breakdown["allocations"].values()) + breakdown["reserved"]

        budget.allocate("system", 100)
        check()
        handle = budget.reserve(200, "response")
        check()
        budget.allocate("history", 300)
        check()
        budget.deallocate("system", 40)
        check()
        budget.release(handle.id)
        check()
        budget.reset()
        check()
        assert budget.used_tokens == 0


class TestReservations:
    """Tests for reserve/release."""

    def test_reserve_is_unchecked(self):
        """Reservations succeed even past the ceiling."""
        budget = TokenBudgetTracker(max_tokens=100)
        reservation = budget.reserve(500, "response")
        assert reservation.tokens == 500
        assert reservation.label == "response"
        assert budget.reserved_tokens == 500
        assert budget.can_fit(1) is False

    def test_release_by_id(self):
        """Releasing returns True once and False afterwards."""
        budget = TokenBudgetTracker(max_tokens=100)
        reservation = budget.reserve(10, "tools")
        assert budget.release(reservation.id) is True
        assert budget.release(reservation.id) is False
        assert budget.reserved_tokens == 0

    def test_reset_keeps_reservations(self):
        """reset clears allocations only."""
        budget = TokenBudgetTracker(max_tokens=1000)
        budget.allocate("history", 300)
        budget.reserve(100, "response")
        budget.reset()
        assert budget.allocated_tokens == 0
        assert budget.reserved_tokens == 100

    def test_reservations_are_copies(self):
        """Mutating the returned list does not affect the tracker."""
        budget = TokenBudgetTracker(max_tokens=1000)
        budget.reserve(100, "response")
        budget.reservations[0].tokens = 0
        assert budget.reserved_tokens == 100


class TestDeallocateAndEdges:
    """Tests for deallocation and zero-sized budgets."""

    def test_deallocate_clamps_at_zero(self):
        """Freeing more than allocated frees only what exists."""
        budget = TokenBudgetTracker(max_tokens=1000)
        budget.allocate("history", 50)
        assert budget.deallocate("history", 80) == 50
        assert budget.get_allocation("history") == 0
        assert "history" not in budget.get_breakdown()["allocations"]

    def test_deallocate_unknown_category(self):
        """Unknown categories free nothing."""
        budget = TokenBudgetTracker(max_tokens=10)
        assert budget.deallocate("missing", 5) == 0

    def test_zero_budget_empty_utilization(self):
        """An empty zero-sized budget reports 0.0."""
        assert TokenBudgetTracker(max_tokens=0).utilization_ratio() == 0.0

    def test_zero_budget_used_utilization(self):
        """A zero-sized budget with anything reserved reports infinity."""
        budget = TokenBudgetTracker(max_tokens=0)
        budget.reserve(1, "response")
        assert math.isinf(budget.utilization_ratio())

    def test_negative_max_rejected(self):
        """Negative ceilings are rejected."""
        with pytest.raises(ValueError):
            TokenBudgetTracker(max_tokens=-1)


class TestBreakdownAndClone:
    """Tests for reporting and cloning."""

    def test_breakdown_fields(self):
        """Breakdown reports every total."""
        budget = TokenBudgetTracker(max_tokens=1000)
        budget.allocate("system", 100)
        budget.reserve(50, "response")
        breakdown = budget.get_breakdown()
        assert breakdown == {
            "max_tokens": 1000,
            "allocations": {"system": 100},
            "allocated": 100,
            "reserved": 50,
            "used": 150,
            "available": 850,
            "utilization": 0.15,
        }

    def test_clone_is_independent(self):
        """Changes to a clone do not leak back."""
        budget = TokenBudgetTracker(max_tokens=1000)
        budget.allocate("history", 100)
        clone = budget.clone()
        clone.allocate("history", 200)
        clone.reserve(10, "x")
        assert budget.get_allocation("history") == 100
        assert budget.reserved_tokens == 0
        assert clone.used_tokens == 310
