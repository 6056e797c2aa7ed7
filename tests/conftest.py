"""Shared fixtures for context engine tests.

Provides:
- estimator: default heuristic TokenEstimator
- make_message: factory for messages with explicit token counts and timestamps
"""

from __future__ import annotations

import itertools

import pytest

from src.context_engine.window.schemas import ContextMessage, MessageRole, create_message
from src.context_engine.window.tokens import TokenEstimator


@pytest.fixture
def estimator() -> TokenEstimator:
    return TokenEstimator()


@pytest.fixture
def make_message():
    """Build messages with increasing timestamps unless one is given."""
    clock = itertools.count(1)

    def _make(
        role: str = "user",
        content: str = "hello",
        *,
        tokens: int | None = 10,
        priority: int | None = None,
        compressible: bool = True,
        timestamp: float | None = None,
        metadata: dict | None = None,
    ) -> ContextMessage:
        return create_message(
            MessageRole(role),
            content,
            tokens=tokens,
            priority=priority,
            compressible=compressible,
            metadata=metadata,
            timestamp=float(next(clock)) if timestamp is None else timestamp,
        )

    return _make
