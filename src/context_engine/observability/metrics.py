"""Prometheus metrics for context window activity.

Module-level collectors registered on the default registry; the host
application exposes them however it serves /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ── Message Metrics ──────────────────────────────────────────────────────────

context_messages_added_total = Counter(
    "context_messages_added_total",
    "Messages admitted into a context window",
    ["tier"],
)

context_messages_evicted_total = Counter(
    "context_messages_evicted_total",
    "Messages evicted from a context window",
    ["tier"],
)

# ── Compression Metrics ──────────────────────────────────────────────────────

context_compressions_total = Counter(
    "context_compressions_total",
    "Compression passes applied",
    ["strategy"],
)

context_compression_ratio = Histogram(
    "context_compression_ratio",
    "Compressed/original token ratio per compression pass",
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)

context_summarizer_failures_total = Counter(
    "context_summarizer_failures_total",
    "Summarizer calls that failed and fell back to truncation",
)

# ── Budget Metrics ───────────────────────────────────────────────────────────

context_budget_utilization = Gauge(
    "context_budget_utilization",
    "Most recently observed budget utilization ratio",
)


def record_compression(strategy: str, ratio: float) -> None:
    """Record one applied compression pass."""
    context_compressions_total.labels(strategy=strategy).inc()
    context_compression_ratio.observe(ratio)


def record_eviction(tier: str, count: int = 1) -> None:
    """Record evicted messages for a tier."""
    if count > 0:
        context_messages_evicted_total.labels(tier=tier).inc(count)


def record_utilization(ratio: float) -> None:
    """Publish the current utilization, clamped to a finite value."""
    context_budget_utilization.set(min(ratio, 1e6))
