"""Unit tests for configuration, logging setup, and Prometheus metrics.

Tests cover:
- Settings defaults and CONTEXT_ environment overrides
- configure_structlog renderer selection
- Metric helpers increment their collectors
"""

from __future__ import annotations

import structlog

from src.context_engine.config import ContextEngineSettings, Environment
from src.context_engine.observability.logging import configure_structlog
from src.context_engine.observability.metrics import (
    context_budget_utilization,
    context_compressions_total,
    context_messages_evicted_total,
    record_compression,
    record_eviction,
    record_utilization,
)


# ── Settings ─────────────────────────────────────────────────────────────────


class TestSettings:
    """Tests for ContextEngineSettings."""

    def test_defaults(self, monkeypatch):
        """Defaults apply when nothing is configured."""
        monkeypatch.delenv("CONTEXT_MAX_TOKENS", raising=False)
        settings = ContextEngineSettings(_env_file=None)
        assert settings.max_tokens == 200_000
        assert settings.compression_threshold == 0.7
        assert settings.summarizer_model == ""
        assert settings.environment == Environment.development

    def test_env_prefix(self, monkeypatch):
        """CONTEXT_-prefixed variables override defaults."""
        monkeypatch.setenv("CONTEXT_MAX_TOKENS", "50000")
        monkeypatch.setenv("CONTEXT_ALLOCATION_PROFILE", "coding")
        monkeypatch.setenv("CONTEXT_ENVIRONMENT", "production")
        settings = ContextEngineSettings(_env_file=None)
        assert settings.max_tokens == 50_000
        assert settings.allocation_profile == "coding"
        assert settings.environment == Environment.production


# ── Logging ──────────────────────────────────────────────────────────────────


class TestConfigureStructlog:
    """Tests for configure_structlog."""

    def teardown_method(self):
        structlog.reset_defaults()

    def test_production_renders_json(self):
        """Production uses the JSON renderer."""
        configure_structlog(ContextEngineSettings(environment="production", _env_file=None))
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_development_renders_console(self):
        """Other environments use the console renderer."""
        configure_structlog(ContextEngineSettings(environment="development", _env_file=None))
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


# ── Metrics ──────────────────────────────────────────────────────────────────


class TestMetrics:
    """Tests for the metric helpers."""

    def test_record_compression(self):
        """Compression passes increment the per-strategy counter."""
        before = context_compressions_total.labels(strategy="minify")._value.get()
        record_compression("minify", 0.8)
        after = context_compressions_total.labels(strategy="minify")._value.get()
        assert after == before + 1

    def test_record_eviction(self):
        """Evictions add the evicted count; zero is ignored."""
        counter = context_messages_evicted_total.labels(tier="ephemeral")
        before = counter._value.get()
        record_eviction("ephemeral", 3)
        record_eviction("ephemeral", 0)
        assert counter._value.get() == before + 3

    def test_record_utilization_clamped(self):
        """Infinite utilization is published as a finite value."""
        record_utilization(0.5)
        assert context_budget_utilization._value.get() == 0.5
        record_utilization(float("inf"))
        assert context_budget_utilization._value.get() == 1e6
