"""Context window management engine.

Keeps an LLM conversation inside a fixed token window: estimation,
budgeting, tiered retention, compression, request assembly, and
session persistence.
"""
