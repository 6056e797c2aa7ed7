"""External capabilities used by the context engine (LLM summarization)."""
