"""Logging configuration and Prometheus metrics for the context engine."""
