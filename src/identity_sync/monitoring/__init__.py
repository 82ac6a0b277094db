"""Logging and request/response tracing helpers."""
