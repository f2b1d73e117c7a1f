"""Ambient process concerns: structured logging and tracing."""
