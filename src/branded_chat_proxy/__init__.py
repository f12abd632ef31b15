"""Streaming chat proxy that re-emits upstream SSE deltas as filtered plain text."""
