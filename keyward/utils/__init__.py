"""Shared helpers: structured logging, clock, ULIDs, background tasks."""
