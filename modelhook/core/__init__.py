"""Shared building blocks: errors, logging, time helpers and FastAPI glue."""
