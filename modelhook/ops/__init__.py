"""Operational tooling: health, recovery and cleanup."""
