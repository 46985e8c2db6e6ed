"""Inbound request protection: signatures, API keys and rate limits."""
