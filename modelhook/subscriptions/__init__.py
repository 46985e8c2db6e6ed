"""Subscription storage, registry and management API."""
