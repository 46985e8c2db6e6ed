"""modelhook: webhook subscriptions and signed delivery for domain model changes."""

__version__ = "0.1.0"
