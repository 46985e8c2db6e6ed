"""Shared fixtures: a throwaway SQLite store and a small target registry."""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from modelhook.config import Settings
from modelhook.core.clock import utcnow
from modelhook.subscriptions.database import SubscriptionStore
from modelhook.subscriptions.models import Subscription
from modelhook.subscriptions.registry import TargetKind, TargetRegistry

SECRET = "test-secret"


@pytest.fixture
def store():
    """Create a store backed by a temporary SQLite file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp_file:
        test_db_path = tmp_file.name

    try:
        db = SubscriptionStore(f"sqlite:///{test_db_path}")
        db.create_tables()
        yield db
        db.engine.dispose()
    finally:
        if os.path.exists(test_db_path):
            os.unlink(test_db_path)


@pytest.fixture
def registry():
    """Registry with two models, one event and one job."""
    registry = TargetRegistry()
    registry.register_model("Order", fields=["id", "status", "total", "customer_email"])
    registry.register_model("Invoice", fields=["id", "amount"], watched_attributes=["amount"])
    registry.register_event("OrderShipped")
    registry.register_event("SendReminder", kind=TargetKind.JOB)
    return registry


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every on-disk location at a temp directory."""
    return Settings(
        database_dsn=f"sqlite:///{tmp_path / 'modelhook.db'}",
        api_secret=SECRET,
        backup_dir=str(tmp_path / "backups"),
        export_dir=str(tmp_path / "exports"),
        backup_enabled=False,
    )


@pytest.fixture
def backdate(store):
    """Force timestamps that the public API only ever sets to now."""

    def _backdate(subscription_id: str, **fields) -> None:
        with store.transaction() as session:
            row = session.query(Subscription).filter(Subscription.id == subscription_id).one()
            for key, value in fields.items():
                setattr(row, key, value)

    return _backdate


@pytest.fixture
def ago():
    """ago(hours=..., days=...) relative to the current UTC time."""

    def _ago(**delta) -> datetime:
        return utcnow() - timedelta(**delta)

    return _ago


@pytest.fixture
def secret():
    return SECRET
