"""Database models for webhook subscriptions."""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from modelhook.core.clock import ensure_utc, isoformat, utcnow

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetimes stored as naive UTC and read back as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"
    DELETED = "deleted"


LIVE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.INACTIVE.value)


@dataclass
class SecurityOptions:
    verify_hmac: bool = True
    require_timestamp: bool = True
    expected_source_ip: str | None = None

    @classmethod
    def from_value(cls, value: Any) -> "SecurityOptions":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(
                verify_hmac=bool(value.get("verify_hmac", True)),
                require_timestamp=bool(value.get("require_timestamp", True)),
                expected_source_ip=value.get("expected_source_ip") or None,
            )
        return cls(
            verify_hmac=bool(getattr(value, "verify_hmac", True)),
            require_timestamp=bool(getattr(value, "require_timestamp", True)),
            expected_source_ip=getattr(value, "expected_source_ip", None) or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "verify_hmac": self.verify_hmac,
            "require_timestamp": self.require_timestamp,
            "expected_source_ip": self.expected_source_ip,
        }


def _new_id() -> str:
    return str(uuid.uuid4())


class Subscription(Base):
    """A workflow node's registration for changes on one target."""

    __tablename__ = "webhook_subscriptions"

    id = Column(String(36), primary_key=True, default=_new_id)
    target_class = Column(String(255), nullable=False, index=True)  # model, event or job name
    events = Column(JSON, nullable=False)  # ordered list of event kinds
    endpoint_url = Column(Text, nullable=False)
    watched_properties = Column(JSON(none_as_null=True), nullable=True)  # restricts outbound data when set
    node_id = Column(String(255), nullable=True, index=True)
    workflow_id = Column(String(255), nullable=True, index=True)
    verify_hmac = Column(Boolean, nullable=False, default=True)
    require_timestamp = Column(Boolean, nullable=False, default=True)
    expected_source_ip = Column(String(64), nullable=True)  # literal IP or CIDR
    is_event_subscription = Column(Boolean, nullable=False, default=False)
    status = Column(String(16), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True)
    trigger_count = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(UTCDateTime, nullable=True, index=True)
    last_error = Column(JSON(none_as_null=True), nullable=True)  # {message, code, occurred_at}
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)
    archived_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_webhook_subscriptions_live_endpoint",
            "endpoint_url",
            "is_event_subscription",
            unique=True,
            sqlite_where=deleted_at.is_(None),
            postgresql_where=deleted_at.is_(None),
        ),
        Index("ix_webhook_subscriptions_target_status", "target_class", "status"),
    )

    @property
    def active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    @property
    def security(self) -> SecurityOptions:
        return SecurityOptions(
            verify_hmac=self.verify_hmac if self.verify_hmac is not None else True,
            require_timestamp=self.require_timestamp if self.require_timestamp is not None else True,
            expected_source_ip=self.expected_source_ip,
        )

    def to_legacy_dict(self) -> dict[str, Any]:
        """Serialise in the snapshot record shape used by backups and exports.

        Deleted and archived rows also carry ``status`` and ``deleted_at`` so a
        restore keeps them out of the live set.
        """
        record = {
            "id": self.id,
            "model": self.target_class,
            "events": list(self.events or []),
            "webhook_url": self.endpoint_url,
            "properties": list(self.watched_properties or []),
            "active": self.active,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "is_event_subscription": bool(self.is_event_subscription),
        }
        if self.status not in LIVE_STATUSES:
            record["status"] = self.status
            record["deleted_at"] = isoformat(self.deleted_at)
        return record

    def __repr__(self) -> str:
        return f"<Subscription {self.id} {self.target_class} -> {self.endpoint_url} [{self.status}]>"
