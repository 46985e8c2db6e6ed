"""Database service for subscription storage."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, create_engine, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from modelhook.core.clock import ensure_utc, isoformat, utcnow
from modelhook.core.errors import ValidationError
from modelhook.subscriptions.models import (
    LIVE_STATUSES,
    Base,
    SecurityOptions,
    Subscription,
    SubscriptionStatus,
)
from modelhook.subscriptions.schemas import is_valid_url

logger = structlog.get_logger("modelhook")

UPDATABLE_FIELDS = (
    "target_class",
    "events",
    "endpoint_url",
    "watched_properties",
    "node_id",
    "workflow_id",
    "verify_hmac",
    "require_timestamp",
    "expected_source_ip",
)


def is_stale(subscription: Subscription, hours: int, now: datetime | None = None) -> bool:
    """A live subscription is stale when it has not fired within ``hours``.

    Never-triggered subscriptions count from their creation time.
    """
    cutoff = (now or utcnow()) - timedelta(hours=hours)
    last_triggered_at = ensure_utc(subscription.last_triggered_at)
    if last_triggered_at is None:
        return ensure_utc(subscription.created_at) < cutoff
    return last_triggered_at < cutoff


def stale_clause(cutoff: datetime):
    """SQL form of :func:`is_stale`."""
    return or_(
        and_(Subscription.last_triggered_at.is_(None), Subscription.created_at < cutoff),
        Subscription.last_triggered_at < cutoff,
    )


def live_clause():
    return Subscription.status.in_(LIVE_STATUSES)


def check_record(events: Any, endpoint_url: Any) -> None:
    """Every stored subscription listens for at least one event at an absolute http(s) URL."""
    errors: dict[str, list[str]] = {}
    if not isinstance(events, (list, tuple)) or not events:
        errors["events"] = ["must not be empty"]
    if not is_valid_url(endpoint_url):
        errors["webhook_url"] = ["must be an absolute http(s) URL"]
    if errors:
        raise ValidationError("Invalid subscription", errors)


class SubscriptionStore:
    """Durable subscription records with idempotent upsert-by-endpoint."""

    def __init__(self, dsn: str | None = None, engine=None) -> None:
        if engine is None:
            if dsn is None:
                from modelhook.config import settings

                dsn = settings.database_dsn
            engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
            if dsn.startswith("postgresql"):
                engine_kwargs["pool_recycle"] = 3600
                engine_kwargs["connect_args"] = {
                    "connect_timeout": 10,
                    "application_name": "modelhook",
                }
            engine = create_engine(dsn, **engine_kwargs)
        self.engine = engine
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )
        self._locks: dict[tuple[str, bool], list] = {}
        self._locks_guard = threading.Lock()

    def create_tables(self) -> None:
        """Create all database tables and indexes."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Subscription tables ensured")

    def get_session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on any error."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _endpoint_lock(self, endpoint_url: str, is_event_subscription: bool) -> Iterator[None]:
        """Serialise writers for one endpoint. The entry is dropped once no writer holds it."""
        key = (endpoint_url, bool(is_event_subscription))
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        target_class: str,
        events: list[str],
        endpoint_url: str,
        watched_properties: list[str] | None = None,
        security: SecurityOptions | dict | None = None,
        is_event_subscription: bool = False,
        node_id: str | None = None,
        workflow_id: str | None = None,
    ) -> Subscription:
        """Create a subscription or update the live one registered for the same endpoint.

        Re-subscribing keeps ``id`` and ``created_at``, reactivates the row and
        clears any recorded error.
        """
        check_record(events, endpoint_url)
        security = SecurityOptions.from_value(security)
        values = {
            "target_class": target_class,
            "events": list(events),
            "endpoint_url": endpoint_url,
            "watched_properties": list(watched_properties) if watched_properties else None,
            "node_id": node_id,
            "workflow_id": workflow_id,
            "verify_hmac": security.verify_hmac,
            "require_timestamp": security.require_timestamp,
            "expected_source_ip": security.expected_source_ip,
        }

        with self._endpoint_lock(endpoint_url, is_event_subscription):
            try:
                return self._upsert(values, is_event_subscription)
            except IntegrityError:
                # Another writer inserted the same endpoint first; update it instead.
                logger.info("Concurrent subscribe detected, retrying as update", endpoint_url=endpoint_url)
                return self._upsert(values, is_event_subscription)

    def _upsert(self, values: dict[str, Any], is_event_subscription: bool) -> Subscription:
        with self.transaction() as session:
            subscription = (
                session.query(Subscription)
                .filter(
                    and_(
                        Subscription.endpoint_url == values["endpoint_url"],
                        Subscription.is_event_subscription == bool(is_event_subscription),
                        live_clause(),
                    )
                )
                .first()
            )
            if subscription is not None:
                for key, value in values.items():
                    setattr(subscription, key, value)
                subscription.status = SubscriptionStatus.ACTIVE.value
                subscription.last_error = None
                subscription.updated_at = utcnow()
                session.flush()
                logger.info(
                    "Subscription updated",
                    subscription_id=subscription.id,
                    target_class=subscription.target_class,
                    endpoint_url=subscription.endpoint_url,
                )
                return subscription

            subscription = Subscription(
                **values,
                is_event_subscription=bool(is_event_subscription),
                status=SubscriptionStatus.ACTIVE.value,
                trigger_count=0,
            )
            session.add(subscription)
            session.flush()
            logger.info(
                "Subscription created",
                subscription_id=subscription.id,
                target_class=subscription.target_class,
                endpoint_url=subscription.endpoint_url,
                events=subscription.events,
            )
            return subscription

    def build(self, record: dict[str, Any]) -> Subscription:
        """Build an unsaved Subscription from a normalised record dict."""
        status = record.get("status")
        if status is None:
            status = SubscriptionStatus.ACTIVE.value if record.get("active", True) else SubscriptionStatus.INACTIVE.value
        now = utcnow()
        security = SecurityOptions.from_value(record.get("security"))
        kwargs: dict[str, Any] = {
            "target_class": record["target_class"],
            "events": list(record["events"]),
            "endpoint_url": record["endpoint_url"],
            "watched_properties": list(record["watched_properties"]) if record.get("watched_properties") else None,
            "node_id": record.get("node_id"),
            "workflow_id": record.get("workflow_id"),
            "verify_hmac": security.verify_hmac,
            "require_timestamp": security.require_timestamp,
            "expected_source_ip": security.expected_source_ip,
            "is_event_subscription": bool(record.get("is_event_subscription", False)),
            "status": status,
            "trigger_count": int(record.get("trigger_count") or 0),
            "last_triggered_at": record.get("last_triggered_at"),
            "created_at": record.get("created_at") or now,
            "updated_at": record.get("updated_at") or now,
        }
        if status not in LIVE_STATUSES:
            kwargs["deleted_at"] = record.get("deleted_at") or kwargs["updated_at"]
            if status == SubscriptionStatus.ARCHIVED.value:
                kwargs["archived_at"] = kwargs["deleted_at"]
        if record.get("id"):
            kwargs["id"] = str(record["id"])
        return Subscription(**kwargs)

    async def create(self, **record: Any) -> Subscription:
        """Insert a row as given, optionally with an explicit id and created_at."""
        check_record(record.get("events"), record.get("endpoint_url"))
        with self.transaction() as session:
            subscription = self.build(record)
            session.add(subscription)
            session.flush()
            return subscription

    async def update(self, subscription_id: str, changes: dict[str, Any]) -> Subscription | None:
        """Apply a partial update. Returns None when the id is unknown or not live."""
        with self.transaction() as session:
            subscription = self._live(session, subscription_id)
            if subscription is None:
                return None
            if "security" in changes and changes["security"] is not None:
                security = SecurityOptions.from_value(changes["security"])
                changes = {**changes, **security.to_dict()}
            check_record(
                changes.get("events", subscription.events),
                changes.get("endpoint_url", subscription.endpoint_url),
            )
            for key in UPDATABLE_FIELDS:
                if key in changes:
                    setattr(subscription, key, changes[key])
            if "active" in changes and changes["active"] is not None:
                subscription.status = (
                    SubscriptionStatus.ACTIVE.value if changes["active"] else SubscriptionStatus.INACTIVE.value
                )
            subscription.updated_at = utcnow()
            session.flush()
            logger.info("Subscription modified", subscription_id=subscription_id, fields=sorted(changes))
            return subscription

    async def set_active(self, subscription_id: str, active: bool) -> bool:
        return await self.update(subscription_id, {"active": active}) is not None

    async def soft_delete(self, subscription_id: str) -> bool:
        """Mark a live subscription deleted. It stays queryable for audit."""
        with self.transaction() as session:
            subscription = self._live(session, subscription_id)
            if subscription is None:
                return False
            now = utcnow()
            subscription.status = SubscriptionStatus.DELETED.value
            subscription.deleted_at = now
            subscription.updated_at = now
        logger.info("Subscription deleted", subscription_id=subscription_id)
        return True

    async def archive(self, subscription_id: str) -> bool:
        return await self.archive_many([subscription_id]) == 1

    async def archive_many(self, subscription_ids: list[str]) -> int:
        """Archive live subscriptions in a single transaction."""
        if not subscription_ids:
            return 0
        now = utcnow()
        with self.transaction() as session:
            rows = (
                session.query(Subscription)
                .filter(and_(Subscription.id.in_(subscription_ids), live_clause()))
                .all()
            )
            for subscription in rows:
                subscription.status = SubscriptionStatus.ARCHIVED.value
                subscription.archived_at = now
                subscription.deleted_at = now
                subscription.updated_at = now
            return len(rows)

    async def hard_delete(self, subscription_id: str) -> bool:
        return await self.hard_delete_many([subscription_id]) == 1

    async def hard_delete_many(self, subscription_ids: list[str]) -> int:
        """Permanently remove rows in a single transaction."""
        if not subscription_ids:
            return 0
        with self.transaction() as session:
            return (
                session.query(Subscription)
                .filter(Subscription.id.in_(subscription_ids))
                .delete(synchronize_session=False)
            )

    async def delete_all(self) -> int:
        with self.transaction() as session:
            return session.query(Subscription).delete(synchronize_session=False)

    async def record_trigger(self, subscription_id: str) -> bool:
        """Count a successful delivery and clear the last error."""
        with self.transaction() as session:
            subscription = session.query(Subscription).filter(Subscription.id == subscription_id).first()
            if subscription is None:
                return False
            now = utcnow()
            subscription.trigger_count = (subscription.trigger_count or 0) + 1
            subscription.last_triggered_at = now
            subscription.last_error = None
            subscription.updated_at = now
            return True

    async def record_error(self, subscription_id: str, error: dict[str, Any]) -> bool:
        with self.transaction() as session:
            subscription = session.query(Subscription).filter(Subscription.id == subscription_id).first()
            if subscription is None:
                return False
            now = utcnow()
            occurred_at = error.get("occurred_at") or now
            if isinstance(occurred_at, datetime):
                occurred_at = isoformat(occurred_at)
            subscription.last_error = {
                "message": str(error.get("message", "")),
                "code": error.get("code"),
                "occurred_at": occurred_at,
            }
            subscription.updated_at = now
            return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _live(self, session: Session, subscription_id: str) -> Subscription | None:
        return (
            session.query(Subscription)
            .filter(and_(Subscription.id == subscription_id, live_clause()))
            .first()
        )

    async def find_by_id(self, subscription_id: str, include_deleted: bool = False) -> Subscription | None:
        with self.get_session() as session:
            if include_deleted:
                return session.query(Subscription).filter(Subscription.id == subscription_id).first()
            return self._live(session, subscription_id)

    async def find_by_endpoint(self, endpoint_url: str, is_event_subscription: bool = False) -> Subscription | None:
        with self.get_session() as session:
            return (
                session.query(Subscription)
                .filter(
                    and_(
                        Subscription.endpoint_url == endpoint_url,
                        Subscription.is_event_subscription == bool(is_event_subscription),
                        live_clause(),
                    )
                )
                .first()
            )

    async def existing_ids(self, subscription_ids: list[str]) -> set[str]:
        if not subscription_ids:
            return set()
        with self.get_session() as session:
            rows = session.query(Subscription.id).filter(Subscription.id.in_(subscription_ids)).all()
            return {row[0] for row in rows}

    async def all(self, include_deleted: bool = False) -> list[Subscription]:
        with self.get_session() as session:
            query = session.query(Subscription)
            if not include_deleted:
                query = query.filter(live_clause())
            return query.order_by(Subscription.created_at).all()

    async def list_active(self) -> list[Subscription]:
        with self.get_session() as session:
            return (
                session.query(Subscription)
                .filter(Subscription.status == SubscriptionStatus.ACTIVE.value)
                .order_by(Subscription.created_at)
                .all()
            )

    async def list_inactive(self) -> list[Subscription]:
        with self.get_session() as session:
            return (
                session.query(Subscription)
                .filter(Subscription.status == SubscriptionStatus.INACTIVE.value)
                .order_by(Subscription.created_at)
                .all()
            )

    async def for_model_event(
        self,
        target_class: str,
        event: str,
        is_event_subscription: bool | None = None,
    ) -> list[Subscription]:
        """Active subscriptions on ``target_class`` whose event list includes ``event``."""
        with self.get_session() as session:
            query = session.query(Subscription).filter(
                and_(
                    Subscription.target_class == target_class,
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                )
            )
            if is_event_subscription is not None:
                query = query.filter(Subscription.is_event_subscription == bool(is_event_subscription))
            rows = query.order_by(Subscription.created_at).all()
        # JSON containment differs per dialect, so the event match happens here.
        return [row for row in rows if event in (row.events or [])]

    async def stale(self, hours: int, now: datetime | None = None) -> list[Subscription]:
        cutoff = (now or utcnow()) - timedelta(hours=hours)
        with self.get_session() as session:
            return (
                session.query(Subscription)
                .filter(and_(live_clause(), stale_clause(cutoff)))
                .order_by(Subscription.created_at)
                .all()
            )

    async def with_errors(self) -> list[Subscription]:
        with self.get_session() as session:
            return (
                session.query(Subscription)
                .filter(and_(live_clause(), Subscription.last_error.isnot(None)))
                .order_by(Subscription.updated_at.desc())
                .all()
            )

    async def query(
        self,
        target_class: str | None = None,
        event: str | None = None,
        active: bool | None = None,
        is_event_subscription: bool | None = None,
        node_id: str | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> tuple[list[Subscription], int]:
        """Filtered, paginated listing of live subscriptions."""
        with self.get_session() as session:
            query = session.query(Subscription).filter(live_clause())
            if target_class:
                query = query.filter(Subscription.target_class == target_class)
            if active is not None:
                status = SubscriptionStatus.ACTIVE if active else SubscriptionStatus.INACTIVE
                query = query.filter(Subscription.status == status.value)
            if is_event_subscription is not None:
                query = query.filter(Subscription.is_event_subscription == bool(is_event_subscription))
            if node_id:
                query = query.filter(Subscription.node_id == node_id)
            rows = query.order_by(Subscription.created_at.desc()).all()

        if event:
            rows = [row for row in rows if event in (row.events or [])]
        return rows[skip:skip + limit], len(rows)

    async def cleanup_candidates(
        self,
        status: SubscriptionStatus | None = None,
        has_error: bool | None = None,
        never_triggered: bool | None = None,
        updated_before: datetime | None = None,
        created_before: datetime | None = None,
    ) -> list[Subscription]:
        with self.get_session() as session:
            query = session.query(Subscription).filter(live_clause())
            if status is not None:
                query = query.filter(Subscription.status == status.value)
            if has_error:
                query = query.filter(Subscription.last_error.isnot(None))
            if never_triggered:
                query = query.filter(Subscription.last_triggered_at.is_(None))
            if updated_before is not None:
                query = query.filter(Subscription.updated_at < updated_before)
            if created_before is not None:
                query = query.filter(Subscription.created_at < created_before)
            return query.order_by(Subscription.created_at).all()

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def count_all(self) -> int:
        with self.get_session() as session:
            return session.query(func.count(Subscription.id)).filter(live_clause()).scalar() or 0

    async def count_active(self) -> int:
        with self.get_session() as session:
            return (
                session.query(func.count(Subscription.id))
                .filter(Subscription.status == SubscriptionStatus.ACTIVE.value)
                .scalar()
                or 0
            )

    async def count_inactive(self) -> int:
        with self.get_session() as session:
            return (
                session.query(func.count(Subscription.id))
                .filter(Subscription.status == SubscriptionStatus.INACTIVE.value)
                .scalar()
                or 0
            )

    async def count_with_errors(self) -> int:
        with self.get_session() as session:
            return (
                session.query(func.count(Subscription.id))
                .filter(and_(live_clause(), Subscription.last_error.isnot(None)))
                .scalar()
                or 0
            )

    async def count_stale(self, hours: int, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - timedelta(hours=hours)
        with self.get_session() as session:
            return (
                session.query(func.count(Subscription.id))
                .filter(and_(live_clause(), stale_clause(cutoff)))
                .scalar()
                or 0
            )

    async def total_triggers(self) -> int:
        with self.get_session() as session:
            return session.query(func.sum(Subscription.trigger_count)).filter(live_clause()).scalar() or 0
