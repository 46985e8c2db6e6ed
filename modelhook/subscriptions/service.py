"""Subscription management used by the API and by embedding applications."""

from typing import Any

import structlog

from modelhook.core.errors import NotFoundError, ValidationError
from modelhook.subscriptions.database import SubscriptionStore
from modelhook.subscriptions.models import SecurityOptions, Subscription
from modelhook.subscriptions.registry import TargetRegistry, vocabulary_for
from modelhook.subscriptions.schemas import SubscriptionCreate, SubscriptionUpdate, is_valid_url

logger = structlog.get_logger("modelhook")

BULK_OUTCOMES = {"activate": "activated", "deactivate": "deactivated", "delete": "deleted"}


class SubscriptionService:
    """Validates requests against the target registry before touching the store."""

    def __init__(self, store: SubscriptionStore, registry: TargetRegistry) -> None:
        self.store = store
        self.registry = registry

    def _validate_events(self, target_class: str, events: list[str], is_event_subscription: bool) -> None:
        if not events:
            raise ValidationError("At least one event is required", {"events": ["must not be empty"]})

        vocabulary = vocabulary_for(is_event_subscription)
        allowed = self.registry.allowed_events(target_class) or vocabulary
        invalid = [e for e in events if e not in vocabulary or e not in allowed]
        if invalid:
            raise ValidationError(
                "Unsupported events",
                {"events": [f"'{e}' is not one of: {', '.join(allowed)}" for e in invalid]},
            )

    def _validate_url(self, url: str) -> None:
        if not is_valid_url(url):
            raise ValidationError("Invalid webhook URL", {"webhook_url": ["must be an absolute http(s) URL"]})

    def _require_target(self, target_class: str, is_event_subscription: bool) -> None:
        if not self.registry.exists(target_class, is_event_subscription):
            kind = "Event" if is_event_subscription else "Model"
            raise NotFoundError(f"{kind} '{target_class}' is not registered", target=target_class)

    async def subscribe(self, request: SubscriptionCreate) -> Subscription:
        """Register ``request.webhook_url`` for changes on ``request.model``."""
        self._require_target(request.model, request.is_event_subscription)
        self._validate_events(request.model, request.events, request.is_event_subscription)
        self._validate_url(request.webhook_url)

        subscription = await self.store.subscribe(
            target_class=request.model,
            events=request.events,
            endpoint_url=request.webhook_url,
            watched_properties=request.properties,
            security=SecurityOptions(
                verify_hmac=request.verify_hmac,
                require_timestamp=request.require_timestamp,
                expected_source_ip=request.expected_source_ip,
            ),
            is_event_subscription=request.is_event_subscription,
            node_id=request.node_id,
            workflow_id=request.workflow_id,
        )
        logger.info(
            "Webhook subscribed",
            subscription_id=subscription.id,
            target_class=subscription.target_class,
            node_id=subscription.node_id,
        )
        return subscription

    async def unsubscribe(self, subscription_id: str) -> None:
        if not await self.store.soft_delete(subscription_id):
            raise NotFoundError("Subscription not found", subscription_id=subscription_id)

    async def get(self, subscription_id: str) -> Subscription:
        subscription = await self.store.find_by_id(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", subscription_id=subscription_id)
        return subscription

    async def update(self, subscription_id: str, request: SubscriptionUpdate) -> Subscription:
        current = await self.get(subscription_id)
        changes: dict[str, Any] = {}

        if request.events is not None:
            self._validate_events(current.target_class, request.events, current.is_event_subscription)
            changes["events"] = request.events
        if request.webhook_url is not None and request.webhook_url != current.endpoint_url:
            self._validate_url(request.webhook_url)
            other = await self.store.find_by_endpoint(request.webhook_url, current.is_event_subscription)
            if other is not None and other.id != current.id:
                raise ValidationError(
                    "Webhook URL already subscribed",
                    {"webhook_url": [f"already used by subscription {other.id}"]},
                )
            changes["endpoint_url"] = request.webhook_url
        if request.properties is not None:
            changes["watched_properties"] = request.properties or None
        for key in ("node_id", "workflow_id", "verify_hmac", "require_timestamp", "expected_source_ip", "active"):
            value = getattr(request, key)
            if value is not None:
                changes[key] = value

        subscription = await self.store.update(subscription_id, changes)
        if subscription is None:
            raise NotFoundError("Subscription not found", subscription_id=subscription_id)
        return subscription

    async def list_subscriptions(
        self,
        target_class: str | None = None,
        event: str | None = None,
        active: bool | None = None,
        page: int = 1,
        size: int = 50,
    ) -> tuple[list[Subscription], int]:
        return await self.store.query(
            target_class=target_class,
            event=event,
            active=active,
            skip=(page - 1) * size,
            limit=size,
        )

    async def bulk(self, action: str, subscription_ids: list[str]) -> dict[str, Any]:
        """Activate, deactivate or delete many subscriptions.

        Returns the outcome per id: ``activated``, ``deactivated``, ``deleted``
        or ``error: <reason>``. Unknown ids are reported, not raised.
        """
        if action not in BULK_OUTCOMES:
            raise ValidationError("Unsupported bulk action", {"action": [action]})

        results: dict[str, str] = {}
        for subscription_id in subscription_ids:
            try:
                if action == "delete":
                    ok = await self.store.soft_delete(subscription_id)
                else:
                    ok = await self.store.set_active(subscription_id, action == "activate")
            except ValidationError as e:
                results[subscription_id] = f"error: {e.message}"
                continue
            results[subscription_id] = BULK_OUTCOMES[action] if ok else "error: subscription not found"

        failed = [i for i, outcome in results.items() if outcome.startswith("error")]
        logger.info(
            "Bulk subscription operation",
            action=action,
            processed=len(results) - len(failed),
            failed=len(failed),
        )
        return {
            "action": action,
            "results": results,
            "processed": len(results) - len(failed),
            "failed": failed,
        }

    async def stats(self) -> dict[str, Any]:
        """Counts by state plus per-target and per-event breakdowns."""
        subscriptions = await self.store.all()
        models: dict[str, int] = {}
        events: dict[str, int] = {}
        for subscription in subscriptions:
            models[subscription.target_class] = models.get(subscription.target_class, 0) + 1
            for event in subscription.events or []:
                events[event] = events.get(event, 0) + 1

        return {
            "total": len(subscriptions),
            "active": sum(1 for s in subscriptions if s.active),
            "inactive": sum(1 for s in subscriptions if not s.active),
            "with_errors": sum(1 for s in subscriptions if s.last_error),
            "total_triggers": sum(s.trigger_count or 0 for s in subscriptions),
            "models": models,
            "events": events,
        }
