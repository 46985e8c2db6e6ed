"""Entry point the host application calls when a domain object changes."""

from typing import Any

import structlog

from modelhook.delivery.dispatcher import DeliveryDispatcher, DeliveryResult
from modelhook.delivery.metrics import metrics
from modelhook.subscriptions.registry import TargetRegistry

logger = structlog.get_logger("modelhook")


def is_webhook_origin(origin_metadata: dict[str, Any] | None) -> bool:
    """True when the write itself came from an inbound workflow webhook."""
    if not origin_metadata:
        return False
    return bool(origin_metadata.get("source_trigger") or origin_metadata.get("is_webhook_origin"))


class ChangeNotifier:
    """Decides whether a change should fan out, then hands it to the dispatcher.

    Origin information is always passed in explicitly by the caller; the
    notifier never inspects ambient request or session state.
    """

    def __init__(
        self,
        dispatcher: DeliveryDispatcher,
        registry: TargetRegistry | None = None,
        loop_prevention: bool = True,
    ) -> None:
        self.dispatcher = dispatcher
        self.registry = registry
        self.loop_prevention = loop_prevention

    def should_notify(
        self,
        target_class: str,
        event_kind: str,
        origin_metadata: dict[str, Any] | None = None,
        changed_fields: list[str] | None = None,
    ) -> tuple[bool, str | None]:
        """Return ``(notify, reason_if_not)``."""
        if self.loop_prevention and is_webhook_origin(origin_metadata):
            return False, "loop_prevention"

        if event_kind == "updated" and self.registry is not None and changed_fields is not None:
            descriptor = self.registry.get(target_class)
            if descriptor and descriptor.watched_attributes:
                if not set(changed_fields) & set(descriptor.watched_attributes):
                    return False, "unwatched_attributes"

        return True, None

    async def on_change(
        self,
        target_class: str,
        event_kind: str,
        entity_snapshot: dict[str, Any],
        origin_metadata: dict[str, Any] | None = None,
        changed_fields: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        is_event_subscription: bool = False,
    ) -> list[DeliveryResult] | None:
        """Fan out a change. Returns None when the change was suppressed."""
        notify, reason = self.should_notify(target_class, event_kind, origin_metadata, changed_fields)
        if not notify:
            metrics.record_suppressed(reason)
            logger.info(
                "Change notification suppressed",
                target_class=target_class,
                event_kind=event_kind,
                reason=reason,
            )
            return None

        source_trigger = None
        if origin_metadata and isinstance(origin_metadata.get("source_trigger"), dict):
            source_trigger = dict(origin_metadata["source_trigger"])
        elif origin_metadata and (origin_metadata.get("node_id") or origin_metadata.get("workflow_id")):
            source_trigger = {
                "node_id": origin_metadata.get("node_id"),
                "workflow_id": origin_metadata.get("workflow_id"),
                "model": target_class,
                "event": event_kind,
            }

        return await self.dispatcher.notify(
            target_class,
            event_kind,
            entity_snapshot,
            metadata=metadata,
            source_trigger=source_trigger,
            is_event_subscription=is_event_subscription,
        )
