"""Fleet and per-subscription health evaluation."""

import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

import structlog

from modelhook.core.clock import ensure_utc, isoformat, utcnow
from modelhook.core.errors import NotFoundError
from modelhook.subscriptions.database import SubscriptionStore, is_stale
from modelhook.subscriptions.models import Subscription
from modelhook.subscriptions.registry import TargetRegistry, vocabulary_for
from modelhook.subscriptions.schemas import is_valid_url

logger = structlog.get_logger("modelhook")

MAX_PER_PAGE = 100
MAX_ANALYTICS_DAYS = 30


def classify(total: int, active: int, with_errors: int, stale: int) -> str:
    """Overall fleet health from subscription counts.

    Thresholds are checked in order: critical, warning, excellent, good.
    """
    if total == 0:
        return "no_subscriptions"

    error_pct = with_errors / total * 100
    stale_pct = stale / total * 100
    active_pct = active / total * 100

    if error_pct > 20 or stale_pct > 50:
        return "critical"
    if error_pct > 10 or stale_pct > 30 or active_pct < 80:
        return "warning"
    if active_pct >= 95 and error_pct < 5:
        return "excellent"
    return "good"


def recommendations(stats: dict[str, Any]) -> list[dict[str, str]]:
    """Advice derived from fleet statistics. Pure; touches no storage."""
    advice: list[dict[str, str]] = []
    with_errors = stats.get("with_errors", 0)
    stale = stats.get("stale", 0)
    active = stats.get("active", 0)
    inactive = stats.get("inactive", 0)

    if with_errors > 0:
        advice.append({
            "type": "error",
            "message": f"You have {with_errors} subscription(s) with errors. Review and fix these subscriptions.",
            "action": "review_errors",
        })
    if stale > active * 0.3:
        advice.append({
            "type": "warning",
            "message": "Many subscriptions haven't been triggered recently. Consider reviewing your model events.",
            "action": "review_stale",
        })
    if inactive > 0:
        advice.append({
            "type": "info",
            "message": f"You have {inactive} inactive subscription(s). Consider cleaning up unused subscriptions.",
            "action": "cleanup_inactive",
        })
    if stats.get("total", 0) == 0:
        advice.append({
            "type": "info",
            "message": "No webhook subscriptions found. Create subscriptions to start receiving model events.",
            "action": "create_subscriptions",
        })
    return advice


class HealthEvaluator:
    """Computes health views over the subscription store."""

    def __init__(
        self,
        store: SubscriptionStore,
        registry: TargetRegistry | None = None,
        stale_hours: int = 24,
    ) -> None:
        self.store = store
        self.registry = registry or TargetRegistry()
        self.stale_hours = stale_hours

    classify = staticmethod(classify)
    recommendations = staticmethod(recommendations)

    async def fleet_stats(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        subscriptions = await self.store.all()
        models: dict[str, int] = defaultdict(int)
        events: dict[str, int] = defaultdict(int)
        for subscription in subscriptions:
            models[subscription.target_class] += 1
            for event in subscription.events or []:
                events[event] += 1

        return {
            "total": await self.store.count_all(),
            "active": await self.store.count_active(),
            "inactive": await self.store.count_inactive(),
            "with_errors": await self.store.count_with_errors(),
            "stale": await self.store.count_stale(self.stale_hours, now=now),
            "total_triggers": await self.store.total_triggers(),
            "models": dict(models),
            "events": dict(events),
        }

    def subscription_health(self, subscription: Subscription, now: datetime | None = None) -> str:
        if not subscription.active:
            return "inactive"
        if subscription.last_error:
            return "error"
        if subscription.last_triggered_at is None:
            return "stale" if is_stale(subscription, self.stale_hours, now) else "pending"
        if is_stale(subscription, self.stale_hours, now):
            return "stale"
        return "healthy"

    def subscription_issues(self, subscription: Subscription, now: datetime | None = None) -> list[dict[str, Any]]:
        issues: list[dict[str, Any]] = []
        if not subscription.active:
            issues.append({"type": "inactive", "message": "Subscription is inactive", "severity": "warning"})
        if subscription.last_error:
            issues.append({
                "type": "error",
                "message": subscription.last_error.get("message") or "Unknown error",
                "severity": "error",
                "occurred_at": subscription.last_error.get("occurred_at"),
            })
        if is_stale(subscription, self.stale_hours, now):
            if subscription.last_triggered_at is None:
                issues.append({
                    "type": "never_triggered",
                    "message": "Subscription has never been triggered",
                    "severity": "warning",
                })
            else:
                issues.append({
                    "type": "stale",
                    "message": "Subscription has not been triggered recently",
                    "severity": "info",
                    "last_triggered": isoformat(subscription.last_triggered_at),
                })
        return issues

    def validate(self, subscription: Subscription) -> dict[str, Any]:
        """Structural and activity checks. Only the structural ones decide ``is_valid``."""
        target_exists = self.registry.exists(subscription.target_class)
        url_valid = is_valid_url(subscription.endpoint_url)

        vocabulary = vocabulary_for(bool(subscription.is_event_subscription))
        allowed = self.registry.allowed_events(subscription.target_class) or vocabulary
        events = list(subscription.events or [])
        invalid_events = [e for e in events if e not in allowed]
        events_valid = bool(events) and not invalid_events

        has_activity = (subscription.trigger_count or 0) > 0
        has_errors = subscription.last_error is not None

        checks = {
            "target_exists": {
                "passed": target_exists,
                "message": "Target is registered" if target_exists else "Target is not registered",
            },
            "url_valid": {
                "passed": url_valid,
                "message": "Webhook URL is valid" if url_valid else "Webhook URL is invalid",
            },
            "events_valid": {
                "passed": events_valid,
                "message": "All events are valid" if events_valid else "Some events are invalid",
                "invalid_events": invalid_events,
            },
            "has_activity": {
                "passed": has_activity,
                "message": "Subscription has activity" if has_activity else "Subscription has no activity",
                "trigger_count": subscription.trigger_count or 0,
            },
            "no_recent_errors": {
                "passed": not has_errors,
                "message": "Subscription has recent errors" if has_errors else "No recent errors",
                "last_error": subscription.last_error,
            },
        }
        return {"is_valid": target_exists and url_valid and events_valid, "checks": checks}

    async def recent_activity(self, now: datetime | None = None) -> dict[str, int]:
        """Counts over the last 24 hours."""
        now = now or utcnow()
        since = now - timedelta(hours=24)
        subscriptions = await self.store.all()
        return {
            "created": sum(1 for s in subscriptions if ensure_utc(s.created_at) >= since),
            "triggered": sum(
                1 for s in subscriptions if s.last_triggered_at and ensure_utc(s.last_triggered_at) >= since
            ),
            "errors": sum(1 for s in subscriptions if s.last_error and ensure_utc(s.updated_at) >= since),
        }

    async def health_check(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        stats = await self.fleet_stats(now=now)
        overall = classify(stats["total"], stats["active"], stats["with_errors"], stats["stale"])
        logger.info("Health check completed", overall_health=overall, total=stats["total"])
        return {
            "overall_health": overall,
            "statistics": stats,
            "recent_activity": await self.recent_activity(now=now),
            "recommendations": recommendations(stats),
            "last_checked": isoformat(now),
        }

    def _describe(self, subscription: Subscription, now: datetime) -> dict[str, Any]:
        return {
            "id": subscription.id,
            "target_class": subscription.target_class,
            "events": subscription.events,
            "endpoint_url": subscription.endpoint_url,
            "active": subscription.active,
            "health_status": self.subscription_health(subscription, now),
            "trigger_count": subscription.trigger_count or 0,
            "last_triggered_at": isoformat(subscription.last_triggered_at),
            "last_error": subscription.last_error,
            "created_at": isoformat(subscription.created_at),
            "issues": self.subscription_issues(subscription, now),
        }

    async def detailed_health(
        self,
        page: int = 1,
        per_page: int = 20,
        include_healthy: bool = False,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Per-subscription health, newest first. Healthy rows are hidden unless requested."""
        now = now or utcnow()
        per_page = max(1, min(per_page, MAX_PER_PAGE))
        page = max(1, page)

        subscriptions = sorted(await self.store.all(), key=lambda s: s.created_at, reverse=True)
        if not include_healthy:
            subscriptions = [s for s in subscriptions if self.subscription_health(s, now) != "healthy"]

        total = len(subscriptions)
        start = (page - 1) * per_page
        window = subscriptions[start:start + per_page]
        return {
            "data": [self._describe(s, now) for s in window],
            "pagination": {
                "current_page": page,
                "per_page": per_page,
                "total": total,
                "last_page": max(1, math.ceil(total / per_page)),
            },
        }

    async def validate_subscription(self, subscription_id: str) -> dict[str, Any]:
        subscription = await self.store.find_by_id(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", subscription_id=subscription_id)
        return {
            "subscription_id": subscription.id,
            "health_status": self.subscription_health(subscription),
            "validation": self.validate(subscription),
        }

    async def analytics(self, days: int = 7, now: datetime | None = None) -> dict[str, Any]:
        """Usage trends over the last ``days`` (at most 30)."""
        now = now or utcnow()
        days = max(1, min(days, MAX_ANALYTICS_DAYS))
        start = now - timedelta(days=days)
        subscriptions = await self.store.all()

        creation: dict[str, int] = defaultdict(int)
        triggers: dict[str, int] = defaultdict(int)
        errors: dict[str, int] = defaultdict(int)
        model_usage: dict[str, dict[str, int]] = {}
        event_usage: dict[str, dict[str, int]] = {}

        for subscription in subscriptions:
            created_at = ensure_utc(subscription.created_at)
            if created_at >= start:
                creation[created_at.date().isoformat()] += 1

            last_triggered_at = ensure_utc(subscription.last_triggered_at)
            if last_triggered_at and last_triggered_at >= start:
                triggers[last_triggered_at.date().isoformat()] += subscription.trigger_count or 0

            updated_at = ensure_utc(subscription.updated_at)
            if subscription.last_error and updated_at >= start:
                errors[updated_at.date().isoformat()] += 1

            usage = model_usage.setdefault(
                subscription.target_class,
                {"subscription_count": 0, "total_triggers": 0},
            )
            usage["subscription_count"] += 1
            usage["total_triggers"] += subscription.trigger_count or 0

            for event in subscription.events or []:
                usage = event_usage.setdefault(event, {"subscription_count": 0, "total_triggers": 0})
                usage["subscription_count"] += 1
                usage["total_triggers"] += subscription.trigger_count or 0

        return {
            "period": {
                "start_date": start.date().isoformat(),
                "end_date": now.date().isoformat(),
                "days": days,
            },
            "creation_trends": [{"date": d, "count": c} for d, c in sorted(creation.items())],
            "trigger_activity": [{"date": d, "total_triggers": c} for d, c in sorted(triggers.items())],
            "model_usage": sorted(
                ({"target_class": name, **usage} for name, usage in model_usage.items()),
                key=lambda row: row["subscription_count"],
                reverse=True,
            ),
            "event_usage": [{"event": name, **usage} for name, usage in sorted(event_usage.items())],
            "error_trends": [{"date": d, "error_count": c} for d, c in sorted(errors.items())],
            "generated_at": isoformat(now),
        }
