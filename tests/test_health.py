"""Tests for fleet and per-subscription health."""

from datetime import timedelta

import pytest

from modelhook.core.clock import utcnow
from modelhook.core.errors import NotFoundError
from modelhook.ops.health import HealthEvaluator, classify, recommendations


@pytest.fixture
def evaluator(store, registry):
    return HealthEvaluator(store, registry, stale_hours=24)


@pytest.mark.parametrize(
    "total, active, with_errors, stale, expected",
    [
        (0, 0, 0, 0, "no_subscriptions"),
        (5, 5, 4, 0, "critical"),
        (10, 10, 0, 6, "critical"),
        (10, 10, 2, 0, "warning"),
        (10, 10, 0, 4, "warning"),
        (10, 7, 0, 0, "warning"),
        (20, 19, 0, 0, "excellent"),
        (100, 100, 4, 0, "excellent"),
        (100, 90, 0, 0, "good"),
        (100, 100, 5, 0, "good"),
    ],
)
def test_classify(total, active, with_errors, stale, expected):
    assert classify(total, active, with_errors, stale) == expected


class TestRecommendations:

    def test_empty_fleet(self):
        advice = recommendations({"total": 0, "active": 0, "inactive": 0, "with_errors": 0, "stale": 0})

        assert [a["action"] for a in advice] == ["create_subscriptions"]

    def test_errors_stale_and_inactive(self):
        advice = recommendations({"total": 10, "active": 6, "inactive": 4, "with_errors": 2, "stale": 3})

        assert [a["action"] for a in advice] == ["review_errors", "review_stale", "cleanup_inactive"]
        assert advice[0]["type"] == "error"
        assert "2 subscription(s)" in advice[0]["message"]

    def test_stale_threshold_is_relative_to_active(self):
        advice = recommendations({"total": 10, "active": 10, "inactive": 0, "with_errors": 0, "stale": 3})

        assert advice == []


class TestSubscriptionHealth:

    @pytest.mark.asyncio
    async def test_states(self, store, evaluator, backdate):
        now = utcnow()
        sub = await store.subscribe("Order", ["created"], "https://hooks.example.com/a")

        assert evaluator.subscription_health(await store.find_by_id(sub.id), now) == "pending"

        backdate(sub.id, created_at=now - timedelta(hours=24, seconds=1))
        assert evaluator.subscription_health(await store.find_by_id(sub.id), now) == "stale"

        backdate(sub.id, last_triggered_at=now - timedelta(hours=23, minutes=59, seconds=59))
        assert evaluator.subscription_health(await store.find_by_id(sub.id), now) == "healthy"

        backdate(sub.id, last_triggered_at=now - timedelta(hours=24, seconds=1))
        assert evaluator.subscription_health(await store.find_by_id(sub.id), now) == "stale"

        await store.record_error(sub.id, {"message": "HTTP 500", "code": 500})
        assert evaluator.subscription_health(await store.find_by_id(sub.id), now) == "error"

        await store.set_active(sub.id, False)
        assert evaluator.subscription_health(await store.find_by_id(sub.id), now) == "inactive"

    @pytest.mark.asyncio
    async def test_issues(self, store, evaluator, backdate):
        now = utcnow()
        sub = await store.subscribe("Order", ["created"], "https://hooks.example.com/a")
        backdate(sub.id, created_at=now - timedelta(days=2))
        await store.record_error(sub.id, {"message": "HTTP 502", "code": 502})

        issues = evaluator.subscription_issues(await store.find_by_id(sub.id), now)

        assert [i["type"] for i in issues] == ["error", "never_triggered"]
        assert issues[0]["message"] == "HTTP 502"


class TestFleet:

    @pytest.mark.asyncio
    async def test_mostly_failing_fleet_is_critical(self, store, evaluator):
        subs = [
            await store.subscribe("Order", ["created"], f"https://hooks.example.com/{i}")
            for i in range(5)
        ]
        for sub in subs[:4]:
            await store.record_error(sub.id, {"message": "HTTP 500", "code": 500})

        report = await evaluator.health_check()

        assert report["overall_health"] == "critical"
        assert report["statistics"]["total"] == 5
        assert report["statistics"]["with_errors"] == 4
        assert report["statistics"]["models"] == {"Order": 5}
        assert report["statistics"]["events"] == {"created": 5}
        assert report["recent_activity"]["created"] == 5
        assert "review_errors" in [r["action"] for r in report["recommendations"]]

    @pytest.mark.asyncio
    async def test_empty_fleet(self, evaluator):
        report = await evaluator.health_check()

        assert report["overall_health"] == "no_subscriptions"
        assert report["statistics"]["total"] == 0

    @pytest.mark.asyncio
    async def test_detailed_hides_healthy_by_default(self, store, evaluator):
        healthy = await store.subscribe("Order", ["created"], "https://hooks.example.com/h")
        await store.record_trigger(healthy.id)
        failing = await store.subscribe("Order", ["created"], "https://hooks.example.com/f")
        await store.record_error(failing.id, {"message": "HTTP 500", "code": 500})

        report = await evaluator.detailed_health()
        assert [row["id"] for row in report["data"]] == [failing.id]
        assert report["data"][0]["health_status"] == "error"

        report = await evaluator.detailed_health(include_healthy=True, per_page=1, page=2)
        assert report["pagination"] == {"current_page": 2, "per_page": 1, "total": 2, "last_page": 2}
        assert len(report["data"]) == 1

    @pytest.mark.asyncio
    async def test_detailed_caps_page_size(self, evaluator):
        report = await evaluator.detailed_health(per_page=500)

        assert report["pagination"]["per_page"] == 100
        assert report["pagination"]["last_page"] == 1

    @pytest.mark.asyncio
    async def test_analytics(self, store, evaluator):
        sub = await store.subscribe("Order", ["created", "updated"], "https://hooks.example.com/a")
        await store.record_trigger(sub.id)
        await store.record_trigger(sub.id)

        report = await evaluator.analytics(days=90)

        assert report["period"]["days"] == 30
        assert sum(row["count"] for row in report["creation_trends"]) == 1
        assert sum(row["total_triggers"] for row in report["trigger_activity"]) == 2
        assert report["model_usage"] == [{"target_class": "Order", "subscription_count": 1, "total_triggers": 2}]
        assert {row["event"] for row in report["event_usage"]} == {"created", "updated"}
        assert report["error_trends"] == []


class TestValidate:

    @pytest.mark.asyncio
    async def test_valid_subscription(self, store, evaluator):
        sub = await store.subscribe("Order", ["created"], "https://hooks.example.com/a")

        result = await evaluator.validate_subscription(sub.id)

        assert result["validation"]["is_valid"] is True
        checks = result["validation"]["checks"]
        assert checks["has_activity"]["passed"] is False
        assert checks["no_recent_errors"]["passed"] is True

    def test_unregistered_target_and_bad_event(self, store, evaluator):
        sub = store.build({
            "target_class": "Ghost",
            "events": ["created", "exploded"],
            "endpoint_url": "not a url",
        })

        result = evaluator.validate(sub)

        assert result["is_valid"] is False
        assert result["checks"]["target_exists"]["passed"] is False
        assert result["checks"]["url_valid"]["passed"] is False
        assert result["checks"]["events_valid"]["invalid_events"] == ["exploded"]

    @pytest.mark.asyncio
    async def test_unknown_id(self, evaluator):
        with pytest.raises(NotFoundError):
            await evaluator.validate_subscription("missing")
