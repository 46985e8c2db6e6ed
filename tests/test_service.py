"""Tests for subscription management above the store."""

import pytest

from modelhook.core.errors import NotFoundError, ValidationError
from modelhook.subscriptions.models import SubscriptionStatus
from modelhook.subscriptions.schemas import SubscriptionCreate
from modelhook.subscriptions.service import SubscriptionService


@pytest.fixture
def service(store, registry):
    return SubscriptionService(store, registry)


async def _two(service):
    first = await service.subscribe(
        SubscriptionCreate(model="Order", events=["created"], webhook_url="https://hooks.example.com/1")
    )
    second = await service.subscribe(
        SubscriptionCreate(model="Order", events=["updated"], webhook_url="https://hooks.example.com/2")
    )
    return first, second


class TestBulk:

    @pytest.mark.asyncio
    async def test_outcome_per_id(self, service, store):
        first, second = await _two(service)

        result = await service.bulk("deactivate", [first.id, second.id, "missing"])

        assert result["results"] == {
            first.id: "deactivated",
            second.id: "deactivated",
            "missing": "error: subscription not found",
        }
        assert result["processed"] == 2
        assert result["failed"] == ["missing"]
        assert (await store.find_by_id(first.id)).status == SubscriptionStatus.INACTIVE.value

    @pytest.mark.asyncio
    async def test_activate_and_delete(self, service, store):
        first, second = await _two(service)
        await service.bulk("deactivate", [first.id])

        activated = await service.bulk("activate", [first.id])
        deleted = await service.bulk("delete", [first.id, second.id])

        assert activated["results"] == {first.id: "activated"}
        assert deleted["results"] == {first.id: "deleted", second.id: "deleted"}
        assert await store.count_all() == 0

        again = await service.bulk("delete", [first.id])
        assert again["results"] == {first.id: "error: subscription not found"}

    @pytest.mark.asyncio
    async def test_unknown_action(self, service):
        with pytest.raises(ValidationError):
            await service.bulk("explode", ["anything"])


class TestSubscribe:

    @pytest.mark.asyncio
    async def test_unregistered_target(self, service):
        with pytest.raises(NotFoundError):
            await service.subscribe(
                SubscriptionCreate(model="Ghost", events=["created"], webhook_url="https://hooks.example.com/g")
            )
