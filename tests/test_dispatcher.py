"""Tests for signed webhook delivery."""

import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from modelhook.core.errors import ConfigurationError, NotFoundError
from modelhook.delivery.dispatcher import DeliveryDispatcher, encode_payload
from modelhook.ingress.signer import Signer


class Recorder:
    """Mock transport handler that records every request it sees."""

    def __init__(self, status_code=200, delay=0.0, fail_hosts=()):
        self.status_code = status_code
        self.delay = delay
        self.fail_hosts = set(fail_hosts)
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if request.url.host in self.fail_hosts:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(self.status_code, json={"ok": True})


@pytest.fixture
def recorder():
    return Recorder()


@pytest_asyncio.fixture
async def dispatcher(store, secret, recorder):
    dispatcher = DeliveryDispatcher(store, secret, transport=httpx.MockTransport(recorder))
    yield dispatcher
    await dispatcher.aclose()


def test_missing_secret_is_rejected(store):
    with pytest.raises(ConfigurationError):
        DeliveryDispatcher(store, None)
    with pytest.raises(ConfigurationError):
        DeliveryDispatcher(store, "")


def test_encode_payload_is_compact():
    assert encode_payload({"a": 1, "b": [1, 2]}) == b'{"a":1,"b":[1,2]}'


class TestNotify:

    @pytest.mark.asyncio
    async def test_success_sends_signed_request_and_records_trigger(self, store, secret, dispatcher, recorder):
        sub = await store.subscribe("Order", ["created"], "https://hooks.example.com/orders")

        results = await dispatcher.notify("Order", "created", {"id": 7, "status": "new"})

        assert len(results) == 1
        assert results[0].success is True
        assert results[0].status_code == 200

        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://hooks.example.com/orders"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["X-Subscription-Id"] == sub.id
        assert request.headers["X-Signature"] == Signer.sign(request.content, secret)

        payload = json.loads(request.content)
        assert payload["event"] == "created"
        assert payload["model"] == "Order"
        assert payload["data"] == {"id": 7, "status": "new"}
        assert payload["metadata"] == {}
        assert request.headers["X-Timestamp"] == payload["timestamp"]

        reloaded = await store.find_by_id(sub.id)
        assert reloaded.trigger_count == 1
        assert reloaded.last_triggered_at is not None

    @pytest.mark.asyncio
    async def test_only_matching_active_subscriptions_receive(self, store, dispatcher, recorder):
        await store.subscribe("Order", ["created"], "https://a.example.com/hook")
        await store.subscribe("Order", ["deleted"], "https://b.example.com/hook")
        off = await store.subscribe("Order", ["created"], "https://c.example.com/hook")
        await store.set_active(off.id, False)

        results = await dispatcher.notify("Order", "created", {"id": 1})

        assert len(results) == 1
        assert [r.url.host for r in recorder.requests] == ["a.example.com"]

    @pytest.mark.asyncio
    async def test_no_subscriptions_returns_empty(self, dispatcher, recorder):
        assert await dispatcher.notify("Order", "created", {"id": 1}) == []
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_watched_properties_restrict_data(self, store, dispatcher, recorder):
        await store.subscribe(
            "Order", ["updated"], "https://hooks.example.com/o", watched_properties=["status", "missing"]
        )

        await dispatcher.notify("Order", "updated", {"id": 1, "status": "paid", "total": 10})

        payload = json.loads(recorder.requests[0].content)
        assert payload["data"] == {"status": "paid"}

    @pytest.mark.asyncio
    async def test_event_subscription_payload_uses_event_class(self, store, dispatcher, recorder):
        await store.subscribe(
            "OrderShipped", ["dispatched"], "https://hooks.example.com/e", is_event_subscription=True
        )

        await dispatcher.notify("OrderShipped", "dispatched", {"order_id": 3}, is_event_subscription=True)

        payload = json.loads(recorder.requests[0].content)
        assert payload["event_class"] == "OrderShipped"
        assert "model" not in payload

    @pytest.mark.asyncio
    async def test_source_trigger_lands_in_metadata(self, store, dispatcher, recorder):
        await store.subscribe("Order", ["created"], "https://hooks.example.com/o")

        await dispatcher.notify(
            "Order",
            "created",
            {"id": 1},
            metadata={"tenant": "acme"},
            source_trigger={"node_id": "n1", "workflow_id": "w1"},
        )

        metadata = json.loads(recorder.requests[0].content)["metadata"]
        assert metadata["tenant"] == "acme"
        assert metadata["source_trigger"]["node_id"] == "n1"
        assert metadata["source_trigger"]["workflow_id"] == "w1"
        assert metadata["source_trigger"]["timestamp"]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, store, secret):
        recorder = Recorder(fail_hosts={"down.example.com"})
        dispatcher = DeliveryDispatcher(store, secret, transport=httpx.MockTransport(recorder))
        up = await store.subscribe("Order", ["created"], "https://up.example.com/hook")
        down = await store.subscribe("Order", ["created"], "https://down.example.com/hook")

        results = {r.subscription_id: r for r in await dispatcher.notify("Order", "created", {"id": 1})}
        await dispatcher.aclose()

        assert results[up.id].success is True
        assert results[down.id].success is False

        failed = await store.find_by_id(down.id)
        assert failed.trigger_count == 0
        assert failed.last_error["code"] == "ConnectError"
        assert failed.last_error["occurred_at"]
        assert (await store.find_by_id(up.id)).last_error is None


class TestDeliver:

    @pytest.mark.asyncio
    async def test_non_2xx_records_error(self, store, secret):
        dispatcher = DeliveryDispatcher(store, secret, transport=httpx.MockTransport(Recorder(status_code=500)))
        sub = await store.subscribe("Order", ["created"], "https://hooks.example.com/o")

        results = await dispatcher.notify("Order", "created", {"id": 1})
        await dispatcher.aclose()

        assert results[0].success is False
        assert results[0].status_code == 500
        reloaded = await store.find_by_id(sub.id)
        assert reloaded.last_error["message"] == "HTTP 500"
        assert reloaded.last_error["code"] == 500
        assert reloaded.trigger_count == 0

    @pytest.mark.asyncio
    async def test_slow_endpoint_times_out(self, store, secret):
        dispatcher = DeliveryDispatcher(
            store, secret, timeout=0.05, transport=httpx.MockTransport(Recorder(delay=1.0))
        )
        sub = await store.subscribe("Order", ["created"], "https://slow.example.com/o")

        results = await dispatcher.notify("Order", "created", {"id": 1})
        await dispatcher.aclose()

        assert results[0].success is False
        assert (await store.find_by_id(sub.id)).last_error["code"] == "timeout"

    @pytest.mark.asyncio
    async def test_total_wait_bound_cancels_pending(self, store, secret):
        dispatcher = DeliveryDispatcher(
            store,
            secret,
            timeout=5.0,
            total_timeout=0.05,
            transport=httpx.MockTransport(Recorder(delay=1.0)),
        )
        sub = await store.subscribe("Order", ["created"], "https://slow.example.com/o")

        results = await dispatcher.notify("Order", "created", {"id": 1})
        await dispatcher.aclose()

        assert len(results) == 1
        assert results[0].success is False
        assert "cancelled" in results[0].error
        assert (await store.find_by_id(sub.id)).last_error["code"] == "timeout"

    @pytest.mark.asyncio
    async def test_test_deliver_sends_synthetic_event(self, store, dispatcher, recorder):
        sub = await store.subscribe(
            "Order", ["created"], "https://hooks.example.com/o", watched_properties=["status"]
        )

        result = await dispatcher.test_deliver(sub.id)

        assert result.success is True
        payload = json.loads(recorder.requests[0].content)
        assert payload["event"] == "test"
        assert payload["data"] == {"message": "Test notification", "subscription_id": sub.id}
        assert payload["metadata"] == {"test": True}

    @pytest.mark.asyncio
    async def test_test_deliver_unknown_id(self, dispatcher):
        with pytest.raises(NotFoundError):
            await dispatcher.test_deliver("missing")
