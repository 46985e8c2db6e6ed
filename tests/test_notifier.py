"""Tests for change notification gating."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from modelhook.delivery.notifier import ChangeNotifier, is_webhook_origin


@pytest.fixture
def dispatcher():
    mock = MagicMock()
    mock.notify = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def notifier(dispatcher, registry):
    return ChangeNotifier(dispatcher, registry, loop_prevention=True)


@pytest.mark.parametrize(
    "origin, expected",
    [
        (None, False),
        ({}, False),
        ({"is_webhook_origin": True}, True),
        ({"source_trigger": {"node_id": "n1"}}, True),
        ({"node_id": "n1"}, False),
    ],
)
def test_is_webhook_origin(origin, expected):
    assert is_webhook_origin(origin) is expected


class TestShouldNotify:

    def test_plain_change_notifies(self, notifier):
        assert notifier.should_notify("Order", "created") == (True, None)

    def test_webhook_origin_is_suppressed(self, notifier):
        assert notifier.should_notify("Order", "updated", {"is_webhook_origin": True}) == (
            False,
            "loop_prevention",
        )

    def test_loop_prevention_can_be_disabled(self, dispatcher, registry):
        notifier = ChangeNotifier(dispatcher, registry, loop_prevention=False)

        assert notifier.should_notify("Order", "updated", {"is_webhook_origin": True}) == (True, None)

    def test_unwatched_update_is_suppressed(self, notifier):
        assert notifier.should_notify("Invoice", "updated", changed_fields=["note"]) == (
            False,
            "unwatched_attributes",
        )
        assert notifier.should_notify("Invoice", "updated", changed_fields=["amount", "note"]) == (True, None)

    def test_watched_attributes_only_gate_updates(self, notifier):
        assert notifier.should_notify("Invoice", "created", changed_fields=["note"]) == (True, None)

    def test_unknown_changed_fields_notify(self, notifier):
        assert notifier.should_notify("Invoice", "updated") == (True, None)


class TestOnChange:

    @pytest.mark.asyncio
    async def test_suppressed_change_never_reaches_dispatcher(self, notifier, dispatcher):
        result = await notifier.on_change(
            "Order", "updated", {"id": 1}, origin_metadata={"is_webhook_origin": True}
        )

        assert result is None
        dispatcher.notify.assert_not_called()

    @pytest.mark.asyncio
    async def test_forwards_change(self, notifier, dispatcher):
        result = await notifier.on_change("Order", "created", {"id": 1}, metadata={"tenant": "acme"})

        assert result == []
        dispatcher.notify.assert_awaited_once_with(
            "Order",
            "created",
            {"id": 1},
            metadata={"tenant": "acme"},
            source_trigger=None,
            is_event_subscription=False,
        )

    @pytest.mark.asyncio
    async def test_origin_node_becomes_source_trigger(self, notifier, dispatcher):
        await notifier.on_change(
            "Order", "created", {"id": 1}, origin_metadata={"node_id": "n1", "workflow_id": "w1"}
        )

        source_trigger = dispatcher.notify.await_args.kwargs["source_trigger"]
        assert source_trigger == {"node_id": "n1", "workflow_id": "w1", "model": "Order", "event": "created"}
