"""Tests for execution event publishing."""

import json

import pytest

from hitl_engine.core.notifications import Notifier, WORKFLOW_PAUSED


class FakeWebSocket:
    def __init__(self, broken=False):
        self.accepted = False
        self.broken = broken
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.broken and self.accepted and self.sent:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


@pytest.mark.asyncio
class TestNotifier:

    async def test_listeners_receive_every_event(self, notifier, events):
        await notifier.publish("exec-1", WORKFLOW_PAUSED, {"node_id": "H"})

        assert len(events) == 1
        assert events[0].event_type == "workflow:paused"
        assert events[0].data == {"node_id": "H"}

    async def test_failing_listener_does_not_raise(self, notifier, events):
        def broken(event):
            raise ValueError("listener bug")

        notifier.add_listener(broken)
        await notifier.publish("exec-1", "node_completed")

        assert [event.event_type for event in events] == ["node_completed"]

    async def test_only_subscribers_of_the_execution_get_events(self, notifier):
        watching, other = FakeWebSocket(), FakeWebSocket()
        watching_id = await notifier.connect(watching)
        other_id = await notifier.connect(other)
        await notifier.subscribe(watching_id, "exec-1")
        await notifier.subscribe(other_id, "exec-2")

        await notifier.publish("exec-1", "node_completed", {"node_id": "A"})

        assert [m["event_type"] for m in watching.sent] == [
            "connection_established", "subscription_confirmed", "node_completed"
        ]
        assert watching.sent[-1]["data"] == {"node_id": "A"}
        assert [m["event_type"] for m in other.sent] == ["connection_established", "subscription_confirmed"]
        assert notifier.get_subscriber_count("exec-1") == 1

    async def test_dead_socket_is_dropped(self, notifier):
        socket = FakeWebSocket(broken=True)
        subscriber_id = await notifier.connect(socket)

        # The confirmation send fails; the client is gone afterwards
        assert await notifier.subscribe(subscriber_id, "exec-1")
        assert notifier.get_connection_count() == 0
        assert notifier.get_subscriber_count("exec-1") == 0

        await notifier.publish("exec-1", "node_completed")

    async def test_disconnect_cleans_up(self, notifier):
        subscriber_id = await notifier.connect(FakeWebSocket())
        await notifier.subscribe(subscriber_id, "exec-1")

        await notifier.disconnect(subscriber_id)
        await notifier.disconnect(subscriber_id)

        assert notifier.get_connection_count() == 0
        assert notifier.get_subscriber_count("exec-1") == 0
        assert not await notifier.subscribe(subscriber_id, "exec-1")
