"""
Tests for OrderChannel: subscriptions and the connectivity state machine,
initial load and its reconciliation with pushed messages, row updates,
and the send_message write path.
"""

from __future__ import annotations

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

from custom_components.washman.backend import BackendError, NotAuthenticatedError, SubscribeState
from custom_components.washman.models import ConnectionState, Message
from custom_components.washman.order_channel import (
    CONNECT_ERROR,
    TIMEOUT_ERROR,
    OrderChannel,
    insert_message,
)

from .test_common import (
    ORDER_ID,
    USER_ID,
    WASHER_ID,
    FakeBackend,
    location_event,
    message_event,
    message_row,
    order_update_event,
)

ORDER_TOPIC = f"order:{ORDER_ID}"
LOCATION_TOPIC = f"washer-location:{ORDER_ID}"


def _message(message_id: str, created_at: str) -> Message:
    return Message.from_row(message_row(message_id, created_at))


class TestInsertMessage(unittest.TestCase):

    def test_appends_in_order(self):
        messages = insert_message((), _message("a", "2024-05-01T10:00:00Z"))
        messages = insert_message(messages, _message("b", "2024-05-01T10:01:00Z"))
        self.assertEqual([m.id for m in messages], ["a", "b"])

    def test_out_of_order_insert_is_placed_by_created_at(self):
        messages = (
            _message("a", "2024-05-01T10:00:00Z"),
            _message("c", "2024-05-01T10:02:00Z"),
        )
        messages = insert_message(messages, _message("b", "2024-05-01T10:01:00Z"))
        self.assertEqual([m.id for m in messages], ["a", "b", "c"])

    def test_duplicate_id_returns_input_unchanged(self):
        messages = (_message("a", "2024-05-01T10:00:00Z"),)
        self.assertIs(insert_message(messages, _message("a", "2024-05-01T10:00:00Z")), messages)

    def test_equal_timestamps_keep_arrival_order(self):
        messages = (_message("a", "2024-05-01T10:00:00Z"),)
        messages = insert_message(messages, _message("b", "2024-05-01T10:00:00Z"))
        self.assertEqual([m.id for m in messages], ["a", "b"])

    def test_mixed_offsets_compare_as_instants(self):
        messages = (_message("a", "2024-05-01T12:00:00+02:00"),)
        messages = insert_message(messages, _message("b", "2024-05-01T09:30:00Z"))
        self.assertEqual([m.id for m in messages], ["b", "a"])


class ChannelTestCase(unittest.IsolatedAsyncioTestCase):

    def _make_channel(self, **kwargs) -> OrderChannel:
        self.backend = FakeBackend()
        channel = OrderChannel(self.backend, ORDER_ID, **kwargs)
        self.addAsyncCleanup(channel.stop)
        return channel

    async def _start(self, channel: OrderChannel) -> None:
        await channel.start()
        await self.backend.push_status(ORDER_TOPIC, SubscribeState.SUBSCRIBED)


class TestOrderChannelSubscriptions(ChannelTestCase):

    async def test_start_subscribes_order_and_location_topics(self):
        channel = self._make_channel()
        await channel.start()

        order_bindings = self.backend.bindings[ORDER_TOPIC]
        self.assertEqual(
            [(b.kind, b.event, b.table, b.filter) for b in order_bindings],
            [
                ("postgres_changes", "UPDATE", "orders", f"id=eq.{ORDER_ID}"),
                ("postgres_changes", "INSERT", "messages", f"order_id=eq.{ORDER_ID}"),
            ],
        )
        self.assertIn(LOCATION_TOPIC, self.backend.bindings)

    async def test_initial_state_is_disconnected(self):
        channel = self._make_channel()
        self.assertEqual(channel.state.connection, ConnectionState.DISCONNECTED)
        self.assertFalse(channel.is_connected)
        self.assertEqual(channel.messages, ())

    async def test_acknowledgment_connects(self):
        channel = self._make_channel()
        await self._start(channel)
        self.assertTrue(channel.is_connected)
        self.assertIsNone(channel.error)

    async def test_channel_error_sets_errored_state(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_status(ORDER_TOPIC, SubscribeState.CHANNEL_ERROR, "boom")

        self.assertEqual(channel.state.connection, ConnectionState.ERRORED)
        self.assertFalse(channel.is_connected)
        self.assertEqual(channel.error, CONNECT_ERROR)

    async def test_timed_out_status_sets_timeout_error(self):
        channel = self._make_channel()
        await channel.start()
        await self.backend.push_status(ORDER_TOPIC, SubscribeState.TIMED_OUT)
        self.assertEqual(channel.state.connection, ConnectionState.ERRORED)
        self.assertEqual(channel.error, TIMEOUT_ERROR)

    async def test_reconnect_after_error_clears_error(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_status(ORDER_TOPIC, SubscribeState.CHANNEL_ERROR)
        await asyncio.sleep(0)

        await self._start(channel)

        order_subscriptions = [s for s in self.backend.subscriptions if s.topic == ORDER_TOPIC]
        self.assertEqual(len(order_subscriptions), 2)
        self.assertTrue(order_subscriptions[0].closed)
        self.assertTrue(channel.is_connected)
        self.assertIsNone(channel.error)

    async def test_closed_status_disconnects(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_status(ORDER_TOPIC, SubscribeState.CLOSED)
        self.assertEqual(channel.state.connection, ConnectionState.DISCONNECTED)

    async def test_start_after_server_close_resubscribes(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_status(ORDER_TOPIC, SubscribeState.CLOSED)
        await asyncio.sleep(0)

        await self._start(channel)

        order_subscriptions = [s for s in self.backend.subscriptions if s.topic == ORDER_TOPIC]
        self.assertEqual(len(order_subscriptions), 2)
        self.assertTrue(order_subscriptions[0].closed)
        self.assertTrue(channel.is_connected)

    async def test_location_feed_reopened_after_it_drops(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_status(LOCATION_TOPIC, SubscribeState.CHANNEL_ERROR)
        await asyncio.sleep(0)

        await channel.start()

        location_subscriptions = [s for s in self.backend.subscriptions if s.topic == LOCATION_TOPIC]
        self.assertEqual(len(location_subscriptions), 2)
        self.assertTrue(location_subscriptions[0].closed)
        self.assertFalse(location_subscriptions[1].closed)

    def _hold_subscribe(self, topic: str) -> asyncio.Event:
        """Block backend.subscribe for topic until the returned event is set."""
        gate = asyncio.Event()
        original = self.backend.subscribe

        async def slow_subscribe(*args):
            if args[0] == topic:
                await gate.wait()
            return await original(*args)

        self.backend.subscribe = slow_subscribe
        return gate

    async def test_stop_while_order_subscribe_in_flight_releases_late_subscription(self):
        channel = self._make_channel()
        gate = self._hold_subscribe(ORDER_TOPIC)
        task = asyncio.ensure_future(channel.start())
        await asyncio.sleep(0)
        await channel.stop()
        gate.set()
        await task

        self.assertEqual([s.topic for s in self.backend.subscriptions], [ORDER_TOPIC])
        self.assertTrue(self.backend.subscriptions[0].closed)
        self.backend.unsubscribe.assert_awaited_once()
        self.backend.get_order.assert_not_awaited()
        self.assertEqual(channel.state.connection, ConnectionState.DISCONNECTED)

    async def test_stop_while_location_subscribe_in_flight_releases_both(self):
        channel = self._make_channel()
        gate = self._hold_subscribe(LOCATION_TOPIC)
        task = asyncio.ensure_future(channel.start())
        for _ in range(3):
            await asyncio.sleep(0)
        await channel.stop()
        gate.set()
        await task

        self.assertEqual(
            [s.topic for s in self.backend.subscriptions], [ORDER_TOPIC, LOCATION_TOPIC]
        )
        self.assertTrue(all(s.closed for s in self.backend.subscriptions))
        self.assertEqual(self.backend.unsubscribe.await_count, 2)
        self.backend.get_order.assert_not_awaited()

    async def test_missing_acknowledgment_times_out(self):
        channel = self._make_channel(ack_timeout=0.01)
        await channel.start()
        await asyncio.sleep(0.05)
        self.assertEqual(channel.state.connection, ConnectionState.ERRORED)
        self.assertEqual(channel.error, TIMEOUT_ERROR)

    async def test_subscribe_failure_is_state_not_exception(self):
        channel = self._make_channel()
        self.backend.subscribe_error = BackendError("unreachable")
        await channel.start()
        self.assertEqual(channel.state.connection, ConnectionState.ERRORED)
        self.assertEqual(channel.error, CONNECT_ERROR)

    async def test_stop_closes_both_subscriptions(self):
        channel = self._make_channel()
        await self._start(channel)
        await channel.stop()

        self.assertEqual(channel.state.connection, ConnectionState.DISCONNECTED)
        self.assertEqual(self.backend.unsubscribe.await_count, 2)
        self.assertTrue(all(s.closed for s in self.backend.subscriptions))

    async def test_stop_twice_is_safe(self):
        channel = self._make_channel()
        await self._start(channel)
        await channel.stop()
        await channel.stop()
        self.assertEqual(self.backend.unsubscribe.await_count, 2)

    async def test_listener_called_on_change(self):
        channel = self._make_channel()
        listener = MagicMock()
        channel.add_listener(listener)
        await self._start(channel)
        self.assertGreaterEqual(listener.call_count, 2)


class TestOrderChannelLoad(ChannelTestCase):

    async def test_load_sets_status_and_messages(self):
        channel = self._make_channel()
        self.backend.order_row["estimated_arrival"] = "2024-05-01T10:30:00Z"
        self.backend.message_rows = [
            message_row("m2", "2024-05-01T10:01:00Z"),
            message_row("m1", "2024-05-01T10:00:00Z"),
        ]
        await channel.start()

        self.assertEqual(channel.order_status, "assigned")
        self.assertEqual(channel.state.washer_id, WASHER_ID)
        self.assertEqual(channel.estimated_arrival, "2024-05-01T10:30:00Z")
        self.assertEqual([m.id for m in channel.messages], ["m1", "m2"])

    async def test_failed_order_fetch_keeps_previous_status(self):
        channel = self._make_channel()
        await channel.start()
        self.backend.get_order.side_effect = BackendError("order fetch failed")
        self.backend.message_rows = [message_row("m1", "2024-05-01T10:00:00Z")]

        await channel.refetch()

        self.assertEqual(channel.order_status, "assigned")
        self.assertEqual([m.id for m in channel.messages], ["m1"])

    async def test_failed_message_fetch_keeps_existing_log(self):
        channel = self._make_channel()
        self.backend.message_rows = [message_row("m1", "2024-05-01T10:00:00Z")]
        await channel.start()
        self.backend.get_messages.side_effect = BackendError("messages fetch failed")

        await channel.refetch()

        self.assertEqual([m.id for m in channel.messages], ["m1"])

    async def test_malformed_message_row_skipped(self):
        channel = self._make_channel()
        bad = message_row("x", "2024-05-01T10:00:00Z")
        del bad["id"]
        self.backend.message_rows = [bad, message_row("m1", "2024-05-01T10:01:00Z")]
        await channel.start()
        self.assertEqual([m.id for m in channel.messages], ["m1"])

    async def test_fetched_and_pushed_copies_deduplicated(self):
        channel = self._make_channel()
        self.backend.message_rows = [message_row("m1", "2024-05-01T10:00:00Z")]
        await self._start(channel)

        await self.backend.push_event(ORDER_TOPIC, message_event("m1", "2024-05-01T10:00:00Z"))
        await channel.refetch()

        self.assertEqual([m.id for m in channel.messages], ["m1"])

    async def test_message_pushed_during_load_survives(self):
        channel = self._make_channel()
        self.backend.message_rows = [message_row("m1", "2024-05-01T10:00:00Z")]
        await self._start(channel)

        gate = asyncio.Event()

        async def slow_messages(order_id):
            await gate.wait()
            return [message_row("m1", "2024-05-01T10:00:00Z")]

        self.backend.get_messages = AsyncMock(side_effect=slow_messages)
        load = asyncio.ensure_future(channel.load())
        await asyncio.sleep(0)

        await self.backend.push_event(ORDER_TOPIC, message_event("m2", "2024-05-01T10:05:00Z"))
        gate.set()
        await load

        self.assertEqual([m.id for m in channel.messages], ["m1", "m2"])


class TestOrderChannelEvents(ChannelTestCase):

    async def test_order_update_changes_status(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_event(
            ORDER_TOPIC, order_update_event("on_the_way", estimated_arrival="2024-05-01T11:00:00Z")
        )
        self.assertEqual(channel.order_status, "on_the_way")
        self.assertEqual(channel.estimated_arrival, "2024-05-01T11:00:00Z")

    async def test_unknown_status_kept_verbatim(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_event(ORDER_TOPIC, order_update_event("rescheduled"))
        self.assertEqual(channel.order_status, "rescheduled")

    async def test_message_insert_appended(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_event(ORDER_TOPIC, message_event("m1", "2024-05-01T10:00:00Z", content="On my way"))
        self.assertEqual(len(channel.messages), 1)
        self.assertEqual(channel.messages[0].content, "On my way")
        self.assertEqual(channel.messages[0].sender_type, "washer")

    async def test_duplicate_insert_does_not_notify(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_event(ORDER_TOPIC, message_event("m1", "2024-05-01T10:00:00Z"))
        listener = MagicMock()
        channel.add_listener(listener)
        await self.backend.push_event(ORDER_TOPIC, message_event("m1", "2024-05-01T10:00:00Z"))
        listener.assert_not_called()
        self.assertEqual(len(channel.messages), 1)

    async def test_late_message_ordered_by_created_at(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_event(ORDER_TOPIC, message_event("m2", "2024-05-01T10:02:00Z"))
        await self.backend.push_event(ORDER_TOPIC, message_event("m1", "2024-05-01T10:01:00Z"))
        self.assertEqual([m.id for m in channel.messages], ["m1", "m2"])

    async def test_washer_location_broadcast_recorded(self):
        channel = self._make_channel()
        await self._start(channel)
        await self.backend.push_event(LOCATION_TOPIC, location_event(30.05, 31.24, speed=3))
        self.assertEqual(channel.washer_location.washer_id, WASHER_ID)
        self.assertEqual(channel.washer_location.position.latitude, 30.05)
        self.assertEqual(channel.washer_location.position.speed, 3.0)


class TestOrderChannelSendMessage(ChannelTestCase):

    async def test_send_without_user_rejected_before_network(self):
        channel = self._make_channel()
        self.backend.user_id = None

        with self.assertRaises(NotAuthenticatedError):
            await channel.send_message("Hello")

        self.backend.insert_message.assert_not_awaited()
        self.assertEqual(channel.error, "Not authenticated")

    async def test_send_inserts_customer_row(self):
        channel = self._make_channel()
        await self._start(channel)

        await channel.send_message("Please use the side gate", is_quick_reply=True)

        self.backend.insert_message.assert_awaited_once_with(
            {
                "order_id": ORDER_ID,
                "sender_id": USER_ID,
                "sender_type": "customer",
                "content": "Please use the side gate",
            }
        )
        # The pushed INSERT is what appends the message
        self.assertEqual(channel.messages, ())

    async def test_send_failure_sets_error_and_raises(self):
        channel = self._make_channel()
        await self._start(channel)
        self.backend.insert_message.side_effect = BackendError("insert failed")

        with self.assertRaises(BackendError):
            await channel.send_message("Hello")

        self.assertEqual(channel.error, "insert failed")
