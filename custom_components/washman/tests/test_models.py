"""
Tests for models.py: payload and row parsing, status normalisation and
timestamp handling.
"""

from __future__ import annotations

import dataclasses
import unittest
from datetime import timezone

from custom_components.washman.models import (
    ConnectionState,
    Message,
    OrderState,
    Position,
    WasherLocation,
    normalize_status,
    parse_timestamp,
)

from .test_common import message_row


class TestPosition(unittest.TestCase):

    def test_from_payload_full(self):
        position = Position.from_payload(
            {"latitude": "30.05", "longitude": 31.24, "heading": 180, "speed": "4.2", "timestamp": "t"}
        )
        self.assertEqual(position, Position(30.05, 31.24, 180.0, 4.2, "t"))

    def test_from_payload_optional_fields_missing(self):
        position = Position.from_payload({"latitude": 30.05, "longitude": 31.24})
        self.assertIsNone(position.heading)
        self.assertIsNone(position.speed)
        self.assertEqual(position.timestamp, "")

    def test_from_payload_requires_coordinates(self):
        with self.assertRaises(KeyError):
            Position.from_payload({"latitude": 30.05})

    def test_non_numeric_coordinate_rejected(self):
        with self.assertRaises(ValueError):
            Position.from_payload({"latitude": "north", "longitude": 31.24})

    def test_frozen(self):
        position = Position(30.0, 31.0)
        with self.assertRaises(dataclasses.FrozenInstanceError):
            position.latitude = 1.0

    def test_washer_location_keeps_washer_id(self):
        location = WasherLocation.from_payload({"washer_id": "w1", "latitude": 1, "longitude": 2})
        self.assertEqual(location.washer_id, "w1")
        self.assertEqual(location.position.longitude, 2.0)


class TestMessage(unittest.TestCase):

    def test_from_row(self):
        message = Message.from_row(message_row("m1", "2024-05-01T10:00:00Z", content="Hi"))
        self.assertEqual(message.id, "m1")
        self.assertEqual(message.sender_type, "washer")
        self.assertEqual(message.content, "Hi")
        self.assertFalse(message.is_quick_reply)
        self.assertIsNone(message.read_at)

    def test_read_flag_uses_created_at(self):
        message = Message.from_row(message_row("m1", "2024-05-01T10:00:00Z", is_read=True))
        self.assertEqual(message.read_at, "2024-05-01T10:00:00Z")

    def test_explicit_read_at_preferred(self):
        message = Message.from_row(
            message_row("m1", "2024-05-01T10:00:00Z", is_read=True, read_at="2024-05-01T10:03:00Z")
        )
        self.assertEqual(message.read_at, "2024-05-01T10:03:00Z")

    def test_numeric_id_stringified(self):
        message = Message.from_row(message_row(7, "2024-05-01T10:00:00Z"))
        self.assertEqual(message.id, "7")

    def test_created_parsed(self):
        message = Message.from_row(message_row("m1", "2024-05-01T10:00:00Z"))
        self.assertEqual(message.created.tzinfo, timezone.utc)
        self.assertEqual(message.created.hour, 10)


class TestHelpers(unittest.TestCase):

    def test_parse_timestamp_variants(self):
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(""))
        self.assertIsNone(parse_timestamp("yesterday"))
        self.assertEqual(parse_timestamp("2024-05-01T10:00:00.123456+00:00").microsecond, 123456)

    def test_normalize_known_status(self):
        self.assertEqual(normalize_status("on_the_way"), "on_the_way")

    def test_normalize_unknown_status_kept(self):
        self.assertEqual(normalize_status("rescheduled"), "rescheduled")
        self.assertIsNone(normalize_status(None))


class TestOrderState(unittest.TestCase):

    def test_default_is_disconnected(self):
        state = OrderState()
        self.assertEqual(state.connection, ConnectionState.DISCONNECTED)
        self.assertFalse(state.is_connected)

    def test_connected(self):
        self.assertTrue(OrderState(connection=ConnectionState.CONNECTED).is_connected)
