"""
Unit tests for realtime event parsing.
"""

import pytest
from pydantic import ValidationError

from portal.schoolsync.realtime.events import EventType, RealtimeEvent, parse_timestamp


class TestRealtimeEventParsing:
    """Tests for RealtimeEvent.from_message."""

    def test_socket_shape(self):
        event = RealtimeEvent.from_message(
            {
                "table": "users",
                "event": "UPDATE",
                "data": {"id": "u1", "status": "approved"},
                "oldData": {"id": "u1", "status": "pending"},
            }
        )
        assert event.table == "users"
        assert event.event_type == EventType.UPDATE
        assert event.record_id == "u1"
        assert event.record == {"id": "u1", "status": "approved"}
        assert event.old_record == {"id": "u1", "status": "pending"}

    def test_payload_shape_with_bare_id(self):
        event = RealtimeEvent.from_message({"table": "users", "eventType": "delete", "payload": "u7"})
        assert event.event_type == EventType.DELETE
        assert event.record_id == "u7"
        assert event.record is None

    def test_delete_id_from_old_data(self):
        event = RealtimeEvent.from_message(
            {"table": "terms", "event": "DELETE", "oldData": {"id": 12}}
        )
        assert event.record_id == 12

    def test_custom_id_field(self):
        event = RealtimeEvent.from_message(
            {"table": "grades", "event": "INSERT", "data": {"grade_id": "g1"}},
            id_field="grade_id",
        )
        assert event.record_id == "g1"

    def test_timestamp_parsed(self):
        event = RealtimeEvent.from_message(
            {"table": "users", "event": "UPDATE", "data": {"id": "u1"}, "timestamp": 1700000000000}
        )
        assert event.timestamp == 1700000000.0

    def test_unknown_event_rejected(self):
        with pytest.raises(ValidationError):
            RealtimeEvent.from_message({"table": "users", "event": "TRUNCATE"})

    def test_missing_table_rejected(self):
        with pytest.raises(ValidationError):
            RealtimeEvent.from_message({"event": "INSERT", "data": {}})

    def test_constructors(self):
        assert RealtimeEvent.insert("users", {"id": "u1"}).record_id == "u1"
        assert RealtimeEvent.delete("users", "u1").event_type == EventType.DELETE


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_seconds_and_millis(self):
        assert parse_timestamp(1700000000) == 1700000000.0
        assert parse_timestamp(1700000000500) == 1700000000.5

    def test_iso_strings(self):
        assert parse_timestamp("2024-01-01T00:00:00Z") == parse_timestamp("2024-01-01T00:00:00+00:00")
        assert parse_timestamp("2024-01-01T00:00:01Z") - parse_timestamp("2024-01-01T00:00:00Z") == 1

    def test_numeric_string(self):
        assert parse_timestamp("1700000000") == 1700000000.0

    def test_unparseable(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(True) is None
