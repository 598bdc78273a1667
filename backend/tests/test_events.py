"""Tests for inbound frame parsing and outbound envelopes."""
import json
from datetime import datetime

import pytest

from roomwire.errors import ValidationError
from roomwire.realtime.events import (
    InboundEvent,
    OutboundEvent,
    ReadNotice,
    envelope,
    parse_frame,
)
from roomwire.store import MessageType, UserStatus


class TestParseFrame:
    def test_send_message(self):
        event, payload = parse_frame(json.dumps({
            "event": "send_message",
            "data": {"roomId": "r1", "content": "hi", "replyToId": "m0"},
        }))

        assert event == InboundEvent.SEND_MESSAGE
        assert payload.roomId == "r1"
        assert payload.type == MessageType.TEXT
        assert payload.replyToId == "m0"
        assert payload.files is None

    def test_accepts_bytes_and_dicts(self):
        event, _ = parse_frame(b'{"event": "typing_start", "data": {"roomId": "r1"}}')
        assert event == InboundEvent.TYPING_START

        event, payload = parse_frame({"event": "leave_room", "data": "r1"})
        assert event == InboundEvent.LEAVE_ROOM
        assert payload.roomId == "r1"

    def test_mark_read_single_or_many(self):
        _, single = parse_frame({"event": "mark_read", "data": {"messageId": "m1"}})
        _, many = parse_frame({"event": "mark_read", "data": {"messageIds": ["m1", "m2"]}})

        assert single.ids == ["m1"]
        assert many.ids == ["m1", "m2"]

    @pytest.mark.parametrize("data", [
        {},
        {"messageId": "m1", "messageIds": ["m2"]},
        {"messageIds": []},
    ])
    def test_mark_read_needs_exactly_one_target(self, data):
        with pytest.raises(ValidationError):
            parse_frame({"event": "mark_read", "data": data})

    def test_update_status(self):
        _, payload = parse_frame({"event": "update_status", "data": {"status": "away"}})
        assert payload.status == UserStatus.AWAY

        with pytest.raises(ValidationError):
            parse_frame({"event": "update_status", "data": {"status": "offline"}})

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2]",
        '{"data": {}}',
        '{"event": "join_room", "data": {"roomId": "r1"}, "extra": 1}',
        '{"event": "nope", "data": {}}',
        '{"event": "join_room"}',
        '{"event": "join_room", "data": {"roomId": ""}}',
        '{"event": "add_reaction", "data": {"messageId": "m1"}}',
        '{"event": "send_message", "data": {"roomId": "r1", "colour": "red"}}',
    ])
    def test_rejects_malformed_frames(self, raw):
        with pytest.raises(ValidationError):
            parse_frame(raw)


class TestEnvelope:
    def test_wire_shape(self):
        notice = ReadNotice(messageId="m1", userId="u1", readAt=datetime(2024, 1, 2, 3, 4, 5))

        wire = envelope(OutboundEvent.MESSAGE_READ, notice).to_wire()

        assert wire["event"] == "message_read"
        assert wire["data"]["messageId"] == "m1"
        assert wire["data"]["readAt"].startswith("2024-01-02T03:04:05")
        json.dumps(wire)
