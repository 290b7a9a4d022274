"""Tests for webhook events module."""

import json
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from src.webhooks.events import (
    SUPPORTED_EVENTS,
    WebhookEnvelope,
    WebhookEventType,
    WebhookReference,
    build_envelope,
    normalize_event_type,
    supported_event_names,
)

# ============================================================================
# WebhookEventType Tests
# ============================================================================


class TestWebhookEventType:
    """Tests for WebhookEventType enum."""

    def test_translation_events(self):
        """Test translation event types."""
        assert WebhookEventType.TRANSLATION_COMPLETED.value == "translation.completed"
        assert WebhookEventType.TRANSLATION_FAILED.value == "translation.failed"

    def test_session_and_room_events(self):
        """Test session and room event types."""
        assert WebhookEventType.SESSION_STARTED.value == "session.started"
        assert WebhookEventType.SESSION_ENDED.value == "session.ended"
        assert WebhookEventType.ROOM_JOINED.value == "room.joined"
        assert WebhookEventType.ROOM_LEFT.value == "room.left"

    def test_operational_events(self):
        """Test operational event types."""
        assert WebhookEventType.ERROR_OCCURRED.value == "error.occurred"
        assert (
            WebhookEventType.PERFORMANCE_THRESHOLD_EXCEEDED.value
            == "performance.threshold.exceeded"
        )

    def test_webhook_registered_is_supported(self):
        """Test the registration announcement event is in the vocabulary."""
        assert "webhook.registered" in SUPPORTED_EVENTS

    def test_vocabulary_size(self):
        """Test the full vocabulary is exposed."""
        assert len(SUPPORTED_EVENTS) == 14
        assert supported_event_names()[0] == "translation.completed"
        assert set(supported_event_names()) == SUPPORTED_EVENTS


class TestNormalizeEventType:
    """Tests for normalize_event_type function."""

    def test_enum_member(self):
        """Test enum members become their value."""
        assert normalize_event_type(WebhookEventType.USER_LOGIN) == "user.login"

    def test_plain_string(self):
        """Test strings pass through unchanged."""
        assert normalize_event_type("user.login") == "user.login"


# ============================================================================
# Envelope Tests
# ============================================================================


class TestWebhookEnvelope:
    """Tests for WebhookEnvelope model."""

    def test_attempt_must_be_positive(self):
        """Test that the wire attempt number is 1-based."""
        with pytest.raises(PydanticValidationError):
            WebhookReference(id="wh_1", attempt=0)

    def test_to_json_dict(self):
        """Test conversion to a JSON dictionary."""
        timestamp = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        envelope = WebhookEnvelope(
            event="translation.completed",
            data={"id": "tr_1"},
            timestamp=timestamp,
            webhook=WebhookReference(id="wh_abc", attempt=2),
        )

        assert envelope.to_json_dict() == {
            "event": "translation.completed",
            "data": {"id": "tr_1"},
            "timestamp": "2026-01-01T12:00:00+00:00",
            "webhook": {"id": "wh_abc", "attempt": 2},
        }

    def test_to_bytes_compact(self):
        """Test that the body is compact UTF-8 JSON."""
        envelope = WebhookEnvelope(
            event="speech.transcribed",
            data={"text": "¿qué tal?"},
            webhook=WebhookReference(id="wh_1", attempt=1),
        )
        body = envelope.to_bytes()

        assert b", " not in body
        assert b": " not in body
        assert "¿qué tal?".encode() in body
        assert json.loads(body)["data"]["text"] == "¿qué tal?"


class TestBuildEnvelope:
    """Tests for build_envelope function."""

    def test_attempt_is_one_based(self):
        """Test that the 0-indexed attempt is sent as attempt + 1."""
        envelope = build_envelope(
            WebhookEventType.ROOM_JOINED,
            {"room": "r1"},
            webhook_id="wh_1",
            attempt=0,
        )

        assert envelope.event == "room.joined"
        assert envelope.webhook.attempt == 1
        assert envelope.webhook.id == "wh_1"

    def test_custom_timestamp(self):
        """Test building with an explicit send time."""
        timestamp = datetime(2026, 3, 1, tzinfo=UTC)
        envelope = build_envelope(
            "user.login",
            {},
            webhook_id="wh_1",
            attempt=2,
            timestamp=timestamp,
        )

        assert envelope.timestamp == timestamp
        assert envelope.webhook.attempt == 3
