"""Tests for wire message parsing and event conversion."""

import pytest
from pydantic import ValidationError

from audit_pulse.events import (
    CompleteEvent,
    ErrorEvent,
    InboundMessage,
    ProgressEvent,
    event_from_message,
    message_from_event,
    parse_message,
)


class TestInboundMessage:
    """Tests for parsing raw frames."""

    def test_job_id_aliases(self):
        """jobId, auditId and job_id all set the job id."""
        for key in ("jobId", "auditId", "job_id"):
            message = parse_message(f'{{"type": "audit_progress", "{key}": "42"}}')
            assert message.job_id == "42"

    def test_numeric_job_id_is_string(self):
        """Numeric ids become strings."""
        message = parse_message('{"type": "audit_complete", "auditId": 17}')
        assert message.job_id == "17"

    def test_missing_fields_default(self):
        """Missing fields get defaults."""
        message = parse_message('{"type": "connection", "data": null}')
        assert message.job_id is None
        assert message.data == {}
        assert message.timestamp is not None

    def test_timestamp_is_parsed(self):
        """An ISO timestamp is parsed."""
        message = parse_message('{"type": "heartbeat", "timestamp": "2024-01-15T10:30:00Z"}')
        assert message.timestamp.year == 2024

    @pytest.mark.parametrize("raw", ["not json", "{}", '{"data": {}}', "[1, 2]"])
    def test_invalid_frames_raise(self, raw):
        """Non-JSON or untyped frames are rejected."""
        with pytest.raises(ValidationError):
            parse_message(raw)

    def test_to_wire(self):
        """Serialization uses jobId and an ISO timestamp."""
        wire = InboundMessage(type="subscribe_audit", job_id="42").to_wire()
        assert wire["type"] == "subscribe_audit"
        assert wire["jobId"] == "42"
        assert wire["data"] == {}
        assert "job_id" not in wire
        assert isinstance(wire["timestamp"], str)

    def test_to_wire_omits_missing_job_id(self):
        """No job id means no jobId key."""
        assert "jobId" not in InboundMessage(type="ping").to_wire()


class TestEventConversion:
    """Tests for message <-> reducer event conversion."""

    def test_progress_message(self):
        """audit_progress becomes a ProgressEvent."""
        message = InboundMessage(
            type="audit_progress",
            job_id="42",
            data={"currentStep": 2, "stepProgress": 70, "message": "Checking schema", "totalSteps": 4},
        )
        assert event_from_message(message) == ProgressEvent(current_step=2, step_progress=70, message="Checking schema")

    def test_progress_defaults(self):
        """Missing progress fields default to zero."""
        event = event_from_message(InboundMessage(type="audit_progress", job_id="42"))
        assert event == ProgressEvent(current_step=0, step_progress=0)

    def test_complete_message_keeps_result(self):
        """audit_complete keeps its data as the result."""
        event = event_from_message(InboundMessage(type="audit_complete", job_id="42", data={"score": 91}))
        assert event == CompleteEvent(result={"score": 91})

    def test_error_message(self):
        """audit_error becomes an ErrorEvent."""
        event = event_from_message(InboundMessage(type="audit_error", job_id="42", data={"error": "timeout", "step": 1}))
        assert event == ErrorEvent(error="timeout", step=1)

    def test_error_message_default_text(self):
        """An error without text gets the default message."""
        event = event_from_message(InboundMessage(type="audit_error", job_id="42"))
        assert event.error == "An error occurred during the audit process"

    def test_other_types_are_not_events(self):
        """Non-job messages do not produce events."""
        assert event_from_message(InboundMessage(type="heartbeat")) is None
        assert event_from_message(InboundMessage(type="subscribed", job_id="42")) is None

    def test_malformed_payload_raises(self):
        """A bad progress payload raises ValidationError."""
        with pytest.raises(ValidationError):
            event_from_message(InboundMessage(type="audit_progress", job_id="42", data={"stepProgress": "half"}))

    @pytest.mark.parametrize("event", [
        ProgressEvent(current_step=1, step_progress=40, message="Crawling"),
        CompleteEvent(result={"jobId": "42", "url": "https://example.com"}),
        ErrorEvent(error="Audit cancelled"),
        ErrorEvent(error="timeout", step=3),
    ])
    def test_message_from_event(self, event):
        """Each event converts to a message that converts back."""
        message = message_from_event("42", event)
        assert message.job_id == "42"
        assert event_from_message(message) == event

    def test_message_from_event_is_camel_case(self):
        """Progress data is written in camelCase."""
        message = message_from_event("42", ProgressEvent(current_step=1, step_progress=40))
        assert message.type == "audit_progress"
        assert message.data == {"currentStep": 1, "stepProgress": 40}
