"""
Tests for structured logging utilities module.

Tests cover JSON formatting, request ID correlation, email masking,
and external call logging.
"""

import json
import logging
import sys
import uuid
from io import StringIO

from shared.logging_utils import (
    StructuredFormatter,
    configure_structured_logging,
    log_external_call,
    mask_email,
    request_id_var,
    set_request_id,
    set_stripe_event,
    stripe_event_var,
)


def _record(msg="Test message", level=logging.INFO, **extra):
    record = logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Tests for StructuredFormatter class."""

    def test_format_includes_required_fields(self):
        parsed = json.loads(StructuredFormatter().format(_record("Warning message", logging.WARNING)))

        assert parsed["level"] == "WARNING"
        assert parsed["logger"] == "test.logger"
        assert parsed["message"] == "Warning message"
        assert "timestamp" in parsed
        assert "request_id" in parsed

    def test_format_includes_request_id(self):
        token = request_id_var.set("req-abc")
        try:
            parsed = json.loads(StructuredFormatter().format(_record()))
        finally:
            request_id_var.reset(token)

        assert parsed["request_id"] == "req-abc"

    def test_format_includes_function_name(self, monkeypatch):
        monkeypatch.setenv("AWS_LAMBDA_FUNCTION_NAME", "moov-stripe-webhook")

        parsed = json.loads(StructuredFormatter().format(_record()))

        assert parsed["function_name"] == "moov-stripe-webhook"

    def test_extra_fields_included(self):
        parsed = json.loads(StructuredFormatter().format(_record(event_id="evt_1", livemode=False)))

        assert parsed["event_id"] == "evt_1"
        assert parsed["livemode"] is False
        assert "lineno" not in parsed

    def test_non_serializable_extra_uses_str(self):
        parsed = json.loads(StructuredFormatter().format(_record(filleul_ids={"user_a"})))

        assert parsed["filleul_ids"] == "{'user_a'}"

    def test_exception_included(self):
        try:
            raise ValueError("bad data")
        except ValueError:
            record = _record("failed")
            record.exc_info = sys.exc_info()

        parsed = json.loads(StructuredFormatter().format(record))

        assert "ValueError: bad data" in parsed["exception"]


class TestConfigureStructuredLogging:
    def test_replaces_root_handlers(self):
        root = logging.getLogger()
        original_handlers = root.handlers[:]
        try:
            configured = configure_structured_logging(logging.DEBUG)

            assert configured is root
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
            for handler in original_handlers:
                root.addHandler(handler)


class TestSetRequestId:
    """Tests for request ID extraction."""

    def test_from_request_context(self):
        assert set_request_id({"requestContext": {"requestId": "req-123"}}) == "req-123"
        assert request_id_var.get() == "req-123"

    def test_from_header(self):
        event = {"headers": {"X-Request-Id": "hdr-456"}}
        assert set_request_id(event) == "hdr-456"

    def test_generated_when_missing(self):
        request_id = set_request_id({"headers": None})
        uuid.UUID(request_id)


class TestSetStripeEvent:
    """Tests for Stripe event correlation."""

    def test_tags_formatted_lines(self):
        set_request_id({"requestContext": {"requestId": "req-1"}})
        set_stripe_event({"id": "evt_1", "type": "invoice.paid", "livemode": True})

        parsed = json.loads(StructuredFormatter().format(_record()))

        assert parsed["stripe_event_id"] == "evt_1"
        assert parsed["stripe_event_type"] == "invoice.paid"
        assert parsed["livemode"] is True

    def test_cleared_by_next_request(self):
        set_stripe_event({"id": "evt_1", "type": "invoice.paid"})

        set_request_id({"requestContext": {"requestId": "req-2"}})
        parsed = json.loads(StructuredFormatter().format(_record()))

        assert stripe_event_var.get() is None
        assert "stripe_event_id" not in parsed


class TestMaskEmail:
    def test_masks_local_part(self):
        assert mask_email("john.doe@example.com") == "jo**@example.com"

    def test_short_local_part(self):
        assert mask_email("jo@example.com") == "j*@example.com"

    def test_invalid(self):
        assert mask_email(None) == "**@**.***"
        assert mask_email("not-an-email") == "**@**.***"


class TestLogExternalCall:
    def _capture(self):
        logger = logging.getLogger(f"test.external.{uuid.uuid4()}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
        return logger, stream

    def test_success_logged_at_info(self):
        logger, stream = self._capture()

        log_external_call(logger, "lemlist", "enroll", True, 12.5)

        parsed = json.loads(stream.getvalue())
        assert parsed["level"] == "INFO"
        assert parsed["service"] == "lemlist"
        assert parsed["operation"] == "enroll"
        assert parsed["success"] is True
        assert parsed["latency_ms"] == 12.5

    def test_failure_logged_at_warning(self):
        logger, stream = self._capture()

        log_external_call(logger, "lemlist", "find_contact", False, 40.0, "HTTP 503")

        parsed = json.loads(stream.getvalue())
        assert parsed["level"] == "WARNING"
        assert parsed["error"] == "HTTP 503"
        assert "failed" in parsed["message"]
