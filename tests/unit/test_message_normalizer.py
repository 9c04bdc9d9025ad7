"""
Unit tests for the message normalizer

Raw RFC 822 bytes to CanonicalMessage conversion rules.
"""
from datetime import datetime, timezone

import pytest

from mailsync.exceptions import ParseError
from mailsync.services.message_normalizer import (
    NO_SUBJECT,
    normalize_raw_message,
    parse_raw_message,
    synthesize_message_id,
)

FETCHED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.unit
class TestNormalizeMessage:
    """Field mapping and defaults"""

    def test_maps_core_fields(self, raw_message):
        """
        Given: A complete plain-text message
        When: It is normalized
        Then: Sender, recipients, subject, body, date and folder are mapped
        """
        raw = raw_message(cc="Carol <carol@example.com>, dave@example.com")

        message = normalize_raw_message(raw, account_id="acct-1", folder="INBOX")

        assert message.message_id == "<msg-1@example.com>"
        assert message.account_id == "acct-1"
        assert message.sender.email == "alice@example.com"
        assert message.sender.name == "Alice Example"
        assert [a.email for a in message.to] == ["bob@example.com"]
        assert [a.email for a in message.cc] == ["carol@example.com", "dave@example.com"]
        assert message.subject == "Hello"
        assert message.body.strip() == "Plain text body"
        assert message.date == datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
        assert message.folder == "INBOX"
        assert message.is_read is False
        assert message.category is None
        assert message.headers["subject"] == "Hello"

    def test_is_deterministic(self, raw_message):
        """
        Given: The same raw bytes
        When: They are normalized twice
        Then: Both results are identical
        """
        raw = raw_message()
        first = normalize_raw_message(raw, "acct-1", fallback_date=FETCHED_AT)
        second = normalize_raw_message(raw, "acct-1", fallback_date=FETCHED_AT)
        assert first == second

    def test_missing_sender_is_empty_string(self, raw_message):
        message = normalize_raw_message(raw_message(sender=None), "acct-1")
        assert message.sender.email == ""
        assert message.sender.name is None

    def test_missing_subject_uses_placeholder(self, raw_message):
        message = normalize_raw_message(raw_message(subject=None), "acct-1")
        assert message.subject == NO_SUBJECT

    def test_missing_message_id_is_synthesized(self, raw_message):
        """
        Given: A message without a Message-ID header
        When: It is normalized
        Then: A non-empty identifier is synthesized
        """
        message = normalize_raw_message(raw_message(message_id=None), "acct-1")
        assert message.message_id
        assert "-" in message.message_id

    def test_synthesized_ids_differ(self):
        assert synthesize_message_id() != synthesize_message_id()

    def test_no_attachments_is_absent_not_empty(self, raw_message):
        message = normalize_raw_message(raw_message(), "acct-1")
        assert message.attachments is None
        assert message.has_attachments is False

    def test_attachments_keep_metadata_only(self, raw_message):
        """
        Given: A message with a PDF attachment
        When: It is normalized
        Then: Only filename, content type and size are kept
        """
        raw = raw_message(attachment=("invoice.pdf", b"%PDF-1.4 fake"))

        message = normalize_raw_message(raw, "acct-1")

        assert message.has_attachments is True
        assert len(message.attachments) == 1
        summary = message.attachments[0]
        assert summary.filename == "invoice.pdf"
        assert summary.content_type == "application/pdf"
        assert summary.size == len(b"%PDF-1.4 fake")
        assert "content" not in summary.model_dump()

    def test_html_only_body_is_converted_to_text(self):
        raw = (
            b"From: a@example.com\r\n"
            b"Subject: html\r\n"
            b"Message-ID: <h@example.com>\r\n"
            b"Content-Type: text/html; charset=utf-8\r\n"
            b"\r\n"
            b"<p>Hello <b>World</b></p><script>ignored()</script>\r\n"
        )

        message = normalize_raw_message(raw, "acct-1")

        assert message.body == "Hello World"
        assert "<p>" in message.html_body

    def test_alternative_keeps_both_bodies(self, raw_message):
        message = normalize_raw_message(raw_message(html="<p>Rich</p>"), "acct-1")
        assert message.body.strip() == "Plain text body"
        assert message.html_body.strip() == "<p>Rich</p>"

    def test_invalid_date_uses_fallback(self):
        raw = (
            b"From: a@example.com\r\n"
            b"Subject: no date\r\n"
            b"Date: not a date\r\n"
            b"\r\n"
            b"body\r\n"
        )
        message = normalize_raw_message(raw, "acct-1", fallback_date=FETCHED_AT)
        assert message.date == FETCHED_AT


@pytest.mark.unit
class TestParseErrors:
    """Single-message failures"""

    def test_empty_payload_raises_parse_error(self):
        with pytest.raises(ParseError):
            parse_raw_message(b"")

    def test_undecodable_body_raises_parse_error(self, malformed_raw):
        with pytest.raises(ParseError):
            normalize_raw_message(malformed_raw, "acct-1")
