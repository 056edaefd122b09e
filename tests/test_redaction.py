"""
Tests for intakeflow/utils/redaction.py - personal data scrubbing before AI calls.
"""
from intakeflow.utils.redaction import (
    DATE_PLACEHOLDER,
    EMAIL_PLACEHOLDER,
    NAME_PLACEHOLDER,
    PHONE_PLACEHOLDER,
    redact_text,
)


class TestRedactText:
    def test_plain_text_untouched(self):
        text, redacted = redact_text("Do you have anything on Tuesday?")
        assert text == "Do you have anything on Tuesday?"
        assert redacted is False

    def test_email_redacted(self):
        text, redacted = redact_text("reach me at jane.doe@example.com please")
        assert EMAIL_PLACEHOLDER in text
        assert "jane.doe" not in text
        assert redacted is True

    def test_phone_redacted(self):
        text, redacted = redact_text("my number is +1 (512) 555-0199")
        assert PHONE_PLACEHOLDER in text
        assert "555" not in text
        assert redacted is True

    def test_date_of_birth_redacted(self):
        text, _ = redact_text("born 04/12/1988")
        assert DATE_PLACEHOLDER in text
        assert "1988" not in text

    def test_iso_date_redacted(self):
        text, _ = redact_text("DOB 1988-04-12")
        assert DATE_PLACEHOLDER in text

    def test_self_introduced_name_redacted(self):
        text, redacted = redact_text("Hi, my name is Jane Doe and I need a cleaning")
        assert "Jane" not in text
        assert NAME_PLACEHOLDER in text
        assert redacted is True

    def test_known_values_replaced_case_insensitive(self):
        text, redacted = redact_text("JANE wants to move her appointment", known_values=["Jane"])
        assert "JANE" not in text
        assert redacted is True

    def test_short_known_values_ignored(self):
        text, redacted = redact_text("a b c", known_values=["a"])
        assert text == "a b c"
        assert redacted is False

    def test_empty_text(self):
        assert redact_text("") == ("", False)

    def test_self_introduction_needs_capitalised_name(self):
        text, redacted = redact_text("I'm looking for a slot. I'm Maria Lopez")
        assert text == f"I'm looking for a slot. I'm {NAME_PLACEHOLDER}"
        assert redacted is True
