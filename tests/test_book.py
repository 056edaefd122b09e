"""
Tests for intakeflow/agents/book.py - slot presentation and confirmation replies.
"""
from datetime import datetime, timezone

import pytest

from intakeflow.agents.book import (
    booked_message,
    confirmation_prompt,
    format_slot_list,
    is_number_reply,
    no_slots_message,
    parse_slot_choice,
    parse_yes_no,
)
from intakeflow.services.booking import Slot

SLOT = Slot(datetime(2030, 1, 7, 14, 0, tzinfo=timezone.utc), datetime(2030, 1, 7, 14, 30, tzinfo=timezone.utc))


class TestFormatSlotList:
    def test_numbered_with_instructions(self):
        text = format_slot_list([SLOT, SLOT], "UTC")
        lines = text.split("\n")
        assert lines[0] == "Here are the next available times:"
        assert lines[1] == "1. Mon Jan 7, 2:00 PM"
        assert lines[2].startswith("2. ")
        assert lines[-1] == "Reply with the number (1, 2, 3...) to book."

    def test_owner_timezone_applied(self):
        text = format_slot_list([SLOT], "America/New_York")
        assert "1. Mon Jan 7, 9:00 AM" in text

    def test_prefix(self):
        assert format_slot_list([SLOT], prefix="That slot was just taken. ").startswith(
            "That slot was just taken. Here are"
        )

    def test_no_slots_message(self):
        assert "next 7 days" in no_slots_message(7)


class TestParseSlotChoice:
    @pytest.mark.parametrize("text,expected", [
        ("1", 0), (" 2 ", 1), ("#3", 2), ("option 2", 1), ("2.", 1),
    ])
    def test_valid_choices(self, text, expected):
        assert parse_slot_choice(text, 3) == expected

    @pytest.mark.parametrize("text", ["0", "4", "two", "1 or 2", ""])
    def test_invalid_choices(self, text):
        assert parse_slot_choice(text, 3) is None

    def test_is_number_reply_ignores_range(self):
        assert is_number_reply("9") is True
        assert is_number_reply("tomorrow") is False


class TestYesNo:
    @pytest.mark.parametrize("text", ["yes", "Yes please", "ok", "sounds good", "confirm"])
    def test_yes(self, text):
        assert parse_yes_no(text) == "yes"

    @pytest.mark.parametrize("text", ["no", "Nope", "another time please", "something else"])
    def test_no(self, text):
        assert parse_yes_no(text) == "no"

    def test_neither(self):
        assert parse_yes_no("what about parking?") is None


class TestConfirmationReplies:
    def test_confirmation_prompt(self):
        assert confirmation_prompt(SLOT) == (
            "Please confirm your appointment on Mon Jan 7, 2:00 PM. "
            "Reply YES to confirm or NO to choose a different time."
        )

    def test_booked_message_includes_reference(self):
        assert booked_message(SLOT, "APT-0001") == (
            "You're booked for Mon Jan 7, 2:00 PM. Your reference is APT-0001. See you then!"
        )
