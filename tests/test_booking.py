"""
Tests for intakeflow/services/booking.py - slot generation, idempotent commits, deadlines.
"""
import asyncio
import json
import uuid
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from intakeflow.config import get_settings
from intakeflow.models.appointment import Appointment
from intakeflow.models.availability import AvailabilityWindow
from intakeflow.services.booking import (
    BookingAdapter,
    DatabaseBookingAdapter,
    Slot,
    booking_idempotency_key,
    commit,
    fetch_slots,
)
from intakeflow.utils.encryption import decrypt_value
from intakeflow.utils.errors import BookingConflictError, TransientError

OWNER = uuid.UUID("b2222222-2222-4222-8222-222222222222")
MONDAY = date(2030, 1, 7)


def _utc(hour, minute=0):
    return datetime(2030, 1, 7, hour, minute, tzinfo=timezone.utc)


async def _add_window(db, weekday=0, start="09:00", end="10:30", slot_minutes=30, active=True):
    db.add(AvailabilityWindow(
        owner_id=OWNER, weekday=weekday, start_time=start, end_time=end,
        slot_minutes=slot_minutes, is_active=active,
    ))
    await db.commit()


class _SlowAdapter(BookingAdapter):
    async def get_available_slots(self, owner_id, date_from, date_to, tz_name="UTC"):
        await asyncio.sleep(1)
        return []

    async def commit_booking(self, owner_id, slot, idempotency_key, details):
        await asyncio.sleep(1)


class _BrokenAdapter(BookingAdapter):
    async def get_available_slots(self, owner_id, date_from, date_to, tz_name="UTC"):
        raise OperationalError("SELECT 1", {}, Exception("connection reset"))

    async def commit_booking(self, owner_id, slot, idempotency_key, details):
        raise OperationalError("INSERT", {}, Exception("connection reset"))


# ---------------------------------------------------------------------------
# Slot
# ---------------------------------------------------------------------------

class TestSlot:
    def test_naive_datetimes_treated_as_utc(self):
        slot = Slot(datetime(2030, 1, 7, 9, 0), datetime(2030, 1, 7, 9, 30))
        assert slot.start == _utc(9)

    def test_dict_round_trip_preserves_equality(self):
        slot = Slot(_utc(9), _utc(9, 30))
        assert Slot.from_dict(slot.to_dict()) == slot

    def test_idempotency_key_depends_on_cycle_and_slot(self):
        slot = Slot(_utc(9), _utc(9, 30))
        other = Slot(_utc(10), _utc(10, 30))
        key = booking_idempotency_key(OWNER, "instagram", "user-1", 1, slot)
        assert key == booking_idempotency_key(OWNER, "instagram", "user-1", 1, slot)
        assert key != booking_idempotency_key(OWNER, "instagram", "user-1", 2, slot)
        assert key != booking_idempotency_key(OWNER, "instagram", "user-1", 1, other)


# ---------------------------------------------------------------------------
# DatabaseBookingAdapter
# ---------------------------------------------------------------------------

class TestAvailableSlots:
    async def test_slots_generated_from_windows(self, db, session_factory):
        await _add_window(db)
        adapter = DatabaseBookingAdapter(session_factory)

        slots = await adapter.get_available_slots(OWNER, MONDAY, MONDAY)

        assert [s.start for s in slots] == [_utc(9), _utc(9, 30), _utc(10)]
        assert slots[0].end == _utc(9, 30)

    async def test_owner_timezone(self, db, session_factory):
        await _add_window(db, start="09:00", end="09:30")
        adapter = DatabaseBookingAdapter(session_factory)

        slots = await adapter.get_available_slots(OWNER, MONDAY, MONDAY, "America/New_York")

        assert [s.start for s in slots] == [_utc(14)]

    async def test_booked_and_inactive_excluded(self, db, session_factory):
        await _add_window(db)
        await _add_window(db, start="12:00", end="13:00", active=False)
        db.add(Appointment(
            owner_id=OWNER, slot_start=_utc(9, 30), slot_end=_utc(10),
            idempotency_key="k", reference="APT-X", status="confirmed",
        ))
        await db.commit()
        adapter = DatabaseBookingAdapter(session_factory)

        slots = await adapter.get_available_slots(OWNER, MONDAY, MONDAY)

        assert [s.start for s in slots] == [_utc(9), _utc(10)]

    async def test_other_weekdays_have_no_slots(self, db, session_factory):
        await _add_window(db, weekday=2)
        adapter = DatabaseBookingAdapter(session_factory)
        assert await adapter.get_available_slots(OWNER, MONDAY, MONDAY) == []


class TestCommitBooking:
    async def test_books_and_encrypts_details(self, db, session_factory):
        adapter = DatabaseBookingAdapter(session_factory)
        conversation_id = uuid.uuid4()
        slot = Slot(_utc(9), _utc(9, 30))

        confirmation = await adapter.commit_booking(
            OWNER, slot, "key-1", {"name": "Jane Doe", "conversation_id": str(conversation_id)},
        )

        assert confirmation.reference.startswith("APT-")
        row = (await db.execute(select(Appointment))).scalar_one()
        assert row.conversation_id == conversation_id
        assert "Jane" not in row.details_encrypted
        assert json.loads(decrypt_value(row.details_encrypted))["name"] == "Jane Doe"

    async def test_same_key_returns_original_confirmation(self, db, session_factory):
        adapter = DatabaseBookingAdapter(session_factory)
        slot = Slot(_utc(9), _utc(9, 30))

        first = await adapter.commit_booking(OWNER, slot, "key-1", {})
        second = await adapter.commit_booking(OWNER, slot, "key-1", {})

        assert second.reference == first.reference
        assert len((await db.execute(select(Appointment))).scalars().all()) == 1

    async def test_taken_slot_conflicts(self, session_factory):
        adapter = DatabaseBookingAdapter(session_factory)
        slot = Slot(_utc(9), _utc(9, 30))
        await adapter.commit_booking(OWNER, slot, "key-1", {})

        with pytest.raises(BookingConflictError):
            await adapter.commit_booking(OWNER, slot, "key-2", {})


# ---------------------------------------------------------------------------
# Deadline wrappers
# ---------------------------------------------------------------------------

class TestDeadlines:
    async def test_fetch_slots_timeout_is_transient(self, monkeypatch):
        monkeypatch.setenv("BOOKING_TIMEOUT_SECONDS", "0.05")
        get_settings.cache_clear()
        with pytest.raises(TransientError):
            await fetch_slots(_SlowAdapter(), OWNER, today=MONDAY)

    async def test_commit_timeout_is_transient(self, monkeypatch):
        monkeypatch.setenv("BOOKING_TIMEOUT_SECONDS", "0.05")
        get_settings.cache_clear()
        with pytest.raises(TransientError):
            await commit(_SlowAdapter(), OWNER, Slot(_utc(9), _utc(9, 30)), "k", {})

    async def test_dropped_connection_is_transient(self):
        with pytest.raises(TransientError):
            await fetch_slots(_BrokenAdapter(), OWNER, today=MONDAY)
        with pytest.raises(TransientError):
            await commit(_BrokenAdapter(), OWNER, Slot(_utc(9), _utc(9, 30)), "k", {})

    async def test_conflict_passes_through(self, session_factory):
        adapter = DatabaseBookingAdapter(session_factory)
        slot = Slot(_utc(9), _utc(9, 30))
        await commit(adapter, OWNER, slot, "key-1", {})
        with pytest.raises(BookingConflictError):
            await commit(adapter, OWNER, slot, "key-2", {})

    async def test_fetch_slots_uses_lookahead(self, db, session_factory):
        await _add_window(db, weekday=0, start="09:00", end="09:30")
        adapter = DatabaseBookingAdapter(session_factory)

        slots = await fetch_slots(adapter, OWNER, today=MONDAY)

        # Monday plus the following Monday inside the 7-day lookahead
        assert [s.start.date() for s in slots] == [date(2030, 1, 7), date(2030, 1, 14)]
