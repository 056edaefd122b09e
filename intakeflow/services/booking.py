"""
Booking adapter - availability lookup and idempotent booking commits.

The conversation engine talks to the abstract BookingAdapter only. The bundled
DatabaseBookingAdapter generates slots from weekly availability windows in the
owner's timezone and stores appointments locally.

Every call from the pipeline goes through fetch_slots / commit with an asyncio
deadline; a timeout or a dropped database connection is a TransientError.
"""
import asyncio
import hashlib
import json
import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from intakeflow.models.appointment import Appointment
from intakeflow.models.availability import AvailabilityWindow
from intakeflow.utils.encryption import encrypt_value
from intakeflow.utils.errors import BookingConflictError, TransientError

logger = logging.getLogger(__name__)


class Slot:
    """An appointment slot. start/end are timezone-aware UTC datetimes."""

    def __init__(self, start: datetime, end: datetime):
        self.start = _as_utc(start)
        self.end = _as_utc(end)

    def __repr__(self) -> str:
        return f"<Slot {self.start.isoformat()}-{self.end.isoformat()}>"

    def __eq__(self, other) -> bool:
        return isinstance(other, Slot) and self.start == other.start and self.end == other.end

    def __hash__(self) -> int:
        return hash((self.start, self.end))

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: dict) -> "Slot":
        return cls(datetime.fromisoformat(data["start"]), datetime.fromisoformat(data["end"]))

    def to_display(self, tz_name: str = "UTC") -> str:
        """Human-readable local time, e.g. 'Mon Oct 19, 9:00 AM'."""
        local = self.start.astimezone(ZoneInfo(tz_name))
        hour = local.strftime("%I").lstrip("0")
        return f"{local.strftime('%a %b')} {local.day}, {hour}:{local.strftime('%M %p')}"


class BookingConfirmation:
    def __init__(self, reference: str, slot: Slot, appointment_id: Optional[str] = None):
        self.reference = reference
        self.slot = slot
        self.appointment_id = appointment_id


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_time(time_str: str) -> time:
    """Parse HH:MM string to time object."""
    parts = time_str.split(":")
    return time(int(parts[0]), int(parts[1]))


def booking_idempotency_key(
    owner_id: uuid.UUID,
    platform: str,
    thread_id: str,
    cycle: int,
    slot: Slot,
) -> str:
    """Deterministic key for one booking attempt: same conversation cycle + slot = same key."""
    raw = f"{owner_id}|{platform}|{thread_id}|{cycle}|{slot.start.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class BookingAdapter(ABC):
    """Abstract availability / booking backend."""

    @abstractmethod
    async def get_available_slots(
        self,
        owner_id: uuid.UUID,
        date_from: date,
        date_to: date,
        tz_name: str = "UTC",
    ) -> list[Slot]:
        """Open slots in [date_from, date_to], ordered by start time."""
        ...

    @abstractmethod
    async def commit_booking(
        self,
        owner_id: uuid.UUID,
        slot: Slot,
        idempotency_key: str,
        details: dict,
    ) -> BookingConfirmation:
        """
        Book a slot. Repeating a call with the same idempotency_key returns the
        original confirmation. Raises BookingConflictError when the slot is taken.
        """
        ...


class DatabaseBookingAdapter(BookingAdapter):
    """Slots from availability_windows, bookings in the appointments table."""

    def __init__(self, session_factory=None):
        if session_factory is None:
            from intakeflow.database import async_session_factory
            session_factory = async_session_factory
        self._session_factory = session_factory

    async def get_available_slots(
        self,
        owner_id: uuid.UUID,
        date_from: date,
        date_to: date,
        tz_name: str = "UTC",
    ) -> list[Slot]:
        tz = ZoneInfo(tz_name)
        now = datetime.now(timezone.utc)

        async with self._session_factory() as db:
            windows = (
                await db.execute(
                    select(AvailabilityWindow).where(
                        AvailabilityWindow.owner_id == owner_id,
                        AvailabilityWindow.is_active.is_(True),
                    )
                )
            ).scalars().all()

            range_start = datetime.combine(date_from, time(0, 0), tzinfo=tz).astimezone(timezone.utc)
            range_end = datetime.combine(date_to + timedelta(days=1), time(0, 0), tzinfo=tz).astimezone(timezone.utc)
            booked_rows = (
                await db.execute(
                    select(Appointment.slot_start).where(
                        Appointment.owner_id == owner_id,
                        Appointment.status == "confirmed",
                        Appointment.slot_start >= range_start,
                        Appointment.slot_start < range_end,
                    )
                )
            ).scalars().all()

        booked = {_as_utc(start) for start in booked_rows}
        slots: list[Slot] = []

        current = date_from
        while current <= date_to:
            for window in windows:
                if window.weekday != current.weekday():
                    continue
                start = datetime.combine(current, _parse_time(window.start_time), tzinfo=tz)
                day_end = datetime.combine(current, _parse_time(window.end_time), tzinfo=tz)
                step = timedelta(minutes=window.slot_minutes or 30)
                while start + step <= day_end:
                    slot = Slot(start, start + step)
                    if slot.start > now and slot.start not in booked:
                        slots.append(slot)
                    start += step
            current += timedelta(days=1)

        slots = sorted(set(slots), key=lambda s: s.start)
        logger.debug("Found %d open slots for owner %s", len(slots), str(owner_id)[:8])
        return slots

    async def commit_booking(
        self,
        owner_id: uuid.UUID,
        slot: Slot,
        idempotency_key: str,
        details: dict,
    ) -> BookingConfirmation:
        async with self._session_factory() as db:
            existing = (
                await db.execute(select(Appointment).where(Appointment.idempotency_key == idempotency_key))
            ).scalar_one_or_none()
            if existing is not None:
                logger.info("Booking %s already committed (idempotent replay)", existing.reference)
                return BookingConfirmation(
                    existing.reference,
                    Slot(existing.slot_start, existing.slot_end),
                    str(existing.id),
                )

            taken = (
                await db.execute(
                    select(Appointment.id).where(
                        Appointment.owner_id == owner_id,
                        Appointment.slot_start == slot.start,
                        Appointment.status == "confirmed",
                    )
                )
            ).scalar_one_or_none()
            if taken is not None:
                raise BookingConflictError("Slot already booked")

            appointment = Appointment(
                owner_id=owner_id,
                slot_start=slot.start,
                slot_end=slot.end,
                idempotency_key=idempotency_key,
                reference="APT-" + secrets.token_hex(4).upper(),
                status="confirmed",
                details_encrypted=encrypt_value(json.dumps(details)) if details else None,
                conversation_id=uuid.UUID(details["conversation_id"]) if details and details.get("conversation_id") else None,
            )
            db.add(appointment)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise BookingConflictError("Slot already booked") from e

            logger.info("Appointment booked: %s", appointment.reference, extra={"owner_id": str(owner_id)})
            return BookingConfirmation(appointment.reference, slot, str(appointment.id))


async def fetch_slots(
    adapter: BookingAdapter,
    owner_id: uuid.UUID,
    tz_name: str = "UTC",
    today: Optional[date] = None,
) -> list[Slot]:
    """Slots for the configured lookahead window, under the booking deadline."""
    from intakeflow.config import get_settings
    settings = get_settings()

    start = today or datetime.now(ZoneInfo(tz_name)).date()
    end = start + timedelta(days=settings.booking_lookahead_days)
    try:
        return await asyncio.wait_for(
            adapter.get_available_slots(owner_id, start, end, tz_name),
            timeout=settings.booking_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise TransientError("Availability lookup timed out") from e
    except OperationalError as e:
        raise TransientError(f"Availability lookup failed: {e.__class__.__name__}") from e


async def commit(
    adapter: BookingAdapter,
    owner_id: uuid.UUID,
    slot: Slot,
    idempotency_key: str,
    details: dict,
) -> BookingConfirmation:
    """Commit a booking under the booking deadline. BookingConflictError passes through."""
    from intakeflow.config import get_settings
    settings = get_settings()

    try:
        return await asyncio.wait_for(
            adapter.commit_booking(owner_id, slot, idempotency_key, details),
            timeout=settings.booking_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise TransientError("Booking commit timed out") from e
    except OperationalError as e:
        raise TransientError(f"Booking commit failed: {e.__class__.__name__}") from e
