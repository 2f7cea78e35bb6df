"""Slot normalisation, conflict detection and appointment status rules.

Availability and appointments are stored as clinic wall-clock ``date`` plus
``start_time``/``end_time``. Every incoming instant goes through
``normalize_instant`` so that all routes agree on one time zone.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable
from zoneinfo import ZoneInfo

from fastapi import HTTPException, status

from therapy_backend.core import config

STATUS_PENDING = 'pending'
STATUS_ACCEPTED = 'accepted'
STATUS_DECLINED = 'declined'
STATUS_CANCELLED = 'cancelled'
STATUS_COMPLETED = 'completed'
STATUS_DELETED = 'deleted'

APPOINTMENT_STATUSES = (
    STATUS_PENDING,
    STATUS_ACCEPTED,
    STATUS_DECLINED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
)
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_ACCEPTED)
ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_ACCEPTED, STATUS_DECLINED, STATUS_CANCELLED},
    STATUS_ACCEPTED: {STATUS_CANCELLED, STATUS_COMPLETED},
}

APPOINTMENT_TYPES = ('session', 'request')
DEFAULT_APPOINTMENT_TYPE = 'session'


@dataclass(frozen=True)
class SlotWindow:
    date: date
    start_time: time
    end_time: time

    @property
    def start(self) -> datetime:
        return datetime.combine(self.date, self.start_time)

    @property
    def end(self) -> datetime:
        return datetime.combine(self.date, self.end_time)


def get_clinic_timezone() -> tzinfo:
    if config.CLINIC_TIMEZONE.strip().upper() == 'UTC':
        return timezone.utc
    return ZoneInfo(config.CLINIC_TIMEZONE)


def normalize_instant(value: datetime) -> datetime:
    """Convert to naive clinic wall-clock time truncated to the minute.

    Aware datetimes are shifted into the clinic zone; naive ones are already
    treated as clinic wall-clock.
    """
    if value.tzinfo is not None and value.utcoffset() is not None:
        value = value.astimezone(get_clinic_timezone()).replace(tzinfo=None)
    return value.replace(second=0, microsecond=0)


def truncate_time(value: time) -> time:
    return value.replace(second=0, microsecond=0, tzinfo=None)


def split_instant(value: datetime) -> tuple[date, time]:
    normalized = normalize_instant(value)
    return normalized.date(), normalized.time()


def to_iso(slot_date: date, slot_time: time) -> str:
    return datetime.combine(slot_date, slot_time).isoformat(timespec='minutes')


def normalize_window(
    start: datetime | None = None,
    end: datetime | None = None,
    slot_date: date | None = None,
    start_time: time | None = None,
    end_time: time | None = None,
) -> SlotWindow:
    """Build a window from either an ISO start/end pair or a date plus times."""
    if start is not None and end is not None:
        start_date, start_clock = split_instant(start)
        end_date, end_clock = split_instant(end)
        if start_date != end_date:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Start and end must fall on the same day.',
            )
        window = SlotWindow(start_date, start_clock, end_clock)
    elif slot_date is not None and start_time is not None and end_time is not None:
        window = SlotWindow(slot_date, truncate_time(start_time), truncate_time(end_time))
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Missing required fields.',
        )

    validate_time_range(window.start_time, window.end_time)
    return window


def validate_time_range(start_time: time, end_time: time) -> None:
    if start_time >= end_time:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Start time must be before end time.',
        )


def sunday_based_weekday(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def times_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    return a_start < b_end and b_start < a_end


def slot_applies_on(slot, day: date) -> bool:
    if slot.is_recurring:
        return slot.day_of_week == sunday_based_weekday(day)
    return slot.date == day


def _slots_share_day(a, b) -> bool:
    if a.is_recurring and b.is_recurring:
        return a.day_of_week == b.day_of_week
    if not a.is_recurring and not b.is_recurring:
        return a.date == b.date
    one_off, recurring = (b, a) if a.is_recurring else (a, b)
    return sunday_based_weekday(one_off.date) == recurring.day_of_week


def find_overlapping_slot(existing: Iterable, candidate):
    for slot in existing:
        if getattr(slot, 'id', None) is not None and slot.id == getattr(candidate, 'id', None):
            continue
        if _slots_share_day(slot, candidate) and times_overlap(
            slot.start_time, slot.end_time, candidate.start_time, candidate.end_time
        ):
            return slot
    return None


def merged_intervals_on(slots: Iterable, day: date) -> list[tuple[time, time]]:
    """Applicable slot intervals for a day with touching intervals joined."""
    intervals = sorted(
        (slot.start_time, slot.end_time) for slot in slots if slot_applies_on(slot, day)
    )
    merged: list[tuple[time, time]] = []
    for start_time, end_time in intervals:
        if merged and start_time <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end_time))
        else:
            merged.append((start_time, end_time))
    return merged


def window_is_covered(slots: Iterable, window: SlotWindow) -> bool:
    return any(
        start_time <= window.start_time and window.end_time <= end_time
        for start_time, end_time in merged_intervals_on(slots, window.date)
    )


def expand_slots(slots: Iterable, start_date: date, days: int) -> list[SlotWindow]:
    slots = list(slots)
    windows: list[SlotWindow] = []
    for offset in range(days):
        current_day = start_date + timedelta(days=offset)
        windows.extend(
            SlotWindow(current_day, start_time, end_time)
            for start_time, end_time in merged_intervals_on(slots, current_day)
        )
    return windows


def subtract_booked(windows: Iterable[SlotWindow], appointments: Iterable) -> list[SlotWindow]:
    """Remove active appointment intervals from the windows."""
    booked: dict[date, list[tuple[time, time]]] = {}
    for appointment in appointments:
        if appointment.status not in ACTIVE_STATUSES:
            continue
        booked.setdefault(appointment.date, []).append((appointment.start_time, appointment.end_time))

    remaining: list[SlotWindow] = []
    for window in windows:
        cursor = window.start_time
        for booked_start, booked_end in sorted(booked.get(window.date, [])):
            if booked_end <= cursor or booked_start >= window.end_time:
                continue
            if booked_start > cursor:
                remaining.append(SlotWindow(window.date, cursor, booked_start))
            cursor = max(cursor, booked_end)
        if cursor < window.end_time:
            remaining.append(SlotWindow(window.date, cursor, window.end_time))
    return remaining


def trim_past(windows: Iterable[SlotWindow], now: datetime) -> list[SlotWindow]:
    now = normalize_instant(now) + (timedelta(minutes=1) if now.second or now.microsecond else timedelta())
    trimmed: list[SlotWindow] = []
    for window in windows:
        if window.end <= now:
            continue
        if window.start < now:
            window = SlotWindow(window.date, now.time(), window.end_time)
        trimmed.append(window)
    return trimmed


def find_conflicting_appointment(appointments: Iterable, window: SlotWindow, exclude_id: int | None = None):
    for appointment in appointments:
        if exclude_id is not None and appointment.id == exclude_id:
            continue
        if appointment.status not in ACTIVE_STATUSES or appointment.date != window.date:
            continue
        if times_overlap(appointment.start_time, appointment.end_time, window.start_time, window.end_time):
            return appointment
    return None


def ensure_transition(current: str, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f'Cannot change appointment from {current} to {target}.',
        )


def clinic_now() -> datetime:
    """Current clinic wall-clock time, naive."""
    return datetime.now(timezone.utc).astimezone(get_clinic_timezone()).replace(tzinfo=None)
