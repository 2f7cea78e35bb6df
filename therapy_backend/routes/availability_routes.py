import logging
from datetime import date, datetime, time, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.accounts import get_account_or_404
from therapy_backend.auth.dependencies import get_current_user, get_db
from therapy_backend.core.scheduling import (
    ACTIVE_STATUSES,
    clinic_now,
    expand_slots,
    find_overlapping_slot,
    normalize_window,
    subtract_booked,
    to_iso,
    trim_past,
    truncate_time,
    validate_time_range,
)
from therapy_backend.models.appointment import Appointment
from therapy_backend.models.availability import Availability
from therapy_backend.models.user import ROLE_ADMIN, ROLE_THERAPIST, User
from therapy_backend.routes.common import database_unavailable, ensure_database_ready, not_found

router = APIRouter(tags=['availability'])
logger = logging.getLogger(__name__)

DEFAULT_OPEN_RANGE_DAYS = 14
MAX_OPEN_RANGE_DAYS = 28


class CreateAvailabilityRequest(BaseModel):
    """One of three shapes.

    ISO one-off ``{start, end}``, legacy one-off ``{date, start_time, end_time}``
    or weekly ``{recurring: true, days, start_time, end_time}`` where days are
    0 = Sunday ... 6 = Saturday.
    """
    model_config = ConfigDict(populate_by_name=True)

    therapist_id: int
    start: datetime | None = None
    end: datetime | None = None
    slot_date: date | None = Field(default=None, alias='date')
    start_time: time | None = None
    end_time: time | None = None
    recurring: bool = False
    days: list[int] = []

    @field_validator('days')
    @classmethod
    def validate_days(cls, value: list[int]) -> list[int]:
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError('Days must be between 0 (Sunday) and 6 (Saturday).')
        return sorted(set(value))


class AvailabilityResponse(BaseModel):
    id: int
    therapist_id: int
    date: date | None
    start_time: time
    end_time: time
    is_recurring: bool
    day_of_week: int | None
    start: str | None
    end: str | None


class OpenWindowResponse(BaseModel):
    date: date
    start_time: time
    end_time: time
    start: str
    end: str


def to_availability_response(slot: Availability) -> AvailabilityResponse:
    one_off = not slot.is_recurring and slot.date is not None
    return AvailabilityResponse(
        id=slot.id,
        therapist_id=slot.therapist_id,
        date=slot.date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        is_recurring=bool(slot.is_recurring),
        day_of_week=slot.day_of_week,
        start=to_iso(slot.date, slot.start_time) if one_off else None,
        end=to_iso(slot.date, slot.end_time) if one_off else None,
    )


def ensure_can_manage(current_user: User, therapist_id: int) -> None:
    if current_user.role == ROLE_ADMIN:
        return
    if current_user.role == ROLE_THERAPIST and current_user.id == therapist_id:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Only the therapist or an admin can manage this availability.',
    )


def build_slots(data: CreateAvailabilityRequest, today: date) -> list[Availability]:
    """Normalise the request into unsaved availability rows."""
    if data.recurring:
        if data.start_time is None or data.end_time is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Missing required fields.',
            )
        if not data.days:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='At least one day is required for recurring availability.',
            )
        start_time = truncate_time(data.start_time)
        end_time = truncate_time(data.end_time)
        validate_time_range(start_time, end_time)
        return [
            Availability(
                therapist_id=data.therapist_id,
                date=None,
                start_time=start_time,
                end_time=end_time,
                is_recurring=True,
                day_of_week=day,
            )
            for day in data.days
        ]

    window = normalize_window(
        start=data.start,
        end=data.end,
        slot_date=data.slot_date,
        start_time=data.start_time,
        end_time=data.end_time,
    )
    if window.date < today:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Availability cannot be added in the past.',
        )
    return [
        Availability(
            therapist_id=data.therapist_id,
            date=window.date,
            start_time=window.start_time,
            end_time=window.end_time,
            is_recurring=False,
            day_of_week=None,
        )
    ]


@router.post('/', response_model=list[AvailabilityResponse], status_code=status.HTTP_201_CREATED)
def create_availability(
    data: CreateAvailabilityRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_can_manage(current_user, data.therapist_id)
    today = clinic_now().date()
    new_slots = build_slots(data, today)

    ensure_database_ready()

    try:
        get_account_or_404(db, data.therapist_id, ROLE_THERAPIST, 'Therapist not found')

        existing_slots = db.query(Availability).filter(
            Availability.therapist_id == data.therapist_id,
            or_(Availability.is_recurring.is_(True), Availability.date >= today),
        ).all()
        for slot in new_slots:
            if find_overlapping_slot(existing_slots, slot) is not None:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail='This availability overlaps an existing slot.',
                )
            existing_slots.append(slot)

        db.add_all(new_slots)
        db.commit()
        for slot in new_slots:
            db.refresh(slot)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Added %s availability slot(s) for therapist %s', len(new_slots), data.therapist_id)
    return [to_availability_response(slot) for slot in new_slots]


@router.delete('/{slot_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_availability(
    slot_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        slot = db.query(Availability).filter(Availability.id == slot_id).first()
        if slot is None:
            raise not_found('Availability slot not found.')

        ensure_can_manage(current_user, slot.therapist_id)

        db.delete(slot)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/', response_model=list[AvailabilityResponse])
def list_availability(
    therapist_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
):
    if therapist_id is None:
        return []

    ensure_database_ready()

    try:
        slots = db.query(Availability).filter(
            Availability.therapist_id == therapist_id,
        ).order_by(
            Availability.is_recurring.asc(),
            Availability.date.asc(),
            Availability.day_of_week.asc(),
            Availability.start_time.asc(),
        ).all()
        return [to_availability_response(slot) for slot in slots]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/open', response_model=list[OpenWindowResponse])
def list_open_windows(
    therapist_id: int = Query(...),
    start_date: date | None = Query(default=None),
    days: int = Query(default=DEFAULT_OPEN_RANGE_DAYS, ge=1, le=MAX_OPEN_RANGE_DAYS),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    now = clinic_now()
    range_start = max(start_date or now.date(), now.date())
    range_end = range_start + timedelta(days=days)

    try:
        slots = db.query(Availability).filter(Availability.therapist_id == therapist_id).all()
        appointments = db.query(Appointment).filter(
            Appointment.therapist_id == therapist_id,
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.date >= range_start,
            Appointment.date < range_end,
        ).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    windows = trim_past(subtract_booked(expand_slots(slots, range_start, days), appointments), now)
    return [
        OpenWindowResponse(
            date=window.date,
            start_time=window.start_time,
            end_time=window.end_time,
            start=to_iso(window.date, window.start_time),
            end=to_iso(window.date, window.end_time),
        )
        for window in windows
    ]
