import logging
from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.accounts import display_name, get_linked_student_ids, is_parent_of
from therapy_backend.auth.dependencies import get_current_user, get_db
from therapy_backend.core import notifications
from therapy_backend.core.scheduling import (
    ACTIVE_STATUSES,
    APPOINTMENT_STATUSES,
    APPOINTMENT_TYPES,
    DEFAULT_APPOINTMENT_TYPE,
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_DECLINED,
    STATUS_DELETED,
    STATUS_PENDING,
    SlotWindow,
    clinic_now,
    ensure_transition,
    find_conflicting_appointment,
    normalize_window,
    to_iso,
    window_is_covered,
)
from therapy_backend.models.appointment import Appointment
from therapy_backend.models.availability import Availability
from therapy_backend.models.user import ROLE_ADMIN, ROLE_PARENT, ROLE_STUDENT, ROLE_THERAPIST, User
from therapy_backend.routes.common import database_unavailable, ensure_database_ready, not_found

router = APIRouter(tags=['appointments'])
logger = logging.getLogger(__name__)

MAX_APPOINTMENT_NOTES_LENGTH = 600
MAX_REASON_LENGTH = 300


def normalize_notes(value: str | None) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > MAX_APPOINTMENT_NOTES_LENGTH:
        raise ValueError(f'Notes must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

    return normalized


def normalize_appointment_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in APPOINTMENT_TYPES:
        raise ValueError('Invalid appointment type.')
    return normalized


class AppointmentWindowFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start: datetime | None = None
    end: datetime | None = None
    slot_date: date | None = Field(default=None, alias='date')
    start_time: time | None = None
    end_time: time | None = None
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return normalize_notes(value)


class CreateAppointmentRequest(AppointmentWindowFields):
    student_id: int
    therapist_id: int
    parent_id: int | None = None
    appointment_type: str = Field(
        default=DEFAULT_APPOINTMENT_TYPE,
        validation_alias=AliasChoices('type', 'appointment_type'),
    )

    @field_validator('appointment_type')
    @classmethod
    def validate_appointment_type(cls, value: str) -> str:
        return normalize_appointment_type(value)


class UpdateAppointmentRequest(AppointmentWindowFields):
    appointment_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices('type', 'appointment_type'),
    )

    @field_validator('appointment_type')
    @classmethod
    def validate_appointment_type(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_appointment_type(value)

    def has_window_fields(self) -> bool:
        return any(
            value is not None
            for value in (self.start, self.end, self.slot_date, self.start_time, self.end_time)
        )


class StatusChangeRequest(BaseModel):
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if len(normalized) > MAX_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_REASON_LENGTH} characters or fewer.')
        return normalized or None


class AppointmentResponse(BaseModel):
    id: int
    student_id: int
    parent_id: int | None
    therapist_id: int
    date: date
    start_time: time
    end_time: time
    start: str
    end: str
    status: str
    appointment_type: str
    notes: str | None = None


def to_appointment_response(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        student_id=appointment.student_id,
        parent_id=appointment.parent_id,
        therapist_id=appointment.therapist_id,
        date=appointment.date,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        start=to_iso(appointment.date, appointment.start_time),
        end=to_iso(appointment.date, appointment.end_time),
        status=appointment.status or STATUS_PENDING,
        appointment_type=appointment.appointment_type or DEFAULT_APPOINTMENT_TYPE,
        notes=appointment.notes,
    )


def describe_actor(user: User) -> str:
    return f'{display_name(user)} ({user.role})'


def is_party(db: Session, user: User, appointment: Appointment) -> bool:
    if user.role == ROLE_ADMIN:
        return True
    if user.id in (appointment.student_id, appointment.therapist_id, appointment.parent_id):
        return True
    return user.role == ROLE_PARENT and is_parent_of(db, user.id, appointment.student_id)


def get_appointment_or_404(db: Session, appointment_id: int) -> Appointment:
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if appointment is None:
        raise not_found('Appointment not found.')
    return appointment


def get_visible_appointment(db: Session, appointment_id: int, current_user: User) -> Appointment:
    appointment = get_appointment_or_404(db, appointment_id)
    if not is_party(db, current_user, appointment):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='You are not a party to this appointment.',
        )
    return appointment


def resolve_booking_parent(db: Session, current_user: User, data: CreateAppointmentRequest) -> int | None:
    """Return the parent id to record, enforcing who may book for whom."""
    if current_user.role == ROLE_STUDENT:
        if current_user.id != data.student_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Students can only book appointments for themselves.',
            )
        return None

    if current_user.role == ROLE_PARENT:
        if not is_parent_of(db, current_user.id, data.student_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Parents can only book for their linked students.',
            )
        return current_user.id

    if current_user.role == ROLE_ADMIN:
        if data.parent_id is not None and not is_parent_of(db, data.parent_id, data.student_id):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Parent is not linked to this student.',
            )
        return data.parent_id

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Therapists cannot request appointments.',
    )


def ensure_future(window: SlotWindow) -> None:
    if window.start <= clinic_now():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Appointments must be scheduled in the future.',
        )


def ensure_window_bookable(
    db: Session,
    window: SlotWindow,
    therapist_id: int,
    student_id: int,
    exclude_id: int | None = None,
) -> None:
    """Reject windows outside availability or clashing with active appointments."""
    slots = db.query(Availability).filter(Availability.therapist_id == therapist_id).all()
    if not window_is_covered(slots, window):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Requested time is outside the therapist's availability.",
        )

    same_day = db.query(Appointment).filter(
        Appointment.date == window.date,
        Appointment.status.in_(ACTIVE_STATUSES),
        or_(Appointment.therapist_id == therapist_id, Appointment.student_id == student_id),
    ).all()

    therapist_appointments = [item for item in same_day if item.therapist_id == therapist_id]
    if find_conflicting_appointment(therapist_appointments, window, exclude_id=exclude_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='This time is already booked.',
        )

    student_appointments = [item for item in same_day if item.student_id == student_id]
    if find_conflicting_appointment(student_appointments, window, exclude_id=exclude_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='Student already has an appointment at this time.',
        )


@router.post('/', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    window = normalize_window(
        start=data.start,
        end=data.end,
        slot_date=data.slot_date,
        start_time=data.start_time,
        end_time=data.end_time,
    )
    ensure_future(window)

    ensure_database_ready()

    try:
        parent_id = resolve_booking_parent(db, current_user, data)

        student = db.query(User).filter(User.id == data.student_id, User.role == ROLE_STUDENT).first()
        if student is None:
            raise not_found('Student not found')

        therapist = db.query(User).filter(User.id == data.therapist_id, User.role == ROLE_THERAPIST).first()
        if therapist is None:
            raise not_found('Therapist not found')
        if not therapist.is_approved:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Therapist is not accepting appointments yet.',
            )

        ensure_window_bookable(db, window, data.therapist_id, data.student_id)

        appointment = Appointment(
            student_id=data.student_id,
            parent_id=parent_id,
            therapist_id=data.therapist_id,
            date=window.date,
            start_time=window.start_time,
            end_time=window.end_time,
            status=STATUS_PENDING,
            appointment_type=data.appointment_type,
            notes=data.notes,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Appointment %s requested by user %s', appointment.id, current_user.id)
    notifications.notify_appointment_parties(
        db, appointment, STATUS_PENDING, f'{describe_actor(current_user)} - appointment requested',
    )
    return to_appointment_response(appointment)


@router.get('/', response_model=list[AppointmentResponse])
def list_appointments(
    student_id: int | None = Query(default=None),
    parent_id: int | None = Query(default=None),
    therapist_id: int | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias='status'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if status_filter is not None and status_filter not in APPOINTMENT_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid appointment status.',
        )

    ensure_database_ready()

    try:
        query = db.query(Appointment)

        if current_user.role == ROLE_STUDENT:
            query = query.filter(Appointment.student_id == current_user.id)
        elif current_user.role == ROLE_THERAPIST:
            query = query.filter(Appointment.therapist_id == current_user.id)
        elif current_user.role == ROLE_PARENT:
            linked_ids = get_linked_student_ids(db, current_user.id)
            query = query.filter(
                or_(Appointment.parent_id == current_user.id, Appointment.student_id.in_(linked_ids))
            )

        if student_id is not None:
            query = query.filter(Appointment.student_id == student_id)
        if parent_id is not None:
            query = query.filter(Appointment.parent_id == parent_id)
        if therapist_id is not None:
            query = query.filter(Appointment.therapist_id == therapist_id)
        if status_filter is not None:
            query = query.filter(Appointment.status == status_filter)

        appointments = query.order_by(Appointment.date.asc(), Appointment.start_time.asc()).all()
        return [to_appointment_response(appointment) for appointment in appointments]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return to_appointment_response(get_visible_appointment(db, appointment_id, current_user))
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/{appointment_id}', response_model=AppointmentResponse)
def update_appointment(
    appointment_id: int,
    data: UpdateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = get_visible_appointment(db, appointment_id, current_user)
        if appointment.status not in ACTIVE_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='Only pending or accepted appointments can be changed.',
            )

        if data.has_window_fields():
            if data.start is not None or data.end is not None:
                window = normalize_window(start=data.start, end=data.end)
            else:
                window = normalize_window(
                    slot_date=data.slot_date or appointment.date,
                    start_time=data.start_time or appointment.start_time,
                    end_time=data.end_time or appointment.end_time,
                )
            current_window = SlotWindow(appointment.date, appointment.start_time, appointment.end_time)
            if window != current_window:
                ensure_future(window)
                ensure_window_bookable(
                    db, window, appointment.therapist_id, appointment.student_id, exclude_id=appointment.id,
                )
                appointment.date = window.date
                appointment.start_time = window.start_time
                appointment.end_time = window.end_time
                # A moved session needs the therapist to confirm again.
                if appointment.status == STATUS_ACCEPTED and current_user.id != appointment.therapist_id:
                    appointment.status = STATUS_PENDING

        if data.appointment_type is not None:
            appointment.appointment_type = data.appointment_type
        if 'notes' in data.model_fields_set:
            appointment.notes = data.notes

        db.commit()
        db.refresh(appointment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Appointment %s updated by user %s', appointment.id, current_user.id)
    notifications.notify_appointment_parties(
        db, appointment, appointment.status, f'{describe_actor(current_user)} - appointment updated',
    )
    return to_appointment_response(appointment)


def change_status(
    db: Session,
    appointment_id: int,
    target: str,
    current_user: User,
    reason: str | None = None,
) -> Appointment:
    """Apply a status transition and notify every party."""
    ensure_database_ready()

    try:
        appointment = get_visible_appointment(db, appointment_id, current_user)

        if target in (STATUS_ACCEPTED, STATUS_DECLINED, STATUS_COMPLETED) and current_user.role != ROLE_ADMIN:
            if current_user.id != appointment.therapist_id:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail='Only the assigned therapist can respond to this appointment.',
                )

        ensure_transition(appointment.status, target)

        if target == STATUS_COMPLETED:
            if datetime.combine(appointment.date, appointment.start_time) > clinic_now():
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail='Appointments can only be completed after they start.',
                )

        appointment.status = target
        db.commit()
        db.refresh(appointment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Appointment %s moved to %s by user %s', appointment.id, target, current_user.id)
    notifications.notify_appointment_parties(
        db, appointment, target, f'{describe_actor(current_user)} - appointment {target}', reason,
    )
    return appointment


@router.post('/{appointment_id}/accept', response_model=AppointmentResponse)
def accept_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return to_appointment_response(change_status(db, appointment_id, STATUS_ACCEPTED, current_user))


@router.post('/{appointment_id}/decline', response_model=AppointmentResponse)
def decline_appointment(
    appointment_id: int,
    data: StatusChangeRequest | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    reason = data.reason if data else None
    return to_appointment_response(change_status(db, appointment_id, STATUS_DECLINED, current_user, reason))


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    data: StatusChangeRequest | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    reason = data.reason if data else None
    return to_appointment_response(change_status(db, appointment_id, STATUS_CANCELLED, current_user, reason))


@router.post('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return to_appointment_response(change_status(db, appointment_id, STATUS_COMPLETED, current_user))


@router.delete('/{appointment_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = get_visible_appointment(db, appointment_id, current_user)
        notice = notifications.prepare_notice(
            db, appointment, STATUS_DELETED, f'{describe_actor(current_user)} - appointment deleted',
        )
        db.delete(appointment)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Appointment %s deleted by user %s', appointment_id, current_user.id)
    notifications.deliver_notice(notice)
