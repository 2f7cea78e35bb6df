from datetime import date, datetime, time

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from therapy_backend.models.appointment import Appointment
from therapy_backend.models.availability import Availability
from therapy_backend.routes.appointment_routes import (
    CreateAppointmentRequest,
    StatusChangeRequest,
    UpdateAppointmentRequest,
    accept_appointment,
    cancel_appointment,
    complete_appointment,
    create_appointment,
    decline_appointment,
    delete_appointment,
    get_appointment,
    list_appointments,
    update_appointment,
)

MONDAY = date(2030, 1, 7)


@pytest.fixture
def therapist(db, make_user):
    therapist = make_user('therapist', email='therapist@example.com')
    # Mondays 09:00-12:00.
    db.add(Availability(therapist_id=therapist.id, start_time=time(9, 0), end_time=time(12, 0), is_recurring=True, day_of_week=1))
    db.commit()
    return therapist


@pytest.fixture
def student(make_user):
    return make_user('student', email='student@example.com')


@pytest.fixture
def add_appointment(db):
    def _add_appointment(student, therapist, start_time: time, end_time: time, status: str = 'pending', **fields):
        appointment = Appointment(
            student_id=student.id,
            therapist_id=therapist.id,
            date=fields.pop('slot_date', MONDAY),
            start_time=start_time,
            end_time=end_time,
            status=status,
            **fields,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _add_appointment


def booking_request(student, therapist, start: time, end: time, **fields) -> CreateAppointmentRequest:
    return CreateAppointmentRequest(
        student_id=student.id,
        therapist_id=therapist.id,
        start=datetime.combine(MONDAY, start),
        end=datetime.combine(MONDAY, end),
        **fields,
    )


def list_for(user, db, **filters):
    params = {'student_id': None, 'parent_id': None, 'therapist_id': None, 'status_filter': None}
    params.update(filters)
    return list_appointments(current_user=user, db=db, **params)


def test_create_appointment_request_accepts_type_alias() -> None:
    request = CreateAppointmentRequest.model_validate(
        {'student_id': 1, 'therapist_id': 2, 'date': '2030-01-07', 'start_time': '09:00', 'end_time': '09:30', 'type': ' Request '}
    )

    assert request.appointment_type == 'request'
    assert request.slot_date == MONDAY


def test_create_appointment_request_rejects_unknown_type() -> None:
    with pytest.raises(ValidationError):
        CreateAppointmentRequest(student_id=1, therapist_id=2, appointment_type='party')


def test_create_appointment_request_rejects_long_notes() -> None:
    with pytest.raises(ValidationError):
        CreateAppointmentRequest(student_id=1, therapist_id=2, notes='x' * 601)


def test_student_books_pending_appointment(db, student, therapist, frozen_now, sent_emails) -> None:
    response = create_appointment(
        data=booking_request(student, therapist, time(9, 0), time(9, 45), notes='  First visit  '),
        current_user=student,
        db=db,
    )

    assert response.status == 'pending'
    assert response.parent_id is None
    assert response.appointment_type == 'session'
    assert response.notes == 'First visit'
    assert response.start == '2030-01-07T09:00'
    assert response.end == '2030-01-07T09:45'
    assert {email['to'] for email in sent_emails} == {'student@example.com', 'therapist@example.com'}
    assert sent_emails[0]['subject'] == 'Appointment Pending - 2030-01-07 09:00'


def test_parent_books_for_linked_student(db, make_user, link_parent, student, therapist, frozen_now, sent_emails) -> None:
    parent = make_user('parent', email='parent@example.com')
    link_parent(parent, student)

    response = create_appointment(
        data=booking_request(student, therapist, time(10, 0), time(10, 30)),
        current_user=parent,
        db=db,
    )

    assert response.parent_id == parent.id
    assert len(sent_emails) == 3


def test_admin_can_book_on_behalf_of_linked_parent(db, make_user, link_parent, student, therapist, frozen_now, sent_emails) -> None:
    admin = make_user('admin')
    parent = make_user('parent')
    link_parent(parent, student)

    response = create_appointment(
        data=booking_request(student, therapist, time(10, 0), time(10, 30), parent_id=parent.id),
        current_user=admin,
        db=db,
    )

    assert response.parent_id == parent.id


@pytest.mark.parametrize(
    ('booker_role', 'status_code', 'error_detail'),
    [
        ('student', 403, 'Students can only book appointments for themselves.'),
        ('parent', 403, 'Parents can only book for their linked students.'),
        ('therapist', 403, 'Therapists cannot request appointments.'),
    ],
)
def test_create_appointment_enforces_who_may_book(
    db, make_user, student, therapist, frozen_now, sent_emails, booker_role: str, status_code: int, error_detail: str
) -> None:
    booker = make_user(booker_role)

    with pytest.raises(HTTPException) as exception_info:
        create_appointment(data=booking_request(student, therapist, time(9, 0), time(9, 30)), current_user=booker, db=db)

    assert exception_info.value.status_code == status_code
    assert exception_info.value.detail == error_detail
    assert db.query(Appointment).count() == 0


def test_admin_cannot_attach_unlinked_parent(db, make_user, student, therapist, frozen_now) -> None:
    admin = make_user('admin')
    parent = make_user('parent')

    with pytest.raises(HTTPException) as exception_info:
        create_appointment(
            data=booking_request(student, therapist, time(9, 0), time(9, 30), parent_id=parent.id),
            current_user=admin,
            db=db,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Parent is not linked to this student.'


def test_create_appointment_rejects_past_start(db, student, therapist, frozen_now) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_appointment(data=booking_request(student, therapist, time(7, 0), time(7, 30)), current_user=student, db=db)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Appointments must be scheduled in the future.'


def test_create_appointment_rejects_unapproved_therapist(db, make_user, student, frozen_now) -> None:
    therapist = make_user('therapist', approved=False)
    db.add(Availability(therapist_id=therapist.id, start_time=time(9, 0), end_time=time(12, 0), is_recurring=True, day_of_week=1))
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        create_appointment(data=booking_request(student, therapist, time(9, 0), time(9, 30)), current_user=student, db=db)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Therapist is not accepting appointments yet.'


def test_create_appointment_rejects_time_outside_availability(db, student, therapist, frozen_now) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_appointment(data=booking_request(student, therapist, time(11, 30), time(12, 30)), current_user=student, db=db)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == "Requested time is outside the therapist's availability."


def test_create_appointment_rejects_double_booking(db, make_user, student, therapist, add_appointment, frozen_now) -> None:
    other_student = make_user('student')
    add_appointment(other_student, therapist, time(9, 0), time(10, 0), status='accepted')

    with pytest.raises(HTTPException) as exception_info:
        create_appointment(data=booking_request(student, therapist, time(9, 30), time(10, 30)), current_user=student, db=db)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'This time is already booked.'


def test_create_appointment_rejects_student_clash_with_other_therapist(
    db, make_user, student, therapist, add_appointment, frozen_now
) -> None:
    other_therapist = make_user('therapist')
    add_appointment(student, other_therapist, time(9, 0), time(10, 0))

    with pytest.raises(HTTPException) as exception_info:
        create_appointment(data=booking_request(student, therapist, time(9, 30), time(10, 0)), current_user=student, db=db)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'Student already has an appointment at this time.'


def test_inactive_appointments_do_not_block_the_slot(
    db, make_user, student, therapist, add_appointment, frozen_now, sent_emails
) -> None:
    other_student = make_user('student')
    add_appointment(other_student, therapist, time(9, 0), time(10, 0), status='cancelled')
    add_appointment(other_student, therapist, time(10, 0), time(11, 0), status='declined')

    response = create_appointment(
        data=booking_request(student, therapist, time(9, 30), time(10, 30)),
        current_user=student,
        db=db,
    )

    assert response.status == 'pending'


def test_back_to_back_appointments_are_allowed(db, make_user, student, therapist, add_appointment, frozen_now, sent_emails) -> None:
    add_appointment(make_user('student'), therapist, time(9, 0), time(10, 0))

    response = create_appointment(
        data=booking_request(student, therapist, time(10, 0), time(11, 0)),
        current_user=student,
        db=db,
    )

    assert response.start_time == time(10, 0)


def test_list_appointments_is_scoped_by_role(db, make_user, link_parent, student, therapist, add_appointment) -> None:
    other_student = make_user('student')
    other_therapist = make_user('therapist')
    parent = make_user('parent')
    admin = make_user('admin')
    link_parent(parent, student)
    mine = add_appointment(student, therapist, time(9, 0), time(9, 30))
    theirs = add_appointment(other_student, other_therapist, time(9, 0), time(9, 30))

    assert [item.id for item in list_for(student, db)] == [mine.id]
    assert [item.id for item in list_for(parent, db)] == [mine.id]
    assert [item.id for item in list_for(therapist, db)] == [mine.id]
    assert [item.id for item in list_for(other_therapist, db)] == [theirs.id]
    assert {item.id for item in list_for(admin, db)} == {mine.id, theirs.id}
    assert [item.id for item in list_for(admin, db, student_id=other_student.id)] == [theirs.id]


def test_list_appointments_filters_by_status(db, student, therapist, add_appointment) -> None:
    add_appointment(student, therapist, time(9, 0), time(9, 30), status='pending')
    accepted = add_appointment(student, therapist, time(10, 0), time(10, 30), status='accepted')

    assert [item.id for item in list_for(student, db, status_filter='accepted')] == [accepted.id]


def test_list_appointments_rejects_unknown_status(db, student) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_for(student, db, status_filter='booked')

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Invalid appointment status.'


def test_get_appointment_hides_from_non_party(db, make_user, student, therapist, add_appointment) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30))
    outsider = make_user('student')

    with pytest.raises(HTTPException) as exception_info:
        get_appointment(appointment_id=appointment.id, current_user=outsider, db=db)

    assert exception_info.value.status_code == 403
    assert get_appointment(appointment_id=appointment.id, current_user=therapist, db=db).id == appointment.id


def test_get_appointment_returns_not_found(db, student) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_appointment(appointment_id=404, current_user=student, db=db)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Appointment not found.'


def test_therapist_accepts_pending_appointment(db, student, therapist, add_appointment, sent_emails) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30))

    response = accept_appointment(appointment_id=appointment.id, current_user=therapist, db=db)

    assert response.status == 'accepted'
    assert all(email['subject'].startswith('Appointment Accepted') for email in sent_emails)


def test_student_cannot_accept_appointment(db, student, therapist, add_appointment) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30))

    with pytest.raises(HTTPException) as exception_info:
        accept_appointment(appointment_id=appointment.id, current_user=student, db=db)

    assert exception_info.value.status_code == 403
    assert exception_info.value.detail == 'Only the assigned therapist can respond to this appointment.'


def test_declined_appointment_cannot_be_accepted(db, student, therapist, add_appointment) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30), status='declined')

    with pytest.raises(HTTPException) as exception_info:
        accept_appointment(appointment_id=appointment.id, current_user=therapist, db=db)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'Cannot change appointment from declined to accepted.'


def test_decline_includes_reason_in_notification(db, student, therapist, add_appointment, sent_emails) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30))

    response = decline_appointment(
        appointment_id=appointment.id,
        data=StatusChangeRequest(reason=' Fully booked that week '),
        current_user=therapist,
        db=db,
    )

    assert response.status == 'declined'
    assert 'Fully booked that week' in sent_emails[0]['html']


def test_student_cancels_accepted_appointment(db, student, therapist, add_appointment, sent_emails) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30), status='accepted')

    response = cancel_appointment(appointment_id=appointment.id, data=None, current_user=student, db=db)

    assert response.status == 'cancelled'


def test_complete_requires_session_to_have_started(db, student, therapist, add_appointment, frozen_now) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30), status='accepted')

    with pytest.raises(HTTPException) as exception_info:
        complete_appointment(appointment_id=appointment.id, current_user=therapist, db=db)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Appointments can only be completed after they start.'


def test_complete_started_session(db, student, therapist, add_appointment, monkeypatch: pytest.MonkeyPatch, sent_emails) -> None:
    monkeypatch.setattr('therapy_backend.routes.appointment_routes.clinic_now', lambda: datetime(2030, 1, 7, 9, 40))
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30), status='accepted')

    response = complete_appointment(appointment_id=appointment.id, current_user=therapist, db=db)

    assert response.status == 'completed'


def test_reschedule_by_student_returns_accepted_appointment_to_pending(
    db, student, therapist, add_appointment, frozen_now, sent_emails
) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30), status='accepted')

    response = update_appointment(
        appointment_id=appointment.id,
        data=UpdateAppointmentRequest(start_time=time(10, 0), end_time=time(10, 30)),
        current_user=student,
        db=db,
    )

    assert response.date == MONDAY
    assert response.start_time == time(10, 0)
    assert response.status == 'pending'


def test_reschedule_by_therapist_keeps_appointment_accepted(
    db, student, therapist, add_appointment, frozen_now, sent_emails
) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30), status='accepted')

    response = update_appointment(
        appointment_id=appointment.id,
        data=UpdateAppointmentRequest(start=datetime(2030, 1, 7, 11, 0), end=datetime(2030, 1, 7, 11, 30)),
        current_user=therapist,
        db=db,
    )

    assert response.start_time == time(11, 0)
    assert response.status == 'accepted'


def test_reschedule_onto_booked_time_is_rejected(
    db, make_user, student, therapist, add_appointment, frozen_now
) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30))
    add_appointment(make_user('student'), therapist, time(10, 0), time(11, 0))

    with pytest.raises(HTTPException) as exception_info:
        update_appointment(
            appointment_id=appointment.id,
            data=UpdateAppointmentRequest(start_time=time(10, 30), end_time=time(11, 0)),
            current_user=student,
            db=db,
        )

    assert exception_info.value.status_code == 409
    db.refresh(appointment)
    assert appointment.start_time == time(9, 0)


def test_update_changes_notes_without_moving(db, student, therapist, add_appointment, frozen_now, sent_emails) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30), status='accepted')

    response = update_appointment(
        appointment_id=appointment.id,
        data=UpdateAppointmentRequest(notes='Bring reading log', appointment_type='request'),
        current_user=student,
        db=db,
    )

    assert response.notes == 'Bring reading log'
    assert response.appointment_type == 'request'
    assert response.status == 'accepted'


def test_update_rejects_closed_appointment(db, student, therapist, add_appointment, frozen_now) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30), status='cancelled')

    with pytest.raises(HTTPException) as exception_info:
        update_appointment(
            appointment_id=appointment.id,
            data=UpdateAppointmentRequest(notes='too late'),
            current_user=student,
            db=db,
        )

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'Only pending or accepted appointments can be changed.'


def test_delete_appointment_removes_row_and_notifies(db, student, therapist, add_appointment, sent_emails) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30))

    delete_appointment(appointment_id=appointment.id, current_user=student, db=db)

    assert db.query(Appointment).count() == 0
    assert {email['to'] for email in sent_emails} == {'student@example.com', 'therapist@example.com'}
    assert all(email['subject'] == 'Appointment Deleted - 2030-01-07 09:00' for email in sent_emails)


def test_update_notes_on_started_session_with_unchanged_window(
    db, student, therapist, add_appointment, frozen_now, sent_emails
) -> None:
    appointment = add_appointment(student, therapist, time(7, 30), time(8, 30), status='accepted')

    response = update_appointment(
        appointment_id=appointment.id,
        data=UpdateAppointmentRequest(
            slot_date=MONDAY,
            start_time=time(7, 30),
            end_time=time(8, 30),
            notes='Ran over by ten minutes',
        ),
        current_user=therapist,
        db=db,
    )

    assert response.notes == 'Ran over by ten minutes'
    assert response.start_time == time(7, 30)
    assert response.status == 'accepted'


def test_moving_into_the_past_is_rejected(db, student, therapist, add_appointment, frozen_now) -> None:
    appointment = add_appointment(student, therapist, time(9, 0), time(9, 30))

    with pytest.raises(HTTPException) as exception_info:
        update_appointment(
            appointment_id=appointment.id,
            data=UpdateAppointmentRequest(start_time=time(7, 0), end_time=time(7, 30)),
            current_user=student,
            db=db,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Appointments must be scheduled in the future.'
