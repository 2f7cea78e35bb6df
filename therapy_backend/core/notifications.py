"""Appointment change notifications sent to every party."""

import logging
from dataclasses import dataclass, field
from html import escape

from sqlalchemy.orm import Session

from therapy_backend.auth.accounts import display_name
from therapy_backend.core import mailer
from therapy_backend.models.appointment import Appointment
from therapy_backend.models.user import User

logger = logging.getLogger(__name__)


@dataclass
class Party:
    email: str
    name: str


@dataclass
class AppointmentNotice:
    appointment_id: int
    subject: str
    html_content: str
    recipients: list[str] = field(default_factory=list)


def load_parties(db: Session, appointment: Appointment) -> dict[str, Party]:
    parties: dict[str, Party] = {}
    for label, user_id in (
        ("student", appointment.student_id),
        ("parent", appointment.parent_id),
        ("therapist", appointment.therapist_id),
    ):
        if not user_id:
            continue
        user = db.get(User, user_id)
        if user is not None:
            parties[label] = Party(email=user.email, name=display_name(user))
    return parties


def build_subject(appointment: Appointment, status: str) -> str:
    return (
        f"Appointment {status.capitalize()} - "
        f"{appointment.date.isoformat()} {appointment.start_time.strftime('%H:%M')}"
    )


def build_html(
    appointment: Appointment,
    status: str,
    parties: dict[str, Party],
    action_by: str,
    reason: str | None = None,
) -> str:
    def name_of(label: str) -> str:
        party = parties.get(label)
        return escape(party.name) if party else "-"

    heading = "Session" if appointment.appointment_type == "session" else "Request"
    notes = f"<b>Notes:</b> {escape(appointment.notes)}<br/>" if appointment.notes else ""
    reason_line = f"<b>Reason:</b> {escape(reason)}<br/>" if reason else ""
    return f"""
    <div>
      <h2>Appointment {heading} Updated</h2>
      <p>
        <b>Date:</b> {appointment.date.isoformat()}<br/>
        <b>Time:</b> {appointment.start_time.strftime('%H:%M')} - {appointment.end_time.strftime('%H:%M')}<br/>
        <b>Status:</b> {escape(status)}<br/>
        <b>Student:</b> {name_of('student')}<br/>
        <b>Parent:</b> {name_of('parent')}<br/>
        <b>Therapist:</b> {name_of('therapist')}<br/>
        {notes}{reason_line}
        <b>Updated by:</b> {escape(action_by)}<br/>
      </p>
      <p>Please log in to view more details or take action if needed.</p>
    </div>
    """


def prepare_notice(
    db: Session,
    appointment: Appointment,
    status: str,
    action_by: str,
    reason: str | None = None,
) -> AppointmentNotice:
    """Render the notice while the appointment row is still loaded."""
    parties = load_parties(db, appointment)
    recipients: list[str] = []
    for party in parties.values():
        if party.email not in recipients:
            recipients.append(party.email)
    return AppointmentNotice(
        appointment_id=appointment.id,
        subject=build_subject(appointment, status),
        html_content=build_html(appointment, status, parties, action_by, reason),
        recipients=recipients,
    )


def deliver_notice(notice: AppointmentNotice) -> int:
    """Send one email per recipient. Returns the number delivered."""
    delivered = 0
    for recipient in notice.recipients:
        if mailer.send_email(recipient, notice.subject, notice.html_content):
            delivered += 1
        else:
            logger.warning(
                "Appointment %s notification to %s was not delivered",
                notice.appointment_id,
                recipient,
            )
    return delivered


def notify_appointment_parties(
    db: Session,
    appointment: Appointment,
    status: str,
    action_by: str,
    reason: str | None = None,
) -> int:
    return deliver_notice(prepare_notice(db, appointment, status, action_by, reason))
