"""Account model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from therapy_backend.database import Base, utcnow


ROLE_STUDENT = "student"
ROLE_PARENT = "parent"
ROLE_THERAPIST = "therapist"
ROLE_ADMIN = "admin"

SELF_REGISTER_ROLES = (ROLE_STUDENT, ROLE_PARENT, ROLE_THERAPIST)
ALL_ROLES = SELF_REGISTER_ROLES + (ROLE_ADMIN,)


class User(Base):
    """Represents an account holder of any role."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String, nullable=False)  # student/parent/therapist/admin

    first_name = Column(String)
    last_name = Column(String)
    phone_number = Column(String)
    age = Column(Integer)
    address = Column(String)
    zip_code = Column(String)

    email_verified = Column(Boolean, default=False, nullable=False)
    verify_token = Column(String)
    reset_token = Column(String)
    reset_token_expiry = Column(DateTime)

    # Therapists only become bookable once an admin approves them.
    is_approved = Column(Boolean, default=False, nullable=False)
    approved_by_id = Column(Integer, ForeignKey("users.id"))
    approval_date = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)


class TherapistSpecialty(Base):
    """A specialty a therapist offers."""
    __tablename__ = "therapist_specialties"

    therapist_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    specialty = Column(String, primary_key=True)


class ParentStudent(Base):
    """Links a parent account to a student account."""
    __tablename__ = "parent_student"

    parent_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    student_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
