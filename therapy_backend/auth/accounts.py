"""Registration and profile handling shared by every account role."""

import logging
from datetime import datetime

from fastapi import HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from therapy_backend.auth.passwords import generate_token, hash_password
from therapy_backend.core import config, mailer
from therapy_backend.models.user import ROLE_ADMIN, ROLE_THERAPIST, ParentStudent, TherapistSpecialty, User

logger = logging.getLogger(__name__)

MAX_SPECIALTY_LENGTH = 80


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if not normalized:
        raise ValueError('Email is required.')
    if '@' not in normalized or normalized.startswith('@') or normalized.endswith('@'):
        raise ValueError('Email address is invalid.')
    return normalized


def validate_password(value: str) -> str:
    if len(value) < config.MIN_PASSWORD_LENGTH:
        raise ValueError(f'Password must be at least {config.MIN_PASSWORD_LENGTH} characters.')
    return value


def normalize_specialties(values: list[str]) -> list[str]:
    specialties: list[str] = []
    for value in values:
        normalized = value.strip()
        if not normalized:
            continue
        if len(normalized) > MAX_SPECIALTY_LENGTH:
            raise ValueError(f'Specialties must be {MAX_SPECIALTY_LENGTH} characters or fewer.')
        if normalized.lower() not in {specialty.lower() for specialty in specialties}:
            specialties.append(normalized)
    return specialties


class ProfileFields(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None
    age: int | None = None
    address: str | None = None
    zip_code: str | None = None

    @field_validator('first_name', 'last_name', 'phone_number', 'address', 'zip_code')
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator('age')
    @classmethod
    def validate_age(cls, value: int | None) -> int | None:
        if value is not None and not 0 < value < 130:
            raise ValueError('Age must be between 1 and 129.')
        return value


class RegisterRequest(ProfileFields):
    email: str
    password: str
    specialties: list[str] = []

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator('password')
    @classmethod
    def check_password(cls, value: str) -> str:
        return validate_password(value)

    @field_validator('specialties')
    @classmethod
    def validate_specialties(cls, value: list[str]) -> list[str]:
        return normalize_specialties(value)


class ProfileUpdateRequest(ProfileFields):
    specialties: list[str] | None = None

    @field_validator('specialties')
    @classmethod
    def validate_specialties(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return normalize_specialties(value)


class AccountResponse(BaseModel):
    id: int
    email: str
    role: str
    name: str
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None
    age: int | None = None
    address: str | None = None
    zip_code: str | None = None
    email_verified: bool
    is_approved: bool
    approval_date: datetime | None = None
    specialties: list[str] = []


class RegistrationResponse(BaseModel):
    message: str
    id: int
    email: str
    role: str


def display_name(user: User) -> str:
    name = ' '.join(part for part in (user.first_name, user.last_name) if part)
    return name or user.email


def get_specialties(db: Session, therapist_id: int) -> list[str]:
    rows = db.query(TherapistSpecialty.specialty).filter(
        TherapistSpecialty.therapist_id == therapist_id,
    ).order_by(TherapistSpecialty.specialty.asc()).all()
    return [specialty for (specialty,) in rows]


def replace_specialties(db: Session, therapist_id: int, specialties: list[str]) -> None:
    db.query(TherapistSpecialty).filter(TherapistSpecialty.therapist_id == therapist_id).delete()
    for specialty in specialties:
        db.add(TherapistSpecialty(therapist_id=therapist_id, specialty=specialty))


def to_account_response(db: Session, user: User) -> AccountResponse:
    specialties = get_specialties(db, user.id) if user.role == ROLE_THERAPIST else []
    return AccountResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        name=display_name(user),
        first_name=user.first_name,
        last_name=user.last_name,
        phone_number=user.phone_number,
        age=user.age,
        address=user.address,
        zip_code=user.zip_code,
        email_verified=bool(user.email_verified),
        is_approved=bool(user.is_approved),
        approval_date=user.approval_date,
        specialties=specialties,
    )


def register_account(db: Session, role: str, data: RegisterRequest) -> User:
    """Create an unverified account and email its verification token.

    Admin accounts are created verified and never receive a token.
    """
    existing = db.query(User.id).filter(User.email == data.email).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='An account with this email already exists.',
        )

    is_admin = role == ROLE_ADMIN
    user = User(
        email=data.email,
        hashed_password=hash_password(data.password),
        role=role,
        first_name=data.first_name,
        last_name=data.last_name,
        phone_number=data.phone_number,
        age=data.age,
        address=data.address,
        zip_code=data.zip_code,
        email_verified=is_admin,
        verify_token=None if is_admin else generate_token(),
        is_approved=False,
    )

    try:
        db.add(user)
        db.flush()
        if role == ROLE_THERAPIST:
            replace_specialties(db, user.id, data.specialties)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='An account with this email already exists.',
        ) from exc
    db.refresh(user)

    logger.info('Registered %s account %s', role, user.id)
    if user.verify_token and not mailer.send_verification_email(user.email, user.verify_token):
        logger.error('Verification email for account %s was not delivered', user.id)

    return user


def update_profile(db: Session, user: User, data: ProfileUpdateRequest) -> User:
    changes = data.model_dump(exclude_unset=True, exclude={'specialties'})
    for field_name, value in changes.items():
        setattr(user, field_name, value)

    if data.specialties is not None and user.role == ROLE_THERAPIST:
        replace_specialties(db, user.id, data.specialties)

    db.commit()
    db.refresh(user)
    return user


def get_account_or_404(db: Session, user_id: int, role: str, detail: str) -> User:
    user = db.query(User).filter(User.id == user_id, User.role == role).first()
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return user


def get_linked_student_ids(db: Session, parent_id: int) -> list[int]:
    rows = db.query(ParentStudent.student_id).filter(
        ParentStudent.parent_id == parent_id,
    ).order_by(ParentStudent.student_id.asc()).all()
    return [student_id for (student_id,) in rows]


def is_parent_of(db: Session, parent_id: int, student_id: int) -> bool:
    return db.query(ParentStudent).filter(
        ParentStudent.parent_id == parent_id,
        ParentStudent.student_id == student_id,
    ).first() is not None
