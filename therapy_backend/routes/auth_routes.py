import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth import jwt_handler
from therapy_backend.auth.accounts import (
    AccountResponse,
    normalize_email,
    to_account_response,
    validate_password,
)
from therapy_backend.auth.dependencies import get_current_user, get_db
from therapy_backend.auth.passwords import generate_token, hash_password, verify_password
from therapy_backend.core import config, mailer
from therapy_backend.database import utcnow
from therapy_backend.models.user import ALL_ROLES, User
from therapy_backend.routes.common import database_unavailable, ensure_database_ready

router = APIRouter(tags=['auth'])
logger = logging.getLogger(__name__)

FORGOT_PASSWORD_MESSAGE = 'If an account exists for that email, a reset link has been sent.'


class LoginRequest(BaseModel):
    email: str
    password: str
    role: str | None = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator('role')
    @classmethod
    def validate_role(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in ALL_ROLES:
            raise ValueError('Invalid role.')
        return normalized


class LoginResponse(BaseModel):
    message: str
    access_token: str
    token_type: str
    id: int
    role: str


class EmailRequest(BaseModel):
    email: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str

    @field_validator('token')
    @classmethod
    def validate_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Token is required.')
        return normalized

    @field_validator('new_password')
    @classmethod
    def check_password(cls, value: str) -> str:
        return validate_password(value)


class MessageResponse(BaseModel):
    success: bool = True
    message: str


@router.post('/login', response_model=LoginResponse)
def login(data: LoginRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.email == data.email).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if user is None or not verify_password(data.password, user.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid credentials')

    if data.role is not None and data.role != user.role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid credentials')

    if not user.email_verified:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='EMAIL_NOT_VERIFIED')

    token = jwt_handler.create_access_token(subject=user.email, role=user.role, user_id=user.id)
    logger.info('User %s logged in', user.id)
    return LoginResponse(
        message='Login successful',
        access_token=token,
        token_type='bearer',
        id=user.id,
        role=user.role,
    )


@router.get('/verify-email', response_model=MessageResponse)
def verify_email(
    email: str = Query(...),
    token: str = Query(...),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    normalized_email = email.strip().lower()
    try:
        user = db.query(User).filter(User.email == normalized_email).first()
        if user is None or not token or user.verify_token != token:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid or expired token')

        user.email_verified = True
        user.verify_token = None
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return MessageResponse(message='Email verified')


@router.post('/resend-verify', response_model=MessageResponse)
def resend_verification(data: EmailRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.email == data.email).first()
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User not found')
        if user.email_verified:
            return MessageResponse(message='Email already verified')

        user.verify_token = generate_token()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    if not mailer.send_verification_email(user.email, user.verify_token):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail='Verification email could not be sent.',
        )
    return MessageResponse(message='Verification email resent')


@router.post('/forgot-password', response_model=MessageResponse)
def forgot_password(data: EmailRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.email == data.email).first()
        if user is None:
            logger.info('Password reset requested for unknown email')
            return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)

        user.reset_token = generate_token()
        user.reset_token_expiry = utcnow() + timedelta(minutes=config.RESET_TOKEN_EXPIRES_MINUTES)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    if not mailer.send_password_reset_email(user.email, user.reset_token):
        logger.error('Password reset email for account %s was not delivered', user.id)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post('/reset-password', response_model=MessageResponse)
def reset_password(data: ResetPasswordRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.reset_token == data.token).first()
        if user is None or user.reset_token_expiry is None or user.reset_token_expiry < utcnow():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid or expired token')

        user.hashed_password = hash_password(data.new_password)
        user.reset_token = None
        user.reset_token_expiry = None
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Password reset for account %s', user.id)
    return MessageResponse(message='Password reset successfully')


@router.get('/me', response_model=AccountResponse)
def me(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return to_account_response(db, current_user)
