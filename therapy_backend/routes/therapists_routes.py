import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.accounts import (
    AccountResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    RegistrationResponse,
    display_name,
    get_account_or_404,
    register_account,
    to_account_response,
    update_profile,
)
from therapy_backend.auth.dependencies import ensure_self_or_admin, get_current_user, get_db, require_role
from therapy_backend.core import mailer
from therapy_backend.database import utcnow
from therapy_backend.models.user import ROLE_ADMIN, ROLE_THERAPIST, User
from therapy_backend.routes.common import database_unavailable, ensure_database_ready

router = APIRouter(tags=['therapists'])
logger = logging.getLogger(__name__)


@router.get('/', response_model=list[AccountResponse])
def list_therapists(
    unapproved_only: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        query = db.query(User).filter(User.role == ROLE_THERAPIST)
        if unapproved_only:
            query = query.filter(User.is_approved.is_(False))
        therapists = query.order_by(User.id.asc()).all()
        return [to_account_response(db, therapist) for therapist in therapists]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{therapist_id}', response_model=AccountResponse)
def get_therapist(therapist_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        therapist = get_account_or_404(db, therapist_id, ROLE_THERAPIST, 'Therapist not found')
        return to_account_response(db, therapist)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/', response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
def register_therapist(data: RegisterRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        therapist = register_account(db, ROLE_THERAPIST, data)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return RegistrationResponse(
        message='Therapist registered; verification email sent',
        id=therapist.id,
        email=therapist.email,
        role=therapist.role,
    )


@router.put('/{therapist_id}', response_model=AccountResponse)
def update_therapist(
    therapist_id: int,
    data: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_self_or_admin(current_user, therapist_id)
    ensure_database_ready()

    try:
        therapist = get_account_or_404(db, therapist_id, ROLE_THERAPIST, 'Therapist not found')
        update_profile(db, therapist, data)
        return to_account_response(db, therapist)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.put('/{therapist_id}/approve', response_model=AccountResponse)
def approve_therapist(
    therapist_id: int,
    current_user: User = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        therapist = get_account_or_404(db, therapist_id, ROLE_THERAPIST, 'Therapist not found')
        if therapist.is_approved:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='Therapist is already approved.',
            )

        therapist.is_approved = True
        therapist.approved_by_id = current_user.id
        therapist.approval_date = utcnow()
        db.commit()
        db.refresh(therapist)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Therapist %s approved by admin %s', therapist.id, current_user.id)
    mailer.send_therapist_approved_email(therapist.email, display_name(therapist))
    return to_account_response(db, therapist)
