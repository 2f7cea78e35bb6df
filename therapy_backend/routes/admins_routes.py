import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.accounts import (
    AccountResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    get_account_or_404,
    register_account,
    to_account_response,
    update_profile,
)
from therapy_backend.auth.dependencies import get_db, require_role
from therapy_backend.models.user import ROLE_ADMIN, User
from therapy_backend.routes.common import database_unavailable, ensure_database_ready

router = APIRouter(tags=['admins'])
logger = logging.getLogger(__name__)


@router.post('/', response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_admin(
    data: RegisterRequest,
    current_user: User = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        admin = register_account(db, ROLE_ADMIN, data)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin %s created by admin %s', admin.id, current_user.id)
    return to_account_response(db, admin)


@router.get('/', response_model=list[AccountResponse])
def list_admins(
    current_user: User = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        admins = db.query(User).filter(User.role == ROLE_ADMIN).order_by(User.id.asc()).all()
        return [to_account_response(db, admin) for admin in admins]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{admin_id}', response_model=AccountResponse)
def get_admin(
    admin_id: int,
    current_user: User = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return to_account_response(db, get_account_or_404(db, admin_id, ROLE_ADMIN, 'Admin not found'))
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/{admin_id}', response_model=AccountResponse)
def update_admin(
    admin_id: int,
    data: ProfileUpdateRequest,
    current_user: User = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        admin = get_account_or_404(db, admin_id, ROLE_ADMIN, 'Admin not found')
        update_profile(db, admin, data)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin %s updated by admin %s', admin_id, current_user.id)
    return to_account_response(db, admin)


@router.delete('/{admin_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_admin(
    admin_id: int,
    current_user: User = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    if admin_id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Admins cannot delete their own account.',
        )

    ensure_database_ready()

    try:
        admin = get_account_or_404(db, admin_id, ROLE_ADMIN, 'Admin not found')
        db.delete(admin)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin %s deleted by admin %s', admin_id, current_user.id)
