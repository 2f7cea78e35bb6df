from fastapi import APIRouter, Depends, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.accounts import (
    AccountResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    RegistrationResponse,
    get_account_or_404,
    register_account,
    to_account_response,
    update_profile,
)
from therapy_backend.auth.dependencies import ensure_self_or_admin, get_current_user, get_db, require_role
from therapy_backend.models.user import ROLE_ADMIN, ROLE_STUDENT, User
from therapy_backend.routes.common import database_unavailable, ensure_database_ready

router = APIRouter(tags=['students'])


@router.post('/', response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
def register_student(data: RegisterRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        student = register_account(db, ROLE_STUDENT, data)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return RegistrationResponse(
        message='Verification email sent',
        id=student.id,
        email=student.email,
        role=student.role,
    )


@router.get('/', response_model=list[AccountResponse])
def list_students(
    current_user: User = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        students = db.query(User).filter(User.role == ROLE_STUDENT).order_by(User.id.asc()).all()
        return [to_account_response(db, student) for student in students]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{student_id}', response_model=AccountResponse)
def get_student(
    student_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_self_or_admin(current_user, student_id)
    ensure_database_ready()

    try:
        student = get_account_or_404(db, student_id, ROLE_STUDENT, 'Student not found')
        return to_account_response(db, student)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/{student_id}', response_model=AccountResponse)
def update_student(
    student_id: int,
    data: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_self_or_admin(current_user, student_id)
    ensure_database_ready()

    try:
        student = get_account_or_404(db, student_id, ROLE_STUDENT, 'Student not found')
        update_profile(db, student, data)
        return to_account_response(db, student)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
