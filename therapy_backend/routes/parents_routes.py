import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_backend.auth.accounts import (
    AccountResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    RegistrationResponse,
    display_name,
    get_account_or_404,
    get_linked_student_ids,
    is_parent_of,
    normalize_email,
    register_account,
    to_account_response,
    update_profile,
)
from therapy_backend.auth.dependencies import ensure_self_or_admin, get_current_user, get_db, require_role
from therapy_backend.models.user import ROLE_ADMIN, ROLE_PARENT, ROLE_STUDENT, ParentStudent, User
from therapy_backend.routes.common import database_unavailable, ensure_database_ready, not_found

router = APIRouter(tags=['parents'])
logger = logging.getLogger(__name__)


class LinkStudentRequest(BaseModel):
    email: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)


class ChildResponse(BaseModel):
    id: int
    name: str
    email: str


class ParentSummaryResponse(AccountResponse):
    student_ids: list[int] = []


@router.post('/', response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
def register_parent(data: RegisterRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        parent = register_account(db, ROLE_PARENT, data)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return RegistrationResponse(
        message='Verification email sent',
        id=parent.id,
        email=parent.email,
        role=parent.role,
    )


@router.get('/', response_model=list[ParentSummaryResponse])
def list_parents(
    current_user: User = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        parents = db.query(User).filter(User.role == ROLE_PARENT).order_by(User.id.asc()).all()
        return [
            ParentSummaryResponse(
                **to_account_response(db, parent).model_dump(),
                student_ids=get_linked_student_ids(db, parent.id),
            )
            for parent in parents
        ]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/{parent_id}', response_model=AccountResponse)
def update_parent(
    parent_id: int,
    data: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_self_or_admin(current_user, parent_id)
    ensure_database_ready()

    try:
        parent = get_account_or_404(db, parent_id, ROLE_PARENT, 'Parent not found')
        update_profile(db, parent, data)
        return to_account_response(db, parent)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/{parent_id}/students', response_model=list[ChildResponse])
def list_children(
    parent_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_self_or_admin(current_user, parent_id)
    ensure_database_ready()

    try:
        children = db.query(User).join(
            ParentStudent, ParentStudent.student_id == User.id,
        ).filter(
            ParentStudent.parent_id == parent_id,
        ).order_by(User.id.asc()).all()
        return [ChildResponse(id=child.id, name=display_name(child), email=child.email) for child in children]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{parent_id}/students', response_model=ChildResponse, status_code=status.HTTP_201_CREATED)
def link_child(
    parent_id: int,
    data: LinkStudentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_self_or_admin(current_user, parent_id)
    ensure_database_ready()

    try:
        get_account_or_404(db, parent_id, ROLE_PARENT, 'Parent not found')
        student = db.query(User).filter(User.email == data.email, User.role == ROLE_STUDENT).first()
        if student is None:
            raise not_found('Student not found')

        if not is_parent_of(db, parent_id, student.id):
            db.add(ParentStudent(parent_id=parent_id, student_id=student.id))
            db.commit()
            logger.info('Linked student %s to parent %s', student.id, parent_id)

        return ChildResponse(id=student.id, name=display_name(student), email=student.email)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{parent_id}/students/{student_id}', status_code=status.HTTP_204_NO_CONTENT)
def unlink_child(
    parent_id: int,
    student_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_self_or_admin(current_user, parent_id)
    ensure_database_ready()

    try:
        link = db.query(ParentStudent).filter(
            ParentStudent.parent_id == parent_id,
            ParentStudent.student_id == student_id,
        ).first()
        if link is None:
            raise not_found('Student is not linked to this parent')

        db.delete(link)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
