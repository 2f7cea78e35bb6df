import os
from datetime import datetime

os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')
os.environ['SENDGRID_API_KEY'] = ''

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from therapy_backend.auth.passwords import hash_password  # noqa: E402
from therapy_backend.core import mailer  # noqa: E402
from therapy_backend.database import Base  # noqa: E402
from therapy_backend.models import appointment, availability  # noqa: E402,F401
from therapy_backend.models.user import ROLE_THERAPIST, ParentStudent, User  # noqa: E402

# Monday 7 January 2030, 08:00 clinic time.
FIXED_NOW = datetime(2030, 1, 7, 8, 0)
DEFAULT_PASSWORD = 'password123'

ROUTE_MODULES = (
    'therapy_backend.routes.auth_routes',
    'therapy_backend.routes.students_routes',
    'therapy_backend.routes.parents_routes',
    'therapy_backend.routes.therapists_routes',
    'therapy_backend.routes.admins_routes',
    'therapy_backend.routes.availability_routes',
    'therapy_backend.routes.appointment_routes',
)


@pytest.fixture(autouse=True)
def skip_schema_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    for module in ROUTE_MODULES:
        monkeypatch.setattr(f'{module}.ensure_database_ready', lambda: None)


@pytest.fixture
def frozen_now(monkeypatch: pytest.MonkeyPatch) -> datetime:
    monkeypatch.setattr('therapy_backend.routes.availability_routes.clinic_now', lambda: FIXED_NOW)
    monkeypatch.setattr('therapy_backend.routes.appointment_routes.clinic_now', lambda: FIXED_NOW)
    return FIXED_NOW


@pytest.fixture
def db():
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def sent_emails(monkeypatch: pytest.MonkeyPatch) -> list[dict]:
    sent: list[dict] = []

    def fake_send_email(to_email: str, subject: str, html_content: str) -> bool:
        sent.append({'to': to_email, 'subject': subject, 'html': html_content})
        return True

    monkeypatch.setattr(mailer, 'send_email', fake_send_email)
    return sent


@pytest.fixture
def make_user(db):
    counter = {'value': 0}

    def _make_user(role: str, email: str | None = None, verified: bool = True, approved: bool | None = None, **fields):
        counter['value'] += 1
        user = User(
            email=email or f'{role}{counter["value"]}@example.com',
            hashed_password=hash_password(DEFAULT_PASSWORD),
            role=role,
            email_verified=verified,
            is_approved=approved if approved is not None else role == ROLE_THERAPIST,
            **fields,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def link_parent(db):
    def _link_parent(parent: User, student: User) -> None:
        db.add(ParentStudent(parent_id=parent.id, student_id=student.id))
        db.commit()

    return _link_parent
