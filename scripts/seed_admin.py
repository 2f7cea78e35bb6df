"""
Seed Admin User

Creates the first admin account so that therapists can be approved and
further admins created through the API.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=... python scripts/seed_admin.py
"""

import os
import sys

from therapy_backend.auth.accounts import normalize_email, validate_password
from therapy_backend.auth.passwords import hash_password
from therapy_backend.database import Base, SessionLocal, engine
from therapy_backend.models import appointment, availability  # noqa: F401
from therapy_backend.models.user import ROLE_ADMIN, User


def seed_admin() -> int:
    email = os.getenv("ADMIN_EMAIL", "")
    password = os.getenv("ADMIN_PASSWORD", "")
    if not email or not password:
        print("ADMIN_EMAIL and ADMIN_PASSWORD must be set.")
        return 1

    try:
        email = normalize_email(email)
        validate_password(password)
    except ValueError as exc:
        print(f"Invalid admin credentials: {exc}")
        return 1

    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        existing_user = db.query(User).filter(User.email == email).first()
        if existing_user:
            print(f"Account already exists: {email}")
            print(f"  ID: {existing_user.id}")
            print(f"  Role: {existing_user.role}")
            return 0

        admin_user = User(
            email=email,
            hashed_password=hash_password(password),
            role=ROLE_ADMIN,
            first_name=os.getenv("ADMIN_FIRST_NAME"),
            last_name=os.getenv("ADMIN_LAST_NAME"),
            email_verified=True,  # Pre-verified
            is_approved=False,
        )
        db.add(admin_user)
        db.commit()
        db.refresh(admin_user)

        print("Admin created successfully!")
        print(f"  Email: {email}")
        print(f"  ID: {admin_user.id}")
    finally:
        db.close()

    return 0


if __name__ == "__main__":
    sys.exit(seed_admin())
