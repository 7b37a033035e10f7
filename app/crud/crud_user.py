from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID
from sqlalchemy.orm import Session

from app.db.upsert import insert_ignore_conflict
from app.models.user import User, UserRole


def normalize_email(email: str) -> str:
    return email.strip().lower()


def get(db: Session, user_id: UUID) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def upsert_sso_user(
    db: Session,
    *,
    email: str,
    first_name: str,
    last_name: str,
) -> Tuple[User, bool]:
    """Find or create an SSO-only user (no password) by email.

    Returns ``(user, created)``. An existing user only has ``last_login_at``
    refreshed. Does not commit.
    """
    email = normalize_email(email)
    now = datetime.now(timezone.utc)
    created = insert_ignore_conflict(
        db,
        User,
        {
            "email": email,
            "first_name": first_name or "",
            "last_name": last_name or "",
            "hashed_password": None,
            "role": UserRole.USER.value,
            "status": "active",
            "last_login_at": now,
        },
        index_elements=["email"],
    )
    user = db.query(User).filter(User.email == email).populate_existing().one()
    if not created:
        user.last_login_at = now
        db.add(user)
    db.flush()
    return user, created


def set_refresh_token(db: Session, *, user: User, refresh_token: str) -> User:
    user.refresh_token = refresh_token
    db.add(user)
    db.flush()
    return user
