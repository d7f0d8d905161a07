"""User directory lookups."""

from uuid import UUID

from sqlalchemy.orm import Session

from townplan.core.exceptions import NotFoundError
from townplan.db.models import User


def get_user_by_id(db: Session, user_id: UUID) -> User | None:
    return db.query(User).filter(User.id == user_id).first()


def require_active_user(db: Session, user_id: UUID) -> User:
    """Return an active user or raise NotFoundError."""
    user = get_user_by_id(db, user_id)
    if not user or not user.is_active:
        raise NotFoundError(f"User {user_id} not found")
    return user


def display_name(db: Session, user_id: UUID) -> str:
    """Name used in system messages. Falls back for unknown users."""
    user = get_user_by_id(db, user_id)
    return user.display_name if user else "Unknown user"
