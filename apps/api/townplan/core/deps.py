"""FastAPI dependencies for authentication, database access and realtime."""

from typing import Generator
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from townplan.core.security import decode_session_token
from townplan.core.websocket import hub
from townplan.db.session import SessionLocal
from townplan.services.broadcast import Broadcaster, HubBroadcaster


# Cookie name for browser sessions
COOKIE_NAME = "townplan_session"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_broadcaster() -> Broadcaster:
    """Realtime seam handed to services; overridden in tests."""
    return HubBroadcaster(hub)


def _token_from_request(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME)


def get_current_user(request: Request, db: Session = Depends(get_db)):
    """
    Get the authenticated user from a bearer token or the session cookie.

    Raises:
        HTTPException 401: Missing or invalid token, unknown or disabled user
    """
    from townplan.db.models import User

    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = decode_session_token(token)
        user_id = UUID(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid session")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account disabled")
    return user
