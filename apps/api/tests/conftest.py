"""
Test configuration and fixtures.

Provides:
- A fresh SQLite schema per test (file database so worker threads share it)
- Users, an approval group and an application under review
- A recording broadcaster in place of the websocket hub
- HTTPX AsyncClients authenticated as a given user
"""
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Callable, Generator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

_DB_DIR = tempfile.mkdtemp(prefix="townplan-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["TESTING"] = "1"
os.environ["REDIS_URL"] = "memory://"
os.environ["JWT_SECRET"] = "test-secret"

from townplan.core.deps import get_broadcaster, get_db
from townplan.core.security import create_session_token
from townplan.db.base import Base
from townplan.db.models import Application, ApplicationGroupAssignment, ApprovalGroup, User
from townplan.db.session import SessionLocal, engine
from townplan.main import app
from townplan.schemas.application import ApplicationCreate
from townplan.schemas.approval import ApprovalGroupCreate, MemberCreate
from townplan.services import application_service, approval_group_service


# =============================================================================
# Doubles
# =============================================================================

@dataclass
class RecordingBroadcaster:
    """Collects realtime calls so tests can assert on them."""

    events: list[dict[str, Any]] = field(default_factory=list)
    subscribed: list[tuple[uuid.UUID, uuid.UUID]] = field(default_factory=list)
    unsubscribed: list[tuple[uuid.UUID, uuid.UUID]] = field(default_factory=list)

    def broadcast_to_thread(self, thread_id, event_type, payload, exclude_user_ids=()):
        self.events.append(
            {
                "thread_id": thread_id,
                "type": event_type,
                "payload": payload,
                "exclude": list(exclude_user_ids),
            }
        )

    def subscribe_users(self, thread_id, user_ids):
        self.subscribed.extend((thread_id, uid) for uid in user_ids)

    def unsubscribe_users(self, thread_id, user_ids):
        self.unsubscribed.extend((thread_id, uid) for uid in user_ids)

    def of_type(self, event_type) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema and session per test.

    Services commit for real, so the schema is rebuilt instead of wrapping
    the test in a rolled-back transaction.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    def _make(first_name: str, last_name: str = "Tester", **kwargs) -> User:
        user = User(
            id=uuid.uuid4(),
            first_name=first_name,
            last_name=last_name,
            email=f"{first_name.lower()}-{uuid.uuid4().hex[:8]}@council.test",
            department=kwargs.pop("department", "Planning"),
            is_active=kwargs.pop("is_active", True),
            **kwargs,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def alice(make_user) -> User:
    return make_user("Alice", "Reviewer")


@pytest.fixture
def bob(make_user) -> User:
    return make_user("Bob", "Reviewer")


@pytest.fixture
def carol(make_user) -> User:
    """Final approver of the default group."""
    return make_user("Carol", "Approver")


@pytest.fixture
def clerk(make_user) -> User:
    """Registers applications and assigns groups; not a group member."""
    return make_user("Dan", "Clerk")


@pytest.fixture
def group(db: Session, alice: User, bob: User, carol: User, clerk: User) -> ApprovalGroup:
    """Alice and Bob review, Carol is the final approver; all approvals required."""
    return approval_group_service.create_group_with_members(
        db,
        ApprovalGroupCreate(
            name="Building Control",
            members=[
                MemberCreate(user_id=alice.id),
                MemberCreate(user_id=bob.id),
                MemberCreate(user_id=carol.id, is_final_approver=True),
            ],
        ),
        created_by=clerk.id,
    )


@pytest.fixture
def application(db: Session, clerk: User) -> Application:
    return application_service.create_application(
        db,
        ApplicationCreate(reference=f"DA-{uuid.uuid4().hex[:6]}", title="Two-storey extension"),
        created_by=clerk.id,
    )


@pytest.fixture
def assignment(
    db: Session, application: Application, group: ApprovalGroup, clerk: User
) -> ApplicationGroupAssignment:
    """Application under review by the default group."""
    return application_service.assign_approval_group(db, application.id, group.id, clerk.id)


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture
async def client_for(
    db: Session, broadcaster: RecordingBroadcaster
) -> AsyncGenerator[Callable[[User], AsyncClient], None]:
    """
    Factory for AsyncClients authenticated as a user.

    Requests share the test session so the test can inspect what the
    endpoints committed.
    """

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster
    clients: list[AsyncClient] = []

    def _client(user: User) -> AsyncClient:
        c = AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            headers={"Authorization": f"Bearer {create_session_token(user.id)}"},
        )
        clients.append(c)
        return c

    yield _client

    for c in clients:
        await c.aclose()
    app.dependency_overrides.clear()


@pytest.fixture
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
