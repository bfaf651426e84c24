import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Settings are read at import time; point them at SQLite before importing the app
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./mailflow_test.db")
os.environ.setdefault("DISPATCHER_ENABLED", "false")

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from mailflow.database import create_all, make_session_factory
from mailflow.dependencies import get_clock, get_db
from mailflow.main import app
from mailflow.models.user import User
from mailflow.services import audit, templates
from mailflow.services.backoff import BackoffPolicy
from mailflow.services.outbox import TRANSITIONS
from mailflow.services.transport import Delivered
from mailflow.utils.security import create_access_token, get_password_hash


class ManualClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float):
        self.current += timedelta(seconds=seconds)


class ScriptedTransport:
    """Returns (or raises) the scripted outcomes in order, then reports success."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.sent: list[dict] = []

    async def send(self, *, subject, html_body, text_body, recipient, from_email=None, from_name=None,
                   cc=(), bcc=()):
        self.sent.append({
            "subject": subject,
            "html_body": html_body,
            "text_body": text_body,
            "recipient": recipient,
            "from_email": from_email,
            "from_name": from_name,
            "cc": list(cc),
            "bcc": list(bcc),
        })
        outcome = self.outcomes.pop(0) if self.outcomes else Delivered()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def assert_valid_walk(actions):
    """Logged actions start at Queued and only follow permitted edges."""
    assert actions, "no log rows"
    assert actions[0].value == "Queued"
    for current, target in zip(actions, actions[1:]):
        assert current != target, f"repeated action {current.value}"
        assert target in TRANSITIONS[current], f"{current.value} -> {target.value} not permitted"


async def logged_actions(session_factory, email_id):
    async with session_factory() as db:
        return [row.action for row in await audit.get_history(db, email_id)]


def auth_headers(user: User) -> dict:
    token = create_access_token({"sub": user.username})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def policy():
    return BackoffPolicy(base_seconds=10, cap_seconds=60, max_attempts=3, jitter_seconds=0)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mailflow.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def welcome_template(db, clock):
    return await templates.create_template(
        db,
        name="welcome_email",
        subject_template="Welcome, {{userName}}!",
        html_body_template="<p>Hello {{userName}}, thanks for joining {{ product }}.</p>",
        text_body_template="Hello {{userName}}, thanks for joining {{product}}.",
        default_from_email="hello@mailflow.test",
        default_from_name="Mailflow",
        created_by="admin",
        now=clock.now(),
    )


@pytest_asyncio.fixture
async def users(db):
    people = {
        "admin": User(username="admin", email="admin@mailflow.test",
                      hashed_password=get_password_hash("admin-pass"), is_admin=True),
        "alice": User(username="alice", email="alice@x.com",
                      hashed_password=get_password_hash("alice-pass")),
        "bob": User(username="bob", email="bob@x.com",
                    hashed_password=get_password_hash("bob-pass")),
    }
    db.add_all(people.values())
    await db.commit()
    return people


@pytest_asyncio.fixture
async def client(session_factory, clock):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
