import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from taskfortime import db
from taskfortime import models  # ensure models are registered with metadata
from taskfortime.coaching import DeterministicRecommender
from taskfortime.config import Settings, get_settings
from taskfortime.main import app, get_recommender
from taskfortime.models import Account, Child, Family
from taskfortime.notifications import EmailResult, get_email_dispatcher


test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

test_settings = Settings(session_secret="test-secret", app_url="http://testserver")


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def send(self, recipient, kind, params):
        self.sent.append((recipient, kind, params))
        return EmailResult(True, message_id=f"msg-{len(self.sent)}")


recording_dispatcher = RecordingDispatcher()


def override_get_session():
    with Session(test_engine) as session:
        yield session


def reset_database():
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    recording_dispatcher.sent.clear()


db.engine = test_engine
app.dependency_overrides[db.get_session] = override_get_session
app.dependency_overrides[get_settings] = lambda: test_settings
app.dependency_overrides[get_email_dispatcher] = lambda: recording_dispatcher
app.dependency_overrides[get_recommender] = DeterministicRecommender


@pytest.fixture(autouse=True)
def setup_db():
    reset_database()
    yield


@pytest.fixture
def client():
    reset_database()
    return TestClient(app)


@pytest.fixture
def session():
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def dispatcher():
    return recording_dispatcher


@pytest.fixture
def parent(client, session):
    client.post(
        "/register",
        data={
            "display_name": "Pat",
            "email": "pat@example.com",
            "password": "secret123",
            "family_name": "Rivera",
        },
    )
    return session.exec(select(Account).where(Account.email == "pat@example.com")).one()


@pytest.fixture
def add_child(client):
    def _add(name="Sam", pin=None):
        data = {"name": name}
        if pin:
            data["pin"] = pin
        resp = client.post("/parent/children", data=data, follow_redirects=False)
        return int(resp.headers["location"].split("/")[-1])

    return _add


@pytest.fixture
def add_task(client):
    def _add(child_id, title="Make bed", reward_minutes=15):
        resp = client.post(
            "/parent/tasks",
            data={"child_id": child_id, "title": title, "reward_minutes": reward_minutes},
            follow_redirects=False,
        )
        return int(resp.headers["location"].split("/")[-1])

    return _add


@pytest.fixture
def family(session):
    family = Family(name="Home")
    session.add(family)
    session.commit()
    session.refresh(family)
    return family


@pytest.fixture
def child(session, family):
    child = Child(family_id=family.id, name="Sam")
    session.add(child)
    session.commit()
    session.refresh(child)
    return child
