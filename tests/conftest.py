"""
Unified Campus - test configuration and fixtures
"""
import os
import re
from datetime import datetime, timedelta

# Set testing environment before the app reads it
os.environ["DATABASE_URL"] = "sqlite:///./test_campus.db"
os.environ["ENABLE_SCHEDULER"] = "0"
os.environ["JWT_SECRET"] = "test-jwt-secret-for-testing-only"
os.environ.pop("REDIS_URL", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from database import Base, engine
from errors import TransportError
from main import app


class FakeClock:
    """Settable replacement for datetime.utcnow."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class Outbox:
    """Stands in for the Brevo transport."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, *, to_email, subject, html, text=None):
        if self.fail:
            raise TransportError("Brevo send failed (503)")
        self.sent.append({"to": to_email, "subject": subject, "html": html, "text": text})

    def last_code(self, email):
        for mail in reversed(self.sent):
            if mail["to"] == email:
                return re.search(r"\b(\d{6})\b", mail["text"]).group(1)
        raise AssertionError(f"no mail sent to {email}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def session_factory():
    """Fresh in-memory database for store-level tests."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield sessionmaker(bind=test_engine, autoflush=False, autocommit=False, expire_on_commit=False)
    test_engine.dispose()


@pytest.fixture
def client(outbox):
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    with TestClient(app) as c:
        app.state.otp_service.sender = outbox.send
        yield c


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def register(client, outbox):
    """Verify the email through the OTP routes, then sign up; returns the session body."""

    def _register(**data):
        email = data["email"]
        assert client.post("/otp/send", json={"email": email}).status_code == 200
        code = outbox.last_code(email)
        assert client.post("/otp/verify", json={"email": email, "otp": code}).status_code == 200
        data.setdefault("password", "secret123")
        resp = client.post("/api/auth/signup", json=data)
        assert resp.status_code == 200, resp.text
        return resp.json()

    return _register


@pytest.fixture
def student(register):
    return register(
        user_type="student",
        email="asha@unifiedcampus.in",
        full_name="Asha Verma",
        college="Government Engineering College",
        region="west",
        city="Pune",
    )


@pytest.fixture
def mentor(register):
    return register(
        user_type="mentor",
        email="meera@unifiedcampus.in",
        full_name="Meera Iyer",
        job_title="Engineer",
        expertise=["Backend"],
    )
