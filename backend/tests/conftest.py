import os
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from warden import clock  # noqa: E402
from warden import models  # noqa: E402,F401
from warden.api import admin, auth, deps  # noqa: E402
from warden.database import Base, transaction  # noqa: E402
from warden.errors import ServiceError  # noqa: E402
from warden.main import service_error_handler  # noqa: E402
from warden.services import credentials, permissions, roles  # noqa: E402

PASSWORD = "TestPass123!"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    app = FastAPI()
    app.include_router(auth.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")
    app.add_exception_handler(ServiceError, service_error_handler)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[deps.get_db] = override_get_db
    return TestClient(app)


class FrozenClock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def frozen_clock(monkeypatch):
    frozen = FrozenClock()
    monkeypatch.setattr(clock, "utcnow", frozen)
    return frozen


def make_user(db, email="user@example.com", password=PASSWORD, **profile):
    with transaction(db):
        user = credentials.create_user(db, email, password, profile)
    return user


def make_role(db, name="EDITOR", **kwargs):
    return roles.create_role(db, name, **kwargs)


def make_permission(db, name="EDIT_DOCUMENT", resource="DOCUMENT", action="UPDATE", **kwargs):
    return permissions.create_permission(db, name, resource=resource, action=action, **kwargs)
