"""Pytest configuration.

Points the settings at an in-memory database before the application modules
are imported, and provides a fresh schema per test.
"""
from __future__ import annotations

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SUBMISSION_GUARD_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-for-jwt"

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.core.database import init_db, seed_defaults
from backoffice.core.security import create_access_token
from backoffice.models import Card, User


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    seed_defaults(session)
    session.commit()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    def _make(role: str, username: str | None = None, agency_id: int | None = None,
              hashed_password: str = "not-a-real-hash") -> User:
        user = User(
            username=username or f"{role}-{db.query(User).count() + 1}",
            full_name=(username or role).title(),
            hashed_password=hashed_password,
            role=role,
            agency_id=agency_id,
            is_active=True,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_card(db):
    def _make(cid: str, country: str = "Mali", monthly_limit: str = "2000000",
              monthly_used: str = "0", recharge_limit: str = "500000", status: str = "active",
              expiration_date: date | None = None) -> Card:
        card = Card(
            cid=cid,
            country=country,
            status=status,
            monthly_limit=Decimal(monthly_limit),
            monthly_used=Decimal(monthly_used),
            recharge_limit=Decimal(recharge_limit),
            expiration_date=expiration_date,
        )
        db.add(card)
        db.commit()
        return card

    return _make


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient

    from backoffice.core.database import get_db
    from backoffice.main import app

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    # No context manager: the lifespan would seed the default engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        token = create_access_token({"sub": user.username, "role": user.role})
        return {"Authorization": f"Bearer {token}"}

    return _headers
