from __future__ import annotations

import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("EMAIL_PROVIDER", "console")
os.environ.setdefault("REDIS_URL", "")

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from voucher_market.core.database import Base, get_db
from voucher_market.core.rate_limiter import InMemoryRateLimiterService
from voucher_market.core.timeutils import utcnow
from voucher_market.main import create_app
import voucher_market.models  # noqa: F401
from voucher_market.models.deal import Deal
from voucher_market.models.user import User
from voucher_market.models.venue import Venue, VenueProfile
from voucher_market.services import notifications
from voucher_market.services.auth import hash_password
from voucher_market.services.users import issue_token
from tests.fixtures_data import DEFAULT_PASSWORD, HAPPY_PATH_DEAL, HAPPY_PATH_VENUE

PASSWORD_HASH = hash_password(DEFAULT_PASSWORD)
GENEROUS_LIMITS = {"general": (10_000, 60), "auth": (10_000, 60), "payment": (10_000, 60)}


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def client(db):
    app = create_app(rate_limiter=InMemoryRateLimiterService(policies=GENEROUS_LIMITS))
    app.dependency_overrides[get_db] = lambda: db
    return TestClient(app)


@pytest.fixture
def outbox(monkeypatch):
    provider = notifications.ConsoleEmailProvider()
    monkeypatch.setattr(notifications, "notification_service", notifications.NotificationService(provider))
    return provider.sent


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role: str = "customer", date_of_birth=None, email: str | None = None, **extra) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"{role}{counter['n']}@example.com",
            password_hash=PASSWORD_HASH,
            first_name=extra.pop("first_name", "Test"),
            last_name=extra.pop("last_name", f"User{counter['n']}"),
            date_of_birth=date_of_birth,
            role=role,
            **extra,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_venue(db):
    def _make(owner: User | None = None, **overrides) -> Venue:
        venue = Venue(**{**HAPPY_PATH_VENUE, **overrides})
        db.add(venue)
        db.flush()
        if owner is not None:
            db.add(VenueProfile(user_id=owner.id, venue_id=venue.id, permissions={"manage": True}))
        db.commit()
        return venue

    return _make


@pytest.fixture
def make_deal(db):
    def _make(venue: Venue, *, now: datetime | None = None, **overrides) -> Deal:
        now = now or utcnow()
        values = {
            **HAPPY_PATH_DEAL,
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=30),
            "status": "active",
            **overrides,
        }
        values["original_price"] = Decimal(str(values["original_price"]))
        values["deal_price"] = Decimal(str(values["deal_price"]))
        deal = Deal(venue_id=venue.id, vouchers_issued=0, **values)
        db.add(deal)
        db.commit()
        return deal

    return _make


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user)}"}


@pytest.fixture
def headers_for():
    return auth_headers
