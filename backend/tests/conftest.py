import os
import pathlib
import sys
import tempfile
from datetime import datetime, timezone

import pytest


REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.append(str(REPO_ROOT))


def pytest_configure():
    os.environ.setdefault("MESSAGING_USE_STUB", "true")
    if os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URL"):
        return
    temp_dir = tempfile.mkdtemp(prefix="signal-engine-tests-")
    db_path = pathlib.Path(temp_dir) / "pytest.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"


@pytest.fixture(scope="session")
def sqlite_engine():
    from backend.app.db import Base, engine
    from backend.app import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


def _clear_tables(engine) -> None:
    from backend.app.db import Base

    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def sqlite_session(sqlite_engine):
    from backend.app.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        _clear_tables(sqlite_engine)


@pytest.fixture()
def stub_gateway():
    from backend.app.integrations import StubMessagingGateway

    return StubMessagingGateway()


@pytest.fixture()
def fixed_clock():
    from backend.app.domain.clock import FixedClock

    return FixedClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def api_client(sqlite_engine, sqlite_session, stub_gateway, fixed_clock):
    from backend.app.api.deps import get_clock, get_gateway_dep
    from backend.app.db import get_db
    from backend.app.main import app
    from fastapi.testclient import TestClient

    def _get_test_db():
        yield sqlite_session

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_gateway_dep] = lambda: stub_gateway
    app.dependency_overrides[get_clock] = lambda: fixed_clock
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_gateway_dep, None)
        app.dependency_overrides.pop(get_clock, None)


@pytest.fixture()
def pricing_plans(sqlite_session):
    from backend.app.services import subscription_service

    plans = subscription_service.ensure_default_pricing_plans(sqlite_session)
    sqlite_session.commit()
    return {plan.pricing_type: plan for plan in plans}


@pytest.fixture()
def make_active_subscriber(sqlite_session, pricing_plans, fixed_clock):
    """Create an active subscription (and optionally a verified contact) for a user."""
    from backend.app.services import subscription_service

    def _make(user_id: str, *, plan_type: str = "monthly", pips: int = 0, phone: str | None = None):
        sub = subscription_service.create_subscription(
            sqlite_session,
            user_id=user_id,
            pricing_id=pricing_plans[plan_type].id,
            plan_type=plan_type,
            pips_purchased=pips,
        )
        subscription_service.confirm_payment(
            sqlite_session,
            sub.id,
            payment_reference=f"pay-{user_id}",
            now=fixed_clock.now(),
        )
        if phone:
            subscription_service.upsert_subscriber_profile(
                sqlite_session,
                user_id,
                phone_number=phone,
                phone_verified=True,
                messaging_enabled=True,
            )
        sqlite_session.commit()
        return sub

    return _make
