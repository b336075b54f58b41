"""
Shared fixtures.

환경 변수는 mini_crm 모듈을 import 하기 전에 설정해야 Settings 싱글턴에 반영된다.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["VENDOR_MOCK_MODE"] = "true"
os.environ["AI_RULES_BASE_URL"] = ""

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from mini_crm.db.session import SessionLocal, engine  # noqa: E402
from mini_crm.main import app  # noqa: E402
from mini_crm.models import Base  # noqa: E402
from mini_crm.models.domain import Customer, Order  # noqa: E402
from mini_crm.services.field_catalog import default_catalog  # noqa: E402

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_session):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def customer_factory(db_session):
    counter = {"n": 0}

    def _create(*, orders=(), **fields) -> Customer:
        counter["n"] += 1
        n = counter["n"]
        values = {
            "customer_key": f"CUST-{n:04d}",
            "name": f"Customer {n}",
            "email": f"customer{n}@example.com",
            "phone": f"010-0000-{n:04d}",
            "city": "Pune",
            "total_spending": Decimal("0"),
            "total_visits": 0,
            "churn_risk": "low",
            "preferred_channel": "email",
            "is_active": True,
        }
        values.update(fields)
        customer = Customer(**values)
        db_session.add(customer)
        db_session.flush()
        for amount, days_ago in orders:
            db_session.add(
                Order(
                    customer_id=customer.id,
                    amount=Decimal(str(amount)),
                    ordered_at=datetime.now(timezone.utc) - timedelta(days=days_ago),
                )
            )
        db_session.commit()
        return customer

    return _create
