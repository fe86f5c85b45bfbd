from __future__ import annotations

from pathlib import Path
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import refund_recon.persistence.pg as pg
from refund_recon.core.config import get_settings
from refund_recon.gateway.payments import FakePaymentGateway, get_payment_gateway
from refund_recon.persistence.models import Base, OrderModel, RefundModel


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.gateway_mode = "fake"
    settings.recompute_backoff_ms = 0

    engine = create_engine(
        f"sqlite+pysqlite:///{test_db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture()
def client(configure_test_engine, gateway):
    from refund_recon.main import app

    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def auth_headers():
    settings = get_settings()
    return {
        "staff": {"X-API-Key": settings.staff_api_key},
        "system": {"X-API-Key": settings.system_api_key},
        "customer": {"X-API-Key": settings.customer_api_key},
    }


def default_items() -> list[dict]:
    return [
        {"id": "A", "nameSnapshot": "Tee", "quantity": 2, "unitAmount": 3000, "amountTotal": 6000},
        {"id": "B", "nameSnapshot": "Mug", "quantity": 1, "unitAmount": 4000, "amountTotal": 4000},
    ]


@pytest.fixture()
def make_order(configure_test_engine):
    """Insert an order (and optional refund rows) in its own transaction; returns the order id."""

    def _make(
        items: list[dict] | None = None,
        total_cents: int = 10000,
        shipping_cents: int = 0,
        refunded_total_cents: int = 0,
        status: str = "paid",
        refunds: list[dict] | None = None,
    ) -> str:
        order_id = f"ord_{uuid4().hex[:12]}"
        with pg.session_scope() as s:
            s.add(
                OrderModel(
                    id=order_id,
                    order_number=f"R-{order_id[-6:]}",
                    currency="usd",
                    total_cents=total_cents,
                    items=items if items is not None else default_items(),
                    amounts={"shippingTotalCents": shipping_cents},
                    status=status,
                    payment_intent_id=f"pi_{order_id}",
                    refunded_total_cents=refunded_total_cents,
                )
            )
            s.flush()
            for row in refunds or []:
                s.add(
                    RefundModel(
                        order_id=order_id,
                        gateway_refund_id=row.get("gateway_refund_id", f"re_seed_{uuid4().hex[:10]}"),
                        amount_cents=row["amount_cents"],
                        status=row.get("status", "succeeded"),
                        selections=row.get("selections", []),
                        fees=row.get("fees", {}),
                    )
                )
        return order_id

    return _make
