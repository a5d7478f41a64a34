from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import orderdesk.persistence.pg as pg
from orderdesk.core.config import get_settings
from orderdesk.domain.orders.aggregates import UnitType
from orderdesk.domain.orders.commands import OrderCreateRequest, OrderLineRequest, place_order
from orderdesk.persistence.models import Base


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.invoice_backend = "local"
    settings.invoices_dir = test_db_path.parent / "invoices"

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
def client(configure_test_engine):
    from orderdesk.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def make_order(session):
    """Place and commit an order; ``lines`` maps product ref to quantity."""

    def _make(lines: dict[str, str | int], client_ref: str = "CLIENT-1", unit_type: UnitType = UnitType.NOS):
        request = OrderCreateRequest(
            client_ref=client_ref,
            lines=[
                OrderLineRequest(
                    product_ref=product_ref,
                    product_name=product_ref.title(),
                    quantity=Decimal(str(quantity)),
                    unit_type=unit_type,
                    unit_rate_cents=1000,
                )
                for product_ref, quantity in lines.items()
            ],
        )
        order = place_order(session, request)
        session.commit()
        return order

    return _make
