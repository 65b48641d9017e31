"""Shared fixtures: in-memory SQLite database and seeded orders/deals."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("WORKERS_ENABLED", "false")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dealpay.common.db import Base
from dealpay.services.payments.fulfillment import FulfillmentService
from dealpay.services.payments.models import CartItem, Deal, PaymentOrder
from dealpay.services.payments.reconciler import Reconciler


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture()
def fulfillment(session_factory):
    return FulfillmentService(session_factory, service_name="payments-test", max_retries=3)


@pytest.fixture()
def reconciler(session_factory, fulfillment):
    return Reconciler(session_factory, fulfillment, service_name="payments-test")


@pytest.fixture()
def seed(session_factory):
    """Return a helper that inserts an order, its deals, and a cart."""

    def _seed(
        correlation_id: str = "O1",
        items: list[dict] | None = None,
        deals: dict[str, tuple[int, int]] | None = None,
        user_id: str = "U1",
        status: str = "pending",
        provider: str = "mypos",
        cart_deal_ids: list[str] | None = None,
    ) -> str:
        items = items if items is not None else [{"dealId": "D1", "quantity": 2, "price": 10}]
        deals = deals if deals is not None else {"D1": (5, 0)}
        with session_factory() as db:
            for deal_id, (stock, sold) in deals.items():
                db.add(Deal(id=deal_id, title=f"Deal {deal_id}", stock_quantity=stock, sold_quantity=sold))
            for deal_id in cart_deal_ids if cart_deal_ids is not None else [i["dealId"] for i in items]:
                db.add(CartItem(user_id=user_id, deal_id=deal_id, quantity=1))
            order = PaymentOrder(
                correlation_id=correlation_id,
                order_id=f"order-{correlation_id}",
                user_id=user_id,
                provider=provider,
                amount=Decimal("20.00"),
                currency="EUR",
                status=status,
                order_items=items,
            )
            db.add(order)
            db.commit()
            return order.id

    return _seed
