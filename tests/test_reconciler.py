"""Reconciler state transitions, no-op paths, and at-most-once fulfillment."""

from datetime import datetime, timezone

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from dealpay.services.payments.models import CartItem, Deal, OutboxEvent, PaymentOrder, Purchase
from dealpay.services.payments.normalizers import MYPOS, VIVA_WALLET
from dealpay.services.payments.reconciler import Reconciler, StatusPersistError


def _snapshot(session_factory):
    with session_factory() as db:
        orders = [
            (o.correlation_id, o.status, o.payment_response, o.state_version)
            for o in db.execute(select(PaymentOrder)).scalars()
        ]
        deals = {d.id: (d.stock_quantity, d.sold_quantity) for d in db.execute(select(Deal)).scalars()}
        purchases = db.execute(select(func.count()).select_from(Purchase)).scalar_one()
        carts = db.execute(select(func.count()).select_from(CartItem)).scalar_one()
        return orders, deals, purchases, carts


def _order(session_factory, correlation_id="O1"):
    with session_factory() as db:
        return db.execute(select(PaymentOrder).where(PaymentOrder.correlation_id == correlation_id)).scalar_one()


def test_completed_notification_fulfills_order(reconciler, session_factory, seed):
    order_pk = seed()

    outcome = reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "success"})

    assert outcome.outcome == "fulfilled"
    assert outcome.status == "completed"
    with session_factory() as db:
        purchases = db.execute(select(Purchase)).scalars().all()
        assert len(purchases) == 1
        purchase = purchases[0]
        assert purchase.deal_id == "D1"
        assert purchase.quantity == 2
        assert purchase.purchase_price == 10
        assert purchase.status == "confirmed"
        assert purchase.user_id == "U1"
        assert purchase.payment_order_id == order_pk
        deal = db.get(Deal, "D1")
        assert (deal.stock_quantity, deal.sold_quantity) == (3, 2)
        assert db.execute(select(func.count()).select_from(CartItem)).scalar_one() == 0
    order = _order(session_factory)
    assert order.status == "completed"
    assert order.fulfilled_at is not None
    assert order.payment_response == {"order_id": "O1", "status": "success"}


def test_redelivered_completion_is_noop_for_fulfillment(reconciler, session_factory, seed):
    seed()
    payload = {"order_id": "O1", "status": "success"}
    reconciler.reconcile(MYPOS, payload)
    with session_factory() as db:
        db.add(CartItem(user_id="U1", deal_id="D9", quantity=1))
        db.commit()

    outcome = reconciler.reconcile(MYPOS, payload)

    assert outcome.outcome == "duplicate_completion"
    assert outcome.fulfillment is None
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(Purchase)).scalar_one() == 1
        deal = db.get(Deal, "D1")
        assert (deal.stock_quantity, deal.sold_quantity) == (3, 2)
        # Cart is only cleared by the first completion.
        assert db.execute(select(func.count()).select_from(CartItem)).scalar_one() == 1
    assert _order(session_factory).state_version == 2


def test_completion_gate_uses_write_not_prior_read(reconciler, session_factory, seed):
    """An order already fulfilled but later overwritten is never fulfilled again."""

    seed()
    reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "success"})
    reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "pending"})
    assert _order(session_factory).status == "pending"

    outcome = reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "Success"})

    assert outcome.outcome == "duplicate_completion"
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(Purchase)).scalar_one() == 1
        assert db.get(Deal, "D1").stock_quantity == 3
    assert _order(session_factory).status == "completed"


def test_preexisting_fulfilled_marker_blocks_fulfillment(reconciler, session_factory, seed):
    seed()
    with session_factory() as db:
        order = db.execute(select(PaymentOrder)).scalar_one()
        order.fulfilled_at = datetime.now(timezone.utc)
        db.commit()

    outcome = reconciler.reconcile(VIVA_WALLET, {"OrderCode": "O1", "StatusId": "F"})

    assert outcome.outcome == "duplicate_completion"
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(Purchase)).scalar_one() == 0


def test_viva_wallet_failed_code_only_touches_order_row(reconciler, session_factory, seed):
    seed(provider="viva_wallet")
    before_orders, before_deals, before_purchases, before_carts = _snapshot(session_factory)

    payload = {"OrderCode": "O1", "StatusId": "E", "TransactionId": "t-1", "EventTypeId": 1798}
    outcome = reconciler.reconcile(VIVA_WALLET, payload)

    assert outcome.outcome == "status_updated"
    assert outcome.status == "failed"
    orders, deals, purchases, carts = _snapshot(session_factory)
    assert (deals, purchases, carts) == (before_deals, before_purchases, before_carts)
    order = _order(session_factory)
    assert order.status == "failed"
    assert order.payment_response == payload
    assert order.fulfilled_at is None
    assert order.state_version == 1


def test_unknown_correlation_id_changes_nothing(reconciler, session_factory, seed):
    seed()
    before = _snapshot(session_factory)

    outcome = reconciler.reconcile(MYPOS, {"order_id": "does-not-exist", "status": "success"})

    assert outcome.outcome == "order_not_found"
    assert outcome.correlation_id == "does-not-exist"
    assert _snapshot(session_factory) == before


def test_missing_correlation_id_never_opens_a_session(fulfillment):
    def _no_session():
        raise AssertionError("store must not be touched")

    reconciler = Reconciler(_no_session, fulfillment)

    assert reconciler.reconcile(MYPOS, {"status": "success"}).outcome == "missing_correlation_id"
    assert reconciler.reconcile(VIVA_WALLET, {"StatusId": "F"}).outcome == "missing_correlation_id"


def test_lookup_failure_is_benign(reconciler, session_factory, seed, monkeypatch):
    seed()

    class _BrokenSession:
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def execute(self, *args, **kwargs):
            raise OperationalError("select", {}, Exception("connection reset"))

    reconciler.session_factory = _BrokenSession

    assert reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "success"}).outcome == "order_not_found"


def test_status_write_failure_escalates(reconciler, session_factory, seed, monkeypatch):
    seed()

    def _fail(*args, **kwargs):
        raise OperationalError("update", {}, Exception("disk full"))

    monkeypatch.setattr(reconciler, "_persist_status", _fail)

    with pytest.raises(StatusPersistError):
        reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "success"})
    assert _order(session_factory).status == "pending"


def test_aborted_fulfillment_rolls_back_status_and_escalates(reconciler, session_factory, seed, monkeypatch):
    seed()

    def _explode(*args, **kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(reconciler.fulfillment, "fulfill", _explode)

    with pytest.raises(StatusPersistError):
        reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "success"})
    order = _order(session_factory)
    assert order.status == "pending"
    assert order.fulfilled_at is None

    monkeypatch.undo()
    assert reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "success"}).outcome == "fulfilled"


def test_partial_item_failure_still_processes_remaining_items(reconciler, session_factory, seed, monkeypatch):
    seed(
        items=[
            {"dealId": "D1", "quantity": 1, "price": 10},
            {"dealId": "D2", "quantity": 1, "price": 20},
            {"dealId": "D3", "quantity": 2, "price": 5},
        ],
        deals={"D1": (5, 0), "D2": (5, 0), "D3": (5, 0)},
    )
    service = reconciler.fulfillment
    original = service._apply_item

    def _apply_item(db, order, item):
        if item.deal_id == "D2":
            raise OperationalError("insert", {}, Exception("purchase insert failed"))
        return original(db, order, item)

    monkeypatch.setattr(service, "_apply_item", _apply_item)

    outcome = reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "success"})

    assert outcome.outcome == "fulfilled"
    assert outcome.fulfillment.fulfilled_deal_ids == ["D1", "D3"]
    assert outcome.fulfillment.failed_deal_ids == ["D2"]
    assert outcome.fulfillment.cart_cleared is True
    with session_factory() as db:
        assert sorted(p.deal_id for p in db.execute(select(Purchase)).scalars()) == ["D1", "D3"]
        assert (db.get(Deal, "D1").stock_quantity, db.get(Deal, "D1").sold_quantity) == (4, 1)
        assert (db.get(Deal, "D2").stock_quantity, db.get(Deal, "D2").sold_quantity) == (5, 0)
        assert (db.get(Deal, "D3").stock_quantity, db.get(Deal, "D3").sold_quantity) == (3, 2)
        assert db.execute(select(func.count()).select_from(CartItem)).scalar_one() == 0
        queued = db.execute(select(OutboxEvent)).scalars().all()
        assert len(queued) == 1
        assert queued[0].topic == "fulfillment.retry"
        assert queued[0].payload["payload"]["item"]["dealId"] == "D2"
        assert queued[0].payload["payload"]["attempt"] == 1
    assert _order(session_factory).status == "completed"


def test_cancelled_then_completed_fulfills_once(reconciler, session_factory, seed):
    seed()
    assert reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "cancelled"}).outcome == "status_updated"
    assert reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "success"}).outcome == "fulfilled"
    assert reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "success"}).outcome == "duplicate_completion"
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(Purchase)).scalar_one() == 1


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_aborted_fulfillment_is_counted_apart_from_persist_failures(reconciler, session_factory, seed, monkeypatch):
    seed()
    labels = {"service": reconciler.service_name, "provider": "mypos"}
    aborts_before = _sample("fulfillment_aborts_total", **labels)
    persist_before = _sample("status_persist_failures_total", **labels)
    outcome_before = _sample("webhook_notifications_total", outcome="fulfillment_aborted", **labels)

    def _explode(*args, **kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(reconciler.fulfillment, "fulfill", _explode)

    with pytest.raises(StatusPersistError):
        reconciler.reconcile(MYPOS, {"order_id": "O1", "status": "success"})

    assert _sample("fulfillment_aborts_total", **labels) == aborts_before + 1
    assert _sample("status_persist_failures_total", **labels) == persist_before
    assert _sample("webhook_notifications_total", outcome="fulfillment_aborted", **labels) == outcome_before + 1
