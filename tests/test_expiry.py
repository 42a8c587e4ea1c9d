from datetime import datetime, timedelta

import pytest

from bookpay.exceptions import OrderNotPending
from bookpay.jobs import order_expiry
from bookpay.jobs.order_expiry import run_expiry_sweep
from bookpay.models.order import Order
from bookpay.models.order_audit import OrderAuditLog
from bookpay.models.purchase import Purchase
from bookpay.notifications import OrderEvent, order_events
from bookpay.services.order_expiry_service import sweep_expired_orders


def after_expiry():
    return datetime.utcnow() + timedelta(hours=25)


def test_sweep_expires_only_overdue_pending_orders(place_order, session):
    order = place_order()

    assert sweep_expired_orders(session) == 0
    assert sweep_expired_orders(session, now=after_expiry()) == 1

    session.refresh(order)
    assert order.status == "expired"


def test_settlement_before_sweep_wins(place_order, settle, session):
    order = place_order()
    settle(order)

    assert sweep_expired_orders(session, now=after_expiry()) == 0

    session.refresh(order)
    assert order.status == "paid"


def test_settlement_after_sweep_is_rejected(place_order, settle, session, count):
    order = place_order()
    sweep_expired_orders(session, now=after_expiry())

    with pytest.raises(OrderNotPending) as exc:
        settle(order)

    assert exc.value.current_status == "expired"
    assert count(Purchase) == 0


def test_sweep_drains_backlog_larger_than_batch(place_order, session, count):
    for _ in range(5):
        place_order()

    assert sweep_expired_orders(session, now=after_expiry(), batch_size=2) == 5
    assert count(Order, Order.status == "pending") == 0
    assert sweep_expired_orders(session, now=after_expiry(), batch_size=2) == 0


def test_sweep_audits_and_publishes(place_order, session, count):
    order = place_order()
    seen = []
    order_events.subscribe(seen.append, events=[OrderEvent.ORDER_EXPIRED])

    sweep_expired_orders(session, now=after_expiry())

    assert [t.order_number for t in seen] == [order.order_number]
    assert seen[0].previous_status == "pending"
    assert seen[0].status == "expired"
    assert count(OrderAuditLog, OrderAuditLog.action == "order_expired") == 1


def test_run_expiry_sweep_uses_its_own_session(place_order, engine, mocker):
    place_order()
    mocker.patch.object(order_expiry, "sweep_expired_orders", return_value=1)

    assert run_expiry_sweep(bind=engine) == 1
