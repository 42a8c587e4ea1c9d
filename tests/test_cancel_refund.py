from decimal import Decimal

import pytest
from sqlmodel import Session

from bookpay.exceptions import GatewayError, OrderNotPending, RefundNotAllowed, RefundNotFound
from bookpay.models.purchase import Purchase
from bookpay.services import order_service, refund_service


@pytest.fixture
def paid_order(place_order, settle):
    order = place_order()
    settle(order, transaction_ref="pay_1")
    return order


# -------- cancel --------

def test_cancel_pending_order(place_order, session):
    order = place_order()

    cancelled = order_service.cancel_order(session, order.order_number)

    assert cancelled.status == "cancelled"


def test_cancel_is_only_allowed_while_pending(place_order, session):
    order = place_order()
    order_service.cancel_order(session, order.order_number)

    with pytest.raises(OrderNotPending) as exc:
        order_service.cancel_order(session, order.order_number)

    assert exc.value.current_status == "cancelled"


def test_cancel_paid_order_leaves_it_untouched(paid_order, session):
    with pytest.raises(OrderNotPending):
        order_service.cancel_order(session, paid_order.order_number)

    session.refresh(paid_order)
    assert paid_order.status == "paid"


def test_settlement_after_cancel_is_rejected(place_order, settle, session):
    order = place_order()
    order_service.cancel_order(session, order.order_number)

    with pytest.raises(OrderNotPending):
        settle(order)


# -------- refund request --------

def test_refund_requires_paid_order(place_order, session):
    order = place_order()

    with pytest.raises(RefundNotAllowed):
        refund_service.request_refund(session, order_number=order.order_number)


def test_refund_defaults_to_full_amount(paid_order, session):
    refund = refund_service.request_refund(
        session, order_number=paid_order.order_number, reason="wrong book"
    )

    assert refund.status == "pending"
    assert refund.amount == Decimal("50000.00")
    session.refresh(paid_order)
    assert paid_order.status == "paid"


@pytest.mark.parametrize("amount", [0, -1, 50000.01])
def test_refund_amount_must_be_within_order_amount(paid_order, session, amount):
    with pytest.raises(RefundNotAllowed):
        refund_service.request_refund(session, order_number=paid_order.order_number, amount=amount)


def test_only_one_open_refund_per_order(paid_order, session):
    refund_service.request_refund(session, order_number=paid_order.order_number, amount=1000)

    with pytest.raises(RefundNotAllowed):
        refund_service.request_refund(session, order_number=paid_order.order_number, amount=1000)


# -------- resolution --------

def test_completed_refund_moves_order_to_refunded(paid_order, session, count):
    refund = refund_service.request_refund(session, order_number=paid_order.order_number)

    resolved = refund_service.resolve_refund(session, refund.id, succeeded=True)

    assert resolved.status == "completed"
    assert resolved.resolved_at is not None
    session.refresh(paid_order)
    assert paid_order.status == "refunded"
    # access revocation is the delivery service's call
    assert count(Purchase) == 1


def test_failed_refund_keeps_order_paid_and_allows_another(paid_order, session):
    refund = refund_service.request_refund(session, order_number=paid_order.order_number)
    refund_service.resolve_refund(session, refund.id, succeeded=False)

    session.refresh(paid_order)
    assert paid_order.status == "paid"

    retry = refund_service.request_refund(session, order_number=paid_order.order_number)
    assert retry.status == "pending"


def test_resolving_twice_is_a_no_op(paid_order, session):
    refund = refund_service.request_refund(session, order_number=paid_order.order_number)
    refund_service.resolve_refund(session, refund.id, succeeded=True)

    again = refund_service.resolve_refund(session, refund.id, succeeded=False)

    assert again.status == "completed"


def test_refund_after_completed_refund_is_not_allowed(paid_order, session):
    refund = refund_service.request_refund(session, order_number=paid_order.order_number)
    refund_service.resolve_refund(session, refund.id, succeeded=True)

    with pytest.raises(RefundNotAllowed):
        refund_service.request_refund(session, order_number=paid_order.order_number)


def test_unknown_refund(session):
    with pytest.raises(RefundNotFound):
        refund_service.resolve_refund(session, "missing", succeeded=True)


# -------- gateway processing --------

def test_process_refund_uses_settled_payment_ref(paid_order, session, gateway):
    refund = refund_service.request_refund(session, order_number=paid_order.order_number)

    processed = refund_service.process_refund(session, refund.id, gateway)

    assert gateway.refunds == [("pay_1", Decimal("50000.00"))]
    assert processed.status == "completed"
    assert processed.gateway_refund_ref == "rfnd_1"


def test_process_refund_waits_when_gateway_is_still_processing(paid_order, session, gateway):
    gateway.refund_status = "pending"
    refund = refund_service.request_refund(session, order_number=paid_order.order_number)

    processed = refund_service.process_refund(session, refund.id, gateway)

    assert processed.status == "pending"
    assert processed.gateway_refund_ref == "rfnd_1"


def test_process_refund_rejected_by_gateway(paid_order, session, gateway):
    gateway.refund_status = "failed"
    refund = refund_service.request_refund(session, order_number=paid_order.order_number)

    processed = refund_service.process_refund(session, refund.id, gateway)

    assert processed.status == "failed"
    session.refresh(paid_order)
    assert paid_order.status == "paid"


def test_process_refund_gateway_outage_keeps_refund_pending(paid_order, session, gateway, mocker):
    refund = refund_service.request_refund(session, order_number=paid_order.order_number)
    mocker.patch.object(gateway, "refund", side_effect=GatewayError("timeout"))

    with pytest.raises(GatewayError):
        refund_service.process_refund(session, refund.id, gateway)

    session.refresh(refund)
    assert refund.status == "pending"
    assert refund.submitted_at is None

    mocker.stopall()
    retried = refund_service.process_refund(session, refund.id, gateway)

    assert retried.status == "completed"
    assert len(gateway.refunds) == 1


def test_accepted_refund_is_not_submitted_again(paid_order, session, gateway):
    gateway.refund_status = "pending"
    refund = refund_service.request_refund(session, order_number=paid_order.order_number, amount=1000)

    first = refund_service.process_refund(session, refund.id, gateway)
    second = refund_service.process_refund(session, refund.id, gateway)

    assert first.submitted_at is not None
    assert second.status == "pending"
    assert gateway.refunds == [("pay_1", Decimal("1000.00"))]


def test_refund_in_flight_is_not_submitted_again(paid_order, session, engine, gateway, mocker):
    refund = refund_service.request_refund(session, order_number=paid_order.order_number)
    refund_id = refund.id
    submit = gateway.refund
    concurrent = []

    def submit_while_another_admin_retries(payment_ref, amount):
        with Session(engine) as other:
            concurrent.append(refund_service.process_refund(other, refund_id, gateway).status)
        return submit(payment_ref, amount)

    mocker.patch.object(gateway, "refund", side_effect=submit_while_another_admin_retries)

    processed = refund_service.process_refund(session, refund_id, gateway)

    assert concurrent == ["pending"]
    assert processed.status == "completed"
    assert gateway.refunds == [("pay_1", Decimal("50000.00"))]
