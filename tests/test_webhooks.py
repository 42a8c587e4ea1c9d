from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from bookpay.constants.order_status import OrderStatus
from bookpay.exceptions import AlreadyPurchased, AmountMismatch, OrderNotFound, OrderNotPending
from bookpay.models.order_audit import OrderAuditLog
from bookpay.models.payment_log import PaymentLog
from bookpay.models.purchase import Purchase
from bookpay.models.webhook_event import WebhookEvent
from bookpay.services import payment_service, webhook_dedup
from bookpay.services.payment_gateway import parse_webhook
from bookpay.services.payment_service import ingest_webhook, map_gateway_event


def test_repeated_delivery_settles_exactly_once(place_order, settle, count):
    order = place_order()

    results = [settle(order, transaction_ref="txn-1") for _ in range(5)]

    assert results[0].duplicate is False
    assert results[0].status == "paid"
    assert all(r.duplicate for r in results[1:])
    assert order.status == "paid"
    assert order.paid_at is not None
    assert count(Purchase) == 1
    assert count(PaymentLog) == 1
    assert count(WebhookEvent) == 1


def test_new_event_type_for_settled_order_is_already_processed(place_order, settle, count):
    order = place_order()
    settle(order, transaction_ref="txn-1", event_type="settlement")

    result = settle(order, transaction_ref="txn-1", event_type="capture")

    assert result.duplicate is False
    assert result.already_processed is True
    assert count(Purchase) == 1
    assert count(WebhookEvent) == 2


def test_failure_event_marks_order_failed(place_order, settle, count):
    order = place_order()

    result = settle(order, transaction_ref="txn-1", event_type="deny")

    assert result.status == "failed"
    assert order.status == "failed"
    assert count(PaymentLog, PaymentLog.transaction_status == "failed") == 1
    assert count(Purchase) == 0


def test_settlement_after_failure_is_rejected_and_remembered(place_order, settle, session, count):
    order = place_order()
    settle(order, transaction_ref="txn-1", event_type="failure")

    with pytest.raises(OrderNotPending) as exc:
        settle(order, transaction_ref="txn-1", event_type="settlement")

    assert exc.value.current_status == "failed"
    assert count(Purchase) == 0
    assert webhook_dedup.is_seen(session, "txn-1", "settlement")

    # the gateway retrying the rejected delivery is now a plain duplicate
    assert settle(order, transaction_ref="txn-1", event_type="settlement").duplicate is True


def test_unknown_order_is_rejected_but_recorded(session):
    with pytest.raises(OrderNotFound):
        ingest_webhook(
            session,
            transaction_ref="txn-x",
            order_number="ORD-20260101-DEADBEEF",
            event_type="settlement",
        )

    assert webhook_dedup.is_seen(session, "txn-x", "settlement")


def test_unknown_event_is_recorded_and_ignored(place_order, settle, count):
    order = place_order()

    result = settle(order, event_type="refund.speed_changed")

    assert result.ignored is True
    assert order.status == "pending"
    assert count(WebhookEvent) == 1


def test_pending_and_challenged_capture_change_nothing(place_order, settle, count):
    order = place_order()

    settle(order, transaction_ref="txn-1", event_type="pending")
    result = settle(order, transaction_ref="txn-2", event_type="capture", fraud_status="challenge")

    assert result.ignored is True
    assert order.status == "pending"
    assert count(Purchase) == 0


def test_transient_failure_rolls_back_the_ledger_row(place_order, settle, session, count, mocker):
    order = place_order()
    mocker.patch.object(
        payment_service,
        "complete_payment",
        side_effect=OperationalError("UPDATE orders", {}, Exception("connection lost")),
    )

    with pytest.raises(OperationalError):
        settle(order, transaction_ref="txn-1")

    assert not webhook_dedup.is_seen(session, "txn-1", "settlement")

    mocker.stopall()
    result = settle(order, transaction_ref="txn-1")

    assert result.duplicate is False
    assert result.status == "paid"
    assert count(Purchase) == 1


def test_second_order_for_owned_book_cannot_settle(place_order, settle, session, count):
    first = place_order()
    second = place_order()

    settle(first, transaction_ref="txn-1")

    with pytest.raises(AlreadyPurchased):
        settle(second, transaction_ref="txn-2")

    session.refresh(second)
    assert second.status == "pending"
    assert count(Purchase) == 1
    assert count(
        OrderAuditLog,
        OrderAuditLog.order_id == second.id,
        OrderAuditLog.action == "duplicate_settlement",
    ) == 1
    assert webhook_dedup.is_seen(session, "txn-2", "settlement")


def test_underpaid_settlement_is_rejected_and_remembered(place_order, settle, session, count):
    order = place_order()

    with pytest.raises(AmountMismatch) as exc:
        settle(order, transaction_ref="txn-1", gross_amount=Decimal("1.00"))

    assert exc.value.details["expected"] == "50000.00"
    session.refresh(order)
    assert order.status == "pending"
    assert count(Purchase) == 0
    assert webhook_dedup.is_seen(session, "txn-1", "settlement")


def test_full_payment_settles(place_order, settle):
    order = place_order()

    result = settle(order, gross_amount=Decimal("50000"))

    assert result.status == "paid"


def test_gateway_ref_held_by_another_order_does_not_block_settlement(
    place_order, settle, session, other_user, count
):
    other = place_order(user_id=other_user.id)
    other.gateway_transaction_ref = "txn-shared"
    session.add(other)
    session.commit()
    order = place_order()

    result = settle(order, transaction_ref="txn-shared")

    assert result.status == "paid"
    assert order.gateway_transaction_ref is None
    assert count(OrderAuditLog, OrderAuditLog.action == "duplicate_settlement") == 0


def test_unexpected_constraint_is_not_reported_as_duplicate_purchase(
    place_order, settle, session, other_user, count, mocker
):
    other = place_order(user_id=other_user.id)
    other.gateway_transaction_ref = "txn-shared"
    session.add(other)
    session.commit()
    order = place_order()
    mocker.patch.object(payment_service, "_transaction_ref_taken", return_value=False)

    with pytest.raises(IntegrityError):
        settle(order, transaction_ref="txn-shared")

    session.refresh(order)
    assert order.status == "pending"
    assert count(Purchase) == 0
    assert count(OrderAuditLog, OrderAuditLog.action == "duplicate_settlement") == 0


@pytest.mark.parametrize(
    "event_type, fraud_status, expected",
    [
        ("settlement", None, OrderStatus.PAID),
        ("payment_link.paid", None, OrderStatus.PAID),
        ("capture", "accept", OrderStatus.PAID),
        ("capture", "challenge", OrderStatus.PENDING),
        ("payment.authorized", None, OrderStatus.PENDING),
        ("payment.failed", None, OrderStatus.FAILED),
        ("cancel", None, OrderStatus.CANCELLED),
        ("payment_link.expired", None, OrderStatus.EXPIRED),
        ("something.new", None, None),
    ],
)
def test_gateway_event_mapping(event_type, fraud_status, expected):
    assert map_gateway_event(event_type, fraud_status) == expected


def test_parse_razorpay_payment_link_event():
    notification = parse_webhook({
        "event": "payment_link.paid",
        "payload": {
            "payment_link": {"entity": {"id": "plink_1", "reference_id": "ORD-20261018-0A1B2C3D"}},
            "payment": {"entity": {"id": "pay_9", "amount": 5000000, "method": "upi", "notes": []}},
        },
    })

    assert notification.transaction_ref == "pay_9"
    assert notification.order_number == "ORD-20261018-0A1B2C3D"
    assert notification.event_type == "payment_link.paid"
    assert notification.payment_type == "upi"
    assert notification.gross_amount == Decimal("50000")


def test_parse_flat_notification():
    notification = parse_webhook({
        "transaction_id": "txn-1",
        "order_id": "ORD-20261018-0A1B2C3D",
        "transaction_status": "capture",
        "fraud_status": "challenge",
        "gross_amount": "50000.00",
    })

    assert notification.event_type == "capture"
    assert notification.fraud_status == "challenge"
    assert notification.gross_amount == Decimal("50000.00")


def test_parse_rejects_payload_without_references():
    with pytest.raises(ValueError):
        parse_webhook({"event": "payment.captured", "payload": {}})


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        {"event": "payment.captured", "payload": "garbage"},
        {"transaction_id": "txn-1", "order_id": "ORD-1", "transaction_status": "settlement", "gross_amount": "abc"},
        {"transaction_id": "txn-1", "order_id": "ORD-1", "transaction_status": "settlement", "gross_amount": "NaN"},
    ],
)
def test_parse_rejects_malformed_payloads(payload):
    with pytest.raises(ValueError):
        parse_webhook(payload)
