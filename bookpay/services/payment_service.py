import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from bookpay.constants.order_status import OrderStatus
from bookpay.exceptions import (
    AlreadyPurchased,
    AmountMismatch,
    OrderNotFound,
    OrderNotPending,
)
from bookpay.models.order import Order
from bookpay.models.payment_log import PaymentLog
from bookpay.models.purchase import Purchase
from bookpay.notifications import OrderEvent, dispatch_order_event
from bookpay.services import webhook_dedup
from bookpay.services.order_event_service import log_order_event

logger = logging.getLogger(__name__)


PAID_EVENTS = {
    "settlement",
    "capture",
    "paid",
    "payment.captured",
    "payment_link.paid",
    "order.paid",
}
PENDING_EVENTS = {"pending", "payment.authorized"}
FAILED_EVENTS = {"deny", "failure", "failed", "payment.failed"}
CANCELLED_EVENTS = {"cancel", "payment_link.cancelled"}
EXPIRED_EVENTS = {"expire", "payment_link.expired"}

FAILURE_EVENTS = {
    OrderStatus.FAILED: OrderEvent.PAYMENT_FAILED,
    OrderStatus.CANCELLED: OrderEvent.ORDER_CANCELLED,
    OrderStatus.EXPIRED: OrderEvent.ORDER_EXPIRED,
}

# errors after which the same webhook can never succeed
TERMINAL_WEBHOOK_ERRORS = (OrderNotFound, OrderNotPending, AlreadyPurchased, AmountMismatch)


def map_gateway_event(event_type: str, fraud_status: Optional[str] = None) -> Optional[OrderStatus]:
    """
    Target order status for a gateway event. PENDING means "nothing to do yet",
    None means the event is unknown.
    """

    event = (event_type or "").lower()

    if event == "capture" and (fraud_status or "").lower() == "challenge":
        return OrderStatus.PENDING
    if event in PAID_EVENTS:
        return OrderStatus.PAID
    if event in PENDING_EVENTS:
        return OrderStatus.PENDING
    if event in FAILED_EVENTS:
        return OrderStatus.FAILED
    if event in CANCELLED_EVENTS:
        return OrderStatus.CANCELLED
    if event in EXPIRED_EVENTS:
        return OrderStatus.EXPIRED
    return None


@dataclass
class CompletionResult:
    order: Order
    already_processed: bool = False
    purchase: Optional[Purchase] = None


@dataclass
class WebhookResult:
    order_number: str
    event_type: str
    duplicate: bool = False
    already_processed: bool = False
    ignored: bool = False
    status: Optional[str] = None


def lock_order(session: Session, order_number: str) -> Order:
    order = session.exec(
        select(Order)
        .where(Order.order_number == order_number)
        .with_for_update()
    ).first()

    if order is None:
        raise OrderNotFound(f"Order {order_number} not found", order_number=order_number)

    return order


def _find_purchase_for_order(session: Session, order_id: str) -> Optional[Purchase]:
    return session.exec(
        select(Purchase).where(Purchase.order_id == order_id)
    ).first()


def _owned_elsewhere(session: Session, order: Order) -> bool:
    return session.exec(
        select(Purchase.id)
        .where(Purchase.user_id == order.user_id)
        .where(Purchase.book_id == order.book_id)
    ).first() is not None


def _transaction_ref_taken(session: Session, order: Order, transaction_ref: str) -> bool:
    return session.exec(
        select(Order.id)
        .where(Order.gateway_transaction_ref == transaction_ref)
        .where(Order.id != order.id)
    ).first() is not None


def _reject_second_settlement(session: Session, order_number: str, transaction_ref: str):
    """
    The user already owns the book through another order. Leave this order
    untouched, keep an audit trail for a manual refund, then raise.
    """

    session.rollback()

    order = session.exec(
        select(Order).where(Order.order_number == order_number)
    ).one()

    log_order_event(
        session,
        order_id=order.id,
        action=OrderEvent.DUPLICATE_SETTLEMENT.value,
        label="Settlement rejected: book already owned, refund required",
        meta={"transaction_ref": transaction_ref},
    )
    session.commit()

    logger.warning(
        f"Rejected settlement {transaction_ref} for {order_number}: "
        f"user {order.user_id} already owns book {order.book_id}"
    )
    dispatch_order_event(
        event=OrderEvent.DUPLICATE_SETTLEMENT,
        order=order,
        meta={"transaction_ref": transaction_ref},
    )

    raise AlreadyPurchased(
        "Book already purchased through another order",
        order_number=order_number,
    )


def complete_payment(
    session: Session,
    *,
    order_number: str,
    transaction_ref: str,
    payload: Optional[Dict[str, Any]] = None,
    payment_type: Optional[str] = None,
    gross_amount: Optional[Decimal] = None,
    fraud_status: Optional[str] = None,
) -> CompletionResult:
    """
    Single source of truth for settling an order.

    Runs in one transaction holding the order's row lock: pending -> paid,
    the Purchase row, the payment log and the audit entry commit together
    or not at all. Anything the caller already added to the session (the
    webhook ledger row) commits with them.
    """

    try:
        # 1️⃣ Lock the order
        order = lock_order(session, order_number)

        # 2️⃣ Already settled? Then this is a replay
        purchase = _find_purchase_for_order(session, order.id)
        if purchase:
            session.commit()
            logger.info(f"Order {order_number} already settled, ignoring {transaction_ref}")
            return CompletionResult(order=order, already_processed=True, purchase=purchase)

        # 3️⃣ Only pending orders can settle
        if order.status != OrderStatus.PENDING.value:
            logger.warning(
                f"Settlement {transaction_ref} rejected, order {order_number} is {order.status}"
            )
            raise OrderNotPending(order.status)

        if gross_amount is not None and gross_amount < order.amount:
            logger.warning(
                f"Settlement {transaction_ref} for {order_number} underpaid: "
                f"{gross_amount} < {order.amount}"
            )
            raise AmountMismatch(
                "Paid amount is below the order amount",
                order_number=order_number,
                expected=str(order.amount),
                received=str(gross_amount),
            )

        if _owned_elsewhere(session, order):
            _reject_second_settlement(session, order_number, transaction_ref)

        # another order may already carry this gateway reference
        claim_ref = order.gateway_transaction_ref is None and not _transaction_ref_taken(
            session, order, transaction_ref
        )

        # 4️⃣ 🔒 Atomic state change
        now = datetime.utcnow()
        previous_status = order.status

        order.status = OrderStatus.PAID.value
        order.paid_at = now
        order.updated_at = now
        if claim_ref:
            order.gateway_transaction_ref = transaction_ref
        session.add(order)

        purchase = Purchase(
            user_id=order.user_id,
            book_id=order.book_id,
            order_id=order.id,
            purchased_at=now,
        )
        session.add(purchase)

        session.add(PaymentLog(
            order_id=order.id,
            transaction_ref=transaction_ref,
            payment_type=payment_type,
            gross_amount=gross_amount,
            transaction_status="settlement",
            fraud_status=fraud_status,
            webhook_data=payload,
            created_at=now,
        ))

        log_order_event(
            session,
            order_id=order.id,
            action=OrderEvent.PAYMENT_SUCCESS.value,
            label="Payment settled",
            meta={"transaction_ref": transaction_ref},
        )

        try:
            session.commit()
        except IntegrityError:
            # a unique constraint fired; find out which one
            session.rollback()
            existing = _find_purchase_for_order(session, order.id)
            if existing:
                order = session.get(Order, order.id)
                logger.info(f"Order {order_number} settled concurrently, ignoring {transaction_ref}")
                return CompletionResult(order=order, already_processed=True, purchase=existing)
            if _owned_elsewhere(session, order):
                _reject_second_settlement(session, order_number, transaction_ref)
            logger.exception(f"Settlement {transaction_ref} for {order_number} hit an unexpected constraint")
            raise

    except OperationalError:
        session.rollback()
        logger.exception(f"Transient database error while settling {order_number}")
        raise

    session.refresh(order)
    session.refresh(purchase)

    logger.info(f"Order {order_number}: {previous_status} -> {order.status} ({transaction_ref})")
    dispatch_order_event(
        event=OrderEvent.PAYMENT_SUCCESS,
        order=order,
        previous_status=previous_status,
        meta={"transaction_ref": transaction_ref},
    )

    return CompletionResult(order=order, purchase=purchase)


def fail_payment(
    session: Session,
    *,
    order_number: str,
    transaction_ref: str,
    outcome: OrderStatus,
    payload: Optional[Dict[str, Any]] = None,
    payment_type: Optional[str] = None,
    fraud_status: Optional[str] = None,
) -> Order:
    """
    Non-settlement branch: pending -> failed | cancelled | expired under the same lock.
    """

    if outcome not in FAILURE_EVENTS:
        raise ValueError(f"{outcome} is not a failure outcome")

    try:
        order = lock_order(session, order_number)

        if order.status == outcome.value:
            session.commit()
            logger.info(f"Order {order_number} already {order.status}, ignoring {transaction_ref}")
            return order

        if order.status != OrderStatus.PENDING.value:
            logger.warning(
                f"Gateway outcome {outcome.value} rejected, order {order_number} is {order.status}"
            )
            raise OrderNotPending(order.status)

        now = datetime.utcnow()
        previous_status = order.status

        order.status = outcome.value
        order.updated_at = now
        session.add(order)

        session.add(PaymentLog(
            order_id=order.id,
            transaction_ref=transaction_ref,
            payment_type=payment_type,
            transaction_status=outcome.value,
            fraud_status=fraud_status,
            webhook_data=payload,
            created_at=now,
        ))

        log_order_event(
            session,
            order_id=order.id,
            action=FAILURE_EVENTS[outcome].value,
            label=f"Payment {outcome.value} by gateway",
            meta={"transaction_ref": transaction_ref},
        )

        session.commit()

    except OperationalError:
        session.rollback()
        logger.exception(f"Transient database error while failing {order_number}")
        raise

    session.refresh(order)

    logger.info(f"Order {order_number}: {previous_status} -> {order.status} ({transaction_ref})")
    dispatch_order_event(
        event=FAILURE_EVENTS[outcome],
        order=order,
        previous_status=previous_status,
        meta={"transaction_ref": transaction_ref},
    )

    return order


def _remember_rejected(session: Session, **event):
    """Keep the ledger row of a webhook whose transition was rejected for good."""

    try:
        webhook_dedup.record_event(session, **event)
        session.commit()
    except IntegrityError:
        session.rollback()


def ingest_webhook(
    session: Session,
    *,
    transaction_ref: str,
    order_number: str,
    event_type: str,
    payload: Optional[Dict[str, Any]] = None,
    fraud_status: Optional[str] = None,
    payment_type: Optional[str] = None,
    gross_amount: Optional[Decimal] = None,
) -> WebhookResult:
    """
    Dedup gate in front of the settlement transitions.

    A repeat of (transaction_ref, event_type) is a successful no-op flagged
    ``duplicate``. A new delivery writes its ledger row first, inside the
    transition's transaction; a terminal rejection still keeps the row,
    a transient failure rolls everything back so the gateway's retry is new.
    """

    event = dict(
        transaction_ref=transaction_ref,
        order_number=order_number,
        event_type=event_type,
        payload=payload,
    )

    if webhook_dedup.is_seen(session, transaction_ref, event_type):
        logger.info(f"Duplicate webhook {event_type} for {transaction_ref}, skipping")
        return WebhookResult(order_number=order_number, event_type=event_type, duplicate=True)

    try:
        webhook_dedup.record_event(session, **event)
    except IntegrityError:
        session.rollback()
        logger.info(f"Concurrent duplicate webhook {event_type} for {transaction_ref}, skipping")
        return WebhookResult(order_number=order_number, event_type=event_type, duplicate=True)

    target = map_gateway_event(event_type, fraud_status)

    if target is None:
        session.commit()
        logger.warning(f"Unknown gateway event {event_type} for {order_number}, recorded and ignored")
        return WebhookResult(order_number=order_number, event_type=event_type, ignored=True)

    if target == OrderStatus.PENDING:
        session.commit()
        logger.info(f"Gateway reports {event_type} for {order_number}, nothing to do yet")
        return WebhookResult(
            order_number=order_number,
            event_type=event_type,
            ignored=True,
            status=OrderStatus.PENDING.value,
        )

    try:
        if target == OrderStatus.PAID:
            result = complete_payment(
                session,
                order_number=order_number,
                transaction_ref=transaction_ref,
                payload=payload,
                payment_type=payment_type,
                gross_amount=gross_amount,
                fraud_status=fraud_status,
            )
            return WebhookResult(
                order_number=order_number,
                event_type=event_type,
                already_processed=result.already_processed,
                status=result.order.status,
            )

        order = fail_payment(
            session,
            order_number=order_number,
            transaction_ref=transaction_ref,
            outcome=target,
            payload=payload,
            payment_type=payment_type,
            fraud_status=fraud_status,
        )
        return WebhookResult(order_number=order_number, event_type=event_type, status=order.status)

    except TERMINAL_WEBHOOK_ERRORS:
        session.rollback()
        _remember_rejected(session, **event)
        raise
    except OperationalError:
        # nothing recorded: the redelivery must count as new
        session.rollback()
        raise
