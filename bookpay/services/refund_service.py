import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlmodel import Session, select

from bookpay.constants.order_status import OrderStatus, RefundStatus, can_transition
from bookpay.exceptions import GatewayError, RefundNotAllowed, RefundNotFound
from bookpay.models.order import Order
from bookpay.models.payment_log import PaymentLog
from bookpay.models.refund import Refund
from bookpay.notifications import OrderEvent, dispatch_order_event
from bookpay.services.order_event_service import log_order_event
from bookpay.services.payment_service import lock_order

logger = logging.getLogger(__name__)

OPEN_REFUND_STATUSES = (RefundStatus.PENDING.value, RefundStatus.COMPLETED.value)


def _refund_amount(order: Order, amount) -> Decimal:
    if amount is None:
        return order.amount

    try:
        value = Decimal(str(amount)).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise RefundNotAllowed(f"Invalid refund amount: {amount!r}")

    if value <= 0 or value > order.amount:
        raise RefundNotAllowed(
            "Refund amount must be positive and not exceed the order amount",
            order_amount=str(order.amount),
            requested=str(value),
        )
    return value


def request_refund(
    session: Session,
    *,
    order_number: str,
    amount=None,
    reason: Optional[str] = None,
    requested_by: Optional[int] = None,
) -> Refund:
    """
    Open a pending refund on a paid order. The order itself only moves to
    ``refunded`` once the refund is resolved as completed.
    """

    order = lock_order(session, order_number)

    if order.status != OrderStatus.PAID.value:
        current_status = order.status
        session.rollback()
        raise RefundNotAllowed(
            f"Order is '{current_status}', only paid orders can be refunded",
            current_status=current_status,
        )

    open_refund = session.exec(
        select(Refund)
        .where(Refund.order_id == order.id)
        .where(Refund.status.in_(OPEN_REFUND_STATUSES))
    ).first()
    if open_refund:
        session.rollback()
        raise RefundNotAllowed("Order already has a refund in progress or completed")

    try:
        value = _refund_amount(order, amount)
    except RefundNotAllowed:
        session.rollback()
        raise

    refund = Refund(
        order_id=order.id,
        amount=value,
        reason=reason,
        status=RefundStatus.PENDING.value,
        requested_by=requested_by,
    )
    session.add(refund)

    log_order_event(
        session,
        order_id=order.id,
        action=OrderEvent.REFUND_REQUESTED.value,
        label="Refund requested",
        created_by=f"user:{requested_by}" if requested_by else "system",
        meta={"refund_id": refund.id, "amount": str(value), "reason": reason},
    )

    session.commit()
    session.refresh(refund)

    logger.info(f"Refund {refund.id} requested for {order_number}, amount {value}")
    dispatch_order_event(
        event=OrderEvent.REFUND_REQUESTED,
        order=order,
        meta={"refund_id": refund.id, "amount": str(value)},
    )

    return refund


def _lock_refund(session: Session, refund_id: str) -> Refund:
    refund = session.exec(
        select(Refund).where(Refund.id == refund_id).with_for_update()
    ).first()
    if not refund:
        raise RefundNotFound(f"Refund {refund_id} not found", refund_id=refund_id)
    return refund


def resolve_refund(
    session: Session,
    refund_id: str,
    *,
    succeeded: bool,
    gateway_refund_ref: Optional[str] = None,
    resolved_by: str = "admin",
) -> Refund:
    """
    Reconciliation step. completed moves the order paid -> refunded,
    failed leaves it paid. A refund that is no longer pending is returned as is.
    """

    refund = _lock_refund(session, refund_id)

    if refund.status != RefundStatus.PENDING.value:
        session.commit()
        logger.info(f"Refund {refund_id} already {refund.status}")
        return refund

    order = session.exec(
        select(Order).where(Order.id == refund.order_id).with_for_update()
    ).one()
    previous_status = order.status

    now = datetime.utcnow()
    refund.resolved_at = now
    refund.updated_at = now
    if gateway_refund_ref:
        refund.gateway_refund_ref = gateway_refund_ref

    if succeeded:
        refund.status = RefundStatus.COMPLETED.value
        if can_transition(order.status, OrderStatus.REFUNDED):
            order.status = OrderStatus.REFUNDED.value
            order.updated_at = now
            session.add(order)
        event = OrderEvent.REFUND_COMPLETED
    else:
        refund.status = RefundStatus.FAILED.value
        event = OrderEvent.REFUND_FAILED

    session.add(refund)
    log_order_event(
        session,
        order_id=order.id,
        action=event.value,
        label=f"Refund {refund.status}",
        created_by=resolved_by,
        meta={"refund_id": refund.id, "gateway_refund_ref": gateway_refund_ref},
    )

    session.commit()
    session.refresh(refund)
    session.refresh(order)

    logger.info(
        f"Refund {refund_id} {refund.status}; order {order.order_number}: "
        f"{previous_status} -> {order.status}"
    )
    dispatch_order_event(
        event=event,
        order=order,
        previous_status=previous_status,
        meta={"refund_id": refund.id},
    )

    return refund


def _settled_payment_ref(session: Session, order: Order) -> Optional[str]:
    log = session.exec(
        select(PaymentLog)
        .where(PaymentLog.order_id == order.id)
        .where(PaymentLog.transaction_status == "settlement")
        .order_by(PaymentLog.created_at.desc())
    ).first()

    if log and log.transaction_ref:
        return log.transaction_ref
    return order.gateway_transaction_ref


def process_refund(session: Session, refund_id: str, gateway) -> Refund:
    """
    Submit a pending refund to the gateway and resolve it from the answer.

    The refund is marked ``submitted_at`` under its row lock before the
    gateway is called, so a concurrent or repeated call returns the refund
    as it is instead of paying out twice. A refund the gateway accepted but
    has not processed yet stays pending and submitted.
    """

    # 1️⃣ Claim the refund
    refund = _lock_refund(session, refund_id)

    if refund.status != RefundStatus.PENDING.value or refund.submitted_at is not None:
        session.commit()
        logger.info(f"Refund {refund_id} is {refund.status}, submitted at {refund.submitted_at}; not resubmitting")
        return refund

    order = session.get(Order, refund.order_id)
    payment_ref = _settled_payment_ref(session, order)
    if not payment_ref:
        session.rollback()
        raise RefundNotAllowed("Order has no gateway payment to refund", order_number=order.order_number)

    amount = refund.amount
    refund.submitted_at = datetime.utcnow()
    refund.updated_at = refund.submitted_at
    session.add(refund)
    session.commit()

    # 2️⃣ Gateway call, outside any lock
    try:
        outcome = gateway.refund(payment_ref, amount)
    except GatewayError:
        # the gateway refused or could not be reached: release the claim so it can be retried
        refund = _lock_refund(session, refund_id)
        refund.submitted_at = None
        refund.updated_at = datetime.utcnow()
        session.add(refund)
        session.commit()
        raise

    # 3️⃣ Resolve from the answer
    if outcome.status == "processed":
        return resolve_refund(session, refund_id, succeeded=True, gateway_refund_ref=outcome.reference)
    if outcome.status == "failed":
        return resolve_refund(session, refund_id, succeeded=False)

    refund = _lock_refund(session, refund_id)
    if outcome.reference and not refund.gateway_refund_ref:
        refund.gateway_refund_ref = outcome.reference
        refund.updated_at = datetime.utcnow()
        session.add(refund)
    session.commit()
    session.refresh(refund)

    logger.info(f"Refund {refund_id} accepted by gateway, awaiting processing")
    return refund
