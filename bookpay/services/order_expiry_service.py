import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, select

from bookpay.config import settings
from bookpay.constants.order_status import OrderStatus
from bookpay.models.order import Order
from bookpay.notifications import OrderEvent, dispatch_order_event
from bookpay.services.order_event_service import log_order_event

logger = logging.getLogger(__name__)


def _overdue_batch(session: Session, now: datetime, limit: int):
    return session.exec(
        select(Order.id, Order.order_number)
        .where(Order.status == OrderStatus.PENDING.value)
        .where(Order.expires_at < now)
        .order_by(Order.expires_at)
        .limit(limit)
    ).all()


def _expire_one(session: Session, order_id: str, order_number: str, now: datetime) -> bool:
    result = session.execute(
        update(Order)
        .where(Order.id == order_id)
        .where(Order.status == OrderStatus.PENDING.value)
        .values(status=OrderStatus.EXPIRED.value, updated_at=now)
    )

    if result.rowcount != 1:
        session.rollback()
        logger.info(f"Order {order_number} left pending before expiry, skipped")
        return False

    log_order_event(
        session,
        order_id=order_id,
        action=OrderEvent.ORDER_EXPIRED.value,
        label="Order expired unpaid",
        meta={"expired_at": now.isoformat()},
    )
    session.commit()

    logger.info(f"Order {order_number}: pending -> expired")
    dispatch_order_event(
        event=OrderEvent.ORDER_EXPIRED,
        order=session.get(Order, order_id),
        previous_status=OrderStatus.PENDING.value,
    )
    return True


def sweep_expired_orders(
    session: Session,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> int:
    """
    Expire every pending order past ``expires_at``.

    Candidates are read ``batch_size`` at a time until a short batch comes
    back. Each order is expired by its own conditional UPDATE
    (``status = 'pending'``) and commit, so a settlement that commits first
    wins and the update touches nothing.
    """

    now = now or datetime.utcnow()
    batch_size = batch_size or settings.expiry_sweep_batch_size

    expired = 0
    while True:
        candidates = _overdue_batch(session, now, batch_size)

        for order_id, order_number in candidates:
            if _expire_one(session, order_id, order_number, now):
                expired += 1

        # every candidate has left pending, so the next read starts fresh
        if len(candidates) < batch_size:
            break

    logger.info(f"Expired {expired} unpaid orders")
    return expired
