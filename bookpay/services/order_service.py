import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from bookpay.config import settings
from bookpay.constants.order_status import OrderStatus
from bookpay.exceptions import (
    AlreadyPurchased,
    AmountMismatch,
    BookNotFound,
    DuplicateOrder,
    GatewayError,
    OrderNotFound,
    OrderNotPending,
)
from bookpay.models.book import Book
from bookpay.models.order import Order
from bookpay.models.purchase import Purchase
from bookpay.notifications import OrderEvent, dispatch_order_event
from bookpay.services.idempotency import ensure_same_request, generate_order_number
from bookpay.services.order_event_service import log_order_event
from bookpay.services.payment_service import lock_order
from bookpay.services.rate_limiter import RateLimiter, rate_limiter as default_rate_limiter
from bookpay.utils.pagination import paginate

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(CENTS)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")

    if amount <= 0:
        raise ValueError("Amount must be greater than zero")
    return amount


def _find_by_idempotency_key(session: Session, idempotency_key: str) -> Optional[Order]:
    return session.exec(
        select(Order).where(Order.idempotency_key == idempotency_key)
    ).first()


def _replay(session: Session, order: Order, gateway, **request) -> Order:
    ensure_same_request(order, **request)
    logger.info(f"Idempotent replay of order {order.order_number}")
    if gateway is not None:
        return attach_gateway_checkout(session, order, gateway)
    return order


def create_order(
    session: Session,
    *,
    user_id: int,
    book_id: int,
    payment_method: str,
    amount=None,
    idempotency_key: Optional[str] = None,
    gateway=None,
    limiter: Optional[RateLimiter] = None,
) -> Order:
    """
    Create a pending order, or return the original one when ``idempotency_key``
    was already used for the same request.

    Uniqueness is left to the database: a constraint violation on insert is
    resolved into either the idempotent replay or a retry with a fresh
    order number.
    """

    # 1️⃣ Spend a token, whatever the outcome
    (limiter or default_rate_limiter).consume(session, user_id)

    amount = to_amount(amount) if amount is not None else None
    request = dict(
        user_id=user_id,
        book_id=book_id,
        amount=amount,
        payment_method=payment_method,
    )

    # 2️⃣ Replay?
    if idempotency_key:
        existing = _find_by_idempotency_key(session, idempotency_key)
        if existing:
            return _replay(session, existing, gateway, **request)

    # 3️⃣ Preconditions
    book = session.get(Book, book_id)
    if not book or not book.is_purchasable:
        raise BookNotFound(f"Book {book_id} is not available", book_id=book_id)

    owned = session.exec(
        select(Purchase.id)
        .where(Purchase.user_id == user_id)
        .where(Purchase.book_id == book_id)
    ).first()
    if owned:
        raise AlreadyPurchased("You already own this book", book_id=book_id)

    # the catalogue price is authoritative; a client amount may only echo it
    price = to_amount(book.price)
    if amount is not None and amount != price:
        raise AmountMismatch(
            "Order amount does not match the book price",
            book_id=book_id,
            expected=str(price),
            received=str(amount),
        )
    amount = price

    # 4️⃣ Insert, letting the unique constraints arbitrate races
    for attempt in range(1, settings.order_number_retries + 1):
        now = datetime.utcnow()
        order = Order(
            order_number=generate_order_number(now),
            user_id=user_id,
            book_id=book_id,
            amount=amount,
            status=OrderStatus.PENDING.value,
            payment_method=payment_method,
            idempotency_key=idempotency_key,
            expires_at=now + timedelta(hours=settings.order_expiry_hours),
            created_at=now,
            updated_at=now,
        )
        session.add(order)
        log_order_event(
            session,
            order_id=order.id,
            action=OrderEvent.ORDER_CREATED.value,
            label="Order placed",
            created_by=f"user:{user_id}",
            meta={"payment_method": payment_method, "amount": str(amount)},
        )

        try:
            session.commit()
        except IntegrityError:
            session.rollback()

            if idempotency_key:
                existing = _find_by_idempotency_key(session, idempotency_key)
                if existing:
                    return _replay(session, existing, gateway, **request)

            logger.warning(f"Order number collision on attempt {attempt} for user {user_id}")
            continue

        session.refresh(order)
        logger.info(f"Order {order.order_number} created for user {user_id}, book {book_id}")
        dispatch_order_event(event=OrderEvent.ORDER_CREATED, order=order)

        if gateway is not None:
            return attach_gateway_checkout(session, order, gateway)
        return order

    raise DuplicateOrder("Could not allocate a unique order number, please retry")


def attach_gateway_checkout(session: Session, order: Order, gateway) -> Order:
    """
    Ask the gateway for a hosted checkout and store it on a pending order
    that has none yet. A gateway failure leaves the order without a URL.
    """

    if order.payment_url or not order.is_pending:
        return order

    try:
        link = gateway.create_checkout(order)
    except GatewayError as exc:
        logger.warning(f"No checkout for {order.order_number} yet: {exc.message}")
        return order

    locked = lock_order(session, order.order_number)
    if locked.is_pending and not locked.payment_url:
        locked.gateway_transaction_ref = link.transaction_ref
        locked.payment_url = link.payment_url
        locked.updated_at = datetime.utcnow()
        session.add(locked)
        session.commit()
        session.refresh(locked)
    else:
        session.commit()

    return locked


def get_order_status(session: Session, order_number: str) -> Order:
    order = session.exec(
        select(Order).where(Order.order_number == order_number)
    ).first()

    if not order:
        raise OrderNotFound(f"Order {order_number} not found", order_number=order_number)

    return order


def cancel_order(session: Session, order_number: str, cancelled_by: str = "user") -> Order:
    """Guarded pending -> cancelled. No time window: a pending order can always be cancelled."""

    try:
        order = lock_order(session, order_number)

        if not order.is_pending:
            current_status = order.status
            session.rollback()
            logger.warning(f"Cancel rejected, order {order_number} is {current_status}")
            raise OrderNotPending(current_status)

        previous_status = order.status
        order.status = OrderStatus.CANCELLED.value
        order.updated_at = datetime.utcnow()
        session.add(order)

        log_order_event(
            session,
            order_id=order.id,
            action=OrderEvent.ORDER_CANCELLED.value,
            label="Order cancelled",
            created_by=cancelled_by,
        )
        session.commit()

    except OperationalError:
        session.rollback()
        logger.exception(f"Transient database error while cancelling {order_number}")
        raise

    session.refresh(order)
    logger.info(f"Order {order_number}: {previous_status} -> {order.status}")
    dispatch_order_event(
        event=OrderEvent.ORDER_CANCELLED,
        order=order,
        previous_status=previous_status,
        meta={"cancelled_by": cancelled_by},
    )

    return order


def list_my_orders(
    session: Session,
    user_id: int,
    *,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
):
    query = select(Order).where(Order.user_id == user_id)

    if status:
        query = query.where(Order.status == OrderStatus(status).value)

    query = query.order_by(Order.created_at.desc())

    return paginate(session=session, query=query, page=page, limit=limit)
