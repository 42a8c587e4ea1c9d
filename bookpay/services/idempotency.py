import secrets
from datetime import datetime
from typing import Optional

from bookpay.exceptions import IdempotencyKeyConflict
from bookpay.models.order import Order

ORDER_NUMBER_PREFIX = "ORD"


def generate_order_number(now: Optional[datetime] = None) -> str:
    """
    ORD-YYYYMMDD-XXXXXXXX: fixed width, sorts by day, 32 random bits per day.
    """
    now = now or datetime.utcnow()
    return f"{ORDER_NUMBER_PREFIX}-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def ensure_same_request(
    order: Order,
    *,
    user_id: int,
    book_id: int,
    amount,
    payment_method: str,
):
    """
    An idempotency key may only be replayed for the request it was first used with.
    """

    mismatched = []
    if order.user_id != user_id:
        mismatched.append("user_id")
    if order.book_id != book_id:
        mismatched.append("book_id")
    if amount is not None and order.amount != amount:
        mismatched.append("amount")
    if order.payment_method != payment_method:
        mismatched.append("payment_method")

    if mismatched:
        raise IdempotencyKeyConflict(
            "Idempotency key was already used for a different order request",
            order_number=order.order_number,
            mismatched_fields=mismatched,
        )
