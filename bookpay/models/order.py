from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import CheckConstraint
from sqlmodel import SQLModel, Field

from bookpay.constants.order_status import OrderStatus


class Order(SQLModel, table=True):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_orders_amount_positive"),
        CheckConstraint("expires_at > created_at", name="ck_orders_expiry_after_creation"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    order_number: str = Field(max_length=50, unique=True, index=True)

    # history outlives the user and the catalogue entry
    user_id: Optional[int] = Field(
        default=None, foreign_key="user.id", ondelete="SET NULL", index=True
    )
    book_id: Optional[int] = Field(
        default=None, foreign_key="book.id", ondelete="SET NULL", index=True
    )

    amount: Decimal = Field(max_digits=12, decimal_places=2)
    status: str = Field(default=OrderStatus.PENDING.value, max_length=20, index=True)
    payment_method: str = Field(max_length=50)

    gateway_transaction_ref: Optional[str] = Field(default=None, max_length=255, unique=True)
    payment_url: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=255, unique=True)

    paid_at: Optional[datetime] = None
    expires_at: datetime = Field(index=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING.value
