from sqlmodel import SQLModel, Field
from datetime import datetime
from typing import Optional
from decimal import Decimal
from uuid import uuid4

from bookpay.constants.order_status import RefundStatus


class Refund(SQLModel, table=True):
    __tablename__ = "refunds"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    order_id: str = Field(foreign_key="orders.id", index=True)

    amount: Decimal = Field(max_digits=12, decimal_places=2)
    reason: Optional[str] = None
    status: str = Field(default=RefundStatus.PENDING.value, index=True)  # pending, completed, failed

    # filled when the gateway acknowledges the refund
    gateway_refund_ref: Optional[str] = Field(default=None, unique=True)
    # set while a gateway submission is in flight or accepted; blocks resubmission
    submitted_at: Optional[datetime] = None
    requested_by: Optional[int] = Field(default=None, foreign_key="user.id", ondelete="SET NULL")
    resolved_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
