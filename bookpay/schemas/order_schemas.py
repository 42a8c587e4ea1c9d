from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal


class OrderCreate(BaseModel):
    book_id: int
    # optional echo of the catalogue price; any other value is rejected
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    payment_method: str = Field(..., min_length=1, max_length=50)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=255)


class OrderRead(BaseModel):
    id: str
    order_number: str
    user_id: Optional[int] = None
    book_id: Optional[int] = None
    amount: Decimal
    status: str
    payment_method: str
    gateway_transaction_ref: Optional[str] = None
    payment_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    total_items: int
    total_pages: int
    current_page: int
    limit: int
    results: List[OrderRead]


class RefundCreate(BaseModel):
    # full refund when omitted
    amount: Optional[Decimal] = Field(None, max_digits=12, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)


class RefundResolve(BaseModel):
    succeeded: bool
    gateway_refund_ref: Optional[str] = None


class RefundRead(BaseModel):
    id: str
    order_id: str
    amount: Decimal
    reason: Optional[str] = None
    status: str
    gateway_refund_ref: Optional[str] = None
    submitted_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WebhookAck(BaseModel):
    received: bool = True
    accepted: bool = True
    duplicate: bool = False
    already_processed: bool = False
    order_number: Optional[str] = None
    status: Optional[str] = None
    error_code: Optional[str] = None


class SweepResponse(BaseModel):
    expired: int
