from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON
from typing import Optional
from datetime import datetime
from decimal import Decimal


class PaymentLog(SQLModel, table=True):
    __tablename__ = "payment_logs"

    id: Optional[int] = Field(default=None, primary_key=True)

    order_id: str = Field(foreign_key="orders.id", index=True)
    transaction_ref: Optional[str] = Field(default=None, index=True)

    payment_type: Optional[str] = None
    gross_amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    transaction_status: str  # settlement | failed | cancelled | expired ...
    fraud_status: Optional[str] = None

    webhook_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
