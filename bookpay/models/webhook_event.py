from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON, UniqueConstraint


class WebhookEvent(SQLModel, table=True):
    """Dedup ledger: one row per (transaction_ref, event_type), never updated."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("transaction_ref", "event_type", name="uq_webhook_events_txn_event"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)

    transaction_ref: str = Field(max_length=255, index=True)
    order_number: str = Field(max_length=255, index=True)
    event_type: str = Field(max_length=50)

    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
