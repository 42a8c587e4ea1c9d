from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from typing import Optional
from datetime import datetime
from uuid import uuid4


class Purchase(SQLModel, table=True):
    """Proof of ownership. Created once, in the same transaction that marks its order paid."""

    __tablename__ = "user_purchases"
    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_user_purchases_user_book"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)

    user_id: Optional[int] = Field(default=None, foreign_key="user.id", ondelete="CASCADE", index=True)
    book_id: Optional[int] = Field(default=None, foreign_key="book.id", ondelete="CASCADE", index=True)
    order_id: str = Field(foreign_key="orders.id", unique=True)

    purchased_at: datetime = Field(default_factory=datetime.utcnow)

    # owned by the delivery service
    download_count: int = Field(default=0)
    last_downloaded_at: Optional[datetime] = None
