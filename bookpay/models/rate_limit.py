from sqlmodel import SQLModel, Field
from datetime import datetime


class RateLimitBucket(SQLModel, table=True):
    __tablename__ = "rate_limit_buckets"

    user_id: int = Field(foreign_key="user.id", ondelete="CASCADE", primary_key=True)
    tokens: int
    refilled_at: datetime = Field(default_factory=datetime.utcnow)
    last_attempt_at: datetime = Field(default_factory=datetime.utcnow)
