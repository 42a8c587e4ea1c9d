import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from bookpay.config import settings
from bookpay.exceptions import RateLimited
from bookpay.models.rate_limit import RateLimitBucket

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Per-user token bucket for order creation, stored in the database.

    The bucket refills to capacity once ``window_seconds`` have passed since
    the last refill. Every attempt is committed before the caller validates
    anything, so rejected attempts still spend a token.
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ):
        self.max_attempts = max_attempts or settings.rate_limit_max_attempts
        self.window = timedelta(seconds=window_seconds or settings.rate_limit_window_seconds)

    def _lock_bucket(self, session: Session, user_id: int) -> Optional[RateLimitBucket]:
        return session.exec(
            select(RateLimitBucket)
            .where(RateLimitBucket.user_id == user_id)
            .with_for_update()
        ).first()

    def _get_or_create_bucket(self, session: Session, user_id: int, now: datetime) -> RateLimitBucket:
        bucket = self._lock_bucket(session, user_id)
        if bucket is not None:
            return bucket

        bucket = RateLimitBucket(
            user_id=user_id,
            tokens=self.max_attempts,
            refilled_at=now,
            last_attempt_at=now,
        )
        session.add(bucket)
        try:
            session.flush()
        except IntegrityError:
            # another request created the bucket first
            session.rollback()
            bucket = self._lock_bucket(session, user_id)
        return bucket

    def consume(self, session: Session, user_id: int, now: Optional[datetime] = None) -> int:
        """Spend one token. Returns the tokens left, or raises RateLimited."""

        now = now or datetime.utcnow()
        bucket = self._get_or_create_bucket(session, user_id, now)

        if now - bucket.refilled_at >= self.window:
            bucket.tokens = self.max_attempts
            bucket.refilled_at = now

        bucket.last_attempt_at = now

        if bucket.tokens <= 0:
            retry_after = math.ceil((bucket.refilled_at + self.window - now).total_seconds())
            session.add(bucket)
            session.commit()
            logger.warning(f"Order creation rate limited for user {user_id}, retry in {retry_after}s")
            raise RateLimited(retry_after=max(retry_after, 1))

        bucket.tokens -= 1
        session.add(bucket)
        session.commit()

        return bucket.tokens


rate_limiter = RateLimiter()
