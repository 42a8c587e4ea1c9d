import asyncio
import logging

from sqlmodel import Session

from bookpay.config import settings
from bookpay.database import engine
from bookpay.services.order_expiry_service import sweep_expired_orders

logger = logging.getLogger(__name__)


def run_expiry_sweep(bind=None) -> int:
    with Session(bind or engine) as session:
        count = sweep_expired_orders(session)

    if count:
        logger.info(f"Expiry sweep expired {count} orders")
    return count


async def expiry_sweep_loop(interval_seconds: int = None):
    """
    Background task started with the app. A failed cycle is logged and the
    loop carries on at the next interval.
    """

    interval = interval_seconds or settings.expiry_sweep_interval_seconds

    if not settings.expiry_sweep_enabled:
        logger.info("Expiry sweep disabled via config")
        return

    logger.info(f"Expiry sweep loop started, interval {interval}s")

    while True:
        try:
            await asyncio.to_thread(run_expiry_sweep)
        except Exception:
            logger.exception("Expiry sweep cycle failed")

        await asyncio.sleep(interval)
