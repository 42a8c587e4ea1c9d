import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select, text

from bookpay.config import settings
from bookpay.constants.order_status import OrderStatus
from bookpay.database import get_session
from bookpay.models.order import Order
from bookpay.notifications import order_events

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/check")
def health_check(session: Session = Depends(get_session)):
    """DB ping plus the backlog the expiry sweep still has to clear."""

    db_status = "ok"
    overdue = None

    try:
        session.exec(text("SELECT 1"))
        overdue = session.exec(
            select(func.count(Order.id))
            .where(Order.status == OrderStatus.PENDING.value)
            .where(Order.expires_at < datetime.utcnow())
        ).one()
    except SQLAlchemyError as e:
        logger.error(f"Health check DB failure: {e}")
        db_status = "failed"

    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "database": db_status,
        "overdue_pending_orders": overdue,
        "expiry_sweep_enabled": settings.expiry_sweep_enabled,
        "order_event_subscribers": len(order_events),
        "timestamp": datetime.utcnow().isoformat(),
    }
