# bookpay/services/order_event_service.py

from datetime import datetime
from typing import Optional
from uuid import uuid4
from sqlmodel import Session, select
from bookpay.models.order_audit import OrderAuditLog


def log_order_event(
    session: Session,
    order_id: str,
    action: str,
    label: str,
    created_by: str = "system",
    meta: Optional[dict] = None,
):
    """
    Append-only audit timeline. Added to the caller's transaction, never committed here.
    """

    entry = OrderAuditLog(
        id=str(uuid4()),
        order_id=order_id,
        action=action,
        label=label,
        meta=meta,
        created_by=created_by,
        created_at=datetime.utcnow(),
    )

    session.add(entry)
    return entry


def get_order_timeline(session: Session, order_id: str):
    return session.exec(
        select(OrderAuditLog)
        .where(OrderAuditLog.order_id == order_id)
        .order_by(OrderAuditLog.created_at)
    ).all()
