from datetime import datetime
from typing import Optional

from sqlmodel import Session, select

from bookpay.models.webhook_event import WebhookEvent


def is_seen(session: Session, transaction_ref: str, event_type: str) -> bool:
    return session.exec(
        select(WebhookEvent.id)
        .where(WebhookEvent.transaction_ref == transaction_ref)
        .where(WebhookEvent.event_type == event_type)
    ).first() is not None


def record_event(
    session: Session,
    *,
    transaction_ref: str,
    order_number: str,
    event_type: str,
    payload: Optional[dict] = None,
) -> WebhookEvent:
    """
    Add the ledger row and flush it so a concurrent duplicate fails here,
    on the unique (transaction_ref, event_type) constraint.
    """

    event = WebhookEvent(
        transaction_ref=transaction_ref,
        order_number=order_number,
        event_type=event_type,
        payload=payload,
        created_at=datetime.utcnow(),
    )
    session.add(event)
    session.flush()
    return event
