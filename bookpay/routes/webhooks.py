import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session

from bookpay.database import get_session
from bookpay.exceptions import InvalidWebhookSignature
from bookpay.schemas.order_schemas import WebhookAck
from bookpay.services.payment_gateway import get_payment_gateway, parse_webhook
from bookpay.services.payment_service import TERMINAL_WEBHOOK_ERRORS, ingest_webhook

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/payment", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    session: Session = Depends(get_session),
    gateway=Depends(get_payment_gateway),
):
    """
    Gateway callback. Anything that must not be retried answers 200;
    transient database failures surface as 503 so the gateway redelivers.
    """

    body = await request.body()

    # 1️⃣ Signature
    if gateway is None:
        raise InvalidWebhookSignature("Payment gateway is not configured")
    gateway.verify_webhook_signature(body.decode("utf-8"), x_razorpay_signature)

    # 2️⃣ Parse
    try:
        notification = parse_webhook(json.loads(body))
    except ValueError as e:
        raise HTTPException(400, str(e))

    # 3️⃣ Dedup + transition
    try:
        result = await run_in_threadpool(
            ingest_webhook,
            session,
            transaction_ref=notification.transaction_ref,
            order_number=notification.order_number,
            event_type=notification.event_type,
            payload=json.loads(body),
            fraud_status=notification.fraud_status,
            payment_type=notification.payment_type,
            gross_amount=notification.gross_amount,
        )
    except TERMINAL_WEBHOOK_ERRORS as e:
        logger.warning(
            f"Webhook {notification.event_type} for {notification.order_number} rejected: {e.code}"
        )
        return WebhookAck(
            accepted=False,
            order_number=notification.order_number,
            error_code=e.code,
        )

    return WebhookAck(
        duplicate=result.duplicate,
        already_processed=result.already_processed,
        order_number=result.order_number,
        status=result.status,
    )
