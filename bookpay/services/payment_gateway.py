import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import razorpay
import requests
from razorpay.errors import (
    BadRequestError,
    GatewayError as RazorpayGatewayError,
    ServerError,
    SignatureVerificationError,
)

from bookpay.config import settings
from bookpay.exceptions import GatewayError, InvalidWebhookSignature

logger = logging.getLogger(__name__)

# razorpay amounts are in the smallest currency unit
SUBUNITS = Decimal(100)


@dataclass
class CheckoutLink:
    transaction_ref: str
    payment_url: str


@dataclass
class RefundOutcome:
    status: str  # processed | pending | failed
    reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayNotification:
    """A webhook body reduced to what the settlement path needs."""

    transaction_ref: str
    order_number: str
    event_type: str
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = None
    gross_amount: Optional[Decimal] = None


def to_subunits(amount) -> int:
    return int(Decimal(str(amount)) * SUBUNITS)


class PaymentGateway:
    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        client: Optional[razorpay.Client] = None,
    ):
        self.client = client or razorpay.Client(
            auth=(key_id or settings.razorpay_key_id, key_secret or settings.razorpay_key_secret)
        )
        self.webhook_secret = webhook_secret or settings.razorpay_webhook_secret

    def create_checkout(self, order) -> CheckoutLink:
        """Create a hosted payment link for a pending order."""

        try:
            link = self.client.payment_link.create({
                "amount": to_subunits(order.amount),
                "currency": settings.currency,
                "reference_id": order.order_number,
                "description": f"Order {order.order_number}",
                "notes": {"order_number": order.order_number},
                "callback_url": f"{settings.frontend_base_url}/orders/{order.order_number}",
                "callback_method": "get",
            })
        except (
            BadRequestError,
            RazorpayGatewayError,
            ServerError,
            requests.RequestException,
        ) as exc:
            logger.error(f"Payment link creation failed for {order.order_number}: {exc}")
            raise GatewayError(str(exc), order_number=order.order_number) from exc

        return CheckoutLink(transaction_ref=link["id"], payment_url=link["short_url"])

    def refund(self, payment_ref: str, amount) -> RefundOutcome:
        logger.info(f"Processing refund: {payment_ref}, amount: {amount}")

        try:
            response = self.client.payment.refund(payment_ref, {"amount": to_subunits(amount)})
        except BadRequestError as exc:
            # rejected outright: the refund will never go through as requested
            logger.warning(f"Refund rejected for {payment_ref}: {exc}")
            return RefundOutcome(status="failed", raw={"error": str(exc)})
        except (
            RazorpayGatewayError,
            ServerError,
            requests.RequestException,
        ) as exc:
            raise GatewayError(str(exc), payment_ref=payment_ref) from exc

        return RefundOutcome(
            status=response.get("status", "pending"),
            reference=response.get("id"),
            raw=response,
        )

    def verify_webhook_signature(self, body: str, signature: Optional[str]):
        if not signature or not self.webhook_secret:
            raise InvalidWebhookSignature("Missing webhook signature")

        try:
            self.client.utility.verify_webhook_signature(body, signature, self.webhook_secret)
        except SignatureVerificationError as exc:
            raise InvalidWebhookSignature() from exc


def _entity(payload: dict, name: str) -> dict:
    node = payload.get("payload")
    for key in (name, "entity"):
        node = node.get(key) if isinstance(node, dict) else None
    return node if isinstance(node, dict) else {}


def _amount(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid amount in webhook payload: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount in webhook payload: {value!r}")
    return amount


def parse_webhook(payload: dict) -> GatewayNotification:
    """
    Accepts razorpay's ``{"event": ..., "payload": {...}}`` envelope as well as
    flat notifications carrying ``transaction_id``/``order_id``/``transaction_status``.
    """

    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")

    if "event" in payload:
        payment = _entity(payload, "payment")
        link = _entity(payload, "payment_link")
        order = _entity(payload, "order")

        notes = payment.get("notes")
        if not isinstance(notes, dict):
            notes = {}

        order_number = (
            link.get("reference_id")
            or notes.get("order_number")
            or order.get("receipt")
        )
        transaction_ref = payment.get("id") or link.get("id") or order.get("id")
        amount = payment.get("amount")

        notification = GatewayNotification(
            transaction_ref=transaction_ref,
            order_number=order_number,
            event_type=payload["event"],
            payment_type=payment.get("method"),
            gross_amount=_amount(amount) / SUBUNITS if amount is not None else None,
        )
    else:
        gross_amount = payload.get("gross_amount")
        notification = GatewayNotification(
            transaction_ref=payload.get("transaction_id"),
            order_number=payload.get("order_id"),
            event_type=payload.get("transaction_status"),
            fraud_status=payload.get("fraud_status"),
            payment_type=payload.get("payment_type"),
            gross_amount=_amount(gross_amount),
        )

    if not notification.transaction_ref or not notification.order_number or not notification.event_type:
        raise ValueError("Webhook payload is missing transaction, order or event reference")

    return notification


_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> Optional[PaymentGateway]:
    """FastAPI dependency. None when no gateway credentials are configured."""

    global _gateway
    if _gateway is None and settings.razorpay_key_id and settings.razorpay_key_secret:
        _gateway = PaymentGateway()
    return _gateway
