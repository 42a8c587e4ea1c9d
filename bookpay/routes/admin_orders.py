# -------- ADMIN ORDERS --------
from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from bookpay.database import get_session
from bookpay.dependencies.admin import require_admin
from bookpay.models.user import User
from bookpay.schemas.order_schemas import RefundRead, RefundResolve, SweepResponse
from bookpay.services import order_service, refund_service
from bookpay.services.order_event_service import get_order_timeline
from bookpay.services.order_expiry_service import sweep_expired_orders
from bookpay.services.payment_gateway import get_payment_gateway

router = APIRouter()


@router.post("/orders/sweep-expired", response_model=SweepResponse)
def sweep_expired(
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return {"expired": sweep_expired_orders(session)}


@router.get("/orders/{order_number}/timeline")
def order_timeline(
    order_number: str,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    order = order_service.get_order_status(session, order_number)

    return {
        "order_number": order.order_number,
        "status": order.status,
        "events": [
            {
                "action": e.action,
                "label": e.label,
                "meta": e.meta,
                "created_by": e.created_by,
                "created_at": e.created_at,
            }
            for e in get_order_timeline(session, order.id)
        ],
    }


@router.post("/refunds/{refund_id}/resolve", response_model=RefundRead)
def resolve_refund(
    refund_id: str,
    payload: RefundResolve,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return refund_service.resolve_refund(
        session,
        refund_id,
        succeeded=payload.succeeded,
        gateway_refund_ref=payload.gateway_refund_ref,
        resolved_by=f"admin:{admin.id}",
    )


@router.post("/refunds/{refund_id}/process", response_model=RefundRead)
def process_refund(
    refund_id: str,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
    gateway=Depends(get_payment_gateway),
):
    if gateway is None:
        raise HTTPException(503, "Payment gateway is not configured")

    return refund_service.process_refund(session, refund_id, gateway)
