from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlmodel import Session

from bookpay.constants.order_status import OrderStatus
from bookpay.database import get_session
from bookpay.dependencies.admin import ensure_order_access
from bookpay.models.user import User
from bookpay.schemas.order_schemas import (
    OrderCreate,
    OrderListResponse,
    OrderRead,
    RefundCreate,
    RefundRead,
)
from bookpay.services import order_service, refund_service
from bookpay.services.payment_gateway import get_payment_gateway
from bookpay.utils.token import get_current_user

router = APIRouter()


@router.post("", response_model=OrderRead)
def place_order(
    payload: OrderCreate,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    gateway=Depends(get_payment_gateway),
):
    try:
        return order_service.create_order(
            session,
            user_id=current_user.id,
            book_id=payload.book_id,
            amount=payload.amount,
            payment_method=payload.payment_method,
            idempotency_key=payload.idempotency_key or idempotency_key,
            gateway=gateway,
        )
    except ValueError as e:
        raise HTTPException(422, str(e))


@router.get("", response_model=OrderListResponse)
def my_orders(
    page: int = 1,
    limit: int = Query(10, le=100),
    status: Optional[OrderStatus] = None,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return order_service.list_my_orders(
        session,
        current_user.id,
        page=page,
        limit=limit,
        status=status.value if status else None,
    )


@router.get("/{order_number}", response_model=OrderRead)
def order_status(
    order_number: str,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    order = order_service.get_order_status(session, order_number)
    ensure_order_access(order, current_user)
    return order


@router.post("/{order_number}/cancel", response_model=OrderRead)
def cancel_order(
    order_number: str,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    order = order_service.get_order_status(session, order_number)
    ensure_order_access(order, current_user)

    return order_service.cancel_order(
        session, order_number, cancelled_by=f"user:{current_user.id}"
    )


@router.post("/{order_number}/refund", response_model=RefundRead)
def request_refund(
    order_number: str,
    payload: RefundCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    order = order_service.get_order_status(session, order_number)
    ensure_order_access(order, current_user)

    return refund_service.request_refund(
        session,
        order_number=order_number,
        amount=payload.amount,
        reason=payload.reason,
        requested_by=current_user.id,
    )
