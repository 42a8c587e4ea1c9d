from fastapi import Depends, HTTPException

from bookpay.models.order import Order
from bookpay.models.user import User
from bookpay.utils.token import get_current_user


def is_admin(user: User) -> bool:
    return user.role == "admin"


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user


def ensure_order_access(order: Order, current_user: User):
    """Users see only their own orders; admins see all."""
    if not is_admin(current_user) and order.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not your order")
