from bookpay.models.user import User
from bookpay.models.book import Book
from bookpay.models.order import Order
from bookpay.models.purchase import Purchase
from bookpay.models.payment_log import PaymentLog
from bookpay.models.webhook_event import WebhookEvent
from bookpay.models.refund import Refund
from bookpay.models.rate_limit import RateLimitBucket
from bookpay.models.order_audit import OrderAuditLog

# add ALL models here
