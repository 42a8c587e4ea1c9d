import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from bookpay.config import settings
from bookpay.database import create_db_and_tables
from bookpay.exceptions import PaymentError, RateLimited
from bookpay.jobs.order_expiry import expiry_sweep_loop
from bookpay.routes import admin_orders, health, orders, webhooks

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Run DB creation ONLY in local
    if settings.env == "local":
        create_db_and_tables()

    sweeper = None
    if settings.expiry_sweep_enabled:
        sweeper = asyncio.create_task(expiry_sweep_loop())

    yield

    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper

app = FastAPI(title="Bookstore Payments API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.frontend_base_url,
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(OperationalError)
async def database_unavailable_handler(request: Request, exc: OperationalError):
    logger.error(f"Database unavailable on {request.url.path}: {exc.orig}")
    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "error_code": "SERVICE_UNAVAILABLE",
            "message": "Temporary database failure, please retry",
            "details": None,
        },
    )


app.include_router(orders.router, prefix="/orders", tags=["Orders"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin_orders.router, prefix="/admin", tags=["Admin Orders"])
app.include_router(health.router, prefix="/health", tags=["Health"])


@app.get("/")
def root():
    return {
        "order_endpoints": [
            "/orders", "/orders/{order_number}",
            "/orders/{order_number}/cancel", "/orders/{order_number}/refund"
        ],
        "webhook_endpoints": [
            "/webhooks/payment"
        ],
        "admin_endpoints": [
            "/admin/orders/sweep-expired", "/admin/orders/{order_number}/timeline",
            "/admin/refunds/{refund_id}/resolve", "/admin/refunds/{refund_id}/process"
        ],
    }
