import os

# must be set before bookpay.config is imported
os.environ["SQLALCHEMY_URL"] = "sqlite://"
os.environ["ENV"] = "test"
os.environ["EXPIRY_SWEEP_ENABLED"] = "false"
os.environ["RAZORPAY_KEY_ID"] = ""
os.environ["RAZORPAY_KEY_SECRET"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from bookpay import models  # noqa: F401
from bookpay.database import get_session
from bookpay.exceptions import GatewayError, InvalidWebhookSignature
from bookpay.main import app
from bookpay.models.book import Book
from bookpay.models.user import User
from bookpay.notifications import order_events
from bookpay.services import order_service
from bookpay.services.payment_gateway import CheckoutLink, RefundOutcome, get_payment_gateway
from bookpay.services.payment_service import ingest_webhook
from bookpay.services.rate_limiter import RateLimiter
from bookpay.utils.token import get_current_user


class FakeGateway:
    def __init__(self):
        self.checkout_down = False
        self.refund_status = "processed"
        self.checkouts = []
        self.refunds = []

    def create_checkout(self, order):
        if self.checkout_down:
            raise GatewayError("gateway unavailable")
        self.checkouts.append(order.order_number)
        return CheckoutLink(
            transaction_ref=f"plink_{order.order_number}",
            payment_url=f"https://rzp.io/l/{order.order_number}",
        )

    def refund(self, payment_ref, amount):
        self.refunds.append((payment_ref, amount))
        return RefundOutcome(status=self.refund_status, reference=f"rfnd_{len(self.refunds)}")

    def verify_webhook_signature(self, body, signature):
        if signature != "valid-signature":
            raise InvalidWebhookSignature()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(autouse=True)
def clean_order_events():
    yield
    order_events._subscriptions.clear()


def _add(session, obj):
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return obj


@pytest.fixture
def user(session):
    return _add(session, User(first_name="Ana", email="ana@example.com"))


@pytest.fixture
def other_user(session):
    return _add(session, User(first_name="Budi", email="budi@example.com"))


@pytest.fixture
def admin(session):
    return _add(session, User(first_name="Admin", email="admin@example.com", role="admin"))


@pytest.fixture
def book(session):
    return _add(session, Book(title="Practical Python", author="R. Hettinger", price=50000.0))


@pytest.fixture
def limiter():
    return RateLimiter(max_attempts=1000, window_seconds=3600)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def place_order(session, user, book, limiter):
    def _place(**overrides):
        params = dict(
            user_id=user.id,
            book_id=book.id,
            amount=50000,
            payment_method="qris",
            limiter=limiter,
        )
        params.update(overrides)
        return order_service.create_order(session, **params)

    return _place


@pytest.fixture
def settle(session):
    def _settle(order, transaction_ref="txn-1", event_type="settlement", **extra):
        return ingest_webhook(
            session,
            transaction_ref=transaction_ref,
            order_number=order.order_number,
            event_type=event_type,
            payload={"transaction_id": transaction_ref, "transaction_status": event_type},
            **extra,
        )

    return _settle


@pytest.fixture
def count(session):
    def _count(model, *where):
        query = select(model)
        for clause in where:
            query = query.where(clause)
        return len(session.exec(query).all())

    return _count


@pytest.fixture
def client(engine, gateway):
    def override_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def login():
    def _login(user):
        # detached copy, the request runs in its own session
        current = User(id=user.id, first_name=user.first_name, email=user.email, role=user.role)
        app.dependency_overrides[get_current_user] = lambda: current
        return current

    return _login
