from typing import Callable, Optional, Protocol

import requests
from sqlmodel import Session

from bookpay.database import engine
from bookpay.exceptions import ERRORS_BY_CODE, OrderNotPending, RateLimited
from bookpay.schemas.order_schemas import OrderRead
from bookpay.services.order_service import cancel_order, get_order_status


class OrderStatusSource(Protocol):
    def get_status(self, order_number: str) -> OrderRead: ...

    def cancel(self, order_number: str) -> OrderRead: ...


class HttpOrderStatusClient:
    """Talks to the orders API; error payloads come back as the matching PaymentError."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()
        if token:
            self.http.headers["Authorization"] = f"Bearer {token}"

    def get_status(self, order_number: str) -> OrderRead:
        return self._request("GET", f"/orders/{order_number}")

    def cancel(self, order_number: str) -> OrderRead:
        return self._request("POST", f"/orders/{order_number}/cancel")

    def _request(self, method: str, path: str) -> OrderRead:
        response = self.http.request(method, f"{self.base_url}{path}", timeout=self.timeout)

        if response.status_code >= 400:
            self._raise_for_error(response)

        return OrderRead.model_validate(response.json())

    @staticmethod
    def _raise_for_error(response: requests.Response):
        try:
            body = response.json()
        except ValueError:
            body = {}

        error_cls = ERRORS_BY_CODE.get(body.get("error_code"))
        details = body.get("details") or {}

        if error_cls is OrderNotPending:
            raise OrderNotPending(details.get("current_status", "unknown"), body.get("message"))
        if error_cls is RateLimited:
            raise RateLimited(details.get("retry_after_seconds", 1), body.get("message"))
        if error_cls is not None:
            raise error_cls(body.get("message"), **details)

        response.raise_for_status()


class LocalOrderStatusSource:
    """In-process source for when the monitor runs next to the services."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self.session_factory = session_factory or self._default_session

    @staticmethod
    def _default_session() -> Session:
        return Session(engine)

    def get_status(self, order_number: str) -> OrderRead:
        with self.session_factory() as session:
            return OrderRead.model_validate(get_order_status(session, order_number))

    def cancel(self, order_number: str) -> OrderRead:
        with self.session_factory() as session:
            return OrderRead.model_validate(cancel_order(session, order_number, cancelled_by="monitor"))
