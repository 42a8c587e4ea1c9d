import logging
import webbrowser
from typing import Protocol

from bookpay.exceptions import PaymentWindowBlocked

logger = logging.getLogger(__name__)


class PaymentWindow(Protocol):
    """The gateway's hosted checkout page, opened somewhere we cannot inspect."""

    def open(self, url: str) -> None: ...

    def closed(self) -> bool: ...

    def close(self) -> None: ...


class BrowserWindow:
    """
    Opens the checkout in the system browser. The browser hands nothing back,
    so closure is never observed and the monitor relies on polling alone.
    """

    def __init__(self, new: int = 2):
        self.new = new
        self.url = None

    def open(self, url: str) -> None:
        if not webbrowser.open(url, new=self.new):
            raise PaymentWindowBlocked("Could not open the payment page", payment_url=url)
        self.url = url
        logger.info(f"Opened payment page {url}")

    def closed(self) -> bool:
        return False

    def close(self) -> None:
        self.url = None
