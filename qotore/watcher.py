"""Poll the admin order list and report orders that were not there before."""

import logging
import os
import sys
import threading
from typing import Callable, Dict, Iterable, List, Optional, Set

import requests
from dotenv import load_dotenv

from .orders import format_omr

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30
BACKGROUND_INTERVAL = 60


def new_order_ids(known_ids: Iterable, orders: List[Dict]) -> List:
    known = set(known_ids)
    return [
        order.get("id")
        for order in orders
        if order.get("id") is not None and order.get("id") not in known
    ]


def log_new_order(order: Dict) -> None:
    logger.info(
        "New order %s from %s: %s OMR",
        order.get("order_number"),
        order.get("customer_name") or "customer",
        format_omr(order.get("total_amount")),
    )


class OrderWatcher:
    def __init__(
        self,
        session: requests.Session,
        base_url: str,
        interval: float = DEFAULT_INTERVAL,
        notify: Callable[[Dict], None] = log_new_order,
        timeout: int = 15,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.interval = interval
        self.foreground_interval = interval
        self.notify = notify
        self.timeout = timeout
        self.known_ids: Optional[Set] = None
        self.stop_reason: Optional[str] = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def set_background(self, background: bool) -> None:
        """Poll less often while nobody is looking at the dashboard."""
        self.interval = BACKGROUND_INTERVAL if background else self.foreground_interval

    def stop(self, reason: str = "stopped") -> None:
        self.stop_reason = reason
        self._stop_event.set()

    def check(self) -> List[Dict]:
        """Fetch the order list once and notify about unseen orders.

        The first successful check only records the current IDs. A 401 stops
        the watcher since the admin session is gone.
        """
        response = self.session.get(f"{self.base_url}/admin/orders", timeout=self.timeout)
        if response.status_code == 401:
            logger.warning("Admin session expired, stopping order monitoring")
            self.stop("unauthorized")
            return []
        response.raise_for_status()

        body = response.json()
        if not isinstance(body, dict) or not isinstance(body.get("data") or [], list):
            raise ValueError("Unexpected order list response")
        orders = body.get("data") or []
        current_ids = {order.get("id") for order in orders if order.get("id") is not None}
        if self.known_ids is None:
            self.known_ids = current_ids
            logger.info("Watching %s existing orders", len(current_ids))
            return []

        fresh_ids = set(new_order_ids(self.known_ids, orders))
        self.known_ids = current_ids
        fresh = [order for order in orders if order.get("id") in fresh_ids]
        for order in fresh:
            self.notify(order)
        return fresh

    def run(self) -> None:
        while self.running:
            try:
                self.check()
            except (requests.RequestException, ValueError) as exc:
                logger.warning("Order check failed: %s", exc)
            self._stop_event.wait(self.interval)


def main() -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    base_url = os.getenv("QOTORE_BASE_URL", "http://localhost:5000").rstrip("/")
    try:
        interval = float(os.getenv("ORDER_POLL_INTERVAL", str(DEFAULT_INTERVAL)))
    except ValueError:
        interval = DEFAULT_INTERVAL

    session = requests.Session()
    response = session.post(
        f"{base_url}/admin/login",
        json={"username": os.getenv("ADMIN_USER", ""), "password": os.getenv("ADMIN_PASS", "")},
        timeout=15,
    )
    if not response.ok:
        logger.error("Admin login failed with status %s", response.status_code)
        return 1

    watcher = OrderWatcher(session, base_url, interval=interval)
    try:
        watcher.run()
    except KeyboardInterrupt:
        watcher.stop("interrupted")
    return 0 if watcher.stop_reason != "unauthorized" else 1


if __name__ == "__main__":
    sys.exit(main())
