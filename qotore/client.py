import logging
from typing import Dict, List, Optional

import requests

from .cart import Cart, CartStore
from .orders import normalize_phone

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    def __init__(self, message: str, status_code: int = 0, payload: Optional[Dict] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


class StorefrontClient:
    """HTTP client for the public storefront API."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: int = 15):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _json(self, response: requests.Response) -> Dict:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if not response.ok:
            raise CheckoutError(
                str(data.get("error") or f"Request failed with status {response.status_code}"),
                response.status_code,
                data,
            )
        return data

    def fetch_fragrances(self) -> List[Dict]:
        response = self.session.get(f"{self.base_url}/api/fragrances", timeout=self.timeout)
        return self._json(response).get("data") or []

    def check_active_order(
        self, ip: Optional[str] = None, phone: Optional[str] = None, user_id: Optional[str] = None
    ) -> Optional[Dict]:
        params = {key: value for key, value in (("ip", ip), ("phone", phone), ("user_id", user_id)) if value}
        response = self.session.get(
            f"{self.base_url}/api/check-active-order", params=params, timeout=self.timeout
        )
        return self._json(response).get("order")

    def place_order(
        self,
        cart: Cart,
        customer: Dict,
        delivery: Dict,
        user_id: Optional[str] = None,
        store: Optional[CartStore] = None,
    ) -> Dict:
        """Submit the cart; on success the cart is emptied (and saved, given a store)."""
        if cart.is_empty:
            raise ValueError("Cart is empty")
        phone = normalize_phone(customer.get("phone"))
        if not phone:
            raise ValueError("Invalid phone number. Use 8 digits or 968 followed by 8 digits")

        payload = {
            "customer": dict(customer, phone=phone),
            "delivery": delivery,
            "items": cart.to_order_items(),
            "total_amount": cart.subtotal,
        }
        if user_id:
            payload["user_id"] = user_id

        logger.info("Placing order with %s item(s), %.3f OMR", cart.item_count, cart.subtotal)
        response = self.session.post(
            f"{self.base_url}/api/place-order", json=payload, timeout=self.timeout
        )
        data = self._json(response)

        cart.clear()
        if store is not None:
            store.save_cart(cart)
        return data

    def cancel_order(
        self,
        order_id,
        user_id: Optional[str] = None,
        phone: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Dict:
        payload = {"order_id": order_id}
        if user_id:
            payload["user_id"] = user_id
        if phone:
            payload["phone"] = phone
        if reason:
            payload["reason"] = reason
        response = self.session.post(
            f"{self.base_url}/api/cancel-order", json=payload, timeout=self.timeout
        )
        return self._json(response)

    def order_history(
        self, email: Optional[str] = None, user_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[Dict]:
        params = {
            key: value
            for key, value in (("email", email), ("user_id", user_id), ("status", status))
            if value
        }
        response = self.session.get(
            f"{self.base_url}/api/user-orders", params=params, timeout=self.timeout
        )
        return self._json(response).get("data") or []
