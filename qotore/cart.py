import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from .orders import safe_float, safe_positive_int

logger = logging.getLogger(__name__)

CART_STORAGE_KEY = "qotore_cart"
SESSION_STORAGE_KEY = "qotore_session_id"
MAX_QUANTITY = 50


@dataclass
class CartItem:
    fragrance_id: object
    variant_id: object
    name: str
    size: str
    price: float
    quantity: int = 1
    brand: str = ""

    @property
    def line_total(self) -> float:
        return round(self.price * self.quantity, 3)

    def to_order_item(self) -> Dict:
        return {
            "fragranceId": self.fragrance_id,
            "variantId": self.variant_id,
            "fragranceName": self.name,
            "fragranceBrand": self.brand,
            "variantSize": self.size,
            "variantPrice": self.price,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data) -> Optional["CartItem"]:
        """Rebuild a stored line, or None when it is missing ids or quantity."""
        if not isinstance(data, dict):
            return None
        quantity = safe_positive_int(data.get("quantity"), 0)
        if data.get("fragrance_id") in (None, "") or data.get("variant_id") in (None, ""):
            return None
        if quantity <= 0:
            return None
        return cls(
            fragrance_id=data["fragrance_id"],
            variant_id=data["variant_id"],
            name=str(data.get("name") or ""),
            size=str(data.get("size") or ""),
            price=safe_float(data.get("price"), 0.0),
            quantity=min(quantity, MAX_QUANTITY),
            brand=str(data.get("brand") or ""),
        )


class Cart:
    """Shopping cart held on the customer's side until checkout."""

    def __init__(self, items: Optional[List[CartItem]] = None):
        self.items: List[CartItem] = list(items or [])

    def __len__(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def subtotal(self) -> float:
        return round(sum(item.price * item.quantity for item in self.items), 3)

    def add(self, item: CartItem) -> CartItem:
        if item.quantity <= 0:
            raise ValueError("Quantity must be at least 1")
        for existing in self.items:
            if existing.variant_id == item.variant_id:
                existing.quantity = min(existing.quantity + item.quantity, MAX_QUANTITY)
                return existing
        item.quantity = min(item.quantity, MAX_QUANTITY)
        self.items.append(item)
        return item

    def set_quantity(self, index: int, quantity: int) -> Optional[CartItem]:
        """Set a line's quantity; anything below one removes the line."""
        if quantity < 1:
            self.remove(index)
            return None
        item = self.items[index]
        item.quantity = min(quantity, MAX_QUANTITY)
        return item

    def change_quantity(self, index: int, delta: int) -> Optional[CartItem]:
        return self.set_quantity(index, self.items[index].quantity + delta)

    def remove(self, index: int) -> CartItem:
        return self.items.pop(index)

    def clear(self) -> None:
        self.items = []

    def to_order_items(self) -> List[Dict]:
        return [item.to_order_item() for item in self.items]

    def to_list(self) -> List[Dict]:
        return [asdict(item) for item in self.items]

    @classmethod
    def from_list(cls, data) -> "Cart":
        if not isinstance(data, list):
            return cls()
        items = [item for item in (CartItem.from_dict(entry) for entry in data) if item]
        if len(items) != len(data):
            logger.warning("Dropped %s invalid cart line(s)", len(data) - len(items))
        return cls(items)


class CartStore:
    """Key/value JSON file standing in for the browser's local storage."""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> Dict:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except ValueError:
            logger.warning("Ignoring unreadable cart storage at %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)

    def load_cart(self) -> Cart:
        return Cart.from_list(self._read().get(CART_STORAGE_KEY))

    def save_cart(self, cart: Cart) -> None:
        data = self._read()
        data[CART_STORAGE_KEY] = cart.to_list()
        self._write(data)

    def session_id(self) -> str:
        data = self._read()
        value = data.get(SESSION_STORAGE_KEY)
        if not value:
            value = f"session_{uuid.uuid4().hex}"
            data[SESSION_STORAGE_KEY] = value
            self._write(data)
        return value
