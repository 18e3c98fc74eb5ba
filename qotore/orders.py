import math
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

ORDER_STATUSES = ("pending", "reviewed", "completed", "cancelled")
ACTIVE_STATUSES = ("pending", "reviewed")
ADMIN_STATUS_OPTIONS = ("pending", "completed")
DELETABLE_STATUSES = ("pending", "cancelled")

CANCELLATION_WINDOW = timedelta(hours=1)
MAX_ITEM_QUANTITY = 50
WHOLE_BOTTLE = "Whole Bottle"

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
phone_regex = re.compile(r"^(?:968)?(\d{8})$")
_fraction_regex = re.compile(r"\.(\d+)")


def safe_float(value, default=0.0):
    if isinstance(value, bool):
        return default
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    return max(default, numeric)


def to_baisa(amount) -> int:
    """Convert an OMR amount to integer baisa (1 OMR = 1000 baisa)."""
    return int(round(safe_float(amount, 0.0) * 1000))


def from_baisa(baisa) -> float:
    return round(safe_float(baisa, 0.0) / 1000, 3)


def format_omr(baisa) -> str:
    return f"{safe_float(baisa, 0.0) / 1000:.3f}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat()


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a Postgres ``timestamptz`` string into an aware UTC datetime."""
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        text = value.strip().replace(" ", "T", 1)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # Postgres trims trailing zeros from the fractional seconds.
        text = _fraction_regex.sub(
            lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1
        )
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def normalize_phone(value) -> Optional[str]:
    """Return an Omani phone number as ``968XXXXXXXX`` or None when invalid."""
    digits = re.sub(r"[\s\-()+]", "", str(value or ""))
    match = phone_regex.match(digits)
    if not match:
        return None
    return f"968{match.group(1)}"


def validate_admin_status(status) -> Optional[str]:
    if status not in ADMIN_STATUS_OPTIONS:
        return f"Invalid status. Must be one of: {', '.join(ADMIN_STATUS_OPTIONS)}"
    return None


def generate_order_number(now: Optional[datetime] = None) -> str:
    moment = now or utcnow()
    millis = str(int(moment.timestamp() * 1000))
    return f"ORD-{millis[-8:]}"


def display_order_number(order: Dict) -> str:
    number = order.get("order_number")
    if number:
        return str(number)
    try:
        return f"ORD-{int(order.get('id')):05d}"
    except (TypeError, ValueError):
        return f"ORD-{order.get('id')}"


def customer_name(order: Dict) -> str:
    first = str(order.get("customer_first_name") or "").strip()
    last = str(order.get("customer_last_name") or "").strip()
    return f"{first} {last}".strip()


def _first_present(payload: Dict, *keys):
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def build_order_item(payload) -> Optional[Dict]:
    """Snapshot one cart line into an ``order_items`` row, or None if unusable."""
    if not isinstance(payload, dict):
        return None

    fragrance_id = _first_present(payload, "fragrance_id", "fragranceId")
    variant_id = _first_present(payload, "variant_id", "variantId")
    size = _first_present(payload, "variant_size", "variantSize", "size")
    price = _first_present(payload, "variant_price", "variantPrice", "price")
    if fragrance_id is None or variant_id is None or size is None or price is None:
        return None

    unit_price = safe_float(price, -1.0)
    if unit_price < 0:
        return None

    quantity = safe_positive_int(payload.get("quantity"), 0)
    if quantity <= 0 or quantity > MAX_ITEM_QUANTITY:
        return None

    unit_price_cents = to_baisa(unit_price)
    return {
        "fragrance_id": fragrance_id,
        "variant_id": variant_id,
        "fragrance_name": str(
            _first_present(payload, "fragrance_name", "fragranceName", "name") or ""
        ).strip(),
        "fragrance_brand": str(
            _first_present(payload, "fragrance_brand", "fragranceBrand", "brand") or ""
        ).strip(),
        "variant_size": str(size).strip(),
        "variant_price_cents": unit_price_cents,
        "quantity": quantity,
        "unit_price_cents": unit_price_cents,
        "total_price_cents": unit_price_cents * quantity,
        "is_whole_bottle": str(size).strip() == WHOLE_BOTTLE,
    }


def build_order_items(raw_items) -> Tuple[List[Dict], Optional[str]]:
    if not isinstance(raw_items, list) or not raw_items:
        return [], "Order must include at least one item"

    items = [item for item in (build_order_item(entry) for entry in raw_items) if item]
    if not items:
        return [], "No valid items found in order"
    return items, None


def order_total(items: List[Dict]) -> int:
    """Order total in baisa: the sum of the line-item totals."""
    return sum(int(item.get("total_price_cents") or 0) for item in items)


def serialize_order_item(item: Dict) -> Dict:
    return {
        "id": item.get("id"),
        "fragrance_id": item.get("fragrance_id"),
        "variant_id": item.get("variant_id"),
        "name": item.get("fragrance_name") or "",
        "brand": item.get("fragrance_brand") or "",
        "size": item.get("variant_size") or "",
        "price": from_baisa(item.get("unit_price_cents")),
        "quantity": item.get("quantity") or 0,
        "total": from_baisa(item.get("total_price_cents")),
    }


def serialize_admin_order(order: Dict) -> Dict:
    items = [serialize_order_item(item) for item in order.get("order_items") or []]
    return {
        "id": order.get("id"),
        "order_number": display_order_number(order),
        "customer_name": customer_name(order),
        "customer_first_name": order.get("customer_first_name") or "",
        "customer_last_name": order.get("customer_last_name") or "",
        "customer_phone": order.get("customer_phone") or "",
        "customer_email": order.get("customer_email") or "",
        "delivery_address": order.get("delivery_address") or "",
        "delivery_city": order.get("delivery_city") or "",
        "delivery_region": order.get("delivery_region") or "",
        "notes": order.get("notes") or "",
        "items": items,
        "items_count": len(items),
        "total_amount": order.get("total_amount") or 0,
        "total": from_baisa(order.get("total_amount")),
        "status": order.get("status") or "pending",
        "reviewed": bool(order.get("reviewed")),
        "created_at": order.get("created_at"),
        "updated_at": order.get("updated_at"),
    }


def serialize_customer_order(order: Dict) -> Dict:
    items = [serialize_order_item(item) for item in order.get("order_items") or []]
    status = order.get("status") or "pending"
    return {
        "id": order.get("id"),
        "order_number": display_order_number(order),
        "status": status,
        "reviewed": bool(order.get("reviewed")),
        "total_amount": order.get("total_amount") or 0,
        "formatted_total": f"{format_omr(order.get('total_amount'))} OMR",
        "items": items,
        "item_count": sum(item["quantity"] for item in items),
        "delivery_city": order.get("delivery_city") or "",
        "delivery_region": order.get("delivery_region") or "",
        "created_at": order.get("created_at"),
        "can_delete": status in DELETABLE_STATUSES,
    }


def summarize_orders(orders: List[Dict]) -> Dict:
    stats = {
        "total": len(orders),
        "pending": 0,
        "reviewed": 0,
        "completed": 0,
        "cancelled": 0,
        "revenue": 0.0,
    }
    revenue_baisa = 0
    for order in orders:
        status = order.get("status") or "pending"
        if status in stats and status != "total":
            stats[status] += 1
        if status == "completed":
            revenue_baisa += int(order.get("total_amount") or 0)
    stats["revenue"] = from_baisa(revenue_baisa)
    return stats


def _percent_change(current: float, previous: float) -> float:
    if not previous:
        return 100.0 if current else 0.0
    return round((current - previous) / previous * 100, 1)


def statistics_window_start(now: Optional[datetime] = None) -> datetime:
    """Start of last month, the earliest order the dashboard compares against."""
    moment = now or utcnow()
    month_start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return (month_start - timedelta(days=1)).replace(day=1)


def dashboard_statistics(orders: List[Dict], now: Optional[datetime] = None) -> Dict:
    """Today vs yesterday order counts and this month vs last month revenue."""
    moment = now or utcnow()
    today_start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    yesterday_start = today_start - timedelta(days=1)
    month_start = today_start.replace(day=1)
    last_month_start = (month_start - timedelta(days=1)).replace(day=1)

    today_orders = yesterday_orders = 0
    month_revenue = last_month_revenue = 0
    dated = []
    for order in orders:
        created = parse_timestamp(order.get("created_at"))
        if created is None:
            continue
        dated.append((created, order))
        if created >= today_start:
            today_orders += 1
        elif created >= yesterday_start:
            yesterday_orders += 1

        if order.get("status") == "cancelled":
            continue
        amount = int(order.get("total_amount") or 0)
        if created >= month_start:
            month_revenue += amount
        elif created >= last_month_start:
            last_month_revenue += amount

    dated.sort(key=lambda entry: entry[0], reverse=True)
    recent = [serialize_admin_order(order) for _, order in dated[:10]]

    return {
        "orders_today": today_orders,
        "orders_yesterday": yesterday_orders,
        "orders_change": _percent_change(today_orders, yesterday_orders),
        "revenue_this_month": from_baisa(month_revenue),
        "revenue_last_month": from_baisa(last_month_revenue),
        "revenue_change": _percent_change(month_revenue, last_month_revenue),
        "recent_orders": recent,
    }


def hours_since(order: Dict, now: Optional[datetime] = None) -> Optional[float]:
    created = parse_timestamp(order.get("created_at"))
    if created is None:
        return None
    return ((now or utcnow()) - created).total_seconds() / 3600


def cancellation_error(
    order: Dict,
    now: Optional[datetime] = None,
    window: timedelta = CANCELLATION_WINDOW,
) -> Optional[str]:
    """Return why a customer may not cancel ``order``, or None when allowed."""
    status = order.get("status") or "pending"
    if status == "cancelled":
        return "Order is already cancelled"
    if status == "completed":
        return "Cannot cancel completed orders"
    if status != "pending" or order.get("reviewed"):
        return "Order is already being processed and cannot be cancelled"

    deadline = parse_timestamp(order.get("review_deadline"))
    if deadline is not None:
        if (now or utcnow()) > deadline:
            return "Order cancellation deadline has passed"
        return None

    elapsed = hours_since(order, now)
    if elapsed is None:
        return "Order creation time is unknown"
    if elapsed > window.total_seconds() / 3600:
        minutes = int(window.total_seconds() // 60)
        return f"Orders can only be cancelled within {minutes} minutes of placement"
    return None


def can_cancel(order: Dict, now: Optional[datetime] = None) -> bool:
    return cancellation_error(order, now) is None


def append_cancellation_note(
    notes: Optional[str],
    reason: str,
    cancelled_at: datetime,
    cancelled_by: str,
    ip_address: Optional[str] = None,
) -> str:
    lines = [
        "--- CANCELLED ---",
        f"Reason: {reason}",
        f"Cancelled at: {isoformat(cancelled_at)}",
        f"Cancelled by: {cancelled_by}",
    ]
    if ip_address:
        lines.append(f"IP: {ip_address}")
    block = "\n".join(lines)
    existing = str(notes or "").strip()
    return f"{existing}\n\n{block}" if existing else block
