import re
from datetime import timedelta, timezone
from typing import Dict, List, Optional, Tuple

import resend
from flask import render_template

from .orders import customer_name, display_order_number, format_omr, parse_timestamp, utcnow

OMAN_TIME = timezone(timedelta(hours=4), "Asia/Muscat")
DEFAULT_SITE_URL = "https://qotore.com"


def format_oman_time(value) -> str:
    moment = parse_timestamp(value) or utcnow()
    return moment.astimezone(OMAN_TIME).strftime("%d/%m/%Y, %I:%M %p")


def whatsapp_link(phone) -> str:
    return f"https://wa.me/{re.sub(r'[^0-9]', '', str(phone or ''))}"


def mask_email(value: Optional[str]) -> str:
    if not value:
        return "Not set"
    return re.sub(r"@.+", "@***", value)


def notification_payload(order: Dict, items: List[Dict]) -> Dict:
    """Shape a stored order and its items the way the admin email expects."""
    return {
        "id": order.get("id"),
        "order_number": display_order_number(order),
        "created_at": order.get("created_at"),
        "total_amount_omr": format_omr(order.get("total_amount")),
        "customer": {
            "first_name": order.get("customer_first_name") or "",
            "last_name": order.get("customer_last_name") or "",
            "phone": order.get("customer_phone") or "",
            "email": order.get("customer_email") or "",
        },
        "delivery": {
            "address": order.get("delivery_address") or "",
            "city": order.get("delivery_city") or "",
            "region": order.get("delivery_region") or "",
            "notes": order.get("notes") or "",
        },
        "items": items,
    }


def _item_total(item: Dict) -> str:
    return format_omr(item.get("total_price_cents"))


def build_admin_order_email(
    payload: Dict, site_url: Optional[str] = None, review_url: Optional[str] = None
) -> Tuple[str, str, str]:
    order_number = payload.get("order_number")
    total = payload.get("total_amount_omr")
    customer = payload.get("customer") or {}
    delivery = payload.get("delivery") or {}
    items = [item for item in payload.get("items") or [] if isinstance(item, dict)]
    order_date = format_oman_time(payload.get("created_at"))
    manage_url = f"{(site_url or DEFAULT_SITE_URL).rstrip('/')}/admin/orders-management.html"
    contact_url = whatsapp_link(customer.get("phone"))

    location = delivery.get("region") or ""
    city = delivery.get("city") or ""
    if city and city != "Not specified":
        location = f"{location}, {city}" if location else city

    lines = [
        f"NEW ORDER RECEIVED - {order_number}",
        "=" * 50,
        "",
        "Order Information:",
        f"- Order Number: {order_number}",
        f"- Order Date: {order_date}",
        f"- Total Amount: {total} OMR",
        "",
        "Customer Information:",
        f"- Name: {customer.get('first_name') or ''} {customer.get('last_name') or ''}".rstrip(),
        f"- Phone: {customer.get('phone') or ''}",
    ]
    if customer.get("email"):
        lines.append(f"- Email: {customer['email']}")
    lines += [
        "",
        "Delivery Information:",
        f"- Address: {delivery.get('address') or ''}",
        f"- Location: {location}",
    ]
    if delivery.get("notes"):
        lines.append(f"- Notes: {delivery['notes']}")
    lines += ["", "Order Items:"]
    for index, item in enumerate(items, start=1):
        lines.append(
            f"{index}. {item.get('fragrance_name')} ({item.get('fragrance_brand') or 'N/A'})"
        )
        lines.append(
            f"   Size: {item.get('variant_size')} | Quantity: {item.get('quantity')}"
            f" | Total: {_item_total(item)} OMR"
        )
    lines += [
        "",
        f"TOTAL: {total} OMR",
        "",
        "Quick Actions:",
        f"- Contact Customer: {contact_url}",
        f"- Manage Orders: {manage_url}",
    ]
    if review_url:
        lines.append(f"- Mark as Reviewed: {review_url}")
    lines += ["", "---", f"Order received at {order_date} (Oman Time)"]
    text_body = "\n".join(lines)

    html_body = render_template(
        "emails/admin_new_order.html",
        order_number=order_number,
        order_date=order_date,
        total=total,
        customer=customer,
        delivery=delivery,
        location=location,
        items=[dict(item, total_display=_item_total(item)) for item in items],
        contact_url=contact_url,
        manage_url=manage_url,
        review_url=review_url,
    )
    subject = f"\U0001F6D2 New Order {order_number} - {total} OMR"
    return subject, text_body, html_body


def build_admin_cancellation_email(order: Dict, reason: str) -> Tuple[str, str, str]:
    order_number = display_order_number(order)
    total = format_omr(order.get("total_amount"))
    name = customer_name(order)
    cancelled_at = format_oman_time(order.get("cancelled_at"))
    text_body = "\n".join(
        [
            f"ORDER CANCELLED - {order_number}",
            "",
            f"Customer: {name}",
            f"Phone: {order.get('customer_phone') or ''}",
            f"Total: {total} OMR",
            f"Reason: {reason}",
            f"Cancelled at: {cancelled_at} (Oman Time)",
        ]
    )
    html_body = render_template(
        "emails/admin_order_cancelled.html",
        order_number=order_number,
        customer_name=name,
        phone=order.get("customer_phone") or "",
        total=total,
        reason=reason,
        cancelled_at=cancelled_at,
    )
    return f"Order Cancelled {order_number}", text_body, html_body


def send_email_via_resend(payload: Dict[str, object], api_key: str):
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def send_order_confirmation_email(
    order: Dict, items: List[Dict], api_key: str, sender: str
) -> Tuple[bool, Optional[str]]:
    recipient = str(order.get("customer_email") or "").strip()
    if not recipient:
        return False, "Missing customer email for the order receipt."

    order_number = display_order_number(order)
    total = format_omr(order.get("total_amount"))
    email_items = [dict(item, total_display=_item_total(item)) for item in items]
    html_body = render_template(
        "emails/order_confirmation.html",
        order_number=order_number,
        first_name=order.get("customer_first_name") or "",
        items=email_items,
        total=total,
        order_date=format_oman_time(order.get("created_at")),
    )
    item_lines = ", ".join(
        f"{item.get('fragrance_name')} {item.get('variant_size')} x{item.get('quantity')}"
        for item in items
    )
    text_body = (
        f"Thank you for your order {order_number}!\n"
        f"Items: {item_lines}.\n"
        f"Total: {total} OMR.\n\n"
        "We will contact you shortly to arrange delivery.\n"
        "Qotore"
    )
    payload: Dict[str, object] = {
        "from": f"Qotore <{sender}>",
        "to": [recipient],
        "subject": f"Order Confirmation {order_number}",
        "html": html_body,
        "text": text_body,
    }
    return send_email_via_resend(payload, api_key)


def send_order_cancellation_email(
    order: Dict, reason: str, api_key: str, sender: str
) -> Tuple[bool, Optional[str]]:
    recipient = str(order.get("customer_email") or "").strip()
    if not recipient:
        return False, "Missing customer email for the cancellation notice."

    order_number = display_order_number(order)
    html_body = render_template(
        "emails/order_cancelled.html",
        order_number=order_number,
        first_name=order.get("customer_first_name") or "",
        reason=reason,
        total=format_omr(order.get("total_amount")),
    )
    text_body = (
        f"Your order {order_number} has been cancelled.\n"
        f"Reason: {reason}\n\n"
        "Qotore"
    )
    payload: Dict[str, object] = {
        "from": f"Qotore <{sender}>",
        "to": [recipient],
        "subject": f"Order Cancelled {order_number}",
        "html": html_body,
        "text": text_body,
    }
    return send_email_via_resend(payload, api_key)
