"""Order relay: turns an order into a WhatsApp click-to-chat link.

The platform never talks to WhatsApp itself. The customer's browser opens
``https://wa.me/<number>?text=<message>`` and the shop owner receives the
pre-filled message.
"""
import re
from typing import Iterable, Optional
from urllib.parse import quote

from . import schemas
from .models import DeliveryMethod

WA_ME_URL = "https://wa.me/"

PAYMENT_METHODS = {
    "pix": "Pix",
    "cash": "Cash",
    "card": "Credit/Debit card",
}


def normalize_phone(number: Optional[str]) -> str:
    return re.sub(r"\D", "", number or "")


def format_currency(value: float) -> str:
    """pt-BR money formatting: 1234.5 -> 'R$ 1.234,50'."""
    text = f"{value:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"R$ {text}"


def build_whatsapp_link(number: str, message: Optional[str] = None) -> str:
    digits = normalize_phone(number)
    if not digits:
        raise ValueError("store has no WhatsApp number configured")
    url = f"{WA_ME_URL}{digits}"
    if message:
        url += "?text=" + quote(message, safe="")
    return url


def build_order_message(store: schemas.StoreOut, order: schemas.OrderOut,
                        items: Iterable[schemas.OrderItemOut], payment_method: Optional[str] = None) -> str:
    lines = [f"*New order #{order.id} - {store.name}*", ""]
    lines.append(f"*Customer:* {order.customer_name}")
    if order.customer_phone:
        lines.append(f"*Phone:* {order.customer_phone}")
    if order.delivery_method == DeliveryMethod.DELIVERY:
        lines.append(f"*Delivery to:* {order.customer_address}")
    else:
        lines.append("*Pickup at the store*")
    if payment_method:
        lines.append(f"*Payment:* {PAYMENT_METHODS.get(payment_method, payment_method)}")
    lines.append("")
    lines.append("*Items:*")
    for item in items:
        lines.append(f"{item.quantity}x {item.product_name} - {format_currency(item.price * item.quantity)}")
    lines.append("")
    lines.append(f"*Total: {format_currency(order.total)}*")
    if order.notes:
        lines.append("")
        lines.append(f"*Notes:* {order.notes}")
    lines.append("")
    lines.append("Thank you for your order!")
    return "\n".join(lines)


def order_link(store: schemas.StoreOut, order: schemas.OrderOut,
               items: Iterable[schemas.OrderItemOut], payment_method: Optional[str] = None) -> str:
    return build_whatsapp_link(store.whatsapp_number, build_order_message(store, order, items, payment_method))
