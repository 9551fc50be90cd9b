from datetime import datetime
from urllib.parse import unquote

import pytest

from storefront import schemas
from storefront.models import DeliveryMethod
from storefront.whatsapp import build_order_message, build_whatsapp_link, format_currency, normalize_phone

NOW = datetime(2026, 1, 1, 12, 0)


def make_store(**overrides):
    fields = dict(id=1, name="Moments Paris", slug="moments", whatsapp_number="(11) 98765-4321",
                  show_social_media=False, active=True, created_at=NOW, updated_at=NOW)
    fields.update(overrides)
    return schemas.StoreOut(**fields)


def make_order(**overrides):
    fields = dict(id=7, store_id=1, customer_name="Ana", delivery_method=DeliveryMethod.PICKUP,
                  total=1255.7, whatsapp_sent=False, created_at=NOW)
    fields.update(overrides)
    return schemas.OrderOut(**fields)


ITEMS = [
    schemas.OrderItemOut(id=1, order_id=7, product_name="Perfume", price=1000.0, quantity=1),
    schemas.OrderItemOut(id=2, order_id=7, product_name="Serum", price=127.85, quantity=2),
]


@pytest.mark.parametrize("value, expected", [
    (0, "R$ 0,00"),
    (89.9, "R$ 89,90"),
    (1234.5, "R$ 1.234,50"),
    (1000000, "R$ 1.000.000,00"),
])
def test_format_currency(value, expected):
    assert format_currency(value) == expected


def test_normalize_phone():
    assert normalize_phone("+55 (11) 98765-4321") == "5511987654321"
    assert normalize_phone(None) == ""


def test_link_uses_digits_only_and_encodes_text():
    url = build_whatsapp_link("+55 11 98765-4321", "Hi & bye?")
    assert url == "https://wa.me/5511987654321?text=Hi%20%26%20bye%3F"


def test_link_without_message():
    assert build_whatsapp_link("11987654321") == "https://wa.me/11987654321"


def test_link_needs_a_number():
    with pytest.raises(ValueError):
        build_whatsapp_link("n/a", "hello")


def test_pickup_message():
    message = build_order_message(make_store(), make_order(), ITEMS, "cash")
    lines = message.split("\n")

    assert lines[0] == "*New order #7 - Moments Paris*"
    assert "*Customer:* Ana" in lines
    assert "*Pickup at the store*" in lines
    assert "*Payment:* Cash" in lines
    assert "1x Perfume - R$ 1.000,00" in lines
    assert "2x Serum - R$ 255,70" in lines
    assert "*Total: R$ 1.255,70*" in lines
    assert lines[-1] == "Thank you for your order!"
    assert not any(line.startswith("*Notes:*") for line in lines)
    assert not any(line.startswith("*Phone:*") for line in lines)


def test_delivery_message_with_notes():
    order = make_order(delivery_method=DeliveryMethod.DELIVERY, customer_address="Rua A, 1",
                       customer_phone="11911112222", notes="Ring twice")
    message = build_order_message(make_store(), order, ITEMS)

    assert "*Delivery to:* Rua A, 1" in message
    assert "*Phone:* 11911112222" in message
    assert "*Notes:* Ring twice" in message
    assert "*Payment:*" not in message


def test_link_round_trips_the_message():
    message = build_order_message(make_store(), make_order(), ITEMS, "pix")
    url = build_whatsapp_link(make_store().whatsapp_number, message)
    assert url.startswith("https://wa.me/11987654321?text=")
    assert unquote(url.split("?text=", 1)[1]) == message
