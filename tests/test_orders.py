import pytest

from storefront import auth, schemas
from storefront.orders import InvalidOrder, cart_lines, place_order, resolve_lines


async def test_resolve_lines_rejects_foreign_and_inactive_products(seeded):
    store = await seeded.get_store_by_slug("moments")
    other = await seeded.create_store(schemas.StoreCreate(name="Other", slug="other", whatsapp_number="1"))
    foreign = await seeded.create_product(schemas.ProductCreate(name="x", price=1, store_id=other.id))
    await seeded.update_product(2, {"active": False})

    lines = await resolve_lines(seeded, store, [schemas.OrderLineIn(product_id=1, quantity=3)])
    assert [(p.id, q) for p, q in lines] == [(1, 3)]

    for product_id in (foreign.id, 2, 999):
        with pytest.raises(InvalidOrder):
            await resolve_lines(seeded, store, [schemas.OrderLineIn(product_id=product_id)])


async def test_place_order_from_cart(seeded):
    store = await seeded.get_store_by_slug("moments")
    cart = await seeded.create_cart(schemas.CartCreate(customer_id=1, store_id=store.id))
    await seeded.create_cart_item(schemas.CartItemCreate(cart_id=cart.id, product_id=4, quantity=2))
    await seeded.create_cart_item(schemas.CartItemCreate(cart_id=cart.id, product_id=6, quantity=1))

    lines = await cart_lines(seeded, cart.id)
    details = schemas.CheckoutDetails(customer_name="Demo Customer", payment_method="card")
    placed = await place_order(seeded, store, details, lines, customer_id=1, cart_id=cart.id)

    assert placed.order.total == 225.7
    assert placed.order.customer_id == 1
    assert [i.product_name for i in placed.items] == ["Sunscreen SPF 50", "Relaxing Body Oil"]
    assert await seeded.get_cart(cart.id) is None
    assert await seeded.get_order_items(placed.order.id) == placed.items
    assert "Credit%2FDebit%20card" in placed.whatsapp_url
    assert auth.verify_order_token(placed.relay_token, placed.order.id)
    assert not auth.verify_order_token(placed.relay_token, placed.order.id + 1)


async def test_cart_lines_skip_unavailable_products(seeded):
    cart = await seeded.create_cart(schemas.CartCreate(customer_id=1, store_id=1))
    await seeded.create_cart_item(schemas.CartItemCreate(cart_id=cart.id, product_id=1, quantity=1))
    await seeded.create_cart_item(schemas.CartItemCreate(cart_id=cart.id, product_id=3, quantity=1))
    await seeded.delete_product(3)

    lines = await cart_lines(seeded, cart.id)
    assert [p.id for p, _ in lines] == [1]


async def test_empty_order_is_rejected(seeded):
    store = await seeded.get_store_by_slug("moments")
    with pytest.raises(InvalidOrder, match="empty"):
        await place_order(seeded, store, schemas.CheckoutDetails(customer_name="A"), [])
    assert await seeded.get_orders() == []
