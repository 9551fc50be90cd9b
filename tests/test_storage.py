from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from storefront import schemas
from storefront.errors import ConflictError, IntegrationError
from storefront.models import Role, SubscriptionStatus
from storefront.seed import seed_demo_data


async def make_store(storage, name="Shop", slug=None):
    return await storage.create_store(schemas.StoreCreate(name=name, slug=slug, whatsapp_number="5511999990000"))


async def make_product(storage, store_id, name="A", price=10.0, **extra):
    return await storage.create_product(schemas.ProductCreate(name=name, price=price, store_id=store_id, **extra))


async def test_ids_increase_and_are_never_reused(storage):
    store = await make_store(storage)
    categories = [
        await storage.create_category(schemas.CategoryCreate(name=f"c{i}", store_id=store.id))
        for i in range(3)
    ]
    ids = [c.id for c in categories]
    assert ids == sorted(set(ids))
    assert ids[0] == 1

    assert await storage.delete_category(ids[-1]) is True
    replacement = await storage.create_category(schemas.CategoryCreate(name="again", store_id=store.id))
    assert replacement.id > ids[-1]


async def test_ids_are_per_kind_and_skip_deleted_rows(storage):
    store = await make_store(storage)
    product = await make_product(storage, store.id)

    users = [
        await storage.create_user(schemas.UserCreate(username=f"u{i}", email=f"u{i}@example.com", hashed_password="x"))
        for i in range(2)
    ]
    assert [u.id for u in users] == [1, 2]

    orders = [
        await storage.create_order(schemas.OrderCreate(store_id=store.id, customer_name=f"c{i}", total=1))
        for i in range(2)
    ]
    assert [o.id for o in orders] == [1, 2]

    cart = await storage.create_cart(schemas.CartCreate(customer_id=1, store_id=store.id))
    first = await storage.create_cart_item(schemas.CartItemCreate(cart_id=cart.id, product_id=product.id, quantity=1))
    second = await storage.create_cart_item(schemas.CartItemCreate(cart_id=cart.id, product_id=product.id, quantity=1))
    assert second.id == first.id + 1

    await storage.delete_cart_item(second.id)
    third = await storage.create_cart_item(schemas.CartItemCreate(cart_id=cart.id, product_id=product.id, quantity=1))
    assert third.id > second.id

    await storage.delete_cart(cart.id)
    new_cart = await storage.create_cart(schemas.CartCreate(customer_id=1, store_id=store.id))
    assert new_cart.id > cart.id


async def test_rolled_back_ids_are_not_handed_out_again(storage):
    store = await make_store(storage)
    with pytest.raises(RuntimeError):
        async with storage.transaction():
            lost = await storage.create_order(schemas.OrderCreate(store_id=store.id, customer_name="A", total=1))
            lost_user = await storage.create_user(schemas.UserCreate(
                username="ghost", email="ghost@example.com", hashed_password="x",
            ))
            raise RuntimeError("boom")

    order = await storage.create_order(schemas.OrderCreate(store_id=store.id, customer_name="B", total=1))
    assert order.id > lost.id
    user = await storage.create_user(schemas.UserCreate(username="ghost", email="ghost@example.com", hashed_password="x"))
    assert user.id > lost_user.id


async def test_create_fills_defaults(storage):
    store = await make_store(storage)
    assert store.active is True
    assert store.slug is None
    assert store.show_social_media is False
    assert store.theme is None

    product = await make_product(storage, store.id)
    assert product.active is True
    assert product.description is None
    assert product.image_url is None
    assert product.category_id is None
    assert product.created_at == product.updated_at

    order = await storage.create_order(schemas.OrderCreate(store_id=store.id, customer_name="Ana", total=5))
    assert order.whatsapp_sent is False
    assert order.customer_id is None


async def test_partial_update_keeps_untouched_fields(storage):
    store = await make_store(storage)
    product = await make_product(storage, store.id, name="A", price=10, description="soft")

    updated = await storage.update_product(product.id, {"price": 12})
    assert updated.name == "A"
    assert updated.price == 12
    assert updated.description == "soft"
    assert updated.updated_at >= product.updated_at

    cleared = await storage.update_product(product.id, {"description": None})
    assert cleared.description is None
    assert cleared.name == "A"
    assert cleared.price == 12

    assert (await storage.get_product(product.id)).description is None


async def test_partial_update_accepts_schema_and_ignores_foreign_keys(storage):
    store = await make_store(storage)
    other = await make_store(storage, name="Other")
    product = await make_product(storage, store.id)

    updated = await storage.update_product(product.id, schemas.ProductUpdate(active=False))
    assert updated.active is False

    moved = await storage.update_product(product.id, {"store_id": other.id, "id": 99, "name": "B"})
    assert moved.id == product.id
    assert moved.store_id == store.id
    assert moved.name == "B"


async def test_clearing_a_required_field_is_rejected(storage):
    store = await make_store(storage)
    product = await make_product(storage, store.id)
    with pytest.raises(ValidationError):
        await storage.update_product(product.id, {"name": None})


async def test_update_store_theme_and_slug(storage):
    store = await make_store(storage, slug="first")
    theme = {"primary": "#112233", "background": "#ffffff", "text": "#000000", "accent": "#ff0000"}

    updated = await storage.update_store(store.id, {"theme": theme, "slug": None})
    assert updated.theme == schemas.StoreTheme(**theme)
    assert updated.slug is None
    assert updated.name == "Shop"
    assert await storage.get_store_by_slug("first") is None


async def test_missing_records_are_reported_not_raised(storage):
    assert await storage.get_product(404) is None
    assert await storage.update_product(404, {"price": 1}) is None
    assert await storage.update_store(404, {"name": "x"}) is None
    assert await storage.update_customer(404, {"phone": None}) is None
    assert await storage.update_cart_item(404, 3) is None
    assert await storage.update_order_whatsapp_status(404, True) is None
    assert await storage.delete_product(404) is False
    assert await storage.delete_cart(404) is False
    assert await storage.delete_cart_item(404) is False


async def test_deleting_a_cart_removes_its_items(storage):
    store = await make_store(storage)
    first = await make_product(storage, store.id, name="first")
    second = await make_product(storage, store.id, name="second")
    cart = await storage.create_cart(schemas.CartCreate(customer_id=1, store_id=store.id))
    other_cart = await storage.create_cart(schemas.CartCreate(customer_id=2, store_id=store.id))
    for product in (first, second):
        await storage.create_cart_item(schemas.CartItemCreate(cart_id=cart.id, product_id=product.id, quantity=1))
    kept = await storage.create_cart_item(schemas.CartItemCreate(cart_id=other_cart.id, product_id=first.id, quantity=2))

    assert len(await storage.get_cart_items(cart.id)) == 2
    assert await storage.delete_cart(cart.id) is True

    assert await storage.get_cart(cart.id) is None
    assert await storage.get_cart_items(cart.id) == []
    assert await storage.get_cart_item(kept.id) == kept


async def test_cart_item_quantity_update(storage):
    store = await make_store(storage)
    product = await make_product(storage, store.id)
    cart = await storage.create_cart(schemas.CartCreate(customer_id=1, store_id=store.id))
    item = await storage.create_cart_item(schemas.CartItemCreate(cart_id=cart.id, product_id=product.id, quantity=1))

    updated = await storage.update_cart_item(item.id, 4)
    assert updated.quantity == 4
    for quantity in (0, -2):
        with pytest.raises(ValidationError):
            await storage.update_cart_item(item.id, quantity)
    assert (await storage.get_cart_item(item.id)).quantity == 4
    assert await storage.delete_cart_item(item.id) is True
    assert await storage.get_cart_items(cart.id) == []


async def test_get_cart_by_customer_matches_both_keys(storage):
    store = await make_store(storage)
    other = await make_store(storage, name="Other")
    cart = await storage.create_cart(schemas.CartCreate(customer_id=7, store_id=store.id))

    assert await storage.get_cart_by_customer(7, store.id) == cart
    assert await storage.get_cart_by_customer(7, other.id) is None
    assert await storage.get_cart_by_customer(8, store.id) is None


async def test_product_filter_by_store_in_creation_order(storage):
    first = await make_store(storage, name="First")
    second = await make_store(storage, name="Second")
    a = await make_product(storage, first.id, name="a")
    await make_product(storage, second.id, name="x")
    b = await make_product(storage, first.id, name="b")
    c = await make_product(storage, first.id, name="c")

    assert [p.id for p in await storage.get_products(first.id)] == [a.id, b.id, c.id]
    assert [p.name for p in await storage.get_products(second.id)] == ["x"]
    assert len(await storage.get_products()) == 4


async def test_order_filters(storage):
    store = await make_store(storage)
    other = await make_store(storage, name="Other")
    mine = await storage.create_order(schemas.OrderCreate(store_id=store.id, customer_id=1, customer_name="A", total=1))
    await storage.create_order(schemas.OrderCreate(store_id=store.id, customer_name="Guest", total=2))
    await storage.create_order(schemas.OrderCreate(store_id=other.id, customer_id=1, customer_name="A", total=3))

    assert len(await storage.get_orders()) == 3
    assert len(await storage.get_orders(store_id=store.id)) == 2
    assert len(await storage.get_orders(customer_id=1)) == 2
    assert await storage.get_orders(store_id=store.id, customer_id=1) == [mine]

    sent = await storage.update_order_whatsapp_status(mine.id, True)
    assert sent.whatsapp_sent is True
    assert sent.total == mine.total


async def test_order_items_are_snapshots(storage):
    store = await make_store(storage)
    product = await make_product(storage, store.id, name="Serum", price=129.9)
    order = await storage.create_order(schemas.OrderCreate(store_id=store.id, customer_name="Ana", total=259.8))
    await storage.create_order_item(schemas.OrderItemCreate(
        order_id=order.id, product_name=product.name, price=product.price, quantity=2,
    ))

    await storage.update_product(product.id, {"name": "Serum v2", "price": 150})

    [item] = await storage.get_order_items(order.id)
    assert item.product_name == "Serum"
    assert item.price == 129.9
    assert item.quantity == 2


async def test_seeded_lookups(seeded):
    admin = await seeded.get_user_by_username("admin")
    assert admin is not None
    assert admin.role == Role.ADMIN
    assert await seeded.get_user_by_username("nonexistent") is None
    assert (await seeded.get_user_by_email("cliente@email.com")).username == "cliente"

    store = await seeded.get_store_by_slug("moments")
    assert store.whatsapp_number == "11987654321"
    assert len(await seeded.get_categories(store.id)) == 4
    assert len(await seeded.get_products(store.id)) == 6

    owner_user = await seeded.get_user_by_username("lojista")
    assert await seeded.get_store_by_owner(owner_user.id) == store
    assert await seeded.get_store_by_owner(admin.id) is None
    owner = await seeded.get_shop_owner_by_user_id(owner_user.id)
    assert owner.subscription_status == SubscriptionStatus.TRIAL

    customer_user = await seeded.get_user_by_username("cliente")
    customer = await seeded.get_customer_by_user_id(customer_user.id)
    assert customer.phone == "11998765432"
    assert [u.username for u in await seeded.get_users_by_role("customer")] == ["cliente"]


async def test_seeding_twice_is_a_no_op(seeded):
    assert await seed_demo_data(seeded) is False
    assert len(await seeded.get_stores()) == 1


async def test_billing_linkage_activates_subscription(seeded):
    owner_user = await seeded.get_user_by_username("lojista")
    owner = await seeded.update_user_stripe_info(owner_user.id, "cus_123", "sub_456")

    assert owner.subscription_status == SubscriptionStatus.ACTIVE
    assert owner.stripe_customer_id == "cus_123"
    assert owner.stripe_subscription_id == "sub_456"
    expected = datetime.utcnow() + timedelta(days=30)
    assert abs(owner.subscription_expires_at - expected) < timedelta(minutes=1)


async def test_stripe_customer_id_returns_user(seeded):
    owner_user = await seeded.get_user_by_username("lojista")
    user = await seeded.update_stripe_customer_id(owner_user.id, "cus_999")
    assert user.id == owner_user.id

    owner = await seeded.get_shop_owner_by_user_id(owner_user.id)
    assert owner.stripe_customer_id == "cus_999"
    assert owner.subscription_status == SubscriptionStatus.ACTIVE


async def test_billing_linkage_without_shop_owner_is_an_integration_fault(seeded):
    admin = await seeded.get_user_by_username("admin")
    with pytest.raises(IntegrationError):
        await seeded.update_user_stripe_info(admin.id, "cus_1", "sub_1")
    with pytest.raises(IntegrationError):
        await seeded.update_stripe_customer_id(admin.id, "cus_1")
    with pytest.raises(IntegrationError):
        await seeded.update_stripe_customer_id(12345, "cus_1")


async def test_unique_keys_raise_conflict(seeded):
    with pytest.raises(ConflictError):
        await seeded.create_user(schemas.UserCreate(username="admin", email="new@example.com", hashed_password="x"))
    with pytest.raises(ConflictError):
        await seeded.create_user(schemas.UserCreate(username="fresh", email="admin@moments.com", hashed_password="x"))
    with pytest.raises(ConflictError):
        await make_store(seeded, slug="moments")

    admin = await seeded.get_user_by_username("admin")
    with pytest.raises(ConflictError):
        await seeded.create_customer(schemas.CustomerCreate(user_id=(await seeded.get_user_by_username("cliente")).id))
    # renaming to its own username is not a clash
    assert (await seeded.update_user(admin.id, {"username": "admin"})).username == "admin"


async def test_transaction_rolls_back_every_write(storage):
    store = await make_store(storage)
    with pytest.raises(RuntimeError):
        async with storage.transaction():
            order = await storage.create_order(schemas.OrderCreate(store_id=store.id, customer_name="A", total=1))
            await storage.create_order_item(schemas.OrderItemCreate(
                order_id=order.id, product_name="x", price=1, quantity=1,
            ))
            await storage.update_store(store.id, {"name": "Renamed"})
            raise RuntimeError("boom")

    assert await storage.get_orders() == []
    assert await storage.get_order_items(order.id) == []
    assert (await storage.get_store(store.id)).name == "Shop"


async def test_transaction_commits_on_success(storage):
    store = await make_store(storage)
    async with storage.transaction():
        order = await storage.create_order(schemas.OrderCreate(store_id=store.id, customer_name="A", total=1))
        async with storage.transaction():
            await storage.create_order_item(schemas.OrderItemCreate(
                order_id=order.id, product_name="x", price=1, quantity=1,
            ))

    assert await storage.get_order(order.id) == order
    assert len(await storage.get_order_items(order.id)) == 1
