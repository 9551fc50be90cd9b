import logging
from typing import List, Optional, Sequence, Tuple

from . import schemas
from .auth import create_order_token
from .storage import IStorage
from .whatsapp import normalize_phone, order_link

logger = logging.getLogger(__name__)

Line = Tuple[schemas.ProductOut, int]


class InvalidOrder(ValueError):
    pass


async def resolve_lines(storage: IStorage, store: schemas.StoreOut,
                        requested: Sequence[schemas.OrderLineIn]) -> List[Line]:
    lines: List[Line] = []
    for line in requested:
        product = await storage.get_product(line.product_id)
        if product is None or product.store_id != store.id or not product.active:
            raise InvalidOrder(f"Product {line.product_id} is not available in this store")
        lines.append((product, line.quantity))
    return lines


async def place_order(storage: IStorage, store: schemas.StoreOut, details: schemas.CheckoutDetails,
                      lines: Sequence[Line], customer_id: Optional[int] = None,
                      cart_id: Optional[int] = None) -> schemas.PlacedOrder:
    """Store the order with price snapshots and build its WhatsApp link.

    Order, items and (when given) removal of the source cart happen in one
    transaction.
    """
    if not lines:
        raise InvalidOrder("Cart is empty")
    if not normalize_phone(store.whatsapp_number):
        raise InvalidOrder("This store has no WhatsApp number configured")

    total = round(sum(product.price * quantity for product, quantity in lines), 2)
    async with storage.transaction():
        order = await storage.create_order(schemas.OrderCreate(
            store_id=store.id,
            customer_id=customer_id,
            customer_name=details.customer_name,
            customer_phone=details.customer_phone,
            customer_address=details.customer_address,
            delivery_method=details.delivery_method,
            notes=details.notes,
            total=total,
        ))
        items = []
        for product, quantity in lines:
            items.append(await storage.create_order_item(schemas.OrderItemCreate(
                order_id=order.id, product_name=product.name, price=product.price, quantity=quantity,
            )))
        if cart_id is not None:
            await storage.delete_cart(cart_id)

    logger.info("order %s placed in store %s (total %.2f)", order.id, store.id, total)
    url = order_link(store, order, items, details.payment_method)
    return schemas.PlacedOrder(order=order, items=items, whatsapp_url=url, relay_token=create_order_token(order.id))


async def cart_lines(storage: IStorage, cart_id: int) -> List[Line]:
    """Cart items joined with their products; items whose product is gone or inactive are skipped."""
    lines: List[Line] = []
    for item in await storage.get_cart_items(cart_id):
        product = await storage.get_product(item.product_id)
        if product is None or not product.active:
            logger.info("skipping cart item %s: product %s unavailable", item.id, item.product_id)
            continue
        lines.append((product, item.quantity))
    return lines
