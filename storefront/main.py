import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm

# Local imports
from . import auth, config, schemas
from .cache import ProductCache
from .errors import ConflictError, IntegrationError
from .models import Role, SubscriptionStatus
from .orders import InvalidOrder, cart_lines, place_order, resolve_lines
from .seed import seed_demo_data
from .storage import DatabaseStorage, IStorage, MemStorage
from .worker import notify_order_placed

logger = logging.getLogger(__name__)

router = APIRouter()


def get_storage(request: Request) -> IStorage:
    return request.app.state.storage


def get_cache(request: Request) -> ProductCache:
    return request.app.state.cache


async def build_storage() -> IStorage:
    if config.DATABASE_URL:
        storage = DatabaseStorage.from_url(config.DATABASE_URL)
        await storage.create_schema()
    else:
        storage = MemStorage()
    if config.SEED_DEMO_DATA:
        await seed_demo_data(storage)
    return storage


def create_app(storage: Optional[IStorage] = None, cache: Optional[ProductCache] = None) -> FastAPI:
    app = FastAPI(title="Storefront API")
    app.state.storage = storage
    app.state.cache = cache if cache is not None else ProductCache.from_url(config.REDIS_URL)

    @app.on_event("startup")
    async def startup():
        if app.state.storage is None:
            app.state.storage = await build_storage()
            logger.info("storage ready: %s", type(app.state.storage).__name__)

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.storage is not None:
            await app.state.storage.close()

    @app.exception_handler(IntegrationError)
    async def integration_error_handler(request: Request, exc: IntegrationError):
        logger.error("integration fault on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal integration error"})

    @app.exception_handler(ConflictError)
    async def conflict_error_handler(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    app.include_router(router)
    return app


async def _public_store(storage: IStorage, slug: str) -> schemas.StoreOut:
    store = await storage.get_store_by_slug(slug)
    if store is None or not store.active:
        raise HTTPException(status_code=404, detail="Store not found")
    return store


async def _owned_store(storage: IStorage, owner: schemas.ShopOwnerOut) -> schemas.StoreOut:
    store = await storage.get_store(owner.store_id)
    if store is None:
        raise HTTPException(status_code=404, detail="Store not found")
    return store


async def _check_category(storage: IStorage, store_id: int, category_id: Optional[int]) -> None:
    if category_id is None:
        return
    category = await storage.get_category(category_id)
    if category is None or category.store_id != store_id:
        raise HTTPException(status_code=400, detail="Category does not belong to this store")


def _notify(placed: schemas.PlacedOrder, store: schemas.StoreOut) -> None:
    if not config.CELERY_BROKER_URL:
        return
    try:
        notify_order_placed.delay(store.name, placed.order.id, placed.order.total, placed.whatsapp_url)
    except Exception:
        logger.exception("could not queue notification for order %s", placed.order.id)


@router.get("/health")
async def health():
    return {"ok": True}

# --- AUTH ---
@router.post("/register", response_model=schemas.Token, status_code=201)
async def register(req: schemas.RegisterRequest, storage: IStorage = Depends(get_storage)):
    if req.role == Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admins cannot self-register")
    if await storage.get_user_by_username(req.username):
        raise HTTPException(status_code=400, detail="Username already taken")
    if await storage.get_user_by_email(req.email):
        raise HTTPException(status_code=400, detail="Email already registered")

    async with storage.transaction():
        user = await storage.create_user(schemas.UserCreate(
            username=req.username, email=req.email, name=req.name,
            hashed_password=auth.get_password_hash(req.password), role=req.role,
        ))
        if req.role == Role.CUSTOMER:
            await storage.create_customer(schemas.CustomerCreate(user_id=user.id, address=req.address, phone=req.phone))
        else:
            store = await storage.create_store(schemas.StoreCreate(
                name=req.store_name or f"{req.name or req.username}'s store",
                logo_url=req.logo_url or "/placeholder-logo.jpg",
                whatsapp_number=req.whatsapp_number or "",
            ))
            await storage.create_shop_owner(schemas.ShopOwnerCreate(
                user_id=user.id, store_id=store.id, subscription_status=SubscriptionStatus.TRIAL,
                subscription_expires_at=datetime.utcnow() + timedelta(days=config.TRIAL_DAYS),
            ))
    logger.info("registered %s %r", user.role.value, user.username)
    return auth.token_for(user)

@router.post("/login", response_model=schemas.Token)
async def login(credentials: OAuth2PasswordRequestForm = Depends(), storage: IStorage = Depends(get_storage)):
    user = await storage.get_user_by_username(credentials.username)
    if not user or not auth.verify_password(credentials.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return auth.token_for(user)

@router.get("/me", response_model=schemas.UserPublic)
async def me(current_user: schemas.UserOut = Depends(auth.get_current_user)):
    return current_user

# --- PUBLIC STOREFRONT ---
@router.get("/stores/{slug}", response_model=schemas.StoreOut)
async def storefront(slug: str, storage: IStorage = Depends(get_storage)):
    return await _public_store(storage, slug)

@router.get("/stores/{slug}/categories", response_model=List[schemas.CategoryOut])
async def storefront_categories(slug: str, storage: IStorage = Depends(get_storage)):
    store = await _public_store(storage, slug)
    return await storage.get_categories(store.id)

@router.get("/stores/{slug}/products", response_model=List[schemas.ProductOut])
async def storefront_products(
    slug: str,
    category_id: Optional[int] = None,
    storage: IStorage = Depends(get_storage),
    cache: ProductCache = Depends(get_cache),
):
    store = await _public_store(storage, slug)
    # only the unfiltered listing is cached
    if category_id is None:
        cached = cache.get(store.id)
        if cached is not None:
            return cached

    products = [p for p in await storage.get_products(store.id) if p.active]
    if category_id is not None:
        return [p for p in products if p.category_id == category_id]
    cache.set(store.id, products)
    return products

@router.post("/stores/{slug}/orders", response_model=schemas.PlacedOrder, status_code=201)
async def guest_order(slug: str, req: schemas.GuestOrderRequest, storage: IStorage = Depends(get_storage)):
    store = await _public_store(storage, slug)
    try:
        lines = await resolve_lines(storage, store, req.items)
        placed = await place_order(storage, store, req, lines)
    except InvalidOrder as e:
        raise HTTPException(status_code=400, detail=str(e))
    _notify(placed, store)
    return placed

@router.post("/orders/{order_id}/whatsapp-sent", response_model=schemas.OrderOut)
async def mark_whatsapp_sent(order_id: int, req: schemas.WhatsAppSent, storage: IStorage = Depends(get_storage)):
    # guests have no account, so the token returned with the placed order is the credential
    if not auth.verify_order_token(req.relay_token, order_id):
        raise HTTPException(status_code=403, detail="Invalid relay token for this order")
    order = await storage.update_order_whatsapp_status(order_id, True)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order

# --- CART ---
async def _customer(storage: IStorage, user: schemas.UserOut) -> schemas.CustomerOut:
    customer = await storage.get_customer_by_user_id(user.id)
    if customer is None:
        raise HTTPException(status_code=403, detail="Customer profile not found")
    return customer

async def _cart_detail(storage: IStorage, cart: schemas.CartOut) -> schemas.CartDetail:
    items = []
    total = 0.0
    for item in await storage.get_cart_items(cart.id):
        product = await storage.get_product(item.product_id)
        if product is None:
            continue
        items.append(schemas.CartLine(id=item.id, product_id=item.product_id, quantity=item.quantity, product=product))
        total += product.price * item.quantity
    return schemas.CartDetail(id=cart.id, store_id=cart.store_id, items=items, total=round(total, 2))

async def _find_cart_item(storage: IStorage, cart_id: int, product_id: int) -> Optional[schemas.CartItemOut]:
    for item in await storage.get_cart_items(cart_id):
        if item.product_id == product_id:
            return item
    return None

@router.get("/stores/{slug}/cart", response_model=schemas.CartDetail)
async def view_cart(
    slug: str,
    storage: IStorage = Depends(get_storage),
    current_user: schemas.UserOut = Depends(auth.require_roles(Role.CUSTOMER)),
):
    store = await _public_store(storage, slug)
    customer = await _customer(storage, current_user)
    cart = await storage.get_cart_by_customer(customer.id, store.id)
    if not cart:
        # Return empty temp cart structure if none exists
        return schemas.CartDetail(id=0, store_id=store.id, items=[], total=0)
    return await _cart_detail(storage, cart)

@router.post("/stores/{slug}/cart/items", response_model=schemas.CartDetail)
async def add_to_cart(
    slug: str,
    item: schemas.CartItemAdd,
    storage: IStorage = Depends(get_storage),
    current_user: schemas.UserOut = Depends(auth.require_roles(Role.CUSTOMER)),
):
    store = await _public_store(storage, slug)
    customer = await _customer(storage, current_user)
    product = await storage.get_product(item.product_id)
    if product is None or product.store_id != store.id or not product.active:
        raise HTTPException(status_code=404, detail="Product not found")

    # Get or Create Cart
    cart = await storage.get_cart_by_customer(customer.id, store.id)
    if not cart:
        cart = await storage.create_cart(schemas.CartCreate(customer_id=customer.id, store_id=store.id))

    existing_item = await _find_cart_item(storage, cart.id, item.product_id)
    if existing_item:
        await storage.update_cart_item(existing_item.id, existing_item.quantity + item.quantity)
    else:
        await storage.create_cart_item(schemas.CartItemCreate(cart_id=cart.id, product_id=item.product_id, quantity=item.quantity))
    return await _cart_detail(storage, cart)

@router.patch("/stores/{slug}/cart/items/{product_id}", response_model=schemas.CartDetail)
async def set_cart_quantity(
    slug: str,
    product_id: int,
    req: schemas.CartItemQuantity,
    storage: IStorage = Depends(get_storage),
    current_user: schemas.UserOut = Depends(auth.require_roles(Role.CUSTOMER)),
):
    store = await _public_store(storage, slug)
    customer = await _customer(storage, current_user)
    cart = await storage.get_cart_by_customer(customer.id, store.id)
    existing_item = await _find_cart_item(storage, cart.id, product_id) if cart else None
    if not existing_item:
        raise HTTPException(status_code=404, detail="Item not in cart")
    await storage.update_cart_item(existing_item.id, req.quantity)
    return await _cart_detail(storage, cart)

@router.delete("/stores/{slug}/cart/items/{product_id}")
async def remove_from_cart(
    slug: str,
    product_id: int,
    storage: IStorage = Depends(get_storage),
    current_user: schemas.UserOut = Depends(auth.require_roles(Role.CUSTOMER)),
):
    store = await _public_store(storage, slug)
    customer = await _customer(storage, current_user)
    cart = await storage.get_cart_by_customer(customer.id, store.id)
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    existing_item = await _find_cart_item(storage, cart.id, product_id)
    if not existing_item:
        raise HTTPException(status_code=404, detail="Item not in cart")
    await storage.delete_cart_item(existing_item.id)
    return {"message": "Item removed"}

@router.post("/stores/{slug}/checkout", response_model=schemas.PlacedOrder, status_code=201)
async def checkout(
    slug: str,
    details: schemas.CheckoutDetails,
    storage: IStorage = Depends(get_storage),
    current_user: schemas.UserOut = Depends(auth.require_roles(Role.CUSTOMER)),
):
    store = await _public_store(storage, slug)
    customer = await _customer(storage, current_user)
    cart = await storage.get_cart_by_customer(customer.id, store.id)
    if not cart:
        raise HTTPException(status_code=400, detail="Cart is empty")
    try:
        lines = await cart_lines(storage, cart.id)
        placed = await place_order(storage, store, details, lines, customer_id=customer.id, cart_id=cart.id)
    except InvalidOrder as e:
        raise HTTPException(status_code=400, detail=str(e))
    _notify(placed, store)
    return placed

@router.get("/orders", response_model=List[schemas.OrderOut])
async def my_orders(
    storage: IStorage = Depends(get_storage),
    current_user: schemas.UserOut = Depends(auth.require_roles(Role.CUSTOMER)),
):
    customer = await _customer(storage, current_user)
    return await storage.get_orders(customer_id=customer.id)

# --- SHOP OWNER ---
@router.get("/my/store", response_model=schemas.StoreOut)
async def my_store(
    storage: IStorage = Depends(get_storage),
    owner: schemas.ShopOwnerOut = Depends(auth.get_current_shop_owner),
):
    return await _owned_store(storage, owner)

@router.patch("/my/store", response_model=schemas.StoreOut)
async def update_my_store(
    changes: schemas.StoreUpdate,
    storage: IStorage = Depends(get_storage),
    owner: schemas.ShopOwnerOut = Depends(auth.require_active_subscription),
):
    store = await storage.update_store(owner.store_id, changes)
    if store is None:
        raise HTTPException(status_code=404, detail="Store not found")
    return store

@router.get("/my/subscription", response_model=schemas.ShopOwnerOut)
async def my_subscription(owner: schemas.ShopOwnerOut = Depends(auth.get_current_shop_owner)):
    return owner

@router.post("/billing/link", response_model=schemas.ShopOwnerOut)
async def link_billing(
    req: schemas.BillingLink,
    storage: IStorage = Depends(get_storage),
    current_user: schemas.UserOut = Depends(auth.require_roles(Role.SHOPOWNER)),
):
    # IntegrationError (no shop owner record) surfaces as a 500
    return await storage.update_user_stripe_info(current_user.id, req.customer_id, req.subscription_id)

@router.get("/my/categories", response_model=List[schemas.CategoryOut])
async def my_categories(
    storage: IStorage = Depends(get_storage),
    owner: schemas.ShopOwnerOut = Depends(auth.get_current_shop_owner),
):
    return await storage.get_categories(owner.store_id)

@router.post("/my/categories", response_model=schemas.CategoryOut, status_code=201)
async def create_category(
    req: schemas.CategoryIn,
    storage: IStorage = Depends(get_storage),
    owner: schemas.ShopOwnerOut = Depends(auth.require_active_subscription),
):
    return await storage.create_category(schemas.CategoryCreate(name=req.name, store_id=owner.store_id))

async def _owned_category(storage: IStorage, owner: schemas.ShopOwnerOut, category_id: int) -> schemas.CategoryOut:
    category = await storage.get_category(category_id)
    if category is None or category.store_id != owner.store_id:
        raise HTTPException(status_code=404, detail="Category not found")
    return category

@router.patch("/my/categories/{category_id}", response_model=schemas.CategoryOut)
async def update_category(
    category_id: int,
    changes: schemas.CategoryUpdate,
    storage: IStorage = Depends(get_storage),
    owner: schemas.ShopOwnerOut = Depends(auth.require_active_subscription),
):
    await _owned_category(storage, owner, category_id)
    return await storage.update_category(category_id, changes)

@router.delete("/my/categories/{category_id}", status_code=204)
async def delete_category(
    category_id: int,
    storage: IStorage = Depends(get_storage),
    owner: schemas.ShopOwnerOut = Depends(auth.require_active_subscription),
):
    await _owned_category(storage, owner, category_id)
    await storage.delete_category(category_id)

@router.get("/my/products", response_model=List[schemas.ProductOut])
async def my_products(
    storage: IStorage = Depends(get_storage),
    owner: schemas.ShopOwnerOut = Depends(auth.get_current_shop_owner),
):
    return await storage.get_products(owner.store_id)

@router.post("/my/products", response_model=schemas.ProductOut, status_code=201)
async def create_product(
    req: schemas.ProductIn,
    storage: IStorage = Depends(get_storage),
    cache: ProductCache = Depends(get_cache),
    owner: schemas.ShopOwnerOut = Depends(auth.require_active_subscription),
):
    await _check_category(storage, owner.store_id, req.category_id)
    product = await storage.create_product(schemas.ProductCreate(**req.model_dump(), store_id=owner.store_id))
    cache.invalidate(owner.store_id)
    return product

async def _owned_product(storage: IStorage, owner: schemas.ShopOwnerOut, product_id: int) -> schemas.ProductOut:
    product = await storage.get_product(product_id)
    if product is None or product.store_id != owner.store_id:
        raise HTTPException(status_code=404, detail="Product not found")
    return product

@router.patch("/my/products/{product_id}", response_model=schemas.ProductOut)
async def update_product(
    product_id: int,
    changes: schemas.ProductUpdate,
    storage: IStorage = Depends(get_storage),
    cache: ProductCache = Depends(get_cache),
    owner: schemas.ShopOwnerOut = Depends(auth.require_active_subscription),
):
    await _owned_product(storage, owner, product_id)
    await _check_category(storage, owner.store_id, changes.changes().get("category_id"))
    product = await storage.update_product(product_id, changes)
    cache.invalidate(owner.store_id)
    return product

@router.delete("/my/products/{product_id}", status_code=204)
async def delete_product(
    product_id: int,
    storage: IStorage = Depends(get_storage),
    cache: ProductCache = Depends(get_cache),
    owner: schemas.ShopOwnerOut = Depends(auth.require_active_subscription),
):
    await _owned_product(storage, owner, product_id)
    await storage.delete_product(product_id)
    cache.invalidate(owner.store_id)

@router.get("/my/orders", response_model=List[schemas.OrderOut])
async def store_orders(
    storage: IStorage = Depends(get_storage),
    owner: schemas.ShopOwnerOut = Depends(auth.get_current_shop_owner),
):
    return await storage.get_orders(store_id=owner.store_id)

@router.get("/my/orders/{order_id}", response_model=schemas.OrderDetail)
async def store_order(
    order_id: int,
    storage: IStorage = Depends(get_storage),
    owner: schemas.ShopOwnerOut = Depends(auth.get_current_shop_owner),
):
    order = await storage.get_order(order_id)
    if order is None or order.store_id != owner.store_id:
        raise HTTPException(status_code=404, detail="Order not found")
    return schemas.OrderDetail(order=order, items=await storage.get_order_items(order.id))

# --- ADMIN ---
@router.get("/admin/users", response_model=List[schemas.UserPublic])
async def admin_users(
    role: Role = Role.SHOPOWNER,
    storage: IStorage = Depends(get_storage),
    _: schemas.UserOut = Depends(auth.require_roles(Role.ADMIN)),
):
    return await storage.get_users_by_role(role)

@router.get("/admin/stores", response_model=List[schemas.StoreOut])
async def admin_stores(
    storage: IStorage = Depends(get_storage),
    _: schemas.UserOut = Depends(auth.require_roles(Role.ADMIN)),
):
    return await storage.get_stores()

@router.delete("/admin/stores/{store_id}", status_code=204)
async def admin_delete_store(
    store_id: int,
    storage: IStorage = Depends(get_storage),
    _: schemas.UserOut = Depends(auth.require_roles(Role.ADMIN)),
):
    if not await storage.delete_store(store_id):
        raise HTTPException(status_code=404, detail="Store not found")

@router.patch("/admin/shop-owners/{owner_id}", response_model=schemas.ShopOwnerOut)
async def admin_update_subscription(
    owner_id: int,
    changes: schemas.ShopOwnerUpdate,
    storage: IStorage = Depends(get_storage),
    _: schemas.UserOut = Depends(auth.require_roles(Role.ADMIN)),
):
    owner = await storage.update_shop_owner_subscription(owner_id, changes)
    if owner is None:
        raise HTTPException(status_code=404, detail="Shop owner not found")
    return owner


logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("storefront.main:app", host="0.0.0.0", port=8000)
