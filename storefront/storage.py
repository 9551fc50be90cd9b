"""Entity store.

`IStorage` is the operation contract the request layer talks to. Two
implementations share it:

* `MemStorage` keeps every collection in process memory. Nothing survives a
  restart; it is what tests and the demo run on.
* `DatabaseStorage` maps the same calls onto the SQLAlchemy models.

Absence is always reported as ``None`` (or ``False`` for deletes). Partial
updates take either a mapping or a `schemas.PartialUpdate`; only keys that
are present are merged, and an explicit ``None`` clears the field.
"""
import abc
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Type, Union

from pydantic import BaseModel
from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import config, models, schemas
from .database import create_all, make_engine, make_session_factory
from .errors import ConflictError, IntegrationError

logger = logging.getLogger(__name__)

Changes = Union[Mapping[str, Any], schemas.PartialUpdate]


def _changes(update_schema: Type[schemas.PartialUpdate], data: Changes) -> Dict[str, Any]:
    # validating through the update schema drops unknown keys (id, store_id, ...)
    if not isinstance(data, update_schema):
        data = update_schema.model_validate(dict(data))
    return data.changes()


def _quantity(quantity: int) -> int:
    # raises ValidationError for zero or negative quantities
    return schemas.CartItemQuantity(quantity=quantity).quantity


def _subscription_window() -> datetime:
    return datetime.utcnow() + timedelta(days=config.SUBSCRIPTION_DAYS)


class IStorage(abc.ABC):

    # Users
    @abc.abstractmethod
    async def get_user(self, id: int) -> Optional[schemas.UserOut]: ...
    @abc.abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[schemas.UserOut]: ...
    @abc.abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[schemas.UserOut]: ...
    @abc.abstractmethod
    async def get_users_by_role(self, role: str) -> List[schemas.UserOut]: ...
    @abc.abstractmethod
    async def create_user(self, data: schemas.UserCreate) -> schemas.UserOut: ...
    @abc.abstractmethod
    async def update_user(self, id: int, changes: Changes) -> Optional[schemas.UserOut]: ...

    # Stores
    @abc.abstractmethod
    async def get_store(self, id: int) -> Optional[schemas.StoreOut]: ...
    @abc.abstractmethod
    async def get_stores(self) -> List[schemas.StoreOut]: ...
    @abc.abstractmethod
    async def get_store_by_owner(self, user_id: int) -> Optional[schemas.StoreOut]: ...
    @abc.abstractmethod
    async def get_store_by_slug(self, slug: str) -> Optional[schemas.StoreOut]: ...
    @abc.abstractmethod
    async def create_store(self, data: schemas.StoreCreate) -> schemas.StoreOut: ...
    @abc.abstractmethod
    async def update_store(self, id: int, changes: Changes) -> Optional[schemas.StoreOut]: ...
    @abc.abstractmethod
    async def delete_store(self, id: int) -> bool: ...

    # Categories
    @abc.abstractmethod
    async def get_categories(self, store_id: int) -> List[schemas.CategoryOut]: ...
    @abc.abstractmethod
    async def get_category(self, id: int) -> Optional[schemas.CategoryOut]: ...
    @abc.abstractmethod
    async def create_category(self, data: schemas.CategoryCreate) -> schemas.CategoryOut: ...
    @abc.abstractmethod
    async def update_category(self, id: int, changes: Changes) -> Optional[schemas.CategoryOut]: ...
    @abc.abstractmethod
    async def delete_category(self, id: int) -> bool: ...

    # Products
    @abc.abstractmethod
    async def get_products(self, store_id: Optional[int] = None) -> List[schemas.ProductOut]: ...
    @abc.abstractmethod
    async def get_product(self, id: int) -> Optional[schemas.ProductOut]: ...
    @abc.abstractmethod
    async def create_product(self, data: schemas.ProductCreate) -> schemas.ProductOut: ...
    @abc.abstractmethod
    async def update_product(self, id: int, changes: Changes) -> Optional[schemas.ProductOut]: ...
    @abc.abstractmethod
    async def delete_product(self, id: int) -> bool: ...

    # Shop owners
    @abc.abstractmethod
    async def get_shop_owner(self, id: int) -> Optional[schemas.ShopOwnerOut]: ...
    @abc.abstractmethod
    async def get_shop_owner_by_user_id(self, user_id: int) -> Optional[schemas.ShopOwnerOut]: ...
    @abc.abstractmethod
    async def create_shop_owner(self, data: schemas.ShopOwnerCreate) -> schemas.ShopOwnerOut: ...
    @abc.abstractmethod
    async def update_shop_owner_subscription(self, id: int, changes: Changes) -> Optional[schemas.ShopOwnerOut]: ...

    # Customers
    @abc.abstractmethod
    async def get_customer(self, id: int) -> Optional[schemas.CustomerOut]: ...
    @abc.abstractmethod
    async def get_customer_by_user_id(self, user_id: int) -> Optional[schemas.CustomerOut]: ...
    @abc.abstractmethod
    async def create_customer(self, data: schemas.CustomerCreate) -> schemas.CustomerOut: ...
    @abc.abstractmethod
    async def update_customer(self, id: int, changes: Changes) -> Optional[schemas.CustomerOut]: ...

    # Carts
    @abc.abstractmethod
    async def get_cart(self, id: int) -> Optional[schemas.CartOut]: ...
    @abc.abstractmethod
    async def get_cart_by_customer(self, customer_id: int, store_id: int) -> Optional[schemas.CartOut]: ...
    @abc.abstractmethod
    async def create_cart(self, data: schemas.CartCreate) -> schemas.CartOut: ...
    @abc.abstractmethod
    async def delete_cart(self, id: int) -> bool: ...

    # Cart items
    @abc.abstractmethod
    async def get_cart_items(self, cart_id: int) -> List[schemas.CartItemOut]: ...
    @abc.abstractmethod
    async def get_cart_item(self, id: int) -> Optional[schemas.CartItemOut]: ...
    @abc.abstractmethod
    async def create_cart_item(self, data: schemas.CartItemCreate) -> schemas.CartItemOut: ...
    @abc.abstractmethod
    async def update_cart_item(self, id: int, quantity: int) -> Optional[schemas.CartItemOut]: ...
    @abc.abstractmethod
    async def delete_cart_item(self, id: int) -> bool: ...

    # Orders
    @abc.abstractmethod
    async def get_orders(self, store_id: Optional[int] = None, customer_id: Optional[int] = None) -> List[schemas.OrderOut]: ...
    @abc.abstractmethod
    async def get_order(self, id: int) -> Optional[schemas.OrderOut]: ...
    @abc.abstractmethod
    async def create_order(self, data: schemas.OrderCreate) -> schemas.OrderOut: ...
    @abc.abstractmethod
    async def update_order_whatsapp_status(self, id: int, sent: bool) -> Optional[schemas.OrderOut]: ...

    # Order items
    @abc.abstractmethod
    async def get_order_items(self, order_id: int) -> List[schemas.OrderItemOut]: ...
    @abc.abstractmethod
    async def create_order_item(self, data: schemas.OrderItemCreate) -> schemas.OrderItemOut: ...

    # Billing provider linkage
    @abc.abstractmethod
    async def update_stripe_customer_id(self, user_id: int, stripe_customer_id: str) -> schemas.UserOut: ...
    @abc.abstractmethod
    async def update_user_stripe_info(self, user_id: int, customer_id: str, subscription_id: str) -> schemas.ShopOwnerOut: ...

    @abc.abstractmethod
    def transaction(self):
        """Async context manager grouping several writes; undone as a whole on error."""

    async def close(self) -> None:
        pass


# --- IN-MEMORY ---

class _Collection:
    """One entity map plus its id counter. Rows are replaced, never mutated in place."""

    def __init__(self, schema: Type[BaseModel]):
        self.schema = schema
        self.rows: Dict[int, BaseModel] = {}
        self.next_id = 1

    def insert(self, fields: Dict[str, Any]) -> BaseModel:
        row = self.schema.model_validate({**fields, "id": self.next_id})
        self.next_id += 1
        self.rows[row.id] = row
        return row.model_copy(deep=True)

    def get(self, id: int) -> Optional[BaseModel]:
        row = self.rows.get(id)
        return row.model_copy(deep=True) if row is not None else None

    def find(self, predicate: Callable[[Any], bool]) -> Optional[BaseModel]:
        for row in self.rows.values():
            if predicate(row):
                return row.model_copy(deep=True)
        return None

    def filter(self, predicate: Callable[[Any], bool] = lambda row: True) -> List[BaseModel]:
        return [row.model_copy(deep=True) for row in self.rows.values() if predicate(row)]

    def merge(self, id: int, changes: Dict[str, Any]) -> Optional[BaseModel]:
        row = self.rows.get(id)
        if row is None:
            return None
        merged = self.schema.model_validate({**row.model_dump(), **changes})
        self.rows[id] = merged
        return merged.model_copy(deep=True)

    def delete(self, id: int) -> bool:
        return self.rows.pop(id, None) is not None


class MemStorage(IStorage):

    def __init__(self):
        self.users = _Collection(schemas.UserOut)
        self.stores = _Collection(schemas.StoreOut)
        self.categories = _Collection(schemas.CategoryOut)
        self.products = _Collection(schemas.ProductOut)
        self.shop_owners = _Collection(schemas.ShopOwnerOut)
        self.customers = _Collection(schemas.CustomerOut)
        self.carts = _Collection(schemas.CartOut)
        self.cart_items = _Collection(schemas.CartItemOut)
        self.orders = _Collection(schemas.OrderOut)
        self.order_items = _Collection(schemas.OrderItemOut)
        self._tx_depth = 0

    def _collections(self) -> List[_Collection]:
        return [self.users, self.stores, self.categories, self.products, self.shop_owners,
                self.customers, self.carts, self.cart_items, self.orders, self.order_items]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return
        # counters are left alone on rollback so ids stay unique
        snapshot = [dict(c.rows) for c in self._collections()]
        self._tx_depth = 1
        try:
            yield
        except BaseException:
            for collection, rows in zip(self._collections(), snapshot):
                collection.rows = rows
            logger.info("transaction rolled back")
            raise
        finally:
            self._tx_depth = 0

    def _ensure_unique(self, collection: _Collection, field: str, value: Any, exclude_id: Optional[int] = None):
        if value is None:
            return
        clash = collection.find(lambda row: getattr(row, field) == value and row.id != exclude_id)
        if clash is not None:
            raise ConflictError(f"{field} {value!r} is already taken")

    # Users
    async def get_user(self, id):
        return self.users.get(id)

    async def get_user_by_username(self, username):
        return self.users.find(lambda user: user.username == username)

    async def get_user_by_email(self, email):
        return self.users.find(lambda user: user.email == email)

    async def get_users_by_role(self, role):
        return self.users.filter(lambda user: user.role == role)

    async def create_user(self, data):
        self._ensure_unique(self.users, "username", data.username)
        self._ensure_unique(self.users, "email", data.email)
        return self.users.insert({**data.model_dump(), "created_at": datetime.utcnow()})

    async def update_user(self, id, changes):
        changes = _changes(schemas.UserUpdate, changes)
        if id not in self.users.rows:
            return None
        self._ensure_unique(self.users, "username", changes.get("username"), exclude_id=id)
        self._ensure_unique(self.users, "email", changes.get("email"), exclude_id=id)
        return self.users.merge(id, changes)

    # Stores
    async def get_store(self, id):
        return self.stores.get(id)

    async def get_stores(self):
        return self.stores.filter()

    async def get_store_by_owner(self, user_id):
        owner = self.shop_owners.find(lambda owner: owner.user_id == user_id)
        if owner is None:
            return None
        return self.stores.get(owner.store_id)

    async def get_store_by_slug(self, slug):
        return self.stores.find(lambda store: store.slug == slug)

    async def create_store(self, data):
        self._ensure_unique(self.stores, "slug", data.slug)
        now = datetime.utcnow()
        return self.stores.insert({**data.model_dump(), "active": True, "created_at": now, "updated_at": now})

    async def update_store(self, id, changes):
        changes = _changes(schemas.StoreUpdate, changes)
        if id not in self.stores.rows:
            return None
        self._ensure_unique(self.stores, "slug", changes.get("slug"), exclude_id=id)
        logger.debug("Updating store %s with %s", id, changes)
        return self.stores.merge(id, {**changes, "updated_at": datetime.utcnow()})

    async def delete_store(self, id):
        return self.stores.delete(id)

    # Categories
    async def get_categories(self, store_id):
        return self.categories.filter(lambda category: category.store_id == store_id)

    async def get_category(self, id):
        return self.categories.get(id)

    async def create_category(self, data):
        return self.categories.insert({**data.model_dump(), "created_at": datetime.utcnow()})

    async def update_category(self, id, changes):
        return self.categories.merge(id, _changes(schemas.CategoryUpdate, changes))

    async def delete_category(self, id):
        return self.categories.delete(id)

    # Products
    async def get_products(self, store_id=None):
        if store_id is None:
            return self.products.filter()
        return self.products.filter(lambda product: product.store_id == store_id)

    async def get_product(self, id):
        return self.products.get(id)

    async def create_product(self, data):
        now = datetime.utcnow()
        return self.products.insert({**data.model_dump(), "created_at": now, "updated_at": now})

    async def update_product(self, id, changes):
        changes = _changes(schemas.ProductUpdate, changes)
        logger.debug("Updating product %s with %s", id, changes)
        return self.products.merge(id, {**changes, "updated_at": datetime.utcnow()})

    async def delete_product(self, id):
        return self.products.delete(id)

    # Shop owners
    async def get_shop_owner(self, id):
        return self.shop_owners.get(id)

    async def get_shop_owner_by_user_id(self, user_id):
        return self.shop_owners.find(lambda owner: owner.user_id == user_id)

    async def create_shop_owner(self, data):
        self._ensure_unique(self.shop_owners, "user_id", data.user_id)
        return self.shop_owners.insert(data.model_dump())

    async def update_shop_owner_subscription(self, id, changes):
        return self.shop_owners.merge(id, _changes(schemas.ShopOwnerUpdate, changes))

    # Customers
    async def get_customer(self, id):
        return self.customers.get(id)

    async def get_customer_by_user_id(self, user_id):
        return self.customers.find(lambda customer: customer.user_id == user_id)

    async def create_customer(self, data):
        self._ensure_unique(self.customers, "user_id", data.user_id)
        return self.customers.insert(data.model_dump())

    async def update_customer(self, id, changes):
        return self.customers.merge(id, _changes(schemas.CustomerUpdate, changes))

    # Carts
    async def get_cart(self, id):
        return self.carts.get(id)

    async def get_cart_by_customer(self, customer_id, store_id):
        return self.carts.find(lambda cart: cart.customer_id == customer_id and cart.store_id == store_id)

    async def create_cart(self, data):
        now = datetime.utcnow()
        return self.carts.insert({**data.model_dump(), "created_at": now, "updated_at": now})

    async def delete_cart(self, id):
        for item in self.cart_items.filter(lambda item: item.cart_id == id):
            self.cart_items.delete(item.id)
        return self.carts.delete(id)

    def _touch_cart(self, cart_id: int) -> None:
        self.carts.merge(cart_id, {"updated_at": datetime.utcnow()})

    # Cart items
    async def get_cart_items(self, cart_id):
        return self.cart_items.filter(lambda item: item.cart_id == cart_id)

    async def get_cart_item(self, id):
        return self.cart_items.get(id)

    async def create_cart_item(self, data):
        item = self.cart_items.insert(data.model_dump())
        self._touch_cart(item.cart_id)
        return item

    async def update_cart_item(self, id, quantity):
        quantity = _quantity(quantity)
        item = self.cart_items.merge(id, {"quantity": quantity})
        if item is not None:
            self._touch_cart(item.cart_id)
        return item

    async def delete_cart_item(self, id):
        item = self.cart_items.get(id)
        if item is None:
            return False
        self._touch_cart(item.cart_id)
        return self.cart_items.delete(id)

    # Orders
    async def get_orders(self, store_id=None, customer_id=None):
        return self.orders.filter(
            lambda order: (store_id is None or order.store_id == store_id)
            and (customer_id is None or order.customer_id == customer_id)
        )

    async def get_order(self, id):
        return self.orders.get(id)

    async def create_order(self, data):
        return self.orders.insert({**data.model_dump(), "whatsapp_sent": False, "created_at": datetime.utcnow()})

    async def update_order_whatsapp_status(self, id, sent):
        return self.orders.merge(id, {"whatsapp_sent": sent})

    # Order items
    async def get_order_items(self, order_id):
        return self.order_items.filter(lambda item: item.order_id == order_id)

    async def create_order_item(self, data):
        return self.order_items.insert(data.model_dump())

    # Billing provider linkage
    async def update_stripe_customer_id(self, user_id, stripe_customer_id):
        user = self.users.get(user_id)
        if user is None:
            raise IntegrationError(f"user {user_id} not found")
        owner = await self.get_shop_owner_by_user_id(user_id)
        if owner is None:
            raise IntegrationError(f"user {user_id} has no shop owner record")
        self.shop_owners.merge(owner.id, {
            "stripe_customer_id": stripe_customer_id,
            "subscription_status": models.SubscriptionStatus.ACTIVE,
            "subscription_expires_at": _subscription_window(),
        })
        return user

    async def update_user_stripe_info(self, user_id, customer_id, subscription_id):
        owner = await self.get_shop_owner_by_user_id(user_id)
        if owner is None:
            raise IntegrationError(f"user {user_id} has no shop owner record")
        return self.shop_owners.merge(owner.id, {
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": subscription_id,
            "subscription_status": models.SubscriptionStatus.ACTIVE,
            "subscription_expires_at": _subscription_window(),
        })


# --- SQLALCHEMY ---

class DatabaseStorage(IStorage):
    """Same contract as `MemStorage`, backed by the tables in `models`."""

    def __init__(self, engine, session_factory):
        self.engine = engine
        self._session_factory = session_factory
        self._tx: ContextVar[Optional[AsyncSession]] = ContextVar(f"storefront_tx_{id(self)}", default=None)
        # next id per table, kept outside any transaction so a rollback does not hand an id out twice
        self._next_ids: Dict[str, int] = {}

    @classmethod
    def from_url(cls, database_url: str) -> "DatabaseStorage":
        engine = make_engine(database_url)
        return cls(engine, make_session_factory(engine))

    async def create_schema(self) -> None:
        await create_all(self.engine)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._tx.get() is not None:
            yield
            return
        async with self._session_factory() as session:
            token = self._tx.set(session)
            try:
                yield
                await session.commit()
            except BaseException:
                await session.rollback()
                logger.info("transaction rolled back")
                raise
            finally:
                self._tx.reset(token)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        session = self._tx.get()
        if session is not None:
            yield session
            return
        async with self._session_factory() as session:
            yield session
            await session.commit()

    @staticmethod
    async def _flush(session: AsyncSession) -> None:
        try:
            await session.flush()
        except IntegrityError as e:
            await session.rollback()
            raise ConflictError(str(e.orig)) from e

    async def _reserve_id(self, session: AsyncSession, model) -> int:
        table = model.__tablename__
        if table not in self._next_ids:
            floor = await self._id_floor(session, model)
            # another caller may have started the counter while we were reading
            self._next_ids[table] = max(self._next_ids.get(table, 1), floor)
        id = self._next_ids[table]
        self._next_ids[table] = id + 1
        return id

    async def _id_floor(self, session: AsyncSession, model) -> int:
        """First id above anything the table has ever stored."""
        highest = (await session.execute(select(func.max(model.id)))).scalar() or 0
        if self.engine.dialect.name == "sqlite":
            result = await session.execute(
                text("SELECT seq FROM sqlite_sequence WHERE name = :name"), {"name": model.__tablename__}
            )
            highest = max(highest, result.scalar() or 0)
        return highest + 1

    async def _get(self, model, schema, id):
        async with self._session() as session:
            obj = await session.get(model, id)
            return schema.model_validate(obj) if obj is not None else None

    async def _first(self, schema, query):
        async with self._session() as session:
            result = await session.execute(query.limit(1))
            obj = result.scalars().first()
            return schema.model_validate(obj) if obj is not None else None

    async def _all(self, schema, query):
        async with self._session() as session:
            result = await session.execute(query)
            return [schema.model_validate(obj) for obj in result.scalars().all()]

    async def _add(self, model, schema, fields):
        async with self._session() as session:
            obj = model(**fields, id=await self._reserve_id(session, model))
            session.add(obj)
            await self._flush(session)
            return schema.model_validate(obj)

    async def _merge(self, model, schema, id, changes):
        async with self._session() as session:
            obj = await session.get(model, id)
            if obj is None:
                return None
            for key, value in changes.items():
                setattr(obj, key, value)
            await self._flush(session)
            return schema.model_validate(obj)

    async def _delete(self, model, id):
        # plain DELETE: dependent rows are left alone, as in MemStorage
        async with self._session() as session:
            result = await session.execute(delete(model).where(model.id == id))
            return result.rowcount > 0

    # Users
    async def get_user(self, id):
        return await self._get(models.User, schemas.UserOut, id)

    async def get_user_by_username(self, username):
        return await self._first(schemas.UserOut, select(models.User).where(models.User.username == username))

    async def get_user_by_email(self, email):
        return await self._first(schemas.UserOut, select(models.User).where(models.User.email == email))

    async def get_users_by_role(self, role):
        query = select(models.User).where(models.User.role == role).order_by(models.User.id)
        return await self._all(schemas.UserOut, query)

    async def create_user(self, data):
        return await self._add(models.User, schemas.UserOut, {**data.model_dump(), "created_at": datetime.utcnow()})

    async def update_user(self, id, changes):
        return await self._merge(models.User, schemas.UserOut, id, _changes(schemas.UserUpdate, changes))

    # Stores
    async def get_store(self, id):
        return await self._get(models.Store, schemas.StoreOut, id)

    async def get_stores(self):
        return await self._all(schemas.StoreOut, select(models.Store).order_by(models.Store.id))

    async def get_store_by_owner(self, user_id):
        query = (
            select(models.Store)
            .join(models.ShopOwner, models.ShopOwner.store_id == models.Store.id)
            .where(models.ShopOwner.user_id == user_id)
        )
        return await self._first(schemas.StoreOut, query)

    async def get_store_by_slug(self, slug):
        return await self._first(schemas.StoreOut, select(models.Store).where(models.Store.slug == slug))

    async def create_store(self, data):
        now = datetime.utcnow()
        fields = {**data.model_dump(), "active": True, "created_at": now, "updated_at": now}
        return await self._add(models.Store, schemas.StoreOut, fields)

    async def update_store(self, id, changes):
        changes = _changes(schemas.StoreUpdate, changes)
        logger.debug("Updating store %s with %s", id, changes)
        return await self._merge(models.Store, schemas.StoreOut, id, {**changes, "updated_at": datetime.utcnow()})

    async def delete_store(self, id):
        return await self._delete(models.Store, id)

    # Categories
    async def get_categories(self, store_id):
        query = select(models.Category).where(models.Category.store_id == store_id).order_by(models.Category.id)
        return await self._all(schemas.CategoryOut, query)

    async def get_category(self, id):
        return await self._get(models.Category, schemas.CategoryOut, id)

    async def create_category(self, data):
        return await self._add(models.Category, schemas.CategoryOut, {**data.model_dump(), "created_at": datetime.utcnow()})

    async def update_category(self, id, changes):
        return await self._merge(models.Category, schemas.CategoryOut, id, _changes(schemas.CategoryUpdate, changes))

    async def delete_category(self, id):
        return await self._delete(models.Category, id)

    # Products
    async def get_products(self, store_id=None):
        query = select(models.Product).order_by(models.Product.id)
        if store_id is not None:
            query = query.where(models.Product.store_id == store_id)
        return await self._all(schemas.ProductOut, query)

    async def get_product(self, id):
        return await self._get(models.Product, schemas.ProductOut, id)

    async def create_product(self, data):
        now = datetime.utcnow()
        return await self._add(models.Product, schemas.ProductOut, {**data.model_dump(), "created_at": now, "updated_at": now})

    async def update_product(self, id, changes):
        changes = _changes(schemas.ProductUpdate, changes)
        logger.debug("Updating product %s with %s", id, changes)
        return await self._merge(models.Product, schemas.ProductOut, id, {**changes, "updated_at": datetime.utcnow()})

    async def delete_product(self, id):
        return await self._delete(models.Product, id)

    # Shop owners
    async def get_shop_owner(self, id):
        return await self._get(models.ShopOwner, schemas.ShopOwnerOut, id)

    async def get_shop_owner_by_user_id(self, user_id):
        query = select(models.ShopOwner).where(models.ShopOwner.user_id == user_id)
        return await self._first(schemas.ShopOwnerOut, query)

    async def create_shop_owner(self, data):
        fields = {**data.model_dump(), "stripe_customer_id": None, "stripe_price_id": None, "stripe_subscription_id": None}
        return await self._add(models.ShopOwner, schemas.ShopOwnerOut, fields)

    async def update_shop_owner_subscription(self, id, changes):
        return await self._merge(models.ShopOwner, schemas.ShopOwnerOut, id, _changes(schemas.ShopOwnerUpdate, changes))

    # Customers
    async def get_customer(self, id):
        return await self._get(models.Customer, schemas.CustomerOut, id)

    async def get_customer_by_user_id(self, user_id):
        query = select(models.Customer).where(models.Customer.user_id == user_id)
        return await self._first(schemas.CustomerOut, query)

    async def create_customer(self, data):
        return await self._add(models.Customer, schemas.CustomerOut, data.model_dump())

    async def update_customer(self, id, changes):
        return await self._merge(models.Customer, schemas.CustomerOut, id, _changes(schemas.CustomerUpdate, changes))

    # Carts
    async def get_cart(self, id):
        return await self._get(models.Cart, schemas.CartOut, id)

    async def get_cart_by_customer(self, customer_id, store_id):
        query = (
            select(models.Cart)
            .where(models.Cart.customer_id == customer_id, models.Cart.store_id == store_id)
            .order_by(models.Cart.id)
        )
        return await self._first(schemas.CartOut, query)

    async def create_cart(self, data):
        now = datetime.utcnow()
        return await self._add(models.Cart, schemas.CartOut, {**data.model_dump(), "created_at": now, "updated_at": now})

    async def delete_cart(self, id):
        async with self._session() as session:
            await session.execute(delete(models.CartItem).where(models.CartItem.cart_id == id))
            result = await session.execute(delete(models.Cart).where(models.Cart.id == id))
            return result.rowcount > 0

    async def _touch_cart(self, session: AsyncSession, cart_id: int) -> None:
        cart = await session.get(models.Cart, cart_id)
        if cart is not None:
            cart.updated_at = datetime.utcnow()

    # Cart items
    async def get_cart_items(self, cart_id):
        query = select(models.CartItem).where(models.CartItem.cart_id == cart_id).order_by(models.CartItem.id)
        return await self._all(schemas.CartItemOut, query)

    async def get_cart_item(self, id):
        return await self._get(models.CartItem, schemas.CartItemOut, id)

    async def create_cart_item(self, data):
        async with self._session() as session:
            item = models.CartItem(**data.model_dump(), id=await self._reserve_id(session, models.CartItem))
            session.add(item)
            await self._touch_cart(session, data.cart_id)
            await self._flush(session)
            return schemas.CartItemOut.model_validate(item)

    async def update_cart_item(self, id, quantity):
        quantity = _quantity(quantity)
        async with self._session() as session:
            item = await session.get(models.CartItem, id)
            if item is None:
                return None
            item.quantity = quantity
            await self._touch_cart(session, item.cart_id)
            await self._flush(session)
            return schemas.CartItemOut.model_validate(item)

    async def delete_cart_item(self, id):
        async with self._session() as session:
            item = await session.get(models.CartItem, id)
            if item is None:
                return False
            await self._touch_cart(session, item.cart_id)
            await session.execute(delete(models.CartItem).where(models.CartItem.id == id))
            return True

    # Orders
    async def get_orders(self, store_id=None, customer_id=None):
        query = select(models.Order).order_by(models.Order.id)
        if store_id is not None:
            query = query.where(models.Order.store_id == store_id)
        if customer_id is not None:
            query = query.where(models.Order.customer_id == customer_id)
        return await self._all(schemas.OrderOut, query)

    async def get_order(self, id):
        return await self._get(models.Order, schemas.OrderOut, id)

    async def create_order(self, data):
        fields = {**data.model_dump(), "whatsapp_sent": False, "created_at": datetime.utcnow()}
        return await self._add(models.Order, schemas.OrderOut, fields)

    async def update_order_whatsapp_status(self, id, sent):
        return await self._merge(models.Order, schemas.OrderOut, id, {"whatsapp_sent": sent})

    # Order items
    async def get_order_items(self, order_id):
        query = select(models.OrderItem).where(models.OrderItem.order_id == order_id).order_by(models.OrderItem.id)
        return await self._all(schemas.OrderItemOut, query)

    async def create_order_item(self, data):
        return await self._add(models.OrderItem, schemas.OrderItemOut, data.model_dump())

    # Billing provider linkage
    async def update_stripe_customer_id(self, user_id, stripe_customer_id):
        async with self._session() as session:
            user = await session.get(models.User, user_id)
            if user is None:
                raise IntegrationError(f"user {user_id} not found")
            owner = await self._owner_for_update(session, user_id)
            owner.stripe_customer_id = stripe_customer_id
            owner.subscription_status = models.SubscriptionStatus.ACTIVE
            owner.subscription_expires_at = _subscription_window()
            await self._flush(session)
            return schemas.UserOut.model_validate(user)

    async def update_user_stripe_info(self, user_id, customer_id, subscription_id):
        async with self._session() as session:
            owner = await self._owner_for_update(session, user_id)
            owner.stripe_customer_id = customer_id
            owner.stripe_subscription_id = subscription_id
            owner.subscription_status = models.SubscriptionStatus.ACTIVE
            owner.subscription_expires_at = _subscription_window()
            await self._flush(session)
            return schemas.ShopOwnerOut.model_validate(owner)

    @staticmethod
    async def _owner_for_update(session: AsyncSession, user_id: int) -> models.ShopOwner:
        result = await session.execute(select(models.ShopOwner).where(models.ShopOwner.user_id == user_id))
        owner = result.scalars().first()
        if owner is None:
            raise IntegrationError(f"user {user_id} has no shop owner record")
        return owner
