from sqlalchemy import Column, Integer, String, Float, ForeignKey, Boolean, DateTime, Text, JSON
from .database import Base
import enum

class Role(str, enum.Enum):
    ADMIN = "admin"
    SHOPOWNER = "shopowner"
    CUSTOMER = "customer"

class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    TRIAL = "trial"
    EXPIRED = "expired"

class DeliveryMethod(str, enum.Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"

# AUTOINCREMENT keeps sqlite from handing out the id of a deleted last row again
_TABLE_ARGS = {"sqlite_autoincrement": True}

class User(Base):
    __tablename__ = "users"
    __table_args__ = _TABLE_ARGS
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(80), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    name = Column(String(120))
    role = Column(String(20), default=Role.CUSTOMER, nullable=False)
    created_at = Column(DateTime, nullable=False)

class Store(Base):
    __tablename__ = "stores"
    __table_args__ = _TABLE_ARGS
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    slug = Column(String(100), unique=True, index=True)
    whatsapp_number = Column(String(30), default="", nullable=False)
    logo_url = Column(String(500))
    instagram_url = Column(String(500))
    facebook_url = Column(String(500))
    show_social_media = Column(Boolean, default=False, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    theme = Column(JSON(none_as_null=True))  # {"primary": "#...", "background": ..., "text": ..., "accent": ...}
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

class Category(Base):
    __tablename__ = "categories"
    __table_args__ = _TABLE_ARGS
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    store_id = Column(Integer, ForeignKey("stores.id"), index=True, nullable=False)
    created_at = Column(DateTime, nullable=False)

class Product(Base):
    __tablename__ = "products"
    __table_args__ = _TABLE_ARGS
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), index=True, nullable=False)
    price = Column(Float, nullable=False)
    description = Column(Text)
    image_url = Column(String(500))
    store_id = Column(Integer, ForeignKey("stores.id"), index=True, nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), index=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

class ShopOwner(Base):
    __tablename__ = "shop_owners"
    __table_args__ = _TABLE_ARGS
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=False)
    subscription_status = Column(String(20), default=SubscriptionStatus.TRIAL, nullable=False)
    subscription_expires_at = Column(DateTime)
    stripe_customer_id = Column(String(120))
    stripe_price_id = Column(String(120))
    stripe_subscription_id = Column(String(120))

class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = _TABLE_ARGS
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    address = Column(Text)
    phone = Column(String(30))

class Cart(Base):
    __tablename__ = "carts"
    __table_args__ = _TABLE_ARGS
    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), index=True, nullable=False)
    store_id = Column(Integer, ForeignKey("stores.id"), index=True, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = _TABLE_ARGS
    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)

class Order(Base):
    __tablename__ = "orders"
    __table_args__ = _TABLE_ARGS
    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), index=True, nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), index=True)
    customer_name = Column(String(120), nullable=False)
    customer_phone = Column(String(30))
    customer_address = Column(Text)
    delivery_method = Column(String(20), nullable=False)
    notes = Column(Text)
    total = Column(Float, nullable=False)
    whatsapp_sent = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, nullable=False)

class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = _TABLE_ARGS
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    # copied at order time, never follows later product edits
    product_name = Column(String(200), nullable=False)
    price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)

