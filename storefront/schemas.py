from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, EmailStr, Field, model_validator
from .models import Role, SubscriptionStatus, DeliveryMethod

HEX_COLOR = r"^#[0-9a-fA-F]{6}$"


class PartialUpdate(BaseModel):
    """Base for partial updates.

    Only the fields the caller actually sent are applied (see `changes`);
    `None` clears a nullable field, and is rejected for the fields listed
    in `not_nullable`.
    """
    not_nullable: ClassVar[Tuple[str, ...]] = ()

    @model_validator(mode="after")
    def _reject_cleared_required(self):
        for field in self.not_nullable:
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{field} cannot be null")
        return self

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# --- AUTH ---
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=80)
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: Optional[str] = None
    role: Role = Role.CUSTOMER
    # customer profile
    address: Optional[str] = None
    phone: Optional[str] = None
    # shop owner onboarding
    store_name: Optional[str] = None
    whatsapp_number: Optional[str] = None
    logo_url: Optional[str] = None

class Token(BaseModel):
    access_token: str
    token_type: str

class TokenData(BaseModel):
    user_id: Optional[int] = None
    role: Optional[str] = None


# --- USER ---
class UserCreate(BaseModel):
    username: str
    email: str
    hashed_password: str
    name: Optional[str] = None
    role: Role = Role.CUSTOMER

class UserUpdate(PartialUpdate):
    not_nullable = ("username", "email", "hashed_password", "role")
    username: Optional[str] = None
    email: Optional[str] = None
    hashed_password: Optional[str] = None
    name: Optional[str] = None
    role: Optional[Role] = None

class UserOut(BaseModel):
    id: int
    username: str
    email: str
    hashed_password: str
    name: Optional[str] = None
    role: Role
    created_at: datetime
    class Config:
        from_attributes = True

class UserPublic(BaseModel):
    id: int
    username: str
    email: str
    name: Optional[str] = None
    role: Role
    created_at: datetime
    class Config:
        from_attributes = True


# --- STORE ---
class StoreTheme(BaseModel):
    primary: str = Field("#000000", pattern=HEX_COLOR)
    background: str = Field("#ffffff", pattern=HEX_COLOR)
    text: str = Field("#000000", pattern=HEX_COLOR)
    accent: str = Field("#25d366", pattern=HEX_COLOR)

class StoreCreate(BaseModel):
    name: str
    slug: Optional[str] = Field(None, pattern=r"^[a-z0-9-]+$")
    whatsapp_number: str = ""
    logo_url: Optional[str] = None
    instagram_url: Optional[str] = None
    facebook_url: Optional[str] = None
    show_social_media: bool = False
    theme: Optional[StoreTheme] = None

class StoreUpdate(PartialUpdate):
    not_nullable = ("name", "whatsapp_number", "show_social_media", "active")
    name: Optional[str] = None
    slug: Optional[str] = Field(None, pattern=r"^[a-z0-9-]+$")
    whatsapp_number: Optional[str] = None
    logo_url: Optional[str] = None
    instagram_url: Optional[str] = None
    facebook_url: Optional[str] = None
    show_social_media: Optional[bool] = None
    active: Optional[bool] = None
    theme: Optional[StoreTheme] = None

class StoreOut(BaseModel):
    id: int
    name: str
    slug: Optional[str] = None
    whatsapp_number: str
    logo_url: Optional[str] = None
    instagram_url: Optional[str] = None
    facebook_url: Optional[str] = None
    show_social_media: bool
    active: bool
    theme: Optional[StoreTheme] = None
    created_at: datetime
    updated_at: datetime
    class Config:
        from_attributes = True


# --- CATEGORY ---
class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)

class CategoryCreate(CategoryIn):
    store_id: int

class CategoryUpdate(PartialUpdate):
    not_nullable = ("name",)
    name: Optional[str] = None

class CategoryOut(BaseModel):
    id: int
    name: str
    store_id: int
    created_at: datetime
    class Config:
        from_attributes = True


# --- PRODUCT ---
class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    description: Optional[str] = None
    image_url: Optional[str] = None
    category_id: Optional[int] = None
    active: bool = True

class ProductCreate(ProductIn):
    store_id: int

class ProductUpdate(PartialUpdate):
    not_nullable = ("name", "price", "active")
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    image_url: Optional[str] = None
    category_id: Optional[int] = None
    active: Optional[bool] = None

class ProductOut(BaseModel):
    id: int
    name: str
    price: float
    description: Optional[str] = None
    image_url: Optional[str] = None
    store_id: int
    category_id: Optional[int] = None
    active: bool
    created_at: datetime
    updated_at: datetime
    class Config:
        from_attributes = True


# --- SHOP OWNER ---
class ShopOwnerCreate(BaseModel):
    user_id: int
    store_id: int
    subscription_status: SubscriptionStatus = SubscriptionStatus.TRIAL
    subscription_expires_at: Optional[datetime] = None

class ShopOwnerUpdate(PartialUpdate):
    not_nullable = ("subscription_status",)
    subscription_status: Optional[SubscriptionStatus] = None
    subscription_expires_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None

class ShopOwnerOut(BaseModel):
    id: int
    user_id: int
    store_id: int
    subscription_status: SubscriptionStatus
    subscription_expires_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    class Config:
        from_attributes = True

class BillingLink(BaseModel):
    customer_id: str
    subscription_id: str


# --- CUSTOMER ---
class CustomerCreate(BaseModel):
    user_id: int
    address: Optional[str] = None
    phone: Optional[str] = None

class CustomerUpdate(PartialUpdate):
    address: Optional[str] = None
    phone: Optional[str] = None

class CustomerOut(BaseModel):
    id: int
    user_id: int
    address: Optional[str] = None
    phone: Optional[str] = None
    class Config:
        from_attributes = True


# --- CART ---
class CartCreate(BaseModel):
    customer_id: int
    store_id: int

class CartOut(BaseModel):
    id: int
    customer_id: int
    store_id: int
    created_at: datetime
    updated_at: datetime
    class Config:
        from_attributes = True

class CartItemAdd(BaseModel):
    product_id: int
    quantity: int = Field(1, gt=0)

class CartItemQuantity(BaseModel):
    quantity: int = Field(..., gt=0)

class CartItemCreate(BaseModel):
    cart_id: int
    product_id: int
    quantity: int = Field(..., gt=0)

class CartItemOut(BaseModel):
    id: int
    cart_id: int
    product_id: int
    quantity: int
    class Config:
        from_attributes = True

class CartLine(BaseModel):
    id: int
    product_id: int
    quantity: int
    product: ProductOut # Nested Product details

class CartDetail(BaseModel):
    id: int
    store_id: int
    items: List[CartLine]
    total: float


# --- ORDER ---
class OrderCreate(BaseModel):
    store_id: int
    customer_id: Optional[int] = None
    customer_name: str
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    delivery_method: DeliveryMethod = DeliveryMethod.PICKUP
    notes: Optional[str] = None
    total: float = Field(..., ge=0)

class OrderOut(BaseModel):
    id: int
    store_id: int
    customer_id: Optional[int] = None
    customer_name: str
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    delivery_method: DeliveryMethod
    notes: Optional[str] = None
    total: float
    whatsapp_sent: bool
    created_at: datetime
    class Config:
        from_attributes = True

class OrderItemCreate(BaseModel):
    order_id: int
    product_name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., gt=0)

class OrderItemOut(BaseModel):
    id: int
    order_id: int
    product_name: str
    price: float
    quantity: int
    class Config:
        from_attributes = True

class OrderLineIn(BaseModel):
    product_id: int
    quantity: int = Field(1, gt=0)

class CheckoutDetails(BaseModel):
    customer_name: str = Field(..., min_length=1)
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    delivery_method: DeliveryMethod = DeliveryMethod.PICKUP
    payment_method: Optional[str] = Field(None, pattern="^(pix|cash|card)$")
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _address_for_delivery(self):
        if self.delivery_method == DeliveryMethod.DELIVERY and not self.customer_address:
            raise ValueError("customer_address is required for delivery")
        return self

class GuestOrderRequest(CheckoutDetails):
    items: List[OrderLineIn] = Field(..., min_length=1)

class PlacedOrder(BaseModel):
    order: OrderOut
    items: List[OrderItemOut]
    whatsapp_url: str
    relay_token: str  # proves the caller placed this order, see WhatsAppSent

class WhatsAppSent(BaseModel):
    relay_token: str

class OrderDetail(BaseModel):
    order: OrderOut
    items: List[OrderItemOut]
