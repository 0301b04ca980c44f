"""
Database Schemas for the Storefront API

Each persisted Pydantic model maps to a MongoDB collection:

- User -> "users"
- Product -> "products"
- Cart -> "carts" (cart items embedded)
- Order -> "orders" (order details embedded)

Roles and statuses are closed enums. Persisted role values decode leniently
(unknown -> USER); persisted order/payment values decode strictly.
"""
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_serializer, field_validator

from errors import UnknownEnumValue

logger = logging.getLogger(__name__)

ROLE_PREFIX = "ROLE_"


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"


class PaymentMethod(str, Enum):
    COD = "COD"
    VNPAY = "VNPAY"
    SEPAY = "SEPAY"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


def decode_role(value: Optional[str]) -> Role:
    """Persisted role -> Role. Blank or unrecognized values fall back to USER."""
    if value is None or not str(value).strip():
        return Role.USER
    raw = str(value).strip().upper()
    if raw.startswith(ROLE_PREFIX):
        raw = raw[len(ROLE_PREFIX):]
    try:
        return Role(raw)
    except ValueError:
        logger.warning("Invalid role value in database: %r, defaulting to USER", value)
        return Role.USER


def _decode_strict(enum_cls, value):
    if value is None:
        return None
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        raise UnknownEnumValue(f"Unknown value for {enum_cls.__name__}: {value}")


def decode_order_status(value: Optional[str]) -> Optional[OrderStatus]:
    return _decode_strict(OrderStatus, value)


def decode_payment_status(value: Optional[str]) -> Optional[PaymentStatus]:
    return _decode_strict(PaymentStatus, value)


def decode_payment_method(value: Optional[str]) -> Optional[PaymentMethod]:
    return _decode_strict(PaymentMethod, value)


# Users collection
class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    email_key: str = Field(..., description="Lowercased email, unique")
    password_hash: str = Field(..., min_length=10)
    role: Role = Role.USER

    @field_serializer("role")
    def _persist_role(self, role: Role) -> str:
        return role.value.lower()


# Products collection
class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    price: Decimal = Field(..., ge=0)
    discount_price: Optional[Decimal] = Field(None, ge=0)
    description: Optional[str] = None
    image: Optional[str] = None
    stock_quantity: int = Field(0, ge=0)
    is_active: bool = True
    category: Optional[str] = None
    brand: Optional[str] = None


def effective_price(product: dict) -> Decimal:
    """Discount price when set, else list price."""
    discount = product.get("discount_price")
    return discount if discount is not None else product["price"]


# Carts collection
class CartItem(BaseModel):
    id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    version: int = 0


# Orders collection
class OrderDetail(BaseModel):
    id: str
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: Decimal = Field(..., description="Effective unit price captured at order time")
    created_at: Optional[datetime] = None


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    user_name: str
    total_price: Decimal
    status: OrderStatus = OrderStatus.PENDING
    shipping_address: str
    shipping_city: str
    shipping_district: str
    shipping_ward: str
    shipping_phone: str
    shipping_fee: Decimal = Decimal("0")
    payment_method: PaymentMethod = PaymentMethod.COD
    payment_status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None
    discount_amount: Decimal = Decimal("0")
    final_total: Decimal
    details: List[OrderDetail] = Field(default_factory=list)


# Requests shared between routes and services
class CreateOrderPayload(BaseModel):
    shipping_address: str = Field(..., min_length=1)
    shipping_city: str = Field(..., min_length=1)
    shipping_district: str = Field(..., min_length=1)
    shipping_ward: str = Field(..., min_length=1)
    shipping_phone: str = Field(..., pattern=r"^[0-9]{10,11}$")
    shipping_fee: Decimal = Field(Decimal("0"), max_digits=15, decimal_places=2)
    payment_method: PaymentMethod
    notes: Optional[str] = None
    discount_amount: Decimal = Field(Decimal("0"), max_digits=15, decimal_places=2)

    @field_validator("shipping_address", "shipping_city", "shipping_district", "shipping_ward")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("shipping_fee", "discount_amount", mode="before")
    @classmethod
    def _default_zero(cls, v):
        return Decimal("0") if v is None else v


# Responses
class UserOut(BaseModel):
    id: str
    name: str
    email: str
    role: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    token: str
    id: str
    name: str
    email: str
    role: str


class ProductOut(BaseModel):
    id: str
    name: str
    price: Decimal
    discount_price: Optional[Decimal] = None
    effective_price: Decimal
    description: Optional[str] = None
    image: Optional[str] = None
    stock_quantity: int = 0
    is_active: bool = True
    category: Optional[str] = None
    brand: Optional[str] = None


class CartItemView(BaseModel):
    id: str
    product_id: str
    product_name: Optional[str] = None
    product_price: Optional[Decimal] = None
    product_image: Optional[str] = None
    quantity: int
    subtotal: Decimal


class CartView(BaseModel):
    id: str
    user_id: str
    items: List[CartItemView] = Field(default_factory=list)
    total_items: int = 0
    total_price: Decimal = Decimal("0")


class OrderDetailView(BaseModel):
    id: str
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    quantity: int
    price: Decimal
    subtotal: Decimal


class OrderView(BaseModel):
    id: str
    user_id: str
    user_name: str
    total_price: Decimal
    status: OrderStatus
    shipping_address: str
    shipping_city: str
    shipping_district: str
    shipping_ward: str
    shipping_phone: str
    shipping_fee: Decimal
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None
    discount_amount: Decimal
    final_total: Decimal
    order_details: List[OrderDetailView] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ApiMessage(BaseModel):
    success: bool
    message: str
