"""
Database Schemas for the shop

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product").
References between collections are stored as id strings.
"""
from enum import Enum
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal, FrozenSet, Dict
from datetime import datetime

OrderStatus = Literal["processing", "in-transit", "delivered", "cancelled"]
RefundStatus = Literal["pending", "approved", "rejected", "completed"]
NotificationType = Literal["discount", "order", "system"]


class Capability(str, Enum):
    UPDATE_DELIVERY = "update-delivery"
    MANAGE_PRODUCTS = "manage-products"
    MANAGE_REVIEWS = "manage-reviews"
    MANAGE_PRICING = "manage-pricing"
    MANAGE_REFUNDS = "manage-refunds"
    VIEW_REPORTS = "view-reports"
    VIEW_INVOICES = "view-invoices"
    SEND_NOTIFICATIONS = "send-notifications"
    SEED_DATA = "seed-data"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    DELIVERY = "delivery"
    SALES_MANAGER = "sales-manager"
    PRODUCT_MANAGER = "product-manager"
    GENERAL_MANAGER = "general-manager"

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        return ROLE_CAPABILITIES[self]

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


_PRODUCT_CAPS = {Capability.MANAGE_PRODUCTS, Capability.MANAGE_REVIEWS,
                 Capability.UPDATE_DELIVERY, Capability.VIEW_INVOICES}
_SALES_CAPS = {Capability.MANAGE_PRICING, Capability.MANAGE_REFUNDS, Capability.VIEW_REPORTS,
               Capability.VIEW_INVOICES, Capability.SEND_NOTIFICATIONS}

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.USER: frozenset(),
    Role.ADMIN: frozenset(Capability),
    Role.DELIVERY: frozenset({Capability.UPDATE_DELIVERY}),
    Role.SALES_MANAGER: frozenset(_SALES_CAPS),
    Role.PRODUCT_MANAGER: frozenset(_PRODUCT_CAPS),
    Role.GENERAL_MANAGER: frozenset(_PRODUCT_CAPS | _SALES_CAPS),
}


def discounted_price(price: float, discount: float) -> float:
    return round(price * (1 - discount / 100.0), 2)


class Address(BaseModel):
    street: str
    city: str
    postal_code: str

class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: Role = Role.USER
    photo: Optional[str] = None
    address: Optional[Address] = None

class Category(BaseModel):
    name: str
    description: str = ""

class Product(BaseModel):
    name: str
    model: str
    serial_number: str
    description: str = ""
    price: float = Field(..., ge=0)
    cost: Optional[float] = Field(None, ge=0, description="Unit cost, used for profit reports")
    stock: int = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100, description="Discount percent")
    discounted_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    warranty_status: Literal["valid", "expired", "none"] = "none"
    distributor_info: str
    image_url: Optional[str] = None

class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class Cart(BaseModel):
    user_id: Optional[str] = Field(None, description="None for guest carts")
    items: List[CartItem] = []

class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price_at_purchase: float
    cost_at_purchase: float

class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    total: float = Field(..., ge=0)
    status: OrderStatus = "processing"
    shipping_address: Address
    cancelled_at: Optional[datetime] = None

class RefundLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price_at_purchase: float
    reason: str

class Refund(BaseModel):
    order_id: str
    user_id: str
    items: List[RefundLine]
    total_refund_amount: float
    status: RefundStatus = "pending"
    approved_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    approved: bool = True

class WishlistItem(BaseModel):
    user_id: str
    product_id: str
    notify_on_discount: bool = True
    last_notified_price: Optional[float] = None

class Notification(BaseModel):
    user_id: str
    title: str
    message: str
    type: NotificationType = "system"
    read: bool = False
    link: Optional[str] = None

# The database viewer reads these from /schema
