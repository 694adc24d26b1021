"""
Database Schemas for the storefront checkout API

Each document model corresponds to a MongoDB collection:
- Cart -> "carts", CartItem -> "cart_items"
- CheckoutSession -> "checkout_sessions"
- Order -> "orders", OrderItem -> "order_items"
- OrderStatusHistory -> "order_status_history"
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

CheckoutStep = Literal["information", "shipping", "payment", "review", "confirmation"]
ShippingMethod = Literal["standard", "express", "overnight"]
CartStatus = Literal["active", "completed", "cleared"]
OrderStatus = Literal["created", "pending", "processing", "paid", "completed", "cancelled", "refunded", "failed"]
PaymentStatus = Literal["pending", "processing", "paid", "failed", "refunded", "cancelled"]


class StoredModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ------------------------- Checkout -------------------------
class Address(StoredModel):
    first_name: str
    last_name: str
    email: Optional[EmailStr] = None
    phone: str
    address1: str
    address2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str


class ShippingOption(StoredModel):
    id: str
    name: str
    description: str = ""
    method: ShippingMethod
    price: float = Field(..., ge=0)
    estimated_delivery: str = ""


class PaymentInfo(StoredModel):
    type: str = Field(..., description="Payment method type, e.g. credit_card or paypal")
    cardholder_name: Optional[str] = None
    payment_method_id: Optional[str] = None
    billing_address_same_as_shipping: bool = False
    billing_address: Optional[Address] = None
    provider: Optional[str] = None


class CheckoutSessionBase(StoredModel):
    id: str
    cart_id: str
    user_id: Optional[str] = None
    guest_email: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    shipping_method: Optional[ShippingMethod] = None
    shipping_option: Optional[ShippingOption] = None
    payment_method: Optional[str] = None
    payment_info: Optional[PaymentInfo] = None
    current_step: CheckoutStep = "information"
    subtotal: float = 0.0
    shipping_cost: float = 0.0
    tax: float = 0.0
    total: float = 0.0
    created_at: datetime
    updated_at: datetime

    @property
    def is_persisted(self) -> bool:
        return self.durability == "persisted"


class PersistedSession(CheckoutSessionBase):
    """Session state read back from the checkout_sessions collection."""

    durability: Literal["persisted"] = "persisted"


class EphemeralSession(CheckoutSessionBase):
    """Best-effort session built in memory when storage was unavailable."""

    durability: Literal["ephemeral"] = "ephemeral"
    # unknown when the session id was posted without a cart
    cart_id: Optional[str] = None


CheckoutSession = Annotated[Union[PersistedSession, EphemeralSession], Field(discriminator="durability")]


# ------------------------- Cart -------------------------
class CartItemProduct(StoredModel):
    name: Optional[str] = None
    sku: Optional[str] = None
    image_url: Optional[str] = None


class Cart(StoredModel):
    id: str
    anonymous_id: Optional[str] = None
    user_id: Optional[str] = None
    status: CartStatus = "active"


class CartItem(StoredModel):
    id: str
    cart_id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: float = Field(0.0, ge=0)
    product: Optional[CartItemProduct] = None


# ------------------------- Orders -------------------------
class OrderItemOption(BaseModel):
    name: str
    value: str


class OrderItem(StoredModel):
    id: str
    order_id: str
    product_id: str
    variant_id: Optional[str] = None
    name: str
    sku: str
    quantity: int
    unit_price: float
    total_price: float
    image_url: Optional[str] = None
    options: List[OrderItemOption] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @field_validator("options", mode="before")
    @classmethod
    def normalize_options(cls, value: Any) -> List[Dict[str, str]]:
        # stored options may be {"size": "M"} or [{"name": ..., "value": ...}]
        if not value:
            return []
        if isinstance(value, dict):
            return [{"name": str(k), "value": "" if v is None else str(v)} for k, v in value.items()]
        if isinstance(value, list):
            out = []
            for opt in value:
                if isinstance(opt, dict) and "name" in opt and "value" in opt:
                    out.append({"name": str(opt["name"] or ""), "value": str(opt["value"] or "")})
                elif isinstance(opt, dict) and opt:
                    key = next(iter(opt))
                    out.append({"name": str(key), "value": str(opt[key] or "")})
                else:
                    out.append({"name": "option", "value": str(opt or "")})
            return out
        return []


class OrderStatusHistory(StoredModel):
    id: str
    order_id: str
    status: OrderStatus
    previous_status: Optional[OrderStatus] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    is_undo: bool = False
    undone: bool = False
    created_at: datetime


class Order(StoredModel):
    id: str
    checkout_session_id: Optional[str] = None
    cart_id: Optional[str] = None
    user_id: Optional[str] = None
    guest_email: Optional[str] = None
    order_number: str
    status: OrderStatus = "created"
    payment_status: PaymentStatus = "pending"
    payment_method: Optional[str] = None
    payment_provider: Optional[str] = None
    payment_intent_id: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    shipping_method: Optional[str] = None
    shipping_cost: float = 0.0
    subtotal: float = 0.0
    tax: float = 0.0
    total: float = 0.0
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    items: List[OrderItem] = Field(default_factory=list)
    status_history: List[OrderStatusHistory] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class OrderListResult(BaseModel):
    orders: List[Order]
    total: int
    limit: int
    offset: int


class OrderFilters(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    status: Optional[List[OrderStatus]] = None
    payment_status: Optional[List[PaymentStatus]] = None
    search: Optional[str] = None
    limit: int = Field(10, ge=1, le=100)
    offset: int = Field(0, ge=0)
    sort_by: Literal["created_at", "updated_at", "total", "order_number"] = "created_at"
    sort_direction: Literal["asc", "desc"] = "desc"


class UndoStatus(BaseModel):
    can_undo: bool
    previous_status: Optional[OrderStatus] = None
    time_remaining: int = 0
    expires_at: Optional[datetime] = None


class StatusChangeResult(BaseModel):
    order: Order
    undo: UndoStatus


# ------------------------- Payments -------------------------
class PaymentResult(BaseModel):
    success: bool
    status: str
    payment_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    error: Optional[str] = None
    order_reference: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[float] = None
    refund_reason: Optional[str] = None
    refund_date: Optional[datetime] = None
    provider_data: Dict[str, Any] = Field(default_factory=dict)
