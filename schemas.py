"""
SoleSpace Schemas

Pydantic models shared by the storefront API and the cart/checkout client.
Document models map to MongoDB collections (lowercased class name, e.g.
Product -> "product"); the rest describe request and response bodies.
"""
from __future__ import annotations
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

PH_MOBILE_RE = re.compile(r"^(63|0)?9\d{9}$")
POSTAL_CODE_RE = re.compile(r"^\d{4}$")


# Catalogue

class Variant(BaseModel):
    size: str
    color: str
    quantity: int = Field(ge=0)


class Product(BaseModel):
    name: str
    brand: str
    category: str = "footwear"
    description: Optional[str] = None
    price: float = Field(ge=0)
    stock_quantity: int = Field(0, ge=0)
    image: Optional[str] = None
    variants: List[Variant] = Field(default_factory=list)


# Cart

class CartLine(BaseModel):
    """One line of a cart, guest or authenticated.

    ``id`` is the cart row id for authenticated carts and the product/variant
    key for guest carts. ``product_id`` is kept raw since guest data may carry
    a non-numeric value; checkout coerces it.
    """
    id: str
    product_id: Optional[str] = None
    name: str = ""
    unit_price: float = Field(0, ge=0)
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    image_url: Optional[str] = None
    stock_ceiling: Optional[int] = Field(None, ge=0)
    options: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def clamp_to_stock_ceiling(self) -> "CartLine":
        if self.stock_ceiling and self.quantity > self.stock_ceiling:
            self.quantity = self.stock_ceiling
        return self

    @property
    def subtotal(self) -> float:
        return self.unit_price * self.quantity

    @property
    def at_stock_ceiling(self) -> bool:
        return self.stock_ceiling is not None and self.quantity >= self.stock_ceiling


class CartSnapshot(BaseModel):
    lines: List[CartLine] = Field(default_factory=list)
    selected_ids: Set[str] = Field(default_factory=set)

    @model_validator(mode="after")
    def drop_unknown_selection(self) -> "CartSnapshot":
        self.selected_ids = self.selected_ids & {line.id for line in self.lines}
        return self

    @classmethod
    def of(cls, lines: List[CartLine]) -> "CartSnapshot":
        # Freshly loaded carts start with every line selected
        return cls(lines=lines, selected_ids={line.id for line in lines})

    def get(self, line_id: str) -> Optional[CartLine]:
        for line in self.lines:
            if line.id == line_id:
                return line
        return None

    @property
    def total_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def selected_lines(self, selected_ids: Optional[Set[str]] = None) -> List[CartLine]:
        ids = self.selected_ids if selected_ids is None else selected_ids
        return [line for line in self.lines if line.id in ids]

    def toggle(self, line_id: str) -> "CartSnapshot":
        selected = set(self.selected_ids)
        if line_id in selected:
            selected.discard(line_id)
        else:
            selected.add(line_id)
        return CartSnapshot(lines=self.lines, selected_ids=selected)

    def toggle_all(self) -> "CartSnapshot":
        if len(self.selected_ids) == len(self.lines):
            return CartSnapshot(lines=self.lines, selected_ids=set())
        return CartSnapshot.of(self.lines)

    def with_line(self, line: CartLine) -> "CartSnapshot":
        lines = [line if existing.id == line.id else existing for existing in self.lines]
        return CartSnapshot(lines=lines, selected_ids=self.selected_ids)

    def without(self, line_id: str) -> "CartSnapshot":
        return CartSnapshot(
            lines=[line for line in self.lines if line.id != line_id],
            selected_ids=self.selected_ids - {line_id},
        )


class CartAddIn(BaseModel):
    product_id: int
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    options: Optional[Dict[str, Any]] = None


class CartUpdateIn(BaseModel):
    id: int
    quantity: int = Field(ge=1)


class CartRemoveIn(BaseModel):
    id: int


class CartSyncItem(BaseModel):
    pid: int
    qty: int = Field(ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    image: Optional[str] = None


class CartSyncIn(BaseModel):
    items: List[CartSyncItem]


# Addresses

class AddressIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=2, max_length=255)
    phone: str = Field(..., max_length=20)
    region: str = Field(..., min_length=1, max_length=255)
    province: str = Field(..., min_length=1, max_length=255)
    city: str = Field(..., min_length=1, max_length=255)
    barangay: str = Field(..., min_length=1, max_length=255)
    postal_code: Optional[str] = None
    address_line: str = Field(..., min_length=5, max_length=500)
    is_default: bool = False

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v: str) -> str:
        cleaned = re.sub(r"[\s\-()+]", "", v)
        if not cleaned:
            raise ValueError("Phone number is required")
        if not PH_MOBILE_RE.match(cleaned):
            raise ValueError("Invalid Philippine mobile number. Use format: 09XX XXX XXXX or +639XX XXX XXXX")
        return v

    @field_validator("postal_code")
    @classmethod
    def check_postal_code(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        if not POSTAL_CODE_RE.match(v):
            raise ValueError("Postal code must be 4 digits (e.g., 4100)")
        return v


class Address(AddressIn):
    id: int
    user_id: Optional[int] = None

    @property
    def full_address(self) -> str:
        return format_address(self)


def format_address(address: AddressIn) -> str:
    parts = [address.address_line, address.barangay, address.city, address.province, address.region]
    if address.postal_code:
        parts.append(address.postal_code)
    return ", ".join(p for p in parts if p)


# Checkout

class ContactInfo(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None


class CheckoutItem(BaseModel):
    id: str
    pid: int
    name: str
    price: float = Field(ge=0)
    qty: int = Field(ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    image: Optional[str] = None
    options: Optional[Any] = None


class CheckoutPayload(BaseModel):
    items: List[CheckoutItem] = Field(..., min_length=1)
    total_amount: float = Field(ge=0)
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_email: EmailStr
    customer_phone: Optional[str] = Field(None, max_length=20)
    shipping_address: str = Field(..., min_length=1, max_length=500)
    address_id: Optional[int] = None
    shipping_region: Optional[str] = None
    shipping_province: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_barangay: Optional[str] = None
    shipping_postal_code: Optional[str] = None
    shipping_address_line: Optional[str] = None
    payment_method: str = "paymongo"


# Orders

class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    to_ship = "to_ship"
    shipped = "shipped"
    delivered = "delivered"
    completed = "completed"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"


ORDER_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.pending: {OrderStatus.processing, OrderStatus.cancelled},
    OrderStatus.processing: {OrderStatus.to_ship, OrderStatus.shipped, OrderStatus.cancelled},
    OrderStatus.to_ship: {OrderStatus.shipped, OrderStatus.delivered},
    OrderStatus.shipped: {OrderStatus.delivered},
    OrderStatus.delivered: set(),
    OrderStatus.completed: set(),
    OrderStatus.cancelled: set(),
}

# Customers may only cancel before fulfillment starts
CUSTOMER_CANCELLABLE = {OrderStatus.pending}


def can_transition(current: OrderStatus | str, target: OrderStatus | str) -> bool:
    return OrderStatus(target) in ORDER_TRANSITIONS[OrderStatus(current)]


class OrderItem(BaseModel):
    product_id: int
    product_name: str
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)
    subtotal: float = Field(ge=0)
    size: Optional[str] = None
    color: Optional[str] = None
    product_image: Optional[str] = None


class Order(BaseModel):
    order_number: str
    customer_id: Optional[int] = None
    items: List[OrderItem]
    total_amount: float = Field(ge=0)
    status: OrderStatus = OrderStatus.pending
    payment_status: PaymentStatus = PaymentStatus.pending
    payment_method: str = "paymongo"
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    customer_address: str
    address_id: Optional[int] = None
    shipping_region: Optional[str] = None
    shipping_province: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_barangay: Optional[str] = None
    shipping_postal_code: Optional[str] = None
    shipping_address_line: Optional[str] = None
    paymongo_link_id: Optional[str] = None
    paymongo_payment_id: Optional[str] = None


class PaymentLinkIn(BaseModel):
    amount: Optional[float] = None
    description: str = "SoleSpace Purchase"


class PaymentLinkAttachIn(BaseModel):
    paymongo_link_id: str = Field(..., min_length=1)


class CancelOrderIn(BaseModel):
    order_id: int
    reason: Optional[str] = Field(None, max_length=500)
    note: Optional[str] = Field(None, max_length=500)


class ConfirmDeliveryIn(BaseModel):
    order_id: int
