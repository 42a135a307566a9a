"""Checkout: address book, payload assembly and the order -> payment-link sequence."""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional
from pydantic import ValidationError as PydanticValidationError

from api_client import StorefrontAPI
from cart_store import coerce_product_id
from config import settings
from errors import (
    EmptySelection,
    MissingProductId,
    OrderCreationFailed,
    PaymentLinkFailed,
    StorefrontError,
    ValidationError,
)
from schemas import (
    POSTAL_CODE_RE,
    Address,
    AddressIn,
    CartSnapshot,
    CheckoutItem,
    CheckoutPayload,
    ContactInfo,
    format_address,
)
from storage import CHECKOUT_DATA_KEY, PAYMENT_LINK_KEY, PENDING_ORDER_KEY, KeyValueStore

logger = logging.getLogger(__name__)

FIELD_LABELS = {
    "name": "Recipient name",
    "phone": "Phone number",
    "region": "Region",
    "province": "Province",
    "city": "City",
    "barangay": "Barangay",
    "postal_code": "Postal code",
    "address_line": "Street address",
    "customer_email": "Email",
    "customer_name": "Name",
    "customer_phone": "Phone number",
    "shipping_address": "Shipping address",
}


def _first_error(e: PydanticValidationError) -> str:
    err = e.errors()[0]
    field = str(err["loc"][0]) if err.get("loc") else ""
    msg = err["msg"]
    if err["type"] == "value_error":
        return msg.removeprefix("Value error, ")
    return f"{FIELD_LABELS.get(field, field)}: {msg}" if field else msg


def validate_postal_code(code: Optional[str]) -> bool:
    return bool(code) and POSTAL_CODE_RE.match(code.strip()) is not None


def validate_address(data: dict | AddressIn) -> AddressIn:
    if isinstance(data, AddressIn):
        data = data.model_dump()
    try:
        return AddressIn.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e))


def validate_contact(contact: ContactInfo) -> None:
    if not (contact.name or "").strip() or not (contact.email or "").strip() or not (contact.phone or "").strip():
        raise ValidationError("Please fill in all required contact information.", title="Missing Information")


def assemble_checkout(
    snapshot: CartSnapshot,
    selected_ids: Iterable[str],
    address: Optional[AddressIn],
    contact: ContactInfo,
    fallback: Optional[dict] = None,
) -> CheckoutPayload:
    """Build the create-order payload from the selected cart lines.

    Raises before any request is made: ``EmptySelection`` when nothing is
    selected, ``MissingProductId`` when a selected line has no integer
    product id, ``ValidationError`` for missing contact or shipping data.
    ``fallback`` holds free-text shipping fields used when no saved address
    is selected.
    """
    lines = snapshot.selected_lines(set(selected_ids))
    if not lines:
        raise EmptySelection()

    missing = [line.id for line in lines if coerce_product_id(line.product_id) is None]
    if missing:
        logger.error("Cart lines missing product id: %s", missing)
        raise MissingProductId(missing)

    validate_contact(contact)

    if address is not None:
        shipping = {
            "shipping_address": format_address(address),
            "address_id": getattr(address, "id", None),
            "shipping_region": address.region,
            "shipping_province": address.province,
            "shipping_city": address.city,
            "shipping_barangay": address.barangay,
            "shipping_postal_code": address.postal_code,
            "shipping_address_line": address.address_line,
        }
    else:
        shipping = {k: v for k, v in (fallback or {}).items() if k.startswith("shipping_") or k == "address_id"}
        if not (shipping.get("shipping_address") or "").strip():
            raise ValidationError("Please fill in all required shipping address fields.", title="Missing Address")

    try:
        return CheckoutPayload(
            items=[
                CheckoutItem(
                    id=line.id,
                    pid=coerce_product_id(line.product_id),
                    name=line.name,
                    price=line.unit_price,
                    qty=line.quantity,
                    size=line.size,
                    color=line.color,
                    image=line.image_url,
                    options=line.options,
                )
                for line in lines
            ],
            total_amount=round(sum(line.subtotal for line in lines), 2),
            customer_name=contact.name.strip(),
            customer_email=contact.email.strip(),
            customer_phone=(contact.phone or "").strip() or None,
            payment_method="paymongo",
            **shipping,
        )
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e))


def stash_checkout(storage: KeyValueStore, payload: CheckoutPayload) -> None:
    storage.set(CHECKOUT_DATA_KEY, payload.model_dump_json())


def load_checkout(storage: KeyValueStore) -> Optional[CheckoutPayload]:
    raw = storage.get(CHECKOUT_DATA_KEY)
    if not raw:
        return None
    try:
        return CheckoutPayload.model_validate_json(raw)
    except PydanticValidationError:
        logger.warning("Discarding unreadable checkout data")
        return None


def configured_payment_link(local_storage: KeyValueStore) -> str:
    return settings.PAYMONGO_PAYMENT_LINK or local_storage.get(PAYMENT_LINK_KEY) or ""


class AddressBook:
    def __init__(self, api: StorefrontAPI):
        self.api = api
        self.addresses: List[Address] = []

    async def list(self) -> List[Address]:
        data = await self.api.get("/api/user/addresses")
        self.addresses = [Address.model_validate(a) for a in data.get("addresses") or []]
        return self.addresses

    async def create(self, data: dict | AddressIn) -> Address:
        address = validate_address(data)
        resp = await self.api.post("/api/user/addresses", json=address.model_dump())
        await self.list()
        return Address.model_validate(resp["address"])

    async def update(self, address_id: int, data: dict | AddressIn) -> Address:
        address = validate_address(data)
        resp = await self.api.put(f"/api/user/addresses/{address_id}", json=address.model_dump())
        await self.list()
        return Address.model_validate(resp["address"])

    async def delete(self, address_id: int) -> None:
        await self.api.delete(f"/api/user/addresses/{address_id}")
        await self.list()

    async def set_default(self, address_id: int) -> Address:
        resp = await self.api.post(f"/api/user/addresses/{address_id}/set-default")
        await self.list()
        return Address.model_validate(resp["address"])

    def default(self) -> Optional[Address]:
        return next((a for a in self.addresses if a.is_default), None)

    def select(self, address_id: Optional[int]) -> Optional[Address]:
        if address_id is None:
            return None
        return next((a for a in self.addresses if a.id == address_id), None)


@dataclass
class PaymentRedirect:
    order_id: int
    order_number: str
    checkout_url: str
    link_id: str
    link_attached: bool


class CheckoutOrchestrator:
    """Create order, then payment link, then attach the link to the order.

    The three calls are not transactional. If the payment link cannot be
    created the order stays pending unless ``cancel_dangling_orders`` is on,
    in which case a cancellation is attempted. Attaching the link is best
    effort.
    """

    def __init__(self, api: StorefrontAPI, session_storage: KeyValueStore, cancel_dangling_orders: bool = False):
        self.api = api
        self.session_storage = session_storage
        self.cancel_dangling_orders = cancel_dangling_orders

    async def create_order(self, payload: CheckoutPayload) -> dict:
        try:
            data = await self.api.post("/api/checkout/create-order", json=payload.model_dump(mode="json"))
        except StorefrontError as e:
            raise OrderCreationFailed(e.message, status_code=e.status_code) from e
        order = dict(data.get("order") or {})
        order.setdefault("id", data.get("order_id"))
        order.setdefault("order_number", data.get("order_number"))
        if order.get("id") is None:
            raise OrderCreationFailed("Failed to create order")
        return order

    async def create_payment_link(self, order: dict, payload: CheckoutPayload) -> tuple[str, str]:
        names = ", ".join(item.name for item in payload.items)
        amount = order.get("total_amount")
        if amount is None:
            amount = payload.total_amount
        try:
            data = await self.api.post("/api/paymongo-proxy", json={
                "amount": amount,
                "description": f"SoleSpace Order #{order.get('order_number') or ''} - {names}",
            })
        except StorefrontError as e:
            raise PaymentLinkFailed(e.message, status_code=e.status_code) from e
        checkout_url = data.get("checkout_url")
        link_id = data.get("link_id")
        if not checkout_url or not link_id:
            raise PaymentLinkFailed("Incomplete payment data received from PayMongo")
        return checkout_url, link_id

    async def attach_payment_link(self, order_id: int, link_id: str) -> bool:
        try:
            await self.api.post(f"/api/orders/{order_id}/update-payment-link", json={"paymongo_link_id": link_id})
        except StorefrontError as e:
            logger.warning("Could not attach payment link %s to order %s: %s", link_id, order_id, e.message)
            return False
        return True

    async def place_order(
        self,
        payload: CheckoutPayload,
        navigate: Optional[Callable[[str], Any]] = None,
    ) -> PaymentRedirect:
        order = await self.create_order(payload)
        try:
            checkout_url, link_id = await self.create_payment_link(order, payload)
        except PaymentLinkFailed:
            if self.cancel_dangling_orders:
                await self._cancel_dangling(order)
            raise

        attached = await self.attach_payment_link(order["id"], link_id)
        self.session_storage.set(PENDING_ORDER_KEY, str(order["id"]))
        logger.info("Order %s awaiting payment via link %s", order.get("order_number"), link_id)
        if navigate is not None:
            navigate(checkout_url)
        return PaymentRedirect(
            order_id=order["id"],
            order_number=order.get("order_number") or "",
            checkout_url=checkout_url,
            link_id=link_id,
            link_attached=attached,
        )

    async def _cancel_dangling(self, order: dict) -> None:
        try:
            await self.api.post("/orders/cancel", json={
                "order_id": order["id"],
                "reason": "Payment link could not be created",
            })
            logger.info("Cancelled order %s after payment link failure", order["id"])
        except StorefrontError as e:
            logger.warning("Could not cancel order %s: %s", order["id"], e.message)

    async def order_success(self) -> Optional[dict]:
        """Details of the order paid for on the gateway, once it redirects back."""
        order_id = self.session_storage.get(PENDING_ORDER_KEY)
        if not order_id:
            return None
        try:
            data = await self.api.get(f"/api/orders/{order_id}/details")
        except StorefrontError as e:
            logger.error("Failed to fetch order %s: %s", order_id, e.message)
            return None
        self.session_storage.remove(PENDING_ORDER_KEY)
        return data.get("order")


async def cancel_order(api: StorefrontAPI, order_id: int, reason: Optional[str] = None, note: Optional[str] = None) -> str:
    data = await api.post("/orders/cancel", json={"order_id": order_id, "reason": reason, "note": note})
    return data.get("message", "")


async def confirm_delivery(api: StorefrontAPI, order_id: int) -> str:
    data = await api.post("/orders/confirm-delivery", json={"order_id": order_id})
    return data.get("message", "")
