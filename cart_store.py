"""Guest (local) and authenticated (remote) cart stores behind one interface."""
from __future__ import annotations
import json
import logging
import re
from typing import Any, List, Optional
from pydantic import ValidationError as PydanticValidationError

from api_client import StorefrontAPI
from errors import NotFound, StockExceeded
from schemas import CartLine, CartSnapshot
from storage import CART_KEY, KeyValueStore

logger = logging.getLogger(__name__)

_NON_NUMERIC = re.compile(r"[^0-9.\-]+")
_LEADING_NUMBER = re.compile(r"[-+]?(\d+\.?\d*|\.\d+)")


def coerce_price(raw: Any) -> float:
    """Best-effort price from whatever upstream stored ("₱1,200.00", "1200", 1200).

    Non-numeric characters are stripped and the leading number is read;
    anything unreadable is 0.
    """
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)
    match = _LEADING_NUMBER.match(_NON_NUMERIC.sub("", str(raw if raw is not None else "")))
    return float(match.group()) if match else 0.0


def coerce_product_id(raw: Any) -> Optional[int]:
    """Integer product id from a line's raw id, or None.

    Reads the leading digits, so a guest key like "7-41-Black" gives 7.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() and raw > 0 else None
    match = re.match(r"\s*\+?(\d+)", str(raw))
    if not match:
        return None
    value = int(match.group(1))
    return value if value > 0 else None


def _options(raw: Any) -> dict:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    return raw if isinstance(raw, dict) else {}


def line_from_local(record: dict) -> CartLine:
    options = _options(record.get("options"))
    size = (
        record.get("size")
        or record.get("shoe_size")
        or options.get("size")
        or _options(record.get("meta")).get("size")
        or _options(record.get("attributes")).get("size")
    )
    pid = record.get("pid") or record.get("id")
    return CartLine(
        id=str(record["id"]),
        product_id=str(pid) if pid is not None else None,
        name=record.get("name") or "",
        unit_price=max(0.0, coerce_price(record.get("price"))),
        quantity=max(1, int(record.get("qty") or 1)),
        size=size or None,
        color=record.get("color") or options.get("color") or None,
        image_url=record.get("image") or None,
        stock_ceiling=record.get("stock_quantity") or None,
        options=options or None,
    )


def line_to_local(line: CartLine) -> dict:
    return {
        "id": line.id,
        "pid": line.product_id,
        "name": line.name,
        "price": line.unit_price,
        "qty": line.quantity,
        "size": line.size,
        "color": line.color,
        "image": line.image_url,
        "stock_quantity": line.stock_ceiling,
        "options": line.options,
    }


def line_from_remote(item: dict) -> CartLine:
    options = _options(item.get("options"))
    pid = item.get("product_id") or item.get("pid")
    return CartLine(
        id=str(item["id"]),
        product_id=str(pid) if pid is not None else None,
        name=item.get("name") or "",
        unit_price=max(0.0, coerce_price(item.get("price"))),
        quantity=int(item.get("quantity") or item.get("qty") or 1),
        size=item.get("size"),
        color=options.get("color"),
        image_url=item.get("image"),
        stock_ceiling=item.get("stock_quantity"),
        options=options or None,
    )


class CartRepository:
    """Whichever cart is authoritative for the current session."""

    async def fetch(self) -> CartSnapshot:
        raise NotImplementedError

    async def set_quantity(self, line_id: str, quantity: int) -> CartLine:
        raise NotImplementedError

    async def remove(self, line_id: str) -> None:
        raise NotImplementedError


class LocalStorageCart(CartRepository):
    def __init__(self, storage: KeyValueStore, key: str = CART_KEY):
        self.storage = storage
        self.key = key

    def load(self) -> CartSnapshot:
        raw = self.storage.get(self.key)
        if not raw:
            return CartSnapshot()
        try:
            records = json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt guest cart data")
            return CartSnapshot()
        if not isinstance(records, list):
            return CartSnapshot()

        lines: List[CartLine] = []
        for record in records:
            if not isinstance(record, dict) or record.get("id") is None:
                continue
            try:
                lines.append(line_from_local(record))
            except (PydanticValidationError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable guest cart line %r: %s", record.get("id"), e)
        return CartSnapshot.of(lines)

    def save(self, snapshot: CartSnapshot) -> None:
        self.storage.set(self.key, json.dumps([line_to_local(line) for line in snapshot.lines]))

    def clear(self) -> None:
        self.storage.remove(self.key)

    def add(self, line: CartLine) -> CartSnapshot:
        snapshot = self.load()
        existing = snapshot.get(line.id)
        if existing:
            merged = existing.model_copy(update={"quantity": existing.quantity + line.quantity})
            # Re-validate so the stock ceiling clamps the merged quantity
            snapshot = snapshot.with_line(CartLine.model_validate(merged.model_dump()))
        else:
            snapshot = CartSnapshot(lines=[*snapshot.lines, line], selected_ids=snapshot.selected_ids | {line.id})
        self.save(snapshot)
        return snapshot

    async def fetch(self) -> CartSnapshot:
        return self.load()

    async def set_quantity(self, line_id: str, quantity: int) -> CartLine:
        snapshot = self.load()
        line = snapshot.get(line_id)
        if line is None:
            raise NotFound("Cart item not found")
        if line.stock_ceiling is not None and quantity > line.stock_ceiling:
            raise StockExceeded(
                f"Cannot add more. Only {line.stock_ceiling} items in stock.", available=line.stock_ceiling
            )
        updated = line.model_copy(update={"quantity": quantity})
        self.save(snapshot.with_line(updated))
        return updated

    async def remove(self, line_id: str) -> None:
        self.save(self.load().without(line_id))


class RemoteCart(CartRepository):
    def __init__(self, api: StorefrontAPI):
        self.api = api

    async def fetch(self) -> CartSnapshot:
        data = await self.api.get("/api/cart")
        return CartSnapshot.of([line_from_remote(item) for item in data.get("items") or []])

    async def update_quantity(self, line_id: str, quantity: int) -> CartLine:
        data = await self.api.post("/api/cart/update", json={"id": line_id, "quantity": quantity})
        return line_from_remote(data["item"])

    async def set_quantity(self, line_id: str, quantity: int) -> CartLine:
        return await self.update_quantity(line_id, quantity)

    async def remove(self, line_id: str) -> None:
        await self.api.post("/api/cart/remove", json={"id": line_id})

    async def sync_from(self, local_lines: List[CartLine]) -> List[int]:
        """Push guest lines to the server cart; returns the product ids it could not store."""
        # Unreadable ids go through raw; the server rejects the whole batch
        data = await self.api.post("/api/cart/sync", json={
            "items": [
                {
                    "pid": coerce_product_id(line.product_id) or line.product_id,
                    "qty": line.quantity,
                    "size": line.size,
                    "color": line.color,
                    "image": line.image_url,
                }
                for line in local_lines
            ]
        })
        return [pid for pid in data.get("skipped") or [] if isinstance(pid, int)]
