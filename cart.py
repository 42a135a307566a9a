"""Cart session: guest/remote store selection, login reconciliation, quantity edits."""
from __future__ import annotations
import asyncio
import logging
from typing import List, Optional, Set

from api_client import StorefrontAPI
from cart_store import CartRepository, LocalStorageCart, RemoteCart, coerce_product_id
from errors import StockExceeded, StorefrontError
from events import CART_ERROR, CART_STOCK_LIMIT, EventBus
from schemas import CartLine, CartSnapshot
from storage import KeyValueStore

logger = logging.getLogger(__name__)


def guest_line_id(product_id: int | str, size: Optional[str] = None, color: Optional[str] = None) -> str:
    parts = [str(product_id)] + [p for p in (size, color) if p]
    return "-".join(parts)


class CartReconciler:
    """Moves the guest cart into the server cart once per login.

    The local cart is cleared only after the server confirms the sync; a
    failed sync leaves it untouched and is not retried until the next login.
    Lines the server could not store stay in the local cart and are listed
    in ``unsynced``.
    """

    def __init__(self, local: LocalStorageCart, remote: RemoteCart):
        self.local = local
        self.remote = remote
        self.unsynced: List[CartLine] = []
        self._attempted = False
        self._lock = asyncio.Lock()

    @property
    def attempted(self) -> bool:
        return self._attempted

    def reset(self) -> None:
        self._attempted = False
        self.unsynced = []

    async def reconcile(self) -> CartSnapshot:
        async with self._lock:
            if not self._attempted:
                self._attempted = True
                guest = self.local.load()
                if not guest.is_empty:
                    try:
                        skipped = await self.remote.sync_from(guest.lines)
                    except StorefrontError as e:
                        logger.warning("Guest cart sync failed, keeping %d local lines: %s", len(guest.lines), e.message)
                    else:
                        self._keep_unsynced(guest, set(skipped))
            return await self.remote.fetch()

    def _keep_unsynced(self, guest: CartSnapshot, skipped: Set[int]) -> None:
        self.unsynced = [line for line in guest.lines if coerce_product_id(line.product_id) in skipped]
        if self.unsynced:
            self.local.save(CartSnapshot.of(self.unsynced))
            logger.warning("Server kept %d of %d guest cart lines; the rest stay local: %s",
                           len(guest.lines) - len(self.unsynced), len(guest.lines),
                           [line.id for line in self.unsynced])
        else:
            self.local.clear()
            logger.info("Merged %d guest cart lines into the server cart", len(guest.lines))


class CartSession:
    def __init__(self, api: StorefrontAPI, local_storage: KeyValueStore, events: Optional[EventBus] = None):
        self.api = api
        self.events = events or EventBus()
        self.local = LocalStorageCart(local_storage)
        self.remote = RemoteCart(api)
        self.reconciler = CartReconciler(self.local, self.remote)
        self.snapshot = CartSnapshot()

    @property
    def authenticated(self) -> bool:
        return self.api.authenticated

    @property
    def repository(self) -> CartRepository:
        return self.remote if self.authenticated else self.local

    async def login(self, user_id: int) -> CartSnapshot:
        self.api.user_id = user_id
        self.reconciler.reset()
        return await self.refresh()

    async def logout(self) -> CartSnapshot:
        self.api.user_id = None
        self.reconciler.reset()
        return await self.refresh()

    async def refresh(self) -> CartSnapshot:
        """Reload the authoritative cart, reconciling first after a login."""
        if self.authenticated:
            try:
                fresh = await self.reconciler.reconcile()
            except StorefrontError as e:
                logger.error("Failed to load cart: %s", e.message)
                self.events.publish(CART_ERROR, title="Unable to load cart", message=e.message, error=e)
                return self.snapshot
            if self.reconciler.unsynced:
                names = ", ".join(line.name or line.id for line in self.reconciler.unsynced)
                self.events.publish(
                    CART_ERROR,
                    title="Some items were not added",
                    message=f"These items are out of stock and were kept aside: {names}",
                    error=None,
                    line_ids=[line.id for line in self.reconciler.unsynced],
                )
                self.reconciler.unsynced = []
        else:
            fresh = self.local.load()
        self._set(self._carry_selection(fresh))
        return self.snapshot

    def _carry_selection(self, fresh: CartSnapshot) -> CartSnapshot:
        # Keep the user's choices; lines never seen before start selected
        known = {line.id for line in self.snapshot.lines}
        selected = {
            line.id for line in fresh.lines
            if line.id in self.snapshot.selected_ids or line.id not in known
        }
        return CartSnapshot(lines=fresh.lines, selected_ids=selected)

    def _set(self, snapshot: CartSnapshot) -> None:
        self.snapshot = snapshot
        self.events.cart_changed(snapshot.total_count)

    def replace_line(self, line: CartLine) -> None:
        self._set(self.snapshot.with_line(line))

    def drop_line(self, line_id: str) -> None:
        self._set(self.snapshot.without(line_id))

    def toggle(self, line_id: str) -> None:
        self.snapshot = self.snapshot.toggle(line_id)

    def toggle_all(self) -> None:
        self.snapshot = self.snapshot.toggle_all()

    async def add_item(
        self,
        product_id: int,
        quantity: int = 1,
        size: Optional[str] = None,
        color: Optional[str] = None,
        image: Optional[str] = None,
        name: str = "",
        price: float = 0.0,
        stock: Optional[int] = None,
    ) -> bool:
        try:
            if self.authenticated:
                options = {k: v for k, v in (("color", color), ("image", image)) if v}
                await self.api.post("/api/cart/add", json={
                    "product_id": product_id,
                    "quantity": quantity,
                    "size": size,
                    "options": options or None,
                })
            else:
                self.local.add(CartLine(
                    id=guest_line_id(product_id, size, color),
                    product_id=str(product_id),
                    name=name,
                    unit_price=price,
                    quantity=quantity,
                    size=size,
                    color=color,
                    image_url=image,
                    stock_ceiling=stock,
                    options={"color": color} if color else None,
                ))
        except StorefrontError as e:
            self.events.publish(CART_ERROR, title="Unable to add to cart", message=e.message, error=e)
            return False
        await self.refresh()
        return True


class QuantityMutator:
    """Increment/decrement/remove against whichever cart is authoritative.

    A line id stays in ``_in_flight`` while its increment is awaiting the
    store; further increments on that line are dropped, not queued.
    """

    def __init__(self, session: CartSession):
        self.session = session
        self._in_flight: Set[str] = set()

    def is_updating(self, line_id: str) -> bool:
        return line_id in self._in_flight

    async def increment(self, line_id: str) -> bool:
        line = self.session.snapshot.get(line_id)
        if line is None:
            return False
        if line_id in self._in_flight:
            logger.debug("Increment on %s dropped, update already in flight", line_id)
            return False
        if line.at_stock_ceiling:
            self.session.events.publish(
                CART_STOCK_LIMIT,
                line_id=line_id,
                ceiling=line.stock_ceiling,
                message=f"Cannot add more. Only {line.stock_ceiling} items in stock.",
            )
            return False

        self._in_flight.add(line_id)
        try:
            return await self._apply(line, line.quantity + 1)
        finally:
            self._in_flight.discard(line_id)

    async def decrement(self, line_id: str) -> bool:
        line = self.session.snapshot.get(line_id)
        if line is None or line.quantity <= 1:
            return False
        return await self._apply(line, line.quantity - 1)

    async def remove_item(self, line_id: str) -> bool:
        try:
            await self.session.repository.remove(line_id)
        except StorefrontError as e:
            self._report(e, "Unable to remove item")
            await self.session.refresh()
            return False
        self.session.drop_line(line_id)
        return True

    async def _apply(self, line: CartLine, quantity: int) -> bool:
        try:
            updated = await self.session.repository.set_quantity(line.id, quantity)
        except StorefrontError as e:
            self._report(e, "Unable to update cart")
            # Displayed quantities are not trusted after a failure
            await self.session.refresh()
            return False
        self.session.replace_line(updated)
        return True

    def _report(self, error: StorefrontError, title: str) -> None:
        if isinstance(error, StockExceeded):
            title = error.title
        logger.warning("%s: %s", title, error.message)
        self.session.events.publish(CART_ERROR, title=title, message=error.message, error=error)
