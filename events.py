from __future__ import annotations
import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

logger = logging.getLogger(__name__)

CART_CHANGED = "cart:changed"
CART_STOCK_LIMIT = "cart:stock-limit"
CART_ERROR = "cart:error"

Handler = Callable[..., Any]


class EventBus:
    """Publish/subscribe channel for cart notifications (nav badge, toasts)."""

    def __init__(self):
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[topic]:
                self._handlers[topic].remove(handler)

        return unsubscribe

    def publish(self, topic: str, **payload: Any) -> None:
        for handler in list(self._handlers[topic]):
            try:
                handler(**payload)
            except Exception:
                # One broken subscriber must not stop the others
                logger.exception("Handler for %s failed", topic)

    def cart_changed(self, total: int) -> None:
        self.publish(CART_CHANGED, total=total)
