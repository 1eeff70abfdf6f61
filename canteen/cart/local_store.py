import json
import logging
from typing import Iterable, List, Optional

from canteen.cart.line_items import LineItem, decode_line_items, encode_line_items
from canteen.errors import SnapshotDecodeError
from canteen.local_cache import LocalCache

logger = logging.getLogger(__name__)

CART_KEY = "cart"
ITEM_KEY_PREFIX = "menu_item:"


class LocalCartStore:
    """The anonymous cart, stored under one well-known cache key."""

    def __init__(self, cache: LocalCache):
        self.cache = cache

    def read(self) -> List[LineItem]:
        raw = self.cache.get(CART_KEY)
        if not raw:
            return []
        try:
            return decode_line_items(raw)
        except SnapshotDecodeError as e:
            logger.error("Failed to parse cart from local cache: %s", e)
            return []

    def write(self, items: Iterable[LineItem]) -> None:
        self.cache.set(CART_KEY, encode_line_items(items))

    def clear(self) -> None:
        self.cache.remove(CART_KEY)

    # display prefetch only, never authoritative
    def remember_item(self, menu_item: dict) -> None:
        self.cache.set(ITEM_KEY_PREFIX + str(menu_item["id"]), json.dumps(menu_item))

    def recall_item(self, item_id: str) -> Optional[dict]:
        raw = self.cache.get(ITEM_KEY_PREFIX + str(item_id))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Dropping unreadable prefetch entry for menu item %s", item_id)
            self.cache.remove(ITEM_KEY_PREFIX + str(item_id))
            return None
