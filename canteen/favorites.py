import json
import logging
from typing import List, Optional

from canteen.cart.remote_store import RemoteStore
from canteen.errors import StoreError
from canteen.identity import SessionContext
from canteen.local_cache import LocalCache

logger = logging.getLogger(__name__)

FAVORITES_KEY = "favorites"


class Favorites:
    """Favorite menu items: a local list while anonymous, the favorites table once signed in."""

    def __init__(self, context: SessionContext, cache: LocalCache, remote: Optional[RemoteStore] = None):
        self.context = context
        self.cache = cache
        self.remote = remote or RemoteStore()
        self.ids: List[str] = []

    def _read_local(self) -> List[str]:
        raw = self.cache.get(FAVORITES_KEY)
        if not raw:
            return []
        try:
            ids = json.loads(raw)
        except ValueError as e:
            logger.error("Failed to parse favorites from local cache: %s", e)
            return []
        return [str(i) for i in ids] if isinstance(ids, list) else []

    def _write_local(self) -> None:
        self.cache.set(FAVORITES_KEY, json.dumps(self.ids))

    async def load(self) -> List[str]:
        user_id = self.context.user_id
        if user_id is None:
            self.ids = self._read_local()
            return list(self.ids)
        try:
            self.ids = await self.remote.fetch_favorites(user_id)
        except StoreError as e:
            logger.error("Error loading favorites, using local list: %s", e)
            self.ids = self._read_local()
        return list(self.ids)

    def is_favorite(self, item_id: str) -> bool:
        return str(item_id) in self.ids

    async def add(self, item_id: str) -> None:
        item_id = str(item_id)
        if item_id not in self.ids:
            self.ids.append(item_id)
        user_id = self.context.user_id
        if user_id is not None:
            try:
                await self.remote.add_favorite(user_id, item_id)
                return
            except StoreError as e:
                logger.error("Error adding favorite %s, keeping it locally: %s", item_id, e)
        self._write_local()

    async def remove(self, item_id: str) -> None:
        item_id = str(item_id)
        self.ids = [i for i in self.ids if i != item_id]
        user_id = self.context.user_id
        if user_id is not None:
            try:
                await self.remote.remove_favorite(user_id, item_id)
                return
            except StoreError as e:
                logger.error("Error removing favorite %s, updating local list: %s", item_id, e)
        self._write_local()

    async def toggle(self, item_id: str) -> bool:
        """Flip an item's favorite flag and return the new value."""
        if self.is_favorite(item_id):
            await self.remove(item_id)
            return False
        await self.add(item_id)
        return True
