"""Cart reconciliation engine.

The engine owns the in-memory list of line items and mirrors every change to
exactly one backing store: the device-local cache while nobody is signed in,
the identity's remote rows once a session is attached.

Mutations are two-phase. The in-memory cart changes synchronously and the
method returns a future for the backing-store write. UI code can ignore the
future; order submission waits for all of them. A failed write is logged and
never rolls back the in-memory change.

When a session is attached the engine moves ``anonymous -> merging ->
authenticated`` once per identity, merging the local cart into the remote one
(quantities are added) and then clearing the local cache.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Set

from pydantic import ValidationError

from canteen.cart.line_items import CartTotals, LineItem, LineKey, compute_totals, decode_line_items, line_key
from canteen.cart.local_store import LocalCartStore
from canteen.cart.remote_store import RemoteStore
from canteen.errors import (
    AuthenticationRequired,
    CheckoutValidationError,
    EmptyCartError,
    SnapshotDecodeError,
    StoreError,
)
from canteen.identity import Session, SessionContext
from canteen.schemas import CheckoutRequest, OrderRecord

logger = logging.getLogger(__name__)


class CartState(str, Enum):
    ANONYMOUS = "anonymous"
    MERGING = "merging"
    AUTHENTICATED = "authenticated"


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    message = errors[0].get("msg", str(exc))
    # pydantic prefixes errors raised from validators
    return message.replace("Value error, ", "", 1)


class CartEngine:
    def __init__(self, context: SessionContext, local: LocalCartStore, remote: RemoteStore):
        self.context = context
        self.local = local
        self.remote = remote

        self.items: List[LineItem] = []
        self.history: List[OrderRecord] = []
        self.state = CartState.ANONYMOUS

        self._owner: Optional[str] = None
        self._transition = asyncio.Lock()
        self._pending: Set[asyncio.Future] = set()
        self._unsubscribe = context.subscribe(self._on_session_change)

    # ==========================================
    # DERIVED VALUES
    # ==========================================
    @property
    def totals(self) -> CartTotals:
        return compute_totals(self.items)

    @property
    def subtotal(self) -> float:
        return self.totals.subtotal

    @property
    def tax(self) -> float:
        return self.totals.tax

    @property
    def total(self) -> float:
        return self.totals.total

    @property
    def item_count(self) -> int:
        return self.totals.item_count

    # ==========================================
    # LOAD & MERGE
    # ==========================================
    async def load(self) -> List[LineItem]:
        local_items = self.local.read()
        session = self.context.session
        if session is None:
            self.state = CartState.ANONYMOUS
            self._owner = None
            self.items = local_items
            return self.items

        user_id = session.user_id
        async with self._transition:
            if self.state is not CartState.AUTHENTICATED or self._owner != user_id:
                if not await self._attach(user_id, local_items):
                    return self.items

        try:
            remote_items = await self.remote.fetch_cart(user_id)
        except StoreError as e:
            logger.error("Failed to fetch remote cart for %s, using local copy: %s", user_id, e)
            self.items = local_items
            return self.items

        if self.context.user_id != user_id:
            # signed out while the fetch was in flight
            return self.items
        self.items = remote_items
        return self.items

    async def _attach(self, user_id: str, local_items: Sequence[LineItem]) -> bool:
        self.state = CartState.MERGING
        if local_items:
            await self.merge(local_items, user_id)
            self._clear_local()

        if self.context.user_id != user_id:
            self.state = CartState.ANONYMOUS
            return False
        self._owner = user_id
        self.state = CartState.AUTHENTICATED
        return True

    async def merge(self, local_items: Sequence[LineItem], user_id: Optional[str] = None) -> int:
        """Add every local line to the remote cart; returns how many lines made it."""
        user_id = user_id or self.context.user_id
        if user_id is None:
            raise AuthenticationRequired("Cannot merge a cart without a signed-in user")

        merged = 0
        for item in local_items:
            try:
                await self.remote.add_quantity(user_id, item)
                merged += 1
            except StoreError as e:
                logger.error("Failed to merge item %s into remote cart: %s", item.item_id, e)
        if local_items:
            logger.info("Merged %d/%d local cart lines for %s", merged, len(local_items), user_id)
        return merged

    def _on_session_change(self, session: Optional[Session]) -> None:
        if session is None:
            self.state = CartState.ANONYMOUS
            self._owner = None
            self.items = []
            return
        if self._owner == session.user_id:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, cart merge waits for the next load()")
            return
        self._track(loop.create_task(self.load()))

    # ==========================================
    # MUTATIONS
    # ==========================================
    def add_to_cart(self, item: LineItem) -> asyncio.Future:
        if item.quantity < 1:
            raise ValueError("quantity must be at least 1")
        addition = item.model_copy(deep=True)
        existing = self._find(addition.key)
        if existing is not None:
            existing.quantity += addition.quantity
        else:
            self.items.append(addition.model_copy(deep=True))
        return self._mirror("add item", lambda owner: self.remote.add_quantity(owner, addition))

    def update_quantity(self, item_id: str, delta: int, customizations: Optional[Sequence[str]] = None,
                        special_instructions: Optional[str] = None) -> asyncio.Future:
        key = line_key(item_id, customizations, special_instructions)
        existing = self._find(key)
        if existing is None:
            return self._resolved()

        new_quantity = existing.quantity + delta
        if new_quantity <= 0:
            return self.remove_item(item_id, customizations, special_instructions)
        existing.quantity = new_quantity
        return self._mirror("update quantity", lambda owner: self.remote.set_quantity(owner, key, new_quantity))

    def remove_item(self, item_id: str, customizations: Optional[Sequence[str]] = None,
                    special_instructions: Optional[str] = None) -> asyncio.Future:
        key = line_key(item_id, customizations, special_instructions)
        self.items = [item for item in self.items if item.key != key]
        return self._mirror("remove item", lambda owner: self.remote.delete_line(owner, key))

    def clear_cart(self) -> asyncio.Future:
        self.items = []
        self._clear_local()
        owner = self.context.user_id
        if owner is None:
            return self._resolved()
        task = asyncio.get_running_loop().create_task(
            self._remote_write("clear cart", owner, self.remote.clear_cart))
        return self._track(task)

    # ==========================================
    # ORDERS
    # ==========================================
    async def submit_order(self, pickup_time: str, payment_method: str, payload: Optional[dict] = None) -> str:
        session = self.context.session
        if session is None:
            raise AuthenticationRequired("You must be logged in to place an order")
        if not self.items:
            raise EmptyCartError("Your cart is empty")

        data = dict(payload or {})
        data.update(pickup_time=pickup_time, payment_method=payment_method)
        try:
            checkout = CheckoutRequest.model_validate(data)
        except ValidationError as e:
            raise CheckoutValidationError(_first_error(e)) from e

        # queued mirror writes must land before the snapshot is taken
        await self.flush()
        snapshot = [item.model_copy(deep=True) for item in self.items]
        if not snapshot:
            raise EmptyCartError("Your cart is empty")
        totals = compute_totals(snapshot)

        order_id = await self.remote.create_order(
            session.user_id,
            snapshot,
            totals.total,
            checkout.payment_method.value,
            checkout.pickup_time,
            checkout.special_instructions,
        )
        logger.info("Order %s placed by %s: %d items, total %.2f",
                    order_id, session.user_id, totals.item_count, totals.total)
        await self._remove_ordered(snapshot)
        return order_id

    async def _remove_ordered(self, snapshot: Sequence[LineItem]) -> None:
        """Take the ordered quantities out of the cart, keeping anything added meanwhile."""
        await self.flush()
        for ordered in snapshot:
            self.update_quantity(ordered.item_id, -ordered.quantity,
                                 ordered.customizations, ordered.special_instructions)
        if not self.items:
            self.clear_cart()
        await self.flush()

    async def load_order_history(self) -> List[OrderRecord]:
        user_id = self.context.user_id
        if user_id is None:
            self.history = []
            return self.history
        try:
            rows = await self.remote.fetch_orders(user_id)
        except StoreError as e:
            logger.error("Failed to load order history for %s: %s", user_id, e)
            self.history = []
            return self.history

        history = []
        for row in rows:
            try:
                items = decode_line_items(row.get("order_items"))
                history.append(OrderRecord(
                    id=row["id"],
                    order_number=row.get("order_number") or row["id"][:8],
                    status=row["status"],
                    total_amount=row["total_amount"],
                    items=tuple(items),
                    payment_method=row.get("payment_method"),
                    pickup_time=row.get("pickup_time"),
                    special_instructions=row.get("special_instructions"),
                    created_at=row.get("created_at"),
                ))
            except (SnapshotDecodeError, ValidationError) as e:
                logger.warning("Skipping unreadable order %s: %s", row.get("id"), e)
        self.history = history
        return self.history

    # ==========================================
    # SYNC PLUMBING
    # ==========================================
    async def flush(self) -> None:
        """Wait for every backing-store write queued so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def close(self) -> None:
        self._unsubscribe()

    def _find(self, key: LineKey) -> Optional[LineItem]:
        for item in self.items:
            if item.key == key:
                return item
        return None

    def _clear_local(self) -> None:
        try:
            self.local.clear()
        except StoreError as e:
            logger.error("Failed to clear local cart: %s", e)

    def _resolved(self) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        future.set_result(None)
        return future

    def _track(self, future: asyncio.Future) -> asyncio.Future:
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        return future

    def _mirror(self, description: str, remote_write: Callable[[str], Awaitable]) -> asyncio.Future:
        owner = self.context.user_id
        if owner is None:
            try:
                self.local.write(self.items)
            except StoreError as e:
                logger.error("Failed to %s in local cart: %s", description, e)
            return self._resolved()
        task = asyncio.get_running_loop().create_task(self._remote_write(description, owner, remote_write))
        return self._track(task)

    async def _remote_write(self, description: str, owner: str, write: Callable[[str], Awaitable]) -> None:
        try:
            await write(owner)
        except StoreError as e:
            logger.error("Failed to %s in remote cart for %s: %s", description, owner, e)
