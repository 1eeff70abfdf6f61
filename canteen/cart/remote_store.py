import asyncio
import json
import logging
import random
import threading
import time
from contextlib import contextmanager
from typing import Callable, List, Optional, Sequence, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from canteen import models, realtime  # noqa: F401  realtime registers the order change hooks
from canteen.cart.line_items import LineItem, LineKey, encode_line_items
from canteen.database import SessionLocal
from canteen.errors import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def generate_order_number() -> str:
    return f"ORD-{str(int(time.time() * 1000))[-6:]}-{random.randint(0, 999)}"


def _encode_customizations(customizations: Sequence[str]) -> str:
    return json.dumps(list(customizations))


def _decode_customizations(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring unreadable customizations %r", raw)
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


class RemoteStore:
    """Per-identity rows in the shared database: cart lines, orders and favorites.

    Every public method is a coroutine so callers can treat the store as a
    network resource. Session work runs in a worker thread, one session at a
    time per store. Database failures surface as ``StoreError``.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or SessionLocal
        self._lock = threading.Lock()

    @contextmanager
    def _session(self, operation: str):
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(f"{operation} failed: {e}") from e
        finally:
            db.close()

    def _call(self, operation: str, work: Callable[[Session], T]) -> T:
        with self._lock, self._session(operation) as db:
            return work(db)

    async def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._call, operation, work)

    def _line_query(self, db: Session, user_id: str, key: LineKey):
        query = db.query(models.CartItem).filter(
            models.CartItem.user_id == user_id,
            models.CartItem.menu_item_id == key.item_id,
            models.CartItem.customizations == _encode_customizations(key.customizations),
        )
        if key.special_instructions is None:
            return query.filter(models.CartItem.special_instructions.is_(None))
        return query.filter(models.CartItem.special_instructions == key.special_instructions)

    # ==========================================
    # CART
    # ==========================================
    async def fetch_cart(self, user_id: str) -> List[LineItem]:
        def work(db: Session) -> List[LineItem]:
            rows = (
                db.query(models.CartItem)
                .options(joinedload(models.CartItem.menu_item))
                .filter(models.CartItem.user_id == user_id, models.CartItem.quantity > 0)
                .order_by(models.CartItem.id)
                .all()
            )
            items = []
            for row in rows:
                food = row.menu_item
                if food is None:
                    logger.warning("Cart row %s points at missing menu item %s", row.id, row.menu_item_id)
                    continue
                items.append(LineItem(
                    id=food.id,
                    name=food.name,
                    price=food.price,
                    quantity=row.quantity,
                    image=food.image_url,
                    customizations=_decode_customizations(row.customizations),
                    special_instructions=row.special_instructions,
                ))
            return items

        return await self._run("fetch cart", work)

    async def add_quantity(self, user_id: str, item: LineItem) -> int:
        """Upsert by line key: existing rows grow by ``item.quantity``."""
        def work(db: Session) -> int:
            row = self._line_query(db, user_id, item.key).first()
            if row:
                row.quantity += item.quantity
            else:
                row = models.CartItem(
                    user_id=user_id,
                    menu_item_id=item.item_id,
                    quantity=item.quantity,
                    special_instructions=item.special_instructions,
                    customizations=_encode_customizations(item.customizations),
                )
                db.add(row)
            db.commit()
            return row.quantity

        return await self._run("upsert cart line", work)

    async def set_quantity(self, user_id: str, key: LineKey, quantity: int) -> bool:
        def work(db: Session) -> bool:
            row = self._line_query(db, user_id, key).first()
            if not row:
                return False
            row.quantity = quantity
            db.commit()
            return True

        return await self._run("update cart line", work)

    async def delete_line(self, user_id: str, key: LineKey) -> int:
        def work(db: Session) -> int:
            deleted = self._line_query(db, user_id, key).delete(synchronize_session=False)
            db.commit()
            return deleted

        return await self._run("delete cart line", work)

    async def clear_cart(self, user_id: str) -> int:
        def work(db: Session) -> int:
            deleted = (
                db.query(models.CartItem)
                .filter(models.CartItem.user_id == user_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted

        return await self._run("clear cart", work)

    # ==========================================
    # ORDERS
    # ==========================================
    async def create_order(self, user_id: str, items: Sequence[LineItem], total_amount: float,
                           payment_method: str, pickup_time: str,
                           special_instructions: Optional[str] = None) -> str:
        def work(db: Session) -> str:
            order = models.Order(
                user_id=user_id,
                order_number=generate_order_number(),
                status="pending",
                total_amount=total_amount,
                order_items=encode_line_items(items),
                payment_method=payment_method,
                pickup_time=pickup_time,
                special_instructions=special_instructions,
            )
            db.add(order)
            db.flush()
            order_id = order.id
            db.commit()
            return order_id

        return await self._run("create order", work)

    async def fetch_orders(self, user_id: str) -> List[dict]:
        def work(db: Session) -> List[dict]:
            rows = (
                db.query(models.Order)
                .filter(models.Order.user_id == user_id)
                .order_by(models.Order.created_at.desc())
                .all()
            )
            return [
                {
                    "id": row.id,
                    "order_number": row.order_number,
                    "status": row.status,
                    "total_amount": row.total_amount,
                    "order_items": row.order_items,
                    "payment_method": row.payment_method,
                    "pickup_time": row.pickup_time,
                    "special_instructions": row.special_instructions,
                    "created_at": row.created_at,
                }
                for row in rows
            ]

        return await self._run("fetch orders", work)

    # ==========================================
    # FAVORITES
    # ==========================================
    async def fetch_favorites(self, user_id: str) -> List[str]:
        def work(db: Session) -> List[str]:
            rows = (
                db.query(models.Favorite)
                .filter(models.Favorite.user_id == user_id)
                .order_by(models.Favorite.id)
                .all()
            )
            return [row.menu_item_id for row in rows]

        return await self._run("fetch favorites", work)

    async def add_favorite(self, user_id: str, menu_item_id: str) -> None:
        def work(db: Session) -> None:
            db.add(models.Favorite(user_id=user_id, menu_item_id=menu_item_id))
            try:
                db.commit()
            except IntegrityError:
                # already a favorite
                db.rollback()

        await self._run("add favorite", work)

    async def remove_favorite(self, user_id: str, menu_item_id: str) -> None:
        def work(db: Session) -> None:
            db.query(models.Favorite).filter(
                models.Favorite.user_id == user_id,
                models.Favorite.menu_item_id == menu_item_id,
            ).delete(synchronize_session=False)
            db.commit()

        await self._run("remove favorite", work)
