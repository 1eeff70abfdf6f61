import asyncio
import json
import re

import pytest
from pydantic import ValidationError

from canteen import models
from canteen.cart.engine import CartEngine, CartState
from canteen.cart.local_store import CART_KEY, LocalCartStore
from canteen.cart.remote_store import RemoteStore
from canteen.errors import CheckoutValidationError, EmptyCartError, StoreError
from canteen.identity import SessionContext
from canteen.schemas import OrderStatus
from conftest import make_line, make_session


class BrokenRemote(RemoteStore):
    async def fetch_cart(self, user_id):
        raise StoreError("database down")

    async def add_quantity(self, user_id, item):
        raise StoreError("database down")

    async def fetch_orders(self, user_id):
        raise StoreError("database down")


class ChaiDown(RemoteStore):
    async def add_quantity(self, user_id, item):
        if item.item_id == "p2":
            raise StoreError("database down")
        return await super().add_quantity(user_id, item)


class OrdersDown(RemoteStore):
    async def create_order(self, *args, **kwargs):
        raise StoreError("database down")


class HeldOrders(RemoteStore):
    """Keeps create_order waiting until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.writing = asyncio.Event()
        self.release = asyncio.Event()

    async def create_order(self, *args, **kwargs):
        self.writing.set()
        await self.release.wait()
        return await super().create_order(*args, **kwargs)


async def sign_in(cart, context, user_id="u1"):
    context.attach(make_session(user_id))
    # attaching schedules a load
    await cart.flush()
    await cart.load()


def cart_rows(db, user_id="u1"):
    db.expire_all()
    return db.query(models.CartItem).filter(models.CartItem.user_id == user_id).order_by(models.CartItem.id).all()


async def test_sign_in_merges_local_into_remote(cart, context, cache, db, menu):
    db.add(models.CartItem(user_id="u1", menu_item_id="p1", quantity=1))
    db.commit()
    LocalCartStore(cache).write([make_line("p1", 3), make_line("p2", 1)])
    await cart.load()

    await sign_in(cart, context)

    assert cart.state is CartState.AUTHENTICATED
    assert [(i.item_id, i.quantity) for i in cart.items] == [("p1", 4), ("p2", 1)]
    assert cache.get(CART_KEY) is None
    assert [(r.menu_item_id, r.quantity) for r in cart_rows(db)] == [("p1", 4), ("p2", 1)]


async def test_merge_happens_once_per_identity(cart, context, cache, db, menu):
    LocalCartStore(cache).write([make_line("p1", 3)])
    await sign_in(cart, context)
    await cart.load()
    await cart.load()
    assert [(r.menu_item_id, r.quantity) for r in cart_rows(db)] == [("p1", 3)]


async def test_concurrent_loads_merge_once(cart, context, cache, db, menu):
    LocalCartStore(cache).write([make_line("p1", 3)])
    context.attach(make_session())
    await asyncio.gather(cart.load(), cart.load(), cart.load())
    await cart.flush()

    assert [(r.menu_item_id, r.quantity) for r in cart_rows(db)] == [("p1", 3)]
    assert cart.items[0].quantity == 3


async def test_remote_cart_loaded_with_menu_details(cart, context, db, menu):
    db.add(models.CartItem(user_id="u1", menu_item_id="p2", quantity=2,
                           special_instructions="less sugar", customizations=json.dumps(["oat milk"])))
    db.add(models.CartItem(user_id="u1", menu_item_id="gone", quantity=1))
    db.add(models.CartItem(user_id="u2", menu_item_id="p1", quantity=5))
    db.commit()

    await sign_in(cart, context)

    assert len(cart.items) == 1
    item = cart.items[0]
    assert (item.item_id, item.name, item.unit_price, item.quantity) == ("p2", "Masala Chai", 4.5, 2)
    assert item.customizations == ["oat milk"]
    assert item.special_instructions == "less sugar"


async def test_mutations_mirror_to_remote(cart, context, db, menu):
    await sign_in(cart, context)

    await cart.add_to_cart(make_line("p1", 1))
    await cart.add_to_cart(make_line("p1", 2))
    await cart.add_to_cart(make_line("p2", 1, customizations=["ginger"]))
    await cart.update_quantity("p2", 3, customizations=["ginger"])
    assert [(r.menu_item_id, r.quantity) for r in cart_rows(db)] == [("p1", 3), ("p2", 4)]

    await cart.remove_item("p1")
    assert [(r.menu_item_id, r.quantity) for r in cart_rows(db)] == [("p2", 4)]


async def test_removing_only_line_empties_remote_cart(cart, context, db, menu):
    await sign_in(cart, context)
    await cart.add_to_cart(make_line("p1", 1))
    await cart.update_quantity("p1", -1)

    assert cart.items == []
    assert cart_rows(db) == []
    assert await cart.load() == []


async def test_submit_order_snapshots_and_clears(cart, context, db, menu):
    await sign_in(cart, context)
    cart.add_to_cart(make_line("p1", 2, special_instructions="extra sauce"))
    cart.add_to_cart(make_line("p2", 1))

    order_id = await cart.submit_order("12:30", "cash", {"special_instructions": "pack separately"})

    db.expire_all()
    order = db.query(models.Order).filter(models.Order.id == order_id).one()
    assert order.user_id == "u1"
    assert order.status == "pending"
    assert order.payment_method == "cash"
    assert order.pickup_time == "12:30"
    assert order.special_instructions == "pack separately"
    assert order.total_amount == pytest.approx(24.5 * 1.08)
    assert order.order_number.startswith("ORD-")
    snapshot = json.loads(order.order_items)
    assert [(s["id"], s["quantity"], s["specialInstructions"]) for s in snapshot] == [
        ("p1", 2, "extra sauce"),
        ("p2", 1, None),
    ]

    assert cart.items == []
    assert cart_rows(db) == []


async def test_order_snapshot_is_independent_of_later_cart_changes(cart, context, db, menu):
    await sign_in(cart, context)
    await cart.add_to_cart(make_line("p1", 1))
    await cart.submit_order("13:00", "cash")
    await cart.add_to_cart(make_line("p1", 5))

    history = await cart.load_order_history()
    assert len(history) == 1
    assert [(i.item_id, i.quantity) for i in history[0].items] == [("p1", 1)]
    with pytest.raises(ValidationError):
        history[0].total_amount = 0


async def test_submit_empty_cart(cart, context, menu):
    await sign_in(cart, context)
    with pytest.raises(EmptyCartError, match="Your cart is empty"):
        await cart.submit_order("12:30", "cash")


@pytest.mark.parametrize("method, payload, message", [
    ("upi", {}, "Please enter a valid UPI ID"),
    ("card", {"card_number": "4111 1111"}, "Please enter a valid card number"),
    ("card", {"card_number": "4111 1111 1111 1111", "card_name": "A B", "card_expiry": "13/27",
              "card_cvv": "123"}, "Please enter a valid expiry date (MM/YY)"),
])
async def test_invalid_checkout_leaves_cart_untouched(cart, context, db, menu, method, payload, message):
    await sign_in(cart, context)
    await cart.add_to_cart(make_line("p1", 1))

    with pytest.raises(CheckoutValidationError, match=re.escape(message)):
        await cart.submit_order("12:30", method, payload)

    assert len(cart.items) == 1
    assert db.query(models.Order).count() == 0


async def test_blank_pickup_time_rejected(cart, context, menu):
    await sign_in(cart, context)
    await cart.add_to_cart(make_line("p1", 1))
    with pytest.raises(CheckoutValidationError, match="Please choose a pickup time"):
        await cart.submit_order("  ", "cash")


async def test_history_skips_unreadable_orders(cart, context, db, menu):
    db.add(models.Order(id="good", user_id="u1", order_number="ORD-1", status="ready", total_amount=10.8,
                        order_items=json.dumps([make_line("p1", 1).to_snapshot()]), payment_method="upi"))
    db.add(models.Order(id="bad", user_id="u1", order_number="ORD-2", status="pending", total_amount=5,
                        order_items="{not json", payment_method="cash"))
    db.add(models.Order(id="weird-status", user_id="u1", status="lost", total_amount=5,
                        order_items="[]", payment_method="cash"))
    db.add(models.Order(id="other", user_id="u2", status="pending", total_amount=5, order_items="[]"))
    db.commit()
    await sign_in(cart, context)

    history = await cart.load_order_history()
    assert [o.id for o in history] == ["good"]
    assert history[0].status is OrderStatus.READY
    assert history[0].items[0].name == "Paneer Wrap"


async def test_order_number_falls_back_to_id_prefix(cart, context, db, menu):
    db.add(models.Order(id="abcdef123456", user_id="u1", status="pending", total_amount=1, order_items="[]"))
    db.commit()
    await sign_in(cart, context)
    history = await cart.load_order_history()
    assert history[0].order_number == "abcdef12"


async def test_sign_out_resets_to_empty_anonymous_cart(cart, context, menu):
    await sign_in(cart, context)
    await cart.add_to_cart(make_line("p1", 2))

    context.detach()

    assert cart.state is CartState.ANONYMOUS
    assert cart.items == []
    assert await cart.load() == []


async def test_switching_user_loads_their_cart(cart, context, db, menu):
    db.add(models.CartItem(user_id="u2", menu_item_id="p2", quantity=2))
    db.commit()
    await sign_in(cart, context, "u1")
    await cart.add_to_cart(make_line("p1", 1))

    context.detach()
    await sign_in(cart, context, "u2")
    assert [(i.item_id, i.quantity) for i in cart.items] == [("p2", 2)]


async def test_remote_failure_falls_back_to_local_items(cache, menu):
    LocalCartStore(cache).write([make_line("p1", 2)])
    context = SessionContext(cache)
    broken = CartEngine(context, LocalCartStore(cache), BrokenRemote())
    try:
        await broken.load()
        context.attach(make_session())
        await broken.flush()

        assert broken.state is CartState.AUTHENTICATED
        assert [(i.item_id, i.quantity) for i in broken.items] == [("p1", 2)]

        # the write fails, the in-memory change stays
        await broken.add_to_cart(make_line("p2", 1))
        assert [i.item_id for i in broken.items] == ["p1", "p2"]
        assert await broken.load_order_history() == []
    finally:
        broken.close()


async def test_session_restored_from_cache_loads_remote_cart(cache, db, menu):
    SessionContext(cache).attach(make_session())
    db.add(models.CartItem(user_id="u1", menu_item_id="p1", quantity=4))
    db.commit()

    context = SessionContext(cache)
    restored = CartEngine(context, LocalCartStore(cache), RemoteStore())
    try:
        items = await restored.load()
        assert restored.state is CartState.AUTHENTICATED
        assert [(i.item_id, i.quantity) for i in items] == [("p1", 4)]
    finally:
        restored.close()


def rows_by_item(db, user_id="u1"):
    return [(r.menu_item_id, r.quantity) for r in cart_rows(db, user_id)]


async def test_second_merge_with_empty_local_changes_nothing(cart, context, cache, db, menu):
    LocalCartStore(cache).write([make_line("p1", 2), make_line("p2", 1)])
    await sign_in(cart, context)
    before = rows_by_item(db)

    assert await cart.merge([]) == 0
    await cart.load()

    assert rows_by_item(db) == before == [("p1", 2), ("p2", 1)]


async def test_partial_merge_keeps_lines_that_made_it(cache, db, menu):
    LocalCartStore(cache).write([make_line("p1", 3), make_line("p2", 1)])
    context = SessionContext(cache)
    engine = CartEngine(context, LocalCartStore(cache), ChaiDown())
    try:
        await sign_in(engine, context)
        assert engine.state is CartState.AUTHENTICATED
        assert rows_by_item(db) == [("p1", 3)]
        assert [(i.item_id, i.quantity) for i in engine.items] == [("p1", 3)]
        # cleared so the merged line is never counted twice
        assert cache.get(CART_KEY) is None
    finally:
        engine.close()


async def test_failed_order_write_leaves_cart_alone(cache, db, menu):
    context = SessionContext(cache)
    engine = CartEngine(context, LocalCartStore(cache), OrdersDown())
    try:
        await sign_in(engine, context)
        await engine.add_to_cart(make_line("p1", 2))
        await engine.add_to_cart(make_line("p2", 1))

        with pytest.raises(StoreError):
            await engine.submit_order("12:30", "cash")

        assert [(i.item_id, i.quantity) for i in engine.items] == [("p1", 2), ("p2", 1)]
        assert rows_by_item(db) == [("p1", 2), ("p2", 1)]
        assert db.query(models.Order).count() == 0
    finally:
        engine.close()


async def test_lines_added_during_submit_stay_in_cart(cache, db, menu):
    context = SessionContext(cache)
    remote = HeldOrders()
    engine = CartEngine(context, LocalCartStore(cache), remote)
    try:
        await sign_in(engine, context)
        await engine.add_to_cart(make_line("p1", 1))

        submit = asyncio.ensure_future(engine.submit_order("12:30", "cash"))
        await remote.writing.wait()
        engine.add_to_cart(make_line("p2", 1))
        engine.add_to_cart(make_line("p1", 1))
        remote.release.set()
        order_id = await submit

        db.expire_all()
        order = db.query(models.Order).filter(models.Order.id == order_id).one()
        assert [(s["id"], s["quantity"]) for s in json.loads(order.order_items)] == [("p1", 1)]
        assert [(i.item_id, i.quantity) for i in engine.items] == [("p1", 1), ("p2", 1)]
        assert rows_by_item(db) == [("p1", 1), ("p2", 1)]
    finally:
        engine.close()
