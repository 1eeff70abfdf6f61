import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi import status as http_status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from canteen import config, models, reporting
from canteen.cart.line_items import decode_line_items
from canteen.database import get_db, init_db
from canteen.errors import SnapshotDecodeError
from canteen.realtime import ConnectionManager, KafkaRelay, order_feed, schedule_on
from canteen.schemas import ACTIVE_STATUSES, CLOSED_STATUSES, OrderStatus
from canteen.security import decode_token, get_current_user, require_admin

logger = logging.getLogger(__name__)

manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.setup_logging()
    init_db()

    loop = asyncio.get_running_loop()
    unsubscribe = order_feed.subscribe("orders", lambda change: schedule_on(loop, manager.push_change(change)))

    relay = None
    if config.KAFKA_BOOTSTRAP_SERVERS:
        relay = KafkaRelay(order_feed)
        if not await relay.start():
            relay = None

    yield

    unsubscribe()
    if relay:
        await relay.stop()


app = FastAPI(title="Canteen Order Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- DTOs ---
class OrderResponse(BaseModel):
    id: str
    user_id: str
    order_number: Optional[str] = None
    status: str
    total_amount: float
    items: List[dict] = []
    payment_method: Optional[str] = None
    pickup_time: Optional[str] = None
    special_instructions: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    special_events: List[str] = []
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None


class SpecialOrderCreate(BaseModel):
    event_name: str

    @field_validator("event_name")
    @classmethod
    def validate_event_name(cls, v):
        if not v.strip():
            raise ValueError("Event name is required")
        return v.strip()


def _order_out(order: models.Order, profile: Optional[models.Profile] = None) -> OrderResponse:
    try:
        items = [item.to_snapshot() for item in decode_line_items(order.order_items)]
    except SnapshotDecodeError as e:
        logger.warning("Order %s has unreadable items: %s", order.id, e)
        items = []
    return OrderResponse(
        id=order.id,
        user_id=order.user_id,
        order_number=order.order_number,
        status=order.status,
        total_amount=order.total_amount or 0,
        items=items,
        payment_method=order.payment_method,
        pickup_time=order.pickup_time,
        special_instructions=order.special_instructions,
        created_at=order.created_at,
        updated_at=order.updated_at,
        special_events=[s.event_name for s in order.special_orders],
        customer_name=profile.name if profile else None,
        customer_email=profile.email if profile else None,
        customer_phone=profile.phone if profile else None,
    )


def _get_order(db: Session, order_id: str) -> models.Order:
    order = db.query(models.Order).filter(models.Order.id == order_id).first()
    if not order:
        raise HTTPException(404, "Order not found")
    return order


# --- API ---
@app.get("/orders", response_model=List[OrderResponse])
def get_orders(
    status: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(models.Order, models.Profile).outerjoin(
        models.Profile, models.Profile.id == models.Order.user_id
    )
    if user.get("role") != "admin":
        query = query.filter(models.Order.user_id == user["id"])
    if status:
        query = query.filter(models.Order.status == status)
    if scope == "active":
        query = query.filter(models.Order.status.in_([s.value for s in ACTIVE_STATUSES]))
    elif scope == "closed":
        query = query.filter(models.Order.status.in_([s.value for s in CLOSED_STATUSES]))
    elif scope:
        raise HTTPException(400, f"Unknown scope '{scope}'")

    rows = query.order_by(models.Order.created_at.desc()).all()
    is_admin = user.get("role") == "admin"
    return [_order_out(order, profile if is_admin else None) for order, profile in rows]


@app.get("/orders/{order_id}", response_model=OrderResponse)
def get_order_detail(order_id: str, user: dict = Depends(get_current_user), db: Session = Depends(get_db)):
    order = _get_order(db, order_id)
    if user.get("role") != "admin":
        if order.user_id != user["id"]:
            raise HTTPException(404, "Order not found")
        return _order_out(order)
    profile = db.query(models.Profile).filter(models.Profile.id == order.user_id).first()
    return _order_out(order, profile)


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, status: str, user: dict = Depends(require_admin),
                        db: Session = Depends(get_db)):
    try:
        new_status = OrderStatus(status)
    except ValueError:
        raise HTTPException(400, f"Unknown status '{status}'")

    order = _get_order(db, order_id)
    order.status = new_status.value
    db.commit()
    logger.info("Order %s moved to %s by %s", order_id, new_status.value, user.get("id"))
    return {"message": "Status updated", "status": order.status}


@app.post("/orders/{order_id}/special")
def mark_special_order(order_id: str, payload: SpecialOrderCreate, user: dict = Depends(require_admin),
                       db: Session = Depends(get_db)):
    _get_order(db, order_id)
    special = models.SpecialOrder(order_id=order_id, event_name=payload.event_name)
    db.add(special)
    db.commit()
    db.refresh(special)
    return {"id": special.id, "order_id": order_id, "event_name": special.event_name}


@app.get("/stats")
def get_stats(time_range: str = Query("week", alias="range"), user: dict = Depends(require_admin),
              db: Session = Depends(get_db)):
    if time_range not in reporting.RANGE_DAYS:
        raise HTTPException(400, f"Unknown range '{time_range}'")

    orders = [
        {
            "id": o.id,
            "status": o.status,
            "total_amount": o.total_amount,
            "created_at": o.created_at,
            "order_items": o.order_items,
        }
        for o in db.query(models.Order).all()
    ]
    categories = {
        item.id: (item.category_id, item.category.name if item.category else "Other")
        for item in db.query(models.MenuItem).all()
    }
    return {
        "range": time_range,
        "orders_by_day": reporting.orders_by_day(orders, time_range),
        "orders_by_month": reporting.orders_by_month(orders),
        "popular_items": reporting.popular_items(orders),
        "category_sales": reporting.category_sales(orders, categories),
    }


# --- WEBSOCKET ---
@app.websocket("/ws/orders")
async def orders_websocket(websocket: WebSocket, token: Optional[str] = Query(None)):
    payload = decode_token(token)
    if not payload or not payload.get("id"):
        await websocket.close(code=http_status.WS_1008_POLICY_VIOLATION)
        return

    channel = "admin" if payload.get("role") == "admin" else str(payload["id"])
    await manager.connect(websocket, channel)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket, channel)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8003)
