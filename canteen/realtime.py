"""Realtime change feed for the ``orders`` table.

Order rows written through any SQLAlchemy session are captured at flush time
and published once the transaction commits (a rollback drops them). Consumers
subscribe to ``order_feed``: the order service pushes the events to websocket
clients, and ``KafkaRelay`` shares them with other processes.
"""

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from fastapi import WebSocket
from sqlalchemy import event
from sqlalchemy.orm import Session

from canteen import config, models

logger = logging.getLogger(__name__)

PROCESS_ID = uuid.uuid4().hex
ALL_TABLES = "*"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event: str  # INSERT / UPDATE / DELETE
    record: dict
    origin: str = field(default=PROCESS_ID)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw) -> "ChangeEvent":
        data = json.loads(raw)
        return cls(table=data["table"], event=data["event"], record=data["record"], origin=data.get("origin", ""))


ChangeListener = Callable[[ChangeEvent], None]


class ChangeFeed:
    def __init__(self):
        self._listeners: Dict[str, List[ChangeListener]] = defaultdict(list)

    def subscribe(self, table: str, listener: ChangeListener) -> Callable[[], None]:
        self._listeners[table].append(listener)

        def unsubscribe():
            if listener in self._listeners[table]:
                self._listeners[table].remove(listener)

        return unsubscribe

    def publish(self, change: ChangeEvent) -> None:
        listeners = list(self._listeners[change.table]) + list(self._listeners[ALL_TABLES])
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                logger.exception("Change listener %r failed on %s %s", listener, change.event, change.table)


order_feed = ChangeFeed()


def schedule_on(loop: asyncio.AbstractEventLoop, coro):
    """Run ``coro`` on ``loop`` from either that loop or a worker thread."""
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        return loop.create_task(coro)
    return asyncio.run_coroutine_threadsafe(coro, loop)


# ==========================================
# CAPTURE FROM SQLALCHEMY SESSIONS
# ==========================================
_PENDING_KEY = "order_changes"


def _order_record(order: models.Order) -> dict:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "order_number": order.order_number,
        "status": order.status,
        "total_amount": order.total_amount,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }


@event.listens_for(Session, "after_flush")
def _collect_order_changes(session, flush_context):
    pending = session.info.setdefault(_PENDING_KEY, [])
    for obj in session.new:
        if isinstance(obj, models.Order):
            pending.append(ChangeEvent("orders", "INSERT", _order_record(obj)))
    for obj in session.dirty:
        if isinstance(obj, models.Order) and session.is_modified(obj):
            pending.append(ChangeEvent("orders", "UPDATE", _order_record(obj)))
    for obj in session.deleted:
        if isinstance(obj, models.Order):
            pending.append(ChangeEvent("orders", "DELETE", {"id": obj.id}))


@event.listens_for(Session, "after_commit")
def _publish_order_changes(session):
    for change in session.info.pop(_PENDING_KEY, []):
        order_feed.publish(change)


@event.listens_for(Session, "after_rollback")
def _discard_order_changes(session):
    session.info.pop(_PENDING_KEY, None)


# ==========================================
# WEBSOCKET CONNECTIONS
# ==========================================
class ConnectionManager:
    def __init__(self):
        # sockets grouped by channel ("admin", or a user id)
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, channel: str):
        await websocket.accept()
        self.active_connections.setdefault(channel, []).append(websocket)
        logger.info("Websocket connected to channel %s", channel)

    def disconnect(self, websocket: WebSocket, channel: str):
        sockets = self.active_connections.get(channel, [])
        if websocket in sockets:
            sockets.remove(websocket)
            logger.info("Websocket disconnected from channel %s", channel)

    async def send_message(self, message: str, channel: str):
        for connection in list(self.active_connections.get(channel, [])):
            try:
                await connection.send_text(message)
            except (RuntimeError, OSError) as e:
                logger.warning("Dropping websocket on %s: %s", channel, e)
                self.disconnect(connection, channel)

    async def push_change(self, change: ChangeEvent):
        message = change.to_json()
        await self.send_message(message, "admin")
        user_id = change.record.get("user_id")
        if user_id:
            await self.send_message(message, str(user_id))


# ==========================================
# KAFKA RELAY
# ==========================================
class KafkaRelay:
    """Shares a change feed between processes through one Kafka topic."""

    def __init__(self, feed: ChangeFeed, bootstrap_servers: Optional[str] = None, topic: Optional[str] = None):
        self.feed = feed
        self.bootstrap_servers = bootstrap_servers or config.KAFKA_BOOTSTRAP_SERVERS
        self.topic = topic or config.KAFKA_TOPIC
        self.producer: Optional[AIOKafkaProducer] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def start(self, max_retries: int = 10, delay: float = 5.0) -> bool:
        self._loop = asyncio.get_running_loop()
        producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
        for attempt in range(1, max_retries + 1):
            try:
                logger.info("Connecting to Kafka %s (attempt %d/%d)", self.bootstrap_servers, attempt, max_retries)
                await producer.start()
                break
            except Exception as e:
                logger.warning("Kafka not reachable yet: %s", e)
                if attempt == max_retries:
                    logger.error("Giving up on Kafka, change feed stays process-local")
                    return False
                await asyncio.sleep(delay)

        self.producer = producer
        self._unsubscribe = self.feed.subscribe(ALL_TABLES, self._forward)
        self._consumer_task = asyncio.create_task(self._consume())
        return True

    async def stop(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
        if self._consumer_task:
            self._consumer_task.cancel()
        if self.producer:
            await self.producer.stop()

    def _forward(self, change: ChangeEvent) -> None:
        # only events born here, the rest already came from Kafka
        if change.origin != PROCESS_ID or self._loop is None:
            return
        schedule_on(self._loop, self._send(change))

    async def _send(self, change: ChangeEvent) -> None:
        try:
            await self.producer.send_and_wait(self.topic, change.to_json().encode("utf-8"))
        except Exception as e:
            logger.error("Failed to relay %s %s to Kafka: %s", change.event, change.table, e)

    async def _consume(self) -> None:
        consumer = AIOKafkaConsumer(self.topic, bootstrap_servers=self.bootstrap_servers, auto_offset_reset="latest")
        await consumer.start()
        try:
            async for msg in consumer:
                try:
                    change = ChangeEvent.from_json(msg.value.decode("utf-8"))
                except (ValueError, KeyError) as e:
                    logger.warning("Ignoring malformed change message: %s", e)
                    continue
                if change.origin != PROCESS_ID:
                    self.feed.publish(change)
        finally:
            await consumer.stop()
