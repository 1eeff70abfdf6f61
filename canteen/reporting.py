"""Order statistics for the admin dashboard.

Every function takes plain order dicts (``status``, ``total_amount``,
``created_at``, ``order_items``) so the same code serves the order service
and offline reports. Cancelled orders never count.
"""

import datetime
import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from canteen.cart.line_items import LineItem, decode_line_items
from canteen.errors import SnapshotDecodeError

logger = logging.getLogger(__name__)

RANGE_DAYS = {"week": 7, "month": 30, "year": 365}
UNCATEGORIZED = ("other", "Other")


def _utc_today() -> datetime.date:
    # order timestamps are stored as naive UTC
    return datetime.datetime.now(datetime.timezone.utc).date()


def _counted(orders: Iterable[dict]) -> List[dict]:
    return [o for o in orders if o.get("status") != "cancelled"]


def _order_date(order: dict) -> Optional[datetime.date]:
    created = order.get("created_at")
    if isinstance(created, datetime.datetime):
        return created.date()
    if isinstance(created, datetime.date):
        return created
    if isinstance(created, str) and created:
        try:
            return datetime.datetime.fromisoformat(created).date()
        except ValueError:
            logger.warning("Unparseable order date %r", created)
    return None


def _line_items(order: dict) -> List[LineItem]:
    try:
        return decode_line_items(order.get("order_items"))
    except SnapshotDecodeError as e:
        logger.warning("Skipping items of order %s: %s", order.get("id"), e)
        return []


def orders_by_day(orders: Iterable[dict], time_range: str = "week",
                  today: Optional[datetime.date] = None) -> List[dict]:
    """Daily order count and revenue over the window ending ``today``, oldest first.

    Days without orders are present with zero count and revenue.
    """
    if time_range not in RANGE_DAYS:
        raise ValueError(f"Unknown range '{time_range}'")
    today = today or _utc_today()
    days = RANGE_DAYS[time_range]

    buckets: "OrderedDict[datetime.date, dict]" = OrderedDict()
    for offset in range(days - 1, -1, -1):
        day = today - datetime.timedelta(days=offset)
        buckets[day] = {"date": day.isoformat(), "count": 0, "revenue": 0.0}

    for order in _counted(orders):
        bucket = buckets.get(_order_date(order))
        if bucket is None:
            continue
        bucket["count"] += 1
        bucket["revenue"] = round(bucket["revenue"] + float(order.get("total_amount") or 0), 2)
    return list(buckets.values())


def orders_by_month(orders: Iterable[dict], months: int = 12,
                    today: Optional[datetime.date] = None) -> List[dict]:
    today = today or _utc_today()
    keys = []
    year, month = today.year, today.month
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    buckets = OrderedDict((k, {"month": k, "count": 0, "revenue": 0.0}) for k in reversed(keys))

    for order in _counted(orders):
        day = _order_date(order)
        if day is None:
            continue
        bucket = buckets.get(f"{day.year:04d}-{day.month:02d}")
        if bucket is None:
            continue
        bucket["count"] += 1
        bucket["revenue"] = round(bucket["revenue"] + float(order.get("total_amount") or 0), 2)
    return list(buckets.values())


def popular_items(orders: Iterable[dict], limit: int = 5) -> List[dict]:
    counts: Dict[str, dict] = {}
    for order in _counted(orders):
        for item in _line_items(order):
            entry = counts.setdefault(item.item_id, {"item_id": item.item_id, "item_name": item.name, "count": 0})
            entry["count"] += item.quantity
    # ties keep first-seen order
    ranked = sorted(counts.values(), key=lambda e: e["count"], reverse=True)
    return ranked[:limit]


def category_sales(orders: Iterable[dict], categories: Mapping[str, Tuple[str, str]]) -> List[dict]:
    """Units sold and revenue per category, largest revenue first.

    ``categories`` maps a menu item id to ``(category_id, category_name)``;
    items missing from it are reported under "Other".
    """
    sales: Dict[str, dict] = {}
    for order in _counted(orders):
        for item in _line_items(order):
            category_id, category_name = categories.get(item.item_id, UNCATEGORIZED)
            entry = sales.setdefault(
                category_id,
                {"category_id": category_id, "category_name": category_name, "count": 0, "revenue": 0.0},
            )
            entry["count"] += item.quantity
            entry["revenue"] = round(entry["revenue"] + item.line_total, 2)
    return sorted(sales.values(), key=lambda e: e["revenue"], reverse=True)
