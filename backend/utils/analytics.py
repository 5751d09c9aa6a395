from collections import Counter
from datetime import datetime, timedelta

from models.order import OrderPaymentStatus, OrderStatus
from utils.errors import ValidationFailedError
from utils.guards import parse_object_id
from utils.money import round_minor, sum_amounts, to_amount
from utils.permissions import VIEW_ANALYTICS, require_capability

PERIODS = {"day", "week", "month", "year"}


def _add_months(moment: datetime, months: int) -> datetime:
    index = moment.month - 1 + months
    return moment.replace(year=moment.year + index // 12, month=index % 12 + 1, day=1)


def bucket_starts(period: str, now: datetime) -> list[datetime]:
    """
    day   -> 24 hourly buckets
    week  -> 7 daily buckets
    month -> 30 daily buckets
    year  -> 12 monthly buckets
    """
    if period == "day":
        top = now.replace(minute=0, second=0, microsecond=0)
        return [top - timedelta(hours=h) for h in range(23, -1, -1)]
    if period in ("week", "month"):
        days = 7 if period == "week" else 30
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return [today - timedelta(days=d) for d in range(days - 1, -1, -1)]
    if period == "year":
        first = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return [_add_months(first, -m) for m in range(11, -1, -1)]
    raise ValidationFailedError(f"Unknown analytics period: {period}")


def _bucket_end(period: str, start: datetime) -> datetime:
    if period == "day":
        return start + timedelta(hours=1)
    if period == "year":
        return _add_months(start, 1)
    return start + timedelta(days=1)


def summarize_orders(orders: list, period: str, now: datetime) -> dict:
    starts = bucket_starts(period, now)
    buckets = [
        {"start": s, "end": _bucket_end(period, s), "revenue": [], "orders": 0}
        for s in starts
    ]

    paid = [o for o in orders if o.get("payment_status") == OrderPaymentStatus.PAID.value]
    for order in orders:
        for bucket in buckets:
            if bucket["start"] <= order["order_date"] < bucket["end"]:
                bucket["orders"] += 1
                if order.get("payment_status") == OrderPaymentStatus.PAID.value:
                    bucket["revenue"].append(order.get("total_amount"))
                break

    revenue = sum_amounts(o.get("total_amount") for o in paid)
    average = round_minor(revenue / len(paid)) if paid else round_minor(0)

    return {
        "period": period,
        "window_start": starts[0],
        "window_end": buckets[-1]["end"],
        "totals": {
            "revenue": to_amount(revenue),
            "order_count": len(orders),
            "paid_order_count": len(paid),
            "average_order_value": to_amount(average),
            "cancelled_count": sum(1 for o in orders if o.get("status") == OrderStatus.CANCELLED.value),
        },
        "buckets": [
            {
                "start": b["start"],
                "revenue": to_amount(sum_amounts(b["revenue"])),
                "orders": b["orders"],
            }
            for b in buckets
        ],
        "status_breakdown": dict(Counter(o.get("status") for o in orders)),
        "payment_status_breakdown": dict(Counter(o.get("payment_status") for o in orders)),
    }


async def get_dashboard_analytics(db, user: dict, organization_id, period: str = "week", now: datetime | None = None) -> dict:
    if period not in PERIODS:
        raise ValidationFailedError(f"Unknown analytics period: {period}")

    org_id = parse_object_id(organization_id, "organization_id")
    await require_capability(db, user, VIEW_ANALYTICS, org_id)

    now = now or datetime.utcnow()
    starts = bucket_starts(period, now)
    window_end = _bucket_end(period, starts[-1])

    orders = await db.orders.find(
        {
            "organization_id": org_id,
            "is_deleted": False,
            "order_date": {"$gte": starts[0], "$lt": window_end},
        },
        {"order_date": 1, "total_amount": 1, "status": 1, "payment_status": 1},
    ).to_list(None)

    return summarize_orders(orders, period, now)
