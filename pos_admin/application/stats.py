from datetime import datetime, timedelta
from typing import Iterable, Optional

from pos_admin.application.schemas import DashboardStats, OrderRecord, timestamp_ms


def _amount(order: OrderRecord) -> float:
    try:
        return float(order.total or 0)
    except (TypeError, ValueError):
        return 0.0


def compute_stats(orders: Iterable[OrderRecord], now: Optional[datetime] = None) -> DashboardStats:
    """Counters and sales figures shown on the dashboard; "today" is the local calendar day."""
    orders = list(orders)
    now = now or datetime.now()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_day = midnight.timestamp() * 1000
    end_of_day = (midnight + timedelta(days=1)).timestamp() * 1000

    today = []
    for order in orders:
        ts = timestamp_ms(order.timestamp)
        if ts is not None and start_of_day <= ts < end_of_day:
            today.append(order)

    def count(status: str) -> int:
        return len([o for o in orders if o.status == status])

    return DashboardStats(
        total_orders=len(orders),
        pending_orders=count("pending"),
        preparing_orders=count("preparing"),
        ready_orders=count("ready"),
        completed_orders=count("completed"),
        total_sales=sum(_amount(o) for o in orders),
        today_orders=len(today),
        today_sales=sum(_amount(o) for o in today),
    )
