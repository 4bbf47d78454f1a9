from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

KNOWN_STATUSES = ("pending", "preparing", "ready", "completed")


class OrderItem(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[int] = None
    image: Optional[str] = None

    class Config:
        extra = "allow"


class OrderRecord(BaseModel):
    """
    One order as the backend and the local store exchange it.
    Unknown backend fields are kept so a server echo round-trips unchanged.
    """
    id: Optional[int] = None
    server_id: Optional[str] = Field(default=None, alias="_id")
    order_number: Optional[Union[int, str]] = Field(default=None, alias="orderId")
    status: Optional[str] = "pending"  # open set, see KNOWN_STATUSES
    items: List[OrderItem] = []
    total: Optional[Union[int, float]] = None
    customer_name: Optional[str] = Field(default=None, alias="customerName")
    timestamp: Optional[Union[int, float, str]] = None
    synced: bool = False
    dirty: bool = False
    retry_count: int = Field(default=0, alias="retryCount")
    synced_at: Optional[Union[int, float]] = Field(default=None, alias="syncedAt")
    quarantined: bool = False

    class Config:
        extra = "allow"
        populate_by_name = True

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def timestamp_ms(value: Any) -> Optional[float]:
    """Normalise an epoch-ms number or an ISO-8601 string to epoch milliseconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text).timestamp() * 1000
    except ValueError:
        return None


def sort_newest_first(orders: List[OrderRecord]) -> List[OrderRecord]:
    return sorted(orders, key=lambda o: timestamp_ms(o.timestamp) or 0.0, reverse=True)


class SyncResult(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    synced: Optional[int] = None
    pushed: Optional[int] = None
    quarantined: Optional[int] = None
    queued: Optional[bool] = None
    order: Optional[OrderRecord] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class DashboardStats(BaseModel):
    total_orders: int = Field(alias="totalOrders")
    pending_orders: int = Field(alias="pendingOrders")
    preparing_orders: int = Field(alias="preparingOrders")
    ready_orders: int = Field(alias="readyOrders")
    completed_orders: int = Field(alias="completedOrders")
    total_sales: float = Field(alias="totalSales")
    today_orders: int = Field(alias="todayOrders")
    today_sales: float = Field(alias="todaySales")

    class Config:
        populate_by_name = True


class QueueStats(BaseModel):
    total: int
    synced: int
    unsynced: int
    quarantined: int


class StatusUpdate(BaseModel):
    status: str


class OnlineUpdate(BaseModel):
    online: bool


class ProductPayload(BaseModel):
    name: str
    price: float
    category: Optional[str] = None
    image: Optional[str] = None

    class Config:
        extra = "allow"


class ProductsBulk(BaseModel):
    products: List[Dict[str, Any]]


class ImportPayload(BaseModel):
    orders: List[Dict[str, Any]] = []
