import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest
from socketio.exceptions import TimeoutError as SocketTimeoutError

from pos_admin.context import SyncContext
from pos_admin.core_settings import Settings


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory POS backend served through httpx.MockTransport."""

    LOCALHOST = "http://localhost:3001"
    LAN = "http://192.168.1.50:3001"
    CLOUD = "http://cloud.example.com"

    def __init__(self):
        self.up: Dict[str, bool] = {self.LOCALHOST: True, self.LAN: False, self.CLOUD: False}
        self.health_codes: Dict[str, int] = {}
        self.orders: List[Dict[str, Any]] = []
        self.products: List[Dict[str, Any]] = [{"_id": "p1", "name": "Latte", "price": 3.5}]
        self.requests: List[tuple] = []
        self.fail_next: List[int] = []
        self.drop_acks: set = set()
        self.batch_status = 200
        self.assign_ids: List[str] = []
        self.echo_local_ids = True
        self._next_id = 1

    def server_id(self) -> str:
        value = f"srv-{self._next_id}"
        self._next_id += 1
        return value

    def add_order(self, **fields: Any) -> Dict[str, Any]:
        order = {"_id": self.server_id(), "status": "pending", "items": [], "total": 0}
        order.update(fields)
        self.orders.append(order)
        return order

    def api_calls(self, method: Optional[str] = None) -> List[tuple]:
        return [r for r in self.requests if r[2] != "/health" and (method is None or r[0] == method)]

    def _find(self, server_id: str) -> Optional[Dict[str, Any]]:
        for order in self.orders:
            if order.get("_id") == server_id:
                return order
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = request.url
        base = f"{url.scheme}://{url.host}" + (f":{url.port}" if url.port else "")
        path = url.path
        method = request.method
        self.requests.append((method, base, path))

        if not self.up.get(base, False):
            raise httpx.ConnectError("connect ECONNREFUSED", request=request)
        if path == "/health":
            return httpx.Response(self.health_codes.get(base, 200), json={"status": "ok"})
        if self.fail_next:
            return httpx.Response(self.fail_next.pop(0), json={"error": "unavailable"})

        body = json.loads(request.content) if request.content else None

        if path == "/sync/batch" and method == "POST":
            return httpx.Response(
                self.batch_status,
                json={"synced": True, "orders": [{"id": o.get("id")} for o in body]},
            )

        if path == "/api/orders" and method == "GET":
            status = url.params.get("status")
            return httpx.Response(200, json=[o for o in self.orders if not status or o.get("status") == status])

        if path == "/api/orders" and method == "POST":
            return httpx.Response(201, json=self.add_order(**body))

        if path == "/api/orders/sync" and method == "POST":
            acks = []
            for order in body["orders"]:
                if order.get("orderId") in self.drop_acks:
                    continue
                stored = dict(order)
                if self.assign_ids:
                    stored["_id"] = self.assign_ids.pop(0)
                stored.setdefault("_id", self.server_id())
                stored.pop("id", None)
                stored["synced"] = True
                self.orders.append(stored)
                acks.append(dict(stored, id=order.get("id")) if self.echo_local_ids else dict(stored))
            return httpx.Response(200, json={"success": True, "orders": acks})

        if path.startswith("/api/orders/number/") and method == "GET":
            number = path.rsplit("/", 1)[-1]
            for order in self.orders:
                if str(order.get("orderId")) == number:
                    return httpx.Response(200, json=order)
            return httpx.Response(404, json={"error": "Order not found"})

        if path.startswith("/api/orders/"):
            order = self._find(path.rsplit("/", 1)[-1])
            if order is None:
                return httpx.Response(404, json={"error": "Order not found"})
            if method == "PATCH":
                order.update(body)
                return httpx.Response(200, json=order)
            if method == "DELETE":
                self.orders.remove(order)
                return httpx.Response(200, json={"success": True})

        if path == "/api/stats" and method == "GET":
            return httpx.Response(200, json={"totalOrders": len(self.orders)})

        if path == "/api/products":
            if method == "GET":
                return httpx.Response(200, json=self.products)
            product = dict(body, _id=self.server_id())
            self.products.append(product)
            return httpx.Response(201, json=product)
        if path == "/api/products/bulk" and method == "POST":
            self.products = list(body["products"])
            return httpx.Response(200, json={"success": True, "count": len(self.products)})
        if path.startswith("/api/products/"):
            product_id = path.rsplit("/", 1)[-1]
            product = next((p for p in self.products if p.get("_id") == product_id), None)
            if product is None:
                return httpx.Response(404, json={"error": "Product not found"})
            if method == "PUT":
                product.update(body)
                return httpx.Response(200, json=product)
            if method == "DELETE":
                self.products.remove(product)
                return httpx.Response(200, json={"success": True})

        return httpx.Response(404, json={"error": f"No route {method} {path}"})


class FakeSocket:
    """Stand-in for socketio.AsyncClient recording what the channel does."""

    def __init__(self, refuse=False, ack_timeout=False):
        self.handlers = {}
        self.connected = False
        self.connect_urls = []
        self.calls = []
        self.refuse = refuse
        self.ack_timeout = ack_timeout

    def on(self, event, handler):
        self.handlers[event] = handler

    async def connect(self, url, transports=None):
        self.connect_urls.append(url)
        self.connected = not self.refuse

    async def disconnect(self):
        self.connected = False

    async def call(self, event, data=None, timeout=None):
        self.calls.append((event, data, timeout))
        if self.ack_timeout:
            raise SocketTimeoutError()
        return {"ok": True}


class SocketFactory:
    def __init__(self, **options):
        self.options = options
        self.created = []

    def __call__(self):
        sock = FakeSocket(**self.options)
        self.created.append(sock)
        return sock


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        LOCALHOST_SERVER_URL=FakeBackend.LOCALHOST,
        LOCAL_SERVER_URL=FakeBackend.LAN,
        CLOUD_SERVER_URL=FakeBackend.CLOUD,
        ORDERS_DB_URL=f"sqlite:///{tmp_path / 'orders.sqlite'}",
        REALTIME_ENABLED=False,
        RETRY_BASE_DELAY_SEC=0.01,
        MAX_PUSH_ATTEMPTS=3,
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_ctx(settings, backend, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    def build(**overrides):
        ctx_settings = overrides.pop("settings", settings)
        kwargs = dict(
            transport=httpx.MockTransport(backend.handler),
            sleep=fake_sleep,
            start_timers=False,
        )
        kwargs.update(overrides)
        return SyncContext(ctx_settings, **kwargs)

    return build


@pytest.fixture
def ctx(make_ctx):
    context = make_ctx()
    asyncio.run(context.open())
    yield context
    asyncio.run(context.close())
