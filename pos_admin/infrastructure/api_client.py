"""HTTP client for the POS backend REST API."""
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from pos_admin.core_settings import Settings
from pos_admin.infrastructure.server_locator import ServerLocator


class ApiError(Exception):
    """Non-2xx answer from the backend."""

    def __init__(self, status_code: int, method: str, url: str, body: str = ""):
        self.status_code = status_code
        self.method = method
        self.url = url
        self.body = body[:1000]
        msg = f"{method} {url} failed with HTTP {status_code}"
        if self.body:
            msg = f"{msg}: {self.body[:200]}"
        super().__init__(msg)


def _decode(resp: httpx.Response) -> Any:
    if resp.status_code == 204 or not resp.content:
        return None
    content_type = resp.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        return resp.json()
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text}


class BackendApiClient:
    def __init__(self, client: httpx.AsyncClient, locator: ServerLocator, settings: Settings):
        self.client = client
        self.locator = locator
        self.settings = settings

    async def base_url(self, with_prefix: bool = True) -> str:
        resolution = await self.locator.resolve_server()
        if not with_prefix:
            return resolution.url
        return f"{resolution.url}{self.settings.API_PREFIX}"

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        with_prefix: bool = True,
    ) -> httpx.Response:
        url = f"{await self.base_url(with_prefix)}{path}"
        resp = await self.client.request(
            method,
            url,
            json=payload,
            params=params,
            headers={"Cache-Control": "no-cache"},
            timeout=self.settings.HTTP_TIMEOUT_SEC,
        )
        if resp.status_code >= 400:
            raise ApiError(resp.status_code, method, url, resp.text)
        return resp

    async def _json(self, method: str, path: str, payload: Optional[Any] = None,
                    params: Optional[Dict[str, Any]] = None) -> Any:
        return _decode(await self._request(method, path, payload, params))

    # Orders

    async def health(self) -> Any:
        return _decode(await self._request("GET", "/health", with_prefix=False))

    async def fetch_orders(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"status": status} if status else None
        data = await self._json("GET", "/orders", params=params)
        if isinstance(data, dict):
            data = data.get("orders", [])
        return list(data or [])

    async def fetch_order_by_number(self, order_number: Any) -> Optional[Dict[str, Any]]:
        return await self._json("GET", f"/orders/number/{quote(str(order_number), safe='')}")

    async def create_order(self, order: Dict[str, Any]) -> Any:
        return await self._json("POST", "/orders", order)

    async def sync_orders(self, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Bulk upsert; returns the orders the server acknowledged."""
        data = await self._json("POST", "/orders/sync", {"orders": orders})
        if isinstance(data, dict):
            return list(data.get("orders") or [])
        return list(data) if isinstance(data, list) else []

    async def update_order_status(self, server_id: str, status: str) -> Any:
        return await self._json("PATCH", f"/orders/{quote(str(server_id), safe='')}", {"status": status})

    async def delete_order(self, server_id: str) -> Any:
        return await self._json("DELETE", f"/orders/{quote(str(server_id), safe='')}")

    async def fetch_stats(self) -> Any:
        return await self._json("GET", "/stats")

    # Products

    async def fetch_products(self) -> Any:
        return await self._json("GET", "/products")

    async def sync_products(self, products: List[Dict[str, Any]]) -> Any:
        return await self._json("POST", "/products/bulk", {"products": products})

    async def create_product(self, product: Dict[str, Any]) -> Any:
        return await self._json("POST", "/products", product)

    async def update_product(self, product_id: str, product: Dict[str, Any]) -> Any:
        return await self._json("PUT", f"/products/{quote(str(product_id), safe='')}", product)

    async def delete_product(self, product_id: str) -> Any:
        return await self._json("DELETE", f"/products/{quote(str(product_id), safe='')}")

    # Offline queue flush

    async def sync_batch(self, orders: List[Dict[str, Any]]) -> Tuple[int, Any]:
        """POST queued orders to {base}/sync/batch; 200, 202 and 207 all count as accepted."""
        resp = await self._request("POST", "/sync/batch", orders, with_prefix=False)
        return resp.status_code, _decode(resp)
