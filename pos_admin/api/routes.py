from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from pos_admin.application.schemas import (
    ImportPayload,
    OnlineUpdate,
    ProductPayload,
    ProductsBulk,
    StatusUpdate,
)
from pos_admin.context import SyncContext
from pos_admin.infrastructure.api_client import ApiError
from shared.core import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["dashboard"])


def get_context(request: Request) -> SyncContext:
    ctx = getattr(request.app.state, "sync_context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Sync context not ready")
    return ctx


async def _proxy(call) -> Any:
    """Forward a backend call; upstream failures become 502 (or the upstream status)."""
    try:
        return await call()
    except ApiError as e:
        raise HTTPException(status_code=e.status_code, detail=e.body or str(e))
    except Exception as e:
        logger.warning(f"Backend request failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))


# Orders

@router.get("/orders")
async def list_orders(status: Optional[str] = None, ctx: SyncContext = Depends(get_context)) -> List[Dict[str, Any]]:
    orders = await ctx.service.fetch_orders(status)
    return [o.to_wire() for o in orders]


@router.post("/orders", status_code=201)
async def enqueue_order(payload: Dict[str, Any], ctx: SyncContext = Depends(get_context)):
    """Store an order originated elsewhere; it is pushed on the next sync."""
    result = ctx.service.enqueue_order(payload)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    return result.to_wire()


@router.patch("/orders/{ref}")
async def update_order_status(ref: str, payload: StatusUpdate, ctx: SyncContext = Depends(get_context)):
    if not payload.status.strip():
        raise HTTPException(status_code=422, detail="Status must not be empty")
    result = await ctx.service.update_order_status(ref, payload.status)
    if not result.success and result.error == "Order not found":
        raise HTTPException(status_code=404, detail=result.error)
    return result.to_wire()


@router.delete("/orders/{ref}")
async def delete_order(ref: str, ctx: SyncContext = Depends(get_context)):
    result = await ctx.service.delete_order(ref)
    if not result.success and result.error == "Order not found":
        raise HTTPException(status_code=404, detail=result.error)
    return result.to_wire()


# Stats

@router.get("/stats")
async def dashboard_stats(ctx: SyncContext = Depends(get_context)):
    stats = await ctx.service.dashboard_stats()
    return stats.model_dump(by_alias=True)


@router.get("/stats/server")
async def server_stats(ctx: SyncContext = Depends(get_context)):
    stats = await ctx.service.fetch_server_stats()
    if stats is None:
        raise HTTPException(status_code=502, detail="Server stats unavailable")
    return stats


# Sync and offline queue

@router.post("/sync")
async def sync_with_server(ctx: SyncContext = Depends(get_context)):
    return (await ctx.service.sync_with_server()).to_wire()


@router.post("/sync/pending")
async def sync_pending(ctx: SyncContext = Depends(get_context)):
    return (await ctx.service.sync_pending_orders()).to_wire()


@router.get("/queue")
def queue_stats(ctx: SyncContext = Depends(get_context)):
    return ctx.store.queue_stats().model_dump()


@router.post("/queue/release")
def release_quarantine(ctx: SyncContext = Depends(get_context)):
    return {"released": ctx.store.release_quarantine()}


@router.get("/export")
def export_orders(ctx: SyncContext = Depends(get_context)):
    return ctx.store.export_all()


@router.post("/import")
def import_orders(payload: ImportPayload, ctx: SyncContext = Depends(get_context)):
    try:
        count = ctx.store.import_all(payload.model_dump())
    except Exception as e:
        logger.error("Import failed", exc_info=True)
        raise HTTPException(status_code=400, detail=f"Import failed: {e}")
    return {"success": True, "imported": count}


# Network

@router.get("/network")
def network_status(ctx: SyncContext = Depends(get_context)):
    return ctx.connectivity.status()


@router.post("/network/online")
async def set_online(payload: OnlineUpdate, ctx: SyncContext = Depends(get_context)):
    await ctx.connectivity.set_online(payload.online)
    return ctx.connectivity.status()


@router.post("/network/detect")
async def detect_server(ctx: SyncContext = Depends(get_context)):
    ctx.locator.invalidate()
    await ctx.connectivity.detect_server()
    return ctx.connectivity.status()


@router.get("/network/servers")
async def test_servers(ctx: SyncContext = Depends(get_context)):
    return {
        "config": ctx.locator.server_config(),
        "reachable": await ctx.locator.test_all_servers(),
    }


# Products (pass-through to the backend)

@router.get("/products")
async def list_products(ctx: SyncContext = Depends(get_context)):
    return await _proxy(ctx.api.fetch_products)


@router.post("/products", status_code=201)
async def create_product(payload: ProductPayload, ctx: SyncContext = Depends(get_context)):
    return await _proxy(lambda: ctx.api.create_product(payload.model_dump(exclude_none=True)))


@router.put("/products/{product_id}")
async def update_product(product_id: str, payload: ProductPayload, ctx: SyncContext = Depends(get_context)):
    return await _proxy(lambda: ctx.api.update_product(product_id, payload.model_dump(exclude_none=True)))


@router.delete("/products/{product_id}")
async def delete_product(product_id: str, ctx: SyncContext = Depends(get_context)):
    return await _proxy(lambda: ctx.api.delete_product(product_id))


@router.post("/products/bulk")
async def sync_products(payload: ProductsBulk, ctx: SyncContext = Depends(get_context)):
    return await _proxy(lambda: ctx.api.sync_products(payload.products))
