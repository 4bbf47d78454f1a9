"""
Order sync orchestrator.

Reconciles the local order cache with the backend: pulls the full list,
pushes queued and locally modified orders, and applies admin actions
(status change, delete) online or offline. Public methods never raise;
failures are logged and reported in a SyncResult.
"""
import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from pos_admin.application.schemas import OrderRecord, SyncResult, DashboardStats, sort_newest_first
from pos_admin.application.stats import compute_stats
from pos_admin.infrastructure.retry import exponential_backoff, is_retryable_error
from pos_admin.infrastructure.server_locator import MODE_DISCONNECTED
from pos_admin.infrastructure.store import OrderNotFoundError, resolve_order_key
from shared.core import get_logger, sync_operation_context

if TYPE_CHECKING:
    from pos_admin.context import SyncContext

logger = get_logger(__name__)

T = TypeVar("T")

BATCH_ACCEPTED = (200, 201, 202, 207)


class ServerUnavailableError(ConnectionError):
    pass


class OrderSyncService:
    def __init__(self, ctx: "SyncContext"):
        self.ctx = ctx
        self.settings = ctx.settings
        self.store = ctx.store
        self.api = ctx.api
        self.locator = ctx.locator
        # single-flight guards: one pull and one push at a time
        self._pull_lock = asyncio.Lock()
        self._push_lock = asyncio.Lock()
        self._consecutive_failures = 0

    # -- helpers ------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self.ctx.connectivity.is_online

    async def _call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run a backend call with backoff on transient failures, tracking failure streaks."""
        try:
            result = await exponential_backoff(
                fn,
                max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
                base_delay=self.settings.RETRY_BASE_DELAY_SEC,
                max_delay=self.settings.RETRY_MAX_DELAY_SEC,
                should_retry=is_retryable_error,
                sleep=self.ctx.sleep,
            )
        except Exception:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self.settings.FAILURES_BEFORE_REDETECT:
                self.locator.invalidate()
                self._consecutive_failures = 0
            raise
        self._consecutive_failures = 0
        return result

    async def _require_server(self) -> None:
        resolution = await self.locator.resolve_server()
        if resolution.mode == MODE_DISCONNECTED:
            raise ServerUnavailableError("No reachable server")

    async def _resolve_server_id(self, order: OrderRecord) -> Optional[str]:
        """Cached server id, else look the order up by its number."""
        if order.server_id:
            return order.server_id
        if order.order_number is None:
            return None
        server_order = await self._call(lambda: self.api.fetch_order_by_number(order.order_number))
        if isinstance(server_order, dict) and server_order.get("_id"):
            return str(server_order["_id"])
        return None

    # -- pull ---------------------------------------------------------------

    async def fetch_orders(self, status: Optional[str] = None) -> List[OrderRecord]:
        """Fresh list from the server (cached locally), else the local cache."""
        async with self._pull_lock:
            with sync_operation_context("pull"):
                if self.is_online:
                    try:
                        await self._require_server()
                        raw = await self._call(lambda: self.api.fetch_orders(status))
                        if status:
                            fetched = [OrderRecord.model_validate(o) for o in raw]
                            return sort_newest_first(fetched)
                        orders = self.store.replace_all(raw)
                        logger.info(
                            "Fetched orders from server",
                            extra={'extra_fields': {'count': len(raw)}}
                        )
                        return sort_newest_first(orders)
                    except Exception as e:
                        logger.warning(f"Using cached orders (fetch error): {e}")
                return self._cached_orders(status)

    def _cached_orders(self, status: Optional[str] = None) -> List[OrderRecord]:
        try:
            orders = self.store.get_all_sorted()
        except Exception:
            logger.error("Reading cached orders failed", exc_info=True)
            return []
        if status:
            orders = [o for o in orders if o.status == status]
        logger.info("Returned orders from cache", extra={'extra_fields': {'count': len(orders)}})
        return orders

    async def sync_with_server(self) -> SyncResult:
        if not self.is_online:
            logger.info("Offline - sync skipped")
            return SyncResult(success=False, message="Offline")
        async with self._pull_lock:
            with sync_operation_context("pull"):
                try:
                    await self._require_server()
                    raw = await self._call(lambda: self.api.fetch_orders())
                    orders = self.store.replace_all(raw)
                except Exception as e:
                    logger.error(f"Sync error: {e}")
                    return SyncResult(success=False, error=str(e))
        logger.info("Sync completed", extra={'extra_fields': {'count': len(orders)}})
        return SyncResult(success=True, synced=len(orders))

    # -- push ---------------------------------------------------------------

    async def sync_pending_orders(self) -> SyncResult:
        """Push unsynced orders in bulk, then push pending status changes."""
        if not self.is_online:
            logger.info("Offline - pending sync skipped")
            return SyncResult(success=False, message="Offline")
        async with self._push_lock:
            with sync_operation_context("push"):
                try:
                    await self._require_server()
                    synced, quarantined = await self._push_unsynced()
                    pushed = await self._push_dirty()
                except Exception as e:
                    logger.error(f"Sync pending orders failed: {e}")
                    return SyncResult(success=False, error=str(e))
        logger.info(
            "Pending orders synced",
            extra={'extra_fields': {'synced': synced, 'pushed': pushed, 'quarantined': quarantined}}
        )
        return SyncResult(success=True, synced=synced, pushed=pushed, quarantined=quarantined or None)

    async def _push_unsynced(self) -> "tuple[int, int]":
        pending = self.store.get_unsynced()
        if not pending:
            return 0, 0
        logger.info(f"Syncing {len(pending)} pending orders to server")
        sent_status = {o.id: o.status for o in pending}
        try:
            acknowledged = await self._call(lambda: self.api.sync_orders([o.to_wire() for o in pending]))
        except Exception:
            self.store.record_push_failure([o.id for o in pending], self.settings.MAX_PUSH_ATTEMPTS)
            raise

        sent = [
            (o.id, None, str(o.order_number) if o.order_number is not None else None)
            for o in pending
        ]
        synced_keys = set()
        for server_order in acknowledged:
            ack = OrderRecord.model_validate(server_order)
            # the ack's server id may be new; match the batch first
            remaining = [row for row in sent if row[0] not in synced_keys]
            key = resolve_order_key(remaining, ack.id, None, ack.order_number)
            if key is None:
                key = self.store.resolve_key(server_id=ack.server_id)
                if key in synced_keys:
                    key = None
            self.store.apply_server_ack(key, server_order, sent_status.get(key))
            if key is not None:
                synced_keys.add(key)

        missing = [o.id for o in pending if o.id not in synced_keys]
        quarantined = 0
        if missing:
            logger.warning(
                "Server did not acknowledge some orders",
                extra={'extra_fields': {'keys': missing}}
            )
            quarantined = self.store.record_push_failure(missing, self.settings.MAX_PUSH_ATTEMPTS)
        return len(synced_keys), quarantined

    async def _push_dirty(self) -> int:
        pushed = 0
        for order in self.store.get_dirty():
            label = order.order_number or order.server_id or order.id
            try:
                server_id = await self._resolve_server_id(order)
                if not server_id:
                    logger.warning(f"No server id for dirty order {label}, skipped")
                    continue
                await self._call(lambda: self.api.update_order_status(server_id, order.status))
                self.store.mark_pushed(order.id, order.status, server_id)
                pushed += 1
                logger.info(f"Pushed status update to server for {label}")
            except Exception as e:
                logger.warning(f"Failed to push dirty status for {label}: {e}")
                self.store.record_push_failure([order.id], self.settings.MAX_PUSH_ATTEMPTS)
        return pushed

    async def flush_queue(self) -> SyncResult:
        """Send queued orders to the batch endpoint and mark the accepted ones."""
        if not self.is_online:
            return SyncResult(success=False, message="Offline")
        async with self._push_lock:
            with sync_operation_context("flush"):
                try:
                    queued = self.store.get_unsynced()
                    if not queued:
                        return SyncResult(success=True, synced=0)
                    await self._require_server()
                    logger.info(f"Auto-syncing {len(queued)} queued orders")
                    status_code, data = await self._call(
                        lambda: self.api.sync_batch([o.to_wire() for o in queued])
                    )
                    if status_code not in BATCH_ACCEPTED:
                        return SyncResult(success=False, error=f"Batch sync answered HTTP {status_code}")
                    ids = []
                    if isinstance(data, dict) and data.get("synced"):
                        ids = [o.get("id") for o in (data.get("orders") or []) if isinstance(o, dict) and o.get("id")]
                    count = self.store.mark_synced(ids) if ids else 0
                    return SyncResult(success=True, synced=count)
                except Exception as e:
                    logger.warning(f"Auto-sync attempt failed: {e}")
                    return SyncResult(success=False, error=str(e))

    # -- admin actions ------------------------------------------------------

    async def update_order_status(self, ref: Any, status: str) -> SyncResult:
        local = self.store.find(ref)
        if local is None:
            logger.warning(f"Status update for unknown order {ref}")
            return SyncResult(success=False, error="Order not found")

        if self.is_online:
            try:
                await self._require_server()
                server_id = await self._resolve_server_id(local)
                if server_id:
                    await self._call(lambda: self.api.update_order_status(server_id, status))
                    self.store.update_status(local.id, status)
                    self.store.mark_pushed(local.id, status, server_id)
                    await self.fetch_orders()
                    self._notify("orderStatusUpdated", {"_id": server_id, "status": status})
                    return SyncResult(success=True, order=self.store.find(local.id))
            except Exception as e:
                logger.info(f"Server update failed, using local: {e}")

        try:
            order = self.store.update_status(local.id, status)
        except OrderNotFoundError as e:
            return SyncResult(success=False, error=str(e))
        except Exception as e:
            logger.error("Status update failed", exc_info=True)
            return SyncResult(success=False, error=str(e))
        return SyncResult(success=True, queued=True, order=order)

    async def delete_order(self, ref: Any) -> SyncResult:
        if not self.is_online:
            logger.warning("Cannot delete while offline")
            return SyncResult(success=False, error="Cannot delete while offline")

        local = self.store.find(ref)
        if local is None:
            logger.warning(f"Order to delete not found locally: {ref}")
            return SyncResult(success=False, error="Order not found")

        self.store.delete(local.id)
        logger.info(f"Order deleted locally: {local.order_number or local.server_id or local.id}")

        try:
            await self._require_server()
            server_id = await self._resolve_server_id(local)
            if server_id:
                await self._call(lambda: self.api.delete_order(server_id))
                await self.sync_with_server()
        except Exception as e:
            logger.warning(f"Server delete failed: {e}")
        return SyncResult(success=True, order=local)

    def enqueue_order(self, order: Dict[str, Any]) -> SyncResult:
        try:
            record = self.store.enqueue(order)
        except Exception as e:
            logger.error("Failed to enqueue order", exc_info=True)
            return SyncResult(success=False, error=str(e))
        return SyncResult(success=True, queued=True, order=record)

    async def dashboard_stats(self) -> DashboardStats:
        return compute_stats(await self.fetch_orders())

    async def fetch_server_stats(self) -> Optional[Dict[str, Any]]:
        try:
            await self._require_server()
            return await self._call(lambda: self.api.fetch_stats())
        except Exception as e:
            logger.warning(f"Fetch stats failed: {e}")
            return None

    def _notify(self, event: str, data: Dict[str, Any]) -> None:
        realtime = self.ctx.realtime
        if realtime is None or not realtime.connected:
            return

        async def emit() -> None:
            try:
                await realtime.emit_event(event, data)
            except Exception as e:
                logger.warning(f"Realtime emit {event} failed: {e}")

        self.ctx.spawn(emit())
