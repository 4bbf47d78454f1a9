"""
Connectivity Signal

Tracks the platform online flag and the resolved server mode, and runs the
periodic timers: server re-detection, queued-change flush and server cache
invalidation.
"""
import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from pos_admin.infrastructure.server_locator import MODE_DISCONNECTED
from shared.core import get_logger

if TYPE_CHECKING:
    from pos_admin.context import SyncContext

logger = get_logger(__name__)


class ConnectivitySignal:
    def __init__(self, ctx: "SyncContext"):
        self.ctx = ctx
        self.settings = ctx.settings
        self.is_online = True
        self.mode: Optional[str] = None
        self.server_url: Optional[str] = None
        self.last_error: Optional[str] = None
        self.detecting = False
        self._tasks: List[asyncio.Task] = []

    async def set_online(self, online: bool) -> None:
        """Platform notification that the network went up or down."""
        online = bool(online)
        if online == self.is_online:
            return
        self.is_online = online
        self.ctx.locator.invalidate()
        if online:
            logger.info("Network connection restored")
            await self.detect_server()
            await self.ctx.service.sync_pending_orders()
        else:
            logger.warning("Network connection lost")
            self.mode = MODE_DISCONNECTED

    async def detect_server(self) -> Optional[Dict[str, str]]:
        if self.detecting:
            logger.debug("Server detection already running")
            return None
        self.detecting = True
        try:
            resolution = await self.ctx.locator.resolve_server()
            self.mode = resolution.mode
            self.server_url = resolution.url
            self.last_error = None
            return resolution.as_dict()
        except Exception as e:
            logger.error(f"Server detection failed: {e}")
            self.mode = MODE_DISCONNECTED
            self.last_error = str(e)
            return None
        finally:
            self.detecting = False

    async def flush(self) -> None:
        await self.ctx.service.sync_pending_orders()
        await self.ctx.service.flush_queue()

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._every(self.settings.DETECT_INTERVAL_SEC, self._detect_tick)),
            asyncio.create_task(self._every(self.settings.FLUSH_INTERVAL_SEC, self._flush_tick)),
            asyncio.create_task(self._every(self.settings.HEALTH_CHECK_INTERVAL_SEC, self._invalidate_tick)),
        ]
        logger.info("Connectivity timers started")

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Connectivity timers stopped")

    async def _every(self, interval: float, tick: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Periodic task failed", exc_info=True)

    async def _detect_tick(self) -> None:
        if self.is_online:
            await self.detect_server()

    async def _flush_tick(self) -> None:
        if self.is_online:
            await self.flush()

    async def _invalidate_tick(self) -> None:
        self.ctx.locator.invalidate()

    def status(self) -> Dict[str, Any]:
        try:
            queued = self.ctx.store.queue_stats().unsynced
        except Exception as e:
            logger.warning(f"Queue count unavailable: {e}")
            queued = None
        return {
            "is_online": self.is_online,
            "mode": self.mode if self.is_online else MODE_DISCONNECTED,
            "server_url": self.server_url,
            "queued_count": queued,
            "last_error": self.last_error,
            "detecting": self.detecting,
        }
