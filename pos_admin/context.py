"""
Sync session context.

Owns every long-lived collaborator of the sync core (local store, HTTP
client, server locator, real-time channel, connectivity timers) so a
process can run several independent sessions and tests can build one
against a temporary database and a mock transport.
"""
import asyncio
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set

import httpx

from pos_admin.application.service import OrderSyncService
from pos_admin.core_settings import Settings, get_settings
from pos_admin.infrastructure.api_client import BackendApiClient
from pos_admin.infrastructure.connectivity import ConnectivitySignal
from pos_admin.infrastructure.db import build_engine, build_session_factory, init_models
from pos_admin.infrastructure.realtime import RealtimeChannel, default_client_factory
from pos_admin.infrastructure.server_locator import ServerLocator
from pos_admin.infrastructure.store import OrderStore
from shared.core import get_logger

logger = get_logger(__name__)


class SyncContext:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        realtime_client_factory: Callable[[], Any] = default_client_factory,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        start_timers: bool = True,
    ):
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.start_timers = start_timers
        self._owns_client = client is None
        self.client = client if client is not None else httpx.AsyncClient(transport=transport)
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe: List[Callable[[], None]] = []
        self.is_open = False

        self.engine = build_engine(self.settings.ORDERS_DB_URL)
        self.session_factory = build_session_factory(self.engine)
        self.store = OrderStore(self.session_factory)
        self.locator = ServerLocator(
            self.settings,
            self.client,
            is_online=lambda: self.connectivity.is_online,
        )
        self.api = BackendApiClient(self.client, self.locator, self.settings)
        self.realtime = RealtimeChannel(self.locator, self.settings, realtime_client_factory)
        self.connectivity = ConnectivitySignal(self)
        self.service = OrderSyncService(self)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run a fire-and-forget coroutine owned by this context."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def open(self) -> "SyncContext":
        if self.is_open:
            return self
        version = init_models(self.engine)
        logger.info("Local order store ready", extra={'extra_fields': {'schema_version': version}})

        for event in self.settings.REALTIME_REFRESH_EVENTS:
            self._unsubscribe.append(self.realtime.on(event, self._refresh_from_event(event)))
        if self.settings.REALTIME_ENABLED:
            try:
                await self.realtime.open()
            except Exception as e:
                logger.warning(f"Realtime channel unavailable: {e}")

        if self.start_timers:
            await self.connectivity.detect_server()
            self.connectivity.start()
        self.is_open = True
        return self

    async def close(self) -> None:
        await self.connectivity.stop()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        await self.realtime.close()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._owns_client:
            await self.client.aclose()
        self.engine.dispose()
        self.is_open = False
        logger.info("Sync context closed")

    def _refresh_from_event(self, event: str) -> Callable[[Any], Awaitable[None]]:
        async def refresh(data: Any = None) -> None:
            logger.info(f"Realtime {event} received, refreshing orders")
            await self.service.fetch_orders()
        return refresh

    async def __aenter__(self) -> "SyncContext":
        return await self.open()

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
