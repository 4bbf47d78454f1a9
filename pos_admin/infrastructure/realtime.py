"""
Real-time channel to the backend (socket.io).

Reconnects forever with a 1-5 second backoff; a drop invalidates the
server cache so the next resolution re-probes the candidates.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import socketio
from socketio.exceptions import TimeoutError as SocketTimeoutError

from pos_admin.core_settings import Settings
from pos_admin.infrastructure.server_locator import ServerLocator
from shared.core import get_logger

logger = get_logger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventTimeoutError(TimeoutError):
    pass


class ChannelClosedError(ConnectionError):
    pass


def default_client_factory() -> socketio.AsyncClient:
    return socketio.AsyncClient(
        reconnection=True,
        reconnection_attempts=0,  # unlimited
        reconnection_delay=1,
        reconnection_delay_max=5,
    )


class RealtimeChannel:
    def __init__(
        self,
        locator: ServerLocator,
        settings: Settings,
        client_factory: Callable[[], Any] = default_client_factory,
    ):
        self.locator = locator
        self.settings = settings
        self.client_factory = client_factory
        self.sio: Optional[Any] = None
        self.url: Optional[str] = None
        self._listeners: Dict[str, List[Handler]] = {}

    @property
    def connected(self) -> bool:
        return bool(self.sio is not None and self.sio.connected)

    async def open(self) -> Any:
        resolution = await self.locator.resolve_server()
        if self.sio is not None and self.url == resolution.url and self.sio.connected:
            return self.sio

        await self.close()

        sio = self.client_factory()
        sio.on("connect", self._on_connect)
        sio.on("disconnect", self._on_disconnect)
        sio.on("connect_error", self._on_connect_error)
        for event in self._listeners:
            sio.on(event, self._dispatcher(event))

        self.sio = sio
        self.url = resolution.url
        await sio.connect(resolution.url, transports=["websocket", "polling"])
        return sio

    async def close(self) -> None:
        if self.sio is not None:
            sio, self.sio = self.sio, None
            self.url = None
            try:
                await sio.disconnect()
            except Exception as e:
                logger.warning(f"Socket disconnect failed: {e}")

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to a server event; returns the unsubscribe callable."""
        handlers = self._listeners.setdefault(event, [])
        if not handlers and self.sio is not None:
            self.sio.on(event, self._dispatcher(event))
        handlers.append(handler)

        def remove() -> None:
            if handler in self._listeners.get(event, []):
                self._listeners[event].remove(handler)

        return remove

    async def emit_event(self, event: str, data: Any = None) -> Any:
        """Emit and wait for the server acknowledgement."""
        if self.sio is None:
            await self.open()
        if not self.connected:
            raise ChannelClosedError(f"Socket not connected, cannot emit {event}")
        try:
            return await self.sio.call(event, data, timeout=self.settings.REALTIME_ACK_TIMEOUT_SEC)
        except SocketTimeoutError as e:
            raise EventTimeoutError(f"Event timeout: {event}") from e

    def _dispatcher(self, event: str) -> Callable[[Any], Awaitable[None]]:
        async def dispatch(data: Any = None) -> None:
            for handler in list(self._listeners.get(event, [])):
                try:
                    result = handler(data)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:
                    logger.error(f"Handler for {event} failed", exc_info=True)
        return dispatch

    async def _on_connect(self) -> None:
        logger.info(f"Socket connected: {self.url}")

    async def _on_disconnect(self, *args: Any) -> None:
        reason = args[0] if args else None
        logger.warning(f"Socket disconnected: {reason}")
        if reason != "client disconnect":
            self.locator.invalidate()

    async def _on_connect_error(self, data: Any = None) -> None:
        logger.error(f"Socket connection error: {data}")
        self.locator.invalidate()
