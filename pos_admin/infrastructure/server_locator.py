"""
Server Locator

Probes the candidate backends in priority order (same machine, LAN, cloud)
and remembers the first reachable one for a few seconds.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import httpx
from cachetools import TTLCache

from pos_admin.core_settings import Settings
from shared.core import get_logger

logger = get_logger(__name__)

MODE_LOCALHOST = "localhost"
MODE_LOCAL = "local"
MODE_ONLINE = "online"
MODE_DISCONNECTED = "disconnected"

_CACHE_KEY = "server"


@dataclass(frozen=True)
class ServerResolution:
    url: str
    mode: str

    def as_dict(self) -> Dict[str, str]:
        return {"url": self.url, "mode": self.mode}


class ServerLocator:
    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        is_online: Callable[[], bool] = lambda: True,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.client = client
        self.is_online = is_online
        self.localhost_url = settings.LOCALHOST_SERVER_URL.rstrip("/")
        self.local_url = settings.LOCAL_SERVER_URL.rstrip("/")
        self.local_network_urls = [u.rstrip("/") for u in settings.LOCAL_NETWORK_URLS]
        self.cloud_url = settings.CLOUD_SERVER_URL.rstrip("/")
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=settings.SERVER_CACHE_TTL_SEC, timer=timer)

    def candidates(self) -> List[Tuple[str, str, float]]:
        """(url, mode, probe timeout) in probing order, duplicates removed."""
        probe = self.settings.PROBE_TIMEOUT_SEC
        ordered = [(self.localhost_url, MODE_LOCALHOST, probe)]
        for url in [self.local_url, *self.local_network_urls]:
            ordered.append((url, MODE_LOCAL, probe))
        if self.is_online():
            ordered.append((self.cloud_url, MODE_ONLINE, self.settings.CLOUD_PROBE_TIMEOUT_SEC))
        seen = set()
        result = []
        for url, mode, timeout in ordered:
            if not url or url in seen:
                continue
            seen.add(url)
            result.append((url, mode, timeout))
        return result

    async def is_server_available(self, url: str, timeout: Optional[float] = None) -> bool:
        timeout = timeout if timeout is not None else self.settings.PROBE_TIMEOUT_SEC
        try:
            resp = await self.client.get(f"{url}/health", timeout=timeout)
        except Exception as e:
            logger.debug(f"Server unavailable: {url} - {e}")
            return False
        if resp.is_success:
            return True
        logger.debug(f"Server responded but not OK: {url} ({resp.status_code})")
        return False

    async def resolve_server(self) -> ServerResolution:
        cached = self._cache.get(_CACHE_KEY)
        if cached is not None:
            return cached

        for url, mode, timeout in self.candidates():
            if await self.is_server_available(url, timeout):
                resolution = ServerResolution(url=url, mode=mode)
                self._cache[_CACHE_KEY] = resolution
                logger.info(
                    f"Using {mode} server: {url}",
                    extra={'extra_fields': resolution.as_dict()}
                )
                return resolution

        logger.warning("All servers unavailable, falling back to localhost")
        return ServerResolution(url=self.localhost_url, mode=MODE_DISCONNECTED)

    def cached(self) -> Optional[ServerResolution]:
        return self._cache.get(_CACHE_KEY)

    def invalidate(self) -> None:
        if self._cache:
            logger.info("Server cache invalidated")
        self._cache.clear()

    def force_server_url(self, url: str) -> None:
        """Pin the localhost and local candidates to ``url`` (testing / manual override)."""
        url = url.rstrip("/")
        logger.info(f"Force setting server URL: {url}")
        self.localhost_url = url
        self.local_url = url
        self.invalidate()

    def server_config(self) -> Dict[str, object]:
        return {
            "localhost": self.localhost_url,
            "local": self.local_url,
            "localNetworks": list(self.local_network_urls),
            "cloud": self.cloud_url,
        }

    async def test_all_servers(self) -> Dict[str, bool]:
        probe = self.settings.PROBE_TIMEOUT_SEC
        return {
            MODE_LOCALHOST: await self.is_server_available(self.localhost_url, probe),
            MODE_LOCAL: await self.is_server_available(self.local_url, probe),
            "cloud": await self.is_server_available(self.cloud_url, self.settings.CLOUD_PROBE_TIMEOUT_SEC),
        }
