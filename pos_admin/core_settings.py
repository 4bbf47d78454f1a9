from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    SERVICE_NAME: str = "pos-admin-sync"
    LOG_LEVEL: str = "INFO"

    # Candidate backends, probed in this order
    LOCALHOST_SERVER_URL: str = "http://localhost:3001"
    LOCAL_SERVER_URL: str = "http://localhost:3001"
    LOCAL_NETWORK_URLS: List[str] = []
    CLOUD_SERVER_URL: str = "http://localhost:3001"
    API_PREFIX: str = "/api"

    SERVER_CACHE_TTL_SEC: float = 5.0
    PROBE_TIMEOUT_SEC: float = 2.0
    CLOUD_PROBE_TIMEOUT_SEC: float = 3.0
    HTTP_TIMEOUT_SEC: float = 10.0

    DETECT_INTERVAL_SEC: float = 10.0
    FLUSH_INTERVAL_SEC: float = 30.0
    HEALTH_CHECK_INTERVAL_SEC: float = 30.0
    FAILURES_BEFORE_REDETECT: int = 2

    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SEC: float = 0.5
    RETRY_MAX_DELAY_SEC: float = 5.0
    MAX_PUSH_ATTEMPTS: int = 10

    ORDERS_DB_URL: str = "sqlite:///pos_admin.sqlite"

    REALTIME_ENABLED: bool = True
    REALTIME_ACK_TIMEOUT_SEC: float = 10.0
    REALTIME_REFRESH_EVENTS: List[str] = ["newOrder", "orderUpdated", "orderDeleted"]

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
