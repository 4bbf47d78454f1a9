from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Integer, Float, Boolean, JSON
from typing import Optional


class Base(DeclarativeBase):
    pass


class LocalOrder(Base):
    """Cached or queued copy of an order; the full record lives in ``payload``."""
    __tablename__ = "orders"
    # Local key, stable for the lifetime of the record
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Lookup columns extracted from the payload
    server_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True, index=True)
    timestamp_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True, index=True)
    synced: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    dirty: Mapped[bool] = mapped_column(Boolean, default=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    quarantined: Mapped[bool] = mapped_column(Boolean, default=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)


class SchemaMeta(Base):
    __tablename__ = "schema_meta"
    key: Mapped[str] = mapped_column(String(50), primary_key=True)
    value: Mapped[str] = mapped_column(String(100))
