"""
Local Order Store

Persistent mapping local key -> order record (SQLite through SQLAlchemy),
with lookups by synced flag and timestamp. Every operation opens its own
session; operations that touch several records run in one transaction.
"""
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import select, delete
from sqlalchemy.orm import Session, sessionmaker

from pos_admin.application.schemas import OrderRecord, QueueStats, sort_newest_first, timestamp_ms
from pos_admin.domain.models import LocalOrder
from shared.core import get_logger

logger = get_logger(__name__)

OrderLike = Union[OrderRecord, Dict[str, Any]]
# (local key, server id, order number) as stored
IdentityRow = Tuple[int, Optional[str], Optional[str]]


class OrderNotFoundError(LookupError):
    pass


def now_ms() -> float:
    return time.time() * 1000


def _as_key(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text.isdigit() else None


def resolve_order_key(
    rows: Iterable[IdentityRow],
    local_key: Any = None,
    server_id: Any = None,
    order_number: Any = None,
) -> Optional[int]:
    """
    Map up to three identifiers of one logical order to its local key.
    Precedence: exact local key, then server id, then order number (as strings).
    """
    rows = list(rows)
    key = _as_key(local_key)
    if key is not None:
        for row_key, _, _ in rows:
            if row_key == key:
                return row_key
    if server_id is not None:
        wanted = str(server_id)
        for row_key, row_server_id, _ in rows:
            if row_server_id is not None and row_server_id == wanted:
                return row_key
    if order_number is not None:
        wanted = str(order_number)
        for row_key, _, row_number in rows:
            if row_number is not None and row_number == wanted:
                return row_key
    return None


def _coerce(order: OrderLike) -> OrderRecord:
    if isinstance(order, OrderRecord):
        return order.model_copy(deep=True)
    return OrderRecord.model_validate(order)


def _apply(row: LocalOrder, record: OrderRecord) -> None:
    payload = record.to_wire()
    payload.pop("id", None)
    row.server_id = str(record.server_id) if record.server_id is not None else None
    row.order_number = str(record.order_number) if record.order_number is not None else None
    row.status = record.status
    row.timestamp_ms = timestamp_ms(record.timestamp)
    row.synced = bool(record.synced)
    row.dirty = bool(record.dirty)
    row.retry_count = int(record.retry_count or 0)
    row.quarantined = bool(record.quarantined)
    row.payload = payload


def _to_record(row: LocalOrder) -> OrderRecord:
    data = dict(row.payload or {})
    data.update({
        "id": row.id,
        "synced": row.synced,
        "dirty": row.dirty,
        "retryCount": row.retry_count,
        "quarantined": row.quarantined,
    })
    return OrderRecord.model_validate(data)


def _identity_rows(db: Session) -> List[IdentityRow]:
    result = db.execute(
        select(LocalOrder.id, LocalOrder.server_id, LocalOrder.order_number).order_by(LocalOrder.id)
    )
    return [(r[0], r[1], r[2]) for r in result]


class OrderStore:
    def __init__(self, session_factory: sessionmaker):
        self.Session = session_factory

    # -- basic key/value operations ---------------------------------------

    def get_all(self) -> List[OrderRecord]:
        with self.Session() as db:
            rows = db.scalars(select(LocalOrder).order_by(LocalOrder.id)).all()
            return [_to_record(r) for r in rows]

    def get_all_sorted(self) -> List[OrderRecord]:
        return sort_newest_first(self.get_all())

    def get(self, key: Any) -> Optional[OrderRecord]:
        key = _as_key(key)
        if key is None:
            return None
        with self.Session() as db:
            row = db.get(LocalOrder, key)
            return _to_record(row) if row else None

    def put(self, order: OrderLike) -> OrderRecord:
        """Insert or replace; a record that already has a key keeps it."""
        with self.Session.begin() as db:
            return self._put(db, _coerce(order))

    def _put(self, db: Session, record: OrderRecord) -> OrderRecord:
        row = db.get(LocalOrder, record.id) if record.id is not None else None
        if row is None:
            row = LocalOrder(id=record.id) if record.id is not None else LocalOrder()
            db.add(row)
        _apply(row, record)
        db.flush()
        record.id = row.id
        return record

    def delete(self, key: Any) -> bool:
        key = _as_key(key)
        if key is None:
            return False
        with self.Session.begin() as db:
            row = db.get(LocalOrder, key)
            if row is None:
                return False
            db.delete(row)
            return True

    def clear(self) -> int:
        with self.Session.begin() as db:
            result = db.execute(delete(LocalOrder))
            return result.rowcount or 0

    def get_unsynced(self, include_quarantined: bool = False) -> List[OrderRecord]:
        with self.Session() as db:
            stmt = select(LocalOrder).where(LocalOrder.synced.is_(False))
            if not include_quarantined:
                stmt = stmt.where(LocalOrder.quarantined.is_(False))
            rows = db.scalars(stmt.order_by(LocalOrder.timestamp_ms, LocalOrder.id)).all()
            return [_to_record(r) for r in rows]

    def get_dirty(self, include_quarantined: bool = False) -> List[OrderRecord]:
        with self.Session() as db:
            stmt = select(LocalOrder).where(LocalOrder.dirty.is_(True))
            if not include_quarantined:
                stmt = stmt.where(LocalOrder.quarantined.is_(False))
            rows = db.scalars(stmt.order_by(LocalOrder.id)).all()
            return [_to_record(r) for r in rows]

    # -- identity ---------------------------------------------------------

    def resolve_key(self, local_key: Any = None, server_id: Any = None, order_number: Any = None) -> Optional[int]:
        with self.Session() as db:
            return resolve_order_key(_identity_rows(db), local_key, server_id, order_number)

    def find(self, ref: Any) -> Optional[OrderRecord]:
        """Look up an order by any one of its identifiers."""
        key = self.resolve_key(ref, ref, ref)
        return self.get(key) if key is not None else None

    # -- sync bookkeeping -------------------------------------------------

    def replace_all(self, orders: Sequence[OrderLike]) -> List[OrderRecord]:
        """
        Replace the cache with a fresh server list in one transaction.
        Local records the server does not know yet are kept, and statuses
        changed locally but not pushed are re-applied (still dirty).
        """
        fetched = [_coerce(o) for o in orders]
        with self.Session.begin() as db:
            snapshot = [_to_record(r) for r in db.scalars(select(LocalOrder).order_by(LocalOrder.id)).all()]
            by_key = {r.id: r for r in snapshot}
            identities = [(r.id, r.server_id, str(r.order_number) if r.order_number is not None else None)
                          for r in snapshot]
            db.expunge_all()
            db.execute(delete(LocalOrder).execution_options(synchronize_session=False))

            used: set = set()
            matched: Dict[int, OrderRecord] = {}
            placed: List[Tuple[Optional[int], OrderRecord]] = []
            for record in fetched:
                key = resolve_order_key(identities, record.id, record.server_id, record.order_number)
                if key is not None and key in used:
                    key = None
                local = by_key.get(key) if key is not None else None
                record.synced = True
                record.dirty = False
                record.retry_count = 0
                record.quarantined = False
                if local is not None:
                    used.add(key)
                    matched[key] = record
                    if local.dirty and local.status != record.status:
                        record.status = local.status
                        record.dirty = True
                        record.retry_count = local.retry_count
                        record.quarantined = local.quarantined
                    record.id = key
                elif record.id is not None and (record.id in by_key or record.id in used):
                    record.id = None
                elif record.id is not None:
                    used.add(record.id)
                placed.append((record.id, record))

            kept = [r for r in snapshot if r.id not in matched and not r.synced]
            for record in kept:
                used.add(record.id)
                self._put(db, record)
            for key, record in placed:
                if key is not None:
                    self._put(db, record)
            for key, record in placed:
                if key is None:
                    self._put(db, record)

            if kept:
                logger.info(
                    "Kept local orders not yet on the server",
                    extra={'extra_fields': {'kept': len(kept)}}
                )
            return [r for _, r in placed] + kept

    def update_status(self, ref: Any, status: str) -> OrderRecord:
        """Apply a status change locally and flag it for a later push."""
        with self.Session.begin() as db:
            key = resolve_order_key(_identity_rows(db), ref, ref, ref)
            row = db.get(LocalOrder, key) if key is not None else None
            if row is None:
                raise OrderNotFoundError(f"Order not found: {ref}")
            record = _to_record(row)
            record.status = status
            record.dirty = True
            _apply(row, record)
            logger.info(
                "Order status updated locally",
                extra={'extra_fields': {'key': key, 'order_number': record.order_number, 'status': status}}
            )
            return record

    def apply_server_ack(self, key: Optional[int], server_order: OrderLike, sent_status: Optional[str]) -> OrderRecord:
        """
        Overwrite a pushed record with the server's representation.
        A status changed locally after the push was sent stays dirty.
        """
        record = _coerce(server_order)
        with self.Session.begin() as db:
            row = db.get(LocalOrder, key) if key is not None else None
            current = _to_record(row) if row is not None else None
            record.id = key if row is not None else None
            record.synced = True
            record.synced_at = now_ms()
            record.retry_count = 0
            record.quarantined = False
            record.dirty = False
            if current is not None and sent_status is not None and current.status != sent_status:
                record.status = current.status
                record.dirty = True
            return self._put(db, record)

    def mark_synced(self, keys: Iterable[Any]) -> int:
        count = 0
        with self.Session.begin() as db:
            for key in keys:
                row = db.get(LocalOrder, _as_key(key)) if _as_key(key) is not None else None
                if row is None:
                    continue
                record = _to_record(row)
                record.synced = True
                record.synced_at = now_ms()
                record.quarantined = False
                _apply(row, record)
                count += 1
        logger.info("Marked orders as synced", extra={'extra_fields': {'count': count}})
        return count

    def mark_pushed(self, key: int, pushed_status: Optional[str], server_id: Optional[str] = None) -> bool:
        """Clear ``dirty`` if the status is still the one the server acknowledged."""
        with self.Session.begin() as db:
            row = db.get(LocalOrder, key)
            if row is None:
                return False
            record = _to_record(row)
            if server_id and not record.server_id:
                record.server_id = server_id
            cleared = record.status == pushed_status
            if cleared:
                record.dirty = False
                record.retry_count = 0
            _apply(row, record)
            return cleared

    def record_push_failure(self, keys: Iterable[int], max_attempts: int) -> int:
        """Bump retry counters; records reaching ``max_attempts`` are quarantined."""
        quarantined = 0
        with self.Session.begin() as db:
            for key in keys:
                row = db.get(LocalOrder, key)
                if row is None:
                    continue
                record = _to_record(row)
                record.retry_count = (record.retry_count or 0) + 1
                if max_attempts and record.retry_count >= max_attempts and not record.quarantined:
                    record.quarantined = True
                    quarantined += 1
                    logger.warning(
                        "Order quarantined after repeated push failures",
                        extra={'extra_fields': {'key': key, 'retry_count': record.retry_count}}
                    )
                _apply(row, record)
        return quarantined

    def release_quarantine(self) -> int:
        count = 0
        with self.Session.begin() as db:
            rows = db.scalars(select(LocalOrder).where(LocalOrder.quarantined.is_(True))).all()
            for row in rows:
                record = _to_record(row)
                record.quarantined = False
                record.retry_count = 0
                _apply(row, record)
                count += 1
        return count

    # -- offline queue ----------------------------------------------------

    def enqueue(self, order: OrderLike) -> OrderRecord:
        """Queue an order created while the server was out of reach."""
        record = _coerce(order)
        record.id = None
        record.synced = False
        record.dirty = False
        record.retry_count = 0
        record.quarantined = False
        if record.timestamp is None:
            record.timestamp = int(now_ms())
        record = self.put(record)
        logger.info("Order queued", extra={'extra_fields': {'key': record.id}})
        return record

    def queue_stats(self) -> QueueStats:
        orders = self.get_all()
        unsynced = [o for o in orders if not o.synced]
        return QueueStats(
            total=len(orders),
            synced=len(orders) - len(unsynced),
            unsynced=len(unsynced),
            quarantined=len([o for o in unsynced if o.quarantined]),
        )

    def clear_synced(self) -> int:
        with self.Session.begin() as db:
            result = db.execute(delete(LocalOrder).where(LocalOrder.synced.is_(True)))
            return result.rowcount or 0

    def export_all(self) -> Dict[str, Any]:
        return {
            "orders": [o.to_wire() for o in self.get_all()],
            "exportedAt": int(now_ms()),
        }

    def import_all(self, data: Dict[str, Any]) -> int:
        orders = data.get("orders") or []
        if not orders:
            return 0
        with self.Session.begin() as db:
            for order in orders:
                self._put(db, _coerce(order))
        logger.info("Orders imported", extra={'extra_fields': {'count': len(orders)}})
        return len(orders)
