"""
Order persistence.

The one mutation rule that matters: an order leaves ``pending_commit`` exactly
once. ``transition_status`` is a compare-and-swap on the status column
(``UPDATE ... WHERE status = <expected>``), so when a seller decline and the
expiry sweep race, only one of them gets the row back.
"""
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from psycopg.types.json import Jsonb

from .db import get_conn
from .errors import InvalidOrderState
from .models import Order, RefundTransaction
from .settings import DATABASE_URL

ALLOWED_TRANSITIONS = {
    ("pending_commit", "committed"),
    ("pending_commit", "declined"),
    ("declined", "refunded"),
}

ORDER_MUTABLE_FIELDS = {
    "decline_reason",
    "declined_at",
    "committed_at",
    "refund_status",
    "refund_reference",
    "reminder_sent_at",
}
REFUND_MUTABLE_FIELDS = {"refund_reference", "status", "gateway_response", "reason"}


def check_transition(from_status: str, to_status: str):
    if (from_status, to_status) not in ALLOWED_TRANSITIONS:
        raise InvalidOrderState(f"Order status cannot move from {from_status} to {to_status}")


def check_fields(fields: Dict[str, Any], allowed: set):
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Fields not updatable: {', '.join(sorted(unknown))}")


class OrderStore(Protocol):
    def create_order(self, order: Order) -> Order: ...
    def get_order(self, order_id: str) -> Optional[Order]: ...
    def transition_status(self, order_id: str, from_status: str, to_status: str, now: datetime, **fields) -> Optional[Order]: ...
    def update_order(self, order_id: str, now: datetime, **fields) -> Optional[Order]: ...
    def list_overdue(self, now: datetime, limit: int = 100) -> List[Order]: ...
    def list_reminder_due(self, created_before: datetime, now: datetime, limit: int = 100) -> List[Order]: ...
    def mark_reminded(self, order_id: str, now: datetime) -> bool: ...
    def insert_refund(self, refund: RefundTransaction) -> Tuple[RefundTransaction, bool]: ...
    def get_refund(self, order_id: str) -> Optional[RefundTransaction]: ...
    def get_refund_by_reference(self, refund_reference: str) -> Optional[RefundTransaction]: ...
    def update_refund(self, order_id: str, now: datetime, when_status: Optional[str] = None, **fields) -> Optional[RefundTransaction]: ...


class MemoryOrderStore:
    """Process-local store with the same guarantees, for tests and local runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: Dict[str, Order] = {}
        self._refunds: Dict[str, RefundTransaction] = {}

    def create_order(self, order):
        with self._lock:
            if order.payment_reference:
                for existing in self._orders.values():
                    if existing.payment_reference == order.payment_reference:
                        return existing.model_copy(deep=True)
            if order.id in self._orders:
                raise ValueError(f"Order {order.id} already exists")
            self._orders[order.id] = order.model_copy(deep=True)
            return order.model_copy(deep=True)

    def get_order(self, order_id):
        with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    def transition_status(self, order_id, from_status, to_status, now, **fields):
        check_transition(from_status, to_status)
        check_fields(fields, ORDER_MUTABLE_FIELDS)
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != from_status:
                return None
            updated = order.model_copy(update={**fields, "status": to_status, "updated_at": now}, deep=True)
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    def update_order(self, order_id, now, **fields):
        check_fields(fields, ORDER_MUTABLE_FIELDS)
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None
            updated = order.model_copy(update={**fields, "updated_at": now}, deep=True)
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    def list_overdue(self, now, limit=100):
        with self._lock:
            rows = [o for o in self._orders.values() if o.status == "pending_commit" and o.commit_deadline < now]
        rows.sort(key=lambda o: o.commit_deadline)
        return [o.model_copy(deep=True) for o in rows[:limit]]

    def list_reminder_due(self, created_before, now, limit=100):
        with self._lock:
            rows = [
                o
                for o in self._orders.values()
                if o.status == "pending_commit"
                and o.created_at < created_before
                and o.commit_deadline > now
                and o.reminder_sent_at is None
            ]
        rows.sort(key=lambda o: o.commit_deadline)
        return [o.model_copy(deep=True) for o in rows[:limit]]

    def mark_reminded(self, order_id, now):
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != "pending_commit" or order.reminder_sent_at is not None:
                return False
            self._orders[order_id] = order.model_copy(update={"reminder_sent_at": now, "updated_at": now}, deep=True)
            return True

    def insert_refund(self, refund):
        with self._lock:
            existing = self._refunds.get(refund.order_id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._refunds[refund.order_id] = refund.model_copy(deep=True)
            return refund.model_copy(deep=True), True

    def get_refund(self, order_id):
        with self._lock:
            refund = self._refunds.get(order_id)
            return refund.model_copy(deep=True) if refund else None

    def get_refund_by_reference(self, refund_reference):
        with self._lock:
            for refund in self._refunds.values():
                if refund.refund_reference == refund_reference:
                    return refund.model_copy(deep=True)
        return None

    def update_refund(self, order_id, now, when_status=None, **fields):
        check_fields(fields, REFUND_MUTABLE_FIELDS)
        with self._lock:
            refund = self._refunds.get(order_id)
            if refund is None or (when_status is not None and refund.status != when_status):
                return None
            updated = refund.model_copy(update={**fields, "updated_at": now}, deep=True)
            self._refunds[order_id] = updated
            return updated.model_copy(deep=True)


ORDER_COLUMNS = (
    "id, buyer_id, seller_id, buyer_email, seller_email, item_ids, total_amount_cents, delivery_fee_cents, "
    "carrier_id, service_name, payment_reference, seller_subaccount, platform_fee_cents, seller_amount_cents, "
    "status, commit_deadline, decline_reason, declined_at, committed_at, refund_status, refund_reference, "
    "reminder_sent_at, created_at, updated_at"
)
REFUND_COLUMNS = (
    "id, order_id, transaction_reference, refund_reference, amount_cents, reason, status, "
    "gateway_response, created_at, updated_at"
)


def _set_clause(fields: Dict[str, Any]) -> Tuple[str, list]:
    parts, params = [], []
    for name, value in fields.items():
        parts.append(f"{name} = %s")
        params.append(Jsonb(value) if isinstance(value, (dict, list)) else value)
    return ", ".join(parts), params


class PostgresOrderStore:
    def __init__(self, url: str = DATABASE_URL):
        self.url = url

    def create_order(self, order):
        data = order.model_dump()
        data["item_ids"] = Jsonb(data["item_ids"])
        columns = [c.strip() for c in ORDER_COLUMNS.split(",")]
        with get_conn(self.url) as conn:
            row = conn.execute(
                f"INSERT INTO orders({ORDER_COLUMNS}) VALUES ({', '.join(['%s'] * len(columns))}) "
                f"ON CONFLICT (payment_reference) DO NOTHING RETURNING {ORDER_COLUMNS}",
                [data[c] for c in columns],
            ).fetchone()
            if row is None:
                row = conn.execute(
                    f"SELECT {ORDER_COLUMNS} FROM orders WHERE payment_reference = %s",
                    (order.payment_reference,),
                ).fetchone()
            return Order(**row)

    def get_order(self, order_id):
        with get_conn(self.url) as conn:
            row = conn.execute(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = %s", (order_id,)).fetchone()
            return Order(**row) if row else None

    def transition_status(self, order_id, from_status, to_status, now, **fields):
        check_transition(from_status, to_status)
        check_fields(fields, ORDER_MUTABLE_FIELDS)
        sets, params = _set_clause({**fields, "status": to_status, "updated_at": now})
        with get_conn(self.url) as conn:
            row = conn.execute(
                f"UPDATE orders SET {sets} WHERE id = %s AND status = %s RETURNING {ORDER_COLUMNS}",
                (*params, order_id, from_status),
            ).fetchone()
            return Order(**row) if row else None

    def update_order(self, order_id, now, **fields):
        check_fields(fields, ORDER_MUTABLE_FIELDS)
        sets, params = _set_clause({**fields, "updated_at": now})
        with get_conn(self.url) as conn:
            row = conn.execute(
                f"UPDATE orders SET {sets} WHERE id = %s RETURNING {ORDER_COLUMNS}",
                (*params, order_id),
            ).fetchone()
            return Order(**row) if row else None

    def list_overdue(self, now, limit=100):
        with get_conn(self.url) as conn:
            rows = conn.execute(
                f"SELECT {ORDER_COLUMNS} FROM orders "
                "WHERE status = 'pending_commit' AND commit_deadline < %s "
                "ORDER BY commit_deadline LIMIT %s",
                (now, limit),
            ).fetchall()
            return [Order(**r) for r in rows]

    def list_reminder_due(self, created_before, now, limit=100):
        with get_conn(self.url) as conn:
            rows = conn.execute(
                f"SELECT {ORDER_COLUMNS} FROM orders "
                "WHERE status = 'pending_commit' AND created_at < %s AND commit_deadline > %s "
                "AND reminder_sent_at IS NULL ORDER BY commit_deadline LIMIT %s",
                (created_before, now, limit),
            ).fetchall()
            return [Order(**r) for r in rows]

    def mark_reminded(self, order_id, now):
        with get_conn(self.url) as conn:
            row = conn.execute(
                "UPDATE orders SET reminder_sent_at = %s, updated_at = %s "
                "WHERE id = %s AND status = 'pending_commit' AND reminder_sent_at IS NULL RETURNING id",
                (now, now, order_id),
            ).fetchone()
            return row is not None

    def insert_refund(self, refund):
        data = refund.model_dump()
        data["gateway_response"] = Jsonb(data["gateway_response"])
        columns = [c.strip() for c in REFUND_COLUMNS.split(",")]
        with get_conn(self.url) as conn:
            row = conn.execute(
                f"INSERT INTO refund_transactions({REFUND_COLUMNS}) VALUES ({', '.join(['%s'] * len(columns))}) "
                f"ON CONFLICT (order_id) DO NOTHING RETURNING {REFUND_COLUMNS}",
                [data[c] for c in columns],
            ).fetchone()
            if row is not None:
                return RefundTransaction(**row), True
            row = conn.execute(
                f"SELECT {REFUND_COLUMNS} FROM refund_transactions WHERE order_id = %s",
                (refund.order_id,),
            ).fetchone()
            return RefundTransaction(**row), False

    def get_refund(self, order_id):
        with get_conn(self.url) as conn:
            row = conn.execute(
                f"SELECT {REFUND_COLUMNS} FROM refund_transactions WHERE order_id = %s", (order_id,)
            ).fetchone()
            return RefundTransaction(**row) if row else None

    def get_refund_by_reference(self, refund_reference):
        with get_conn(self.url) as conn:
            row = conn.execute(
                f"SELECT {REFUND_COLUMNS} FROM refund_transactions WHERE refund_reference = %s",
                (refund_reference,),
            ).fetchone()
            return RefundTransaction(**row) if row else None

    def update_refund(self, order_id, now, when_status=None, **fields):
        check_fields(fields, REFUND_MUTABLE_FIELDS)
        sets, params = _set_clause({**fields, "updated_at": now})
        where, where_params = "order_id = %s", [order_id]
        if when_status is not None:
            where += " AND status = %s"
            where_params.append(when_status)
        with get_conn(self.url) as conn:
            row = conn.execute(
                f"UPDATE refund_transactions SET {sets} WHERE {where} RETURNING {REFUND_COLUMNS}",
                (*params, *where_params),
            ).fetchone()
            return RefundTransaction(**row) if row else None
