"""
Durable queue of point-of-sale orders captured while offline.

Orders live in the `offline_orders` partition keyed by a locally generated id.
They are never removed implicitly: a successful sync marks them Synced and
keeps them for read-back; only `delete()` removes a record.

Allowed status transitions:
    PENDING -> SYNCED (with a server id) | FAILED
    FAILED  -> PENDING | SYNCED (with a server id) | FAILED (another attempt)
    SYNCED  -> PENDING only through requeue()
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pos_errors import InvalidTransition, OrderNotFound
from pos_schema import ORDERS_PARTITION
from pos_store import Store, iso_now

log = logging.getLogger(__name__)

REFUND_PREFIX = "REFUND-"


class OrderStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


RETRY_STATUSES = (OrderStatus.PENDING, OrderStatus.FAILED)


def order_body(payload: Dict[str, Any]) -> Dict[str, Any]:
    """The order fields, whether the payload is flat or wrapped as {id, data}."""
    data = payload.get("data") if isinstance(payload, dict) else None
    return data if isinstance(data, dict) else payload


def _line_values(line: Any) -> Dict[str, Any]:
    if isinstance(line, (list, tuple)) and len(line) >= 3 and isinstance(line[2], dict):
        return line[2]
    return line if isinstance(line, dict) else {}


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def is_refund_payload(payload: Dict[str, Any]) -> bool:
    order_id = payload.get("id")
    if isinstance(order_id, str) and order_id.startswith(REFUND_PREFIX):
        return True
    body = order_body(payload)
    if body.get("is_refund"):
        return True
    lines = body.get("lines")
    if not isinstance(lines, (list, tuple)):
        return False
    for line in lines:
        values = _line_values(line)
        if _as_float(values.get("qty")) < 0 or values.get("refund_orderline_id"):
            return True
    return False


@dataclass
class OfflineOrder:
    local_id: str
    payload: Dict[str, Any]
    status: OrderStatus = OrderStatus.PENDING
    created_at: str = field(default_factory=iso_now)
    last_attempt_at: Optional[str] = None
    server_id: Optional[int] = None
    order_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    synced_at: Optional[str] = None
    is_refund: bool = False
    has_been_refunded: bool = False
    refund_history: List[Dict[str, Any]] = field(default_factory=list)
    last_refund_date: Optional[str] = None

    @property
    def body(self) -> Dict[str, Any]:
        return order_body(self.payload)

    def to_blob(self) -> Dict[str, Any]:
        blob = asdict(self)
        blob["status"] = self.status.value
        return blob

    @classmethod
    def from_blob(cls, blob: Dict[str, Any]) -> "OfflineOrder":
        known = {k: blob[k] for k in cls.__dataclass_fields__ if k in blob}
        known["status"] = OrderStatus(known.get("status") or OrderStatus.PENDING.value)
        known["refund_history"] = list(known.get("refund_history") or [])
        return cls(**known)


class OfflineOrderQueue:
    def __init__(self, store: Store):
        self.store = store
        self._lock = threading.RLock()

    def _save(self, order: OfflineOrder) -> None:
        self.store.put(ORDERS_PARTITION, order.local_id, order.to_blob())

    # ---------- writes ----------
    def enqueue(self, payload: Dict[str, Any]) -> OfflineOrder:
        if not isinstance(payload, dict):
            raise ValueError("order payload must be a JSON object")
        payload = json.loads(json.dumps(payload))
        body = order_body(payload)
        if body.get("lines") is not None and not isinstance(body["lines"], list):
            raise ValueError("order lines must be a list")
        order_id = payload.get("id") or body.get("id")
        refund = is_refund_payload(payload)
        if refund and payload.get("id") and body is not payload:
            body["pos_reference"] = payload["id"]

        order = OfflineOrder(
            local_id=str(uuid.uuid4()),
            payload=payload,
            order_id=str(order_id) if order_id is not None else None,
            is_refund=refund,
        )
        with self._lock:
            self._save(order)
        log.info("Queued offline order %s (ref %s, refund=%s)", order.local_id, order.order_id, refund)

        if refund:
            original = body.get("original_order_id")
            if not original and isinstance(order_id, str) and order_id.startswith(REFUND_PREFIX):
                original = order_id[len(REFUND_PREFIX):]
            if original:
                self.tag_refunded(str(original), refund_order_id=order.order_id,
                                  amount=_as_float(body.get("amount_total")))
        return order

    def set_status(self, local_id: str, status: OrderStatus, server_id: Optional[int] = None,
                   error: Optional[str] = None) -> OfflineOrder:
        status = OrderStatus(status)
        with self._lock:
            order = self.by_local_id(local_id)
            previous = order.status
            if previous == OrderStatus.SYNCED:
                if status == OrderStatus.SYNCED and server_id in (None, order.server_id):
                    return order
                raise InvalidTransition(
                    f"order {local_id} is already synced as {order.server_id}; requeue it first"
                )
            if status == OrderStatus.SYNCED and server_id is None:
                raise InvalidTransition(f"order {local_id} cannot be marked synced without a server id")

            now = iso_now()
            if status in (OrderStatus.SYNCED, OrderStatus.FAILED):
                order.attempts += 1
                order.last_attempt_at = now
            if status == OrderStatus.SYNCED:
                order.server_id = server_id
                order.synced_at = now
                order.last_error = None
            elif status == OrderStatus.FAILED:
                order.last_error = error or "Failed to sync with server"
            order.status = status
            self._save(order)
        log.info("Order %s: %s -> %s%s", local_id, previous.value, status.value,
                 f" (server id {server_id})" if server_id is not None else "")
        return order

    def requeue(self, local_id: str) -> OfflineOrder:
        """Explicitly make an order eligible for submission again."""
        with self._lock:
            order = self.by_local_id(local_id)
            previous = order.status
            order.status = OrderStatus.PENDING
            self._save(order)
        log.info("Order %s requeued (was %s)", local_id, previous.value)
        return order

    def delete(self, local_id: str) -> None:
        with self._lock:
            self.by_local_id(local_id)
            self.store.delete(ORDERS_PARTITION, local_id)
        log.info("Deleted offline order %s", local_id)

    # ---------- reads ----------
    def by_local_id(self, local_id: str) -> OfflineOrder:
        blob = self.store.get(ORDERS_PARTITION, local_id)
        if blob is None:
            raise OrderNotFound(f"Order not found: {local_id}")
        return OfflineOrder.from_blob(blob)

    def all(self) -> List[OfflineOrder]:
        return [OfflineOrder.from_blob(b) for b in self.store.get_all(ORDERS_PARTITION)]

    def by_status(self, status: OrderStatus) -> List[OfflineOrder]:
        status = OrderStatus(status)
        return [o for o in self.all() if o.status == status]

    def pending(self) -> List[OfflineOrder]:
        return [o for o in self.all() if o.status in RETRY_STATUSES]

    def pending_count(self) -> int:
        return len(self.pending())

    def find(self, ref: str) -> Optional[OfflineOrder]:
        """Look up by local id, then by the order id carried in the payload."""
        try:
            return self.by_local_id(ref)
        except OrderNotFound:
            pass
        for order in self.all():
            if ref in (order.order_id, order.payload.get("id"), order.body.get("id")):
                return order
        return None

    # ---------- refunds ----------
    def tag_refunded(self, ref: str, refund_order_id: Optional[str] = None,
                     amount: float = 0.0) -> Optional[OfflineOrder]:
        with self._lock:
            original = self.find(ref)
            if original is None:
                log.warning("Original order %s not found; refund not tagged", ref)
                return None
            now = iso_now()
            first = not original.has_been_refunded
            original.refund_history.append({
                "refund_order_id": refund_order_id or f"{REFUND_PREFIX}{ref}",
                "refund_date": now,
                "refund_amount": amount,
            })
            original.has_been_refunded = True
            original.last_refund_date = now
            if first and original.body is not original.payload:
                original.body["has_been_refunded"] = True
                original.body["refund_history"] = json.dumps(original.refund_history)
            self._save(original)
        log.info("Tagged order %s as refunded by %s", original.local_id, refund_order_id)
        return original

    def refund_info(self, ref: str) -> Optional[Dict[str, Any]]:
        order = self.find(ref)
        if order is None or not order.has_been_refunded:
            return None
        return {
            "has_been_refunded": True,
            "refund_history": list(order.refund_history),
            "last_refund_date": order.last_refund_date,
        }

    def refunded_orders(self) -> List[OfflineOrder]:
        return [o for o in self.all() if o.has_been_refunded or o.body.get("has_been_refunded")]

    def refund_orders(self) -> List[OfflineOrder]:
        return [o for o in self.all() if o.is_refund or o.body.get("is_refund")]
