"""
Order synchronization: drains the offline queue into `pos.order/sync_from_ui`.

Orders are submitted one at a time, and submissions for the same POS session
are serialized so the backend never numbers two of them concurrently. A
failure is recorded on the order and returned in the result; it never aborts
the batch. Only an acknowledgement that carries a server id marks an order
Synced.
"""
from __future__ import annotations

import datetime as dt
import logging
import random
import string
import threading
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from pos_errors import CoreError, ErrorKind, InvalidTransition, OrderNotFound
from pos_orders import REFUND_PREFIX, OfflineOrder, OfflineOrderQueue, OrderStatus

log = logging.getLogger(__name__)


def _m2o(value: Any) -> Any:
    """[id, display_name] and {'id': ...} collapse to the bare id."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else False
    if isinstance(value, dict):
        return value.get("id", False)
    return value


def _num(value: Any, default: float = 0.0) -> float:
    if value in (None, "", False):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _values(item: Any) -> Dict[str, Any]:
    # Tuple-encoded one2many command: [0, 0, {...}]
    if isinstance(item, (list, tuple)) and len(item) >= 3 and isinstance(item[2], dict):
        return dict(item[2])
    if isinstance(item, dict):
        return dict(item)
    raise ValueError(f"Unsupported sub-record shape: {type(item).__name__}")


def normalize_line(line: Any) -> Dict[str, Any]:
    values = _values(line)
    product_id = _m2o(values.get("product_id"))
    if not isinstance(product_id, int) or isinstance(product_id, bool):
        raise ValueError(f"Order line without a product id: {values!r}")
    qty = _num(values.get("qty", values.get("quantity")))
    price_unit = _num(values.get("price_unit", values.get("price")))
    discount = _num(values.get("discount"))
    subtotal = _num(values.get("price_subtotal"), price_unit * qty * (1 - discount / 100))
    values.pop("quantity", None)
    values.pop("price", None)
    values.update({
        "product_id": product_id,
        "qty": qty,
        "price_unit": price_unit,
        "discount": discount,
        "price_subtotal": subtotal,
        "price_subtotal_incl": _num(values.get("price_subtotal_incl"), subtotal),
        "tax_ids": values.get("tax_ids") or [],
        "pack_lot_ids": values.get("pack_lot_ids") or [],
        "full_product_name": values.get("full_product_name") or values.get("name") or "",
        "uuid": values.get("uuid") or str(uuid.uuid4()),
    })
    return values


def normalize_payment(payment: Any, date: Optional[str] = None) -> Dict[str, Any]:
    values = _values(payment)
    method_id = _m2o(values.get("payment_method_id", values.get("method_id")))
    if not isinstance(method_id, int) or isinstance(method_id, bool):
        raise ValueError(f"Payment without a payment method: {values!r}")
    values.pop("method_id", None)
    values.update({
        "amount": _num(values.get("amount")),
        "payment_method_id": method_id,
        "payment_date": values.get("payment_date") or date or _order_date(),
        "name": values.get("name", False),
        "is_change": bool(values.get("is_change", False)),
        "uuid": values.get("uuid") or str(uuid.uuid4()),
    })
    return values


def _session_key(value: Any) -> Optional[Any]:
    """Scalar session id for lock lookup; anything else shares the None lock."""
    value = _m2o(value)
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        return value
    return None


def _order_date() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _ticket_code(length: int = 5) -> str:
    return "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(length))


def _is_refund(order: OfflineOrder) -> bool:
    ref = order.order_id or order.payload.get("id")
    return bool(order.is_refund or order.body.get("is_refund")
                or (isinstance(ref, str) and ref.startswith(REFUND_PREFIX)))


def build_wire_order(order: OfflineOrder) -> Dict[str, Any]:
    """Map a queued order onto the backend's `pos.order` record shape."""
    body = order.body
    session_id = _m2o(body.get("session_id")) or False
    if session_id is not False and (not isinstance(session_id, int) or isinstance(session_id, bool)):
        raise ValueError(f"Invalid session_id: {body.get('session_id')!r}")
    if not session_id:
        log.warning("Order %s has no session_id; the backend will assign one", order.local_id)
    raw_lines = body.get("lines") or []
    if not raw_lines:
        raise ValueError("Order has no lines")
    date_order = body.get("date_order") or _order_date()

    lines = [normalize_line(l) for l in raw_lines]
    raw_payments = body.get("payment_ids")
    if raw_payments is None:
        raw_payments = body.get("payments") or []
    payments = [normalize_payment(p, date_order) for p in raw_payments]

    net = sum(l["price_subtotal"] for l in lines)
    total = _num(body.get("amount_total"), sum(l["price_subtotal_incl"] for l in lines))
    paid = _num(body.get("amount_paid"), sum(p["amount"] for p in payments))
    ref = order.order_id or order.local_id

    wire = {
        "id": str(ref),
        "uuid": order.local_id,
        "access_token": str(uuid.uuid4()),
        "name": body.get("name") or f"Order {order.local_id[:8]}",
        "pos_reference": body.get("pos_reference") or f"Order {order.local_id[:8]}",
        "date_order": date_order,
        "session_id": session_id,
        "user_id": _m2o(body.get("user_id")) or False,
        "partner_id": _m2o(body.get("partner_id")) or False,
        "company_id": _m2o(body.get("company_id")) or 1,
        "pricelist_id": _m2o(body.get("pricelist_id")) or False,
        "fiscal_position_id": _m2o(body.get("fiscal_position_id")) or False,
        "sequence_number": body.get("sequence_number") or 1,
        "state": "paid",
        "amount_total": total,
        "amount_tax": _num(body.get("amount_tax"), round(total - net, 2)),
        "amount_paid": paid,
        "amount_return": _num(body.get("amount_return"), max(0.0, paid - total)),
        "amount_difference": False,
        "lines": [[0, 0, l] for l in lines],
        "payment_ids": [[0, 0, p] for p in payments],
        "to_invoice": bool(body.get("to_invoice", False)),
        "general_note": body.get("general_note") or "",
        "ticket_code": body.get("ticket_code") or _ticket_code(),
        "nb_print": 0,
        "picking_ids": [],
        "account_move": False,
        "is_tipped": False,
        "tip_amount": False,
        "shipping_date": False,
    }
    for key in ("is_refund", "original_order_id", "has_been_refunded", "refund_history"):
        if key in body:
            wire[key] = body[key]
    if _is_refund(order):
        wire["pos_reference"] = str(ref)
        wire["name"] = f"Refund Order {ref}"
    return wire


def extract_server_id(result: Any) -> Optional[int]:
    """Server order id from a sync_from_ui acknowledgement, or None."""
    def _int(value: Any) -> Optional[int]:
        return value if isinstance(value, int) and not isinstance(value, bool) else None

    if _int(result) is not None:
        return result
    if isinstance(result, list) and result:
        first = result[0]
        return _int(first.get("id")) if isinstance(first, dict) else _int(first)
    if isinstance(result, dict):
        orders = result.get("pos.order")
        if isinstance(orders, list) and orders and isinstance(orders[0], dict):
            return _int(orders[0].get("id"))
        return _int(result.get("id"))
    return None


@dataclass
class SyncResult:
    local_id: str
    ok: bool
    server_id: Optional[int] = None
    kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["kind"] = self.kind.value if self.kind else None
        return out


@dataclass
class SyncSummary:
    synced: int = 0
    failed: int = 0
    total: int = 0
    results: List[SyncResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "failed": self.failed,
            "total": self.total,
            "results": [r.to_dict() for r in self.results],
        }


class SyncCoordinator:
    def __init__(self, queue: OfflineOrderQueue, transport: Any):
        self.queue = queue
        self.transport = transport
        self._drain_lock = threading.Lock()
        self._session_locks: Dict[Any, threading.Lock] = {}
        self._session_locks_guard = threading.Lock()

    def _session_lock(self, session_id: Any) -> threading.Lock:
        with self._session_locks_guard:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = self._session_locks[session_id] = threading.Lock()
            return lock

    def _fail(self, order: OfflineOrder, kind: ErrorKind, message: str) -> SyncResult:
        log.warning("Sync of order %s failed (%s): %s", order.local_id, kind.value, message)
        self.queue.set_status(order.local_id, OrderStatus.FAILED, error=message)
        return SyncResult(order.local_id, ok=False, kind=kind, error=message)

    def sync_one(self, local_id: str) -> SyncResult:
        try:
            order = self.queue.by_local_id(local_id)
        except OrderNotFound as exc:
            return SyncResult(local_id, ok=False, kind=ErrorKind.NOT_FOUND, error=str(exc))
        if order.status == OrderStatus.SYNCED:
            log.debug("Order %s already synced as %s", local_id, order.server_id)
            return SyncResult(local_id, ok=True, server_id=order.server_id, skipped=True)

        with self._session_lock(_session_key(order.body.get("session_id"))):
            # Another submitter may have finished while we waited.
            order = self.queue.by_local_id(local_id)
            if order.status == OrderStatus.SYNCED:
                return SyncResult(local_id, ok=True, server_id=order.server_id, skipped=True)
            try:
                wire = build_wire_order(order)
            except (ValueError, TypeError) as exc:
                return self._fail(order, ErrorKind.MALFORMED, str(exc))

            log.info("Submitting order %s (attempt %d)", local_id, order.attempts + 1)
            try:
                result = self.transport.call_kw("pos.order", "sync_from_ui", [[wire]])
            except CoreError as exc:
                return self._fail(order, exc.kind, str(exc))
            except Exception as exc:
                log.exception("Unexpected error submitting order %s", local_id)
                return self._fail(order, ErrorKind.TRANSIENT, str(exc))

            server_id = extract_server_id(result)
            if server_id is None:
                return self._fail(order, ErrorKind.REMOTE,
                                  "Server acknowledgement did not include an order id")
            try:
                self.queue.set_status(local_id, OrderStatus.SYNCED, server_id=server_id)
            except InvalidTransition:
                current = self.queue.by_local_id(local_id)
                log.warning("Order %s was synced concurrently as %s", local_id, current.server_id)
                return SyncResult(local_id, ok=True, server_id=current.server_id, skipped=True)
        log.info("Order %s synced with server id %s", local_id, server_id)
        return SyncResult(local_id, ok=True, server_id=server_id)

    def sync_all(self) -> SyncSummary:
        with self._drain_lock:
            pending = self.queue.pending()
            summary = SyncSummary(total=len(pending))
            log.info("Starting sync of %d pending orders", len(pending))
            for order in pending:
                try:
                    result = self.sync_one(order.local_id)
                except Exception as exc:
                    log.exception("Unexpected error syncing order %s", order.local_id)
                    result = self._fail(order, ErrorKind.TRANSIENT, str(exc))
                summary.results.append(result)
                if result.ok:
                    summary.synced += 1
                else:
                    summary.failed += 1
        log.info("Sync completed: %d synced, %d failed of %d",
                 summary.synced, summary.failed, summary.total)
        return summary

    def check_and_sync_if_online(self) -> Dict[str, Any]:
        pending_count = self.queue.pending_count()
        if pending_count == 0:
            return {"did_sync": False, "reason": "no_pending_orders"}
        if not self.transport.check_connection():
            return {"did_sync": False, "reason": "offline", "pending_count": pending_count}
        log.info("Backend reachable; syncing %d pending orders", pending_count)
        out = {"did_sync": True}
        out.update(self.sync_all().to_dict())
        return out

    def force_resync(self, ref: str) -> SyncResult:
        """Resubmit an order regardless of its status (explicit operator action)."""
        order = self.queue.find(ref)
        if order is None:
            return SyncResult(ref, ok=False, kind=ErrorKind.NOT_FOUND, error=f"Order not found: {ref}")
        log.warning("Forcing resync of order %s (status %s)", order.local_id, order.status.value)
        self.queue.requeue(order.local_id)
        return self.sync_one(order.local_id)
