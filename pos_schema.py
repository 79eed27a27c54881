"""
Partition catalog, schema versioning and migrations for the local store.

Upgrades are additive: a migration lists the partitions it adds and nothing
is ever dropped on a version bump. The only path that loses data is the
destructive reset, taken when a migration is declared with the `reset`
strategy or when a required partition is still missing after an upgrade
(an interrupted earlier upgrade, a half-copied file). A reset deletes the
database file and raises SchemaDriftError so the caller reinitializes once.
"""
from __future__ import annotations

import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pos_errors import SchemaDriftError
from pos_store import Store

log = logging.getLogger(__name__)

ADDITIVE = "additive"
RESET = "reset"

RAW_DATA_PARTITION = "raw_data"
METADATA_PARTITION = "metadata"
ORDERS_PARTITION = "offline_orders"

# Remote model name -> local partition.
MODEL_PARTITIONS: Dict[str, str] = {
    "pos.session": "pos_session",
    "pos.config": "pos_config",
    "pos.order": "pos_order",
    "pos.order.line": "pos_order_line",
    "pos.pack.operation.lot": "pos_pack_operation_lot",
    "pos.payment": "pos_payment",
    "pos.payment.method": "pos_payment_method",
    "pos.printer": "pos_printer",
    "pos.category": "pos_category",
    "pos.bill": "pos_bill",
    "res.company": "res_company",
    "account.tax": "account_tax",
    "account.tax.group": "account_tax_group",
    "product.product": "product_product",
    "product.attribute": "product_attribute",
    "product.attribute.custom.value": "product_attribute_custom_value",
    "product.template.attribute.line": "product_template_attribute_line",
    "product.template.attribute.value": "product_template_attribute_value",
    "product.combo": "product_combo",
    "product.combo.item": "product_combo_item",
    "product.packaging": "product_packaging",
    "res.users": "res_users",
    "res.partner": "res_partner",
    "decimal.precision": "decimal_precision",
    "uom.uom": "uom_uom",
    "uom.category": "uom_category",
    "res.country": "res_country",
    "res.country.state": "res_country_state",
    "res.lang": "res_lang",
    "product.pricelist": "product_pricelist",
    "product.pricelist.item": "product_pricelist_item",
    "product.category": "product_category",
    "account.cash.rounding": "account_cash_rounding",
    "account.fiscal.position": "account_fiscal_position",
    "account.fiscal.position.tax": "account_fiscal_position_tax",
    "stock.picking.type": "stock_picking_type",
    "res.currency": "res_currency",
    "pos.note": "pos_note",
    "ir.ui.view": "ir_ui_view",
    "product.tag": "product_tag",
    "ir.module.module": "ir_module_module",
}

_LATE_MODELS = ("pos.note", "ir.ui.view", "product.tag", "ir.module.module")


def partition_for(model_name: str) -> str:
    """Partition for a remote model; unknown models map by replacing dots."""
    return MODEL_PARTITIONS.get(model_name) or model_name.replace(".", "_")


@dataclass(frozen=True)
class Migration:
    version: int
    adds: Tuple[str, ...]
    strategy: str = ADDITIVE
    note: str = ""


MIGRATIONS: Tuple[Migration, ...] = (
    Migration(
        version=1,
        adds=tuple(p for m, p in MODEL_PARTITIONS.items() if m not in _LATE_MODELS)
        + (RAW_DATA_PARTITION, METADATA_PARTITION),
        note="reference data and utility partitions",
    ),
    Migration(version=2, adds=(ORDERS_PARTITION,), note="offline order queue"),
    Migration(
        version=3,
        adds=tuple(MODEL_PARTITIONS[m] for m in _LATE_MODELS),
        note="notes, views, product tags, modules",
    ),
)

_OPEN_LOCKS: Dict[str, threading.Lock] = {}
_OPEN_LOCKS_GUARD = threading.Lock()


def _open_lock(db_path: str) -> threading.Lock:
    key = db_path if db_path == ":memory:" else os.path.abspath(db_path)
    with _OPEN_LOCKS_GUARD:
        lock = _OPEN_LOCKS.get(key)
        if lock is None:
            lock = _OPEN_LOCKS[key] = threading.Lock()
        return lock


class SchemaManager:
    def __init__(self, db_path: str, migrations: Sequence[Migration] = MIGRATIONS):
        if not migrations:
            raise ValueError("At least one migration is required")
        self.db_path = db_path
        self.migrations = sorted(migrations, key=lambda m: m.version)
        versions = [m.version for m in self.migrations]
        if len(set(versions)) != len(versions):
            raise ValueError("Duplicate migration versions")

    @property
    def target_version(self) -> int:
        return self.migrations[-1].version

    def catalog(self, version: Optional[int] = None) -> List[str]:
        """Every partition that must exist at `version`."""
        version = self.target_version if version is None else version
        out: List[str] = []
        for m in self.migrations:
            if m.version > version:
                break
            for name in m.adds:
                if name not in out:
                    out.append(name)
        return out

    def ensure(self, catalog: Optional[Iterable[str]] = None, version: Optional[int] = None) -> Store:
        """Open the store at `version`, upgrading or resetting as needed."""
        version = self.target_version if version is None else int(version)
        required = list(catalog) if catalog is not None else self.catalog(version)
        with _open_lock(self.db_path):
            store = Store(self.db_path)
            current = store.version
            missing = [p for p in required if not store.has_partition(p)]
            if current < version or missing:
                pending = [m for m in self.migrations if current < m.version <= version]
                resets = [m for m in pending if m.strategy == RESET]
                if resets and current > 0:
                    m = resets[0]
                    self._destructive_reset(
                        store, f"migration {m.version} ({m.note or 'unnamed'}) uses the reset strategy"
                    )
                self._upgrade(store, current, version, pending, missing)
            still_missing = [p for p in required if not store.has_partition(p)]
            if still_missing:
                self._destructive_reset(
                    store, "required partitions missing after upgrade: " + ", ".join(still_missing)
                )
            return store

    def _upgrade(self, store: Store, current: int, version: int,
                 pending: List[Migration], missing: List[str]) -> None:
        to_create: List[str] = []
        for m in pending:
            to_create.extend(p for p in m.adds if p not in to_create)
        to_create.extend(p for p in missing if p not in to_create)
        log.info("Upgrading local store %s from version %s to %s (%d partitions to check)",
                 self.db_path, current, version, len(to_create))
        failed = []
        for name in to_create:
            if store.has_partition(name):
                continue
            try:
                store.create_partition(name)
                log.debug("Created partition %s", name)
            except sqlite3.Error as exc:
                log.warning("Failed to create partition %s: %s", name, exc)
                failed.append(name)
        if not failed and version > current:
            store.set_version(version)

    def _destructive_reset(self, store: Store, reason: str) -> None:
        log.error("DESTRUCTIVE RESET of local store %s: %s. All cached data and queued "
                  "orders in this file are deleted; reinitialize and reload.", self.db_path, reason)
        store.close()
        if self.db_path != ":memory:":
            for suffix in ("", "-wal", "-shm", "-journal"):
                path = self.db_path + suffix
                try:
                    os.remove(path)
                except FileNotFoundError:
                    continue
        raise SchemaDriftError(f"Local store reset ({reason}); reload required")


def open_store(db_path: str, migrations: Sequence[Migration] = MIGRATIONS) -> Store:
    """Open the store, retrying initialization once after a destructive reset."""
    manager = SchemaManager(db_path, migrations)
    try:
        return manager.ensure()
    except SchemaDriftError:
        log.warning("Retrying store initialization for %s after reset", db_path)
        return manager.ensure()
