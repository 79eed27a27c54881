"""
Reference-data cache for a POS session.

`load()` serves data from the local store while it is fresh and refetches the
whole `pos.session/load_data` payload otherwise. Fresh means: the metadata
names the same session, it was written less than 15 minutes ago, and the
critical partitions (products, categories, partners) hold records. Network
errors propagate unchanged; a stale read is an acceptable fallback for the
caller, so no retry happens here.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pos_errors import RemoteError
from pos_records import RecordSet, from_blob, normalize
from pos_schema import METADATA_PARTITION, MODEL_PARTITIONS, RAW_DATA_PARTITION, partition_for
from pos_store import PartitionMissing, Store

log = logging.getLogger(__name__)

FRESHNESS_TTL_MS = 900_000
CRITICAL_MODELS = ("product.product", "pos.category", "res.partner")
ESSENTIAL_MODELS = ("product.product", "pos.category", "pos.payment.method")
DATA_KEY = "data"
METADATA_KEY = "cache"
DEFAULT_CURRENCY = {"name": "USD", "symbol": "$", "position": "before"}


def epoch_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CacheMetadata:
    session_id: Any
    loaded_at: int

    def to_blob(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "loaded_at": self.loaded_at}

    @classmethod
    def from_blob(cls, blob: Any) -> Optional["CacheMetadata"]:
        if not isinstance(blob, dict) or blob.get("session_id") in (None, ""):
            return None
        try:
            loaded_at = int(blob.get("loaded_at") or 0)
        except (TypeError, ValueError):
            loaded_at = 0
        return cls(session_id=blob["session_id"], loaded_at=loaded_at)


def _m2o_id(value: Any) -> Optional[int]:
    if isinstance(value, (list, tuple)) and value:
        value = value[0]
    return value if isinstance(value, int) and not isinstance(value, bool) else None


class DataCache:
    def __init__(self, store: Store, transport: Any,
                 clock: Callable[[], int] = epoch_millis,
                 ttl_ms: int = FRESHNESS_TTL_MS):
        self.store = store
        self.transport = transport
        self.clock = clock
        self.ttl_ms = ttl_ms

    # ---------- metadata / freshness ----------
    def metadata(self) -> Optional[CacheMetadata]:
        try:
            return CacheMetadata.from_blob(self.store.get(METADATA_PARTITION, METADATA_KEY))
        except PartitionMissing:
            return None

    def _write_metadata(self, session_id: Any) -> None:
        meta = CacheMetadata(session_id=session_id, loaded_at=self.clock())
        self.store.put(METADATA_PARTITION, METADATA_KEY, meta.to_blob())

    def is_fresh(self, session_id: Any) -> bool:
        meta = self.metadata()
        if meta is None:
            log.info("Cache miss: never loaded")
            return False
        if meta.session_id != session_id:
            log.info("Cache miss: stored data is for session %s, not %s", meta.session_id, session_id)
            return False
        age = self.clock() - meta.loaded_at
        if age >= self.ttl_ms:
            log.info("Cache miss: data is %d minutes old", age // 60000)
            return False
        for model in CRITICAL_MODELS:
            if not self.get_model_data(model).records:
                log.info("Cache miss: critical partition %s is empty", partition_for(model))
                return False
        log.debug("Cache hit for session %s (age %d ms)", session_id, age)
        return True

    # ---------- loading ----------
    def _fetch(self, session_id: Any, specific_model: Optional[str]) -> Dict[str, Any]:
        try:
            remote_session_id = int(session_id)
        except (TypeError, ValueError):
            remote_session_id = session_id
        result = self.transport.call_kw(
            "pos.session", "load_data",
            [remote_session_id, [specific_model] if specific_model else []],
        )
        if not isinstance(result, dict):
            raise RemoteError("No data received from the server")
        return result

    def _store_model(self, model: str, result: Dict[str, Any]) -> RecordSet:
        rs = normalize(model, result.get(model),
                       fields=result.get(f"{model}_fields"),
                       relations=result.get(f"{model}_relations"))
        self.store.put(partition_for(model), DATA_KEY, rs.to_blob())
        log.info("Stored %d records for %s", len(rs), model)
        return rs

    def load(self, session_id: Any, force: bool = False,
             specific_model: Optional[str] = None) -> Dict[str, RecordSet]:
        if not force and not specific_model and self.is_fresh(session_id):
            log.info("Using cached POS data for session %s", session_id)
            return self.get_all_data()
        if specific_model and specific_model not in MODEL_PARTITIONS:
            log.warning("No local partition for model %s; skipping load", specific_model)
            return {}

        log.info("Fetching POS data for session %s%s", session_id,
                 f" (model {specific_model})" if specific_model else "")
        result = self._fetch(session_id, specific_model)
        self.store.put(RAW_DATA_PARTITION, specific_model or DATA_KEY, result)

        loaded: Dict[str, RecordSet] = {}
        if specific_model:
            if specific_model in result or f"{specific_model}_fields" in result:
                loaded[specific_model] = self._store_model(specific_model, result)
            else:
                log.info("No data returned for requested model %s", specific_model)
        else:
            for model in MODEL_PARTITIONS:
                if model in result or f"{model}_fields" in result:
                    loaded[model] = self._store_model(model, result)
            ignored = [k for k in result if k not in MODEL_PARTITIONS
                       and not k.endswith(("_fields", "_relations"))]
            if ignored:
                log.debug("Ignoring models without a partition: %s", ", ".join(sorted(ignored)))

        if not specific_model:
            self._write_metadata(session_id)
        elif loaded and self.metadata() is None:
            # Nothing else is cached yet: this model is the whole cache.
            self._write_metadata(session_id)
        return loaded

    def reload_model(self, model: str) -> bool:
        """Refetch one model for the stored session; old data stays if the fetch fails."""
        meta = self.metadata()
        if meta is None:
            log.error("No session loaded; cannot reload %s", model)
            return False
        if model not in MODEL_PARTITIONS:
            log.warning("No local partition for model %s; cannot reload", model)
            return False
        self.load(meta.session_id, force=True, specific_model=model)
        return True

    # ---------- reads ----------
    def get_model_data(self, model: str) -> RecordSet:
        try:
            blob = self.store.get(partition_for(model), DATA_KEY)
        except (PartitionMissing, ValueError):
            return RecordSet(model)
        if blob is None:
            return RecordSet(model)
        return from_blob(model, blob)

    def get_all_data(self) -> Dict[str, RecordSet]:
        out: Dict[str, RecordSet] = {}
        for model in MODEL_PARTITIONS:
            try:
                blob = self.store.get(partition_for(model), DATA_KEY)
            except PartitionMissing:
                continue
            if blob is not None:
                out[model] = from_blob(model, blob)
        return out

    def _records(self, model: str) -> List[Dict[str, Any]]:
        return self.get_model_data(model).records

    def get_products(self) -> List[Dict[str, Any]]:
        return self._records("product.product")

    def get_partners(self) -> List[Dict[str, Any]]:
        return self._records("res.partner")

    def get_categories(self) -> List[Dict[str, Any]]:
        return self._records("pos.category")

    def get_payment_methods(self) -> List[Dict[str, Any]]:
        return self._records("pos.payment.method")

    def get_taxes(self) -> List[Dict[str, Any]]:
        return self._records("account.tax")

    def get_session_info(self) -> List[Dict[str, Any]]:
        return self._records("pos.session")

    def get_pos_config(self) -> List[Dict[str, Any]]:
        return self._records("pos.config")

    def get_companies(self) -> List[Dict[str, Any]]:
        return self._records("res.company")

    def get_currencies(self) -> List[Dict[str, Any]]:
        return self._records("res.currency")

    def get_currency(self) -> Dict[str, Any]:
        companies = self.get_companies()
        if not companies:
            return dict(DEFAULT_CURRENCY)
        currency_id = _m2o_id(companies[0].get("currency_id"))
        if currency_id is None:
            return dict(DEFAULT_CURRENCY)
        currency = self.get_model_data("res.currency").by_id(currency_id)
        if not currency:
            log.warning("Currency %s not found in res.currency", currency_id)
            return dict(DEFAULT_CURRENCY)
        return {
            "id": currency["id"],
            "name": currency.get("name") or "USD",
            "symbol": currency.get("symbol") or "$",
            "position": currency.get("position") or "before",
            "rate": currency.get("rate") or 1,
            "decimal_places": currency.get("decimal_places") or 0,
            "rounding": currency.get("rounding") or 1,
        }

    def raw_payload(self) -> Optional[Dict[str, Any]]:
        try:
            return self.store.get(RAW_DATA_PARTITION, DATA_KEY)
        except PartitionMissing:
            return None

    def check_data_exists(self) -> bool:
        present = set(self.store.partitions())
        for model in ESSENTIAL_MODELS:
            if partition_for(model) not in present:
                log.error("Essential partition %s does not exist", partition_for(model))
                return False
        if not self.get_products():
            log.error("Product data missing from the local store")
            return False
        if self.metadata() is None:
            log.error("Cache metadata missing from the local store")
            return False
        return True

    # ---------- clearing ----------
    def clear_model(self, model: str) -> None:
        self.store.delete(partition_for(model))
        meta = self.metadata()
        if meta is not None:
            self.store.put(METADATA_PARTITION, METADATA_KEY,
                           {"session_id": meta.session_id, "loaded_at": 0})
        log.info("Cleared %s", partition_for(model))

    def clear_all(self) -> None:
        present = set(self.store.partitions())
        for partition in list(MODEL_PARTITIONS.values()) + [RAW_DATA_PARTITION, METADATA_PARTITION]:
            if partition in present:
                self.store.delete(partition)
        log.info("All cached POS data cleared")
