import os
import tempfile
import unittest

from pos_cache import FRESHNESS_TTL_MS, DataCache
from pos_errors import RemoteError, TransportError
from pos_schema import open_store


def _payload():
    return {
        "product.product": {"data": [{"id": 1, "display_name": "Tea"}, {"id": 2, "display_name": "Cake"}],
                            "fields": {"display_name": {"type": "char"}}},
        "pos.category": [{"id": 10, "name": "Drinks"}],
        "res.partner": {"data": [{"id": 100, "name": "Walk-in"}]},
        "pos.payment.method": [{"id": 3, "name": "Cash"}],
        "res.company": [{"id": 1, "currency_id": [2, "EUR"]}],
        "res.currency": [{"id": 2, "name": "EUR", "symbol": "€", "position": "after", "decimal_places": 2}],
        "account.tax_fields": {"amount": {"type": "float"}},
        "some.unknown.model": [{"id": 1}],
    }


class FakeTransport:
    def __init__(self, result=None, error=None):
        self.result = _payload() if result is None else result
        self.error = error
        self.calls = []

    def call_kw(self, model, method, args=None, kwargs=None):
        self.calls.append((model, method, args))
        if self.error:
            raise self.error
        return self.result


class FakeClock:
    def __init__(self, now=1_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


class DataCacheTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = open_store(os.path.join(self.tmp.name, "cache.db"))
        self.transport = FakeTransport()
        self.clock = FakeClock()
        self.cache = DataCache(self.store, self.transport, clock=self.clock)

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_never_loaded_is_stale(self):
        self.assertFalse(self.cache.is_fresh(5))
        self.assertIsNone(self.cache.metadata())

    def test_full_load_stores_models_raw_payload_and_metadata(self):
        loaded = self.cache.load(5)
        self.assertEqual(self.transport.calls, [("pos.session", "load_data", [5, []])])
        self.assertEqual(len(loaded["product.product"]), 2)
        self.assertIn("account.tax", loaded)
        self.assertNotIn("some.unknown.model", loaded)
        self.assertEqual(self.cache.raw_payload()["pos.category"], [{"id": 10, "name": "Drinks"}])
        self.assertEqual(self.cache.metadata().session_id, 5)
        self.assertEqual(self.cache.metadata().loaded_at, self.clock.now)
        self.assertEqual(self.cache.get_model_data("product.product").field_meta,
                         {"display_name": {"type": "char"}})
        self.assertEqual(self.cache.get_model_data("account.tax").field_meta, {"amount": {"type": "float"}})

    def test_freshness_boundary(self):
        self.cache.load(5)
        self.clock.now += FRESHNESS_TTL_MS - 1
        self.assertTrue(self.cache.is_fresh(5))
        self.clock.now += 2
        self.assertFalse(self.cache.is_fresh(5))

    def test_fresh_cache_skips_network(self):
        self.cache.load(5)
        self.clock.now += 60_000
        loaded = self.cache.load(5)
        self.assertEqual(len(self.transport.calls), 1)
        self.assertEqual(loaded["pos.category"].ids(), [10])

    def test_other_session_is_stale(self):
        self.cache.load(5)
        self.assertFalse(self.cache.is_fresh(6))
        self.assertFalse(self.cache.is_fresh("5"))
        self.cache.load(6)
        self.assertEqual(len(self.transport.calls), 2)
        self.assertEqual(self.cache.metadata().session_id, 6)

    def test_empty_critical_partition_is_stale_regardless_of_age(self):
        payload = _payload()
        payload["res.partner"] = []
        self.transport.result = payload
        self.cache.load(5)
        self.assertFalse(self.cache.is_fresh(5))

    def test_force_refetches(self):
        self.cache.load(5)
        self.cache.load(5, force=True)
        self.assertEqual(len(self.transport.calls), 2)

    def test_network_error_propagates_and_keeps_metadata(self):
        self.cache.load(5)
        self.transport.error = TransportError("down")
        with self.assertRaises(TransportError):
            self.cache.load(5, force=True)
        self.assertEqual(self.cache.metadata().session_id, 5)
        self.assertEqual(len(self.cache.get_products()), 2)

    def test_non_object_result_is_remote_error(self):
        self.transport.result = []
        with self.assertRaises(RemoteError):
            self.cache.load(5)
        self.assertIsNone(self.cache.metadata())

    def test_specific_model_leaves_metadata_alone(self):
        self.cache.load(5)
        loaded_at = self.cache.metadata().loaded_at
        self.clock.now += 10_000
        self.transport.result = {"product.product": [{"id": 9}]}
        loaded = self.cache.load(7, specific_model="product.product")
        self.assertEqual(self.transport.calls[-1], ("pos.session", "load_data", [7, ["product.product"]]))
        self.assertEqual(list(loaded), ["product.product"])
        self.assertEqual(self.cache.get_products(), [{"id": 9}])
        self.assertEqual(self.cache.metadata().session_id, 5)
        self.assertEqual(self.cache.metadata().loaded_at, loaded_at)
        self.assertEqual(self.cache.get_categories(), [{"id": 10, "name": "Drinks"}])

    def test_specific_model_as_only_load_writes_metadata(self):
        self.transport.result = {"product.product": [{"id": 9}]}
        self.cache.load(7, specific_model="product.product")
        self.assertEqual(self.cache.metadata().session_id, 7)

    def test_accessors_never_raise(self):
        self.assertEqual(self.cache.get_products(), [])
        self.assertEqual(self.cache.get_taxes(), [])
        self.assertEqual(self.cache.get_model_data("not.a.model").records, [])
        self.assertEqual(self.cache.get_model_data("BAD name!").records, [])
        self.assertEqual(self.cache.get_all_data(), {})

    def test_typed_accessors_after_load(self):
        self.cache.load(5)
        self.assertEqual(self.cache.get_partners(), [{"id": 100, "name": "Walk-in"}])
        self.assertEqual(self.cache.get_payment_methods(), [{"id": 3, "name": "Cash"}])
        self.assertEqual([c["name"] for c in self.cache.get_currencies()], ["EUR"])
        self.assertEqual(self.cache.get_session_info(), [])
        self.assertEqual(self.cache.get_pos_config(), [])

    def test_legacy_bare_list_blob_is_readable(self):
        self.store.put("product_product", "data", [{"id": 4}, {"id": 4}, {"id": 5}])
        self.assertEqual([p["id"] for p in self.cache.get_products()], [4, 5])

    def test_currency_lookup_and_fallback(self):
        self.assertEqual(self.cache.get_currency()["name"], "USD")
        self.cache.load(5)
        currency = self.cache.get_currency()
        self.assertEqual(currency["name"], "EUR")
        self.assertEqual(currency["symbol"], "€")
        self.assertEqual(currency["position"], "after")

    def test_clear_model_forces_refetch(self):
        self.cache.load(5)
        self.cache.clear_model("product.product")
        self.assertEqual(self.cache.get_products(), [])
        self.assertEqual(self.cache.metadata().loaded_at, 0)
        self.assertFalse(self.cache.is_fresh(5))

    def test_reload_model_uses_stored_session(self):
        self.assertFalse(self.cache.reload_model("product.product"))
        self.cache.load(5)
        self.transport.result = {"product.product": [{"id": 11}]}
        self.assertTrue(self.cache.reload_model("product.product"))
        self.assertEqual(self.transport.calls[-1], ("pos.session", "load_data", [5, ["product.product"]]))
        self.assertEqual(self.cache.get_products(), [{"id": 11}])

    def test_reload_failure_keeps_previous_data(self):
        self.cache.load(5)
        self.transport.error = TransportError("down")
        with self.assertRaises(TransportError):
            self.cache.reload_model("product.product")
        self.assertEqual([p["id"] for p in self.cache.get_products()], [1, 2])

    def test_model_without_partition_is_skipped(self):
        self.assertEqual(self.cache.load(5, specific_model="hr.employee"), {})
        self.assertEqual(self.transport.calls, [])
        self.assertIsNone(self.cache.raw_payload())
        self.cache.load(5)
        self.assertFalse(self.cache.reload_model("hr.employee"))
        self.assertEqual(len(self.transport.calls), 1)

    def test_check_data_exists_and_clear_all(self):
        self.assertFalse(self.cache.check_data_exists())
        self.cache.load(5)
        self.assertTrue(self.cache.check_data_exists())
        self.cache.clear_all()
        self.assertIsNone(self.cache.metadata())
        self.assertEqual(self.cache.get_all_data(), {})
        self.assertFalse(self.cache.check_data_exists())


if __name__ == "__main__":
    unittest.main()
