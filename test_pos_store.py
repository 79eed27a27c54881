import os
import tempfile
import unittest

from pos_store import PartitionMissing, Store


class StoreTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = Store(os.path.join(self.tmp.name, "store.db"))
        self.store.create_partition("things")

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_put_then_get_returns_blob(self):
        self.store.put("things", "a", {"x": 1, "items": [1, 2]})
        self.assertEqual(self.store.get("things", "a"), {"x": 1, "items": [1, 2]})

    def test_missing_key_returns_default(self):
        self.assertIsNone(self.store.get("things", "nope"))
        self.assertEqual(self.store.get("things", "nope", default=[]), [])

    def test_overwrite_bumps_version(self):
        self.store.put("things", "a", 1)
        self.store.put("things", "a", 2)
        entry = self.store.get_entry("things", "a")
        self.assertEqual(entry["blob"], 2)
        self.assertEqual(entry["version"], 2)

    def test_get_all_keeps_insertion_order(self):
        for key in ("c", "a", "b"):
            self.store.put("things", key, key.upper())
        self.store.put("things", "c", "C2")
        self.assertEqual(self.store.get_all("things"), ["C2", "A", "B"])
        self.assertEqual(self.store.keys("things"), ["c", "a", "b"])

    def test_delete_key_and_clear_partition(self):
        self.store.put("things", "a", 1)
        self.store.put("things", "b", 2)
        self.store.delete("things", "a")
        self.assertEqual(self.store.keys("things"), ["b"])
        self.store.delete("things")
        self.assertEqual(self.store.get_all("things"), [])
        self.assertTrue(self.store.has_partition("things"))

    def test_unserializable_blob_leaves_previous_value(self):
        self.store.put("things", "a", {"ok": True})
        with self.assertRaises(TypeError):
            self.store.put("things", "a", {"bad": object()})
        self.assertEqual(self.store.get("things", "a"), {"ok": True})

    def test_missing_partition_raises(self):
        with self.assertRaises(PartitionMissing):
            self.store.get("other", "a")
        with self.assertRaises(PartitionMissing):
            self.store.put("other", "a", 1)

    def test_invalid_partition_name_rejected(self):
        with self.assertRaises(ValueError):
            self.store.create_partition("Robert'); DROP TABLE x;--")

    def test_partitions_and_version(self):
        self.store.create_partition("more")
        self.assertEqual(self.store.partitions(), ["more", "things"])
        self.assertEqual(self.store.version, 0)
        self.store.set_version(4)
        self.assertEqual(self.store.version, 4)


if __name__ == "__main__":
    unittest.main()
