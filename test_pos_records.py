import unittest

from pos_records import (
    ArrayPayload,
    MalformedPayload,
    RecordSet,
    WrappedPayload,
    classify_payload,
    from_blob,
    normalize,
)


class ClassifyPayloadTest(unittest.TestCase):
    def test_shapes(self):
        self.assertIsInstance(classify_payload([{"id": 1}]), ArrayPayload)
        self.assertIsInstance(classify_payload({"data": [], "fields": {}}), WrappedPayload)
        self.assertIsInstance(classify_payload({"data": "x"}), MalformedPayload)
        self.assertIsInstance(classify_payload({}), MalformedPayload)
        self.assertIsInstance(classify_payload(None), MalformedPayload)
        self.assertIsInstance(classify_payload(42), MalformedPayload)


class NormalizeTest(unittest.TestCase):
    def test_never_raises_on_any_shape(self):
        for raw in ([{"id": 1}], {"data": [{"id": 1}]}, {"data": "not an array"}, None, {}, "text", 3.5):
            rs = normalize("product.product", raw)
            self.assertIsInstance(rs, RecordSet)
            self.assertEqual(rs.model_name, "product.product")

    def test_bare_array(self):
        rs = normalize("res.partner", [{"id": 1, "name": "A"}, {"id": 2, "name": "B"}])
        self.assertEqual(rs.ids(), [1, 2])
        self.assertEqual(rs.field_meta, {})

    def test_wrapped_keeps_metadata(self):
        raw = {"data": [{"id": 5}], "fields": {"name": {"type": "char"}}, "relations": {"x": {}}}
        rs = normalize("pos.category", raw)
        self.assertEqual(rs.ids(), [5])
        self.assertEqual(rs.field_meta, {"name": {"type": "char"}})
        self.assertEqual(rs.relation_meta, {"x": {}})

    def test_sibling_metadata_used_when_not_wrapped(self):
        rs = normalize("account.tax", [{"id": 1}], fields={"amount": {"type": "float"}})
        self.assertEqual(rs.field_meta, {"amount": {"type": "float"}})

    def test_malformed_data_gives_empty_set_and_warns(self):
        with self.assertLogs("pos_records", level="WARNING"):
            rs = normalize("product.product", {"data": "not an array"})
        self.assertEqual(rs.records, [])

    def test_duplicate_and_invalid_ids_dropped(self):
        raw = [{"id": 1, "v": "first"}, {"id": 1, "v": "second"}, {"name": "no id"},
               {"id": "7"}, {"id": True}, "junk", {"id": 2}]
        rs = normalize("product.product", raw)
        self.assertEqual(rs.ids(), [1, 2])
        self.assertEqual(rs.by_id(1)["v"], "first")
        self.assertIsNone(rs.by_id(99))

    def test_blob_round_trip_and_legacy_list(self):
        rs = normalize("pos.config", {"data": [{"id": 3}], "fields": {"a": 1}})
        again = from_blob("pos.config", rs.to_blob())
        self.assertEqual(again.records, rs.records)
        self.assertEqual(again.field_meta, {"a": 1})
        self.assertEqual(from_blob("pos.config", [{"id": 9}]).ids(), [9])


if __name__ == "__main__":
    unittest.main()
