import os
import tempfile
import unittest

from pos_agent import create_app
from pos_context import CoreConfig, CoreContext
from pos_errors import AuthorizationError, TransportError
from pos_schema import open_store


class FakeTransport:
    def __init__(self):
        self.online = True
        self.error = None
        self.sessions = {5: {"id": 5, "name": "POS/5", "user_id": [9, "Other"], "state": "opened"}}

    def call_kw(self, model, method, args=None, kwargs=None):
        if self.error:
            raise self.error
        if method == "load_data":
            return {"product.product": [{"id": 1, "name": "Tea"}],
                    "pos.category": [{"id": 2}], "res.partner": [{"id": 3}]}
        if method == "sync_from_ui":
            return [{"id": 777}]
        if method == "search_read":
            wanted = args[0][0][2]
            return [self.sessions[wanted]] if wanted in self.sessions else []
        raise AssertionError(f"unexpected call {model}.{method}")

    def check_connection(self):
        return self.online


class AgentTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        config = CoreConfig(db_path=os.path.join(self.tmp.name, "agent.db"), user_id=2)
        self.transport = FakeTransport()
        self.ctx = CoreContext(config, store=open_store(config.db_path), transport=self.transport)
        self.client = create_app(self.ctx).test_client()

    def tearDown(self):
        self.ctx.close()
        self.tmp.cleanup()

    def test_health(self):
        resp = self.client.get("/api/health")
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertTrue(data["online"])
        self.assertEqual(data["pending_orders"], 0)

    def test_load_then_read_model(self):
        resp = self.client.post("/api/cache/load", json={"session_id": 5})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["models"]["product.product"], 1)
        records = self.client.get("/api/cache/product.product").get_json()["records"]
        self.assertEqual(records, [{"id": 1, "name": "Tea"}])
        status = self.client.get("/api/cache/status?session_id=5").get_json()
        self.assertTrue(status["fresh"])

    def test_load_requires_session(self):
        self.assertEqual(self.client.post("/api/cache/load", json={}).status_code, 400)

    def test_load_errors_map_to_status_codes(self):
        self.transport.error = TransportError("connection refused")
        self.assertEqual(self.client.post("/api/cache/load", json={"session_id": 5}).status_code, 502)
        self.transport.error = AuthorizationError("expired", 401)
        resp = self.client.post("/api/cache/load", json={"session_id": 5})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.get_json()["kind"], "authorization")

    def test_enqueue_and_sync(self):
        resp = self.client.post("/api/orders", json={
            "lines": [{"product_id": 7, "qty": 2, "price_unit": 10}], "amount_total": 20})
        self.assertEqual(resp.status_code, 201)
        local_id = resp.get_json()["order"]["local_id"]
        pending = self.client.get("/api/orders?status=pending").get_json()["orders"]
        self.assertEqual([o["local_id"] for o in pending], [local_id])

        result = self.client.post("/api/sync").get_json()
        self.assertTrue(result["did_sync"])
        self.assertEqual(result["synced"], 1)
        order = self.client.get(f"/api/orders/{local_id}").get_json()["order"]
        self.assertEqual(order["status"], "synced")
        self.assertEqual(order["server_id"], 777)

    def test_sync_offline_reports_reason(self):
        self.client.post("/api/orders", json={"lines": [{"product_id": 7, "qty": 1}]})
        self.transport.online = False
        result = self.client.post("/api/sync").get_json()
        self.assertFalse(result["did_sync"])
        self.assertEqual(result["reason"], "offline")

    def test_unknown_order_and_bad_payloads(self):
        self.assertEqual(self.client.get("/api/orders/nope").status_code, 404)
        self.assertEqual(self.client.post("/api/orders/nope/sync").status_code, 404)
        self.assertEqual(self.client.post("/api/orders", data="x", content_type="text/plain").status_code, 400)
        self.assertEqual(self.client.get("/api/orders?status=bogus").status_code, 400)
        resp = self.client.post("/api/orders", json={"lines": 5, "amount_total": 1})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get("/api/orders").get_json()["orders"], [])

    def test_close_session_owned_by_someone_else(self):
        resp = self.client.post("/api/session/5/close", json={})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.get_json()["outcome"]["kind"], "permission_denied")


if __name__ == "__main__":
    unittest.main()
