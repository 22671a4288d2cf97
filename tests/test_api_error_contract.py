from __future__ import annotations

import unittest
import uuid

from engine_case import EngineTestCase


class ApiErrorContractTestCase(EngineTestCase):
    def test_unknown_api_route_returns_json_error_shape(self):
        res = self.client.get("/api/does-not-exist")
        self.assertEqual(res.status_code, 404)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), 404)
        self.assertTrue(str(body.get("trace_id") or "").strip())

    def test_engine_error_carries_code_details_and_trace_id(self):
        admin = self.make_user("admin")
        headers = self.auth(admin)
        headers["X-Request-Id"] = "rid-engine-404"
        res = self.client.post("/api/admin/orders/4040/assign", json={"batch_id": 1, "address": {"street_address": "1 Main", "zip_code": "97201"}}, headers=headers)
        self.assertEqual(res.status_code, 404)
        body = res.get_json()
        self.assertEqual(body["error"], "NOT_FOUND")
        self.assertEqual(body["status"], 404)
        self.assertEqual(body["trace_id"], "rid-engine-404")
        self.assertIn("details", body)


class RequestIdHeadersTestCase(EngineTestCase):
    def test_generates_request_id_when_missing(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        rid = (res.headers.get("X-Request-ID") or "").strip()
        self.assertTrue(rid)
        uuid.UUID(rid)

    def test_echoes_request_id_when_provided(self):
        incoming = "rid-test-123"
        res = self.client.get("/api/health", headers={"X-Request-ID": incoming})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.headers.get("X-Request-ID"), incoming)

    def test_health_reports_database(self):
        body = self.client.get("/api/health").get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["db"], "ok")
        self.assertEqual(body["service"], "farmroute-engine")


if __name__ == "__main__":
    unittest.main()
