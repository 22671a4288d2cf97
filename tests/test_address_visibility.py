from __future__ import annotations

import unittest

from engine_case import EngineTestCase

from farmroute.errors import Forbidden
from farmroute.extensions import db
from farmroute.models import BatchStop, ScanType, UserRole
from farmroute.services.address_visibility import (
    WITHHELD_PLACEHOLDER,
    get_stop_address,
    is_address_visible,
    present_stop,
)
from farmroute.services.scan_service import record_scan


class AddressVisibilityTestCase(EngineTestCase):
    def setUp(self):
        super().setUp()
        self.batch, self.driver, orders = self.build_batch(stops=2)
        self.order = orders[0]
        self.stop_id = self.order.stop_id

    def test_driver_sees_only_zip_before_pickup(self):
        data = get_stop_address(self.stop_id, self.driver)
        self.assertFalse(data["address_visible"])
        self.assertEqual(data["street_address"], WITHHELD_PLACEHOLDER)
        self.assertEqual(data["city"], "")
        self.assertEqual(data["zip_code"], "97201")

    def test_loaded_scan_reveals_address(self):
        record_scan(self.batch.id, self.order.box_code, ScanType.LOADED, actor=self.driver).raise_for_error()
        data = get_stop_address(self.stop_id, self.driver)
        self.assertTrue(data["address_visible"])
        self.assertIn("Orchard Lane", data["street_address"])
        self.assertEqual(data["city"], "Portland")

    def test_visibility_never_reverts(self):
        record_scan(self.batch.id, self.order.box_code, ScanType.LOADED, actor=self.driver).raise_for_error()
        first = db.session.get(BatchStop, self.stop_id).address_visible_at
        record_scan(self.batch.id, self.order.box_code, ScanType.LOADED, actor=self.driver).raise_for_error()
        db.session.expire_all()
        self.assertEqual(db.session.get(BatchStop, self.stop_id).address_visible_at, first)
        self.assertTrue(is_address_visible(self.stop_id, self.driver))

    def test_other_stops_stay_hidden(self):
        record_scan(self.batch.id, self.order.box_code, ScanType.LOADED, actor=self.driver).raise_for_error()
        stops = BatchStop.query.filter_by(batch_id=self.batch.id).order_by(BatchStop.sequence_number).all()
        presented = [present_stop(s, self.driver) for s in stops]
        self.assertEqual([p["address_visible"] for p in presented], [True, False])

    def test_admin_always_sees_address(self):
        admin = self.make_user(UserRole.ADMIN)
        data = get_stop_address(self.stop_id, admin)
        self.assertTrue(data["address_visible"])
        self.assertIn("Orchard Lane", data["street_address"])

    def test_other_driver_is_forbidden(self):
        with self.assertRaises(Forbidden):
            get_stop_address(self.stop_id, self.make_user(UserRole.DRIVER))

    def test_consumer_is_forbidden(self):
        with self.assertRaises(Forbidden):
            get_stop_address(self.stop_id, self.make_user(UserRole.CONSUMER))


if __name__ == "__main__":
    unittest.main()
