from __future__ import annotations

import os
import shutil
import tempfile
import threading
import unittest

from engine_case import EngineTestCase

from farmroute import create_app
from farmroute.errors import Forbidden, InvalidTransition, NotFound, OutOfOrderScan, ValidationError
from farmroute.extensions import db
from farmroute.models import (
    BatchStatus,
    BatchStop,
    DeliveryBatch,
    Order,
    OrderStatus,
    Payout,
    RecipientType,
    ScanEvent,
    ScanOutcome,
    ScanType,
    StopStatus,
    TransactionFee,
    UserRole,
)
from farmroute.services.order_state_machine import cancel_order
from farmroute.services.scan_service import record_scan
from farmroute.utils.actors import Actor


class ScanFlowTestCase(EngineTestCase):
    def _load(self, batch, driver, order):
        return record_scan(batch.id, order.box_code, ScanType.LOADED, actor=driver).raise_for_error()

    def _deliver(self, batch, driver, order):
        return record_scan(batch.id, order.box_code, ScanType.DELIVERED, actor=driver)

    def test_three_stop_batch_end_to_end(self):
        lead = self.make_user(UserRole.LEAD_FARMER, payout_account_ref="acct_lead")
        batch, driver, orders = self.build_batch(stops=3, lead=lead)

        for order in orders[:2]:
            self._load(batch, driver, order)
            self.assertEqual(db.session.get(Order, order.id).status, OrderStatus.IN_TRANSIT)
        self._load(batch, driver, orders[2])
        for order in orders:
            self.assertEqual(db.session.get(Order, order.id).status, OrderStatus.OUT_FOR_DELIVERY)

        for order in orders:
            result = self._deliver(batch, driver, order)
            self.assertTrue(result.ok, result.error)
            self.assertTrue(result.applied)

        batch = db.session.get(DeliveryBatch, batch.id)
        self.assertEqual(batch.status, BatchStatus.COMPLETED)
        self.assertIsNotNone(batch.completed_at)

        driver_payouts = Payout.query.filter_by(batch_id=batch.id, recipient_type=RecipientType.DRIVER).all()
        self.assertEqual(len(driver_payouts), 1)
        self.assertEqual(driver_payouts[0].amount_minor, 2250)
        self.assertEqual(Payout.query.filter_by(recipient_type=RecipientType.FARMER).count(), 3)
        self.assertEqual(Payout.query.filter_by(recipient_type=RecipientType.LEAD_FARMER_COMMISSION).count(), 3)
        for order in orders:
            fees = {f.fee_type: f.amount_minor for f in TransactionFee.query.filter_by(order_id=order.id).all()}
            self.assertEqual(sum(fees.values()), 10000)

    def test_delivered_before_loaded_is_out_of_order(self):
        batch, driver, orders = self.build_batch(stops=1)
        result = self._deliver(batch, driver, orders[0])
        self.assertIsInstance(result.error, OutOfOrderScan)
        self.assertIn("scan pickup first", result.error.message)
        self.assertEqual(result.logged.outcome, ScanOutcome.REJECTED)
        self.assertEqual(result.logged.error_code, "OUT_OF_ORDER_SCAN")
        self.assertEqual(db.session.get(Order, orders[0].id).status, OrderStatus.IN_TRANSIT)
        self.assertIsNone(db.session.get(BatchStop, orders[0].stop_id).address_visible_at)

    def test_loaded_before_batch_start_is_rejected(self):
        batch, driver, orders = self.build_batch(stops=1, start=False)
        result = record_scan(batch.id, orders[0].box_code, ScanType.LOADED, actor=driver)
        self.assertIsInstance(result.error, InvalidTransition)
        self.assertIsNone(db.session.get(BatchStop, orders[0].stop_id).address_visible_at)

    def test_duplicate_loaded_scan_is_a_noop(self):
        batch, driver, orders = self.build_batch(stops=2)
        first = self._load(batch, driver, orders[0])
        second = self._load(batch, driver, orders[0])
        self.assertTrue(first.applied)
        self.assertFalse(second.applied)
        self.assertEqual(second.logged.outcome, ScanOutcome.NOOP)
        self.assertEqual(first.address_visible_at, second.address_visible_at)
        self.assertEqual(ScanEvent.query.filter_by(order_id=orders[0].id, scan_type=ScanType.LOADED).count(), 2)

    def test_duplicate_delivered_scan_returns_original_event(self):
        batch, driver, orders = self.build_batch(stops=2)
        for order in orders:
            self._load(batch, driver, order)
        first = self._deliver(batch, driver, orders[0])
        second = self._deliver(batch, driver, orders[0])

        self.assertTrue(second.ok)
        self.assertFalse(second.applied)
        self.assertEqual(second.event.id, first.event.id)
        self.assertNotEqual(second.logged.id, first.logged.id)
        self.assertEqual(TransactionFee.query.filter_by(order_id=orders[0].id).count(), 3)
        self.assertEqual(Payout.query.filter_by(order_id=orders[0].id).count(), 1)

    def test_box_code_is_case_insensitive(self):
        batch, driver, orders = self.build_batch(stops=1)
        result = record_scan(batch.id, f"  {orders[0].box_code.lower()} ", ScanType.LOADED, actor=driver)
        self.assertTrue(result.applied)

    def test_box_code_from_another_batch_is_unknown(self):
        batch, driver, _orders = self.build_batch(stops=1)
        result = record_scan(batch.id, "B999-1", ScanType.LOADED, actor=driver)
        self.assertIsInstance(result.error, NotFound)

    def test_malformed_box_code_is_unknown(self):
        batch, driver, _orders = self.build_batch(stops=1)
        result = record_scan(batch.id, "not-a-box", ScanType.LOADED, actor=driver)
        self.assertIsInstance(result.error, NotFound)
        self.assertEqual(result.logged.outcome, ScanOutcome.REJECTED)

    def test_unknown_scan_type(self):
        batch, driver, orders = self.build_batch(stops=1)
        result = record_scan(batch.id, orders[0].box_code, "dropped", actor=driver)
        self.assertIsInstance(result.error, ValidationError)

    def test_only_batch_driver_can_scan(self):
        batch, _driver, orders = self.build_batch(stops=1)
        result = record_scan(batch.id, orders[0].box_code, ScanType.LOADED, actor=self.make_user(UserRole.DRIVER))
        self.assertIsInstance(result.error, Forbidden)
        with self.assertRaises(Forbidden):
            result.raise_for_error()

    def test_cancelled_order_cannot_be_scanned(self):
        batch, driver, orders = self.build_batch(stops=2)
        cancel_order(orders[0].id)
        result = record_scan(batch.id, orders[0].box_code, ScanType.LOADED, actor=driver)
        self.assertIsInstance(result.error, InvalidTransition)

    def test_cancel_mid_batch_releases_loaded_orders(self):
        batch, driver, orders = self.build_batch(stops=2)
        self._load(batch, driver, orders[0])
        self.assertEqual(db.session.get(Order, orders[0].id).status, OrderStatus.IN_TRANSIT)
        cancel_order(orders[1].id)
        self.assertEqual(db.session.get(Order, orders[0].id).status, OrderStatus.OUT_FOR_DELIVERY)
        self.assertEqual(db.session.get(BatchStop, orders[1].stop_id).status, StopStatus.CANCELLED)

    def test_scan_log_is_append_only(self):
        batch, driver, orders = self.build_batch(stops=1)
        row = self._load(batch, driver, orders[0]).logged
        row.box_code = "B0-0"
        with self.assertRaises(RuntimeError):
            db.session.commit()
        db.session.rollback()

class ConcurrentScanTestCase(EngineTestCase):
    """Two devices scanning the same box at once, on a file database."""

    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.mkdtemp(prefix="farmroute-scan-")
        db_uri = "sqlite:///" + os.path.join(cls._tmpdir, "race.db").replace(os.sep, "/")
        cls._prev_env = {k: os.getenv(k) for k in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL")}
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True, PAYMENTS_PROVIDER="mock")
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        with cls.app.app_context():
            db.engine.dispose()
        for key, prev in cls._prev_env.items():
            if prev is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = prev
        shutil.rmtree(cls._tmpdir, ignore_errors=True)

    def _race(self, batch_id: int, box_code: str, kind: str, actor: Actor) -> list[dict]:
        db.session.close()
        barrier = threading.Barrier(2)
        outcomes: list[dict] = []
        failures: list[BaseException] = []
        lock = threading.Lock()

        def worker():
            try:
                with self.app.app_context():
                    barrier.wait(timeout=10)
                    result = record_scan(batch_id, box_code, kind, actor=actor)
                    snapshot = {
                        "ok": result.ok,
                        "applied": bool(result.applied),
                        "event_id": int(result.event.id),
                        "address_visible_at": result.address_visible_at,
                    }
                    db.session.remove()
                with lock:
                    outcomes.append(snapshot)
            except Exception as e:
                with lock:
                    failures.append(e)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        self.assertEqual(failures, [])
        self.assertEqual(len(outcomes), 2)
        return sorted(outcomes, key=lambda o: not o["applied"])

    def test_concurrent_loaded_then_delivered_scans(self):
        batch, driver, orders = self.build_batch(stops=1)
        batch_id = int(batch.id)
        order_id = int(orders[0].id)
        stop_id = int(orders[0].stop_id)
        box_code = orders[0].box_code
        actor = Actor.from_user(driver)

        winner, loser = self._race(batch_id, box_code, ScanType.LOADED, actor)
        self.assertTrue(winner["ok"] and winner["applied"])
        self.assertTrue(loser["ok"])
        self.assertFalse(loser["applied"])
        self.assertIsNotNone(winner["address_visible_at"])
        self.assertEqual(loser["address_visible_at"], winner["address_visible_at"])
        self.assertEqual(db.session.get(BatchStop, stop_id).address_visible_at, winner["address_visible_at"])
        self.assertEqual(
            ScanEvent.query.filter_by(order_id=order_id, scan_type=ScanType.LOADED, outcome=ScanOutcome.APPLIED).count(),
            1,
        )

        winner, loser = self._race(batch_id, box_code, ScanType.DELIVERED, actor)
        self.assertTrue(winner["ok"] and winner["applied"])
        self.assertTrue(loser["ok"])
        self.assertFalse(loser["applied"])
        self.assertEqual(loser["event_id"], winner["event_id"])
        self.assertEqual(db.session.get(Order, order_id).status, OrderStatus.DELIVERED)
        self.assertEqual(TransactionFee.query.filter_by(order_id=order_id).count(), 3)
        self.assertEqual(Payout.query.filter_by(order_id=order_id, recipient_type=RecipientType.FARMER).count(), 1)
        self.assertEqual(Payout.query.filter_by(batch_id=batch_id, recipient_type=RecipientType.DRIVER).count(), 1)


if __name__ == "__main__":
    unittest.main()
