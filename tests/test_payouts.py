from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import update

from engine_case import EngineTestCase

from farmroute.errors import InvalidTransition, PaymentTransferFailed, ValidationError
from farmroute.extensions import db
from farmroute.integrations.payments.mock_provider import MockPaymentsProvider
from farmroute.jobs.payout_runner import process_pending_payouts
from farmroute.models import (
    FeeType,
    JobRun,
    Order,
    OrderStatus,
    Payout,
    PayoutStatus,
    RecipientType,
    ScanType,
    TransactionFee,
    UserRole,
)
from farmroute.services.payout_service import (
    list_payout_queue,
    mark_payout_completed,
    mark_payout_failed,
    materialize_payouts,
    reconcile_ledger,
)
from farmroute.services.scan_service import record_scan


class PayoutTestCase(EngineTestCase):
    def _deliver_all(self, stops=1, lead=None, subtotal="100.00"):
        batch, driver, orders = self.build_batch(stops=stops, lead=lead, subtotal=subtotal)
        for order in orders:
            record_scan(batch.id, order.box_code, ScanType.LOADED, actor=driver).raise_for_error()
        for order in orders:
            record_scan(batch.id, order.box_code, ScanType.DELIVERED, actor=driver).raise_for_error()
        return batch, driver, orders


class MaterializeTestCase(PayoutTestCase):
    def test_fee_rows_with_lead_farmer(self):
        lead = self.make_user(UserRole.LEAD_FARMER, payout_account_ref="acct_lead")
        _batch, _driver, orders = self._deliver_all(lead=lead)
        fees = {f.fee_type: f for f in TransactionFee.query.filter_by(order_id=orders[0].id).all()}
        self.assertEqual(fees[FeeType.FARMER_SHARE].amount_minor, 8800)
        self.assertEqual(fees[FeeType.LEAD_FARMER_COMMISSION].amount_minor, 200)
        self.assertEqual(fees[FeeType.LEAD_FARMER_COMMISSION].recipient_id, lead.id)
        self.assertEqual(fees[FeeType.PLATFORM_FEE].amount_minor, 1000)
        lead_payout = Payout.query.filter_by(order_id=orders[0].id, recipient_type=RecipientType.LEAD_FARMER_COMMISSION).one()
        self.assertEqual(lead_payout.amount_minor, 200)
        self.assertEqual(lead_payout.status, PayoutStatus.PENDING)

    def test_no_lead_farmer_means_no_lead_payout(self):
        _batch, _driver, orders = self._deliver_all()
        fee = TransactionFee.query.filter_by(order_id=orders[0].id, fee_type=FeeType.LEAD_FARMER_COMMISSION).one()
        self.assertIsNone(fee.recipient_id)
        self.assertEqual(Payout.query.filter_by(order_id=orders[0].id).count(), 1)

    def test_materialize_is_idempotent(self):
        _batch, _driver, orders = self._deliver_all()
        order = db.session.get(Order, orders[0].id)
        self.assertFalse(materialize_payouts(order))
        self.assertEqual(TransactionFee.query.filter_by(order_id=order.id).count(), 3)

    def test_undelivered_order_is_rejected(self):
        order = self.make_order()
        with self.assertRaises(InvalidTransition):
            materialize_payouts(order)

    def test_fee_rows_are_immutable(self):
        _batch, _driver, orders = self._deliver_all()
        fee = TransactionFee.query.filter_by(order_id=orders[0].id, fee_type=FeeType.PLATFORM_FEE).one()
        fee.amount_minor = 0
        with self.assertRaises(RuntimeError):
            db.session.commit()
        db.session.rollback()

    def test_fee_rows_cannot_be_deleted(self):
        _batch, _driver, orders = self._deliver_all()
        fee = TransactionFee.query.filter_by(order_id=orders[0].id, fee_type=FeeType.FARMER_SHARE).one()
        db.session.delete(fee)
        with self.assertRaises(RuntimeError):
            db.session.commit()
        db.session.rollback()
        self.assertEqual(TransactionFee.query.filter_by(order_id=orders[0].id).count(), 3)

    def test_reconcile_flags_tampered_fee(self):
        _batch, _driver, orders = self._deliver_all(stops=2)
        self.assertEqual(reconcile_ledger(), {"ok": True, "checked": 2, "mismatches": []})

        # bulk UPDATE skips the mapper guard
        db.session.execute(
            update(TransactionFee)
            .where(TransactionFee.order_id == orders[1].id, TransactionFee.fee_type == FeeType.PLATFORM_FEE)
            .values(amount_minor=TransactionFee.amount_minor + 1)
        )
        db.session.commit()
        db.session.expire_all()
        report = reconcile_ledger()
        self.assertFalse(report["ok"])
        self.assertEqual(report["mismatches"][0]["order_id"], orders[1].id)
        self.assertEqual(report["mismatches"][0]["problem"], "fee_sum_mismatch")


class PayoutStatusTestCase(PayoutTestCase):
    def _payout(self):
        _batch, _driver, orders = self._deliver_all()
        return Payout.query.filter_by(order_id=orders[0].id).one()

    def test_complete_is_forward_only(self):
        row = self._payout()
        mark_payout_completed(row.id, "tr_manual_1")
        self.assertEqual(mark_payout_completed(row.id).transfer_reference, "tr_manual_1")
        with self.assertRaises(InvalidTransition):
            mark_payout_failed(row.id, "bank bounced it")

    def test_failed_payout_can_still_complete(self):
        row = self._payout()
        mark_payout_failed(row.id, "account closed")
        self.assertEqual(db.session.get(Payout, row.id).failure_reason, "account closed")
        done = mark_payout_completed(row.id, "tr_retry")
        self.assertEqual(done.status, PayoutStatus.COMPLETED)
        self.assertIsNone(done.failure_reason)

    def test_fail_needs_a_reason(self):
        row = self._payout()
        with self.assertRaises(ValidationError):
            mark_payout_failed(row.id, "  ")

    def test_queue_filters_by_status(self):
        self._deliver_all(stops=2)
        pending = list_payout_queue(PayoutStatus.PENDING)
        self.assertEqual(len(pending), 3)
        with self.assertRaises(ValidationError):
            list_payout_queue("lost")


class PayoutRunnerTestCase(PayoutTestCase):
    def test_sweep_transfers_pending_payouts(self):
        self._deliver_all(stops=2)
        provider = MockPaymentsProvider()
        result = process_pending_payouts(provider=provider)
        self.assertEqual(result["processed"], 3)
        self.assertEqual(result["completed"], 3)
        self.assertEqual(Payout.query.filter_by(status=PayoutStatus.COMPLETED).count(), 3)
        self.assertEqual(sorted(t["amount_minor"] for t in provider.transfers), [1500, 8800, 8800])
        run = JobRun.query.filter_by(job_name="payout_runner").one()
        self.assertTrue(run.ok)
        self.assertEqual(run.processed, 3)

        again = process_pending_payouts(provider=provider)
        self.assertEqual(again["processed"], 0)

    def test_missing_payout_account_marks_failed(self):
        lead = self.make_user(UserRole.LEAD_FARMER)
        self._deliver_all(lead=lead)
        process_pending_payouts(provider=MockPaymentsProvider())
        row = Payout.query.filter_by(recipient_type=RecipientType.LEAD_FARMER_COMMISSION).one()
        self.assertEqual(row.status, PayoutStatus.FAILED)
        self.assertEqual(row.failure_reason, "recipient has no payout account")

    def test_rejected_transfer_is_retried_until_attempts_run_out(self):
        self._deliver_all()
        failing = MockPaymentsProvider(failing_destinations={"acct_farmer"})
        for _ in range(3):
            process_pending_payouts(provider=failing, max_attempts=2)
        farmer = Payout.query.filter_by(recipient_type=RecipientType.FARMER).one()
        self.assertEqual(farmer.status, PayoutStatus.FAILED)
        self.assertEqual(farmer.attempts, 2)

        process_pending_payouts(provider=MockPaymentsProvider(), max_attempts=3)
        self.assertEqual(db.session.get(Payout, farmer.id).status, PayoutStatus.COMPLETED)

    def test_payout_settled_after_selection_is_not_transferred(self):
        self._deliver_all()
        farmer = Payout.query.filter_by(recipient_type=RecipientType.FARMER).one()
        farmer_id = int(farmer.id)
        # another sweep settles the row between id selection and the row lock
        mark_payout_completed(farmer_id, "tr_other_worker")
        provider = MockPaymentsProvider()
        with patch("farmroute.jobs.payout_runner._due_payout_ids", return_value=[farmer_id]):
            result = process_pending_payouts(provider=provider)
        self.assertEqual(result["processed"], 0)
        self.assertEqual(provider.transfers, [])
        row = db.session.get(Payout, farmer_id)
        self.assertEqual(row.transfer_reference, "tr_other_worker")
        self.assertEqual(row.attempts, 0)

    def test_mock_provider_raises_transfer_failure(self):
        provider = MockPaymentsProvider(failing_destinations={"acct_x"})
        with self.assertRaises(PaymentTransferFailed):
            provider.transfer(amount_minor=100, destination="acct_x", idempotency_key="k")


if __name__ == "__main__":
    unittest.main()
