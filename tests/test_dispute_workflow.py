from __future__ import annotations

import unittest

from engine_case import EngineTestCase

from farmroute.errors import Forbidden, InvalidTransition, ValidationError
from farmroute.extensions import db
from farmroute.integrations.payments.mock_provider import MockPaymentsProvider
from farmroute.jobs.payout_runner import retry_refund_instructions
from farmroute.models import Dispute, DisputeStatus, RefundInstruction, RefundStatus, ScanType, UserRole
from farmroute.services.dispute_service import (
    acknowledge_dispute,
    create_dispute,
    get_dispute,
    reject_dispute,
    resolve_dispute,
)
from farmroute.services.scan_service import record_scan


class DisputeWorkflowTestCase(EngineTestCase):
    def setUp(self):
        super().setUp()
        self.admin = self.make_user(UserRole.ADMIN)
        self.consumer = self.make_user(UserRole.CONSUMER)
        order = self.make_order(consumer=self.consumer, subtotal="50.00", payment_reference="pi_fifty")
        self.batch = self.make_batch()
        self.order = self.assign(order, self.batch)
        self.driver = self.make_user(UserRole.DRIVER)
        from farmroute.services.order_state_machine import claim_batch, start_batch

        claim_batch(self.batch.id, actor=self.driver)
        start_batch(self.batch.id, actor=self.driver)
        record_scan(self.batch.id, self.order.box_code, ScanType.LOADED, actor=self.driver).raise_for_error()
        record_scan(self.batch.id, self.order.box_code, ScanType.DELIVERED, actor=self.driver).raise_for_error()

    def _open(self, **kw):
        kw.setdefault("dispute_type", "quality")
        kw.setdefault("description", "lettuce was wilted")
        return create_dispute(self.order.id, actor=self.consumer, **kw)

    def test_refund_above_order_total_is_rejected_and_dispute_stays_open(self):
        dispute = self._open()
        with self.assertRaises(ValidationError):
            resolve_dispute(dispute.id, actor=self.admin, resolution="refund", refund_amount="75.00")
        self.assertEqual(db.session.get(Dispute, dispute.id).status, DisputeStatus.OPEN)
        self.assertEqual(RefundInstruction.query.count(), 0)

    def test_requested_refund_above_total_is_rejected(self):
        with self.assertRaises(ValidationError):
            self._open(requested_refund="200")

    def test_non_numeric_ids_are_validation_errors(self):
        with self.assertRaises(ValidationError):
            create_dispute("abc", actor=self.consumer, dispute_type="quality")
        with self.assertRaises(ValidationError):
            get_dispute("7x")
        self.assertEqual(Dispute.query.count(), 0)

    def test_full_refund_path(self):
        dispute = self._open(requested_refund="20.00")
        self.assertEqual(dispute.requested_refund_minor, 2000)
        acknowledge_dispute(dispute.id, actor=self.admin)
        provider = MockPaymentsProvider()
        resolved = resolve_dispute(dispute.id, actor=self.admin, resolution="partial refund", refund_amount="20.00", provider=provider)

        self.assertEqual(resolved.status, DisputeStatus.RESOLVED)
        self.assertEqual(resolved.refund_amount_minor, 2000)
        instruction = RefundInstruction.query.filter_by(dispute_id=dispute.id).one()
        self.assertEqual(instruction.status, RefundStatus.SENT)
        self.assertTrue(instruction.provider_reference.startswith("re_mock_"))
        self.assertEqual(provider.refunds[0]["payment_reference"], "pi_fifty")
        self.assertEqual(provider.refunds[0]["amount_minor"], 2000)

    def test_refund_of_whole_total_including_delivery_fee(self):
        dispute = self._open()
        acknowledge_dispute(dispute.id, actor=self.admin)
        resolved = resolve_dispute(dispute.id, actor=self.admin, resolution="full refund", refund_amount="57.50", provider=MockPaymentsProvider())
        self.assertEqual(resolved.refund_amount_minor, 5750)

    def test_provider_failure_keeps_resolution_and_retries_later(self):
        dispute = self._open()
        acknowledge_dispute(dispute.id, actor=self.admin)
        resolve_dispute(
            dispute.id,
            actor=self.admin,
            resolution="refund",
            refund_amount="10",
            provider=MockPaymentsProvider(fail_refunds=True),
        )
        self.assertEqual(db.session.get(Dispute, dispute.id).status, DisputeStatus.RESOLVED)
        instruction = RefundInstruction.query.filter_by(dispute_id=dispute.id).one()
        self.assertEqual(instruction.status, RefundStatus.FAILED)
        self.assertTrue(instruction.failure_reason)

        result = retry_refund_instructions(provider=MockPaymentsProvider())
        self.assertEqual(result["sent"], 1)
        self.assertEqual(db.session.get(RefundInstruction, instruction.id).status, RefundStatus.SENT)

    def test_resolve_without_refund_writes_no_instruction(self):
        dispute = self._open()
        acknowledge_dispute(dispute.id, actor=self.admin)
        resolve_dispute(dispute.id, actor=self.admin, resolution="credit issued in store")
        self.assertEqual(RefundInstruction.query.count(), 0)

    def test_resolve_requires_investigation_first(self):
        dispute = self._open()
        with self.assertRaises(InvalidTransition):
            resolve_dispute(dispute.id, actor=self.admin, resolution="ok", refund_amount="5")

    def test_acknowledge_twice_is_a_noop(self):
        dispute = self._open()
        first = acknowledge_dispute(dispute.id, actor=self.admin).acknowledged_at
        self.assertEqual(acknowledge_dispute(dispute.id, actor=self.admin).acknowledged_at, first)

    def test_reject_needs_resolution_text(self):
        dispute = self._open()
        with self.assertRaises(ValidationError):
            reject_dispute(dispute.id, actor=self.admin, resolution="")
        rejected = reject_dispute(dispute.id, actor=self.admin, resolution="photo shows fresh produce")
        self.assertEqual(rejected.status, DisputeStatus.REJECTED)
        with self.assertRaises(InvalidTransition):
            acknowledge_dispute(dispute.id, actor=self.admin)

    def test_consumer_types_only(self):
        with self.assertRaises(ValidationError):
            self._open(dispute_type="customer_unavailable")

    def test_other_consumer_is_forbidden(self):
        with self.assertRaises(Forbidden):
            create_dispute(self.order.id, actor=self.make_user(UserRole.CONSUMER), dispute_type="quality")

    def test_driver_reports_delivery_issue(self):
        dispute = create_dispute(self.order.id, actor=self.driver, dispute_type="customer_unavailable")
        self.assertEqual(dispute.reporter_role, UserRole.DRIVER)
        with self.assertRaises(Forbidden):
            create_dispute(self.order.id, actor=self.make_user(UserRole.DRIVER), dispute_type="late")

    def test_consumer_cannot_handle_disputes(self):
        dispute = self._open()
        with self.assertRaises(Forbidden):
            acknowledge_dispute(dispute.id, actor=self.consumer)


if __name__ == "__main__":
    unittest.main()
