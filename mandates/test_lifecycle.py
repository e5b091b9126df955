from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import patch

from django.db import DatabaseError, IntegrityError, transaction
from django.test import TestCase

from .bank_client import (
    CREATE_MANDATE,
    EXECUTE_MANDATE,
    MANDATE_NOTIFICATION,
    BankApiError,
    BankBusinessError,
)
from .envelope import DecryptionError
from .lifecycle import (
    MandateLifecycle,
    MandatePolicy,
    MandateStateError,
    NotFoundError,
)
from .models import ActiveMandate, ImmutableRecordError, MandateHistoryEntry, Organisation
from .utils.references import execution_tran_id, organisation_id_from_execution
from .test_client import FakeBankClient

NOW = datetime(2025, 1, 31, 10, 0, tzinfo=dt_timezone.utc)


class LifecycleTestCase(TestCase):
    policy = MandatePolicy()

    def setUp(self):
        self.now = NOW
        self.bank = FakeBankClient()
        self.org = Organisation.objects.create(name="Acme Traders")
        self.lifecycle = MandateLifecycle(
            client=self.bank,
            policy=self.policy,
            max_workers=2,
            clock=lambda: self.now,
        )

    def make_mandate(self, org=None, **fields):
        values = {
            "organisation": org or self.org,
            "unified_mandate_number": "umn-1@bank",
            "amount": Decimal("100.00"),
            "status": "ACTIVATED",
            "sequence_number": 3,
            "payer_address": "payer@upi",
            "notified": True,
        }
        values.update(fields)
        return ActiveMandate.objects.create(**values)

    def set_end_date(self, value, org=None):
        org = org or self.org
        Organisation.objects.filter(pk=org.pk).update(end_date=value)
        org.refresh_from_db()

    def approval(self, merchant_tran_id, **fields):
        data = {
            "merchantTranId": merchant_tran_id,
            "TxnStatus": "CREATE-SUCCESS",
            "UMN": "umn-1@bank",
            "PayerName": "Payer",
            "PayerMobile": "9999999999",
            "PayerVA": "payer@upi",
        }
        data.update(fields)
        return data


class CreateMandateTests(LifecycleTestCase):
    def test_create_records_initiated_history_and_advances_end_date(self):
        entry = self.lifecycle.create_mandate(self.org, "payer@upi", Decimal("250"))

        self.assertEqual(entry.status, "INITIATED")
        self.assertTrue(entry.merchant_tran_id.startswith("MANDATE_"))
        self.assertEqual(entry.amount, Decimal("250.00"))
        self.assertEqual(entry.bank_reference_id, "503112345678")
        self.assertFalse(ActiveMandate.objects.exists())

        sent = self.bank.calls_for(CREATE_MANDATE)[0]
        self.assertEqual(sent["payerVa"], "payer@upi")
        self.assertEqual(sent["amount"], "250.00")
        self.assertEqual(sent["merchantTranId"], entry.merchant_tran_id)

        self.org.refresh_from_db()
        self.assertEqual(self.org.end_date, datetime(2025, 2, 28, 10, 0, tzinfo=dt_timezone.utc))

    def test_create_uses_default_amount(self):
        entry = self.lifecycle.create_mandate(self.org, "payer@upi")
        self.assertEqual(entry.amount, Decimal("100.00"))

    def test_bank_rejection_propagates_and_stores_nothing(self):
        self.bank.queue(CREATE_MANDATE, BankBusinessError("ZM", "Invalid VPA"))

        with self.assertRaises(BankBusinessError):
            self.lifecycle.create_mandate(self.org, "payer@upi")

        self.assertFalse(MandateHistoryEntry.objects.exists())
        self.org.refresh_from_db()
        self.assertIsNone(self.org.end_date)

    def test_active_mandate_blocks_new_registration(self):
        self.make_mandate()
        with self.assertRaises(MandateStateError):
            self.lifecycle.create_mandate(self.org, "payer@upi")
        self.assertEqual(self.bank.calls, [])

    def test_suspended_mandate_allows_registration(self):
        self.make_mandate(status="SUSPENDED")
        entry = self.lifecycle.create_mandate(self.org, "payer@upi")
        self.assertEqual(entry.status, "INITIATED")


class ApprovalCallbackTests(LifecycleTestCase):
    def test_first_charge_scenario(self):
        entry = self.lifecycle.create_mandate(self.org, "payer@upi")

        outcome = self.lifecycle.handle_callback(self.approval(entry.merchant_tran_id))

        self.assertEqual(outcome["status"], "activated")
        self.assertEqual(outcome["first_charge"]["status"], "success")

        executed = self.bank.calls_for(EXECUTE_MANDATE)
        self.assertEqual(len(executed), 1)
        self.assertEqual(executed[0]["mandateSeqNo"], "1")
        self.assertEqual(executed[0]["UMN"], "umn-1@bank")

        mandate = ActiveMandate.objects.get(organisation=self.org)
        self.assertEqual(mandate.status, "ACTIVATED")
        self.assertEqual(mandate.sequence_number, 2)
        self.assertEqual(mandate.execution_retry_count, 0)
        self.assertFalse(mandate.notified)
        self.assertIsNone(mandate.lease_expires_at)

        self.assertTrue(
            MandateHistoryEntry.objects.filter(organisation=self.org, status="ACTIVATED").exists()
        )
        self.org.refresh_from_db()
        self.assertEqual(self.org.end_date, datetime(2025, 2, 28, 10, 0, tzinfo=dt_timezone.utc))

    def test_double_webhook_is_idempotent(self):
        entry = self.lifecycle.create_mandate(self.org, "payer@upi")
        payload = self.approval(entry.merchant_tran_id)

        self.lifecycle.handle_callback(payload)
        second = self.lifecycle.handle_callback(payload)

        self.assertEqual(second["status"], "duplicate")
        self.assertEqual(ActiveMandate.objects.filter(organisation=self.org).count(), 1)
        self.assertEqual(len(self.bank.calls_for(EXECUTE_MANDATE)), 1)
        self.assertEqual(ActiveMandate.objects.get(organisation=self.org).sequence_number, 2)

    def test_unknown_merchant_tran_id(self):
        with self.assertRaises(NotFoundError):
            self.lifecycle.handle_callback(self.approval("MANDATE_unknown"))
        self.assertFalse(ActiveMandate.objects.exists())

    def test_reregistration_advances_existing_row_without_charging(self):
        self.make_mandate(status="SUSPENDED", sequence_number=5, execution_retry_count=0)
        entry = self.lifecycle.create_mandate(self.org, "payer@upi")

        outcome = self.lifecycle.handle_callback(self.approval(entry.merchant_tran_id, UMN="umn-2@bank"))

        self.assertNotIn("first_charge", outcome)
        mandate = ActiveMandate.objects.get(organisation=self.org)
        self.assertEqual(mandate.status, "ACTIVATED")
        self.assertEqual(mandate.sequence_number, 6)
        self.assertEqual(mandate.unified_mandate_number, "umn-2@bank")
        self.assertEqual(self.bank.calls_for(EXECUTE_MANDATE), [])

    def test_first_charge_failure_is_retried_by_the_batch(self):
        entry = self.lifecycle.create_mandate(self.org, "payer@upi")
        self.bank.queue(EXECUTE_MANDATE, BankBusinessError("U30", "Debit failed"))

        outcome = self.lifecycle.handle_callback(self.approval(entry.merchant_tran_id))

        self.assertEqual(outcome["first_charge"]["status"], "failed")
        mandate = ActiveMandate.objects.get(organisation=self.org)
        self.assertEqual(mandate.status, "INITIATED")
        self.assertEqual(mandate.sequence_number, 1)
        self.assertEqual(mandate.execution_retry_count, 1)
        self.assertEqual(mandate.last_execution_attempt_at, NOW)

        # Inside the backoff window nothing happens
        self.now = NOW + timedelta(hours=2)
        self.assertEqual(self.lifecycle.run_due_executions().processed, 0)

        self.now = NOW + timedelta(hours=13)
        result = self.lifecycle.run_due_executions()
        self.assertEqual(result.successful, 1)

        executed = self.bank.calls_for(EXECUTE_MANDATE)
        self.assertEqual([p["mandateSeqNo"] for p in executed], ["1", "1"])
        self.assertEqual(executed[1]["retryCount"], "1")

        mandate.refresh_from_db()
        self.assertEqual(mandate.status, "ACTIVATED")
        self.assertEqual(mandate.sequence_number, 2)


class OtherCallbackTests(LifecycleTestCase):
    def test_create_fail_records_failed_history(self):
        entry = self.lifecycle.create_mandate(self.org, "payer@upi")
        payload = {"merchantTranId": entry.merchant_tran_id, "TxnStatus": "CREATE-FAIL", "ResponseCode": "ZA"}

        outcome = self.lifecycle.handle_callback(payload)
        again = self.lifecycle.handle_callback(payload)

        self.assertEqual(outcome["status"], "create_failed")
        self.assertEqual(again["status"], "duplicate")
        failed = MandateHistoryEntry.objects.get(merchant_tran_id=entry.merchant_tran_id, status="FAILED")
        self.assertEqual(failed.response_code, "ZA")
        self.assertFalse(ActiveMandate.objects.exists())

    def test_execution_callback_appends_history_only(self):
        mandate = self.make_mandate()
        tran_id = execution_tran_id(self.org.pk)
        payload = {
            "merchantTranId": tran_id,
            "TxnStatus": "EXECUTE-SUCCESS",
            "PayerAmount": "100.00",
            "BankRRN": "RRN9",
            "TxnCompletionDate": "20250131103000",
        }

        outcome = self.lifecycle.handle_callback(payload)
        again = self.lifecycle.handle_callback(payload)

        self.assertEqual(outcome["history_status"], "SUCCESS")
        self.assertEqual(again["status"], "duplicate")
        entry = MandateHistoryEntry.objects.get(merchant_tran_id=tran_id)
        self.assertEqual(entry.amount, Decimal("100.00"))
        self.assertEqual(entry.bank_reference_id, "RRN9")

        reloaded = ActiveMandate.objects.get(pk=mandate.pk)
        self.assertEqual(reloaded.sequence_number, mandate.sequence_number)

    def test_execution_callback_for_unknown_organisation(self):
        with self.assertRaises(NotFoundError):
            self.lifecycle.handle_callback({"merchantTranId": "EXEC_1700000000000ABCDEF_999999"})


class ScheduledExecutionTests(LifecycleTestCase):
    def test_success_advances_sequence_and_clamps_end_date(self):
        mandate = self.make_mandate(sequence_number=3)
        self.set_end_date(NOW)

        result = self.lifecycle.run_due_executions()

        self.assertEqual((result.processed, result.successful), (1, 1))
        self.assertEqual(self.bank.calls_for(EXECUTE_MANDATE)[0]["mandateSeqNo"], "3")

        mandate.refresh_from_db()
        self.assertEqual(mandate.sequence_number, 4)
        self.assertEqual(mandate.execution_retry_count, 0)
        self.assertFalse(mandate.notified)
        self.org.refresh_from_db()
        self.assertEqual(self.org.end_date, datetime(2025, 2, 28, 10, 0, tzinfo=dt_timezone.utc))
        self.assertTrue(MandateHistoryEntry.objects.filter(organisation=self.org, status="SUCCESS").exists())

    def test_not_notified_or_lapsed_mandates_are_not_due(self):
        self.make_mandate(notified=False)
        self.set_end_date(NOW + timedelta(days=1))
        other = Organisation.objects.create(name="Lapsed")
        self.make_mandate(org=other)
        self.set_end_date(NOW - timedelta(days=1), org=other)

        self.assertEqual(self.lifecycle.run_due_executions().processed, 0)
        self.assertEqual(self.bank.calls, [])

    def test_failure_increments_retry_and_respects_backoff(self):
        mandate = self.make_mandate()
        self.set_end_date(NOW + timedelta(days=1))
        self.bank.queue(EXECUTE_MANDATE, BankApiError(None, "", message="Request failed"))

        result = self.lifecycle.run_due_executions()

        self.assertEqual(result.failed, 1)
        mandate.refresh_from_db()
        self.assertEqual(mandate.execution_retry_count, 1)
        self.assertEqual(mandate.sequence_number, 3)
        self.assertEqual(mandate.last_execution_attempt_at, NOW)
        self.assertTrue(MandateHistoryEntry.objects.filter(status="FAILED").exists())

        self.now = NOW + timedelta(hours=11)
        self.assertEqual(self.lifecycle.run_due_executions().processed, 0)
        self.now = NOW + timedelta(hours=12, minutes=1)
        self.assertEqual(self.lifecycle.run_due_executions().processed, 1)

    def test_retry_count_never_exceeds_nine(self):
        mandate = self.make_mandate()
        self.set_end_date(NOW + timedelta(days=30))
        self.bank.handle(EXECUTE_MANDATE, lambda payload: BankBusinessError("U30", "Debit failed"))

        seen = []
        for attempt in range(12):
            self.now = NOW + timedelta(hours=13 * attempt)
            self.lifecycle.run_due_executions()
            mandate.refresh_from_db()
            seen.append((mandate.sequence_number, mandate.execution_retry_count))

        self.assertTrue(all(retry <= 9 for _, retry in seen))
        self.assertEqual(seen[8], (3, 9))
        self.assertEqual(seen[9], (4, 0))
        sequences = [seq for seq, _ in seen]
        self.assertEqual(sequences, sorted(sequences))

    def test_exhaustion_advances_sequence(self):
        mandate = self.make_mandate(execution_retry_count=9, last_execution_attempt_at=NOW - timedelta(hours=13))
        self.set_end_date(NOW + timedelta(days=1))
        self.bank.queue(EXECUTE_MANDATE, BankBusinessError("U30", "Debit failed"))

        result = self.lifecycle.run_due_executions()

        self.assertTrue(result.results[0]["reset_retry"])
        mandate.refresh_from_db()
        self.assertEqual(mandate.sequence_number, 4)
        self.assertEqual(mandate.execution_retry_count, 0)
        self.assertEqual(mandate.status, "ACTIVATED")
        self.assertEqual(mandate.last_execution_attempt_at, NOW)

    def test_leased_mandate_is_skipped(self):
        self.make_mandate(lease_expires_at=NOW + timedelta(minutes=1))
        self.set_end_date(NOW + timedelta(days=1))

        result = self.lifecycle.run_due_executions()

        self.assertEqual(result.skipped, 1)
        self.assertEqual(self.bank.calls, [])

    def test_expired_lease_is_reclaimed(self):
        mandate = self.make_mandate(lease_expires_at=NOW - timedelta(minutes=1))
        self.set_end_date(NOW + timedelta(days=1))

        self.assertEqual(self.lifecycle.run_due_executions().successful, 1)
        mandate.refresh_from_db()
        self.assertIsNone(mandate.lease_expires_at)

    def test_envelope_error_is_raised_after_other_rows_are_written(self):
        healthy = self.make_mandate(unified_mandate_number="good@bank")
        self.set_end_date(NOW + timedelta(days=1))
        other = Organisation.objects.create(name="Broken keys")
        broken = self.make_mandate(org=other, unified_mandate_number="bad@bank")
        self.set_end_date(NOW + timedelta(days=1), org=other)

        def respond(payload):
            if payload["UMN"] == "bad@bank":
                raise DecryptionError("Invalid session key length: 32 bytes")
            return None

        self.bank.handle(EXECUTE_MANDATE, respond)

        with self.assertRaises(DecryptionError):
            self.lifecycle.run_due_executions()

        healthy.refresh_from_db()
        broken.refresh_from_db()
        self.assertEqual(healthy.sequence_number, 4)
        self.assertEqual(broken.sequence_number, 3)
        self.assertEqual(broken.execution_retry_count, 0)
        self.assertIsNone(broken.lease_expires_at)

    def test_persistence_failure_marks_row_error_and_continues(self):
        mandate = self.make_mandate()
        self.set_end_date(NOW + timedelta(days=1))

        with patch.object(MandateLifecycle, "_record_execution_success", side_effect=DatabaseError("disk full")):
            result = self.lifecycle.run_due_executions()

        self.assertEqual(result.errors, 1)
        self.assertEqual(result.results[0]["status"], "error")
        mandate.refresh_from_db()
        self.assertEqual(mandate.sequence_number, 3)
        self.assertIsNone(mandate.lease_expires_at)
        self.assertEqual(mandate.last_execution_attempt_at, NOW)

        # The bank may have taken the debit, so the row waits out the backoff
        self.now = NOW + timedelta(hours=1)
        self.assertEqual(self.lifecycle.run_due_executions().processed, 0)
        self.assertEqual(len(self.bank.calls_for(EXECUTE_MANDATE)), 1)

    def test_envelope_error_after_dispatch_is_not_retried_every_pass(self):
        mandate = self.make_mandate()
        self.set_end_date(NOW + timedelta(days=1))

        def respond(payload):
            raise DecryptionError("Invalid session key length: 32 bytes")

        self.bank.handle(EXECUTE_MANDATE, respond)

        with self.assertRaises(DecryptionError):
            self.lifecycle.run_due_executions()

        mandate.refresh_from_db()
        self.assertEqual(mandate.execution_retry_count, 0)
        self.assertEqual(mandate.last_execution_attempt_at, NOW)

        self.now = NOW + timedelta(hours=1)
        self.assertEqual(self.lifecycle.run_due_executions().processed, 0)
        self.assertEqual(len(self.bank.calls_for(EXECUTE_MANDATE)), 1)

        self.now = NOW + timedelta(hours=13)
        with self.assertRaises(DecryptionError):
            self.lifecycle.run_due_executions()
        self.assertEqual(len(self.bank.calls_for(EXECUTE_MANDATE)), 2)

    def test_lease_covers_the_whole_batch(self):
        mandates = []
        for i in range(20):
            org = Organisation.objects.create(name=f"Tenant {i}")
            self.set_end_date(NOW + timedelta(days=1), org=org)
            mandates.append(self.make_mandate(org=org))

        overlapping = MandateLifecycle(
            client=self.bank,
            policy=self.policy,
            max_workers=2,
            clock=lambda: NOW + timedelta(minutes=6),
        )
        original = self.lifecycle._dispatch
        overlap_results = []

        def dispatch_with_overlap(call, jobs):
            # A second scheduler pass starts while the first is still waiting on the bank
            overlap_results.append(overlapping.run_due_executions())
            yield from original(call, jobs)

        with patch.object(self.lifecycle, "_dispatch", side_effect=dispatch_with_overlap):
            result = self.lifecycle.run_due_executions()

        self.assertEqual(overlap_results[0].skipped, 20)
        self.assertEqual(result.successful, 20)

        executed = self.bank.calls_for(EXECUTE_MANDATE)
        self.assertEqual(len(executed), 20)
        self.assertEqual(len({organisation_id_from_execution(p["merchantTranId"]) for p in executed}), 20)
        for mandate in mandates:
            mandate.refresh_from_db()
            self.assertEqual(mandate.sequence_number, 4)
            self.assertEqual(mandate.lease_token, "")
        self.assertEqual(MandateHistoryEntry.objects.filter(status="SUCCESS").count(), 20)

    def test_lease_for_scales_with_batch_size(self):
        self.assertEqual(self.lifecycle.lease_for(0), self.policy.lease)
        self.assertEqual(self.lifecycle.lease_for(1), self.policy.lease + timedelta(seconds=30))
        self.assertEqual(self.lifecycle.lease_for(20), self.policy.lease + timedelta(seconds=300))

    def test_lost_lease_keeps_the_debit_in_history(self):
        mandate = self.make_mandate()
        self.set_end_date(NOW + timedelta(days=1))
        original = self.lifecycle._dispatch

        def dispatch_then_lose_lease(call, jobs):
            for item in original(call, jobs):
                ActiveMandate.objects.filter(pk=mandate.pk).update(lease_token="another-pass")
                yield item

        with patch.object(self.lifecycle, "_dispatch", side_effect=dispatch_then_lose_lease):
            result = self.lifecycle.run_due_executions()

        outcome = result.results[0]
        self.assertEqual(outcome["status"], "error")
        self.assertTrue(
            MandateHistoryEntry.objects.filter(merchant_tran_id=outcome["merchant_tran_id"], status="SUCCESS").exists()
        )
        mandate.refresh_from_db()
        self.assertEqual(mandate.sequence_number, 3)
        self.assertEqual(mandate.lease_token, "another-pass")
        self.org.refresh_from_db()
        self.assertEqual(self.org.end_date, NOW + timedelta(days=1))


class SuspendPolicyTests(LifecycleTestCase):
    policy = MandatePolicy(exhaustion_policy="SUSPEND")

    def test_exhaustion_suspends_instead_of_advancing(self):
        mandate = self.make_mandate(execution_retry_count=9, last_execution_attempt_at=NOW - timedelta(hours=13))
        self.set_end_date(NOW + timedelta(days=1))
        self.bank.queue(EXECUTE_MANDATE, BankBusinessError("U30", "Debit failed"))

        result = self.lifecycle.run_due_executions()

        self.assertTrue(result.results[0]["suspended"])
        mandate.refresh_from_db()
        self.assertEqual(mandate.status, "SUSPENDED")
        self.assertEqual(mandate.sequence_number, 3)
        self.assertEqual(mandate.execution_retry_count, 0)

        self.now = NOW + timedelta(days=1)
        self.assertEqual(self.lifecycle.run_due_executions().processed, 0)


class NotificationTests(LifecycleTestCase):
    def setUp(self):
        super().setUp()
        self.set_end_date(NOW + timedelta(hours=24))

    def test_success_marks_notified(self):
        mandate = self.make_mandate(sequence_number=2, notified=False)
        self.bank.queue(MANDATE_NOTIFICATION, {"success": "true", "message": "Notification sent successfully"})

        result = self.lifecycle.run_due_notifications()

        self.assertEqual(result.successful, 1)
        sent = self.bank.calls_for(MANDATE_NOTIFICATION)[0]
        self.assertEqual(sent["mandateSeqNo"], "2")
        self.assertTrue(sent["merchantTranId"].startswith("NOTIF_"))
        mandate.refresh_from_db()
        self.assertTrue(mandate.notified)
        self.assertEqual(mandate.notification_retry_count, 0)
        self.assertEqual(mandate.last_notification_attempt_at, NOW)

    def test_success_flag_without_completion_is_a_failure(self):
        mandate = self.make_mandate(sequence_number=2, notified=False)
        self.bank.queue(MANDATE_NOTIFICATION, {"success": "true", "message": "Request queued"})

        self.assertEqual(self.lifecycle.run_due_notifications().failed, 1)
        mandate.refresh_from_db()
        self.assertFalse(mandate.notified)
        self.assertEqual(mandate.notification_retry_count, 1)

    def test_failures_count_up_to_three_then_reset(self):
        mandate = self.make_mandate(sequence_number=2, notified=False)
        self.bank.handle(MANDATE_NOTIFICATION, lambda payload: BankApiError(500, "oops"))

        counts = []
        for attempt in range(5):
            self.now = NOW + timedelta(minutes=61 * attempt)
            self.set_end_date(self.now + timedelta(hours=24))
            self.lifecycle.run_due_notifications()
            mandate.refresh_from_db()
            counts.append(mandate.notification_retry_count)

        self.assertEqual(counts, [1, 2, 3, 0, 1])
        self.assertFalse(mandate.notified)

    def test_backoff_between_attempts(self):
        self.make_mandate(
            sequence_number=2,
            notified=False,
            notification_retry_count=2,
            last_notification_attempt_at=NOW - timedelta(minutes=30),
        )
        self.assertEqual(self.lifecycle.run_due_notifications().processed, 0)

    def test_outside_window_or_first_sequence_not_due(self):
        self.make_mandate(sequence_number=1, notified=False)
        other = Organisation.objects.create(name="Later")
        self.make_mandate(org=other, sequence_number=2, notified=False)
        self.set_end_date(NOW + timedelta(hours=72), org=other)

        self.assertEqual(self.lifecycle.run_due_notifications().processed, 0)
        self.assertEqual(self.bank.calls, [])

    def test_already_notified_not_due(self):
        self.make_mandate(sequence_number=2, notified=True)
        self.assertEqual(self.lifecycle.run_due_notifications().processed, 0)


class MandateStoreTests(LifecycleTestCase):
    def _entry(self, status="INITIATED"):
        return MandateHistoryEntry.objects.create(
            organisation=self.org,
            merchant_tran_id="MANDATE_1",
            amount=Decimal("100.00"),
            status=status,
        )

    def test_history_unique_per_tran_and_status(self):
        self._entry()
        self._entry(status="FAILED")
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self._entry()

    def test_history_is_immutable(self):
        entry = self._entry()
        entry.response_code = "00"
        with self.assertRaises(ImmutableRecordError):
            entry.save()
        with self.assertRaises(ImmutableRecordError):
            entry.delete()

    def test_retry_counters_bounded_in_database(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self.make_mandate(execution_retry_count=10)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self.make_mandate(notification_retry_count=4)

    def test_one_mandate_per_organisation(self):
        self.make_mandate()
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self.make_mandate()
