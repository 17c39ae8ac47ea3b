"""
Tests for payments Celery tasks.

Tasks run eagerly under the test settings, so they are called directly.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from django.utils import timezone
from freezegun import freeze_time

from payments.adapters import ClickPesaAdapter, PayPalAdapter
from payments.exceptions import GatewayUnavailableError
from payments.models import GatewayEventRecord, IdempotencyRecord, Invoice, Payment
from payments.signals import payment_event
from payments.state_machines import GatewayEventStatus, GatewayName, PaymentStatus
from payments.tasks import (
    audit_invoice_ledgers,
    capture_approved_payment,
    cleanup_stuck_gateway_events,
    poll_pending_payments,
    publish_payment_event,
    purge_expired_idempotency_records,
)
from payments.tests.factories import (
    GatewayEventRecordFactory,
    IdempotencyRecordFactory,
    PaymentFactory,
)
from payments.types import ChargeResult, SyncStatus


class TestPublishPaymentEvent:
    """Tests for publish_payment_event."""

    def test_sends_signal(self):
        receiver = MagicMock()
        payment_event.connect(receiver, dispatch_uid="test-receiver")
        try:
            result = publish_payment_event("payment.completed", {"payment_id": "p-1"})
        finally:
            payment_event.disconnect(dispatch_uid="test-receiver")

        receiver.assert_called_once()
        kwargs = receiver.call_args.kwargs
        assert kwargs["event"] == "payment.completed"
        assert kwargs["payload"] == {"payment_id": "p-1"}
        assert result["event"] == "payment.completed"
        assert result["receivers"] >= 2

    def test_receiver_failure_raises_for_retry(self):
        def broken(sender, **kwargs):
            raise RuntimeError("notifier down")

        payment_event.connect(broken, dispatch_uid="broken-receiver")
        try:
            with pytest.raises(RuntimeError):
                publish_payment_event.run("payment.failed", {"payment_id": "p-2"})
        finally:
            payment_event.disconnect(dispatch_uid="broken-receiver")


class TestPurgeExpiredIdempotencyRecords:
    def test_deletes_expired(self, db):
        IdempotencyRecordFactory(expires_at=timezone.now() - timedelta(hours=1))
        IdempotencyRecordFactory()

        result = purge_expired_idempotency_records()

        assert result == {"deleted_count": 1}
        assert IdempotencyRecord.objects.count() == 1


class TestAuditInvoiceLedgers:
    def test_consistent_invoices(self, db, completed_payment):
        result = audit_invoice_ledgers()

        assert result == {"audited_count": 1, "mismatched": []}

    def test_reports_mismatch(self, db, completed_payment):
        Invoice.objects.filter(pk=completed_payment.invoice_id).update(
            paid_amount=Decimal("10.00")
        )

        result = audit_invoice_ledgers()

        assert result["mismatched"] == [str(completed_payment.invoice_id)]

    def test_lookback_window(self, db, completed_payment):
        with freeze_time(timezone.now() + timedelta(days=3)):
            assert audit_invoice_ledgers(hours=24)["audited_count"] == 0
            assert audit_invoice_ledgers(hours=None)["audited_count"] == 1


class TestCleanupStuckGatewayEvents:
    def test_resets_old_processing_events(self, db):
        with freeze_time(timezone.now() - timedelta(hours=1)):
            stuck = GatewayEventRecordFactory(status=GatewayEventStatus.PROCESSING)
        recent = GatewayEventRecordFactory(status=GatewayEventStatus.PROCESSING)

        result = cleanup_stuck_gateway_events()

        assert result == {"reset_count": 1}
        assert GatewayEventRecord.objects.get(pk=stuck.pk).status == GatewayEventStatus.FAILED
        assert GatewayEventRecord.objects.get(pk=recent.pk).status == GatewayEventStatus.PROCESSING


class TestCaptureApprovedPayment:
    def test_captures_processing_order(self, db, invoice):
        payment = PaymentFactory(
            invoice=invoice,
            gateway=GatewayName.PAYPAL,
            method="paypal",
            status=PaymentStatus.PROCESSING,
            gateway_transaction_id="5O190127TN364715T",
            submitted_at=timezone.now(),
        )
        result = ChargeResult(
            gateway_transaction_id="5O190127TN364715T",
            sync_status=SyncStatus.SUCCEEDED,
            gateway_payment_id="3C679366HH908993F",
        )
        with patch.object(PayPalAdapter, "capture", return_value=result):
            outcome = capture_approved_payment(str(payment.id))

        assert outcome == {"payment_id": str(payment.id), "status": PaymentStatus.COMPLETED}
        assert Payment.objects.get(pk=payment.pk).gateway_payment_id == "3C679366HH908993F"


class TestPollPendingPayments:
    @pytest.fixture
    def stale_mobile_payment(self, db, tzs_invoice):
        with freeze_time(timezone.now() - timedelta(minutes=30)):
            return PaymentFactory(
                invoice=tzs_invoice,
                gateway=GatewayName.CLICKPESA,
                method="mobile_money",
                status=PaymentStatus.PROCESSING,
                gateway_transaction_id="CP-TXN-9",
                submitted_at=timezone.now(),
            )

    def test_settles_stale_payment(self, stale_mobile_payment):
        result = ChargeResult(gateway_transaction_id="CP-TXN-9", sync_status=SyncStatus.SUCCEEDED)
        with patch.object(ClickPesaAdapter, "query_charge", return_value=result) as query:
            summary = poll_pending_payments()

        query.assert_called_once_with("CP-TXN-9")
        assert summary == {"polled_count": 1, "settled_count": 1, "error_count": 0}
        payment = Payment.objects.get(pk=stale_mobile_payment.pk)
        assert payment.status == PaymentStatus.COMPLETED

    def test_still_pending_is_not_settled(self, stale_mobile_payment):
        result = ChargeResult(gateway_transaction_id="CP-TXN-9", sync_status=SyncStatus.PENDING)
        with patch.object(ClickPesaAdapter, "query_charge", return_value=result):
            summary = poll_pending_payments()

        assert summary == {"polled_count": 1, "settled_count": 0, "error_count": 0}

    def test_query_errors_are_counted(self, stale_mobile_payment):
        error = GatewayUnavailableError("timeout", gateway="clickpesa")
        with patch.object(ClickPesaAdapter, "query_charge", side_effect=error):
            summary = poll_pending_payments()

        assert summary == {"polled_count": 1, "settled_count": 0, "error_count": 1}
        payment = Payment.objects.get(pk=stale_mobile_payment.pk)
        assert payment.status == PaymentStatus.PROCESSING

    def test_skips_young_and_unqueryable_payments(self, db, tzs_invoice, invoice):
        PaymentFactory(
            invoice=tzs_invoice,
            gateway=GatewayName.CLICKPESA,
            method="mobile_money",
            status=PaymentStatus.PROCESSING,
            gateway_transaction_id="CP-TXN-NEW",
            submitted_at=timezone.now(),
        )
        with freeze_time(timezone.now() - timedelta(minutes=30)):
            PaymentFactory(
                invoice=invoice,
                status=PaymentStatus.PROCESSING,
                gateway_transaction_id="pi_stale",
                submitted_at=timezone.now(),
            )

        with patch.object(ClickPesaAdapter, "query_charge") as query:
            summary = poll_pending_payments()

        query.assert_not_called()
        assert summary == {"polled_count": 0, "settled_count": 0, "error_count": 0}
