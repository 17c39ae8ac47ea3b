"""
Tests for RefundProcessor.

Covers refund validation, the per-payment lock, synchronous gateway
outcomes, retries after outages and manual confirmation of refunds the
gateway cannot issue through its API.
"""

import uuid
from decimal import Decimal
from unittest.mock import patch

import pytest

from payments.adapters import StripeAdapter
from payments.exceptions import (
    AmountExceedsRefundableError,
    GatewayInvalidRequestError,
    GatewayUnavailableError,
    InvalidTransitionError,
    LockAcquisitionError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payments.models import GatewayEventRecord, Invoice, Payment, RefundRecord
from payments.services import RefundProcessor
from payments.services.reconciler import Reconciler
from payments.state_machines import (
    GatewayEventSource,
    GatewayName,
    InvoiceStatus,
    PaymentStatus,
    RefundStatus,
)
from payments.tests.factories import (
    GatewayEventFactory,
    PaymentFactory,
    RefundRecordFactory,
)
from payments.types import RefundResult, SyncStatus


@pytest.fixture
def processor(payments_config):
    return RefundProcessor(payments_config)


@pytest.fixture
def stripe_refund():
    result = RefundResult(
        gateway_refund_id="re_test_123",
        sync_status=SyncStatus.SUCCEEDED,
        raw={"id": "re_test_123", "status": "succeeded"},
    )
    with patch.object(StripeAdapter, "refund", return_value=result) as refund:
        yield refund


@pytest.fixture
def mobile_money_payment(db, tzs_invoice, payments_config):
    """A completed ClickPesa payment for the full TZS invoice."""
    payment = PaymentFactory(
        invoice=tzs_invoice,
        gateway=GatewayName.CLICKPESA,
        method="mobile_money",
        gateway_transaction_id="CP-TXN-1",
    )
    Reconciler(payments_config).apply(GatewayEventFactory(payment=payment))
    return Payment.objects.get(pk=payment.pk)


# =============================================================================
# Successful Refunds
# =============================================================================


class TestRefund:
    """Tests for RefundProcessor.refund happy paths."""

    def test_partial_refund(self, db, processor, completed_payment, user, stripe_refund):
        outcome = processor.refund(
            completed_payment.id,
            amount="40.00",
            reason="Damaged shipment",
            requested_by=user,
        )

        refund = outcome.refund
        assert outcome.succeeded is True
        assert refund.status == RefundStatus.COMPLETED
        assert refund.gateway_refund_id == "re_test_123"
        assert refund.amount == Decimal("40.00")
        assert refund.requested_by == user
        assert refund.reason == "Damaged shipment"

        payment = Payment.objects.get(pk=completed_payment.pk)
        invoice = Invoice.objects.get(pk=payment.invoice_id)
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
        assert payment.refunded_amount == Decimal("40.00")
        assert invoice.paid_amount == Decimal("60.00")
        assert invoice.status == InvoiceStatus.PARTIAL

    def test_gateway_request(self, db, processor, completed_payment, stripe_refund):
        outcome = processor.refund(completed_payment.id, amount="12.50", reason="duplicate")

        request = stripe_refund.call_args.args[0]
        assert request.refund_id == outcome.refund.id
        assert request.gateway_transaction_id == "pi_test_completed"
        assert request.gateway_payment_id == "ch_test_completed"
        assert request.amount == Decimal("12.50")
        assert request.reason == "duplicate"
        assert request.idempotency_token.startswith(f"refund:{outcome.refund.id}:1:")

    def test_omitted_amount_refunds_remaining(
        self, db, processor, completed_payment, stripe_refund
    ):
        outcome = processor.refund(completed_payment.id)

        assert outcome.refund.amount == Decimal("100.00")
        payment = Payment.objects.get(pk=completed_payment.pk)
        assert payment.status == PaymentStatus.REFUNDED
        assert Invoice.objects.get(pk=payment.invoice_id).status == InvoiceStatus.SENT

    def test_multiple_partial_refunds(self, db, processor, completed_payment, stripe_refund):
        stripe_refund.side_effect = [
            RefundResult(gateway_refund_id="re_a", sync_status=SyncStatus.SUCCEEDED),
            RefundResult(gateway_refund_id="re_b", sync_status=SyncStatus.SUCCEEDED),
        ]

        processor.refund(completed_payment.id, amount="40.00")
        processor.refund(completed_payment.id, amount="60.00")

        payment = Payment.objects.get(pk=completed_payment.pk)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refunded_amount == Decimal("100.00")
        assert payment.reversals.count() == 2

    def test_refund_runs_under_payment_lock(
        self, db, processor, completed_payment, stripe_refund, mock_redis
    ):
        processor.refund(completed_payment.id, amount="40.00")

        key = mock_redis.set.call_args.args[0]
        assert key == f"lock:payments:refund:payment:{completed_payment.id}"
        mock_redis.eval.assert_called_once()


# =============================================================================
# Validation
# =============================================================================


class TestRefundValidation:
    """Rejected refunds never create a RefundRecord."""

    def test_amount_exceeds_payment(self, db, processor, completed_payment, stripe_refund):
        with pytest.raises(AmountExceedsRefundableError):
            processor.refund(completed_payment.id, amount="100.01")

        assert not RefundRecord.objects.exists()
        stripe_refund.assert_not_called()

    def test_requested_refunds_are_reserved(
        self, db, processor, completed_payment, stripe_refund
    ):
        RefundRecordFactory(refund_parent=completed_payment, amount=Decimal("80.00"))

        with pytest.raises(AmountExceedsRefundableError):
            processor.refund(completed_payment.id, amount="40.00")

    def test_pending_payment_is_not_refundable(self, db, processor, pending_payment):
        with pytest.raises(InvalidTransitionError):
            processor.refund(pending_payment.id, amount="10.00")

    def test_unknown_payment(self, db, processor):
        with pytest.raises(PaymentNotFoundError):
            processor.refund(uuid.uuid4(), amount="10.00")

    @pytest.mark.parametrize("amount", ["12.345", "-1", "0", "ten"])
    def test_malformed_amount(self, db, processor, completed_payment, amount):
        with pytest.raises(PaymentValidationError):
            processor.refund(completed_payment.id, amount=amount)

    def test_lock_held_elsewhere(self, db, processor, completed_payment, mock_redis):
        mock_redis.set.return_value = False

        with patch("payments.services.refund_processor.REFUND_LOCK_TIMEOUT", 0):
            with pytest.raises(LockAcquisitionError):
                processor.refund(completed_payment.id, amount="10.00")

        assert not RefundRecord.objects.exists()


# =============================================================================
# Gateway Outcomes
# =============================================================================


class TestRefundGatewayOutcomes:
    """Pending, failed and unreachable gateway responses."""

    def test_pending_result_keeps_refund_requested(self, db, processor, completed_payment):
        result = RefundResult(gateway_refund_id="re_pending", sync_status=SyncStatus.PENDING)
        with patch.object(StripeAdapter, "refund", return_value=result):
            outcome = processor.refund(completed_payment.id, amount="40.00")

        assert outcome.error is None
        assert outcome.refund.status == RefundStatus.REQUESTED
        assert outcome.refund.gateway_refund_id == "re_pending"
        assert Invoice.objects.get(pk=completed_payment.invoice_id).paid_amount == Decimal(
            "100.00"
        )

    def test_failed_result_fails_refund(self, db, processor, completed_payment):
        result = RefundResult(
            gateway_refund_id="re_failed",
            sync_status=SyncStatus.FAILED,
            failure_message="Charge disputed",
        )
        with patch.object(StripeAdapter, "refund", return_value=result):
            outcome = processor.refund(completed_payment.id, amount="40.00")

        assert outcome.error.error_code == "REFUND_FAILED"
        assert outcome.refund.status == RefundStatus.FAILED
        assert outcome.refund.failure_reason == "Charge disputed"
        assert Payment.objects.get(pk=completed_payment.pk).refundable_amount == Decimal(
            "100.00"
        )

    def test_gateway_rejection_fails_refund(self, db, processor, completed_payment):
        with patch.object(
            StripeAdapter,
            "refund",
            side_effect=GatewayInvalidRequestError(
                "Charge has already been refunded", gateway="stripe"
            ),
        ):
            outcome = processor.refund(completed_payment.id, amount="40.00")

        assert isinstance(outcome.error, GatewayInvalidRequestError)
        assert outcome.refund.status == RefundStatus.FAILED
        assert Payment.objects.get(pk=completed_payment.pk).status == PaymentStatus.COMPLETED

    def test_unavailable_gateway_leaves_refund_requested(
        self, db, processor, completed_payment
    ):
        with patch.object(
            StripeAdapter,
            "refund",
            side_effect=GatewayUnavailableError("timeout", gateway="stripe"),
        ) as refund:
            outcome = processor.refund(completed_payment.id, amount="40.00")

        assert refund.call_count == 3
        assert isinstance(outcome.error, GatewayUnavailableError)
        assert outcome.refund.status == RefundStatus.REQUESTED
        assert Payment.objects.get(pk=completed_payment.pk).refundable_amount == Decimal(
            "60.00"
        )


# =============================================================================
# Retry
# =============================================================================


class TestRefundRetry:
    """Tests for RefundProcessor.retry."""

    def test_retry_reuses_token(self, db, processor, completed_payment, stripe_refund):
        with patch.object(
            StripeAdapter,
            "refund",
            side_effect=GatewayUnavailableError("timeout", gateway="stripe"),
        ) as failing:
            first = processor.refund(completed_payment.id, amount="40.00")
        first_token = failing.call_args.args[0].idempotency_token

        outcome = processor.retry(first.refund.id)

        assert stripe_refund.call_args.args[0].idempotency_token == first_token
        assert outcome.refund.status == RefundStatus.COMPLETED
        assert RefundRecord.objects.count() == 1

    def test_retry_of_completed_refund_is_rejected(
        self, db, processor, completed_payment, stripe_refund
    ):
        outcome = processor.refund(completed_payment.id, amount="40.00")

        with pytest.raises(InvalidTransitionError):
            processor.retry(outcome.refund.id)

    def test_retry_unknown_refund(self, db, processor):
        with pytest.raises(PaymentNotFoundError) as exc_info:
            processor.retry(uuid.uuid4())

        assert exc_info.value.error_code == "REFUND_NOT_FOUND"


# =============================================================================
# Manual Refunds
# =============================================================================


class TestManualRefunds:
    """Mobile money refunds are issued by an operator and then confirmed."""

    def test_mobile_money_refund_waits_for_operator(self, db, processor, mobile_money_payment):
        outcome = processor.refund(mobile_money_payment.id, amount="20000")

        assert outcome.error is None
        assert outcome.refund.status == RefundStatus.REQUESTED
        assert outcome.refund.gateway_refund_id is None

    def test_confirm_manual_refund(self, db, processor, mobile_money_payment):
        refund = processor.refund(mobile_money_payment.id, amount="20000").refund

        result = processor.confirm_manual_refund(refund.id, gateway_refund_id="CP-REF-1")

        assert result.success is True
        assert result.data.status == RefundStatus.COMPLETED
        assert result.data.gateway_refund_id == "CP-REF-1"
        invoice = Invoice.objects.get(pk=mobile_money_payment.invoice_id)
        assert invoice.paid_amount == Decimal("30000")
        record = GatewayEventRecord.objects.get(
            gateway_event_id=f"manual-refund.succeeded-{refund.id}"
        )
        assert record.source == GatewayEventSource.MANUAL

    def test_confirm_twice_fails(self, db, processor, mobile_money_payment):
        refund = processor.refund(mobile_money_payment.id, amount="20000").refund
        processor.confirm_manual_refund(refund.id)

        result = processor.confirm_manual_refund(refund.id)

        assert result.success is False
        assert result.error_code == "INVALID_STATE_TRANSITION"

    def test_confirm_unknown_refund(self, db, processor):
        result = processor.confirm_manual_refund(uuid.uuid4())

        assert result.success is False
        assert result.error_code == "REFUND_NOT_FOUND"
