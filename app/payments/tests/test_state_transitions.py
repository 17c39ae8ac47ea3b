"""
Tests for state machine transitions using django-fsm.

Tests valid and invalid state transitions for Payment and RefundRecord
models.
"""

from decimal import Decimal

import pytest
from django_fsm import TransitionNotAllowed

from payments.models import Payment, RefundRecord
from payments.state_machines import PaymentStatus, RefundStatus
from payments.tests.factories import PaymentFactory, RefundRecordFactory


# =============================================================================
# Payment State Transition Tests
# =============================================================================


class TestPaymentTransitions:
    """Tests for Payment state machine transitions."""

    # -------------------------------------------------------------------------
    # Valid Transitions
    # -------------------------------------------------------------------------

    def test_pending_to_processing(self, db, pending_payment):
        """Should transition from pending to processing."""
        pending_payment.start_processing()
        pending_payment.save()

        assert Payment.objects.get(pk=pending_payment.pk).status == PaymentStatus.PROCESSING

    def test_processing_to_completed(self, db, processing_payment):
        """Should transition from processing to completed."""
        processing_payment.complete()
        processing_payment.save()

        assert processing_payment.status == PaymentStatus.COMPLETED
        assert processing_payment.processed_at is not None

    def test_processing_to_failed(self, db, processing_payment):
        """Should transition from processing to failed."""
        processing_payment.fail(code="card_declined", reason="Do not honor")
        processing_payment.save()

        assert processing_payment.status == PaymentStatus.FAILED
        assert processing_payment.failed_at is not None
        assert processing_payment.failure_code == "card_declined"
        assert processing_payment.failure_reason == "Do not honor"

    def test_pending_to_failed(self, db, pending_payment):
        """A charge can fail before the gateway reports processing."""
        pending_payment.fail(code="insufficient_funds")
        pending_payment.save()

        assert pending_payment.status == PaymentStatus.FAILED
        assert pending_payment.failure_code == "insufficient_funds"

    def test_partial_refunds_accumulate(self, db, invoice):
        """Each partial refund adds to refunded_amount."""
        payment = PaymentFactory(invoice=invoice, status=PaymentStatus.COMPLETED)

        payment.refund_partial(Decimal("40.00"))
        payment.save()
        payment.refund_partial(Decimal("20.00"))
        payment.save()

        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
        assert payment.refunded_amount == Decimal("60.00")
        assert payment.refunded_at is not None

    def test_partially_refunded_to_refunded(self, db, invoice):
        """The last refund moves the payment to refunded."""
        payment = PaymentFactory(invoice=invoice, status=PaymentStatus.PARTIALLY_REFUNDED)

        payment.refund_full(Decimal("100.00"))
        payment.save()

        assert payment.status == PaymentStatus.REFUNDED
        assert payment.is_terminal is True

    # -------------------------------------------------------------------------
    # Invalid Transitions
    # -------------------------------------------------------------------------

    def test_pending_cannot_complete(self, db, pending_payment):
        """A payment must pass through processing before completing."""
        with pytest.raises(TransitionNotAllowed):
            pending_payment.complete()

    def test_failed_is_terminal(self, db, invoice):
        """No transition leaves failed."""
        payment = PaymentFactory(invoice=invoice, status=PaymentStatus.FAILED)

        with pytest.raises(TransitionNotAllowed):
            payment.start_processing()
        with pytest.raises(TransitionNotAllowed):
            payment.refund_full(payment.amount)

    def test_completed_cannot_fail(self, db, invoice):
        """A completed charge is only reversed by refunds."""
        payment = PaymentFactory(invoice=invoice, status=PaymentStatus.COMPLETED)

        with pytest.raises(TransitionNotAllowed):
            payment.fail(code="card_declined")

    def test_pending_cannot_be_refunded(self, db, pending_payment):
        """Only settled payments can be refunded."""
        with pytest.raises(TransitionNotAllowed):
            pending_payment.refund_partial(Decimal("10.00"))


# =============================================================================
# RefundRecord State Transition Tests
# =============================================================================


class TestRefundRecordTransitions:
    """Tests for RefundRecord state machine transitions."""

    def test_requested_to_completed(self, db):
        """Should complete and keep the gateway refund id."""
        refund = RefundRecordFactory()

        refund.complete(gateway_refund_id="re_123")
        refund.save()

        reloaded = RefundRecord.objects.get(pk=refund.pk)
        assert reloaded.status == RefundStatus.COMPLETED
        assert reloaded.gateway_refund_id == "re_123"
        assert reloaded.completed_at is not None
        assert reloaded.is_complete is True

    def test_requested_to_failed(self, db):
        """Should fail with a reason."""
        refund = RefundRecordFactory()

        refund.fail(reason="Charge already disputed")
        refund.save()

        assert refund.status == RefundStatus.FAILED
        assert refund.failure_reason == "Charge already disputed"
        assert refund.is_pending is False

    def test_completed_cannot_fail(self, db):
        """A completed refund is final."""
        refund = RefundRecordFactory(status=RefundStatus.COMPLETED)

        with pytest.raises(TransitionNotAllowed):
            refund.fail(reason="late failure")

    def test_failed_cannot_complete(self, db):
        """A failed refund is final."""
        refund = RefundRecordFactory(status=RefundStatus.FAILED)

        with pytest.raises(TransitionNotAllowed):
            refund.complete()
