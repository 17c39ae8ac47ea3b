"""
Tests for the operator actions in the payments admin.
"""

from decimal import Decimal
from unittest.mock import patch

import pytest
from django.contrib import admin
from django.contrib.messages import ERROR
from django.test import RequestFactory

from payments.admin import GatewayEventRecordAdmin, RefundRecordAdmin
from payments.adapters import StripeAdapter
from payments.exceptions import (
    GatewayUnavailableError,
    PaymentIntegrityError,
    PaymentNotFoundError,
)
from payments.models import GatewayEventRecord, Invoice, Payment, RefundRecord
from payments.services import RefundProcessor
from payments.services.reconciler import Reconciler
from payments.state_machines import (
    GatewayEventStatus,
    GatewayName,
    PaymentStatus,
    RefundStatus,
)
from payments.tests.factories import GatewayEventFactory, PaymentFactory, UserFactory
from payments.types import RefundResult, SyncStatus
from payments.webhooks import WebhookIngestor


@pytest.fixture
def admin_request(db):
    request = RequestFactory().post("/admin/")
    request.user = UserFactory(is_staff=True, is_superuser=True)
    return request


class TestGatewayEventRecordAdmin:
    """Tests for the replay action."""

    def test_replay_parked_event(
        self, admin_request, invoice, payments_config, stripe_event, stripe_signature
    ):
        payment = PaymentFactory.build(invoice=invoice, gateway_transaction_id="pi_admin")
        body = stripe_event("payment_intent.succeeded", payment)
        ingestor = WebhookIngestor(payments_config)
        for _ in range(3):
            with pytest.raises(PaymentNotFoundError):
                ingestor.ingest("stripe", body, signature_header=stripe_signature(body))
        with pytest.raises(PaymentIntegrityError):
            ingestor.ingest("stripe", body, signature_header=stripe_signature(body))
        assert GatewayEventRecord.objects.get().status == GatewayEventStatus.PARKED
        payment.save()

        model_admin = GatewayEventRecordAdmin(GatewayEventRecord, admin.site)
        with patch.object(model_admin, "message_user") as message_user:
            model_admin.replay_events(admin_request, GatewayEventRecord.objects.all())

        message_user.assert_called_once_with(admin_request, "Replayed 1 events.")
        assert GatewayEventRecord.objects.get().status == GatewayEventStatus.APPLIED
        assert Payment.objects.get(pk=payment.pk).status == PaymentStatus.COMPLETED

    def test_replay_reports_failures(
        self, admin_request, payments_config, stripe_event, stripe_signature
    ):
        body = stripe_event("payment_intent.succeeded")
        with pytest.raises(PaymentNotFoundError):
            WebhookIngestor(payments_config).ingest(
                "stripe", body, signature_header=stripe_signature(body)
            )

        model_admin = GatewayEventRecordAdmin(GatewayEventRecord, admin.site)
        with patch.object(model_admin, "message_user") as message_user:
            model_admin.replay_events(admin_request, GatewayEventRecord.objects.all())

        error_call = message_user.call_args_list[0]
        assert "PAYMENT_NOT_FOUND" in error_call.args[1]
        assert error_call.args[2] == ERROR
        assert message_user.call_args_list[-1].args[1] == "Replayed 0 events."


class TestRefundRecordAdmin:
    """Tests for the refund retry and manual confirmation actions."""

    def test_retry_refunds(self, admin_request, completed_payment, payments_config):
        with patch.object(
            StripeAdapter,
            "refund",
            side_effect=GatewayUnavailableError("timeout", gateway="stripe"),
        ):
            RefundProcessor(payments_config).refund(completed_payment.id, amount="25.00")

        model_admin = RefundRecordAdmin(RefundRecord, admin.site)
        result = RefundResult(gateway_refund_id="re_admin", sync_status=SyncStatus.SUCCEEDED)
        with patch.object(StripeAdapter, "refund", return_value=result):
            with patch.object(model_admin, "message_user") as message_user:
                model_admin.retry_refunds(admin_request, RefundRecord.objects.all())

        message_user.assert_called_once_with(admin_request, "Resubmitted 1 refunds.")
        assert RefundRecord.objects.get().status == RefundStatus.COMPLETED

    def test_confirm_manual_refunds(self, admin_request, tzs_invoice, payments_config):
        payment = PaymentFactory(
            invoice=tzs_invoice,
            gateway=GatewayName.CLICKPESA,
            method="mobile_money",
            gateway_transaction_id="CP-ADMIN-1",
        )
        Reconciler(payments_config).apply(GatewayEventFactory(payment=payment))
        RefundProcessor(payments_config).refund(payment.id, amount="10000")

        model_admin = RefundRecordAdmin(RefundRecord, admin.site)
        with patch.object(model_admin, "message_user") as message_user:
            model_admin.confirm_manual_refunds(admin_request, RefundRecord.objects.all())

        message_user.assert_called_once_with(admin_request, "Confirmed 1 refunds.")
        assert RefundRecord.objects.get().status == RefundStatus.COMPLETED
        assert Invoice.objects.get(pk=tzs_invoice.pk).paid_amount == Decimal("40000")
