"""
Tests for the gateway webhook endpoint.

Tests cover:
- Response codes gateways rely on to decide whether to redeliver
- Signature headers read from the request
- Method and gateway routing
"""

import json
from unittest.mock import patch

import pytest
from django.urls import reverse

from payments.models import GatewayEventRecord, Payment
from payments.state_machines import PaymentStatus


def webhook_url(gateway="stripe"):
    return reverse("webhooks:gateway_webhook", kwargs={"gateway": gateway})


def post_stripe(client, body, signature=None):
    headers = {}
    if signature is not None:
        headers["HTTP_STRIPE_SIGNATURE"] = signature
    return client.post(
        webhook_url(),
        data=body,
        content_type="application/json",
        **headers,
    )


# =============================================================================
# Success Responses
# =============================================================================


class TestWebhookSuccess:
    """Deliveries answered with 200."""

    def test_processed_event_returns_200(
        self, client, db, pending_payment, stripe_event, stripe_signature
    ):
        body = stripe_event("payment_intent.succeeded", pending_payment)

        response = post_stripe(client, body, stripe_signature(body))

        assert response.status_code == 200
        assert response.json() == {"status": "processed", "event_id": "evt_test_1"}
        assert Payment.objects.get(pk=pending_payment.pk).status == PaymentStatus.COMPLETED

    def test_duplicate_returns_200(
        self, client, db, pending_payment, stripe_event, stripe_signature
    ):
        body = stripe_event("payment_intent.succeeded", pending_payment)
        post_stripe(client, body, stripe_signature(body))

        response = post_stripe(client, body, stripe_signature(body))

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    def test_ignored_event_returns_200(self, client, db, stripe_signature):
        body = json.dumps(
            {"id": "evt_other", "type": "customer.updated", "data": {"object": {}}}
        ).encode()

        response = post_stripe(client, body, stripe_signature(body))

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}


# =============================================================================
# Error Responses
# =============================================================================


class TestWebhookErrors:
    """Deliveries the gateway should retry or that are rejected outright."""

    def test_missing_signature_returns_400(self, client, db, pending_payment, stripe_event):
        body = stripe_event("payment_intent.succeeded", pending_payment)

        response = post_stripe(client, body)

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_SIGNATURE"
        assert not GatewayEventRecord.objects.exists()

    def test_invalid_signature_returns_400(
        self, client, db, pending_payment, stripe_event, stripe_signature
    ):
        body = stripe_event("payment_intent.succeeded", pending_payment)

        response = post_stripe(client, body, stripe_signature(body, secret="whsec_wrong"))

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_SIGNATURE"

    def test_unparseable_payload_returns_400(self, client, db, stripe_signature):
        body = b"not json"

        response = post_stripe(client, body, stripe_signature(body))

        assert response.status_code == 400
        assert response.json()["error_code"] == "WEBHOOK_PARSE_ERROR"

    def test_unknown_gateway_returns_404(self, client, db):
        response = client.post(webhook_url("bitcoin"), data=b"{}", content_type="application/json")

        assert response.status_code == 404
        assert response.json()["error_code"] == "GATEWAY_NOT_AVAILABLE"

    def test_unknown_payment_returns_404(self, client, db, stripe_event, stripe_signature):
        body = stripe_event("payment_intent.succeeded")

        response = post_stripe(client, body, stripe_signature(body))

        assert response.status_code == 404
        assert response.json()["error_code"] == "PAYMENT_NOT_FOUND"

    def test_parked_event_returns_409(
        self, client, db, pending_payment, stripe_event, stripe_signature
    ):
        body = stripe_event("payment_intent.succeeded", pending_payment, amount=1)

        response = post_stripe(client, body, stripe_signature(body))

        assert response.status_code == 409
        assert GatewayEventRecord.objects.get().is_parked is True

    def test_unexpected_error_returns_500(
        self, client, db, pending_payment, stripe_event, stripe_signature
    ):
        body = stripe_event("payment_intent.succeeded", pending_payment)

        with patch(
            "payments.webhooks.ingestor.Reconciler.apply",
            side_effect=RuntimeError("database went away"),
        ):
            response = post_stripe(client, body, stripe_signature(body))

        assert response.status_code == 500
        assert response.json() == {
            "error": "Processing failed",
            "error_code": "WEBHOOK_PROCESSING_ERROR",
        }

    def test_get_not_allowed(self, client, db):
        response = client.get(webhook_url())

        assert response.status_code == 405
