"""
Tests for the IdempotencyStore.

Tests claim semantics, expiry and purging of records past their retention
window.
"""

from datetime import timedelta
from decimal import Decimal

from django.utils import timezone
from freezegun import freeze_time

from payments.models import IdempotencyRecord
from payments.services.idempotency import IdempotencyStore
from payments.tests.factories import IdempotencyRecordFactory


class TestKeys:
    """Tests for key and fingerprint helpers."""

    def test_key_formats(self):
        assert IdempotencyStore.charge_key("req-1") == "charge/req-1"
        assert IdempotencyStore.webhook_key("stripe", "evt_1") == "stripe/evt_1"

    def test_fingerprint_is_order_independent(self):
        first = IdempotencyStore.fingerprint(invoice_id="inv", amount=Decimal("10.00"))
        second = IdempotencyStore.fingerprint(amount=Decimal("10.00"), invoice_id="inv")

        assert first == second

    def test_fingerprint_distinguishes_amounts(self):
        first = IdempotencyStore.fingerprint(amount=Decimal("10.00"))
        second = IdempotencyStore.fingerprint(amount=Decimal("10.01"))

        assert first != second


class TestClaim:
    """Tests for IdempotencyStore.claim."""

    def test_first_claim_wins(self, db):
        store = IdempotencyStore()

        record, created = store.claim(
            "charge/req-1",
            IdempotencyStore.SCOPE_CHARGE,
            outcome={"payment_id": "abc"},
            fingerprint="f1",
        )

        assert created is True
        assert record.outcome == {"payment_id": "abc"}
        assert record.request_fingerprint == "f1"
        assert store.get("charge/req-1").pk == record.pk

    def test_second_claim_returns_existing(self, db):
        store = IdempotencyStore()
        first, _ = store.claim("stripe/evt_1", IdempotencyStore.SCOPE_WEBHOOK, {"n": 1})

        second, created = store.claim("stripe/evt_1", IdempotencyStore.SCOPE_WEBHOOK, {"n": 2})

        assert created is False
        assert second.pk == first.pk
        assert second.outcome == {"n": 1}
        assert IdempotencyRecord.objects.count() == 1

    def test_retention_sets_expiry(self, db):
        store = IdempotencyStore(retention_days=7)

        with freeze_time("2026-01-01 12:00:00"):
            record, _ = store.claim("charge/req-1", IdempotencyStore.SCOPE_CHARGE)
            assert record.expires_at == timezone.now() + timedelta(days=7)

    def test_expired_record_is_invisible_and_replaced(self, db):
        IdempotencyRecordFactory(
            key="charge/req-old",
            outcome={"payment_id": "old"},
            expires_at=timezone.now() - timedelta(seconds=1),
        )
        store = IdempotencyStore()

        assert store.get("charge/req-old") is None
        record, created = store.claim(
            "charge/req-old",
            IdempotencyStore.SCOPE_CHARGE,
            outcome={"payment_id": "new"},
        )

        assert created is True
        assert record.outcome == {"payment_id": "new"}


class TestPurge:
    """Tests for IdempotencyStore.purge_expired."""

    def test_purges_only_expired(self, db):
        IdempotencyRecordFactory(expires_at=timezone.now() - timedelta(days=1))
        IdempotencyRecordFactory(expires_at=timezone.now() - timedelta(minutes=1))
        live = IdempotencyRecordFactory(expires_at=timezone.now() + timedelta(days=1))

        assert IdempotencyStore().purge_expired() == 2
        assert list(IdempotencyRecord.objects.all()) == [live]

    def test_purge_with_nothing_expired(self, db):
        IdempotencyRecordFactory()

        assert IdempotencyStore().purge_expired() == 0
