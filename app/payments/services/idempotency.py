"""
Durable idempotency store.

Maps a deduplication key to the outcome already produced for it. The
check-and-set is a unique-constraint insert inside a savepoint: whoever
inserts first wins, and an IntegrityError means another request or
delivery already claimed the key.

Keys:
    "<gateway>/<event id>"         webhook deliveries (scope "webhook")
    "charge/<client request id>"   charge requests (scope "charge")

Usage:
    from payments.services.idempotency import IdempotencyStore

    store = IdempotencyStore(retention_days=60)
    record, created = store.claim(
        IdempotencyStore.charge_key(client_request_id),
        scope="charge",
        outcome={"payment_id": str(payment.id)},
        fingerprint=fingerprint,
    )
    if not created:
        # Replay: return the stored outcome
        ...
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.utils import timezone

from payments.models import IdempotencyRecord

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 60


class IdempotencyStore:
    """
    Key -> outcome cache backed by IdempotencyRecord.

    Records are never overwritten. Expired records are invisible to get()
    and removed by purge_expired(), run periodically by Celery beat.
    """

    SCOPE_CHARGE = "charge"
    SCOPE_WEBHOOK = "webhook"

    def __init__(self, retention_days: int = DEFAULT_RETENTION_DAYS):
        self.retention_days = retention_days

    # ==========================================================================
    # Key Helpers
    # ==========================================================================

    @staticmethod
    def charge_key(client_request_id: str) -> str:
        return f"charge/{client_request_id}"

    @staticmethod
    def webhook_key(gateway: str, event_id: str) -> str:
        return f"{gateway}/{event_id}"

    @staticmethod
    def fingerprint(**fields: Any) -> str:
        """
        Stable sha256 of the request fields that define "the same request".

        Values are stringified so Decimal("100") and Decimal("100.00") only
        match when the caller quantizes first.
        """
        canonical = json.dumps(
            {key: str(value) for key, value in fields.items()},
            sort_keys=True,
        )
        return hashlib.sha256(canonical.encode()).hexdigest()

    # ==========================================================================
    # Operations
    # ==========================================================================

    def get(self, key: str) -> IdempotencyRecord | None:
        """Return the live record for a key, ignoring expired ones."""
        return IdempotencyRecord.objects.filter(
            key=key,
            expires_at__gt=timezone.now(),
        ).first()

    def claim(
        self,
        key: str,
        scope: str,
        outcome: dict[str, Any] | None = None,
        fingerprint: str = "",
    ) -> tuple[IdempotencyRecord, bool]:
        """
        Atomically record the outcome for a key unless it already exists.

        An expired record still holding the key is replaced, since the
        retention window has passed and the purge task simply has not run.

        Args:
            key: Deduplication key
            scope: Key family
            outcome: JSON-serializable outcome
            fingerprint: Request fingerprint (charges)

        Returns:
            (record, created). created is False when another writer already
            holds the key; record is then the existing record.
        """
        expires_at = timezone.now() + timedelta(days=self.retention_days)
        IdempotencyRecord.objects.filter(key=key, expires_at__lte=timezone.now()).delete()
        try:
            with transaction.atomic():
                record = IdempotencyRecord.objects.create(
                    key=key,
                    scope=scope,
                    outcome=outcome or {},
                    request_fingerprint=fingerprint,
                    expires_at=expires_at,
                )
        except IntegrityError:
            existing = IdempotencyRecord.objects.filter(key=key).first()
            if existing is None:
                raise
            logger.info(
                "Idempotency key already claimed",
                extra={"key": key, "scope": scope},
            )
            return existing, False

        logger.debug("Idempotency key claimed", extra={"key": key, "scope": scope})
        return record, True

    def purge_expired(self) -> int:
        """
        Delete records past their retention window.

        Returns:
            Number of records deleted
        """
        deleted, _ = IdempotencyRecord.objects.filter(
            expires_at__lte=timezone.now()
        ).delete()
        if deleted:
            logger.info("Purged expired idempotency records", extra={"count": deleted})
        return deleted
