"""
IdempotencyRecord model: durable key -> outcome cache.

Keys:
    "<gateway>/<event id>"         webhook deliveries
    "charge/<client request id>"   charge requests

A record is created exactly once through a unique-constraint insert and
never overwritten. Records expire after the configured retention window
and are purged by a periodic task.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


class IdempotencyRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Maps a deduplication key to the outcome already produced.

    Fields:
        key: Deduplication key (unique)
        scope: Key family ("webhook", "charge")
        outcome: JSON outcome (payment id, status, parked flag)
        request_fingerprint: Hash of the request that first used the key
        expires_at: When the record may be purged
    """

    key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Deduplication key",
    )

    scope = models.CharField(
        max_length=20,
        db_index=True,
        help_text="Key family (webhook, charge)",
    )

    outcome = models.JSONField(
        default=dict,
        blank=True,
        help_text="Outcome produced the first time the key was seen",
    )

    request_fingerprint = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text="sha256 of the originating request",
    )

    expires_at = models.DateTimeField(
        db_index=True,
        help_text="When the record may be purged",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Idempotency Record"
        verbose_name_plural = "Idempotency Records"

    def __str__(self) -> str:
        return f"IdempotencyRecord({self.key})"

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= timezone.now()
