"""
Webhook ingestion: verify, normalize, deduplicate, reconcile.

Gateways retry a callback until they receive a 2xx, so every step here is
safe to repeat:

    1. Signature check (skipped only when verification is disabled)
    2. Adapter normalizes the payload into a GatewayEvent
    3. Dedupe key "<gateway>/<event id>" looked up in the IdempotencyStore
    4. Event archived and the attempt counted
    5. Dedupe key claimed and Reconciler run in one transaction

A Reconciler failure rolls the claim back, so the gateway's next delivery
tries again. Integrity failures park the archived event for manual review
and keep answering non-2xx; operators replay parked events from the admin.

Usage:
    from payments.webhooks.ingestor import WebhookIngestor

    result = WebhookIngestor().ingest("stripe", request.body, headers=request.headers)
    result.status  # "processed", "duplicate" or "ignored"
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Mapping

from core.services import BaseService, ServiceResult

from payments.adapters import get_adapter
from payments.conf import PaymentsConfig
from payments.exceptions import (
    InvalidSignatureError,
    PaymentError,
    PaymentIntegrityError,
    WebhookParseError,
)
from payments.models import GatewayEventRecord
from payments.services.idempotency import IdempotencyStore
from payments.services.reconciler import Reconciler

if TYPE_CHECKING:
    from payments.models import Payment
    from payments.types import GatewayEvent


@dataclass
class IngestResult:
    """
    Outcome of one webhook delivery.

    Attributes:
        status: processed, duplicate or ignored
        event: Normalized event (None when ignored)
        record: Archive row (processed deliveries)
        payment: Payment the event was applied to
    """

    status: str
    event: GatewayEvent | None = None
    record: GatewayEventRecord | None = None
    payment: Payment | None = None


class WebhookIngestor(BaseService):
    """Entry point for inbound gateway callbacks."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"

    def __init__(
        self,
        config: PaymentsConfig | None = None,
        store: IdempotencyStore | None = None,
        reconciler: Reconciler | None = None,
    ):
        self.config = config or PaymentsConfig.from_settings()
        self.store = store or IdempotencyStore(self.config.idempotency_retention_days)
        self.reconciler = reconciler or Reconciler(self.config)

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(
        self,
        gateway_name: str,
        raw_body: bytes,
        signature_header: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> IngestResult:
        """
        Process one webhook delivery.

        Args:
            gateway_name: Gateway from the URL
            raw_body: Request body exactly as received
            signature_header: Signature value (extracted from headers if omitted)
            headers: Request headers

        Returns:
            IngestResult

        Raises:
            GatewayNotAvailableError: Unknown or disabled gateway
            InvalidSignatureError: Signature check failed (nothing stored)
            WebhookParseError: Payload could not be normalized
            PaymentIntegrityError: Event parked for manual review
            PaymentError / Exception: Reconciler failure; the gateway retries
        """
        adapter = get_adapter(gateway_name, self.config)
        log_context = {"gateway": adapter.name, "body_size": len(raw_body)}

        if signature_header is None and headers is not None:
            signature_header = adapter.extract_signature(headers)

        if self.config.verify_signatures:
            verified = adapter.verify_webhook_signature(
                raw_body,
                signature_header,
                adapter.config.webhook_secret,
            )
            if not verified:
                self.get_logger().warning(
                    "Webhook signature verification failed",
                    extra={**log_context, "has_signature": bool(signature_header)},
                )
                raise InvalidSignatureError(
                    "Invalid webhook signature",
                    details={"gateway": adapter.name},
                )

        try:
            event = adapter.parse_webhook(raw_body)
        except WebhookParseError as e:
            self.get_logger().warning(
                "Webhook payload could not be parsed",
                extra={**log_context, "error": e.message},
            )
            raise

        if event is None:
            self.get_logger().info("Webhook event type not consumed", extra=log_context)
            return IngestResult(status=self.IGNORED)

        log_context.update(
            {
                "event_id": event.event_id,
                "event_type": str(event.event_type),
                "gateway_transaction_id": event.gateway_transaction_id,
            }
        )
        key = IdempotencyStore.webhook_key(event.gateway, event.event_id)
        if self.store.get(key) is not None:
            self.get_logger().info("Duplicate webhook delivery", extra=log_context)
            return IngestResult(status=self.DUPLICATE, event=event)

        record, created = GatewayEventRecord.archive(
            event,
            raw_body=raw_body.decode("utf-8", errors="replace"),
        )
        self.get_logger().info(
            "Webhook received" if created else "Webhook redelivered",
            extra={**log_context, "attempt": record.attempt_count + 1},
        )
        return self._process(record, event, key, log_context)

    def replay(self, record_id: uuid.UUID | str) -> ServiceResult[IngestResult]:
        """
        Re-apply an archived event after manual review.

        Ignores the parked state and the retry limit. Used by the admin
        "replay" action.
        """
        record = GatewayEventRecord.objects.filter(pk=record_id).first()
        if record is None:
            return ServiceResult.failure(
                f"Gateway event {record_id} not found",
                error_code="GATEWAY_EVENT_NOT_FOUND",
            )
        if record.is_applied:
            return ServiceResult.failure(
                "Event was already applied",
                error_code="EVENT_ALREADY_APPLIED",
            )

        event = record.to_event()
        log_context = {
            "gateway": record.gateway,
            "event_id": record.gateway_event_id,
            "event_type": record.event_type,
            "record_id": str(record.id),
        }
        self.get_logger().info("Replaying gateway event", extra=log_context)
        key = IdempotencyStore.webhook_key(event.gateway, event.event_id)
        try:
            result = self._process(record, event, key, log_context, force=True)
        except PaymentError as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.success(result)

    # =========================================================================
    # Processing
    # =========================================================================

    def _process(
        self,
        record: GatewayEventRecord,
        event: GatewayEvent,
        key: str,
        log_context: dict,
        force: bool = False,
    ) -> IngestResult:
        if record.is_applied:
            return IngestResult(status=self.DUPLICATE, event=event, record=record)

        if record.is_parked and not force:
            raise PaymentIntegrityError(
                "Event is parked for manual review",
                error_code="EVENT_PARKED",
                details={"event_id": event.event_id, "reason": record.park_reason},
            )

        record.mark_processing()
        record.save()

        if not force and record.attempt_count > self.config.webhook_max_retries:
            reason = f"Processing failed {record.attempt_count - 1} times"
            record.mark_parked(reason)
            record.save()
            self.get_logger().error(
                "Webhook retries exhausted, event parked",
                extra={**log_context, "attempts": record.attempt_count},
            )
            raise PaymentIntegrityError(
                reason,
                error_code="WEBHOOK_RETRIES_EXHAUSTED",
                details={"event_id": event.event_id},
            )

        try:
            with self.atomic():
                _, claimed = self.store.claim(
                    key,
                    IdempotencyStore.SCOPE_WEBHOOK,
                    outcome={
                        "status": "applied",
                        "event_type": str(event.event_type),
                        "record_id": str(record.id),
                    },
                )
                if claimed:
                    result = self.reconciler.apply(event)
        except PaymentIntegrityError as e:
            record.mark_parked(e.message)
            record.save()
            self.get_logger().error(
                "Gateway event parked for manual review",
                extra={**log_context, "error_code": e.error_code, "reason": e.message},
            )
            raise
        except Exception as e:
            record.mark_failed(str(e))
            record.save()
            self.get_logger().error(
                "Gateway event processing failed",
                extra={**log_context, "error_type": type(e).__name__},
                exc_info=True,
            )
            raise

        if not claimed:
            # A concurrent delivery of the same event won the claim
            self.get_logger().info("Duplicate webhook delivery", extra=log_context)
            return IngestResult(status=self.DUPLICATE, event=event, record=record)

        record.mark_applied(payment=result.payment)
        record.save()
        return IngestResult(
            status=self.PROCESSED,
            event=event,
            record=record,
            payment=result.payment,
        )


__all__ = [
    "IngestResult",
    "WebhookIngestor",
]
