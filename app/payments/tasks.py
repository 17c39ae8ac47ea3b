"""
Celery tasks for the payments core.

This module provides async tasks for:
- Publishing payment notifications after commit
- Purging expired idempotency records
- Auditing invoice balances against the ledger journal
- Resetting gateway events stuck in processing
- Capturing approved wallet charges
- Polling gateways for payments whose callback never arrived

Usage:
    from payments.tasks import publish_payment_event

    # Scheduled by the Reconciler with transaction.on_commit
    publish_payment_event.delay("payment.completed", {"payment_id": "..."})

    # Periodic tasks are scheduled via celery-beat (see migrations)
    from payments.tasks import audit_invoice_ledgers
    audit_invoice_ledgers.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.utils import timezone

from core.exceptions import BaseApplicationError

from payments.conf import PaymentsConfig
from payments.exceptions import GatewayUnavailableError
from payments.models import GatewayEventRecord, Invoice, LedgerEntry, Payment
from payments.signals import payment_event
from payments.state_machines import GatewayEventStatus, InvoiceStatus, PaymentStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_PUBLISH_RETRIES = 5
STUCK_PROCESSING_THRESHOLD_MINUTES = 30
AUDIT_BATCH_SIZE = 500
MAX_CAPTURE_RETRIES = 5
PENDING_POLL_AGE_MINUTES = 10
PENDING_POLL_WINDOW_HOURS = 72
POLL_BATCH_SIZE = 200


# =============================================================================
# Notification Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_PUBLISH_RETRIES},
    acks_late=True,
)
def publish_payment_event(self, event: str, payload: dict) -> dict:
    """
    Publish a payment notification to signal receivers.

    Scheduled with transaction.on_commit, so receivers only ever see
    committed state. Receiver errors trigger a Celery retry.

    Args:
        event: Event name (payment.completed, invoice.paid, ...)
        payload: JSON-safe payload (ids, status, amounts as strings)

    Returns:
        Dict with the event name and receiver count
    """
    logger.info(
        "Publishing payment event",
        extra={"event": event, "payment_id": payload.get("payment_id")},
    )
    responses = payment_event.send_robust(sender=None, event=event, payload=payload)

    for receiver, response in responses:
        if isinstance(response, Exception):
            logger.error(
                f"Payment event receiver failed: {response}",
                extra={"event": event, "receiver": getattr(receiver, "__name__", str(receiver))},
            )
            raise response

    return {"event": event, "receivers": len(responses)}


# =============================================================================
# Maintenance Tasks
# =============================================================================


@shared_task
def purge_expired_idempotency_records() -> dict:
    """
    Periodic task deleting idempotency records past their retention window.

    Returns:
        Dict with count of records deleted
    """
    from payments.services.idempotency import IdempotencyStore

    config = PaymentsConfig.from_settings()
    deleted = IdempotencyStore(config.idempotency_retention_days).purge_expired()
    return {"deleted_count": deleted}


@shared_task
def audit_invoice_ledgers(hours: int | None = 24) -> dict:
    """
    Periodic task comparing invoice balances with the ledger journal.

    Audits every invoice with journal activity in the lookback window
    (all invoices with any payment activity when hours is None).
    Mismatches are logged at error level by the ledger; nothing is
    corrected automatically.

    Args:
        hours: Lookback window in hours

    Returns:
        Dict with counts of audited and mismatched invoices
    """
    from payments.ledger.services import ledger

    invoices = Invoice.objects.exclude(status=InvoiceStatus.DRAFT)
    if hours is not None:
        since = timezone.now() - timedelta(hours=hours)
        invoice_ids = (
            LedgerEntry.objects.filter(created_at__gte=since)
            .values_list("invoice_id", flat=True)
            .distinct()
        )
        invoices = invoices.filter(id__in=list(invoice_ids))

    audited = 0
    mismatched = []
    for invoice in invoices.order_by("created_at")[:AUDIT_BATCH_SIZE]:
        audit = ledger.audit_invoice(invoice)
        audited += 1
        if not audit.is_consistent:
            mismatched.append(str(invoice.id))

    logger.info(
        f"Audited {audited} invoice ledgers",
        extra={"audited_count": audited, "mismatched_count": len(mismatched)},
    )
    return {"audited_count": audited, "mismatched": mismatched}


@shared_task
def cleanup_stuck_gateway_events() -> dict:
    """
    Periodic task to reset gateway events stuck in processing.

    A worker that crashed mid-processing leaves its archive row in
    PROCESSING. Resetting it to FAILED makes it visible to operators; the
    gateway's redelivery (or an admin replay) applies it.

    Returns:
        Dict with count of events reset
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)

    stuck_events = GatewayEventRecord.objects.filter(
        status=GatewayEventStatus.PROCESSING,
        updated_at__lt=threshold,
    )

    reset_count = 0
    for record in stuck_events:
        record.mark_failed("Processing timed out - reset for retry")
        record.save()
        reset_count += 1
        logger.warning(
            "Reset stuck gateway event",
            extra={
                "gateway_event_record_id": str(record.id),
                "gateway": record.gateway,
                "gateway_event_id": record.gateway_event_id,
            },
        )

    return {"reset_count": reset_count}


# =============================================================================
# Settlement Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(GatewayUnavailableError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={"max_retries": MAX_CAPTURE_RETRIES},
    acks_late=True,
)
def capture_approved_payment(self, payment_id: str) -> dict:
    """
    Capture a charge the buyer approved at the gateway.

    Scheduled by the Reconciler after an approval event commits. The
    capture token is derived from the payment, so retries and duplicate
    schedules reach the gateway as one request.

    Args:
        payment_id: Payment to capture

    Returns:
        Dict with the payment status after the capture
    """
    from payments.services.payment_orchestrator import PaymentOrchestrator

    outcome = PaymentOrchestrator().capture(payment_id)
    result = {"payment_id": payment_id, "status": outcome.payment.status}
    if outcome.error is not None:
        result["error_code"] = outcome.error.error_code
    return result


@shared_task
def poll_pending_payments(minutes: int = PENDING_POLL_AGE_MINUTES) -> dict:
    """
    Periodic task settling processing payments whose callback never came.

    Only gateways that support status queries are polled. A payment is
    polled once it has been processing for at least `minutes`; payments
    older than the poll window are left for manual review.

    Args:
        minutes: Minimum age before a payment is polled

    Returns:
        Dict with counts of polled, settled and errored payments
    """
    from payments.adapters import get_adapter
    from payments.services.payment_orchestrator import PaymentOrchestrator

    config = PaymentsConfig.from_settings()
    gateways = []
    for name, gateway_config in config.gateways.items():
        if gateway_config.enabled and get_adapter(name, config).supports_status_query:
            gateways.append(name)

    now = timezone.now()
    payments = Payment.objects.filter(
        status=PaymentStatus.PROCESSING,
        gateway__in=gateways,
        submitted_at__lte=now - timedelta(minutes=minutes),
        submitted_at__gte=now - timedelta(hours=PENDING_POLL_WINDOW_HOURS),
    ).order_by("submitted_at")[:POLL_BATCH_SIZE]

    orchestrator = PaymentOrchestrator(config)
    polled = settled = errors = 0
    for payment in payments:
        polled += 1
        try:
            outcome = orchestrator.refresh_status(payment.id)
        except BaseApplicationError as e:
            errors += 1
            logger.warning(
                f"Status query failed: {e.message}",
                extra={
                    "payment_id": str(payment.id),
                    "gateway": payment.gateway,
                    "error_code": e.error_code,
                },
            )
            continue
        if outcome.payment.status != PaymentStatus.PROCESSING:
            settled += 1

    logger.info(
        f"Polled {polled} pending payments",
        extra={"polled_count": polled, "settled_count": settled, "error_count": errors},
    )
    return {"polled_count": polled, "settled_count": settled, "error_count": errors}
