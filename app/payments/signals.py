"""
Django signals for the payments app.

payment_event is sent by the publish_payment_event Celery task after the
transaction that changed a payment has committed. The notifier service
(outside the payments core) connects to it.

Events:
    payment.completed, payment.failed, payment.refunded,
    invoice.paid, refund.failed

Usage:
    from django.dispatch import receiver
    from payments.signals import payment_event

    @receiver(payment_event)
    def notify_customer(sender, event, payload, **kwargs):
        ...
"""

from __future__ import annotations

import logging

from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

# Sent with event (str) and payload (dict of strings)
payment_event = Signal()


@receiver(payment_event)
def log_payment_event(sender, event: str, payload: dict, **kwargs) -> None:
    """Audit log line for every published payment event."""
    logger.info(
        f"Payment event {event}",
        extra={
            "event": event,
            "payment_id": payload.get("payment_id"),
            "invoice_id": payload.get("invoice_id"),
            "refund_id": payload.get("refund_id"),
        },
    )
