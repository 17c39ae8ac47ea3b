"""
Reconciler: applies normalized gateway events to payments and invoices.

Every status change of a Payment or RefundRecord after creation goes
through here, whether the event came from a webhook, a synchronous gateway
response or a manual confirmation. Handlers run under the invoice lock
(invoice -> payment -> refund record) and drive the ledger in the same
transaction.

Payment states:
    pending -> processing -> completed | failed
    pending -> failed
    completed -> partially_refunded | refunded
    partially_refunded -> partially_refunded | refunded

An event whose target state was already reached is a no-op. Any other
illegal transition raises InvalidTransitionError, which the caller parks
for manual review.

Usage:
    from payments.services.reconciler import Reconciler

    result = Reconciler(payments_config).apply(event)
    result.payment.status  # "completed"
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from django.db import transaction
from django.utils import timezone

from django_fsm import TransitionNotAllowed

from core.services import BaseService

from payments.conf import PaymentsConfig
from payments.exceptions import (
    InvalidTransitionError,
    PaymentIntegrityError,
    PaymentNotFoundError,
)
from payments.ledger.services import ledger
from payments.models import GatewayEventRecord, Invoice, Payment, RefundRecord
from payments.state_machines import (
    GatewayEventSource,
    GatewayEventType,
    InvoiceStatus,
    PaymentStatus,
    PaymentType,
    RefundStatus,
)
from payments.tasks import capture_approved_payment, publish_payment_event

if TYPE_CHECKING:
    from payments.types import GatewayEvent

SETTLED_STATUSES = (
    PaymentStatus.COMPLETED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
)


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class ReconcileResult:
    """
    Outcome of applying one event.

    Attributes:
        payment: The payment the event resolved to (reloaded, post-change)
        changed: False when the event was a no-op
        refund: Refund record touched by refund events
        notifications: Notification events published after commit
        capture: Schedule a capture of the approved charge after commit
    """

    payment: Payment
    changed: bool = True
    refund: RefundRecord | None = None
    notifications: list[str] = field(default_factory=list)
    capture: bool = False


# =============================================================================
# Handler Registry
# =============================================================================


# Maps normalized event types to handler functions
EVENT_HANDLERS: dict[
    str,
    Callable[[Reconciler, Invoice, Payment, GatewayEvent], ReconcileResult],
] = {}


def register_handler(event_type: str) -> Callable:
    """
    Decorator to register a reconciler handler for a normalized event type.

    Usage:
        @register_handler(GatewayEventType.CHARGE_SUCCEEDED)
        def handle_charge_succeeded(reconciler, invoice, payment, event):
            ...
    """

    def decorator(func: Callable) -> Callable:
        EVENT_HANDLERS[event_type] = func
        return func

    return decorator


def _transition(instance, method_name: str, *args, **kwargs) -> None:
    """Run an FSM transition, translating TransitionNotAllowed."""
    try:
        getattr(instance, method_name)(*args, **kwargs)
    except TransitionNotAllowed as exc:
        model_name = type(instance).__name__
        raise InvalidTransitionError(
            f"Cannot {method_name} {model_name} in status '{instance.status}'",
            details={
                "model": model_name,
                "id": str(instance.pk),
                "current_state": instance.status,
                "transition": method_name,
            },
        ) from exc


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler(BaseService):
    """
    State machine applying GatewayEvents.

    Lock order is always invoice -> payment -> refund record. The invoice
    lock is taken with bounded NOWAIT retries by the ledger; contention
    surfaces as LedgerLockTimeoutError (transient).
    """

    def __init__(self, config: PaymentsConfig | None = None):
        self.config = config or PaymentsConfig.from_settings()

    # =========================================================================
    # Entry Points
    # =========================================================================

    def apply(self, event: GatewayEvent) -> ReconcileResult:
        """
        Apply one normalized event.

        Args:
            event: Normalized gateway event

        Returns:
            ReconcileResult

        Raises:
            PaymentNotFoundError: No payment matches the event's references
            InvalidTransitionError: Illegal state change (park the event)
            LedgerIntegrityError: Ledger invariant would break (park)
            PaymentIntegrityError: Amount/currency mismatch (park)
            LedgerLockTimeoutError: Invoice lock contention (transient)
        """
        handler = EVENT_HANDLERS.get(event.event_type)
        if handler is None:
            raise PaymentIntegrityError(
                f"No handler for event type {event.event_type}",
                details={"event_type": str(event.event_type)},
            )

        target = self.resolve_payment(event)
        log_context = {
            "gateway": str(event.gateway),
            "event_id": event.event_id,
            "event_type": str(event.event_type),
            "payment_id": str(target.id),
            "invoice_id": str(target.invoice_id),
        }
        self.get_logger().info("Applying gateway event", extra=log_context)

        def locked(invoice: Invoice) -> ReconcileResult:
            payment = Payment.objects.select_for_update().get(pk=target.pk)
            result = handler(self, invoice, payment, event)
            for name in result.notifications:
                self._publish_on_commit(name, result.payment, invoice, result.refund)
            if result.capture:
                self._capture_on_commit(result.payment)
            return result

        result = ledger.run_in_invoice_lock(
            target.invoice_id,
            locked,
            attempts=self.config.ledger_lock_attempts,
        )

        self.get_logger().info(
            "Gateway event applied" if result.changed else "Gateway event was a no-op",
            extra={**log_context, "status": result.payment.status},
        )
        return result

    def apply_recorded(
        self,
        event: GatewayEvent,
        source: str = GatewayEventSource.SYNC,
    ) -> ReconcileResult:
        """
        Archive a non-webhook event, apply it and record the outcome.

        Used for synchronous gateway responses and manual confirmations so
        every applied event has an archive row. Integrity failures park the
        archive row and are re-raised.
        """
        record, _ = GatewayEventRecord.archive(event, source=source)
        record.mark_processing()
        record.save()
        try:
            result = self.apply(event)
        except PaymentIntegrityError as exc:
            record.mark_parked(exc.message)
            record.save()
            self.get_logger().error(
                "Gateway event parked for manual review",
                extra={
                    "event_id": event.event_id,
                    "event_type": str(event.event_type),
                    "error_code": exc.error_code,
                    "reason": exc.message,
                },
            )
            raise
        except Exception as exc:
            record.mark_failed(str(exc))
            record.save()
            raise
        record.mark_applied(payment=result.payment)
        record.save()
        return result

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve_payment(self, event: GatewayEvent) -> Payment:
        """
        Find the charge payment an event refers to.

        Tried in order: gateway transaction id, secondary gateway reference,
        merchant reference (payment id, payment number or refund id), then
        the gateway refund id of an existing refund record.

        Raises:
            PaymentNotFoundError: Nothing matches
        """
        charges = Payment.objects.filter(gateway=event.gateway).exclude(
            payment_type=PaymentType.REFUND
        )
        payment = None
        if event.gateway_transaction_id:
            payment = charges.filter(
                gateway_transaction_id=event.gateway_transaction_id
            ).first()
        if payment is None and event.gateway_payment_id:
            payment = charges.filter(gateway_payment_id=event.gateway_payment_id).first()
        if payment is None and event.merchant_reference:
            payment = self._by_reference(charges, event.merchant_reference)
        if payment is None and event.gateway_refund_id:
            refund = (
                RefundRecord.objects.select_related("refund_parent")
                .filter(gateway_refund_id=event.gateway_refund_id)
                .first()
            )
            payment = refund.refund_parent if refund else None

        if payment is None:
            raise PaymentNotFoundError(
                "No payment matches the gateway event",
                error_code="PAYMENT_NOT_FOUND",
                details={
                    "gateway": str(event.gateway),
                    "event_id": event.event_id,
                    "gateway_transaction_id": event.gateway_transaction_id,
                    "merchant_reference": event.merchant_reference,
                },
            )
        return payment

    @staticmethod
    def _by_reference(charges, reference: str) -> Payment | None:
        try:
            ref_uuid = uuid.UUID(str(reference))
        except ValueError:
            return charges.filter(payment_number=reference).first()
        payment = charges.filter(pk=ref_uuid).first()
        if payment is None:
            refund = RefundRecord.objects.filter(pk=ref_uuid).first()
            if refund is not None:
                payment = charges.filter(pk=refund.refund_parent_id).first()
        return payment

    def find_refund(self, payment: Payment, event: GatewayEvent) -> RefundRecord | None:
        """
        Find (and lock) the refund record a refund event refers to.

        Matches the gateway refund id, then our refund id echoed as the
        merchant reference, then the oldest requested refund of the same
        amount that has no gateway refund id yet.
        """
        refunds = RefundRecord.objects.select_for_update().filter(refund_parent=payment)
        if event.gateway_refund_id:
            refund = refunds.filter(gateway_refund_id=event.gateway_refund_id).first()
            if refund:
                return refund
        if event.merchant_reference:
            try:
                refund = refunds.filter(pk=uuid.UUID(str(event.merchant_reference))).first()
            except ValueError:
                refund = None
            if refund:
                return refund
        if event.amount is not None:
            return (
                refunds.filter(
                    status=RefundStatus.REQUESTED,
                    gateway_refund_id__isnull=True,
                    amount=event.amount,
                )
                .order_by("created_at")
                .first()
            )
        return None

    # =========================================================================
    # Notifications
    # =========================================================================

    @staticmethod
    def _publish_on_commit(
        name: str,
        payment: Payment,
        invoice: Invoice,
        refund: RefundRecord | None,
    ) -> None:
        payload = {
            "payment_id": str(payment.id),
            "payment_number": payment.payment_number,
            "invoice_id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
            "status": payment.status,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "invoice_status": invoice.status,
            "balance_due": str(invoice.balance_due),
        }
        if refund is not None:
            payload["refund_id"] = str(refund.id)
            payload["refund_amount"] = str(refund.amount)
        transaction.on_commit(lambda: publish_payment_event.delay(name, payload))

    def _capture_on_commit(self, payment: Payment) -> None:
        payment_id = str(payment.id)
        self.get_logger().info(
            "Scheduling capture of approved payment",
            extra={"payment_id": payment_id, "gateway": payment.gateway},
        )
        transaction.on_commit(lambda: capture_approved_payment.delay(payment_id))

    # =========================================================================
    # Checks
    # =========================================================================

    def _check_charge_amount(self, payment: Payment, event: GatewayEvent) -> None:
        """The gateway must report what we charged (amount plus surcharge)."""
        if event.currency and event.currency.upper() != payment.currency:
            raise PaymentIntegrityError(
                "Gateway reported a different currency",
                details={
                    "payment_id": str(payment.id),
                    "expected": payment.currency,
                    "reported": event.currency,
                },
            )
        if event.amount is None:
            return
        expected = self.config.quantize(
            payment.amount + payment.surcharge_amount, payment.currency
        )
        reported = self.config.quantize(event.amount, payment.currency)
        if reported != expected:
            raise PaymentIntegrityError(
                "Gateway reported a different amount",
                details={
                    "payment_id": str(payment.id),
                    "expected": str(expected),
                    "reported": str(reported),
                },
            )


# =============================================================================
# Charge Handlers
# =============================================================================


def _record_gateway_refs(payment: Payment, event: GatewayEvent) -> None:
    if event.gateway_transaction_id and not payment.gateway_transaction_id:
        payment.gateway_transaction_id = event.gateway_transaction_id
    if event.gateway_payment_id and not payment.gateway_payment_id:
        payment.gateway_payment_id = event.gateway_payment_id


@register_handler(GatewayEventType.CHARGE_PROCESSING)
def handle_charge_processing(
    reconciler: Reconciler,
    invoice: Invoice,
    payment: Payment,
    event: GatewayEvent,
) -> ReconcileResult:
    """
    pending -> processing.

    A processing event arriving after the payment moved on is stale and
    ignored. An approval that still needs capturing schedules the capture
    while the payment is processing.
    """
    if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        return ReconcileResult(payment=payment, changed=False)

    changed = payment.status == PaymentStatus.PENDING
    if changed:
        _transition(payment, "start_processing")
    _record_gateway_refs(payment, event)
    if changed and event.raw:
        payment.gateway_response = event.raw
    payment.save()
    return ReconcileResult(
        payment=payment,
        changed=changed,
        capture=event.requires_capture,
    )


@register_handler(GatewayEventType.CHARGE_SUCCEEDED)
def handle_charge_succeeded(
    reconciler: Reconciler,
    invoice: Invoice,
    payment: Payment,
    event: GatewayEvent,
) -> ReconcileResult:
    """
    Complete the payment and credit the invoice with the gross amount.

    Passes through processing when the payment is still pending.
    """
    if payment.status in SETTLED_STATUSES:
        return ReconcileResult(payment=payment, changed=False)

    reconciler._check_charge_amount(payment, event)

    if payment.status == PaymentStatus.PENDING:
        _transition(payment, "start_processing")
    _transition(payment, "complete")
    _record_gateway_refs(payment, event)
    if event.raw:
        payment.gateway_response = event.raw
    payment.save()

    ledger.credit_payment(invoice, payment)

    notifications = ["payment.completed"]
    if invoice.status == InvoiceStatus.PAID:
        notifications.append("invoice.paid")
    return ReconcileResult(payment=payment, notifications=notifications)


@register_handler(GatewayEventType.CHARGE_FAILED)
def handle_charge_failed(
    reconciler: Reconciler,
    invoice: Invoice,
    payment: Payment,
    event: GatewayEvent,
) -> ReconcileResult:
    """Fail the payment. The invoice is untouched."""
    if payment.status == PaymentStatus.FAILED:
        return ReconcileResult(payment=payment, changed=False)

    _transition(
        payment,
        "fail",
        code=event.failure_code or "card_declined",
        reason=event.failure_message,
    )
    _record_gateway_refs(payment, event)
    if event.raw:
        payment.gateway_response = event.raw
    payment.save()
    return ReconcileResult(payment=payment, notifications=["payment.failed"])


@register_handler(GatewayEventType.FEE_UPDATED)
def handle_fee_updated(
    reconciler: Reconciler,
    invoice: Invoice,
    payment: Payment,
    event: GatewayEvent,
) -> ReconcileResult:
    """
    Replace the provisional fee with the gateway's authoritative figure.

    The ledger credits gross amounts, so only net_amount changes.
    """
    if event.fee_amount is None:
        return ReconcileResult(payment=payment, changed=False)

    fee = reconciler.config.quantize(event.fee_amount, payment.currency)
    if fee == payment.fee_amount:
        return ReconcileResult(payment=payment, changed=False)

    payment.fee_amount = fee
    payment.set_metadata("fee_source", "gateway")
    payment.save()
    return ReconcileResult(payment=payment)


# =============================================================================
# Refund Handlers
# =============================================================================


@register_handler(GatewayEventType.REFUND_SUCCEEDED)
def handle_refund_succeeded(
    reconciler: Reconciler,
    invoice: Invoice,
    payment: Payment,
    event: GatewayEvent,
) -> ReconcileResult:
    """
    Finalize a refund.

    Completes (or creates, for refunds issued from the gateway dashboard)
    the refund record, writes the reversal payment row, debits the invoice
    and moves the payment to partially_refunded or refunded.
    """
    refund = reconciler.find_refund(payment, event)
    if refund is not None and refund.status == RefundStatus.COMPLETED:
        return ReconcileResult(payment=payment, changed=False, refund=refund)

    if not payment.is_refundable:
        raise InvalidTransitionError(
            f"Cannot refund payment in status '{payment.status}'",
            details={"payment_id": str(payment.id), "current_state": payment.status},
        )

    if refund is None:
        if event.amount is None:
            raise PaymentIntegrityError(
                "Refund event without an amount",
                details={"payment_id": str(payment.id), "event_id": event.event_id},
            )
        amount = reconciler.config.quantize(event.amount, payment.currency)
        if amount <= 0 or amount > payment.refundable_amount:
            raise PaymentIntegrityError(
                "Gateway refund exceeds the refundable amount",
                details={
                    "payment_id": str(payment.id),
                    "amount": str(amount),
                    "refundable_amount": str(payment.refundable_amount),
                },
            )
        refund = RefundRecord.objects.create(
            refund_parent=payment,
            amount=amount,
            currency=payment.currency,
            reason="Refund issued at the gateway",
        )
        reconciler.get_logger().warning(
            "Recorded refund initiated outside the payments core",
            extra={"payment_id": str(payment.id), "refund_id": str(refund.id)},
        )

    _transition(refund, "complete", gateway_refund_id=event.gateway_refund_id)

    reversal = Payment.objects.create(
        invoice=invoice,
        refund_parent=payment,
        customer_id=payment.customer_id,
        payment_type=PaymentType.REFUND,
        method=payment.method,
        currency=payment.currency,
        exchange_rate=payment.exchange_rate,
        amount=refund.amount,
        gateway=payment.gateway,
        gateway_payment_id=refund.gateway_refund_id,
        status=PaymentStatus.COMPLETED,
        processed_at=timezone.now(),
    )
    refund.reversal_payment = reversal
    refund.save()

    ledger.debit_refund(invoice, refund)

    if payment.refunded_amount + refund.amount >= payment.amount:
        _transition(payment, "refund_full", refund.amount)
    else:
        _transition(payment, "refund_partial", refund.amount)
    payment.save()

    return ReconcileResult(
        payment=payment,
        refund=refund,
        notifications=["payment.refunded"],
    )


@register_handler(GatewayEventType.REFUND_FAILED)
def handle_refund_failed(
    reconciler: Reconciler,
    invoice: Invoice,
    payment: Payment,
    event: GatewayEvent,
) -> ReconcileResult:
    """Fail the refund record. The ledger is untouched."""
    refund = reconciler.find_refund(payment, event)
    if refund is None:
        reconciler.get_logger().warning(
            "Refund failure for an unknown refund",
            extra={
                "payment_id": str(payment.id),
                "gateway_refund_id": event.gateway_refund_id,
            },
        )
        return ReconcileResult(payment=payment, changed=False)
    if refund.status == RefundStatus.FAILED:
        return ReconcileResult(payment=payment, changed=False, refund=refund)

    if event.gateway_refund_id and not refund.gateway_refund_id:
        refund.gateway_refund_id = event.gateway_refund_id
    _transition(refund, "fail", reason=event.failure_message or "Refund failed")
    refund.save()
    return ReconcileResult(
        payment=payment,
        refund=refund,
        notifications=["refund.failed"],
    )


__all__ = [
    "EVENT_HANDLERS",
    "ReconcileResult",
    "Reconciler",
    "register_handler",
]

