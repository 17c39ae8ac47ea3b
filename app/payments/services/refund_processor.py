"""
Refund processor: returns money from a completed payment.

Validation, the gateway call and result handling all run under a
per-payment DistributedLock, so two refund requests for one payment are
serialized and can never over-refund together. The RefundRecord is written
(and its amount reserved) before the gateway is called; the gateway call
itself runs outside any database transaction.

Synchronous gateway results are fed to the Reconciler as GatewayEvents,
exactly like webhook deliveries. A refund the gateway only accepted stays
REQUESTED until its webhook (or a manual confirmation) arrives.

Usage:
    from payments.services import RefundProcessor

    outcome = RefundProcessor().refund(
        payment_id=payment.id,
        amount=Decimal("25.00"),
        reason="Damaged shipment",
        requested_by=request.user,
    )
    outcome.refund.status  # "completed"
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from core.services import BaseService, ServiceResult

from payments.adapters import IdempotencyKeyGenerator, call_with_retries, get_adapter
from payments.conf import PaymentsConfig
from payments.exceptions import (
    AmountExceedsRefundableError,
    GatewayError,
    GatewayUnavailableError,
    InvalidTransitionError,
    PaymentError,
    PaymentIntegrityError,
    PaymentNotFoundError,
    PaymentProcessingError,
    PaymentValidationError,
)
from payments.locks import DistributedLock
from payments.models import Payment, RefundRecord
from payments.money import ZERO, to_decimal
from payments.services.reconciler import Reconciler
from payments.state_machines import (
    GatewayEventSource,
    GatewayEventType,
    GatewayName,
    RefundStatus,
)
from payments.types import GatewayEvent, RefundRequest, SyncStatus, hash_payload

if TYPE_CHECKING:
    from payments.types import RefundResult


# =============================================================================
# Constants
# =============================================================================

# Distributed lock TTL for refund execution (seconds)
REFUND_LOCK_TTL = 120

# Lock acquisition timeout (seconds)
REFUND_LOCK_TIMEOUT = 10.0


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class RefundOutcome:
    """
    Result of RefundProcessor.refund.

    Attributes:
        refund: The refund record (reloaded after reconciliation)
        error: Gateway or integrity error the refund ended with, if any
    """

    refund: RefundRecord
    error: PaymentError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


# =============================================================================
# Refund Processor
# =============================================================================


class RefundProcessor(BaseService):
    """
    Issues refunds through the payment's gateway.

    A payment may be refunded several times; the sum of non-failed refunds
    never exceeds the payment amount.
    """

    def __init__(
        self,
        config: PaymentsConfig | None = None,
        reconciler: Reconciler | None = None,
    ):
        self.config = config or PaymentsConfig.from_settings()
        self.reconciler = reconciler or Reconciler(self.config)

    # =========================================================================
    # Refunds
    # =========================================================================

    def refund(
        self,
        payment_id: uuid.UUID | str,
        amount=None,
        reason: str = "",
        requested_by=None,
    ) -> RefundOutcome:
        """
        Refund a completed or partially refunded payment.

        Args:
            payment_id: Charge payment to refund
            amount: Refund amount in major units (remaining refundable
                amount when omitted)
            reason: Reason recorded on the refund
            requested_by: User requesting the refund

        Returns:
            RefundOutcome. A gateway failure is returned with outcome.error
            set, since the RefundRecord exists.

        Raises:
            PaymentNotFoundError: Unknown payment
            InvalidTransitionError: Payment is not refundable
            AmountExceedsRefundableError: Amount above what remains
            PaymentValidationError: Non-positive or malformed amount
            LockAcquisitionError: Another refund of this payment is running
        """
        log_context = {
            "payment_id": str(payment_id),
            "amount": str(amount) if amount is not None else None,
        }
        self.get_logger().info("Refund requested", extra=log_context)

        with DistributedLock(
            f"refund:payment:{payment_id}",
            ttl=REFUND_LOCK_TTL,
            timeout=REFUND_LOCK_TIMEOUT,
        ):
            refund = self._create_refund(payment_id, amount, reason, requested_by)
            log_context["refund_id"] = str(refund.id)
            return self._submit(refund, log_context)

    def retry(self, refund_id: uuid.UUID | str) -> RefundOutcome:
        """
        Resubmit a refund still in REQUESTED, with its original token.

        Used after the gateway was unreachable; the gateway recognizes the
        token if the first submission did reach it.

        Raises:
            PaymentNotFoundError: Unknown refund
            InvalidTransitionError: Refund is no longer REQUESTED
        """
        refund = self._get_refund(refund_id)
        with DistributedLock(
            f"refund:payment:{refund.refund_parent_id}",
            ttl=REFUND_LOCK_TTL,
            timeout=REFUND_LOCK_TIMEOUT,
        ):
            refund = self._get_refund(refund_id)
            if refund.status != RefundStatus.REQUESTED:
                raise InvalidTransitionError(
                    f"Cannot resubmit refund in status '{refund.status}'",
                    details={"refund_id": str(refund.id), "current_state": refund.status},
                )
            return self._submit(
                refund,
                {"payment_id": str(refund.refund_parent_id), "refund_id": str(refund.id)},
            )

    def confirm_manual_refund(
        self,
        refund_id: uuid.UUID | str,
        gateway_refund_id: str | None = None,
    ) -> ServiceResult[RefundRecord]:
        """
        Complete a refund an operator processed in the gateway dashboard.

        Goes through the Reconciler like any other refund.succeeded event,
        archived with source MANUAL.
        """
        try:
            refund = self._get_refund(refund_id)
        except PaymentNotFoundError as e:
            return ServiceResult.from_exception(e)

        if refund.status != RefundStatus.REQUESTED:
            return ServiceResult.failure(
                f"Refund is already {refund.status}",
                error_code="INVALID_STATE_TRANSITION",
            )

        payment = refund.refund_parent
        event = self._event(
            refund,
            payment,
            GatewayEventType.REFUND_SUCCEEDED,
            event_id=f"manual-{GatewayEventType.REFUND_SUCCEEDED}-{refund.id}",
            gateway_refund_id=gateway_refund_id,
        )
        try:
            self.reconciler.apply_recorded(event, source=GatewayEventSource.MANUAL)
        except PaymentError as e:
            return ServiceResult.from_exception(e)

        self.get_logger().info(
            "Manual refund confirmed",
            extra={
                "refund_id": str(refund.id),
                "payment_id": str(payment.id),
                "gateway_refund_id": gateway_refund_id,
            },
        )
        return ServiceResult.success(RefundRecord.objects.get(pk=refund.id))

    # =========================================================================
    # Creation
    # =========================================================================

    def _create_refund(self, payment_id, amount, reason: str, requested_by) -> RefundRecord:
        with self.atomic():
            payment = Payment.objects.select_for_update().filter(pk=payment_id).first()
            if payment is None or payment.is_reversal:
                raise PaymentNotFoundError(
                    f"Payment {payment_id} not found",
                    details={"payment_id": str(payment_id)},
                )
            if not payment.is_refundable:
                raise InvalidTransitionError(
                    f"Cannot refund payment in status '{payment.status}'",
                    details={"payment_id": str(payment.id), "current_state": payment.status},
                )
            if not payment.gateway_transaction_id:
                raise PaymentValidationError(
                    "Payment has no gateway transaction to refund",
                    details={"payment_id": str(payment.id)},
                )

            refundable = payment.refundable_amount
            amount = refundable if amount is None else self._parse_amount(amount, payment)
            if amount <= ZERO or amount > refundable:
                raise AmountExceedsRefundableError(
                    "Refund amount exceeds the refundable amount",
                    details={
                        "amount": str(amount),
                        "refundable_amount": str(refundable),
                    },
                )

            get_adapter(payment.gateway, self.config)
            refund = RefundRecord.objects.create(
                refund_parent=payment,
                amount=amount,
                currency=payment.currency,
                reason=reason or "",
                requested_by=requested_by,
            )

        self.get_logger().info(
            "Refund record created",
            extra={
                "refund_id": str(refund.id),
                "payment_id": str(payment.id),
                "amount": str(amount),
                "currency": refund.currency,
            },
        )
        return refund

    def _parse_amount(self, amount, payment: Payment) -> Decimal:
        try:
            value = to_decimal(amount)
        except (InvalidOperation, TypeError, ValueError) as e:
            raise PaymentValidationError(
                "Amount must be a decimal number",
                details={"field": "amount", "value": str(amount)},
            ) from e
        if not value.is_finite() or value <= ZERO:
            raise PaymentValidationError(
                "Amount must be positive",
                details={"field": "amount", "value": str(amount)},
            )
        if self.config.quantize(value, payment.currency) != value:
            raise PaymentValidationError(
                f"Amount has more decimal places than {payment.currency} allows",
                details={"amount": str(value)},
            )
        return value

    @staticmethod
    def _get_refund(refund_id) -> RefundRecord:
        refund = (
            RefundRecord.objects.select_related("refund_parent").filter(pk=refund_id).first()
        )
        if refund is None:
            raise PaymentNotFoundError(
                f"Refund {refund_id} not found",
                error_code="REFUND_NOT_FOUND",
                details={"refund_id": str(refund_id)},
            )
        return refund

    # =========================================================================
    # Gateway Submission
    # =========================================================================

    def _submit(self, refund: RefundRecord, log_context: dict) -> RefundOutcome:
        payment = refund.refund_parent
        adapter = get_adapter(payment.gateway, self.config)
        request = RefundRequest(
            refund_id=refund.id,
            gateway_transaction_id=payment.gateway_transaction_id,
            amount=refund.amount,
            currency=refund.currency,
            idempotency_token=IdempotencyKeyGenerator.generate("refund", refund.id),
            gateway_payment_id=payment.gateway_payment_id,
            reason=refund.reason,
        )

        try:
            result = call_with_retries(
                lambda: adapter.refund(request),
                attempts=self.config.gateway_max_retries,
                log_context={**log_context, "operation": "refund"},
            )
        except GatewayUnavailableError as exc:
            # Outcome unknown; the refund stays REQUESTED for a webhook or retry
            self.get_logger().error(
                "Gateway unavailable for refund",
                extra={**log_context, "error_code": exc.error_code},
            )
            return RefundOutcome(refund=refund, error=exc)
        except GatewayError as exc:
            self.get_logger().warning(
                "Gateway rejected refund",
                extra={**log_context, "error_code": exc.error_code},
            )
            event = self._event(
                refund,
                payment,
                GatewayEventType.REFUND_FAILED,
                failure_message=exc.message,
            )
            return self._reconcile(refund, event, error=exc)

        return self._handle_result(refund, payment, result, log_context)

    def _handle_result(
        self,
        refund: RefundRecord,
        payment: Payment,
        result: RefundResult,
        log_context: dict,
    ) -> RefundOutcome:
        if result.sync_status == SyncStatus.SUCCEEDED:
            event = self._event(
                refund,
                payment,
                GatewayEventType.REFUND_SUCCEEDED,
                gateway_refund_id=result.gateway_refund_id,
                raw=result.raw,
            )
            return self._reconcile(refund, event)

        if result.sync_status == SyncStatus.FAILED:
            message = result.failure_message or "Refund failed at the gateway"
            event = self._event(
                refund,
                payment,
                GatewayEventType.REFUND_FAILED,
                gateway_refund_id=result.gateway_refund_id,
                failure_message=message,
                raw=result.raw,
            )
            error = PaymentProcessingError(
                message,
                error_code="REFUND_FAILED",
                details={"refund_id": str(refund.id)},
            )
            return self._reconcile(refund, event, error=error)

        if result.gateway_refund_id:
            with self.atomic():
                locked = RefundRecord.objects.select_for_update().get(pk=refund.id)
                if not locked.gateway_refund_id:
                    locked.gateway_refund_id = result.gateway_refund_id
                    locked.save(update_fields=["gateway_refund_id", "updated_at"])
        self.get_logger().info(
            "Refund accepted, awaiting gateway confirmation",
            extra={**log_context, "gateway_refund_id": result.gateway_refund_id},
        )
        return RefundOutcome(refund=RefundRecord.objects.get(pk=refund.id))

    @staticmethod
    def _event(
        refund: RefundRecord,
        payment: Payment,
        event_type: str,
        event_id: str | None = None,
        gateway_refund_id: str | None = None,
        failure_message: str | None = None,
        raw: dict | None = None,
    ) -> GatewayEvent:
        raw = raw or {}
        return GatewayEvent(
            event_id=event_id or f"sync-{event_type}-{refund.id}",
            event_type=GatewayEventType(event_type),
            gateway=GatewayName(payment.gateway),
            gateway_transaction_id=payment.gateway_transaction_id,
            amount=refund.amount,
            currency=refund.currency,
            payload_hash=hash_payload(json.dumps(raw, sort_keys=True, default=str)),
            gateway_refund_id=gateway_refund_id,
            merchant_reference=str(refund.id),
            failure_message=failure_message,
            raw=raw,
        )

    def _reconcile(
        self,
        refund: RefundRecord,
        event: GatewayEvent,
        error: PaymentError | None = None,
    ) -> RefundOutcome:
        try:
            self.reconciler.apply_recorded(event)
        except PaymentIntegrityError as exc:
            error = exc
        return RefundOutcome(refund=RefundRecord.objects.get(pk=refund.id), error=error)


__all__ = [
    "RefundOutcome",
    "RefundProcessor",
]
