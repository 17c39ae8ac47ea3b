"""
Payment orchestrator: the single entry point for charging an invoice.

A charge runs in four steps:
    1. Replay check against the idempotency store (client_request_id)
    2. Validation (invoice payable, currency, balance, gateway rules)
    3. Payment row + idempotency record written in one transaction
    4. Gateway call outside any transaction, with bounded retries; the
       synchronous result is fed to the Reconciler as a GatewayEvent

Whatever happens after step 3, a repeated request with the same
client_request_id returns the same Payment and never reaches the gateway.

Payments left processing are settled later by a webhook, by capture()
once a PayPal buyer approves, or by refresh_status() on gateways with a
status query.

Usage:
    from payments.services import PaymentOrchestrator

    outcome = PaymentOrchestrator().charge(
        invoice_id=invoice.id,
        amount=Decimal("100.00"),
        currency="USD",
        client_request_id="req-1",
        gateway="stripe",
        payment_method="pm_card_visa",
    )
    outcome.payment.status  # "completed"
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from django.utils import timezone

from core.services import BaseService

from payments.adapters import IdempotencyKeyGenerator, call_with_retries, get_adapter
from payments.conf import PaymentsConfig
from payments.exceptions import (
    AmountExceedsBalanceError,
    CardDeclinedError,
    ChargeAlreadySubmittedError,
    GatewayError,
    GatewayUnavailableError,
    IdempotencyKeyReusedError,
    InsufficientFundsError,
    InvoiceNotPayableError,
    PaymentError,
    PaymentIntegrityError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payments.models import Invoice, Payment
from payments.money import ZERO, to_decimal
from payments.services.idempotency import IdempotencyStore
from payments.services.reconciler import Reconciler
from payments.state_machines import (
    GatewayEventType,
    GatewayName,
    PaymentStatus,
    PaymentType,
)
from payments.types import ChargeRequest, GatewayEvent, SyncStatus, hash_payload

if TYPE_CHECKING:
    from payments.adapters import GatewayAdapter
    from payments.types import ChargeResult


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class ChargeOutcome:
    """
    Result of PaymentOrchestrator.charge.

    Attributes:
        payment: The payment (reloaded after reconciliation)
        error: Gateway or integrity error the charge ended with, if any
        replayed: True when the request was answered from the idempotency store
        redirect_url: Approval URL for wallet flows
    """

    payment: Payment
    error: PaymentError | None = None
    replayed: bool = False
    redirect_url: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


# =============================================================================
# Payment Orchestrator
# =============================================================================


class PaymentOrchestrator(BaseService):
    """
    Coordinates validation, the idempotency store, the gateway adapter and
    the reconciler for charges.

    Collaborators are injected so tests can substitute them:
        config: PaymentsConfig (defaults to settings.PAYMENTS)
        store: IdempotencyStore
        reconciler: Reconciler
    """

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
    # Charges
    # =========================================================================

    def charge(
        self,
        invoice_id: uuid.UUID | str,
        amount,
        currency: str,
        client_request_id: str,
        gateway: str | None = None,
        payment_method: str | None = None,
        phone_number: str | None = None,
        description: str | None = None,
    ) -> ChargeOutcome:
        """
        Charge an invoice through a gateway.

        Args:
            invoice_id: Invoice being paid
            amount: Amount in major units (Decimal or string)
            currency: ISO 4217 code; must match the invoice
            client_request_id: Caller idempotency key
            gateway: Gateway name (default gateway when omitted)
            payment_method: Gateway payment method reference (cards)
            phone_number: Mobile money phone number
            description: Statement description

        Returns:
            ChargeOutcome. A declined or failed charge is returned with
            outcome.error set, not raised, because the Payment exists.

        Raises:
            IdempotencyKeyReusedError: Key reused for a different request
            PaymentNotFoundError: Invoice does not exist
            GatewayNotAvailableError: Unknown or disabled gateway
            InvoiceNotPayableError / AmountExceedsBalanceError /
            PaymentValidationError / GatewayInvalidRequestError: Rejected
                before any Payment row is written
        """
        if not client_request_id:
            raise PaymentValidationError(
                "client_request_id is required",
                details={"field": "client_request_id"},
            )

        gateway_name = (gateway or self.config.default_gateway).lower()
        currency = (currency or "").upper()
        amount = self._parse_amount(amount)

        key = IdempotencyStore.charge_key(client_request_id)
        fingerprint = IdempotencyStore.fingerprint(
            invoice_id=invoice_id,
            amount=self.config.quantize(amount, currency) if currency else amount,
            currency=currency,
            gateway=gateway_name,
        )

        log_context = {
            "invoice_id": str(invoice_id),
            "client_request_id": client_request_id,
            "gateway": gateway_name,
            "amount": str(amount),
            "currency": currency,
        }

        existing = self.store.get(key)
        if existing is not None:
            return self._replay(existing, fingerprint, log_context)

        self.get_logger().info("Charge requested", extra=log_context)

        invoice, adapter, request, surcharge = self._validate(
            invoice_id,
            amount,
            currency,
            gateway_name,
            client_request_id,
            payment_method=payment_method,
            phone_number=phone_number,
            description=description,
        )

        with self.atomic():
            record, created = self.store.claim(
                key,
                IdempotencyStore.SCOPE_CHARGE,
                outcome={"payment_id": str(request.payment_id)},
                fingerprint=fingerprint,
            )
            if created:
                payment = self._create_payment(
                    invoice, adapter, request, surcharge, client_request_id
                )

        if not created:
            # Lost the race to a concurrent request with the same key
            return self._replay(record, fingerprint, log_context)

        log_context["payment_id"] = str(payment.id)

        if not self._mark_submitted(payment.id):
            self.get_logger().info(
                "Payment cancelled before submission",
                extra=log_context,
            )
            return ChargeOutcome(payment=Payment.objects.get(pk=payment.id))

        return self._submit(payment, adapter, request, log_context)

    def cancel_charge(self, payment_id: uuid.UUID | str, reason: str | None = None) -> Payment:
        """
        Cancel a charge that has not reached the gateway yet.

        Raises:
            PaymentNotFoundError: Unknown payment
            ChargeAlreadySubmittedError: The gateway call already started
        """
        with self.atomic():
            payment = Payment.objects.select_for_update().filter(pk=payment_id).first()
            if payment is None:
                raise PaymentNotFoundError(
                    f"Payment {payment_id} not found",
                    details={"payment_id": str(payment_id)},
                )
            if payment.status != PaymentStatus.PENDING or payment.submitted_at is not None:
                raise ChargeAlreadySubmittedError(
                    "Charge was already submitted to the gateway; refund it instead",
                    details={
                        "payment_id": str(payment.id),
                        "status": payment.status,
                    },
                )
            payment.fail(code="cancelled", reason=reason or "Cancelled before submission")
            payment.save()

        self.get_logger().info(
            "Charge cancelled",
            extra={"payment_id": str(payment.id), "invoice_id": str(payment.invoice_id)},
        )
        return payment

    @staticmethod
    def get_payment(payment_id: uuid.UUID | str) -> Payment:
        """
        Look up a payment by id.

        Raises:
            PaymentNotFoundError: Unknown payment
        """
        payment = (
            Payment.objects.select_related("invoice").filter(pk=payment_id).first()
        )
        if payment is None:
            raise PaymentNotFoundError(
                f"Payment {payment_id} not found",
                details={"payment_id": str(payment_id)},
            )
        return payment

    # =========================================================================
    # Settlement Follow-ups
    # =========================================================================

    def capture(self, payment_id: uuid.UUID | str) -> ChargeOutcome:
        """
        Capture a processing payment whose buyer approved the charge.

        The PayPal-Request-Id style token is derived from the payment, so
        repeated captures (webhook redelivery, task retry) reach the gateway
        as the same request.

        Raises:
            PaymentNotFoundError: Unknown payment
            GatewayUnavailableError: Outcome unknown; the payment stays
                processing and the capture can be retried
        """
        payment = self.get_payment(payment_id)
        log_context = {
            "payment_id": str(payment.id),
            "invoice_id": str(payment.invoice_id),
            "gateway": payment.gateway,
            "gateway_transaction_id": payment.gateway_transaction_id,
        }
        adapter = get_adapter(payment.gateway, self.config)
        if (
            payment.status != PaymentStatus.PROCESSING
            or not payment.gateway_transaction_id
            or not adapter.supports_capture
        ):
            self.get_logger().info(
                "Capture skipped",
                extra={**log_context, "status": payment.status},
            )
            return ChargeOutcome(payment=payment)

        token = IdempotencyKeyGenerator.generate("capture", payment.id)
        try:
            result = call_with_retries(
                lambda: adapter.capture(payment.gateway_transaction_id, token),
                attempts=self.config.gateway_max_retries,
                log_context={**log_context, "operation": "capture"},
            )
        except GatewayUnavailableError:
            self.get_logger().error("Capture outcome unknown", extra=log_context)
            raise
        except GatewayError as exc:
            self.get_logger().warning(
                "Capture rejected",
                extra={**log_context, "error_code": exc.error_code},
            )
            event = self._sync_event(
                payment,
                GatewayEventType.CHARGE_FAILED,
                failure_code=exc.failure_code,
                failure_message=exc.message,
                prefix="capture",
            )
            return self._reconcile(payment, event, error=exc)

        event, error = self._event_for_result(
            payment, payment.amount + payment.surcharge_amount, result, prefix="capture"
        )
        return self._reconcile(payment, event, error=error)

    def refresh_status(self, payment_id: uuid.UUID | str) -> ChargeOutcome:
        """
        Query the gateway for a processing payment whose callback is missing.

        A still-pending answer changes nothing. Settled answers are applied
        through the Reconciler like any synchronous result.

        Raises:
            PaymentNotFoundError: Unknown payment
            GatewayError: The status query itself failed
        """
        payment = self.get_payment(payment_id)
        adapter = get_adapter(payment.gateway, self.config)
        reference = payment.gateway_payment_id or payment.gateway_transaction_id
        if (
            payment.status != PaymentStatus.PROCESSING
            or not reference
            or not adapter.supports_status_query
        ):
            return ChargeOutcome(payment=payment)

        result = call_with_retries(
            lambda: adapter.query_charge(reference),
            attempts=self.config.gateway_max_retries,
            log_context={
                "operation": "query_charge",
                "payment_id": str(payment.id),
                "gateway": payment.gateway,
            },
        )
        if result.sync_status == SyncStatus.PENDING:
            return ChargeOutcome(payment=payment)

        event, error = self._event_for_result(
            payment, payment.amount + payment.surcharge_amount, result, prefix="query"
        )
        self.get_logger().info(
            "Gateway status query settled payment",
            extra={
                "payment_id": str(payment.id),
                "gateway": payment.gateway,
                "sync_status": result.sync_status.value,
            },
        )
        return self._reconcile(payment, event, error=error)

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def _parse_amount(amount) -> Decimal:
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
        return value

    def _validate(
        self,
        invoice_id,
        amount: Decimal,
        currency: str,
        gateway_name: str,
        client_request_id: str,
        **fields,
    ) -> tuple[Invoice, GatewayAdapter, ChargeRequest, Decimal]:
        """Run every check that must pass before a Payment row exists."""
        invoice = Invoice.objects.filter(pk=invoice_id).first()
        if invoice is None:
            raise PaymentNotFoundError(
                f"Invoice {invoice_id} not found",
                error_code="INVOICE_NOT_FOUND",
                details={"invoice_id": str(invoice_id)},
            )
        if not invoice.is_payable:
            raise InvoiceNotPayableError(
                f"Invoice {invoice.invoice_number} is not payable",
                details={"invoice_id": str(invoice.id), "status": invoice.status},
            )
        if currency != invoice.currency:
            raise PaymentValidationError(
                "Currency does not match the invoice",
                error_code="CURRENCY_MISMATCH",
                details={"currency": currency, "invoice_currency": invoice.currency},
            )
        if self.config.quantize(amount, currency) != amount:
            raise PaymentValidationError(
                f"Amount has more decimal places than {currency} allows",
                details={
                    "amount": str(amount),
                    "decimals": self.config.decimals_for(currency),
                },
            )
        if amount > invoice.balance_due:
            raise AmountExceedsBalanceError(
                "Amount exceeds the invoice balance due",
                details={
                    "amount": str(amount),
                    "balance_due": str(invoice.balance_due),
                },
            )

        adapter = get_adapter(gateway_name, self.config)
        surcharge = self._surcharge(adapter, amount, currency)
        request = ChargeRequest(
            payment_id=uuid.uuid4(),
            invoice_id=invoice.id,
            amount=amount + surcharge,
            currency=currency,
            idempotency_token=IdempotencyKeyGenerator.generate(
                "charge", f"{invoice.id}:{client_request_id}"
            ),
            customer_id=invoice.customer_id,
            payment_method=fields.get("payment_method"),
            phone_number=fields.get("phone_number"),
            description=fields.get("description") or f"Invoice {invoice.invoice_number}",
            metadata={"invoice_number": invoice.invoice_number},
        )
        adapter.validate_charge(request)
        return invoice, adapter, request, surcharge

    def _surcharge(self, adapter: GatewayAdapter, amount: Decimal, currency: str) -> Decimal:
        if not self.config.charge_customer_fees:
            return ZERO
        return adapter.calculate_fee(amount, currency)

    # =========================================================================
    # Persistence
    # =========================================================================

    def _create_payment(
        self,
        invoice: Invoice,
        adapter: GatewayAdapter,
        request: ChargeRequest,
        surcharge: Decimal,
        client_request_id: str,
    ) -> Payment:
        amount = request.amount - surcharge
        payment = Payment.objects.create(
            id=request.payment_id,
            invoice=invoice,
            customer_id=invoice.customer_id,
            client_request_id=client_request_id,
            payment_type=(
                PaymentType.FULL if amount == invoice.balance_due else PaymentType.PARTIAL
            ),
            method=adapter.method,
            currency=request.currency,
            exchange_rate=invoice.exchange_rate,
            amount=amount,
            fee_amount=adapter.calculate_fee(request.amount, request.currency),
            surcharge_amount=surcharge,
            gateway=adapter.name,
        )
        self.get_logger().info(
            "Payment created",
            extra={
                "payment_id": str(payment.id),
                "payment_number": payment.payment_number,
                "invoice_id": str(invoice.id),
                "gateway": adapter.name,
                "amount": str(payment.amount),
                "surcharge_amount": str(surcharge),
            },
        )
        return payment

    def _mark_submitted(self, payment_id) -> bool:
        """Stamp submitted_at unless the payment was cancelled meanwhile."""
        with self.atomic():
            payment = Payment.objects.select_for_update().get(pk=payment_id)
            if payment.status != PaymentStatus.PENDING:
                return False
            payment.submitted_at = timezone.now()
            payment.save(update_fields=["submitted_at", "updated_at"])
        return True

    # =========================================================================
    # Gateway Submission
    # =========================================================================

    def _submit(
        self,
        payment: Payment,
        adapter: GatewayAdapter,
        request: ChargeRequest,
        log_context: dict,
    ) -> ChargeOutcome:
        try:
            result = call_with_retries(
                lambda: adapter.charge(request),
                attempts=self.config.gateway_max_retries,
                log_context={**log_context, "operation": "charge"},
            )
        except GatewayUnavailableError as exc:
            # Outcome unknown: the gateway may have charged. The payment
            # stays processing until a webhook or status query settles it.
            self.get_logger().error(
                "Gateway charge outcome unknown, awaiting gateway confirmation",
                extra={**log_context, "error_code": exc.error_code},
            )
            event = self._sync_event(payment, GatewayEventType.CHARGE_PROCESSING)
            return self._reconcile(payment, event, error=exc)
        except GatewayError as exc:
            self.get_logger().warning(
                "Gateway charge failed",
                extra={
                    **log_context,
                    "error_code": exc.error_code,
                    "failure_code": exc.failure_code,
                },
            )
            event = self._sync_event(
                payment,
                GatewayEventType.CHARGE_FAILED,
                failure_code=exc.failure_code,
                failure_message=exc.message,
            )
            return self._reconcile(payment, event, error=exc)

        event, error = self._event_for_result(payment, request.amount, result)
        outcome = self._reconcile(payment, event, error=error)
        outcome.redirect_url = result.redirect_url
        return outcome

    def _event_for_result(
        self,
        payment: Payment,
        amount: Decimal,
        result: ChargeResult,
        prefix: str = "sync",
    ) -> tuple[GatewayEvent, PaymentError | None]:
        """Translate a synchronous ChargeResult into a GatewayEvent."""
        if result.sync_status == SyncStatus.SUCCEEDED:
            event = self._sync_event(
                payment,
                GatewayEventType.CHARGE_SUCCEEDED,
                result=result,
                amount=amount,
                prefix=prefix,
            )
            return event, None

        if result.sync_status == SyncStatus.FAILED:
            failure_code = result.failure_code or "card_declined"
            message = result.failure_message or "Payment was declined"
            error_class = (
                InsufficientFundsError
                if failure_code == "insufficient_funds"
                else CardDeclinedError
            )
            error = error_class(
                message,
                gateway=payment.gateway,
                failure_code=failure_code,
            )
            event = self._sync_event(
                payment,
                GatewayEventType.CHARGE_FAILED,
                result=result,
                failure_code=failure_code,
                failure_message=message,
                prefix=prefix,
            )
            return event, error

        event = self._sync_event(
            payment, GatewayEventType.CHARGE_PROCESSING, result=result, prefix=prefix
        )
        return event, None

    @staticmethod
    def _sync_event(
        payment: Payment,
        event_type: str,
        result: ChargeResult | None = None,
        amount: Decimal | None = None,
        failure_code: str | None = None,
        failure_message: str | None = None,
        prefix: str = "sync",
    ) -> GatewayEvent:
        raw = result.raw if result is not None else {}
        return GatewayEvent(
            event_id=f"{prefix}-{event_type}-{payment.id}",
            event_type=GatewayEventType(event_type),
            gateway=GatewayName(payment.gateway),
            gateway_transaction_id=result.gateway_transaction_id if result else None,
            amount=amount,
            currency=payment.currency,
            payload_hash=hash_payload(json.dumps(raw, sort_keys=True, default=str)),
            gateway_payment_id=result.gateway_payment_id if result else None,
            merchant_reference=str(payment.id),
            failure_code=failure_code,
            failure_message=failure_message,
            raw=raw,
        )

    def _reconcile(
        self,
        payment: Payment,
        event: GatewayEvent,
        error: PaymentError | None = None,
    ) -> ChargeOutcome:
        try:
            self.reconciler.apply_recorded(event)
        except PaymentIntegrityError as exc:
            # The archive row is parked; surface the conflict to the caller
            error = exc
        return ChargeOutcome(payment=Payment.objects.get(pk=payment.id), error=error)

    # =========================================================================
    # Replays
    # =========================================================================

    def _replay(self, record, fingerprint: str, log_context: dict) -> ChargeOutcome:
        if record.request_fingerprint and record.request_fingerprint != fingerprint:
            self.get_logger().warning(
                "Idempotency key reused for a different charge",
                extra=log_context,
            )
            raise IdempotencyKeyReusedError(
                "client_request_id was already used for a different charge",
                details={"client_request_id": log_context["client_request_id"]},
            )

        payment = Payment.objects.get(pk=record.outcome["payment_id"])
        self.get_logger().info(
            "Charge replayed from idempotency store",
            extra={**log_context, "payment_id": str(payment.id), "status": payment.status},
        )
        return ChargeOutcome(payment=payment, replayed=True)


__all__ = [
    "ChargeOutcome",
    "PaymentOrchestrator",
]
