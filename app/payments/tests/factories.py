"""
Factory Boy factories for payment test data.

This module provides factories for creating test instances of payment models.
Factories generate realistic test data while allowing easy customization.

Usage:
    from payments.tests.factories import (
        GatewayEventFactory,
        InvoiceFactory,
        PaymentFactory,
        RefundRecordFactory,
    )

    # Create a sent $100 invoice
    invoice = InvoiceFactory()

    # Create a pending charge against it
    payment = PaymentFactory(invoice=invoice)

    # Create a payment in a specific state (initial assignment only)
    payment = PaymentFactory(status=PaymentStatus.PROCESSING)

    # Build a normalized gateway event for the reconciler
    event = GatewayEventFactory(payment=payment)
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import factory
from django.utils import timezone

from payments.models import (
    GatewayEventRecord,
    IdempotencyRecord,
    Invoice,
    Payment,
    RefundRecord,
)
from payments.state_machines import (
    GatewayEventType,
    GatewayName,
    InvoiceStatus,
    PaymentType,
)
from payments.types import GatewayEvent, hash_payload


class UserFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating User instances for payment tests.

    Portal users only authenticate API calls and appear as
    RefundRecord.requested_by.
    """

    class Meta:
        model = "auth.User"
        skip_postgeneration_save = True

    username = factory.Sequence(lambda n: f"operator{n}")
    email = factory.Sequence(lambda n: f"operator{n}@example.com")
    password = factory.PostGenerationMethodCall("set_password", "testpass123")
    is_active = True


class InvoiceFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating Invoice instances.

    Default creates a SENT invoice for $100 USD with nothing paid.

    Example:
        # Mobile money invoice
        invoice = InvoiceFactory(currency="TZS", total_amount=Decimal("50000"))

        # Draft invoice (not payable)
        invoice = InvoiceFactory(status=InvoiceStatus.DRAFT)
    """

    class Meta:
        model = Invoice
        skip_postgeneration_save = True

    customer_id = factory.LazyFunction(uuid.uuid4)
    currency = "USD"
    subtotal = Decimal("90.00")
    tax_amount = Decimal("10.00")
    total_amount = Decimal("100.00")
    status = InvoiceStatus.SENT
    due_date = factory.LazyFunction(lambda: (timezone.now() + timedelta(days=30)).date())
    metadata = factory.LazyFunction(dict)


class PaymentFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating Payment instances.

    Default creates a PENDING Stripe card payment for the full invoice
    amount.

    Note: Creating a payment in a settled status does not credit the
    invoice. Use the completed_payment fixture, which goes through the
    reconciler, when ledger consistency matters.
    """

    class Meta:
        model = Payment
        skip_postgeneration_save = True

    invoice = factory.SubFactory(InvoiceFactory)
    customer_id = factory.SelfAttribute("invoice.customer_id")
    currency = factory.SelfAttribute("invoice.currency")
    amount = factory.SelfAttribute("invoice.total_amount")
    payment_type = PaymentType.FULL
    method = "card"
    gateway = GatewayName.STRIPE
    client_request_id = factory.Sequence(lambda n: f"req-{n}")
    # Note: status is managed by FSM, default is PENDING
    metadata = factory.LazyFunction(dict)


class RefundRecordFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating RefundRecord instances.

    Default creates a REQUESTED refund of $40.
    """

    class Meta:
        model = RefundRecord
        skip_postgeneration_save = True

    refund_parent = factory.SubFactory(PaymentFactory)
    amount = Decimal("40.00")
    currency = factory.SelfAttribute("refund_parent.currency")
    reason = factory.Faker("sentence")
    # Note: status is managed by FSM, default is REQUESTED
    metadata = factory.LazyFunction(dict)


class IdempotencyRecordFactory(factory.django.DjangoModelFactory):
    """Factory for creating live IdempotencyRecord instances."""

    class Meta:
        model = IdempotencyRecord
        skip_postgeneration_save = True

    key = factory.Sequence(lambda n: f"charge/req-{n}")
    scope = "charge"
    outcome = factory.LazyFunction(dict)
    expires_at = factory.LazyFunction(lambda: timezone.now() + timedelta(days=60))


class GatewayEventFactory(factory.Factory):
    """
    Factory for normalized GatewayEvent instances.

    Pass payment= to point the event at an existing payment; the
    transaction id, amount, currency, gateway and merchant reference are
    derived from it.

    Example:
        event = GatewayEventFactory(
            payment=payment,
            event_type=GatewayEventType.CHARGE_FAILED,
            failure_code="insufficient_funds",
        )
    """

    class Meta:
        model = GatewayEvent

    class Params:
        payment = None

    event_id = factory.Sequence(lambda n: f"evt_test_{n}")
    event_type = GatewayEventType.CHARGE_SUCCEEDED
    gateway = factory.LazyAttribute(
        lambda o: GatewayName(o.payment.gateway) if o.payment else GatewayName.STRIPE
    )
    gateway_transaction_id = factory.LazyAttribute(
        lambda o: o.payment.gateway_transaction_id if o.payment else None
    )
    amount = factory.LazyAttribute(lambda o: o.payment.amount if o.payment else None)
    currency = factory.LazyAttribute(lambda o: o.payment.currency if o.payment else "USD")
    merchant_reference = factory.LazyAttribute(
        lambda o: str(o.payment.id) if o.payment else None
    )
    payload_hash = factory.LazyAttribute(lambda o: hash_payload(o.event_id))


class GatewayEventRecordFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating archived GatewayEventRecord instances.

    Default creates a RECEIVED Stripe charge.succeeded record.
    """

    class Meta:
        model = GatewayEventRecord
        skip_postgeneration_save = True

    gateway = GatewayName.STRIPE
    gateway_event_id = factory.Sequence(lambda n: f"evt_archived_{n}")
    event_type = GatewayEventType.CHARGE_SUCCEEDED
    gateway_transaction_id = factory.Sequence(lambda n: f"pi_archived_{n}")
    amount = Decimal("100.00")
    currency = "USD"
    payload = factory.LazyFunction(dict)
    payload_hash = factory.LazyAttribute(lambda o: hash_payload(o.gateway_event_id))
