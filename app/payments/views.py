"""
DRF views for the payments API.

This module provides API views for:
- Charging an invoice
- Reading a payment
- Refunding a payment

Related files:
    - services/: PaymentOrchestrator, RefundProcessor
    - serializers.py: Request/response serializers
    - urls.py: URL routing
    - webhooks/views.py: Gateway callbacks

Endpoints:
    POST /api/v1/payments/ - Charge an invoice
    GET /api/v1/payments/{id}/ - Payment status
    POST /api/v1/payments/{id}/refunds/ - Refund a payment

Security:
    - All endpoints require authentication (portal JWT)

Charge response codes:
    201: New payment
    200: Idempotent replay of an earlier request
    402: Declined (body carries payment_id)
    503: Gateway unavailable
    400: Validation failure
    404: Unknown invoice or gateway
    409: Idempotency key reuse or integrity conflict
"""

from __future__ import annotations

import logging

from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import BaseApplicationError
from payments.serializers import (
    ChargeRequestSerializer,
    ChargeResponseSerializer,
    PaymentSerializer,
    RefundRecordSerializer,
    RefundRequestSerializer,
)
from payments.services import PaymentOrchestrator, RefundProcessor

logger = logging.getLogger(__name__)


def error_response(error: BaseApplicationError, **extra) -> Response:
    """Render a domain error with its own HTTP status."""
    return Response({**error.to_dict(), **extra}, status=error.status_code)


class PaymentCreateView(APIView):
    """
    Charge an invoice.

    POST /api/v1/payments/

    Request body:
        {
            "invoice_id": "uuid",
            "amount": "100.00",
            "currency": "USD",
            "gateway": "stripe",
            "client_request_id": "portal-7f3a",
            "payment_method": "pm_card_visa"
        }
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Charge an invoice",
        description=(
            "Charges an invoice through a gateway. Repeating a request with the "
            "same client_request_id returns the original payment (200) without "
            "contacting the gateway again."
        ),
        tags=["Payments"],
        request=ChargeRequestSerializer,
        responses={
            201: ChargeResponseSerializer,
            200: OpenApiResponse(ChargeResponseSerializer, description="Idempotent replay"),
            400: OpenApiResponse(description="Validation failure"),
            402: OpenApiResponse(description="Declined; body includes payment_id"),
            404: OpenApiResponse(description="Unknown invoice or gateway"),
            409: OpenApiResponse(description="Idempotency key reused or integrity conflict"),
            503: OpenApiResponse(description="Gateway unavailable"),
        },
    )
    def post(self, request):
        serializer = ChargeRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            outcome = PaymentOrchestrator().charge(
                invoice_id=data["invoice_id"],
                amount=data["amount"],
                currency=data["currency"],
                client_request_id=data["client_request_id"],
                gateway=data.get("gateway"),
                payment_method=data.get("payment_method"),
                phone_number=data.get("phone_number"),
                description=data.get("description"),
            )
        except BaseApplicationError as e:
            logger.info(
                "Charge rejected",
                extra={
                    "invoice_id": str(data["invoice_id"]),
                    "client_request_id": data["client_request_id"],
                    "error_code": e.error_code,
                },
            )
            return error_response(e)

        payment_data = ChargeResponseSerializer(
            outcome.payment,
            context={"redirect_url": outcome.redirect_url, "replayed": outcome.replayed},
        ).data

        if outcome.error is not None:
            return error_response(
                outcome.error,
                payment_id=str(outcome.payment.id),
                status=outcome.payment.status,
                payment=payment_data,
            )
        if outcome.replayed:
            return Response(payment_data, status=status.HTTP_200_OK)
        return Response(payment_data, status=status.HTTP_201_CREATED)


class PaymentDetailView(APIView):
    """
    Read a payment.

    GET /api/v1/payments/{id}/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Get payment status",
        tags=["Payments"],
        responses={
            200: PaymentSerializer,
            404: OpenApiResponse(description="Payment not found"),
        },
    )
    def get(self, request, payment_id):
        try:
            payment = PaymentOrchestrator.get_payment(payment_id)
        except BaseApplicationError as e:
            return error_response(e)
        return Response(PaymentSerializer(payment).data)


class RefundCreateView(APIView):
    """
    Refund a payment.

    POST /api/v1/payments/{id}/refunds/

    Request body:
        {"amount": "40.00", "reason": "Damaged shipment"}
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Refund a payment",
        description=(
            "Refunds all or part of a completed payment. The sum of refunds "
            "never exceeds the payment amount."
        ),
        tags=["Payments"],
        request=RefundRequestSerializer,
        responses={
            201: RefundRecordSerializer,
            400: OpenApiResponse(description="Validation failure or amount too large"),
            404: OpenApiResponse(description="Payment not found"),
            409: OpenApiResponse(description="Payment not refundable or refund in progress"),
            503: OpenApiResponse(description="Gateway unavailable; refund stays requested"),
        },
    )
    def post(self, request, payment_id):
        serializer = RefundRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            outcome = RefundProcessor().refund(
                payment_id=payment_id,
                amount=data.get("amount"),
                reason=data.get("reason", ""),
                requested_by=request.user,
            )
        except BaseApplicationError as e:
            logger.info(
                "Refund rejected",
                extra={"payment_id": str(payment_id), "error_code": e.error_code},
            )
            return error_response(e)

        refund_data = RefundRecordSerializer(outcome.refund).data
        if outcome.error is not None:
            return error_response(
                outcome.error,
                refund_id=str(outcome.refund.id),
                refund=refund_data,
            )
        return Response(refund_data, status=status.HTTP_201_CREATED)
