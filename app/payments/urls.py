"""
URL configuration for the payments app.

Routes:
    - POST / - Charge an invoice
    - GET /<payment_id>/ - Payment status
    - POST /<payment_id>/refunds/ - Refund a payment

All routes are prefixed with /api/v1/payments/ when included in the main URLconf.
Gateway callbacks live in payments.webhooks.urls.
"""

from django.urls import path

from payments.views import PaymentCreateView, PaymentDetailView, RefundCreateView

app_name = "payments"

urlpatterns = [
    path("", PaymentCreateView.as_view(), name="payment_create"),
    path("<uuid:payment_id>/", PaymentDetailView.as_view(), name="payment_detail"),
    path(
        "<uuid:payment_id>/refunds/",
        RefundCreateView.as_view(),
        name="refund_create",
    ),
]
