"""
URL configuration for the payments core.

URL Structure:
    /                                   - ReDoc API documentation
    /admin/                             - Django admin (parked events, manual refunds)
    /health/                            - Health check endpoint (load balancers)
    /schema/                            - OpenAPI schema (YAML)
    /api/v1/payments/                   - Charge an invoice (POST)
    /api/v1/payments/{id}/              - Payment status (GET)
    /api/v1/payments/{id}/refunds/      - Refund a payment (POST)
    /api/v1/webhooks/{gateway}/         - Gateway callbacks (POST, signed)
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
api_v1_patterns = [
    path("payments/", include("payments.urls")),
    path("webhooks/", include("payments.webhooks.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Payments Admin"
admin.site.site_title = "Payments Admin Portal"
admin.site.index_title = "Invoices, payments and gateway events"
