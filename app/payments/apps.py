"""
Payments app configuration.

This app is the payment core: gateway adapters, webhook ingestion, the
reconciler state machine, the invoice ledger and refunds.
"""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Configuration for the payments application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "Payments"

    def ready(self):
        # Connect signal receivers
        from payments import signals  # noqa: F401
