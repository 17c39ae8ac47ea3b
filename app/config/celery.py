"""
Celery configuration for the payments core.

Celery runs the work that must never block a request or a ledger lock:
- Post-commit payment notifications (payments.tasks.publish_payment_event)
- Periodic idempotency record purging
- Periodic invoice ledger audits

Redis is used as both the message broker and result backend. Periodic
schedules live in the database (django-celery-beat) and are created by
payments migrations.

Usage:
    from payments.tasks import publish_payment_event

    transaction.on_commit(
        lambda: publish_payment_event.delay("payment.completed", payload)
    )
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
