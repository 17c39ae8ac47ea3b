"""
Add celery-beat schedules for the payments maintenance tasks.

Creates periodic tasks for:
- Purging expired idempotency records (daily)
- Auditing invoice balances against the ledger journal (hourly)
- Resetting gateway events stuck in processing (every 15 minutes)
"""

from django.db import migrations

SCHEDULES = [
    {
        "name": "Purge Expired Idempotency Records",
        "task": "payments.tasks.purge_expired_idempotency_records",
        "every": 1,
        "period": "days",
        "description": "Deletes idempotency records past the retention window.",
    },
    {
        "name": "Audit Invoice Ledgers",
        "task": "payments.tasks.audit_invoice_ledgers",
        "every": 1,
        "period": "hours",
        "description": (
            "Compares invoice balances with the ledger journal and logs "
            "mismatches. Nothing is corrected automatically."
        ),
    },
    {
        "name": "Cleanup Stuck Gateway Events",
        "task": "payments.tasks.cleanup_stuck_gateway_events",
        "every": 15,
        "period": "minutes",
        "description": "Resets gateway events stuck in processing to failed.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create the periodic tasks for payments maintenance."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for entry in SCHEDULES:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=entry["every"],
            period=entry["period"],
        )
        PeriodicTask.objects.get_or_create(
            name=entry["name"],
            defaults={
                "task": entry["task"],
                "interval": schedule,
                "enabled": True,
                "description": entry["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[entry["name"] for entry in SCHEDULES],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("payments", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
