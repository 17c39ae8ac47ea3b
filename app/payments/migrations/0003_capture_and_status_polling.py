"""
Track approved orders awaiting capture and poll pending mobile money charges.

- Adds GatewayEventRecord.requires_capture so replayed approvals still
  trigger the capture
- Schedules polling of gateways whose callbacks can be lost (every 10 minutes)
"""

from django.db import migrations, models

SCHEDULES = [
    {
        "name": "Poll Pending Gateway Payments",
        "task": "payments.tasks.poll_pending_payments",
        "every": 10,
        "period": "minutes",
        "description": (
            "Queries the gateway for processing payments whose callback has "
            "not arrived and applies the reported outcome."
        ),
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create the polling periodic task."""
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
    """Remove the polling periodic task on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[entry["name"] for entry in SCHEDULES],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("payments", "0002_add_maintenance_schedules"),
    ]

    operations = [
        migrations.AddField(
            model_name="gatewayeventrecord",
            name="requires_capture",
            field=models.BooleanField(
                default=False,
                help_text="Approved order still waiting for capture",
            ),
        ),
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
