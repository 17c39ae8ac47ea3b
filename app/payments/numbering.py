"""
Human-readable sequential document numbers.

Invoices and payments carry numbers like INV-2026-000042 and
PAY-2026-000137: a prefix, the calendar year and a six-digit sequence that
restarts every year. The sequence is derived from the highest number
already issued for the year; a concurrent insert that grabs the same
number hits the unique constraint and the save is retried with the next
one.
"""

from __future__ import annotations

from django.db import IntegrityError, models, transaction
from django.utils import timezone

SEQUENCE_WIDTH = 6
MAX_NUMBER_ATTEMPTS = 5


def format_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{sequence:0{SEQUENCE_WIDTH}d}"


def next_number(model: type[models.Model], field_name: str, prefix: str) -> str:
    """
    Return the next free number for the current year.

    Args:
        model: Model class holding the numbers
        field_name: Name of the unique number field
        prefix: Document prefix (INV, PAY)
    """
    year = timezone.now().year
    year_prefix = f"{prefix}-{year}-"
    last = (
        model._default_manager.filter(**{f"{field_name}__startswith": year_prefix})
        .order_by(f"-{field_name}")
        .values_list(field_name, flat=True)
        .first()
    )
    sequence = int(last.rsplit("-", 1)[1]) + 1 if last else 1
    return format_number(prefix, year, sequence)


class SequentialNumberMixin(models.Model):
    """
    Assigns a sequential number on first save.

    Subclasses set number_field and number_prefix. The field must be
    unique so that concurrent writers cannot both keep the same number.
    """

    number_field: str = ""
    number_prefix: str = ""

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding or getattr(self, self.number_field):
            return super().save(*args, **kwargs)

        for attempt in range(1, MAX_NUMBER_ATTEMPTS + 1):
            setattr(
                self,
                self.number_field,
                next_number(type(self), self.number_field, self.number_prefix),
            )
            try:
                with transaction.atomic():
                    return super().save(*args, **kwargs)
            except IntegrityError:
                if attempt == MAX_NUMBER_ATTEMPTS:
                    raise
                setattr(self, self.number_field, "")
