from __future__ import annotations

from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from actionflow_mcp.models.work_item import RecurrencePattern, RecurrenceRule


def next_occurrence(anchor: datetime, rule: RecurrenceRule) -> datetime | None:
    """Return the occurrence following ``anchor`` under ``rule``.

    Month and year steps clamp to the last valid day of the target month,
    so Jan 31 + 1 month lands on Feb 28/29. Returns ``None`` once the
    computed date passes ``rule.end_date``; a date equal to it still runs.
    """
    interval = rule.interval
    if rule.pattern == RecurrencePattern.DAILY:
        candidate = anchor + timedelta(days=interval)
    elif rule.pattern == RecurrencePattern.WEEKLY:
        candidate = anchor + timedelta(days=7 * interval)
    elif rule.pattern == RecurrencePattern.MONTHLY:
        candidate = anchor + relativedelta(months=interval)
    elif rule.pattern == RecurrencePattern.YEARLY:
        candidate = anchor + relativedelta(years=interval)
    else:
        raise ValueError(f"Unsupported recurrence pattern: {rule.pattern}")

    if rule.end_date is not None and candidate > rule.end_date:
        return None
    return candidate
