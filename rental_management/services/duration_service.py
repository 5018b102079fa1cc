"""Day counting for quotes, live estimates and close-out billing.

All counts that feed billing use the inclusive convention: a rental from
Monday to Wednesday is charged three days. ``calendar_days`` keeps the older
exclusive count for comparisons only.
"""

from __future__ import annotations

from datetime import date, timedelta

from services.errors import ValidationError

RUNNING_STATES = {"ongoing", "collecting"}
PRICING_POLICIES = {"calendar", "business_days"}


def calendar_days(start: date, end: date) -> int:
    return max(1, (end - start).days)


def calendar_days_inclusive(start: date, end: date) -> int:
    return max(1, (end - start).days + 1)


def business_days(start: date, end: date) -> int:
    """Count Monday to Friday days in the inclusive range."""
    count = 0
    current = start
    while current <= end:
        if current.weekday() < 5:
            count += 1
        current += timedelta(days=1)
    return count


def extra_days(end: date, reference: date) -> int:
    return max(0, (reference - end).days)


def chargeable_days(start: date, end: date, policy: str) -> int:
    if policy not in PRICING_POLICIES:
        raise ValidationError(f"Unknown pricing policy '{policy}'.")
    if policy == "business_days":
        return business_days(start, end)
    return calendar_days_inclusive(start, end)


def validate_period(start: date, end: date) -> None:
    if end < start:
        raise ValidationError("endDate must be on or after startDate.")


def running_metrics(rental, today: date | None = None) -> dict:
    """Live estimate shown while a rental is open.

    The delivery fee is left out on purpose; it only enters the final
    settlement computed at close-out.
    """
    today = today or date.today()
    planned = calendar_days_inclusive(rental.StartDate, rental.EndDate)
    actual = planned
    extra = 0
    is_overdue = False

    if rental.Status in RUNNING_STATES:
        actual = calendar_days_inclusive(rental.StartDate, today)
        is_overdue = today > rental.EndDate
        extra = extra_days(rental.EndDate, today)

    daily_rate = float(rental.DailyRate or 0)
    discount = float(rental.Discount or 0)
    return {
        "plannedDays": planned,
        "actualDays": actual,
        "extraDays": extra,
        "isOverdue": is_overdue,
        "dailyRate": daily_rate,
        "discount": discount,
        "extraValue": daily_rate * extra,
        "currentTotal": max(0.0, daily_rate * actual - discount),
        "originalTotal": float(rental.TotalValue or 0),
    }
