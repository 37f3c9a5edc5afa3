"""Scheduling gate and date-range helpers for unattended runs."""

from __future__ import annotations

from datetime import date, datetime, timedelta


def should_run(today: date, configured_day: int | None) -> bool:
    """True iff a day is configured and it equals today's day of month.

    No folding: a configured 31 never fires in a 30-day month.
    """
    return configured_day is not None and today.day == configured_day


def previous_month_range(today: date) -> tuple[date, date]:
    """First and last day of the calendar month before *today*."""
    first_of_this_month = today.replace(day=1)
    end = first_of_this_month - timedelta(days=1)
    return end.replace(day=1), end


def parse_date_range(value: str) -> tuple[date, date]:
    """Parse ``YYYY-MM-DD:YYYY-MM-DD``."""
    parts = value.split(":")
    if len(parts) != 2:
        raise ValueError("Date range must be in format YYYY-MM-DD:YYYY-MM-DD")
    try:
        start = datetime.strptime(parts[0].strip(), "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError(f"Invalid start date: {parts[0]!r}") from exc
    try:
        end = datetime.strptime(parts[1].strip(), "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError(f"Invalid end date: {parts[1]!r}") from exc
    if end < start:
        raise ValueError("End date must be after start date")
    return start, end
