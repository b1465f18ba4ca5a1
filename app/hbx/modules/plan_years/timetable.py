"""
SHOP enrollment calendar arithmetic.

Every function is pure: the date of record and the market settings are
passed in by the caller.
"""

from __future__ import annotations

import calendar
from dataclasses import asdict, dataclass
from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from app.hbx.config import ShopMarketSettings

from .snapshot import PlanYearSnapshot


def beginning_of_month(d: date) -> date:
    return d.replace(day=1)


def end_of_month(d: date) -> date:
    return d.replace(day=calendar.monthrange(d.year, d.month)[1])


def day_of_month(month: date, day: int) -> date:
    """`day` of the month containing `month`, clamped to the month's last day."""
    last = calendar.monthrange(month.year, month.month)[1]
    return date(month.year, month.month, min(max(day, 1), last))


def prior_month(d: date) -> date:
    return beginning_of_month(d) - relativedelta(months=1)


def first_banking_date_prior(d: date) -> date:
    # TODO: roll over federal holidays once the exchange publishes its banking calendar.
    if d.weekday() == 5:
        return d - timedelta(days=1)
    if d.weekday() == 6:
        return d - timedelta(days=2)
    return d


def first_banking_date_after(d: date) -> date:
    if d.weekday() == 5:
        return d + timedelta(days=2)
    if d.weekday() == 6:
        return d + timedelta(days=1)
    return d


@dataclass(frozen=True)
class EnrollmentTimetable:
    effective_date: date
    plan_year_start_on: date
    plan_year_end_on: date
    employer_initial_application_earliest_start_on: date
    employer_initial_application_earliest_submit_on: date
    employer_initial_application_latest_submit_on: date
    open_enrollment_earliest_start_on: date
    open_enrollment_latest_start_on: date
    open_enrollment_latest_end_on: date
    binder_payment_due_date: date

    def as_dict(self) -> dict[str, str]:
        return {k: v.isoformat() for k, v in asdict(self).items()}


def shop_enrollment_timetable(new_effective_date: date, settings: ShopMarketSettings) -> EnrollmentTimetable:
    effective_date = beginning_of_month(new_effective_date)
    prev = prior_month(effective_date)
    earliest_start = effective_date - relativedelta(months=settings.initial_earliest_start_prior_to_effective_on_months)

    return EnrollmentTimetable(
        effective_date=effective_date,
        plan_year_start_on=effective_date,
        plan_year_end_on=effective_date + relativedelta(years=1) - timedelta(days=1),
        employer_initial_application_earliest_start_on=earliest_start,
        employer_initial_application_earliest_submit_on=earliest_start,
        employer_initial_application_latest_submit_on=day_of_month(prev, settings.initial_publish_due_day_of_month),
        open_enrollment_earliest_start_on=effective_date
        - relativedelta(months=settings.open_enrollment_maximum_length_months),
        open_enrollment_latest_start_on=day_of_month(prev, settings.open_enrollment_begin_due_day_of_month),
        open_enrollment_latest_end_on=day_of_month(prev, settings.open_enrollment_monthly_end_on),
        binder_payment_due_date=first_banking_date_prior(day_of_month(prev, settings.binder_payment_due_on)),
    )


def earliest_available_start_on(today: date, settings: ShopMarketSettings) -> date:
    # July 6 => Sept 1, July 1 => Aug 1 (with a 5th-of-month OE begin due day)
    return beginning_of_month(
        today
        - timedelta(days=settings.open_enrollment_begin_due_day_of_month)
        + relativedelta(months=settings.open_enrollment_maximum_length_months)
    )


def check_start_on(start_on: date, today: date, settings: ShopMarketSettings) -> dict[str, str]:
    timetable = shop_enrollment_timetable(start_on, settings)

    if start_on.day != 1:
        return {"result": "failure", "msg": "start on must be first day of the month"}
    if today > timetable.open_enrollment_latest_start_on:
        earliest = earliest_available_start_on(today, settings)
        return {"result": "failure", "msg": f"must choose a start on date {earliest.isoformat()} or later"}
    return {"result": "ok", "msg": ""}


def calculate_start_on_dates(today: date, settings: ShopMarketSettings) -> list[date]:
    first = earliest_available_start_on(today, settings)
    last = beginning_of_month(
        today + relativedelta(months=settings.initial_earliest_start_prior_to_effective_on_months)
    )
    dates: list[date] = []
    current = first
    while current <= last:
        dates.append(current)
        current = current + relativedelta(months=1)
    return dates


def calculate_start_on_options(today: date, settings: ShopMarketSettings) -> list[tuple[str, str]]:
    return [(d.strftime("%B %Y"), d.isoformat()) for d in calculate_start_on_dates(today, settings)]


def binder_payment_due_date(start_on: date, settings: ShopMarketSettings) -> date:
    published = settings.binder_payment_due_dates.get(start_on)
    if published:
        return published
    return shop_enrollment_timetable(start_on, settings).binder_payment_due_date


def calculate_open_enrollment_date(start_on: date, today: date, settings: ShopMarketSettings) -> dict[str, date]:
    open_enrollment_start_on = max(
        start_on - relativedelta(months=settings.open_enrollment_maximum_length_months),
        today,
    )
    return {
        "open_enrollment_start_on": open_enrollment_start_on,
        "open_enrollment_end_on": shop_enrollment_timetable(start_on, settings).open_enrollment_latest_end_on,
        "binder_payment_due_date": binder_payment_due_date(start_on, settings),
    }


def plan_year_end_on(start_on: date, settings: ShopMarketSettings) -> date:
    return start_on + relativedelta(years=settings.benefit_period_length_minimum_years) - timedelta(days=1)


def default_plan_year_dates(start_on: date, today: date, settings: ShopMarketSettings) -> dict[str, date]:
    oe = calculate_open_enrollment_date(start_on, today, settings)
    return {
        "start_on": start_on,
        "end_on": plan_year_end_on(start_on, settings),
        "open_enrollment_start_on": oe["open_enrollment_start_on"],
        "open_enrollment_end_on": oe["open_enrollment_end_on"],
    }


def due_date_for_publish(plan_year: PlanYearSnapshot, settings: ShopMarketSettings) -> date:
    if plan_year.employer_has_renewing_plan_year():
        day = settings.renewal_publish_due_day_of_month
    else:
        day = settings.initial_publish_due_day_of_month
    return day_of_month(prior_month(plan_year.start_on), day)


def open_enrollment_date_bounds(
    plan_year: PlanYearSnapshot, today: date, settings: ShopMarketSettings
) -> dict[str, date]:
    """
    Calendar limits for an open enrollment extension: no earlier than the
    regular monthly OE end, no later than the end of the effective month.
    """
    regular_end = calculate_open_enrollment_date(plan_year.start_on, today, settings)["open_enrollment_end_on"]
    return {
        "min": max(today, regular_end),
        "max": end_of_month(plan_year.effective_date),
    }
