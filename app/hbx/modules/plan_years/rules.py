"""
Plan-year eligibility and enrollment rules.

Pure functions over a PlanYearSnapshot. Error collections are
`dict[str, list[str]]` keyed by the attribute or concern they describe;
messages are operator-facing.
"""

from __future__ import annotations

import math
from datetime import date
from typing import Any

from dateutil.relativedelta import relativedelta

from app.hbx.config import ShopMarketSettings

from . import timetable
from .snapshot import COVERAGE_DECIDED, CensusEmployeeSnapshot, PlanYearSnapshot
from .states import (
    INELIGIBLE_FOR_EXPORT,
    MATCHABLE,
    PlanYearState,
    S,
)

Errors = dict[str, list[str]]


class PlanYearValidationError(ValueError):
    def __init__(self, errors: Errors, message: str = "Plan year is invalid."):
        super().__init__(message)
        self.errors = errors


def _add(errors: Errors, key: str, msg: str) -> None:
    errors.setdefault(key, []).append(msg)


def _ordinalize(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def _is_january_first(d: date) -> bool:
    return d.month == 1 and d.day == 1


# ─────────────────────────────────────────────────────────────────────────────
# Membership
# ─────────────────────────────────────────────────────────────────────────────


def _assignment_benefit_group_id(plan_year: PlanYearSnapshot, ce: CensusEmployeeSnapshot) -> Any:
    """The census employee's assignment that belongs to this plan year (renewal wins)."""
    ids = plan_year.benefit_group_ids
    if ce.renewal_benefit_group_id is not None and ce.renewal_benefit_group_id in ids:
        return ce.renewal_benefit_group_id
    if ce.active_benefit_group_id is not None and ce.active_benefit_group_id in ids:
        return ce.active_benefit_group_id
    return None


def assigned_census_employees(plan_year: PlanYearSnapshot) -> list[CensusEmployeeSnapshot]:
    return [
        ce
        for ce in plan_year.employer.active_census_employees
        if _assignment_benefit_group_id(plan_year, ce) is not None
    ]


def eligible_to_enroll(plan_year: PlanYearSnapshot) -> list[CensusEmployeeSnapshot]:
    """All active employees on the roster assigned to one of this plan year's benefit groups."""
    return assigned_census_employees(plan_year)


def enrolled(plan_year: PlanYearSnapshot) -> list[CensusEmployeeSnapshot]:
    """Eligible employees who selected or waived coverage."""
    return [ce for ce in eligible_to_enroll(plan_year) if ce.coverage_state in COVERAGE_DECIDED]


def non_business_owner_enrolled(plan_year: PlanYearSnapshot) -> list[CensusEmployeeSnapshot]:
    return [ce for ce in enrolled(plan_year) if not ce.is_business_owner]


def waived(plan_year: PlanYearSnapshot) -> list[CensusEmployeeSnapshot]:
    return [ce for ce in eligible_to_enroll(plan_year) if ce.coverage_state == "coverage_waived"]


def covered(plan_year: PlanYearSnapshot) -> list[CensusEmployeeSnapshot]:
    return [ce for ce in eligible_to_enroll(plan_year) if ce.coverage_state == "coverage_selected"]


# ─────────────────────────────────────────────────────────────────────────────
# Counts
# ─────────────────────────────────────────────────────────────────────────────


def eligible_to_enroll_count(plan_year: PlanYearSnapshot) -> int:
    return len(eligible_to_enroll(plan_year))


def total_enrolled_count(plan_year: PlanYearSnapshot, settings: ShopMarketSettings) -> int:
    # Large groups are not counted against the participation rules.
    if len(plan_year.employer.active_census_employees) > settings.small_market_active_employee_limit:
        return 0
    return len(enrolled(plan_year))


def enrollment_ratio(plan_year: PlanYearSnapshot, settings: ShopMarketSettings) -> float:
    eligible = eligible_to_enroll_count(plan_year)
    if eligible == 0:
        return 0.0
    return total_enrolled_count(plan_year, settings) / eligible


def minimum_enrolled_count(plan_year: PlanYearSnapshot, settings: ShopMarketSettings) -> int:
    return math.ceil(settings.employee_participation_ratio_minimum * eligible_to_enroll_count(plan_year))


def additional_required_participants_count(plan_year: PlanYearSnapshot, settings: ShopMarketSettings) -> int:
    return max(0, minimum_enrolled_count(plan_year, settings) - total_enrolled_count(plan_year, settings))


def employee_participation_percent(plan_year: PlanYearSnapshot, settings: ShopMarketSettings) -> float | None:
    eligible = eligible_to_enroll_count(plan_year)
    if eligible == 0:
        return None
    return round(total_enrolled_count(plan_year, settings) / eligible * 100, 2)


def minimum_employer_contribution(plan_year: PlanYearSnapshot) -> float | None:
    pcts = [bg.employee_premium_pct for bg in plan_year.benefit_groups if bg.employee_premium_pct is not None]
    return min(pcts) if pcts else None


# ─────────────────────────────────────────────────────────────────────────────
# Predicates
# ─────────────────────────────────────────────────────────────────────────────


def open_enrollment_contains(plan_year: PlanYearSnapshot, d: date) -> bool:
    return plan_year.open_enrollment_start_on <= d <= plan_year.open_enrollment_end_on


def coverage_period_contains(plan_year: PlanYearSnapshot, d: date) -> bool:
    if plan_year.end_on is None:
        return plan_year.start_on <= d
    return plan_year.start_on <= d <= plan_year.end_on


def is_open_enrollment_closed(plan_year: PlanYearSnapshot, today: date) -> bool:
    return plan_year.open_enrollment_end_on < today


def is_application_period_ended(plan_year: PlanYearSnapshot, today: date) -> bool:
    return plan_year.start_on <= today


def open_enrollment_completed(plan_year: PlanYearSnapshot, today: date) -> bool:
    return today > plan_year.open_enrollment_end_on


def past_transmission_threshold(plan_year: PlanYearSnapshot, today: date, settings: ShopMarketSettings) -> bool:
    threshold = timetable.day_of_month(
        timetable.prior_month(plan_year.start_on), settings.transmission_threshold_day_of_month
    )
    return today > threshold


def overlapping_published_plan_year(plan_year: PlanYearSnapshot) -> bool:
    return any(py.start_on <= plan_year.start_on <= py.end_on for py in plan_year.published_siblings())


def employees_are_matchable(plan_year: PlanYearSnapshot) -> bool:
    return plan_year.state in MATCHABLE


def is_eligible_to_match_census_employees(plan_year: PlanYearSnapshot) -> bool:
    return bool(plan_year.benefit_groups) and plan_year.state in {
        S.PUBLISHED,
        S.ENROLLING,
        S.ENROLLMENT_EXTENDED,
        S.ENROLLED,
        S.ACTIVE,
    }


def editable(plan_year: PlanYearSnapshot) -> bool:
    """Benefit groups may change only while nobody on the roster is assigned to them."""
    return not any(
        _assignment_benefit_group_id(plan_year, ce) is not None for ce in plan_year.employer.census_employees
    )


def is_publish_date_valid(
    plan_year: PlanYearSnapshot, today: date, settings: ShopMarketSettings, *, forcing: bool = False
) -> bool:
    if forcing:
        return True
    return today <= timetable.due_date_for_publish(plan_year, settings)


def eligible_for_export(plan_year: PlanYearSnapshot, today: date, settings: ShopMarketSettings) -> bool:
    if plan_year.is_conversion:
        return False
    if plan_year.state in INELIGIBLE_FOR_EXPORT:
        return False
    if today < plan_year.start_on:
        if plan_year.state == S.ENROLLED:
            return (
                open_enrollment_completed(plan_year, today)
                and plan_year.employer.binder_paid
                and past_transmission_threshold(plan_year, today, settings)
            )
        if plan_year.state == S.RENEWING_ENROLLED:
            return open_enrollment_completed(plan_year, today) and past_transmission_threshold(
                plan_year, today, settings
            )
        return False
    return True


# ─────────────────────────────────────────────────────────────────────────────
# Error and warning collections
# ─────────────────────────────────────────────────────────────────────────────


def open_enrollment_date_errors(plan_year: PlanYearSnapshot, settings: ShopMarketSettings) -> Errors:
    errors: Errors = {}

    if plan_year.is_renewing:
        minimum_length = settings.renewal_open_enrollment_minimum_length_days
        enrollment_end = settings.renewal_monthly_open_enrollment_end_on
    else:
        minimum_length = settings.open_enrollment_minimum_length_days
        enrollment_end = settings.open_enrollment_monthly_end_on

    length = (plan_year.open_enrollment_end_on - plan_year.open_enrollment_start_on).days + 1
    if length < minimum_length:
        _add(errors, "open_enrollment_period", f"Open Enrollment period is shorter than minimum ({minimum_length} days)")

    latest_end = timetable.day_of_month(timetable.prior_month(plan_year.start_on), enrollment_end)
    if plan_year.open_enrollment_end_on > latest_end:
        _add(
            errors,
            "open_enrollment_period",
            f"Open Enrollment must end on or before the {_ordinalize(enrollment_end)} day of the month prior to effective date",
        )

    return errors


def application_errors(
    plan_year: PlanYearSnapshot, today: date, settings: ShopMarketSettings, *, forcing: bool = False
) -> Errors:
    """Model-integrity violations that block publishing."""
    errors: Errors = {}
    max_months = settings.open_enrollment_maximum_length_months

    if plan_year.open_enrollment_end_on > plan_year.open_enrollment_start_on + relativedelta(months=max_months):
        _add(errors, "open_enrollment_period", f"Open Enrollment period is longer than maximum ({max_months} months)")

    if any(not bg.reference_plan_id for bg in plan_year.benefit_groups):
        _add(
            errors,
            "benefit_groups",
            "Reference plans have not been selected for benefit groups. "
            "Please edit the plan year and select reference plans.",
        )

    if not plan_year.benefit_groups:
        _add(errors, "benefit_groups", "You must create at least one benefit group to publish a plan year")

    active_ids = {ce.id for ce in plan_year.employer.active_census_employees}
    assigned_ids = {ce.id for ce in assigned_census_employees(plan_year)}
    if active_ids != assigned_ids:
        _add(errors, "benefit_groups", "Every employee must be assigned to a benefit group defined for the published plan year")

    if plan_year.employer.is_ineligible:
        _add(errors, "employer_profile", "This employer is ineligible to enroll for coverage at this time")

    if overlapping_published_plan_year(plan_year):
        _add(errors, "publish", "You may only have one published plan year at a time")

    if not is_publish_date_valid(plan_year, today, settings, forcing=forcing):
        due = timetable.due_date_for_publish(plan_year, settings)
        _add(
            errors,
            "publish",
            f"Plan year starting on {plan_year.start_on.strftime('%m-%d-%Y')} must be published by {due.strftime('%m-%d-%Y')}",
        )

    return errors


def application_eligibility_warnings(
    plan_year: PlanYearSnapshot,
    settings: ShopMarketSettings,
    *,
    target_state: PlanYearState | None = None,
) -> dict[str, str]:
    """Regulatory compliance warnings. Publishing with warnings lands in publish_pending."""
    warnings: dict[str, str] = {}

    if not plan_year.employer.is_primary_office_local:
        warnings["primary_office_location"] = (
            f"Has its principal business address in the {settings.state_name} and offers coverage to all "
            f"full time employees through {settings.site_short_name} or Offers coverage through "
            f"{settings.site_short_name} to all full time employees whose Primary worksite is located "
            f"in the {settings.state_name}"
        )

    if plan_year.state in (S.APPLICATION_INELIGIBLE, S.RENEWING_APPLICATION_INELIGIBLE) and target_state not in (
        S.ENROLLMENT_EXTENDED,
        S.RENEWING_ENROLLMENT_EXTENDED,
    ):
        warnings["ineligible"] = "Application did not meet eligibility requirements for enrollment"

    if not plan_year.is_renewing and plan_year.fte_count > settings.small_market_employee_count_maximum:
        warnings["fte_count"] = f"Has {settings.small_market_employee_count_maximum} or fewer full time equivalent employees"

    if not _is_january_first(plan_year.effective_date):
        contribution = minimum_employer_contribution(plan_year)
        if contribution is not None and contribution < settings.employer_contribution_percent_minimum:
            warnings["minimum_employer_contribution"] = (
                f"Employer contribution percent toward employee premium ({int(contribution)}%) is less than "
                f"minimum allowed ({int(settings.employer_contribution_percent_minimum)}%)"
            )

    return warnings


def enrollment_errors(plan_year: PlanYearSnapshot, settings: ShopMarketSettings) -> dict[str, str]:
    """Enrollment composition checks applied when open enrollment closes."""
    errors: dict[str, str] = {}
    eligible = eligible_to_enroll_count(plan_year)
    non_owner = len(non_business_owner_enrolled(plan_year))

    if eligible == 0:
        errors["eligible_to_enroll_count"] = "at least one employee must be eligible to enroll"

    if non_owner < eligible and non_owner < settings.non_owner_participation_count_minimum:
        errors["non_business_owner_enrollment_count"] = (
            f"at least {settings.non_owner_participation_count_minimum} non-owner employee must enroll"
        )

    if not _is_january_first(plan_year.effective_date):
        if enrollment_ratio(plan_year, settings) < settings.employee_participation_ratio_minimum:
            errors["enrollment_ratio"] = (
                f"number of eligible participants enrolling ({total_enrolled_count(plan_year, settings)}) "
                f"is less than minimum required {minimum_enrolled_count(plan_year, settings)}"
            )

    return errors


def is_application_unpublishable(
    plan_year: PlanYearSnapshot, today: date, settings: ShopMarketSettings, *, forcing: bool = False
) -> bool:
    return bool(open_enrollment_date_errors(plan_year, settings)) or bool(
        application_errors(plan_year, today, settings, forcing=forcing)
    )


def is_application_valid(
    plan_year: PlanYearSnapshot, today: date, settings: ShopMarketSettings, *, forcing: bool = False
) -> bool:
    return not application_errors(plan_year, today, settings, forcing=forcing)


def is_application_invalid(
    plan_year: PlanYearSnapshot, today: date, settings: ShopMarketSettings, *, forcing: bool = False
) -> bool:
    return not is_application_valid(plan_year, today, settings, forcing=forcing)


def is_application_eligible(
    plan_year: PlanYearSnapshot, settings: ShopMarketSettings, *, target_state: PlanYearState | None = None
) -> bool:
    return not application_eligibility_warnings(plan_year, settings, target_state=target_state)


def is_enrollment_valid(plan_year: PlanYearSnapshot, settings: ShopMarketSettings) -> bool:
    return not enrollment_errors(plan_year, settings)


# ─────────────────────────────────────────────────────────────────────────────
# Date validation (runs on every save)
# ─────────────────────────────────────────────────────────────────────────────

_DATE_CHECKS_SKIPPED = frozenset(
    {S.CANCELED, S.EXPIRED, S.RENEWING_CANCELED, S.ENROLLMENT_EXTENDED, S.RENEWING_ENROLLMENT_EXTENDED}
)
_PERIOD_LENGTH_CHECKS_SKIPPED = frozenset(
    {S.CANCELED, S.SUSPENDED, S.TERMINATED, S.TERMINATION_PENDING, S.RENEWING_CANCELED}
)


def validate_plan_year_dates(plan_year: PlanYearSnapshot, today: date, settings: ShopMarketSettings) -> Errors:
    errors: Errors = {}
    if plan_year.state in _DATE_CHECKS_SKIPPED or plan_year.imported_plan_year:
        return errors

    start_on = plan_year.start_on
    end_on = plan_year.end_on
    oe_start = plan_year.open_enrollment_start_on
    oe_end = plan_year.open_enrollment_end_on
    max_years = settings.benefit_period_length_maximum_years
    max_months = settings.open_enrollment_maximum_length_months

    if start_on != timetable.beginning_of_month(start_on):
        _add(errors, "start_on", "must be first day of the month")

    if end_on > start_on + relativedelta(years=max_years):
        _add(errors, "end_on", f"benefit period may not exceed {max_years} year")

    if oe_end > start_on:
        _add(errors, "start_on", "can't occur before open enrollment end date")

    if oe_end < oe_start:
        _add(errors, "open_enrollment_end_on", "can't occur before open enrollment start date")

    if oe_start < start_on - relativedelta(months=max_months):
        _add(errors, "open_enrollment_start_on", f"can't occur before {max_months} months before start date")

    if oe_end > oe_start + relativedelta(months=max_months):
        _add(errors, "open_enrollment_end_on", f"open enrollment period is greater than maximum: {max_months} months")

    earliest = start_on - relativedelta(months=settings.initial_earliest_start_prior_to_effective_on_months)
    if earliest > today:
        _add(
            errors,
            "start_on",
            f"may not start application before {earliest.isoformat()} with {start_on.isoformat()} effective date",
        )

    if plan_year.state not in _PERIOD_LENGTH_CHECKS_SKIPPED:
        if end_on != timetable.end_of_month(end_on):
            _add(errors, "end_on", "must be last day of the month")

        expected_end = timetable.plan_year_end_on(start_on, settings)
        if end_on != expected_end:
            days = (expected_end - start_on).days
            _add(errors, "end_on", f"plan year period should be: {days} days")

    return errors


def eligibility_report(plan_year: PlanYearSnapshot, today: date, settings: ShopMarketSettings) -> dict[str, Any]:
    contribution = minimum_employer_contribution(plan_year)
    return {
        "state": plan_year.state.value,
        "eligible_to_enroll_count": eligible_to_enroll_count(plan_year),
        "total_enrolled_count": total_enrolled_count(plan_year, settings),
        "non_business_owner_enrolled_count": len(non_business_owner_enrolled(plan_year)),
        "waived_count": len(waived(plan_year)),
        "covered_count": len(covered(plan_year)),
        "enrollment_ratio": round(enrollment_ratio(plan_year, settings), 4),
        "minimum_enrolled_count": minimum_enrolled_count(plan_year, settings),
        "additional_required_participants_count": additional_required_participants_count(plan_year, settings),
        "employee_participation_percent": employee_participation_percent(plan_year, settings),
        "minimum_employer_contribution": contribution,
        "due_date_for_publish": timetable.due_date_for_publish(plan_year, settings).isoformat(),
        "date_errors": validate_plan_year_dates(plan_year, today, settings),
        "open_enrollment_date_errors": open_enrollment_date_errors(plan_year, settings),
        "application_errors": application_errors(plan_year, today, settings),
        "application_eligibility_warnings": application_eligibility_warnings(plan_year, settings),
        "enrollment_errors": enrollment_errors(plan_year, settings),
        "is_application_valid": is_application_valid(plan_year, today, settings),
        "is_application_eligible": is_application_eligible(plan_year, settings),
        "is_enrollment_valid": is_enrollment_valid(plan_year, settings),
        "eligible_for_export": eligible_for_export(plan_year, today, settings),
        "employees_are_matchable": employees_are_matchable(plan_year),
    }
