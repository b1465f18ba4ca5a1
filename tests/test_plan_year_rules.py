"""Unit tests for plan-year eligibility and enrollment rules (no database)."""
from dataclasses import replace
from datetime import date

import pytest

from app.hbx.config import ShopMarketSettings
from app.hbx.modules.plan_years import rules
from app.hbx.modules.plan_years.snapshot import (
    BenefitGroupSnapshot,
    CensusEmployeeSnapshot,
    EmployerSnapshot,
    PlanYearSnapshot,
    PlanYearSummary,
    RelationshipBenefit,
    plan_year_from_dict,
)
from app.hbx.modules.plan_years.states import S

SETTINGS = ShopMarketSettings()
TODAY = date(2026, 7, 1)


def _group(group_id=1, *, employee_pct=80.0, reference_plan_id="plan-1"):
    return BenefitGroupSnapshot(
        id=group_id,
        title=f"Group {group_id}",
        reference_plan_id=reference_plan_id,
        relationship_benefits=(RelationshipBenefit("employee", employee_pct), RelationshipBenefit("spouse", 50.0)),
        is_default=group_id == 1,
    )


def _employees(*coverage_states, owners=0, group_id=1):
    return tuple(
        CensusEmployeeSnapshot(
            id=i,
            is_business_owner=i < owners,
            active_benefit_group_id=group_id,
            coverage_state=state,
        )
        for i, state in enumerate(coverage_states)
    )


def _plan_year(*, employees=None, employer=None, **overrides):
    if employees is None:
        employees = _employees(*["coverage_selected"] * 4)
    base = dict(
        id=10,
        state=S.DRAFT,
        start_on=date(2026, 9, 1),
        end_on=date(2027, 8, 31),
        open_enrollment_start_on=date(2026, 7, 1),
        open_enrollment_end_on=date(2026, 8, 10),
        benefit_groups=(_group(),),
        employer=employer or EmployerSnapshot(id=5, census_employees=employees),
    )
    base.update(overrides)
    return PlanYearSnapshot(**base)


def _january_plan_year(**overrides):
    return _plan_year(
        start_on=date(2027, 1, 1),
        end_on=date(2027, 12, 31),
        open_enrollment_start_on=date(2026, 11, 1),
        open_enrollment_end_on=date(2026, 12, 10),
        **overrides,
    )


class TestCounts:
    def test_membership_and_counts(self):
        py = _plan_year(
            employees=_employees("coverage_selected", "coverage_selected", "coverage_waived", "initialized")
        )
        assert rules.eligible_to_enroll_count(py) == 4
        assert len(rules.enrolled(py)) == 3
        assert len(rules.waived(py)) == 1
        assert len(rules.covered(py)) == 2
        assert rules.total_enrolled_count(py, SETTINGS) == 3
        assert rules.minimum_enrolled_count(py, SETTINGS) == 3
        assert rules.additional_required_participants_count(py, SETTINGS) == 0
        assert rules.employee_participation_percent(py, SETTINGS) == 75.0

    def test_unassigned_and_inactive_employees_are_not_eligible(self):
        employees = (
            CensusEmployeeSnapshot(id=1, active_benefit_group_id=1, coverage_state="coverage_selected"),
            CensusEmployeeSnapshot(id=2, active_benefit_group_id=None),
            CensusEmployeeSnapshot(id=3, active_benefit_group_id=1, is_active=False),
            CensusEmployeeSnapshot(id=4, active_benefit_group_id=99),
        )
        py = _plan_year(employees=employees)
        assert [ce.id for ce in rules.eligible_to_enroll(py)] == [1]

    def test_renewal_assignment_wins(self):
        employees = (
            CensusEmployeeSnapshot(id=1, active_benefit_group_id=1, renewal_benefit_group_id=2),
        )
        py = _plan_year(employees=employees, benefit_groups=(_group(2),))
        assert rules.eligible_to_enroll_count(py) == 1

    def test_empty_roster(self):
        py = _plan_year(employees=())
        assert rules.enrollment_ratio(py, SETTINGS) == 0.0
        assert rules.employee_participation_percent(py, SETTINGS) is None

    def test_large_group_is_not_counted(self):
        settings = replace(SETTINGS, small_market_active_employee_limit=3)
        py = _plan_year()
        assert rules.total_enrolled_count(py, settings) == 0

    def test_minimum_employer_contribution_across_groups(self):
        py = _plan_year(benefit_groups=(_group(1, employee_pct=80.0), _group(2, employee_pct=60.0)))
        assert rules.minimum_employer_contribution(py) == 60.0
        assert rules.minimum_employer_contribution(_plan_year(benefit_groups=())) is None


class TestEnrollmentErrors:
    def test_valid_enrollment(self):
        assert rules.enrollment_errors(_plan_year(), SETTINGS) == {}
        assert rules.is_enrollment_valid(_plan_year(), SETTINGS)

    def test_participation_below_minimum(self):
        py = _plan_year(employees=_employees("coverage_selected", "coverage_selected", "initialized", "initialized"))
        errors = rules.enrollment_errors(py, SETTINGS)
        assert errors == {
            "enrollment_ratio": "number of eligible participants enrolling (2) is less than minimum required 3"
        }
        assert rules.additional_required_participants_count(py, SETTINGS) == 1

    def test_participation_not_checked_for_january_start(self):
        py = _january_plan_year(
            employees=_employees("coverage_selected", "initialized", "initialized", "initialized")
        )
        assert rules.enrollment_errors(py, SETTINGS) == {}

    def test_waivers_count_toward_participation(self):
        py = _plan_year(employees=_employees("coverage_selected", "coverage_waived", "coverage_waived", "initialized"))
        assert "enrollment_ratio" not in rules.enrollment_errors(py, SETTINGS)

    def test_owner_only_enrollment(self):
        py = _january_plan_year(employees=_employees("coverage_selected", "initialized", owners=1))
        errors = rules.enrollment_errors(py, SETTINGS)
        assert errors == {"non_business_owner_enrollment_count": "at least 1 non-owner employee must enroll"}

    def test_nobody_eligible(self):
        errors = rules.enrollment_errors(_plan_year(employees=()), SETTINGS)
        assert errors["eligible_to_enroll_count"] == "at least one employee must be eligible to enroll"


class TestApplicationErrors:
    def test_valid_application(self):
        py = _plan_year()
        assert rules.application_errors(py, TODAY, SETTINGS) == {}
        assert rules.open_enrollment_date_errors(py, SETTINGS) == {}
        assert not rules.is_application_unpublishable(py, TODAY, SETTINGS)

    def test_no_benefit_groups(self):
        errors = rules.application_errors(_plan_year(benefit_groups=()), TODAY, SETTINGS)
        assert "You must create at least one benefit group to publish a plan year" in errors["benefit_groups"]

    def test_missing_reference_plan(self):
        errors = rules.application_errors(_plan_year(benefit_groups=(_group(reference_plan_id=None),)), TODAY, SETTINGS)
        assert any("Reference plans have not been selected" in m for m in errors["benefit_groups"])

    def test_unassigned_employee(self):
        employees = _employees("initialized") + (CensusEmployeeSnapshot(id=99),)
        errors = rules.application_errors(_plan_year(employees=employees), TODAY, SETTINGS)
        assert errors["benefit_groups"] == [
            "Every employee must be assigned to a benefit group defined for the published plan year"
        ]

    def test_ineligible_employer(self):
        employer = EmployerSnapshot(id=5, state="ineligible", census_employees=_employees("initialized"))
        errors = rules.application_errors(_plan_year(employer=employer), TODAY, SETTINGS)
        assert errors["employer_profile"] == ["This employer is ineligible to enroll for coverage at this time"]

    def test_overlapping_published_plan_year(self):
        employer = EmployerSnapshot(
            id=5,
            census_employees=_employees("initialized"),
            plan_years=(PlanYearSummary(id=9, state=S.ACTIVE, start_on=date(2025, 9, 1), end_on=date(2026, 9, 30)),),
        )
        errors = rules.application_errors(_plan_year(employer=employer), TODAY, SETTINGS)
        assert errors["publish"] == ["You may only have one published plan year at a time"]

    def test_publish_due_date_passed(self):
        errors = rules.application_errors(_plan_year(), date(2026, 8, 6), SETTINGS)
        assert errors["publish"] == ["Plan year starting on 09-01-2026 must be published by 08-05-2026"]
        assert rules.application_errors(_plan_year(), date(2026, 8, 6), SETTINGS, forcing=True) == {}

    def test_open_enrollment_too_long(self):
        errors = rules.application_errors(
            _plan_year(open_enrollment_start_on=date(2026, 6, 1), open_enrollment_end_on=date(2026, 8, 10)),
            TODAY,
            SETTINGS,
        )
        assert errors["open_enrollment_period"] == ["Open Enrollment period is longer than maximum (2 months)"]


class TestOpenEnrollmentDateErrors:
    def test_too_short(self):
        py = _plan_year(open_enrollment_start_on=date(2026, 8, 8))
        errors = rules.open_enrollment_date_errors(py, SETTINGS)
        assert errors["open_enrollment_period"] == ["Open Enrollment period is shorter than minimum (5 days)"]

    def test_initial_ends_after_the_10th(self):
        py = _plan_year(open_enrollment_end_on=date(2026, 8, 13))
        errors = rules.open_enrollment_date_errors(py, SETTINGS)
        assert errors["open_enrollment_period"] == [
            "Open Enrollment must end on or before the 10th day of the month prior to effective date"
        ]

    def test_renewal_may_run_to_the_13th(self):
        py = _plan_year(state=S.RENEWING_DRAFT, open_enrollment_end_on=date(2026, 8, 13))
        assert rules.open_enrollment_date_errors(py, SETTINGS) == {}

        py = _plan_year(state=S.RENEWING_DRAFT, open_enrollment_end_on=date(2026, 8, 14))
        assert "13th day" in rules.open_enrollment_date_errors(py, SETTINGS)["open_enrollment_period"][0]


class TestEligibilityWarnings:
    def test_no_warnings(self):
        assert rules.application_eligibility_warnings(_plan_year(), SETTINGS) == {}

    def test_primary_office_not_local(self):
        employer = EmployerSnapshot(id=5, is_primary_office_local=False, census_employees=_employees("initialized"))
        warnings = rules.application_eligibility_warnings(_plan_year(employer=employer), SETTINGS)
        assert list(warnings) == ["primary_office_location"]
        assert "District of Columbia" in warnings["primary_office_location"]

    def test_fte_count_only_for_initial_applications(self):
        assert "fte_count" in rules.application_eligibility_warnings(_plan_year(fte_count=51), SETTINGS)
        assert "fte_count" not in rules.application_eligibility_warnings(
            _plan_year(fte_count=51, state=S.RENEWING_DRAFT), SETTINGS
        )
        assert "fte_count" not in rules.application_eligibility_warnings(_plan_year(fte_count=50), SETTINGS)

    def test_low_contribution(self):
        warnings = rules.application_eligibility_warnings(
            _plan_year(benefit_groups=(_group(employee_pct=40.0),)), SETTINGS
        )
        assert warnings["minimum_employer_contribution"] == (
            "Employer contribution percent toward employee premium (40%) is less than minimum allowed (50%)"
        )

    def test_low_contribution_allowed_for_january_start(self):
        py = _january_plan_year(benefit_groups=(_group(employee_pct=40.0),))
        assert rules.application_eligibility_warnings(py, SETTINGS) == {}

    def test_ineligible_state_warns_except_when_extending(self):
        py = _plan_year(state=S.APPLICATION_INELIGIBLE)
        assert "ineligible" in rules.application_eligibility_warnings(py, SETTINGS)
        assert rules.is_application_eligible(py, SETTINGS, target_state=S.ENROLLMENT_EXTENDED)


class TestDateValidation:
    def test_valid_dates(self):
        assert rules.validate_plan_year_dates(_plan_year(), TODAY, SETTINGS) == {}

    def test_start_on_not_first_of_month(self):
        errors = rules.validate_plan_year_dates(_plan_year(start_on=date(2026, 9, 15)), TODAY, SETTINGS)
        assert "must be first day of the month" in errors["start_on"]

    def test_end_on_not_a_full_period(self):
        errors = rules.validate_plan_year_dates(_plan_year(end_on=date(2027, 8, 30)), TODAY, SETTINGS)
        assert errors["end_on"] == ["must be last day of the month", "plan year period should be: 364 days"]

    def test_end_on_period_checks_skipped_once_terminated(self):
        py = _plan_year(state=S.TERMINATED, end_on=date(2026, 12, 15))
        assert rules.validate_plan_year_dates(py, TODAY, SETTINGS) == {}

    def test_open_enrollment_order(self):
        py = _plan_year(open_enrollment_start_on=date(2026, 8, 10), open_enrollment_end_on=date(2026, 8, 1))
        errors = rules.validate_plan_year_dates(py, TODAY, SETTINGS)
        assert errors["open_enrollment_end_on"] == ["can't occur before open enrollment start date"]

    def test_open_enrollment_after_start(self):
        py = _plan_year(open_enrollment_end_on=date(2026, 9, 2))
        errors = rules.validate_plan_year_dates(py, TODAY, SETTINGS)
        assert "can't occur before open enrollment end date" in errors["start_on"]

    def test_open_enrollment_starts_too_early(self):
        py = _plan_year(open_enrollment_start_on=date(2026, 6, 30))
        errors = rules.validate_plan_year_dates(py, TODAY, SETTINGS)
        assert errors["open_enrollment_start_on"] == ["can't occur before 2 months before start date"]

    def test_application_started_too_early(self):
        errors = rules.validate_plan_year_dates(_plan_year(), date(2026, 5, 1), SETTINGS)
        assert errors["start_on"] == ["may not start application before 2026-06-01 with 2026-09-01 effective date"]

    def test_imported_and_canceled_plan_years_skip_validation(self):
        bad = dict(start_on=date(2026, 9, 15), end_on=date(2026, 9, 15))
        assert rules.validate_plan_year_dates(_plan_year(imported_plan_year=True, **bad), TODAY, SETTINGS) == {}
        assert rules.validate_plan_year_dates(_plan_year(state=S.CANCELED, **bad), TODAY, SETTINGS) == {}


class TestExportAndMatching:
    def test_draft_never_exported(self):
        assert not rules.eligible_for_export(_plan_year(), date(2026, 9, 2), SETTINGS)

    def test_enrolled_before_start_needs_binder_and_threshold(self):
        paid = EmployerSnapshot(id=5, state="binder_paid", census_employees=_employees("coverage_selected"))
        unpaid = EmployerSnapshot(id=5, state="eligible", census_employees=_employees("coverage_selected"))
        assert rules.eligible_for_export(_plan_year(state=S.ENROLLED, employer=paid), date(2026, 8, 20), SETTINGS)
        assert not rules.eligible_for_export(_plan_year(state=S.ENROLLED, employer=unpaid), date(2026, 8, 20), SETTINGS)
        assert not rules.eligible_for_export(_plan_year(state=S.ENROLLED, employer=paid), date(2026, 8, 15), SETTINGS)

    def test_renewal_enrolled_skips_binder(self):
        py = _plan_year(state=S.RENEWING_ENROLLED)
        assert rules.eligible_for_export(py, date(2026, 8, 20), SETTINGS)

    def test_active_and_conversion(self):
        assert rules.eligible_for_export(_plan_year(state=S.ACTIVE), date(2026, 9, 2), SETTINGS)
        assert not rules.eligible_for_export(_plan_year(state=S.ACTIVE, is_conversion=True), date(2026, 9, 2), SETTINGS)

    def test_matchable_states(self):
        assert rules.employees_are_matchable(_plan_year(state=S.ENROLLING))
        assert rules.employees_are_matchable(_plan_year(state=S.RENEWING_PUBLISHED))
        assert not rules.employees_are_matchable(_plan_year(state=S.DRAFT))
        assert rules.is_eligible_to_match_census_employees(_plan_year(state=S.PUBLISHED))
        assert not rules.is_eligible_to_match_census_employees(_plan_year(state=S.PUBLISHED, benefit_groups=()))

    def test_editable_until_someone_is_assigned(self):
        assert not rules.editable(_plan_year())
        assert rules.editable(_plan_year(employees=(CensusEmployeeSnapshot(id=1),)))


class TestSnapshotFromDict:
    def test_round_trip_fields(self):
        py = plan_year_from_dict(
            {
                "id": 3,
                "state": "enrolling",
                "start_on": "2026-09-01",
                "end_on": "2027-08-31",
                "open_enrollment_start_on": "2026-07-01",
                "open_enrollment_end_on": "2026-08-10",
                "benefit_groups": [
                    {"id": 1, "reference_plan_id": "p", "relationship_benefits": [{"relationship": "employee", "premium_pct": "75"}]}
                ],
                "employer": {
                    "state": "eligible",
                    "census_employees": [{"id": 1, "active_benefit_group_id": 1, "coverage_state": "coverage_waived"}],
                },
            }
        )
        assert py.state == S.ENROLLING
        assert py.benefit_groups[0].employee_premium_pct == 75.0
        assert len(rules.waived(py)) == 1

    @pytest.mark.parametrize(
        "payload",
        [
            {"state": "draft"},
            {"state": "bogus", "start_on": "2026-09-01"},
            "not an object",
        ],
    )
    def test_bad_payloads(self, payload):
        with pytest.raises(ValueError):
            plan_year_from_dict(payload)

    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"employer": "x"}, "employer"),
            ({"employer": {"census_employees": ["alice"]}}, r"employer\.census_employees\[0\]"),
            ({"employer": {"census_employees": {"id": 1}}}, r"employer\.census_employees"),
            ({"employer": {"plan_years": [None]}}, r"employer\.plan_years\[0\]"),
            ({"benefit_groups": [1]}, r"benefit_groups\[0\]"),
            ({"benefit_groups": [{"id": 1, "relationship_benefits": ["employee"]}]}, r"relationship_benefits\[0\]"),
            ({"benefit_groups": [{"id": [1]}]}, r"benefit_groups\[0\]\.id"),
            ({"transitions": ["force_publish"]}, r"transitions\[0\]"),
            ({"fte_count": [3]}, "fte_count"),
            ({"termination_kind": ["voluntary"]}, "termination_kind"),
        ],
    )
    def test_malformed_nested_entries_name_the_field(self, overrides, field):
        payload = {
            "start_on": "2026-09-01",
            "end_on": "2027-08-31",
            "open_enrollment_start_on": "2026-07-01",
            "open_enrollment_end_on": "2026-08-10",
            **overrides,
        }
        with pytest.raises(ValueError, match=field):
            plan_year_from_dict(payload)

    def test_aware_transition_times_are_normalized(self):
        py = plan_year_from_dict(
            {
                "state": "published_invalid",
                "start_on": "2026-09-01",
                "end_on": "2027-08-31",
                "open_enrollment_start_on": "2026-07-01",
                "open_enrollment_end_on": "2026-08-10",
                "transitions": [
                    {"to_state": "published_invalid", "transition_at": "2026-07-01T09:00:00+00:00"},
                    {"to_state": "publish_pending", "transition_at": "2026-06-30T09:00:00"},
                ],
            }
        )
        assert py.latest_transition.to_state == "published_invalid"
        assert py.latest_transition.transition_at.tzinfo is None

    def test_unknown_coverage_state(self):
        with pytest.raises(ValueError, match="coverage_state"):
            plan_year_from_dict(
                {
                    "start_on": "2026-09-01",
                    "end_on": "2027-08-31",
                    "open_enrollment_start_on": "2026-07-01",
                    "open_enrollment_end_on": "2026-08-10",
                    "employer": {"census_employees": [{"id": 1, "coverage_state": "enrolled"}]},
                }
            )


def test_eligibility_report_shape():
    report = rules.eligibility_report(_plan_year(), TODAY, SETTINGS)
    assert report["state"] == "draft"
    assert report["eligible_to_enroll_count"] == 4
    assert report["due_date_for_publish"] == "2026-08-05"
    assert report["is_application_valid"] is True
    assert report["is_application_eligible"] is True
    assert report["is_enrollment_valid"] is True
    assert report["eligible_for_export"] is False
