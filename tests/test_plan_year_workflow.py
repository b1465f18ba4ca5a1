"""Unit tests for the plan-year lifecycle state machine (no database)."""
from dataclasses import replace
from datetime import date, datetime

import pytest

from app.hbx.config import ShopMarketSettings
from app.hbx.modules.plan_years import workflow
from app.hbx.modules.plan_years.rules import PlanYearValidationError
from app.hbx.modules.plan_years.snapshot import (
    BenefitGroupSnapshot,
    CensusEmployeeSnapshot,
    EmployerSnapshot,
    PlanYearSnapshot,
    PlanYearSummary,
    RelationshipBenefit,
    TransitionRecord,
)
from app.hbx.modules.plan_years.states import Effect, PlanYearEvent as E, S
from app.hbx.modules.plan_years.workflow import InvalidTransition

SETTINGS = ShopMarketSettings()
TODAY = date(2026, 7, 1)


def _employees(*coverage_states):
    return tuple(
        CensusEmployeeSnapshot(id=i, active_benefit_group_id=1, coverage_state=state)
        for i, state in enumerate(coverage_states)
    )


def _plan_year(*, employer_state="applicant", local=True, employees=None, **overrides):
    if employees is None:
        employees = _employees(*["coverage_selected"] * 4)
    base = dict(
        id=10,
        state=S.DRAFT,
        start_on=date(2026, 9, 1),
        end_on=date(2027, 8, 31),
        open_enrollment_start_on=date(2026, 7, 1),
        open_enrollment_end_on=date(2026, 8, 10),
        benefit_groups=(
            BenefitGroupSnapshot(
                id=1,
                title="Staff",
                reference_plan_id="plan-1",
                relationship_benefits=(RelationshipBenefit("employee", 80.0),),
                is_default=True,
            ),
        ),
        employer=EmployerSnapshot(
            id=5, state=employer_state, is_primary_office_local=local, census_employees=employees
        ),
    )
    base.update(overrides)
    return PlanYearSnapshot(**base)


def _fire(py, event, today=TODAY):
    return workflow.fire(py, event, today=today, settings=SETTINGS)


class TestPublish:
    def test_publish_during_open_enrollment_starts_enrolling(self):
        outcome = _fire(_plan_year(), E.PUBLISH)
        assert outcome.to_state == S.ENROLLING
        assert outcome.changed
        assert outcome.effects == (
            Effect.ACCEPT_APPLICATION,
            Effect.SEND_EMPLOYEE_INVITES,
            Effect.LINK_CENSUS_EMPLOYEES,
        )
        assert outcome.plan_year.state == S.ENROLLING
        assert outcome.plan_year.open_enrollment_start_on == date(2026, 7, 1)
        assert outcome.record.event == "publish"
        assert outcome.plan_year.transitions[-1] == outcome.record

    def test_publish_before_open_enrollment(self):
        outcome = _fire(_plan_year(), E.PUBLISH, today=date(2026, 6, 20))
        assert outcome.to_state == S.PUBLISHED
        assert Effect.LINK_CENSUS_EMPLOYEES in outcome.effects

    def test_late_publish_moves_open_enrollment_start(self):
        outcome = _fire(_plan_year(), "publish", today=date(2026, 7, 10))
        assert outcome.to_state == S.ENROLLING
        assert outcome.plan_year.open_enrollment_start_on == date(2026, 7, 10)

    def test_publish_with_warnings_goes_pending(self):
        outcome = _fire(_plan_year(local=False), E.PUBLISH)
        assert outcome.to_state == S.PUBLISH_PENDING
        assert outcome.effects == ()

    def test_unpublishable_application_stays_in_draft(self):
        outcome = _fire(_plan_year(benefit_groups=()), E.PUBLISH)
        assert outcome.to_state == S.DRAFT
        assert not outcome.changed

    def test_force_publish_pending_application(self):
        outcome = _fire(_plan_year(state=S.PUBLISH_PENDING, local=False), E.FORCE_PUBLISH)
        assert outcome.to_state == S.PUBLISHED_INVALID
        assert outcome.effects == (Effect.DECLINE_APPLICATION,)

    def test_force_publish_ignores_publish_due_date(self):
        late = date(2026, 8, 7)
        assert _fire(_plan_year(), E.PUBLISH, today=late).to_state == S.DRAFT

        outcome = _fire(_plan_year(), E.FORCE_PUBLISH, today=late)
        assert outcome.to_state == S.ENROLLING
        assert outcome.plan_year.open_enrollment_start_on == late

    def test_withdraw_pending(self):
        assert _fire(_plan_year(state=S.PUBLISH_PENDING), E.WITHDRAW_PENDING).to_state == S.DRAFT

    def test_renewing_draft_publishes_into_renewing_enrolling(self):
        py = _plan_year(state=S.RENEWING_DRAFT, open_enrollment_end_on=date(2026, 8, 13))
        outcome = _fire(py, E.PUBLISH)
        assert outcome.to_state == S.RENEWING_ENROLLING
        assert Effect.TRIGGER_PASSIVE_RENEWALS in outcome.effects
        assert Effect.SEND_EMPLOYEE_INVITES in outcome.effects


class TestInvalidEvents:
    def test_activate_from_draft(self):
        with pytest.raises(InvalidTransition) as exc:
            _fire(_plan_year(), E.ACTIVATE)
        assert exc.value.event == E.ACTIVATE
        assert exc.value.state == S.DRAFT
        assert "not permitted" in str(exc.value)

    def test_unknown_event(self):
        with pytest.raises(ValueError, match="Unknown plan year event"):
            _fire(_plan_year(), "explode")

    def test_permitted_events(self):
        events = workflow.permitted_events(_plan_year(), today=TODAY, settings=SETTINGS)
        assert E.PUBLISH in events
        assert E.FORCE_PUBLISH in events
        assert E.CANCEL in events
        assert E.RENEW_PLAN_YEAR in events
        assert E.ACTIVATE not in events
        assert E.ADVANCE_DATE not in events
        assert workflow.may_fire(_plan_year(), "publish", today=TODAY, settings=SETTINGS)


class TestAdvanceDate:
    def test_open_enrollment_close_with_valid_enrollment(self):
        outcome = _fire(_plan_year(state=S.ENROLLING), E.ADVANCE_DATE, today=date(2026, 8, 11))
        assert outcome.to_state == S.ENROLLED
        assert outcome.effects == (Effect.RATIFY_ENROLLMENT,)

    def test_open_enrollment_close_with_low_participation(self):
        py = _plan_year(
            state=S.ENROLLING,
            employees=_employees("coverage_selected", "coverage_selected", "initialized", "initialized"),
        )
        outcome = _fire(py, E.ADVANCE_DATE, today=date(2026, 8, 11))
        assert outcome.to_state == S.APPLICATION_INELIGIBLE
        assert outcome.effects == (Effect.DENY_ENROLLMENT,)

    def test_enrolled_becomes_active_on_start(self):
        outcome = _fire(_plan_year(state=S.ENROLLED), E.ADVANCE_DATE, today=date(2026, 9, 1))
        assert outcome.to_state == S.ACTIVE

    def test_published_opens_enrollment(self):
        outcome = _fire(_plan_year(state=S.PUBLISHED), E.ADVANCE_DATE, today=date(2026, 7, 1))
        assert outcome.to_state == S.ENROLLING

    def test_enrolling_before_close_is_a_no_op(self):
        outcome = _fire(_plan_year(state=S.ENROLLING), E.ADVANCE_DATE, today=date(2026, 7, 15))
        assert outcome.to_state == S.ENROLLING
        assert not outcome.changed
        assert outcome.effects == ()

    def test_active_terminates_after_end(self):
        outcome = _fire(_plan_year(state=S.ACTIVE), E.ADVANCE_DATE, today=date(2027, 9, 1))
        assert outcome.to_state == S.TERMINATED

    def test_stale_draft_expires_on_end_date(self):
        outcome = _fire(_plan_year(), E.ADVANCE_DATE, today=date(2027, 8, 31))
        assert outcome.to_state == S.EXPIRED


class TestCancel:
    def test_cancel_enrolled(self):
        outcome = _fire(_plan_year(state=S.ENROLLED, employer_state="binder_paid"), E.CANCEL, today=date(2026, 8, 20))
        assert outcome.to_state == S.CANCELED
        assert outcome.plan_year.end_on == outcome.plan_year.start_on
        assert outcome.effects == (
            Effect.CANCEL_EMPLOYEE_ENROLLMENTS,
            Effect.CANCEL_EMPLOYEE_BENEFIT_PACKAGES,
            Effect.NOTIFY_CANCEL_EVENT,
        )
        assert workflow.cancellation_notice_required(outcome, date(2026, 8, 20), SETTINGS)

    def test_cancel_before_transmission_needs_no_notice(self):
        outcome = _fire(_plan_year(state=S.ENROLLED, employer_state="binder_paid"), E.CANCEL, today=date(2026, 8, 12))
        assert not workflow.cancellation_notice_required(outcome, date(2026, 8, 12), SETTINGS)

    def test_cancel_renewal(self):
        outcome = _fire(_plan_year(state=S.RENEWING_ENROLLING), E.CANCEL_RENEWAL)
        assert outcome.to_state == S.RENEWING_CANCELED
        assert Effect.NOTIFY_CANCEL_EVENT in outcome.effects

    def test_revert_application(self):
        outcome = _fire(_plan_year(state=S.ENROLLING), E.REVERT_APPLICATION)
        assert outcome.to_state == S.DRAFT
        assert outcome.effects == (Effect.CANCEL_ENROLLMENTS, Effect.REVERT_EMPLOYER_APPLICATION)


class TestEligibilityReview:
    def _published_invalid(self):
        record = TransitionRecord(
            from_state="publish_pending",
            to_state="published_invalid",
            event="force_publish",
            transition_at=datetime(2026, 7, 1, 9, 0),
        )
        return _plan_year(state=S.PUBLISHED_INVALID, transitions=(record,))

    def test_review_within_appeal_period(self):
        outcome = _fire(self._published_invalid(), E.REQUEST_ELIGIBILITY_REVIEW, today=date(2026, 7, 10))
        assert outcome.to_state == S.ELIGIBILITY_REVIEW
        granted = _fire(outcome.plan_year, E.GRANT_ELIGIBILITY, today=date(2026, 7, 11))
        assert granted.to_state == S.PUBLISHED

    def test_review_on_last_day_of_appeal_period(self):
        # transition on 7/1 09:00 is after midnight of 7/31 - 30 days
        outcome = _fire(self._published_invalid(), E.REQUEST_ELIGIBILITY_REVIEW, today=date(2026, 7, 31))
        assert outcome.to_state == S.ELIGIBILITY_REVIEW

    def test_review_day_after_appeal_period_ends(self):
        with pytest.raises(InvalidTransition):
            _fire(self._published_invalid(), E.REQUEST_ELIGIBILITY_REVIEW, today=date(2026, 8, 1))

    def test_review_after_appeal_period(self):
        with pytest.raises(InvalidTransition):
            _fire(self._published_invalid(), E.REQUEST_ELIGIBILITY_REVIEW, today=date(2026, 8, 15))


class TestTermination:
    def test_future_end_schedules_termination(self):
        outcome = workflow.terminate_plan_year(
            _plan_year(state=S.ACTIVE),
            date(2026, 12, 31),
            date(2026, 12, 15),
            "voluntary",
            today=date(2026, 12, 15),
            settings=SETTINGS,
        )
        assert outcome.to_state == S.TERMINATION_PENDING
        assert outcome.effects == (Effect.TERMINATE_EMPLOYEE_ENROLLMENTS, Effect.NOTIFY_TERMINATION)
        assert outcome.plan_year.end_on == date(2026, 12, 31)
        assert outcome.plan_year.termination_kind == "voluntary"

    def test_past_end_terminates_immediately(self):
        outcome = workflow.terminate_plan_year(
            _plan_year(state=S.ACTIVE),
            date(2026, 11, 30),
            date(2026, 12, 15),
            "nonpayment",
            today=date(2026, 12, 15),
            settings=SETTINGS,
        )
        assert outcome.to_state == S.TERMINATED
        assert Effect.TERMINATE_EMPLOYEE_BENEFIT_PACKAGES in outcome.effects
        assert Effect.REVERT_EMPLOYER_APPLICATION in outcome.effects

    @pytest.mark.parametrize(
        "end_on,kind,key",
        [
            (date(2026, 12, 31), "bored", "termination_kind"),
            (date(2026, 8, 1), "voluntary", "end_on"),
        ],
    )
    def test_bad_termination_requests(self, end_on, kind, key):
        with pytest.raises(PlanYearValidationError) as exc:
            workflow.terminate_plan_year(
                _plan_year(state=S.ACTIVE), end_on, date(2026, 12, 15), kind, today=date(2026, 12, 15), settings=SETTINGS
            )
        assert key in exc.value.errors

    def test_draft_cannot_be_terminated(self):
        with pytest.raises(InvalidTransition):
            workflow.terminate_plan_year(
                _plan_year(), date(2026, 12, 31), date(2026, 12, 15), "voluntary", today=date(2026, 12, 15), settings=SETTINGS
            )

    def test_reinstate_restores_full_period(self):
        py = _plan_year(state=S.TERMINATED, end_on=date(2026, 12, 31), terminated_on=date(2026, 12, 1))
        outcome = _fire(py, E.REINSTATE_PLAN_YEAR, today=date(2027, 1, 5))
        assert outcome.to_state == S.ACTIVE
        assert outcome.plan_year.end_on == date(2027, 8, 31)
        assert outcome.plan_year.terminated_on is None

    def test_terminate_application_outside_coverage(self):
        with pytest.raises(PlanYearValidationError):
            workflow.terminate_application(
                _plan_year(state=S.ACTIVE), date(2028, 1, 1), today=date(2026, 12, 15), settings=SETTINGS
            )

    def test_renewal_to_cancel(self):
        renewal = PlanYearSummary(id=11, state=S.RENEWING_ENROLLING, start_on=date(2027, 9, 1), end_on=date(2028, 8, 31))
        py = _plan_year(state=S.ACTIVE)
        assert workflow.renewal_to_cancel(py) is None
        py = replace(py, employer=replace(py.employer, plan_years=(renewal,)))
        assert workflow.renewal_to_cancel(py) == renewal


class TestOpenEnrollmentChanges:
    def test_extend_ineligible_application(self):
        outcome = workflow.extend_open_enrollment(
            _plan_year(state=S.APPLICATION_INELIGIBLE), date(2026, 8, 20), today=date(2026, 8, 12), settings=SETTINGS
        )
        assert outcome.to_state == S.ENROLLMENT_EXTENDED
        assert outcome.plan_year.open_enrollment_end_on == date(2026, 8, 20)

    def test_extend_beyond_effective_month(self):
        with pytest.raises(PlanYearValidationError) as exc:
            workflow.extend_open_enrollment(
                _plan_year(state=S.APPLICATION_INELIGIBLE), date(2026, 10, 1), today=date(2026, 8, 12), settings=SETTINGS
            )
        assert "open_enrollment_end_on" in exc.value.errors

    def test_end_open_enrollment(self):
        outcome = workflow.end_open_enrollment(_plan_year(state=S.ENROLLING), today=date(2026, 8, 5), settings=SETTINGS)
        assert outcome.to_state == S.ENROLLED
        assert outcome.effects == (Effect.RATIFY_ENROLLMENT,)

    def test_end_open_enrollment_with_explicit_date(self):
        outcome = workflow.end_open_enrollment(
            _plan_year(state=S.ENROLLING), date(2026, 8, 5), today=date(2026, 8, 5), settings=SETTINGS
        )
        assert outcome.plan_year.open_enrollment_end_on == date(2026, 8, 5)


class TestConversion:
    def test_conversion_expire_needs_both_flags(self):
        py = _plan_year(state=S.ACTIVE, is_conversion=True)
        with pytest.raises(InvalidTransition):
            _fire(py, E.CONVERSION_EXPIRE)

        py = replace(py, employer=replace(py.employer, is_conversion=True))
        assert _fire(py, E.CONVERSION_EXPIRE).to_state == S.CONVERSION_EXPIRED
