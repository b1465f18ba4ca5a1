from __future__ import annotations

from enum import Enum


class PlanYearState(str, Enum):
    DRAFT = "draft"
    PUBLISH_PENDING = "publish_pending"  # submitted with eligibility warnings
    ELIGIBILITY_REVIEW = "eligibility_review"  # warnings under review by exchange staff
    PUBLISHED = "published"  # finalized; employees may view benefits but not enroll
    PUBLISHED_INVALID = "published_invalid"  # non-compliant application was force-published
    ENROLLING = "enrolling"
    ENROLLED = "enrolled"  # open enrollment ended, eligible, effective date in future
    ENROLLMENT_EXTENDED = "enrollment_extended"
    APPLICATION_INELIGIBLE = "application_ineligible"
    EXPIRED = "expired"
    CANCELED = "canceled"
    ACTIVE = "active"
    TERMINATION_PENDING = "termination_pending"

    RENEWING_DRAFT = "renewing_draft"
    RENEWING_PUBLISHED = "renewing_published"
    RENEWING_PUBLISH_PENDING = "renewing_publish_pending"
    RENEWING_ENROLLING = "renewing_enrolling"
    RENEWING_ENROLLED = "renewing_enrolled"
    RENEWING_ENROLLMENT_EXTENDED = "renewing_enrollment_extended"
    RENEWING_APPLICATION_INELIGIBLE = "renewing_application_ineligible"
    RENEWING_CANCELED = "renewing_canceled"

    SUSPENDED = "suspended"  # premium 61-90 days past due
    TERMINATED = "terminated"
    CONVERSION_EXPIRED = "conversion_expired"

    def __str__(self) -> str:
        return self.value


S = PlanYearState

INITIAL_STATE = S.DRAFT

PUBLISHED = frozenset({S.PUBLISHED, S.ENROLLING, S.ENROLLMENT_EXTENDED, S.ENROLLED, S.ACTIVE, S.SUSPENDED})
RENEWING = frozenset(
    {
        S.RENEWING_DRAFT,
        S.RENEWING_PUBLISHED,
        S.RENEWING_ENROLLING,
        S.RENEWING_ENROLLMENT_EXTENDED,
        S.RENEWING_ENROLLED,
        S.RENEWING_PUBLISH_PENDING,
    }
)
RENEWING_PUBLISHED = frozenset(
    {S.RENEWING_PUBLISHED, S.RENEWING_ENROLLING, S.RENEWING_ENROLLMENT_EXTENDED, S.RENEWING_ENROLLED}
)
TERMINATED = frozenset({S.TERMINATION_PENDING, S.TERMINATED, S.EXPIRED})

INELIGIBLE_FOR_EXPORT = frozenset(
    {
        S.DRAFT,
        S.PUBLISH_PENDING,
        S.ELIGIBILITY_REVIEW,
        S.PUBLISHED_INVALID,
        S.CANCELED,
        S.RENEWING_DRAFT,
        S.SUSPENDED,
        S.APPLICATION_INELIGIBLE,
        S.RENEWING_APPLICATION_INELIGIBLE,
        S.RENEWING_CANCELED,
        S.CONVERSION_EXPIRED,
    }
)

OPEN_ENROLLMENT = frozenset(
    {S.ENROLLING, S.ENROLLMENT_EXTENDED, S.RENEWING_ENROLLING, S.RENEWING_ENROLLMENT_EXTENDED}
)
INITIAL_ENROLLING = frozenset(
    {
        S.PUBLISH_PENDING,
        S.ELIGIBILITY_REVIEW,
        S.PUBLISHED,
        S.PUBLISHED_INVALID,
        S.ENROLLING,
        S.ENROLLMENT_EXTENDED,
        S.ENROLLED,
    }
)
INITIAL_ELIGIBLE = frozenset({S.PUBLISHED, S.ENROLLING, S.ENROLLMENT_EXTENDED, S.ENROLLED})

# Census employees may be matched to employee roles in these states.
MATCHABLE = RENEWING_PUBLISHED | frozenset({S.PUBLISHED, S.ENROLLING, S.ENROLLMENT_EXTENDED, S.ENROLLED, S.ACTIVE})

# Renewal applications that a termination or a new renewal must cancel first.
CANCELABLE_RENEWAL = RENEWING | frozenset({S.RENEWING_APPLICATION_INELIGIBLE})

# States the nightly date advance never needs to look at again.
FINAL = frozenset({S.CANCELED, S.RENEWING_CANCELED, S.TERMINATED, S.CONVERSION_EXPIRED})


class PlanYearEvent(str, Enum):
    ACTIVATE = "activate"
    EXPIRE = "expire"
    ADVANCE_DATE = "advance_date"
    PUBLISH = "publish"
    WITHDRAW_PENDING = "withdraw_pending"
    FORCE_PUBLISH = "force_publish"
    REQUEST_ELIGIBILITY_REVIEW = "request_eligibility_review"
    GRANT_ELIGIBILITY = "grant_eligibility"
    DENY_ELIGIBILITY = "deny_eligibility"
    CANCEL = "cancel"
    SUSPEND = "suspend"
    SCHEDULE_TERMINATION = "schedule_termination"
    TERMINATE = "terminate"
    REINSTATE_PLAN_YEAR = "reinstate_plan_year"
    RENEW_PLAN_YEAR = "renew_plan_year"
    RENEW_PUBLISH = "renew_publish"
    REVERT_APPLICATION = "revert_application"
    ENROLL = "enroll"
    REVERT_RENEWAL = "revert_renewal"
    CANCEL_RENEWAL = "cancel_renewal"
    CONVERSION_EXPIRE = "conversion_expire"
    CLOSE_OPEN_ENROLLMENT = "close_open_enrollment"
    EXTEND_OPEN_ENROLLMENT = "extend_open_enrollment"

    def __str__(self) -> str:
        return self.value


class Effect(str, Enum):
    """Work the caller must carry out after a transition; the engine itself never touches storage."""

    ACCEPT_APPLICATION = "accept_application"
    DECLINE_APPLICATION = "decline_application"
    RATIFY_ENROLLMENT = "ratify_enrollment"
    DENY_ENROLLMENT = "deny_enrollment"
    REVERT_EMPLOYER_APPLICATION = "revert_employer_application"
    LINK_CENSUS_EMPLOYEES = "link_census_employees"
    SEND_EMPLOYEE_INVITES = "send_employee_invites"
    TRIGGER_PASSIVE_RENEWALS = "trigger_passive_renewals"
    CANCEL_ENROLLMENTS = "cancel_enrollments"
    CANCEL_EMPLOYEE_ENROLLMENTS = "cancel_employee_enrollments"
    CANCEL_EMPLOYEE_BENEFIT_PACKAGES = "cancel_employee_benefit_packages"
    TERMINATE_EMPLOYEE_BENEFIT_PACKAGES = "terminate_employee_benefit_packages"
    TERMINATE_EMPLOYEE_ENROLLMENTS = "terminate_employee_enrollments"
    NOTIFY_CANCEL_EVENT = "notify_cancel_event"
    NOTIFY_TERMINATION = "notify_termination"

    def __str__(self) -> str:
        return self.value


def parse_state(value: str | PlanYearState) -> PlanYearState:
    try:
        return PlanYearState(value)
    except ValueError:
        raise ValueError(f"Unknown plan year state: {value!r}") from None


def parse_event(value: str | PlanYearEvent) -> PlanYearEvent:
    try:
        return PlanYearEvent(value)
    except ValueError:
        raise ValueError(f"Unknown plan year event: {value!r}") from None
