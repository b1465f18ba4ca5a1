"""
Central constants for the exchange admin service.
"""
from __future__ import annotations

EVENT_NAMESPACE = "acapi.info.events"

# Plan year lifecycle notifications
EMPLOYEE_RENEWAL_INVITATIONS_REQUESTED = f"{EVENT_NAMESPACE}.plan_year.employee_renewal_invitations_requested"
EMPLOYEE_INITIAL_ENROLLMENT_INVITATIONS_REQUESTED = (
    f"{EVENT_NAMESPACE}.plan_year.employee_initial_enrollment_invitations_requested"
)
EMPLOYEE_ENROLLMENT_INVITATIONS_REQUESTED = f"{EVENT_NAMESPACE}.plan_year.employee_enrollment_invitations_requested"
EMPLOYEE_PASSIVE_RENEWALS_REQUESTED = f"{EVENT_NAMESPACE}.plan_year.employee_passive_renewals_requested"

VOLUNTARY_TERMINATED_PLAN_YEAR_EVENT_TAG = "benefit_coverage_period_terminated_voluntary"
VOLUNTARY_TERMINATED_PLAN_YEAR_EVENT = f"{EVENT_NAMESPACE}.employer.{VOLUNTARY_TERMINATED_PLAN_YEAR_EVENT_TAG}"

NON_PAYMENT_TERMINATED_PLAN_YEAR_EVENT_TAG = "benefit_coverage_period_terminated_nonpayment"
NON_PAYMENT_TERMINATED_PLAN_YEAR_EVENT = f"{EVENT_NAMESPACE}.employer.{NON_PAYMENT_TERMINATED_PLAN_YEAR_EVENT_TAG}"

INITIAL_OR_RENEWAL_PLAN_YEAR_DROP_EVENT_TAG = "benefit_coverage_renewal_carrier_dropped"
INITIAL_OR_RENEWAL_PLAN_YEAR_DROP_EVENT = f"{EVENT_NAMESPACE}.employer.{INITIAL_OR_RENEWAL_PLAN_YEAR_DROP_EVENT_TAG}"

# Agency notifications
GENERAL_AGENT_TERMINATED_EVENT = f"{EVENT_NAMESPACE}.employer.general_agent_terminated"
GENERAL_AGENT_HIRED_EVENT = f"{EVENT_NAMESPACE}.employer.general_agent_hired"
BROKER_HIRED_EVENT = f"{EVENT_NAMESPACE}.employer.broker_added"
BROKER_FIRED_EVENT = f"{EVENT_NAMESPACE}.employer.broker_terminated"
DEFAULT_GA_CHANGED_EVENT = f"{EVENT_NAMESPACE}.broker.default_ga_changed"

TERMINATION_KINDS = frozenset({"voluntary", "nonpayment"})

# Relationship kinds a benefit group may offer
PERSONAL_RELATIONSHIP_KINDS = (
    "employee",
    "spouse",
    "domestic_partner",
    "child_under_26",
    "child_26_and_over",
)

PLAN_OPTION_KINDS = frozenset({"single_plan", "single_carrier", "metal_level"})
EFFECTIVE_ON_KINDS = frozenset({"date_of_hire", "first_of_month"})
EFFECTIVE_ON_OFFSETS = frozenset({0, 1, 30, 60})
