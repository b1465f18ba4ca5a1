"""
Plan years service layer.

Translates rows to snapshots, runs them through the rules engine and writes
the outcome back: new state and dates, the workflow transition, the audit
event, and the effects (employer lifecycle, census assignments,
notifications) the engine asks for.
"""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from app.hbx import constants
from app.hbx.audit import record_event, record_transition
from app.hbx.config import ShopMarketSettings
from app.hbx.models import WorkflowStateTransition
from app.hbx.modules.employers import service as employer_service
from app.hbx.modules.employers.models import EmployerProfile
from app.hbx.notifications import notify

from . import rules, timetable, workflow
from .models import BenefitGroup, PlanYear, RelationshipBenefit
from .rules import PlanYearValidationError
from .snapshot import (
    BenefitGroupSnapshot,
    CensusEmployeeSnapshot,
    EmployerSnapshot,
    PlanYearSnapshot,
    PlanYearSummary,
    TransitionRecord,
)
from .snapshot import RelationshipBenefit as RelationshipBenefitSnapshot
from .states import (
    CANCELABLE_RENEWAL,
    FINAL,
    OPEN_ENROLLMENT,
    PUBLISHED,
    RENEWING,
    Effect,
    PlanYearEvent,
    S,
    parse_event,
    parse_state,
)
from .workflow import TransitionOutcome

if TYPE_CHECKING:
    from app.hbx.models import User

logger = logging.getLogger(__name__)

EDITABLE_STATES = {S.DRAFT, S.RENEWING_DRAFT}


def _now(today: date) -> datetime:
    now = datetime.utcnow()
    if now.date() == today:
        return now
    return datetime.combine(today, now.time())


# ─────────────────────────────────────────────────────────────────────────────
# Snapshots
# ─────────────────────────────────────────────────────────────────────────────


def _benefit_group_snapshot(bg: BenefitGroup) -> BenefitGroupSnapshot:
    return BenefitGroupSnapshot(
        id=bg.id,
        title=bg.title,
        reference_plan_id=bg.reference_plan_id,
        relationship_benefits=tuple(
            RelationshipBenefitSnapshot(
                relationship=rb.relationship_kind,
                premium_pct=float(rb.premium_pct),
                offered=rb.offered,
            )
            for rb in bg.relationship_benefits
        ),
        is_default=bg.is_default,
        is_congress=bg.is_congress,
        dental_reference_plan_id=bg.dental_reference_plan_id,
        elected_dental_plan_ids=tuple(bg.elected_dental_plan_ids),
    )


def build_snapshot(s: Session, plan_year: PlanYear) -> PlanYearSnapshot:
    employer: EmployerProfile = plan_year.employer_profile
    group_ids = {bg.id for bg in plan_year.benefit_groups if bg.is_active}

    census: list[CensusEmployeeSnapshot] = []
    for ce in employer.census_employees:
        active = ce.active_benefit_group_assignment
        renewal = ce.renewal_benefit_group_assignment
        if renewal is not None and renewal.benefit_group_id in group_ids:
            current = renewal
        elif active is not None and active.benefit_group_id in group_ids:
            current = active
        else:
            current = None
        census.append(
            CensusEmployeeSnapshot(
                id=ce.id,
                is_active=ce.is_active,
                is_business_owner=ce.is_business_owner,
                active_benefit_group_id=active.benefit_group_id if active else None,
                renewal_benefit_group_id=renewal.benefit_group_id if renewal else None,
                coverage_state=current.aasm_state if current else "initialized",
            )
        )

    transitions = (
        s.query(WorkflowStateTransition)
        .filter(WorkflowStateTransition.transitional_type == "PlanYear")
        .filter(WorkflowStateTransition.transitional_id == plan_year.id)
        .order_by(WorkflowStateTransition.transition_at.asc(), WorkflowStateTransition.id.asc())
        .all()
    )

    return PlanYearSnapshot(
        id=plan_year.id,
        state=parse_state(plan_year.aasm_state),
        start_on=plan_year.start_on,
        end_on=plan_year.end_on,
        open_enrollment_start_on=plan_year.open_enrollment_start_on,
        open_enrollment_end_on=plan_year.open_enrollment_end_on,
        benefit_groups=tuple(_benefit_group_snapshot(bg) for bg in plan_year.benefit_groups if bg.is_active),
        employer=EmployerSnapshot(
            id=employer.id,
            state=employer.aasm_state,
            is_primary_office_local=employer.is_primary_office_local,
            is_conversion=employer.is_conversion,
            registered_on=employer.registered_on,
            census_employees=tuple(census),
            plan_years=tuple(
                PlanYearSummary(id=py.id, state=parse_state(py.aasm_state), start_on=py.start_on, end_on=py.end_on)
                for py in employer.plan_years
            ),
        ),
        fte_count=plan_year.fte_count,
        pte_count=plan_year.pte_count,
        msp_count=plan_year.msp_count,
        is_conversion=plan_year.is_conversion,
        imported_plan_year=plan_year.imported_plan_year,
        terminated_on=plan_year.terminated_on,
        termination_kind=plan_year.termination_kind,
        transitions=tuple(
            TransitionRecord(
                from_state=t.from_state, to_state=t.to_state, event=t.event, transition_at=t.transition_at
            )
            for t in transitions
        ),
    )


def _write_back(plan_year: PlanYear, snap: PlanYearSnapshot, user: User | None) -> None:
    plan_year.aasm_state = snap.state.value
    plan_year.start_on = snap.start_on
    plan_year.end_on = snap.end_on
    plan_year.open_enrollment_start_on = snap.open_enrollment_start_on
    plan_year.open_enrollment_end_on = snap.open_enrollment_end_on
    plan_year.terminated_on = snap.terminated_on
    plan_year.termination_kind = snap.termination_kind
    plan_year.updated_at = datetime.utcnow()
    if user is not None:
        plan_year.updated_by_user_id = user.id


def get_plan_year(s: Session, plan_year_id: int) -> PlanYear | None:
    return s.get(PlanYear, plan_year_id)


# ─────────────────────────────────────────────────────────────────────────────
# Creating and editing
# ─────────────────────────────────────────────────────────────────────────────


def _validate_dates(snap: PlanYearSnapshot, today: date, settings: ShopMarketSettings) -> None:
    errors = rules.validate_plan_year_dates(snap, today, settings)
    if errors:
        raise PlanYearValidationError(errors)


def create_plan_year(
    s: Session,
    employer: EmployerProfile,
    *,
    start_on: date,
    settings: ShopMarketSettings,
    today: date,
    end_on: date | None = None,
    open_enrollment_start_on: date | None = None,
    open_enrollment_end_on: date | None = None,
    fte_count: int = 0,
    pte_count: int = 0,
    msp_count: int = 0,
    imported_plan_year: bool = False,
    is_conversion: bool = False,
    user: User | None = None,
) -> PlanYear:
    """Create a draft plan year. Dates not given are taken from the SHOP enrollment timetable."""
    if not imported_plan_year:
        check = timetable.check_start_on(start_on, today, settings)
        if check["result"] != "ok":
            raise PlanYearValidationError({"start_on": [check["msg"]]})

    for name, value in (("fte_count", fte_count), ("pte_count", pte_count), ("msp_count", msp_count)):
        if value < 0:
            raise PlanYearValidationError({name: ["can't be negative"]})

    defaults = timetable.default_plan_year_dates(start_on, today, settings)
    plan_year = PlanYear(
        employer_profile_id=employer.id,
        start_on=start_on,
        end_on=end_on or defaults["end_on"],
        open_enrollment_start_on=open_enrollment_start_on or defaults["open_enrollment_start_on"],
        open_enrollment_end_on=open_enrollment_end_on or defaults["open_enrollment_end_on"],
        fte_count=fte_count,
        pte_count=pte_count,
        msp_count=msp_count,
        imported_plan_year=imported_plan_year,
        is_conversion=is_conversion,
        aasm_state=S.DRAFT.value,
        created_by_user_id=user.id if user else None,
        updated_by_user_id=user.id if user else None,
    )
    s.add(plan_year)
    employer.plan_years.append(plan_year)
    s.flush()

    _validate_dates(build_snapshot(s, plan_year), today, settings)

    record_event(
        s,
        actor=user,
        action="plan_year.create",
        entity_type="PlanYear",
        entity_id=str(plan_year.id),
        metadata={
            "employer_profile_id": employer.id,
            "start_on": plan_year.start_on,
            "end_on": plan_year.end_on,
            "open_enrollment_start_on": plan_year.open_enrollment_start_on,
            "open_enrollment_end_on": plan_year.open_enrollment_end_on,
        },
    )
    logger.info("Created plan year %s for employer %s starting %s", plan_year.id, employer.hbx_id, start_on)
    return plan_year


def update_plan_year_dates(
    s: Session,
    plan_year: PlanYear,
    *,
    settings: ShopMarketSettings,
    today: date,
    start_on: date | None = None,
    end_on: date | None = None,
    open_enrollment_start_on: date | None = None,
    open_enrollment_end_on: date | None = None,
    user: User | None = None,
) -> PlanYear:
    if parse_state(plan_year.aasm_state) not in EDITABLE_STATES:
        raise PlanYearValidationError({"base": [f"Plan year in state '{plan_year.aasm_state}' can't be edited"]})

    changes: dict[str, dict[str, Any]] = {}
    for name, value in (
        ("start_on", start_on),
        ("end_on", end_on),
        ("open_enrollment_start_on", open_enrollment_start_on),
        ("open_enrollment_end_on", open_enrollment_end_on),
    ):
        if value is not None and getattr(plan_year, name) != value:
            changes[name] = {"from": getattr(plan_year, name), "to": value}
            setattr(plan_year, name, value)

    if not changes:
        return plan_year

    _validate_dates(build_snapshot(s, plan_year), today, settings)

    if "start_on" in changes:
        # Assignments follow the plan year's coverage period.
        group_ids = [bg.id for bg in plan_year.benefit_groups]
        for bga in employer_service.assignments_for_benefit_groups(s, group_ids):
            bga.start_on = plan_year.start_on
            if bga.end_on is not None:
                bga.end_on = plan_year.end_on

    plan_year.updated_at = datetime.utcnow()
    if user is not None:
        plan_year.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="plan_year.update_dates",
        entity_type="PlanYear",
        entity_id=str(plan_year.id),
        metadata={"changes": changes},
    )
    return plan_year


def _parse_premium_pct(value: Any) -> Decimal:
    try:
        pct = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise PlanYearValidationError({"relationship_benefits": ["premium_pct must be a number"]}) from None
    if pct < 0 or pct > 100:
        raise PlanYearValidationError({"relationship_benefits": ["premium_pct must be between 0 and 100"]})
    return pct


def add_benefit_group(
    s: Session,
    plan_year: PlanYear,
    payload: dict[str, Any],
    *,
    user: User | None = None,
) -> BenefitGroup:
    if parse_state(plan_year.aasm_state) not in EDITABLE_STATES:
        raise PlanYearValidationError(
            {"benefit_groups": [f"Benefit groups can't be added to a plan year in state '{plan_year.aasm_state}'"]}
        )

    title = (payload.get("title") or "").strip()
    if not title:
        raise PlanYearValidationError({"title": ["is required"]})
    if any(bg.title == title for bg in plan_year.benefit_groups):
        raise PlanYearValidationError({"title": [f"'{title}' is already used in this plan year"]})

    plan_option_kind = (payload.get("plan_option_kind") or "single_carrier").strip()
    if plan_option_kind not in constants.PLAN_OPTION_KINDS:
        raise PlanYearValidationError({"plan_option_kind": [f"must be one of: {', '.join(sorted(constants.PLAN_OPTION_KINDS))}"]})
    effective_on_kind = (payload.get("effective_on_kind") or "first_of_month").strip()
    if effective_on_kind not in constants.EFFECTIVE_ON_KINDS:
        raise PlanYearValidationError({"effective_on_kind": [f"must be one of: {', '.join(sorted(constants.EFFECTIVE_ON_KINDS))}"]})
    try:
        effective_on_offset = int(payload.get("effective_on_offset") or 0)
    except (TypeError, ValueError):
        raise PlanYearValidationError({"effective_on_offset": ["must be an integer"]}) from None
    if effective_on_offset not in constants.EFFECTIVE_ON_OFFSETS:
        raise PlanYearValidationError(
            {"effective_on_offset": [f"must be one of: {', '.join(str(o) for o in sorted(constants.EFFECTIVE_ON_OFFSETS))}"]}
        )

    relationship_benefits: list[RelationshipBenefit] = []
    seen: set[str] = set()
    for raw in payload.get("relationship_benefits") or []:
        kind = (raw.get("relationship") or "").strip()
        if kind not in constants.PERSONAL_RELATIONSHIP_KINDS:
            raise PlanYearValidationError({"relationship_benefits": [f"Unknown relationship: {kind!r}"]})
        if kind in seen:
            raise PlanYearValidationError({"relationship_benefits": [f"Duplicate relationship: {kind}"]})
        seen.add(kind)
        relationship_benefits.append(
            RelationshipBenefit(
                relationship_kind=kind,
                premium_pct=_parse_premium_pct(raw.get("premium_pct", 0)),
                offered=bool(raw.get("offered", True)),
            )
        )
    if "employee" not in seen:
        raise PlanYearValidationError({"relationship_benefits": ["An employee contribution is required"]})

    is_default = bool(payload.get("is_default")) or not plan_year.benefit_groups
    if is_default:
        for other in plan_year.benefit_groups:
            other.is_default = False

    elected_dental = payload.get("elected_dental_plan_ids") or []
    bg = BenefitGroup(
        plan_year_id=plan_year.id,
        title=title,
        description=(payload.get("description") or "").strip() or None,
        reference_plan_id=(payload.get("reference_plan_id") or "").strip() or None,
        plan_option_kind=plan_option_kind,
        dental_reference_plan_id=(payload.get("dental_reference_plan_id") or "").strip() or None,
        elected_dental_plan_ids_json=json.dumps([str(p) for p in elected_dental]) if elected_dental else None,
        effective_on_kind=effective_on_kind,
        effective_on_offset=effective_on_offset,
        is_congress=bool(payload.get("is_congress", False)),
        is_default=is_default,
        relationship_benefits=relationship_benefits,
    )
    s.add(bg)
    plan_year.benefit_groups.append(bg)
    s.flush()

    record_event(
        s,
        actor=user,
        action="plan_year.benefit_group.create",
        entity_type="PlanYear",
        entity_id=str(plan_year.id),
        metadata={"benefit_group_id": bg.id, "title": bg.title, "reference_plan_id": bg.reference_plan_id},
    )
    return bg


# ─────────────────────────────────────────────────────────────────────────────
# Events
# ─────────────────────────────────────────────────────────────────────────────


def _send_employee_invites(s: Session, plan_year: PlanYear, user: User | None) -> None:
    if any(bg.is_congress for bg in plan_year.benefit_groups):
        return
    state = parse_state(plan_year.aasm_state)
    if state in RENEWING:
        event_name = constants.EMPLOYEE_RENEWAL_INVITATIONS_REQUESTED
    elif state == S.ENROLLING:
        event_name = constants.EMPLOYEE_INITIAL_ENROLLMENT_INVITATIONS_REQUESTED
    else:
        event_name = constants.EMPLOYEE_ENROLLMENT_INVITATIONS_REQUESTED
    notify(s, event_name, {"plan_year_id": str(plan_year.id)}, actor=user, entity_type="PlanYear", entity_id=str(plan_year.id))


def _notify_termination(s: Session, plan_year: PlanYear, user: User | None) -> None:
    if plan_year.aasm_state not in (S.TERMINATION_PENDING.value, S.TERMINATED.value):
        return
    if plan_year.termination_kind == "voluntary":
        event_name, tag = constants.VOLUNTARY_TERMINATED_PLAN_YEAR_EVENT, constants.VOLUNTARY_TERMINATED_PLAN_YEAR_EVENT_TAG
    elif plan_year.termination_kind == "nonpayment":
        event_name, tag = constants.NON_PAYMENT_TERMINATED_PLAN_YEAR_EVENT, constants.NON_PAYMENT_TERMINATED_PLAN_YEAR_EVENT_TAG
    else:
        return
    notify(
        s,
        event_name,
        {"employer_id": plan_year.employer_profile.hbx_id, "event_name": tag},
        actor=user,
        entity_type="PlanYear",
        entity_id=str(plan_year.id),
    )


def _execute_effect(
    s: Session,
    plan_year: PlanYear,
    outcome: TransitionOutcome,
    effect: Effect,
    *,
    settings: ShopMarketSettings,
    today: date,
    original_end_on: date,
    transmit: bool,
    user: User | None,
) -> None:
    employer = plan_year.employer_profile
    group_ids = [bg.id for bg in plan_year.benefit_groups]

    if effect == Effect.ACCEPT_APPLICATION:
        employer_service.transition_employer_if_permitted(s, employer, "application_accepted", user=user)
    elif effect == Effect.DECLINE_APPLICATION:
        employer_service.transition_employer_if_permitted(s, employer, "application_declined", user=user)
    elif effect == Effect.RATIFY_ENROLLMENT:
        employer_service.transition_employer_if_permitted(s, employer, "enrollment_ratified", user=user)
    elif effect == Effect.DENY_ENROLLMENT:
        employer_service.transition_employer_if_permitted(s, employer, "enrollment_denied", user=user)
    elif effect == Effect.REVERT_EMPLOYER_APPLICATION:
        employer_service.transition_employer_if_permitted(s, employer, "revert_application", user=user)
    elif effect == Effect.LINK_CENSUS_EMPLOYEES:
        employer_service.link_census_employees(
            s, employer, plan_year, is_renewal=outcome.to_state in RENEWING, user=user
        )
    elif effect == Effect.SEND_EMPLOYEE_INVITES:
        _send_employee_invites(s, plan_year, user)
    elif effect == Effect.TRIGGER_PASSIVE_RENEWALS:
        notify(
            s,
            constants.EMPLOYEE_PASSIVE_RENEWALS_REQUESTED,
            {"plan_year_id": str(plan_year.id)},
            actor=user,
            entity_type="PlanYear",
            entity_id=str(plan_year.id),
        )
    elif effect in (Effect.CANCEL_ENROLLMENTS, Effect.CANCEL_EMPLOYEE_ENROLLMENTS):
        employer_service.cancel_coverage(s, group_ids, user=user)
    elif effect == Effect.CANCEL_EMPLOYEE_BENEFIT_PACKAGES:
        employer_service.delink_coverage(s, group_ids, end_on=original_end_on, user=user)
    elif effect in (Effect.TERMINATE_EMPLOYEE_BENEFIT_PACKAGES, Effect.TERMINATE_EMPLOYEE_ENROLLMENTS):
        employer_service.terminate_coverage(s, group_ids, end_on=plan_year.end_on, user=user)
    elif effect == Effect.NOTIFY_CANCEL_EVENT:
        if transmit and workflow.cancellation_notice_required(outcome, today, settings):
            notify(
                s,
                constants.INITIAL_OR_RENEWAL_PLAN_YEAR_DROP_EVENT,
                {
                    "employer_id": employer.hbx_id,
                    "plan_year_id": str(plan_year.id),
                    "event_name": constants.INITIAL_OR_RENEWAL_PLAN_YEAR_DROP_EVENT_TAG,
                },
                actor=user,
                entity_type="PlanYear",
                entity_id=str(plan_year.id),
            )
    elif effect == Effect.NOTIFY_TERMINATION:
        if transmit:
            _notify_termination(s, plan_year, user)


def persist_outcome(
    s: Session,
    plan_year: PlanYear,
    outcome: TransitionOutcome,
    *,
    settings: ShopMarketSettings,
    today: date,
    user: User | None = None,
    comment: str | None = None,
    transmit: bool = False,
) -> TransitionOutcome:
    original_end_on = plan_year.end_on
    _write_back(plan_year, outcome.plan_year, user)

    if outcome.from_state in OPEN_ENROLLMENT and outcome.to_state not in OPEN_ENROLLMENT:
        plan_year.enrolled_summary = rules.total_enrolled_count(outcome.plan_year, settings)
        plan_year.waived_summary = len(rules.waived(outcome.plan_year))

    record_transition(
        s,
        transitional_type="PlanYear",
        transitional_id=plan_year.id,
        event=outcome.event.value,
        from_state=outcome.from_state.value,
        to_state=outcome.to_state.value,
        actor=user,
        comment=comment,
        transition_at=outcome.record.transition_at,
    )
    record_event(
        s,
        actor=user,
        action=f"plan_year.{outcome.event.value}",
        entity_type="PlanYear",
        entity_id=str(plan_year.id),
        reason=comment,
        metadata={
            "from": outcome.from_state.value,
            "to": outcome.to_state.value,
            "effects": [e.value for e in outcome.effects],
        },
    )

    for effect in outcome.effects:
        _execute_effect(
            s,
            plan_year,
            outcome,
            effect,
            settings=settings,
            today=today,
            original_end_on=original_end_on,
            transmit=transmit,
            user=user,
        )
    s.flush()
    return outcome


def apply_event(
    s: Session,
    plan_year: PlanYear,
    event: PlanYearEvent | str,
    *,
    settings: ShopMarketSettings,
    today: date,
    user: User | None = None,
    comment: str | None = None,
    transmit: bool = False,
) -> TransitionOutcome:
    """
    Fire `event` and persist the result.

    A publish that loops back to draft is reported as a PlanYearValidationError
    carrying the blocking errors; nothing is written in that case.
    """
    event = parse_event(event)
    snap = build_snapshot(s, plan_year)
    outcome = workflow.fire(snap, event, today=today, settings=settings, now=_now(today))

    if event in (PlanYearEvent.PUBLISH, PlanYearEvent.FORCE_PUBLISH) and not outcome.changed:
        forcing = event == PlanYearEvent.FORCE_PUBLISH
        errors: dict[str, list[str]] = {}
        for source in (
            rules.open_enrollment_date_errors(snap, settings),
            rules.application_errors(snap, today, settings, forcing=forcing),
        ):
            for key, messages in source.items():
                errors.setdefault(key, []).extend(messages)
        raise PlanYearValidationError(errors, "Plan year can't be published.")

    return persist_outcome(
        s, plan_year, outcome, settings=settings, today=today, user=user, comment=comment, transmit=transmit
    )


def cancel_renewing_plan_year(
    s: Session,
    employer: EmployerProfile,
    *,
    settings: ShopMarketSettings,
    today: date,
    user: User | None = None,
    transmit: bool = False,
) -> PlanYear | None:
    renewing = next((py for py in employer.plan_years if parse_state(py.aasm_state) in CANCELABLE_RENEWAL), None)
    if renewing is None:
        return None
    snap = build_snapshot(s, renewing)
    if workflow.may_fire(snap, PlanYearEvent.CANCEL_RENEWAL, today=today, settings=settings):
        apply_event(
            s, renewing, PlanYearEvent.CANCEL_RENEWAL, settings=settings, today=today, user=user, transmit=transmit
        )
    return renewing


def terminate(
    s: Session,
    plan_year: PlanYear,
    *,
    end_on: date,
    terminated_on: date,
    termination_kind: str,
    settings: ShopMarketSettings,
    today: date,
    user: User | None = None,
    transmit: bool = False,
) -> TransitionOutcome:
    """Terminate (or schedule termination of) a plan year; any renewal application is canceled first."""
    snap = build_snapshot(s, plan_year)
    # Fail before touching the renewal when the termination itself is not allowed.
    workflow.terminate_plan_year(
        snap, end_on, terminated_on, termination_kind, today=today, settings=settings
    )

    cancel_renewing_plan_year(
        s, plan_year.employer_profile, settings=settings, today=today, user=user, transmit=transmit
    )
    outcome = workflow.terminate_plan_year(
        build_snapshot(s, plan_year), end_on, terminated_on, termination_kind,
        today=today, settings=settings, now=_now(today),
    )
    return persist_outcome(s, plan_year, outcome, settings=settings, today=today, user=user, transmit=transmit)


def extend_open_enrollment(
    s: Session,
    plan_year: PlanYear,
    new_end_on: date,
    *,
    settings: ShopMarketSettings,
    today: date,
    user: User | None = None,
) -> TransitionOutcome:
    outcome = workflow.extend_open_enrollment(
        build_snapshot(s, plan_year), new_end_on, today=today, settings=settings, now=_now(today)
    )
    return persist_outcome(s, plan_year, outcome, settings=settings, today=today, user=user)


def close_open_enrollment(
    s: Session,
    plan_year: PlanYear,
    *,
    settings: ShopMarketSettings,
    today: date,
    end_on: date | None = None,
    user: User | None = None,
) -> TransitionOutcome:
    outcome = workflow.end_open_enrollment(
        build_snapshot(s, plan_year), end_on, today=today, settings=settings, now=_now(today)
    )
    return persist_outcome(s, plan_year, outcome, settings=settings, today=today, user=user)


def renew_plan_year(
    s: Session,
    plan_year: PlanYear,
    *,
    settings: ShopMarketSettings,
    today: date,
    user: User | None = None,
) -> PlanYear:
    """
    Start the next plan year's renewal application.

    Dates move forward one benefit period, benefit groups and contributions
    are copied, and every employee assigned in the current plan year gets a
    renewal assignment to the copied group.
    """
    state = parse_state(plan_year.aasm_state)
    if state not in PUBLISHED:
        raise PlanYearValidationError({"base": [f"Plan year in state '{state.value}' can't be renewed"]})
    employer = plan_year.employer_profile
    if any(parse_state(py.aasm_state) in CANCELABLE_RENEWAL for py in employer.plan_years):
        raise PlanYearValidationError({"base": ["Employer already has a renewing plan year"]})
    if not plan_year.benefit_groups:
        raise PlanYearValidationError({"benefit_groups": ["Plan year has no benefit groups to renew"]})

    start_on = plan_year.end_on + timedelta(days=1)
    renewal = PlanYear(
        employer_profile_id=employer.id,
        start_on=start_on,
        end_on=timetable.plan_year_end_on(start_on, settings),
        open_enrollment_start_on=start_on - relativedelta(months=settings.open_enrollment_maximum_length_months),
        open_enrollment_end_on=timetable.day_of_month(
            timetable.prior_month(start_on), settings.renewal_monthly_open_enrollment_end_on
        ),
        fte_count=plan_year.fte_count,
        pte_count=plan_year.pte_count,
        msp_count=plan_year.msp_count,
        aasm_state=S.DRAFT.value,
        created_by_user_id=user.id if user else None,
        updated_by_user_id=user.id if user else None,
    )
    s.add(renewal)
    employer.plan_years.append(renewal)
    s.flush()

    group_map: dict[int, BenefitGroup] = {}
    for bg in plan_year.benefit_groups:
        if not bg.is_active:
            continue
        copy = BenefitGroup(
            plan_year_id=renewal.id,
            title=bg.title,
            description=bg.description,
            reference_plan_id=bg.reference_plan_id,
            plan_option_kind=bg.plan_option_kind,
            dental_reference_plan_id=bg.dental_reference_plan_id,
            elected_dental_plan_ids_json=bg.elected_dental_plan_ids_json,
            effective_on_kind=bg.effective_on_kind,
            effective_on_offset=bg.effective_on_offset,
            is_congress=bg.is_congress,
            is_default=bg.is_default,
            relationship_benefits=[
                RelationshipBenefit(relationship_kind=rb.relationship_kind, premium_pct=rb.premium_pct, offered=rb.offered)
                for rb in bg.relationship_benefits
            ],
        )
        s.add(copy)
        renewal.benefit_groups.append(copy)
        group_map[bg.id] = copy
    s.flush()

    apply_event(s, renewal, PlanYearEvent.RENEW_PLAN_YEAR, settings=settings, today=today, user=user)

    for ce in employer.census_employees:
        active = ce.active_benefit_group_assignment
        if ce.is_active and active is not None and active.benefit_group_id in group_map:
            employer_service.assign_benefit_group(
                s, ce, group_map[active.benefit_group_id], start_on=start_on, is_renewal=True, user=user
            )

    logger.info("Plan year %s renewed as %s (start_on=%s)", plan_year.id, renewal.id, start_on)
    return renewal


def advance_date_for_all(
    s: Session,
    *,
    settings: ShopMarketSettings,
    today: date,
    dry_run: bool = False,
    user: User | None = None,
) -> list[dict[str, Any]]:
    """
    Nightly date advance over every plan year that can still move.

    Returns one entry per plan year that changed state. With dry_run the
    moves are computed but nothing is written.
    """
    final_states = [st.value for st in FINAL]
    candidates = (
        s.query(PlanYear)
        .filter(PlanYear.aasm_state.notin_(final_states))
        .order_by(PlanYear.start_on.asc(), PlanYear.id.asc())
        .all()
    )

    moves: list[dict[str, Any]] = []
    for plan_year in candidates:
        snap = build_snapshot(s, plan_year)
        if not workflow.may_fire(snap, PlanYearEvent.ADVANCE_DATE, today=today, settings=settings):
            continue
        outcome = workflow.fire(snap, PlanYearEvent.ADVANCE_DATE, today=today, settings=settings, now=_now(today))
        if not outcome.changed:
            continue
        moves.append(
            {
                "plan_year_id": plan_year.id,
                "employer_profile_id": plan_year.employer_profile_id,
                "from": outcome.from_state.value,
                "to": outcome.to_state.value,
            }
        )
        if not dry_run:
            persist_outcome(s, plan_year, outcome, settings=settings, today=today, user=user, transmit=True)
        logger.info(
            "advance_date plan year %s: %s -> %s (dry_run=%s)",
            plan_year.id,
            outcome.from_state.value,
            outcome.to_state.value,
            dry_run,
        )
    return moves


# ─────────────────────────────────────────────────────────────────────────────
# Reporting / serialization
# ─────────────────────────────────────────────────────────────────────────────


def eligibility_report(s: Session, plan_year: PlanYear, *, settings: ShopMarketSettings, today: date) -> dict[str, Any]:
    snap = build_snapshot(s, plan_year)
    report = rules.eligibility_report(snap, today, settings)
    report["permitted_events"] = [e.value for e in workflow.permitted_events(snap, today=today, settings=settings)]
    report["open_enrollment_date_bounds"] = {
        k: v.isoformat() for k, v in timetable.open_enrollment_date_bounds(snap, today, settings).items()
    }
    return report


def serialize_benefit_group(bg: BenefitGroup) -> dict[str, Any]:
    return {
        "id": bg.id,
        "title": bg.title,
        "description": bg.description,
        "reference_plan_id": bg.reference_plan_id,
        "plan_option_kind": bg.plan_option_kind,
        "dental_reference_plan_id": bg.dental_reference_plan_id,
        "elected_dental_plan_ids": bg.elected_dental_plan_ids,
        "effective_on_kind": bg.effective_on_kind,
        "effective_on_offset": bg.effective_on_offset,
        "is_congress": bg.is_congress,
        "is_default": bg.is_default,
        "is_active": bg.is_active,
        "relationship_benefits": [
            {"relationship": rb.relationship_kind, "premium_pct": float(rb.premium_pct), "offered": rb.offered}
            for rb in bg.relationship_benefits
        ],
    }


def serialize_plan_year(plan_year: PlanYear) -> dict[str, Any]:
    return {
        "id": plan_year.id,
        "employer_profile_id": plan_year.employer_profile_id,
        "state": plan_year.aasm_state,
        "start_on": plan_year.start_on.isoformat(),
        "end_on": plan_year.end_on.isoformat(),
        "open_enrollment_start_on": plan_year.open_enrollment_start_on.isoformat(),
        "open_enrollment_end_on": plan_year.open_enrollment_end_on.isoformat(),
        "terminated_on": plan_year.terminated_on.isoformat() if plan_year.terminated_on else None,
        "termination_kind": plan_year.termination_kind,
        "fte_count": plan_year.fte_count,
        "pte_count": plan_year.pte_count,
        "msp_count": plan_year.msp_count,
        "enrolled_summary": plan_year.enrolled_summary,
        "waived_summary": plan_year.waived_summary,
        "imported_plan_year": plan_year.imported_plan_year,
        "is_conversion": plan_year.is_conversion,
        "benefit_groups": [serialize_benefit_group(bg) for bg in plan_year.benefit_groups],
    }


def serialize_outcome(outcome: TransitionOutcome) -> dict[str, Any]:
    return {
        "event": outcome.event.value,
        "from_state": outcome.from_state.value,
        "to_state": outcome.to_state.value,
        "effects": [e.value for e in outcome.effects],
    }
