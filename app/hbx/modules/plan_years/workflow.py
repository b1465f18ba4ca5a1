"""
Plan-year lifecycle state machine.

The lifecycle is a table: each event maps to an ordered list of transitions
and the first transition whose source matches and whose guards all pass wins
(later transitions act as fall-throughs, e.g. publish -> publish_pending).

`fire` never touches storage. It returns a TransitionOutcome carrying the new
snapshot and the effects the caller has to carry out (employer lifecycle
events, census changes, notifications).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from typing import Callable

from dateutil.relativedelta import relativedelta

from app.hbx.config import ShopMarketSettings
from app.hbx.constants import TERMINATION_KINDS

from . import rules, timetable
from .rules import PlanYearValidationError
from .snapshot import PlanYearSnapshot, TransitionRecord
from .states import (
    CANCELABLE_RENEWAL,
    PUBLISHED,
    RENEWING_PUBLISHED,
    Effect,
    PlanYearEvent,
    PlanYearState,
    S,
    parse_event,
)

logger = logging.getLogger(__name__)

E = PlanYearEvent


class InvalidTransition(ValueError):
    def __init__(self, event: PlanYearEvent, state: PlanYearState, message: str | None = None):
        self.event = event
        self.state = state
        super().__init__(message or f"Event '{event.value}' is not permitted for a plan year in state '{state.value}'.")


@dataclass(frozen=True)
class GuardContext:
    plan_year: PlanYearSnapshot
    settings: ShopMarketSettings
    today: date
    event: PlanYearEvent
    target: PlanYearState

    @property
    def forcing(self) -> bool:
        return self.event == E.FORCE_PUBLISH


Guard = Callable[[GuardContext], bool]


# ─────────────────────────────────────────────────────────────────────────────
# Guards
# ─────────────────────────────────────────────────────────────────────────────


def is_event_date_valid(ctx: GuardContext) -> bool:
    py, today = ctx.plan_year, ctx.today
    if py.state in (S.PUBLISHED, S.DRAFT, S.RENEWING_PUBLISHED, S.RENEWING_DRAFT):
        return today >= py.open_enrollment_start_on
    if py.state in (S.ENROLLING, S.RENEWING_ENROLLING):
        return today > py.open_enrollment_end_on
    if py.state in (S.ENROLLED, S.RENEWING_ENROLLED):
        return today >= py.start_on
    if py.state == S.ACTIVE:
        return today > py.end_on
    return False


def can_be_activated(ctx: GuardContext) -> bool:
    return ctx.plan_year.state in (PUBLISHED | RENEWING_PUBLISHED) and ctx.today >= ctx.plan_year.start_on


def can_be_expired(ctx: GuardContext) -> bool:
    return ctx.plan_year.state in PUBLISHED and ctx.today >= ctx.plan_year.end_on


def is_plan_year_end(ctx: GuardContext) -> bool:
    return ctx.today == ctx.plan_year.end_on


def is_within_review_period(ctx: GuardContext) -> bool:
    py = ctx.plan_year
    latest = py.latest_transition
    if py.state != S.PUBLISHED_INVALID or latest is None:
        return False
    window_start = ctx.today - timedelta(days=ctx.settings.appeal_period_after_application_denial_days)
    return latest.transition_at > datetime.combine(window_start, time.min)


def can_be_migrated(ctx: GuardContext) -> bool:
    return ctx.plan_year.employer.is_conversion and ctx.plan_year.is_conversion


def is_application_unpublishable(ctx: GuardContext) -> bool:
    return rules.is_application_unpublishable(ctx.plan_year, ctx.today, ctx.settings, forcing=ctx.forcing)


def is_application_invalid(ctx: GuardContext) -> bool:
    return rules.is_application_invalid(ctx.plan_year, ctx.today, ctx.settings, forcing=ctx.forcing)


def is_application_eligible(ctx: GuardContext) -> bool:
    return rules.is_application_eligible(ctx.plan_year, ctx.settings, target_state=ctx.target)


def is_open_enrollment_closed(ctx: GuardContext) -> bool:
    return rules.is_open_enrollment_closed(ctx.plan_year, ctx.today)


def is_enrollment_valid(ctx: GuardContext) -> bool:
    return rules.is_enrollment_valid(ctx.plan_year, ctx.settings)


# ─────────────────────────────────────────────────────────────────────────────
# Transition table
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Transition:
    sources: frozenset[PlanYearState]
    target: PlanYearState
    guards: tuple[Guard, ...] = ()
    effects: tuple[Effect, ...] = ()


@dataclass(frozen=True)
class EventSpec:
    transitions: tuple[Transition, ...]
    effects: tuple[Effect, ...] = ()


def _t(sources, target, guards=(), effects=()) -> Transition:
    if isinstance(sources, PlanYearState):
        sources = (sources,)
    return Transition(frozenset(sources), target, tuple(guards), tuple(effects))


def _publish_transitions(*, forcing: bool) -> tuple[Transition, ...]:
    blocked = is_application_invalid if forcing else is_application_unpublishable
    out: list[Transition] = []
    for draft, enrolling, published, pending in (
        (S.DRAFT, S.ENROLLING, S.PUBLISHED, S.PUBLISH_PENDING),
        (S.RENEWING_DRAFT, S.RENEWING_ENROLLING, S.RENEWING_PUBLISHED, S.RENEWING_PUBLISH_PENDING),
    ):
        out += [
            _t(draft, draft, [blocked]),
            _t(draft, enrolling, [is_application_eligible, is_event_date_valid], [Effect.ACCEPT_APPLICATION]),
            _t(draft, published, [is_application_eligible]),
            _t(draft, pending),
        ]
    return tuple(out)


_CANCEL_EFFECTS = (Effect.CANCEL_EMPLOYEE_ENROLLMENTS, Effect.CANCEL_EMPLOYEE_BENEFIT_PACKAGES)

EVENTS: dict[PlanYearEvent, EventSpec] = {
    E.ACTIVATE: EventSpec(
        (
            _t(
                [
                    S.PUBLISHED,
                    S.ENROLLING,
                    S.ENROLLMENT_EXTENDED,
                    S.ENROLLED,
                    S.RENEWING_PUBLISHED,
                    S.RENEWING_ENROLLING,
                    S.RENEWING_ENROLLMENT_EXTENDED,
                    S.RENEWING_ENROLLED,
                ],
                S.ACTIVE,
                [can_be_activated],
            ),
        )
    ),
    E.EXPIRE: EventSpec((_t([S.PUBLISHED, S.ENROLLING, S.ENROLLED, S.ACTIVE], S.EXPIRED, [can_be_expired]),)),
    # Time-based moves run nightly (scripts/advance_date.py).
    E.ADVANCE_DATE: EventSpec(
        (
            _t(S.ENROLLED, S.ACTIVE, [is_event_date_valid]),
            _t(S.PUBLISHED, S.ENROLLING, [is_event_date_valid]),
            _t([S.ENROLLING, S.ENROLLMENT_EXTENDED], S.ENROLLED, [is_open_enrollment_closed, is_enrollment_valid]),
            _t([S.ENROLLING, S.ENROLLMENT_EXTENDED], S.APPLICATION_INELIGIBLE, [is_open_enrollment_closed]),
            _t(S.ACTIVE, S.TERMINATED, [is_event_date_valid]),
            _t(
                [S.DRAFT, S.PUBLISH_PENDING, S.PUBLISHED_INVALID, S.ELIGIBILITY_REVIEW],
                S.EXPIRED,
                [is_plan_year_end],
            ),
            _t(S.RENEWING_ENROLLED, S.ACTIVE, [is_event_date_valid]),
            _t(S.RENEWING_PUBLISHED, S.RENEWING_ENROLLING, [is_event_date_valid]),
            _t(
                [S.RENEWING_ENROLLING, S.RENEWING_ENROLLMENT_EXTENDED],
                S.RENEWING_ENROLLED,
                [is_open_enrollment_closed, is_enrollment_valid],
            ),
            _t(
                [S.RENEWING_ENROLLING, S.RENEWING_ENROLLMENT_EXTENDED],
                S.RENEWING_APPLICATION_INELIGIBLE,
                [is_open_enrollment_closed],
            ),
            _t(S.ENROLLING, S.ENROLLING),
        )
    ),
    E.PUBLISH: EventSpec(_publish_transitions(forcing=False)),
    E.WITHDRAW_PENDING: EventSpec(
        (
            _t(S.PUBLISH_PENDING, S.DRAFT),
            _t(S.RENEWING_PUBLISH_PENDING, S.RENEWING_DRAFT),
        )
    ),
    E.FORCE_PUBLISH: EventSpec((_t(S.PUBLISH_PENDING, S.PUBLISHED_INVALID),) + _publish_transitions(forcing=True)),
    E.REQUEST_ELIGIBILITY_REVIEW: EventSpec(
        (_t(S.PUBLISHED_INVALID, S.ELIGIBILITY_REVIEW, [is_within_review_period]),)
    ),
    E.GRANT_ELIGIBILITY: EventSpec((_t(S.ELIGIBILITY_REVIEW, S.PUBLISHED),)),
    E.DENY_ELIGIBILITY: EventSpec((_t(S.ELIGIBILITY_REVIEW, S.PUBLISHED_INVALID),)),
    # Enrollment stopped, e.g. missing binder payment.
    E.CANCEL: EventSpec(
        (
            _t(
                [
                    S.DRAFT,
                    S.PUBLISHED,
                    S.PUBLISH_PENDING,
                    S.ELIGIBILITY_REVIEW,
                    S.PUBLISHED_INVALID,
                    S.APPLICATION_INELIGIBLE,
                    S.ENROLLING,
                    S.ENROLLED,
                    S.ACTIVE,
                ],
                S.CANCELED,
                effects=_CANCEL_EFFECTS,
            ),
        ),
        effects=(Effect.NOTIFY_CANCEL_EVENT,),
    ),
    E.SUSPEND: EventSpec((_t(S.ACTIVE, S.SUSPENDED),)),
    E.SCHEDULE_TERMINATION: EventSpec((_t(S.ACTIVE, S.TERMINATION_PENDING),)),
    E.TERMINATE: EventSpec(
        (
            _t(
                [S.ACTIVE, S.SUSPENDED, S.EXPIRED, S.TERMINATION_PENDING],
                S.TERMINATED,
                effects=[Effect.TERMINATE_EMPLOYEE_BENEFIT_PACKAGES],
            ),
        )
    ),
    E.REINSTATE_PLAN_YEAR: EventSpec((_t([S.TERMINATED, S.TERMINATION_PENDING], S.ACTIVE),)),
    E.RENEW_PLAN_YEAR: EventSpec((_t(S.DRAFT, S.RENEWING_DRAFT),)),
    E.RENEW_PUBLISH: EventSpec((_t(S.RENEWING_DRAFT, S.RENEWING_PUBLISHED),)),
    E.REVERT_APPLICATION: EventSpec(
        (
            _t(
                [
                    S.ENROLLED,
                    S.ENROLLING,
                    S.ACTIVE,
                    S.APPLICATION_INELIGIBLE,
                    S.RENEWING_APPLICATION_INELIGIBLE,
                    S.PUBLISHED_INVALID,
                    S.ELIGIBILITY_REVIEW,
                    S.PUBLISHED,
                    S.PUBLISH_PENDING,
                ],
                S.DRAFT,
                effects=[Effect.CANCEL_ENROLLMENTS],
            ),
        ),
        effects=(Effect.REVERT_EMPLOYER_APPLICATION,),
    ),
    E.ENROLL: EventSpec((_t([S.PUBLISHED, S.ENROLLING, S.RENEWING_PUBLISHED], S.ENROLLED),)),
    E.REVERT_RENEWAL: EventSpec(
        (
            _t(
                [
                    S.ACTIVE,
                    S.RENEWING_PUBLISHED,
                    S.RENEWING_ENROLLING,
                    S.RENEWING_APPLICATION_INELIGIBLE,
                    S.RENEWING_ENROLLED,
                ],
                S.RENEWING_DRAFT,
                effects=[Effect.CANCEL_ENROLLMENTS],
            ),
        )
    ),
    E.CANCEL_RENEWAL: EventSpec(
        (
            _t(
                [
                    S.RENEWING_DRAFT,
                    S.RENEWING_PUBLISHED,
                    S.RENEWING_ENROLLING,
                    S.RENEWING_APPLICATION_INELIGIBLE,
                    S.RENEWING_ENROLLED,
                    S.RENEWING_PUBLISH_PENDING,
                ],
                S.RENEWING_CANCELED,
                effects=_CANCEL_EFFECTS,
            ),
        ),
        effects=(Effect.NOTIFY_CANCEL_EVENT,),
    ),
    E.CONVERSION_EXPIRE: EventSpec((_t([S.EXPIRED, S.ACTIVE], S.CONVERSION_EXPIRED, [can_be_migrated]),)),
    E.CLOSE_OPEN_ENROLLMENT: EventSpec(
        (
            _t([S.ENROLLING, S.ENROLLMENT_EXTENDED], S.ENROLLED, [is_enrollment_valid]),
            _t([S.ENROLLING, S.ENROLLMENT_EXTENDED], S.APPLICATION_INELIGIBLE),
            _t([S.RENEWING_ENROLLING, S.RENEWING_ENROLLMENT_EXTENDED], S.RENEWING_ENROLLED, [is_enrollment_valid]),
            _t([S.RENEWING_ENROLLING, S.RENEWING_ENROLLMENT_EXTENDED], S.RENEWING_APPLICATION_INELIGIBLE),
        )
    ),
    E.EXTEND_OPEN_ENROLLMENT: EventSpec(
        (
            _t(
                [S.CANCELED, S.APPLICATION_INELIGIBLE, S.ENROLLMENT_EXTENDED, S.ENROLLING],
                S.ENROLLMENT_EXTENDED,
                [is_application_eligible],
            ),
            _t(
                [
                    S.RENEWING_CANCELED,
                    S.RENEWING_APPLICATION_INELIGIBLE,
                    S.RENEWING_ENROLLMENT_EXTENDED,
                    S.RENEWING_ENROLLING,
                ],
                S.RENEWING_ENROLLMENT_EXTENDED,
                [is_application_eligible],
            ),
        )
    ),
}

STATE_ENTRY_EFFECTS: dict[PlanYearState, tuple[Effect, ...]] = {
    S.PUBLISHED: (Effect.ACCEPT_APPLICATION, Effect.LINK_CENSUS_EMPLOYEES),
    S.PUBLISHED_INVALID: (Effect.DECLINE_APPLICATION,),
    S.ENROLLING: (Effect.SEND_EMPLOYEE_INVITES, Effect.LINK_CENSUS_EMPLOYEES),
    S.ENROLLED: (Effect.RATIFY_ENROLLMENT,),
    S.APPLICATION_INELIGIBLE: (Effect.DENY_ENROLLMENT,),
    S.RENEWING_APPLICATION_INELIGIBLE: (Effect.DENY_ENROLLMENT,),
    S.RENEWING_ENROLLING: (Effect.TRIGGER_PASSIVE_RENEWALS, Effect.SEND_EMPLOYEE_INVITES),
}


# ─────────────────────────────────────────────────────────────────────────────
# Firing events
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TransitionOutcome:
    plan_year: PlanYearSnapshot
    event: PlanYearEvent
    from_state: PlanYearState
    to_state: PlanYearState
    effects: tuple[Effect, ...]
    record: TransitionRecord

    @property
    def changed(self) -> bool:
        return self.from_state != self.to_state


def _select_transition(
    plan_year: PlanYearSnapshot, event: PlanYearEvent, today: date, settings: ShopMarketSettings
) -> Transition | None:
    for transition in EVENTS[event].transitions:
        if plan_year.state not in transition.sources:
            continue
        ctx = GuardContext(plan_year=plan_year, settings=settings, today=today, event=event, target=transition.target)
        if all(guard(ctx) for guard in transition.guards):
            return transition
    return None


def may_fire(
    plan_year: PlanYearSnapshot, event: PlanYearEvent | str, *, today: date, settings: ShopMarketSettings
) -> bool:
    return _select_transition(plan_year, parse_event(event), today, settings) is not None


def permitted_events(
    plan_year: PlanYearSnapshot, *, today: date, settings: ShopMarketSettings
) -> list[PlanYearEvent]:
    return [event for event in PlanYearEvent if _select_transition(plan_year, event, today, settings) is not None]


def _adjust_open_enrollment_start(plan_year: PlanYearSnapshot, today: date) -> PlanYearSnapshot:
    # Late publish: open enrollment starts on the day the application is accepted.
    if plan_year.open_enrollment_start_on < today < plan_year.open_enrollment_end_on:
        return replace(plan_year, open_enrollment_start_on=today)
    return plan_year


def fire(
    plan_year: PlanYearSnapshot,
    event: PlanYearEvent | str,
    *,
    today: date,
    settings: ShopMarketSettings,
    now: datetime | None = None,
) -> TransitionOutcome:
    """
    Fire `event` against `plan_year`.

    Raises InvalidTransition when no transition of the event matches the
    current state or every matching transition is blocked by its guards.
    """
    event = parse_event(event)
    transition = _select_transition(plan_year, event, today, settings)
    if transition is None:
        logger.warning("Rejected plan year event %s from %s (plan_year=%s)", event.value, plan_year.state.value, plan_year.id)
        raise InvalidTransition(event, plan_year.state)

    from_state = plan_year.state
    to_state = transition.target
    effects: list[Effect] = list(transition.effects)
    if to_state != from_state:
        effects += STATE_ENTRY_EFFECTS.get(to_state, ())
    effects += EVENTS[event].effects
    effects = list(dict.fromkeys(effects))

    updated = plan_year
    if Effect.ACCEPT_APPLICATION in effects:
        updated = _adjust_open_enrollment_start(updated, today)
    if event in (E.CANCEL, E.CANCEL_RENEWAL):
        updated = replace(updated, end_on=updated.start_on)
    if event == E.REINSTATE_PLAN_YEAR:
        updated = replace(
            updated,
            terminated_on=None,
            end_on=updated.start_on + relativedelta(years=1) - timedelta(days=1),
        )

    record = TransitionRecord(
        from_state=from_state.value,
        to_state=to_state.value,
        event=event.value,
        transition_at=now or datetime.combine(today, datetime.min.time()),
    )
    updated = replace(updated, state=to_state, transitions=updated.transitions + (record,))

    logger.info("Plan year %s: %s -> %s (%s)", plan_year.id, from_state.value, to_state.value, event.value)
    return TransitionOutcome(
        plan_year=updated,
        event=event,
        from_state=from_state,
        to_state=to_state,
        effects=tuple(effects),
        record=record,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Compound operations
# ─────────────────────────────────────────────────────────────────────────────


def terminate_plan_year(
    plan_year: PlanYearSnapshot,
    end_on: date,
    terminated_on: date,
    termination_kind: str,
    *,
    today: date,
    settings: ShopMarketSettings,
    now: datetime | None = None,
) -> TransitionOutcome:
    """
    Terminate coverage on `end_on`.

    A future (or today's) end date schedules the termination; a past end date
    terminates immediately and asks the caller to revert the employer
    application. Renewal siblings are the caller's to cancel first.
    """
    if termination_kind not in TERMINATION_KINDS:
        raise PlanYearValidationError(
            {"termination_kind": [f"must be one of: {', '.join(sorted(TERMINATION_KINDS))}"]}
        )
    if end_on < plan_year.start_on:
        raise PlanYearValidationError({"end_on": ["can't occur before plan year start date"]})

    dated = replace(plan_year, end_on=end_on, terminated_on=terminated_on, termination_kind=termination_kind)
    extra = [Effect.TERMINATE_EMPLOYEE_ENROLLMENTS, Effect.NOTIFY_TERMINATION]

    if end_on >= today:
        event = E.SCHEDULE_TERMINATION
    else:
        event = E.TERMINATE
        extra.append(Effect.REVERT_EMPLOYER_APPLICATION)

    if not may_fire(dated, event, today=today, settings=settings):
        raise InvalidTransition(
            event,
            plan_year.state,
            f"Plan year in state '{plan_year.state.value}' can't be terminated with end date {end_on.isoformat()}.",
        )
    outcome = fire(dated, event, today=today, settings=settings, now=now)
    return replace(outcome, effects=tuple(dict.fromkeys(outcome.effects + tuple(extra))))


def extend_open_enrollment(
    plan_year: PlanYearSnapshot,
    new_end_on: date,
    *,
    today: date,
    settings: ShopMarketSettings,
    now: datetime | None = None,
) -> TransitionOutcome:
    bounds = timetable.open_enrollment_date_bounds(plan_year, today, settings)
    if not bounds["min"] <= new_end_on <= bounds["max"]:
        raise PlanYearValidationError(
            {
                "open_enrollment_end_on": [
                    f"must be between {bounds['min'].isoformat()} and {bounds['max'].isoformat()}"
                ]
            }
        )
    extended = replace(plan_year, open_enrollment_end_on=new_end_on)
    return fire(extended, E.EXTEND_OPEN_ENROLLMENT, today=today, settings=settings, now=now)


def end_open_enrollment(
    plan_year: PlanYearSnapshot,
    end_on: date | None = None,
    *,
    today: date,
    settings: ShopMarketSettings,
    now: datetime | None = None,
) -> TransitionOutcome:
    if end_on is not None:
        plan_year = replace(plan_year, open_enrollment_end_on=end_on)
    return fire(plan_year, E.CLOSE_OPEN_ENROLLMENT, today=today, settings=settings, now=now)


def terminate_application(
    plan_year: PlanYearSnapshot,
    termination_date: date,
    *,
    today: date,
    settings: ShopMarketSettings,
    now: datetime | None = None,
) -> TransitionOutcome:
    if not rules.coverage_period_contains(plan_year, termination_date):
        raise PlanYearValidationError(
            {"terminated_on": [f"{termination_date.isoformat()} is outside the plan year coverage period"]}
        )
    dated = replace(plan_year, terminated_on=termination_date)
    return fire(dated, E.TERMINATE, today=today, settings=settings, now=now)


def renewal_to_cancel(plan_year: PlanYearSnapshot):
    """The employer's renewal application a termination of `plan_year` has to cancel, if any."""
    for sibling in plan_year.sibling_plan_years():
        if sibling.state in CANCELABLE_RENEWAL:
            return sibling
    return None


def cancellation_notice_required(
    outcome: TransitionOutcome, today: date, settings: ShopMarketSettings
) -> bool:
    """Whether carriers must hear about a cancel; only coverage already transmitted is announced."""
    py = outcome.plan_year
    if today < py.start_on:
        if outcome.from_state == S.ENROLLED:
            return (
                rules.open_enrollment_completed(py, today)
                and py.employer.binder_paid
                and rules.past_transmission_threshold(py, today, settings)
            )
        if outcome.from_state == S.RENEWING_ENROLLED:
            return rules.open_enrollment_completed(py, today) and rules.past_transmission_threshold(
                py, today, settings
            )
        return False
    return outcome.from_state == S.ACTIVE
