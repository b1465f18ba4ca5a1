"""
Immutable inputs to the plan-year rules.

A snapshot captures everything a guard or eligibility rule may look at:
the plan year, its benefit groups, the employer, the employer's census roster
and the employer's other plan years. Persistence builds snapshots
(service.build_snapshot); the stateless /evaluate endpoint builds them from
JSON (plan_year_from_dict).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from .states import PUBLISHED, RENEWING, RENEWING_PUBLISHED, PlanYearState, parse_state

COVERAGE_STATES = frozenset(
    {
        "initialized",
        "coverage_selected",
        "coverage_waived",
        "coverage_terminated",
        "coverage_canceled",
        "coverage_void",
    }
)

# Employee made a choice for the period (selected or waived) and it still stands.
COVERAGE_DECIDED = frozenset({"coverage_selected", "coverage_waived"})

EMPLOYER_BINDER_PAID_STATES = frozenset({"binder_paid", "enrolled"})


@dataclass(frozen=True)
class RelationshipBenefit:
    relationship: str
    premium_pct: float
    offered: bool = True


@dataclass(frozen=True)
class BenefitGroupSnapshot:
    id: Any
    title: str = ""
    reference_plan_id: str | None = None
    relationship_benefits: tuple[RelationshipBenefit, ...] = ()
    is_default: bool = False
    is_congress: bool = False
    dental_reference_plan_id: str | None = None
    elected_dental_plan_ids: tuple[str, ...] = ()

    @property
    def is_offering_dental(self) -> bool:
        return bool(self.dental_reference_plan_id) and bool(self.elected_dental_plan_ids)

    @property
    def employee_premium_pct(self) -> float | None:
        pcts = [rb.premium_pct for rb in self.relationship_benefits if rb.relationship == "employee"]
        return min(pcts) if pcts else None


@dataclass(frozen=True)
class CensusEmployeeSnapshot:
    id: Any
    is_active: bool = True
    is_business_owner: bool = False
    active_benefit_group_id: Any = None
    renewal_benefit_group_id: Any = None
    coverage_state: str = "initialized"


@dataclass(frozen=True)
class PlanYearSummary:
    id: Any
    state: PlanYearState
    start_on: date
    end_on: date


@dataclass(frozen=True)
class EmployerSnapshot:
    id: Any = None
    state: str = "applicant"
    is_primary_office_local: bool = True
    is_conversion: bool = False
    registered_on: date | None = None
    census_employees: tuple[CensusEmployeeSnapshot, ...] = ()
    plan_years: tuple[PlanYearSummary, ...] = ()

    @property
    def binder_paid(self) -> bool:
        return self.state in EMPLOYER_BINDER_PAID_STATES

    @property
    def is_ineligible(self) -> bool:
        return self.state == "ineligible"

    @property
    def active_census_employees(self) -> tuple[CensusEmployeeSnapshot, ...]:
        return tuple(ce for ce in self.census_employees if ce.is_active)


@dataclass(frozen=True)
class TransitionRecord:
    from_state: str
    to_state: str
    event: str
    transition_at: datetime


@dataclass(frozen=True)
class PlanYearSnapshot:
    id: Any
    state: PlanYearState
    start_on: date
    end_on: date
    open_enrollment_start_on: date
    open_enrollment_end_on: date
    benefit_groups: tuple[BenefitGroupSnapshot, ...] = ()
    employer: EmployerSnapshot = field(default_factory=EmployerSnapshot)
    fte_count: int = 0
    pte_count: int = 0
    msp_count: int = 0
    is_conversion: bool = False
    imported_plan_year: bool = False
    terminated_on: date | None = None
    termination_kind: str | None = None
    transitions: tuple[TransitionRecord, ...] = ()

    @property
    def effective_date(self) -> date:
        return self.start_on

    @property
    def benefit_group_ids(self) -> frozenset:
        return frozenset(bg.id for bg in self.benefit_groups)

    @property
    def is_renewing(self) -> bool:
        return self.state in RENEWING

    @property
    def is_published(self) -> bool:
        return self.state in PUBLISHED

    @property
    def default_benefit_group(self) -> BenefitGroupSnapshot | None:
        for bg in self.benefit_groups:
            if bg.is_default:
                return bg
        return None

    @property
    def is_offering_dental(self) -> bool:
        return any(bg.is_offering_dental for bg in self.benefit_groups)

    @property
    def latest_transition(self) -> TransitionRecord | None:
        if not self.transitions:
            return None
        return max(self.transitions, key=lambda t: t.transition_at)

    def sibling_plan_years(self) -> tuple[PlanYearSummary, ...]:
        return tuple(py for py in self.employer.plan_years if py.id != self.id)

    def employer_has_renewing_plan_year(self) -> bool:
        if self.is_renewing:
            return True
        return any(py.state in RENEWING for py in self.sibling_plan_years())

    def published_siblings(self) -> tuple[PlanYearSummary, ...]:
        return tuple(py for py in self.sibling_plan_years() if py.state in (PUBLISHED | RENEWING_PUBLISHED))


# ─────────────────────────────────────────────────────────────────────────────
# JSON mapping (stateless evaluation endpoint)
# ─────────────────────────────────────────────────────────────────────────────


def _mapping(raw: Any, name: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValueError(f"{name} must be a JSON object.")
    return raw


def _items(raw: Any, name: str) -> list[Any]:
    if raw in (None, ""):
        return []
    if not isinstance(raw, list):
        raise ValueError(f"{name} must be a JSON array.")
    return raw


def _ident(raw: Any, name: str) -> int | str | None:
    if raw is None or (isinstance(raw, (int, str)) and not isinstance(raw, bool)):
        return raw
    raise ValueError(f"{name} must be a string or integer id.")


def _int(raw: Any, name: str) -> int:
    if raw in (None, ""):
        return 0
    if isinstance(raw, bool):
        raise ValueError(f"{name} must be an integer.")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer.") from None


def _date(raw: Any, name: str, *, required: bool = True) -> date | None:
    if raw in (None, ""):
        if required:
            raise ValueError(f"{name} is required.")
        return None
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw))
    except ValueError:
        raise ValueError(f"{name} must be an ISO date (YYYY-MM-DD).") from None


def _datetime(raw: Any, name: str) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    else:
        try:
            value = datetime.fromisoformat(str(raw))
        except ValueError:
            raise ValueError(f"{name} must be an ISO datetime.") from None
    # transitions are compared naive, in UTC
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _benefit_group_from_dict(raw: Any, name: str) -> BenefitGroupSnapshot:
    raw = _mapping(raw, name)
    if "id" not in raw:
        raise ValueError(f"{name}.id is required.")
    rbs = []
    for j, rb in enumerate(_items(raw.get("relationship_benefits"), f"{name}.relationship_benefits")):
        rb_name = f"{name}.relationship_benefits[{j}]"
        rb = _mapping(rb, rb_name)
        try:
            pct = float(rb.get("premium_pct", 0))
        except (TypeError, ValueError):
            raise ValueError(f"{rb_name}.premium_pct must be a number.") from None
        rbs.append(
            RelationshipBenefit(
                relationship=str(rb.get("relationship") or "").strip(),
                premium_pct=pct,
                offered=bool(rb.get("offered", True)),
            )
        )
    dental_ids = _items(raw.get("elected_dental_plan_ids"), f"{name}.elected_dental_plan_ids")
    return BenefitGroupSnapshot(
        id=_ident(raw["id"], f"{name}.id"),
        title=str(raw.get("title") or ""),
        reference_plan_id=raw.get("reference_plan_id") or None,
        relationship_benefits=tuple(rbs),
        is_default=bool(raw.get("is_default", False)),
        is_congress=bool(raw.get("is_congress", False)),
        dental_reference_plan_id=raw.get("dental_reference_plan_id") or None,
        elected_dental_plan_ids=tuple(_ident(p, f"{name}.elected_dental_plan_ids[]") for p in dental_ids),
    )


def _census_employee_from_dict(raw: Any, name: str) -> CensusEmployeeSnapshot:
    raw = _mapping(raw, name)
    coverage_state = str(raw.get("coverage_state") or "initialized")
    if coverage_state not in COVERAGE_STATES:
        raise ValueError(f"Unknown coverage_state: {coverage_state!r}")
    return CensusEmployeeSnapshot(
        id=_ident(raw.get("id"), f"{name}.id"),
        is_active=bool(raw.get("is_active", True)),
        is_business_owner=bool(raw.get("is_business_owner", False)),
        active_benefit_group_id=_ident(raw.get("active_benefit_group_id"), f"{name}.active_benefit_group_id"),
        renewal_benefit_group_id=_ident(raw.get("renewal_benefit_group_id"), f"{name}.renewal_benefit_group_id"),
        coverage_state=coverage_state,
    )


def _plan_year_summary_from_dict(raw: Any, name: str) -> PlanYearSummary:
    raw = _mapping(raw, name)
    return PlanYearSummary(
        id=_ident(raw.get("id"), f"{name}.id"),
        state=parse_state(raw.get("state")),
        start_on=_date(raw.get("start_on"), f"{name}.start_on"),
        end_on=_date(raw.get("end_on"), f"{name}.end_on"),
    )


def _employer_from_dict(raw: Any) -> EmployerSnapshot:
    raw = _mapping(raw, "employer")
    siblings = tuple(
        _plan_year_summary_from_dict(py, f"employer.plan_years[{i}]")
        for i, py in enumerate(_items(raw.get("plan_years"), "employer.plan_years"))
    )
    census = tuple(
        _census_employee_from_dict(ce, f"employer.census_employees[{i}]")
        for i, ce in enumerate(_items(raw.get("census_employees"), "employer.census_employees"))
    )
    return EmployerSnapshot(
        id=_ident(raw.get("id"), "employer.id"),
        state=str(raw.get("state") or "applicant"),
        is_primary_office_local=bool(raw.get("is_primary_office_local", True)),
        is_conversion=bool(raw.get("is_conversion", False)),
        registered_on=_date(raw.get("registered_on"), "employer.registered_on", required=False),
        census_employees=census,
        plan_years=siblings,
    )


def _transition_from_dict(raw: Any, name: str) -> TransitionRecord:
    raw = _mapping(raw, name)
    return TransitionRecord(
        from_state=str(raw.get("from_state") or ""),
        to_state=str(raw.get("to_state") or ""),
        event=str(raw.get("event") or ""),
        transition_at=_datetime(raw.get("transition_at"), f"{name}.transition_at"),
    )


def plan_year_from_dict(payload: dict[str, Any]) -> PlanYearSnapshot:
    """
    Build a snapshot from a JSON payload.

    Raises ValueError naming the offending field (e.g.
    ``employer.census_employees[0]``) for any malformed entry.
    """
    payload = _mapping(payload, "Plan year payload")
    transitions = tuple(
        _transition_from_dict(t, f"transitions[{i}]")
        for i, t in enumerate(_items(payload.get("transitions"), "transitions"))
    )
    benefit_groups = tuple(
        _benefit_group_from_dict(bg, f"benefit_groups[{i}]")
        for i, bg in enumerate(_items(payload.get("benefit_groups"), "benefit_groups"))
    )
    employer = payload.get("employer")
    termination_kind = payload.get("termination_kind") or None
    if termination_kind is not None and not isinstance(termination_kind, str):
        raise ValueError("termination_kind must be a string.")
    return PlanYearSnapshot(
        id=_ident(payload.get("id"), "id"),
        state=parse_state(payload.get("state") or "draft"),
        start_on=_date(payload.get("start_on"), "start_on"),
        end_on=_date(payload.get("end_on"), "end_on"),
        open_enrollment_start_on=_date(payload.get("open_enrollment_start_on"), "open_enrollment_start_on"),
        open_enrollment_end_on=_date(payload.get("open_enrollment_end_on"), "open_enrollment_end_on"),
        benefit_groups=benefit_groups,
        employer=_employer_from_dict({} if employer is None else employer),
        fte_count=_int(payload.get("fte_count"), "fte_count"),
        pte_count=_int(payload.get("pte_count"), "pte_count"),
        msp_count=_int(payload.get("msp_count"), "msp_count"),
        is_conversion=bool(payload.get("is_conversion", False)),
        imported_plan_year=bool(payload.get("imported_plan_year", False)),
        terminated_on=_date(payload.get("terminated_on"), "terminated_on", required=False),
        termination_kind=termination_kind,
        transitions=transitions,
    )


def plan_year_to_dict(py: PlanYearSnapshot) -> dict[str, Any]:
    return {
        "id": py.id,
        "state": py.state.value,
        "start_on": py.start_on.isoformat(),
        "end_on": py.end_on.isoformat(),
        "open_enrollment_start_on": py.open_enrollment_start_on.isoformat(),
        "open_enrollment_end_on": py.open_enrollment_end_on.isoformat(),
        "terminated_on": py.terminated_on.isoformat() if py.terminated_on else None,
        "termination_kind": py.termination_kind,
        "fte_count": py.fte_count,
        "pte_count": py.pte_count,
        "msp_count": py.msp_count,
        "is_conversion": py.is_conversion,
        "imported_plan_year": py.imported_plan_year,
        "benefit_group_ids": sorted(str(i) for i in py.benefit_group_ids),
    }
