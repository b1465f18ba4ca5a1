"""
Employers service layer.
Handles employer profiles and their lifecycle, the census roster and benefit
group assignments (including the coverage decisions recorded on them).
"""
from __future__ import annotations

import logging
import re
import secrets
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Iterable

from sqlalchemy.orm import Session

from app.hbx.audit import record_event, record_transition

from .models import BenefitGroupAssignment, CensusEmployee, EmployerProfile

if TYPE_CHECKING:
    from app.hbx.models import User
    from app.hbx.modules.plan_years.models import BenefitGroup, PlanYear

logger = logging.getLogger(__name__)


class EmployerTransitionError(ValueError):
    pass


EMPLOYER_STATES = {
    "applicant",
    "registered",
    "eligible",
    "ineligible",
    "binder_paid",
    "enrolled",
    "suspended",
    "terminated",
}

# event -> (allowed source states, target state)
EMPLOYER_EVENTS: dict[str, tuple[set[str], str]] = {
    "application_accepted": ({"applicant", "registered", "ineligible"}, "eligible"),
    "application_declined": ({"applicant", "registered", "eligible"}, "ineligible"),
    "enrollment_ratified": ({"applicant", "registered", "eligible"}, "eligible"),
    "enrollment_denied": ({"registered", "eligible", "binder_paid", "enrolled"}, "applicant"),
    "binder_credited": ({"eligible"}, "binder_paid"),
    "binder_reversed": ({"binder_paid"}, "eligible"),
    "benefit_enrolled": ({"binder_paid"}, "enrolled"),
    "benefit_suspended": ({"enrolled"}, "suspended"),
    "benefit_terminated": ({"enrolled", "suspended"}, "terminated"),
    "revert_application": (
        {"registered", "eligible", "ineligible", "binder_paid", "enrolled", "suspended"},
        "applicant",
    ),
}

ACTIVE_CENSUS_STATES = {"eligible", "employee_role_linked", "rehired"}

# event -> (allowed source states, target state)
ASSIGNMENT_EVENTS: dict[str, tuple[set[str], str]] = {
    "select_coverage": ({"initialized", "coverage_waived", "coverage_terminated", "coverage_void", "coverage_selected"}, "coverage_selected"),
    "waive_coverage": ({"initialized", "coverage_selected", "coverage_waived"}, "coverage_waived"),
    "terminate_coverage": ({"initialized", "coverage_waived", "coverage_selected"}, "coverage_terminated"),
    "cancel_coverage": ({"initialized", "coverage_selected", "coverage_waived"}, "coverage_canceled"),
    "delink_coverage": ({"coverage_selected", "coverage_waived", "coverage_terminated", "coverage_void"}, "initialized"),
}


def normalize_fein(value: str | None) -> str:
    digits = re.sub(r"\D", "", value or "")
    if len(digits) != 9:
        raise ValueError("FEIN must be 9 digits.")
    return digits


def _autogen_hbx_id() -> str:
    return secrets.token_hex(5)


# ─────────────────────────────────────────────────────────────────────────────
# Employer profiles
# ─────────────────────────────────────────────────────────────────────────────


def create_employer(
    s: Session,
    *,
    legal_name: str,
    fein: str,
    dba: str | None = None,
    entity_kind: str = "c_corporation",
    is_primary_office_local: bool = True,
    is_conversion: bool = False,
    registered_on: date | None = None,
    user: User | None = None,
) -> EmployerProfile:
    legal_name = (legal_name or "").strip()
    if not legal_name:
        raise ValueError("Legal name is required.")
    fein = normalize_fein(fein)
    if s.query(EmployerProfile).filter(EmployerProfile.fein == fein).one_or_none():
        raise ValueError(f"An employer with FEIN {fein} already exists.")

    employer = EmployerProfile(
        hbx_id=_autogen_hbx_id(),
        legal_name=legal_name,
        dba=(dba or "").strip() or None,
        fein=fein,
        entity_kind=entity_kind,
        is_primary_office_local=is_primary_office_local,
        is_conversion=is_conversion,
        registered_on=registered_on,
        aasm_state="applicant",
    )
    s.add(employer)
    s.flush()

    record_event(
        s,
        actor=user,
        action="employer.create",
        entity_type="EmployerProfile",
        entity_id=str(employer.id),
        metadata={"legal_name": employer.legal_name, "fein": employer.fein, "hbx_id": employer.hbx_id},
    )
    return employer


def update_employer(s: Session, employer: EmployerProfile, payload: dict[str, Any], *, user: User | None = None) -> EmployerProfile:
    changes: dict[str, Any] = {}
    for key in ("legal_name", "dba", "entity_kind", "is_primary_office_local", "is_conversion"):
        if key not in payload:
            continue
        value = payload[key]
        if isinstance(value, str):
            value = value.strip()
        if key == "legal_name" and not value:
            raise ValueError("Legal name is required.")
        if getattr(employer, key) != value:
            changes[key] = {"from": getattr(employer, key), "to": value}
            setattr(employer, key, value)

    if changes:
        employer.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="employer.update",
            entity_type="EmployerProfile",
            entity_id=str(employer.id),
            metadata={"changes": changes},
        )
    return employer


def may_transition(employer: EmployerProfile, event: str) -> bool:
    rule = EMPLOYER_EVENTS.get(event)
    return bool(rule) and employer.aasm_state in rule[0]


def transition_employer(
    s: Session,
    employer: EmployerProfile,
    event: str,
    *,
    user: User | None = None,
    comment: str | None = None,
) -> EmployerProfile:
    if event not in EMPLOYER_EVENTS:
        raise EmployerTransitionError(f"Unknown employer event: {event}")
    if not may_transition(employer, event):
        raise EmployerTransitionError(f"Cannot {event} for an employer in state '{employer.aasm_state}'")

    old_state = employer.aasm_state
    employer.aasm_state = EMPLOYER_EVENTS[event][1]
    employer.updated_at = datetime.utcnow()

    record_transition(
        s,
        transitional_type="EmployerProfile",
        transitional_id=employer.id,
        event=event,
        from_state=old_state,
        to_state=employer.aasm_state,
        actor=user,
        comment=comment,
    )
    record_event(
        s,
        actor=user,
        action=f"employer.{event}",
        entity_type="EmployerProfile",
        entity_id=str(employer.id),
        reason=comment,
        metadata={"from": old_state, "to": employer.aasm_state},
    )
    logger.info("Employer %s: %s -> %s (%s)", employer.hbx_id, old_state, employer.aasm_state, event)
    return employer


def transition_employer_if_permitted(s: Session, employer: EmployerProfile, event: str, *, user: User | None = None) -> bool:
    if not may_transition(employer, event):
        return False
    transition_employer(s, employer, event, user=user)
    return True


# ─────────────────────────────────────────────────────────────────────────────
# Census roster
# ─────────────────────────────────────────────────────────────────────────────


def find_census_employee(
    s: Session, employer: EmployerProfile, *, first_name: str, last_name: str, dob: date
) -> CensusEmployee | None:
    return (
        s.query(CensusEmployee)
        .filter(CensusEmployee.employer_profile_id == employer.id)
        .filter(CensusEmployee.first_name == first_name.strip())
        .filter(CensusEmployee.last_name == last_name.strip())
        .filter(CensusEmployee.dob == dob)
        .one_or_none()
    )


def validate_census_payload(payload: dict[str, Any]) -> list[str]:
    errs: list[str] = []
    if not (payload.get("first_name") or "").strip():
        errs.append("First name is required.")
    if not (payload.get("last_name") or "").strip():
        errs.append("Last name is required.")
    dob = payload.get("dob")
    hired_on = payload.get("hired_on")
    if not isinstance(dob, date):
        errs.append("Date of birth is required (YYYY-MM-DD).")
    if not isinstance(hired_on, date):
        errs.append("Hire date is required (YYYY-MM-DD).")
    if isinstance(dob, date) and isinstance(hired_on, date) and hired_on <= dob:
        errs.append("Hire date must be after date of birth.")
    ssn_last4 = (payload.get("ssn_last4") or "").strip()
    if ssn_last4 and not re.fullmatch(r"\d{4}", ssn_last4):
        errs.append("SSN last 4 must be 4 digits.")
    return errs


def create_census_employee(
    s: Session,
    employer: EmployerProfile,
    payload: dict[str, Any],
    *,
    user: User | None = None,
) -> CensusEmployee:
    errs = validate_census_payload(payload)
    if errs:
        raise ValueError("; ".join(errs))

    first_name = payload["first_name"].strip()
    last_name = payload["last_name"].strip()
    if find_census_employee(s, employer, first_name=first_name, last_name=last_name, dob=payload["dob"]):
        raise ValueError(f"{first_name} {last_name} is already on the roster.")

    ce = CensusEmployee(
        employer_profile_id=employer.id,
        first_name=first_name,
        last_name=last_name,
        dob=payload["dob"],
        hired_on=payload["hired_on"],
        ssn_last4=(payload.get("ssn_last4") or "").strip() or None,
        email=(payload.get("email") or "").strip() or None,
        is_business_owner=bool(payload.get("is_business_owner", False)),
        aasm_state="eligible",
    )
    s.add(ce)
    employer.census_employees.append(ce)
    s.flush()

    record_event(
        s,
        actor=user,
        action="census_employee.create",
        entity_type="CensusEmployee",
        entity_id=str(ce.id),
        metadata={"employer_profile_id": employer.id, "name": ce.full_name},
    )
    return ce


def import_census_rows(
    s: Session, employer: EmployerProfile, rows: Iterable[dict[str, Any]], *, user: User | None = None
) -> dict[str, int]:
    """Create roster entries from parsed CSV rows. Rows already on the roster are skipped."""
    created = 0
    skipped = 0
    for row in rows:
        if find_census_employee(s, employer, first_name=row["first_name"], last_name=row["last_name"], dob=row["dob"]):
            skipped += 1
            continue
        create_census_employee(s, employer, row, user=user)
        created += 1

    record_event(
        s,
        actor=user,
        action="census_employee.import",
        entity_type="EmployerProfile",
        entity_id=str(employer.id),
        metadata={"created": created, "skipped_duplicates": skipped},
    )
    logger.info("Census import for employer %s: created=%s skipped=%s", employer.hbx_id, created, skipped)
    return {"created": created, "skipped_duplicates": skipped}


def terminate_employment(
    s: Session, ce: CensusEmployee, *, terminated_on: date, user: User | None = None
) -> CensusEmployee:
    if ce.aasm_state not in ACTIVE_CENSUS_STATES:
        raise ValueError(f"{ce.full_name} is not actively employed.")
    if terminated_on < ce.hired_on:
        raise ValueError("Termination date can't occur before hire date.")

    ce.aasm_state = "employment_terminated"
    ce.employment_terminated_on = terminated_on
    ce.updated_at = datetime.utcnow()

    for bga in ce.benefit_group_assignments:
        if not bga.is_active:
            continue
        bga.end_on = terminated_on
        if bga.aasm_state in ASSIGNMENT_EVENTS["terminate_coverage"][0]:
            bga.aasm_state = "coverage_terminated"
        bga.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="census_employee.terminate_employment",
        entity_type="CensusEmployee",
        entity_id=str(ce.id),
        metadata={"terminated_on": terminated_on},
    )
    return ce


# ─────────────────────────────────────────────────────────────────────────────
# Benefit group assignments
# ─────────────────────────────────────────────────────────────────────────────


def assign_benefit_group(
    s: Session,
    ce: CensusEmployee,
    benefit_group: BenefitGroup,
    *,
    start_on: date,
    is_renewal: bool = False,
    user: User | None = None,
) -> BenefitGroupAssignment:
    if ce.aasm_state not in ACTIVE_CENSUS_STATES:
        raise ValueError(f"{ce.full_name} is not actively employed.")

    for existing in ce.benefit_group_assignments:
        if existing.is_active and existing.is_renewal == is_renewal:
            if existing.benefit_group_id == benefit_group.id:
                return existing
            existing.is_active = False
            existing.end_on = existing.end_on or start_on
            existing.updated_at = datetime.utcnow()

    bga = BenefitGroupAssignment(
        census_employee_id=ce.id,
        benefit_group_id=benefit_group.id,
        start_on=start_on,
        is_active=True,
        is_renewal=is_renewal,
        aasm_state="initialized",
    )
    s.add(bga)
    ce.benefit_group_assignments.append(bga)
    s.flush()

    record_event(
        s,
        actor=user,
        action="census_employee.assign_benefit_group",
        entity_type="CensusEmployee",
        entity_id=str(ce.id),
        metadata={"benefit_group_id": benefit_group.id, "is_renewal": is_renewal, "start_on": start_on},
    )
    return bga


def may_assignment_event(bga: BenefitGroupAssignment, event: str) -> bool:
    rule = ASSIGNMENT_EVENTS.get(event)
    return bool(rule) and bga.aasm_state in rule[0]


def assignment_event(
    s: Session,
    bga: BenefitGroupAssignment,
    event: str,
    *,
    user: User | None = None,
    waiver_reason: str | None = None,
) -> BenefitGroupAssignment:
    if event not in ASSIGNMENT_EVENTS:
        raise ValueError(f"Unknown coverage event: {event}")
    if not may_assignment_event(bga, event):
        raise ValueError(f"Cannot {event} for an assignment in state '{bga.aasm_state}'")

    old_state = bga.aasm_state
    bga.aasm_state = ASSIGNMENT_EVENTS[event][1]
    if event == "waive_coverage":
        bga.waiver_reason = (waiver_reason or "").strip() or None
    bga.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action=f"benefit_group_assignment.{event}",
        entity_type="BenefitGroupAssignment",
        entity_id=str(bga.id),
        metadata={"from": old_state, "to": bga.aasm_state, "census_employee_id": bga.census_employee_id},
    )
    return bga


def assignments_for_benefit_groups(s: Session, benefit_group_ids: Iterable[int]) -> list[BenefitGroupAssignment]:
    ids = list(benefit_group_ids)
    if not ids:
        return []
    return (
        s.query(BenefitGroupAssignment)
        .join(CensusEmployee, CensusEmployee.id == BenefitGroupAssignment.census_employee_id)
        .filter(BenefitGroupAssignment.benefit_group_id.in_(ids))
        .filter(CensusEmployee.aasm_state != "employment_terminated")
        .order_by(BenefitGroupAssignment.id.asc())
        .all()
    )


def cancel_coverage(s: Session, benefit_group_ids: Iterable[int], *, user: User | None = None) -> int:
    count = 0
    for bga in assignments_for_benefit_groups(s, benefit_group_ids):
        if bga.aasm_state in ("coverage_selected", "coverage_waived"):
            assignment_event(s, bga, "cancel_coverage", user=user)
            count += 1
    return count


def delink_coverage(s: Session, benefit_group_ids: Iterable[int], *, end_on: date, user: User | None = None) -> int:
    count = 0
    for bga in assignments_for_benefit_groups(s, benefit_group_ids):
        if bga.is_active:
            if may_assignment_event(bga, "delink_coverage"):
                assignment_event(s, bga, "delink_coverage", user=user)
            bga.end_on = end_on
            bga.is_active = False
            count += 1
    return count


def terminate_coverage(s: Session, benefit_group_ids: Iterable[int], *, end_on: date, user: User | None = None) -> int:
    """End-date assignments running past `end_on`; coverage that would start after it is canceled."""
    count = 0
    for bga in assignments_for_benefit_groups(s, benefit_group_ids):
        if bga.end_on is not None and bga.end_on <= end_on:
            continue
        bga.end_on = end_on
        if bga.start_on > end_on and may_assignment_event(bga, "cancel_coverage"):
            assignment_event(s, bga, "cancel_coverage", user=user)
        elif may_assignment_event(bga, "terminate_coverage"):
            assignment_event(s, bga, "terminate_coverage", user=user)
        count += 1
    return count


def link_census_employees(
    s: Session, employer: EmployerProfile, plan_year: PlanYear, *, is_renewal: bool = False, user: User | None = None
) -> int:
    """Give every active roster member without an assignment in `plan_year` its default benefit group."""
    groups = [bg for bg in plan_year.benefit_groups if bg.is_active]
    if not groups:
        return 0
    default = next((bg for bg in groups if bg.is_default), groups[0])
    group_ids = {bg.id for bg in groups}

    linked = 0
    for ce in employer.census_employees:
        if ce.aasm_state not in ACTIVE_CENSUS_STATES:
            continue
        if any(bga.is_active and bga.benefit_group_id in group_ids for bga in ce.benefit_group_assignments):
            continue
        assign_benefit_group(s, ce, default, start_on=plan_year.start_on, is_renewal=is_renewal, user=user)
        linked += 1

    if linked:
        logger.info("Linked %s census employees to benefit group %s", linked, default.id)
    return linked


# ─────────────────────────────────────────────────────────────────────────────
# Serialization
# ─────────────────────────────────────────────────────────────────────────────


def serialize_assignment(bga: BenefitGroupAssignment) -> dict[str, Any]:
    return {
        "id": bga.id,
        "benefit_group_id": bga.benefit_group_id,
        "start_on": bga.start_on.isoformat(),
        "end_on": bga.end_on.isoformat() if bga.end_on else None,
        "is_active": bga.is_active,
        "is_renewal": bga.is_renewal,
        "state": bga.aasm_state,
        "waiver_reason": bga.waiver_reason,
    }


def serialize_census_employee(ce: CensusEmployee) -> dict[str, Any]:
    return {
        "id": ce.id,
        "first_name": ce.first_name,
        "last_name": ce.last_name,
        "dob": ce.dob.isoformat(),
        "hired_on": ce.hired_on.isoformat(),
        "employment_terminated_on": ce.employment_terminated_on.isoformat() if ce.employment_terminated_on else None,
        "email": ce.email,
        "is_business_owner": ce.is_business_owner,
        "state": ce.aasm_state,
        "benefit_group_assignments": [serialize_assignment(bga) for bga in ce.benefit_group_assignments],
    }


def serialize_employer(employer: EmployerProfile, *, include_roster: bool = False) -> dict[str, Any]:
    body: dict[str, Any] = {
        "id": employer.id,
        "hbx_id": employer.hbx_id,
        "legal_name": employer.legal_name,
        "dba": employer.dba,
        "fein": employer.fein,
        "entity_kind": employer.entity_kind,
        "state": employer.aasm_state,
        "is_primary_office_local": employer.is_primary_office_local,
        "is_conversion": employer.is_conversion,
        "registered_on": employer.registered_on.isoformat() if employer.registered_on else None,
        "plan_years": [
            {"id": py.id, "state": py.aasm_state, "start_on": py.start_on.isoformat(), "end_on": py.end_on.isoformat()}
            for py in employer.plan_years
        ],
    }
    if include_roster:
        body["census_employees"] = [serialize_census_employee(ce) for ce in employer.census_employees]
    return body
