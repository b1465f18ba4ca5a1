"""
Agencies service layer.
Broker agencies and general agencies: approval, hiring/terminating a broker
for an employer, and general agency assignments made on a broker's behalf.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING, Any, Iterable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.hbx import constants
from app.hbx.audit import record_event, record_transition
from app.hbx.modules.employers.models import EmployerProfile
from app.hbx.modules.employers.service import normalize_fein
from app.hbx.notifications import event_tag, notify

from .models import BrokerAgencyAccount, BrokerAgencyProfile, GeneralAgencyAccount, GeneralAgencyProfile

if TYPE_CHECKING:
    from app.hbx.models import User

logger = logging.getLogger(__name__)


class AgencyAssignmentError(ValueError):
    pass


# event -> (allowed source states, target state); shared by broker and general agencies
AGENCY_EVENTS: dict[str, tuple[set[str], str]] = {
    "approve": ({"is_applicant", "is_suspended"}, "is_approved"),
    "reject": ({"is_applicant"}, "is_rejected"),
    "suspend": ({"is_approved"}, "is_suspended"),
    "close": ({"is_applicant", "is_approved", "is_suspended"}, "is_closed"),
}


# ─────────────────────────────────────────────────────────────────────────────
# Profiles
# ─────────────────────────────────────────────────────────────────────────────


def create_broker_agency(
    s: Session,
    *,
    legal_name: str,
    fein: str,
    primary_broker_npn: str | None = None,
    primary_broker_name: str | None = None,
    market_kind: str = "shop",
    user: User | None = None,
) -> BrokerAgencyProfile:
    legal_name = (legal_name or "").strip()
    if not legal_name:
        raise ValueError("Legal name is required.")
    fein = normalize_fein(fein)
    if s.query(BrokerAgencyProfile).filter(BrokerAgencyProfile.fein == fein).one_or_none():
        raise ValueError(f"A broker agency with FEIN {fein} already exists.")
    bap = BrokerAgencyProfile(
        legal_name=legal_name,
        fein=fein,
        market_kind=market_kind,
        primary_broker_npn=(primary_broker_npn or "").strip() or None,
        primary_broker_name=(primary_broker_name or "").strip() or None,
        aasm_state="is_applicant",
    )
    s.add(bap)
    s.flush()
    record_event(
        s,
        actor=user,
        action="broker_agency.create",
        entity_type="BrokerAgencyProfile",
        entity_id=str(bap.id),
        metadata={"legal_name": bap.legal_name, "fein": bap.fein},
    )
    return bap


def create_general_agency(
    s: Session, *, legal_name: str, fein: str, market_kind: str = "shop", user: User | None = None
) -> GeneralAgencyProfile:
    legal_name = (legal_name or "").strip()
    if not legal_name:
        raise ValueError("Legal name is required.")
    fein = normalize_fein(fein)
    if s.query(GeneralAgencyProfile).filter(GeneralAgencyProfile.fein == fein).one_or_none():
        raise ValueError(f"A general agency with FEIN {fein} already exists.")
    gap = GeneralAgencyProfile(legal_name=legal_name, fein=fein, market_kind=market_kind, aasm_state="is_applicant")
    s.add(gap)
    s.flush()
    record_event(
        s,
        actor=user,
        action="general_agency.create",
        entity_type="GeneralAgencyProfile",
        entity_id=str(gap.id),
        metadata={"legal_name": gap.legal_name, "fein": gap.fein},
    )
    return gap


def transition_agency(
    s: Session,
    agency: BrokerAgencyProfile | GeneralAgencyProfile,
    event: str,
    *,
    user: User | None = None,
) -> BrokerAgencyProfile | GeneralAgencyProfile:
    rule = AGENCY_EVENTS.get(event)
    if rule is None:
        raise AgencyAssignmentError(f"Unknown agency event: {event}")
    if agency.aasm_state not in rule[0]:
        raise AgencyAssignmentError(f"Cannot {event} an agency in state '{agency.aasm_state}'")

    entity_type = type(agency).__name__
    old_state = agency.aasm_state
    agency.aasm_state = rule[1]
    record_transition(
        s,
        transitional_type=entity_type,
        transitional_id=agency.id,
        event=event,
        from_state=old_state,
        to_state=agency.aasm_state,
        actor=user,
    )
    record_event(
        s,
        actor=user,
        action=f"agency.{event}",
        entity_type=entity_type,
        entity_id=str(agency.id),
        metadata={"from": old_state, "to": agency.aasm_state},
    )
    return agency


def search_broker_agencies(s: Session, q: str = "", *, approved_only: bool = False) -> list[BrokerAgencyProfile]:
    query = s.query(BrokerAgencyProfile)
    q = (q or "").strip()
    if q:
        like = f"%{q}%"
        query = query.filter(
            or_(
                BrokerAgencyProfile.legal_name.ilike(like),
                BrokerAgencyProfile.primary_broker_name.ilike(like),
                BrokerAgencyProfile.primary_broker_npn.like(like),
                BrokerAgencyProfile.fein.like(like),
            )
        )
    if approved_only:
        query = query.filter(BrokerAgencyProfile.aasm_state == "is_approved")
    return query.order_by(BrokerAgencyProfile.legal_name.asc()).limit(100).all()


# ─────────────────────────────────────────────────────────────────────────────
# Broker agency accounts
# ─────────────────────────────────────────────────────────────────────────────


def active_broker_account(s: Session, employer: EmployerProfile) -> BrokerAgencyAccount | None:
    return (
        s.query(BrokerAgencyAccount)
        .filter(BrokerAgencyAccount.employer_profile_id == employer.id)
        .filter(BrokerAgencyAccount.is_active.is_(True))
        .order_by(BrokerAgencyAccount.start_on.desc(), BrokerAgencyAccount.id.desc())
        .first()
    )


def hire_broker_agency(
    s: Session,
    employer: EmployerProfile,
    broker_agency: BrokerAgencyProfile,
    *,
    start_on: date,
    user: User | None = None,
) -> BrokerAgencyAccount:
    """
    Make `broker_agency` the employer's broker.

    A previously hired broker is terminated on `start_on`; when the employer
    has no active general agency the broker's default one is assigned.
    """
    if broker_agency.aasm_state != "is_approved":
        raise AgencyAssignmentError(f"{broker_agency.legal_name} is not an approved broker agency.")

    current = active_broker_account(s, employer)
    if current is not None:
        if current.broker_agency_profile_id == broker_agency.id:
            return current
        terminate_broker_agency(s, employer, end_on=start_on, user=user)

    account = BrokerAgencyAccount(
        employer_profile_id=employer.id,
        broker_agency_profile_id=broker_agency.id,
        writing_agent_npn=broker_agency.primary_broker_npn,
        start_on=start_on,
        is_active=True,
    )
    s.add(account)
    s.flush()

    record_event(
        s,
        actor=user,
        action="broker_agency.hire",
        entity_type="EmployerProfile",
        entity_id=str(employer.id),
        metadata={"broker_agency_profile_id": broker_agency.id, "start_on": start_on},
    )
    notify(
        s,
        constants.BROKER_HIRED_EVENT,
        {"employer_id": employer.hbx_id, "event_name": event_tag(constants.BROKER_HIRED_EVENT)},
        actor=user,
        entity_type="EmployerProfile",
        entity_id=str(employer.id),
    )
    assign_default_general_agency(s, broker_agency, [employer], start_on=start_on, user=user)
    return account


def terminate_broker_agency(
    s: Session, employer: EmployerProfile, *, end_on: date, user: User | None = None
) -> BrokerAgencyAccount | None:
    """End the employer's active broker account and fire the general agency it placed."""
    account = active_broker_account(s, employer)
    if account is None:
        return None
    if end_on < account.start_on:
        raise AgencyAssignmentError("Broker termination date can't precede the hire date.")

    account.is_active = False
    account.end_on = end_on
    s.flush()
    fire_general_agency(s, [employer], end_on=end_on, user=user)

    record_event(
        s,
        actor=user,
        action="broker_agency.terminate",
        entity_type="EmployerProfile",
        entity_id=str(employer.id),
        metadata={"broker_agency_profile_id": account.broker_agency_profile_id, "end_on": end_on},
    )
    notify(
        s,
        constants.BROKER_FIRED_EVENT,
        {"employer_id": employer.hbx_id, "event_name": event_tag(constants.BROKER_FIRED_EVENT)},
        actor=user,
        entity_type="EmployerProfile",
        entity_id=str(employer.id),
    )
    return account


# ─────────────────────────────────────────────────────────────────────────────
# General agency accounts
# ─────────────────────────────────────────────────────────────────────────────


def active_general_agency_accounts(s: Session, employer: EmployerProfile) -> list[GeneralAgencyAccount]:
    return (
        s.query(GeneralAgencyAccount)
        .filter(GeneralAgencyAccount.employer_profile_id == employer.id)
        .filter(GeneralAgencyAccount.aasm_state == "active")
        .order_by(GeneralAgencyAccount.id.asc())
        .all()
    )


def fire_general_agency(
    s: Session, employers: Iterable[EmployerProfile], *, end_on: date, user: User | None = None
) -> int:
    fired = 0
    for employer in employers:
        for account in active_general_agency_accounts(s, employer):
            account.aasm_state = "inactive"
            account.end_on = end_on
            fired += 1
            record_event(
                s,
                actor=user,
                action="general_agency.terminate",
                entity_type="EmployerProfile",
                entity_id=str(employer.id),
                metadata={"general_agency_profile_id": account.general_agency_profile_id, "end_on": end_on},
            )
            notify(
                s,
                constants.GENERAL_AGENT_TERMINATED_EVENT,
                {"employer_id": employer.hbx_id, "event_name": "general_agent_terminated"},
                actor=user,
                entity_type="EmployerProfile",
                entity_id=str(employer.id),
            )
    s.flush()
    return fired


def _create_general_agency_account(
    s: Session,
    employer: EmployerProfile,
    general_agency: GeneralAgencyProfile,
    broker_agency: BrokerAgencyProfile | None,
    *,
    start_on: date,
    user: User | None,
) -> GeneralAgencyAccount:
    account = GeneralAgencyAccount(
        employer_profile_id=employer.id,
        general_agency_profile_id=general_agency.id,
        broker_agency_profile_id=broker_agency.id if broker_agency else None,
        start_on=start_on,
        aasm_state="active",
    )
    s.add(account)
    s.flush()
    record_event(
        s,
        actor=user,
        action="general_agency.hire",
        entity_type="EmployerProfile",
        entity_id=str(employer.id),
        metadata={
            "general_agency_profile_id": general_agency.id,
            "broker_agency_profile_id": account.broker_agency_profile_id,
            "start_on": start_on,
        },
    )
    notify(
        s,
        constants.GENERAL_AGENT_HIRED_EVENT,
        {"employer_id": employer.hbx_id, "general_agency_id": str(general_agency.id)},
        actor=user,
        entity_type="EmployerProfile",
        entity_id=str(employer.id),
    )
    return account


def assign_general_agency(
    s: Session,
    employers: Iterable[EmployerProfile],
    general_agency: GeneralAgencyProfile,
    broker_agency: BrokerAgencyProfile,
    *,
    start_on: date,
    user: User | None = None,
) -> dict[str, Any]:
    """
    Assign `general_agency` to each employer on the broker's book.

    The employer's current general agency is fired first. Employers the broker
    does not represent are reported as failures and left untouched.
    """
    if general_agency.aasm_state != "is_approved":
        raise AgencyAssignmentError(f"{general_agency.legal_name} is not an approved general agency.")

    assigned: list[int] = []
    failures: list[dict[str, Any]] = []
    for employer in employers:
        broker = active_broker_account(s, employer)
        if broker is None or broker.broker_agency_profile_id != broker_agency.id:
            failures.append({"employer_profile_id": employer.id, "error": f"Assignment Failed for {employer.legal_name}"})
            continue
        fire_general_agency(s, [employer], end_on=start_on, user=user)
        _create_general_agency_account(s, employer, general_agency, broker_agency, start_on=start_on, user=user)
        assigned.append(employer.id)

    if failures:
        logger.warning("General agency %s assignment failed for %s employers", general_agency.id, len(failures))
    return {"assigned": assigned, "failures": failures}


def assign_default_general_agency(
    s: Session,
    broker_agency: BrokerAgencyProfile,
    employers: Iterable[EmployerProfile],
    *,
    start_on: date,
    user: User | None = None,
) -> int:
    """Give employers without an active general agency the broker's default one."""
    default = broker_agency.default_general_agency_profile
    if default is None:
        return 0
    count = 0
    for employer in employers:
        if active_general_agency_accounts(s, employer):
            continue
        _create_general_agency_account(s, employer, default, broker_agency, start_on=start_on, user=user)
        count += 1
    return count


def _default_ga_changed(
    s: Session, broker_agency: BrokerAgencyProfile, previous_id: int | None, user: User | None
) -> None:
    record_event(
        s,
        actor=user,
        action="broker_agency.default_general_agency",
        entity_type="BrokerAgencyProfile",
        entity_id=str(broker_agency.id),
        metadata={"previous": previous_id, "current": broker_agency.default_general_agency_profile_id},
    )
    notify(
        s,
        constants.DEFAULT_GA_CHANGED_EVENT,
        {"broker_id": broker_agency.primary_broker_npn or str(broker_agency.id), "pre_default_ga_id": previous_id},
        actor=user,
        entity_type="BrokerAgencyProfile",
        entity_id=str(broker_agency.id),
    )


def set_default_general_agency(
    s: Session, broker_agency: BrokerAgencyProfile, general_agency: GeneralAgencyProfile, *, user: User | None = None
) -> BrokerAgencyProfile:
    if general_agency.aasm_state != "is_approved":
        raise AgencyAssignmentError(f"{general_agency.legal_name} is not an approved general agency.")
    previous_id = broker_agency.default_general_agency_profile_id
    broker_agency.default_general_agency_profile_id = general_agency.id
    broker_agency.default_general_agency_profile = general_agency
    _default_ga_changed(s, broker_agency, previous_id, user)
    return broker_agency


def clear_default_general_agency(
    s: Session, broker_agency: BrokerAgencyProfile, *, user: User | None = None
) -> BrokerAgencyProfile:
    previous_id = broker_agency.default_general_agency_profile_id
    broker_agency.default_general_agency_profile_id = None
    broker_agency.default_general_agency_profile = None
    _default_ga_changed(s, broker_agency, previous_id, user)
    return broker_agency


def general_agency_history(s: Session, employer: EmployerProfile) -> list[GeneralAgencyAccount]:
    return (
        s.query(GeneralAgencyAccount)
        .filter(GeneralAgencyAccount.employer_profile_id == employer.id)
        .order_by(GeneralAgencyAccount.start_on.desc(), GeneralAgencyAccount.id.desc())
        .all()
    )


# ─────────────────────────────────────────────────────────────────────────────
# Serialization
# ─────────────────────────────────────────────────────────────────────────────


def serialize_general_agency(gap: GeneralAgencyProfile) -> dict[str, Any]:
    return {"id": gap.id, "legal_name": gap.legal_name, "fein": gap.fein, "market_kind": gap.market_kind, "state": gap.aasm_state}


def serialize_broker_agency(bap: BrokerAgencyProfile) -> dict[str, Any]:
    return {
        "id": bap.id,
        "legal_name": bap.legal_name,
        "fein": bap.fein,
        "market_kind": bap.market_kind,
        "state": bap.aasm_state,
        "primary_broker_npn": bap.primary_broker_npn,
        "primary_broker_name": bap.primary_broker_name,
        "default_general_agency_profile_id": bap.default_general_agency_profile_id,
    }


def serialize_broker_account(account: BrokerAgencyAccount) -> dict[str, Any]:
    return {
        "id": account.id,
        "employer_profile_id": account.employer_profile_id,
        "broker_agency_profile_id": account.broker_agency_profile_id,
        "writing_agent_npn": account.writing_agent_npn,
        "start_on": account.start_on.isoformat(),
        "end_on": account.end_on.isoformat() if account.end_on else None,
        "is_active": account.is_active,
    }


def serialize_general_agency_account(account: GeneralAgencyAccount) -> dict[str, Any]:
    return {
        "id": account.id,
        "employer_profile_id": account.employer_profile_id,
        "general_agency_profile_id": account.general_agency_profile_id,
        "broker_agency_profile_id": account.broker_agency_profile_id,
        "start_on": account.start_on.isoformat(),
        "end_on": account.end_on.isoformat() if account.end_on else None,
        "state": account.aasm_state,
    }
