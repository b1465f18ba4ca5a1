"""
Agency admin routes.
Broker agencies, general agencies and their employer accounts.
"""
from __future__ import annotations

from flask import Blueprint, g, jsonify, request
from sqlalchemy.orm import Session

from app.hbx.db import db_session
from app.hbx.modules.employers.models import EmployerProfile
from app.hbx.rbac import require_permission
from app.hbx.timekeeper import date_of_record
from app.hbx.utils import error_response, json_payload, parse_bool, parse_date, parse_int

from .models import BrokerAgencyProfile, GeneralAgencyProfile
from .service import (
    AGENCY_EVENTS,
    active_broker_account,
    active_general_agency_accounts,
    assign_general_agency,
    clear_default_general_agency,
    create_broker_agency,
    create_general_agency,
    fire_general_agency,
    general_agency_history,
    hire_broker_agency,
    search_broker_agencies,
    serialize_broker_account,
    serialize_broker_agency,
    serialize_general_agency,
    serialize_general_agency_account,
    set_default_general_agency,
    terminate_broker_agency,
    transition_agency,
)

bp = Blueprint("agencies", __name__)


def _employers(s: Session, ids: list) -> list[EmployerProfile]:
    if not ids:
        raise ValueError("employer_profile_ids is required.")
    employers = []
    for raw in ids:
        employer = s.get(EmployerProfile, parse_int(raw, "employer_profile_ids[]"))
        if employer is None:
            raise ValueError(f"Employer {raw} not found.")
        employers.append(employer)
    return employers


# ─────────────────────────────────────────────────────────────────────────────
# Broker agencies
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/broker-agencies")
@require_permission("agencies.view")
def broker_agencies_list():
    s = db_session()
    agencies = search_broker_agencies(
        s, request.args.get("q", ""), approved_only=parse_bool(request.args.get("approved"))
    )
    return jsonify({"broker_agencies": [serialize_broker_agency(b) for b in agencies]})


@bp.post("/broker-agencies")
@require_permission("agencies.edit")
def broker_agency_create():
    s = db_session()
    try:
        payload = json_payload()
        bap = create_broker_agency(
            s,
            legal_name=payload.get("legal_name") or "",
            fein=payload.get("fein") or "",
            primary_broker_npn=payload.get("primary_broker_npn"),
            primary_broker_name=payload.get("primary_broker_name"),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify(serialize_broker_agency(bap)), 201


@bp.post("/broker-agencies/<int:broker_agency_id>/events/<event_name>")
@require_permission("agencies.edit")
def broker_agency_event(broker_agency_id: int, event_name: str):
    s = db_session()
    bap = s.get(BrokerAgencyProfile, broker_agency_id)
    if bap is None:
        return error_response("Broker agency not found", 404)
    if event_name not in AGENCY_EVENTS:
        return error_response(f"Unknown agency event: {event_name}", 404)
    try:
        transition_agency(s, bap, event_name, user=g.current_user)
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 409)
    s.commit()
    return jsonify(serialize_broker_agency(bap))


@bp.put("/broker-agencies/<int:broker_agency_id>/default-general-agency")
@require_permission("agencies.edit")
def broker_agency_set_default_ga(broker_agency_id: int):
    s = db_session()
    bap = s.get(BrokerAgencyProfile, broker_agency_id)
    if bap is None:
        return error_response("Broker agency not found", 404)
    try:
        payload = json_payload()
        gap = s.get(GeneralAgencyProfile, parse_int(payload.get("general_agency_profile_id"), "general_agency_profile_id"))
        if gap is None:
            return error_response("General agency not found", 404)
        set_default_general_agency(s, bap, gap, user=g.current_user)
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify(serialize_broker_agency(bap))


@bp.delete("/broker-agencies/<int:broker_agency_id>/default-general-agency")
@require_permission("agencies.edit")
def broker_agency_clear_default_ga(broker_agency_id: int):
    s = db_session()
    bap = s.get(BrokerAgencyProfile, broker_agency_id)
    if bap is None:
        return error_response("Broker agency not found", 404)
    clear_default_general_agency(s, bap, user=g.current_user)
    s.commit()
    return jsonify(serialize_broker_agency(bap))


# ─────────────────────────────────────────────────────────────────────────────
# General agencies
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/general-agencies")
@require_permission("agencies.view")
def general_agencies_list():
    s = db_session()
    agencies = s.query(GeneralAgencyProfile).order_by(GeneralAgencyProfile.legal_name.asc()).all()
    return jsonify({"general_agencies": [serialize_general_agency(a) for a in agencies]})


@bp.post("/general-agencies")
@require_permission("agencies.edit")
def general_agency_create():
    s = db_session()
    try:
        payload = json_payload()
        gap = create_general_agency(
            s, legal_name=payload.get("legal_name") or "", fein=payload.get("fein") or "", user=g.current_user
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify(serialize_general_agency(gap)), 201


@bp.post("/general-agencies/<int:general_agency_id>/events/<event_name>")
@require_permission("agencies.edit")
def general_agency_event(general_agency_id: int, event_name: str):
    s = db_session()
    gap = s.get(GeneralAgencyProfile, general_agency_id)
    if gap is None:
        return error_response("General agency not found", 404)
    if event_name not in AGENCY_EVENTS:
        return error_response(f"Unknown agency event: {event_name}", 404)
    try:
        transition_agency(s, gap, event_name, user=g.current_user)
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 409)
    s.commit()
    return jsonify(serialize_general_agency(gap))


# ─────────────────────────────────────────────────────────────────────────────
# Employer accounts
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/employers/<int:employer_id>")
@require_permission("agencies.view")
def employer_agencies(employer_id: int):
    s = db_session()
    employer = s.get(EmployerProfile, employer_id)
    if employer is None:
        return error_response("Employer not found", 404)
    broker = active_broker_account(s, employer)
    return jsonify(
        {
            "broker_agency_account": serialize_broker_account(broker) if broker else None,
            "general_agency_accounts": [
                serialize_general_agency_account(a) for a in active_general_agency_accounts(s, employer)
            ],
            "general_agency_history": [serialize_general_agency_account(a) for a in general_agency_history(s, employer)],
        }
    )


@bp.post("/employers/<int:employer_id>/broker")
@require_permission("agencies.edit")
def employer_hire_broker(employer_id: int):
    s = db_session()
    employer = s.get(EmployerProfile, employer_id)
    if employer is None:
        return error_response("Employer not found", 404)
    try:
        payload = json_payload()
        bap = s.get(BrokerAgencyProfile, parse_int(payload.get("broker_agency_profile_id"), "broker_agency_profile_id"))
        if bap is None:
            return error_response("Broker agency not found", 404)
        account = hire_broker_agency(
            s,
            employer,
            bap,
            start_on=parse_date(payload.get("start_on"), "start_on", required=False) or date_of_record(),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify(serialize_broker_account(account)), 201


@bp.delete("/employers/<int:employer_id>/broker")
@require_permission("agencies.edit")
def employer_terminate_broker(employer_id: int):
    s = db_session()
    employer = s.get(EmployerProfile, employer_id)
    if employer is None:
        return error_response("Employer not found", 404)
    try:
        payload = json_payload()
        account = terminate_broker_agency(
            s,
            employer,
            end_on=parse_date(payload.get("end_on"), "end_on", required=False) or date_of_record(),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    if account is None:
        return error_response("Employer has no active broker", 404)
    s.commit()
    return jsonify(serialize_broker_account(account))


@bp.post("/general-agency-assignments")
@require_permission("agencies.edit")
def general_agency_assign():
    """Body: {general_agency_profile_id, broker_agency_profile_id, employer_profile_ids: [...]}"""
    s = db_session()
    try:
        payload = json_payload()
        gap = s.get(GeneralAgencyProfile, parse_int(payload.get("general_agency_profile_id"), "general_agency_profile_id"))
        bap = s.get(BrokerAgencyProfile, parse_int(payload.get("broker_agency_profile_id"), "broker_agency_profile_id"))
        if gap is None or bap is None:
            return error_response("Agency not found", 404)
        employers = _employers(s, payload.get("employer_profile_ids") or [])
        result = assign_general_agency(
            s,
            employers,
            gap,
            bap,
            start_on=parse_date(payload.get("start_on"), "start_on", required=False) or date_of_record(),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify(result)


@bp.post("/general-agency-assignments/clear")
@require_permission("agencies.edit")
def general_agency_clear():
    s = db_session()
    try:
        payload = json_payload()
        employers = _employers(s, payload.get("employer_profile_ids") or [])
        fired = fire_general_agency(
            s,
            employers,
            end_on=parse_date(payload.get("end_on"), "end_on", required=False) or date_of_record(),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify({"fired": fired})
