"""
Employer admin routes.
Employer profiles, the census roster (including CSV import) and coverage
decisions on benefit group assignments.
"""
from __future__ import annotations

from flask import Blueprint, g, jsonify, request
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.hbx.db import db_session
from app.hbx.modules.plan_years.models import BenefitGroup
from app.hbx.rbac import require_permission
from app.hbx.timekeeper import date_of_record
from app.hbx.utils import error_response, json_payload, parse_bool, parse_date, parse_int

from .models import BenefitGroupAssignment, CensusEmployee, EmployerProfile
from .parsers.csv import parse_census_csv
from .service import (
    ASSIGNMENT_EVENTS,
    EMPLOYER_EVENTS,
    assign_benefit_group,
    assignment_event,
    create_census_employee,
    create_employer,
    import_census_rows,
    serialize_assignment,
    serialize_census_employee,
    serialize_employer,
    terminate_employment,
    transition_employer,
    update_employer,
)

bp = Blueprint("employers", __name__)

MAX_ROSTER_BYTES = 5 * 1024 * 1024


def _get_employer(s: Session, employer_id: int) -> EmployerProfile | None:
    return s.get(EmployerProfile, employer_id)


def _census_payload(raw: dict) -> dict:
    return {
        "first_name": raw.get("first_name") or "",
        "last_name": raw.get("last_name") or "",
        "dob": parse_date(raw.get("dob"), "dob"),
        "hired_on": parse_date(raw.get("hired_on"), "hired_on"),
        "ssn_last4": raw.get("ssn_last4"),
        "email": raw.get("email"),
        "is_business_owner": parse_bool(raw.get("is_business_owner")),
    }


# ─────────────────────────────────────────────────────────────────────────────
# Employer profiles
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/")
@require_permission("employers.view")
def employers_list():
    s = db_session()
    q = (request.args.get("q") or "").strip()
    state = (request.args.get("state") or "").strip()

    query = s.query(EmployerProfile)
    if q:
        like = f"%{q}%"
        query = query.filter(
            or_(EmployerProfile.legal_name.ilike(like), EmployerProfile.dba.ilike(like), EmployerProfile.fein.like(like))
        )
    if state:
        query = query.filter(EmployerProfile.aasm_state == state)

    employers = query.order_by(EmployerProfile.legal_name.asc()).limit(200).all()
    return jsonify({"employers": [serialize_employer(e) for e in employers]})


@bp.post("/")
@require_permission("employers.edit")
def employer_create():
    s = db_session()
    try:
        payload = json_payload()
        employer = create_employer(
            s,
            legal_name=payload.get("legal_name") or "",
            fein=payload.get("fein") or "",
            dba=payload.get("dba"),
            entity_kind=(payload.get("entity_kind") or "c_corporation").strip(),
            is_primary_office_local=parse_bool(payload.get("is_primary_office_local", True)),
            is_conversion=parse_bool(payload.get("is_conversion")),
            registered_on=parse_date(payload.get("registered_on"), "registered_on", required=False) or date_of_record(),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify(serialize_employer(employer)), 201


@bp.get("/<int:employer_id>")
@require_permission("employers.view")
def employer_detail(employer_id: int):
    s = db_session()
    employer = _get_employer(s, employer_id)
    if employer is None:
        return error_response("Employer not found", 404)
    return jsonify(serialize_employer(employer, include_roster=True))


@bp.patch("/<int:employer_id>")
@require_permission("employers.edit")
def employer_update(employer_id: int):
    s = db_session()
    employer = _get_employer(s, employer_id)
    if employer is None:
        return error_response("Employer not found", 404)
    try:
        update_employer(s, employer, json_payload(), user=g.current_user)
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify(serialize_employer(employer))


@bp.post("/<int:employer_id>/events/<event_name>")
@require_permission("employers.edit")
def employer_event(employer_id: int, event_name: str):
    s = db_session()
    employer = _get_employer(s, employer_id)
    if employer is None:
        return error_response("Employer not found", 404)
    if event_name not in EMPLOYER_EVENTS:
        return error_response(f"Unknown employer event: {event_name}", 404)
    try:
        payload = json_payload()
        transition_employer(
            s, employer, event_name, user=g.current_user, comment=(payload.get("comment") or "").strip() or None
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 409)
    s.commit()
    return jsonify(serialize_employer(employer))


# ─────────────────────────────────────────────────────────────────────────────
# Census roster
# ─────────────────────────────────────────────────────────────────────────────


@bp.post("/<int:employer_id>/census-employees")
@require_permission("employers.edit")
def census_employee_create(employer_id: int):
    s = db_session()
    employer = _get_employer(s, employer_id)
    if employer is None:
        return error_response("Employer not found", 404)
    try:
        ce = create_census_employee(s, employer, _census_payload(json_payload()), user=g.current_user)
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify(serialize_census_employee(ce)), 201


@bp.post("/<int:employer_id>/census-employees/import")
@require_permission("employers.edit")
def census_import(employer_id: int):
    """Bulk roster upload (multipart field 'file'). Bad rows are reported, good rows are kept."""
    s = db_session()
    employer = _get_employer(s, employer_id)
    if employer is None:
        return error_response("Employer not found", 404)

    f = request.files.get("file")
    if not f or not f.filename:
        return error_response("No file uploaded", 400)
    data = f.read()
    if len(data) > MAX_ROSTER_BYTES:
        return error_response("File too large. Maximum size is 5MB.", 413)

    try:
        rows, errors = parse_census_csv(data)
    except ValueError as e:
        return error_response(str(e), 400)

    result = import_census_rows(s, employer, rows, user=g.current_user)
    s.commit()
    return jsonify(
        {
            **result,
            "errors": [{"row": err.row_number, "message": err.message} for err in errors],
        }
    )


@bp.post("/census-employees/<int:census_employee_id>/terminate")
@require_permission("employers.edit")
def census_employee_terminate(census_employee_id: int):
    s = db_session()
    ce = s.get(CensusEmployee, census_employee_id)
    if ce is None:
        return error_response("Census employee not found", 404)
    try:
        payload = json_payload()
        terminate_employment(
            s,
            ce,
            terminated_on=parse_date(payload.get("terminated_on"), "terminated_on"),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify(serialize_census_employee(ce))


@bp.post("/census-employees/<int:census_employee_id>/benefit-group-assignments")
@require_permission("employers.edit")
def census_employee_assign(census_employee_id: int):
    s = db_session()
    ce = s.get(CensusEmployee, census_employee_id)
    if ce is None:
        return error_response("Census employee not found", 404)
    try:
        payload = json_payload()
        bg = s.get(BenefitGroup, parse_int(payload.get("benefit_group_id"), "benefit_group_id"))
        if bg is None or bg.plan_year.employer_profile_id != ce.employer_profile_id:
            return error_response("Benefit group not found", 404)
        bga = assign_benefit_group(
            s,
            ce,
            bg,
            start_on=parse_date(payload.get("start_on"), "start_on", required=False) or bg.plan_year.start_on,
            is_renewal=parse_bool(payload.get("is_renewal")),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 400)
    s.commit()
    return jsonify(serialize_assignment(bga)), 201


@bp.post("/benefit-group-assignments/<int:assignment_id>/<event_name>")
@require_permission("employers.edit")
def assignment_coverage_event(assignment_id: int, event_name: str):
    """select_coverage, waive_coverage, terminate_coverage, cancel_coverage, delink_coverage."""
    s = db_session()
    bga = s.get(BenefitGroupAssignment, assignment_id)
    if bga is None:
        return error_response("Assignment not found", 404)
    if event_name not in ASSIGNMENT_EVENTS:
        return error_response(f"Unknown coverage event: {event_name}", 404)
    try:
        payload = json_payload()
        assignment_event(s, bga, event_name, user=g.current_user, waiver_reason=payload.get("waiver_reason"))
    except ValueError as e:
        s.rollback()
        return error_response(str(e), 409)
    s.commit()
    return jsonify(serialize_assignment(bga))
