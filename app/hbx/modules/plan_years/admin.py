"""
Plan year admin routes.
JSON endpoints for the SHOP application lifecycle: create, publish, open
enrollment, renewal and termination, plus a stateless rules evaluator.
"""
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.orm import Session

from app.hbx.db import db_session
from app.hbx.modules.employers.models import EmployerProfile
from app.hbx.rbac import require_permission, user_has_permission
from app.hbx.timekeeper import date_of_record
from app.hbx.utils import error_response, json_payload, parse_bool, parse_date, parse_int, shop_market_settings

from . import rules, service, timetable, workflow
from .rules import PlanYearValidationError
from .snapshot import plan_year_from_dict, plan_year_to_dict
from .states import PlanYearEvent, parse_event
from .workflow import InvalidTransition

bp = Blueprint("plan_years", __name__)

# Events that override eligibility or rewrite history need plan_years.admin.
ADMIN_EVENTS = {
    PlanYearEvent.FORCE_PUBLISH,
    PlanYearEvent.GRANT_ELIGIBILITY,
    PlanYearEvent.DENY_ELIGIBILITY,
    PlanYearEvent.REINSTATE_PLAN_YEAR,
    PlanYearEvent.CONVERSION_EXPIRE,
    PlanYearEvent.REVERT_APPLICATION,
    PlanYearEvent.REVERT_RENEWAL,
}


def _domain_error(e: ValueError):
    if isinstance(e, PlanYearValidationError):
        return error_response(str(e), 400, e.errors)
    if isinstance(e, InvalidTransition):
        return error_response(str(e), 409)
    return error_response(str(e), 400)


def _get_plan_year_or_404(s: Session, plan_year_id: int):
    plan_year = service.get_plan_year(s, plan_year_id)
    if plan_year is None:
        return None, error_response("Plan year not found", 404)
    return plan_year, None


# ─────────────────────────────────────────────────────────────────────────────
# Read
# ─────────────────────────────────────────────────────────────────────────────


@bp.get("/<int:plan_year_id>")
@require_permission("plan_years.view")
def plan_year_detail(plan_year_id: int):
    s = db_session()
    plan_year, err = _get_plan_year_or_404(s, plan_year_id)
    if err:
        return err
    settings = shop_market_settings()
    today = date_of_record()
    snap = service.build_snapshot(s, plan_year)
    body = service.serialize_plan_year(plan_year)
    body["permitted_events"] = [e.value for e in workflow.permitted_events(snap, today=today, settings=settings)]
    body["employer_contribution_percent"] = rules.minimum_employer_contribution(snap)
    return jsonify(body)


@bp.get("/<int:plan_year_id>/eligibility")
@require_permission("plan_years.view")
def plan_year_eligibility(plan_year_id: int):
    s = db_session()
    plan_year, err = _get_plan_year_or_404(s, plan_year_id)
    if err:
        return err
    return jsonify(service.eligibility_report(s, plan_year, settings=shop_market_settings(), today=date_of_record()))


@bp.get("/timetable")
@require_permission("plan_years.view")
def enrollment_timetable():
    settings = shop_market_settings()
    today = date_of_record()
    try:
        start_on = parse_date(request.args.get("start_on"), "start_on", required=False)
    except ValueError as e:
        return error_response(str(e), 400)
    if start_on is None:
        start_on = timetable.earliest_available_start_on(today, settings)
    body = timetable.shop_enrollment_timetable(start_on, settings).as_dict()
    body["check"] = timetable.check_start_on(start_on, today, settings)
    body["open_enrollment"] = {k: v.isoformat() for k, v in timetable.calculate_open_enrollment_date(start_on, today, settings).items()}
    return jsonify(body)


@bp.get("/start-on-options")
@require_permission("plan_years.view")
def start_on_options():
    options = timetable.calculate_start_on_options(date_of_record(), shop_market_settings())
    return jsonify({"options": [{"label": label, "start_on": value} for label, value in options]})


@bp.post("/evaluate")
@require_permission("plan_years.view")
def evaluate():
    """
    Run the rules against a plan year described entirely in the request body.

    Body: {"plan_year": {...}, "today": "YYYY-MM-DD"?, "event": "publish"?}
    Nothing is read from or written to the database.
    """
    settings = shop_market_settings()
    try:
        payload = json_payload()
        snap = plan_year_from_dict(payload.get("plan_year") or {})
        today = parse_date(payload.get("today"), "today", required=False) or date_of_record()
        report = rules.eligibility_report(snap, today, settings)
        report["permitted_events"] = [e.value for e in workflow.permitted_events(snap, today=today, settings=settings)]
        raw_event = payload.get("event")
        if raw_event:
            outcome = workflow.fire(snap, parse_event(raw_event), today=today, settings=settings)
            report["outcome"] = service.serialize_outcome(outcome)
            report["plan_year"] = plan_year_to_dict(outcome.plan_year)
    except ValueError as e:
        return _domain_error(e)
    return jsonify(report)


# ─────────────────────────────────────────────────────────────────────────────
# Create / edit
# ─────────────────────────────────────────────────────────────────────────────


@bp.post("/")
@require_permission("plan_years.edit")
def plan_year_create():
    s = db_session()
    u = g.current_user
    try:
        payload = json_payload()
        employer_id = parse_int(payload.get("employer_profile_id"), "employer_profile_id")
        employer = s.get(EmployerProfile, employer_id)
        if employer is None:
            return error_response("Employer not found", 404)
        plan_year = service.create_plan_year(
            s,
            employer,
            start_on=parse_date(payload.get("start_on"), "start_on"),
            end_on=parse_date(payload.get("end_on"), "end_on", required=False),
            open_enrollment_start_on=parse_date(
                payload.get("open_enrollment_start_on"), "open_enrollment_start_on", required=False
            ),
            open_enrollment_end_on=parse_date(
                payload.get("open_enrollment_end_on"), "open_enrollment_end_on", required=False
            ),
            fte_count=parse_int(payload.get("fte_count"), "fte_count", default=0),
            pte_count=parse_int(payload.get("pte_count"), "pte_count", default=0),
            msp_count=parse_int(payload.get("msp_count"), "msp_count", default=0),
            imported_plan_year=parse_bool(payload.get("imported_plan_year")),
            is_conversion=parse_bool(payload.get("is_conversion")),
            settings=shop_market_settings(),
            today=date_of_record(),
            user=u,
        )
    except ValueError as e:
        s.rollback()
        return _domain_error(e)
    s.commit()
    return jsonify(service.serialize_plan_year(plan_year)), 201


@bp.patch("/<int:plan_year_id>/dates")
@require_permission("plan_years.edit")
def plan_year_update_dates(plan_year_id: int):
    s = db_session()
    plan_year, err = _get_plan_year_or_404(s, plan_year_id)
    if err:
        return err
    try:
        payload = json_payload()
        service.update_plan_year_dates(
            s,
            plan_year,
            settings=shop_market_settings(),
            today=date_of_record(),
            start_on=parse_date(payload.get("start_on"), "start_on", required=False),
            end_on=parse_date(payload.get("end_on"), "end_on", required=False),
            open_enrollment_start_on=parse_date(
                payload.get("open_enrollment_start_on"), "open_enrollment_start_on", required=False
            ),
            open_enrollment_end_on=parse_date(
                payload.get("open_enrollment_end_on"), "open_enrollment_end_on", required=False
            ),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return _domain_error(e)
    s.commit()
    return jsonify(service.serialize_plan_year(plan_year))


@bp.post("/<int:plan_year_id>/benefit-groups")
@require_permission("plan_years.edit")
def benefit_group_create(plan_year_id: int):
    s = db_session()
    plan_year, err = _get_plan_year_or_404(s, plan_year_id)
    if err:
        return err
    try:
        bg = service.add_benefit_group(s, plan_year, json_payload(), user=g.current_user)
    except ValueError as e:
        s.rollback()
        return _domain_error(e)
    s.commit()
    return jsonify(service.serialize_benefit_group(bg)), 201


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────────────────────────────────────


@bp.post("/<int:plan_year_id>/events/<event_name>")
@require_permission("plan_years.publish")
def plan_year_event(plan_year_id: int, event_name: str):
    s = db_session()
    u = g.current_user
    plan_year, err = _get_plan_year_or_404(s, plan_year_id)
    if err:
        return err
    try:
        event = parse_event(event_name)
    except ValueError as e:
        return error_response(str(e), 404)

    if event in ADMIN_EVENTS and not user_has_permission(u, "plan_years.admin"):
        g.missing_permission = "plan_years.admin"
        return error_response("Forbidden", 403)

    try:
        payload = json_payload()
        outcome = service.apply_event(
            s,
            plan_year,
            event,
            settings=shop_market_settings(),
            today=date_of_record(),
            user=u,
            comment=(payload.get("comment") or "").strip() or None,
            transmit=parse_bool(payload.get("transmit", True)),
        )
    except ValueError as e:
        s.rollback()
        return _domain_error(e)
    s.commit()
    current_app.logger.info(
        "plan year %s %s: %s -> %s (user=%s)", plan_year.id, event.value, outcome.from_state.value, outcome.to_state.value, u.email
    )
    return jsonify({"plan_year": service.serialize_plan_year(plan_year), "transition": service.serialize_outcome(outcome)})


@bp.post("/<int:plan_year_id>/terminate")
@require_permission("plan_years.admin")
def plan_year_terminate(plan_year_id: int):
    s = db_session()
    plan_year, err = _get_plan_year_or_404(s, plan_year_id)
    if err:
        return err
    try:
        payload = json_payload()
        outcome = service.terminate(
            s,
            plan_year,
            end_on=parse_date(payload.get("end_on"), "end_on"),
            terminated_on=parse_date(payload.get("terminated_on"), "terminated_on", required=False) or date_of_record(),
            termination_kind=(payload.get("termination_kind") or "").strip(),
            settings=shop_market_settings(),
            today=date_of_record(),
            user=g.current_user,
            transmit=parse_bool(payload.get("transmit", True)),
        )
    except ValueError as e:
        s.rollback()
        return _domain_error(e)
    s.commit()
    return jsonify({"plan_year": service.serialize_plan_year(plan_year), "transition": service.serialize_outcome(outcome)})


@bp.post("/<int:plan_year_id>/extend-open-enrollment")
@require_permission("plan_years.admin")
def plan_year_extend_open_enrollment(plan_year_id: int):
    s = db_session()
    plan_year, err = _get_plan_year_or_404(s, plan_year_id)
    if err:
        return err
    try:
        payload = json_payload()
        outcome = service.extend_open_enrollment(
            s,
            plan_year,
            parse_date(payload.get("open_enrollment_end_on"), "open_enrollment_end_on"),
            settings=shop_market_settings(),
            today=date_of_record(),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return _domain_error(e)
    s.commit()
    return jsonify({"plan_year": service.serialize_plan_year(plan_year), "transition": service.serialize_outcome(outcome)})


@bp.post("/<int:plan_year_id>/close-open-enrollment")
@require_permission("plan_years.admin")
def plan_year_close_open_enrollment(plan_year_id: int):
    s = db_session()
    plan_year, err = _get_plan_year_or_404(s, plan_year_id)
    if err:
        return err
    try:
        payload = json_payload()
        outcome = service.close_open_enrollment(
            s,
            plan_year,
            settings=shop_market_settings(),
            today=date_of_record(),
            end_on=parse_date(payload.get("open_enrollment_end_on"), "open_enrollment_end_on", required=False),
            user=g.current_user,
        )
    except ValueError as e:
        s.rollback()
        return _domain_error(e)
    s.commit()
    return jsonify({"plan_year": service.serialize_plan_year(plan_year), "transition": service.serialize_outcome(outcome)})


@bp.post("/<int:plan_year_id>/renew")
@require_permission("plan_years.edit")
def plan_year_renew(plan_year_id: int):
    s = db_session()
    plan_year, err = _get_plan_year_or_404(s, plan_year_id)
    if err:
        return err
    try:
        renewal = service.renew_plan_year(
            s, plan_year, settings=shop_market_settings(), today=date_of_record(), user=g.current_user
        )
    except ValueError as e:
        s.rollback()
        return _domain_error(e)
    s.commit()
    return jsonify(service.serialize_plan_year(renewal)), 201


@bp.post("/advance-date")
@require_permission("plan_years.admin")
def plan_years_advance_date():
    s = db_session()
    try:
        payload = json_payload()
        today = parse_date(payload.get("date"), "date", required=False) or date_of_record()
        dry_run = parse_bool(payload.get("dry_run"))
    except ValueError as e:
        return error_response(str(e), 400)
    moves = service.advance_date_for_all(
        s, settings=shop_market_settings(), today=today, dry_run=dry_run, user=g.current_user
    )
    if dry_run:
        s.rollback()
    else:
        s.commit()
    return jsonify({"date": today.isoformat(), "dry_run": dry_run, "moves": moves})
