from __future__ import annotations

import json

from flask import Blueprint, jsonify, request
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

from app.hbx.db import db_session
from app.hbx.models import AuditEvent, WorkflowStateTransition
from app.hbx.modules.employers.models import EmployerProfile
from app.hbx.modules.plan_years.models import PlanYear
from app.hbx.rbac import require_permission
from app.hbx.timekeeper import date_of_record

bp = Blueprint("admin", __name__)


@bp.get("/")
@require_permission("admin.view")
def index():
    """Dashboard: plan years and employers by state, latest plan-year transitions."""
    s = db_session()
    status = {"db_connected": False, "db_error": None, "date_of_record": date_of_record().isoformat()}
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except SQLAlchemyError as e:
        status["db_error"] = str(e)
        return jsonify({"status": status}), 503

    plan_years_by_state = dict(
        s.query(PlanYear.aasm_state, func.count(PlanYear.id)).group_by(PlanYear.aasm_state).all()
    )
    employers_by_state = dict(
        s.query(EmployerProfile.aasm_state, func.count(EmployerProfile.id)).group_by(EmployerProfile.aasm_state).all()
    )
    recent = (
        s.query(WorkflowStateTransition)
        .filter(WorkflowStateTransition.transitional_type == "PlanYear")
        .order_by(WorkflowStateTransition.transition_at.desc(), WorkflowStateTransition.id.desc())
        .limit(20)
        .all()
    )
    return jsonify(
        {
            "status": status,
            "plan_years_by_state": plan_years_by_state,
            "employers_by_state": employers_by_state,
            "recent_transitions": [
                {
                    "plan_year_id": t.transitional_id,
                    "event": t.event,
                    "from_state": t.from_state,
                    "to_state": t.to_state,
                    "transition_at": t.transition_at.isoformat(),
                }
                for t in recent
            ],
        }
    )


@bp.get("/audit")
@require_permission("admin.view")
def audit_log():
    s = db_session()
    query = s.query(AuditEvent)
    action = (request.args.get("action") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    if action:
        query = query.filter(AuditEvent.action.like(f"{action}%"))
    if entity_type:
        query = query.filter(AuditEvent.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditEvent.entity_id == entity_id)
    limit = min(request.args.get("limit", 100, type=int) or 100, 500)
    events = query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()
    return jsonify(
        {
            "events": [
                {
                    "id": e.id,
                    "created_at": e.created_at.isoformat(),
                    "request_id": e.request_id,
                    "actor": e.actor_user_email,
                    "action": e.action,
                    "entity_type": e.entity_type,
                    "entity_id": e.entity_id,
                    "reason": e.reason,
                    "metadata": json.loads(e.metadata_json) if e.metadata_json else None,
                }
                for e in events
            ]
        }
    )
