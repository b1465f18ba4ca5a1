"""
Outbound event notifications.

Events are logged and appended to the audit trail; a downstream relay picks
them up from audit_events (action prefix "notify.").
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.hbx.audit import record_event
from app.hbx.models import AuditEvent, User

logger = logging.getLogger(__name__)


def event_tag(event_name: str) -> str:
    return event_name.rsplit(".", 1)[-1]


def notify(
    s: Session,
    event_name: str,
    payload: dict[str, Any],
    *,
    actor: User | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> AuditEvent:
    logger.info("NOTIFY: %s payload=%s", event_name, payload)
    return record_event(
        s,
        actor=actor,
        action=f"notify.{event_tag(event_name)}",
        entity_type=entity_type,
        entity_id=entity_id,
        metadata={"event_name": event_name, **payload},
    )
