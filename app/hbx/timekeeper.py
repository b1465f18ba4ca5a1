"""
Date of record.

All plan-year rules take `today` as an argument; request handlers and
scripts resolve it here so a deployment can pin the exchange calendar
(DATE_OF_RECORD=YYYY-MM-DD) without touching the system clock.
"""

from __future__ import annotations

from datetime import date, datetime

from flask import current_app, has_app_context


def parse_date_of_record(raw: str | None) -> date | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    return date.fromisoformat(raw)


def date_of_record() -> date:
    if has_app_context():
        pinned = parse_date_of_record(current_app.config.get("DATE_OF_RECORD"))
        if pinned:
            return pinned
    return date.today()


def datetime_of_record() -> datetime:
    today = date_of_record()
    now = datetime.utcnow()
    if today == now.date():
        return now
    return datetime.combine(today, now.time())
