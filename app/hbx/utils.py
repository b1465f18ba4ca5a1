from __future__ import annotations

from datetime import date
from typing import Any

from flask import current_app, jsonify, request


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "y", "on", "x")


def parse_date(value: Any, field: str, *, required: bool = True) -> date | None:
    """Parse an ISO date from request input. Raises ValueError naming the field."""
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not raw:
        if required:
            raise ValueError(f"{field} is required (YYYY-MM-DD).")
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValueError(f"{field} must be a date (YYYY-MM-DD).") from None


def parse_int(value: Any, field: str, *, default: int | None = None) -> int:
    if value in (None, ""):
        if default is None:
            raise ValueError(f"{field} is required.")
        return default
    if isinstance(value, bool):
        raise ValueError(f"{field} must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be an integer.") from None


def json_payload() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object.")
    return payload


def iso(value: date | None) -> str | None:
    return value.isoformat() if value else None


def shop_market_settings():
    return current_app.extensions["shop_market_settings"]


def error_response(message: str, status: int, errors: dict | None = None):
    body: dict[str, Any] = {"error": message}
    if errors:
        body["errors"] = errors
    return jsonify(body), status
