import json
import os
from dataclasses import dataclass, field, fields, replace
from datetime import date
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    # Pins "today" for every date-driven rule (QA / replaying a batch).
    date_of_record: str
    shop_market_settings_file: str


@dataclass(frozen=True)
class ShopMarketSettings:
    """
    Business constants read by the plan-year rules.

    Defaults follow the DC SHOP market. Override with a JSON file whose keys
    are the field names below.
    """

    state_name: str = "District of Columbia"
    site_short_name: str = "DC Health Link"

    # Open enrollment (initial applications)
    open_enrollment_monthly_end_on: int = 10
    open_enrollment_minimum_length_days: int = 5
    open_enrollment_maximum_length_months: int = 2

    # Renewal applications
    renewal_monthly_open_enrollment_end_on: int = 13
    renewal_open_enrollment_minimum_length_days: int = 5
    renewal_publish_due_day_of_month: int = 10

    # Initial applications
    initial_publish_due_day_of_month: int = 5
    initial_earliest_start_prior_to_effective_on_months: int = 3
    appeal_period_after_application_denial_days: int = 30

    benefit_period_length_minimum_years: int = 1
    benefit_period_length_maximum_years: int = 1

    employer_contribution_percent_minimum: float = 50.0
    employee_participation_ratio_minimum: float = 2 / 3
    non_owner_participation_count_minimum: int = 1
    small_market_employee_count_maximum: int = 50
    small_market_active_employee_limit: int = 200

    binder_payment_due_on: int = 23
    transmission_threshold_day_of_month: int = 15

    # Published binder due dates keyed by effective date; wins over the computed date.
    binder_payment_due_dates: dict[date, date] = field(default_factory=dict)

    @property
    def open_enrollment_begin_due_day_of_month(self) -> int:
        return self.open_enrollment_monthly_end_on - self.open_enrollment_minimum_length_days


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///hbx.db"),
        date_of_record=_getenv("DATE_OF_RECORD", ""),
        shop_market_settings_file=_getenv("SHOP_MARKET_SETTINGS_FILE", ""),
    )


def shop_market_settings_from_mapping(raw: dict) -> ShopMarketSettings:
    """Build settings from a JSON-style mapping. Unknown keys and bad types raise ValueError."""
    if not isinstance(raw, dict):
        raise ValueError("Shop market settings must be a JSON object.")

    defaults = ShopMarketSettings()
    known = {f.name: f for f in fields(ShopMarketSettings)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ValueError(f"Unknown shop market settings: {', '.join(unknown)}")

    overrides: dict = {}
    for key, value in raw.items():
        if key == "binder_payment_due_dates":
            if not isinstance(value, dict):
                raise ValueError("binder_payment_due_dates must be an object of ISO dates.")
            try:
                overrides[key] = {date.fromisoformat(k): date.fromisoformat(v) for k, v in value.items()}
            except (TypeError, ValueError) as e:
                raise ValueError(f"binder_payment_due_dates has an invalid date: {e}") from e
            continue

        current = getattr(defaults, key)
        if isinstance(current, bool) or isinstance(value, bool):
            raise ValueError(f"{key} must not be a boolean.")
        if isinstance(current, float) and isinstance(value, (int, float)):
            overrides[key] = float(value)
        elif isinstance(current, int) and isinstance(value, int):
            overrides[key] = value
        elif isinstance(current, str) and isinstance(value, str):
            overrides[key] = value.strip()
        else:
            raise ValueError(f"{key} expects {type(current).__name__}, got {type(value).__name__}.")

    return replace(defaults, **overrides)


def load_shop_market_settings(path: str | None = None) -> ShopMarketSettings:
    path = (path if path is not None else _getenv("SHOP_MARKET_SETTINGS_FILE", "")).strip()
    if not path:
        return ShopMarketSettings()
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return shop_market_settings_from_mapping(raw)


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "DATE_OF_RECORD": s.date_of_record,
        "SHOP_MARKET_SETTINGS_FILE": s.shop_market_settings_file,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # census roster uploads
        "MAX_CONTENT_LENGTH": 5 * 1024 * 1024,
    }
