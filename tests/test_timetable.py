"""
Unit tests for the SHOP enrollment calendar and market settings.

Dates below were checked against a 2026 calendar:
- 2026-05-23 is a Saturday, 2026-08-23 a Sunday, 2026-02-23 a Monday.
"""
import json
from dataclasses import replace
from datetime import date

import pytest

from app.hbx.config import ShopMarketSettings, load_shop_market_settings, shop_market_settings_from_mapping
from app.hbx.modules.plan_years import timetable
from app.hbx.modules.plan_years.snapshot import PlanYearSnapshot
from app.hbx.modules.plan_years.states import S

SETTINGS = ShopMarketSettings()


def _plan_year(state=S.DRAFT):
    return PlanYearSnapshot(
        id=1,
        state=state,
        start_on=date(2026, 9, 1),
        end_on=date(2027, 8, 31),
        open_enrollment_start_on=date(2026, 7, 1),
        open_enrollment_end_on=date(2026, 8, 10),
    )


class TestCalendarHelpers:
    def test_day_of_month_clamps_to_month_end(self):
        assert timetable.day_of_month(date(2026, 2, 1), 31) == date(2026, 2, 28)
        assert timetable.day_of_month(date(2028, 2, 1), 30) == date(2028, 2, 29)
        assert timetable.day_of_month(date(2026, 3, 9), 10) == date(2026, 3, 10)

    def test_prior_month_and_month_bounds(self):
        assert timetable.prior_month(date(2026, 1, 15)) == date(2025, 12, 1)
        assert timetable.beginning_of_month(date(2026, 7, 19)) == date(2026, 7, 1)
        assert timetable.end_of_month(date(2026, 4, 2)) == date(2026, 4, 30)

    def test_banking_dates_skip_weekends(self):
        assert timetable.first_banking_date_prior(date(2026, 5, 23)) == date(2026, 5, 22)  # Sat -> Fri
        assert timetable.first_banking_date_prior(date(2026, 8, 23)) == date(2026, 8, 21)  # Sun -> Fri
        assert timetable.first_banking_date_prior(date(2026, 2, 23)) == date(2026, 2, 23)  # Mon
        assert timetable.first_banking_date_after(date(2026, 5, 23)) == date(2026, 5, 25)
        assert timetable.first_banking_date_after(date(2026, 8, 23)) == date(2026, 8, 24)


class TestShopEnrollmentTimetable:
    def test_timetable_for_march_effective_date(self):
        t = timetable.shop_enrollment_timetable(date(2026, 3, 15), SETTINGS)
        assert t.effective_date == date(2026, 3, 1)
        assert t.plan_year_start_on == date(2026, 3, 1)
        assert t.plan_year_end_on == date(2027, 2, 28)
        assert t.employer_initial_application_earliest_start_on == date(2025, 12, 1)
        assert t.employer_initial_application_latest_submit_on == date(2026, 2, 5)
        assert t.open_enrollment_earliest_start_on == date(2026, 1, 1)
        assert t.open_enrollment_latest_start_on == date(2026, 2, 5)
        assert t.open_enrollment_latest_end_on == date(2026, 2, 10)
        assert t.binder_payment_due_date == date(2026, 2, 23)

    def test_binder_due_date_rolls_back_from_weekend(self):
        t = timetable.shop_enrollment_timetable(date(2026, 6, 1), SETTINGS)
        assert t.binder_payment_due_date == date(2026, 5, 22)

    def test_as_dict_is_iso_strings(self):
        d = timetable.shop_enrollment_timetable(date(2026, 9, 1), SETTINGS).as_dict()
        assert d["open_enrollment_latest_end_on"] == "2026-08-10"
        assert d["plan_year_end_on"] == "2027-08-31"

    def test_published_binder_due_date_wins(self):
        settings = replace(SETTINGS, binder_payment_due_dates={date(2026, 9, 1): date(2026, 8, 24)})
        assert timetable.binder_payment_due_date(date(2026, 9, 1), settings) == date(2026, 8, 24)
        assert timetable.binder_payment_due_date(date(2026, 9, 1), SETTINGS) == date(2026, 8, 21)


class TestStartOn:
    def test_earliest_available_start_on(self):
        assert timetable.earliest_available_start_on(date(2026, 7, 6), SETTINGS) == date(2026, 9, 1)
        assert timetable.earliest_available_start_on(date(2026, 7, 1), SETTINGS) == date(2026, 8, 1)

    def test_check_start_on_requires_first_of_month(self):
        result = timetable.check_start_on(date(2026, 9, 15), date(2026, 7, 1), SETTINGS)
        assert result == {"result": "failure", "msg": "start on must be first day of the month"}

    def test_check_start_on_too_late_for_open_enrollment(self):
        result = timetable.check_start_on(date(2026, 8, 1), date(2026, 7, 6), SETTINGS)
        assert result["result"] == "failure"
        assert result["msg"] == "must choose a start on date 2026-09-01 or later"

    def test_check_start_on_ok(self):
        assert timetable.check_start_on(date(2026, 9, 1), date(2026, 7, 6), SETTINGS) == {"result": "ok", "msg": ""}

    def test_start_on_options(self):
        assert timetable.calculate_start_on_dates(date(2026, 7, 6), SETTINGS) == [date(2026, 9, 1), date(2026, 10, 1)]
        assert timetable.calculate_start_on_options(date(2026, 7, 1), SETTINGS) == [
            ("August 2026", "2026-08-01"),
            ("September 2026", "2026-09-01"),
            ("October 2026", "2026-10-01"),
        ]


class TestOpenEnrollmentDates:
    def test_open_enrollment_starts_no_earlier_than_today(self):
        oe = timetable.calculate_open_enrollment_date(date(2026, 9, 1), date(2026, 7, 6), SETTINGS)
        assert oe["open_enrollment_start_on"] == date(2026, 7, 6)
        assert oe["open_enrollment_end_on"] == date(2026, 8, 10)
        assert oe["binder_payment_due_date"] == date(2026, 8, 21)

    def test_open_enrollment_starts_max_length_before_effective(self):
        oe = timetable.calculate_open_enrollment_date(date(2026, 11, 1), date(2026, 7, 6), SETTINGS)
        assert oe["open_enrollment_start_on"] == date(2026, 9, 1)
        assert oe["open_enrollment_end_on"] == date(2026, 10, 10)

    def test_default_plan_year_dates(self):
        dates = timetable.default_plan_year_dates(date(2026, 9, 1), date(2026, 7, 1), SETTINGS)
        assert dates == {
            "start_on": date(2026, 9, 1),
            "end_on": date(2027, 8, 31),
            "open_enrollment_start_on": date(2026, 7, 1),
            "open_enrollment_end_on": date(2026, 8, 10),
        }

    def test_publish_due_date_initial_vs_renewal(self):
        assert timetable.due_date_for_publish(_plan_year(), SETTINGS) == date(2026, 8, 5)
        assert timetable.due_date_for_publish(_plan_year(state=S.RENEWING_DRAFT), SETTINGS) == date(2026, 8, 10)

    def test_open_enrollment_extension_bounds(self):
        bounds = timetable.open_enrollment_date_bounds(_plan_year(), date(2026, 8, 12), SETTINGS)
        assert bounds == {"min": date(2026, 8, 12), "max": date(2026, 9, 30)}

        bounds = timetable.open_enrollment_date_bounds(_plan_year(), date(2026, 7, 20), SETTINGS)
        assert bounds["min"] == date(2026, 8, 10)


class TestShopMarketSettings:
    def test_defaults(self):
        assert SETTINGS.open_enrollment_begin_due_day_of_month == 5
        assert SETTINGS.binder_payment_due_on == 23

    def test_overrides_from_mapping(self):
        settings = shop_market_settings_from_mapping(
            {
                "open_enrollment_monthly_end_on": 15,
                "employer_contribution_percent_minimum": 25,
                "binder_payment_due_dates": {"2026-09-01": "2026-08-24"},
            }
        )
        assert settings.open_enrollment_monthly_end_on == 15
        assert settings.employer_contribution_percent_minimum == 25.0
        assert settings.binder_payment_due_dates == {date(2026, 9, 1): date(2026, 8, 24)}
        assert settings.open_enrollment_begin_due_day_of_month == 10

    @pytest.mark.parametrize(
        "raw",
        [
            {"no_such_setting": 1},
            {"open_enrollment_monthly_end_on": True},
            {"open_enrollment_monthly_end_on": "10"},
            {"binder_payment_due_dates": {"2026-09-01": "not a date"}},
            ["not", "a", "mapping"],
        ],
    )
    def test_bad_settings_raise(self, raw):
        with pytest.raises(ValueError):
            shop_market_settings_from_mapping(raw)

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "shop.json"
        path.write_text(json.dumps({"renewal_monthly_open_enrollment_end_on": 15}), encoding="utf-8")
        assert load_shop_market_settings(str(path)).renewal_monthly_open_enrollment_end_on == 15
        assert load_shop_market_settings("") == ShopMarketSettings()
