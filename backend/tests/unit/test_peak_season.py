"""Unit tests for peak-season detection and threshold adjustment"""

from datetime import date, datetime, timezone

import pytest

from config import Settings
from matching.exceptions import PeakSeasonConfigError
from matching.peak_season import (
    DEFAULT_PEAK_PERIODS,
    PeakPeriod,
    PeakSeasonPolicy,
    load_periods_from_json,
    validate_periods,
)

OFF_PEAK_NOW = datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc)


class TestPeakPeriod:

    def test_inclusive_bounds(self):
        period = PeakPeriod("Thanksgiving", 11, 20, 11, 30)
        assert period.contains(date(2026, 11, 20)) is True
        assert period.contains(date(2026, 11, 30)) is True
        assert period.contains(date(2026, 12, 1)) is False

    def test_window_wrapping_year_boundary(self):
        period = PeakPeriod("Holiday Season", 12, 15, 1, 5)
        assert period.wraps_year is True
        assert period.contains(date(2026, 12, 31)) is True
        assert period.contains(date(2027, 1, 2)) is True
        assert period.contains(date(2027, 1, 6)) is False

    def test_region_restriction(self):
        period = PeakPeriod("Summer Peak", 6, 15, 8, 31, ("EUROPE", "ASIA"))
        assert period.applies_to(["Bali, Asia"]) is True
        assert period.applies_to(["Goa"]) is False
        assert PeakPeriod("Anywhere", 1, 1, 1, 2).applies_to(["Goa"]) is True


class TestPeakSeasonPolicy:
    """Test detect_peak_season across windows, regions and settings"""

    def test_off_peak_returns_base_values(self):
        info = PeakSeasonPolicy().detect_peak_season(
            date(2026, 5, 20), date(2026, 5, 27), ["Goa"], 2, 24, now=OFF_PEAK_NOW
        )
        assert info.is_peak_season is False
        assert info.active_periods == []
        assert info.adjusted_min_agents == 2
        assert info.adjusted_timeout_hours == 24

    def test_holiday_trip_widens_timeout(self):
        info = PeakSeasonPolicy().detect_peak_season(
            date(2026, 12, 20), date(2026, 12, 27), ["Goa"], 2, 24, now=OFF_PEAK_NOW
        )
        assert info.is_peak_season is True
        assert info.active_periods == ["Holiday Season"]
        assert info.adjusted_min_agents == 2
        assert info.adjusted_timeout_hours == 48

    def test_single_agent_allowed_in_peak(self):
        policy = PeakSeasonPolicy(allow_single_agent=True)
        info = policy.detect_peak_season(
            date(2026, 12, 20), date(2026, 12, 27), ["Goa"], 3, 24, now=OFF_PEAK_NOW
        )
        assert info.adjusted_min_agents == 1

    def test_trip_crossing_new_year(self):
        info = PeakSeasonPolicy().detect_peak_season(
            date(2026, 12, 30), date(2027, 1, 2), ["Goa"], 2, 24, now=OFF_PEAK_NOW
        )
        assert info.active_periods == ["Holiday Season"]

    def test_region_restricted_window_needs_matching_destination(self):
        policy = PeakSeasonPolicy()
        goa = policy.detect_peak_season(date(2026, 7, 1), date(2026, 7, 10), ["Goa"], 2, 24, now=OFF_PEAK_NOW)
        bali = policy.detect_peak_season(
            date(2026, 7, 1), date(2026, 7, 10), ["Bali, Asia"], 2, 24, now=OFF_PEAK_NOW
        )
        assert goa.is_peak_season is False
        assert bali.active_periods == ["Summer Peak"]

    def test_today_inside_window_activates_peak(self):
        """Test request received during the holidays for a May trip"""
        now = datetime(2026, 12, 24, 9, 0, tzinfo=timezone.utc)
        info = PeakSeasonPolicy().detect_peak_season(
            date(2027, 5, 20), date(2027, 5, 27), ["Goa"], 2, 24, now=now
        )
        assert info.active_periods == ["Holiday Season"]

    def test_year_long_trip_hits_every_unrestricted_window(self):
        active = PeakSeasonPolicy().active_periods(
            date(2026, 1, 1), date(2027, 6, 1), ["Goa"], now=OFF_PEAK_NOW
        )
        assert active == ["Holiday Season"]

    def test_disabled_policy_returns_base_values(self):
        info = PeakSeasonPolicy(enabled=False).detect_peak_season(
            date(2026, 12, 20), date(2026, 12, 27), ["Goa"], 3, 24, now=OFF_PEAK_NOW
        )
        assert info.is_peak_season is False
        assert info.adjusted_min_agents == 3
        assert info.adjusted_timeout_hours == 24

    def test_peak_timeout_must_be_positive(self):
        with pytest.raises(PeakSeasonConfigError):
            PeakSeasonPolicy(peak_timeout_hours=0)

    def test_from_settings_uses_json_override(self):
        settings = Settings(
            PEAK_SEASON_PERIODS_JSON='[{"name": "Monsoon", "start_month": 7, "start_day": 1, '
                                     '"end_month": 9, "end_day": 30}]',
            PEAK_SEASON_ALLOW_SINGLE_AGENT=True,
            PEAK_SEASON_TIMEOUT_HOURS=36,
        )
        policy = PeakSeasonPolicy.from_settings(settings)

        assert [p.name for p in policy.periods] == ["Monsoon"]
        assert policy.allow_single_agent is True
        assert policy.peak_timeout_hours == 36

    def test_from_settings_defaults(self):
        policy = PeakSeasonPolicy.from_settings(Settings())
        assert policy.periods == DEFAULT_PEAK_PERIODS


class TestPeakTableValidation:

    def test_default_table_is_valid(self):
        validate_periods(DEFAULT_PEAK_PERIODS)

    def test_leap_day_accepted(self):
        validate_periods([PeakPeriod("Leap", 2, 29, 3, 1)])

    @pytest.mark.parametrize("period", [
        PeakPeriod("Bad month", 13, 1, 1, 2),
        PeakPeriod("Bad day", 2, 30, 3, 1),
        PeakPeriod("  ", 1, 1, 1, 2),
    ])
    def test_invalid_windows_rejected(self, period):
        with pytest.raises(PeakSeasonConfigError):
            validate_periods([period])

    def test_duplicate_names_rejected(self):
        with pytest.raises(PeakSeasonConfigError, match="Duplicate"):
            validate_periods([PeakPeriod("A", 1, 1, 1, 2), PeakPeriod("A", 3, 1, 3, 2)])

    def test_load_from_json(self):
        periods = load_periods_from_json(
            '[{"name": "Diwali", "start_month": 10, "start_day": 25, '
            '"end_month": 11, "end_day": 5, "regions": ["ASIA"]}]'
        )
        assert periods == (PeakPeriod("Diwali", 10, 25, 11, 5, ("ASIA",)),)

    @pytest.mark.parametrize("raw", [
        "not json",
        '{"name": "x"}',
        '[{"name": "x", "start_month": 1}]',
    ])
    def test_load_from_json_errors(self, raw):
        with pytest.raises(PeakSeasonConfigError):
            load_periods_from_json(raw)
