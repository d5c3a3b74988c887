"""Peak-season policy.

Named calendar windows (month/day ranges, optionally wrapping the year
boundary and optionally restricted to destination regions) relax the
minimum-agent threshold and widen the response timeout while active.
"""

import calendar
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from .exceptions import PeakSeasonConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeakPeriod:
    """A named peak window, inclusive on both ends."""
    name: str
    start_month: int
    start_day: int
    end_month: int
    end_day: int
    regions: Tuple[str, ...] = ()

    @property
    def wraps_year(self) -> bool:
        return (self.start_month, self.start_day) > (self.end_month, self.end_day)

    def contains(self, day: date) -> bool:
        key = (day.month, day.day)
        start = (self.start_month, self.start_day)
        end = (self.end_month, self.end_day)
        if self.wraps_year:
            return key >= start or key <= end
        return start <= key <= end

    def applies_to(self, destinations: Iterable[str]) -> bool:
        """No region restriction, or some destination contains a region tag."""
        if not self.regions:
            return True
        upper = [d.upper() for d in destinations]
        return any(region.upper() in d for region in self.regions for d in upper)


@dataclass(frozen=True)
class PeakSeasonInfo:
    """Derived peak-season decision, never persisted."""
    is_peak_season: bool
    active_periods: List[str] = field(default_factory=list)
    adjusted_min_agents: int = 1
    adjusted_timeout_hours: int = 24


DEFAULT_PEAK_PERIODS: Tuple[PeakPeriod, ...] = (
    PeakPeriod("Summer Peak", 6, 15, 8, 31, ("EUROPE", "NORTH_AMERICA", "ASIA")),
    PeakPeriod("Holiday Season", 12, 15, 1, 5),
    PeakPeriod("Spring Break", 3, 10, 4, 15, ("NORTH_AMERICA", "CARIBBEAN", "MEXICO")),
    PeakPeriod("Chinese New Year", 1, 20, 2, 15, ("ASIA", "OCEANIA")),
    PeakPeriod("Thanksgiving", 11, 20, 11, 30, ("NORTH_AMERICA",)),
)


def validate_periods(periods: Sequence[PeakPeriod]) -> None:
    """Check every window is a real calendar range with a unique name.

    Raises:
        PeakSeasonConfigError: On the first invalid window
    """
    seen = set()
    for period in periods:
        if not period.name or not period.name.strip():
            raise PeakSeasonConfigError("Peak period name must not be empty")
        if period.name in seen:
            raise PeakSeasonConfigError(f"Duplicate peak period name: {period.name}")
        seen.add(period.name)
        for month, day in ((period.start_month, period.start_day), (period.end_month, period.end_day)):
            if not 1 <= month <= 12:
                raise PeakSeasonConfigError(f"{period.name}: invalid month {month}")
            # Leap year so Feb 29 is accepted
            last_day = calendar.monthrange(2000, month)[1]
            if not 1 <= day <= last_day:
                raise PeakSeasonConfigError(f"{period.name}: invalid day {day} for month {month}")


def load_periods_from_json(raw: str) -> Tuple[PeakPeriod, ...]:
    """Parse a peak table override.

    Format: [{"name": "...", "start_month": 12, "start_day": 15,
              "end_month": 1, "end_day": 5, "regions": ["ASIA"]}, ...]

    Raises:
        PeakSeasonConfigError: If the JSON is malformed or a window is invalid
    """
    try:
        items = json.loads(raw)
    except json.JSONDecodeError as e:
        raise PeakSeasonConfigError(f"Peak period table is not valid JSON: {e}")
    if not isinstance(items, list):
        raise PeakSeasonConfigError("Peak period table must be a JSON list")

    periods = []
    for item in items:
        try:
            periods.append(PeakPeriod(
                name=str(item["name"]),
                start_month=int(item["start_month"]),
                start_day=int(item["start_day"]),
                end_month=int(item["end_month"]),
                end_day=int(item["end_day"]),
                regions=tuple(str(r) for r in item.get("regions") or ()),
            ))
        except (KeyError, TypeError, ValueError) as e:
            raise PeakSeasonConfigError(f"Invalid peak period entry {item!r}: {e}")

    validate_periods(periods)
    return tuple(periods)


class PeakSeasonPolicy:
    """Peak-season threshold adjustment.

    Args:
        periods: Peak windows (validated on construction)
        enabled: When False, base values are always returned
        allow_single_agent: Drop the minimum to 1 while a window is active
        peak_timeout_hours: Timeout applied while a window is active
    """

    def __init__(
        self,
        periods: Sequence[PeakPeriod] = DEFAULT_PEAK_PERIODS,
        enabled: bool = True,
        allow_single_agent: bool = False,
        peak_timeout_hours: int = 48,
    ):
        validate_periods(periods)
        if peak_timeout_hours < 1:
            raise PeakSeasonConfigError("peak_timeout_hours must be at least 1")
        self.periods = tuple(periods)
        self.enabled = enabled
        self.allow_single_agent = allow_single_agent
        self.peak_timeout_hours = peak_timeout_hours

    @classmethod
    def from_settings(cls, settings) -> "PeakSeasonPolicy":
        periods = DEFAULT_PEAK_PERIODS
        if settings.PEAK_SEASON_PERIODS_JSON:
            periods = load_periods_from_json(settings.PEAK_SEASON_PERIODS_JSON)
        return cls(
            periods=periods,
            enabled=settings.PEAK_SEASON_MODE_ENABLED,
            allow_single_agent=settings.PEAK_SEASON_ALLOW_SINGLE_AGENT,
            peak_timeout_hours=settings.PEAK_SEASON_TIMEOUT_HOURS,
        )

    def active_periods(
        self,
        trip_start: date,
        trip_end: date,
        destinations: Iterable[str],
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Names of windows active for today or any day of the trip."""
        destinations = list(destinations)
        today = (now or datetime.now(timezone.utc)).date()
        days = [today] + list(_trip_days(trip_start, trip_end))

        active = []
        for period in self.periods:
            if not period.applies_to(destinations):
                continue
            if any(period.contains(day) for day in days):
                active.append(period.name)
        return active

    def detect_peak_season(
        self,
        trip_start: date,
        trip_end: date,
        destinations: Iterable[str],
        base_min_agents: int,
        base_timeout_hours: int,
        now: Optional[datetime] = None,
    ) -> PeakSeasonInfo:
        """Compute adjusted thresholds for a request.

        Outside every active window the base values are returned unchanged.

        Example:
            policy.detect_peak_season(date(2026, 12, 20), date(2026, 12, 27),
                                      ["Goa"], 2, 24)
            -> PeakSeasonInfo(True, ["Holiday Season"], 2, 48)
        """
        if not self.enabled:
            return PeakSeasonInfo(
                is_peak_season=False,
                active_periods=[],
                adjusted_min_agents=base_min_agents,
                adjusted_timeout_hours=base_timeout_hours,
            )

        active = self.active_periods(trip_start, trip_end, destinations, now=now)
        if not active:
            return PeakSeasonInfo(
                is_peak_season=False,
                active_periods=[],
                adjusted_min_agents=base_min_agents,
                adjusted_timeout_hours=base_timeout_hours,
            )

        adjusted_min = 1 if self.allow_single_agent else base_min_agents
        logger.info(
            f"Peak season active: {', '.join(active)}",
            extra={"active_periods": active, "adjusted_min_agents": adjusted_min}
        )
        return PeakSeasonInfo(
            is_peak_season=True,
            active_periods=active,
            adjusted_min_agents=adjusted_min,
            adjusted_timeout_hours=self.peak_timeout_hours,
        )


def _trip_days(start: date, end: date):
    if end < start:
        start, end = end, start
    # A trip of a year or more covers every calendar day
    span = min((end - start).days, 366)
    for offset in range(span + 1):
        yield start + timedelta(days=offset)
