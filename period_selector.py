from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Dict, Iterable, List, Tuple
from zoneinfo import ZoneInfo

from forecast_data import MIN_HOUR_OFFSET, DetailedForecast, ForecastMetadata, LocationForecasts

PERIOD_STEP_HOURS = 3
DISPLAY_TIMEZONE = os.getenv("DISPLAY_TIMEZONE", "UTC").strip() or "UTC"
MORNING_HOUR = int(os.getenv("MORNING_HOUR", "9"))
DAY_LABEL_FORMAT = "%a %d %b"
BLANK_DAY_LABEL = ""
NAVIGATION_DELTAS: Dict[str, int] = {
    "previous_day": -24,
    "previous_period": -PERIOD_STEP_HOURS,
    "next_period": PERIOD_STEP_HOURS,
    "next_day": 24,
}
DETAILED_VIEWS = ("meteogram", "sounding")


@dataclass(frozen=True)
class DayBucket:
    """Consecutive periods falling on the same day of the week."""

    periods: Tuple[Tuple[object, int], ...]  # (period identity, hour offset)
    date: datetime  # date of the first period
    is_full: bool
    label: str

    @property
    def hour_offsets(self) -> List[int]:
        return [hour_offset for _, hour_offset in self.periods]

    @property
    def select_offset(self) -> int:
        # Clicking a day selects its midday period (second of three).
        return self.periods[min(1, len(self.periods) - 1)][1]


@dataclass(frozen=True)
class OffsetBounds:
    maximum: int
    minimum: int = MIN_HOUR_OFFSET

    @classmethod
    def for_metadata(cls, metadata: ForecastMetadata) -> OffsetBounds:
        return cls(maximum=metadata.latest)

    def clamp(self, hour_offset: int) -> int:
        return max(self.minimum, min(int(hour_offset), self.maximum))


def display_timezone() -> tzinfo:
    return ZoneInfo(DISPLAY_TIMEZONE)


def _localize(date: datetime, tz: tzinfo | None) -> datetime:
    return date.astimezone(tz) if tz is not None else date


def period_label(date: datetime, tz: tzinfo | None = None) -> str:
    return _localize(date, tz).strftime("%H")


def show_date(date: datetime, show_week_day: bool = False, tz: tzinfo | None = None) -> str:
    fmt = "%a %d %b %Y %H:%M" if show_week_day else "%d %b %Y %H:%M"
    return _localize(date, tz).strftime(fmt)


def group_periods_by_day(
    periods: Iterable[Tuple[object, int, datetime]],
    periods_per_day: int,
    tz: tzinfo | None = None,
) -> List[DayBucket]:
    """Split chronologically ordered (identity, hour offset, date) triples into day buckets.

    A new bucket starts whenever the day of the week changes, so two periods
    exactly one week apart with nothing in between land in the same bucket.
    Only buckets holding `periods_per_day` periods are labelled with their date;
    the partial first and last days get a blank label.
    """
    groups: List[Tuple[List[Tuple[object, int]], datetime]] = []
    last_day: int | None = None
    for identity, hour_offset, date in periods:
        day = _localize(date, tz).weekday()
        if day == last_day:
            groups[-1][0].append((identity, hour_offset))
        else:
            groups.append(([(identity, hour_offset)], date))
        last_day = day

    buckets: List[DayBucket] = []
    for members, date in groups:
        is_full = len(members) == periods_per_day
        buckets.append(
            DayBucket(
                periods=tuple(members),
                date=date,
                is_full=is_full,
                label=_localize(date, tz).strftime(DAY_LABEL_FORMAT) if is_full else BLANK_DAY_LABEL,
            )
        )
    return buckets


def group_timeline_by_day(
    timeline: Iterable[Tuple[int, datetime]],
    periods_per_day: int,
    tz: tzinfo | None = None,
) -> List[DayBucket]:
    """Day buckets of a timeline, using the period hour label as period identity."""
    return group_periods_by_day(
        ((period_label(date, tz), hour_offset, date) for hour_offset, date in timeline),
        periods_per_day,
        tz=tz,
    )


def next_offset(current: int, intent: str, bounds: OffsetBounds) -> int:
    # Raw arithmetic: stepping back from a morning period does not snap to
    # the previous afternoon.
    delta = NAVIGATION_DELTAS.get(intent)
    if delta is None:
        raise ValueError(f"Unknown navigation intent: {intent}")
    return bounds.clamp(int(current) + delta)


def forecast_offsets(metadata: ForecastMetadata, morning_offset: int) -> List[Tuple[int, datetime]]:
    """Periods the run is expected to provide, for when no location is selected."""
    offsets: List[Tuple[int, datetime]] = []
    day_start = int(morning_offset)
    while day_start <= metadata.latest:
        for k in range(metadata.periods_per_day):
            hour_offset = day_start + k * PERIOD_STEP_HOURS
            if MIN_HOUR_OFFSET <= hour_offset <= metadata.latest:
                offsets.append((hour_offset, metadata.date_at_hour_offset(hour_offset)))
        day_start += 24
    return offsets


def morning_offset(metadata: ForecastMetadata, tz: tzinfo | None = None, morning_hour: int = MORNING_HOUR) -> int:
    tz = tz if tz is not None else display_timezone()
    for hour_offset in range(MIN_HOUR_OFFSET, MIN_HOUR_OFFSET + 24):
        if metadata.date_at_hour_offset(hour_offset).astimezone(tz).hour == morning_hour:
            return hour_offset
    return MIN_HOUR_OFFSET


def period_timeline(
    metadata: ForecastMetadata,
    location_forecasts: LocationForecasts | None,
    morning_offset: int,
) -> List[Tuple[int, datetime]]:
    if location_forecasts is None:
        return forecast_offsets(metadata, morning_offset)
    return location_forecasts.offset_and_dates()


def detailed_view_input(
    view: str,
    location_forecasts: LocationForecasts | None,
    hour_offset: int,
) -> LocationForecasts | Tuple[DetailedForecast, float] | None:
    """Data handed to the meteogram or sounding renderer, or None for the empty view."""
    if view not in DETAILED_VIEWS:
        raise ValueError(f"Unknown detailed view: {view}")
    if location_forecasts is None:
        return None
    if view == "meteogram":
        return location_forecasts
    forecast = location_forecasts.at_hour_offset(hour_offset)
    if forecast is None:
        return None
    return forecast, location_forecasts.elevation
