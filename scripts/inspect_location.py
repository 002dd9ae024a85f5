#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from pathlib import Path

from forecast_data import ForecastDecodeError, ForecastStore, decode_location_forecasts
from period_selector import display_timezone, group_timeline_by_day, morning_offset, period_timeline, show_date


def main() -> None:
    parser = argparse.ArgumentParser(description="Print the period timeline of one location forecast.")
    parser.add_argument("lat", type=float)
    parser.add_argument("lon", type=float)
    parser.add_argument("--data-dir", default=None)
    parser.add_argument("--record", type=Path, default=None, help="decode this file instead of the store's location file")
    args = parser.parse_args()

    store = ForecastStore(data_dir=args.data_dir)
    metadata = store.metadata()
    tz = display_timezone()
    print(f"init={show_date(metadata.init, show_week_day=True, tz=tz)} latest={metadata.latest}")

    if args.record is not None:
        try:
            location = decode_location_forecasts(json.loads(args.record.read_text()), metadata, args.lat, args.lon)
        except ForecastDecodeError as exc:
            print(f"decode failed: {exc}")
            return
    else:
        location = store.location_forecasts(args.lat, args.lon)
        if location is None:
            print(f"no data at {store.location_path(args.lat, args.lon)}, showing run periods")

    timeline = period_timeline(metadata, location, morning_offset(metadata, tz))
    for bucket in group_timeline_by_day(timeline, metadata.periods_per_day, tz):
        hours = " ".join(f"{label}h(+{offset})" for label, offset in bucket.periods)
        print(f"{bucket.label or '-':<12} {hours}")

    if location is None:
        return
    print(f"elevation={location.elevation}m")
    for offset, date in location.offset_and_dates():
        forecast = location.at_hour_offset(offset)
        top_wind = forecast.winds.soaring_layer_top
        print(
            f"+{offset:>3} {show_date(date, tz=tz)} xc={forecast.xc_potential:>3} "
            f"w*={forecast.thermal_velocity:.1f}m/s soaring={forecast.boundary_layer.soaring_layer_depth}m "
            f"top_wind={top_wind.speed:.0f}km/h@{top_wind.direction:.0f}"
        )


if __name__ == "__main__":
    main()
