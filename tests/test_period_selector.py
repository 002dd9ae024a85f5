import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from forecast_data import decode_location_forecasts
from period_selector import (
    OffsetBounds,
    detailed_view_input,
    forecast_offsets,
    group_periods_by_day,
    group_timeline_by_day,
    morning_offset,
    next_offset,
    period_label,
    period_timeline,
    show_date,
)
from forecast_records import METADATA, location_record

MONDAY = datetime(2024, 6, 3, 9, tzinfo=timezone.utc)


def _triples(dates):
    first = METADATA.first_time_step
    return [(f"p{i}", int((date - first).total_seconds() // 3600), date) for i, date in enumerate(dates)]


class DayGroupingTests(unittest.TestCase):
    def test_full_and_partial_days(self):
        dates = [MONDAY + timedelta(hours=3 * k) for k in range(3)]
        dates += [MONDAY + timedelta(days=1, hours=3 * k - 3) for k in range(4)]
        buckets = group_periods_by_day(_triples(dates), periods_per_day=3)

        self.assertEqual([len(bucket.periods) for bucket in buckets], [3, 4])
        self.assertTrue(buckets[0].is_full)
        self.assertEqual(buckets[0].label, "Mon 03 Jun")
        self.assertFalse(buckets[1].is_full)
        self.assertEqual(buckets[1].label, "")
        self.assertEqual(buckets[1].date, dates[3])

    def test_buckets_partition_input_in_order(self):
        dates = [MONDAY + timedelta(hours=3 * k) for k in range(20)]
        triples = _triples(dates)
        buckets = group_periods_by_day(triples, periods_per_day=8)
        flattened = [period for bucket in buckets for period in bucket.periods]
        self.assertEqual(flattened, [(identity, offset) for identity, offset, _ in triples])
        self.assertTrue(all(bucket.periods for bucket in buckets))

    def test_same_weekday_one_week_apart_shares_a_bucket(self):
        dates = [MONDAY, MONDAY + timedelta(days=7)]
        buckets = group_periods_by_day(_triples(dates), periods_per_day=3)
        self.assertEqual(len(buckets), 1)

    def test_day_of_week_uses_display_timezone(self):
        dates = [datetime(2024, 6, 3, 23, tzinfo=timezone.utc), datetime(2024, 6, 4, 1, tzinfo=timezone.utc)]
        self.assertEqual(len(group_periods_by_day(_triples(dates), periods_per_day=2)), 2)
        zurich = group_periods_by_day(_triples(dates), periods_per_day=2, tz=ZoneInfo("Europe/Zurich"))
        self.assertEqual(len(zurich), 1)
        self.assertEqual(zurich[0].label, "Tue 04 Jun")

    def test_select_offset_prefers_second_period(self):
        dates = [MONDAY + timedelta(hours=3 * k) for k in range(3)] + [MONDAY + timedelta(days=1)]
        buckets = group_periods_by_day(_triples(dates), periods_per_day=3)
        self.assertEqual(buckets[0].hour_offsets, [3, 6, 9])
        self.assertEqual(buckets[0].select_offset, 6)
        self.assertEqual(buckets[1].select_offset, 27)

    def test_timeline_grouping_uses_hour_labels(self):
        location = decode_location_forecasts(location_record(), METADATA, 46.5, 7.0)
        buckets = group_timeline_by_day(location.offset_and_dates(), METADATA.periods_per_day, tz=timezone.utc)
        self.assertEqual([bucket.label for bucket in buckets], ["Mon 03 Jun", "Tue 04 Jun"])
        self.assertEqual(buckets[1].periods, (("09", 27), ("12", 30), ("15", 33)))


class OffsetNavigatorTests(unittest.TestCase):
    def test_clamps_to_bounds(self):
        bounds = OffsetBounds(minimum=3, maximum=180)
        self.assertEqual(next_offset(3, "previous_period", bounds), 3)
        self.assertEqual(next_offset(180, "next_day", bounds), 180)
        self.assertEqual(next_offset(10, "next_period", bounds), 13)
        self.assertEqual(next_offset(10, "previous_day", bounds), 3)
        self.assertEqual(next_offset(100, "next_day", bounds), 124)
        self.assertEqual(next_offset(30, "previous_day", bounds), 6)

    def test_bounds_from_metadata(self):
        bounds = OffsetBounds.for_metadata(METADATA)
        self.assertEqual((bounds.minimum, bounds.maximum), (3, 33))
        self.assertEqual(next_offset(30, "next_day", bounds), 33)

    def test_unknown_intent(self):
        with self.assertRaises(ValueError):
            next_offset(10, "next_week", OffsetBounds(maximum=180))


class MetadataTimelineTests(unittest.TestCase):
    def test_forecast_offsets_from_morning(self):
        offsets = forecast_offsets(METADATA, morning_offset=3)
        self.assertEqual([offset for offset, _ in offsets], [3, 6, 9, 27, 30, 33])
        self.assertEqual(offsets[3][1], datetime(2024, 6, 4, 9, tzinfo=timezone.utc))

    def test_forecast_offsets_skip_invalid_offsets(self):
        offsets = forecast_offsets(METADATA, morning_offset=0)
        self.assertEqual([offset for offset, _ in offsets], [3, 6, 24, 27, 30])

    def test_morning_offset(self):
        self.assertEqual(morning_offset(METADATA, tz=timezone.utc, morning_hour=9), 3)
        self.assertEqual(morning_offset(METADATA, tz=ZoneInfo("Europe/Zurich"), morning_hour=9), 25)

    def test_period_timeline_falls_back_to_metadata(self):
        self.assertEqual(period_timeline(METADATA, None, 3), forecast_offsets(METADATA, 3))
        location = decode_location_forecasts(location_record(), METADATA, 46.5, 7.0)
        self.assertEqual(period_timeline(METADATA, location, 0), location.offset_and_dates())

    def test_labels(self):
        self.assertEqual(period_label(MONDAY), "09")
        self.assertEqual(period_label(MONDAY, tz=ZoneInfo("Europe/Zurich")), "11")
        self.assertEqual(show_date(MONDAY), "03 Jun 2024 09:00")
        self.assertEqual(show_date(MONDAY, show_week_day=True), "Mon 03 Jun 2024 09:00")


class DetailedViewTests(unittest.TestCase):
    def setUp(self):
        self.location = decode_location_forecasts(location_record(), METADATA, 46.5, 7.0)

    def test_meteogram_gets_whole_location(self):
        self.assertIs(detailed_view_input("meteogram", self.location, 0), self.location)

    def test_sounding_gets_forecast_and_elevation(self):
        forecast, elevation = detailed_view_input("sounding", self.location, 30)
        self.assertEqual(forecast.time, datetime(2024, 6, 4, 12, tzinfo=timezone.utc))
        self.assertEqual(elevation, 500)
        self.assertIsNone(detailed_view_input("sounding", self.location, 31))

    def test_no_location_is_fallback(self):
        self.assertIsNone(detailed_view_input("meteogram", None, 3))
        self.assertIsNone(detailed_view_input("sounding", None, 3))

    def test_unknown_view(self):
        with self.assertRaises(ValueError):
            detailed_view_input("skewt", self.location, 3)


if __name__ == "__main__":
    unittest.main()
