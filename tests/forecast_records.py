from datetime import datetime, timezone

from forecast_data import ForecastMetadata

METADATA = ForecastMetadata(
    init=datetime(2024, 6, 3, 0, tzinfo=timezone.utc),
    first_time_step=datetime(2024, 6, 3, 6, tzinfo=timezone.utc),
    latest=33,
)
METADATA_PAYLOAD = {"init": "2024-06-03T00:00:00Z", "firstTimeStep": "2024-06-03T06:00:00Z", "latest": 33}


def hour_record(time, **overrides):
    record = {
        "t": time,
        "xc": 40,
        "xcf": 25,
        "bl": {"h": 1500, "u": 5, "v": -3, "c": [1200, 2400]},
        "v": 15,
        "p": [
            {"h": 300, "t": 20, "dt": 10, "u": 1, "v": 2, "c": 0},
            {"h": 600, "t": 18, "dt": 9, "u": 3, "v": 4, "c": 10},
            {"h": 1200, "t": 12, "dt": 5, "u": 5, "v": 6, "c": 45},
        ],
        "s": {"t": 21, "dt": 11, "u": 2, "v": 1},
        "iso": 3200,
        "r": {"t": 1.5, "c": 0.5},
        "mslet": 1015,
        "c": 45,
        "w": [{"u": i, "v": -i} for i in range(5)],
    }
    record.update(overrides)
    return record


def location_record():
    # Monday and Tuesday, 09/12/15 UTC: hour offsets 3, 6, 9, 27, 30, 33.
    return {
        "h": 500,
        "d": [
            {
                "th": 0,
                "h": [
                    hour_record("2024-06-03T09:00:00Z"),
                    hour_record("2024-06-03T12:00:00Z"),
                    hour_record("2024-06-03T15:00:00Z"),
                ],
            },
            {
                "th": 2,
                "h": [
                    hour_record("2024-06-04T09:00:00Z"),
                    hour_record("2024-06-04T12:00:00Z"),
                    hour_record("2024-06-04T15:00:00Z"),
                ],
            },
        ],
    }
