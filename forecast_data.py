from __future__ import annotations

import json
import logging
import math
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Tuple

import numpy as np

FORECAST_DATA_DIR = os.getenv("FORECAST_DATA_DIR", "data")
FORECAST_GRID_RESOLUTION_DEG = float(os.getenv("FORECAST_GRID_RESOLUTION_DEG", "0.5"))
LOCATION_CACHE_MAX_ENTRIES = int(os.getenv("LOCATION_CACHE_MAX_ENTRIES", "256"))
METADATA_FILENAME = "forecast.json"
LOCATIONS_DIRNAME = "locations"
DEFAULT_PERIODS_PER_DAY = 3
# Forecast offsets below 3 hours are never published.
MIN_HOUR_OFFSET = 3
DETAILED_WINDS_COUNT = 5
LOGGER = logging.getLogger("soaring_forecast.forecast_data")


class ForecastDataError(RuntimeError):
    """Base class for forecast data failures."""


class ForecastDecodeError(ForecastDataError):
    """Raised when a forecast record is missing a required field or is malformed."""


class ForecastStoreError(ForecastDataError):
    """Raised when the run metadata of the data directory cannot be loaded."""


@dataclass(frozen=True)
class Wind:
    u: float  # km/h
    v: float  # km/h

    @property
    def speed(self) -> float:
        return float(np.hypot(self.u, self.v))

    @property
    def direction(self) -> float:
        """Direction the wind blows from, in degrees clockwise from north."""
        return float(np.degrees(np.arctan2(-self.u, -self.v)) % 360.0)


@dataclass(frozen=True)
class CumulusClouds:
    bottom: float  # m AGL
    top: float  # m AGL


@dataclass(frozen=True)
class BoundaryLayer:
    depth: float  # m AGL
    wind: Wind
    soaring_layer_depth: float  # m AGL
    cumulus_clouds: CumulusClouds | None = None


@dataclass(frozen=True)
class Surface:
    temperature: float  # °C
    dew_point: float  # °C
    wind: Wind


@dataclass(frozen=True)
class Rain:
    convective: float  # mm
    total: float  # mm


@dataclass(frozen=True)
class AboveGround:
    elevation: float  # m AMSL
    u: float  # km/h
    v: float  # km/h
    temperature: float  # °C
    dew_point: float  # °C
    cloud_cover: float  # between 0 and 1

    @property
    def wind(self) -> Wind:
        return Wind(u=self.u, v=self.v)


@dataclass(frozen=True)
class DetailedWinds:
    soaring_layer_top: Wind
    agl_300m: Wind
    amsl_2000m: Wind
    amsl_3000m: Wind
    amsl_4000m: Wind


@dataclass(frozen=True)
class DetailedForecast:
    time: datetime
    xc_potential: float  # between 0 and 100
    xc_potential_flatlands: float  # between 0 and 100
    thermal_velocity: float  # m/s
    boundary_layer: BoundaryLayer
    surface: Surface
    cloud_cover: float  # between 0 and 1
    rain: Rain
    mean_sea_level_pressure: float  # hPa
    isotherm_zero: float | None  # m, None when the profile never crosses 0 °C
    above_ground: Tuple[AboveGround, ...]  # sorted by ascending elevation
    winds: DetailedWinds

    def hour_offset_since_first_time_step(self, first_time_step: datetime) -> int:
        return hour_offset_since_first_time_step(self.time, first_time_step)


@dataclass(frozen=True)
class DayForecasts:
    thunderstorm_risk: float
    forecasts: Tuple[DetailedForecast, ...]


@dataclass(frozen=True)
class ForecastMetadata:
    init: datetime
    first_time_step: datetime
    latest: int
    periods_per_day: int = DEFAULT_PERIODS_PER_DAY

    def date_at_hour_offset(self, hour_offset: int) -> datetime:
        return self.first_time_step + timedelta(hours=int(hour_offset))


@dataclass(frozen=True)
class LocationForecasts:
    """Forecast data for several days at a specific location."""

    elevation: float
    latitude: float
    longitude: float
    day_forecasts: Tuple[DayForecasts, ...]
    metadata: ForecastMetadata
    _timeline: Tuple[Tuple[int, DetailedForecast], ...] = field(init=False, repr=False, compare=False)
    _offsets: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        first_time_step = self.metadata.first_time_step
        timeline = tuple(
            (forecast.hour_offset_since_first_time_step(first_time_step), forecast)
            for day in self.day_forecasts
            for forecast in day.forecasts
        )
        object.__setattr__(self, "_timeline", timeline)
        object.__setattr__(self, "_offsets", np.array([offset for offset, _ in timeline], dtype=np.int64))

    def initialization_time(self) -> datetime:
        return self.metadata.init

    def forecasts(self) -> List[DetailedForecast]:
        return [forecast for _, forecast in self._timeline]

    def offset_and_dates(self) -> List[Tuple[int, datetime]]:
        """Offset (hours since the first time step) and date of each forecast, in chronological order."""
        return [(offset, forecast.time) for offset, forecast in self._timeline]

    def at_hour_offset(self, hour_offset: int) -> DetailedForecast | None:
        """Forecast whose hour offset is exactly `hour_offset`, or None."""
        idx = int(np.searchsorted(self._offsets, int(hour_offset), side="left"))
        if idx < len(self._timeline) and self._timeline[idx][0] == hour_offset:
            return self._timeline[idx][1]
        return None


def hour_offset_since_first_time_step(instant: datetime, first_time_step: datetime) -> int:
    hours = (instant - first_time_step).total_seconds() / 3600
    # Half-up rounding absorbs sub-hour noise in source timestamps.
    return int(math.floor(hours + 0.5))


def decode_forecast_metadata(payload: object) -> ForecastMetadata:
    init = _parse_time(_require(payload, "init", "forecast"), "forecast.init")
    raw_first = payload.get("firstTimeStep")
    first_time_step = init if raw_first is None else _parse_time(raw_first, "forecast.firstTimeStep")
    latest = _integer(payload, "latest", "forecast")
    if latest < MIN_HOUR_OFFSET:
        raise ForecastDecodeError(f"Expected forecast.latest of at least {MIN_HOUR_OFFSET}, got {latest}")
    periods_per_day = DEFAULT_PERIODS_PER_DAY
    if payload.get("periodsPerDay") is not None:
        periods_per_day = _integer(payload, "periodsPerDay", "forecast")
        if periods_per_day < 1:
            raise ForecastDecodeError(f"Expected a positive forecast.periodsPerDay, got {periods_per_day}")
    return ForecastMetadata(
        init=init,
        first_time_step=first_time_step,
        latest=latest,
        periods_per_day=periods_per_day,
    )


def decode_location_forecasts(
    record: object,
    metadata: ForecastMetadata,
    latitude: float,
    longitude: float,
) -> LocationForecasts:
    elevation = _number(record, "h", "location")
    days_data = _array(record, "d", "location")
    if not days_data:
        raise ForecastDecodeError("Location record has no forecast days")
    day_forecasts = tuple(
        _decode_day_forecasts(day, elevation, f"location.d[{i}]") for i, day in enumerate(days_data)
    )

    previous: datetime | None = None
    previous_offset: int | None = None
    for day in day_forecasts:
        for forecast in day.forecasts:
            if previous is not None and forecast.time <= previous:
                raise ForecastDecodeError(
                    f"Forecast times are not strictly increasing: {forecast.time.isoformat()} after {previous.isoformat()}"
                )
            # Distinct times can still round to the same hour offset.
            offset = forecast.hour_offset_since_first_time_step(metadata.first_time_step)
            if previous_offset is not None and offset <= previous_offset:
                raise ForecastDecodeError(
                    f"Forecast hour offsets are not strictly increasing: {offset} at {forecast.time.isoformat()}"
                )
            previous = forecast.time
            previous_offset = offset

    return LocationForecasts(
        elevation=elevation,
        latitude=float(latitude),
        longitude=float(longitude),
        day_forecasts=day_forecasts,
        metadata=metadata,
    )


def _decode_day_forecasts(data: object, elevation: float, path: str) -> DayForecasts:
    thunderstorm_risk = _number(data, "th", path)
    forecasts = tuple(
        decode_detailed_forecast(hour, elevation, f"{path}.h[{i}]")
        for i, hour in enumerate(_array(data, "h", path))
    )
    return DayForecasts(thunderstorm_risk=thunderstorm_risk, forecasts=forecasts)


def decode_detailed_forecast(data: object, elevation: float, path: str = "forecast") -> DetailedForecast:
    time = _parse_time(_require(data, "t", path), f"{path}.t")

    bl = _require(data, "bl", path)
    bl_path = f"{path}.bl"
    bl_depth = _number(bl, "h", bl_path)
    cumulus_clouds = None
    raw_clouds = bl.get("c") if isinstance(bl, dict) else None
    if raw_clouds is not None:
        if not isinstance(raw_clouds, list) or len(raw_clouds) != 2:
            raise ForecastDecodeError(f"Expected a [bottom, top] pair at {bl_path}.c, got {raw_clouds!r}")
        bottom = _as_number(raw_clouds[0], f"{bl_path}.c[0]")
        top = _as_number(raw_clouds[1], f"{bl_path}.c[1]")
        cumulus_clouds = CumulusClouds(bottom=bottom, top=top)
    boundary_layer = BoundaryLayer(
        depth=bl_depth,
        wind=_wind(bl, bl_path),
        soaring_layer_depth=cumulus_clouds.bottom if cumulus_clouds is not None else bl_depth,
        cumulus_clouds=cumulus_clouds,
    )

    s = _require(data, "s", path)
    surface = Surface(
        temperature=_number(s, "t", f"{path}.s"),
        dew_point=_number(s, "dt", f"{path}.s"),
        wind=_wind(s, f"{path}.s"),
    )

    r = _require(data, "r", path)
    rain = Rain(convective=_number(r, "c", f"{path}.r"), total=_number(r, "t", f"{path}.r"))

    above_ground = []
    for i, entry in enumerate(_array(data, "p", path)):
        entry_path = f"{path}.p[{i}]"
        entry_elevation = _number(entry, "h", entry_path)
        if entry_elevation <= elevation:
            continue
        above_ground.append(
            AboveGround(
                elevation=entry_elevation,
                u=_number(entry, "u", entry_path),
                v=_number(entry, "v", entry_path),
                temperature=_number(entry, "t", entry_path),
                dew_point=_number(entry, "dt", entry_path),
                cloud_cover=_number(entry, "c", entry_path) / 100,
            )
        )

    raw_winds = _array(data, "w", path)
    if len(raw_winds) != DETAILED_WINDS_COUNT:
        raise ForecastDecodeError(f"Expected {DETAILED_WINDS_COUNT} winds at {path}.w, got {len(raw_winds)}")
    winds = [_wind(w, f"{path}.w[{i}]") for i, w in enumerate(raw_winds)]

    xc_potential_flatlands = _optional_number(data, "xcf", path)
    return DetailedForecast(
        time=time,
        xc_potential=_number(data, "xc", path),
        # Runs published before the flatlands index existed carry no "xcf".
        xc_potential_flatlands=xc_potential_flatlands if xc_potential_flatlands is not None else 0,
        thermal_velocity=_number(data, "v", path) / 10,
        boundary_layer=boundary_layer,
        surface=surface,
        cloud_cover=_number(data, "c", path) / 100,
        rain=rain,
        mean_sea_level_pressure=_number(data, "mslet", path),
        isotherm_zero=_optional_number(data, "iso", path),
        above_ground=tuple(above_ground),
        winds=DetailedWinds(
            soaring_layer_top=winds[0],
            agl_300m=winds[1],
            amsl_2000m=winds[2],
            amsl_3000m=winds[3],
            amsl_4000m=winds[4],
        ),
    )


def _require(mapping: object, key: str, path: str) -> object:
    if not isinstance(mapping, dict):
        raise ForecastDecodeError(f"Expected an object at {path}, got {type(mapping).__name__}")
    value = mapping.get(key)
    if value is None:
        raise ForecastDecodeError(f"Missing required field {path}.{key}")
    return value


def _as_number(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ForecastDecodeError(f"Expected a number at {path}, got {value!r}")
    return value


def _number(mapping: object, key: str, path: str) -> float:
    return _as_number(_require(mapping, key, path), f"{path}.{key}")


def _optional_number(mapping: object, key: str, path: str) -> float | None:
    value = mapping.get(key) if isinstance(mapping, dict) else None
    if value is None:
        return None
    return _as_number(value, f"{path}.{key}")


def _integer(mapping: object, key: str, path: str) -> int:
    value = _number(mapping, key, path)
    if int(value) != value:
        raise ForecastDecodeError(f"Expected an integer at {path}.{key}, got {value!r}")
    return int(value)


def _array(mapping: object, key: str, path: str) -> list:
    value = _require(mapping, key, path)
    if not isinstance(value, list):
        raise ForecastDecodeError(f"Expected an array at {path}.{key}, got {type(value).__name__}")
    return value


def _wind(mapping: object, path: str) -> Wind:
    return Wind(u=_number(mapping, "u", path), v=_number(mapping, "v", path))


def _parse_time(value: object, path: str) -> datetime:
    if not isinstance(value, str):
        raise ForecastDecodeError(f"Expected an ISO-8601 time at {path}, got {value!r}")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ForecastDecodeError(f"Invalid ISO-8601 time at {path}: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ForecastStore:
    """Run metadata and per-location forecasts read from a local data directory."""

    def __init__(
        self,
        data_dir: str | Path | None = None,
        grid_resolution_deg: float = FORECAST_GRID_RESOLUTION_DEG,
        cache_max_entries: int = LOCATION_CACHE_MAX_ENTRIES,
    ) -> None:
        self._data_dir = Path(data_dir if data_dir is not None else FORECAST_DATA_DIR)
        self._grid_resolution_deg = float(grid_resolution_deg)
        self._cache_max_entries = max(1, int(cache_max_entries))

        self._metadata: ForecastMetadata | None = None
        self._metadata_mtime: float | None = None
        self._metadata_guard = threading.Lock()
        # Insertion ordered, oldest entry first.
        self._location_cache: Dict[Tuple[str, float, float], LocationForecasts] = {}
        self._location_cache_guard = threading.Lock()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def metadata(self) -> ForecastMetadata:
        path = self._data_dir / METADATA_FILENAME
        try:
            mtime = path.stat().st_mtime
        except OSError as exc:
            raise ForecastStoreError(f"Forecast metadata not found at {path}") from exc

        with self._metadata_guard:
            if self._metadata is not None and self._metadata_mtime == mtime:
                return self._metadata
            try:
                payload = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError) as exc:
                raise ForecastStoreError(f"Unreadable forecast metadata at {path}: {exc}") from exc
            try:
                metadata = decode_forecast_metadata(payload)
            except ForecastDecodeError as exc:
                raise ForecastStoreError(f"Invalid forecast metadata at {path}: {exc}") from exc

            if self._metadata is not None and self._metadata.init != metadata.init:
                LOGGER.info("New forecast run init=%s, dropping cached locations", metadata.init.isoformat())
                self.clear_cache()
            self._metadata = metadata
            self._metadata_mtime = mtime
            LOGGER.info(
                "Loaded forecast metadata init=%s latest=%d periods_per_day=%d",
                metadata.init.isoformat(),
                metadata.latest,
                metadata.periods_per_day,
            )
            return metadata

    def grid_cell(self, lat: float, lon: float) -> Tuple[float, float]:
        res = self._grid_resolution_deg
        return (round(round(float(lat) / res) * res, 4), round(round(float(lon) / res) * res, 4))

    def location_path(self, lat: float, lon: float) -> Path:
        cell_lat, cell_lon = self.grid_cell(lat, lon)
        return self._data_dir / LOCATIONS_DIRNAME / f"{cell_lat:.2f}_{cell_lon:.2f}.json"

    def location_forecasts(self, lat: float, lon: float) -> LocationForecasts | None:
        """Decoded forecasts of the grid cell containing (lat, lon), or None when no data is available."""
        metadata = self.metadata()
        cell_lat, cell_lon = self.grid_cell(lat, lon)
        key = (metadata.init.isoformat(), cell_lat, cell_lon)
        with self._location_cache_guard:
            cached = self._location_cache.get(key)
        if cached is not None:
            LOGGER.debug("Location cache hit key=%s", key)
            return cached

        path = self.location_path(cell_lat, cell_lon)
        if not path.exists():
            LOGGER.debug("No location forecast path=%s", path)
            return None
        try:
            payload = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError):
            LOGGER.warning("Dropped unreadable location forecast path=%s", path)
            return None
        try:
            forecasts = decode_location_forecasts(payload, metadata, latitude=cell_lat, longitude=cell_lon)
        except ForecastDecodeError as exc:
            LOGGER.warning("Failed to decode location forecast path=%s error=%s", path, exc)
            return None

        with self._location_cache_guard:
            self._location_cache[key] = forecasts
            while len(self._location_cache) > self._cache_max_entries:
                self._location_cache.pop(next(iter(self._location_cache)))
        return forecasts

    def clear_cache(self) -> None:
        with self._location_cache_guard:
            self._location_cache.clear()
