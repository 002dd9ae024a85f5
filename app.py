from __future__ import annotations

import logging
import os
from dataclasses import asdict, fields
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from forecast_data import DetailedForecast, ForecastMetadata, ForecastStore, ForecastStoreError, LocationForecasts, Wind
from period_selector import (
    DISPLAY_TIMEZONE,
    OffsetBounds,
    detailed_view_input,
    display_timezone,
    group_timeline_by_day,
    morning_offset as default_morning_offset,
    next_offset,
    period_timeline,
    show_date,
)


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
# Origins of a locally run server on the default uvicorn port.
DEFAULT_CORS_ORIGINS = ["http://127.0.0.1:8000", "http://localhost:8000"]


def _log_handlers(log_file: str) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3))
    return handlers


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger("soaring_forecast")
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    log_file = os.getenv("SOARING_LOG_FILE", "logs/soaring_forecast.log").strip()
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in _log_handlers(log_file):
        handler.setFormatter(formatter)
        handler.setLevel(level)
        logger.addHandler(handler)

    logger.propagate = False
    logger.info("Logging to stderr%s at %s", f" and {log_file}" if log_file else "", logging.getLevelName(level))
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="Soaring Forecast Explorer")


def _allowed_cors_origins() -> List[str]:
    if os.getenv("SOARING_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    configured = [origin.strip() for origin in os.getenv("CORS_ALLOW_ORIGINS", "").split(",")]
    return [origin for origin in configured if origin] or list(DEFAULT_CORS_ORIGINS)


# Every endpoint is a read-only GET.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
)

store = ForecastStore()


@app.on_event("startup")
def _startup() -> None:
    LOGGER.info("App startup data_dir=%s timezone=%s", store.data_dir, DISPLAY_TIMEZONE)


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    store.clear_cache()


def _iso(date: datetime) -> str:
    return date.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _run_metadata() -> ForecastMetadata:
    try:
        return store.metadata()
    except ForecastStoreError as exc:
        LOGGER.warning("Forecast metadata unavailable: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _selected_location(lat: float | None, lon: float | None) -> LocationForecasts | None:
    if lat is None or lon is None:
        return None
    try:
        return store.location_forecasts(lat, lon)
    except ForecastStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _wind_payload(wind: Wind) -> Dict[str, float]:
    return {
        "u": wind.u,
        "v": wind.v,
        "speed": round(wind.speed, 1),
        "direction": round(wind.direction, 1),
    }


def _forecast_payload(forecast: DetailedForecast, first_time_step: datetime) -> Dict[str, object]:
    payload = asdict(forecast)
    payload["time"] = _iso(forecast.time)
    payload["hour_offset"] = forecast.hour_offset_since_first_time_step(first_time_step)
    payload["winds"] = {f.name: _wind_payload(getattr(forecast.winds, f.name)) for f in fields(forecast.winds)}
    return payload


@app.get("/api/metadata")
def metadata() -> Dict[str, object]:
    meta = _run_metadata()
    tz = display_timezone()
    bounds = OffsetBounds.for_metadata(meta)
    return {
        "init": _iso(meta.init),
        "init_label": show_date(meta.init, show_week_day=True, tz=tz),
        "first_time_step": _iso(meta.first_time_step),
        "latest": meta.latest,
        "periods_per_day": meta.periods_per_day,
        "bounds": {"min": bounds.minimum, "max": bounds.maximum},
        "morning_offset": default_morning_offset(meta, tz),
        "timezone": DISPLAY_TIMEZONE,
    }


@app.get("/api/periods")
def periods(
    hour_offset: int = Query(..., ge=0),
    lat: float | None = Query(None, ge=-90, le=90),
    lon: float | None = Query(None, ge=-180, le=180),
    morning_offset: int | None = Query(None, ge=0),
) -> Dict[str, object]:
    meta = _run_metadata()
    tz = display_timezone()
    location = _selected_location(lat, lon)
    if morning_offset is None:
        morning_offset = default_morning_offset(meta, tz)
    # Without a selected location, infer the available periods from the run metadata.
    timeline = period_timeline(meta, location, morning_offset)
    dates = dict(timeline)
    days = []
    for bucket in group_timeline_by_day(timeline, meta.periods_per_day, tz):
        days.append(
            {
                "label": bucket.label,
                "full": bucket.is_full,
                "date": _iso(bucket.date),
                "select_offset": bucket.select_offset,
                "periods": [
                    {
                        "hour_offset": offset,
                        "label": label,
                        "date": _iso(dates[offset]),
                        "selected": offset == hour_offset,
                    }
                    for label, offset in bucket.periods
                ],
            }
        )
    source = "location" if location is not None else "metadata"
    LOGGER.debug("Periods served source=%s days=%d", source, len(days))
    return {
        "source": source,
        "hour_offset": hour_offset,
        "period_count": len(timeline),
        "days": days,
    }


@app.get("/api/forecast")
def forecast(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    hour_offset: int = Query(..., ge=0),
) -> Dict[str, object]:
    meta = _run_metadata()
    location = _selected_location(lat, lon)
    if location is None:
        raise HTTPException(status_code=404, detail=f"No forecast available at lat={lat} lon={lon}")
    found = location.at_hour_offset(hour_offset)
    if found is None:
        raise HTTPException(status_code=404, detail=f"No forecast at hour offset {hour_offset}")
    payload = _forecast_payload(found, meta.first_time_step)
    payload["elevation"] = location.elevation
    return payload


@app.get("/api/detailed")
def detailed(
    view: str = Query("meteogram"),
    lat: float | None = Query(None, ge=-90, le=90),
    lon: float | None = Query(None, ge=-180, le=180),
    hour_offset: int = Query(..., ge=0),
) -> Dict[str, object]:
    meta = _run_metadata()
    location = _selected_location(lat, lon)
    try:
        view_input = detailed_view_input(view, location, hour_offset)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if view_input is None:
        return {"view": view, "available": False}

    if isinstance(view_input, LocationForecasts):
        return {
            "view": view,
            "available": True,
            "elevation": view_input.elevation,
            "latitude": view_input.latitude,
            "longitude": view_input.longitude,
            "days": [
                {
                    "thunderstorm_risk": day.thunderstorm_risk,
                    "forecasts": [_forecast_payload(f, meta.first_time_step) for f in day.forecasts],
                }
                for day in view_input.day_forecasts
            ],
        }
    sounding_forecast, elevation = view_input
    return {
        "view": view,
        "available": True,
        "elevation": elevation,
        "forecast": _forecast_payload(sounding_forecast, meta.first_time_step),
    }


@app.get("/api/navigate")
def navigate(
    hour_offset: int = Query(...),
    intent: str = Query(...),
) -> Dict[str, object]:
    meta = _run_metadata()
    try:
        target = next_offset(hour_offset, intent, OffsetBounds.for_metadata(meta))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    date = meta.date_at_hour_offset(target)
    return {
        "hour_offset": target,
        "date": _iso(date),
        "date_label": show_date(date, show_week_day=True, tz=display_timezone()),
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
