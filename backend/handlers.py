"""Operations behind the HTTP surface.

Every function here returns a tagged result dict (``success`` plus payload or
``error``); domain and store failures are converted at this boundary.
"""
import functools
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
import numpy as np
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.schemas import (
    EnvironmentalQuery,
    IngestRequest,
    MeasurementCreate,
    MeasurementOut,
    MeasurementQuery,
    MeasurementUpdate,
    ModelMetricsCreate,
    ModelMetricsOut,
    PredictionRequest,
)
from backend.validation import validate_measurement_update, validate_model_metrics, validate_new_measurement
from config import settings
from data_tools import (
    COVARIATES,
    build_openaq_params,
    fetch_openaq_measurements,
    generate_synthetic_measurements,
    get_measurement,
    get_recent_model_metrics,
    insert_measurement,
    parse_openaq_results,
    query_by_bounding_box_and_date,
    save_measurements,
    save_model_metrics,
    update_measurement as store_update_measurement,
)
from engine.environment import EnvironmentalEstimator
from engine.errors import MonitorError, NotFoundError, StoreError, UpstreamUnavailableError, ValidationError
from engine.geo import naive_utc, valid_coordinates
from engine.predictor import PM25Predictor
from engine.quality import score_record

logger = logging.getLogger(__name__)

QUERY_LIMIT = 500

# Точность округления в ответах GetMeasurements
RESPONSE_PRECISION = {
    "pm25_value": 2,
    "latitude": 6,
    "longitude": 6,
    "aod_value": 6,
    "no2_value": 9,
    "temperature": 1,
    "humidity": 1,
    "wind_speed": 1,
}


def operation(func):
    """Convert raised failures into ``{"success": False, ...}`` results"""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Dict[str, Any]:
        try:
            return await func(*args, **kwargs)
        except MonitorError as e:
            logger.warning(f"{func.__name__}: {e.message}")
            return e.to_result()
        except SQLAlchemyError as e:
            logger.error(f"{func.__name__}: store failure: {e}")
            return StoreError(str(e)).to_result()
        except Exception as e:
            logger.error(f"{func.__name__} failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}
    return wrapper


def _require_location(lat: Optional[float], lng: Optional[float]):
    if lat is None or lng is None:
        raise ValidationError("Latitude and longitude are required")
    if not valid_coordinates(lat, lng):
        raise ValidationError("Invalid coordinates provided")


def serialize_measurement(measurement) -> Dict[str, Any]:
    return MeasurementOut.model_validate(measurement).model_dump(mode="json")


@operation
async def create_measurement(session: AsyncSession, request: MeasurementCreate) -> Dict:
    fields = validate_new_measurement(request.model_dump())
    record = await insert_measurement(session, fields)
    logger.info(f"Created measurement {record.id} ({record.data_source}) PM2.5={record.pm25_value}")
    return {
        "success": True,
        "message": "PM2.5 measurement created successfully",
        "data": serialize_measurement(record),
    }


@operation
async def update_measurement(session: AsyncSession, request: MeasurementUpdate) -> Dict:
    if request.id is None:
        raise ValidationError("ID is required to update measurement")

    if await get_measurement(session, request.id) is None:
        raise NotFoundError("Measurement record not found", id=request.id)

    fields = validate_measurement_update(request.model_dump(exclude={"id"}))
    record = await store_update_measurement(session, request.id, fields)
    logger.info(f"Updated measurement {record.id}: {sorted(fields)}")
    return {
        "success": True,
        "message": "PM2.5 measurement updated successfully",
        "data": serialize_measurement(record),
        "updated_fields": len(fields),
    }


def _process_row(measurement, distance: float, score: float) -> Dict[str, Any]:
    row = serialize_measurement(measurement)
    for name, digits in RESPONSE_PRECISION.items():
        if row.get(name) is not None:
            row[name] = round(row[name], digits)
    row["distance_km"] = round(distance, 2)
    row["data_quality_score"] = round(score, 2)
    return row


def _measurement_statistics(rows: List[Dict]) -> Dict[str, Any]:
    if not rows:
        return {
            "total_measurements": 0,
            "real_measurements": 0,
            "predictions": 0,
            "avg_distance": 0,
            "avg_pm25": 0,
            "min_pm25": 0,
            "max_pm25": 0,
            "avg_data_quality": 0,
            "data_sources": [],
            "time_range": {"earliest": None, "latest": None},
        }

    pm25 = np.array([r["pm25_value"] for r in rows])
    dates = sorted(r["measurement_date"] for r in rows)
    sources = []
    for r in rows:
        if r["data_source"] not in sources:
            sources.append(r["data_source"])

    return {
        "total_measurements": len(rows),
        "real_measurements": sum(1 for r in rows if not r["is_prediction"]),
        "predictions": sum(1 for r in rows if r["is_prediction"]),
        "avg_distance": round(float(np.mean([r["distance_km"] for r in rows])), 2),
        "avg_pm25": round(float(np.mean(pm25)), 2),
        "min_pm25": float(np.min(pm25)),
        "max_pm25": float(np.max(pm25)),
        "avg_data_quality": round(float(np.mean([r["data_quality_score"] for r in rows])), 2),
        "data_sources": sources,
        "time_range": {"earliest": dates[0], "latest": dates[-1]},
    }


@operation
async def get_measurements(session: AsyncSession, query: MeasurementQuery) -> Dict:
    _require_location(query.latitude, query.longitude)

    exclude_deleted = settings.EXCLUDE_DELETED_MEASUREMENTS if query.include_deleted is None else not query.include_deleted
    neighbours = await query_by_bounding_box_and_date(
        session,
        query.latitude,
        query.longitude,
        query.radius,
        start=naive_utc(query.start_date) if query.start_date else None,
        end=naive_utc(query.end_date) if query.end_date else None,
        include_predictions=query.include_predictions,
        valid_pm25_only=True,
        plausible_only=query.min_data_quality > 0,
        exclude_deleted=exclude_deleted,
        limit=QUERY_LIMIT,
    )

    # Оценка бинарная: при minDataQuality > 0 отбор уже сделан в SQL
    rows = []
    for measurement, distance in neighbours:
        score = score_record(measurement)
        if score >= query.min_data_quality:
            rows.append(_process_row(measurement, distance, score))

    completeness = {}
    for name in ("pm25_value",) + COVARIATES:
        key = f"{name.replace('_value', '')}_complete"
        completeness[key] = sum(1 for r in rows if r.get(name) is not None)

    return {
        "success": True,
        "data": rows,
        "query_parameters": {
            "center": {"latitude": query.latitude, "longitude": query.longitude},
            "radius_km": query.radius,
            "include_predictions": query.include_predictions,
            "include_deleted": not exclude_deleted,
            "min_data_quality": query.min_data_quality,
            "start_date": query.start_date.isoformat() if query.start_date else None,
            "end_date": query.end_date.isoformat() if query.end_date else None,
        },
        "statistics": _measurement_statistics(rows),
        "data_completeness": completeness,
        "data_quality": {
            "high_quality_measurements": sum(1 for r in rows if r["data_quality_score"] >= 0.9),
            "medium_quality_measurements": sum(1 for r in rows if 0.7 <= r["data_quality_score"] < 0.9),
            "low_quality_measurements": sum(1 for r in rows if r["data_quality_score"] < 0.7),
        },
    }


@operation
async def get_environmental_estimate(session: AsyncSession, query: EnvironmentalQuery, rng: np.random.Generator) -> Dict:
    if query.latitude is None or query.longitude is None:
        raise ValidationError("Latitude and longitude are required")

    estimator = EnvironmentalEstimator(rng)
    result = await estimator.estimate(
        session,
        query.latitude,
        query.longitude,
        radius_km=query.radius,
        as_of=query.date,
        include_historical=query.include_historical,
        fallback_to_estimates=query.fallback_to_estimates,
    )
    return {"success": True, **result}


@operation
async def predict_pm25(session: AsyncSession, request: PredictionRequest, rng: np.random.Generator) -> Dict:
    _require_location(request.latitude, request.longitude)

    covariates = {name: getattr(request, name) for name in COVARIATES}
    covariate_sources = {name: "provided" for name, value in covariates.items() if value is not None}

    missing = [name for name, value in covariates.items() if value is None]
    if missing:
        estimate = await EnvironmentalEstimator(rng).estimate(
            session,
            request.latitude,
            request.longitude,
            radius_km=settings.ESTIMATE_RADIUS_KM,
            fallback_to_estimates=True,
        )
        for name in missing:
            covariates[name] = estimate["environmental_data"][name]
            covariate_sources[name] = estimate["estimation_methods"].get(name, "default")

    predictor = PM25Predictor(rng)
    result = await predictor.predict(session, request.latitude, request.longitude, covariates)
    result["covariate_sources"] = covariate_sources
    return result


def _accept_for_store(records: List[Dict]) -> Tuple[List[Dict], int]:
    """Те же проверки, что и для CreateMeasurement; отклоненные записи считаются"""
    accepted = []
    rejected = 0
    for item in records:
        try:
            fields = validate_new_measurement(item)
        except ValidationError as e:
            logger.warning(f"Rejected ingested record at ({item.get('latitude')}, {item.get('longitude')}): {e.message}")
            rejected += 1
            continue
        fields["measurement_date"] = item["measurement_date"]
        accepted.append(fields)
    return accepted, rejected


async def _ingest_synthetic(session: AsyncSession, request: IngestRequest, rng: np.random.Generator, reason: str) -> Dict:
    coords = request.coordinates
    lat = coords.latitude if coords and coords.latitude is not None else settings.DEFAULT_LOCATION["lat"]
    lng = coords.longitude if coords and coords.longitude is not None else settings.DEFAULT_LOCATION["lon"]

    records = generate_synthetic_measurements(lat, lng, request.limit, rng)
    valid, rejected = _accept_for_store(records)
    counts = await save_measurements(session, valid)
    counts["skipped"] += rejected
    logger.info(f"Synthetic fallback inserted {counts['inserted']} measurements near ({lat}, {lng})")

    return {
        "success": True,
        "message": f"Generated {counts['inserted']} synthetic PM2.5 measurements (OpenAQ API unavailable)",
        **counts,
        "rejected": rejected,
        "total_fetched": len(records),
        "valid_measurements": len(valid),
        "api_url": "synthetic_data_generator",
        "note": f"Using synthetic data due to OpenAQ API issues: {reason}",
    }


@operation
async def ingest_external(
    session: AsyncSession,
    request: IngestRequest,
    rng: np.random.Generator,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict:
    coordinates = request.coordinates.model_dump() if request.coordinates else None
    params = build_openaq_params(request.country, request.city, coordinates, request.radius, request.limit)
    api_url = str(httpx.URL(settings.OPENAQ_API_URL, params=params))

    try:
        payload = await fetch_openaq_measurements(params, transport=transport)
        valid, rejected = _accept_for_store(parse_openaq_results(payload["results"]))
        if not valid:
            raise UpstreamUnavailableError("OpenAQ returned no usable records")
    except UpstreamUnavailableError as e:
        logger.warning(f"Falling back to synthetic data: {e.message}")
        return await _ingest_synthetic(session, request, rng, e.message)

    counts = await save_measurements(session, valid)
    counts["skipped"] += rejected
    logger.info(f"OpenAQ ingestion: {counts}, rejected {rejected}")

    return {
        "success": True,
        "message": "Successfully fetched and stored PM2.5 data from OpenAQ",
        **counts,
        "rejected": rejected,
        "total_fetched": len(payload["results"]),
        "valid_measurements": len(valid),
        "api_url": api_url,
    }


@operation
async def create_model_metrics(session: AsyncSession, request: ModelMetricsCreate) -> Dict:
    fields = validate_model_metrics(request.model_dump())
    record = await save_model_metrics(session, fields)
    return {
        "success": True,
        "message": "Model metrics record created successfully",
        "data": ModelMetricsOut.model_validate(record).model_dump(mode="json"),
    }


@operation
async def list_model_metrics(session: AsyncSession, limit: int = 100) -> Dict:
    records = await get_recent_model_metrics(session, limit=limit)
    return {
        "success": True,
        "data": [ModelMetricsOut.model_validate(r).model_dump(mode="json") for r in records],
    }
