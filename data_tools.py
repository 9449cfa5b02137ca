"""Инструменты доступа к данным - хранилище измерений и внешний API OpenAQ"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx
import numpy as np
from sqlalchemy import select, and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.models import Measurement, ModelMetrics
from engine.errors import NotFoundError, StoreError, UpstreamUnavailableError
from engine.geo import KM_PER_DEGREE, bounding_box, flat_distance_km, naive_utc

logger = logging.getLogger(__name__)

COVARIATES = ("aod_value", "no2_value", "temperature", "humidity", "wind_speed")


def _live_only():
    return or_(
        Measurement.validation_status.is_(None),
        Measurement.validation_status != "deleted",
    )


def _plausible_only():
    """SQL-форма score_record == 1.0: pm25 в диапазоне, остальные поля NULL или в диапазоне"""
    conditions = []
    for name, (low, high, low_inclusive, high_inclusive) in settings.VALIDITY_RANGES.items():
        column = getattr(Measurement, name)
        in_band = and_(
            column >= low if low_inclusive else column > low,
            column <= high if high_inclusive else column < high,
        )
        conditions.append(in_band if name == "pm25_value" else or_(column.is_(None), in_band))
    return and_(*conditions)


async def query_by_bounding_box_and_date(
    session: AsyncSession,
    lat: float,
    lng: float,
    radius_km: float,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    include_predictions: bool = True,
    require_covariate: bool = False,
    valid_pm25_only: bool = False,
    plausible_only: bool = False,
    exclude_deleted: bool = True,
    limit: Optional[int] = None,
) -> List[Tuple[Measurement, float]]:
    """Измерения в радиусе от точки, ближайшие первыми.

    Radius cut, ordering (distance asc, measurement_date desc, id asc) and the
    row limit all run in SQL on the squared degree distance, which orders
    exactly like the flat-earth km distance. The km distance is computed here
    for the returned rows.
    """
    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_km)
    degree_radius = radius_km / KM_PER_DEGREE
    squared_degrees = (
        (Measurement.latitude - lat) * (Measurement.latitude - lat)
        + (Measurement.longitude - lng) * (Measurement.longitude - lng)
    )

    query = select(Measurement).where(
        Measurement.latitude.between(min_lat, max_lat),
        Measurement.longitude.between(min_lng, max_lng),
        squared_degrees <= degree_radius * degree_radius,
    )

    if start is not None:
        query = query.where(Measurement.measurement_date >= start)
    if end is not None:
        query = query.where(Measurement.measurement_date <= end)
    if not include_predictions:
        query = query.where(Measurement.is_prediction == False)  # noqa: E712
    if valid_pm25_only:
        query = query.where(
            Measurement.pm25_value.is_not(None),
            Measurement.pm25_value > 0,
            Measurement.pm25_value < 500,
        )
    if plausible_only:
        query = query.where(_plausible_only())
    if require_covariate:
        query = query.where(or_(*[getattr(Measurement, name).is_not(None) for name in COVARIATES]))
    if exclude_deleted:
        query = query.where(_live_only())

    query = query.order_by(squared_degrees, Measurement.measurement_date.desc(), Measurement.id)
    if limit is not None:
        query = query.limit(limit)

    try:
        result = await session.execute(query)
        measurements = result.scalars().all()
    except SQLAlchemyError as e:
        logger.error(f"Neighbourhood query failed: {e}")
        raise StoreError(f"Failed to query measurements: {e}") from e

    return [(m, flat_distance_km(lat, lng, m.latitude, m.longitude)) for m in measurements]


async def query_training_set(
    session: AsyncSession,
    limit: int = 2000,
    exclude_deleted: bool = True,
) -> List[Measurement]:
    """Обучающая выборка: реальные измерения, все ковариаты в физических диапазонах"""
    conditions = [
        Measurement.is_prediction == False,  # noqa: E712
        Measurement.pm25_value.is_not(None),
        Measurement.pm25_value > 0,
        Measurement.pm25_value < 500,
        Measurement.aod_value.is_not(None),
        Measurement.aod_value >= 0,
        Measurement.aod_value <= 5,
        Measurement.no2_value.is_not(None),
        Measurement.no2_value >= 0,
        Measurement.temperature.is_not(None),
        Measurement.temperature > -50,
        Measurement.temperature < 60,
        Measurement.humidity.is_not(None),
        Measurement.humidity >= 0,
        Measurement.humidity <= 100,
        Measurement.wind_speed.is_not(None),
        Measurement.wind_speed >= 0,
        Measurement.wind_speed < 50,
    ]
    if exclude_deleted:
        conditions.append(_live_only())

    query = (
        select(Measurement)
        .where(and_(*conditions))
        .order_by(Measurement.measurement_date.desc(), Measurement.id.desc())
        .limit(limit)
    )
    try:
        result = await session.execute(query)
        return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"Training set query failed: {e}")
        raise StoreError(f"Failed to load training data: {e}") from e


async def insert_measurement(session: AsyncSession, fields: Dict[str, Any]) -> Measurement:
    """Сохранение измерения в БД"""
    measurement = Measurement(**fields)
    try:
        session.add(measurement)
        await session.commit()
        await session.refresh(measurement)
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Error saving measurement: {e}")
        raise StoreError(f"Failed to create measurement record: {e}") from e
    return measurement


async def get_measurement(session: AsyncSession, measurement_id: int) -> Optional[Measurement]:
    try:
        return await session.get(Measurement, measurement_id)
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to load measurement {measurement_id}: {e}") from e


async def update_measurement(
    session: AsyncSession,
    measurement_id: int,
    fields: Dict[str, Any],
) -> Measurement:
    """Частичное обновление полей измерения"""
    measurement = await get_measurement(session, measurement_id)
    if measurement is None:
        raise NotFoundError("Measurement record not found", id=measurement_id)

    for name, value in fields.items():
        setattr(measurement, name, value)

    try:
        await session.commit()
        await session.refresh(measurement)
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Error updating measurement {measurement_id}: {e}")
        raise StoreError(f"Failed to update measurement record: {e}") from e
    return measurement


async def measurement_exists(
    session: AsyncSession,
    lat: float,
    lng: float,
    measurement_date: datetime,
    data_source: str,
) -> bool:
    """Проверка дубликата по (lat, lng, date, source)"""
    try:
        existing = await session.execute(
            select(Measurement.id).where(
                Measurement.latitude == lat,
                Measurement.longitude == lng,
                Measurement.measurement_date == measurement_date,
                Measurement.data_source == data_source,
            ).limit(1)
        )
    except SQLAlchemyError as e:
        raise StoreError(f"Duplicate check failed: {e}") from e
    return existing.scalars().first() is not None


async def save_measurements(session: AsyncSession, data: List[Dict]) -> Dict[str, int]:
    """Пакетное сохранение с пропуском дубликатов.

    Each record is committed on its own so that a failing row is counted and
    the rest of the batch still lands.
    """
    counts = {"inserted": 0, "skipped": 0, "failed": 0}
    for item in data:
        try:
            if await measurement_exists(
                session,
                item["latitude"],
                item["longitude"],
                item["measurement_date"],
                item["data_source"],
            ):
                logger.debug(f"Skipping duplicate: {item['latitude']},{item['longitude']} at {item['measurement_date']}")
                counts["skipped"] += 1
                continue

            await insert_measurement(session, item)
            counts["inserted"] += 1
        except StoreError as e:
            logger.error(f"Error inserting measurement: {e}")
            counts["failed"] += 1

    return counts


async def save_model_metrics(session: AsyncSession, fields: Dict[str, Any]) -> ModelMetrics:
    """Сохранение метрик модели в БД"""
    metrics = ModelMetrics(**fields)
    try:
        session.add(metrics)
        await session.commit()
        await session.refresh(metrics)
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Error saving model metrics: {e}")
        raise StoreError(f"Failed to create model metrics record: {e}") from e
    return metrics


async def get_recent_model_metrics(session: AsyncSession, limit: int = 100) -> List[ModelMetrics]:
    query = select(ModelMetrics).order_by(ModelMetrics.created_at.desc(), ModelMetrics.id.desc()).limit(limit)
    try:
        result = await session.execute(query)
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to load model metrics: {e}") from e
    return list(result.scalars().all())


def build_openaq_params(
    country: Optional[str] = None,
    city: Optional[str] = None,
    coordinates: Optional[Dict[str, float]] = None,
    radius: Optional[float] = None,
    limit: Optional[int] = 100,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "parameters_id": 2,
        "order_by": "datetime",
        "sort": "desc",
    }
    if limit:
        params["limit"] = min(int(limit), 1000)
    if country:
        params["countries_id"] = country
    if city:
        params["cities_id"] = city
    if coordinates and coordinates.get("latitude") is not None and coordinates.get("longitude") is not None:
        params["coordinates"] = f"{coordinates['latitude']},{coordinates['longitude']}"
        if radius:
            params["radius"] = int(radius * 1000)  # км -> м
    return params


async def fetch_openaq_measurements(
    params: Dict[str, Any],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict:
    """Получение измерений PM2.5 через OpenAQ API v3"""
    headers = {"Accept": "application/json", "User-Agent": "PM25-Monitor/1.0"}
    if settings.OPENAQ_API_KEY:
        headers["X-API-Key"] = settings.OPENAQ_API_KEY

    try:
        async with httpx.AsyncClient(timeout=settings.OPENAQ_TIMEOUT, transport=transport) as client:
            response = await client.get(settings.OPENAQ_API_URL, params=params, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"OpenAQ request failed: {e}")
        raise UpstreamUnavailableError(f"OpenAQ API unavailable: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
        raise UpstreamUnavailableError("OpenAQ response has no results list")
    return payload


def _parse_utc(value: str) -> datetime:
    return naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def parse_openaq_results(results: List[Dict]) -> List[Dict]:
    """Отбор валидных записей OpenAQ и приведение к полям Measurement"""
    parsed = []
    for item in results:
        value = item.get("value")
        coords = item.get("coordinates") or {}
        date = item.get("date") or {}
        if value is None or not coords.get("latitude") or not coords.get("longitude") or not date.get("utc"):
            continue
        try:
            parsed.append({
                "latitude": float(coords["latitude"]),
                "longitude": float(coords["longitude"]),
                "pm25_value": float(value),
                "measurement_date": _parse_utc(date["utc"]),
                "data_source": "openaq",
                "is_prediction": False,
            })
        except (TypeError, ValueError) as e:
            logger.debug(f"Skipping malformed OpenAQ record: {e}")
    return parsed


def generate_synthetic_measurements(
    lat: float,
    lng: float,
    limit: int,
    rng: np.random.Generator,
    now: Optional[datetime] = None,
) -> List[Dict]:
    """Генерация правдоподобных синтетических измерений вокруг точки"""
    now = now or datetime.utcnow()
    daily_phase = math.sin((now.timestamp() / 86400) * math.pi) * 5

    records = []
    for i in range(min(int(limit), 20)):
        base_pm25 = 15 + rng.random() * 30
        pm25 = max(5.0, base_pm25 + daily_phase + (rng.random() - 0.5) * 10)
        records.append({
            "latitude": lat + (rng.random() - 0.5) * 0.1,
            "longitude": lng + (rng.random() - 0.5) * 0.1,
            "pm25_value": round(pm25, 1),
            "measurement_date": now - timedelta(hours=i),
            "data_source": "synthetic",
            "is_prediction": False,
            "aod_value": 0.1 + rng.random() * 0.3,
            "no2_value": 0.00001 + rng.random() * 0.00005,
            "temperature": 15 + rng.random() * 20,
            "humidity": 40 + rng.random() * 40,
            "wind_speed": 2 + rng.random() * 6,
        })
    return records
