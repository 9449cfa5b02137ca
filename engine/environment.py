"""Оценка параметров окружающей среды в точке"""
import logging
import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from data_tools import COVARIATES, query_by_bounding_box_and_date
from db.models import Measurement
from engine.errors import ValidationError
from engine.geo import day_window, month_window, naive_utc, valid_coordinates

logger = logging.getLogger(__name__)

# Точность округления средневзвешенных значений
PRECISION = {
    "aod_value": 6,
    "no2_value": 6,
    "temperature": 1,
    "humidity": 1,
    "wind_speed": 1,
}

# Ключи data_quality в ответе
SOURCE_KEYS = {
    "aod_value": "aod_sources",
    "no2_value": "no2_sources",
    "temperature": "temperature_sources",
    "humidity": "humidity_sources",
    "wind_speed": "wind_speed_sources",
}

MODEL_NAMES = {
    "aod_value": "geographic_seasonal_model",
    "no2_value": "urban_proximity_model",
    "temperature": "latitude_seasonal_model",
    "humidity": "coastal_seasonal_model",
    "wind_speed": "geographic_climate_model",
}

NEIGHBOURHOOD_LIMIT = 200


def weighted_average(
    neighbours: Sequence[Tuple[Measurement, float]],
    covariate: str,
) -> Tuple[Optional[float], int]:
    """Inverse-distance weighted mean of one covariate.

    Weight is 1 / (distance_km + 1). Returns (value, number of sources); value
    is None when no neighbour carries the covariate.
    """
    values = []
    weights = []
    for measurement, distance in neighbours:
        value = getattr(measurement, covariate)
        if value is None:
            continue
        values.append(float(value))
        weights.append(1.0 / (distance + 1.0))

    if not values:
        return None, 0

    average = float(np.dot(weights, values) / np.sum(weights))
    return round(average, PRECISION[covariate]), len(values)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def fallback_estimate(covariate: str, lat: float, lng: float, month: int, rng: np.random.Generator) -> float:
    """Параметрическая климатическая модель: база + география + сезонность + шум"""
    jitter = rng.random() - 0.5

    if covariate == "aod_value":
        seasonal = math.sin((month / 12) * 2 * math.pi) * 0.05
        value = 0.15 + abs(lat) * 0.002 + seasonal + jitter * 0.1
        return round(_clamp(value, 0.05, 1.0), 6)

    if covariate == "no2_value":
        urban = min(0.00005, abs(lat - 40.7) * 0.000001)
        seasonal = math.sin(((month + 3) / 12) * 2 * math.pi) * 0.00001
        value = 0.000025 + urban + seasonal + jitter * 0.000005
        return round(_clamp(value, 0.000005, 0.0001), 9)

    if covariate == "temperature":
        seasonal = math.sin(((month - 1) / 12) * 2 * math.pi) * 15
        # Южное полушарие - сезоны в противофазе
        hemisphere = -seasonal if lat < 0 else seasonal
        value = 15 + (90 - abs(lat)) * 0.3 + hemisphere + jitter * 5
        return round(_clamp(value, -30, 45), 1)

    if covariate == "humidity":
        coastal = max(0, 20 - abs(lng + 95) * 0.2)
        seasonal = math.sin(((month + 6) / 12) * 2 * math.pi) * 10
        value = 60 + coastal + seasonal + jitter * 15
        return round(_clamp(value, 20, 90), 1)

    if covariate == "wind_speed":
        coastal = max(0, 15 - abs(lng + 80) * 0.1)
        seasonal = math.sin(((month + 9) / 12) * 2 * math.pi) * 2
        value = 4 + coastal + abs(lat) * 0.05 + seasonal + jitter * 2
        return round(_clamp(value, 0.5, 15), 1)

    raise ValueError(f"Unknown covariate: {covariate}")


def neighbourhood_statistics(neighbours: List[Tuple[Measurement, float]], radius_km: float) -> Dict:
    if not neighbours:
        return {
            "total_measurements": 0,
            "search_radius_km": radius_km,
            "avg_distance": 0,
            "data_sources": [],
            "time_range": {"earliest": None, "latest": None},
        }

    dates = [m.measurement_date for m, _ in neighbours]
    sources = []
    for m, _ in neighbours:
        if m.data_source not in sources:
            sources.append(m.data_source)

    return {
        "total_measurements": len(neighbours),
        "search_radius_km": radius_km,
        "avg_distance": round(sum(d for _, d in neighbours) / len(neighbours), 2),
        "data_sources": sources,
        "time_range": {
            "earliest": min(dates).isoformat(),
            "latest": max(dates).isoformat(),
        },
    }


class EnvironmentalEstimator:
    """Оценка AOD, NO2, температуры, влажности и ветра по соседним измерениям"""

    def __init__(self, rng: Optional[np.random.Generator] = None):
        self.name = "EnvironmentalEstimator"
        self.rng = rng if rng is not None else np.random.default_rng()

    async def estimate(
        self,
        session: AsyncSession,
        lat: float,
        lng: float,
        radius_km: float = 100.0,
        as_of: Optional[datetime] = None,
        include_historical: bool = True,
        fallback_to_estimates: bool = True,
    ) -> Dict:
        if not valid_coordinates(lat, lng):
            raise ValidationError("Invalid coordinates provided")

        target = naive_utc(as_of) if as_of is not None else datetime.utcnow()
        start, end = month_window(target) if include_historical else day_window(target)
        logger.info(f"{self.name}: estimating at ({lat}, {lng}) r={radius_km}km window {start:%Y-%m-%d}..{end:%Y-%m-%d}")

        neighbours = await query_by_bounding_box_and_date(
            session,
            lat,
            lng,
            radius_km,
            start=start,
            end=end,
            require_covariate=True,
            exclude_deleted=settings.EXCLUDE_DELETED_MEASUREMENTS,
            limit=NEIGHBOURHOOD_LIMIT,
        )

        environmental_data = {}
        data_quality = {}
        estimation_methods = {}
        for covariate in COVARIATES:
            value, sources = weighted_average(neighbours, covariate)
            data_quality[SOURCE_KEYS[covariate]] = sources
            if value is not None:
                estimation_methods[covariate] = "measured_data"
            elif fallback_to_estimates:
                value = fallback_estimate(covariate, lat, lng, target.month, self.rng)
                estimation_methods[covariate] = MODEL_NAMES[covariate]
            environmental_data[covariate] = value

        logger.info(f"{self.name}: {len(neighbours)} neighbours, methods={estimation_methods}")

        return {
            "location": {
                "latitude": lat,
                "longitude": lng,
                "date": target.isoformat(),
                "season": (target.month - 1) // 3 + 1,
                "month": target.month,
            },
            "environmental_data": environmental_data,
            "data_quality": data_quality,
            "statistics": neighbourhood_statistics(neighbours, radius_km),
            "estimation_methods": estimation_methods,
        }
