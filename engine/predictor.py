"""Ансамблевый прогноз PM2.5: бутстрэп, взвешенные расстояния и kNN"""
import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from data_tools import insert_measurement, query_training_set
from engine.errors import ComputationError, InsufficientDataError, StoreError, ValidationError
from engine.geo import valid_coordinates

logger = logging.getLogger(__name__)

DEFAULT_COVARIATES = {
    "aod_value": 0.15,
    "no2_value": 0.000025,
    "temperature": 20.0,
    "humidity": 50.0,
    "wind_speed": 5.0,
}

# Веса компонент комбинированного расстояния
GEO_WEIGHT = 1.0
ATMOSPHERIC_WEIGHT = 0.8
METEOROLOGICAL_WEIGHT = 0.6

WEIGHTED_SHARE = 0.7
KNN_SHARE = 0.3
KNN_NEIGHBOURS = 20
WEIGHT_FLOOR = 0.001


@dataclass
class QueryFeatures:
    """Признаки точки запроса"""
    latitude: float
    longitude: float
    aod_value: float
    no2_value: float
    temperature: float
    humidity: float
    wind_speed: float
    month: int = 1
    derived: Dict[str, float] = field(default_factory=dict)


def build_features(lat: float, lng: float, covariates: Optional[Dict] = None, now: Optional[datetime] = None) -> QueryFeatures:
    """Raw covariates (defaulted where absent) plus derived descriptive features.

    Only the raw values enter the distance metric; the derived ones are
    reported alongside the prediction.
    """
    values = dict(DEFAULT_COVARIATES)
    for name, value in (covariates or {}).items():
        if name in values and value is not None:
            values[name] = float(value)

    now = now or datetime.utcnow()
    derived = {
        "distance_from_equator": abs(lat),
        # Атлантика, Тихий океан, Мексиканский залив
        "coastal_proximity": min(abs(lng + 74), abs(lng + 118), abs(lng + 87)),
        "pressure_estimate": 1013.25 - lat * 0.5,
        "pollution_index": values["aod_value"] * 100 + values["no2_value"] * 1000000,
        "temp_humidity_interaction": values["temperature"] * values["humidity"] / 100,
        "wind_dispersion_factor": math.log(values["wind_speed"] + 1),
        "season_factor": math.sin(((now.month - 1) / 12) * 2 * math.pi),
    }
    return QueryFeatures(latitude=lat, longitude=lng, month=now.month, derived=derived, **values)


@dataclass
class TrainingMatrix:
    """Обучающая выборка в виде столбцов numpy"""
    latitude: np.ndarray
    longitude: np.ndarray
    pm25: np.ndarray
    aod: np.ndarray
    no2: np.ndarray
    temperature: np.ndarray
    humidity: np.ndarray
    wind_speed: np.ndarray

    @classmethod
    def from_records(cls, records: Sequence) -> "TrainingMatrix":
        def column(name, default=0.0):
            return np.array(
                [float(getattr(r, name)) if getattr(r, name) is not None else default for r in records],
                dtype=float,
            )

        return cls(
            latitude=column("latitude"),
            longitude=column("longitude"),
            pm25=column("pm25_value"),
            aod=column("aod_value"),
            no2=column("no2_value"),
            temperature=column("temperature", 20.0),
            humidity=column("humidity", 50.0),
            wind_speed=column("wind_speed", 5.0),
        )

    def __len__(self) -> int:
        return len(self.pm25)


def round_prediction(features: QueryFeatures, training: TrainingMatrix, indices: np.ndarray) -> Optional[float]:
    """One bootstrap round over the sampled rows.

    Returns 0.7 * kernel-weighted mean + 0.3 * kNN mean, or None when the
    sample yields no usable weight.
    """
    if len(indices) == 0:
        return None

    lat = training.latitude[indices]
    lng = training.longitude[indices]
    aod = training.aod[indices]
    pm25 = training.pm25[indices]

    geo = np.sqrt((features.latitude - lat) ** 2 + (features.longitude - lng) ** 2)
    atmospheric = np.sqrt(
        ((features.aod_value - aod) * 200) ** 2
        + ((features.no2_value - training.no2[indices]) * 50000) ** 2
    )
    meteorological = np.sqrt(
        ((features.temperature - training.temperature[indices]) * 0.1) ** 2
        + ((features.humidity - training.humidity[indices]) * 0.01) ** 2
        + ((features.wind_speed - training.wind_speed[indices]) * 0.2) ** 2
    )
    combined = GEO_WEIGHT * geo + ATMOSPHERIC_WEIGHT * atmospheric + METEOROLOGICAL_WEIGHT * meteorological

    weights = np.exp(-2 * combined) + WEIGHT_FLOOR
    total_weight = float(np.sum(weights))
    if not math.isfinite(total_weight) or total_weight <= 0:
        return None
    weighted = float(np.sum(weights * pm25) / total_weight)

    # kNN по упрощенному расстоянию (lat, lng, aod)
    knn_distance = np.sqrt(
        (features.latitude - lat) ** 2
        + (features.longitude - lng) ** 2
        + ((features.aod_value - aod) * 100) ** 2
    )
    nearest = np.argsort(knn_distance, kind="stable")[:min(KNN_NEIGHBOURS, len(indices))]
    knn = float(np.mean(pm25[nearest]))

    prediction = WEIGHTED_SHARE * weighted + KNN_SHARE * knn
    return prediction if math.isfinite(prediction) else None


def run_ensemble(
    features: QueryFeatures,
    training: TrainingMatrix,
    rng: np.random.Generator,
    num_ensembles: int = 15,
    max_sample_size: int = 200,
) -> List[float]:
    """Bootstrap rounds; failed rounds are dropped, not counted as zero"""
    sample_size = min(max_sample_size, int(math.floor(len(training) * 0.9)))
    predictions = []
    for _ in range(num_ensembles):
        indices = rng.integers(0, len(training), size=sample_size)
        prediction = round_prediction(features, training, indices)
        if prediction is not None:
            predictions.append(prediction)
    return predictions


def aggregate_predictions(predictions: Sequence[float], training_size: int) -> Dict:
    """Сортировка, квартили, IQR-фильтр и многофакторная уверенность"""
    if len(predictions) == 0:
        raise ComputationError("Unable to generate reliable prediction")

    ordered = np.sort(np.asarray(predictions, dtype=float))
    n = len(ordered)
    mean = float(np.mean(ordered))
    median = float(ordered[n // 2])
    q1 = float(ordered[int(math.floor(n * 0.25))])
    q3 = float(ordered[int(math.floor(n * 0.75))])

    iqr = q3 - q1
    lower_bound = q1 - 1.5 * iqr
    upper_bound = q3 + 1.5 * iqr
    filtered = ordered[(ordered >= lower_bound) & (ordered <= upper_bound)]
    final = float(np.mean(filtered)) if len(filtered) > 0 else mean

    variance = float(np.mean((ordered - final) ** 2))
    std_deviation = math.sqrt(variance)
    coefficient_of_variation = std_deviation / final if final > 0 else math.inf

    data_quality = min(1.0, training_size / 100)
    stability = min(1.0, max(0.0, 1 - coefficient_of_variation))
    spatial_coverage = min(1.0, max(0.0, len(filtered) / n))
    confidence = 0.3 * data_quality + 0.5 * stability + 0.2 * spatial_coverage

    return {
        "pm25_value": max(1.0, min(500.0, final)),
        "confidence": max(0.0, min(1.0, confidence)),
        "mean": mean,
        "median": median,
        "q1": q1,
        "q3": q3,
        "std_deviation": std_deviation,
        "predictions_used": int(len(filtered)),
        "outliers_removed": int(n - len(filtered)),
        "data_quality_score": data_quality,
        "prediction_stability": stability,
        "spatial_coverage": spatial_coverage,
    }


class PM25Predictor:
    """Прогноз PM2.5 в точке по ансамблю бутстрэп-моделей"""

    def __init__(self, rng: Optional[np.random.Generator] = None):
        self.name = "PM25Predictor"
        self.rng = rng if rng is not None else np.random.default_rng()

    def compute(self, features: QueryFeatures, training: TrainingMatrix) -> Dict:
        predictions = run_ensemble(
            features,
            training,
            self.rng,
            num_ensembles=settings.NUM_ENSEMBLES,
            max_sample_size=settings.MAX_SAMPLE_SIZE,
        )
        logger.info(f"{self.name}: {len(predictions)}/{settings.NUM_ENSEMBLES} ensemble rounds usable")
        return aggregate_predictions(predictions, len(training))

    async def predict(
        self,
        session: AsyncSession,
        lat: Optional[float],
        lng: Optional[float],
        covariates: Optional[Dict] = None,
    ) -> Dict:
        if lat is None or lng is None:
            raise ValidationError("Latitude and longitude are required")
        if not valid_coordinates(lat, lng):
            raise ValidationError("Invalid coordinates provided")

        logger.info(f"{self.name}: Starting prediction at ({lat}, {lng})")

        records = await query_training_set(
            session,
            limit=settings.TRAINING_SET_LIMIT,
            exclude_deleted=settings.EXCLUDE_DELETED_MEASUREMENTS,
        )
        if len(records) < settings.MIN_TRAINING_SAMPLES:
            raise InsufficientDataError(required=settings.MIN_TRAINING_SAMPLES, available=len(records))

        features = build_features(lat, lng, covariates)
        training = TrainingMatrix.from_records(records)

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.compute, features, training),
                timeout=settings.PREDICTION_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(f"{self.name}: ensemble exceeded {settings.PREDICTION_TIMEOUT_SECONDS}s")
            raise ComputationError("Prediction timed out")

        response = {
            "success": True,
            "prediction": {
                "pm25_value": round(result["pm25_value"], 2),
                "confidence": round(result["confidence"], 2),
                "latitude": lat,
                "longitude": lng,
                "model_version": settings.MODEL_VERSION,
                "prediction_id": None,
                "statistics": {
                    "mean": round(result["mean"], 2),
                    "median": round(result["median"], 2),
                    "q1": round(result["q1"], 2),
                    "q3": round(result["q3"], 2),
                    "std_deviation": round(result["std_deviation"], 2),
                    "predictions_used": result["predictions_used"],
                    "outliers_removed": result["outliers_removed"],
                },
            },
            "features": {name: round(value, 6) for name, value in features.derived.items()},
            "training_samples": len(training),
            "model_performance": {
                "data_quality_score": round(result["data_quality_score"], 2),
                "prediction_stability": round(result["prediction_stability"], 2),
                "spatial_coverage": round(result["spatial_coverage"], 2),
            },
            "persisted": False,
        }

        # Запись прогноза - часть контракта; ошибка записи не отменяет прогноз
        try:
            record = await insert_measurement(session, {
                "latitude": lat,
                "longitude": lng,
                "pm25_value": result["pm25_value"],
                "aod_value": features.aod_value,
                "no2_value": features.no2_value,
                "temperature": features.temperature,
                "humidity": features.humidity,
                "wind_speed": features.wind_speed,
                "is_prediction": True,
                "model_version": settings.MODEL_VERSION,
                "data_source": "ml_prediction",
            })
            response["prediction"]["prediction_id"] = record.id
            response["persisted"] = True
        except StoreError as e:
            logger.error(f"{self.name}: prediction computed but not stored: {e}")
            response["persist_error"] = e.message

        logger.info(f"{self.name}: PM2.5={response['prediction']['pm25_value']} confidence={response['prediction']['confidence']}")
        return response
