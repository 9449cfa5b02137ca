"""Проверка полей измерений и метрик перед записью в БД"""
import json
import math
from typing import Any, Dict, Optional

from engine.errors import ValidationError

VALIDATION_STATUSES = ("pending", "validated", "rejected", "deleted")

# (поле, min, max, сообщение) - проверяются по порядку, первая ошибка прерывает
NUMERIC_RULES = [
    ("latitude", -90, 90, "Latitude must be between -90 and 90"),
    ("longitude", -180, 180, "Longitude must be between -180 and 180"),
    ("pm25_value", 0, 500, "PM2.5 value must be between 0 and 500 μg/m³"),
    ("aod_value", 0, 5, "AOD value must be between 0 and 5"),
    ("no2_value", 0, None, "NO2 value must be non-negative"),
    ("temperature", -50, 60, "Temperature must be between -50°C and 60°C"),
    ("humidity", 0, 100, "Humidity must be between 0% and 100%"),
    ("wind_speed", 0, 50, "Wind speed must be between 0 and 50 m/s"),
    ("prediction_accuracy", 0, 1, "Prediction accuracy must be between 0 and 1"),
]


def _check_number(value: Any, low: Optional[float], high: Optional[float], message: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(message)
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(message)
    if low is not None and number < low:
        raise ValidationError(message)
    if high is not None and number > high:
        raise ValidationError(message)
    return number


def _check_status(value: Any) -> str:
    status = str(value)
    if status not in VALIDATION_STATUSES:
        raise ValidationError(f"Validation status must be one of: {', '.join(VALIDATION_STATUSES)}")
    return status


def validate_new_measurement(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Поля для CreateMeasurement; первая ошибка - ValidationError"""
    if payload.get("latitude") is None or payload.get("longitude") is None or payload.get("pm25_value") is None:
        raise ValidationError("Latitude, longitude, and pm25_value are required")

    lat = _check_number(payload["latitude"], -90, 90, "Invalid coordinates: latitude must be -90 to 90, longitude must be -180 to 180")
    lng = _check_number(payload["longitude"], -180, 180, "Invalid coordinates: latitude must be -90 to 90, longitude must be -180 to 180")

    validated = {
        "latitude": lat,
        "longitude": lng,
        "data_source": str(payload.get("data_source") or "manual"),
        "is_prediction": bool(payload.get("is_prediction") or False),
        "validation_status": _check_status(payload.get("validation_status") or "pending"),
    }

    for name, low, high, message in NUMERIC_RULES[2:]:
        value = payload.get(name)
        if value is not None:
            validated[name] = _check_number(value, low, high, message)

    if payload.get("model_version") is not None:
        validated["model_version"] = str(payload["model_version"])

    return validated


def validate_measurement_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Поля для UpdateMeasurement: только переданные, в тех же диапазонах"""
    fields: Dict[str, Any] = {}

    for name, low, high, message in NUMERIC_RULES[:8]:
        value = payload.get(name)
        if value is not None:
            fields[name] = _check_number(value, low, high, message)

    if payload.get("data_source") is not None:
        fields["data_source"] = str(payload["data_source"])
    if payload.get("is_prediction") is not None:
        fields["is_prediction"] = bool(payload["is_prediction"])
    if payload.get("model_version") is not None:
        fields["model_version"] = str(payload["model_version"])

    name, low, high, message = NUMERIC_RULES[8]
    if payload.get(name) is not None:
        fields[name] = _check_number(payload[name], low, high, message)

    if payload.get("validation_status") is not None:
        fields["validation_status"] = _check_status(payload["validation_status"])

    if not fields:
        raise ValidationError("No valid fields provided for update")
    return fields


def validate_model_metrics(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not payload.get("model_name"):
        raise ValidationError("model_name is required")

    validated: Dict[str, Any] = {"model_name": str(payload["model_name"])}

    rules = [
        ("rmse", 0, None, "RMSE must be a non-negative number"),
        ("r_squared", 0, 1, "R-squared must be between 0 and 1"),
        ("mae", 0, None, "MAE must be a non-negative number"),
        ("validation_score", 0, 1, "Validation score must be between 0 and 1"),
    ]
    for name, low, high, message in rules:
        if payload.get(name) is not None:
            validated[name] = _check_number(payload[name], low, high, message)

    samples = payload.get("training_samples")
    if samples is not None:
        try:
            samples = int(samples)
        except (TypeError, ValueError):
            raise ValidationError("Training samples must be a positive integer")
        if samples < 1:
            raise ValidationError("Training samples must be a positive integer")
        validated["training_samples"] = samples

    importance = payload.get("feature_importance")
    if importance is not None:
        if isinstance(importance, str):
            try:
                importance = json.loads(importance)
            except json.JSONDecodeError:
                raise ValidationError("Invalid JSON format for feature_importance")
        if not isinstance(importance, dict):
            raise ValidationError("Feature importance must be a JSON object")
        validated["feature_importance"] = importance

    return validated
