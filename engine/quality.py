"""Оценка качества данных измерения"""
from typing import Any, Mapping, Optional

from config import settings


def _field(record: Any, name: str) -> Optional[float]:
    if isinstance(record, Mapping):
        value = record.get(name)
    else:
        value = getattr(record, name, None)
    return None if value is None else float(value)


def in_range(value: float, bounds) -> bool:
    """Проверка попадания значения в диапазон (min, max, min_incl, max_incl)"""
    low, high, low_inclusive, high_inclusive = bounds
    above = value >= low if low_inclusive else value > low
    below = value <= high if high_inclusive else value < high
    return above and below


def score_record(record: Any) -> float:
    """Binary plausibility score of a measurement.

    Returns 1.0 when pm25_value is present and inside its band and every other
    present covariate is inside its physical band, otherwise 0.0. Works on ORM
    objects and plain mappings alike.
    """
    for name, bounds in settings.VALIDITY_RANGES.items():
        value = _field(record, name)
        if value is None:
            if name == "pm25_value":
                return 0.0
            continue
        if not in_range(value, bounds):
            return 0.0
    return 1.0
