"""Геометрия окрестности: плоская аппроксимация расстояний"""
import calendar
import math
from datetime import datetime, timedelta, timezone
from typing import Tuple

# Километров в одном градусе (плоская аппроксимация, не гаверсинус)
KM_PER_DEGREE = 111.32


def flat_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Euclidean distance in degrees scaled to km"""
    return math.sqrt((lat1 - lat2) ** 2 + (lng1 - lng2) ** 2) * KM_PER_DEGREE


def bounding_box(lat: float, lng: float, radius_km: float) -> Tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lng, max_lng) of the square around a point"""
    degree_radius = radius_km / KM_PER_DEGREE
    return (
        lat - degree_radius,
        lat + degree_radius,
        lng - degree_radius,
        lng + degree_radius,
    )


def valid_coordinates(lat: float, lng: float) -> bool:
    if lat is None or lng is None:
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def naive_utc(moment: datetime) -> datetime:
    """Даты в БД хранятся в UTC без tzinfo"""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def month_window(moment: datetime) -> Tuple[datetime, datetime]:
    """Calendar month containing the moment"""
    start = datetime(moment.year, moment.month, 1)
    last_day = calendar.monthrange(moment.year, moment.month)[1]
    end = datetime(moment.year, moment.month, last_day) + timedelta(days=1) - timedelta(microseconds=1)
    return start, end


def day_window(moment: datetime) -> Tuple[datetime, datetime]:
    """Calendar day containing the moment"""
    start = datetime(moment.year, moment.month, moment.day)
    return start, start + timedelta(days=1) - timedelta(microseconds=1)
