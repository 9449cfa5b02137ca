"""API endpoints"""
import logging
from typing import Optional

import httpx
import numpy as np
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend import handlers
from backend.schemas import (
    EnvironmentalQuery,
    IngestRequest,
    MeasurementCreate,
    MeasurementQuery,
    MeasurementUpdate,
    ModelMetricsCreate,
    PredictionRequest,
)
from db.database import get_session

logger = logging.getLogger(__name__)
router = APIRouter()


def get_rng() -> np.random.Generator:
    """Dependency: источник случайности для бутстрэпа и климатической модели"""
    return np.random.default_rng()


def get_upstream_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Dependency: транспорт httpx для OpenAQ (None - сетевой по умолчанию)"""
    return None


@router.post("/create-measurement")
async def create_measurement(
    request: MeasurementCreate,
    session: AsyncSession = Depends(get_session)
):
    """Create a PM2.5 measurement"""
    return await handlers.create_measurement(session, request)


@router.post("/update-measurement")
async def update_measurement(
    request: MeasurementUpdate,
    session: AsyncSession = Depends(get_session)
):
    """Patch any subset of a measurement's fields"""
    return await handlers.update_measurement(session, request)


@router.post("/get-pm25-data")
async def get_pm25_data(
    query: MeasurementQuery,
    session: AsyncSession = Depends(get_session)
):
    """Measurements around a point with quality scores"""
    return await handlers.get_measurements(session, query)


@router.post("/get-environmental-data")
async def get_environmental_data(
    query: EnvironmentalQuery,
    session: AsyncSession = Depends(get_session),
    rng: np.random.Generator = Depends(get_rng)
):
    """Covariate estimate at a point"""
    return await handlers.get_environmental_estimate(session, query, rng)


@router.post("/predict-pm25")
async def predict_pm25(
    request: PredictionRequest,
    session: AsyncSession = Depends(get_session),
    rng: np.random.Generator = Depends(get_rng)
):
    """Ensemble PM2.5 prediction (stores the prediction as a new record)"""
    return await handlers.predict_pm25(session, request, rng)


@router.post("/fetch-openaq")
async def fetch_openaq(
    request: IngestRequest,
    session: AsyncSession = Depends(get_session),
    rng: np.random.Generator = Depends(get_rng),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_upstream_transport)
):
    """Ingest OpenAQ measurements, synthetic data if OpenAQ is unavailable"""
    return await handlers.ingest_external(session, request, rng, transport)


@router.post("/create-model-metrics")
async def create_model_metrics(
    request: ModelMetricsCreate,
    session: AsyncSession = Depends(get_session)
):
    """Record model evaluation metrics"""
    return await handlers.create_model_metrics(session, request)


@router.get("/model-metrics")
async def get_model_metrics(
    limit: int = 100,
    session: AsyncSession = Depends(get_session)
):
    """Get recent model metrics"""
    return await handlers.list_model_metrics(session, limit=limit)
