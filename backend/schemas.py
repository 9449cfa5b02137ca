"""Request and response schemas"""
from datetime import datetime
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, Field


class MeasurementCreate(BaseModel):
    """CreateMeasurement request"""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    pm25_value: Optional[float] = None
    aod_value: Optional[float] = None
    no2_value: Optional[float] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    wind_speed: Optional[float] = None
    data_source: str = "manual"
    is_prediction: bool = False
    model_version: Optional[str] = None
    prediction_accuracy: Optional[float] = None
    validation_status: str = "pending"


class MeasurementUpdate(BaseModel):
    """UpdateMeasurement request: id plus any subset of fields"""
    id: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    pm25_value: Optional[float] = None
    aod_value: Optional[float] = None
    no2_value: Optional[float] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    wind_speed: Optional[float] = None
    data_source: Optional[str] = None
    is_prediction: Optional[bool] = None
    model_version: Optional[str] = None
    prediction_accuracy: Optional[float] = None
    validation_status: Optional[str] = None


class MeasurementQuery(BaseModel):
    """GetMeasurements request"""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius: float = 50
    include_predictions: bool = Field(default=False, alias="includePredictions")
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    min_data_quality: float = Field(default=0.8, alias="minDataQuality")
    include_deleted: Optional[bool] = Field(default=None, alias="includeDeleted")

    class Config:
        populate_by_name = True


class EnvironmentalQuery(BaseModel):
    """GetEnvironmentalEstimate request"""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius: float = 100
    date: Optional[datetime] = None
    include_historical: bool = Field(default=True, alias="includeHistorical")
    fallback_to_estimates: bool = Field(default=True, alias="fallbackToEstimates")

    class Config:
        populate_by_name = True


class PredictionRequest(BaseModel):
    """Predict request; missing covariates are estimated"""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    aod_value: Optional[float] = None
    no2_value: Optional[float] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    wind_speed: Optional[float] = None


class Coordinates(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class IngestRequest(BaseModel):
    """IngestExternal request"""
    country: Optional[str] = None
    city: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    radius: Optional[float] = None
    limit: int = 100


class ModelMetricsCreate(BaseModel):
    model_name: Optional[str] = None
    rmse: Optional[float] = None
    r_squared: Optional[float] = None
    mae: Optional[float] = None
    validation_score: Optional[float] = None
    training_samples: Optional[int] = None
    feature_importance: Optional[Union[Dict[str, Any], str]] = None


class MeasurementOut(BaseModel):
    """Measurement response schema"""
    id: int
    latitude: float
    longitude: float
    pm25_value: float
    aod_value: Optional[float] = None
    no2_value: Optional[float] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    wind_speed: Optional[float] = None
    data_source: str
    is_prediction: bool
    model_version: Optional[str] = None
    prediction_accuracy: Optional[float] = None
    validation_status: str
    measurement_date: datetime
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ModelMetricsOut(BaseModel):
    """Model metrics response schema"""
    id: int
    model_name: str
    rmse: Optional[float] = None
    r_squared: Optional[float] = None
    mae: Optional[float] = None
    validation_score: Optional[float] = None
    training_samples: Optional[int] = None
    feature_importance: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
