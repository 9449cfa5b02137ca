"""SQLAlchemy ORM модели"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, JSON, Index
from db.database import Base


class Measurement(Base):
    """Измерения PM2.5 и сопутствующих параметров (реальные, внешние и прогнозные)"""
    __tablename__ = "pm25_measurements"

    id = Column(Integer, primary_key=True, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    pm25_value = Column(Float, nullable=False)  # μg/m³
    aod_value = Column(Float)    # Aerosol Optical Depth
    no2_value = Column(Float)    # NO2 column density
    temperature = Column(Float)  # °C
    humidity = Column(Float)     # %
    wind_speed = Column(Float)   # m/s

    measurement_date = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    data_source = Column(String(50), nullable=False, default="manual", index=True)

    is_prediction = Column(Boolean, nullable=False, default=False, index=True)
    model_version = Column(String(50))
    prediction_accuracy = Column(Float)  # 0-1
    validation_status = Column(String(20), nullable=False, default="pending")

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_lat_lng', 'latitude', 'longitude'),
    )


class ModelMetrics(Base):
    """Метрики качества моделей прогнозирования"""
    __tablename__ = "model_metrics"

    id = Column(Integer, primary_key=True, index=True)
    model_name = Column(String(100), nullable=False, index=True)

    rmse = Column(Float)
    r_squared = Column(Float)         # 0-1
    mae = Column(Float)
    validation_score = Column(Float)  # 0-1
    training_samples = Column(Integer)
    feature_importance = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
