from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
)
from sqlalchemy.orm import relationship

from healthcast.db.base import Base


class CachedForecastRun(Base):
    """Latest authoritative forecast for one (entity, location, granularity) key."""

    __tablename__ = "forecast_runs"

    id = Column(Integer, primary_key=True)
    cache_key = Column(String(160), nullable=False)
    entity_key = Column(String(64), nullable=False)
    location_key = Column(Integer, nullable=True)
    granularity = Column(String(16), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    generated_at = Column(DateTime(timezone=True), nullable=False)
    engine = Column(String(32), nullable=False)
    model_version = Column(String(64), nullable=True)
    periods_ahead = Column(Integer, nullable=False)

    mse = Column(Float, nullable=False)
    rmse = Column(Float, nullable=False)
    mae = Column(Float, nullable=False)
    r_squared = Column(Float, nullable=False)

    trend = Column(String(16), nullable=False)
    seasonality_detected = Column(Boolean, nullable=False, default=False)
    data_quality = Column(String(16), nullable=False)

    points = relationship(
        "CachedForecastPoint",
        cascade="all, delete-orphan",
        order_by="CachedForecastPoint.position",
        lazy="selectin",
    )

    __table_args__ = (UniqueConstraint("cache_key", name="uq_forecast_runs_cache_key"),)


class CachedForecastPoint(Base):
    __tablename__ = "forecast_run_points"

    id = Column(Integer, primary_key=True)
    run_id = Column(Integer, ForeignKey("forecast_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    period = Column(Date, nullable=False)
    predicted_value = Column(Integer, nullable=False)
    lower_bound = Column(Integer, nullable=False)
    upper_bound = Column(Integer, nullable=False)
    confidence_level = Column(Float, nullable=False)
