"""
SQLAlchemy models for the persisted candle cache
"""
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

# Base class for models
Base = declarative_base()


class CandleCacheRecord(Base):
    """Serialized CandleCacheEntry keyed by storage prefix + symbol"""
    __tablename__ = "candle_cache"

    key = Column(String(255), primary_key=True)
    blob = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
