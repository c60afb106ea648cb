"""Service layer: pipeline composition."""
from candle_pipeline.services.pipeline import CandlePipeline

__all__ = ['CandlePipeline']
