"""
Exception hierarchy for the candle pipeline.

Service boundary methods catch these and degrade to the best available
data; they only escape from the lower-level helpers.
"""


class CandlePipelineError(Exception):
    """Base class for all candle pipeline errors."""


class ProviderError(CandlePipelineError):
    """Market data provider failed (transport, HTTP status or payload parse)."""


class StorageError(CandlePipelineError):
    """Persistent key-value storage read/write failed."""
