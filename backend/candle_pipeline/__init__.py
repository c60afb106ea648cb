"""
Candle Pipeline

Market-data candle cache with timeframe derivation and a realtime
tick-to-candle aggregator.
"""

__version__ = "1.0.0"
