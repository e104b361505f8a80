"""
Forex snapshot served at ``/forex`` and ``/forex/raw``.
"""

from .cache import ForexCache, ForexSnapshot, RawForexPayload
from .client import ForexSource, OpenExchangeRatesClient

__all__ = [
    "ForexCache",
    "ForexSnapshot",
    "ForexSource",
    "OpenExchangeRatesClient",
    "RawForexPayload",
]
