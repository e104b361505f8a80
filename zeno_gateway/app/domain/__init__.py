"""
Domain utilities for the Gateway Service.

Cross-cutting request processing that does not belong to routing or
transport-specific layers.
"""

from .instrumentation import REQUEST_ID_HEADER, InstrumentationMiddleware, classify_route

__all__ = [
    "InstrumentationMiddleware",
    "REQUEST_ID_HEADER",
    "classify_route",
]
