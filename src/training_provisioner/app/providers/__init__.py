"""Backend resource providers: static pool and elastic cloud instances."""

from .base import (
    STATUS_ABSENT,
    STATUS_FAILED,
    STATUS_LIVE,
    STATUS_PENDING,
    Acquisition,
    LivenessReport,
)
from .policy import (
    BACKEND_TIMINGS,
    ELASTIC_TIMING,
    STATIC_TIMING,
    BackendTiming,
    timing_for,
)

__all__ = [
    'Acquisition',
    'BACKEND_TIMINGS',
    'BackendTiming',
    'ELASTIC_TIMING',
    'LivenessReport',
    'STATIC_TIMING',
    'STATUS_ABSENT',
    'STATUS_FAILED',
    'STATUS_LIVE',
    'STATUS_PENDING',
    'timing_for',
]
