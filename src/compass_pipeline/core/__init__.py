"""
Core infrastructure for compass-pipeline.

Provides:
- Configuration management
- Error hierarchy and convergence warnings
"""

from compass_pipeline.core.config import (
    Config,
    SamplerConfig,
    PriorConfig,
    DiagnosticsConfig,
    ParallelConfig,
    FilterConfig,
)
from compass_pipeline.core.exceptions import (
    CompassError,
    ConfigurationError,
    DimensionMismatch,
    FitCancelled,
    ConvergenceWarning,
)

__all__ = [
    "Config",
    "SamplerConfig",
    "PriorConfig",
    "DiagnosticsConfig",
    "ParallelConfig",
    "FilterConfig",
    "CompassError",
    "ConfigurationError",
    "DimensionMismatch",
    "FitCancelled",
    "ConvergenceWarning",
]
