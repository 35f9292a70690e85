"""
COMPASS Pipeline - Bayesian detection of antigen-specific T-cell subsets.

This package provides:
- Boolean marker-combination category spaces
- A Dirichlet-multinomial response model fitted by parallel MCMC chains
- Posterior response probabilities per subject and category
- Functionality (FS) and polyfunctionality (PFS) scores
- CSV/JSON export and a command-line interface

Example:
    >>> from compass_pipeline import CompassPipeline, Config
    >>>
    >>> config = Config(iterations=10000, replications=4, seed=1)
    >>> result = CompassPipeline(config).fit(
    ...     stimulated, unstimulated, markers=["IFNg", "IL2", "TNFa"]
    ... )
    >>> result.scores(metadata=meta, key="subject")
"""

__version__ = "0.1.0"

# Core infrastructure
from compass_pipeline.core.config import Config
from compass_pipeline.core.exceptions import (
    CompassError,
    ConfigurationError,
    ConvergenceWarning,
    DimensionMismatch,
    FitCancelled,
)

# Model and results
from compass_pipeline.model.categories import CategorySpace, build_category_space
from compass_pipeline.model.specification import ModelSpecification
from compass_pipeline.result import CompassResult, PlotData

# Main pipeline
from compass_pipeline.pipeline import CompassPipeline, fit_compass

# Writers are imported as needed:
#   from compass_pipeline.export import CSVWriter, JSONWriter

__all__ = [
    # Version
    "__version__",
    # Pipeline
    "CompassPipeline",
    "fit_compass",
    "CompassResult",
    "PlotData",
    # Model
    "CategorySpace",
    "build_category_space",
    "ModelSpecification",
    # Config and errors
    "Config",
    "CompassError",
    "ConfigurationError",
    "ConvergenceWarning",
    "DimensionMismatch",
    "FitCancelled",
]
