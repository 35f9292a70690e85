"""
Category space, input validation and marginal likelihood.
"""

from compass_pipeline.model.categories import (
    MAX_MARKERS,
    Category,
    CategorySpace,
    build_category_space,
)
from compass_pipeline.model.specification import CategoryFilter, ModelSpecification
from compass_pipeline.model.likelihood import (
    LikelihoodTables,
    elevation_offsets,
    log_marginal,
    reference_counts,
)

__all__ = [
    "MAX_MARKERS",
    "Category",
    "CategorySpace",
    "build_category_space",
    "CategoryFilter",
    "ModelSpecification",
    "LikelihoodTables",
    "elevation_offsets",
    "log_marginal",
    "reference_counts",
]
