"""
Functionality (FS) and polyfunctionality (PFS) scores.
"""

from compass_pipeline.scoring.scores import (
    POLICIES,
    BinomialWeightedPolicy,
    DegreeWeightedPolicy,
    Scorer,
    ScoringPolicy,
    functionality_score,
    get_policy,
    polyfunctionality_score,
    scored_categories,
)

__all__ = [
    "POLICIES",
    "BinomialWeightedPolicy",
    "DegreeWeightedPolicy",
    "Scorer",
    "ScoringPolicy",
    "functionality_score",
    "get_policy",
    "polyfunctionality_score",
    "scored_categories",
]
