"""
Functionality and polyfunctionality scores.

Both scores average posterior response probabilities over C+, the sampled
categories with at least one positive marker (optionally restricted to
categories whose positive markers lie in a marker subset):

    FS_i  = mean_{c in C+} P[i, c]
    PFS_i = sum_{c in C+} w_c P[i, c] / sum_{c in C+} w_c

The PFS weights come from a pluggable ``ScoringPolicy``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
from scipy.special import comb

from compass_pipeline.core.exceptions import ConfigurationError
from compass_pipeline.model.categories import CategorySpace


class ScoringPolicy(ABC):
    """Category weights for the polyfunctionality score."""

    name: str = "base"

    @abstractmethod
    def weights(self, space: CategorySpace) -> np.ndarray:
        """Non-negative weight per category (baseline weight is ignored)."""


class DegreeWeightedPolicy(ScoringPolicy):
    """w_c = degree(c) / K."""

    name = "degree"

    def weights(self, space: CategorySpace) -> np.ndarray:
        return space.degrees / space.n_markers


class BinomialWeightedPolicy(ScoringPolicy):
    """w_c = degree(c) / (K * binom(K, degree(c))).

    Each degree level carries weight proportional to its degree, shared
    equally among the categories of that level.
    """

    name = "binomial"

    def weights(self, space: CategorySpace) -> np.ndarray:
        k = space.n_markers
        d = space.degrees
        return d / (k * comb(k, d))


POLICIES = {
    "degree": DegreeWeightedPolicy,
    "binomial": BinomialWeightedPolicy,
}


def get_policy(policy: str | ScoringPolicy | None) -> ScoringPolicy:
    if policy is None:
        return DegreeWeightedPolicy()
    if isinstance(policy, ScoringPolicy):
        return policy
    try:
        return POLICIES[policy]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown scoring policy: {policy}. Available: {list(POLICIES)}"
        ) from None


def scored_categories(
    space: CategorySpace,
    active: Optional[np.ndarray] = None,
    markers: Optional[Iterable[str]] = None,
) -> np.ndarray:
    """Boolean mask of C+ (degree >= 1, sampled, within the marker subset)."""
    mask = (space.degrees >= 1) & space.subset_mask(markers)
    if active is not None:
        mask &= np.asarray(active, dtype=bool)
    return mask


def _check_posterior(posterior: np.ndarray, space: CategorySpace) -> np.ndarray:
    p = np.asarray(posterior, dtype=np.float64)
    if p.ndim == 1:
        p = p[None, :]
    if p.shape[1] != space.n_categories:
        raise ConfigurationError(
            f"Posterior has {p.shape[1]} columns, category space has {space.n_categories}"
        )
    return p


def functionality_score(
    posterior: np.ndarray,
    space: CategorySpace,
    markers: Optional[Iterable[str]] = None,
    active: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Unweighted mean response probability over C+.

    Args:
        posterior: Posterior matrix (subjects x categories).
        space: Category space of the posterior columns.
        markers: Optional marker subset restricting C+.
        active: Optional mask of sampled categories.

    Returns:
        FS per subject; nan when C+ is empty.
    """
    p = _check_posterior(posterior, space)
    mask = scored_categories(space, active, markers)
    if not mask.any():
        return np.full(p.shape[0], np.nan)
    return p[:, mask].mean(axis=1)


def polyfunctionality_score(
    posterior: np.ndarray,
    space: CategorySpace,
    markers: Optional[Iterable[str]] = None,
    active: Optional[np.ndarray] = None,
    policy: str | ScoringPolicy | None = None,
) -> np.ndarray:
    """
    Weighted mean response probability over C+.

    Args:
        posterior: Posterior matrix (subjects x categories).
        space: Category space of the posterior columns.
        markers: Optional marker subset restricting C+.
        active: Optional mask of sampled categories.
        policy: Weighting policy or its name (default degree-weighted).

    Returns:
        PFS per subject; nan when C+ is empty.
    """
    p = _check_posterior(posterior, space)
    mask = scored_categories(space, active, markers)
    if not mask.any():
        return np.full(p.shape[0], np.nan)
    w = get_policy(policy).weights(space)[mask]
    return p[:, mask] @ w / w.sum()


@dataclass
class Scorer:
    """Bundles the category space, sampled mask and PFS policy of one fit."""

    space: CategorySpace
    active: Optional[np.ndarray] = None
    policy: ScoringPolicy | str | None = None

    def __post_init__(self):
        self.policy = get_policy(self.policy)

    def functionality(
        self,
        posterior: np.ndarray,
        markers: Optional[Iterable[str]] = None,
    ) -> np.ndarray:
        return functionality_score(posterior, self.space, markers=markers, active=self.active)

    def polyfunctionality(
        self,
        posterior: np.ndarray,
        markers: Optional[Iterable[str]] = None,
    ) -> np.ndarray:
        return polyfunctionality_score(
            posterior, self.space, markers=markers, active=self.active, policy=self.policy,
        )

    def score(
        self,
        posterior: np.ndarray,
        markers: Optional[Iterable[str]] = None,
    ) -> tuple[np.ndarray, np.ndarray]:
        """FS and PFS for every subject."""
        return self.functionality(posterior, markers), self.polyfunctionality(posterior, markers)
