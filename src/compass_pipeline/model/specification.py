"""
Model specification: aligned count matrices, marker set and prior.

Validates input alignment once, up front, and exposes read-only views to
the sampler. Nothing here changes after construction.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd

from compass_pipeline.core.exceptions import ConfigurationError, DimensionMismatch
from compass_pipeline.model.categories import CategorySpace, build_category_space

logger = logging.getLogger(__name__)

CountInput = Union[np.ndarray, pd.DataFrame]


@dataclass(frozen=True)
class CategoryFilter:
    """Keep a category only if enough subjects show it under stimulation."""

    min_count: int = 5
    """Minimum stimulated count for a subject to support a category."""

    min_subjects: int = 2
    """Minimum number of supporting subjects."""

    def mask(self, stimulated: np.ndarray, space: CategorySpace) -> np.ndarray:
        """Boolean mask of categories that pass (baseline excluded)."""
        supporting = (stimulated >= self.min_count).sum(axis=0)
        keep = supporting >= self.min_subjects
        keep[space.baseline_index] = False
        return keep


def _as_counts(name: str, data: CountInput) -> np.ndarray:
    """Convert counts to a 2-D int64 array, rejecting invalid values."""
    values = data.to_numpy() if isinstance(data, pd.DataFrame) else np.asarray(data)
    if values.ndim != 2:
        raise DimensionMismatch(f"{name} counts must be 2-D, got shape {values.shape}")
    try:
        as_float = values.astype(np.float64)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} counts must be numeric: {e}") from e
    if np.isnan(as_float).any():
        raise ConfigurationError(f"{name} counts contain missing values")
    if (as_float < 0).any():
        raise ConfigurationError(f"{name} counts must be non-negative")
    if not np.array_equal(as_float, np.round(as_float)):
        raise ConfigurationError(f"{name} counts must be whole numbers")
    return as_float.astype(np.int64)


def _looks_like_categories(labels: Sequence) -> bool:
    return all(isinstance(x, str) and (x.endswith("+") or x.endswith("-")) for x in labels)


class ModelSpecification:
    """
    Validated inputs for one fit.

    Example:
        >>> spec = ModelSpecification(
        ...     stimulated=[[30, 10, 10, 50]],
        ...     unstimulated=[[5, 5, 5, 85]],
        ...     markers=["A", "B"],
        ... )
        >>> spec.n_subjects, spec.n_categories
        (1, 4)
    """

    def __init__(
        self,
        stimulated: CountInput,
        unstimulated: CountInput,
        markers: Union[Sequence[str], CategorySpace],
        prior: Union[float, Sequence[float], np.ndarray, None] = None,
        subject_ids: Optional[Sequence] = None,
        category_filter: Optional[CategoryFilter] = None,
    ):
        """
        Build and validate a specification.

        Args:
            stimulated: Stimulated counts (subjects x 2^K categories).
            unstimulated: Unstimulated counts, same shape and ordering.
            markers: Marker names (or a prebuilt CategorySpace).
            prior: Dirichlet concentration, scalar or per category (default 1.0).
            subject_ids: Subject keys; taken from the DataFrame index if omitted.
            category_filter: Optional filter excluding sparse categories from sampling.

        Raises:
            DimensionMismatch: Row/column counts or column labels disagree.
            ConfigurationError: Invalid markers, counts or prior.
        """
        self.space = markers if isinstance(markers, CategorySpace) else build_category_space(markers)

        stim = np.asarray(stimulated) if not isinstance(stimulated, pd.DataFrame) else stimulated
        unstim = np.asarray(unstimulated) if not isinstance(unstimulated, pd.DataFrame) else unstimulated
        self._check_shapes(stim, unstim)
        self._check_labels(stim, unstim)

        s = _as_counts("stimulated", stim)
        u = _as_counts("unstimulated", unstim)
        if s.shape[0] == 0:
            raise ConfigurationError("At least one subject is required")

        for arr in (s, u):
            arr.setflags(write=False)
        self._stimulated = s
        self._unstimulated = u

        self._subject_ids = self._resolve_subject_ids(stim, subject_ids, s.shape[0])
        self._alpha = self._resolve_prior(prior)

        active = self.space.degrees >= 1
        if category_filter is not None:
            active = active & category_filter.mask(s, self.space)
            dropped = int((self.space.degrees >= 1).sum() - active.sum())
            if dropped:
                logger.info(
                    "Category filter excluded %d of %d non-baseline categories",
                    dropped, self.n_categories - 1,
                )
        active.setflags(write=False)
        self._active = active
        self.category_filter = category_filter

        totals_s = s.sum(axis=1)
        totals_u = u.sum(axis=1)
        totals_s.setflags(write=False)
        totals_u.setflags(write=False)
        self._totals_s = totals_s
        self._totals_u = totals_u

    def _check_shapes(self, stim, unstim) -> None:
        s_shape = np.shape(stim)
        u_shape = np.shape(unstim)
        if len(s_shape) != 2 or len(u_shape) != 2:
            raise DimensionMismatch(
                f"Count matrices must be 2-D, got {s_shape} and {u_shape}"
            )
        if s_shape[0] != u_shape[0]:
            raise DimensionMismatch(
                f"Row count mismatch: stimulated has {s_shape[0]} subjects, "
                f"unstimulated has {u_shape[0]}"
            )
        n = self.space.n_categories
        if s_shape[1] != n or u_shape[1] != n:
            raise DimensionMismatch(
                f"Column count mismatch: expected {n} categories for "
                f"{self.space.n_markers} markers, got stimulated={s_shape[1]}, "
                f"unstimulated={u_shape[1]}"
            )

    def _check_labels(self, stim, unstim) -> None:
        if not (isinstance(stim, pd.DataFrame) and isinstance(unstim, pd.DataFrame)):
            return
        s_cols = list(stim.columns)
        u_cols = list(unstim.columns)
        if _looks_like_categories(s_cols) or _looks_like_categories(u_cols):
            if s_cols != u_cols:
                raise DimensionMismatch("Stimulated and unstimulated column labels differ")
            if s_cols != self.space.labels:
                raise DimensionMismatch(
                    f"Column order does not match the category space: expected "
                    f"{self.space.labels}, got {s_cols}"
                )
        if not stim.index.equals(unstim.index):
            raise DimensionMismatch("Stimulated and unstimulated subject indexes differ")

    @staticmethod
    def _resolve_subject_ids(stim, subject_ids, n: int) -> tuple[str, ...]:
        if subject_ids is None:
            if isinstance(stim, pd.DataFrame) and not isinstance(stim.index, pd.RangeIndex):
                subject_ids = list(stim.index)
            else:
                subject_ids = [f"subject_{i}" for i in range(n)]
        ids = tuple(str(x) for x in subject_ids)
        if len(ids) != n:
            raise DimensionMismatch(f"Got {len(ids)} subject ids for {n} subjects")
        if len(set(ids)) != n:
            raise ConfigurationError("Subject ids must be unique")
        return ids

    def _resolve_prior(self, prior) -> np.ndarray:
        n = self.space.n_categories
        if prior is None:
            prior = 1.0
        alpha = np.asarray(prior, dtype=np.float64)
        if alpha.ndim == 0:
            alpha = np.full(n, float(alpha))
        if alpha.shape != (n,):
            raise ConfigurationError(
                f"Prior concentration must be a scalar or have {n} entries, got shape {alpha.shape}"
            )
        if not np.all(np.isfinite(alpha)) or (alpha <= 0).any():
            raise ConfigurationError("Prior concentration must be finite and positive")
        alpha = alpha.copy()
        alpha.setflags(write=False)
        return alpha

    @property
    def markers(self) -> tuple[str, ...]:
        return self.space.markers

    @property
    def n_subjects(self) -> int:
        return self._stimulated.shape[0]

    @property
    def n_categories(self) -> int:
        return self.space.n_categories

    @property
    def stimulated(self) -> np.ndarray:
        return self._stimulated

    @property
    def unstimulated(self) -> np.ndarray:
        return self._unstimulated

    @property
    def stimulated_totals(self) -> np.ndarray:
        return self._totals_s

    @property
    def unstimulated_totals(self) -> np.ndarray:
        return self._totals_u

    @property
    def alpha(self) -> np.ndarray:
        """Dirichlet prior concentration per category."""
        return self._alpha

    @property
    def active(self) -> np.ndarray:
        """Categories eligible for a response indicator."""
        return self._active

    @property
    def subject_ids(self) -> tuple[str, ...]:
        return self._subject_ids

    def __repr__(self) -> str:
        return (
            f"ModelSpecification(n_subjects={self.n_subjects}, "
            f"markers={list(self.markers)}, n_active={int(self._active.sum())})"
        )
