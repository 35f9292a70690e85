"""
Immutable fit result with posterior, score, marker and plot-data accessors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd

from compass_pipeline.core.exceptions import ConfigurationError
from compass_pipeline.model.categories import CategorySpace
from compass_pipeline.sampler.aggregator import ConvergenceDiagnostics, RetentionPlan
from compass_pipeline.scoring.scores import ScoringPolicy, Scorer, scored_categories

logger = logging.getLogger(__name__)


def _read_only(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=np.float64, copy=True)
    arr.setflags(write=False)
    return arr


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class PlotData:
    """Category- and subject-ordered posterior for external heatmap rendering."""

    matrix: pd.DataFrame
    """Posterior probabilities (subjects x categories), both axes ordered."""

    categories: pd.DataFrame
    """Per-category annotation (one boolean column per marker, plus degree)."""

    subject_order: list[str]
    category_order: list[str]
    metadata: Optional[pd.DataFrame] = None
    """Joined metadata rows in subject order, when metadata was supplied."""


@dataclass(frozen=True)
class CompassResult:
    """
    Outcome of one fit.

    The posterior matrix is read-only. Accessors that take a marker subset
    recompute scores over the restricted categories and never modify the
    stored posterior.

    Example:
        >>> result = fit_compass(stim, unstim, ["IFNg", "IL2", "TNFa"])
        >>> result.scores().head()
        >>> result.posterior(markers=["IFNg", "IL2"])
    """

    space: CategorySpace
    subject_ids: tuple[str, ...]
    posterior_matrix: np.ndarray
    fs: np.ndarray
    pfs: np.ndarray
    active: np.ndarray
    diagnostics: ConvergenceDiagnostics
    plan: RetentionPlan
    policy: ScoringPolicy
    theta_mean: np.ndarray
    """Posterior mean of the shared null composition."""

    phi_mean: np.ndarray
    """Posterior mean of each subject's responder composition."""

    omega_mean: np.ndarray
    """Posterior mean of each category's response rate."""

    chains: tuple[Mapping[str, Any], ...] = ()
    """Per-chain summaries (acceptance, retained draws, log-likelihood, time)."""

    config: Mapping[str, Any] = field(default_factory=dict)
    """Read-only view of the configuration used; see ``config_dict``."""

    fit_seconds: float = 0.0

    def __post_init__(self):
        for name in ("posterior_matrix", "fs", "pfs", "theta_mean", "phi_mean", "omega_mean"):
            object.__setattr__(self, name, _read_only(getattr(self, name)))
        active = np.array(self.active, dtype=bool, copy=True)
        active.setflags(write=False)
        object.__setattr__(self, "active", active)
        object.__setattr__(self, "chains", tuple(_freeze(dict(c)) for c in self.chains))
        object.__setattr__(self, "config", _freeze(dict(self.config)))

        n = len(self.subject_ids)
        if self.posterior_matrix.shape != (n, self.space.n_categories):
            raise ValueError(
                f"Posterior shape {self.posterior_matrix.shape} does not match "
                f"{n} subjects x {self.space.n_categories} categories"
            )

    @property
    def n_subjects(self) -> int:
        return len(self.subject_ids)

    @property
    def is_converged(self) -> bool:
        return self.diagnostics.converged

    @property
    def warnings(self) -> list:
        return list(self.diagnostics.warnings)

    def config_dict(self) -> dict[str, Any]:
        """Mutable copy of the configuration used for this fit."""
        return _thaw(self.config)

    def _scorer(self) -> Scorer:
        return Scorer(space=self.space, active=self.active, policy=self.policy)

    def markers(self) -> tuple[str, ...]:
        """Marker names in column-definition order."""
        return self.space.markers

    def posterior(
        self,
        markers: Optional[Iterable[str]] = None,
        as_frame: bool = True,
    ) -> Union[pd.DataFrame, np.ndarray]:
        """
        Posterior response probabilities.

        Args:
            markers: Keep only categories whose positive markers lie in this subset.
            as_frame: Return a labelled DataFrame (default) or a copy of the array.

        Returns:
            Subjects x categories probabilities.
        """
        mask = self.space.subset_mask(markers)
        values = self.posterior_matrix[:, mask].copy()
        if not as_frame:
            return values
        labels = [label for label, keep in zip(self.space.labels, mask) if keep]
        df = pd.DataFrame(values, index=list(self.subject_ids), columns=labels)
        df.index.name = "subject_id"
        return df

    def functionality(self, markers: Optional[Iterable[str]] = None) -> pd.Series:
        if markers is None:
            values = self.fs
        else:
            values = self._scorer().functionality(self.posterior_matrix, markers)
        return pd.Series(values, index=list(self.subject_ids), name="FS")

    def polyfunctionality(self, markers: Optional[Iterable[str]] = None) -> pd.Series:
        if markers is None:
            values = self.pfs
        else:
            values = self._scorer().polyfunctionality(self.posterior_matrix, markers)
        return pd.Series(values, index=list(self.subject_ids), name="PFS")

    def scores(
        self,
        metadata: Optional[pd.DataFrame] = None,
        key: Optional[str] = None,
        markers: Optional[Iterable[str]] = None,
    ) -> pd.DataFrame:
        """
        Per-subject FS and PFS, optionally joined with metadata.

        Args:
            metadata: Subject metadata; one row per subject key.
            key: Metadata column holding the subject key (index when omitted).
            markers: Optional marker subset for the scores.

        Returns:
            DataFrame with ``subject_id``, metadata columns, ``FS`` and ``PFS``.
            Subjects without metadata (and metadata without subjects) are dropped.
        """
        markers = list(markers) if markers is not None else None
        df = pd.DataFrame({
            "subject_id": list(self.subject_ids),
            "FS": self.functionality(markers).to_numpy(),
            "PFS": self.polyfunctionality(markers).to_numpy(),
        })
        if metadata is None:
            return df

        meta = self._prepare_metadata(metadata, key)
        joined = df.merge(meta, on="subject_id", how="inner")
        dropped_subjects = len(df) - len(joined)
        dropped_meta = len(meta) - len(joined)
        if dropped_subjects or dropped_meta:
            logger.info(
                "Metadata join dropped %d subjects without metadata and %d unmatched metadata rows",
                dropped_subjects, dropped_meta,
            )
        columns = ["subject_id"] + [c for c in meta.columns if c != "subject_id"] + ["FS", "PFS"]
        return joined[columns].reset_index(drop=True)

    @staticmethod
    def _prepare_metadata(metadata: pd.DataFrame, key: Optional[str]) -> pd.DataFrame:
        meta = metadata.copy()
        if key is None:
            keys = meta.index.astype(str)
        else:
            if key not in meta.columns:
                raise ConfigurationError(f"Metadata has no column '{key}'")
            keys = meta[key].astype(str)
            meta = meta.drop(columns=[key])
        meta = meta.drop(columns=[c for c in ("subject_id", "FS", "PFS") if c in meta.columns])
        meta.insert(0, "subject_id", np.asarray(keys))
        meta = meta.reset_index(drop=True)
        if meta["subject_id"].duplicated().any():
            dupes = meta.loc[meta["subject_id"].duplicated(), "subject_id"].unique().tolist()
            raise ConfigurationError(f"Metadata has duplicate subject keys: {dupes[:5]}")
        return meta

    def plot_data(
        self,
        markers: Optional[Iterable[str]] = None,
        order_by: Union[str, Sequence[str], None] = "FS",
        metadata: Optional[pd.DataFrame] = None,
        key: Optional[str] = None,
    ) -> PlotData:
        """
        Heatmap-ready posterior over the scored categories.

        Categories are ordered by degree, ties broken by category index.
        Subjects are ordered by descending ``"FS"`` or ``"PFS"``, by the
        given metadata columns (ascending), or kept in input order when
        ``order_by`` is None. With metadata, unmatched subjects are dropped.
        """
        markers = list(markers) if markers is not None else None
        mask = scored_categories(self.space, self.active, markers)
        cat_idx = self.space.degree_order(mask)
        cat_labels = [self.space.labels[i] for i in cat_idx]

        scores = self.scores(metadata=metadata, key=key, markers=markers)
        if isinstance(order_by, str) and order_by in ("FS", "PFS"):
            scores = scores.sort_values(order_by, ascending=False, kind="mergesort")
        elif order_by is not None:
            columns = [order_by] if isinstance(order_by, str) else list(order_by)
            missing = [c for c in columns if c not in scores.columns]
            if missing:
                raise ConfigurationError(f"Cannot order subjects by unknown columns: {missing}")
            scores = scores.sort_values(columns, kind="mergesort")

        subject_order = scores["subject_id"].tolist()
        row_of = {s: i for i, s in enumerate(self.subject_ids)}
        rows = np.array([row_of[s] for s in subject_order], dtype=np.intp)

        matrix = pd.DataFrame(
            self.posterior_matrix[np.ix_(rows, cat_idx)],
            index=subject_order,
            columns=cat_labels,
        )
        matrix.index.name = "subject_id"

        meta_rows = None
        if metadata is not None:
            meta_rows = scores.drop(columns=["FS", "PFS"]).set_index("subject_id")

        return PlotData(
            matrix=matrix,
            categories=self.space.annotation().loc[cat_labels],
            subject_order=subject_order,
            category_order=cat_labels,
            metadata=meta_rows,
        )

    def summary(self) -> dict[str, Any]:
        """Plain-dict summary for logs and JSON export."""
        return {
            "markers": list(self.space.markers),
            "n_subjects": self.n_subjects,
            "n_categories": self.space.n_categories,
            "n_scored_categories": int(scored_categories(self.space, self.active).sum()),
            "scoring_policy": self.policy.name,
            "iterations": self.plan.iterations,
            "burn_in": self.plan.burn_in,
            "thin": self.plan.thin,
            "fs_range": [float(np.nanmin(self.fs)), float(np.nanmax(self.fs))]
            if np.isfinite(self.fs).any() else None,
            "pfs_range": [float(np.nanmin(self.pfs)), float(np.nanmax(self.pfs))]
            if np.isfinite(self.pfs).any() else None,
            "diagnostics": self.diagnostics.to_dict(),
            "chains": [_thaw(c) for c in self.chains],
            "fit_seconds": self.fit_seconds,
        }
