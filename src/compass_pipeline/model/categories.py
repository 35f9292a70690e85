"""
Boolean category space over a marker set.

For K markers there are 2^K categories. Category ``c`` has marker ``j``
positive iff bit ``K-1-j`` of ``(2^K - 1 - c)`` is set, so index 0 is the
all-positive combination and the last index is the all-negative baseline.
For markers (A, B) the order is ``A+B+, A+B-, A-B+, A-B-``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from compass_pipeline.core.exceptions import ConfigurationError

MAX_MARKERS = 12
"""Largest supported marker count (4096 categories)."""


@dataclass(frozen=True)
class Category:
    """One boolean combination of marker states."""

    index: int
    """Column index in the count matrices."""

    signs: tuple[bool, ...]
    """Marker states, in marker order."""

    markers: tuple[str, ...]
    """Marker names the signs refer to."""

    @property
    def degree(self) -> int:
        """Number of positive markers."""
        return sum(self.signs)

    @property
    def positive_markers(self) -> frozenset[str]:
        return frozenset(m for m, s in zip(self.markers, self.signs) if s)

    @property
    def label(self) -> str:
        return "".join(f"{m}{'+' if s else '-'}" for m, s in zip(self.markers, self.signs))

    @property
    def is_baseline(self) -> bool:
        return self.degree == 0


class CategorySpace:
    """
    Ordered power set of a marker set.

    Example:
        >>> space = build_category_space(["IFNg", "IL2"])
        >>> space.labels
        ['IFNg+IL2+', 'IFNg+IL2-', 'IFNg-IL2+', 'IFNg-IL2-']
    """

    def __init__(self, markers: Sequence[str]):
        self.markers: tuple[str, ...] = tuple(markers)
        k = len(self.markers)
        n = 2 ** k

        codes = (n - 1) - np.arange(n)
        shifts = np.arange(k - 1, -1, -1)
        sign_matrix = ((codes[:, None] >> shifts[None, :]) & 1).astype(bool)
        sign_matrix.setflags(write=False)

        self._signs = sign_matrix
        self._degrees = sign_matrix.sum(axis=1)
        self._degrees.setflags(write=False)
        self.categories: tuple[Category, ...] = tuple(
            Category(index=i, signs=tuple(bool(x) for x in row), markers=self.markers)
            for i, row in enumerate(sign_matrix)
        )
        self._by_label = {c.label: c for c in self.categories}

    def __len__(self) -> int:
        return len(self.categories)

    def __iter__(self):
        return iter(self.categories)

    def __getitem__(self, index: int) -> Category:
        return self.categories[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CategorySpace):
            return NotImplemented
        return self.markers == other.markers

    def __hash__(self) -> int:
        return hash(self.markers)

    def __repr__(self) -> str:
        return f"CategorySpace(markers={list(self.markers)}, n_categories={len(self)})"

    @property
    def n_markers(self) -> int:
        return len(self.markers)

    @property
    def n_categories(self) -> int:
        return len(self.categories)

    @property
    def labels(self) -> list[str]:
        return [c.label for c in self.categories]

    @property
    def degrees(self) -> np.ndarray:
        """Degree of every category (read-only)."""
        return self._degrees

    @property
    def sign_matrix(self) -> np.ndarray:
        """Boolean (categories x markers) matrix (read-only)."""
        return self._signs

    @property
    def baseline_index(self) -> int:
        """Index of the all-negative category."""
        return self.n_categories - 1

    def by_label(self, label: str) -> Category:
        try:
            return self._by_label[label]
        except KeyError:
            raise KeyError(f"Unknown category label: {label}") from None

    def check_markers(self, markers: Iterable[str]) -> frozenset[str]:
        """Validate a marker subset against this space."""
        subset = frozenset(markers)
        unknown = subset - set(self.markers)
        if unknown:
            raise ConfigurationError(
                f"Unknown markers: {sorted(unknown)}. Available: {list(self.markers)}"
            )
        return subset

    def subset_mask(self, markers: Optional[Iterable[str]] = None) -> np.ndarray:
        """Categories whose positive markers all lie in ``markers``.

        With ``markers=None`` every category is selected. The baseline is
        always selected.
        """
        if markers is None:
            return np.ones(self.n_categories, dtype=bool)
        subset = self.check_markers(markers)
        outside = np.array([m not in subset for m in self.markers], dtype=bool)
        return ~(self._signs[:, outside].any(axis=1))

    def degree_histogram(self) -> dict[int, int]:
        values, counts = np.unique(self._degrees, return_counts=True)
        return {int(v): int(c) for v, c in zip(values, counts)}

    def degree_order(self, mask: Optional[np.ndarray] = None) -> np.ndarray:
        """Category indices ordered by degree, ties broken by index."""
        idx = np.arange(self.n_categories)
        if mask is not None:
            idx = idx[np.asarray(mask, dtype=bool)]
        return idx[np.lexsort((idx, self._degrees[idx]))]

    def annotation(self) -> pd.DataFrame:
        """Per-category annotation table (one boolean column per marker plus degree)."""
        df = pd.DataFrame(self._signs, index=self.labels, columns=list(self.markers))
        df["degree"] = self._degrees
        df.index.name = "category"
        return df


def build_category_space(markers: Sequence[str]) -> CategorySpace:
    """
    Enumerate all 2^K sign combinations of ``markers``.

    Args:
        markers: Ordered, unique, non-empty marker names (1 <= K <= MAX_MARKERS).

    Returns:
        CategorySpace with the all-negative category last.

    Raises:
        ConfigurationError: Empty, duplicate or too many markers.
    """
    if isinstance(markers, str):
        raise ConfigurationError("markers must be a sequence of names, not a single string")
    markers = [str(m) for m in markers]
    if not markers:
        raise ConfigurationError("At least one marker is required")
    if any(not m.strip() for m in markers):
        raise ConfigurationError("Marker names must be non-empty")
    if len(set(markers)) != len(markers):
        dupes = sorted({m for m in markers if markers.count(m) > 1})
        raise ConfigurationError(f"Marker names must be unique, duplicated: {dupes}")
    if len(markers) > MAX_MARKERS:
        raise ConfigurationError(
            f"{len(markers)} markers would produce {2 ** len(markers)} categories; "
            f"at most {MAX_MARKERS} markers are supported"
        )
    return CategorySpace(markers)
