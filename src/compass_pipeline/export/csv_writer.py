"""
CSV output writer for tabular exports.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional

import pandas as pd

if TYPE_CHECKING:
    from compass_pipeline.result import CompassResult


class CSVWriter:
    """Writes fit results to CSV files."""

    def __init__(
        self,
        output_dir: Path,
        include_index: bool = True,
        float_format: str = "%.6g",
    ):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.include_index = include_index
        self.float_format = float_format

    def write_matrix(
        self,
        matrix: pd.DataFrame,
        filename: str,
        index_label: Optional[str] = None,
    ) -> Path:
        """Write matrix to CSV.

        Parameters
        ----------
        matrix : pd.DataFrame
            Matrix to write
        filename : str
            Output filename
        index_label : str, optional
            Label for index column

        Returns
        -------
        Path
            Path to written file
        """
        path = self.output_dir / filename
        matrix.to_csv(
            path,
            index=self.include_index,
            index_label=index_label,
            float_format=self.float_format,
        )
        return path

    def write_posterior(
        self,
        result: "CompassResult",
        filename: str = "posterior.csv",
        markers: Optional[Iterable[str]] = None,
    ) -> Path:
        """Write the posterior probability matrix (subjects x categories)."""
        return self.write_matrix(
            result.posterior(markers=markers), filename, index_label="subject_id"
        )

    def write_scores(
        self,
        scores: pd.DataFrame,
        filename: str = "scores.csv",
    ) -> Path:
        """Write per-subject scores (``subject_id`` is a regular column)."""
        path = self.output_dir / filename
        scores.to_csv(path, index=False, float_format=self.float_format)
        return path

    def write_posterior_long(
        self,
        result: "CompassResult",
        filename: str = "posterior_long.csv",
        markers: Optional[Iterable[str]] = None,
    ) -> Path:
        """Write the posterior with one row per (subject, category).

        Parameters
        ----------
        result : CompassResult
            Fitted result
        filename : str
            Output filename
        markers : iterable of str, optional
            Keep only categories whose positive markers lie in this subset

        Returns
        -------
        Path
            Path to written file
        """
        wide = result.posterior(markers=markers)
        degree_of = dict(zip(result.space.labels, result.space.degrees.tolist()))

        df_long = wide.reset_index().melt(
            id_vars=["subject_id"],
            var_name="category",
            value_name="probability",
        )
        df_long.insert(2, "degree", df_long["category"].map(degree_of))

        path = self.output_dir / filename
        df_long.to_csv(path, index=False, float_format=self.float_format)
        return path


def write_result_csv(
    result: "CompassResult",
    output_dir: Path,
    metadata: Optional[pd.DataFrame] = None,
    key: Optional[str] = None,
) -> dict[str, Path]:
    """Convenience function to write posterior (wide and long) and scores CSVs."""
    writer = CSVWriter(output_dir)
    return {
        "posterior": writer.write_posterior(result),
        "posterior_long": writer.write_posterior_long(result),
        "scores": writer.write_scores(result.scores(metadata=metadata, key=key)),
    }
