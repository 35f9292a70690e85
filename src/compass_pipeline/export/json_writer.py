"""
JSON output writer for run summaries and heatmap data.
"""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional
from datetime import datetime

import numpy as np
import pandas as pd

from compass_pipeline import __version__

if TYPE_CHECKING:
    from compass_pipeline.result import CompassResult, PlotData


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy types."""

    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return None if np.isnan(obj) else float(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, np.ndarray):
            return _drop_nan(obj.tolist())
        if isinstance(obj, Path):
            return str(obj)
        if pd.isna(obj):
            return None
        return super().default(obj)


def _drop_nan(value: Any) -> Any:
    """Replace float NaN (which plain json would emit as ``NaN``) with None."""
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, dict):
        return {k: _drop_nan(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_drop_nan(v) for v in value]
    return value


class JSONWriter:
    """Writes fit summaries and plot data to JSON files."""

    def __init__(
        self,
        output_dir: Path,
        pretty_print: bool = True,
        include_metadata: bool = True,
    ):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.pretty_print = pretty_print
        self.include_metadata = include_metadata

    def _add_metadata(self, data: dict) -> dict:
        """Add generation metadata."""
        if self.include_metadata:
            data["_metadata"] = {
                "generated_at": datetime.now().isoformat(),
                "generator": f"compass-pipeline {__version__}",
            }
        return data

    def _write_json(self, data: Any, filename: str) -> Path:
        """Write JSON file."""
        path = self.output_dir / filename
        data = _drop_nan(data)
        with open(path, "w") as f:
            if self.pretty_print:
                json.dump(data, f, indent=2, cls=NumpyEncoder)
            else:
                json.dump(data, f, cls=NumpyEncoder)
        return path

    def write_summary(
        self,
        result: "CompassResult",
        filename: str = "summary.json",
    ) -> Path:
        """Write the fit summary with diagnostics and the configuration used."""
        data = result.summary()
        data["config"] = result.config_dict()
        data = self._add_metadata(data)
        return self._write_json(data, filename)

    def write_plot_data(
        self,
        plot: "PlotData",
        filename: str = "heatmap.json",
    ) -> Path:
        """Write heatmap-ready posterior with category annotations."""
        categories = plot.categories
        data = {
            "subjects": list(plot.subject_order),
            "categories": list(plot.category_order),
            "values": plot.matrix.to_numpy(),
            "annotation": {
                column: categories[column].tolist() for column in categories.columns
            },
        }
        if plot.metadata is not None:
            data["metadata"] = plot.metadata.reset_index().to_dict(orient="records")
        data = self._add_metadata(data)
        return self._write_json(data, filename)

    def write_diagnostics(
        self,
        result: "CompassResult",
        filename: str = "diagnostics.json",
    ) -> Path:
        """Write convergence diagnostics only."""
        data = self._add_metadata(result.diagnostics.to_dict())
        return self._write_json(data, filename)


def write_result_json(
    result: "CompassResult",
    output_dir: Path,
    plot: Optional["PlotData"] = None,
) -> dict[str, Path]:
    """Convenience function to write the summary (and heatmap data) JSON."""
    writer = JSONWriter(output_dir)
    paths = {"summary": writer.write_summary(result)}
    if plot is not None:
        paths["heatmap"] = writer.write_plot_data(plot)
    return paths
