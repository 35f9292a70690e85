"""
Output writers for fit results.

Writers for CSV (posterior, scores) and JSON (summary, heatmap data).
"""

from compass_pipeline.export.csv_writer import (
    CSVWriter,
    write_result_csv,
)
from compass_pipeline.export.json_writer import (
    JSONWriter,
    NumpyEncoder,
    write_result_json,
)

__all__ = [
    "CSVWriter",
    "write_result_csv",
    "JSONWriter",
    "NumpyEncoder",
    "write_result_json",
]
