"""Pytest configuration and fixtures."""

import pytest
import numpy as np
import pandas as pd
from pathlib import Path
import tempfile


@pytest.fixture
def markers():
    """Two-marker panel (categories A+B+, A+B-, A-B+, A-B-)."""
    return ["A", "B"]


@pytest.fixture
def example_counts():
    """Single subject with a strongly elevated double-positive category."""
    stimulated = np.array([[30, 10, 10, 50]])
    unstimulated = np.array([[5, 5, 5, 85]])
    return stimulated, unstimulated


@pytest.fixture
def cohort_counts():
    """Six subjects: three responders in A+B+, three without any response."""
    rng = np.random.default_rng(42)
    labels = ["A+B+", "A+B-", "A-B+", "A-B-"]
    subjects = [f"donor_{i}" for i in range(6)]

    null_p = np.array([0.01, 0.04, 0.04, 0.91])
    resp_p = np.array([0.15, 0.05, 0.04, 0.76])

    unstim = np.vstack([rng.multinomial(2000, null_p) for _ in subjects])
    stim = np.vstack(
        [rng.multinomial(2000, resp_p) for _ in range(3)]
        + [rng.multinomial(2000, null_p) for _ in range(3)]
    )
    return (
        pd.DataFrame(stim, index=subjects, columns=labels),
        pd.DataFrame(unstim, index=subjects, columns=labels),
    )


@pytest.fixture
def sample_metadata():
    """Subject metadata keyed by a ``donor`` column."""
    return pd.DataFrame({
        "donor": [f"donor_{i}" for i in range(6)],
        "group": ["vaccine", "vaccine", "vaccine", "placebo", "placebo", "placebo"],
        "age": [34, 51, 29, 45, 62, 38],
    })


@pytest.fixture
def fast_config():
    """Short chains for tests."""
    from compass_pipeline.core.config import Config
    return Config(iterations=1000, replications=2, seed=7)


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
