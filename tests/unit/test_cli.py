"""Unit tests for the pipeline CLI.

Tests parser construction, argument handling, and small end-to-end runs.
"""

from __future__ import annotations

import json

import pytest
import numpy as np
import pandas as pd

from compass_pipeline.cli import build_parser, main


@pytest.fixture
def count_files(cohort_counts, temp_dir):
    stim, unstim = cohort_counts
    stim_path = temp_dir / "stim.csv"
    unstim_path = temp_dir / "unstim.csv"
    stim.to_csv(stim_path, index_label="donor")
    unstim.to_csv(unstim_path, index_label="donor")
    return stim_path, unstim_path


# ===========================================================================
# Parser construction
# ===========================================================================

class TestBuildParser:
    """Tests for argument parser construction."""

    def test_parser_has_all_subcommands(self):
        parser = build_parser()
        subparsers_action = None
        for action in parser._subparsers._actions:
            if hasattr(action, "_parser_class"):
                subparsers_action = action
                break
        assert subparsers_action is not None
        assert set(subparsers_action.choices.keys()) == {"fit", "score"}

    def test_no_command_returns_zero(self):
        assert main([]) == 0

    def test_fit_args(self):
        parser = build_parser()
        args = parser.parse_args([
            "-v", "fit", "-s", "s.csv", "-u", "u.csv", "--markers", "IFNg", "IL2",
            "--iterations", "500", "--burn-in", "0.25", "--policy", "binomial",
        ])
        assert args.verbose is True
        assert args.markers == ["IFNg", "IL2"]
        assert args.iterations == 500
        assert args.burn_in == 0.25
        assert args.policy == "binomial"
        assert args.replications is None

    def test_fit_requires_markers(self):
        parser = build_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["fit", "-s", "s.csv", "-u", "u.csv"])

    def test_score_defaults(self):
        parser = build_parser()
        args = parser.parse_args(["score", "-p", "posterior.csv", "-m", "A", "B"])
        assert args.policy == "degree"
        assert args.subset is None
        assert args.filename == "scores.csv"


# ===========================================================================
# Command execution
# ===========================================================================

class TestFitCommand:
    """Tests for the fit subcommand."""

    def test_fit_writes_outputs(self, count_files, sample_metadata, temp_dir):
        stim_path, unstim_path = count_files
        meta_path = temp_dir / "meta.csv"
        sample_metadata.to_csv(meta_path, index=False)
        out = temp_dir / "out"

        code = main([
            "fit", "-s", str(stim_path), "-u", str(unstim_path), "-m", "A", "B",
            "--iterations", "200", "--replications", "2", "--seed", "1",
            "--metadata", str(meta_path), "--key", "donor", "--heatmap", "--long",
            "-o", str(out),
        ])
        assert code == 0

        posterior = pd.read_csv(out / "posterior.csv", index_col=0)
        assert posterior.shape == (6, 4)
        scores = pd.read_csv(out / "scores.csv")
        assert list(scores.columns) == ["subject_id", "group", "age", "FS", "PFS"]
        summary = json.loads((out / "summary.json").read_text())
        assert summary["iterations"] == 200
        assert summary["diagnostics"]["n_chains"] == 2
        assert (out / "heatmap.json").exists()
        assert (out / "posterior_long.csv").exists()

    def test_yaml_config(self, count_files, temp_dir):
        stim_path, unstim_path = count_files
        config_path = temp_dir / "fit.yaml"
        config_path.write_text("config:\n  sampler:\n    iterations: 150\n    replications: 1\n")
        out = temp_dir / "out"

        code = main([
            "fit", "-s", str(stim_path), "-u", str(unstim_path), "-m", "A", "B",
            "--config", str(config_path), "--backend", "serial", "-o", str(out),
        ])
        assert code == 0
        summary = json.loads((out / "summary.json").read_text())
        assert summary["iterations"] == 150
        assert summary["config"]["parallel"]["backend"] == "serial"

    def test_missing_config_file(self, count_files, temp_dir):
        stim_path, unstim_path = count_files
        code = main([
            "fit", "-s", str(stim_path), "-u", str(unstim_path), "-m", "A", "B",
            "--config", str(temp_dir / "missing.yaml"),
        ])
        assert code == 1

    def test_negative_seed(self, count_files):
        stim_path, unstim_path = count_files
        code = main([
            "fit", "-s", str(stim_path), "-u", str(unstim_path), "-m", "A", "B",
            "--iterations", "10", "--seed", "-1",
        ])
        assert code == 1

    def test_marker_mismatch_returns_error(self, count_files, temp_dir):
        stim_path, unstim_path = count_files
        code = main([
            "fit", "-s", str(stim_path), "-u", str(unstim_path), "-m", "A", "B", "C",
            "--iterations", "10", "-o", str(temp_dir),
        ])
        assert code == 1


class TestScoreCommand:
    """Tests for the score subcommand."""

    def test_rescore_subset(self, temp_dir):
        posterior = pd.DataFrame(
            [[0.9, 0.6, 0.3, 0.0]],
            index=pd.Index(["s1"], name="subject_id"),
            columns=["A+B+", "A+B-", "A-B+", "A-B-"],
        )
        path = temp_dir / "posterior.csv"
        posterior.to_csv(path)

        code = main([
            "score", "-p", str(path), "-m", "A", "B", "--subset", "A",
            "--filename", "scores_A.csv", "-o", str(temp_dir),
        ])
        assert code == 0
        scores = pd.read_csv(temp_dir / "scores_A.csv")
        assert scores["FS"].iloc[0] == pytest.approx(0.6)
        assert scores["PFS"].iloc[0] == pytest.approx(0.6)

    def test_unknown_subset_marker(self, temp_dir):
        posterior = pd.DataFrame(
            np.zeros((1, 4)), index=["s1"], columns=["A+B+", "A+B-", "A-B+", "A-B-"],
        )
        path = temp_dir / "posterior.csv"
        posterior.to_csv(path)
        assert main(["score", "-p", str(path), "-m", "A", "B", "--subset", "Z"]) == 1
