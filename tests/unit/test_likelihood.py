"""Tests for the Dirichlet-multinomial marginal likelihood."""

import pytest
import numpy as np


def _all_configurations(n_categories, active):
    """Every responder pattern over the active categories."""
    idx = np.flatnonzero(active)
    configs = []
    for code in range(2 ** idx.size):
        z = np.zeros(n_categories, dtype=bool)
        for j, c in enumerate(idx):
            z[c] = bool((code >> j) & 1)
        configs.append(z)
    return np.array(configs)


class TestLogMarginal:
    """Test log_marginal."""

    def test_elevated_category_favoured(self, example_counts, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import LikelihoodTables, log_marginal

        spec = ModelSpecification(*example_counts, markers)
        tables = LikelihoodTables.build(spec)

        empty = np.zeros((1, 4), dtype=bool)
        double = np.array([[True, False, False, False]])
        gain = log_marginal(tables, double)[0] - log_marginal(tables, empty)[0]
        assert gain > 5.0

    def test_zero_stimulated_subject_has_no_signal(self, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import LikelihoodTables, log_marginal

        spec = ModelSpecification(np.zeros((1, 4)), [[5, 5, 5, 85]], markers)
        tables = LikelihoodTables.build(spec)
        configs = _all_configurations(4, spec.active)
        values = np.array([log_marginal(tables, z[None, :])[0] for z in configs])
        np.testing.assert_allclose(values, 0.0, atol=1e-9)

    def test_finite_with_zero_counts(self, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import LikelihoodTables, log_marginal

        spec = ModelSpecification([[30, 0, 10, 60]], [[5, 0, 5, 90]], markers)
        tables = LikelihoodTables.build(spec)
        for z in _all_configurations(4, spec.active):
            assert np.isfinite(log_marginal(tables, z[None, :])).all()

    def test_rows_are_independent(self, cohort_counts, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import LikelihoodTables, log_marginal

        stim, unstim = cohort_counts
        spec = ModelSpecification(stim, unstim, markers)
        tables = LikelihoodTables.build(spec)

        z = np.zeros((6, 4), dtype=bool)
        base = log_marginal(tables, z)
        z[2, 0] = True
        changed = log_marginal(tables, z)
        np.testing.assert_array_equal(np.delete(changed, 2), np.delete(base, 2))
        assert changed[2] != base[2]

    @pytest.mark.parametrize("factor, one_sided", [(1, True), (3, False)])
    def test_same_composition_is_neutral(self, markers, factor, one_sided):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import LikelihoodTables, log_marginal

        unstim = np.array([[30, 10, 10, 50], [12, 3, 7, 78]])
        spec = ModelSpecification(unstim * factor, unstim, markers)
        tables = LikelihoodTables.build(spec, one_sided=one_sided)
        for z in _all_configurations(4, spec.active):
            values = log_marginal(tables, np.repeat(z[None, :], 2, axis=0))
            np.testing.assert_allclose(values, 0.0, atol=1e-9)

    def test_uncalibrated_penalises_extra_responders(self, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import LikelihoodTables, log_marginal

        row = [[30, 10, 10, 50]]
        spec = ModelSpecification(row, row, markers)
        tables = LikelihoodTables.build(spec, calibrated=False)
        empty = np.zeros((1, 4), dtype=bool)
        double = np.array([[True, False, False, False]])
        assert log_marginal(tables, double)[0] < log_marginal(tables, empty)[0]

    def test_all_zero_category_is_neutral(self, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import LikelihoodTables, log_marginal

        spec = ModelSpecification(
            [[30, 0, 10, 60], [5, 0, 5, 90]],
            [[5, 0, 5, 90], [6, 0, 4, 90]],
            markers,
        )
        tables = LikelihoodTables.build(spec)
        np.testing.assert_array_equal(tables.informative, [True, False, True, True])
        for z in _all_configurations(4, spec.active):
            with_zero = np.repeat(z[None, :], 2, axis=0)
            with_zero[:, 1] = True
            without_zero = with_zero.copy()
            without_zero[:, 1] = False
            np.testing.assert_array_equal(
                log_marginal(tables, with_zero), log_marginal(tables, without_zero)
            )


class TestReferenceCounts:
    """Test the unstimulated-composition reference."""

    def test_rescales_unstimulated(self, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import reference_counts

        spec = ModelSpecification([[20, 20, 20, 140]], [[5, 5, 5, 85]], markers)
        np.testing.assert_allclose(reference_counts(spec), [[10, 10, 10, 170]])

    def test_empty_unstimulated_uses_prior_mean(self, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import reference_counts

        spec = ModelSpecification([[30, 10, 10, 50]], [[0, 0, 0, 0]], markers)
        np.testing.assert_allclose(reference_counts(spec), [[25, 25, 25, 25]])


class TestElevationOffsets:
    """Test the one-sided offsets."""

    def test_zero_for_empty_stimulated(self, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import elevation_offsets

        spec = ModelSpecification([[0, 0, 0, 0], [30, 10, 10, 50]], [[5, 5, 5, 85]] * 2, markers)
        offsets = elevation_offsets(spec)
        np.testing.assert_array_equal(offsets[0], 0.0)
        assert offsets[1, 0] > 0.0

    def test_depressed_category_penalised(self, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import elevation_offsets

        spec = ModelSpecification([[1, 5, 5, 89]], [[30, 5, 5, 60]], markers)
        assert elevation_offsets(spec)[0, 0] < -5.0

    def test_two_sided_has_no_offsets(self, example_counts, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import LikelihoodTables

        spec = ModelSpecification(*example_counts, markers)
        tables = LikelihoodTables.build(spec, one_sided=False)
        np.testing.assert_array_equal(tables.offsets, 0.0)

    def test_zero_for_identical_rows(self, markers):
        from compass_pipeline.model.specification import ModelSpecification
        from compass_pipeline.model.likelihood import elevation_offsets

        spec = ModelSpecification([[30, 10, 10, 50]], [[30, 10, 10, 50]], markers)
        np.testing.assert_array_equal(elevation_offsets(spec), 0.0)
