"""Tests for the chain kernel and the parallel chain runner."""

import threading

import pytest
import numpy as np


@pytest.fixture
def spec(cohort_counts, markers):
    from compass_pipeline.model.specification import ModelSpecification
    stim, unstim = cohort_counts
    return ModelSpecification(stim, unstim, markers)


class TestRunChain:
    """Test a single chain."""

    def test_bookkeeping(self, spec):
        from compass_pipeline.core.config import PriorConfig, SamplerConfig
        from compass_pipeline.sampler.aggregator import RetentionPlan
        from compass_pipeline.sampler.chain import run_chain

        sampler = SamplerConfig(iterations=300, updates_per_iteration=2)
        plan = RetentionPlan(iterations=300, burn_in_fraction=0.5, thin=3)
        result = run_chain(spec, sampler, PriorConfig(), plan, seed=1, chain_index=4)

        assert result.index == 4
        assert result.proposed == 300 * 2 * spec.n_subjects
        assert 0 <= result.accepted <= result.proposed
        assert 0.0 <= result.acceptance_rate <= 1.0
        assert result.accumulator.n_retained == plan.n_retained == 50
        assert result.summary()["n_retained"] == 50
        assert np.isfinite(result.summary()["mean_loglik"])

    def test_baseline_never_responds(self, spec):
        from compass_pipeline.core.config import PriorConfig, SamplerConfig
        from compass_pipeline.sampler.aggregator import RetentionPlan
        from compass_pipeline.sampler.chain import run_chain

        plan = RetentionPlan(iterations=200)
        result = run_chain(spec, SamplerConfig(), PriorConfig(), plan, seed=3)
        assert (result.accumulator.z_total[:, spec.space.baseline_index] == 0).all()

    def test_same_seed_same_draws(self, spec):
        from compass_pipeline.core.config import PriorConfig, SamplerConfig
        from compass_pipeline.sampler.aggregator import RetentionPlan
        from compass_pipeline.sampler.chain import run_chain

        plan = RetentionPlan(iterations=200)
        a = run_chain(spec, SamplerConfig(), PriorConfig(), plan, seed=11)
        b = run_chain(spec, SamplerConfig(), PriorConfig(), plan, seed=11)
        np.testing.assert_array_equal(a.accumulator.z_total, b.accumulator.z_total)
        assert a.accepted == b.accepted

    def test_cancellation(self, spec):
        from compass_pipeline.core.config import PriorConfig, SamplerConfig
        from compass_pipeline.core.exceptions import FitCancelled
        from compass_pipeline.sampler.aggregator import RetentionPlan
        from compass_pipeline.sampler.chain import run_chain

        event = threading.Event()
        event.set()
        with pytest.raises(FitCancelled) as excinfo:
            run_chain(
                spec, SamplerConfig(), PriorConfig(), RetentionPlan(iterations=100),
                seed=0, chain_index=2, cancel_event=event,
            )
        assert excinfo.value.chain_index == 2
        assert excinfo.value.iteration == 0


class TestKernel:
    """Test the individual update steps."""

    def test_metropolis_step_stays_on_active(self, spec):
        from compass_pipeline.model.likelihood import LikelihoodTables
        from compass_pipeline.sampler.chain import initial_state, metropolis_step

        rng = np.random.default_rng(0)
        tables = LikelihoodTables.build(spec)
        state = initial_state(spec, tables, rng)
        active_idx = np.flatnonzero(spec.active)
        for _ in range(50):
            accepted = metropolis_step(state, tables, active_idx, 2, rng)
            assert 0 <= accepted <= spec.n_subjects
        assert not state.responders[:, ~spec.active].any()

    def test_loglik_tracks_state(self, spec):
        from compass_pipeline.model.likelihood import LikelihoodTables, log_marginal
        from compass_pipeline.sampler.chain import initial_state, metropolis_step

        rng = np.random.default_rng(5)
        tables = LikelihoodTables.build(spec)
        state = initial_state(spec, tables, rng)
        active_idx = np.flatnonzero(spec.active)
        for _ in range(20):
            metropolis_step(state, tables, active_idx, 2, rng)
        np.testing.assert_allclose(state.loglik, log_marginal(tables, state.responders))

    def test_gibbs_refresh_simplex(self, spec):
        from compass_pipeline.core.config import PriorConfig
        from compass_pipeline.model.likelihood import LikelihoodTables
        from compass_pipeline.sampler.chain import gibbs_refresh, initial_state

        rng = np.random.default_rng(9)
        tables = LikelihoodTables.build(spec)
        state = initial_state(spec, tables, rng)
        gibbs_refresh(state, spec, tables, PriorConfig(), rng)

        assert state.theta.sum() == pytest.approx(1.0)
        rows_with_r = state.responders.any(axis=1)
        np.testing.assert_allclose(state.phi[rows_with_r].sum(axis=1), 1.0)
        assert (state.phi[~state.responders] == 0).all()
        assert (state.omega[~spec.active] == 0).all()
        assert ((state.omega[spec.active] > 0) & (state.omega[spec.active] < 1)).all()


class TestChainRunner:
    """Test parallel execution."""

    def test_seeds_are_distinct_and_reproducible(self):
        from compass_pipeline.core.config import SamplerConfig
        from compass_pipeline.sampler.runner import ChainRunner

        runner = ChainRunner(SamplerConfig(replications=4, seed=123))
        first = [np.random.default_rng(s).integers(1 << 30) for s in runner.seeds()]
        second = [np.random.default_rng(s).integers(1 << 30) for s in runner.seeds()]
        assert first == second
        assert len(set(first)) == 4

    def test_results_sorted_by_index(self, spec):
        from compass_pipeline.core.config import SamplerConfig
        from compass_pipeline.sampler.aggregator import RetentionPlan
        from compass_pipeline.sampler.runner import ChainRunner

        runner = ChainRunner(SamplerConfig(iterations=100, replications=3))
        chains = runner.run(spec, RetentionPlan(iterations=100))
        assert [c.index for c in chains] == [0, 1, 2]

    def test_thread_and_serial_agree(self, spec):
        from compass_pipeline.core.config import ParallelConfig, SamplerConfig
        from compass_pipeline.sampler.aggregator import RetentionPlan
        from compass_pipeline.sampler.runner import ChainRunner

        sampler = SamplerConfig(iterations=150, replications=3, seed=8)
        plan = RetentionPlan(iterations=150)
        threaded = ChainRunner(sampler, parallel=ParallelConfig(backend="thread")).run(spec, plan)
        serial = ChainRunner(sampler, parallel=ParallelConfig(backend="serial")).run(spec, plan)
        for a, b in zip(threaded, serial):
            np.testing.assert_array_equal(a.accumulator.z_total, b.accumulator.z_total)

    def test_cancel_event_stops_all_chains(self, spec):
        from compass_pipeline.core.config import SamplerConfig
        from compass_pipeline.core.exceptions import FitCancelled
        from compass_pipeline.sampler.aggregator import RetentionPlan
        from compass_pipeline.sampler.runner import ChainRunner

        event = threading.Event()
        event.set()
        runner = ChainRunner(SamplerConfig(iterations=100, replications=2))
        with pytest.raises(FitCancelled):
            runner.run(spec, RetentionPlan(iterations=100), cancel_event=event)

    def test_max_workers(self):
        from compass_pipeline.core.config import ParallelConfig, SamplerConfig
        from compass_pipeline.sampler.runner import ChainRunner

        runner = ChainRunner(SamplerConfig(replications=2), parallel=ParallelConfig(max_workers=5))
        assert runner.max_workers == 5
        assert 1 <= ChainRunner(SamplerConfig(replications=2)).max_workers <= 2
