"""
One Metropolis-within-Gibbs chain.

State per chain:
- ``responders``: boolean indicator matrix Z (subjects x categories); the
  baseline and filtered categories stay False.
- ``theta``: null composition shared across subjects.
- ``phi``: per-subject responder composition, zero outside that subject's R.
- ``omega``: per-category response rate shared across subjects.

Each iteration proposes, for every subject at once, toggling a small random
set of indicators and accepts with the Metropolis ratio of Dirichlet-
multinomial marginal likelihoods times the prior odds. Every
``gibbs_interval`` iterations the probability parameters are redrawn from
their conjugate posteriors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import logging
import threading
import time

import numpy as np

from compass_pipeline.core.config import PriorConfig, SamplerConfig
from compass_pipeline.core.exceptions import FitCancelled
from compass_pipeline.model.likelihood import LikelihoodTables, log_marginal
from compass_pipeline.model.specification import ModelSpecification
from compass_pipeline.sampler.aggregator import DrawAccumulator, RetentionPlan

logger = logging.getLogger(__name__)

_OMEGA_EPS = 1e-12


@dataclass
class ChainState:
    """Mutable state owned by a single chain."""

    responders: np.ndarray
    loglik: np.ndarray
    theta: np.ndarray
    phi: np.ndarray
    omega: np.ndarray


@dataclass
class ChainResult:
    """Outcome of one finished chain."""

    index: int
    accumulator: DrawAccumulator
    accepted: int
    proposed: int
    elapsed_seconds: float

    @property
    def acceptance_rate(self) -> float:
        if self.proposed == 0:
            return 0.0
        return self.accepted / self.proposed

    def summary(self) -> dict:
        return {
            "index": self.index,
            "acceptance_rate": self.acceptance_rate,
            "accepted": self.accepted,
            "proposed": self.proposed,
            "n_retained": self.accumulator.n_retained,
            "mean_loglik": self.accumulator.mean_loglik,
            "elapsed_seconds": self.elapsed_seconds,
        }


def initial_state(
    spec: ModelSpecification,
    tables: LikelihoodTables,
    rng: np.random.Generator,
) -> ChainState:
    """Random starting indicators (Bernoulli 1/2 on sampled cells)."""
    n, c = spec.n_subjects, spec.n_categories
    active_idx = np.flatnonzero(spec.active)

    responders = np.zeros((n, c), dtype=bool)
    if active_idx.size:
        responders[:, active_idx] = rng.random((n, active_idx.size)) < 0.5

    return ChainState(
        responders=responders,
        loglik=log_marginal(tables, responders),
        theta=np.full(c, 1.0 / c),
        phi=np.zeros((n, c)),
        omega=np.where(spec.active, 0.5, 0.0),
    )


def gibbs_refresh(
    state: ChainState,
    spec: ModelSpecification,
    tables: LikelihoodTables,
    prior: PriorConfig,
    rng: np.random.Generator,
) -> None:
    """Redraw theta, phi and omega from their conjugate posteriors."""
    z = state.responders
    stim = tables.stim

    null_counts = spec.unstimulated.sum(axis=0) + np.where(z, 0.0, stim).sum(axis=0)
    state.theta = rng.dirichlet(spec.alpha + null_counts)

    # Dirichlet draws over each subject's own support via normalised gammas.
    shapes = np.where(z, tables.a_s, 1.0)
    g = np.where(z, rng.gamma(shapes), 0.0)
    totals = g.sum(axis=1, keepdims=True)
    state.phi = np.divide(g, totals, out=np.zeros_like(g), where=totals > 0)

    omega = np.zeros(spec.n_categories)
    active_idx = np.flatnonzero(spec.active)
    if active_idx.size:
        hits = z[:, active_idx].sum(axis=0)
        omega[active_idx] = rng.beta(
            prior.response_rate_a + hits,
            prior.response_rate_b + spec.n_subjects - hits,
        )
    state.omega = omega


def metropolis_step(
    state: ChainState,
    tables: LikelihoodTables,
    active_idx: np.ndarray,
    max_toggle: int,
    rng: np.random.Generator,
) -> int:
    """
    Propose toggling 1..max_toggle active indicators for every subject.

    The toggle-set size is uniform and the set is uniform given its size,
    so the proposal is symmetric. Returns the number of accepted proposals.
    """
    n = state.responders.shape[0]
    k_max = min(max_toggle, active_idx.size)

    picks = np.argsort(rng.random((n, active_idx.size)), axis=1)[:, :k_max]
    sizes = rng.integers(1, k_max + 1, size=n)
    use = np.arange(k_max)[None, :] < sizes[:, None]

    toggle = np.zeros_like(state.responders)
    rows = np.broadcast_to(np.arange(n)[:, None], picks.shape)
    toggle[rows[use], active_idx[picks[use]]] = True

    proposal = state.responders ^ toggle
    proposal_ll = log_marginal(tables, proposal)

    omega = np.clip(state.omega, _OMEGA_EPS, 1.0 - _OMEGA_EPS)
    logit = np.log(omega) - np.log1p(-omega)
    direction = np.where(state.responders, -1.0, 1.0)
    prior_delta = np.where(toggle, direction * logit[None, :], 0.0).sum(axis=1)

    log_ratio = proposal_ll - state.loglik + prior_delta
    accept = np.log(rng.random(n)) < log_ratio

    state.responders[accept] = proposal[accept]
    state.loglik[accept] = proposal_ll[accept]
    return int(accept.sum())


def run_chain(
    spec: ModelSpecification,
    sampler: SamplerConfig,
    prior: PriorConfig,
    plan: RetentionPlan,
    seed: np.random.SeedSequence | int,
    chain_index: int = 0,
    cancel_event: Optional[threading.Event] = None,
    tables: Optional[LikelihoodTables] = None,
) -> ChainResult:
    """
    Run one chain to completion.

    Args:
        spec: Validated model specification (read-only).
        sampler: Sampler settings.
        prior: Prior hyperparameters.
        plan: Retention plan deciding which draws are kept.
        seed: Seed or SeedSequence for this chain's private generator.
        chain_index: Index used in logs and results.
        cancel_event: Checked at every iteration boundary.
        tables: Precomputed likelihood terms (built here if omitted).

    Returns:
        ChainResult holding the accumulated draws and acceptance counts.

    Raises:
        FitCancelled: The cancellation token was set.
    """
    start = time.time()
    rng = np.random.default_rng(seed)
    if tables is None:
        tables = LikelihoodTables.build(
            spec,
            share_a=prior.response_share_a,
            share_b=prior.response_share_b,
            one_sided=prior.one_sided,
            calibrated=prior.calibrated,
        )

    active_idx = np.flatnonzero(spec.active)
    accumulator = DrawAccumulator(
        plan, spec.n_subjects, spec.n_categories, keep_draws=sampler.keep_draws
    )

    state = initial_state(spec, tables, rng)
    gibbs_refresh(state, spec, tables, prior, rng)

    accepted = 0
    proposed = 0
    for iteration in range(plan.iterations):
        if cancel_event is not None and cancel_event.is_set():
            raise FitCancelled(chain_index, iteration)

        if active_idx.size:
            for _ in range(sampler.updates_per_iteration):
                accepted += metropolis_step(
                    state, tables, active_idx, sampler.max_toggle, rng
                )
                proposed += spec.n_subjects

        if (iteration + 1) % sampler.gibbs_interval == 0:
            gibbs_refresh(state, spec, tables, prior, rng)

        accumulator.observe(iteration, state)

        if sampler.log_every and (iteration + 1) % sampler.log_every == 0:
            logger.debug(
                "Chain %d: iteration %d/%d, acceptance %.3f",
                chain_index, iteration + 1, plan.iterations,
                accepted / max(proposed, 1),
            )

    elapsed = time.time() - start
    logger.debug("Chain %d finished in %.1fs", chain_index, elapsed)
    return ChainResult(
        index=chain_index,
        accumulator=accumulator,
        accepted=accepted,
        proposed=proposed,
        elapsed_seconds=elapsed,
    )
